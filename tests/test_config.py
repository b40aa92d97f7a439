import tomllib

import pytest
from pydantic import ValidationError

from pmc.config import CustomPresetConfig, PmcSettings, cli_overrides_from_args


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ("PMC_WORKERS", "PMC_COMMENT", "PMC_LOG_LEVEL"):
        monkeypatch.delenv(key, raising=False)


def test_defaults_without_file(tmp_path):
    cfg = PmcSettings.load(config_path=tmp_path / "missing.toml")
    assert cfg.workers == 1
    assert cfg.preserve_metadata is True
    assert cfg.cleanup_policy == "purge_on_launch"
    assert cfg.prores_profile == "standard"
    assert [c.suffix for c in cfg.custom_presets] == ["_c1", "_c2", "_c3"]
    assert cfg.config_path == tmp_path / "missing.toml"


def test_file_values_and_cli_overrides(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text('workers = 3\ncomment = "from file"\ncleanup_policy = "keep_3_days"\n')
    cfg = PmcSettings.load(config_path=path, overrides={"workers": 5, "comment": None})
    assert cfg.workers == 5
    assert cfg.comment == "from file"
    assert cfg.cleanup_policy == "keep_3_days"


def test_env_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "config.toml"
    path.write_text("workers = 3\n")
    monkeypatch.setenv("PMC_WORKERS", "7")
    assert PmcSettings.load(config_path=path).workers == 7
    assert PmcSettings.load(config_path=path, overrides={"workers": 2}).workers == 2


def test_write_round_trip(tmp_path):
    path = tmp_path / "nested" / "config.toml"
    cfg = PmcSettings.load(config_path=path, overrides={"comment": "hi", "workers": 4})
    written = cfg.write()
    assert written == path
    data = tomllib.loads(path.read_text())
    assert "config_path" not in data
    # TOML has no null
    assert "ffmpeg_path" not in data
    assert data["custom_presets"][0]["suffix"] == "_c1"

    again = PmcSettings.load(config_path=path)
    assert again.comment == "hi"
    assert again.workers == 4


def test_cache_root_path_expands_user():
    cfg = PmcSettings(cache_root="~/pmc-cache")
    assert "~" not in str(cfg.cache_root_path)


def test_validation_errors():
    with pytest.raises(ValidationError):
        PmcSettings(prores_profile="ultra")
    with pytest.raises(ValidationError):
        PmcSettings(cleanup_policy="sometimes")
    with pytest.raises(ValidationError):
        PmcSettings(custom_presets=[CustomPresetConfig() for _ in range(4)])


def test_cli_overrides_from_args():
    class Args:
        workers = 2
        comment = None
        preset = "tv_hd"

    out = cli_overrides_from_args(Args())
    assert out == {"workers": 2, "comment": None}
