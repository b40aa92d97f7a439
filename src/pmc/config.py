from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tomlkit import dumps as toml_dumps


DEFAULT_CONFIG_PATH = Path("~/.config/python-media-converter/config.toml").expanduser()
ENV_PREFIX = "PMC_"

CleanupPolicyName = Literal["purge_on_launch", "keep_1_day", "keep_3_days", "keep_7_days", "manual"]
ProresProfileName = Literal["proxy", "lt", "standard", "hq", "4444", "4444xq"]
WaveformStyleName = Literal["linear", "circular", "compressed", "fisheye", "spectrogram"]


class CustomPresetConfig(BaseModel):
    """One user-defined preset slot (custom1..custom3)."""

    name: str = Field(default="", description="Display name (shown as 'C<n>: <name>')")
    command: str = Field(default="-c copy", description="ffmpeg output flags, shell-style")
    suffix: str = Field(default="", description="Filename suffix; a leading '_' is enforced")
    extension: str = Field(default="mp4", description="Output extension without dot")


class PmcSettings(BaseSettings):
    """Global settings for python-media-converter.

    Priority (lowest -> highest):
    - Class defaults below
    - TOML file at `config_path` (default: ~/.config/python-media-converter/config.toml)
    - Environment variables with prefix PMC_
    - CLI overrides passed to `load(overrides=...)`
    """

    # Logging
    log_level: str = Field(default="INFO", description="Console log level")
    log_json: Optional[str] = Field(default=None, description="Path for structured JSON log file")

    # Binaries
    ffmpeg_path: Optional[str] = Field(default=None, description="ffmpeg binary; None=search PATH")
    ffprobe_path: Optional[str] = Field(default=None, description="ffprobe binary; None=search PATH")
    probe_timeout: float = Field(default=5.0, description="Seconds to wait for any ffprobe call")

    # Conversion defaults
    output_dir: Optional[str] = Field(default=None, description="Output folder; None=next to the source")
    workers: Optional[int] = Field(default=1, description="Parallel conversions; None=auto (CPU cores)")
    preserve_metadata: bool = Field(default=True, description="Keep global metadata and chapters")
    include_date_tag: bool = Field(default=False, description="Write 'Date generated: yyyyMMdd' into the comment")
    comment: str = Field(default="", description="Free-text comment metadata")
    prores_profile: ProresProfileName = Field(default="standard", description="Profile for the ProRes preset")
    custom_presets: List[CustomPresetConfig] = Field(
        default_factory=lambda: [
            CustomPresetConfig(suffix="_c1"),
            CustomPresetConfig(suffix="_c2"),
            CustomPresetConfig(suffix="_c3"),
        ],
        description="Up to three user presets",
    )

    # Waveform visualization defaults
    waveform_style: WaveformStyleName = Field(default="fisheye", description="Visualization style")
    waveform_fps: int = Field(default=25, description="Visualization frame rate")
    waveform_background: str = Field(default="000000", description="Background colour (hex)")
    waveform_foreground: str = Field(default="FFFFFF", description="Trace colour (hex)")
    waveform_normalize: bool = Field(default=True, description="Loudness-normalize visualized audio")

    # Preview cache
    cache_root: str = Field(
        default="~/.local/share/pmc/PreviewAssets", description="Root of the preview asset cache"
    )
    cleanup_policy: CleanupPolicyName = Field(
        default="purge_on_launch", description="When cached preview assets are removed"
    )
    thumbnail_count: int = Field(default=6, description="Filmstrip thumbnails per source")
    waveform_size: str = Field(default="1000x90", description="Waveform image size WxH")

    # Chunked preview
    chunk_duration: float = Field(default=15.0, description="Seconds per preview chunk")
    chunks_per_section: int = Field(default=4, description="Chunks merged into one section")
    chunk_cleanup_delay: float = Field(default=15.0, description="Seconds before merged chunk files are deleted")
    preview_max_short_edge: int = Field(default=720, description="Short-edge pixel limit for preview chunks")

    # Frame capture
    screenshot_dir: Optional[str] = Field(default=None, description="Screenshot folder; None=next to the source")

    # Watch folder
    watch_folder: Optional[str] = Field(default=None, description="Folder polled for new files")
    watch_poll_interval: float = Field(default=5.0, description="Seconds between watch-folder scans")
    watch_ignore_older_than: Optional[str] = Field(default="24 hours", description="e.g. '24 hours'; None=off")
    watch_delete_older_than: Optional[str] = Field(default="7 days", description="e.g. '7 days'; None=off")

    # Config source/path (not persisted as part of effective config when writing)
    config_path: Path = Field(default=DEFAULT_CONFIG_PATH, exclude=True)

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    @field_validator("custom_presets")
    @classmethod
    def _at_most_three(cls, v: List[CustomPresetConfig]) -> List[CustomPresetConfig]:
        if len(v) > 3:
            raise ValueError("at most three custom presets are supported")
        return v

    @staticmethod
    def default_config_path() -> Path:
        return DEFAULT_CONFIG_PATH

    @property
    def cache_root_path(self) -> Path:
        return Path(self.cache_root).expanduser()

    @classmethod
    def _toml_file_source(cls, config_path: Path) -> Dict[str, Any]:
        """Read settings from a TOML file if it exists; return dict values.

        Unknown keys are ignored by pydantic via extra="ignore".
        """
        if not config_path or not config_path.exists():
            return {}
        with config_path.open("rb") as f:
            data = tomllib.load(f)
        if not isinstance(data, dict):
            return {}
        return data

    @classmethod
    def load(
        cls,
        *,
        config_path: Optional[Path] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> "PmcSettings":
        """Load settings from defaults + TOML + env + CLI overrides.

        - config_path: path to TOML config; defaults to ~/.config/python-media-converter/config.toml
        - overrides: dict of CLI values (None values are ignored)
        """
        cp = config_path or DEFAULT_CONFIG_PATH
        file_values = cls._toml_file_source(cp)
        # Init kwargs outrank env in pydantic-settings, so re-apply env on top of the file.
        from_env = cls()
        env_values = from_env.model_dump(include=from_env.model_fields_set)
        if overrides:
            non_none = {k: v for k, v in overrides.items() if v is not None}
        else:
            non_none = {}
        merged = cls(**file_values).model_dump()
        merged.update(env_values)
        merged.update(non_none)
        settings = cls(**merged)
        settings.config_path = cp
        return settings

    def to_toml(self) -> str:
        """Serialize effective settings to a TOML string.

        TOML has no null, so unset optional keys are left out.
        """
        data = self.model_dump(exclude={"config_path"}, exclude_none=True)
        return toml_dumps(data)

    def write(self, path: Optional[Path] = None) -> Path:
        """Write effective config to TOML at `path` (or default path). Creates parent dirs.

        Returns the path written.
        """
        target = path or self.config_path or DEFAULT_CONFIG_PATH
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.to_toml(), encoding="utf-8")
        return target


def cli_overrides_from_args(args: Any) -> Dict[str, Any]:
    """Extract known settings keys from argparse Namespace into an overrides dict.

    Unknown keys are ignored; None values are preserved for filtering by `load()`.
    """
    keys = {
        "log_level",
        "log_json",
        "ffmpeg_path",
        "ffprobe_path",
        "output_dir",
        "workers",
        "preserve_metadata",
        "include_date_tag",
        "comment",
        "prores_profile",
        "cache_root",
        "cleanup_policy",
        "screenshot_dir",
        "watch_folder",
        "watch_poll_interval",
    }
    result: Dict[str, Any] = {}
    for k in keys:
        if hasattr(args, k):
            result[k] = getattr(args, k)
    return result
