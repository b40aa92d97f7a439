import threading
from datetime import datetime
from pathlib import Path
from unittest.mock import Mock

import pytest
from PIL import Image

from pmc.errors import (
    BinaryMissingError,
    CaptureInProgressError,
    CaptureOutputError,
    InputError,
    ProcessFailedError,
)
from pmc.probe import MediaProber, VideoColorInfo
from pmc.screenshot import (
    JPEG_FORMAT,
    PNG16_FORMAT,
    FrameCapture,
    capture_command,
    color_arguments,
    screenshot_filename,
    screenshot_format,
)

NOW = datetime(2024, 3, 9, 14, 5, 7)


class FakeRun:
    """Stands in for run_ffmpeg and writes an image to the output path."""

    def __init__(self, rc=0, write=True, garbage=False, gate=None, raises=None):
        self.calls = []
        self.rc = rc
        self.write = write
        self.garbage = garbage
        self.gate = gate
        self.raises = raises

    def __call__(self, cmd, *, stop_event=None, timeout=None):
        self.calls.append(cmd)
        out = Path(cmd[-1])
        if self.gate is not None:
            self.gate.wait(5)
        if self.raises is not None:
            out.write_bytes(b"partial")
            raise self.raises
        if self.rc != 0:
            return self.rc, "Invalid data found when processing input"
        if self.write:
            if self.garbage:
                out.write_bytes(b"not an image")
            elif out.suffix == ".png":
                Image.new("RGB", (4, 4)).save(out, format="PNG")
            elif out.suffix == ".avif":
                out.write_bytes(b"\x00\x00\x00\x1cftypavif")
            else:
                Image.new("RGB", (4, 4)).save(out, format="JPEG")
        return 0, ""


def make_prober(has_video=True, info=None, interlaced=False):
    prober = Mock(spec=MediaProber)
    if has_video and info is None:
        info = VideoColorInfo("h264", "yuv420p", "bt709", "bt709", "bt709", "tv")
    prober.video_info.return_value = (has_video, info if has_video else None)
    prober.is_interlaced.return_value = interlaced
    return prober


@pytest.fixture
def source(tmp_path):
    src = tmp_path / "media" / "Take 1.mov"
    src.parent.mkdir()
    src.write_bytes(b"\x00" * 32)
    return src


def make_capture(prober=None, run=None):
    return FrameCapture(prober or make_prober(), run=run or FakeRun(), now=lambda: NOW)


def test_filename_carries_timestamp_and_position():
    assert screenshot_filename(Path("/m/Take 1.mov"), 12.5, "jpg", NOW) == "Take 1_20240309_140507_t12-500.jpg"


def test_filename_sanitizes_stem():
    name = screenshot_filename(Path("/m/a:b?.mov"), 0.0, "png", NOW)
    assert ":" not in name and "?" not in name
    assert name.endswith("_t0-000.png")


def test_format_selection():
    assert screenshot_format(None) is JPEG_FORMAT
    assert screenshot_format(VideoColorInfo("h264", "yuv420p", "bt709", "bt709", "bt709")) is JPEG_FORMAT
    assert screenshot_format(VideoColorInfo("prores_raw", "bayer_rggb16le")) is PNG16_FORMAT
    assert screenshot_format(VideoColorInfo("prores", "yuv422p10le", profile="RAW HQ")) is PNG16_FORMAT

    pq = screenshot_format(VideoColorInfo("hevc", "yuv420p10le", "bt2020nc", "bt2020", "smpte2084"))
    assert pq.extension == "avif"
    assert "yuv420p10le" in pq.codec_args

    hlg12 = screenshot_format(VideoColorInfo("hevc", "yuv422p12le", "bt709", "bt709", "arib-std-b67"))
    assert "yuv420p12le" in hlg12.codec_args

    untagged = screenshot_format(VideoColorInfo("hevc", "yuv420p10le", "unknown", "unknown", "unknown"))
    assert untagged.extension == "avif"
    # tagged SDR at 10 bit stays JPEG
    assert screenshot_format(VideoColorInfo("prores", "yuv422p10le", "bt709", "bt709", "bt709")) is JPEG_FORMAT


def test_color_arguments_normalize_and_drop_unknowns():
    info = VideoColorInfo("hevc", "yuv420p10le", "bt2020-ncl", "bt2020-10", "smpte2084", "limited")
    assert color_arguments(info) == [
        "-color_primaries", "bt2020",
        "-color_trc", "smpte2084",
        "-colorspace", "bt2020nc",
        "-color_range", "tv",
    ]
    odd = VideoColorInfo("h264", "yuv420p", "gbr", "unknown", "linear", "full")
    assert color_arguments(odd) == ["-color_range", "pc"]
    assert color_arguments(None) == []


def test_capture_command_layout():
    info = VideoColorInfo("h264", "yuv420p", "bt709", "bt709", "bt709", "tv")
    cmd = capture_command(Path("in.mov"), 3.25, Path("out.jpg"), JPEG_FORMAT, info, interlaced=True)
    assert cmd[:9] == ["ffmpeg", "-hide_banner", "-loglevel", "error", "-ss", "3.250000", "-i", "in.mov", "-frames:v"]
    vf = cmd[cmd.index("-vf") + 1]
    assert vf.startswith("yadif=mode=send_frame")
    assert vf.endswith("scale=iw*sar:ih")
    assert cmd[cmd.index("-pix_fmt") + 1] == "yuvj444p"
    assert cmd[cmd.index("-c:v") + 1] == "mjpeg"
    assert cmd[-2:] == ["-y", "out.jpg"]


def test_capture_writes_final_file(tmp_path, source):
    run = FakeRun()
    out = make_capture(run=run).capture(source, 12.5, tmp_path / "shots")
    assert out == tmp_path / "shots" / "Take 1_20240309_140507_t12-500.jpg"
    assert out.exists()
    assert ".part-" in Path(run.calls[0][-1]).name
    assert [p.name for p in out.parent.iterdir()] == [out.name]


def test_capture_of_hdr_source_is_avif(tmp_path, source):
    info = VideoColorInfo("hevc", "yuv420p10le", "bt2020nc", "bt2020", "smpte2084", "tv")
    run = FakeRun()
    out = make_capture(prober=make_prober(info=info), run=run).capture(source, 1.0, tmp_path)
    assert out.suffix == ".avif"
    cmd = run.calls[0]
    assert "libsvtav1" in cmd
    assert cmd.count("-pix_fmt") == 1


def test_capture_deinterlaces_only_known_interlaced_sources(tmp_path, source):
    run = FakeRun()
    make_capture(prober=make_prober(interlaced=None), run=run).capture(source, 0, tmp_path)
    assert "yadif" not in run.calls[0][run.calls[0].index("-vf") + 1]


def test_negative_position_is_clamped(tmp_path, source):
    run = FakeRun()
    make_capture(run=run).capture(source, -4.0, tmp_path)
    assert run.calls[0][run.calls[0].index("-ss") + 1] == "0.000000"


def test_audio_only_source_is_rejected(tmp_path, source):
    run = FakeRun()
    with pytest.raises(InputError):
        make_capture(prober=make_prober(has_video=False), run=run).capture(source, 1.0, tmp_path)
    assert run.calls == []


def test_unknown_video_presence_still_attempts_capture(tmp_path, source):
    prober = make_prober()
    prober.video_info.return_value = (None, None)
    out = make_capture(prober=prober).capture(source, 1.0, tmp_path)
    assert out.suffix == ".jpg"


def test_ffmpeg_failure_raises_and_cleans_up(tmp_path, source):
    with pytest.raises(ProcessFailedError) as excinfo:
        make_capture(run=FakeRun(rc=1)).capture(source, 1.0, tmp_path)
    assert excinfo.value.returncode == 1
    assert list(tmp_path.glob("*.jpg")) == []


def test_clean_exit_without_output_is_an_error(tmp_path, source):
    with pytest.raises(CaptureOutputError):
        make_capture(run=FakeRun(write=False)).capture(source, 1.0, tmp_path)


def test_undecodable_output_is_an_error(tmp_path, source):
    with pytest.raises(CaptureOutputError):
        make_capture(run=FakeRun(garbage=True)).capture(source, 1.0, tmp_path / "shots")
    assert list((tmp_path / "shots").iterdir()) == []


def test_missing_binary_propagates_and_removes_partial(tmp_path, source):
    with pytest.raises(BinaryMissingError):
        make_capture(run=FakeRun(raises=BinaryMissingError("ffmpeg"))).capture(source, 1.0, tmp_path / "shots")
    assert list((tmp_path / "shots").iterdir()) == []


def test_second_capture_while_busy_is_refused(tmp_path, source):
    gate = threading.Event()
    capture = make_capture(run=FakeRun(gate=gate))
    results = []
    worker = threading.Thread(target=lambda: results.append(capture.capture(source, 1.0, tmp_path)))
    worker.start()
    try:
        for _ in range(100):
            if capture._busy.locked():
                break
            threading.Event().wait(0.01)
        with pytest.raises(CaptureInProgressError):
            capture.capture(source, 2.0, tmp_path)
    finally:
        gate.set()
        worker.join(5)
    assert len(results) == 1
    # lock is released afterwards
    assert capture.capture(source, 3.0, tmp_path).exists()


def test_still_is_a_1080_line_jpeg(tmp_path, source):
    run = FakeRun()
    dest = tmp_path / "stills" / "pos.jpg"
    assert make_capture(run=run).still(source, 42.0, dest) == dest
    assert dest.exists()
    cmd = run.calls[0]
    vf = cmd[cmd.index("-vf") + 1]
    assert vf.startswith("scale=iw*sar:ih,")
    assert "1080" in vf
    assert cmd[cmd.index("-q:v") + 1] == "2"
