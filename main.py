from __future__ import annotations

import argparse
import json
import sys
import threading
from pathlib import Path
from typing import Any, List, Optional

from loguru import logger

# Ensure local src/ is importable when running from project root
ROOT = Path(__file__).parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from pmc.chunked_preview import ChunkedPreviewSession  # noqa: E402
from pmc.command_builder import CommandBuilder, ConversionJob, WaveformRequest, WAVEFORM_STYLES  # noqa: E402
from pmc.config import PmcSettings, cli_overrides_from_args  # noqa: E402
from pmc.conversion import ConversionQueue, ItemStatus  # noqa: E402
from pmc.errors import BinaryMissingError, PmcError  # noqa: E402
from pmc.ffmpeg_check import probe_ffmpeg, probe_ffprobe, require_binary  # noqa: E402
from pmc.logging import bind_run, setup_console, setup_json  # noqa: E402
from pmc.paths import output_base_path, unique_base_path  # noqa: E402
from pmc.presets import (  # noqa: E402
    PRORES_PROFILES,
    Preset,
    custom_presets_from_settings,
    get_preset,
    list_presets,
    output_extension,
)
from pmc.preview_assets import CleanupPolicy, PreviewAssetCache  # noqa: E402
from pmc.probe import MediaProber  # noqa: E402
from pmc.screenshot import FrameCapture  # noqa: E402
from pmc.watch_folder import AgeThreshold, WatchFolderMonitor  # noqa: E402


EXIT_OK = 0
EXIT_WITH_FILE_ERRORS = 2
EXIT_PREFLIGHT_FAILED = 3


def configure_logging(log_level: str = "INFO", log_json_path: Optional[str] = None) -> None:
    """Configure Loguru for human console output and optional JSON lines file."""
    setup_console(log_level)
    if log_json_path:
        setup_json(log_json_path)
    bind_run()


def cmd_preflight(cfg: PmcSettings) -> int:
    st = probe_ffmpeg(cfg.ffmpeg_path)
    if not st.available:
        logger.error("ffmpeg: NOT FOUND")
        if st.error:
            logger.error(st.error)
        return EXIT_PREFLIGHT_FAILED
    logger.info(f"ffmpeg: {st.path}")
    logger.info(f"version: {st.version}")
    for label, flag in (
        ("libx264", st.has_libx264),
        ("libx265", st.has_libx265),
        ("prores_ks", st.has_prores_ks),
        ("libsvtav1", st.has_libsvtav1),
        ("zscale (HDR thumbnails)", st.has_zscale),
    ):
        logger.info(f"{label}: {'YES' if flag else 'NO'}")

    st_probe = probe_ffprobe(cfg.ffprobe_path)
    logger.info(f"ffprobe: {st_probe.path if st_probe.available else 'NOT FOUND'}")
    if not st_probe.available:
        logger.error("ffprobe is required for durations, stream layout and previews")
        return EXIT_PREFLIGHT_FAILED
    return EXIT_OK


def cmd_presets(cfg: PmcSettings) -> int:
    for p in list_presets(custom_presets_from_settings(cfg.custom_presets)):
        tracks = "+".join(t for t, on in (("video", p.outputs_video), ("audio", p.outputs_audio)) if on) or "-"
        print(f"{p.id:<18} {p.display_name:<34} .{p.extension:<5} {p.suffix:<14} {tracks}")
    return EXIT_OK


def _tools(cfg: PmcSettings) -> tuple[str, MediaProber]:
    ffmpeg = require_binary("ffmpeg", cfg.ffmpeg_path)
    ffprobe = require_binary("ffprobe", cfg.ffprobe_path)
    return ffmpeg, MediaProber(ffprobe, timeout=cfg.probe_timeout)


def _make_job(
    src: Path,
    preset: Preset,
    cfg: PmcSettings,
    *,
    trim_start: Optional[float] = None,
    trim_end: Optional[float] = None,
    waveform: Optional[WaveformRequest] = None,
) -> ConversionJob:
    out_dir = Path(cfg.output_dir).expanduser() if cfg.output_dir else None
    base = output_base_path(src, preset, out_dir)
    ext = "mp4" if waveform is not None else output_extension(preset, src)
    if Path(f"{base}.{ext}") == src:
        base = unique_base_path(base, ext)
    return ConversionJob(
        source=src,
        destination=base,
        preset=preset,
        comment=cfg.comment,
        include_date_tag=cfg.include_date_tag,
        preserve_metadata=cfg.preserve_metadata,
        trim_start=trim_start,
        trim_end=trim_end,
        waveform=waveform,
        prores_profile=cfg.prores_profile,
    )


def _waveform_request(enabled: bool, style: Optional[str], preset: Preset, cfg: PmcSettings) -> Optional[WaveformRequest]:
    if not enabled:
        return None
    return WaveformRequest.for_preset(
        preset,
        style=style or cfg.waveform_style,
        fps=cfg.waveform_fps,
        background=cfg.waveform_background,
        foreground=cfg.waveform_foreground,
        normalize=cfg.waveform_normalize,
    )


def _run_queue(queue: ConversionQueue) -> int:
    finished = queue.run()
    failed = [i for i in finished if i.status is ItemStatus.FAILED]
    done = [i for i in finished if i.status is ItemStatus.DONE]
    logger.info(f"Converted: {len(done)}, failed: {len(failed)}")
    return EXIT_OK if not failed else EXIT_WITH_FILE_ERRORS


def cmd_convert(cfg: PmcSettings, args: argparse.Namespace) -> int:
    ffmpeg, prober = _tools(cfg)
    custom = custom_presets_from_settings(cfg.custom_presets)
    preset = get_preset(args.preset, custom)
    builder = CommandBuilder(prober)
    queue = ConversionQueue(builder, ffmpeg_path=ffmpeg, workers=cfg.workers or 1)
    waveform = _waveform_request(args.waveform, args.waveform_style, preset, cfg)
    for src in args.src:
        src_p = Path(src).expanduser()
        if not src_p.is_file():
            logger.error(f"Not a file: {src_p}")
            return EXIT_WITH_FILE_ERRORS
        queue.add(_make_job(src_p, preset, cfg, trim_start=args.trim_start, trim_end=args.trim_end, waveform=waveform))
    try:
        return _run_queue(queue)
    except KeyboardInterrupt:
        queue.cancel_all()
        logger.warning("Interrupted; running conversions cancelled")
        return EXIT_WITH_FILE_ERRORS


def cmd_assets(cfg: PmcSettings, args: argparse.Namespace) -> int:
    ffmpeg, prober = _tools(cfg)
    cache = PreviewAssetCache.shared(
        root=cfg.cache_root_path,
        ffmpeg_path=ffmpeg,
        prober=prober,
        thumbnail_count=cfg.thumbnail_count,
        waveform_size=cfg.waveform_size,
    )
    rc = EXIT_OK
    report: dict[str, Any] = {}
    for src in args.src:
        src_p = Path(src).expanduser()
        try:
            assets = cache.assets(src_p)
        except PmcError as e:
            logger.error(f"{src_p.name}: {e}")
            rc = EXIT_WITH_FILE_ERRORS
            continue
        report[str(src_p)] = {
            "directory": str(assets.directory),
            "row_thumbnail": str(assets.row_thumbnail) if assets.row_thumbnail else None,
            "thumbnails": [str(p) for p in assets.thumbnails],
            "waveform": str(assets.waveform) if assets.waveform else None,
            "stream_waveforms": {str(k): str(v) for k, v in assets.stream_waveforms.items()},
        }
    print(json.dumps(report, indent=2))
    return rc


def cmd_cache_cleanup(cfg: PmcSettings, args: argparse.Namespace) -> int:
    cache = PreviewAssetCache(cfg.cache_root_path)
    policy = CleanupPolicy(args.policy or cfg.cleanup_policy)
    if args.source:
        removed = sum(cache.cleanup_assets(Path(s).expanduser()) for s in args.source)
    else:
        removed = cache.apply_cleanup_policy(policy)
    logger.info(f"Removed {removed} preview cache entries")
    return EXIT_OK


class _HeadlessSurface:
    """PlaybackSurface for the CLI: remembers the last timeline instead of playing it."""

    def __init__(self) -> None:
        self.position = 0.0
        self.is_playing = False
        self.timeline = None

    def load(self, timeline) -> None:
        self.timeline = timeline

    def play(self) -> None:
        self.is_playing = True

    def pause(self) -> None:
        self.is_playing = False

    def seek(self, seconds: float) -> None:
        self.position = seconds


def cmd_preview(cfg: PmcSettings, args: argparse.Namespace) -> int:
    ffmpeg, prober = _tools(cfg)
    src = Path(args.src).expanduser()
    cache = PreviewAssetCache(cfg.cache_root_path, ffmpeg_path=ffmpeg, prober=prober)
    try:
        directory = cache.asset_directory(src)
        surface = _HeadlessSurface()
        session = ChunkedPreviewSession.create(
            src,
            directory,
            prober.duration(src),
            surface,
            ffmpeg_path=ffmpeg,
            chunk_duration=cfg.chunk_duration,
            max_short_edge=cfg.preview_max_short_edge,
            chunks_per_section=cfg.chunks_per_section,
            cleanup_delay=cfg.chunk_cleanup_delay,
        )
    except PmcError as e:
        logger.error(f"{src.name}: {e}")
        return EXIT_WITH_FILE_ERRORS

    try:
        session.activate(autoplay=False)
        until = args.until if args.until is not None else session.total_duration
        t = 0.0
        while t < min(until, session.total_duration):
            fut = session.load_chunk_for_time(t)
            if fut is not None:
                fut.result()
            t += session.chunk_duration
    except PmcError as e:
        logger.error(f"{src.name}: {e}")
        return EXIT_WITH_FILE_ERRORS
    finally:
        session.close()

    timeline = session.timeline
    print(json.dumps({
        "duration": timeline.duration,
        "audio": str(timeline.audio) if timeline.audio else None,
        "segments": [
            {"kind": s.kind, "index": s.index, "start": s.start, "duration": s.duration, "path": str(s.path)}
            for s in timeline.video
        ],
    }, indent=2))
    return EXIT_OK


def cmd_screenshot(cfg: PmcSettings, args: argparse.Namespace) -> int:
    ffmpeg, prober = _tools(cfg)
    src = Path(args.src).expanduser()
    if not src.is_file():
        logger.error(f"Not a file: {src}")
        return EXIT_WITH_FILE_ERRORS
    capture = FrameCapture(prober, ffmpeg_path=ffmpeg)
    try:
        if args.still:
            out = capture.still(src, args.at, Path(args.still).expanduser())
        else:
            folder = Path(cfg.screenshot_dir).expanduser() if cfg.screenshot_dir else src.parent
            out = capture.capture(src, args.at, folder)
    except PmcError as e:
        logger.error(f"{src.name}: {e}")
        return EXIT_WITH_FILE_ERRORS
    print(out)
    return EXIT_OK


def cmd_watch(cfg: PmcSettings, args: argparse.Namespace) -> int:
    folder = args.folder or cfg.watch_folder
    if not folder:
        logger.error("No watch folder given (argument or watch_folder setting)")
        return EXIT_PREFLIGHT_FAILED
    ffmpeg, prober = _tools(cfg)
    custom = custom_presets_from_settings(cfg.custom_presets)
    preset = get_preset(args.preset, custom)
    builder = CommandBuilder(prober)
    lock = threading.Lock()

    def on_stable(paths: List[Path]) -> None:
        with lock:
            queue = ConversionQueue(builder, ffmpeg_path=ffmpeg, workers=cfg.workers or 1)
            for p in paths:
                queue.add(_make_job(p, preset, cfg))
            _run_queue(queue)

    monitor = WatchFolderMonitor(
        Path(folder).expanduser(),
        on_stable,
        poll_interval=cfg.watch_poll_interval,
        ignore_older_than=AgeThreshold.parse(cfg.watch_ignore_older_than),
        delete_older_than=AgeThreshold.parse(cfg.watch_delete_older_than),
    )
    monitor.start()
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("Stopping watch folder")
    finally:
        monitor.stop()
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="python-media-converter")
    p.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ~/.config/python-media-converter/config.toml)",
    )
    p.add_argument(
        "--write-config",
        action="store_true",
        help="Write current effective settings to the config file and exit",
    )
    p.add_argument("--log-level", default=None, help="Console log level (DEBUG, INFO, WARNING, ERROR)")
    p.add_argument("--log-json", dest="log_json", default=None, help="Path to write JSON lines log")
    p.add_argument("--ffmpeg", dest="ffmpeg_path", default=None, help="ffmpeg binary to use")
    p.add_argument("--ffprobe", dest="ffprobe_path", default=None, help="ffprobe binary to use")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("preflight", help="Check ffmpeg/ffprobe and the encoders presets rely on")
    sub.add_parser("presets", help="List built-in and custom presets")

    p_convert = sub.add_parser("convert", help="Convert one or more files with a preset")
    p_convert.add_argument("src", nargs="+", help="Input media file(s)")
    p_convert.add_argument("--preset", required=True, help="Preset id (see `presets`)")
    p_convert.add_argument("--out", dest="output_dir", default=None, help="Output folder (default: next to source)")
    p_convert.add_argument("--trim-start", type=float, default=None, help="Start time in seconds")
    p_convert.add_argument("--trim-end", type=float, default=None, help="End time in seconds")
    p_convert.add_argument("--comment", default=None, help="Comment metadata")
    p_convert.add_argument(
        "--date-tag", dest="include_date_tag", action="store_const", const=True, default=None,
        help="Prefix the comment with 'Date generated: yyyyMMdd'",
    )
    meta = p_convert.add_mutually_exclusive_group()
    meta.add_argument("--preserve-metadata", dest="preserve_metadata", action="store_const", const=True, default=None)
    meta.add_argument("--strip-metadata", dest="preserve_metadata", action="store_const", const=False)
    p_convert.add_argument("--prores-profile", choices=PRORES_PROFILES, default=None)
    p_convert.add_argument("--waveform", action="store_true", help="Render an audio visualization video instead of the preset")
    p_convert.add_argument("--waveform-style", choices=WAVEFORM_STYLES, default=None, help="Visualization style (default: setting)")
    p_convert.add_argument("--workers", type=int, default=None, help="Parallel conversions")

    p_assets = sub.add_parser("assets", help="Generate (or reuse) cached preview thumbnails and waveforms")
    p_assets.add_argument("src", nargs="+")
    p_assets.add_argument("--cache-root", dest="cache_root", default=None)

    p_clean = sub.add_parser("cache-cleanup", help="Apply a preview cache cleanup policy")
    p_clean.add_argument("--policy", choices=[c.value for c in CleanupPolicy], default=None)
    p_clean.add_argument("--source", nargs="*", default=None, help="Only remove the entries of these files")
    p_clean.add_argument("--cache-root", dest="cache_root", default=None)

    p_preview = sub.add_parser("preview", help="Transcode preview chunks of a file that cannot be played directly")
    p_preview.add_argument("src")
    p_preview.add_argument("--until", type=float, default=None, help="Stop after this many seconds of source")
    p_preview.add_argument("--cache-root", dest="cache_root", default=None)

    p_shot = sub.add_parser("screenshot", help="Save the frame at a position as an image")
    p_shot.add_argument("src")
    p_shot.add_argument("--at", type=float, required=True, help="Position in seconds")
    p_shot.add_argument("--out", dest="screenshot_dir", default=None, help="Screenshot folder (default: next to source)")
    p_shot.add_argument("--still", default=None, help="Write a 1080p JPEG preview still to this path instead")

    p_watch = sub.add_parser("watch", help="Convert files that settle in a watch folder")
    p_watch.add_argument("folder", nargs="?", default=None)
    p_watch.add_argument("--preset", required=True)
    p_watch.add_argument("--out", dest="output_dir", default=None)
    p_watch.add_argument("--interval", dest="watch_poll_interval", type=float, default=None)

    args = p.parse_args(argv)
    overrides = cli_overrides_from_args(args)
    cfg = PmcSettings.load(config_path=Path(args.config_path).expanduser() if args.config_path else None, overrides=overrides)

    if args.write_config:
        written = cfg.write(Path(args.config_path).expanduser() if args.config_path else None)
        print(f"Config written to: {written}")
        return EXIT_OK

    configure_logging(cfg.log_level, cfg.log_json)
    try:
        if args.cmd == "preflight":
            return cmd_preflight(cfg)
        if args.cmd == "presets":
            return cmd_presets(cfg)
        if args.cmd == "convert":
            return cmd_convert(cfg, args)
        if args.cmd == "assets":
            return cmd_assets(cfg, args)
        if args.cmd == "cache-cleanup":
            return cmd_cache_cleanup(cfg, args)
        if args.cmd == "preview":
            return cmd_preview(cfg, args)
        if args.cmd == "screenshot":
            return cmd_screenshot(cfg, args)
        if args.cmd == "watch":
            return cmd_watch(cfg, args)
    except BinaryMissingError as e:
        logger.error(str(e))
        return EXIT_PREFLIGHT_FAILED
    except KeyError as e:
        logger.error(str(e.args[0]) if e.args else str(e))
        return EXIT_PREFLIGHT_FAILED
    p.error("unknown command")
    return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
