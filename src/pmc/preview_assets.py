"""Fingerprinted cache of scrub-preview assets.

Layout under the cache root::

    {fingerprint}/
        row_thumb.jpg          large single frame for list rows
        thumb_0..N-1.jpg       filmstrip
        waveform.jpg           whole-file waveform (waveform.png from older caches is honoured)
        waveform_a{i}.jpg      one per audio stream, i = ffprobe stream index
        assets.json            what the last generation found (streams, video presence)
        chunks/ sections/      owned by the chunked preview session

The fingerprint covers path, size and mtime, so an edited source simply
lands in a new directory; old directories are left for the cleanup policy.
The directory mtime doubles as the last-access time used by retention.
"""
from __future__ import annotations

import hashlib
import json
import os
import shutil
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from loguru import logger
from PIL import Image

from .errors import DurationUnavailableError, GenerationCancelled, InputError
from .logging import log_event
from .probe import HDRType, MediaProber, classify_hdr
from .runner import discard, finalize_output, run_ffmpeg, temp_out_path
from .scheduler import WorkerPool

ROW_THUMB = "row_thumb.jpg"
WAVEFORM = "waveform.jpg"
LEGACY_WAVEFORM = "waveform.png"
MANIFEST = "assets.json"

ROW_THUMB_SCALE = "scale=640:-1"
FILMSTRIP_SCALE = "scale=iw*sar:ih,scale=320:-1"
END_MARGIN = 0.2

_COLOR_ADAPTATION = {
    HDRType.NONE: "",
    HDRType.PRORES_RAW: ",format=yuv420p",
    HDRType.HDR_10BIT: (
        ",zscale=t=linear:npl=100,format=gbrpf32le,zscale=p=bt709,"
        "tonemap=tonemap=hable:desat=0,zscale=t=bt709:m=bt709:r=tv,format=yuv420p"
    ),
}


class CleanupPolicy(str, Enum):
    PURGE_ON_LAUNCH = "purge_on_launch"
    KEEP_1_DAY = "keep_1_day"
    KEEP_3_DAYS = "keep_3_days"
    KEEP_7_DAYS = "keep_7_days"
    MANUAL = "manual"

    @property
    def retention_days(self) -> Optional[int]:
        return {
            CleanupPolicy.KEEP_1_DAY: 1,
            CleanupPolicy.KEEP_3_DAYS: 3,
            CleanupPolicy.KEEP_7_DAYS: 7,
        }.get(self)


@dataclass
class PreviewAssets:
    directory: Path
    row_thumbnail: Optional[Path] = None
    thumbnails: List[Path] = field(default_factory=list)
    waveform: Optional[Path] = None
    stream_waveforms: Dict[int, Path] = field(default_factory=dict)
    fallback_streams: List[int] = field(default_factory=list)


def asset_fingerprint(source: Path) -> str:
    try:
        st = source.stat()
    except OSError as e:
        raise InputError(f"Cannot read {source}: {e}") from e
    key = f"{source.resolve()}::{st.st_size}::{st.st_mtime_ns}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def thumbnail_position(index: int, total: int, duration: float) -> float:
    """Evenly spaced filmstrip positions, stopping short of EOF."""
    safe = max(duration - END_MARGIN, 0.0)
    if total <= 1:
        return safe / 2
    return safe * index / (total - 1)


def row_thumbnail_position(duration: float) -> float:
    return min(10.0, max(duration * 0.1, 0.5), max(duration - END_MARGIN, 0.0))


def is_valid_image(path: Path) -> bool:
    try:
        with Image.open(path) as im:
            im.verify()
    except (OSError, SyntaxError) as e:
        logger.debug("Rejecting undecodable image {}: {}", path.name, e)
        return False
    return True


def _dir_size(path: Path) -> int:
    total = 0
    for p in path.rglob("*"):
        try:
            if p.is_file():
                total += p.stat().st_size
        except OSError:
            continue
    return total


Runner = Callable[..., tuple]


class PreviewAssetCache:
    """Process-wide owner of the preview cache root.

    Concurrent `assets()` calls for the same fingerprint join one in-flight
    generation instead of racing on the same directory.
    """

    _shared: Optional["PreviewAssetCache"] = None
    _shared_lock = threading.Lock()

    def __init__(
        self,
        root: Path,
        *,
        ffmpeg_path: str = "ffmpeg",
        prober: Optional[MediaProber] = None,
        thumbnail_count: int = 6,
        waveform_size: str = "1000x90",
        run: Runner = run_ffmpeg,
        timeout: Optional[float] = 120.0,
        stream_workers: int = 4,
    ) -> None:
        self.root = Path(root).expanduser()
        self.ffmpeg_path = ffmpeg_path
        self.prober = prober or MediaProber()
        self.thumbnail_count = thumbnail_count
        self.waveform_size = waveform_size
        self.timeout = timeout
        self._run = run
        self._stream_workers = stream_workers
        self._lock = threading.Lock()
        self._in_flight: Dict[str, Future] = {}

    @classmethod
    def shared(cls, **kwargs) -> "PreviewAssetCache":
        """Return the process-wide cache, creating it from kwargs on first use."""
        with cls._shared_lock:
            if cls._shared is None:
                cls._shared = cls(**kwargs)
            return cls._shared

    @classmethod
    def reset_shared(cls) -> None:
        with cls._shared_lock:
            cls._shared = None

    # --- paths ------------------------------------------------------------

    def asset_directory(self, source: Path, *, create: bool = True) -> Path:
        directory = self.root / asset_fingerprint(source)
        if create:
            directory.mkdir(parents=True, exist_ok=True)
        return directory

    def _thumbs(self, directory: Path) -> List[Path]:
        return [directory / f"thumb_{i}.jpg" for i in range(self.thumbnail_count)]

    @staticmethod
    def _waveform_path(directory: Path) -> Path:
        legacy = directory / LEGACY_WAVEFORM
        if not (directory / WAVEFORM).exists() and legacy.exists():
            return legacy
        return directory / WAVEFORM

    # --- public API -------------------------------------------------------

    def assets(self, source: Path, *, stop_event: Optional[threading.Event] = None) -> PreviewAssets:
        source = Path(source)
        fp = asset_fingerprint(source)
        with self._lock:
            fut = self._in_flight.get(fp)
            owner = fut is None
            if owner:
                fut = Future()
                self._in_flight[fp] = fut
        if not owner:
            logger.debug("Joining in-flight preview generation for {}", source.name)
            return fut.result()

        try:
            result = self._generate(source, self.root / fp, stop_event)
        except BaseException as e:
            fut.set_exception(e)
            raise
        else:
            fut.set_result(result)
            return result
        finally:
            with self._lock:
                self._in_flight.pop(fp, None)

    def row_thumbnail(self, source: Path) -> Optional[Path]:
        """Generate (or reuse) only the row thumbnail."""
        source = Path(source)
        directory = self.asset_directory(source)
        dest = directory / ROW_THUMB
        if dest.exists():
            return dest
        duration = self.prober.duration(source)
        if duration is None:
            raise DurationUnavailableError(source)
        hdr = self.prober.hdr_type(source)
        return dest if self._render_row_thumbnail(source, dest, duration, hdr, None) else None

    def cleanup_assets(self, source: Path) -> bool:
        directory = self.asset_directory(source, create=False)
        if not directory.exists():
            return False
        self._remove(directory)
        return True

    def clear(self) -> int:
        if not self.root.exists():
            return 0
        removed = 0
        for d in self.root.iterdir():
            if d.is_dir():
                self._remove(d)
                removed += 1
        log_event("preview_cache_purged", removed=removed, msg=f"Purged {removed} preview cache entries")
        return removed

    def cleanup_older_than(self, days: float, *, now: Optional[float] = None) -> int:
        if not self.root.exists():
            return 0
        cutoff = (now if now is not None else time.time()) - days * 86400
        removed = 0
        freed = 0
        for d in self.root.iterdir():
            if not d.is_dir():
                continue
            try:
                last_access = d.stat().st_mtime
            except OSError:
                continue
            if last_access < cutoff:
                freed += _dir_size(d)
                self._remove(d)
                removed += 1
        if removed:
            logger.info("Removed {} cached preview entries ({:.1f} MB)", removed, freed / (1024 * 1024))
        return removed

    def apply_cleanup_policy(self, policy: CleanupPolicy) -> int:
        policy = CleanupPolicy(policy)
        if policy is CleanupPolicy.PURGE_ON_LAUNCH:
            return self.clear()
        if policy is CleanupPolicy.MANUAL:
            return 0
        return self.cleanup_older_than(policy.retention_days)

    # --- generation -------------------------------------------------------

    def _generate(self, source: Path, directory: Path, stop_event: Optional[threading.Event]) -> PreviewAssets:
        directory.mkdir(parents=True, exist_ok=True)
        os.utime(directory, None)
        manifest = self._read_manifest(directory)
        if manifest is not None and self._is_complete(directory, manifest):
            logger.debug("All preview assets cached for {}", source.name)
            return self._collect(directory, manifest)

        logger.info("Generating preview assets for {}", source.name)
        self._check(stop_event)
        duration = self.prober.duration(source)
        if duration is None:
            raise DurationUnavailableError(source)
        has_video, color = self.prober.video_info(source)
        if has_video is None:
            logger.warning("Could not tell whether {} has video; thumbnails deferred to the next request", source.name)
        hdr = classify_hdr(color)
        streams = [s.index for s in self.prober.audio_streams(source)]

        if has_video:
            row = directory / ROW_THUMB
            if not row.exists():
                self._check(stop_event)
                self._render_row_thumbnail(source, row, duration, hdr, stop_event)
            self._render_filmstrip(source, directory, duration, hdr, stop_event)

        waveform = self._waveform_path(directory)
        if not waveform.exists():
            self._check(stop_event)
            self._render_waveform(source, directory / WAVEFORM, None, stop_event)

        fallbacks = list(manifest.get("fallback_streams", [])) if manifest else []
        if streams:
            fallbacks = self._render_stream_waveforms(source, directory, streams, fallbacks, stop_event)

        manifest = {
            "source": str(source),
            "video": has_video,
            "audio_streams": streams,
            "fallback_streams": fallbacks,
            "thumbnail_count": self.thumbnail_count,
        }
        self._write_manifest(directory, manifest)
        result = self._collect(directory, manifest)
        log_event(
            "preview_assets",
            source=str(source),
            thumbnails=len(result.thumbnails),
            waveform=result.waveform is not None,
            streams=len(result.stream_waveforms),
            msg=f"Preview assets ready for {source.name}",
        )
        return result

    def _render_row_thumbnail(
        self, source: Path, dest: Path, duration: float, hdr: HDRType, stop_event
    ) -> bool:
        pos = row_thumbnail_position(duration)
        for chain in self._chains(hdr):
            cmd = self._ffmpeg("-ss", f"{pos:.3f}", "-i", str(source), "-frames:v", "1",
                               "-vf", ROW_THUMB_SCALE + chain, "-q:v", "2", "-update", "1")
            if self._render(cmd, dest, stop_event):
                return True
        logger.warning("Row thumbnail failed for {}", source.name)
        return False

    def _render_filmstrip(
        self, source: Path, directory: Path, duration: float, hdr: HDRType, stop_event
    ) -> None:
        thumbs = self._thumbs(directory)
        missing = [i for i, p in enumerate(thumbs) if not p.exists()]
        if not missing:
            return
        for attempt, chain in enumerate((_COLOR_ADAPTATION[hdr], "")):
            for i in missing:
                self._check(stop_event)
                pos = thumbnail_position(i, self.thumbnail_count, duration)
                cmd = self._ffmpeg("-ss", f"{pos:.3f}", "-i", str(source), "-frames:v", "1",
                                   "-vf", FILMSTRIP_SCALE + chain, "-pix_fmt", "yuvj420p", "-update", "1")
                self._render(cmd, thumbs[i], stop_event)
            missing = [i for i in missing if not thumbs[i].exists()]
            if not missing:
                return
            if attempt == 0:
                logger.info("Retrying {} filmstrip frame(s) of {} without colour adaptation", len(missing), source.name)
        logger.warning("Filmstrip frames {} missing for {}", missing, source.name)

    def _render_waveform(self, source: Path, dest: Path, stream_index: Optional[int], stop_event) -> bool:
        graph = f"aformat=channel_layouts=mono,showwavespic=s={self.waveform_size}:colors=FFFFFF"
        if stream_index is not None:
            graph = f"[0:{stream_index}]" + graph
        cmd = self._ffmpeg("-i", str(source), "-filter_complex", graph, "-frames:v", "1", "-update", "1")
        ok = self._render(cmd, dest, stop_event)
        if not ok:
            label = "global" if stream_index is None else f"stream {stream_index}"
            logger.warning("Waveform ({}) failed for {}", label, source.name)
        return ok

    def _render_stream_waveforms(
        self,
        source: Path,
        directory: Path,
        streams: List[int],
        fallbacks: List[int],
        stop_event,
    ) -> List[int]:
        todo = [i for i in streams if not (directory / f"waveform_a{i}.jpg").exists()]
        if not todo:
            return [i for i in fallbacks if i in streams]
        self._check(stop_event)
        with WorkerPool(min(self._stream_workers, len(todo)), name="pmc-waveform") as pool:
            futures = {
                i: pool.submit(self._render_waveform, source, directory / f"waveform_a{i}.jpg", i, stop_event)
                for i in todo
            }
            results = {i: f.result() for i, f in futures.items()}

        global_wave = self._waveform_path(directory)
        out = [i for i in fallbacks if i in streams]
        for i, ok in results.items():
            if ok:
                continue
            if global_wave.exists():
                shutil.copyfile(global_wave, directory / f"waveform_a{i}.jpg")
                out.append(i)
                logger.info("Using global waveform for audio stream {} of {}", i, source.name)
        return sorted(set(out))

    # --- helpers ----------------------------------------------------------

    @staticmethod
    def _chains(hdr: HDRType) -> List[str]:
        if hdr is HDRType.NONE:
            return [""]
        return [_COLOR_ADAPTATION[hdr], ""]

    def _ffmpeg(self, *args: str) -> List[str]:
        return [self.ffmpeg_path, "-hide_banner", "-loglevel", "error", "-y", *args]

    def _render(self, cmd: List[str], dest: Path, stop_event) -> bool:
        """Run cmd writing to a temp sibling of dest; keep it only if it decodes."""
        out_tmp = temp_out_path(dest)
        try:
            rc, err = self._run(cmd + [str(out_tmp)], stop_event=stop_event, timeout=self.timeout)
        except GenerationCancelled:
            discard(out_tmp)
            raise
        if rc != 0 or not out_tmp.exists():
            logger.debug("ffmpeg rc={} for {}: {}", rc, dest.name, (err or "").strip()[-500:])
            discard(out_tmp)
            return False
        if not is_valid_image(out_tmp):
            discard(out_tmp)
            return False
        rc_mv, _ = finalize_output(out_tmp, dest)
        return rc_mv == 0

    @staticmethod
    def _check(stop_event: Optional[threading.Event]) -> None:
        if stop_event is not None and stop_event.is_set():
            raise GenerationCancelled("preview generation cancelled")

    def _is_complete(self, directory: Path, manifest: dict) -> bool:
        if manifest.get("thumbnail_count") != self.thumbnail_count:
            return False
        # video presence was unknown when this manifest was written
        if manifest.get("video") is None:
            return False
        expected: List[Path] = []
        if manifest.get("video"):
            expected.append(directory / ROW_THUMB)
            expected.extend(self._thumbs(directory))
        streams = manifest.get("audio_streams", [])
        if streams:
            expected.append(self._waveform_path(directory))
            expected.extend(directory / f"waveform_a{i}.jpg" for i in streams)
        return all(p.exists() for p in expected)

    def _collect(self, directory: Path, manifest: dict) -> PreviewAssets:
        row = directory / ROW_THUMB
        waveform = self._waveform_path(directory)
        streams = {}
        for i in manifest.get("audio_streams", []):
            p = directory / f"waveform_a{i}.jpg"
            if p.exists():
                streams[i] = p
        return PreviewAssets(
            directory=directory,
            row_thumbnail=row if row.exists() else None,
            thumbnails=[p for p in self._thumbs(directory) if p.exists()],
            waveform=waveform if waveform.exists() else None,
            stream_waveforms=streams,
            fallback_streams=list(manifest.get("fallback_streams", [])),
        )

    @staticmethod
    def _read_manifest(directory: Path) -> Optional[dict]:
        path = directory / MANIFEST
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable manifest {}: {}", path, e)
            return None
        return data if isinstance(data, dict) else None

    @staticmethod
    def _write_manifest(directory: Path, manifest: dict) -> None:
        path = directory / MANIFEST
        tmp = temp_out_path(path)
        tmp.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        finalize_output(tmp, path)

    @staticmethod
    def _remove(directory: Path) -> None:
        try:
            shutil.rmtree(directory)
        except OSError as e:
            logger.warning("Could not remove cache entry {}: {}", directory, e)
