"""Chunked preview session.

Used when a source cannot be played directly. Small fixed-length chunks are
transcoded on demand and stitched into a timeline for a PlaybackSurface.
Once every chunk of a section is resident the section is concatenated into
one file in the background and the chunk files are deleted after a delay.

The video timeline is always rebuilt from scratch from the resident set
(never patched), so it cannot point at a chunk that cleanup already removed.
A concatenated section is authoritative for its whole range.
"""
from __future__ import annotations

import math
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Protocol, Set, Tuple

from loguru import logger

from .errors import GenerationCancelled, InputError, ProcessFailedError
from .logging import log_event, truncate
from .runner import discard, finalize_output, run_ffmpeg, temp_out_path
from .scheduler import WorkerPool

SEEK_TOLERANCE = 0.05


@dataclass(frozen=True)
class TimelineSegment:
    start: float
    duration: float
    path: Path
    kind: str
    index: int

    @property
    def end(self) -> float:
        return self.start + self.duration


@dataclass(frozen=True)
class Timeline:
    video: Tuple[TimelineSegment, ...] = ()
    audio: Optional[Path] = None
    duration: float = 0.0

    def segment_at(self, t: float) -> Optional[TimelineSegment]:
        for seg in self.video:
            if seg.start <= t < seg.end:
                return seg
        return None

    def references(self, path: Path) -> bool:
        return any(seg.path == path for seg in self.video)


class PlaybackSurface(Protocol):
    position: float
    is_playing: bool

    def load(self, timeline: Timeline) -> None: ...

    def play(self) -> None: ...

    def pause(self) -> None: ...

    def seek(self, seconds: float) -> None: ...


class ChunkTranscoder:
    """Builds and runs the ffmpeg commands a preview session needs."""

    def __init__(
        self,
        source: Path,
        directory: Path,
        total_duration: float,
        *,
        ffmpeg_path: str = "ffmpeg",
        chunk_duration: float = 15.0,
        max_short_edge: int = 720,
        run: Callable[..., tuple] = run_ffmpeg,
    ) -> None:
        self.source = Path(source)
        self.chunks_dir = Path(directory) / "chunks"
        self.sections_dir = Path(directory) / "sections"
        self.total_duration = total_duration
        self.ffmpeg_path = ffmpeg_path
        self.chunk_duration = chunk_duration
        self.max_short_edge = max_short_edge
        self._run = run
        self.chunks_dir.mkdir(parents=True, exist_ok=True)
        self.sections_dir.mkdir(parents=True, exist_ok=True)

    def chunk_path(self, index: int) -> Path:
        return self.chunks_dir / f"preview_chunk_{index}.mp4"

    def section_path(self, index: int) -> Path:
        return self.sections_dir / f"preview_section_{index}.mp4"

    def audio_path(self, full: bool) -> Path:
        return self.chunks_dir / ("preview_audio_full.m4a" if full else "preview_audio_short.m4a")

    def chunk_command(self, index: int) -> List[str]:
        start = index * self.chunk_duration
        length = max(min(self.chunk_duration, self.total_duration - start), 0.0)
        edge = self.max_short_edge
        scale = f"scale='if(gt(a,1),-2,{edge})':'if(gt(a,1),{edge},-2)'"
        return [
            self.ffmpeg_path, "-hide_banner", "-nostdin", "-y",
            "-analyzeduration", "5M", "-probesize", "10M",
            "-ss", f"{start:.3f}",
            "-i", str(self.source),
            "-t", f"{length:.3f}",
            "-vf", scale,
            "-map", "0:v:0",
            "-c:v", "libx264", "-preset", "veryfast",
            "-b:v", "3M", "-maxrate", "3M", "-bufsize", "6M",
            "-pix_fmt", "yuv420p",
            "-an",
            "-movflags", "+faststart",
        ]

    def audio_command(self, limit: Optional[float]) -> List[str]:
        cmd = [self.ffmpeg_path, "-hide_banner", "-nostdin", "-y", "-i", str(self.source)]
        if limit is not None:
            cmd += ["-t", f"{limit:.3f}"]
        return cmd + ["-vn", "-map", "0:a:0", "-c:a", "aac", "-b:a", "128k", "-ac", "2"]

    def concat_command(self, list_file: Path) -> List[str]:
        return [
            self.ffmpeg_path, "-hide_banner", "-nostdin", "-y",
            "-f", "concat", "-safe", "0",
            "-i", str(list_file),
            "-c", "copy",
            "-movflags", "+faststart",
        ]

    def transcode_chunk(self, index: int, stop_event: Optional[threading.Event] = None) -> Path:
        dest = self.chunk_path(index)
        self._execute(self.chunk_command(index), dest, stop_event)
        return dest

    def extract_audio(self, *, full: bool, stop_event: Optional[threading.Event] = None) -> Path:
        dest = self.audio_path(full)
        limit = None if full else self.chunk_duration
        self._execute(self.audio_command(limit), dest, stop_event)
        return dest

    def concatenate(self, section: int, chunks: Iterable[Path]) -> Path:
        dest = self.section_path(section)
        list_file = self.sections_dir / f"preview_section_{section}.txt"
        lines = []
        for p in chunks:
            escaped = str(p.resolve()).replace("'", "'\\''")
            lines.append(f"file '{escaped}'")
        list_file.write_text("\n".join(lines) + "\n", encoding="utf-8")
        try:
            self._execute(self.concat_command(list_file), dest, None)
        finally:
            discard(list_file)
        return dest

    def delete_chunks(self, indices: Iterable[int]) -> None:
        for i in indices:
            discard(self.chunk_path(i))

    def _execute(self, cmd: List[str], dest: Path, stop_event: Optional[threading.Event]) -> None:
        out_tmp = temp_out_path(dest)
        try:
            rc, err = self._run(cmd + [str(out_tmp)], stop_event=stop_event)
        except GenerationCancelled:
            discard(out_tmp)
            raise
        if rc != 0 or not out_tmp.exists():
            discard(out_tmp)
            raise ProcessFailedError("ffmpeg", rc, err)
        rc_mv, err_mv = finalize_output(out_tmp, dest)
        if rc_mv != 0:
            raise ProcessFailedError("rename", rc_mv, err_mv)


class ChunkedPreviewSession:
    def __init__(
        self,
        transcoder: ChunkTranscoder,
        surface: PlaybackSurface,
        *,
        chunks_per_section: int = 4,
        cleanup_delay: float = 15.0,
        pool: Optional[WorkerPool] = None,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ) -> None:
        if not transcoder.total_duration or transcoder.total_duration <= 0:
            raise InputError(f"Unknown duration for {transcoder.source}")
        self.transcoder = transcoder
        self.surface = surface
        self.chunk_duration = transcoder.chunk_duration
        self.total_duration = transcoder.total_duration
        self.chunks_per_section = max(1, chunks_per_section)
        self.cleanup_delay = cleanup_delay
        self.total_chunks = max(1, math.ceil(self.total_duration / self.chunk_duration))
        self._owns_pool = pool is None
        self._pool = pool or WorkerPool(2, name="pmc-preview")
        self._timer_factory = timer_factory

        self._lock = threading.RLock()
        self._loaded: Set[int] = set()
        self._sections: Set[int] = set()
        self._merging: Set[int] = set()
        self._in_flight: Dict[int, Tuple[Future, threading.Event]] = {}
        self._prefetch: Optional[Tuple[int, threading.Event]] = None
        self._timers: List[threading.Timer] = []
        self._audio: Optional[Path] = None
        self._timeline = Timeline(duration=self.total_duration)
        self._closed = False

    @classmethod
    def create(
        cls,
        source: Path,
        cache_dir: Path,
        total_duration: Optional[float],
        surface: PlaybackSurface,
        *,
        ffmpeg_path: str = "ffmpeg",
        chunk_duration: float = 15.0,
        max_short_edge: int = 720,
        run: Callable[..., tuple] = run_ffmpeg,
        **kwargs,
    ) -> "ChunkedPreviewSession":
        """Session whose chunks and sections live under `cache_dir` (the asset directory)."""
        if not total_duration or total_duration <= 0:
            raise InputError(f"Unknown duration for {source}")
        transcoder = ChunkTranscoder(
            source,
            cache_dir,
            total_duration,
            ffmpeg_path=ffmpeg_path,
            chunk_duration=chunk_duration,
            max_short_edge=max_short_edge,
            run=run,
        )
        return cls(transcoder, surface, **kwargs)

    # --- state ------------------------------------------------------------

    @property
    def timeline(self) -> Timeline:
        with self._lock:
            return self._timeline

    @property
    def loaded_chunks(self) -> FrozenSet[int]:
        with self._lock:
            return frozenset(self._loaded)

    @property
    def concatenated_sections(self) -> FrozenSet[int]:
        with self._lock:
            return frozenset(self._sections)

    def chunk_index(self, t: float) -> int:
        return min(max(int(t // self.chunk_duration), 0), self.total_chunks - 1)

    def section_index(self, chunk: int) -> int:
        return chunk // self.chunks_per_section

    def section_chunks(self, section: int) -> range:
        first = section * self.chunks_per_section
        return range(first, min(first + self.chunks_per_section, self.total_chunks))

    # --- lifecycle --------------------------------------------------------

    def activate(self, *, autoplay: bool = True) -> Timeline:
        """Short audio + chunk 0, then full audio and chunk 1 in the background."""
        try:
            self._audio = self.transcoder.extract_audio(full=False)
        except ProcessFailedError as e:
            logger.warning("Preview audio unavailable for {}: {}", self.transcoder.source.name, truncate(e.stderr, max_lines=5))
        self.transcoder.transcode_chunk(0)
        with self._lock:
            self._loaded.add(0)
        timeline = self.rebuild_timeline()
        self._maybe_concatenate(0)
        if autoplay:
            self.surface.play()
        log_event("preview_session_active", source=str(self.transcoder.source), chunks=self.total_chunks)

        if self._audio is not None:
            self._pool.submit(self._swap_full_audio)
        self._schedule_prefetch(1)
        return timeline

    def close(self) -> None:
        with self._lock:
            self._closed = True
            if self._prefetch is not None:
                self._prefetch[1].set()
            timers, self._timers = self._timers, []
        for t in timers:
            t.cancel()
        if self._owns_pool:
            self._pool.shutdown(wait=False, cancel_futures=True)

    # --- loading ----------------------------------------------------------

    def load_chunk_for_time(self, t: float) -> Optional[Future]:
        """Ensure the chunk covering `t` is playable; returns its load future or None."""
        index = self.chunk_index(t)
        with self._lock:
            if self._closed:
                return None
            if index in self._loaded or self.section_index(index) in self._sections:
                return None
            joins_prefetch = self._prefetch is not None and self._prefetch[0] == index
            if self._prefetch is not None and not joins_prefetch:
                logger.debug("Superseding prefetch of chunk {}", self._prefetch[0])
                self._prefetch[1].set()
            # a joined prefetch is now a user request and must not be superseded
            self._prefetch = None
            entry = self._in_flight.get(index)
            if entry is not None and not entry[0].done() and not entry[1].is_set():
                fut = entry[0]
                if joins_prefetch:
                    fut.add_done_callback(lambda f: self._prefetch_after(index, f))
                return fut
        return self._submit_load(index, threading.Event(), prefetch_next=True)

    def _prefetch_after(self, index: int, fut: Future) -> None:
        if fut.cancelled() or fut.exception() is not None or fut.result() is None:
            return
        self._schedule_prefetch(index + 1)

    def _schedule_prefetch(self, index: int) -> None:
        with self._lock:
            if self._closed or index >= self.total_chunks:
                return
            entry = self._in_flight.get(index)
            if entry is not None and not entry[1].is_set():
                return
            if index in self._loaded or self.section_index(index) in self._sections:
                return
            if self._prefetch is not None:
                self._prefetch[1].set()
            stop = threading.Event()
            self._prefetch = (index, stop)
        self._submit_load(index, stop, prefetch_next=False)

    def _submit_load(self, index: int, stop: threading.Event, *, prefetch_next: bool) -> Future:
        fut = self._pool.submit(self._load_chunk, index, stop, prefetch_next)
        with self._lock:
            if not fut.done():
                self._in_flight[index] = (fut, stop)
        fut.add_done_callback(lambda f: self._forget(index, f))
        return fut

    def _forget(self, index: int, fut: Future) -> None:
        with self._lock:
            entry = self._in_flight.get(index)
            if entry is not None and entry[0] is fut:
                del self._in_flight[index]

    def _load_chunk(self, index: int, stop: threading.Event, prefetch_next: bool) -> Optional[Path]:
        try:
            path = self.transcoder.transcode_chunk(index, stop_event=stop)
        except GenerationCancelled:
            logger.debug("Chunk {} load cancelled", index)
            return None
        except ProcessFailedError as e:
            logger.warning("Chunk {} failed: {}", index, truncate(e.stderr, max_lines=5))
            return None
        with self._lock:
            if self._closed:
                return path
            self._loaded.add(index)
            if self._prefetch is not None and self._prefetch[0] == index:
                self._prefetch = None
        self.rebuild_timeline()
        self._maybe_concatenate(self.section_index(index))
        if prefetch_next:
            self._schedule_prefetch(index + 1)
        return path

    def _swap_full_audio(self) -> None:
        try:
            path = self.transcoder.extract_audio(full=True)
        except ProcessFailedError as e:
            logger.warning("Full preview audio failed: {}", truncate(e.stderr, max_lines=5))
            return
        with self._lock:
            if self._closed:
                return
            self._audio = path
        self.rebuild_timeline()

    # --- sections ---------------------------------------------------------

    def _maybe_concatenate(self, section: int) -> None:
        chunks = self.section_chunks(section)
        with self._lock:
            if self._closed or section in self._sections or section in self._merging:
                return
            if not all(i in self._loaded for i in chunks):
                return
            self._merging.add(section)
        self._pool.submit(self._concatenate, section, list(chunks))

    def _concatenate(self, section: int, chunks: List[int]) -> None:
        logger.info("Section {} complete, concatenating chunks {}", section, chunks)
        try:
            self.transcoder.concatenate(section, [self.transcoder.chunk_path(i) for i in chunks])
        except ProcessFailedError as e:
            logger.warning("Concatenating section {} failed: {}", section, truncate(e.stderr, max_lines=5))
            with self._lock:
                self._merging.discard(section)
            return
        with self._lock:
            self._merging.discard(section)
            if self._closed:
                return
            self._sections.add(section)
        self.rebuild_timeline()
        timer = self._timer_factory(self.cleanup_delay, self._delete_section_chunks, args=(section, chunks))
        timer.daemon = True
        with self._lock:
            self._timers.append(timer)
        timer.start()

    def _delete_section_chunks(self, section: int, chunks: List[int]) -> None:
        with self._lock:
            if self._closed or section not in self._sections:
                return
            if any(self._timeline.references(self.transcoder.chunk_path(i)) for i in chunks):
                self.rebuild_timeline()
            self.transcoder.delete_chunks(chunks)
            self._loaded.difference_update(chunks)
        logger.debug("Deleted merged chunk files {} of section {}", chunks, section)

    # --- timeline ---------------------------------------------------------

    def rebuild_timeline(self) -> Timeline:
        """Recreate the whole video track from sections and resident chunks."""
        with self._lock:
            segments: List[TimelineSegment] = []
            section_span = self.chunk_duration * self.chunks_per_section
            i = 0
            while i < self.total_chunks:
                section = self.section_index(i)
                if section in self._sections:
                    path = self.transcoder.section_path(section)
                    if path.exists():
                        start = section * section_span
                        segments.append(
                            TimelineSegment(start, min(section_span, self.total_duration - start), path, "section", section)
                        )
                        i = self.section_chunks(section).stop
                        continue
                    logger.warning("Section file missing: {}, falling back to chunks", path)
                    self._sections.discard(section)
                if i in self._loaded:
                    path = self.transcoder.chunk_path(i)
                    if path.exists():
                        start = i * self.chunk_duration
                        segments.append(
                            TimelineSegment(start, min(self.chunk_duration, self.total_duration - start), path, "chunk", i)
                        )
                    else:
                        self._loaded.discard(i)
                i += 1

            timeline = Timeline(tuple(segments), self._audio, self.total_duration)
            self._timeline = timeline
            position = self.surface.position
            playing = self.surface.is_playing
            self.surface.load(timeline)
            self.surface.seek(position)
            if playing:
                self.surface.play()
            else:
                self.surface.pause()
        return timeline

    # --- navigation -------------------------------------------------------

    def next_cached_segment_start(self, t: float) -> Optional[float]:
        for seg in self.timeline.video:
            if seg.start > t + SEEK_TOLERANCE:
                return seg.start
        return None

    def previous_cached_segment_end(self, t: float) -> Optional[float]:
        for seg in reversed(self.timeline.video):
            if seg.end < t - SEEK_TOLERANCE:
                return max(seg.end - SEEK_TOLERANCE, seg.start)
        return None
