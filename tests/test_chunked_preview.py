from concurrent.futures import Future
from pathlib import Path

import pytest

from pmc.chunked_preview import ChunkedPreviewSession, ChunkTranscoder, Timeline
from pmc.errors import GenerationCancelled, InputError


class FakeRun:
    def __init__(self, fail_when=None):
        self.calls = []
        self.concat_lists = []
        self.fail_when = fail_when

    def __call__(self, cmd, *, stop_event=None, timeout=None):
        self.calls.append(cmd)
        if stop_event is not None and stop_event.is_set():
            raise GenerationCancelled("stopped")
        if "concat" in cmd:
            self.concat_lists.append(Path(cmd[cmd.index("-i") + 1]).read_text())
        if self.fail_when is not None and self.fail_when(cmd):
            return 1, "boom"
        Path(cmd[-1]).write_bytes(b"media")
        return 0, ""


class FakeSurface:
    def __init__(self):
        self.position = 0.0
        self.is_playing = False
        self.loaded = []
        self.seeks = []

    def load(self, timeline):
        self.loaded.append(timeline)

    def play(self):
        self.is_playing = True

    def pause(self):
        self.is_playing = False

    def seek(self, seconds):
        self.seeks.append(seconds)
        self.position = seconds


class ImmediatePool:
    def submit(self, fn, *args, **kwargs):
        fut = Future()
        try:
            fut.set_result(fn(*args, **kwargs))
        except Exception as e:
            fut.set_exception(e)
        return fut

    def shutdown(self, wait=True, *, cancel_futures=False):
        pass


class DeferredPool(ImmediatePool):
    def __init__(self):
        self.tasks = []

    def submit(self, fn, *args, **kwargs):
        fut = Future()
        self.tasks.append((fut, fn, args, kwargs))
        return fut

    def run_all(self):
        while self.tasks:
            fut, fn, args, kwargs = self.tasks.pop(0)
            try:
                fut.set_result(fn(*args, **kwargs))
            except Exception as e:
                fut.set_exception(e)


class FakeTimer:
    created = []

    def __init__(self, delay, fn, args=()):
        self.delay = delay
        self.fn = fn
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fn(*self.args)


@pytest.fixture(autouse=True)
def reset_timers():
    FakeTimer.created = []
    yield


def make_session(tmp_path, run=None, pool=None, duration=100.0, chunks_per_section=4):
    src = tmp_path / "clip.mxf"
    src.write_bytes(b"src")
    run = run or FakeRun()
    transcoder = ChunkTranscoder(src, tmp_path / "assets", duration, chunk_duration=15.0, run=run)
    surface = FakeSurface()
    session = ChunkedPreviewSession(
        transcoder,
        surface,
        chunks_per_section=chunks_per_section,
        cleanup_delay=15.0,
        pool=pool or ImmediatePool(),
        timer_factory=FakeTimer,
    )
    return session, surface, run


def assert_exclusive(timeline: Timeline):
    segs = timeline.video
    for a, b in zip(segs, segs[1:]):
        assert a.end <= b.start + 1e-9


# --- transcoder -----------------------------------------------------------------

def test_chunk_command(tmp_path):
    t = ChunkTranscoder(tmp_path / "a.mxf", tmp_path, 100.0, chunk_duration=15.0, max_short_edge=540)
    cmd = t.chunk_command(6)
    assert cmd.index("-analyzeduration") < cmd.index("-i")
    assert cmd[cmd.index("-ss") + 1] == "90.000"
    assert cmd[cmd.index("-t") + 1] == "10.000"
    assert "-an" in cmd
    assert "libx264" in cmd
    assert "540" in cmd[cmd.index("-vf") + 1]
    assert t.chunk_path(6).name == "preview_chunk_6.mp4"
    assert t.chunk_path(6).parent.name == "chunks"
    assert t.section_path(1).parent.name == "sections"


def test_audio_paths_and_limit(tmp_path):
    t = ChunkTranscoder(tmp_path / "a.mxf", tmp_path, 100.0)
    assert t.audio_path(False).name == "preview_audio_short.m4a"
    assert t.audio_path(True).name == "preview_audio_full.m4a"
    assert "-t" in t.audio_command(15.0)
    assert "-t" not in t.audio_command(None)


def test_concatenate_writes_escaped_list_and_removes_it(tmp_path):
    run = FakeRun()
    t = ChunkTranscoder(tmp_path / "a.mxf", tmp_path, 100.0, run=run)
    odd = t.chunks_dir / "it's.mp4"
    out = t.concatenate(0, [t.chunk_path(0), odd])
    assert out.exists()
    assert "file '" in run.concat_lists[0]
    assert "it'\\''s.mp4" in run.concat_lists[0]
    assert not list(t.sections_dir.glob("*.txt"))


def test_failed_transcode_raises_and_leaves_nothing(tmp_path):
    from pmc.errors import ProcessFailedError

    t = ChunkTranscoder(tmp_path / "a.mxf", tmp_path, 100.0, run=FakeRun(fail_when=lambda c: True))
    with pytest.raises(ProcessFailedError):
        t.transcode_chunk(0)
    assert list(t.chunks_dir.iterdir()) == []


# --- session ------------------------------------------------------------------------

def test_invalid_duration_is_rejected(tmp_path):
    with pytest.raises(InputError):
        make_session(tmp_path, duration=0.0)


def test_activate_loads_first_chunk_audio_and_prefetch(tmp_path):
    session, surface, run = make_session(tmp_path)
    session.activate()

    assert session.total_chunks == 7
    assert session.loaded_chunks == {0, 1}
    timeline = session.timeline
    assert [(s.kind, s.index) for s in timeline.video] == [("chunk", 0), ("chunk", 1)]
    assert timeline.audio.name == "preview_audio_full.m4a"
    assert surface.is_playing
    assert_exclusive(timeline)


def test_activate_without_audio_continues(tmp_path):
    run = FakeRun(fail_when=lambda cmd: "-vn" in cmd)
    session, surface, _ = make_session(tmp_path, run=run)
    session.activate()
    assert session.timeline.audio is None
    assert 0 in session.loaded_chunks


def test_first_chunk_failure_propagates(tmp_path):
    from pmc.errors import ProcessFailedError

    run = FakeRun(fail_when=lambda cmd: "-an" in cmd)
    session, _, _ = make_session(tmp_path, run=run)
    with pytest.raises(ProcessFailedError):
        session.activate()


def test_section_concatenation_and_cleanup(tmp_path):
    session, surface, run = make_session(tmp_path)
    session.activate()
    session.load_chunk_for_time(50.0)  # chunk 3, then prefetch 4
    assert session.loaded_chunks == {0, 1, 3, 4}
    assert session.concatenated_sections == frozenset()

    session.load_chunk_for_time(35.0)  # chunk 2 completes section 0
    assert session.concatenated_sections == {0}
    timeline = session.timeline
    first = timeline.video[0]
    assert (first.kind, first.index, first.start, first.duration) == ("section", 0, 0.0, 60.0)
    assert [(s.kind, s.index) for s in timeline.video[1:]] == [("chunk", 4)]
    for i in range(4):
        assert not timeline.references(session.transcoder.chunk_path(i))
    assert_exclusive(timeline)

    [timer] = FakeTimer.created
    assert timer.started and timer.daemon
    assert timer.delay == 15.0
    assert session.transcoder.chunk_path(0).exists()
    timer.fire()
    for i in range(4):
        assert not session.transcoder.chunk_path(i).exists()
    assert session.loaded_chunks == {4}
    assert session.timeline.video[0].kind == "section"

    # covered by the section: nothing to load
    assert session.load_chunk_for_time(10.0) is None


def test_every_published_timeline_is_exclusive(tmp_path):
    session, surface, _ = make_session(tmp_path)
    session.activate()
    for t in (50.0, 35.0, 95.0, 65.0, 80.0):
        session.load_chunk_for_time(t)
    for timer in FakeTimer.created:
        timer.fire()
    assert session.concatenated_sections == {0, 1}
    assert surface.loaded
    for timeline in surface.loaded:
        assert_exclusive(timeline)
    last = session.timeline.video
    assert [(s.kind, s.start, s.duration) for s in last] == [("section", 0.0, 60.0), ("section", 60.0, 40.0)]


def test_missing_section_is_demoted_to_chunks(tmp_path):
    session, _, _ = make_session(tmp_path)
    session.activate()
    session.load_chunk_for_time(50.0)
    session.load_chunk_for_time(35.0)
    session.transcoder.section_path(0).unlink()

    timeline = session.rebuild_timeline()
    assert session.concatenated_sections == frozenset()
    assert [(s.kind, s.index) for s in timeline.video] == [("chunk", i) for i in range(5)]


def test_missing_section_after_cleanup_leaves_gap(tmp_path):
    session, _, _ = make_session(tmp_path)
    session.activate()
    session.load_chunk_for_time(50.0)
    session.load_chunk_for_time(35.0)
    FakeTimer.created[0].fire()
    session.transcoder.section_path(0).unlink()

    timeline = session.rebuild_timeline()
    assert [(s.kind, s.index) for s in timeline.video] == [("chunk", 4)]
    # the range can be loaded again chunk by chunk
    assert session.load_chunk_for_time(5.0) is not None
    assert 0 in session.loaded_chunks


def test_failed_chunk_is_not_marked_loaded(tmp_path):
    run = FakeRun(fail_when=lambda cmd: "-ss" in cmd and cmd[cmd.index("-ss") + 1] == "45.000")
    session, _, _ = make_session(tmp_path, run=run)
    session.activate()
    fut = session.load_chunk_for_time(50.0)
    assert fut.result() is None
    assert 3 not in session.loaded_chunks


def test_seek_supersedes_prefetch(tmp_path):
    pool = DeferredPool()
    session, _, run = make_session(tmp_path, pool=pool)
    session.activate()
    assert session.loaded_chunks == {0}

    fut = session.load_chunk_for_time(80.0)  # chunk 5
    assert session.load_chunk_for_time(80.0) is fut
    pool.run_all()

    assert 1 not in session.loaded_chunks
    assert 5 in session.loaded_chunks
    # chunk 6 was prefetched after the seek target
    assert 6 in session.loaded_chunks


def test_seek_back_to_superseded_prefetch_loads_it_again(tmp_path):
    pool = DeferredPool()
    session, _, _ = make_session(tmp_path, pool=pool)
    session.activate()  # prefetch of chunk 1 queued

    session.load_chunk_for_time(80.0)  # supersedes the prefetch
    fut = session.load_chunk_for_time(20.0)  # back to chunk 1 before the cancelled job ran
    assert fut is not None
    pool.run_all()

    assert fut.result() == session.transcoder.chunk_path(1)
    assert 1 in session.loaded_chunks
    assert any(s.index == 1 for s in session.timeline.video)


def test_seek_onto_prefetched_chunk_joins_it_and_prefetches_next(tmp_path):
    pool = DeferredPool()
    session, _, run = make_session(tmp_path, pool=pool)
    session.activate()
    queued = len(pool.tasks)

    fut = session.load_chunk_for_time(20.0)  # chunk 1, already being prefetched
    assert fut is not None
    assert len(pool.tasks) == queued
    pool.run_all()

    assert fut.result() == session.transcoder.chunk_path(1)
    assert session.loaded_chunks == {0, 1, 2}


def test_single_chunk_source_is_concatenated_on_activate(tmp_path):
    session, _, run = make_session(tmp_path, duration=10.0)
    session.activate()

    assert session.total_chunks == 1
    assert session.concatenated_sections == {0}
    assert [(s.kind, s.index, s.duration) for s in session.timeline.video] == [("section", 0, 10.0)]
    assert len(FakeTimer.created) == 1


def test_one_chunk_sections_merge_from_the_first_chunk(tmp_path):
    session, _, _ = make_session(tmp_path, chunks_per_section=1)
    session.activate()
    assert {0, 1} <= session.concatenated_sections


def test_rebuild_preserves_position_and_play_state(tmp_path):
    session, surface, _ = make_session(tmp_path)
    session.activate(autoplay=False)
    surface.position = 12.5
    surface.is_playing = False
    session.rebuild_timeline()
    assert surface.seeks[-1] == 12.5
    assert not surface.is_playing

    surface.play()
    session.rebuild_timeline()
    assert surface.is_playing


def test_navigation_between_cached_segments(tmp_path):
    session, _, _ = make_session(tmp_path)
    session.activate()
    session.load_chunk_for_time(65.0)  # chunk 4, then prefetch 5
    # resident: 0,1 (0-30) and 4,5 (60-90)
    assert session.next_cached_segment_start(20.0) == 60.0
    assert session.next_cached_segment_start(85.0) is None
    assert session.previous_cached_segment_end(70.0) == pytest.approx(29.95)
    assert session.previous_cached_segment_end(5.0) is None


def test_close_cancels_timers_and_stops_loading(tmp_path):
    session, _, _ = make_session(tmp_path)
    session.activate()
    session.load_chunk_for_time(50.0)
    session.load_chunk_for_time(35.0)
    session.close()
    assert all(t.cancelled for t in FakeTimer.created)
    assert session.load_chunk_for_time(95.0) is None


def test_create_places_chunks_under_cache_dir(tmp_path):
    src = tmp_path / "clip.mxf"
    src.write_bytes(b"src")
    run = FakeRun()
    session = ChunkedPreviewSession.create(
        src, tmp_path / "asset-dir", 40.0, FakeSurface(),
        chunk_duration=10.0, run=run, pool=ImmediatePool(), timer_factory=FakeTimer,
    )
    assert session.total_chunks == 4
    assert session.transcoder.chunk_path(0).parent == tmp_path / "asset-dir" / "chunks"
    session.activate()
    assert session.transcoder.chunk_path(0).exists()


def test_create_rejects_unknown_duration(tmp_path):
    with pytest.raises(InputError):
        ChunkedPreviewSession.create(tmp_path / "clip.mxf", tmp_path, None, FakeSurface())
