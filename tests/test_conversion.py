from pathlib import Path
from unittest.mock import Mock

import pytest

from pmc.command_builder import CommandBuilder, ConversionJob
from pmc.conversion import ConversionQueue, ItemStatus
from pmc.presets import TV_HD, get_preset
from pmc.probe import MediaProber
from pmc.supervisor import ConversionResult, ConversionState


class FakeSupervisor:
    """Finishes immediately; sources named fail* fail."""

    def __init__(self):
        self.commands = []

    def run(self, command, *, on_progress=None, on_complete=None):
        self.commands.append(command)
        if on_progress is not None:
            on_progress(0.5, "00:01")
        failed = command.output_path.name.startswith("fail")
        state = ConversionState.FAILED if failed else ConversionState.COMPLETED
        return ConversionResult(state=state, output_path=command.output_path, returncode=1 if failed else 0)

    def cancel(self):
        return False


def make_prober(duration=60.0):
    prober = Mock(spec=MediaProber)
    prober.duration.return_value = duration
    prober.audio_streams.return_value = []
    prober.is_interlaced.return_value = None
    return prober


def make_job(name, **kw):
    return ConversionJob(
        source=Path(f"/in/{name}.mov"),
        destination=Path(f"/out/{name}_tv_hd"),
        preset=get_preset(TV_HD),
        **kw,
    )


@pytest.fixture
def supervisors():
    return []


@pytest.fixture
def queue(supervisors):
    def factory():
        sup = FakeSupervisor()
        supervisors.append(sup)
        return sup

    return ConversionQueue(CommandBuilder(make_prober()), workers=2, supervisor_factory=factory)


def test_add_probes_duration_and_weights_by_trim(queue):
    item = queue.add(make_job("a", trim_start=10.0))
    assert item.job.expected_duration == 60.0
    assert item.duration == 50.0
    assert item.status is ItemStatus.WAITING


def test_add_keeps_known_duration(queue):
    item = queue.add(make_job("a", expected_duration=20.0, trim_end=5.0))
    assert item.duration == 5.0
    queue.builder.prober.duration.assert_not_called()


def test_overall_progress_is_duration_weighted(queue):
    a = queue.add(make_job("a", expected_duration=10.0))
    b = queue.add(make_job("b", expected_duration=30.0))
    c = queue.add(make_job("c", expected_duration=100.0))
    a.status = ItemStatus.DONE
    b.status = ItemStatus.CONVERTING
    b.progress = 0.5
    c.status = ItemStatus.FAILED
    assert queue.overall_progress() == pytest.approx((10 + 15) / 40)


def test_overall_progress_empty_is_zero(queue):
    assert queue.overall_progress() == 0.0


def test_run_converts_and_maps_states(queue, supervisors):
    ok = queue.add(make_job("ok"))
    bad = queue.add(make_job("fail"))
    finished = queue.run()

    assert {i.id for i in finished} == {ok.id, bad.id}
    assert ok.status is ItemStatus.DONE
    assert ok.progress == 1.0
    assert ok.result.success
    assert bad.status is ItemStatus.FAILED
    assert ok.supervisor is None
    # one supervisor per job
    assert len(supervisors) == 2
    assert queue.overall_progress() == 1.0


def test_cancelled_waiting_item_is_skipped(queue, supervisors):
    keep = queue.add(make_job("keep"))
    drop = queue.add(make_job("drop"))
    assert queue.cancel_item(drop.id)
    queue.run()
    assert drop.status is ItemStatus.CANCELLED
    assert keep.status is ItemStatus.DONE
    assert [c.output_path.name for s in supervisors for c in s.commands] == ["keep_tv_hd.mov"]


def test_cancel_running_item_delegates_to_supervisor(queue):
    item = queue.add(make_job("a"))
    sup = Mock()
    sup.cancel.return_value = True
    item.status = ItemStatus.CONVERTING
    item.supervisor = sup
    assert queue.cancel_item(item.id)
    sup.cancel.assert_called_once_with()


def test_cancel_unknown_item(queue):
    assert queue.cancel_item("missing") is False
