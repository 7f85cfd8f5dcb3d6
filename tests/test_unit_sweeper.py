import asyncio
import time
from datetime import timedelta

import pytest

from blocker.jobs.sweeper import Sweeper, SweepOutcome
from blocker.services.dispatcher import BatchDispatcher
from blocker.services.skyd import SkydUnreachableError
from blocker.utils.time import utc_now

from conftest import FakeSkyd


def _sweeper(store, skyd, **kwargs) -> Sweeper:
    kwargs.setdefault("sleep_between_scans", 60.0)
    kwargs.setdefault("sleep_on_err_step", 10.0)
    kwargs.setdefault("sleep_on_err_steps", 6)
    return Sweeper(store, BatchDispatcher(skyd), **kwargs)


def _seed(store, names, start=None, step=timedelta(minutes=1)):
    start = start or utc_now() - timedelta(minutes=30)
    stamps = []
    for i, name in enumerate(names):
        ts = start + step * i
        store.add_skylink(name, timestamp_added=ts)
        stamps.append(ts)
    return stamps


# ------------------------------ state machine ------------------------------ #

def test_initial_state_sweeps_immediately(store, fake_skyd):
    sweeper = _sweeper(store, fake_skyd)
    assert sweeper.state.sleep_length == 0
    assert sweeper.state.consecutive_errors == 0


def test_error_backoff_is_linear_and_capped(store, fake_skyd):
    sweeper = _sweeper(store, fake_skyd)
    sleeps = []
    for _ in range(8):
        sleeps.append(sweeper.record_outcome(SweepOutcome.ERROR, error=RuntimeError("db down")))
        assert sweeper.state.consecutive_errors <= 6
    assert sleeps == [10, 20, 30, 40, 50, 60, 60, 60]
    assert sweeper.state.last_error == "db down"


def test_no_work_resets_error_streak(store, fake_skyd):
    sweeper = _sweeper(store, fake_skyd)
    sweeper.record_outcome(SweepOutcome.ERROR)
    sweeper.record_outcome(SweepOutcome.ERROR)

    assert sweeper.record_outcome(SweepOutcome.NO_WORK) == 60.0
    assert sweeper.state.consecutive_errors == 0
    assert sweeper.state.last_error is None


def test_success_sweeps_again_right_away(store, fake_skyd):
    sweeper = _sweeper(store, fake_skyd)
    sweeper.record_outcome(SweepOutcome.ERROR)

    assert sweeper.record_outcome(SweepOutcome.SUCCESS) == 0.0
    assert sweeper.state.consecutive_errors == 0


def test_missing_collaborators_fail_fast(store, fake_skyd):
    with pytest.raises(ValueError):
        Sweeper(None, BatchDispatcher(fake_skyd))  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        Sweeper(store, None)  # type: ignore[arg-type]


# ---------------------------------- sweep ---------------------------------- #

def test_no_work_advances_checkpoint_to_now(store, fake_skyd):
    sweeper = _sweeper(store, fake_skyd)
    before = utc_now()
    outcome = asyncio.run(sweeper.sweep_and_block())

    assert outcome is SweepOutcome.NO_WORK
    assert store.latest_block_timestamp() >= before
    assert fake_skyd.requests == []


def test_sweep_isolates_failure_and_records_progress(store, fake_skyd):
    names = [f"skylink_{i}" for i in range(16)]
    names[9] = "throwerror"
    stamps = _seed(store, names)

    written = []
    original = store.set_latest_block_timestamp

    def recording(ts):
        written.append(ts)
        original(ts)

    store.set_latest_block_timestamp = recording  # type: ignore[method-assign]
    sweeper = _sweeper(store, fake_skyd)
    before = utc_now()
    outcome = asyncio.run(sweeper.sweep_and_block())

    assert outcome is SweepOutcome.SUCCESS
    # chunk checkpoint: last skylink accepted before the failing one
    assert written[0] == stamps[8]
    # then the scan window moves to "now"
    assert written[-1] >= before
    assert [len(r) for r in fake_skyd.requests] == [16, 8, 8, 4, 2, 1, 1, 2, 4]

    pending = store.skylinks_to_block()
    assert [p.skylink for p in pending] == ["throwerror"]


def test_failing_skylink_alone_is_not_a_success(store):
    skyd = FakeSkyd()
    _seed(store, ["ok", "throwerror"])
    sweeper = _sweeper(store, skyd)

    assert asyncio.run(sweeper.sweep_and_block()) is SweepOutcome.SUCCESS
    # only the failing skylink is left; it is retried but nothing gets blocked
    assert asyncio.run(sweeper.sweep_and_block()) is SweepOutcome.NO_WORK
    assert skyd.requests[-1] == ["throwerror"]


def test_sweep_splits_into_chunks_in_order(store, fake_skyd):
    names = [f"s{i}" for i in range(10)]
    _seed(store, list(reversed(names)), start=utc_now() - timedelta(minutes=5), step=timedelta(seconds=-1))
    sweeper = _sweeper(store, fake_skyd, chunk_size=4)
    asyncio.run(sweeper.sweep_and_block())

    assert fake_skyd.requests == [names[0:4], names[4:8], names[8:10]]


def test_checkpoint_never_moves_backwards(store, fake_skyd):
    _seed(store, ["a", "b"], start=utc_now() - timedelta(minutes=50))
    checkpoint = utc_now() - timedelta(minutes=10)
    store.set_latest_block_timestamp(checkpoint)

    written = []
    original = store.set_latest_block_timestamp

    def recording(ts):
        written.append(ts)
        original(ts)

    store.set_latest_block_timestamp = recording  # type: ignore[method-assign]
    asyncio.run(_sweeper(store, fake_skyd).sweep_and_block())

    # a, b are inside the skew window but older than the checkpoint
    assert fake_skyd.requests == [["a", "b"]]
    assert len(written) == 1
    assert written[0] > checkpoint


def test_store_failure_propagates(store, fake_skyd, monkeypatch):
    def broken():
        raise RuntimeError("database unreachable")

    monkeypatch.setattr(store, "skylinks_to_block", broken)
    with pytest.raises(RuntimeError):
        asyncio.run(_sweeper(store, fake_skyd).sweep_and_block())


def test_unreachable_skyd_propagates(store):
    _seed(store, ["a"])
    with pytest.raises(SkydUnreachableError):
        asyncio.run(_sweeper(store, FakeSkyd(unreachable=True)).sweep_and_block())
    assert [p.skylink for p in store.skylinks_to_block()] == ["a"]


def test_skyd_dropping_midway_keeps_accepted_skylinks(store):
    class DroppingSkyd(FakeSkyd):
        async def block_skylinks(self, skylinks):
            if len(self.requests) == 2:
                self.requests.append(list(skylinks))
                raise SkydUnreachableError("connection reset")
            await super().block_skylinks(skylinks)

    stamps = _seed(store, ["a", "b", "throwerror", "c"])
    skyd = DroppingSkyd()
    with pytest.raises(SkydUnreachableError):
        asyncio.run(_sweeper(store, skyd).sweep_and_block())

    assert skyd.requests[1] == ["a", "b"]
    assert [p.skylink for p in store.skylinks_to_block()] == ["throwerror", "c"]
    assert store.latest_block_timestamp() == stamps[1]


def test_checkpoint_write_failure_is_not_fatal(store, fake_skyd, monkeypatch):
    _seed(store, ["a"])

    def broken(ts):
        raise RuntimeError("write conflict")

    monkeypatch.setattr(store, "set_latest_block_timestamp", broken)
    outcome = asyncio.run(_sweeper(store, fake_skyd).sweep_and_block())

    assert outcome is SweepOutcome.SUCCESS
    assert store.skylinks_to_block() == []


def test_failed_skylinks_are_marked(store, session_factory):
    from blocker.models.db import BlockedSkylink

    _seed(store, ["ok", "throwerror"])
    asyncio.run(_sweeper(store, FakeSkyd()).sweep_and_block())

    with session_factory() as session:
        rows = {r.skylink: r for r in session.query(BlockedSkylink).all()}
    assert rows["throwerror"].failed is True
    assert rows["throwerror"].failed_attempts == 1
    assert rows["throwerror"].blocked_at is None
    assert rows["ok"].blocked_at is not None


def test_unrecorded_blocks_back_off_to_quiet_interval(store, fake_skyd, monkeypatch):
    _seed(store, ["a"])

    def broken(skylinks, at=None):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(store, "mark_blocked", broken)
    outcome = asyncio.run(_sweeper(store, fake_skyd).sweep_and_block())

    assert outcome is SweepOutcome.NO_WORK
    assert fake_skyd.requests == [["a"]]
    assert [p.skylink for p in store.skylinks_to_block()] == ["a"]


def test_slow_store_does_not_block_event_loop(store, fake_skyd, monkeypatch):
    def slow_scan():
        time.sleep(0.5)
        return []

    monkeypatch.setattr(store, "skylinks_to_block", slow_scan)
    sweeper = _sweeper(store, fake_skyd)

    async def scenario():
        gaps = []

        async def ticker():
            last = time.perf_counter()
            while True:
                await asyncio.sleep(0.05)
                now = time.perf_counter()
                gaps.append(now - last)
                last = now

        task = asyncio.create_task(ticker())
        await asyncio.sleep(0)
        outcome = await sweeper.sweep_and_block()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        return outcome, gaps

    outcome, gaps = asyncio.run(scenario())
    assert outcome is SweepOutcome.NO_WORK
    assert len(gaps) >= 5
    assert max(gaps) < 0.2


# ---------------------------------- loop ----------------------------------- #

def test_loop_sweeps_on_start_and_stops_without_waiting(store, fake_skyd):
    async def scenario():
        sweeper = _sweeper(store, fake_skyd, sleep_between_scans=60.0)
        sweeper.start()
        await asyncio.sleep(0.1)
        state = dict(sweeper.state.snapshot())
        # idle for 60s now; stop must interrupt it
        await asyncio.wait_for(sweeper.stop(), timeout=1.0)
        return sweeper, state

    sweeper, state = asyncio.run(scenario())
    assert state["sweeps"] == 1
    assert state["last_outcome"] == "NO_WORK"
    assert state["sleep_length"] == 60.0
    assert sweeper.running is False


def test_loop_backs_off_on_repeated_errors(store, fake_skyd, monkeypatch):
    def broken():
        raise RuntimeError("database unreachable")

    monkeypatch.setattr(store, "skylinks_to_block", broken)

    async def scenario():
        sweeper = _sweeper(store, fake_skyd, sleep_on_err_step=0.01, sleep_on_err_steps=3)
        sweeper.start()
        await asyncio.sleep(0.4)
        await asyncio.wait_for(sweeper.stop(), timeout=1.0)
        return sweeper

    sweeper = asyncio.run(scenario())
    assert sweeper.state.sweeps > 3
    assert sweeper.state.consecutive_errors == 3
    assert sweeper.state.sleep_length == pytest.approx(0.03)
    assert sweeper.state.last_outcome is SweepOutcome.ERROR


def test_stop_between_chunks_cancels_sweep(store):
    async def scenario():
        sweeper = None

        class StopAfterFirst(FakeSkyd):
            async def block_skylinks(self, skylinks):
                await super().block_skylinks(skylinks)
                sweeper._stop_event.set()

        skyd = StopAfterFirst()
        sweeper = _sweeper(store, skyd, chunk_size=2)
        outcome = await sweeper.sweep_and_block()
        return skyd, outcome

    _seed(store, ["a", "b", "c", "d"])
    before = store.latest_block_timestamp()
    skyd, outcome = asyncio.run(scenario())

    assert outcome is SweepOutcome.CANCELLED
    assert skyd.requests == [["a", "b"]]
    assert [p.skylink for p in store.skylinks_to_block()] == ["c", "d"]
    # the chunk that made it through still moved the checkpoint
    assert store.latest_block_timestamp() > before
