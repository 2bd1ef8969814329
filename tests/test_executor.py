import asyncio
import time

import pytest

from mailprobe.executor import RoundExecutor
from mailprobe.session import ProbeClass, ProbeConnectionError, ProbeSession


class Server:
    def __init__(self, name):
        self.name = name


class SleepySession(ProbeSession):
    probe_class = ProbeClass.WEBMAIL
    stages = ("ttfb", "login", "listing", "loading")

    def __init__(self, name, sink, delay=0.0, fail=False, stubborn=False):
        super().__init__(Server(name), sink)
        self.delay = delay
        self.fail = fail
        self.stubborn = stubborn
        self.aborted = False

    async def probe(self, outcome, deadline):
        with self.stage(outcome, "ttfb", ProbeConnectionError):
            if self.fail:
                raise ConnectionRefusedError("refused")
        with self.stage(outcome, "login"):
            if self.stubborn:
                try:
                    await asyncio.sleep(self.delay)
                except asyncio.CancelledError:
                    # keeps working past the cancel, like a blocked driver call
                    await asyncio.shield(asyncio.sleep(0.3))
                    raise
            else:
                await asyncio.sleep(self.delay)
        with self.stage(outcome, "listing"):
            pass
        with self.stage(outcome, "loading"):
            pass

    def abort(self):
        self.aborted = True


class CrashingSession:
    """Does not follow the session contract: ``run`` raises."""

    name = "broken"

    async def run(self, deadline=None):
        raise RuntimeError("bug in probe")


@pytest.mark.asyncio
async def test_sessions_run_concurrently(sink):
    executor = RoundExecutor(sink)
    sessions = [SleepySession(f"wm{i}", sink, delay=0.2) for i in range(5)]

    started = time.monotonic()
    report = await executor.run(ProbeClass.WEBMAIL, sessions, deadline=5)
    elapsed = time.monotonic() - started

    assert elapsed < 0.8
    assert report.failed == 0
    assert not report.timed_out
    assert sorted(o.server for o in report.outcomes) == [f"wm{i}" for i in range(5)]
    assert sink.rounds[-1][0] is ProbeClass.WEBMAIL
    assert sink.rounds[-1][2] is False


@pytest.mark.asyncio
async def test_hung_session_is_bounded_by_deadline(sink):
    executor = RoundExecutor(sink, cancel_grace=0.2)
    hung = SleepySession("slow", sink, delay=60)
    fast = SleepySession("fast", sink)

    started = time.monotonic()
    report = await executor.run(ProbeClass.WEBMAIL, [hung, fast], deadline=0.3)
    elapsed = time.monotonic() - started

    assert elapsed < 0.3 + 0.2 + 0.4
    assert report.timed_out
    by_name = {o.server: o for o in report.outcomes}
    assert by_name["fast"].ok
    assert by_name["slow"].timed_out
    assert by_name["slow"].error_kind == "timeout"
    assert hung.aborted

    assert sink.failures == {(ProbeClass.WEBMAIL, "slow", "session"): 1}
    assert not sink.is_no_data(ProbeClass.WEBMAIL, "slow", "ttfb")
    for stage in ("login", "listing", "loading"):
        assert sink.is_no_data(ProbeClass.WEBMAIL, "slow", stage)
    assert sink.rounds[-1][2] is True


@pytest.mark.asyncio
async def test_session_ignoring_cancellation_is_abandoned(sink):
    executor = RoundExecutor(sink, cancel_grace=0.05)
    stubborn = SleepySession("stuck", sink, delay=60, stubborn=True)

    started = time.monotonic()
    report = await executor.run(ProbeClass.WEBMAIL, [stubborn], deadline=0.1)

    assert time.monotonic() - started < 0.3
    assert report.abandoned == ["stuck"]
    assert report.outcomes[0].timed_out
    # let the abandoned task finish so the loop closes cleanly
    await asyncio.sleep(0.4)


@pytest.mark.asyncio
async def test_failing_session_does_not_affect_siblings(sink):
    executor = RoundExecutor(sink)
    report = await executor.run(
        ProbeClass.WEBMAIL,
        [SleepySession("bad", sink, fail=True), SleepySession("good", sink)],
        deadline=5,
    )

    by_name = {o.server: o for o in report.outcomes}
    assert by_name["bad"].error_kind == "connection"
    assert by_name["good"].ok
    assert sink.failures == {(ProbeClass.WEBMAIL, "bad", "ttfb"): 1}
    assert not report.timed_out


@pytest.mark.asyncio
async def test_crashing_session_becomes_session_failure(sink):
    executor = RoundExecutor(sink)
    report = await executor.run(ProbeClass.IMAP, [CrashingSession()], deadline=1)

    assert report.outcomes[0].stage == "session"
    assert report.outcomes[0].error_kind == "protocol"
    assert sink.failures == {(ProbeClass.IMAP, "broken", "session"): 1}


@pytest.mark.asyncio
async def test_empty_round_returns_immediately(sink):
    report = await RoundExecutor(sink).run(ProbeClass.IMAP, [], deadline=1)
    assert report.outcomes == []
    assert sink.rounds == []
