import asyncio
import math

import pytest

from mailprobe.metrics import ProbeMetrics
from mailprobe.session import (
    ProbeAuthenticationError,
    ProbeClass,
    ProbeConnectionError,
    ProbeProtocolError,
    ProbeSession,
)


class Server:
    def __init__(self, name):
        self.name = name
        self.kind = "scripted"


class ScriptedSession(ProbeSession):
    """Runs stages a, b, c; ``fail_at`` raises inside that stage."""

    probe_class = ProbeClass.IMAP
    stages = ("banner", "authentication", "append")

    def __init__(self, name, sink, fail_at=None, error=None, hang_at=None):
        super().__init__(Server(name), sink)
        self.fail_at = fail_at
        self.error = error or RuntimeError("boom")
        self.hang_at = hang_at
        self.closed = 0
        self.aborted = 0
        self.runs = 0

    async def probe(self, outcome, deadline):
        self.runs += 1
        for stage in self.stages:
            with self.stage(outcome, stage, ProbeConnectionError if stage == "banner" else ProbeProtocolError):
                await asyncio.sleep(0)
                if stage == self.hang_at:
                    await asyncio.Event().wait()
                if stage == self.fail_at:
                    raise self.error

    async def close(self):
        self.closed += 1

    def abort(self):
        self.aborted += 1


@pytest.mark.asyncio
async def test_successful_run_observes_every_stage(sink):
    session = ScriptedSession("mail1", sink)
    outcome = await session.run()

    assert outcome.ok
    assert outcome.error_kind is None
    assert set(outcome.durations) == {"banner", "authentication", "append"}
    for stage in session.stages:
        value = sink.latency[(ProbeClass.IMAP, "mail1", stage)]
        assert value >= 0 and math.isfinite(value)
    assert sink.failures == {}
    assert session.closed == 1


@pytest.mark.asyncio
async def test_stage_failure_invalidates_it_and_later_stages_only(sink):
    session = ScriptedSession("mail1", sink)
    await session.run()

    session.fail_at = "authentication"
    outcome = await session.run()

    assert not outcome.ok
    assert outcome.stage == "authentication"
    assert isinstance(outcome.error, ProbeProtocolError)
    assert sink.failures == {(ProbeClass.IMAP, "mail1", "authentication"): 1}
    assert sink.is_no_data(ProbeClass.IMAP, "mail1", "authentication")
    assert sink.is_no_data(ProbeClass.IMAP, "mail1", "append")
    assert math.isfinite(sink.latency[(ProbeClass.IMAP, "mail1", "banner")])
    assert session.closed == 2


@pytest.mark.asyncio
async def test_probe_errors_keep_their_kind(sink):
    session = ScriptedSession("mail1", sink, fail_at="authentication", error=ProbeAuthenticationError("denied"))
    outcome = await session.run()
    assert outcome.error_kind == "authentication"


@pytest.mark.asyncio
async def test_stage_default_error_class_applies_to_library_errors(sink):
    session = ScriptedSession("mail1", sink, fail_at="banner", error=OSError("refused"))
    outcome = await session.run()
    assert outcome.error_kind == "connection"
    assert outcome.error.__cause__ is session.error


@pytest.mark.asyncio
async def test_cancellation_records_session_failure_and_aborts(sink):
    session = ScriptedSession("mail1", sink, hang_at="append")
    task = asyncio.create_task(session.run())
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert session.aborted == 1
    assert session.closed == 0
    assert sink.failures == {(ProbeClass.IMAP, "mail1", "session"): 1}
    assert sink.is_no_data(ProbeClass.IMAP, "mail1", "append")
    assert not sink.is_no_data(ProbeClass.IMAP, "mail1", "banner")
    assert not sink.is_no_data(ProbeClass.IMAP, "mail1", "authentication")


@pytest.mark.asyncio
async def test_failure_sets_prometheus_gauge_to_nan_and_counts_once():
    metrics = ProbeMetrics(prefix="t_")
    session = ScriptedSession("mail1", metrics)
    await session.run()
    session.fail_at = "append"
    await session.run()

    reg = metrics.registry
    assert math.isnan(reg.get_sample_value("t_imap_time_to_append_seconds", {"server": "mail1"}))
    assert reg.get_sample_value("t_imap_time_to_auth_seconds", {"server": "mail1"}) >= 0
    assert reg.get_sample_value("t_imap_failures_total", {"server": "mail1", "operation": "append"}) == 1.0


@pytest.mark.asyncio
async def test_io_timeout_is_capped_by_deadline():
    loop = asyncio.get_running_loop()
    assert ProbeSession.io_timeout(None, 10) == 10
    assert ProbeSession.io_timeout(loop.time() + 100, 10) == 10
    assert ProbeSession.io_timeout(loop.time() + 2, 10) <= 2
    assert ProbeSession.io_timeout(loop.time() - 5, 10) == 0.1
