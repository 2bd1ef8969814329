import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from .logging_setup import logger
from .metrics import MetricSink
from .session import Outcome, ProbeClass, ProbeProtocolError, ProbeSession, RoundTimeoutError


@dataclass
class RoundReport:
    probe: ProbeClass
    outcomes: List[Outcome] = field(default_factory=list)
    started_at: float = 0.0
    elapsed: float = 0.0
    timed_out: bool = False
    # servers whose task ignored cancellation past the grace period
    abandoned: List[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.ok)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "probe": self.probe.value,
            "started_at": self.started_at,
            "elapsed_seconds": self.elapsed,
            "timed_out": self.timed_out,
            "abandoned": list(self.abandoned),
            "outcomes": [o.as_dict() for o in self.outcomes],
        }


def _consume_result(task: "asyncio.Task[Outcome]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f"abandoned probe task {task.get_name()} finished with: {exc!r}")


class RoundExecutor:
    """Runs one round: every session concurrently, one deadline for the batch.

    On the deadline the outstanding sessions are cancelled and given
    ``cancel_grace`` seconds to drop their connections. Whatever is still
    running after that is abandoned; the round itself returns either way.
    """

    def __init__(self, sink: MetricSink, cancel_grace: float = 1.0):
        self.sink = sink
        self.cancel_grace = cancel_grace

    async def run(self, probe: ProbeClass, sessions: Sequence[ProbeSession], deadline: float) -> RoundReport:
        report = RoundReport(probe=probe, started_at=time.time())
        if not sessions:
            return report

        loop = asyncio.get_running_loop()
        start = loop.time()
        tasks: Dict["asyncio.Task[Outcome]", ProbeSession] = {
            asyncio.create_task(s.run(start + deadline), name=f"{probe.value}:{s.name}"): s for s in sessions
        }
        try:
            done, pending = await asyncio.wait(tasks, timeout=deadline)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        for task in done:
            report.outcomes.append(self._collect(probe, task, tasks[task]))

        if pending:
            report.timed_out = True
            for task in pending:
                task.cancel()
            if self.cancel_grace > 0:
                _, stuck = await asyncio.wait(pending, timeout=self.cancel_grace)
            else:
                stuck = pending
            for task in pending:
                session = tasks[task]
                logger.warning(f"{probe.value.upper()} test for server {session.name} timed out")
                report.outcomes.append(self._timed_out(probe, session))
            for task in stuck:
                report.abandoned.append(tasks[task].name)
                logger.error(f"[{tasks[task].name}] probe ignored cancellation; abandoning it")
                task.add_done_callback(_consume_result)

        report.elapsed = loop.time() - start
        self.sink.round_finished(probe, report.elapsed, report.timed_out)
        logger.info(
            f"{probe.value} round finished in {report.elapsed:.2f}s: "
            f"{len(report.outcomes) - report.failed}/{len(report.outcomes)} ok"
            + (" (timed out)" if report.timed_out else "")
        )
        return report

    def _collect(self, probe: ProbeClass, task: "asyncio.Task[Outcome]", session: ProbeSession) -> Outcome:
        if task.cancelled():
            return self._timed_out(probe, session)
        exc = task.exception()
        if exc is None:
            return task.result()
        # ProbeSession.run converts errors itself; this only catches broken subclasses
        logger.error(f"[{session.name}] probe crashed: {exc!r}")
        self.sink.record_failure(probe, session.name, "session")
        self.sink.invalidate(probe, session.name, "session")
        return Outcome(server=session.name, probe=probe, stage="session", error=ProbeProtocolError(str(exc)))

    def _timed_out(self, probe: ProbeClass, session: ProbeSession) -> Outcome:
        # Metrics for the timeout are written by the session's own cancellation handling.
        return Outcome(
            server=session.name,
            probe=probe,
            stage="session",
            error=RoundTimeoutError(f"round deadline exceeded for {session.name}"),
            timed_out=True,
        )
