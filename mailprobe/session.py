"""Session contract shared by every probe kind.

A session is bound to one configured endpoint and executes its stages
strictly in order each time :meth:`ProbeSession.run` is called. Every stage
outcome is reported through the injected :class:`~mailprobe.metrics.MetricSink`:

* success: the stage latency is observed;
* failure: the failure counter for that stage is incremented and the gauges
  of that stage and every later stage are set to "no data";
* cancellation (round deadline): a ``session`` failure is recorded, the
  stages not completed in this round are invalidated and the connection is
  torn down before the cancellation propagates.

The connection handle lives on the session instance and is only touched by
``run``; the run guard makes sure a session never runs twice at once.
"""

import asyncio
import contextlib
import enum
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Dict, Iterator, Optional, Tuple, Type

from .logging_setup import logger

if TYPE_CHECKING:
    from .metrics import MetricSink


class ProbeClass(str, enum.Enum):
    IMAP = "imap"
    WEBMAIL = "webmail"


# ---------- Errors ----------

class ProbeError(Exception):
    kind = "error"


class ProbeConnectionError(ProbeError):
    kind = "connection"


class ProbeAuthenticationError(ProbeError):
    kind = "authentication"


class ProbeProtocolError(ProbeError):
    kind = "protocol"


class RoundTimeoutError(ProbeError):
    kind = "timeout"


class StageAborted(Exception):
    """Internal: a stage failed and the remaining stages must be skipped."""


# ---------- Outcome ----------

@dataclass
class Outcome:
    server: str
    probe: ProbeClass
    stage: Optional[str] = None
    durations: Dict[str, float] = field(default_factory=dict)
    error: Optional[ProbeError] = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.timed_out

    @property
    def error_kind(self) -> Optional[str]:
        if self.timed_out:
            return RoundTimeoutError.kind
        return self.error.kind if self.error is not None else None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "server": self.server,
            "probe": self.probe.value,
            "ok": self.ok,
            "stage": self.stage,
            "durations": dict(self.durations),
            "error_kind": self.error_kind,
            "error": str(self.error) if self.error is not None else None,
        }


# ---------- Session base ----------

class ProbeSession:
    probe_class: ClassVar[ProbeClass]
    stages: ClassVar[Tuple[str, ...]] = ()

    def __init__(self, server: Any, sink: "MetricSink"):
        self.server = server
        self.sink = sink

    @property
    def name(self) -> str:
        return self.server.name

    @classmethod
    def failure_operations(cls) -> Tuple[str, ...]:
        return cls.stages + ("session",)

    async def run(self, deadline: Optional[float] = None) -> Outcome:
        """Run every stage once; returns the outcome instead of raising.

        ``deadline`` is an absolute ``loop.time()`` value; sessions use it to
        bound their own I/O timeouts. Only ``asyncio.CancelledError`` leaves
        this method.
        """
        outcome = Outcome(server=self.name, probe=self.probe_class)
        logger.debug(f"[{self.name}] {self.probe_class.value} session starting")
        try:
            await self.probe(outcome, deadline)
        except StageAborted:
            pass
        except asyncio.CancelledError:
            self._mark_timed_out(outcome)
            self.abort()
            raise
        except Exception as e:
            logger.exception(f"[{self.name}] unexpected error outside a probe stage")
            self._fail(outcome, "session", ProbeProtocolError(str(e)))

        try:
            await self.close()
        except asyncio.CancelledError:
            self.abort()
            raise
        except Exception as e:
            logger.warning(f"[{self.name}] closing connection failed: {e}")
            self.abort()
        if outcome.ok:
            timings = " ".join(f"{k}={v:.3f}s" for k, v in outcome.durations.items())
            logger.debug(f"[{self.name}] {self.probe_class.value} session ok {timings}")
        return outcome

    @contextlib.contextmanager
    def stage(self, outcome: Outcome, name: str, error_cls: Type[ProbeError] = ProbeProtocolError) -> Iterator[None]:
        outcome.stage = name
        start = time.perf_counter()
        try:
            yield
        except ProbeError as e:
            self._fail(outcome, name, e)
            raise StageAborted(name) from e
        except Exception as e:
            err = self.classify(e, error_cls)(f"{name} failed: {e}")
            err.__cause__ = e
            self._fail(outcome, name, err)
            raise StageAborted(name) from e
        elapsed = time.perf_counter() - start
        outcome.durations[name] = elapsed
        self.sink.observe_latency(self.probe_class, self.name, name, elapsed)

    def _fail(self, outcome: Outcome, stage: str, error: ProbeError) -> None:
        outcome.error = error
        logger.error(f"[{self.name}] {stage} failed: {error}")
        self.sink.record_failure(self.probe_class, self.name, stage)
        if stage in self.stages:
            unreached = self.stages[self.stages.index(stage):]
        else:
            unreached = tuple(s for s in self.stages if s not in outcome.durations)
        for s in unreached:
            self.sink.invalidate(self.probe_class, self.name, s)

    def _mark_timed_out(self, outcome: Outcome) -> None:
        outcome.timed_out = True
        outcome.error = RoundTimeoutError(f"session timed out during {outcome.stage or 'startup'}")
        logger.warning(f"[{self.name}] {self.probe_class.value} session timed out during {outcome.stage or 'startup'}")
        self.sink.record_failure(self.probe_class, self.name, "session")
        for s in self.stages:
            if s not in outcome.durations:
                self.sink.invalidate(self.probe_class, self.name, s)

    @staticmethod
    def io_timeout(deadline: Optional[float], cap: float) -> float:
        """Per-operation timeout: ``cap``, shortened to what is left before ``deadline``."""
        if deadline is None:
            return cap
        left = deadline - asyncio.get_running_loop().time()
        return max(0.1, min(cap, left))

    # ---------- hooks ----------

    def classify(self, exc: Exception, default: Type[ProbeError]) -> Type[ProbeError]:
        """Probe error class for a library exception raised inside a stage."""
        return default

    async def probe(self, outcome: Outcome, deadline: Optional[float]) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        """Release the connection after a finished run (graceful)."""

    def abort(self) -> None:
        """Drop the connection immediately; must not block."""
