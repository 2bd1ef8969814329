import asyncio
import threading
from typing import Dict, List, Mapping, Optional, Sequence, Set

from .config import ProbeConfig
from .executor import RoundExecutor, RoundReport
from .guard import GuardToken, RunGuard
from .logging_setup import logger
from .metrics import MetricSink
from .session import ProbeClass, ProbeSession


class ProbeScheduler:
    """Fixed-interval ticker dispatching one round per probe class.

    ``tick`` only tries the run guard and spawns round tasks; it never waits
    for probe work, so a hung endpoint cannot delay the next tick. The loop
    runs on its own thread with its own event loop (``start_background``).
    """

    def __init__(
        self,
        rounds: Mapping[ProbeClass, Sequence[ProbeSession]],
        sink: MetricSink,
        interval: int,
        round_timeout: float,
        cancel_grace: float = 1.0,
        guard: Optional[RunGuard] = None,
        executor: Optional[RoundExecutor] = None,
    ):
        if interval < 1:
            raise ValueError(f"interval must be at least 1 second, got {interval}")
        self.rounds: Dict[ProbeClass, List[ProbeSession]] = {p: list(s) for p, s in rounds.items() if s}
        self.sink = sink
        self.interval = interval
        self.round_timeout = round_timeout
        self.cancel_grace = cancel_grace
        self.guard = guard or RunGuard()
        self.executor = executor or RoundExecutor(sink, cancel_grace=cancel_grace)
        self.last_reports: Dict[ProbeClass, RoundReport] = {}
        self.ticks = 0

        self._tasks: Set["asyncio.Task[Optional[RoundReport]]"] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._stopping = False

    @classmethod
    def from_config(cls, config: ProbeConfig, rounds: Mapping[ProbeClass, Sequence[ProbeSession]], sink: MetricSink) -> "ProbeScheduler":
        return cls(
            rounds,
            sink,
            interval=config.metrics.test_interval,
            round_timeout=config.round_timeout,
            cancel_grace=config.scheduler.cancel_grace_seconds,
        )

    # ---------- ticking ----------

    def tick(self) -> Dict[ProbeClass, Optional["asyncio.Task[Optional[RoundReport]]"]]:
        """Start a round for every idle class; must be called on the event loop."""
        loop = asyncio.get_running_loop()
        self.ticks += 1
        started: Dict[ProbeClass, Optional["asyncio.Task[Optional[RoundReport]]"]] = {}
        for probe, sessions in self.rounds.items():
            token = self.guard.try_acquire(probe)
            if token is None:
                logger.warning(f"{probe.value.upper()} tests are still running, skipping this iteration.")
                self.sink.round_skipped(probe)
                started[probe] = None
                continue
            try:
                task = loop.create_task(self._run_round(probe, sessions, token), name=f"round:{probe.value}")
            except BaseException:
                token.release()
                raise
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started[probe] = task
        return started

    async def _run_round(self, probe: ProbeClass, sessions: Sequence[ProbeSession], token: GuardToken) -> Optional[RoundReport]:
        with token:
            try:
                report = await self.executor.run(probe, sessions, self.round_timeout)
            except asyncio.CancelledError:
                logger.info(f"{probe.value} round cancelled")
                raise
            except Exception:
                logger.exception(f"{probe.value} round failed")
                return None
            self.last_reports[probe] = report
            return report

    def in_flight(self, probe: ProbeClass) -> bool:
        return self.guard.is_running(probe)

    async def run_forever(self) -> None:
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        if self._stopping:
            return
        logger.info(
            f"Scheduler started (test_interval={self.interval}s round_timeout={self.round_timeout:g}s "
            f"classes={','.join(p.value for p in self.rounds) or 'none'})"
        )
        next_tick = loop.time()
        while not self._stop_event.is_set():
            delay = next_tick - loop.time()
            if delay > 0:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    pass
            self.tick()
            next_tick += self.interval
            now = loop.time()
            if next_tick <= now:
                missed = int((now - next_tick) // self.interval) + 1
                next_tick += missed * self.interval
                logger.warning(f"Scheduler fell behind; dropped {missed} tick(s)")
        await self._cancel_rounds()
        logger.info("Scheduler stopped")

    async def _cancel_rounds(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks, timeout=self.cancel_grace)

    def request_stop(self) -> None:
        """Stop the loop; must be called on the event loop thread."""
        self._stopping = True
        if self._stop_event is not None:
            self._stop_event.set()

    # ---------- background thread ----------

    def _thread_entry(self) -> None:
        loop = self._loop
        assert loop is not None
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(self.run_forever())
        except Exception:
            logger.exception("Scheduler loop crashed")
        finally:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.wait(pending, timeout=self.cancel_grace))
            loop.close()

    def start_background(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stopping = False
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._thread_entry, name="mailprobe-scheduler", daemon=True)
        self._thread.start()

    def stop_background(self, timeout: float = 5.0) -> None:
        loop, thread = self._loop, self._thread
        if loop is None or thread is None:
            return
        try:
            loop.call_soon_threadsafe(self.request_stop)
        except RuntimeError:
            # loop already closed
            pass
        thread.join(timeout)
        if thread.is_alive():
            logger.warning(f"Scheduler thread did not stop within {timeout}s")
