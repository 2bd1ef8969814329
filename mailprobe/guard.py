import threading
from typing import Dict, Iterable, Optional

from .session import ProbeClass


class GuardToken:
    """Ownership of one run guard slot; releases it on ``__exit__``.

    Releasing twice is a no-op, so a token can be released early and still be
    used as a context manager.
    """

    def __init__(self, guard: "RunGuard", probe: ProbeClass):
        self._guard = guard
        self.probe = probe
        self._released = False
        self._release_lock = threading.Lock()

    def release(self) -> None:
        with self._release_lock:
            if self._released:
                return
            self._released = True
        self._guard._release(self.probe)

    @property
    def released(self) -> bool:
        return self._released

    def __enter__(self) -> "GuardToken":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class RunGuard:
    """Single-slot admission gate per probe class.

    ``try_acquire`` never waits: it hands out a :class:`GuardToken` when the
    class is idle and returns ``None`` when a round of that class is still
    running.
    """

    def __init__(self, probes: Iterable[ProbeClass] = tuple(ProbeClass)):
        self._slots: Dict[ProbeClass, threading.Lock] = {p: threading.Lock() for p in probes}

    def try_acquire(self, probe: ProbeClass) -> Optional[GuardToken]:
        if not self._slots[probe].acquire(blocking=False):
            return None
        return GuardToken(self, probe)

    def is_running(self, probe: ProbeClass) -> bool:
        return self._slots[probe].locked()

    def _release(self, probe: ProbeClass) -> None:
        self._slots[probe].release()
