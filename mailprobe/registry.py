import importlib
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import ProbeConfig
from .logging_setup import logger
from .metrics import MetricSink
from .session import ProbeClass, ProbeSession

SessionFactory = Callable[[Any, MetricSink], ProbeSession]

BUILTIN_PROBE_MODULES = (
    "mailprobe.imap_probe",
    "mailprobe.roundcube",
    "mailprobe.sogo",
)


class UnknownProbeKind(Exception):
    def __init__(self, kind: str):
        super().__init__(f"no probe registered for kind: {kind}")
        self.kind = kind


class DuplicateProbeKind(Exception):
    def __init__(self, kind: str):
        super().__init__(f"probe kind already registered: {kind}")
        self.kind = kind


class SessionRegistry:
    """Maps a probe kind tag (``imap``, ``roundcube``, ...) to a session factory."""

    def __init__(self):
        self._factories: Dict[str, SessionFactory] = {}

    def register(self, kind: str, factory: SessionFactory) -> None:
        if kind in self._factories:
            raise DuplicateProbeKind(kind)
        self._factories[kind] = factory

    def create(self, server: Any, sink: MetricSink) -> ProbeSession:
        factory = self._factories.get(server.kind)
        if factory is None:
            raise UnknownProbeKind(server.kind)
        return factory(server, sink)

    def kinds(self) -> Tuple[str, ...]:
        return tuple(sorted(self._factories))

    def __contains__(self, kind: str) -> bool:
        return kind in self._factories


registry = SessionRegistry()


def register_probe(kind: str) -> Callable[[type], type]:
    """Class decorator registering a session class on the process-wide registry."""

    def decorator(cls: type) -> type:
        registry.register(kind, cls)
        return cls

    return decorator


def load_builtin_probes() -> SessionRegistry:
    for module in BUILTIN_PROBE_MODULES:
        importlib.import_module(module)
    return registry


def build_rounds(
    config: ProbeConfig,
    sink: MetricSink,
    session_registry: Optional[SessionRegistry] = None,
) -> Dict[ProbeClass, List[ProbeSession]]:
    """Create one session per configured server, grouped by probe class.

    Servers whose kind has no registered factory are logged and left out; a
    class without any session is not part of the result.
    """
    session_registry = session_registry or load_builtin_probes()
    rounds: Dict[ProbeClass, List[ProbeSession]] = {}
    for server in (*config.imap_servers, *config.webmail_servers):
        try:
            session = session_registry.create(server, sink)
        except UnknownProbeKind as e:
            logger.error(f"Skipping server {server.name}: {e}")
            continue
        rounds.setdefault(session.probe_class, []).append(session)
    for probe, sessions in rounds.items():
        logger.info(f"{probe.value}: scheduling {len(sessions)} server(s): {', '.join(s.name for s in sessions)}")
    return rounds
