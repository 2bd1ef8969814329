"""Prometheus metrics for mail probes.

Sessions and the round executor never touch prometheus objects directly; they
talk to a :class:`MetricSink`. :class:`ProbeMetrics` is the production sink
backed by its own ``CollectorRegistry``.

A failed stage sets its gauge to NaN rather than leaving the last good value
in place, so a scrape never reads a stale latency as current health.
"""

from typing import Dict, Iterable, Optional, Protocol, Tuple

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

from .session import ProbeClass

NO_DATA = float("nan")

# stage -> (metric name without prefix, help)
IMAP_GAUGES: Dict[str, Tuple[str, str]] = {
    "banner": ("imap_time_to_banner_seconds", "Time to receive IMAP banner"),
    "authentication": ("imap_time_to_auth_seconds", "Time to authenticate to IMAP server"),
    "append": ("imap_time_to_append_seconds", "Time to append message to IMAP server"),
    "fetch": ("imap_time_to_fetch_seconds", "Time to fetch messages from IMAP server"),
    "expunge": ("imap_time_to_expunge_seconds", "Time to expunge messages from IMAP server"),
}

WEBMAIL_GAUGES: Dict[str, Tuple[str, str]] = {
    "ttfb": ("webmail_ttfb_seconds", "Time to first byte for webmail"),
    "login": ("webmail_login_time_seconds", "Time to authenticate to webmail"),
    "listing": ("webmail_first_page_time_seconds", "Time to load first page"),
    "loading": ("webmail_message_load_time_seconds", "Time to load message"),
}


class MetricSink(Protocol):
    def observe_latency(self, probe: ProbeClass, server: str, stage: str, seconds: float) -> None:
        ...

    def record_failure(self, probe: ProbeClass, server: str, stage: str) -> None:
        ...

    def invalidate(self, probe: ProbeClass, server: str, stage: str) -> None:
        ...

    def round_finished(self, probe: ProbeClass, seconds: float, timed_out: bool) -> None:
        ...

    def round_skipped(self, probe: ProbeClass) -> None:
        ...


class ProbeMetrics:
    """Gauges and counters for both probe classes.

    Attributes:
        registry: Registry exposed on ``/metrics``.
        latency: Per class, stage name to labeled gauge (label ``server``).
        failures: Per class, failure counter (labels ``server``, ``operation``).
    """

    def __init__(self, prefix: str = "mailprobe_", registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.prefix = prefix or ""
        self.latency: Dict[ProbeClass, Dict[str, Gauge]] = {
            ProbeClass.IMAP: self._gauges(IMAP_GAUGES),
            ProbeClass.WEBMAIL: self._gauges(WEBMAIL_GAUGES),
        }
        self.failures: Dict[ProbeClass, Counter] = {
            ProbeClass.IMAP: Counter(
                f"{self.prefix}imap_failures_total",
                "Total number of IMAP operation failures",
                ["server", "operation"],
                registry=self.registry,
            ),
            ProbeClass.WEBMAIL: Counter(
                f"{self.prefix}webmail_failures_total",
                "Total number of webmail operation failures",
                ["server", "operation"],
                registry=self.registry,
            ),
        }
        self.round_duration = Gauge(
            f"{self.prefix}round_duration_seconds",
            "Wall time of the last completed probe round",
            ["probe"],
            registry=self.registry,
        )
        self.round_timeouts = Counter(
            f"{self.prefix}round_timeouts_total",
            "Probe rounds that hit the round deadline",
            ["probe"],
            registry=self.registry,
        )
        self.rounds_skipped = Counter(
            f"{self.prefix}rounds_skipped_total",
            "Ticks skipped because the previous round of the class was still running",
            ["probe"],
            registry=self.registry,
        )
        self.build_info = Gauge(
            f"{self.prefix}build_info",
            "Build and version information for the exporter",
            ["version", "revision", "build_date"],
            registry=self.registry,
        )

    def _gauges(self, table: Dict[str, Tuple[str, str]]) -> Dict[str, Gauge]:
        return {
            stage: Gauge(f"{self.prefix}{name}", help_text, ["server"], registry=self.registry)
            for stage, (name, help_text) in table.items()
        }

    def stages(self, probe: ProbeClass) -> Iterable[str]:
        return self.latency[probe].keys()

    def declare_server(self, probe: ProbeClass, server: str, operations: Iterable[str]) -> None:
        # Failure series exist from the first scrape, even before any error.
        for operation in operations:
            self.failures[probe].labels(server=server, operation=operation).inc(0)

    def observe_latency(self, probe: ProbeClass, server: str, stage: str, seconds: float) -> None:
        gauge = self.latency[probe].get(stage)
        if gauge is not None:
            gauge.labels(server=server).set(seconds)

    def record_failure(self, probe: ProbeClass, server: str, stage: str) -> None:
        self.failures[probe].labels(server=server, operation=stage).inc()

    def invalidate(self, probe: ProbeClass, server: str, stage: str) -> None:
        if stage == "session":
            for gauge in self.latency[probe].values():
                gauge.labels(server=server).set(NO_DATA)
            return
        gauge = self.latency[probe].get(stage)
        if gauge is not None:
            gauge.labels(server=server).set(NO_DATA)

    def round_finished(self, probe: ProbeClass, seconds: float, timed_out: bool) -> None:
        self.round_duration.labels(probe=probe.value).set(seconds)
        if timed_out:
            self.round_timeouts.labels(probe=probe.value).inc()

    def round_skipped(self, probe: ProbeClass) -> None:
        self.rounds_skipped.labels(probe=probe.value).inc()

    def set_build_info(self, version: str, revision: str, build_date: str) -> None:
        self.build_info.labels(version=version, revision=revision or "", build_date=build_date or "").set(1)

    def generate_latest(self) -> bytes:
        return generate_latest(self.registry)
