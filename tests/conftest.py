import math
from typing import Dict, List, Tuple

import pytest

from mailprobe.config import ImapServerConfig, WebmailServerConfig
from mailprobe.session import ProbeClass

Key = Tuple[ProbeClass, str, str]


class RecordingSink:
    """In-memory MetricSink used instead of prometheus in most tests."""

    def __init__(self):
        self.latency: Dict[Key, float] = {}
        self.failures: Dict[Key, int] = {}
        self.skipped: Dict[ProbeClass, int] = {}
        self.rounds: List[Tuple[ProbeClass, float, bool]] = []

    def observe_latency(self, probe, server, stage, seconds):
        self.latency[(probe, server, stage)] = seconds

    def record_failure(self, probe, server, stage):
        key = (probe, server, stage)
        self.failures[key] = self.failures.get(key, 0) + 1

    def invalidate(self, probe, server, stage):
        self.latency[(probe, server, stage)] = math.nan

    def round_finished(self, probe, seconds, timed_out):
        self.rounds.append((probe, seconds, timed_out))

    def round_skipped(self, probe):
        self.skipped[probe] = self.skipped.get(probe, 0) + 1

    def is_no_data(self, probe, server, stage) -> bool:
        value = self.latency.get((probe, server, stage))
        return value is not None and math.isnan(value)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def imap_server_config():
    return ImapServerConfig(
        name="mail1",
        host="imap.example.org",
        port=993,
        username="probe@example.org",
        password="secret",
    )


@pytest.fixture
def webmail_server_config():
    def make(kind="roundcube", name="wm1", base_url="https://wm1.example.org", **extra):
        return WebmailServerConfig(
            name=name,
            type=kind,
            base_url=base_url,
            username="probe@example.org",
            password="secret",
            **extra,
        )

    return make
