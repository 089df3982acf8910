import pytest
from prometheus_client import CollectorRegistry

from creditmeter.email import EmailMessage
from creditmeter.metrics import MetricsRecorder
from creditmeter.models import UsageQuery, UsageStats
from creditmeter.store.memory import MemoryRecordStore


class FakeUsageAggregator:
    """
    A fake aggregation collaborator that answers from a table keyed
    by (workspace_id, agent_id) and records every query.
    """

    def __init__(
        self, stats: "dict[tuple[str | None, str | None], UsageStats] | None" = None
    ) -> "None":
        self.stats = stats or {}
        self.queries: "list[UsageQuery]" = []

    async def query_usage_stats(self, query: "UsageQuery") -> "UsageStats":
        self.queries.append(query)
        return self.stats.get((query.workspace_id, query.agent_id), UsageStats())


class RecordingTransport:
    """
    A fake email transport that keeps sent messages in memory.
    """

    def __init__(self) -> "None":
        self.sent: "list[EmailMessage]" = []

    async def send(self, message: "EmailMessage") -> "None":
        self.sent.append(message)


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def metrics(registry: "CollectorRegistry") -> "MetricsRecorder":
    return MetricsRecorder(registry=registry)


@pytest.fixture()
def store() -> "MemoryRecordStore":
    return MemoryRecordStore()


@pytest.fixture()
def aggregator() -> "FakeUsageAggregator":
    return FakeUsageAggregator()


@pytest.fixture()
def transport() -> "RecordingTransport":
    return RecordingTransport()
