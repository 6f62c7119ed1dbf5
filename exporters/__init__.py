"""Export pipelines that deliver snapshots produced by profiling sessions."""

from exporters.http import HttpExporter, RetryConfig, RetryPolicy
from exporters.journal import JournalExporter, read_journal
from exporters.queued import QueuedExporter

__all__ = [
    "HttpExporter",
    "JournalExporter",
    "QueuedExporter",
    "RetryConfig",
    "RetryPolicy",
    "read_journal",
]
