"""Runtime services for the protocol layer."""

from .telemetry import (
    DiagnosticEvent,
    DiagnosticSink,
    InMemoryDiagnosticSink,
    LoggingDiagnosticSink,
    snapshot_events,
)

__all__ = [
    "DiagnosticEvent",
    "DiagnosticSink",
    "InMemoryDiagnosticSink",
    "LoggingDiagnosticSink",
    "snapshot_events",
]
