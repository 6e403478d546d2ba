"""Embedded SQLite storage and querying for telemetry logs, spans and metrics."""

__version__ = "0.3.0"