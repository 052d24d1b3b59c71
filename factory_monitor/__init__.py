"""Factory Monitor: machine telemetry ingestion and defect statistics."""

__version__ = "0.1.0"
