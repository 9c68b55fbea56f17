"""Event-driven image pipeline: S3 notifications fanned out to record-store and mail consumers."""

__version__ = "1.0.0"
