"""Background job execution and crash recovery for a home NAS."""

__version__ = "0.1.0"
