"""SQLite-backed job queue, a TCP client, and leader-based coordination between nodes."""

__version__ = "0.1.0"
__all__ = ["job_database", "networking", "raft"]