"""Worker pools, cron and interval task scheduling, and staged processing pipelines."""

__version__ = "0.1.0"
__all__ = ["cron", "pipeline", "scheduler", "workerpool"]