"""Job admission, worker scoring, task assignment, leases and retries."""

__all__ = ["engine", "scoring"]