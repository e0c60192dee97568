"""Turning job requests into task DAGs, from templates or a remote planner."""

__all__ = ["compiler", "dag", "provider"]