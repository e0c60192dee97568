"""Scheduling core for distributed AI workloads: planning, policy, queues and assignment."""

__version__ = "0.1.0"