"""In-process counters and gauges with Prometheus text rendering."""

__all__ = ["metrics"]