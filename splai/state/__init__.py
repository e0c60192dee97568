"""Records, the in-memory store, and in-memory and Redis work queues."""

__all__ = ["memory_queue", "memory_store", "redis_queue", "types"]