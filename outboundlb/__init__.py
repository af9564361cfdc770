"""Source-IP selection for outbound proxy connections: LRU balancing, limits, health checks."""

__version__ = "1.0.0"