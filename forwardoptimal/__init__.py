"""Latency-aware TCP failover relay."""

__version__ = "1.4.0"
BUILD_DATE = "2025-08-26"
AUTHOR = "ForwardOptimal - YUNYAN"
