"""
Trace caching.

Usage:
    from lazytrace.caching import get_trace_cache

    cache = get_trace_cache()
    cache.print_stats()
"""

from .trace_cache import CacheEntry, EvictionPolicy, TraceCache, get_trace_cache, reset_trace_cache

__all__ = [
    'CacheEntry',
    'EvictionPolicy',
    'TraceCache',
    'get_trace_cache',
    'reset_trace_cache',
]
