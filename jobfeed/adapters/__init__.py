from .base import BaseAdapter, RateLimiter
from .registry import AdapterRegistry, build_default_registry

__all__ = ['BaseAdapter', 'RateLimiter', 'AdapterRegistry', 'build_default_registry']
