"""Utilities package"""

from .backoff import Backoff
from .cache import CacheManager
from .files import atomic_write_json, atomic_write_text, read_json

__all__ = ['Backoff', 'CacheManager', 'atomic_write_json', 'atomic_write_text', 'read_json']
