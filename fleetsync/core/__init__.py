"""Core package"""

from .agent import EdgeAgent

__all__ = ['EdgeAgent']
