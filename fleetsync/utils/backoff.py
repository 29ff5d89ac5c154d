"""Reconnect delay policy: exponential, capped, never gives up"""

import random


class Backoff:
    """Exponential backoff with jitter and a ceiling.

    There is no attempt limit; callers keep asking for the next delay for as
    long as they keep failing and call ``reset()`` after a success.
    """

    def __init__(self, initial: float = 5.0, maximum: float = 30.0, factor: float = 2.0, jitter: float = 0.1):
        if initial <= 0:
            raise ValueError("initial delay must be positive")
        if maximum < initial:
            raise ValueError("maximum delay must be >= initial delay")
        self.initial = initial
        self.maximum = maximum
        self.factor = factor
        self.jitter = jitter
        self.attempts = 0

    def next_delay(self) -> float:
        """Return the delay before the next attempt and count the attempt"""
        base = min(self.initial * (self.factor ** min(self.attempts, 32)), self.maximum)
        self.attempts += 1
        if self.jitter:
            base *= 1 + random.uniform(-self.jitter, self.jitter)
        return min(base, self.maximum)

    def reset(self):
        self.attempts = 0
