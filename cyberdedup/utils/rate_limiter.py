# -*- coding: utf-8 -*-
"""
Thread-safe sliding-window rate limiter for Together.ai calls.

Adjudication runs on worker threads, so every call to the LLM goes through
one shared limiter instance.
"""

import threading
import time
from collections import deque


class RateLimiter:
    """
    Sliding 60-second window limiter.

    Usage:
        limiter = RateLimiter(max_calls_per_minute=600)
        limiter.acquire()  # blocks while the window is full
        response = client.chat.completions.create(...)
    """

    WINDOW_SECONDS = 60.0

    def __init__(self, max_calls_per_minute: int = 600):
        if max_calls_per_minute < 1:
            raise ValueError("max_calls_per_minute must be >= 1")
        self.max_calls = max_calls_per_minute
        self.calls = deque()
        self.lock = threading.Lock()

        self.total_calls = 0
        self.total_wait_time = 0.0

    def _expire(self, now: float) -> None:
        while self.calls and now - self.calls[0] >= self.WINDOW_SECONDS:
            self.calls.popleft()

    def acquire(self) -> float:
        """
        Block until a call slot is free, then record the call.

        The lock is released while sleeping so other threads can expire and
        claim slots.

        Returns:
            Seconds spent waiting
        """
        waited = 0.0
        while True:
            with self.lock:
                now = time.monotonic()
                self._expire(now)
                if len(self.calls) < self.max_calls:
                    self.calls.append(now)
                    self.total_calls += 1
                    self.total_wait_time += waited
                    return waited
                sleep_for = self.WINDOW_SECONDS - (now - self.calls[0]) + 0.05

            time.sleep(sleep_for)
            waited += sleep_for

    def get_stats(self) -> dict:
        """Totals plus current window usage."""
        with self.lock:
            self._expire(time.monotonic())
            current_window = len(self.calls)
            return {
                'total_calls': self.total_calls,
                'total_wait_time_sec': round(self.total_wait_time, 2),
                'current_window_usage': current_window,
                'max_capacity': self.max_calls,
                'utilization_pct': round(100 * current_window / self.max_calls, 1),
            }
