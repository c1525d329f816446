"""
Stage timing utilities for the pose pipeline.

Provides a context manager for measuring named code blocks. Every pipeline
stage reports its timings in milliseconds as part of its result.
"""

import time
from contextlib import contextmanager
from typing import Dict


class StageTimer:
    """Collects elapsed milliseconds per named stage."""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix
        self.timings: Dict[str, float] = {}

    @contextmanager
    def time_block(self, name: str):
        """Context manager for timing a code block.

        Args:
            name: Stage name (accumulated if the same name is timed twice)

        Yields:
            None
        """
        start_time = time.perf_counter()
        try:
            yield
        finally:
            elapsed_ms = (time.perf_counter() - start_time) * 1000.0
            key = f"{self.prefix}{name}"
            self.timings[key] = self.timings.get(key, 0.0) + elapsed_ms

    def merge(self, timings: Dict[str, float], prefix: str = "") -> None:
        """Add timings reported by a sub-stage."""
        for key, value in timings.items():
            full_key = f"{prefix}{key}"
            self.timings[full_key] = self.timings.get(full_key, 0.0) + float(value)

    def as_dict(self) -> Dict[str, float]:
        return dict(self.timings)
