"""Timing helpers shared by the dispatcher and the reasoning pipeline."""

from __future__ import annotations

import re
import time

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)


class Timer:
    """Simple context timer used by the dispatcher and pipeline."""

    def __init__(self) -> None:
        self._start = 0.0
        self.started_at = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self.started_at = time.time()
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))
