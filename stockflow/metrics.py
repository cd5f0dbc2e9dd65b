"""
メトリクス

グローバルなカウンタは持たない。MetricsRecorder を生成して
コマンドハンドラに明示的に渡す。
"""

import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Iterator, Protocol


class MetricsRecorder(Protocol):
    def increment(self, name: str, amount: int = 1) -> None: ...

    def observe(self, name: str, seconds: float) -> None: ...


class InMemoryMetrics:
    """プロセス内に値を保持する MetricsRecorder。GET /metrics で参照できる。"""

    def __init__(self) -> None:
        self.counters: dict[str, int] = defaultdict(int)
        self.timings: dict[str, list[float]] = defaultdict(list)

    def increment(self, name: str, amount: int = 1) -> None:
        self.counters[name] += amount

    def observe(self, name: str, seconds: float) -> None:
        self.timings[name].append(seconds)

    def snapshot(self) -> dict:
        return {
            "counters": dict(self.counters),
            "timings": {
                name: {
                    "count": len(values),
                    "total_seconds": sum(values),
                    "max_seconds": max(values),
                }
                for name, values in self.timings.items()
                if values
            },
        }


@contextmanager
def timed(metrics: MetricsRecorder, name: str) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    finally:
        metrics.observe(name, time.perf_counter() - started)
