import asyncio
from typing import Dict


class HealthGauge:
    """
    Readiness signal driven by bursts of unexpected errors.

    Each unexpected failure in background work (a poll tick that raised something other
    than a transient or protocol error, a listener that blew up) adds to the gauge, and a
    periodic tick drains it by one. While the gauge sits above the threshold the readiness
    probe fails, which lets the orchestrating platform restart a process that is stuck in
    an error loop without reacting to isolated failures.
    """

    def __init__(self, value: int = 0, health_threshold: int = 100) -> None:
        self._value = value
        self._health_threshold = health_threshold
        self._failures: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def womp(self, d=1, source: str = "unknown") -> int:
        async with self._lock:
            self._value += int(d)
            self._failures[source] = self._failures.get(source, 0) + int(d)
            return self._value

    async def tick(self) -> None:
        async with self._lock:
            if self._value > 0:
                self._value -= 1

    async def is_healthy(self) -> bool:
        async with self._lock:
            return self._value <= self._health_threshold

    async def report(self) -> Dict[str, object]:
        """Current gauge value and lifetime failure counts by source."""
        async with self._lock:
            return {
                "value": self._value,
                "threshold": self._health_threshold,
                "failures": dict(self._failures),
            }
