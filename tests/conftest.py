import asyncio
import json

import pytest

from core.config import Settings
from core.tracking import TrackedFrame, TrackedLandmark


class FakeClock:
    """Millisecond clock advanced only by the fake sleep."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds * 1000.0
        await asyncio.sleep(0)


class FakeBackend:
    """Scripted backend: per-model list of outcomes (text or exception), consumed in order."""

    def __init__(self, script=None, default=None):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.default = default if default is not None else "{}"
        self.calls = []

    async def generate(self, model, contents, response_schema, generation_config, timeout_ms):
        self.calls.append({"model": model, "contents": contents, "timeout_ms": timeout_ms})
        queue = self.script.get(model)
        outcome = queue.pop(0) if queue else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, dict):
            return json.dumps(outcome)
        return outcome


def make_frame(points, parts=None, timestamp_ms=0.0):
    """points: {index: (y, x)}"""
    return TrackedFrame(
        timestamp_ms=timestamp_ms,
        points=tuple(TrackedLandmark(index=i, point=p) for i, p in points.items()),
        parts=dict(parts or {}),
    )


@pytest.fixture
def settings():
    return Settings(GEMINI_API_KEY="test-key", LOG_LEVEL="DEBUG")


@pytest.fixture
def fast_settings():
    """No cooldowns, short gate wait."""
    return Settings(
        GEMINI_API_KEY="test-key",
        LITE_COOLDOWN_MS=0,
        FLASH_COOLDOWN_MS=0,
        PRO_COOLDOWN_MS=0,
        GATE_MAX_WAIT_MS=200,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def image_b64():
    return "A" * 2000
