"""
Per-model admission gate: one call in flight per backend model and a minimum
cooldown between completions.
"""
from __future__ import annotations
import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from core.config import Settings

logger = logging.getLogger(__name__)

GATE_MAX_SLEEP_MS = 400


class GateTimeoutError(Exception):
    """Raised when a model gate could not be acquired within the wait bound."""

    def __init__(self, model: str, waited_ms: float):
        super().__init__(f"Model {model} gate wait timed out after {int(waited_ms)}ms")
        self.model = model
        self.waited_ms = waited_ms


@dataclass
class ModelGate:
    in_flight: bool = False
    last_completed_at: float = float("-inf")


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def cooldown_for_model(model: str, settings: Settings) -> int:
    """Tiered cooldown: lite models are cheap, pro models must not be hammered."""
    if re.search(r"flash-lite", model, re.IGNORECASE):
        return settings.LITE_COOLDOWN_MS
    if re.search(r"pro", model, re.IGNORECASE):
        return settings.PRO_COOLDOWN_MS
    return settings.FLASH_COOLDOWN_MS


class GateRegistry:
    """
    Lazily created gates keyed by model id.

    Gates are only ever touched through acquire/release, and callers pair
    them with try/finally so a failing call cannot leave a gate held.
    """

    def __init__(
        self,
        settings: Settings,
        clock: Callable[[], float] = monotonic_ms,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.s = settings
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._gates: Dict[str, ModelGate] = {}

    def get(self, model: str) -> ModelGate:
        gate = self._gates.get(model)
        if gate is None:
            gate = ModelGate()
            self._gates[model] = gate
        return gate

    async def acquire(self, model: str) -> None:
        """
        Wait until the model is idle and its cooldown has elapsed, then mark it in flight.

        Raises:
            GateTimeoutError: waited longer than GATE_MAX_WAIT_MS.
        """
        gate = self.get(model)
        cooldown = cooldown_for_model(model, self.s)
        poll_ms = max(1, self.s.GATE_POLL_MS)
        started_at = self._clock()

        while True:
            now = self._clock()
            waited = now - started_at
            if not gate.in_flight:
                elapsed = now - gate.last_completed_at
                if elapsed >= cooldown:
                    gate.in_flight = True
                    if waited > 0:
                        logger.debug(f"[gate] acquired model={model} waited_ms={int(waited)}")
                    return
                wait_ms = min(max(cooldown - elapsed, poll_ms), GATE_MAX_SLEEP_MS)
            else:
                wait_ms = poll_ms

            if waited + wait_ms > self.s.GATE_MAX_WAIT_MS:
                raise GateTimeoutError(model, waited)
            await self._sleep(wait_ms / 1000.0)

    def release(self, model: str) -> None:
        gate = self.get(model)
        gate.in_flight = False
        gate.last_completed_at = self._clock()
