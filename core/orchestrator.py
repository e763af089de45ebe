"""
Fallback orchestration across candidate backend models for one lane.

Each attempt is admitted by the model's gate, bounded by a payload-adaptive
timeout, and classified on failure: model-availability errors move on to the
next candidate, everything else aborts the lane call.
"""
from __future__ import annotations
import asyncio
import logging
import math
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from core.config import Settings
from core.gate import GateRegistry, GateTimeoutError, monotonic_ms

logger = logging.getLogger(__name__)

# Images under this size use the base timeout; above it each KB adds time.
TIMEOUT_FREE_BYTES = 240_000
TIMEOUT_MS_PER_KB = 17.0

_QUOTA_RE = re.compile(r"(quota|rate limit|resource_exhausted|too many requests)", re.IGNORECASE)
_MODEL_MESSAGE_RE = re.compile(
    r"(model\b.*\b(not found|unsupported|not supported|unknown|does not exist)"
    r"|unsupported model|unknown model|invalid model|model not found|not found|does not exist)",
    re.IGNORECASE,
)
_BAD_REQUEST_MODEL_RE = re.compile(r"(model|unknown|unsupported|not found|invalid)", re.IGNORECASE)
_MODEL_CODE_RE = re.compile(r"(not_found|model_not_found|unsupported)", re.IGNORECASE)


class Backend(Protocol):
    async def generate(
        self,
        model: str,
        contents: List[Dict[str, Any]],
        response_schema: Dict[str, Any],
        generation_config: Dict[str, Any],
        timeout_ms: int,
    ) -> str: ...


class AllCandidatesFailedError(Exception):
    """Every candidate model failed with a fallback-eligible error."""

    def __init__(self, label: str, attempts: List[str], last_error: Optional[BaseException]):
        super().__init__(f"{label} failed across candidate models: {', '.join(attempts)}")
        self.attempts = attempts
        self.last_error = last_error


def compute_timeout_ms(
    explicit_timeout_ms: Optional[float],
    base_timeout_ms: int,
    image_b64: str,
    cap_timeout_ms: int,
) -> int:
    """
    Per-attempt timeout budget.

    An explicit positive timeout always wins. Otherwise the base budget grows
    linearly with the decoded payload size past TIMEOUT_FREE_BYTES, up to the cap.
    """
    if explicit_timeout_ms is not None and math.isfinite(explicit_timeout_ms) and explicit_timeout_ms > 0:
        return int(round(explicit_timeout_ms))

    approx_bytes = round(len(image_b64 or "") * 3 / 4)
    extra = max(0, approx_bytes - TIMEOUT_FREE_BYTES) / 1000.0 * TIMEOUT_MS_PER_KB
    return int(min(base_timeout_ms + extra, max(cap_timeout_ms, base_timeout_ms)))


def describe_error(error: BaseException) -> Tuple[Optional[int], str, str]:
    status = getattr(error, "status", None)
    status = status if isinstance(status, int) else None
    code = getattr(error, "code", None)
    code = code if isinstance(code, str) else ""
    message = getattr(error, "message", None)
    if not isinstance(message, str):
        message = str(error)
    return status, code, message


def should_fallback(error: BaseException) -> bool:
    """True when the failure is specific to the attempted model (not found / unsupported)."""
    if isinstance(error, GateTimeoutError):
        return True
    status, code, message = describe_error(error)
    if status == 429 or _QUOTA_RE.search(message) or _QUOTA_RE.search(code):
        return False
    if status == 404:
        return True
    if status == 400 and _BAD_REQUEST_MODEL_RE.search(message):
        return True
    if _MODEL_MESSAGE_RE.search(message):
        return True
    if _MODEL_CODE_RE.search(code):
        return True
    return False


def log_api_error(label: str, error: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
    status, code, message = describe_error(error)
    parts = [f"{label} failed"]
    if status is not None:
        parts.append(f"status={status}")
    if code:
        parts.append(f"code={code}")
    parts.append(f"message={message or type(error).__name__}")
    for key, value in (context or {}).items():
        parts.append(f"{key}={value}")
    logger.warning("[orchestrator] " + " | ".join(parts))


class FallbackOrchestrator:
    """
    Owns the per-model gates and the per-lane sticky model.

    One instance is shared by all lanes of a process; tests build their own.
    """

    def __init__(
        self,
        settings: Settings,
        backend: Backend,
        clock: Callable[[], float] = monotonic_ms,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.s = settings
        self.backend = backend
        self.gates = GateRegistry(settings, clock=clock, sleep=sleep)
        self.sticky: Dict[str, str] = {}

    def candidate_models(self, lane: str, preferred: str, fallbacks: List[str]) -> List[str]:
        ordered = [self.sticky.get(lane), preferred, *fallbacks]
        seen: List[str] = []
        for model in ordered:
            if model and model not in seen:
                seen.append(model)
        return seen

    async def generate(
        self,
        lane: str,
        label: str,
        preferred_model: str,
        fallback_models: List[str],
        contents: List[Dict[str, Any]],
        response_schema: Dict[str, Any],
        generation_config: Dict[str, Any],
        timeout_ms: int,
        context: Optional[Dict[str, Any]] = None,
    ) -> Tuple[str, str]:
        """
        Try each candidate model in order until one answers.

        Returns:
            (raw_text, model) from the first successful candidate.

        Raises:
            AllCandidatesFailedError: every candidate failed with a fallback-eligible error.
            Exception: the first non-fallback error, unchanged.
        """
        models = self.candidate_models(lane, preferred_model, fallback_models)
        last_error: Optional[BaseException] = None
        attempted: List[str] = []

        for model in models:
            attempted.append(model)
            try:
                await self.gates.acquire(model)
            except GateTimeoutError as e:
                last_error = e
                log_api_error(f"{label} gate", e, {"lane": lane, "model": model, **(context or {})})
                continue

            try:
                text = await asyncio.wait_for(
                    self.backend.generate(model, contents, response_schema, generation_config, timeout_ms),
                    timeout=timeout_ms / 1000.0,
                )
                self.sticky[lane] = model
                logger.debug(f"[orchestrator] {label} ok lane={lane} model={model}")
                return text or "", model
            except asyncio.TimeoutError:
                error = TimeoutError(f"{label} timed out after {timeout_ms}ms")
                log_api_error(f"{label} attempt", error, {"lane": lane, "model": model, **(context or {})})
                raise error
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                can_fallback = should_fallback(e)
                log_api_error(
                    f"{label} attempt",
                    e,
                    {"lane": lane, "model": model, "can_fallback": can_fallback, **(context or {})},
                )
                if not can_fallback:
                    raise
            finally:
                self.gates.release(model)

        raise AllCandidatesFailedError(label, attempted, last_error)
