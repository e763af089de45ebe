"""
Configuration for the overlay pipeline and the lane API.
"""
from pydantic import BaseModel
import os


def _split_models(raw: str) -> list[str]:
    return [m.strip() for m in (raw or "").split(",") if m.strip()]


class Settings(BaseModel):
    """
    Runtime settings with environment-variable overrides.
    """
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Generative backend
    GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")
    GEMINI_BASE_URL: str = os.getenv(
        "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
    )

    LITE_MODEL: str = os.getenv("LITE_MODEL", "gemini-2.5-flash-lite")
    FLASH_MODEL: str = os.getenv("FLASH_MODEL", "gemini-3-flash-preview")
    PRO_MODEL: str = os.getenv("PRO_MODEL", "gemini-3.1-pro-preview")
    LITE_FALLBACK_MODELS: list[str] = _split_models(
        os.getenv("LITE_FALLBACK_MODELS", "gemini-2.5-flash,gemini-3-flash-preview")
    )
    FLASH_FALLBACK_MODELS: list[str] = _split_models(
        os.getenv("FLASH_FALLBACK_MODELS", "gemini-2.5-flash")
    )
    PRO_FALLBACK_MODELS: list[str] = _split_models(
        os.getenv("PRO_FALLBACK_MODELS", "gemini-2.5-pro")
    )

    # Per-attempt timeout budgets (base, cap) in ms
    LITE_TIMEOUT_MS: int = int(os.getenv("LITE_TIMEOUT_MS", "6500"))
    LITE_TIMEOUT_CAP_MS: int = int(os.getenv("LITE_TIMEOUT_CAP_MS", "9000"))
    FLASH_TIMEOUT_MS: int = int(os.getenv("FLASH_TIMEOUT_MS", "9000"))
    FLASH_TIMEOUT_CAP_MS: int = int(os.getenv("FLASH_TIMEOUT_CAP_MS", "16000"))
    PRO_TIMEOUT_MS: int = int(os.getenv("PRO_TIMEOUT_MS", "60000"))
    PRO_TIMEOUT_CAP_MS: int = int(os.getenv("PRO_TIMEOUT_CAP_MS", "120000"))
    PRO_VIDEO_EXTRA_MS: int = int(os.getenv("PRO_VIDEO_EXTRA_MS", "10000"))

    # Model gate
    LITE_COOLDOWN_MS: int = int(os.getenv("LITE_COOLDOWN_MS", "450"))
    FLASH_COOLDOWN_MS: int = int(os.getenv("FLASH_COOLDOWN_MS", "3200"))
    PRO_COOLDOWN_MS: int = int(os.getenv("PRO_COOLDOWN_MS", "45000"))
    GATE_POLL_MS: int = int(os.getenv("GATE_POLL_MS", "24"))
    GATE_MAX_WAIT_MS: int = int(os.getenv("GATE_MAX_WAIT_MS", "16000"))

    # Request validation
    MAX_IMAGE_BASE64_LENGTH: int = int(os.getenv("MAX_IMAGE_BASE64_LENGTH", "4000000"))
    MIN_IMAGE_BASE64_LENGTH: int = int(os.getenv("MIN_IMAGE_BASE64_LENGTH", "128"))
    MAX_VIDEO_BASE64_LENGTH: int = int(os.getenv("MAX_VIDEO_BASE64_LENGTH", "8000000"))
    MIN_VIDEO_BASE64_LENGTH: int = int(os.getenv("MIN_VIDEO_BASE64_LENGTH", "256"))
    MAX_FRAME_AGE_MS: int = int(os.getenv("MAX_FRAME_AGE_MS", "15000"))
    MAX_VIDEO_DURATION_MS: int = int(os.getenv("MAX_VIDEO_DURATION_MS", "8000"))
    LANE_MAX_SIDE: int = int(os.getenv("LANE_MAX_SIDE", "720"))
    COMBINED_MAX_SIDE: int = int(os.getenv("COMBINED_MAX_SIDE", "960"))

    # Fusion / smoothing
    FUSION_MAX_STALE_MS: int = int(os.getenv("FUSION_MAX_STALE_MS", "4500"))
    FUSION_HARD_MAX_STALE_MS: int = int(os.getenv("FUSION_HARD_MAX_STALE_MS", "30000"))
    FUSION_REACQUIRE_DISTANCE: float = float(os.getenv("FUSION_REACQUIRE_DISTANCE", "130"))
    SMOOTH_ATTACK_MS: float = float(os.getenv("SMOOTH_ATTACK_MS", "65"))
    SMOOTH_RELEASE_MS: float = float(os.getenv("SMOOTH_RELEASE_MS", "130"))
    SMOOTH_MAX_AGE_MS: float = float(os.getenv("SMOOTH_MAX_AGE_MS", "6000"))

    # Live session
    CAMERA_INDEX: int = int(os.getenv("CAMERA_INDEX", "0"))
    API_BASE_URL: str = os.getenv("API_BASE_URL", "http://127.0.0.1:8000")
    LITE_INTERVAL_MS: int = int(os.getenv("LITE_INTERVAL_MS", "1200"))
    FLASH_INTERVAL_MS: int = int(os.getenv("FLASH_INTERVAL_MS", "2800"))
    PRO_INTERVAL_MS: int = int(os.getenv("PRO_INTERVAL_MS", "50000"))
    WARMUP_MS: int = int(os.getenv("WARMUP_MS", "2000"))
    PRO_EMPTY_RETRY_MS: int = int(os.getenv("PRO_EMPTY_RETRY_MS", "3500"))
    PRO_VIDEO_CLIP_MS: int = int(os.getenv("PRO_VIDEO_CLIP_MS", "5000"))

    def __init__(self, **data):
        super().__init__(**data)
        # Normalize LOG_LEVEL: upper-case, fall back to INFO on unknown names
        level = ((self.LOG_LEVEL or "").split() or ["INFO"])[0].upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            level = "INFO"
        object.__setattr__(self, "LOG_LEVEL", level)
        object.__setattr__(self, "GEMINI_BASE_URL", self.GEMINI_BASE_URL.rstrip("/"))
        object.__setattr__(self, "API_BASE_URL", self.API_BASE_URL.rstrip("/"))
