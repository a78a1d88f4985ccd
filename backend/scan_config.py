"""
scan_config.py

Runtime settings read from the environment (and a local .env file).
"""
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_float(name, default):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class ScanSettings:
    ocr_provider: str = "tesseract"       # tesseract | gemini | none
    tesseract_cmd: Optional[str] = None   # e.g. C:\Program Files\Tesseract-OCR\tesseract.exe
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash-exp"
    sensitivity: float = 0.03
    review_confidence_floor: float = 0.3
    max_upload_mb: float = 16.0


def load_settings() -> ScanSettings:
    return ScanSettings(
        ocr_provider=os.getenv("OCR_PROVIDER", "tesseract").strip().lower(),
        tesseract_cmd=os.getenv("TESSERACT_CMD") or None,
        gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash-exp"),
        sensitivity=_env_float("TICK_SENSITIVITY", 0.03),
        review_confidence_floor=_env_float("REVIEW_CONFIDENCE_FLOOR", 0.3),
        max_upload_mb=_env_float("MAX_UPLOAD_MB", 16.0),
    )
