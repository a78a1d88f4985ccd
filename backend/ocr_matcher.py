"""
ocr_matcher.py

Optional text path: pluggable text extractors (tesseract, Gemini) and
fuzzy matching of recognized lines to roster names.

Extractors never raise; every failure comes back as TextResult(ok=False).
Matches are suggestions for a human to accept, never presence by themselves.
"""
import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

import cv2
import google.generativeai as genai
import pytesseract

from roster import RosterEntry

logger = logging.getLogger(__name__)

# ---------- CONFIG ----------
TESSERACT_PSM = 6          # assume a single uniform block of text
GEMINI_MODEL = "gemini-2.0-flash-exp"

GEMINI_PROMPT = """You are reading a photographed attendance register.
Transcribe the text of the sheet line by line, one register row per line.

RULES:
- Keep the original spelling of names.
- Do not add explanations, headings or numbering that are not on the sheet.

IMPORTANT: Return ONLY the transcribed lines.
"""


@dataclass(frozen=True)
class TextResult:
    ok: bool
    text: str = ""
    error: Optional[str] = None

    @classmethod
    def failure(cls, error):
        return cls(ok=False, text="", error=str(error))


@dataclass(frozen=True)
class OcrMatch:
    line: str
    matched_person: Optional[RosterEntry] = None

    def to_dict(self):
        p = self.matched_person
        return {"line": self.line, "matched_person": p.to_dict() if p else None}


# ---------- extractors ----------
class TextExtractor:
    """Interface for text recognition providers."""

    name = "none"

    def available(self) -> bool:
        return False

    def extract_text(self, image) -> TextResult:
        return TextResult.failure(f"text extractor '{self.name}' is not available")


class TesseractTextExtractor(TextExtractor):
    name = "tesseract"

    def __init__(self, tesseract_cmd=None, psm=TESSERACT_PSM, lang="eng"):
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        self.psm = psm
        self.lang = lang

    def available(self) -> bool:
        try:
            pytesseract.get_tesseract_version()
            return True
        except (pytesseract.TesseractNotFoundError, OSError) as e:
            logger.info("tesseract not available: %s", e)
            return False

    def extract_text(self, image) -> TextResult:
        try:
            gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
            _, th = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
            text = pytesseract.image_to_string(th, lang=self.lang, config=f"--psm {self.psm}")
            return TextResult(ok=True, text=text or "")
        except Exception as e:
            logger.warning("tesseract OCR failed: %s", e)
            return TextResult.failure(e)


class GeminiTextExtractor(TextExtractor):
    name = "gemini"

    def __init__(self, api_key=None, model=GEMINI_MODEL):
        self.api_key = api_key
        self.model = model

    def available(self) -> bool:
        return bool(self.api_key)

    def extract_text(self, image) -> TextResult:
        if not self.available():
            return TextResult.failure("GEMINI_API_KEY is not set")
        try:
            ok, buf = cv2.imencode(".png", image)
            if not ok:
                return TextResult.failure("could not encode image for Gemini")
            genai.configure(api_key=self.api_key)
            model = genai.GenerativeModel(self.model)
            response = model.generate_content([
                GEMINI_PROMPT,
                {"mime_type": "image/png", "data": buf.tobytes()},
            ])
            return TextResult(ok=True, text=response.text or "")
        except Exception as e:
            logger.warning("Gemini OCR failed: %s", e)
            return TextResult.failure(e)


def build_text_extractor(name, tesseract_cmd=None, gemini_api_key=None, gemini_model=GEMINI_MODEL):
    key = (name or "none").strip().lower()
    if key == "tesseract":
        return TesseractTextExtractor(tesseract_cmd=tesseract_cmd)
    if key == "gemini":
        return GeminiTextExtractor(api_key=gemini_api_key, model=gemini_model)
    if key == "none":
        return None
    raise ValueError(f"Unsupported OCR provider: {name}")


# ---------- line matching ----------
def split_lines(text) -> List[str]:
    return [l.strip() for l in re.split(r"\r?\n", text or "") if l.strip()]


def _first_token(s):
    parts = s.split()
    return parts[0] if parts else ""


def match_line(line, roster: Iterable[RosterEntry]) -> Optional[RosterEntry]:
    """
    First roster entry (roster order) whose name contains the line, is
    contained in it, or shares its first word. No tie-break beyond order.
    """
    l = line.lower()
    first = _first_token(l)
    for entry in roster:
        name = (entry.name or "").strip().lower()
        if not name:
            continue
        if name in l or l in name or _first_token(name) == first:
            return entry
    return None


def match_text(text, roster: Iterable[RosterEntry]) -> List[OcrMatch]:
    entries = list(roster)
    matches = [OcrMatch(line=line, matched_person=match_line(line, entries))
               for line in split_lines(text)]
    logger.info("OCR matched %d of %d lines", sum(1 for m in matches if m.matched_person), len(matches))
    return matches
