#!/usr/bin/env python3
"""
register_scanner.py

Usage:
    python register_scanner.py <register_image_or_pdf> <roster.csv> \
        --group "Flight A" --sensitivity 0.03 --ocr tesseract --out detections.csv

Function:
    - Runs optional OCR over the photographed register and matches lines to roster names.
    - Always runs image-only tick detection (one detection per roster row, in roster order).
    - Summarizes presents/absents and flags low-confidence presents for review.
    - Outputs:
        - detections.csv : person_id, person_name, present, confidence, needs_review
        - ocr_matches.csv : recognized line and matched person (only when OCR succeeded)
"""
import argparse
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pandas as pd

from ocr_matcher import OcrMatch, TextExtractor, build_text_extractor, match_text
from roster import load_roster_csv, resolve_scope
from scan_config import load_settings
from scan_errors import NoImageSuppliedError, ScanError
from tick_detector import DEFAULT_SENSITIVITY, Detection, classify, load_image, validate_sensitivity

logger = logging.getLogger(__name__)

PRESENT = "present"
ABSENT = "absent"


@dataclass(frozen=True)
class ScanResult:
    detections: List[Detection]
    ocr_text: str = ""
    ocr_matches: List[OcrMatch] = field(default_factory=list)
    ocr_error: Optional[str] = None

    def to_dict(self):
        return {
            "detections": [d.to_dict() for d in self.detections],
            "ocr_text": self.ocr_text,
            "ocr_matches": [m.to_dict() for m in self.ocr_matches],
            "ocr_error": self.ocr_error,
        }


# ---------------------------
# Core processing
# ---------------------------

def _run_ocr(extractor: Optional[TextExtractor], img, roster):
    """(text, matches, error). Never raises; failures fall through to tick detection."""
    if extractor is None:
        return "", [], "no OCR provider configured"
    try:
        if not extractor.available():
            logger.warning("OCR provider '%s' unavailable, using tick detection only", extractor.name)
            return "", [], f"OCR provider '{extractor.name}' is not available"
        result = extractor.extract_text(img)
        if not result.ok:
            logger.warning("OCR failed (%s), using tick detection only", result.error)
            return "", [], result.error or "OCR failed"
        return result.text, match_text(result.text, roster), None
    except Exception as e:
        logger.warning("OCR raised %s, using tick detection only", e)
        return "", [], str(e)


def scan_register(image, roster, group=None, sensitivity=DEFAULT_SENSITIVITY,
                  extractor: Optional[TextExtractor] = None) -> ScanResult:
    """
    One full run over a register photo.

    OCR is best-effort and matched against the whole roster; tick detection
    always runs on the scoped roster and its errors propagate to the caller.
    """
    sensitivity = validate_sensitivity(sensitivity)
    if image is None or (isinstance(image, (bytes, bytearray)) and len(image) == 0):
        raise NoImageSuppliedError("No image supplied")
    roster = list(roster)
    resolve_scope(roster, group)
    # OCR reads the full-resolution page; tick detection downscales it
    full = load_image(image, max_width=None)

    ocr_text, ocr_matches, ocr_error = _run_ocr(extractor, full, roster)
    img = load_image(full)
    detections = classify(img, roster, scope=group, sensitivity=sensitivity)
    return ScanResult(detections=detections, ocr_text=ocr_text,
                      ocr_matches=ocr_matches, ocr_error=ocr_error)


def apply_detections(statuses: Dict[str, str], detections) -> Dict[str, str]:
    """New status map with every detection applied as present/absent."""
    updated = dict(statuses)
    for d in detections:
        if d.person_id:
            updated[d.person_id] = PRESENT if d.present else ABSENT
    return updated


def apply_ocr_matches(statuses: Dict[str, str], matches) -> Dict[str, str]:
    """New status map with every accepted OCR match marked present."""
    updated = dict(statuses)
    for m in matches:
        if m.matched_person is not None:
            updated[m.matched_person.id] = PRESENT
    return updated


def summarize_detections(detections, review_floor=0.3):
    total = len(detections)
    present = sum(1 for d in detections if d.present)
    needs_review = [d.person_name or d.person_id for d in detections
                    if d.present and d.confidence < review_floor]
    return {
        "present": present,
        "absent": total - present,
        "total": total,
        "attendance_percentage": round(present / total * 100, 2) if total > 0 else 0,
        "needs_review": needs_review,
    }


# ---------------------------
# Save functions
# ---------------------------

def detections_frame(detections, review_floor=0.3) -> pd.DataFrame:
    rows = []
    for d in detections:
        rows.append({
            "person_id": d.person_id,
            "person_name": d.person_name,
            "present": d.present,
            "confidence": round(d.confidence, 4),
            "needs_review": d.present and d.confidence < review_floor,
        })
    return pd.DataFrame(rows, columns=["person_id", "person_name", "present", "confidence", "needs_review"])


def save_detections(detections, out_csv, review_floor=0.3):
    os.makedirs(os.path.dirname(out_csv) or ".", exist_ok=True)
    df = detections_frame(detections, review_floor)
    df.to_csv(out_csv, index=False, encoding="utf-8-sig")
    return out_csv


def save_ocr_matches(matches, out_csv):
    os.makedirs(os.path.dirname(out_csv) or ".", exist_ok=True)
    df = pd.DataFrame([{
        "line": m.line,
        "matched_id": m.matched_person.id if m.matched_person else "",
        "matched_name": m.matched_person.name if m.matched_person else "",
    } for m in matches], columns=["line", "matched_id", "matched_name"])
    df.to_csv(out_csv, index=False, encoding="utf-8-sig")
    return out_csv


# ---------------------------
# CLI
# ---------------------------

def main(argv):
    settings = load_settings()
    parser = argparse.ArgumentParser(description="Detect attendance ticks on a photographed register.")
    parser.add_argument("image", help="Register photo (png/jpg/...) or PDF")
    parser.add_argument("roster", help="Roster CSV with id,name,group columns")
    parser.add_argument("--group", default=None, help="Only match rows against this group (recommended)")
    parser.add_argument("--sensitivity", type=float, default=settings.sensitivity,
                        help="Tick threshold offset in [0.005, 0.12]; higher = stricter")
    parser.add_argument("--ocr", default=settings.ocr_provider, choices=["tesseract", "gemini", "none"],
                        help="Text recognition provider")
    parser.add_argument("--review-floor", type=float, default=settings.review_confidence_floor,
                        help="Presents below this confidence are flagged for review")
    parser.add_argument("--out", default="detections.csv", help="Output CSV for detections")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    if not os.path.exists(args.image):
        print("ERROR: image not found:", args.image)
        return 2
    if not os.path.exists(args.roster):
        print("ERROR: roster CSV not found:", args.roster)
        return 2

    roster = load_roster_csv(args.roster)
    extractor = build_text_extractor(args.ocr, tesseract_cmd=settings.tesseract_cmd,
                                     gemini_api_key=settings.gemini_api_key,
                                     gemini_model=settings.gemini_model)
    with open(args.image, "rb") as f:
        data = f.read()

    print("Processing register...")
    try:
        result = scan_register(data, roster, group=args.group,
                               sensitivity=args.sensitivity, extractor=extractor)
    except (ScanError, ValueError) as e:
        print(f"❌ Scan failed: {e}")
        return 1

    det_out = save_detections(result.detections, args.out, args.review_floor)
    print(f"✅ Saved detections to {det_out} ({len(result.detections)} rows).")
    if result.ocr_matches:
        match_out = os.path.join(os.path.dirname(args.out) or ".", "ocr_matches.csv")
        save_ocr_matches(result.ocr_matches, match_out)
        print(f"✅ Saved OCR matches to {match_out}")
    elif result.ocr_error:
        print("OCR skipped:", result.ocr_error)

    summary = summarize_detections(result.detections, args.review_floor)
    print(f"Present: {summary['present']}/{summary['total']} ({summary['attendance_percentage']}%)")
    if summary["needs_review"]:
        print("Needs review:", ", ".join(summary["needs_review"]))
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
