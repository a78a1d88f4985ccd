"""
tick_detector.py

Image-only attendance detection for photographed registers.

Pipeline (one synchronous run, nothing kept between runs):
    bytes -> BGR image -> luminance -> ink grid
          -> row bands (left 60%) + tick column (right 45%)
          -> per-row ink ratio / blob size -> Detection per roster entry

Rows are mapped to the roster by position: row i belongs to scope[i].
"""
import io
import logging
import math
from dataclasses import asdict, dataclass
from typing import List, Optional, Sequence

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError
from pdf2image import convert_from_bytes
from pdf2image.exceptions import PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError

from roster import RosterEntry, has_group_filter, resolve_scope
from scan_errors import ImageDecodeError, NoImageSuppliedError

logger = logging.getLogger(__name__)

# ---------- CONFIG ----------
MAX_WORKING_WIDTH = 1200      # px; wider photos are downscaled
PDF_DPI = 200

THRESH_MEDIAN_FACTOR = 0.9
THRESH_MIN = 40
THRESH_MAX = 220

NAME_REGION_FRACTION = 0.60   # rows are found in x < 0.6*W
ROW_ACTIVITY_FACTOR = 0.12    # active row: ink > max(2, mean*0.12)
ROW_ACTIVITY_FLOOR = 2
MIN_FALLBACK_ROW_HEIGHT = 8

TICK_SEARCH_START = 0.55      # tick column searched in x >= 0.55*W
TICK_HALF_WINDOW = 0.06       # window = bestX +- 0.06*W
MIN_TICK_WIDTH = 6

BAND_SPACING_FACTOR = 0.6
MIN_BAND_HEIGHT = 6
MIN_ADAPTIVE_THRESHOLD = 0.01
MIN_BLOB_FACTOR = 0.4
MIN_BLOB_PIXELS = 3
CONFIDENCE_RATIO_CEILING = 0.5

MIN_SENSITIVITY = 0.005
MAX_SENSITIVITY = 0.12
DEFAULT_SENSITIVITY = 0.03


# ---------- data ----------
@dataclass(frozen=True)
class RowBand:
    y0: int
    y1: int
    center: int


@dataclass(frozen=True)
class TickColumn:
    """Tick window, x_end exclusive."""
    x_start: int
    x_end: int
    width: int


@dataclass(frozen=True)
class BandMeasurement:
    ratio: float
    max_blob: int
    bg_ratio: float


@dataclass(frozen=True)
class Detection:
    person_id: Optional[str]
    person_name: Optional[str]
    present: bool
    confidence: float

    def to_dict(self):
        return asdict(self)


def clamp01(v):
    return min(1.0, max(0.0, v))


# ---------- image normalizer ----------
def _decode_pdf(data):
    try:
        pages = convert_from_bytes(data, dpi=PDF_DPI, first_page=1, last_page=1)
    except (PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError, OSError) as e:
        raise ImageDecodeError(f"Could not rasterise PDF: {e}") from e
    if not pages:
        raise ImageDecodeError("PDF has no pages")
    return pages[0]


def pil_to_cv(img_pil):
    return cv2.cvtColor(np.array(img_pil), cv2.COLOR_RGB2BGR)


def decode_image(data) -> np.ndarray:
    """Decode raw bytes (any Pillow format, or a PDF's first page) to BGR."""
    if data is None or len(data) == 0:
        raise NoImageSuppliedError("No image supplied")
    if bytes(data[:4]) == b"%PDF":
        pil = _decode_pdf(bytes(data))
    else:
        try:
            pil = Image.open(io.BytesIO(data))
            pil.load()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise ImageDecodeError(f"Could not decode image: {e}") from e
    try:
        return pil_to_cv(pil.convert("RGB"))
    except (OSError, ValueError) as e:
        raise ImageDecodeError(f"Could not convert image to RGB: {e}") from e


def load_image(image, max_width=MAX_WORKING_WIDTH) -> np.ndarray:
    """
    Bytes or an already decoded BGR array -> BGR array no wider than
    `max_width`, aspect ratio preserved. `max_width=None` keeps full size.
    """
    if image is None:
        raise NoImageSuppliedError("No image supplied")
    if isinstance(image, np.ndarray):
        img = image
        if img.ndim == 2:
            img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
        elif img.ndim != 3 or img.shape[2] not in (3, 4):
            raise ImageDecodeError(f"Unsupported pixel buffer shape {img.shape}")
        elif img.shape[2] == 4:
            img = cv2.cvtColor(img, cv2.COLOR_BGRA2BGR)
        if img.dtype != np.uint8:
            img = np.clip(img, 0, 255).astype(np.uint8)
    else:
        img = decode_image(image)

    h, w = img.shape[:2]
    if w == 0 or h == 0 or max_width is None:
        return img
    scale = min(1.0, max_width / w)
    if scale < 1.0:
        w_scaled = max(1, int(math.floor(w * scale)))
        h_scaled = max(1, int(math.floor(h * scale)))
        img = cv2.resize(img, (w_scaled, h_scaled), interpolation=cv2.INTER_AREA)
    return img


# ---------- luminance & binarizer ----------
def luminance_grid(img_bgr) -> np.ndarray:
    px = img_bgr.astype(np.float64)
    return 0.299 * px[:, :, 2] + 0.587 * px[:, :, 1] + 0.114 * px[:, :, 0]


def binarize_threshold(lum) -> float:
    """clamp(median * 0.9, 40, 220), median taken as sorted[n // 2]."""
    values = np.sort(lum, axis=None)
    median = float(values[values.size // 2]) if values.size else 128.0
    return float(max(THRESH_MIN, min(THRESH_MAX, median * THRESH_MEDIAN_FACTOR)))


def binarize(lum, threshold) -> np.ndarray:
    return lum < threshold


# ---------- row segmenter ----------
def _active_runs(active):
    runs = []
    start = None
    for y, is_active in enumerate(active):
        if is_active and start is None:
            start = y
        elif not is_active and start is not None:
            runs.append((start, y - 1))
            start = None
    if start is not None:
        runs.append((start, len(active) - 1))
    return runs


def equal_split_bands(top, bottom, count, height) -> List[RowBand]:
    """
    Up to `count` equal slices of [top, bottom]. Slices starting below the
    image are dropped (their people are scored absent), the last one kept
    is clipped to the image height.
    """
    row_h = max(MIN_FALLBACK_ROW_HEIGHT, (bottom - top + 1) // count)
    last = max(0, height - 1)
    bands = []
    for i in range(count):
        y0 = top + i * row_h
        if y0 > last:
            break
        y1 = min(last, top + (i + 1) * row_h - 1)
        center = min(y1, top + i * row_h + row_h // 2)
        bands.append(RowBand(y0=y0, y1=y1, center=center))
    return bands


def segment_rows(binary, expected_rows) -> List[RowBand]:
    """
    Text-line bands from the vertical ink projection of the name region.

    Too few bands for the roster (< max(3, N/2)) falls back to splitting the
    detected span into `expected_rows` equal slices, one per person.
    """
    h, w = binary.shape[:2]
    left_w = int(math.floor(w * NAME_REGION_FRACTION))
    row_ink = binary[:, :left_w].sum(axis=1) if h else np.zeros(0)
    mean_row = float(row_ink.mean()) if h else 0.0
    floor = max(ROW_ACTIVITY_FLOOR, mean_row * ROW_ACTIVITY_FACTOR)
    runs = _active_runs(row_ink > floor)
    bands = [RowBand(y0=a, y1=b, center=(a + b) // 2) for a, b in runs]

    if expected_rows > 0 and len(bands) < max(3, expected_rows / 2):
        top = runs[0][0] if runs else 0
        bottom = runs[-1][1] if runs else h - 1
        logger.warning("Found %d row bands for %d people, splitting rows %d-%d evenly",
                       len(bands), expected_rows, top, bottom)
        return equal_split_bands(top, bottom, expected_rows, h)
    return bands


# ---------- tick column locator ----------
def locate_tick_column(binary) -> TickColumn:
    """Densest ink column in the right 45% of the page, with a window around it."""
    h, w = binary.shape[:2]
    search_start = int(math.floor(w * TICK_SEARCH_START))
    col_ink = binary[:, search_start:].sum(axis=0)
    best_x = search_start + int(np.argmax(col_ink)) if col_ink.size else search_start
    half = int(math.floor(w * TICK_HALF_WINDOW))
    x_start = max(0, best_x - half)
    x_end = min(w, best_x + half + 1)
    if x_end - x_start < MIN_TICK_WIDTH:
        x_end = min(w, x_start + MIN_TICK_WIDTH)
        x_start = max(0, x_end - MIN_TICK_WIDTH)
    return TickColumn(x_start=x_start, x_end=x_end, width=x_end - x_start)


# ---------- presence classifier ----------
def longest_run(row) -> int:
    """Longest run of True values in a 1-D bool array."""
    if row.size == 0 or not row.any():
        return 0
    padded = np.concatenate(([False], row, [False])).astype(np.int8)
    edges = np.diff(padded)
    starts = np.flatnonzero(edges == 1)
    ends = np.flatnonzero(edges == -1)
    return int((ends - starts).max())


def band_rows(band, band_height, image_height):
    y0 = max(0, band.center - band_height // 2)
    y1 = min(image_height - 1, band.center + band_height // 2)
    return y0, y1


def measure_band(binary, y0, y1, tick) -> BandMeasurement:
    window = binary[y0:y1 + 1, tick.x_start:tick.x_end]
    total = window.size
    ratio = float(np.count_nonzero(window)) / total if total else 0.0
    max_blob = max((longest_run(r) for r in window), default=0)

    # local background: strip just left of the tick window
    bg_width = max(2, min(tick.width * 2, tick.x_start))
    bg_start = max(0, tick.x_start - bg_width)
    bg = binary[y0:y1 + 1, bg_start:tick.x_start]
    bg_ratio = float(np.count_nonzero(bg)) / bg.size if bg.size else 0.0
    return BandMeasurement(ratio=ratio, max_blob=max_blob, bg_ratio=bg_ratio)


def score_presence(m, tick_width, sensitivity):
    """(present, confidence) for one band; needs both enough ink and a solid stroke."""
    adaptive = max(MIN_ADAPTIVE_THRESHOLD, m.bg_ratio + sensitivity)
    min_blob = max(MIN_BLOB_PIXELS, int(math.floor(tick_width * MIN_BLOB_FACTOR)))
    present = m.ratio > adaptive and m.max_blob >= min_blob
    if adaptive >= CONFIDENCE_RATIO_CEILING:
        conf_base = 0.0
    else:
        conf_base = clamp01((m.ratio - adaptive) / (CONFIDENCE_RATIO_CEILING - adaptive))
    blob_factor = clamp01(m.max_blob / (2.0 * tick_width)) if tick_width > 0 else 0.0
    return bool(present), float(conf_base * blob_factor)


def classify_bands(binary, bands, tick, count, sensitivity):
    """(present, confidence) for the first `count` bands, padded with absences."""
    h = binary.shape[0]
    scores = []
    if bands and h:
        band_height = max(MIN_BAND_HEIGHT,
                          int(math.floor(h / len(bands) * BAND_SPACING_FACTOR)))
        for band in bands[:count]:
            y0, y1 = band_rows(band, band_height, h)
            m = measure_band(binary, y0, y1, tick)
            scores.append(score_presence(m, tick.width, sensitivity))
    while len(scores) < count:
        scores.append((False, 0.0))
    return scores


def validate_sensitivity(sensitivity) -> float:
    s = float(sensitivity)
    if not MIN_SENSITIVITY <= s <= MAX_SENSITIVITY:
        raise ValueError(f"sensitivity must be within [{MIN_SENSITIVITY}, {MAX_SENSITIVITY}], got {s}")
    return s


# ---------- public entry point ----------
def classify(image, roster: Sequence[RosterEntry], scope: Optional[str] = None,
             sensitivity: float = DEFAULT_SENSITIVITY) -> List[Detection]:
    """
    One Detection per person in scope, in scope order.

    `scope` is a group key, or None/""/"all" for the whole roster. Row i of
    the sheet is assumed to belong to the i-th scoped person.
    """
    sensitivity = validate_sensitivity(sensitivity)
    if image is None or (isinstance(image, (bytes, bytearray)) and len(image) == 0):
        raise NoImageSuppliedError("No image supplied")
    people = resolve_scope(roster, scope)
    if not has_group_filter(scope):
        logger.warning("No group selected; row order is matched against the whole roster")

    img = load_image(image)
    h, w = img.shape[:2]
    n = len(people)
    if h == 0 or w == 0:
        logger.warning("Empty image, every detection is absent")
        scores = [(False, 0.0)] * n
    else:
        lum = luminance_grid(img)
        threshold = binarize_threshold(lum)
        binary = binarize(lum, threshold)
        bands = segment_rows(binary, n)
        tick = locate_tick_column(binary)
        logger.debug("image %dx%d threshold %.1f bands %d tick x=[%d,%d)",
                     w, h, threshold, len(bands), tick.x_start, tick.x_end)
        scores = classify_bands(binary, bands, tick, n, sensitivity)

    detections = [Detection(person_id=p.id, person_name=p.name, present=present, confidence=conf)
                  for p, (present, conf) in zip(people, scores)]
    logger.info("Tick detection: %d/%d present (sensitivity %.3f)",
                sum(d.present for d in detections), n, sensitivity)
    return detections
