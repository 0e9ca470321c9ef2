"""
Heuristic visual evidence for a test page.

Colour statistics (red teacher ink, blue pen) plus optional OCR of the regions where
grades, point totals and final comments usually sit. The result is rendered into the
vision prompt as extra context; it never overrides what the vision models read.
"""

from __future__ import annotations

import io
import logging
import re
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import asdict, dataclass, field

import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)

TARGET_MAX_WIDTH = 1400
GRID_COLS = 6
GRID_ROWS = 9
REGION_SCORE_THRESHOLD = 0.08
OCR_CROP_TIMEOUT_SECONDS = 8.0

_NOTE_RE = re.compile(r"(?:Note|Grade|Punkte)\s*[:\-]?\s*(\d{1,2})(?:\s*/\s*(\d{1,2}))?", re.IGNORECASE)
_LONE_GRADE_RE = re.compile(r"(?:^|\s)([1-6])(?:\s|$)")
_POINTS_RE = re.compile(r"(\d{1,2})\s*/\s*(\d{1,2})")

OcrFn = Callable[[bytes], str]


@dataclass(frozen=True)
class Region:
    x: int
    y: int
    width: int
    height: int
    score: float


@dataclass
class VisualEvidence:
    grade_detected: int | None
    marks: list[str]
    points: str | None
    teacher_comment: str | None
    correction_density: float
    answer_regions: list[Region] = field(default_factory=list)
    confidence: float = 0.85

    def to_dict(self) -> dict:
        return asdict(self)

    def to_prompt_text(self) -> str:
        lines = ["[Visual Evidence]"]
        lines.append(f"- Grade detected by OCR: {self.grade_detected if self.grade_detected is not None else 'none'}")
        lines.append(f"- Points detected: {self.points or 'none'}")
        lines.append(f"- Correction marks: {' '.join(self.marks) if self.marks else 'none'}")
        lines.append(f"- Correction density: {self.correction_density:.3f}")
        lines.append(f"- Marked answer regions: {len(self.answer_regions)}")
        if self.teacher_comment:
            lines.append(f"- Possible teacher comment (bottom of page): {self.teacher_comment}")
        lines.append("Use this only as a hint; trust what you see on the pages.")
        return "\n".join(lines)


def is_red(rgb: np.ndarray) -> np.ndarray:
    r, g, b = (rgb[..., i].astype(np.int16) for i in range(3))
    return (r > 150) & (r > g + 40) & (r > b + 40)


def is_blue(rgb: np.ndarray) -> np.ndarray:
    r, g, b = (rgb[..., i].astype(np.int16) for i in range(3))
    return (b > 140) & (b > r + 20) & (b > g + 10)


def mask_ratio(rgb: np.ndarray, predicate: Callable[[np.ndarray], np.ndarray]) -> float:
    mask = predicate(rgb)
    return float(mask.mean()) if mask.size else 0.0


def load_scaled(image_bytes: bytes, max_width: int = TARGET_MAX_WIDTH) -> np.ndarray:
    with Image.open(io.BytesIO(image_bytes)) as src:
        img = src.convert("RGB")
    if img.width > max_width:
        height = max(1, round(img.height * max_width / img.width))
        img = img.resize((max_width, height), Image.Resampling.LANCZOS)
    return np.asarray(img, dtype=np.uint8)


def detect_answer_regions(rgb: np.ndarray) -> list[Region]:
    """Grid scan for ink density; dense cells are merged into larger regions top to bottom."""
    height, width = rgb.shape[:2]
    cell_w = width // GRID_COLS
    cell_h = height // GRID_ROWS
    if cell_w == 0 or cell_h == 0:
        return []

    ink = is_red(rgb) | is_blue(rgb)
    cells: list[dict] = []
    for row in range(GRID_ROWS):
        for col in range(GRID_COLS):
            x, y = col * cell_w, row * cell_h
            score = float(ink[y : y + cell_h, x : x + cell_w].mean())
            if score > REGION_SCORE_THRESHOLD:
                cells.append({"x": x, "y": y, "width": cell_w, "height": cell_h, "score": score})

    cells.sort(key=lambda c: (c["y"], c["x"]))
    merged: list[dict] = []
    for cell in cells:
        last = merged[-1] if merged else None
        if last and cell["y"] <= last["y"] + last["height"] and cell["x"] <= last["x"] + last["width"] + cell["width"]:
            last["width"] = max(last["width"], cell["x"] + cell["width"] - last["x"])
            last["height"] = max(last["height"], cell["y"] + cell["height"] - last["y"])
            last["score"] = max(last["score"], cell["score"])
        else:
            merged.append(dict(cell))
    return [Region(**m) for m in merged]


def parse_grade_text(text: str) -> int | None:
    m = _NOTE_RE.search(text or "")
    if m:
        return int(m.group(1))
    m = _LONE_GRADE_RE.search(text or "")
    if m:
        return int(m.group(1))
    return None


def parse_points_text(text: str) -> str | None:
    m = _POINTS_RE.search(text or "")
    return f"{m.group(1)}/{m.group(2)}" if m else None


def parse_teacher_comment(text: str) -> str | None:
    cleaned = re.sub(r"\s+", " ", text or "").strip()
    return cleaned if len(cleaned) > 4 else None


def _crop_png(rgb: np.ndarray, x: int, y: int, width: int, height: int) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(rgb[y : y + height, x : x + width], "RGB").save(buf, format="PNG")
    return buf.getvalue()


def _ocr_crop(ocr: OcrFn | None, pool: ThreadPoolExecutor | None, rgb: np.ndarray, rect: tuple[int, int, int, int]) -> str:
    if ocr is None or pool is None:
        return ""
    future = pool.submit(ocr, _crop_png(rgb, *rect))
    try:
        return future.result(timeout=OCR_CROP_TIMEOUT_SECONDS) or ""
    except FutureTimeoutError:
        logger.warning("OCR crop timed out after %.0fs", OCR_CROP_TIMEOUT_SECONDS)
        return ""
    except Exception as e:
        # crop OCR is best-effort
        logger.warning("OCR crop failed: %s", e)
        return ""


def build_visual_evidence(image_bytes: bytes, ocr: OcrFn | None = None) -> VisualEvidence:
    rgb = load_scaled(image_bytes)
    height, width = rgb.shape[:2]

    red_ratio = mask_ratio(rgb, is_red)
    blue_ratio = mask_ratio(rgb, is_blue)
    correction_density = min(1.0, red_ratio + blue_ratio)

    grade: int | None = None
    points: str | None = None
    comment: str | None = None
    pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="ocr-crop") if ocr and width > 2 and height > 4 else None
    try:
        grade_rects = [
            (int(width * 0.65), 0, int(width * 0.35), int(height * 0.25)),
            (0, 0, int(width * 0.35), int(height * 0.25)),
        ]
        for rect in grade_rects:
            grade = parse_grade_text(_ocr_crop(ocr, pool, rgb, rect))
            if grade is not None:
                break
        points = parse_points_text(
            _ocr_crop(ocr, pool, rgb, (int(width * 0.5), 0, int(width * 0.5), int(height * 0.3)))
        )
        comment = parse_teacher_comment(
            _ocr_crop(ocr, pool, rgb, (0, int(height * 0.75), width, int(height * 0.25)))
        )
    finally:
        if pool is not None:
            pool.shutdown(wait=False, cancel_futures=True)

    marks: list[str] = []
    if red_ratio > 0.01:
        marks.append("✗")
    if blue_ratio > 0.008:
        marks.append("✓")

    confidence = min(0.99, 0.85 + min(0.12, correction_density * 0.5))
    evidence = VisualEvidence(
        grade_detected=grade,
        marks=marks,
        points=points,
        teacher_comment=comment,
        correction_density=round(correction_density, 3),
        answer_regions=detect_answer_regions(rgb),
        confidence=confidence,
    )
    logger.info(
        "Visual evidence: density=%.3f regions=%d grade=%s points=%s",
        evidence.correction_density,
        len(evidence.answer_regions),
        evidence.grade_detected,
        evidence.points,
    )
    return evidence
