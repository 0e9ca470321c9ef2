#!/usr/bin/env python
"""
Run the local image steps of the pipeline on files from disk and print JSON.

Quality check, preprocessing preset, red-ink separation and visual evidence.
With --vision the configured providers are called as well and the merged
TestAnalysis is printed.

Usage:
    python scripts/manual_analyze.py page1.jpg page2.jpg
    python scripts/manual_analyze.py --vision test.pdf
    python scripts/manual_analyze.py --save-layers out/ page1.jpg
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.gradeai.analysis import run_pipeline
from app.gradeai.config import load_config
from app.gradeai.imaging.color_separation import separate_red_ink
from app.gradeai.imaging.pages import is_pdf
from app.gradeai.imaging.preprocessing import analyze_image_quality, preprocess_for_mode
from app.gradeai.imaging.visual_detection import build_visual_evidence

_MIME_BY_SUFFIX = {".jpg": "image/jpeg", ".jpeg": "image/jpeg", ".png": "image/png", ".pdf": "application/pdf"}


def inspect_page(path: Path, data: bytes, layers_dir: Path | None) -> dict:
    quality = analyze_image_quality(data)
    prepped = preprocess_for_mode(data, quality.recommended_mode)
    separation = separate_red_ink(data)
    evidence = build_visual_evidence(data)
    if layers_dir is not None:
        layers_dir.mkdir(parents=True, exist_ok=True)
        (layers_dir / f"{path.stem}_red.jpg").write_bytes(separation.red_channel)
        (layers_dir / f"{path.stem}_black.jpg").write_bytes(separation.blue_black_channel)
        (layers_dir / f"{path.stem}_prepped.png").write_bytes(prepped.processed)
    return {
        "file": str(path),
        "quality": {
            "brightness": quality.brightness,
            "contrast": quality.contrast,
            "isBlurry": quality.is_blurry,
            "recommendedMode": quality.recommended_mode,
        },
        "preprocessingSteps": prepped.steps_applied,
        "redInkRatio": round(separation.red_ratio, 4),
        "visualEvidence": evidence.to_dict(),
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Analyse local test pages")
    parser.add_argument("files", nargs="+", type=Path)
    parser.add_argument("--vision", action="store_true", help="Also call the configured vision providers")
    parser.add_argument("--save-layers", type=Path, default=None, help="Write red/black/preprocessed layers here")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    buffers = [p.read_bytes() for p in args.files]
    mime_types = [_MIME_BY_SUFFIX.get(p.suffix.lower(), "image/jpeg") for p in args.files]

    out: dict = {
        "pages": [
            inspect_page(path, data, args.save_layers)
            for path, data in zip(args.files, buffers)
            if not is_pdf(data)
        ]
    }
    if args.vision:
        load_dotenv()
        out["analysis"] = run_pipeline(buffers, mime_types, config=load_config())

    print(json.dumps(out, indent=2, ensure_ascii=False, default=str))


if __name__ == "__main__":
    main()
