#!/usr/bin/env python
"""
Queue worker for ANALYSIS_MODE=queue.

Polls for the oldest upload in status "queued", claims it and runs the analysis
pipeline. Several workers may run side by side; claiming is atomic.

Usage:
    python scripts/analysis_worker.py            # loop forever
    python scripts/analysis_worker.py --once     # process at most one upload
    python scripts/analysis_worker.py --poll 10  # custom poll interval (seconds)

Environment:
    DATABASE_URL, STORAGE_BACKEND (+ S3_*), provider API keys
"""
from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.gradeai import create_app
from app.gradeai.analysis import analyze_upload, claim_next_queued_upload

logger = logging.getLogger("gradeai.worker")

DEFAULT_POLL_SECONDS = 5.0


def process_one(app) -> bool:
    """Claim and analyse one queued upload. Returns False when the queue is empty."""
    upload_id = claim_next_queued_upload(app)
    if upload_id is None:
        return False
    logger.info("Claimed upload %s", upload_id)
    try:
        analyze_upload(app, upload_id)
    except Exception as e:
        # failure is already stored on the upload; keep the worker alive
        logger.error("Upload %s failed: %s", upload_id, e)
    return True


def main() -> None:
    parser = argparse.ArgumentParser(description="Process queued test analyses")
    parser.add_argument("--once", action="store_true", help="Process at most one upload and exit")
    parser.add_argument("--poll", type=float, default=DEFAULT_POLL_SECONDS, help="Seconds between polls when idle")
    args = parser.parse_args()

    app = create_app()
    logger.info("Analysis worker started (poll=%.1fs once=%s)", args.poll, args.once)

    if args.once:
        if not process_one(app):
            print("Queue empty.")
        return

    try:
        while True:
            if not process_one(app):
                time.sleep(args.poll)
    except KeyboardInterrupt:
        logger.info("Analysis worker stopped")


if __name__ == "__main__":
    main()
