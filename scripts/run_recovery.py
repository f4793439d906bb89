#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os

from app.runtime import build_runtime


def main() -> int:
    parser = argparse.ArgumentParser(description="Re-publish PENDING fallback buffer rows to the broker.")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=0,
        help="Override ATTR_RECOVERY_BATCH_SIZE for this run (0 keeps the configured value).",
    )
    args = parser.parse_args()
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())

    runtime = build_runtime()
    if args.batch_size > 0:
        runtime.recovery.batch_size = args.batch_size
    result = runtime.recovery.run_once()
    print(json.dumps({"success": True, "result": result}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
