#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os

from app.dlq import ReplayActor
from app.runtime import build_runtime


def main() -> int:
    parser = argparse.ArgumentParser(description="Replay one dead-letter entry through the queue publisher.")
    parser.add_argument("--tenant", required=True, help="Tenant owning the entry.")
    parser.add_argument("--dlq-id", required=True, help="Dead-letter entry id (dlq_...).")
    parser.add_argument("--actor", required=True, help="Operator user id recorded in the replay audit row.")
    parser.add_argument("--email", default=None, help="Operator email recorded in the replay audit row.")
    args = parser.parse_args()
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())

    runtime = build_runtime()
    result = runtime.dead_letters.replay(
        tenant_id=args.tenant,
        dlq_id=args.dlq_id,
        actor=ReplayActor(user_id=args.actor, email=args.email),
    )
    print(json.dumps({"success": result.ok, "result": result.as_dict()}, ensure_ascii=True))
    return 0 if result.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
