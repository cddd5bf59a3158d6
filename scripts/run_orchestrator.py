#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from orchestrator.settings import STAGE_DEFINITIONS
from orchestrator.supervisor import create_supervisor_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the per-stage queue orchestrator loops.")
    parser.add_argument(
        "--stage",
        action="append",
        choices=sorted(STAGE_DEFINITIONS),
        help="Stage to run (repeatable). Defaults to ORCH_STAGES or all stages.",
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Run each stage inline for N iterations and exit (0 means run forever).",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=os.environ.get("ORCH_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(threadName)s | %(message)s",
    )

    env = dict(os.environ)
    if args.stage:
        env["ORCH_STAGES"] = ",".join(args.stage)
    supervisor = create_supervisor_from_env(env)

    if args.iterations > 0:
        stats = {}
        for stage in supervisor.stages:
            orchestrator = supervisor.get(stage)
            stats[stage] = orchestrator.run_forever(stop_after_iterations=args.iterations)
        print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
        return 0

    stop_requested = threading.Event()

    def _handle_signal(signum: int, _frame) -> None:
        logging.getLogger(__name__).info("received signal %s; stopping", signum)
        stop_requested.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    supervisor.start()
    stop_requested.wait()
    supervisor.stop(timeout_s=120.0)
    print(json.dumps({"success": True, "stages": supervisor.snapshot()}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
