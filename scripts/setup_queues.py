#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from orchestrator.db.postgres import create_tx_runner_from_env
from orchestrator.provisioning import ensure_stage_queues
from orchestrator.queue_backend import create_queue_from_env
from orchestrator.settings import enabled_stages, load_stage_config


def main() -> int:
    parser = argparse.ArgumentParser(description="Create stage queues and their dead-letter queues.")
    parser.parse_args()
    logging.basicConfig(level=os.environ.get("ORCH_LOG_LEVEL", "INFO").upper())

    env = dict(os.environ)
    backend = create_queue_from_env(env, tx_runner=create_tx_runner_from_env(env))
    configs = [load_stage_config(stage, env) for stage in enabled_stages(env)]
    created = ensure_stage_queues(backend, configs)
    print(json.dumps({"success": True, "created": created}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
