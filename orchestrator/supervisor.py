from __future__ import annotations

import logging
import os
import threading
from collections.abc import Mapping
from typing import Any

from orchestrator.db.postgres import create_tx_runner_from_env
from orchestrator.queue_backend import create_queue_from_env
from orchestrator.repositories.lecture_state import create_state_store_from_env
from orchestrator.settings import enabled_stages, load_stage_config
from orchestrator.stage_runtime import StageOrchestrator

logger = logging.getLogger(__name__)


class OrchestratorSupervisor:
    """Runs each stage loop on its own thread; stages share nothing but the backends."""

    def __init__(self, orchestrators: list[StageOrchestrator]) -> None:
        self._orchestrators = {o.stage: o for o in orchestrators}
        self._threads: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    @property
    def stages(self) -> list[str]:
        return list(self._orchestrators)

    def get(self, stage: str) -> StageOrchestrator | None:
        return self._orchestrators.get(stage)

    def start(self) -> None:
        with self._lock:
            for stage, orchestrator in self._orchestrators.items():
                thread = self._threads.get(stage)
                if thread is not None and thread.is_alive():
                    continue
                orchestrator.reset_stop_signal()
                thread = threading.Thread(
                    target=orchestrator.run_forever,
                    name=f"orchestrator-{stage}",
                    daemon=True,
                )
                self._threads[stage] = thread
                thread.start()
                logger.info("started stage thread stage=%s", stage)

    def stop(self, timeout_s: float | None = None) -> None:
        for orchestrator in self._orchestrators.values():
            orchestrator.stop()
        with self._lock:
            threads = list(self._threads.items())
        for stage, thread in threads:
            thread.join(timeout=timeout_s)
            if thread.is_alive():
                logger.warning("stage thread still running after stop stage=%s", stage)

    def is_running(self, stage: str) -> bool:
        thread = self._threads.get(stage)
        return thread is not None and thread.is_alive()

    def snapshot(self) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = {}
        for stage, orchestrator in self._orchestrators.items():
            out[stage] = {
                "queue_name": orchestrator.config.queue_name,
                "dead_letter_queue_name": orchestrator.config.dead_letter_queue_name,
                "endpoint": orchestrator.config.endpoint_url,
                "ordered": orchestrator.config.ordered,
                "running": self.is_running(stage),
                "stats": orchestrator.totals(),
            }
        return out


def create_supervisor_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    queue_backend: Any | None = None,
    state_store: Any | None = None,
) -> OrchestratorSupervisor:
    env = os.environ if environ is None else environ
    tx_runner = create_tx_runner_from_env(env)
    if queue_backend is None:
        queue_backend = create_queue_from_env(env, tx_runner=tx_runner)
    if state_store is None:
        state_store = create_state_store_from_env(env, tx_runner=tx_runner)
    orchestrators = [
        StageOrchestrator(
            config=load_stage_config(stage, env),
            queue_backend=queue_backend,
            state_store=state_store,
        )
        for stage in enabled_stages(env)
    ]
    return OrchestratorSupervisor(orchestrators)
