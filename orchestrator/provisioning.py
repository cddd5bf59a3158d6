from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from orchestrator.settings import StageConfig

logger = logging.getLogger(__name__)


def stage_queue_names(configs: Iterable[StageConfig]) -> list[str]:
    names: list[str] = []
    for config in configs:
        for name in (config.dead_letter_queue_name, config.queue_name):
            if name not in names:
                names.append(name)
    return names


def ensure_stage_queues(queue_backend: Any, configs: Iterable[StageConfig]) -> list[str]:
    """Create each stage queue and its dead-letter queue.

    Backends whose queues exist implicitly (memory, sqlite, redis) have no
    ``create_queue`` and are left alone.
    """
    create = getattr(queue_backend, "create_queue", None)
    if not callable(create):
        logger.info("queue backend %s creates queues implicitly; nothing to provision", type(queue_backend).__name__)
        return []
    created: list[str] = []
    for name in stage_queue_names(configs):
        create(name)
        logger.info("provisioned queue %s", name)
        created.append(name)
    return created
