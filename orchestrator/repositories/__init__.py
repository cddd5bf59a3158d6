from orchestrator.repositories.lecture_state import (
    LECTURE_STATUSES,
    InMemoryLectureStateRepository,
    PostgresLectureStateRepository,
    create_state_store_from_env,
)

__all__ = [
    "LECTURE_STATUSES",
    "InMemoryLectureStateRepository",
    "PostgresLectureStateRepository",
    "create_state_store_from_env",
]
