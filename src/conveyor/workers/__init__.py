from conveyor.workers.base import (
    ResultKind,
    Worker,
    WorkerError,
    WorkerRequest,
    WorkerResult,
)
from conveyor.workers.command import CommandWorker
from conveyor.workers.roles import PHASE_STAGE, StageRole, build_roles

__all__ = [
    "PHASE_STAGE",
    "CommandWorker",
    "ResultKind",
    "StageRole",
    "Worker",
    "WorkerError",
    "WorkerRequest",
    "WorkerResult",
    "build_roles",
]
