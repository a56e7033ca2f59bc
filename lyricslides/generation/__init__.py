"""
Generation orchestration: per-request state machine and batch scheduling.
"""

from lyricslides.generation.batch import BatchProgress, BatchScheduler
from lyricslides.generation.coordinator import (
    GenerationParams,
    GenerationRequest,
    GenerationResult,
    RequestCoordinator,
    new_request_id,
)

__all__ = [
    "BatchProgress",
    "BatchScheduler",
    "GenerationParams",
    "GenerationRequest",
    "GenerationResult",
    "RequestCoordinator",
    "new_request_id",
]
