"""Models module: domain records, stage tables and persistence.

This module exposes the records, tool inputs and API models used across
the backend, plus the store that persists them.
"""

from models.database import (
    ProjectStore,
    SubtaskNotFoundError,
    WorkflowNotFoundError,
    generate_id,
)
from models.schemas import (
    AgentRole,
    ArtifactRecord,
    ArtifactStatus,
    ArtifactType,
    FanInResult,
    HealthResponse,
    MergedSubtaskResults,
    SessionContextType,
    SessionRecord,
    SessionStatus,
    SubtaskRecord,
    SubtaskStatus,
    SubtaskTransition,
    TaskDefinition,
    Workflow,
    WorkflowStatus,
)
from models.stages import StageTransitionError

__all__ = [
    "AgentRole",
    "ArtifactRecord",
    "ArtifactStatus",
    "ArtifactType",
    "FanInResult",
    "HealthResponse",
    "MergedSubtaskResults",
    "ProjectStore",
    "SessionContextType",
    "SessionRecord",
    "SessionStatus",
    "StageTransitionError",
    "SubtaskNotFoundError",
    "SubtaskRecord",
    "SubtaskStatus",
    "SubtaskTransition",
    "TaskDefinition",
    "Workflow",
    "WorkflowNotFoundError",
    "WorkflowStatus",
]
