"""Central package for Folio data models."""

from .book_models import (
    Book,
    BookOutline,
    BookStatus,
    ChapterOutline,
    ChapterRecord,
    ChapterReview,
    ChapterStatus,
    CharacterSeed,
    GenerationProgress,
    GenerationStep,
    GenerationUnit,
    ScenePlan,
    SupervisionReport,
    UnitPlan,
    UnitRole,
    UnitStatus,
)
from .checkpoint_models import (
    Checkpoint,
    CheckpointSummary,
    FailedUnit,
    FailureMetadata,
)
from .consistency_models import (
    ConsistencyIssue,
    ConsistencyReport,
    DecodeStatus,
    IssueType,
    Severity,
)
from .narrative_models import (
    CharacterState,
    NarrativeState,
    PlotPoint,
    ResearchReference,
    TimelineEntry,
    TrackerUpdate,
    WorldBuildingElement,
)

__all__ = [
    "Book",
    "BookOutline",
    "BookStatus",
    "ChapterOutline",
    "ChapterRecord",
    "ChapterReview",
    "ChapterStatus",
    "CharacterSeed",
    "GenerationProgress",
    "GenerationStep",
    "GenerationUnit",
    "ScenePlan",
    "SupervisionReport",
    "UnitPlan",
    "UnitRole",
    "UnitStatus",
    "Checkpoint",
    "CheckpointSummary",
    "FailedUnit",
    "FailureMetadata",
    "ConsistencyIssue",
    "ConsistencyReport",
    "DecodeStatus",
    "IssueType",
    "Severity",
    "CharacterState",
    "NarrativeState",
    "PlotPoint",
    "ResearchReference",
    "TimelineEntry",
    "TrackerUpdate",
    "WorldBuildingElement",
]
