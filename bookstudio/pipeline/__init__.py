"""
Stage runner, book-level driver and the artifacts they persist.
"""

from .artifacts import CoverItem, IllustrationItem, IllustrationVariant
from .continuity import (
    ConsistencyChain,
    ConsistencyConfig,
    ReferenceDirectives,
    ValidationReport,
    calculate_reference_strength,
    create_diagnostic_report,
    get_character_consistency_reference,
    get_illustration_stats,
    validate_consistency_setup,
)
from .outcomes import (
    StageCancelled,
    StageFailed,
    StageNeedsReview,
    StageOutcome,
    StageRejected,
    StageSucceeded,
)
from .pipeline import BookPipeline, PipelineReport, load_mapping_file
from .stage_runner import ProgressCallback, RunState, StageRunner
from .store import InMemoryProjectStore, ProjectPatch, ProjectStore, YamlProjectStore, persist_with_retry
from .structured import StructuredCall, StructuredCallPhase, StructuredCallResult, generate_text_with_json_retry
from .usage import CreditLedger, DeductionResult, InMemoryCreditLedger, UsageLedger, UsageRecord, UsageStats

__all__ = [
    "BookPipeline",
    "ConsistencyChain",
    "ConsistencyConfig",
    "CoverItem",
    "CreditLedger",
    "DeductionResult",
    "IllustrationItem",
    "IllustrationVariant",
    "InMemoryCreditLedger",
    "InMemoryProjectStore",
    "PipelineReport",
    "ProgressCallback",
    "ProjectPatch",
    "ProjectStore",
    "ReferenceDirectives",
    "RunState",
    "StageCancelled",
    "StageFailed",
    "StageNeedsReview",
    "StageOutcome",
    "StageRejected",
    "StageRunner",
    "StageSucceeded",
    "StructuredCall",
    "StructuredCallPhase",
    "StructuredCallResult",
    "UsageLedger",
    "UsageRecord",
    "UsageStats",
    "ValidationReport",
    "YamlProjectStore",
    "calculate_reference_strength",
    "create_diagnostic_report",
    "generate_text_with_json_retry",
    "get_character_consistency_reference",
    "get_illustration_stats",
    "load_mapping_file",
    "persist_with_retry",
    "validate_consistency_setup",
]
