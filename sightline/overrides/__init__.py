"""
Overrides - Pinned visibility values and their staleness checks.

Flow:
    Action outcome -> OverrideStore.set -> (calculator reads it first)
    Token moves    -> OverrideValidator.queue -> conflicts -> resolution surface

Overrides are never resolved automatically: the validator only reports.
"""

from .store import OverrideStore, Provenance, PairChange, flag_key
from .position import (
    PositionSnapshot,
    PositionTransition,
    TransitionType,
    capture_snapshot,
    analyze_transition,
    validate_snapshot,
)
from .conflicts import (
    ConflictSeverity,
    ConflictFinding,
    ConsistencyReport,
    TransitionPolicy,
    AllowAllPolicy,
    assess_severity,
    check_override_conflicts,
    validate_override_consistency,
)
from .validator import (
    OverrideValidator,
    OverrideConflict,
    AwarenessNotice,
    ValidationResult,
    ResolutionAction,
)

__all__ = [
    "OverrideStore",
    "Provenance",
    "PairChange",
    "flag_key",
    "PositionSnapshot",
    "PositionTransition",
    "TransitionType",
    "capture_snapshot",
    "analyze_transition",
    "validate_snapshot",
    "ConflictSeverity",
    "ConflictFinding",
    "ConsistencyReport",
    "TransitionPolicy",
    "AllowAllPolicy",
    "assess_severity",
    "check_override_conflicts",
    "validate_override_consistency",
    "OverrideValidator",
    "OverrideConflict",
    "AwarenessNotice",
    "ValidationResult",
    "ResolutionAction",
]
