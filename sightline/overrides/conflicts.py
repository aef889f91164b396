"""
Conflict Analysis - How far a pinned value is from what the world shows.

Severity compares two visibility states by ordinal
(observed=1 ... undetected=4):

    |difference| = 0  -> none
    |difference| = 1  -> minor
    |difference| = 2  -> moderate
    |difference| >= 3 -> critical

Used when an override is newly applied in the middle of an action, with
the action's position transition as context. Critical findings block the
override by default; moderate and minor ones are surfaced as warnings.

Whether a transition between two states is legal at all is a ruleset
question, answered by a TransitionPolicy hook.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from ..core.state import VisibilityState
from .position import PositionTransition, TransitionType


class ConflictSeverity(Enum):
    """Severity of a disagreement between an override and the world."""
    NONE = "none"
    MINOR = "minor"
    MODERATE = "moderate"
    CRITICAL = "critical"

    @property
    def level(self) -> int:
        return _SEVERITY_LEVEL[self]


_SEVERITY_LEVEL = {
    ConflictSeverity.NONE: 0,
    ConflictSeverity.MINOR: 1,
    ConflictSeverity.MODERATE: 2,
    ConflictSeverity.CRITICAL: 3,
}


def assess_severity(calculated: VisibilityState, override: VisibilityState) -> ConflictSeverity:
    """Severity of pinning `override` where the world says `calculated`."""
    difference = abs(calculated.rank - override.rank)
    if difference == 0:
        return ConflictSeverity.NONE
    if difference == 1:
        return ConflictSeverity.MINOR
    if difference == 2:
        return ConflictSeverity.MODERATE
    return ConflictSeverity.CRITICAL


def max_severity(severities) -> ConflictSeverity:
    return max(severities, key=lambda s: s.level, default=ConflictSeverity.NONE)


# =============================================================================
# Transition policy
# =============================================================================

class TransitionPolicy(Protocol):
    def is_transition_allowed(
        self,
        from_state: VisibilityState,
        to_state: VisibilityState,
        context: dict[str, Any],
    ) -> bool: ...


class AllowAllPolicy:
    """Default policy: every transition is legal."""

    def is_transition_allowed(self, from_state, to_state, context) -> bool:
        return True


# =============================================================================
# Findings
# =============================================================================

@dataclass
class ConflictFinding:
    """One reason an override disagrees with the analysed position."""
    kind: str
    severity: ConflictSeverity
    message: str


@dataclass
class ConsistencyReport:
    """
    Outcome of checking a new override against a position transition.
    """
    valid: bool
    severity: ConflictSeverity = ConflictSeverity.NONE
    findings: list[ConflictFinding] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return any(f.severity != ConflictSeverity.NONE for f in self.findings)


def check_override_conflicts(
    override_state: VisibilityState,
    transition: PositionTransition,
) -> list[ConflictFinding]:
    """Findings for pinning `override_state` at the end of `transition`."""
    end = transition.end
    findings = []

    severity = assess_severity(end.visibility, override_state)
    if severity != ConflictSeverity.NONE:
        findings.append(ConflictFinding(
            kind="state_mismatch",
            severity=severity,
            message=(
                f"Override {override_state.value} differs from calculated "
                f"{end.visibility.value}"
            ),
        ))

    if (
        transition.transition_type == TransitionType.IMPROVED
        and end.visibility.is_worse_than(override_state)
    ):
        findings.append(ConflictFinding(
            kind="improvement_ignored",
            severity=ConflictSeverity.MODERATE,
            message=(
                f"Position improved to {end.visibility.value} but override "
                f"pins {override_state.value}"
            ),
        ))

    if end.stealth_bonus >= 2 and override_state == VisibilityState.OBSERVED:
        findings.append(ConflictFinding(
            kind="cover_ignored",
            severity=ConflictSeverity.MODERATE,
            message=(
                f"Target has {end.cover_state.value} cover "
                f"(+{end.stealth_bonus}) but override pins observed"
            ),
        ))

    if not end.visibility_available and not end.cover_available:
        findings.append(ConflictFinding(
            kind="systems_unavailable",
            severity=ConflictSeverity.CRITICAL,
            message="Neither visibility nor cover could be determined",
        ))

    return findings


def validate_override_consistency(
    override_state: VisibilityState,
    transition: PositionTransition,
    policy: TransitionPolicy | None = None,
    context: dict[str, Any] | None = None,
) -> ConsistencyReport:
    """
    Decide whether a new override may be applied.

    Critical findings and policy refusals are errors (invalid); everything
    else is a warning.
    """
    findings = check_override_conflicts(override_state, transition)
    errors = []
    warnings = []

    for finding in findings:
        if finding.severity == ConflictSeverity.CRITICAL:
            errors.append(finding.message)
        elif finding.severity != ConflictSeverity.NONE:
            warnings.append(finding.message)

    if transition.end.system_errors:
        warnings.append(
            "Position captured with errors: " + "; ".join(transition.end.system_errors)
        )

    policy = policy or AllowAllPolicy()
    if not policy.is_transition_allowed(
        transition.start.visibility,
        override_state,
        context or {},
    ):
        errors.append(
            f"Transition {transition.start.visibility.value} -> "
            f"{override_state.value} is not allowed"
        )

    return ConsistencyReport(
        valid=not errors,
        severity=max_severity(f.severity for f in findings),
        findings=findings,
        errors=errors,
        warnings=warnings,
    )
