"""
API Models - Plain response values produced by the API service.

The service returns these dataclasses; the FastAPI layer validates them
into the pydantic schemas (`model_config = {"from_attributes": True}`).
Enum members are flattened to their string values here.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class APIVersion(Enum):
    V1 = "v1"


# =============================================================================
# Shared Models
# =============================================================================

@dataclass
class TokenInfo:
    """A token as the scene sees it."""
    token_id: str
    name: str
    x: float
    y: float
    size: float = 1.0
    actor_id: str | None = None
    hp: int | None = None
    conditions: list[str] = field(default_factory=list)
    excluded: bool = False


@dataclass
class OverrideInfo:
    observer_id: str
    target_id: str
    state: str
    source: str
    created_at: float
    expected_cover: str | None = None
    expected_concealment: bool | None = None
    observer_name: str = ""
    target_name: str = ""


@dataclass
class ConflictInfo:
    conflict_id: str
    observer_id: str
    target_id: str
    override_state: str
    current_visibility: str | None
    current_cover: str | None
    reason: str
    severity: str
    removable: bool
    options: list[str] = field(default_factory=list)


# =============================================================================
# Responses
# =============================================================================

@dataclass
class VisibilityResult:
    observer_id: str
    target_id: str
    state: str
    overridden: bool = False


@dataclass
class VisibilityMapResult:
    observer_id: str
    visibility: dict[str, str] = field(default_factory=dict)
    automatic: dict[str, bool] = field(default_factory=dict)


@dataclass
class OverrideListResult:
    token_id: str
    overrides: list[OverrideInfo] = field(default_factory=list)


@dataclass
class ClearOverridesResult:
    token_id: str | None
    removed: int


@dataclass
class RecalculateResult:
    """Outcome of one batch pass."""
    success: bool
    skipped: bool
    processed_tokens: list[str] = field(default_factory=list)
    pairs_checked: int = 0
    updates: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    duration_ms: float = 0.0


@dataclass
class ValidationInfo:
    token_id: str
    checked: int
    needs_user_input: bool
    conflicts: list[ConflictInfo] = field(default_factory=list)
    notices: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class MoveResult:
    """A move, the pass it triggered and any stale overrides it exposed."""
    token_id: str
    x: float
    y: float
    recalculation: RecalculateResult
    validations: list[ValidationInfo] = field(default_factory=list)


@dataclass
class ErrorResponse:
    """
    Error response.

    Returned for any 4xx or 5xx status.
    """
    error: str
    error_code: str
    details: dict[str, Any] | None = None
    api_version: str = APIVersion.V1.value
