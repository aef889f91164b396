"""
Pydantic Schemas for API - Request/response models for OpenAPI.

These models define the contract between a tabletop host (or a GM tool)
and the visibility engine. Responses are validated from the service's
dataclasses via `from_attributes`.

Error Codes:
- TOKEN_NOT_FOUND: Token id is not in the scene
- TOKEN_EXISTS: A token with that id is already placed
- INVALID_STATE: Value is not observed, concealed, hidden or undetected
- OVERRIDE_NOT_FOUND: No override for that ordered pair
- OVERRIDE_REJECTED: Override refused by conflict analysis or policy
- CONFLICT_NOT_FOUND: Conflict id unknown or already resolved
"""

from enum import Enum
from typing import Optional, Any
from pydantic import BaseModel, Field


# =============================================================================
# Enums
# =============================================================================

class VisibilityStateSchema(str, Enum):
    """Visibility of a target to an observer, best to worst."""
    OBSERVED = "observed"
    CONCEALED = "concealed"
    HIDDEN = "hidden"
    UNDETECTED = "undetected"


class CoverStateSchema(str, Enum):
    NONE = "none"
    LESSER = "lesser"
    STANDARD = "standard"
    GREATER = "greater"


class OverrideSourceSchema(str, Enum):
    """Which action or tool set an override."""
    MANUAL = "manual"
    STEALTH = "stealth"
    HIDE = "hide"
    SEEK = "seek"
    POINT_OUT = "point_out"
    DIVERSION = "diversion"
    TAKE_COVER = "take_cover"
    CONSEQUENCES = "consequences"


class ResolutionActionSchema(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    MODIFY = "modify"


class ErrorCode(str, Enum):
    """Structured error codes."""
    TOKEN_NOT_FOUND = "TOKEN_NOT_FOUND"
    TOKEN_EXISTS = "TOKEN_EXISTS"
    INVALID_STATE = "INVALID_STATE"
    OVERRIDE_NOT_FOUND = "OVERRIDE_NOT_FOUND"
    OVERRIDE_REJECTED = "OVERRIDE_REJECTED"
    CONFLICT_NOT_FOUND = "CONFLICT_NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# =============================================================================
# Shared Models
# =============================================================================

class VisionInfo(BaseModel):
    """Senses of an observer. Ranges in feet; null means unlimited."""
    has_vision: bool = True
    has_darkvision: bool = False
    darkvision_range: Optional[float] = None
    has_low_light_vision: bool = False
    low_light_range: Optional[float] = None
    is_blinded: bool = False
    is_dazzled: bool = False
    see_invisibility: bool = False
    nonvisual_senses: dict[str, float] = Field(
        default_factory=dict,
        description="Sense name to range, e.g. {\"tremorsense\": 30}",
    )


class TokenInfo(BaseModel):
    """Token as placed in the scene."""
    token_id: str
    name: str
    x: float
    y: float
    size: float = 1.0
    actor_id: Optional[str] = None
    hp: Optional[int] = None
    conditions: list[str] = Field(default_factory=list)
    excluded: bool = Field(False, description="Defeated tokens take no part in visibility")

    model_config = {"from_attributes": True}


class OverrideInfo(BaseModel):
    """A pinned value for one ordered pair."""
    observer_id: str
    target_id: str
    state: VisibilityStateSchema
    source: OverrideSourceSchema
    created_at: float
    expected_cover: Optional[CoverStateSchema] = None
    expected_concealment: Optional[bool] = None
    observer_name: str = ""
    target_name: str = ""

    model_config = {"from_attributes": True}


class ConflictInfo(BaseModel):
    """An override that may no longer match the world."""
    conflict_id: str
    observer_id: str
    target_id: str
    override_state: VisibilityStateSchema
    current_visibility: Optional[VisibilityStateSchema] = None
    current_cover: Optional[CoverStateSchema] = None
    reason: str
    severity: str
    removable: bool = Field(description="Resolving with reject is suggested")
    options: list[ResolutionActionSchema] = Field(default_factory=list)

    model_config = {"from_attributes": True}


# =============================================================================
# Requests
# =============================================================================

class CreateTokenRequest(BaseModel):
    """Place a token in the scene."""
    token_id: str = Field(..., description="Unique token id")
    name: str = ""
    x: float = 0.0
    y: float = 0.0
    size: float = Field(1.0, description="Size in grid squares")
    actor_id: Optional[str] = None
    hp: Optional[int] = None
    conditions: list[str] = Field(default_factory=list)
    flags: dict[str, Any] = Field(default_factory=dict)
    vision: Optional[VisionInfo] = None


class MoveTokenRequest(BaseModel):
    x: float
    y: float


class ConditionRequest(BaseModel):
    name: str = Field(..., description="Condition name, e.g. invisible")


class OverrideRequest(BaseModel):
    """Pin a visibility value for an ordered pair."""
    observer_id: str
    target_id: str
    state: VisibilityStateSchema
    source: OverrideSourceSchema = OverrideSourceSchema.MANUAL
    expected_cover: Optional[CoverStateSchema] = None
    expected_concealment: Optional[bool] = None


class RecalculateRequest(BaseModel):
    """Recompute some tokens, or the whole scene when none are given."""
    token_ids: Optional[list[str]] = None
    force: bool = Field(False, description="Run even while automation is disabled")


class ResolveRequest(BaseModel):
    action: ResolutionActionSchema
    new_state: Optional[VisibilityStateSchema] = Field(
        None, description="Required for modify"
    )


class DarknessRequest(BaseModel):
    darkness: float = Field(..., ge=0.0, le=1.0, description="0 = daylight, 1 = full darkness")
    global_illumination: Optional[bool] = None


# =============================================================================
# Responses
# =============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str = Field(..., description="Human-readable error message")
    error_code: ErrorCode = Field(..., description="Machine-readable error code")
    details: Optional[dict[str, Any]] = Field(None, description="Additional error context")
    api_version: str = Field("v1", description="API version")


class VisibilityResponse(BaseModel):
    """Effective visibility for one ordered pair."""
    observer_id: str
    target_id: str
    state: VisibilityStateSchema
    overridden: bool = Field(False, description="Value comes from an override")

    model_config = {"from_attributes": True}


class VisibilityMapResponse(BaseModel):
    """Everything one observer currently perceives."""
    observer_id: str
    visibility: dict[str, VisibilityStateSchema] = Field(default_factory=dict)
    automatic: dict[str, bool] = Field(
        default_factory=dict,
        description="False where the value was written by an override",
    )

    model_config = {"from_attributes": True}


class OverrideListResponse(BaseModel):
    token_id: str
    overrides: list[OverrideInfo] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class ClearOverridesResponse(BaseModel):
    token_id: Optional[str] = None
    removed: int

    model_config = {"from_attributes": True}


class RemoveOverrideResponse(BaseModel):
    observer_id: str
    target_id: str
    removed: bool


class RecalculateResponse(BaseModel):
    """Outcome of one batch pass."""
    success: bool
    skipped: bool = Field(description="Pass deferred (already running or validating)")
    processed_tokens: list[str] = Field(default_factory=list)
    pairs_checked: int = 0
    updates: int = 0
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    duration_ms: float = 0.0

    model_config = {"from_attributes": True}


class ValidationResponse(BaseModel):
    """Stale-override check for one token."""
    token_id: str
    checked: int
    needs_user_input: bool
    conflicts: list[ConflictInfo] = Field(default_factory=list)
    notices: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class MoveResponse(BaseModel):
    token_id: str
    x: float
    y: float
    recalculation: RecalculateResponse
    validations: list[ValidationResponse] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class ConflictListResponse(BaseModel):
    conflicts: list[ConflictInfo] = Field(default_factory=list)


class ResolveResponse(BaseModel):
    conflict_id: str
    action: ResolutionActionSchema
    resolved: bool


class StatusResponse(BaseModel):
    """Engine status."""
    enabled: bool
    state: str = Field(description="idle, batching or validating")
    changed_tokens: int
    processing_batch: bool
    total_updates: int
    passes: int
    overrides: int
    pending_conflicts: int
    validation_scheduled: bool


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    service: str
    version: str
