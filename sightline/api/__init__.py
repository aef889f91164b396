"""
API Module - HTTP interface over one scene.

A host or GM tool:
1. Places, moves and removes tokens
2. Reads effective visibility per pair and per observer
3. Pins, reads and clears overrides
4. Reviews and resolves stale-override conflicts

The engine is scene-scoped; one APIService per scene.
"""

from .models import (
    # Responses
    TokenInfo,
    OverrideInfo,
    ConflictInfo,
    VisibilityResult,
    VisibilityMapResult,
    OverrideListResult,
    RecalculateResult,
    ValidationInfo,
    MoveResult,
    ErrorResponse,
)
from .service import APIService
from .app import create_app

__all__ = [
    # Responses
    "TokenInfo",
    "OverrideInfo",
    "ConflictInfo",
    "VisibilityResult",
    "VisibilityMapResult",
    "OverrideListResult",
    "RecalculateResult",
    "ValidationInfo",
    "MoveResult",
    "ErrorResponse",
    # Service
    "APIService",
    "create_app",
]
