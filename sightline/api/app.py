"""
FastAPI Application - REST API over one scene's visibility engine.

Endpoints:
    GET    /health                                   Health check
    GET    /api/v1/status                            Engine status
    POST   /api/v1/tokens                            Place a token
    GET    /api/v1/tokens                            List tokens
    GET    /api/v1/tokens/{id}                       Get a token
    DELETE /api/v1/tokens/{id}                       Remove a token
    POST   /api/v1/tokens/{id}/move                  Move a token
    POST   /api/v1/tokens/{id}/conditions            Add a condition
    DELETE /api/v1/tokens/{id}/conditions/{name}     Remove a condition
    GET    /api/v1/tokens/{id}/visibility            Visibility map of an observer
    GET    /api/v1/tokens/{id}/overrides             Overrides touching a token
    DELETE /api/v1/tokens/{id}/overrides             Clear them
    POST   /api/v1/tokens/{id}/validate              Check a token's overrides now
    GET    /api/v1/visibility                        Effective visibility of a pair
    PUT    /api/v1/overrides                         Set an override
    GET    /api/v1/overrides/{observer}/{target}     Get an override
    DELETE /api/v1/overrides/{observer}/{target}     Remove an override
    DELETE /api/v1/overrides                         Clear the scene's overrides
    POST   /api/v1/recalculate                       Run a batch pass
    POST   /api/v1/scene/darkness                    Change scene darkness
    GET    /api/v1/conflicts                         Unresolved override conflicts
    POST   /api/v1/conflicts/{id}/resolve            Resolve a conflict

Every mutation runs the resulting batch pass before responding.
All responses are JSON with explicit Pydantic schemas.
"""

from typing import Annotated, Optional
import os

from ..logging_config import configure_logging

# Environment configuration
SIGHTLINE_ENV = os.getenv("SIGHTLINE_ENV", "development")
SIGHTLINE_LOG_LEVEL = os.getenv("SIGHTLINE_LOG_LEVEL", "info")
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")


def create_app(service=None):
    """
    Create the FastAPI application.

    Args:
        service: Optional APIService instance (creates new if not provided)

    Returns:
        FastAPI application instance
    """
    try:
        from fastapi import FastAPI, Query
        from fastapi.middleware.cors import CORSMiddleware
        from fastapi.responses import JSONResponse
    except ImportError:
        raise ImportError(
            "FastAPI not installed. Install with: pip install fastapi uvicorn"
        )

    from .. import __version__
    from .models import ErrorResponse as ErrorResult
    from .service import APIService
    from .schemas import (
        # Request models
        CreateTokenRequest,
        MoveTokenRequest,
        ConditionRequest,
        OverrideRequest,
        RecalculateRequest,
        ResolveRequest,
        DarknessRequest,
        # Response models
        TokenInfo,
        OverrideInfo,
        ConflictInfo,
        VisibilityResponse,
        VisibilityMapResponse,
        OverrideListResponse,
        ClearOverridesResponse,
        RemoveOverrideResponse,
        RecalculateResponse,
        ValidationResponse,
        MoveResponse,
        ConflictListResponse,
        ResolveResponse,
        StatusResponse,
        HealthResponse,
        ErrorResponse,
        # Enums
        ErrorCode,
    )

    configure_logging(SIGHTLINE_LOG_LEVEL, SIGHTLINE_ENV)

    app = FastAPI(
        title="Sightline Visibility API",
        description="""
Automated visibility reconciliation for a virtual tabletop scene.

## States

`observed` < `concealed` < `hidden` < `undetected` (harder to detect to the right).

## Overrides

An override pins the value for one ordered (observer, target) pair. While it
exists, automatic recalculation never touches that pair. Moving a token
re-checks the overrides touching it; stale ones are reported as conflicts
that can be accepted, rejected (removed) or modified.

## Error Codes

| Code | Description |
|------|-------------|
| `TOKEN_NOT_FOUND` | Token id is not in the scene |
| `TOKEN_EXISTS` | Token id already placed |
| `INVALID_STATE` | Not one of the four visibility states |
| `OVERRIDE_NOT_FOUND` | No override for the pair |
| `OVERRIDE_REJECTED` | Refused by conflict analysis or policy |
| `CONFLICT_NOT_FOUND` | Conflict unknown or already resolved |
        """,
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Service instance
    api_service = service or APIService()

    # =========================================================================
    # Error helpers
    # =========================================================================

    status_codes = {
        ErrorCode.TOKEN_NOT_FOUND: 404,
        ErrorCode.OVERRIDE_NOT_FOUND: 404,
        ErrorCode.CONFLICT_NOT_FOUND: 404,
        ErrorCode.TOKEN_EXISTS: 409,
        ErrorCode.OVERRIDE_REJECTED: 409,
        ErrorCode.INTERNAL_ERROR: 500,
    }

    def make_error_response(
        error_code: ErrorCode,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict] = None,
    ) -> JSONResponse:
        """Create a standardized error response."""
        return JSONResponse(
            status_code=status_code or status_codes.get(error_code, 400),
            content=ErrorResponse(
                error=message,
                error_code=error_code,
                details=details,
            ).model_dump(mode="json"),
        )

    def from_result(result: ErrorResult) -> JSONResponse:
        return make_error_response(
            ErrorCode(result.error_code),
            result.error,
            details=result.details,
        )

    not_found = {404: {"model": ErrorResponse}}

    # =========================================================================
    # System
    # =========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["System"],
        summary="Health check",
    )
    async def health_check() -> HealthResponse:
        """Health check endpoint for load balancers."""
        return HealthResponse(
            status="healthy",
            service="sightline",
            version=__version__,
        )

    @app.get(
        "/api/v1/status",
        response_model=StatusResponse,
        tags=["System"],
        summary="Engine status",
    )
    async def get_status() -> StatusResponse:
        await api_service.start()
        return StatusResponse(**api_service.get_status())

    # =========================================================================
    # Tokens
    # =========================================================================

    @app.post(
        "/api/v1/tokens",
        response_model=TokenInfo,
        status_code=201,
        responses={409: {"model": ErrorResponse}},
        tags=["Tokens"],
        summary="Place a token in the scene",
    )
    async def create_token(request: CreateTokenRequest):
        result = await api_service.create_token(
            request.token_id,
            name=request.name,
            x=request.x,
            y=request.y,
            size=request.size,
            actor_id=request.actor_id,
            hp=request.hp,
            conditions=request.conditions,
            flags=request.flags,
            vision=request.vision.model_dump() if request.vision else None,
        )
        if isinstance(result, ErrorResult):
            return from_result(result)
        return TokenInfo.model_validate(result)

    @app.get(
        "/api/v1/tokens",
        response_model=list[TokenInfo],
        tags=["Tokens"],
        summary="List tokens",
    )
    async def list_tokens() -> list[TokenInfo]:
        return [TokenInfo.model_validate(t) for t in api_service.list_tokens()]

    @app.get(
        "/api/v1/tokens/{token_id}",
        response_model=TokenInfo,
        responses=not_found,
        tags=["Tokens"],
        summary="Get a token",
    )
    async def get_token(token_id: str):
        result = await api_service.get_token(token_id)
        if isinstance(result, ErrorResult):
            return from_result(result)
        return TokenInfo.model_validate(result)

    @app.delete(
        "/api/v1/tokens/{token_id}",
        response_model=TokenInfo,
        responses=not_found,
        tags=["Tokens"],
        summary="Remove a token and everything recorded about it",
    )
    async def remove_token(token_id: str):
        result = await api_service.remove_token(token_id)
        if isinstance(result, ErrorResult):
            return from_result(result)
        return TokenInfo.model_validate(result)

    @app.post(
        "/api/v1/tokens/{token_id}/move",
        response_model=MoveResponse,
        responses=not_found,
        tags=["Tokens"],
        summary="Move a token",
    )
    async def move_token(token_id: str, request: MoveTokenRequest):
        """
        Move a token.

        The response carries the batch pass the move triggered and, for a
        significant move, the override re-check for the token.
        """
        result = await api_service.move_token(token_id, request.x, request.y)
        if isinstance(result, ErrorResult):
            return from_result(result)
        return MoveResponse.model_validate(result)

    @app.post(
        "/api/v1/tokens/{token_id}/conditions",
        response_model=TokenInfo,
        responses=not_found,
        tags=["Tokens"],
        summary="Add a condition",
    )
    async def add_condition(token_id: str, request: ConditionRequest):
        result = await api_service.add_condition(token_id, request.name)
        if isinstance(result, ErrorResult):
            return from_result(result)
        return TokenInfo.model_validate(result)

    @app.delete(
        "/api/v1/tokens/{token_id}/conditions/{name}",
        response_model=TokenInfo,
        responses=not_found,
        tags=["Tokens"],
        summary="Remove a condition",
    )
    async def remove_condition(token_id: str, name: str):
        result = await api_service.remove_condition(token_id, name)
        if isinstance(result, ErrorResult):
            return from_result(result)
        return TokenInfo.model_validate(result)

    # =========================================================================
    # Visibility
    # =========================================================================

    @app.get(
        "/api/v1/tokens/{token_id}/visibility",
        response_model=VisibilityMapResponse,
        responses=not_found,
        tags=["Visibility"],
        summary="Everything an observer currently perceives",
    )
    async def get_visibility_map(token_id: str):
        result = await api_service.get_visibility_map(token_id)
        if isinstance(result, ErrorResult):
            return from_result(result)
        return VisibilityMapResponse.model_validate(result)

    @app.get(
        "/api/v1/visibility",
        response_model=VisibilityResponse,
        responses=not_found,
        tags=["Visibility"],
        summary="Effective visibility of target to observer",
    )
    async def calculate_visibility(
        observer_id: Annotated[str, Query(description="Observing token")],
        target_id: Annotated[str, Query(description="Observed token")],
    ):
        result = await api_service.calculate_visibility(observer_id, target_id)
        if isinstance(result, ErrorResult):
            return from_result(result)
        return VisibilityResponse.model_validate(result)

    @app.post(
        "/api/v1/recalculate",
        response_model=RecalculateResponse,
        tags=["Visibility"],
        summary="Run a batch pass",
    )
    async def recalculate(request: RecalculateRequest) -> RecalculateResponse:
        result = await api_service.recalculate(request.token_ids, force=request.force)
        return RecalculateResponse.model_validate(result)

    @app.post(
        "/api/v1/scene/darkness",
        response_model=RecalculateResponse,
        tags=["Visibility"],
        summary="Change scene darkness",
    )
    async def set_darkness(request: DarknessRequest) -> RecalculateResponse:
        result = await api_service.set_darkness(request.darkness, request.global_illumination)
        return RecalculateResponse.model_validate(result)

    # =========================================================================
    # Overrides
    # =========================================================================

    @app.put(
        "/api/v1/overrides",
        response_model=OverrideInfo,
        responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
        tags=["Overrides"],
        summary="Pin a visibility value for a pair",
    )
    async def set_override(request: OverrideRequest):
        result = await api_service.set_override(
            request.observer_id,
            request.target_id,
            request.state.value,
            source=request.source.value,
            expected_cover=request.expected_cover.value if request.expected_cover else None,
            expected_concealment=request.expected_concealment,
        )
        if isinstance(result, ErrorResult):
            return from_result(result)
        return OverrideInfo.model_validate(result)

    @app.get(
        "/api/v1/overrides/{observer_id}/{target_id}",
        response_model=OverrideInfo,
        responses=not_found,
        tags=["Overrides"],
        summary="Get the override for a pair",
    )
    async def get_override(observer_id: str, target_id: str):
        result = await api_service.get_override(observer_id, target_id)
        if isinstance(result, ErrorResult):
            return from_result(result)
        return OverrideInfo.model_validate(result)

    @app.delete(
        "/api/v1/overrides/{observer_id}/{target_id}",
        response_model=RemoveOverrideResponse,
        tags=["Overrides"],
        summary="Remove the override for a pair",
    )
    async def remove_override(observer_id: str, target_id: str) -> RemoveOverrideResponse:
        removed = await api_service.remove_override(observer_id, target_id)
        return RemoveOverrideResponse(
            observer_id=observer_id,
            target_id=target_id,
            removed=removed,
        )

    @app.delete(
        "/api/v1/overrides",
        response_model=ClearOverridesResponse,
        tags=["Overrides"],
        summary="Clear every override in the scene",
    )
    async def clear_scene_overrides() -> ClearOverridesResponse:
        result = await api_service.clear_overrides()
        return ClearOverridesResponse.model_validate(result)

    @app.get(
        "/api/v1/tokens/{token_id}/overrides",
        response_model=OverrideListResponse,
        tags=["Overrides"],
        summary="Overrides where the token is observer or target",
    )
    async def list_overrides(token_id: str) -> OverrideListResponse:
        result = await api_service.list_overrides(token_id)
        return OverrideListResponse.model_validate(result)

    @app.delete(
        "/api/v1/tokens/{token_id}/overrides",
        response_model=ClearOverridesResponse,
        tags=["Overrides"],
        summary="Clear overrides touching a token",
    )
    async def clear_token_overrides(token_id: str) -> ClearOverridesResponse:
        result = await api_service.clear_overrides(token_id)
        return ClearOverridesResponse.model_validate(result)

    # =========================================================================
    # Validation
    # =========================================================================

    @app.post(
        "/api/v1/tokens/{token_id}/validate",
        response_model=ValidationResponse,
        responses=not_found,
        tags=["Validation"],
        summary="Re-check a token's overrides now",
    )
    async def validate_token(token_id: str):
        result = await api_service.validate_token(token_id)
        if isinstance(result, ErrorResult):
            return from_result(result)
        return ValidationResponse.model_validate(result)

    @app.get(
        "/api/v1/conflicts",
        response_model=ConflictListResponse,
        tags=["Validation"],
        summary="Unresolved override conflicts",
    )
    async def list_conflicts() -> ConflictListResponse:
        return ConflictListResponse(
            conflicts=[ConflictInfo.model_validate(c) for c in api_service.list_conflicts()]
        )

    @app.post(
        "/api/v1/conflicts/{conflict_id}/resolve",
        response_model=ResolveResponse,
        responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
        tags=["Validation"],
        summary="Accept, reject or modify a stale override",
    )
    async def resolve_conflict(conflict_id: str, request: ResolveRequest):
        result = await api_service.resolve_conflict(
            conflict_id,
            request.action.value,
            request.new_state.value if request.new_state else None,
        )
        if isinstance(result, ErrorResult):
            return from_result(result)
        return ResolveResponse(
            conflict_id=conflict_id,
            action=request.action,
            resolved=result,
        )

    return app


# For running directly: uvicorn sightline.api.app:app
app = None
try:
    app = create_app()
except ImportError:
    # FastAPI not installed
    pass
