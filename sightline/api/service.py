"""
API Service - Business logic layer between the HTTP surface and the engine.

The service:
1. Owns one scene (an InMemoryWorld) and its VisibilityService
2. Translates API calls into world mutations and engine calls
3. Runs the resulting batch pass before answering, so responses are settled
4. Maps engine errors to ErrorResponse values

This layer is framework-agnostic (can be used with FastAPI, Flask, etc.)
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Iterable

import structlog

from .models import (
    ClearOverridesResult,
    ConflictInfo,
    ErrorResponse,
    MoveResult,
    OverrideInfo,
    OverrideListResult,
    RecalculateResult,
    TokenInfo,
    ValidationInfo,
    VisibilityMapResult,
    VisibilityResult,
)
from ..config import EngineConfig
from ..core.events import EventBus
from ..core.state import (
    CoverState,
    OverrideRecord,
    OverrideSource,
    Token,
    VisibilityState,
    VisionCapabilities,
    is_excluded,
)
from ..core.world import InMemoryWorld
from ..engine.scheduler import BatchResult
from ..engine.service import VisibilityService
from ..errors import InvalidStateError, OverrideBlockedError, SightlineError, UnknownTokenError
from ..overrides.store import Provenance
from ..overrides.validator import OverrideConflict, ResolutionAction, ValidationResult


log = structlog.get_logger(__name__)


@dataclass
class APIService:
    """
    API service for one scene.

    Usage:
        service = APIService()

        await service.create_token("guard", name="Guard", x=0, y=0)
        await service.create_token("rogue", name="Rogue", x=500, y=0)
        await service.set_override("guard", "rogue", "hidden")

        result = await service.calculate_visibility("guard", "rogue")
    """
    world: InMemoryWorld | None = None
    engine: VisibilityService | None = None
    config: EngineConfig = field(default_factory=EngineConfig.from_env)

    _started: bool = False

    def __post_init__(self):
        if self.world is None:
            self.world = InMemoryWorld(bus=EventBus(), grid_size=self.config.grid_size)
        if self.world.bus is None:
            self.world.bus = EventBus()
        if self.engine is None:
            self.engine = VisibilityService(self.world, bus=self.world.bus, config=self.config)

    async def start(self) -> None:
        """Load overrides and run the first full pass (once)."""
        if self._started:
            return
        self._started = True
        await self.engine.start()

    # =========================================================================
    # Tokens
    # =========================================================================

    async def create_token(
        self,
        token_id: str,
        name: str = "",
        x: float = 0.0,
        y: float = 0.0,
        size: float = 1.0,
        actor_id: str | None = None,
        hp: int | None = None,
        conditions: Iterable[str] | None = None,
        flags: dict[str, Any] | None = None,
        vision: dict[str, Any] | None = None,
    ) -> TokenInfo | ErrorResponse:
        await self.start()
        if self.world.get_token(token_id) is not None:
            return ErrorResponse(
                error=f"Token {token_id} already exists",
                error_code="TOKEN_EXISTS",
                details={"token_id": token_id},
            )

        token = Token(
            id=token_id,
            name=name or token_id,
            x=x,
            y=y,
            size=size,
            actor_id=actor_id,
            hp=hp,
            conditions=set(conditions or ()),
            flags=dict(flags or {}),
        )
        self.world.add_token(token, self._capabilities(vision))
        await self.engine.scheduler.run_now()
        return self._token_info(token)

    async def get_token(self, token_id: str) -> TokenInfo | ErrorResponse:
        try:
            return self._token_info(self._require_token(token_id))
        except SightlineError as e:
            return self._error(e)

    def list_tokens(self) -> list[TokenInfo]:
        return [self._token_info(t) for t in self.world.tokens()]

    async def move_token(self, token_id: str, x: float, y: float) -> MoveResult | ErrorResponse:
        """
        Move a token, then settle: stale-override validation runs now
        instead of after the debounce window, followed by the batch pass.
        """
        await self.start()
        try:
            self._require_token(token_id)
        except SightlineError as e:
            return self._error(e)

        self.world.move_token(token_id, x, y)
        validations = await self.engine.validator.flush()
        batch = await self.engine.scheduler.run_now()
        return MoveResult(
            token_id=token_id,
            x=x,
            y=y,
            recalculation=self._batch_info(batch),
            validations=[self._validation_info(v) for v in validations],
        )

    async def remove_token(self, token_id: str) -> TokenInfo | ErrorResponse:
        await self.start()
        try:
            token = self._require_token(token_id)
        except SightlineError as e:
            return self._error(e)

        self.world.remove_token(token_id)
        await self.engine.handle_token_deleted(token_id)
        return self._token_info(token)

    async def add_condition(self, token_id: str, name: str) -> TokenInfo | ErrorResponse:
        await self.start()
        try:
            token = self._require_token(token_id)
        except SightlineError as e:
            return self._error(e)
        self.world.add_condition(token_id, name)
        await self.engine.scheduler.run_now()
        return self._token_info(token)

    async def remove_condition(self, token_id: str, name: str) -> TokenInfo | ErrorResponse:
        await self.start()
        try:
            token = self._require_token(token_id)
        except SightlineError as e:
            return self._error(e)
        self.world.remove_condition(token_id, name)
        await self.engine.scheduler.run_now()
        return self._token_info(token)

    async def set_darkness(
        self, darkness: float, global_illumination: bool | None = None
    ) -> RecalculateResult:
        await self.start()
        self.world.set_darkness(darkness, global_illumination)
        return self._batch_info(await self.engine.scheduler.run_now())

    # =========================================================================
    # Visibility
    # =========================================================================

    async def calculate_visibility(
        self, observer_id: str, target_id: str
    ) -> VisibilityResult | ErrorResponse:
        await self.start()
        try:
            self._require_token(observer_id)
            self._require_token(target_id)
        except SightlineError as e:
            return self._error(e)

        state = await self.engine.calculate_visibility(observer_id, target_id)
        return VisibilityResult(
            observer_id=observer_id,
            target_id=target_id,
            state=state.value,
            overridden=self.engine.overrides.peek(observer_id, target_id) is not None,
        )

    async def get_visibility_map(self, token_id: str) -> VisibilityMapResult | ErrorResponse:
        await self.start()
        try:
            self._require_token(token_id)
        except SightlineError as e:
            return self._error(e)

        entries = self.engine.get_visibility_map(token_id)
        return VisibilityMapResult(
            observer_id=token_id,
            visibility={target: state.value for target, state in entries.items()},
            automatic={
                target: bool(self.engine.visibility_map.is_automatic(token_id, target))
                for target in entries
            },
        )

    async def recalculate(
        self, token_ids: list[str] | None = None, force: bool = False
    ) -> RecalculateResult:
        await self.start()
        if token_ids:
            result = await self.engine.recalculate_for_tokens(token_ids)
        else:
            result = await self.engine.recalculate_all(force=force)
        return self._batch_info(result)

    # =========================================================================
    # Overrides
    # =========================================================================

    async def set_override(
        self,
        observer_id: str,
        target_id: str,
        state: str,
        source: str = OverrideSource.MANUAL.value,
        expected_cover: str | None = None,
        expected_concealment: bool | None = None,
    ) -> OverrideInfo | ErrorResponse:
        await self.start()
        try:
            visibility = self._coerce_state(state)
            self._require_token(observer_id)
            self._require_token(target_id)

            provenance = Provenance(
                source=OverrideSource(source),
                expected_cover=CoverState(expected_cover) if expected_cover else None,
                expected_concealment=expected_concealment,
            )
            if not await self.engine.set_override(observer_id, target_id, visibility, provenance):
                report = self.engine.last_report
                raise OverrideBlockedError(
                    f"Override {observer_id}->{target_id} was refused",
                    errors=list(report.errors) if report else [],
                )
        except SightlineError as e:
            return self._error(e)
        except ValueError as e:
            return ErrorResponse(error=str(e), error_code="VALIDATION_ERROR")

        record = await self.engine.get_override(observer_id, target_id)
        return self._override_info(record)

    async def get_override(self, observer_id: str, target_id: str) -> OverrideInfo | ErrorResponse:
        await self.start()
        record = await self.engine.get_override(observer_id, target_id)
        if record is None:
            return ErrorResponse(
                error=f"No override for {observer_id}->{target_id}",
                error_code="OVERRIDE_NOT_FOUND",
                details={"observer_id": observer_id, "target_id": target_id},
            )
        return self._override_info(record)

    async def remove_override(self, observer_id: str, target_id: str) -> bool:
        await self.start()
        return await self.engine.remove_override(observer_id, target_id)

    async def list_overrides(self, token_id: str) -> OverrideListResult:
        await self.start()
        records = await self.engine.list_overrides(token_id)
        return OverrideListResult(
            token_id=token_id,
            overrides=[self._override_info(r) for r in records],
        )

    async def clear_overrides(self, token_id: str | None = None) -> ClearOverridesResult:
        await self.start()
        removed = await self.engine.clear_all_overrides(token_id)
        return ClearOverridesResult(token_id=token_id, removed=removed)

    # =========================================================================
    # Validation
    # =========================================================================

    async def validate_token(self, token_id: str) -> ValidationInfo | ErrorResponse:
        await self.start()
        try:
            self._require_token(token_id)
        except SightlineError as e:
            return self._error(e)
        result = await self.engine.validate_overrides(token_id)
        return self._validation_info(result)

    def list_conflicts(self) -> list[ConflictInfo]:
        return [self._conflict_info(c) for c in self.engine.pending_conflicts()]

    async def resolve_conflict(
        self,
        conflict_id: str,
        action: str,
        new_state: str | None = None,
    ) -> bool | ErrorResponse:
        if conflict_id not in self.engine.validator.pending:
            return ErrorResponse(
                error=f"Conflict {conflict_id} not found",
                error_code="CONFLICT_NOT_FOUND",
                details={"conflict_id": conflict_id},
            )
        try:
            action = ResolutionAction(action)
            if action == ResolutionAction.MODIFY:
                if new_state is None:
                    return ErrorResponse(
                        error="modify requires new_state",
                        error_code="VALIDATION_ERROR",
                    )
                new_state = self._coerce_state(new_state)
        except SightlineError as e:
            return self._error(e)
        except ValueError as e:
            return ErrorResponse(error=str(e), error_code="VALIDATION_ERROR")

        if not await self.engine.resolve_conflict(conflict_id, action, new_state):
            return ErrorResponse(
                error=f"Conflict {conflict_id} could not be resolved",
                error_code="OVERRIDE_REJECTED",
                details={"conflict_id": conflict_id, "action": action.value},
            )
        return True

    # =========================================================================
    # Status
    # =========================================================================

    def get_status(self) -> dict[str, Any]:
        return self.engine.get_status()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_token(self, token_id: str) -> Token:
        token = self.world.get_token(token_id)
        if token is None:
            raise UnknownTokenError(token_id)
        return token

    @staticmethod
    def _coerce_state(value: Any) -> VisibilityState:
        try:
            return VisibilityState.coerce(value)
        except ValueError:
            raise InvalidStateError(value)

    @staticmethod
    def _capabilities(vision: dict[str, Any] | None) -> VisionCapabilities | None:
        if vision is None:
            return None
        values = dict(vision)
        senses = values.pop("nonvisual_senses", None) or {}
        return VisionCapabilities(nonvisual_senses=list(senses.items()), **values)

    @staticmethod
    def _error(e: SightlineError) -> ErrorResponse:
        if isinstance(e, UnknownTokenError):
            return ErrorResponse(
                error=str(e),
                error_code="TOKEN_NOT_FOUND",
                details={"token_id": e.token_id},
            )
        if isinstance(e, InvalidStateError):
            return ErrorResponse(
                error=str(e),
                error_code="INVALID_STATE",
                details={"allowed": [s.value for s in VisibilityState]},
            )
        if isinstance(e, OverrideBlockedError):
            return ErrorResponse(
                error=str(e),
                error_code="OVERRIDE_REJECTED",
                details={"errors": e.errors} if e.errors else None,
            )
        log.error("api_error", error=str(e))
        return ErrorResponse(error=str(e), error_code="INTERNAL_ERROR")

    def _token_info(self, token: Token) -> TokenInfo:
        return TokenInfo(
            token_id=token.id,
            name=token.name,
            x=token.x,
            y=token.y,
            size=token.size,
            actor_id=token.actor_id,
            hp=token.hp,
            conditions=sorted(token.conditions),
            excluded=is_excluded(token),
        )

    @staticmethod
    def _override_info(record: OverrideRecord) -> OverrideInfo:
        return OverrideInfo(
            observer_id=record.observer_id,
            target_id=record.target_id,
            state=record.state.value,
            source=record.source.value,
            created_at=record.created_at,
            expected_cover=record.expected_cover.value if record.expected_cover else None,
            expected_concealment=record.expected_concealment,
            observer_name=record.observer_name,
            target_name=record.target_name,
        )

    @staticmethod
    def _conflict_info(conflict: OverrideConflict) -> ConflictInfo:
        return ConflictInfo(
            conflict_id=conflict.conflict_id,
            observer_id=conflict.observer_id,
            target_id=conflict.target_id,
            override_state=conflict.override.state.value,
            current_visibility=(
                conflict.current_visibility.value if conflict.current_visibility else None
            ),
            current_cover=conflict.current_cover.value if conflict.current_cover else None,
            reason=conflict.reason,
            severity=conflict.severity.value,
            removable=conflict.removable,
            options=list(conflict.options),
        )

    def _validation_info(self, result: ValidationResult) -> ValidationInfo:
        return ValidationInfo(
            token_id=result.token_id,
            checked=result.checked,
            needs_user_input=result.needs_user_input,
            conflicts=[self._conflict_info(c) for c in result.conflicts],
            notices=[n.message for n in result.notices],
            errors=list(result.errors),
        )

    @staticmethod
    def _batch_info(result: BatchResult) -> RecalculateResult:
        return RecalculateResult(
            success=result.success,
            skipped=result.skipped,
            processed_tokens=list(result.processed_tokens),
            pairs_checked=result.pairs_checked,
            updates=len(result.updates),
            errors=list(result.errors),
            warnings=list(result.warnings),
            duration_ms=round(result.duration * 1000, 2),
        )
