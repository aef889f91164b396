"""
Tests for core state types.
"""

import pytest

from ..core.state import (
    CoverState,
    OverrideRecord,
    OverrideSource,
    PairKey,
    Token,
    VisibilityState,
    is_excluded,
)


class TestVisibilityState:

    def test_ordering(self):
        """observed < concealed < hidden < undetected."""
        states = list(VisibilityState)
        assert [s.rank for s in states] == [1, 2, 3, 4]
        assert VisibilityState.UNDETECTED.is_worse_than(VisibilityState.HIDDEN)
        assert not VisibilityState.OBSERVED.is_worse_than(VisibilityState.CONCEALED)

    def test_coerce(self):
        assert VisibilityState.coerce("hidden") == VisibilityState.HIDDEN
        assert VisibilityState.coerce(VisibilityState.OBSERVED) == VisibilityState.OBSERVED
        with pytest.raises(ValueError):
            VisibilityState.coerce("invisible")

    def test_string_values(self):
        """Members carry string values but are not strings themselves."""
        assert [s.value for s in VisibilityState] == ["observed", "concealed", "hidden", "undetected"]
        assert [c.value for c in CoverState] == ["none", "lesser", "standard", "greater"]
        assert not isinstance(VisibilityState.HIDDEN, str)
        assert VisibilityState.HIDDEN != "hidden"

    def test_cover_bonus(self):
        assert CoverState.NONE.stealth_bonus == 0
        assert CoverState.LESSER.stealth_bonus == 0
        assert CoverState.STANDARD.stealth_bonus == 2
        assert CoverState.GREATER.stealth_bonus == 4
        assert CoverState.STANDARD.can_hide
        assert not CoverState.LESSER.can_hide


class TestPairKey:

    def test_string_form(self):
        key = PairKey("a", "b")
        assert str(key) == "a->b"
        assert PairKey.parse("a->b") == key
        assert key.reversed() == PairKey("b", "a")

    def test_parse_rejects_malformed(self):
        with pytest.raises(ValueError):
            PairKey.parse("a-b")

    def test_touches(self):
        key = PairKey("a", "b")
        assert key.touches("a") and key.touches("b")
        assert not key.touches("c")


class TestOverrideRecord:

    def test_flag_shape(self):
        record = OverrideRecord(
            observer_id="guard",
            target_id="rogue",
            state=VisibilityState.HIDDEN,
            source=OverrideSource.HIDE,
            expected_cover=CoverState.STANDARD,
            observer_name="Guard",
            target_name="Rogue",
        )
        flag = record.to_flag()

        assert flag["state"] == "hidden"
        assert flag["source"] == "hide"
        assert flag["expectedCover"] == "standard"
        assert flag["observerName"] == "Guard"

        restored = OverrideRecord.from_flag("guard", "rogue", flag)
        assert restored.state == VisibilityState.HIDDEN
        assert restored.expected_cover == CoverState.STANDARD
        assert restored.created_at == record.created_at

    def test_expected_concealment_inferred_from_state(self):
        hidden = OverrideRecord("a", "b", VisibilityState.HIDDEN)
        observed = OverrideRecord("a", "b", VisibilityState.OBSERVED)

        assert hidden.expects_concealment
        assert not observed.expects_concealment
        assert not hidden.expects_cover


class TestExclusion:

    def test_defeated_tokens_are_excluded(self):
        assert is_excluded(Token(id="a", hp=0))
        assert is_excluded(Token(id="a", conditions={"Unconscious"}))
        assert not is_excluded(Token(id="a", hp=5))

    def test_include_when_defeated_flag(self):
        token = Token(id="a", hp=0, flags={"include_when_defeated": True})
        assert not is_excluded(token)
