"""Tests for the dice rolling system."""
import pytest
from unittest.mock import patch

from squad_engine.core.dice import (
    DiceRoller,
    DieShape,
    RollMode,
    build_formula,
    parse_formula,
    roll_die,
    roll_formula,
)


class TestRollDie:
    """Tests for basic die rolling."""

    def test_roll_d20_in_range(self):
        """d20 should always be between 1 and 20."""
        for _ in range(100):
            assert 1 <= roll_die(20) <= 20

    def test_invalid_die_raises_error(self):
        with pytest.raises(ValueError):
            roll_die(0)


class TestDieShape:
    def test_shape_for_mode(self):
        assert DieShape.for_mode(RollMode.NORMAL) == DieShape.SINGLE
        assert DieShape.for_mode(RollMode.ADVANTAGE) == DieShape.KEEP_HIGHEST
        assert DieShape.for_mode(RollMode.DISADVANTAGE) == DieShape.KEEP_LOWEST


class TestBuildFormula:
    def test_positive_modifier(self):
        assert build_formula(DieShape.SINGLE, 3) == "1d20 + 3"

    def test_negative_modifier(self):
        assert build_formula(DieShape.KEEP_LOWEST, -2) == "2d20kl - 2"

    def test_zero_modifier(self):
        assert build_formula(DieShape.KEEP_HIGHEST, 0) == "2d20kh + 0"


class TestParseFormula:
    """Tests for formula parsing."""

    def test_keep_highest(self):
        assert parse_formula("2d20kh + 3") == (2, 20, "kh", 3)

    def test_single_die_negative_modifier(self):
        assert parse_formula("1d20-1") == (1, 20, None, -1)

    def test_implicit_count(self):
        assert parse_formula("d20") == (1, 20, None, 0)

    @pytest.mark.parametrize("formula", ["", "3", "1d20+1d6", "-1d20", "1d20+x", "1d20kh"])
    def test_invalid_formulas(self, formula):
        with pytest.raises(ValueError):
            parse_formula(formula)


class TestRollFormula:
    """Tests for rolling parsed formulas."""

    def test_keep_highest_uses_best_die(self):
        with patch("squad_engine.core.dice.random.randint", side_effect=[4, 17]):
            outcome = roll_formula("2d20kh + 1")
        assert outcome.dice == [4, 17]
        assert outcome.kept == 17
        assert outcome.total == 18

    def test_keep_lowest_uses_worst_die(self):
        with patch("squad_engine.core.dice.random.randint", side_effect=[4, 17]):
            outcome = roll_formula("2d20kl + 1")
        assert outcome.kept == 4
        assert outcome.total == 5

    def test_single_die(self):
        with patch("squad_engine.core.dice.random.randint", return_value=11):
            outcome = roll_formula("1d20 - 2")
        assert outcome.kept == 11
        assert outcome.total == 9
        assert outcome.modifier == -2

    @pytest.mark.asyncio
    async def test_dice_roller_service(self):
        outcome = await DiceRoller().evaluate("1d20 + 2")
        assert 3 <= outcome.total <= 22
        assert outcome.formula == "1d20 + 2"
