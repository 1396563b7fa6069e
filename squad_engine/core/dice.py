"""
Dice rolling for squad initiative and morale checks.

Handles:
- d20 roll shapes (single die, two dice keep highest, two dice keep lowest)
- Formula notation parsing ("2d20kh + 3", "1d20 - 1")
- The roll service the engine awaits; hosts can inject their own
"""
import random
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Protocol, Tuple


class RollMode(str, Enum):
    """How a group initiative roll treats the d20."""
    NORMAL = "normal"
    ADVANTAGE = "advantage"
    DISADVANTAGE = "disadvantage"


class DieShape(str, Enum):
    """Die expressions used by the engine."""
    SINGLE = "1d20"
    KEEP_HIGHEST = "2d20kh"
    KEEP_LOWEST = "2d20kl"

    @classmethod
    def for_mode(cls, mode: RollMode) -> "DieShape":
        """Die shape for an initiative roll mode."""
        if mode == RollMode.ADVANTAGE:
            return cls.KEEP_HIGHEST
        if mode == RollMode.DISADVANTAGE:
            return cls.KEEP_LOWEST
        return cls.SINGLE


@dataclass
class RollOutcome:
    """Result of evaluating a formula."""
    formula: str
    total: int
    dice: List[int] = field(default_factory=list)  # Every die rolled
    kept: Optional[int] = None  # Die value used after keep-highest/lowest
    modifier: int = 0


class RollService(Protocol):
    """Anything that can evaluate a dice formula asynchronously."""

    async def evaluate(self, formula: str) -> RollOutcome:
        ...


def roll_die(sides: int) -> int:
    """Roll a single die with the given number of sides."""
    if sides < 1:
        raise ValueError(f"Invalid die: d{sides}")
    return random.randint(1, sides)


def build_formula(shape: DieShape, modifier: float) -> str:
    """
    Build a roll formula from a die shape and a flat modifier.

    Examples:
        build_formula(DieShape.SINGLE, 3) -> "1d20 + 3"
        build_formula(DieShape.KEEP_LOWEST, -2) -> "2d20kl - 2"
    """
    modifier = int(modifier)
    if modifier >= 0:
        return f"{shape.value} + {modifier}"
    return f"{shape.value} - {abs(modifier)}"


_DICE_TERM = re.compile(r'^([+-]?)(\d*)d(\d+)(kh|kl)?$')


def parse_formula(formula: str) -> Tuple[int, int, Optional[str], int]:
    """
    Parse a single-term dice formula.

    Args:
        formula: Notation like "1d20+3", "2d20kh - 1", "2d20kl"

    Returns:
        (count, sides, keep, modifier) where keep is "kh", "kl" or None

    Raises:
        ValueError: If the formula is invalid
    """
    if not formula:
        raise ValueError("Empty dice formula")

    notation = formula.lower().replace(" ", "")
    parts = re.split(r'(?=[+-])', notation)

    dice_term = None
    modifier = 0

    for part in parts:
        if not part:
            continue

        dice_match = _DICE_TERM.match(part)
        if dice_match:
            if dice_term is not None:
                raise ValueError(f"Only one dice term is supported: {formula}")
            if dice_match.group(1) == '-':
                raise ValueError(f"Negative dice term in: {formula}")
            count = int(dice_match.group(2)) if dice_match.group(2) else 1
            dice_term = (count, int(dice_match.group(3)), dice_match.group(4))
        else:
            try:
                modifier += int(part)
            except ValueError:
                raise ValueError(f"Invalid dice formula: {formula}")

    if dice_term is None:
        raise ValueError(f"No dice in formula: {formula}")

    count, sides, keep = dice_term
    if keep and count < 2:
        raise ValueError(f"Keep modifier needs at least two dice: {formula}")
    return count, sides, keep, modifier


def roll_formula(formula: str) -> RollOutcome:
    """Roll a formula synchronously."""
    count, sides, keep, modifier = parse_formula(formula)
    rolls = [roll_die(sides) for _ in range(count)]

    if keep == "kh":
        kept = max(rolls)
        dice_total = kept
    elif keep == "kl":
        kept = min(rolls)
        dice_total = kept
    else:
        kept = rolls[0] if count == 1 else None
        dice_total = sum(rolls)

    return RollOutcome(
        formula=formula,
        total=dice_total + modifier,
        dice=rolls,
        kept=kept,
        modifier=modifier,
    )


class DiceRoller:
    """Default roll service backed by the local random generator."""

    async def evaluate(self, formula: str) -> RollOutcome:
        return roll_formula(formula)
