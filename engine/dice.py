"""Dice rolling utilities for the combat engine."""

import logging
import random
import re

from pydantic import BaseModel

from config import DEFAULT_DICE

logger = logging.getLogger(__name__)

MAX_DICE_PER_TERM = 100

_EXPRESSION_RE = re.compile(r"^[+-]?(\d+d\d+|\d+)([+-](\d+d\d+|\d+))*$")
_TERM_RE = re.compile(r"([+-]?)(\d+)(?:d(\d+))?")
_SINGLE_TERM_RE = re.compile(r"^(\d+)(d\d+)(.*)$")


class DiceResult(BaseModel):
    """Result of a dice roll."""
    total: int
    rolls: list[int]
    modifier: int
    notation: str
    fallback: bool = False          # True when the requested notation was unusable


def is_valid_notation(notation: str) -> bool:
    """Check whether a string is a rollable dice expression like '1d8-1+1d4'."""
    cleaned = notation.replace(" ", "").lower()
    if not cleaned or not _EXPRESSION_RE.match(cleaned):
        return False
    for _, count, sides in _TERM_RE.findall(cleaned):
        if sides and (int(sides) < 1 or int(count) > MAX_DICE_PER_TERM):
            return False
    return True


def roll(notation: str, rng: random.Random | None = None) -> DiceResult:
    """Parse and roll dice notation like '2d6+3', '1d20', '2d6+1d4-2'.

    Dice expressions often come from generated content, so a malformed
    expression never raises: it is logged and rolled as DEFAULT_DICE.

    Args:
        notation: Dice notation string (e.g. "2d6+3").
        rng: Optional Random instance for seeded/testing rolls.

    Returns:
        DiceResult with total, individual rolls, flat modifier, and notation.
    """
    rng = rng or random.Random()
    cleaned = (notation or "").replace(" ", "").lower()

    if not is_valid_notation(cleaned):
        logger.warning("Invalid dice notation %r, rolling %s instead", notation, DEFAULT_DICE)
        result = roll(DEFAULT_DICE, rng=rng)
        return result.model_copy(update={"fallback": True})

    rolls: list[int] = []
    dice_total = 0
    modifier = 0
    for sign, count, sides in _TERM_RE.findall(cleaned):
        factor = -1 if sign == "-" else 1
        if sides:
            term_rolls = [rng.randint(1, int(sides)) for _ in range(int(count))]
            rolls.extend(term_rolls)
            dice_total += factor * sum(term_rolls)
        else:
            modifier += factor * int(count)

    return DiceResult(
        total=dice_total + modifier,
        rolls=rolls,
        modifier=modifier,
        notation=cleaned,
    )


def roll_d20(
    advantage: bool = False,
    disadvantage: bool = False,
    rng: random.Random | None = None,
) -> int:
    """Roll a d20, optionally with advantage or disadvantage.

    Args:
        advantage: Roll twice, take the higher.
        disadvantage: Roll twice, take the lower.
        rng: Optional Random instance for seeded/testing rolls.

    Returns:
        The resulting d20 roll.
    """
    return roll_d20_detailed(advantage, disadvantage, rng)[0]


def roll_d20_detailed(
    advantage: bool = False,
    disadvantage: bool = False,
    rng: random.Random | None = None,
) -> tuple[int, list[int]]:
    """Roll a d20 and also return every die thrown.

    Returns:
        (kept_roll, all_rolls) tuple.
    """
    rng = rng or random.Random()

    if advantage and disadvantage:
        # They cancel out, straight roll
        advantage = disadvantage = False

    if advantage or disadvantage:
        r1, r2 = rng.randint(1, 20), rng.randint(1, 20)
        kept = max(r1, r2) if advantage else min(r1, r2)
        return kept, [r1, r2]

    value = rng.randint(1, 20)
    return value, [value]


def double_dice(notation: str) -> str:
    """Double the dice count of the leading term for a critical hit.

    '1d8' -> '2d8', '2d6+3' -> '4d6+3'. Anything else is returned unchanged.
    """
    cleaned = notation.replace(" ", "").lower()
    match = _SINGLE_TERM_RE.match(cleaned)
    if not match:
        return notation
    return f"{int(match.group(1)) * 2}{match.group(2)}{match.group(3)}"
