"""Dice notation parsing and rolling used for local results and local fallbacks."""

from __future__ import annotations

import random
import re
from dataclasses import dataclass
from typing import Any

from rollrelay.errors import FormulaError


MAX_DICE = 100
MAX_SIDES = 1000

ROLL_MODES = ("normal", "advantage", "disadvantage")

_FORMULA_PATTERN = re.compile(r"^\s*(\d+)\s*d\s*(\d+)\s*(?:([+-])\s*(\d+))?\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class DiceFormula:
    count: int
    sides: int
    modifier: int = 0

    @property
    def text(self) -> str:
        if self.modifier == 0:
            return f"{self.count}d{self.sides}"
        sign = "+" if self.modifier > 0 else "-"
        return f"{self.count}d{self.sides}{sign}{abs(self.modifier)}"


@dataclass(frozen=True)
class RollResult:
    formula: str
    rolls: list[int]
    kept: list[int]
    modifier: int
    total: int
    mode: str = "normal"

    def to_dict(self) -> dict[str, Any]:
        return {
            "formula": self.formula,
            "rolls": list(self.rolls),
            "kept": list(self.kept),
            "modifier": self.modifier,
            "total": self.total,
            "mode": self.mode,
        }


def parse_formula(text: str) -> DiceFormula:
    """Parse ``NdS``, ``NdS+M`` or ``NdS-M``; raise FormulaError on anything else."""
    match = _FORMULA_PATTERN.match(text or "")
    if match is None:
        raise FormulaError(f"Invalid dice notation: {text!r}. Use a format like 2d6, 1d20+5 or 3d10-2.")

    count = int(match.group(1))
    sides = int(match.group(2))
    modifier = int(match.group(4) or 0)
    if match.group(3) == "-":
        modifier = -modifier

    if count < 1 or sides < 1:
        raise FormulaError(f"Invalid dice notation: {text!r}. Dice count and sides must be positive.")
    if count > MAX_DICE or sides > MAX_SIDES:
        raise FormulaError(f"Dice limits: max {MAX_DICE} dice, max {MAX_SIDES} sides.")
    return DiceFormula(count=count, sides=sides, modifier=modifier)


def normalize_mode(mode: str | None) -> str:
    value = str(mode or "normal").strip().lower()
    if value not in ROLL_MODES:
        raise FormulaError(f"Unknown roll mode: {mode!r}")
    return value


def roll(formula: str | DiceFormula, mode: str | None = "normal", rng: random.Random | None = None) -> RollResult:
    """Roll a formula.

    Advantage and disadvantage roll the single die twice and keep the higher or
    lower value, so they only apply to single-die formulas.
    """
    parsed = formula if isinstance(formula, DiceFormula) else parse_formula(formula)
    resolved_mode = normalize_mode(mode)
    source = rng or random

    if resolved_mode == "normal":
        rolls = [source.randint(1, parsed.sides) for _ in range(parsed.count)]
        kept = list(rolls)
    else:
        if parsed.count != 1:
            raise FormulaError("Advantage and disadvantage apply to single-die rolls only.")
        rolls = [source.randint(1, parsed.sides), source.randint(1, parsed.sides)]
        kept = [max(rolls)] if resolved_mode == "advantage" else [min(rolls)]

    return RollResult(
        formula=parsed.text,
        rolls=rolls,
        kept=kept,
        modifier=parsed.modifier,
        total=sum(kept) + parsed.modifier,
        mode=resolved_mode,
    )


def tabletop_formula(formula: str | DiceFormula, mode: str | None = "normal") -> str:
    """Render the formula the way the tabletop expects it, with keep-highest/lowest for modes."""
    parsed = formula if isinstance(formula, DiceFormula) else parse_formula(formula)
    resolved_mode = normalize_mode(mode)
    if resolved_mode == "normal":
        return parsed.text
    if parsed.count != 1:
        raise FormulaError("Advantage and disadvantage apply to single-die rolls only.")

    keep = "kh1" if resolved_mode == "advantage" else "kl1"
    base = f"2d{parsed.sides}{keep}"
    if parsed.modifier == 0:
        return base
    sign = "+" if parsed.modifier > 0 else "-"
    return f"{base}{sign}{abs(parsed.modifier)}"


def same_formula(left: str, right: str) -> bool:
    return _squash(left) == _squash(right)


def _squash(formula: str) -> str:
    return re.sub(r"\s+", "", formula or "").lower()


_TABLETOP_KEEP_PATTERN = re.compile(r"^\s*2d(\d+)(kh1|kl1)\s*([+-]\s*\d+)?\s*$", re.IGNORECASE)


def parse_tabletop_formula(text: str) -> tuple[DiceFormula, str]:
    """Inverse of ``tabletop_formula``: return the single-die formula and its mode."""
    match = _TABLETOP_KEEP_PATTERN.match(text or "")
    if match is None:
        return parse_formula(text), "normal"
    modifier = (match.group(3) or "").replace(" ", "")
    mode = "advantage" if match.group(2).lower() == "kh1" else "disadvantage"
    return parse_formula(f"1d{match.group(1)}{modifier}"), mode
