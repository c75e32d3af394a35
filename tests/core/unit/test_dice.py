import random

import pytest

from rollrelay.dice import (
    parse_formula,
    parse_tabletop_formula,
    roll,
    same_formula,
    tabletop_formula,
)
from rollrelay.errors import FormulaError


def test_parse_formula_reads_count_sides_and_modifier() -> None:
    formula = parse_formula("2d6-1")

    assert (formula.count, formula.sides, formula.modifier) == (2, 6, -1)
    assert parse_formula(" 1 d 20 + 5 ").text == "1d20+5"


@pytest.mark.parametrize("text", ["", "d20", "1d", "abc", "0d6", "1d0", "101d6", "1d1001", "1d20+x"])
def test_parse_formula_rejects_invalid_or_oversized_notation(text: str) -> None:
    with pytest.raises(FormulaError):
        parse_formula(text)


def test_formula_error_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        parse_formula("nope")


def test_roll_total_stays_within_formula_bounds() -> None:
    rng = random.Random(7)
    for _ in range(500):
        result = roll("3d6+2", rng=rng)
        assert 5 <= result.total <= 20
        assert len(result.rolls) == 3
        assert result.total == sum(result.rolls) + 2


def test_advantage_keeps_the_higher_die_and_disadvantage_the_lower() -> None:
    rng = random.Random(11)
    for _ in range(200):
        advantage = roll("1d20+5", mode="advantage", rng=rng)
        disadvantage = roll("1d20+5", mode="disadvantage", rng=rng)

        assert len(advantage.rolls) == 2
        assert advantage.kept == [max(advantage.rolls)]
        assert advantage.total >= min(advantage.rolls) + 5
        assert disadvantage.kept == [min(disadvantage.rolls)]


def test_advantage_is_never_worse_than_its_first_die() -> None:
    rng = random.Random(3)
    for _ in range(200):
        result = roll("1d20", mode="advantage", rng=rng)
        assert result.total >= result.rolls[0]


def test_advantage_requires_a_single_die() -> None:
    with pytest.raises(FormulaError):
        roll("2d6", mode="advantage")
    with pytest.raises(FormulaError):
        roll("1d20", mode="sideways")


def test_tabletop_formula_renders_keep_highest_and_lowest() -> None:
    assert tabletop_formula("1d20+5", "advantage") == "2d20kh1+5"
    assert tabletop_formula("1d20-1", "disadvantage") == "2d20kl1-1"
    assert tabletop_formula("2d6+3") == "2d6+3"


def test_parse_tabletop_formula_recovers_mode() -> None:
    formula, mode = parse_tabletop_formula("2d20kh1+5")

    assert formula.text == "1d20+5"
    assert mode == "advantage"
    assert parse_tabletop_formula("2d6")[1] == "normal"


def test_same_formula_ignores_case_and_whitespace() -> None:
    assert same_formula("2d20KH1 + 5", "2d20kh1+5")
    assert not same_formula("1d20+5", "1d20+6")
