from __future__ import annotations

import pytest

from ralphie.costs import calculate_cost, format_cost, normalize_model_name, resolve_pricing


@pytest.mark.parametrize(
    ("model", "expected"),
    [
        ("claude-sonnet-4-20250514", "claude-sonnet"),
        ("opus", "claude-opus"),
        ("Claude-3-Haiku", "claude-haiku"),
        ("gpt-4o-mini-2024-07-18", "gpt-4o-mini"),
        ("gpt-4o", "gpt-4o"),
        ("o1-mini", "o1-mini"),
        (None, "claude-sonnet"),
        ("", "claude-sonnet"),
    ],
)
def test_normalize_model_name(model: str | None, expected: str) -> None:
    assert normalize_model_name(model) == expected


def test_unknown_model_falls_back_to_sonnet_pricing() -> None:
    assert resolve_pricing("mystery-model") == {"input": 3.0, "output": 15.0}


def test_overrides_win_over_defaults() -> None:
    overrides = {"mystery-model": {"input": 1.0, "output": 1.0}, "claude-opus": {"input": 5.0, "output": 25.0}}

    assert resolve_pricing("mystery-model", overrides) == {"input": 1.0, "output": 1.0}
    assert resolve_pricing("claude-opus-4-1", overrides) == {"input": 5.0, "output": 25.0}


def test_calculate_cost() -> None:
    assert calculate_cost(1_000_000, 1_000_000, "sonnet") == pytest.approx(18.0)
    assert calculate_cost(2_000, 500, "gpt-4o-mini") == pytest.approx(0.0006)
    assert calculate_cost(0, 0) == 0.0


def test_format_cost() -> None:
    assert format_cost(1000, 500, 0.0105) == "tokens: 1,000 in / 500 out | cost: $0.0105"
