"""Tests for resource budgets and override clamping."""

import math

import pytest
from hypothesis import given
from hypothesis import strategies as st

from miri_playground.core.exceptions import ConfigurationError
from miri_playground.sandbox.budget import ResourceBudget


def test_defaults_are_bounded():
    budget = ResourceBudget()
    for value in budget.to_dict().values():
        assert math.isfinite(value)
        assert value > 0


@pytest.mark.parametrize(
    "field_name, value",
    [
        ("timeout_seconds", 0),
        ("timeout_seconds", -1.0),
        ("timeout_seconds", float("inf")),
        ("memory_limit_mb", 0),
        ("cpu_time_seconds", float("nan")),
        ("max_output_bytes", -5),
        ("max_open_files", 0),
        ("memory_limit_mb", True),
        ("timeout_seconds", "10"),
    ],
)
def test_unbounded_budget_is_rejected(field_name, value):
    with pytest.raises(ConfigurationError):
        ResourceBudget(**{field_name: value})


def test_memory_limit_bytes():
    assert ResourceBudget(memory_limit_mb=3).memory_limit_bytes == 3 * 1024 * 1024


def test_remaining_never_negative():
    budget = ResourceBudget(timeout_seconds=2.0)
    assert budget.remaining(0.5) == pytest.approx(1.5)
    assert budget.remaining(5.0) == 0.0
    assert budget.remaining(-1.0) == 2.0


def test_with_timeout_keeps_other_bounds():
    budget = ResourceBudget(timeout_seconds=10.0, memory_limit_mb=100)
    shorter = budget.with_timeout(1.5)
    assert shorter.timeout_seconds == 1.5
    assert shorter.memory_limit_mb == 100
    assert budget.timeout_seconds == 10.0


def test_overrides_without_values_keep_defaults():
    budget = ResourceBudget(timeout_seconds=4.0, memory_limit_mb=128, cpu_time_seconds=3.0)
    same = budget.with_overrides(max_timeout_seconds=30.0, max_memory_limit_mb=1024)
    assert same == budget


def test_timeout_override_moves_cpu_bound():
    budget = ResourceBudget(timeout_seconds=10.0, cpu_time_seconds=10.0)
    updated = budget.with_overrides(
        timeout_seconds=2.0, max_timeout_seconds=30.0, max_memory_limit_mb=1024
    )
    assert updated.timeout_seconds == 2.0
    assert updated.cpu_time_seconds == 2.0


def test_overrides_are_clamped_to_ceilings():
    budget = ResourceBudget()
    updated = budget.with_overrides(
        timeout_seconds=999.0,
        memory_limit_mb=1_000_000,
        max_timeout_seconds=30.0,
        max_memory_limit_mb=2048,
    )
    assert updated.timeout_seconds == 30.0
    assert updated.memory_limit_mb == 2048


@given(
    timeout=st.floats(min_value=0.01, max_value=10_000, allow_nan=False, allow_infinity=False),
    memory=st.integers(min_value=1, max_value=1_000_000),
    max_timeout=st.floats(min_value=0.01, max_value=600, allow_nan=False, allow_infinity=False),
    max_memory=st.integers(min_value=1, max_value=65_536),
)
def test_override_never_exceeds_ceiling(timeout, memory, max_timeout, max_memory):
    updated = ResourceBudget().with_overrides(
        timeout_seconds=timeout,
        memory_limit_mb=memory,
        max_timeout_seconds=max_timeout,
        max_memory_limit_mb=max_memory,
    )
    assert 0 < updated.timeout_seconds <= max_timeout
    assert 0 < updated.memory_limit_mb <= max_memory
    assert updated.cpu_time_seconds <= max_timeout
    assert math.isfinite(updated.cpu_time_seconds)
