"""
Tests for the fleet profile catalog and cumulative-count assignment.
"""

import random

import pytest
from hypothesis import given
from hypothesis import strategies as st

from fleetsim.domain.models import MetricBaseline
from fleetsim.domain.profiles import (
    KUBERNETES_PROFILES,
    STANDARD_PROFILES,
    catalog_size,
    draw_baseline,
    find_profile,
    get_profile_catalog,
    select_profile,
)


def test_standard_catalog_covers_fifty_servers() -> None:
    assert catalog_size(STANDARD_PROFILES) == 50
    assert [p.role for p in STANDARD_PROFILES] == ["web", "app", "db", "cache", "api", "monitor"]


def test_kubernetes_catalog_roles() -> None:
    assert catalog_size(KUBERNETES_PROFILES) == 15
    assert {p.role for p in KUBERNETES_PROFILES} == {"k8s-master", "k8s-worker", "k8s-etcd"}


def test_catalog_lookup_by_name() -> None:
    assert get_profile_catalog("standard") is STANDARD_PROFILES
    assert get_profile_catalog("kubernetes") is KUBERNETES_PROFILES

    with pytest.raises(ValueError, match="Unknown profile catalog"):
        get_profile_catalog("mainframe")  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("index", "role"),
    [(0, "web"), (14, "web"), (15, "app"), (24, "app"), (25, "db"), (33, "cache"), (49, "monitor")],
)
def test_select_profile_partitions_index_space(index: int, role: str) -> None:
    assert select_profile(index, STANDARD_PROFILES).role == role


def test_select_profile_falls_back_to_first_on_overflow() -> None:
    assert select_profile(50, STANDARD_PROFILES).role == "web"
    assert select_profile(10_000, KUBERNETES_PROFILES).role == "k8s-master"


def test_select_profile_rejects_empty_catalog() -> None:
    with pytest.raises(ValueError, match="empty"):
        select_profile(0, ())


def test_find_profile_by_role() -> None:
    assert find_profile("db", STANDARD_PROFILES).cpu.base == 45
    assert find_profile("unknown", STANDARD_PROFILES).role == "web"


def test_web_and_api_carry_more_traffic() -> None:
    multipliers = {p.role: p.traffic_multiplier for p in STANDARD_PROFILES}
    assert multipliers["web"] == multipliers["api"] == 2.0
    assert multipliers["db"] == 1.0


def test_service_counts_fit_rosters() -> None:
    for profile in (*STANDARD_PROFILES, *KUBERNETES_PROFILES):
        assert profile.min_services <= profile.max_services <= len(profile.services)


@given(
    base=st.floats(min_value=0, max_value=100),
    variation=st.floats(min_value=0, max_value=50),
    seed=st.integers(min_value=0, max_value=2**32 - 1),
)
def test_draw_baseline_stays_clamped(base: float, variation: float, seed: int) -> None:
    value = draw_baseline(MetricBaseline(base=base, variation=variation), random.Random(seed))
    assert 5.0 <= value <= 98.0


def test_draw_baseline_within_variation_when_not_clamped() -> None:
    rng = random.Random(3)
    baseline = MetricBaseline(base=50, variation=10)
    for _ in range(200):
        assert 40 - 0.01 <= draw_baseline(baseline, rng) <= 60 + 0.01
