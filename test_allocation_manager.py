# -*- coding: utf-8 -*-
"""
Tests for allocation_manager module.

Tested functionality:
- capacity: budget per number of active categories
- weight_from_distance / RadialGeometry: radial pointer mapping
- next_status: hysteresis state machine with the last-active guard
- waterfill: even redistribution with saturation
- apply_weight: the full pure transition (conservation, overflow, residuals)
- AllocationManager: drag sessions, notifications, reset
"""

import math
import random

import numpy as np
import pytest

from allocation_manager import (
    CATEGORY_ORDER,
    AllocationManager,
    AllocationState,
    CategoryStatus,
    RadialGeometry,
    apply_weight,
    capacity,
    next_status,
    waterfill,
    weight_from_distance,
)
from frame_scheduler import ManualFrameScheduler
from survey_config import AllocationSettings


# =============================================================================
# Helpers & Fixtures
# =============================================================================

def _assert_invariants(state):
    """Conservation, bounds and at-least-one-active for any reachable state."""
    assert state.active_count >= 1
    assert math.isclose(state.total_active(), capacity(state.active_count), abs_tol=1e-6)
    for category in CATEGORY_ORDER:
        assert 0.0 <= state.weights[category] <= 1.0
    for category in state.deactivated:
        assert state.weights[category] == 0.0


def _drive(state, *steps):
    for category, weight in steps:
        state = apply_weight(state, category, weight)
    return state


@pytest.fixture
def equal_state():
    return AllocationState.equal()


@pytest.fixture
def single_active_state(equal_state):
    """circle, square and triangle deactivated; diamond holds the whole budget."""
    return _drive(equal_state, ("circle", 0.0), ("square", 0.0), ("triangle", 0.0))


@pytest.fixture
def manager():
    return AllocationManager(scheduler=ManualFrameScheduler())


@pytest.fixture
def geometry():
    return RadialGeometry.for_size(320)


# =============================================================================
# Tests for capacity
# =============================================================================

class TestCapacity:

    @pytest.mark.parametrize("active_count,expected", [(4, 2.5), (3, 2.0), (2, 1.5), (1, 1.0)])
    def test_default_curve(self, active_count, expected):
        assert capacity(active_count) == pytest.approx(expected)

    def test_floor_applies(self):
        settings = AllocationSettings(base_capacity=2.0, capacity_step=1.0, min_capacity=0.75)
        assert capacity(1, settings) == pytest.approx(0.75)
        assert capacity(2, settings) == pytest.approx(0.75)

    def test_non_decreasing_in_active_count(self):
        values = [capacity(n) for n in range(1, 5)]
        assert values == sorted(values)


# =============================================================================
# Tests for radial mapping
# =============================================================================

class TestWeightFromDistance:

    def test_inner_dead_zone_is_full_weight(self):
        assert weight_from_distance(0.0, inner_radius=20.0, span=80.0) == 1.0
        assert weight_from_distance(20.0, inner_radius=20.0, span=80.0) == 1.0

    def test_outer_radius_is_zero_weight(self):
        assert weight_from_distance(100.0, inner_radius=20.0, span=80.0) == 0.0
        assert weight_from_distance(500.0, inner_radius=20.0, span=80.0) == 0.0

    def test_midpoint_follows_gamma_curve(self):
        w = weight_from_distance(60.0, inner_radius=20.0, span=80.0, gamma=1.25)
        assert w == pytest.approx(1.0 - 0.5 ** 1.25)

    def test_partial_weight_never_reaches_one(self):
        w = weight_from_distance(20.01, inner_radius=20.0, span=80.0)
        assert w == pytest.approx(0.9995)

    def test_monotonically_non_increasing(self, geometry):
        distances = np.linspace(0.0, geometry.outer_radius * 1.5, 400)
        weights = [geometry.weight_from_distance(d) for d in distances]
        assert all(b <= a for a, b in zip(weights, weights[1:]))


class TestRadialGeometry:

    def test_radii_for_default_viewport(self, geometry):
        assert geometry.half == 160
        assert geometry.outer_radius == pytest.approx(148 * 0.92)
        assert geometry.active_radius == pytest.approx(geometry.outer_radius * 0.78)
        assert geometry.inner_radius == pytest.approx(geometry.active_radius * 0.22)
        assert geometry.inner_radius + geometry.span == pytest.approx(geometry.active_radius)

    def test_small_viewport_keeps_minimum_pads(self):
        small = RadialGeometry.for_size(60)
        assert small.dead_band == 8.0
        assert small.inner_radius == 12.0
        assert small.span >= 1.0

    def test_radial_distance_and_angle(self, geometry):
        assert geometry.radial_distance(160, 160) == 0.0
        assert geometry.radial_distance(190, 200) == pytest.approx(50.0)
        assert geometry.angle_of(200, 160) == pytest.approx(0.0)

    def test_layout_radius_inverts_linearly(self, geometry):
        assert geometry.layout_radius(1.0) == pytest.approx(geometry.inner_radius)
        assert geometry.layout_radius(0.0) == pytest.approx(geometry.active_radius)
        assert geometry.layout_radius(0.0, max_radius=50.0) == 50.0


# =============================================================================
# Tests for the hysteresis state machine
# =============================================================================

class TestNextStatus:

    def test_active_deactivates_at_threshold(self):
        assert next_status(CategoryStatus.ACTIVE, 0.02, 4) == (CategoryStatus.DEACTIVATED, 0.0)

    def test_last_active_is_forced_to_full(self):
        assert next_status(CategoryStatus.ACTIVE, 0.0, 1) == (CategoryStatus.ACTIVE, 1.0)

    def test_deactivated_reactivates_at_threshold(self):
        assert next_status(CategoryStatus.DEACTIVATED, 0.06, 3) == (CategoryStatus.ACTIVE, 0.06)

    @pytest.mark.parametrize("status", [CategoryStatus.ACTIVE, CategoryStatus.DEACTIVATED])
    @pytest.mark.parametrize("weight", [0.021, 0.04, 0.059])
    def test_dead_band_keeps_status(self, status, weight):
        assert next_status(status, weight, 3) == (status, weight)


# =============================================================================
# Tests for waterfill
# =============================================================================

class TestWaterfill:

    def test_even_split_without_saturation(self):
        weights = {"a": 0.2, "b": 0.4}
        absorbed = waterfill(weights, ["a", "b"], 0.2)
        assert absorbed == pytest.approx(0.2)
        assert weights == pytest.approx({"a": 0.3, "b": 0.5})

    def test_saturated_members_drop_out(self):
        weights = {"a": 0.95, "b": 0.2, "c": 0.2}
        absorbed = waterfill(weights, ["a", "b", "c"], 0.6)
        assert absorbed == pytest.approx(0.6)
        assert weights["a"] == pytest.approx(1.0)
        assert weights["b"] == pytest.approx(0.475)
        assert weights["c"] == pytest.approx(0.475)

    def test_decrease_stops_at_zero(self):
        weights = {"a": 0.1, "b": 0.6}
        absorbed = waterfill(weights, ["a", "b"], -0.5)
        assert absorbed == pytest.approx(-0.5)
        assert weights == pytest.approx({"a": 0.0, "b": 0.2})

    def test_returns_only_what_fits(self):
        weights = {"a": 0.9}
        absorbed = waterfill(weights, ["a"], 0.5)
        assert absorbed == pytest.approx(0.1)
        assert weights["a"] == pytest.approx(1.0)

    def test_empty_pool_absorbs_nothing(self):
        assert waterfill({}, [], 0.3) == 0.0


# =============================================================================
# Tests for apply_weight
# =============================================================================

class TestApplyWeight:

    def test_equal_state(self, equal_state):
        assert equal_state.as_vector() == pytest.approx({c: 0.625 for c in CATEGORY_ORDER})
        _assert_invariants(equal_state)

    def test_raising_one_lowers_the_others_evenly(self, equal_state):
        state = apply_weight(equal_state, "circle", 1.0)
        assert state.as_vector() == pytest.approx(
            {"circle": 1.0, "square": 0.5, "triangle": 0.5, "diamond": 0.5}
        )
        _assert_invariants(state)

    def test_deactivation_shrinks_capacity(self, equal_state):
        state = apply_weight(equal_state, "circle", 0.0)
        assert state.deactivated == frozenset({"circle"})
        assert state.weights["circle"] == 0.0
        assert state.weights["square"] == pytest.approx(2.0 / 3)
        _assert_invariants(state)

    def test_reactivation_grows_capacity(self, equal_state):
        state = _drive(equal_state, ("circle", 0.0), ("circle", 0.06))
        assert "circle" not in state.deactivated
        assert state.weights["circle"] == pytest.approx(0.06)
        assert state.weights["square"] == pytest.approx((2.5 - 0.06) / 3)
        _assert_invariants(state)

    def test_last_active_guard(self, single_active_state):
        assert single_active_state.active == ("diamond",)
        assert single_active_state.weights["diamond"] == pytest.approx(1.0)

        state = apply_weight(single_active_state, "diamond", 0.0)
        assert state.active == ("diamond",)
        assert state.weights["diamond"] == 1.0
        _assert_invariants(state)

    def test_single_active_overflow_reactivates_everything(self, single_active_state):
        state = apply_weight(single_active_state, "diamond", 0.4)
        assert state.deactivated == frozenset()
        assert state.weights["diamond"] == pytest.approx(0.4)
        for category in ("circle", "square", "triangle"):
            assert state.weights[category] == pytest.approx(0.7)
        _assert_invariants(state)

    def test_unabsorbable_residual_returns_to_driven_category(self, equal_state):
        state = _drive(equal_state, ("circle", 0.0), ("square", 0.0), ("triangle", 1.0))
        assert state.weights["diamond"] == pytest.approx(0.5)

        state = apply_weight(state, "diamond", 0.2)
        assert state.weights["triangle"] == pytest.approx(1.0)
        assert state.weights["diamond"] == pytest.approx(0.5)
        _assert_invariants(state)

    def test_dead_band_does_not_flap(self, equal_state):
        active = apply_weight(equal_state, "circle", 0.04)
        deactivated = apply_weight(equal_state, "circle", 0.0)
        for weight in [0.05, 0.03, 0.021, 0.059, 0.04] * 3:
            active = apply_weight(active, "circle", weight)
            deactivated = apply_weight(deactivated, "circle", weight)
            assert "circle" not in active.deactivated
            assert "circle" in deactivated.deactivated
            _assert_invariants(active)
            _assert_invariants(deactivated)

    def test_deactivated_category_in_dead_band_changes_nothing(self, equal_state):
        state = apply_weight(equal_state, "circle", 0.0)
        again = apply_weight(state, "circle", 0.04)
        assert again.as_vector() == pytest.approx(state.as_vector())

    def test_input_is_clamped(self, equal_state):
        high = apply_weight(equal_state, "circle", 7.0)
        low = apply_weight(equal_state, "circle", -3.0)
        assert high.weights["circle"] == 1.0
        assert "circle" in low.deactivated

    @pytest.mark.parametrize("bad", [float("nan"), float("inf"), None])
    def test_non_finite_input_keeps_state(self, equal_state, bad):
        assert apply_weight(equal_state, "circle", bad) is equal_state

    def test_unknown_category_raises(self, equal_state):
        with pytest.raises(ValueError, match="Unknown category"):
            apply_weight(equal_state, "hexagon", 0.5)

    @pytest.mark.parametrize("start", ["equal", "single"])
    def test_conservation_over_random_walk(self, start, equal_state, single_active_state):
        """Every reachable state conserves the budget."""
        rng = random.Random(20240611)
        state = equal_state if start == "equal" else single_active_state
        candidates = [0.0, 0.01, 0.02, 0.03, 0.05, 0.06, 0.1, 0.3, 0.5, 0.7, 0.95, 1.0]
        for _ in range(2000):
            category = rng.choice(CATEGORY_ORDER)
            weight = rng.choice(candidates) if rng.random() < 0.5 else rng.uniform(-0.1, 1.1)
            state = apply_weight(state, category, weight)
            _assert_invariants(state)


# =============================================================================
# Tests for AllocationManager
# =============================================================================

class TestDragSessions:

    def test_drag_to_rim_deactivates(self, manager, geometry):
        assert manager.begin_drag("circle", session_id=1)
        assert manager.update_pointer("circle", geometry.outer_radius, session_id=1)
        assert "circle" in manager.deactivated
        _assert_invariants(manager.state)

    def test_second_session_is_ignored(self, manager):
        assert manager.begin_drag("circle", session_id=1)
        assert not manager.begin_drag("square", session_id=2)
        assert manager.dragging == "circle"
        assert not manager.update_pointer("square", 0.0, session_id=2)
        assert not manager.end_drag(session_id=2)
        assert manager.end_drag(session_id=1)
        assert manager.dragging is None

    def test_pointer_without_drag_is_ignored(self, manager):
        before = manager.weights
        assert not manager.update_pointer("circle", 0.0)
        assert manager.weights == before

    def test_drag_matches_programmatic_set(self, geometry):
        dragged = AllocationManager()
        programmatic = AllocationManager()
        for category, distance in [("circle", 10.0), ("square", 70.0), ("triangle", 200.0), ("circle", 95.0)]:
            dragged.begin_drag(category)
            dragged.update_pointer(category, distance)
            dragged.end_drag()
            programmatic.set_weight(category, geometry.weight_from_distance(distance))
        assert dragged.weights == programmatic.weights
        assert dragged.deactivated == programmatic.deactivated

    def test_non_finite_distance_keeps_last_state(self, manager):
        manager.begin_drag("circle")
        manager.update_pointer("circle", 30.0)
        before = manager.weights
        assert not manager.update_pointer("circle", float("nan"))
        assert manager.weights == before

    @pytest.mark.parametrize("x,y", [(None, 10.0), (10.0, None), (float("nan"), 10.0)])
    def test_missing_pointer_position_keeps_last_state(self, manager, x, y):
        manager.begin_drag("circle")
        manager.update_pointer("circle", 30.0)
        before = manager.weights
        assert not manager.update_pointer_xy("circle", x, y)
        assert manager.weights == before

    def test_pointer_xy_records_angle(self, manager, geometry):
        manager.begin_drag("square")
        assert manager.update_pointer_xy("square", geometry.half + 40.0, geometry.half)
        assert manager.angles["square"] == pytest.approx(0.0)
        assert manager.weights["square"] == pytest.approx(geometry.weight_from_distance(40.0))


class TestNotifications:

    def test_change_delivers_rounded_vector(self, manager):
        received = []
        manager.subscribe(received.append)
        manager.set_weight("circle", 0.0)
        assert received == [{"circle": 0.0, "square": 0.67, "triangle": 0.67, "diamond": 0.67}]

    def test_unchanged_vector_is_not_redelivered(self, manager):
        received = []
        manager.subscribe(received.append)
        manager.set_weight("circle", 0.5)
        manager.set_weight("circle", 0.5)
        assert len(received) == 1

    def test_first_update_without_change_is_not_delivered(self, manager):
        received = []
        manager.subscribe(received.append)
        manager.set_weight("circle", 0.625)
        assert received == []

    def test_unsubscribe(self, manager):
        received = []
        unsubscribe = manager.subscribe(received.append)
        unsubscribe()
        manager.set_weight("circle", 1.0)
        assert received == []

    def test_commit_fires_on_end_drag_only(self, manager):
        changes, commits = [], []
        manager.subscribe(changes.append)
        manager.subscribe_commit(commits.append)
        manager.begin_drag("circle")
        manager.update_pointer("circle", 0.0)
        manager.update_pointer("circle", 60.0)
        assert len(changes) == 2
        assert commits == []
        manager.end_drag()
        assert commits == [manager.rounded_weights()]

    def test_explicit_commit(self, manager):
        commits = []
        manager.subscribe_commit(commits.append)
        vector = manager.commit()
        assert commits == [vector]

    def test_reset_restores_equal_weights_and_always_notifies(self, manager):
        received = []
        manager.set_weight("circle", 0.0)
        manager.subscribe(received.append)
        manager.reset()
        manager.reset()
        assert len(received) == 2
        assert received[-1] == {c: round(0.625, 2) for c in CATEGORY_ORDER}
        assert manager.deactivated == frozenset()

    def test_reset_ends_drag(self, manager):
        manager.begin_drag("circle", session_id=4)
        manager.reset()
        assert manager.dragging is None
        assert manager.begin_drag("square", session_id=5)


class TestMarkerPositions:

    def test_deactivated_marker_sits_on_outer_ring(self, manager, geometry):
        manager.set_weight("circle", 0.0)
        manager.scheduler.flush()
        x, y = manager.marker_positions()["circle"]
        assert geometry.radial_distance(x, y) == pytest.approx(geometry.outer_radius)

    def test_full_weight_marker_sits_on_inner_ring(self, manager, geometry):
        manager.set_weight("square", 1.0)
        manager.scheduler.flush()
        x, y = manager.marker_positions()["square"]
        assert geometry.radial_distance(x, y) == pytest.approx(geometry.inner_radius)
