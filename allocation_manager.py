# -*- coding: utf-8 -*-
"""
Allocation Manager - radial weight allocation under a capacity budget.

A respondent spreads importance over four categories by dragging markers
toward or away from the centre of a radial control. The weights always obey
a conservation law: the active categories share exactly ``capacity(n)``,
where ``n`` is the number of active categories. Dragging a marker to the rim
deactivates its category (with hysteresis), and the freed or claimed weight
is spread evenly over the other active categories ("waterfill").

The state transitions are pure functions (``apply_weight``) over an immutable
``AllocationState``; ``AllocationManager`` wraps them with drag sessions,
change/commit notifications and the visual smoothing loop.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

import numpy as np

from frame_scheduler import FrameScheduler, ManualFrameScheduler, VisualSmoother
from survey_config import AllocationSettings

logger = logging.getLogger(__name__)

# =============================================================================
# CATEGORIES
# =============================================================================

CATEGORY_ORDER = ("circle", "square", "triangle", "diamond")

# 45 degree rotated cross
CATEGORY_ANGLES = {
    "circle": -math.pi / 4,
    "square": 3 * math.pi / 4,
    "triangle": math.pi / 4,
    "diamond": -3 * math.pi / 4,
}

DEFAULT_VIEWPORT_SIZE = 320
WATERFILL_EPS = 1e-9
OVERFLOW_EPS = 1e-6
INNER_RADIUS_EPS = 1e-6

_DEFAULT_SETTINGS = AllocationSettings()


def validate_category(category):
    if category not in CATEGORY_ORDER:
        raise ValueError(
            f"Unknown category {category!r}. Use one of: {', '.join(CATEGORY_ORDER)}."
        )
    return category


def capacity(active_count, settings=None):
    """
    Total weight budget shared by ``active_count`` active categories.
    Formula: max(MIN_CAP, BASE_CAP - STEP * (4 - active_count))
    """
    s = settings or _DEFAULT_SETTINGS
    deactivated_count = len(CATEGORY_ORDER) - active_count
    return max(s.min_capacity, s.base_capacity - s.capacity_step * deactivated_count)


# =============================================================================
# RADIAL GEOMETRY
# =============================================================================

def weight_from_distance(distance, inner_radius, span, gamma=1.25, max_partial_weight=0.9995):
    """
    Map a radial distance to a weight in [0, 1].

    Inside the inner dead zone the weight is 1; at or beyond
    ``inner_radius + span`` it is 0. In between it falls off as
    ``1 - u**gamma`` so it stays high near the centre and drops quickly
    near the rim. Partial weights never reach 1.
    """
    if distance <= inner_radius + INNER_RADIUS_EPS:
        return 1.0
    u = float(np.clip((distance - inner_radius) / span, 0.0, 1.0))
    return min(1.0 - u ** gamma, max_partial_weight)


@dataclass(frozen=True)
class RadialGeometry:
    """Radii of the radial control for a square viewport."""
    half: float
    inset: float
    radius: float
    outer_radius: float
    dead_band: float
    active_radius: float
    inner_radius: float
    span: float

    @classmethod
    def for_size(cls, size: float) -> "RadialGeometry":
        half = size / 2
        inset = 12.0
        radius = half - inset
        outer_radius = radius * 0.92
        dead_band = max(8.0, outer_radius * 0.22)
        active_radius = outer_radius - dead_band
        # Keep an inner pad so markers don't bunch at the centre.
        inner_radius = max(12.0, active_radius * 0.22)
        span = max(1.0, active_radius - inner_radius)
        return cls(half, inset, radius, outer_radius, dead_band, active_radius, inner_radius, span)

    def radial_distance(self, x: float, y: float) -> float:
        return math.hypot(x - self.half, y - self.half)

    def angle_of(self, x: float, y: float) -> float:
        return math.atan2(y - self.half, x - self.half)

    def weight_from_distance(self, distance: float, settings: Optional[AllocationSettings] = None) -> float:
        s = settings or _DEFAULT_SETTINGS
        return weight_from_distance(
            distance, self.inner_radius, self.span, s.gamma, s.max_partial_weight
        )

    def layout_radius(self, weight: float, max_radius: Optional[float] = None) -> float:
        """Radius a marker is drawn at for ``weight``."""
        w01 = float(np.clip(weight, 0.0, 1.0))
        r = self.inner_radius + (1.0 - w01) * self.span
        if max_radius is not None:
            r = min(r, max_radius)
        return r

    def point_on_circle(self, theta: float, r: float) -> Tuple[float, float]:
        return (self.half + r * math.cos(theta), self.half + r * math.sin(theta))


# =============================================================================
# CATEGORY STATE MACHINE
# =============================================================================

class CategoryStatus(Enum):
    ACTIVE = "active"
    DEACTIVATED = "deactivated"


def next_status(status, weight, active_count, settings=None):
    """
    Guarded hysteresis transition for one category.

    Returns ``(status, weight)``. ACTIVE -> DEACTIVATED when the weight
    drops to ``deactivate_eps`` unless the category is the last active one,
    whose weight is forced to 1 instead. DEACTIVATED -> ACTIVE when the
    weight reaches ``reactivate_eps``. Between the two thresholds the
    status never changes.
    """
    s = settings or _DEFAULT_SETTINGS
    if weight <= s.deactivate_eps:
        if status is CategoryStatus.ACTIVE and active_count <= 1:
            return CategoryStatus.ACTIVE, 1.0
        return CategoryStatus.DEACTIVATED, 0.0
    if weight >= s.reactivate_eps:
        return CategoryStatus.ACTIVE, weight
    return status, weight


# =============================================================================
# ALLOCATION STATE
# =============================================================================

@dataclass(frozen=True)
class AllocationState:
    weights: Mapping[str, float]
    deactivated: FrozenSet[str] = frozenset()

    @classmethod
    def equal(cls, settings=None) -> "AllocationState":
        share = capacity(len(CATEGORY_ORDER), settings) / len(CATEGORY_ORDER)
        return cls({c: share for c in CATEGORY_ORDER}, frozenset())

    @property
    def active(self) -> Tuple[str, ...]:
        return tuple(c for c in CATEGORY_ORDER if c not in self.deactivated)

    @property
    def active_count(self) -> int:
        return len(self.active)

    def status_of(self, category) -> CategoryStatus:
        if category in self.deactivated:
            return CategoryStatus.DEACTIVATED
        return CategoryStatus.ACTIVE

    def total_active(self) -> float:
        return float(sum(self.weights[c] for c in self.active))

    def as_vector(self, decimals=None) -> Dict[str, float]:
        if decimals is None:
            return {c: float(self.weights[c]) for c in CATEGORY_ORDER}
        return {c: round(float(self.weights[c]), decimals) for c in CATEGORY_ORDER}


# =============================================================================
# TRANSITIONS
# =============================================================================

def waterfill(weights, pool, amount):
    """
    Spread ``amount`` evenly over the categories in ``pool`` (in place).

    Each round splits what is left equally among categories that are not
    yet saturated (1 when adding, 0 when removing), then drops the newly
    saturated ones. Returns the signed amount actually absorbed.
    """
    if abs(amount) < WATERFILL_EPS or not pool:
        return 0.0

    sign = 1.0 if amount > 0 else -1.0
    remaining = abs(amount)
    while remaining > WATERFILL_EPS:
        if sign > 0:
            open_pool = [c for c in pool if weights[c] < 1.0 - WATERFILL_EPS]
        else:
            open_pool = [c for c in pool if weights[c] > WATERFILL_EPS]
        if not open_pool:
            break

        share = remaining / len(open_pool)
        progressed = 0.0
        for c in open_pool:
            room = 1.0 - weights[c] if sign > 0 else weights[c]
            step = min(share, room)
            weights[c] += sign * step
            progressed += step
        if progressed <= WATERFILL_EPS:
            break
        remaining -= progressed

    return sign * (abs(amount) - max(remaining, 0.0))


def _active_total(weights, deactivated):
    return sum(weights[c] for c in CATEGORY_ORDER if c not in deactivated)


def apply_weight(state, category, weight, settings=None):
    """
    Pure transition: set ``category``'s candidate weight and rebalance.

    1. hysteresis guard on the driven category
    2. waterfill the capacity deficit/surplus over the other active ones
    3. single active category pushed below full: reactivate the rest and
       share the 4-way capacity among them
    4. any residual the others could not absorb goes back to the driven
       category, so the active weights always sum to capacity
    5. clamp to [0, 1], deactivated weights to 0

    Non-finite weights leave the state unchanged.
    """
    validate_category(category)
    s = settings or _DEFAULT_SETTINGS
    if weight is None or not math.isfinite(weight):
        logger.debug("Ignoring non-finite weight %r for %s.", weight, category)
        return state

    weights = dict(state.weights)
    deactivated = set(state.deactivated)

    status = state.status_of(category)
    new_status, w = next_status(status, float(np.clip(weight, 0.0, 1.0)), state.active_count, s)
    if new_status is not status:
        logger.debug("Category %s: %s -> %s", category, status.value, new_status.value)
    elif status is CategoryStatus.ACTIVE and w == 1.0 and weight <= s.deactivate_eps:
        logger.debug("Category %s is the last active one; holding it at 1.", category)
    if new_status is CategoryStatus.DEACTIVATED:
        deactivated.add(category)
    else:
        deactivated.discard(category)
    weights[category] = w

    active = [c for c in CATEGORY_ORDER if c not in deactivated]
    need = capacity(len(active), s) - _active_total(weights, deactivated)
    others = [c for c in active if c != category]
    need -= waterfill(weights, others, need)

    if len(active) == 1 and need > OVERFLOW_EPS:
        revived = [c for c in CATEGORY_ORDER if c in deactivated and c != category]
        if revived:
            logger.debug("Single active category below capacity; reactivating %s.", revived)
            for c in revived:
                deactivated.discard(c)
                weights[c] = 0.0
            refill = capacity(len(CATEGORY_ORDER) - len(deactivated), s) - _active_total(weights, deactivated)
            waterfill(weights, revived, refill)
            need = 0.0

    if abs(need) > WATERFILL_EPS and category not in deactivated:
        weights[category] = float(np.clip(weights[category] + need, 0.0, 1.0))

    for c in CATEGORY_ORDER:
        if c in deactivated:
            weights[c] = 0.0
        else:
            weights[c] = float(np.clip(weights[c], 0.0, 1.0))

    return AllocationState(weights, frozenset(deactivated))


# =============================================================================
# MANAGER
# =============================================================================

class AllocationManager:
    """
    Owns one question's allocation state.

    Only one drag session runs at a time; a ``begin_drag`` from a different
    session while one is active is ignored. Subscribers get the rounded
    weight vector whenever it changes; commit subscribers get it when a drag
    ends or ``commit`` is called.
    """

    def __init__(
        self,
        settings: Optional[AllocationSettings] = None,
        geometry: Optional[RadialGeometry] = None,
        scheduler: Optional[FrameScheduler] = None,
        on_frame: Optional[Callable[[Dict[str, float]], None]] = None,
    ):
        self.settings = settings or AllocationSettings()
        self.geometry = geometry or RadialGeometry.for_size(DEFAULT_VIEWPORT_SIZE)
        self.scheduler = scheduler or ManualFrameScheduler()
        self.state = AllocationState.equal(self.settings)
        self.angles = dict(CATEGORY_ANGLES)
        self.smoother = VisualSmoother(CATEGORY_ORDER, self.scheduler, self.settings, on_frame=on_frame)
        self.smoother.snap(self.state.weights)

        self._drag_category: Optional[str] = None
        self._drag_session = None
        self._subscribers: List[Callable[[Dict[str, float]], None]] = []
        self._commit_subscribers: List[Callable[[Dict[str, float]], None]] = []
        self._last_emitted: Optional[Dict[str, float]] = self.rounded_weights()

    # -- read side -----------------------------------------------------------

    @property
    def weights(self) -> Dict[str, float]:
        return self.state.as_vector()

    @property
    def deactivated(self) -> FrozenSet[str]:
        return self.state.deactivated

    @property
    def dragging(self) -> Optional[str]:
        return self._drag_category

    @property
    def visual_weights(self) -> Dict[str, float]:
        return dict(self.smoother.visual)

    def rounded_weights(self) -> Dict[str, float]:
        return self.state.as_vector(self.settings.emit_decimals)

    # -- subscriptions -------------------------------------------------------

    def subscribe(self, on_change: Callable[[Dict[str, float]], None]) -> Callable[[], None]:
        self._subscribers.append(on_change)

        def unsubscribe():
            if on_change in self._subscribers:
                self._subscribers.remove(on_change)

        return unsubscribe

    def subscribe_commit(self, on_commit: Callable[[Dict[str, float]], None]) -> Callable[[], None]:
        self._commit_subscribers.append(on_commit)

        def unsubscribe():
            if on_commit in self._commit_subscribers:
                self._commit_subscribers.remove(on_commit)

        return unsubscribe

    def _emit(self, force=False):
        vector = self.rounded_weights()
        if not force and vector == self._last_emitted:
            return False
        self._last_emitted = vector
        for callback in list(self._subscribers):
            callback(dict(vector))
        return True

    # -- drag sessions -------------------------------------------------------

    def begin_drag(self, category, session_id=None) -> bool:
        validate_category(category)
        if self._drag_category is not None and session_id != self._drag_session:
            logger.debug(
                "Ignoring drag of %s from session %r; session %r is active.",
                category, session_id, self._drag_session,
            )
            return False
        self._drag_category = category
        self._drag_session = session_id
        return True

    def update_pointer(self, category, radial_distance, session_id=None) -> bool:
        """Drive the dragged category from a radial pointer distance."""
        validate_category(category)
        if category != self._drag_category or session_id != self._drag_session:
            return False
        if radial_distance is None or not math.isfinite(radial_distance):
            logger.debug("Ignoring non-finite pointer distance %r.", radial_distance)
            return False
        candidate = self.geometry.weight_from_distance(radial_distance, self.settings)
        self._apply(category, candidate, dragging=category)
        return True

    def update_pointer_xy(self, category, x, y, session_id=None) -> bool:
        """Pointer position in viewport coordinates; also records the marker angle."""
        if x is None or y is None or not (math.isfinite(x) and math.isfinite(y)):
            logger.debug("Ignoring non-finite pointer position (%r, %r).", x, y)
            return False
        moved = self.update_pointer(category, self.geometry.radial_distance(x, y), session_id)
        if moved:
            self.angles[category] = self.geometry.angle_of(x, y)
        return moved

    def end_drag(self, session_id=None) -> bool:
        if self._drag_category is None or session_id != self._drag_session:
            return False
        self._drag_category = None
        self._drag_session = None
        self.smoother.retarget(self.state.weights, self.state.deactivated, dragging=None)
        self.commit()
        return True

    def commit(self) -> Dict[str, float]:
        vector = self.rounded_weights()
        for callback in list(self._commit_subscribers):
            callback(dict(vector))
        return vector

    # -- programmatic --------------------------------------------------------

    def set_weight(self, category, weight) -> bool:
        """Same transition as a drag, driven by e.g. a linear slider."""
        validate_category(category)
        if weight is None or not math.isfinite(weight):
            logger.debug("Ignoring non-finite weight %r for %s.", weight, category)
            return False
        self._apply(category, weight, dragging=None)
        return True

    def reset(self) -> None:
        """Back to equal weights, all active. Always notifies subscribers."""
        if self._drag_category is not None:
            logger.debug("Reset during drag of %s; ending the session.", self._drag_category)
        self._drag_category = None
        self._drag_session = None
        self.state = AllocationState.equal(self.settings)
        self.angles = dict(CATEGORY_ANGLES)
        self.smoother.snap(self.state.weights)
        self._emit(force=True)

    def _apply(self, category, weight, dragging=None):
        self.state = apply_weight(self.state, category, weight, self.settings)
        self.smoother.retarget(self.state.weights, self.state.deactivated, dragging=dragging)
        self._emit()

    # -- layout --------------------------------------------------------------

    def marker_positions(self) -> Dict[str, Tuple[float, float]]:
        """Viewport positions of the markers from the visual weights."""
        positions = {}
        for category in CATEGORY_ORDER:
            if category in self.state.deactivated and category != self._drag_category:
                r = self.geometry.outer_radius
            else:
                r = self.geometry.layout_radius(self.smoother.visual[category], self.geometry.outer_radius)
            positions[category] = self.geometry.point_on_circle(self.angles[category], r)
        return positions
