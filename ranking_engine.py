# -*- coding: utf-8 -*-
"""
Ranking Engine - comparative feedback for respondent scores.

All functions are pure and take the pool explicitly. A ``PoolSnapshot`` is
an immutable set of respondent entries with a sorted value index built once;
the percentile queries binary-search it. Tie handling works on the
*display key*, the integer percent (0..100) an end user actually sees, so
two entries that show the same number are always treated as tied even if
their underlying floats differ.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.stats import rankdata

from score_aggregator import avg_weight_of
from survey_config import TIE_POLICIES, RankingSettings

logger = logging.getLogger(__name__)

SOLO_PERCENTILE = 100


# =============================================================================
# POOL SNAPSHOT
# =============================================================================

@dataclass(frozen=True)
class Entry:
    id: str
    value: Optional[float] = None

    @property
    def answered(self) -> bool:
        return self.value is not None and math.isfinite(self.value)


class PoolSnapshot:
    """
    Immutable pool of entries at a point in time.

    Entries whose value is undefined (no aggregated answer) are kept in
    ``entries`` but excluded from the value index and every comparison.
    """

    def __init__(self, entries: Iterable[Entry] = ()):
        self._entries: Tuple[Entry, ...] = tuple(entries)
        answered = []
        seen = set()
        for e in self._entries:
            if not e.answered:
                continue
            # First entry per id wins.
            if e.id in seen:
                logger.warning("Duplicate pool entry id %r; keeping the first value.", e.id)
                continue
            seen.add(e.id)
            answered.append(e)
        self._answered: Tuple[Entry, ...] = tuple(answered)
        self._values_by_id: Dict[str, float] = {e.id: float(e.value) for e in answered}
        sorted_values = np.sort(np.array([float(e.value) for e in answered], dtype=float))
        sorted_values.setflags(write=False)
        self._sorted_values = sorted_values
        dropped = len(self._entries) - len(answered)
        logger.debug("Pool snapshot: %d entries, %d unanswered or duplicate skipped.", len(answered), dropped)

    @classmethod
    def from_records(
        cls,
        records: Iterable[Mapping],
        accessor: Callable[[Mapping], Optional[float]] = avg_weight_of,
        id_key: str = "_id",
    ) -> "PoolSnapshot":
        """Build a snapshot from stored response records (``_id``, ``avgWeight``, ``weights``)."""
        entries = []
        for idx, record in enumerate(records):
            if not isinstance(record, Mapping):
                continue
            entry_id = record.get(id_key)
            entries.append(Entry(str(entry_id) if entry_id is not None else f"entry_{idx}", accessor(record)))
        return cls(entries)

    @classmethod
    def from_values(cls, values: Mapping[str, Optional[float]]) -> "PoolSnapshot":
        return cls(Entry(entry_id, value) for entry_id, value in values.items())

    @property
    def entries(self) -> Tuple[Entry, ...]:
        return self._entries

    @property
    def answered(self) -> Tuple[Entry, ...]:
        return self._answered

    @property
    def sorted_values(self) -> np.ndarray:
        return self._sorted_values

    def __len__(self) -> int:
        return len(self._answered)

    def __contains__(self, entry_id) -> bool:
        return entry_id in self._values_by_id

    def value_of(self, entry_id) -> Optional[float]:
        return self._values_by_id.get(entry_id)


# =============================================================================
# PERCENTILES
# =============================================================================

def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def _resolve_tie_policy(tie: Optional[str]) -> str:
    if tie is None:
        return RankingSettings().tie_policy
    if tie not in TIE_POLICIES:
        raise ValueError(f"Unknown tie policy {tie!r}. Use one of: {', '.join(TIE_POLICIES)}.")
    return tie


def _is_below(other: float, value: float, tie: str) -> bool:
    return other < value if tie == "strict" else other <= value


def count_below(value, pool: PoolSnapshot, exclude_id=None, tie: Optional[str] = None) -> int:
    """
    Number of pool values below ``value``: strictly below for tie policy
    "strict", at or below for "lte". ``exclude_id``'s own value is not counted.
    """
    tie = _resolve_tie_policy(tie)
    if len(pool) == 0 or value is None or not math.isfinite(value):
        return 0
    side = "left" if tie == "strict" else "right"
    count = int(np.searchsorted(pool.sorted_values, value, side=side))
    if exclude_id is not None and exclude_id in pool:
        if _is_below(pool.value_of(exclude_id), value, tie):
            count -= 1
    return max(0, count)


def effective_pool_size(pool: PoolSnapshot, exclude_id=None) -> int:
    excluded = 1 if exclude_id is not None and exclude_id in pool else 0
    return max(0, len(pool) - excluded)


def percentile_of(value, pool: PoolSnapshot, exclude_id=None, tie: Optional[str] = None) -> int:
    """
    Percent of the pool below ``value``, rounded to an integer.
    Formula: round(count_below / effective_pool_size * 100)
    Returns 0 for an empty effective pool or an undefined value.
    """
    tie = _resolve_tie_policy(tie)
    if len(pool) == 0 or value is None or not math.isfinite(value):
        return 0
    size = effective_pool_size(pool, exclude_id)
    if size <= 0:
        return 0
    return _round_half_up(count_below(value, pool, exclude_id, tie) / size * 100)


def percentile_for_id(pool: PoolSnapshot, entry_id, tie: Optional[str] = None) -> int:
    """Percentile of a pool member against everyone else; 0 when the id is absent."""
    if entry_id is None or entry_id not in pool:
        return 0
    return percentile_of(pool.value_of(entry_id), pool, exclude_id=entry_id, tie=tie)


def count_below_for_id(pool: PoolSnapshot, entry_id, tie: Optional[str] = None) -> int:
    if entry_id is None or entry_id not in pool:
        return 0
    return count_below(pool.value_of(entry_id), pool, exclude_id=entry_id, tie=tie)


def absolute_of(value, decimals: int = 0) -> float:
    """Score on a 0..100 scale with no pool comparison."""
    if value is None or not math.isfinite(value):
        return 0.0
    raw = float(np.clip(value, 0.0, 1.0)) * 100
    scale = 10 ** decimals
    return math.floor(raw * scale + 0.5) / scale


# =============================================================================
# TIE STATISTICS
# =============================================================================

def display_key(value) -> int:
    """The integer percent shown to users for a 0..1 value, clamped to 0..100."""
    if value is None or not math.isfinite(value):
        return 0
    return max(0, min(100, _round_half_up(value * 100)))


def _key_of(entry: Entry, display_percent_of=None) -> int:
    if display_percent_of is None:
        return display_key(entry.value)
    shown = display_percent_of(entry)
    if shown is None or not math.isfinite(shown):
        return 0
    return max(0, min(100, _round_half_up(shown)))


@dataclass(frozen=True)
class TieStats:
    below: int = 0
    equal: int = 0
    above: int = 0
    ref_key: int = 0

    @property
    def total_others(self) -> int:
        return self.below + self.equal + self.above


def tie_stats_of(
    pool: PoolSnapshot,
    target_id=None,
    target_display=None,
    display_percent_of: Optional[Callable[[Entry], float]] = None,
) -> TieStats:
    """
    Counts of other entries whose display key is below, equal to, or above
    the target's. The target is a pool member (excluded from the counts) or
    an explicit display key for a score that is not in the pool.
    """
    me = None
    if target_id is not None and target_id in pool:
        me = next(e for e in pool.answered if e.id == target_id)

    if target_display is not None and math.isfinite(target_display):
        ref_key = max(0, min(100, _round_half_up(target_display)))
    elif me is not None:
        ref_key = _key_of(me, display_percent_of)
    else:
        return TieStats()

    below = equal = above = 0
    for entry in pool.answered:
        if me is not None and entry.id == me.id:
            continue
        key = _key_of(entry, display_percent_of)
        if key < ref_key:
            below += 1
        elif key > ref_key:
            above += 1
        else:
            equal += 1
    return TieStats(below=below, equal=equal, above=above, ref_key=ref_key)


# =============================================================================
# CLASSIFICATION
# =============================================================================

class Position(Enum):
    SOLO = "solo"
    TOP = "top"
    BOTTOM = "bottom"
    MIDDLE = "middle"
    MIDDLE_ABOVE = "middle-above"
    MIDDLE_BELOW = "middle-below"


class TieContext(Enum):
    NONE = "none"
    TOP = "top"
    BOTTOM = "bottom"
    MIDDLE = "middle"


@dataclass(frozen=True)
class Classification:
    position: Position
    tie_context: TieContext


def classify(stats: TieStats) -> Classification:
    """Deterministic position classification over (below, equal, above)."""
    below, equal, above = stats.below, stats.equal, stats.above
    if stats.total_others == 0:
        return Classification(Position.SOLO, TieContext.NONE)

    if above == 0 and equal == 0:
        return Classification(Position.TOP, TieContext.NONE)
    if below == 0 and equal == 0:
        return Classification(Position.BOTTOM, TieContext.NONE)

    # Ties
    if above == 0 and equal > 0:
        return Classification(Position.TOP, TieContext.TOP)
    if below == 0 and equal > 0:
        return Classification(Position.BOTTOM, TieContext.BOTTOM)
    if equal > 0:
        return Classification(Position.MIDDLE, TieContext.MIDDLE)

    # No tie, strictly interior: which half?
    if below > above:
        return Classification(Position.MIDDLE_ABOVE, TieContext.NONE)
    if above > below:
        return Classification(Position.MIDDLE_BELOW, TieContext.NONE)
    return Classification(Position.MIDDLE, TieContext.NONE)


class Band(Enum):
    SOLO = "solo"
    TOP = "top"
    NEAR_TOP = "near-top"
    MIDDLE = "middle"
    NEAR_BOTTOM = "near-bottom"
    BOTTOM = "bottom"


class TieLabel(Enum):
    NONE = "none"
    NOT_TIED = "not-tied"
    TIED_TOP = "tied-top"
    TIED_BOTTOM = "tied-bottom"
    TIED_MIDDLE = "tied-middle"


@dataclass(frozen=True)
class BandClassification:
    band: Band
    tie: TieLabel
    n: int
    rank_from_low: int
    q: float


def classify_band(stats: TieStats, near_edge_fraction: float = 0.25, near_edge_quantile: float = 0.30) -> BandClassification:
    """
    Finer feedback band. ``n`` counts the target itself; ``rank_from_low``
    is 1 for the lowest score. An entry is near an edge when it sits within
    max(2, ceil(near_edge_fraction * n)) places of it, or its quantile
    ``q`` is within ``near_edge_quantile`` of it.
    """
    below, equal, above = stats.below, stats.equal, stats.above
    n = stats.total_others + 1
    rank_from_low = below + 1
    q = rank_from_low / n

    if stats.total_others == 0:
        return BandClassification(Band.SOLO, TieLabel.NONE, n, rank_from_low, q)

    is_top = above == 0
    is_bottom = below == 0
    edge_count = max(2, math.ceil(near_edge_fraction * n))
    near_bottom = not is_bottom and (rank_from_low <= edge_count or q <= near_edge_quantile)
    near_top = not is_top and ((n - rank_from_low + 1) <= edge_count or q >= 1 - near_edge_quantile)

    if is_top:
        band = Band.TOP
    elif is_bottom:
        band = Band.BOTTOM
    elif near_top:
        band = Band.NEAR_TOP
    elif near_bottom:
        band = Band.NEAR_BOTTOM
    else:
        band = Band.MIDDLE

    if equal > 0:
        tie = TieLabel.TIED_TOP if is_top else TieLabel.TIED_BOTTOM if is_bottom else TieLabel.TIED_MIDDLE
    else:
        tie = TieLabel.NOT_TIED
    return BandClassification(band, tie, n, rank_from_low, q)


# =============================================================================
# TIE BUCKETS & TABLES
# =============================================================================

@dataclass(frozen=True)
class TieBucket:
    display_key: int
    member_ids: Tuple[str, ...]


def build_tie_buckets(pool: PoolSnapshot, display_percent_of=None) -> List[TieBucket]:
    """Group entries by display key, keeping only groups of two or more."""
    groups: Dict[int, List[str]] = {}
    for entry in pool.answered:
        groups.setdefault(_key_of(entry, display_percent_of), []).append(entry.id)
    return [
        TieBucket(key, tuple(members))
        for key, members in sorted(groups.items())
        if len(members) > 1
    ]


RANK_TABLE_COLUMNS = ["id", "value", "display_key", "absolute", "percentile", "rank", "tied"]


def rank_table(pool: PoolSnapshot, tie: Optional[str] = None) -> pd.DataFrame:
    """
    One row per answered entry. ``rank`` is the competition rank on the
    display key (1 = highest; equal keys share the best rank).
    """
    tie = _resolve_tie_policy(tie)
    if len(pool) == 0:
        return pd.DataFrame(columns=RANK_TABLE_COLUMNS)

    keys = np.array([display_key(e.value) for e in pool.answered])
    ranks = rankdata(-keys, method="min").astype(int)
    tied_ids = {member for bucket in build_tie_buckets(pool) for member in bucket.member_ids}
    rows = [
        {
            "id": entry.id,
            "value": float(entry.value),
            "display_key": int(key),
            "absolute": absolute_of(entry.value),
            "percentile": percentile_for_id(pool, entry.id, tie=tie),
            "rank": int(rank),
            "tied": entry.id in tied_ids,
        }
        for entry, key, rank in zip(pool.answered, keys, ranks)
    ]
    return pd.DataFrame(rows, columns=RANK_TABLE_COLUMNS).sort_values(["rank", "id"]).reset_index(drop=True)


def bucket_for_percent(pct) -> str:
    """Coarse percent range used to pick feedback copy."""
    if pct <= 20:
        return "0-20"
    if pct <= 40:
        return "21-40"
    if pct <= 60:
        return "41-60"
    if pct <= 80:
        return "61-80"
    return "81-100"


# =============================================================================
# FEEDBACK REPORT
# =============================================================================

@dataclass(frozen=True)
class RankFeedback:
    value: float
    percentile: int
    absolute: float
    stats: TieStats
    classification: Classification
    band: BandClassification
    pool_size: int


def rank_feedback(pool: PoolSnapshot, value=None, entry_id=None, settings: Optional[RankingSettings] = None) -> Optional[RankFeedback]:
    """
    Everything a renderer needs to tell a respondent where they stand.

    The score is ``value`` when given, else ``entry_id``'s pool value. When
    ``entry_id`` is in the pool it is excluded from the comparison. A solo
    respondent is reported at percentile 100. Returns None when there is no
    defined score to compare.
    """
    s = settings or RankingSettings()
    if value is None and entry_id is not None:
        value = pool.value_of(entry_id)
    if value is None or not math.isfinite(value):
        return None

    exclude_id = entry_id if entry_id is not None and entry_id in pool else None
    if exclude_id is not None:
        stats = tie_stats_of(pool, target_id=exclude_id, target_display=display_key(value))
    else:
        stats = tie_stats_of(pool, target_display=display_key(value))
    classification = classify(stats)

    if classification.position is Position.SOLO:
        percentile = SOLO_PERCENTILE
    else:
        percentile = percentile_of(value, pool, exclude_id=exclude_id, tie=s.tie_policy)

    return RankFeedback(
        value=float(value),
        percentile=percentile,
        absolute=absolute_of(value, s.absolute_decimals),
        stats=stats,
        classification=classification,
        band=classify_band(stats, s.near_edge_fraction, s.near_edge_quantile),
        pool_size=effective_pool_size(pool, exclude_id),
    )
