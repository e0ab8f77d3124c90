"""
Score aggregation for weighted survey answers.

Each question offers up to four options, each bound to one allocation
category and carrying an intrinsic base weight in [0, 1]. The respondent's
category weights act as importances in an importance-weighted mean, giving
one composite per question; composites average into one entry-level score.
"""

import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np

from allocation_manager import CATEGORY_ORDER

COMPOSITE_EPS = 1e-9
DEFAULT_AVERAGE = 0.5


# ============================================================================
# QUESTION MODEL
# ============================================================================

@dataclass(frozen=True)
class Option:
    """Answer option with its intrinsic base weight."""
    label: str
    weight: float
    key: str = ""


@dataclass(frozen=True)
class Question:
    id: str
    options: Tuple[Option, ...]
    prompt: str = ""

    @classmethod
    def from_dict(cls, raw: Mapping) -> "Question":
        if "id" not in raw:
            raise ValueError("Question is missing 'id'.")
        raw_options = raw.get("options", [])
        if not isinstance(raw_options, (list, tuple)):
            raise ValueError(f"Question {raw['id']!r}: 'options' must be a list.")
        if len(raw_options) > len(CATEGORY_ORDER):
            raise ValueError(
                f"Question {raw['id']!r} has {len(raw_options)} options; "
                f"at most {len(CATEGORY_ORDER)} are supported."
            )
        options = tuple(
            Option(
                label=str(o.get("label", "")),
                weight=float(o.get("weight") or 0.0),
                key=str(o.get("key", "")),
            )
            for o in raw_options
        )
        return cls(id=str(raw["id"]), options=options, prompt=str(raw.get("prompt", "")))


def category_for_option(index: int) -> str:
    """Category that drives the option at ``index``."""
    return CATEGORY_ORDER[index % len(CATEGORY_ORDER)]


# ============================================================================
# COMPOSITES
# ============================================================================

def _importance(weight_vector: Mapping[str, float], category: str) -> float:
    value = weight_vector.get(category, 0.0)
    if value is None or not math.isfinite(value):
        return 0.0
    return max(0.0, float(value))


def option_scores(question: Question, weight_vector: Mapping[str, float]) -> List[Dict]:
    """
    Per-option breakdown: base weight, importance and their product.
    Rows stay present even when the importance is 0.
    """
    rows = []
    for idx, option in enumerate(question.options):
        category = category_for_option(idx)
        importance = _importance(weight_vector, category)
        base = float(np.clip(option.weight, 0.0, 1.0))
        rows.append({
            "label": option.label,
            "category": category,
            "base": base,
            "importance": importance,
            "score": base * importance,
        })
    return rows


def composite(question: Question, weight_vector: Mapping[str, float]) -> Optional[float]:
    """
    Importance-weighted mean of a question's option weights.

    Formula: sum(base_i * importance_i) / sum(importance_i)

    Returns None (no answer) when the importances sum to less than
    COMPOSITE_EPS, e.g. when every bound category has been deactivated.
    """
    rows = option_scores(question, weight_vector)
    denom = sum(row["importance"] for row in rows)
    if denom < COMPOSITE_EPS:
        return None
    return sum(row["score"] for row in rows) / denom


def _defined(composites) -> List[float]:
    values = composites.values() if isinstance(composites, Mapping) else composites
    return [
        float(v) for v in values
        if v is not None and isinstance(v, (int, float)) and math.isfinite(v)
    ]


def entry_average(composites: Union[Mapping[str, Optional[float]], Iterable[Optional[float]]]) -> Optional[float]:
    """Mean of the defined composites; None when no question has one."""
    values = _defined(composites)
    if not values:
        return None
    return float(np.mean(values))


def live_average(composites, decimals: int = 2) -> Optional[float]:
    """Entry average rounded for display and commit snapshots."""
    avg = entry_average(composites)
    if avg is None:
        return None
    return round(avg, decimals)


def display_average(composites, default: float = DEFAULT_AVERAGE, decimals: int = 2) -> float:
    avg = live_average(composites, decimals)
    return default if avg is None else avg


def quantize_average(avg, bins: int = 24) -> float:
    """Snap an average onto ``bins`` evenly spaced levels in [0, 1]."""
    if avg is None or not math.isfinite(avg):
        avg = DEFAULT_AVERAGE
    t = float(np.clip(avg, 0.0, 1.0))
    step = 1.0 / (bins - 1)
    return round(t / step) * step


def avg_weight_of(record: Mapping, default: float = DEFAULT_AVERAGE) -> float:
    """
    Scalar score of a stored response record.
    Prefers a finite ``avgWeight``, else the mean of ``weights``, else ``default``.
    """
    avg = record.get("avgWeight")
    if isinstance(avg, (int, float)) and math.isfinite(avg):
        return float(avg)
    weights = record.get("weights") or {}
    values = [float(v) for v in weights.values() if isinstance(v, (int, float))]
    if values:
        return float(np.mean(values))
    return default
