# -*- coding: utf-8 -*-
"""
Tuning defaults and YAML overrides for the radial survey core.

Every constant the allocation and ranking code depends on is listed in
``ALLOCATION_DEFAULTS`` / ``RANKING_DEFAULTS``. A deployment may override
them with a YAML file:

    allocation:
      deactivate_eps: 0.02
      reactivate_eps: 0.06
    ranking:
      tie_policy: lte

Bad values never raise; they fall back to the defaults with a warning.
"""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "RADIAL_SURVEY_CONFIG"
_CONFIG_PATH = Path(__file__).resolve().parent / "survey_config.yaml"

ALLOCATION_DEFAULTS = {
    "deactivate_eps": 0.02,
    "reactivate_eps": 0.06,
    "base_capacity": 2.5,  # all four categories active
    "capacity_step": 0.5,  # removed per deactivated category
    "min_capacity": 1.0,  # single active category
    "gamma": 1.25,
    "max_partial_weight": 0.9995,
    "smoothing": 0.25,
    "settle_eps": 1e-3,
    "emit_decimals": 2,
}

TIE_POLICIES = ("strict", "lte")

RANKING_DEFAULTS = {
    "tie_policy": "strict",  # strict | lte
    "absolute_decimals": 0,
    "default_average": 0.5,
    "quantize_bins": 24,
    "near_edge_fraction": 0.25,
    "near_edge_quantile": 0.30,
}


@dataclass(frozen=True)
class AllocationSettings:
    deactivate_eps: float = ALLOCATION_DEFAULTS["deactivate_eps"]
    reactivate_eps: float = ALLOCATION_DEFAULTS["reactivate_eps"]
    base_capacity: float = ALLOCATION_DEFAULTS["base_capacity"]
    capacity_step: float = ALLOCATION_DEFAULTS["capacity_step"]
    min_capacity: float = ALLOCATION_DEFAULTS["min_capacity"]
    gamma: float = ALLOCATION_DEFAULTS["gamma"]
    max_partial_weight: float = ALLOCATION_DEFAULTS["max_partial_weight"]
    smoothing: float = ALLOCATION_DEFAULTS["smoothing"]
    settle_eps: float = ALLOCATION_DEFAULTS["settle_eps"]
    emit_decimals: int = ALLOCATION_DEFAULTS["emit_decimals"]


@dataclass(frozen=True)
class RankingSettings:
    tie_policy: str = RANKING_DEFAULTS["tie_policy"]
    absolute_decimals: int = RANKING_DEFAULTS["absolute_decimals"]
    default_average: float = RANKING_DEFAULTS["default_average"]
    quantize_bins: int = RANKING_DEFAULTS["quantize_bins"]
    near_edge_fraction: float = RANKING_DEFAULTS["near_edge_fraction"]
    near_edge_quantile: float = RANKING_DEFAULTS["near_edge_quantile"]


def _resolve_config_path(path=None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.getenv(CONFIG_ENV_VAR, "").strip()
    if env_path:
        return Path(env_path)
    return _CONFIG_PATH


def load_config(path=None) -> Dict[str, Any]:
    """Load the YAML config, returning an empty mapping on any error."""
    config_path = _resolve_config_path(path)
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        logger.warning("Configuration file %s not found; using defaults.", config_path)
        return {}
    except (OSError, yaml.YAMLError) as exc:
        logger.error("Failed to load configuration from %s: %s", config_path, exc)
        return {}

    if not isinstance(data, dict):
        logger.warning("Config file %s is not a mapping; using defaults.", config_path)
        return {}
    return data


def _coerce_float(value: Any, fallback: float, key: str, minimum: Optional[float] = None) -> float:
    if value is None:
        return fallback
    try:
        candidate = float(value)
    except (TypeError, ValueError):
        logger.warning("Invalid value %r for %s; using %s.", value, key, fallback)
        return fallback
    if not math.isfinite(candidate) or (minimum is not None and candidate < minimum):
        logger.warning("Out-of-range value %r for %s; using %s.", value, key, fallback)
        return fallback
    return candidate


def _coerce_int(value: Any, fallback: int, key: str, minimum: int = 0) -> int:
    if value is None:
        return fallback
    try:
        candidate = int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid value %r for %s; using %s.", value, key, fallback)
        return fallback
    if candidate < minimum:
        logger.warning("Out-of-range value %r for %s; using %s.", value, key, fallback)
        return fallback
    return candidate


def _section(config: Optional[Dict[str, Any]], name: str) -> Dict[str, Any]:
    if config is None:
        config = load_config()
    section = config.get(name) or {}
    if not isinstance(section, dict):
        logger.warning("Config section %r is not a mapping; using defaults.", name)
        return {}
    return section


def get_allocation_settings(config: Optional[Dict[str, Any]] = None) -> AllocationSettings:
    """Return allocation settings sourced from config with safe defaults."""
    section = _section(config, "allocation")
    values: Dict[str, Any] = {}
    for field in fields(AllocationSettings):
        default = ALLOCATION_DEFAULTS[field.name]
        raw = section.get(field.name)
        if field.name == "emit_decimals":
            values[field.name] = _coerce_int(raw, default, field.name)
        else:
            values[field.name] = _coerce_float(raw, default, field.name, minimum=0.0)

    # The hysteresis band and the capacity curve must stay well formed.
    if not (
        values["reactivate_eps"] > values["deactivate_eps"]
        and values["min_capacity"] <= values["base_capacity"]
        and 0.0 < values["smoothing"] <= 1.0
        and values["max_partial_weight"] <= 1.0
    ):
        logger.warning("Inconsistent allocation config %r; using defaults.", section)
        return AllocationSettings()
    return AllocationSettings(**values)


def get_ranking_settings(config: Optional[Dict[str, Any]] = None) -> RankingSettings:
    """Return ranking settings sourced from config with safe defaults."""
    section = _section(config, "ranking")

    tie_policy = str(section.get("tie_policy", RANKING_DEFAULTS["tie_policy"])).strip().lower()
    if tie_policy not in TIE_POLICIES:
        logger.warning(
            "Unknown tie_policy %r; using %s.", tie_policy, RANKING_DEFAULTS["tie_policy"]
        )
        tie_policy = RANKING_DEFAULTS["tie_policy"]

    default_average = _coerce_float(
        section.get("default_average"), RANKING_DEFAULTS["default_average"], "default_average", minimum=0.0
    )
    if default_average > 1.0:
        logger.warning("default_average %r exceeds 1; using default.", default_average)
        default_average = RANKING_DEFAULTS["default_average"]

    return RankingSettings(
        tie_policy=tie_policy,
        absolute_decimals=_coerce_int(
            section.get("absolute_decimals"), RANKING_DEFAULTS["absolute_decimals"], "absolute_decimals"
        ),
        default_average=default_average,
        quantize_bins=_coerce_int(
            section.get("quantize_bins"), RANKING_DEFAULTS["quantize_bins"], "quantize_bins", minimum=2
        ),
        near_edge_fraction=_coerce_float(
            section.get("near_edge_fraction"),
            RANKING_DEFAULTS["near_edge_fraction"],
            "near_edge_fraction",
            minimum=0.0,
        ),
        near_edge_quantile=_coerce_float(
            section.get("near_edge_quantile"),
            RANKING_DEFAULTS["near_edge_quantile"],
            "near_edge_quantile",
            minimum=0.0,
        ),
    )
