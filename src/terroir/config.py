#!/usr/bin/env python3
"""terroir.config

Shared configuration utilities for terroir CLI subsystems.

This module provides:
- strict YAML loading (sources.yaml, suitability.yaml)
- the analysis configuration (region, period, every suitability threshold)
  as frozen dataclasses, validated on load
- bbox helpers used by the registry and ingest CLIs

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- Thresholds are never embedded in pipeline code; they come from here.
- All functions are pure (no side effects on import).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from terroir.errors import ConfigurationError


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises ConfigurationError on missing file or invalid format (non-mapping).
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML at {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected YAML mapping at {path}")
    return data


def source_block(sources_yaml: Dict[str, Any], source_id: str) -> Dict[str, Any]:
    """Return the `sources: -> <source_id>` block or fail with the known IDs."""
    sources = sources_yaml.get("sources")
    if not isinstance(sources, dict):
        raise ConfigurationError("sources.yaml must contain top-level 'sources:' mapping")
    cfg = sources.get(source_id)
    if not isinstance(cfg, dict):
        raise ConfigurationError(
            f"Unknown dataset id '{source_id}'. Known: {sorted(sources.keys())}"
        )
    return cfg


# -----------------------------------------------------------------------------
# Bounding box utilities
# -----------------------------------------------------------------------------

BBox = Tuple[float, float, float, float]


def coerce_bbox(x: Any) -> Optional[BBox]:
    """Try to coerce [xmin, ymin, xmax, ymax] into a bbox tuple.

    Returns None if input is invalid or missing.
    """
    if x is None:
        return None
    if isinstance(x, (list, tuple)) and len(x) == 4:
        try:
            xmin, ymin, xmax, ymax = map(float, x)
        except (TypeError, ValueError):
            return None
        return (xmin, ymin, xmax, ymax)
    return None


def format_bbox(b: BBox, precision: int = 5) -> str:
    """Format a bbox tuple as a readable string."""
    return f"[{b[0]:.{precision}f}, {b[1]:.{precision}f}, {b[2]:.{precision}f}, {b[3]:.{precision}f}]"


# -----------------------------------------------------------------------------
# Threshold + analysis configuration
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Bounds:
    """Suitability bounds for one indicator.

    lower/upper may be None for one-sided tests. `inclusive` applies to both
    ends; the NDVI/NDWI/NDMI defaults use strict tests.
    """

    lower: Optional[float] = None
    upper: Optional[float] = None
    inclusive: bool = True

    def __post_init__(self) -> None:
        if self.lower is None and self.upper is None:
            raise ConfigurationError("Bounds need at least one of min/max")
        if self.lower is not None and self.upper is not None and self.lower > self.upper:
            raise ConfigurationError(f"Invalid bounds: min {self.lower} > max {self.upper}")

    @classmethod
    def from_yaml(cls, x: Any, key: str) -> "Bounds":
        if isinstance(x, (list, tuple)) and len(x) == 2:
            return cls(lower=_opt_float(x[0], key), upper=_opt_float(x[1], key))
        if isinstance(x, dict):
            unknown = set(x) - {"min", "max", "inclusive"}
            if unknown:
                raise ConfigurationError(f"{key}: unknown bounds keys {sorted(unknown)}")
            return cls(
                lower=_opt_float(x.get("min"), key),
                upper=_opt_float(x.get("max"), key),
                inclusive=bool(x.get("inclusive", True)),
            )
        raise ConfigurationError(f"{key}: expected [min, max] or a mapping with min/max")


def _opt_float(x: Any, key: str) -> Optional[float]:
    if x is None:
        return None
    try:
        return float(x)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{key}: expected a number, got {x!r}") from e


@dataclass(frozen=True)
class AnalysisConfig:
    """Everything a pipeline needs besides data: region, period, thresholds.

    Defaults reproduce the 2024 United Kingdom vineyard analysis.
    """

    region_name: str = "United Kingdom"
    region_field: str = "country_na"
    dissolve_region: bool = False
    year: int = 2024

    growing_months: Tuple[int, int] = (4, 10)
    gst: Bounds = Bounds(14.1, 15.5)
    gdd: Bounds = Bounds(974.0, 1223.0)
    gdd_base_temp: float = 10.0
    gdd_days_per_month: float = 30.0
    gsp: Bounds = Bounds(273.0, 449.0)

    flavor_window: Tuple[str, str] = ("2024-07-20", "2024-09-20")
    flavor_temp: Bounds = Bounds(16.0, 22.0)
    flavor_hours: Bounds = Bounds(lower=800.0)

    soil_ph: Bounds = Bounds(6.8, 7.2)

    max_cloud_cover: float = 60.0
    ndvi: Bounds = Bounds(lower=0.2, inclusive=False)
    ndwi: Bounds = Bounds(upper=0.3, inclusive=False)
    ndmi: Bounds = Bounds(lower=0.2, inclusive=False)

    slope: Bounds = Bounds(0.0, 10.0)
    elevation: Bounds = Bounds(50.0, 220.0)
    radiation: Bounds = Bounds(lower=2700.0)

    landcover_codes: Tuple[int, ...] = (1, 2, 3, 4, 5, 6, 7, 10, 12)
    landcover_nodata_unsuitable: bool = True

    composite_method: str = "and"
    composite_weights: Dict[str, float] = field(default_factory=dict)
    composite_min_score: Optional[float] = None
    composite_reference: Optional[str] = None

    # per-layer overrides of the rendering defaults, e.g. {"GST": {"min": 8}}
    render: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def period(self) -> Tuple[str, str]:
        """Calendar year as [start, end) dates."""
        return (f"{self.year}-01-01", f"{self.year + 1}-01-01")

    def __post_init__(self) -> None:
        lo, hi = self.growing_months
        if not (1 <= lo <= 12 and 1 <= hi <= 12):
            raise ConfigurationError(f"growing_months must be in 1..12, got {self.growing_months}")
        if self.gdd_days_per_month <= 0:
            raise ConfigurationError("gdd.days_per_month must be positive")
        if self.flavor_window[0] >= self.flavor_window[1]:
            raise ConfigurationError(f"flavor_hours.window start must precede end: {self.flavor_window}")
        if self.composite_method not in ("and", "weighted"):
            raise ConfigurationError(f"composite.method must be 'and' or 'weighted', got {self.composite_method!r}")


_BOUNDS_KEYS = {
    "gst", "gdd", "gsp", "flavor_temp", "flavor_hours", "soil_ph",
    "ndvi", "ndwi", "ndmi", "slope", "elevation", "radiation",
}


def analysis_config_from_dict(data: Dict[str, Any]) -> AnalysisConfig:
    """Build an AnalysisConfig from a parsed suitability.yaml mapping.

    Expected structure (every key optional):
        region: {name: "United Kingdom", field: country_na, dissolve: false}
        year: 2024
        growing_months: [4, 10]
        thresholds:
          gst: [14.1, 15.5]
          ndvi: {min: 0.2, inclusive: false}
          ...
        gdd: {base_temp: 10, days_per_month: 30}
        flavor_hours: {window: ["2024-07-20", "2024-09-20"]}
        landsat: {max_cloud_cover: 60}
        landcover: {codes: [1, 2, ...], nodata_unsuitable: true}
        composite: {method: weighted, weights: {GST: 2.0}, min_score: 0.7, reference: GST}
        render: {GST: {min: 10, max: 20, palette: [blue, red]}}
    """
    kwargs: Dict[str, Any] = {}

    region = data.get("region") or {}
    if not isinstance(region, dict):
        raise ConfigurationError("region must be a mapping")
    if "name" in region:
        kwargs["region_name"] = str(region["name"])
    if "field" in region:
        kwargs["region_field"] = str(region["field"])
    if "dissolve" in region:
        kwargs["dissolve_region"] = bool(region["dissolve"])

    if "year" in data:
        kwargs["year"] = int(data["year"])
    if "growing_months" in data:
        months = data["growing_months"]
        if not (isinstance(months, (list, tuple)) and len(months) == 2):
            raise ConfigurationError("growing_months must be [first_month, last_month]")
        kwargs["growing_months"] = (int(months[0]), int(months[1]))

    thresholds = data.get("thresholds") or {}
    if not isinstance(thresholds, dict):
        raise ConfigurationError("thresholds must be a mapping")
    for key, value in thresholds.items():
        if key not in _BOUNDS_KEYS:
            raise ConfigurationError(f"Unknown threshold '{key}'. Known: {sorted(_BOUNDS_KEYS)}")
        kwargs[key] = Bounds.from_yaml(value, key)

    gdd = data.get("gdd") or {}
    if "base_temp" in gdd:
        kwargs["gdd_base_temp"] = float(gdd["base_temp"])
    if "days_per_month" in gdd:
        kwargs["gdd_days_per_month"] = float(gdd["days_per_month"])

    flavor = data.get("flavor_hours") or {}
    if "window" in flavor:
        w = flavor["window"]
        if not (isinstance(w, (list, tuple)) and len(w) == 2):
            raise ConfigurationError("flavor_hours.window must be [start, end]")
        kwargs["flavor_window"] = (str(w[0]), str(w[1]))

    landsat = data.get("landsat") or {}
    if "max_cloud_cover" in landsat:
        kwargs["max_cloud_cover"] = float(landsat["max_cloud_cover"])

    landcover = data.get("landcover") or {}
    if "codes" in landcover:
        kwargs["landcover_codes"] = tuple(int(c) for c in landcover["codes"])
    if "nodata_unsuitable" in landcover:
        kwargs["landcover_nodata_unsuitable"] = bool(landcover["nodata_unsuitable"])

    composite = data.get("composite") or {}
    if "method" in composite:
        kwargs["composite_method"] = str(composite["method"])
    if "weights" in composite:
        kwargs["composite_weights"] = {str(k): float(v) for k, v in dict(composite["weights"]).items()}
    if "min_score" in composite:
        kwargs["composite_min_score"] = _opt_float(composite["min_score"], "composite.min_score")
    if "reference" in composite:
        kwargs["composite_reference"] = str(composite["reference"])

    render = data.get("render") or {}
    if not isinstance(render, dict) or not all(isinstance(v, dict) for v in render.values()):
        raise ConfigurationError("render must map layer names to {min, max, palette} mappings")
    kwargs["render"] = {str(k): dict(v) for k, v in render.items()}

    return AnalysisConfig(**kwargs)


def load_analysis_config(path: Path) -> AnalysisConfig:
    """Load suitability.yaml into a validated AnalysisConfig."""
    return analysis_config_from_dict(load_yaml(path))


# -----------------------------------------------------------------------------
# Default paths
# -----------------------------------------------------------------------------
# Centralized so all CLIs use the same defaults.

DEFAULT_SOURCES_YAML = Path("config/sources.yaml")
DEFAULT_ANALYSIS_YAML = Path("config/suitability.yaml")
DEFAULT_OUT_DIR = Path("data/outputs/suitability")
