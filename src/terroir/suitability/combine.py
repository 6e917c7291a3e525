#!/usr/bin/env python3
"""combine.py

Composite suitability from several per-indicator masks.

Two methods:
- "and": three-valued (Kleene) intersection. A pixel is unsuitable as soon as
  one layer says so, even if other layers have no data there; it is no-data
  only when no layer rules it out and at least one layer is missing.
- "weighted": weighted share of layers that pass, sum(w * m) / sum(w).
  Any no-data layer makes the score no-data. With min_score the score is
  thresholded into a mask.
"""

from __future__ import annotations

from typing import Mapping, Optional, Sequence

import numpy as np

from terroir.errors import ConfigurationError
from terroir.raster import RasterField, check_same_grid
from terroir.suitability.evaluate import evaluate_min_only

METHODS = ("and", "weighted")


def indicator_key(mask_name: str) -> str:
    """Strip the mask suffix (GST_suitable -> GST); weights are keyed by indicator name."""
    suffix = "_suitable"
    return mask_name[: -len(suffix)] if mask_name.endswith(suffix) else mask_name


def combine_and(masks: Sequence[RasterField], name: str = "Composite") -> RasterField:
    check_same_grid(*masks)
    any_false = np.zeros(masks[0].shape, dtype=bool)
    any_nodata = np.zeros(masks[0].shape, dtype=bool)
    for m in masks:
        nodata = np.ma.getmaskarray(m.data)
        any_false |= ~nodata & ~np.ma.getdata(m.data).astype(bool)
        any_nodata |= nodata
    data = np.ma.MaskedArray(~any_false, mask=any_nodata & ~any_false)
    return masks[0].derive(name, data, unit="bool")


def combine_weighted(
    masks: Sequence[RasterField],
    weights: Optional[Mapping[str, float]] = None,
    name: str = "CompositeScore",
) -> RasterField:
    """Weighted share of passing layers; weights keyed by indicator name (default 1.0)."""
    check_same_grid(*masks)
    weights = weights or {}
    w = [float(weights.get(indicator_key(m.name), 1.0)) for m in masks]
    if any(x < 0 for x in w) or sum(w) <= 0:
        raise ConfigurationError(f"Composite weights must be >= 0 with a positive sum, got {w}")
    score = np.ma.zeros(masks[0].shape, dtype="float64")
    for m, wi in zip(masks, w):
        score = score + np.ma.asarray(m.data, dtype="float64") * wi
    return masks[0].derive(name, score / sum(w), unit="score")


def combine_masks(
    masks: Sequence[RasterField],
    method: str = "and",
    weights: Optional[Mapping[str, float]] = None,
    min_score: Optional[float] = None,
) -> RasterField:
    """Combine per-indicator masks into one composite layer.

    Returns a boolean mask for "and", and for "weighted" when min_score is
    given; otherwise the continuous weighted score.
    """
    if not masks:
        raise ConfigurationError("combine_masks needs at least one mask")
    if method == "and":
        return combine_and(masks)
    if method == "weighted":
        score = combine_weighted(masks, weights)
        if min_score is None:
            return score
        mask = evaluate_min_only(score, min_score)
        return mask.derive("Composite", mask.data)
    raise ConfigurationError(f"Unknown composite method '{method}'. Known: {list(METHODS)}")

