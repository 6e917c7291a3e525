#!/usr/bin/env python3
"""evaluate.py

Threshold a derived field into a suitability mask.

Masks are RasterFields with boolean data and three states per pixel:
True (suitable), False (unsuitable), masked (no data). The input mask is
always carried through unchanged, so a missing measurement is never read as
"unsuitable".
"""

from __future__ import annotations

from typing import Any, Iterable

import numpy as np

from terroir.config import Bounds
from terroir.errors import ConfigurationError
from terroir.raster import RasterField


def _mask_from(field: RasterField, test: np.ndarray, name: str) -> RasterField:
    mask = np.ma.MaskedArray(np.asarray(test, dtype=bool), mask=np.ma.getmaskarray(field.data))
    return field.derive(name, mask, unit="bool")


def evaluate_range(field: RasterField, lower: float, upper: float, *, inclusive: bool = True) -> RasterField:
    """lower <= v <= upper (strict on both ends when inclusive=False)."""
    if lower > upper:
        raise ConfigurationError(f"{field.name}: lower bound {lower} > upper bound {upper}")
    v = np.ma.getdata(field.data)
    with np.errstate(invalid="ignore"):
        if inclusive:
            test = (v >= lower) & (v <= upper)
        else:
            test = (v > lower) & (v < upper)
    return _mask_from(field, test, f"{field.name}_suitable")


def evaluate_min_only(field: RasterField, threshold: float, *, inclusive: bool = True) -> RasterField:
    """v >= threshold (v > threshold when inclusive=False)."""
    v = np.ma.getdata(field.data)
    with np.errstate(invalid="ignore"):
        test = v >= threshold if inclusive else v > threshold
    return _mask_from(field, test, f"{field.name}_suitable")


def evaluate_max_only(field: RasterField, threshold: float, *, inclusive: bool = True) -> RasterField:
    """v <= threshold (v < threshold when inclusive=False)."""
    v = np.ma.getdata(field.data)
    with np.errstate(invalid="ignore"):
        test = v <= threshold if inclusive else v < threshold
    return _mask_from(field, test, f"{field.name}_suitable")


def evaluate_set(field: RasterField, allowed_codes: Iterable[Any]) -> RasterField:
    """v in allowed_codes; every other code is False, no-data stays no-data."""
    codes = np.asarray(list(allowed_codes))
    test = np.isin(np.ma.getdata(field.data), codes)
    return _mask_from(field, test, f"{field.name}_suitable")


def evaluate_bounds(field: RasterField, bounds: Bounds) -> RasterField:
    """Dispatch a configured Bounds to the range / one-sided evaluators."""
    if bounds.lower is not None and bounds.upper is not None:
        return evaluate_range(field, bounds.lower, bounds.upper, inclusive=bounds.inclusive)
    if bounds.lower is not None:
        return evaluate_min_only(field, bounds.lower, inclusive=bounds.inclusive)
    return evaluate_max_only(field, bounds.upper, inclusive=bounds.inclusive)


def fill_nodata(mask: RasterField, value: bool) -> RasterField:
    """Resolve no-data pixels of a mask to a definite value."""
    return mask.derive(mask.name, np.ma.MaskedArray(mask.data.filled(value), mask=False))
