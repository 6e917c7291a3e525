#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from terroir.config import Bounds
from terroir.errors import ConfigurationError
from terroir.raster import RasterField
from terroir.suitability import evaluate as ev


def _field(values, mask=False, name="GST"):
    return RasterField(name=name, data=np.ma.MaskedArray(np.asarray(values, dtype="float64"), mask=mask))


def test_range_is_inclusive_on_both_ends():
    f = _field([[14.0, 14.1, 15.5, 15.6]])
    m = ev.evaluate_range(f, 14.1, 15.5)
    assert m.name == "GST_suitable"
    assert m.unit == "bool"
    assert m.data.tolist() == [[False, True, True, False]]


def test_range_strict_when_not_inclusive():
    f = _field([[14.1, 15.0, 15.5]])
    m = ev.evaluate_range(f, 14.1, 15.5, inclusive=False)
    assert m.data.tolist() == [[False, True, False]]


def test_nodata_stays_nodata():
    f = _field([[15.0, 15.0, np.nan]], mask=[[False, True, False]])
    m = ev.evaluate_range(f, 14.1, 15.5)
    assert np.ma.getmaskarray(m.data).tolist() == [[False, True, True]]
    assert bool(m.data[0, 0]) is True


def test_range_rejects_inverted_bounds():
    with pytest.raises(ConfigurationError):
        ev.evaluate_range(_field([[1.0]]), 5.0, 1.0)


def test_min_only_and_max_only():
    f = _field([[0.2, 0.21, 0.3, 0.35]], name="NDVI")
    assert ev.evaluate_min_only(f, 0.2).data.tolist() == [[True, True, True, True]]
    assert ev.evaluate_min_only(f, 0.2, inclusive=False).data.tolist() == [[False, True, True, True]]
    assert ev.evaluate_max_only(f, 0.3).data.tolist() == [[True, True, True, False]]
    assert ev.evaluate_max_only(f, 0.3, inclusive=False).data.tolist() == [[True, True, False, False]]


def test_set_membership():
    lc = RasterField(name="LandCover", data=np.array([[8, 10, 1, 13]]))
    m = ev.evaluate_set(lc, [1, 2, 3, 4, 5, 6, 7, 10, 12])
    assert m.data.tolist() == [[False, True, True, False]]


def test_set_keeps_nodata():
    lc = RasterField(name="LandCover", data=np.ma.MaskedArray([[10, 0]], mask=[[False, True]]))
    m = ev.evaluate_set(lc, [10])
    assert np.ma.getmaskarray(m.data).tolist() == [[False, True]]


def test_bounds_dispatch():
    f = _field([[0.1, 0.25, 0.5]])
    assert ev.evaluate_bounds(f, Bounds(0.2, 0.4)).data.tolist() == [[False, True, False]]
    assert ev.evaluate_bounds(f, Bounds(lower=0.2)).data.tolist() == [[False, True, True]]
    assert ev.evaluate_bounds(f, Bounds(upper=0.3, inclusive=False)).data.tolist() == [[True, True, False]]


def test_fill_nodata_resolves_masked_pixels():
    f = _field([[15.0, 0.0]], mask=[[False, True]])
    m = ev.fill_nodata(ev.evaluate_range(f, 14.1, 15.5), False)
    assert not np.ma.getmaskarray(m.data).any()
    assert m.data.tolist() == [[True, False]]


def test_evaluate_does_not_touch_input():
    f = _field([[15.0, 20.0]], mask=[[False, True]])
    before = f.data.copy()
    ev.evaluate_range(f, 14.1, 15.5)
    assert np.array_equal(np.ma.getmaskarray(f.data), np.ma.getmaskarray(before))
    assert np.array_equal(np.ma.getdata(f.data), np.ma.getdata(before))
