#!/usr/bin/env python3
"""terroir.errors

Exception types shared by all terroir subsystems.

Library code raises these; the subsystem CLIs turn them into SystemExit with
the message so a bad config or an empty query fails fast with a readable line.
"""

from __future__ import annotations


class TerroirError(Exception):
    """Base class for every error raised by terroir."""


class ConfigurationError(TerroirError):
    """Bad YAML, invalid thresholds, unknown dataset/band/indicator."""


class EmptyResultError(TerroirError):
    """A filtered collection has zero scenes left to aggregate.

    Raised instead of returning a zero-valued sum, which would be
    indistinguishable from a real zero.
    """


class RegionNotFoundError(TerroirError):
    """Boundary lookup matched no administrative unit."""


class AmbiguousRegionError(RegionNotFoundError):
    """Boundary lookup matched more than one unit and dissolve was not requested."""


class FetchError(TerroirError):
    """A raster read failed after all retries."""


class FetchCancelledError(FetchError):
    """A raster read was aborted through the cancel event."""
