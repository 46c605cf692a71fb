#!/usr/bin/env python3
"""
Exceptions raised while harmonizing and scoring categorical rasters.

InvalidCrsError, GeometryMismatchError and GridMismatchError are fatal to the
raster or step that raised them. DegenerateRateError is only raised when a
caller asks for strict scoring; by default an undefined rate is reported as NaN.
"""


class HarmonizationError(Exception):
    """Base class for raster harmonization and scoring failures."""


class InvalidCrsError(HarmonizationError):
    """A raster or mask has a missing or unparseable spatial reference."""


class GeometryMismatchError(HarmonizationError):
    """A region mask and a raster share no spatial overlap."""


class InvalidGeometryError(HarmonizationError):
    """A region mask geometry is empty or cannot be repaired into polygons."""


class GridMismatchError(HarmonizationError):
    """Two rasters that must share a grid do not."""


class DegenerateRateError(HarmonizationError):
    """A confusion matrix rate has a zero denominator."""

    def __init__(self, rate: str, denominator: str):
        super().__init__(f"{rate} is undefined: {denominator} is zero")
        self.rate = rate
        self.denominator = denominator

    def __reduce__(self):
        return type(self), (self.rate, self.denominator)
