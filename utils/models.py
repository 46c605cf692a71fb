#!/usr/bin/env python3
"""
Immutable data model shared by the harmonization jobs.

A CategoricalRaster is a single-band integer grid plus the georeferencing needed
to compare it cell by cell with another grid. A RegionMask is the polygon that
bounds the analysis. Every operation in the jobs returns a new instance; the
arrays held here are read-only.
"""
from dataclasses import dataclass, field
from typing import Optional, Tuple

import geopandas as gpd
import numpy as np
import rioxarray  # noqa: F401  registers the .rio accessor
import xarray as xr
from affine import Affine
from rasterio.crs import CRS
from rasterio.errors import CRSError
from rasterio.transform import array_bounds
from shapely import make_valid
from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

from utils.errors import InvalidCrsError, InvalidGeometryError

# Tolerance used when comparing geotransforms of two grids
GRID_ATOL = 1e-6


def parse_crs(crs, what: str = "raster") -> CRS:
    """Parse anything rasterio accepts as a CRS, raising InvalidCrsError when it is missing or bad."""
    if crs is None or (isinstance(crs, str) and not crs.strip()):
        raise InvalidCrsError(f"{what} has no coordinate reference system")
    try:
        parsed = CRS.from_user_input(crs)
    except CRSError as e:
        raise InvalidCrsError(f"{what} has an unparseable coordinate reference system: {e}") from e
    if not parsed.to_wkt():
        raise InvalidCrsError(f"{what} has an empty coordinate reference system")
    return parsed


@dataclass(frozen=True, eq=False)
class CategoricalRaster:
    data: np.ndarray
    transform: Affine
    crs: CRS
    nodata: int
    name: Optional[str] = field(default=None, compare=False)

    def __post_init__(self):
        data = np.array(self.data, copy=True)
        if data.ndim != 2:
            raise ValueError(f"Categorical raster must be 2-D, got shape {data.shape}")
        if not np.issubdtype(data.dtype, np.integer):
            raise ValueError(f"Categorical raster must hold integer codes, got {data.dtype}")
        if 0 in data.shape:
            raise ValueError("Categorical raster is empty")
        data.flags.writeable = False

        transform = self.transform if isinstance(self.transform, Affine) else Affine(*tuple(self.transform)[:6])
        if transform.b != 0 or transform.d != 0:
            raise ValueError(f"Rotated grids are not supported: {transform}")

        nodata = int(self.nodata)
        info = np.iinfo(data.dtype)
        if not info.min <= nodata <= info.max:
            raise ValueError(f"Nodata value {nodata} does not fit dtype {data.dtype}")

        object.__setattr__(self, "data", data)
        object.__setattr__(self, "transform", transform)
        object.__setattr__(self, "crs", parse_crs(self.crs, self.name or "raster"))
        object.__setattr__(self, "nodata", nodata)

    @property
    def height(self) -> int:
        return self.data.shape[0]

    @property
    def width(self) -> int:
        return self.data.shape[1]

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape

    @property
    def dtype(self) -> np.dtype:
        return self.data.dtype

    @property
    def resolution(self) -> Tuple[float, float]:
        return abs(self.transform.a), abs(self.transform.e)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """(left, bottom, right, top) in the raster's CRS."""
        return array_bounds(self.height, self.width, self.transform)

    @property
    def valid_mask(self) -> np.ndarray:
        return self.data != self.nodata

    def codes(self) -> np.ndarray:
        """Sorted distinct non-nodata codes present in the grid."""
        return np.unique(self.data[self.valid_mask])

    def same_grid(self, other: "CategoricalRaster") -> bool:
        return (
            self.shape == other.shape
            and self.crs == other.crs
            and np.allclose(tuple(self.transform)[:6], tuple(other.transform)[:6], rtol=0, atol=GRID_ATOL)
        )

    def equals(self, other: "CategoricalRaster") -> bool:
        """Same grid, same nodata and the same cell values with the same dtype."""
        return (
            self.same_grid(other)
            and self.nodata == other.nodata
            and self.dtype == other.dtype
            and np.array_equal(self.data, other.data)
        )

    def replace_data(self, data: np.ndarray, nodata: Optional[int] = None, name: Optional[str] = None) -> "CategoricalRaster":
        """New raster on the same grid holding `data`."""
        return CategoricalRaster(
            data=data,
            transform=self.transform,
            crs=self.crs,
            nodata=self.nodata if nodata is None else nodata,
            name=self.name if name is None else name,
        )

    def to_xarray(self) -> xr.DataArray:
        """Georeferenced (rioxarray) DataArray with cell-center x/y coordinates."""
        xs = self.transform.c + (np.arange(self.width) + 0.5) * self.transform.a
        ys = self.transform.f + (np.arange(self.height) + 0.5) * self.transform.e
        da = xr.DataArray(
            np.array(self.data),
            dims=("y", "x"),
            coords={"y": ys, "x": xs},
            name=self.name,
        )
        da = da.rio.write_crs(self.crs)
        da = da.rio.write_transform(self.transform)
        return da.rio.write_nodata(self.nodata)

    @classmethod
    def from_xarray(cls, da: xr.DataArray, nodata: Optional[int] = None, name: Optional[str] = None) -> "CategoricalRaster":
        if "band" in da.dims:
            if da.sizes["band"] != 1:
                raise ValueError(f"Expected a single band, got {da.sizes['band']}")
            da = da.squeeze("band", drop=True)

        crs = da.rio.crs
        if crs is None:
            raise InvalidCrsError(f"{name or da.name or 'raster'} has no coordinate reference system")

        if nodata is None:
            nodata = da.rio.nodata if da.rio.nodata is not None else da.rio.encoded_nodata
        if nodata is None or np.isnan(nodata):
            raise ValueError(f"{name or da.name or 'raster'} has no integer nodata value")

        return cls(
            data=da.values,
            transform=da.rio.transform(),
            crs=crs,
            nodata=int(nodata),
            name=name if name is not None else da.name,
        )


def _polygonal(geom: BaseGeometry) -> Optional[BaseGeometry]:
    if isinstance(geom, (Polygon, MultiPolygon)):
        return geom
    parts = [g for g in getattr(geom, "geoms", []) if isinstance(g, (Polygon, MultiPolygon))]
    return unary_union(parts) if parts else None


@dataclass(frozen=True)
class RegionMask:
    geometry: BaseGeometry
    crs: CRS

    def __post_init__(self):
        geom = self.geometry
        if geom is None or geom.is_empty:
            raise InvalidGeometryError("Region mask geometry is empty")
        if not geom.is_valid:
            geom = make_valid(geom)
        geom = _polygonal(geom)
        if geom is None or geom.is_empty:
            raise InvalidGeometryError("Region mask geometry has no polygonal area")

        object.__setattr__(self, "geometry", geom)
        object.__setattr__(self, "crs", parse_crs(self.crs, "region mask"))

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return self.geometry.bounds

    def to_crs(self, crs) -> "RegionMask":
        """Copy of the mask reprojected into `crs`."""
        target = parse_crs(crs)
        if target == self.crs:
            return self
        series = gpd.GeoSeries([self.geometry], crs=self.crs.to_wkt()).to_crs(target.to_wkt())
        return RegionMask(series.iloc[0], target)

    @classmethod
    def from_geodataframe(cls, gdf: gpd.GeoDataFrame) -> "RegionMask":
        if gdf.crs is None:
            raise InvalidCrsError("Boundary layer has no coordinate reference system")
        if gdf.empty:
            raise InvalidGeometryError("Boundary layer has no features")
        return cls(gdf.geometry.union_all(), gdf.crs.to_wkt())
