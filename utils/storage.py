#!/usr/bin/env python3
"""
Raster storage and boundary provider used by every job.

Paths may be local or any fsspec URL (s3://, gcs://, http://). Rasters are read
as single-band integer grids and written as LZW-compressed Cloud Optimized
GeoTIFFs so that CRS, transform and nodata survive a round trip unchanged.
"""
import logging
import math
import os
import shutil
import tempfile
import warnings
from typing import Dict, Optional, Tuple

import fsspec
import geopandas as gpd
import numpy as np
import rasterio
import rioxarray as rxr
from fsspec.core import url_to_fs
from rasterio.errors import NotGeoreferencedWarning
from rio_cogeo.cogeo import cog_translate
from rio_cogeo.profiles import LZWProfile

from utils.errors import InvalidCrsError, InvalidGeometryError
from utils.models import CategoricalRaster, RegionMask

JOB_ID = "storage"


def open_file(path: str, mode: str = "rb"):
    """
    Open a local or remote file (s3://, gcs://, http://, etc.) via fsspec.
    Returns a file-like object.
    """
    fs, fs_path = url_to_fs(path)
    return fs.open(fs_path, mode)


def is_remote(path: str) -> bool:
    return "://" in str(path) and not str(path).startswith("file://")


def load_raster(
    path: str,
    nodata: Optional[int] = None,
    name: Optional[str] = None,
    log: Optional[logging.Logger] = None,
) -> CategoricalRaster:
    """
    Load band 1 of a georeferenced raster as a CategoricalRaster.

    `nodata` overrides the value stored in the file. When neither is present the
    dtype maximum is used.
    """
    log = log or logging.getLogger(JOB_ID)
    log.info(f"Loading raster: {path}")

    with warnings.catch_warnings():
        warnings.filterwarnings("error", category=NotGeoreferencedWarning)
        try:
            with rxr.open_rasterio(str(path), masked=False) as da:
                da = da.sel(band=1, drop=True).load()
        except NotGeoreferencedWarning as e:
            raise InvalidCrsError(f"Raster file is not georeferenced: {path}") from e

    if da.rio.crs is None:
        raise InvalidCrsError(f"Raster has no coordinate reference system: {path}")

    if nodata is None and da.rio.nodata is None:
        nodata = int(np.iinfo(da.dtype).max)
        log.warning(f"No nodata value stored in {path}, using dtype maximum {nodata}")

    return CategoricalRaster.from_xarray(da, nodata=nodata, name=name or os.path.basename(str(path)))


def save_raster(
    raster: CategoricalRaster,
    outpath: str,
    colormap: Optional[Dict[int, Tuple[int, int, int, int]]] = None,
    log: Optional[logging.Logger] = None,
) -> str:
    """Write a raster as a COG (local or remote), optionally embedding a color table."""
    log = log or logging.getLogger(JOB_ID)
    log.info(f"Writing raster to {outpath}")

    temp_fd, temp_tiff_path = tempfile.mkstemp(suffix="_temp.tif")
    os.close(temp_fd)
    temp_fd, temp_cog_path = tempfile.mkstemp(suffix="_cog.tif")
    os.close(temp_fd)

    try:
        profile = {
            "driver": "GTiff",
            "height": raster.height,
            "width": raster.width,
            "count": 1,
            "dtype": raster.dtype.name,
            "crs": raster.crs,
            "transform": raster.transform,
            "nodata": raster.nodata,
            "compress": "LZW",
        }
        with rasterio.open(temp_tiff_path, "w", **profile) as dst:
            dst.write(raster.data, 1)
            if colormap:
                dst.write_colormap(1, colormap)

        cog_profile = LZWProfile().data.copy()
        blocksize = int(os.getenv("COG_BLOCKSIZE", "512"))
        cog_profile.update({"blockxsize": blocksize, "blockysize": blocksize})

        # each overview halves the grid; stop before a side drops below one cell
        overview_level = min(
            int(os.getenv("COG_OVERVIEW_LEVEL", "4")),
            max(0, int(math.log2(min(raster.width, raster.height)))),
        )

        cog_translate(
            temp_tiff_path,
            temp_cog_path,
            cog_profile,
            overview_level=overview_level,
            overview_resampling="nearest",
            quiet=True,
        )

        if is_remote(outpath):
            log.info(f"Uploading COG: {outpath}")
            fs, fs_path = url_to_fs(outpath)
            fs.put_file(temp_cog_path, fs_path)
        else:
            parent = os.path.dirname(os.path.abspath(outpath))
            os.makedirs(parent, exist_ok=True)
            shutil.move(temp_cog_path, outpath)

    finally:
        for p in (temp_tiff_path, temp_cog_path):
            if os.path.exists(p):
                os.remove(p)

    return outpath


def boundary_for(
    country_name: str,
    boundary_path: str,
    name_field: Optional[str] = None,
    log: Optional[logging.Logger] = None,
) -> RegionMask:
    """
    Region mask for one country, taken from a vector layer of boundaries.

    All features whose `name_field` matches `country_name` (case-insensitive)
    are dissolved into a single geometry.
    """
    log = log or logging.getLogger(JOB_ID)
    name_field = name_field or os.getenv("BOUNDARY_NAME_FIELD", "name")

    log.info(f"Loading boundary for {country_name} from {boundary_path}")
    with fsspec.open(boundary_path, "rb") as f:
        boundaries = gpd.read_file(f)

    if name_field not in boundaries.columns:
        raise ValueError(f"Boundary layer has no '{name_field}' column: {list(boundaries.columns)}")

    wanted = country_name.strip().casefold()
    selected = boundaries[boundaries[name_field].astype(str).str.strip().str.casefold() == wanted]
    if selected.empty:
        raise InvalidGeometryError(f"No boundary named '{country_name}' in {boundary_path}")

    log.info(f"Dissolving {len(selected)} boundary feature(s) for {country_name}")
    return RegionMask.from_geodataframe(selected)
