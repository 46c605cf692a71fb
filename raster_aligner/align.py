#!/usr/bin/env python3
import argparse
import logging
import math
import os
import sys
import warnings
from numbers import Number
from typing import Optional, Tuple, Union

import numpy as np
from affine import Affine
from rasterio.enums import Resampling
from rasterio.errors import NotGeoreferencedWarning
from rasterio.features import geometry_mask
from rasterio.warp import calculate_default_transform
from rasterio.windows import Window, transform as window_transform
from shapely.geometry import box

from utils.errors import GeometryMismatchError, GridMismatchError
from utils.logging import setup_logger
from utils.models import CategoricalRaster, RegionMask, parse_crs
from utils.storage import boundary_for, load_raster, save_raster

JOB_ID = "raster_aligner"

# Pixel offsets are rounded to this many decimals before floor/ceil
OFFSET_DECIMALS = 6


def _resolve_resampling(resampling: Union[str, Resampling]) -> Resampling:
    if isinstance(resampling, str):
        resampling = Resampling[resampling]
    if Resampling(resampling) != Resampling.nearest:
        raise ValueError(
            f"Categorical rasters can only be resampled with nearest neighbour, got '{Resampling(resampling).name}'"
        )
    return Resampling.nearest


def pixel_size_in_crs(reference: CategoricalRaster, crs) -> Tuple[float, float]:
    """Approximate pixel size of `reference` expressed in the units of `crs`."""
    crs = parse_crs(crs)
    if crs == reference.crs:
        return reference.resolution
    dst_transform, _, _ = calculate_default_transform(
        reference.crs, crs, reference.width, reference.height, *reference.bounds
    )
    return abs(dst_transform.a), abs(dst_transform.e)


def _bounds_window(bounds: Tuple[float, float, float, float], raster: CategoricalRaster) -> Window:
    """Smallest pixel window of `raster` covering `bounds`, clipped to the raster."""
    left, bottom, right, top = bounds
    inv = ~raster.transform
    corners = [inv * (x, y) for x, y in ((left, top), (right, bottom))]
    cols = [round(c, OFFSET_DECIMALS) for c, _ in corners]
    rows = [round(r, OFFSET_DECIMALS) for _, r in corners]

    col0 = max(0, math.floor(min(cols)))
    col1 = min(raster.width, math.ceil(max(cols)))
    row0 = max(0, math.floor(min(rows)))
    row1 = min(raster.height, math.ceil(max(rows)))
    if col1 <= col0 or row1 <= row0:
        raise GeometryMismatchError(f"Region bounds {bounds} fall outside raster bounds {raster.bounds}")
    return Window(col0, row0, col1 - col0, row1 - row0)


def _check_overlap(raster: CategoricalRaster, region: RegionMask) -> None:
    """Raise GeometryMismatchError unless `region` (already in the raster CRS) covers some area of `raster`."""
    footprint = box(*raster.bounds)
    if not region.geometry.intersects(footprint) or region.geometry.intersection(footprint).area == 0:
        raise GeometryMismatchError(
            f"Region mask {region.bounds} does not overlap raster {raster.name or ''} {raster.bounds}"
        )


def crop_and_mask(
    raster: CategoricalRaster, mask: RegionMask, log: Optional[logging.Logger] = None
) -> CategoricalRaster:
    """
    Crop `raster` to the bounding box of `mask` and set every cell whose center
    falls outside the mask geometry to nodata.

    The mask is reprojected into the raster's CRS first. Raises
    GeometryMismatchError when the two do not overlap.
    """
    log = log or logging.getLogger(JOB_ID)

    region = mask.to_crs(raster.crs)
    _check_overlap(raster, region)

    window = _bounds_window(region.bounds, raster)
    rows = slice(window.row_off, window.row_off + window.height)
    cols = slice(window.col_off, window.col_off + window.width)
    data = raster.data[rows, cols]
    cropped_transform = window_transform(window, raster.transform)

    inside = geometry_mask(
        [region.geometry],
        out_shape=data.shape,
        transform=cropped_transform,
        all_touched=False,
        invert=True,
    )
    masked = np.where(inside, data, raster.nodata).astype(raster.dtype)
    log.info(f"Cropped {raster.name or 'raster'} to {masked.shape[1]}x{masked.shape[0]}, {int(inside.sum())} cells inside region")

    return CategoricalRaster(masked, cropped_transform, raster.crs, raster.nodata, raster.name)


def reproject(
    raster: CategoricalRaster,
    target_crs,
    resampling: Union[str, Resampling] = Resampling.nearest,
    log: Optional[logging.Logger] = None,
) -> CategoricalRaster:
    """Warp `raster` onto a grid in `target_crs` using nearest neighbour."""
    log = log or logging.getLogger(JOB_ID)
    resampling = _resolve_resampling(resampling)
    target = parse_crs(target_crs)
    if target == raster.crs:
        return raster

    log.info(f"Reprojecting {raster.name or 'raster'} from {raster.crs} to {target}")
    warped = raster.to_xarray().rio.reproject(target, resampling=resampling, nodata=raster.nodata)
    return CategoricalRaster.from_xarray(warped, nodata=raster.nodata, name=raster.name)


def _modal_blocks(data: np.ndarray, nodata: int, fx: int, fy: int) -> np.ndarray:
    """
    Most frequent valid code of every fy x fx block. Nodata cells are ignored;
    a block with no valid cells is nodata. Ties go to the smallest code.
    """
    height, width = data.shape
    out_h, out_w = -(-height // fy), -(-width // fx)
    strip_rows = max(1, int(os.getenv("AGGREGATE_STRIP_ROWS", "256")))
    out = np.full((out_h, out_w), nodata, dtype=data.dtype)

    for r0 in range(0, out_h, strip_rows):
        r1 = min(out_h, r0 + strip_rows)
        src = data[r0 * fy : r1 * fy]

        # pad the strip with nodata out to whole blocks
        padded = np.full(((r1 - r0) * fy, out_w * fx), nodata, dtype=data.dtype)
        padded[: src.shape[0], :width] = src
        cells = padded.reshape(r1 - r0, fy, out_w, fx).swapaxes(1, 2).reshape(r1 - r0, out_w, fy * fx)

        strip = out[r0:r1]
        best = np.zeros(strip.shape, dtype=np.int64)
        for code in np.unique(src[src != nodata]):
            counts = np.count_nonzero(cells == code, axis=-1)
            better = counts > best
            strip[better] = code
            best[better] = counts[better]

    return out


def change_resolution(
    raster: CategoricalRaster,
    target_pixel_size: Union[Number, Tuple[float, float]],
    aggregation: str = "mode",
    log: Optional[logging.Logger] = None,
) -> CategoricalRaster:
    """
    Aggregate `raster` to roughly `target_pixel_size` with modal aggregation.

    The factor along each axis is ceil(target / source). Rasters already at or
    coarser than the target are returned unchanged.
    """
    log = log or logging.getLogger(JOB_ID)
    if aggregation not in ("mode", Resampling.mode):
        raise ValueError(f"Categorical rasters can only be aggregated by mode, got '{aggregation}'")

    if isinstance(target_pixel_size, Number):
        target_x = target_y = float(target_pixel_size)
    else:
        target_x, target_y = (abs(float(v)) for v in target_pixel_size)
    if target_x <= 0 or target_y <= 0:
        raise ValueError(f"Target pixel size must be positive, got {target_pixel_size}")

    source_x, source_y = raster.resolution
    fx = max(1, math.ceil(round(target_x / source_x, OFFSET_DECIMALS)))
    fy = max(1, math.ceil(round(target_y / source_y, OFFSET_DECIMALS)))
    if fx == 1 and fy == 1:
        log.info(f"{raster.name or 'raster'} is already at or coarser than the target resolution")
        return raster

    log.info(f"Modal aggregation of {raster.name or 'raster'} by {fx}x{fy} cells")
    aggregated = _modal_blocks(raster.data, raster.nodata, fx, fy)
    t = raster.transform
    coarse_transform = Affine(t.a * fx, 0.0, t.c, 0.0, t.e * fy, t.f)
    return CategoricalRaster(aggregated, coarse_transform, raster.crs, raster.nodata, raster.name)


def resample_to_match(
    raster: CategoricalRaster, reference: CategoricalRaster, log: Optional[logging.Logger] = None
) -> CategoricalRaster:
    """Nearest-neighbour resample of `raster` onto the exact grid of `reference`."""
    log = log or logging.getLogger(JOB_ID)
    if raster.same_grid(reference):
        return raster

    log.info(f"Resampling {raster.name or 'raster'} onto the reference grid {reference.width}x{reference.height}")
    matched = raster.to_xarray().rio.reproject_match(
        reference.to_xarray(), resampling=Resampling.nearest, nodata=raster.nodata
    )
    data = np.asarray(matched.values)
    if data.shape != reference.shape:
        raise GridMismatchError(f"Resampled shape {data.shape} differs from reference shape {reference.shape}")
    return CategoricalRaster(data, reference.transform, reference.crs, raster.nodata, raster.name)


def prepare_reference(
    raster: CategoricalRaster,
    mask: RegionMask,
    target_crs=None,
    log: Optional[logging.Logger] = None,
) -> CategoricalRaster:
    """Target grid for a comparison: `raster` in the analysis CRS, cropped and masked to the region."""
    if target_crs is not None:
        raster = reproject(raster, target_crs, log=log)
    return crop_and_mask(raster, mask, log=log)


def align_to_reference(
    source: CategoricalRaster,
    reference: CategoricalRaster,
    mask: RegionMask,
    log: Optional[logging.Logger] = None,
) -> CategoricalRaster:
    """
    Bring `source` onto the grid of `reference`: modal aggregation to the
    reference pixel size, nearest-neighbour resampling onto the exact grid,
    then crop and mask to the region.

    Raises GeometryMismatchError when `source` does not cover the region.
    """
    _check_overlap(source, mask.to_crs(source.crs))

    pixel_size = pixel_size_in_crs(reference, source.crs)
    coarse = change_resolution(source, pixel_size, "mode", log=log)
    matched = resample_to_match(coarse, reference, log=log)
    aligned = crop_and_mask(matched, mask, log=log)
    if not aligned.same_grid(reference):
        raise GridMismatchError(
            f"Aligned grid {aligned.shape} {tuple(aligned.transform)[:6]} differs from reference "
            f"{reference.shape} {tuple(reference.transform)[:6]}"
        )
    return aligned


def main():
    log = setup_logger(JOB_ID)

    warnings.filterwarnings("error", category=NotGeoreferencedWarning)

    p = argparse.ArgumentParser(description="Align a categorical raster to the grid of a reference raster within a country boundary.")
    p.add_argument("--source_path", required=True, help="Raster to align (local or S3)")
    p.add_argument("--reference_path", required=True, help="Raster whose grid is the target (local or S3)")
    p.add_argument("--boundary_path", required=True, help="Vector layer with country boundaries (local or S3)")
    p.add_argument("--country", default="Brazil", help="Boundary name to select from the boundary layer")
    p.add_argument("--boundary_name_field", default=None, help="Column holding boundary names. Defaults to BOUNDARY_NAME_FIELD or 'name'.")
    p.add_argument("--target_crs", default=None, help="Optional analysis CRS for the reference grid (e.g. EPSG:5880)")
    p.add_argument("--reference_output_path", default=None, help="Optional path for the prepared reference grid")
    p.add_argument("--output_path", required=True, help="Path for the aligned raster (local or S3)")
    args = p.parse_args()

    try:
        mask = boundary_for(args.country, args.boundary_path, args.boundary_name_field, log=log)
        reference = prepare_reference(load_raster(args.reference_path, log=log), mask, args.target_crs, log=log)
        aligned = align_to_reference(load_raster(args.source_path, log=log), reference, mask, log=log)

        save_raster(aligned, args.output_path, log=log)
        outputs = {"output_path": args.output_path}
        if args.reference_output_path:
            save_raster(reference, args.reference_output_path, log=log)
            outputs["reference_output_path"] = args.reference_output_path
        log.success(outputs)

    except Exception as e:
        log.error(f"{JOB_ID} run failed: {type(e).__name__}: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
