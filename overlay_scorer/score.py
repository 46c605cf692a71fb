#!/usr/bin/env python3
import argparse
import logging
import math
import os
import sys
import warnings
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd
from flox.xarray import xarray_reduce
from rasterio.errors import NotGeoreferencedWarning

from utils.encoding import (
    BOTH,
    COMPOSITE_CODES,
    COMPOSITE_COLORS,
    COMPOSITE_LABELS,
    COMPOSITE_NODATA,
    COMPOSITE_PAIRING_DICT,
    NEITHER,
    OBSERVED_ONLY,
    PROJECTED_ONLY,
)
from utils.errors import DegenerateRateError, GridMismatchError
from utils.logging import setup_logger
from utils.models import CategoricalRaster
from utils.storage import is_remote, load_raster, open_file, save_raster

JOB_ID = "overlay_scorer"

SQ_KM = 1000000


@dataclass(frozen=True)
class CompositeTally:
    count0: int
    count1: int
    count10: int
    count11: int

    @property
    def total(self) -> int:
        return self.count0 + self.count1 + self.count10 + self.count11


@dataclass(frozen=True)
class ConfusionMatrixResult:
    """
    Binary confusion matrix with the observed map as ground truth and the
    projected map as the prediction under test.
    """

    true_positive: int
    false_negative: int
    false_positive: int
    true_negative: int
    sensitivity: float
    specificity: float
    false_positive_rate: float
    false_negative_rate: float
    accuracy: float
    precision: float

    @property
    def positives(self) -> int:
        return self.true_positive + self.false_negative

    @property
    def negatives(self) -> int:
        return self.false_positive + self.true_negative

    @property
    def total(self) -> int:
        return self.positives + self.negatives

    def as_dict(self) -> Dict:
        return asdict(self)


def _check_labels(raster: CategoricalRaster, allowed: Iterable[int], role: str) -> None:
    unexpected = sorted(set(raster.codes().tolist()) - set(allowed))
    if unexpected:
        raise ValueError(f"{role} raster holds codes {unexpected}, expected only {sorted(allowed)}")


def overlay(
    reference: CategoricalRaster, predicted: CategoricalRaster, log: Optional[logging.Logger] = None
) -> CategoricalRaster:
    """
    Add the observed (0/1) and projected (0/10) label rasters into one composite
    raster of 0, 1, 10 and 11. A cell that is nodata in either input is nodata.
    """
    log = log or logging.getLogger(JOB_ID)
    if not reference.same_grid(predicted):
        raise GridMismatchError(
            f"Cannot overlay rasters on different grids: {reference.shape} {reference.crs} "
            f"{tuple(reference.transform)[:6]} vs {predicted.shape} {predicted.crs} {tuple(predicted.transform)[:6]}"
        )
    if COMPOSITE_NODATA in COMPOSITE_CODES:
        raise ValueError(f"Composite nodata {COMPOSITE_NODATA} collides with a composite code")
    _check_labels(reference, {observed for _, observed in COMPOSITE_PAIRING_DICT}, "reference")
    _check_labels(predicted, {projected for projected, _ in COMPOSITE_PAIRING_DICT}, "predicted")

    valid = reference.valid_mask & predicted.valid_mask
    composite = np.full(reference.shape, COMPOSITE_NODATA, dtype=np.uint8)
    composite[valid] = reference.data[valid].astype(np.uint8) + predicted.data[valid].astype(np.uint8)

    log.info(f"Composite raster has {int(valid.sum())} valid cells of {valid.size}")
    return CategoricalRaster(composite, reference.transform, reference.crs, COMPOSITE_NODATA, "composite")


def tally(composite: CategoricalRaster, log: Optional[logging.Logger] = None) -> CompositeTally:
    """
    Count the valid cells per composite code. The four known codes are passed
    as expected groups, so nodata cells fall outside every group and the
    integer grid is counted as is.
    """
    log = log or logging.getLogger(JOB_ID)
    agreement_map = composite.to_xarray()
    if "spatial_ref" in agreement_map.coords:
        agreement_map = agreement_map.drop_vars("spatial_ref")

    groups = agreement_map.rename("group")
    expected = np.array(COMPOSITE_CODES, dtype=composite.dtype)

    counts = xarray_reduce(
        groups.rename("cells"),
        groups,
        func="count",
        expected_groups=expected,
    )
    found = {int(g): int(c) for g, c in zip(counts["group"].values, counts.values)}

    result = CompositeTally(
        count0=found.get(NEITHER, 0),
        count1=found.get(OBSERVED_ONLY, 0),
        count10=found.get(PROJECTED_ONLY, 0),
        count11=found.get(BOTH, 0),
    )

    valid_cells = int(composite.valid_mask.sum())
    if result.total != valid_cells:
        raise ValueError(
            f"Composite raster holds codes outside {list(COMPOSITE_CODES)}: tallied {result.total} of {valid_cells} valid cells"
        )
    by_label = {label: found.get(code, 0) for code, label in COMPOSITE_LABELS.items()}
    log.info(f"Tally: {by_label}")
    return result


def _rate(numerator: int, denominator: int, rate: str, denominator_name: str, strict: bool) -> float:
    if denominator == 0:
        if strict:
            raise DegenerateRateError(rate, denominator_name)
        return math.nan
    return numerator / denominator


def score(counts: CompositeTally, strict: bool = False) -> ConfusionMatrixResult:
    """
    Confusion matrix of a tally. Rates with a zero denominator are NaN, or raise
    DegenerateRateError when `strict` is set.
    """
    tp, fn, fp, tn = counts.count11, counts.count1, counts.count10, counts.count0
    positives = tp + fn
    negatives = fp + tn

    return ConfusionMatrixResult(
        true_positive=tp,
        false_negative=fn,
        false_positive=fp,
        true_negative=tn,
        sensitivity=_rate(tp, positives, "sensitivity", "positives", strict),
        specificity=_rate(tn, negatives, "specificity", "negatives", strict),
        false_positive_rate=_rate(fp, negatives, "false_positive_rate", "negatives", strict),
        false_negative_rate=_rate(fn, positives, "false_negative_rate", "positives", strict),
        accuracy=_rate(tp + tn, positives + negatives, "accuracy", "total", strict),
        precision=_rate(tp, tp + fp, "precision", "predicted positives", strict),
    )


def cell_area_m2(raster: CategoricalRaster) -> Optional[float]:
    """Area of one cell in square meters, or None for a geographic CRS."""
    if not raster.crs.is_projected:
        return None
    _, factor = raster.crs.linear_units_factor
    x, y = raster.resolution
    return x * y * factor * factor


def summarize(result: ConfusionMatrixResult, composite: CategoricalRaster) -> Dict:
    """
    Flat metrics row: counts and rates of `result`, the share of each outcome,
    observed/projected totals, and areas when the grid has metric cells.
    """
    tp, fn, fp, tn = result.true_positive, result.false_negative, result.false_positive, result.true_negative
    total = result.total
    pred_positive = tp + fp
    pred_negative = tn + fn
    obs_positive = result.positives
    obs_negative = result.negatives

    row = {
        "true_positives_count": tp,
        "false_negatives_count": fn,
        "false_positives_count": fp,
        "true_negatives_count": tn,
        "sensitivity": result.sensitivity,
        "specificity": result.specificity,
        "false_positive_rate": result.false_positive_rate,
        "false_negative_rate": result.false_negative_rate,
        "accuracy": result.accuracy,
        "precision": result.precision,
        "contingency_tot_count": total,
        "nodata_count": int((~composite.valid_mask).sum()),
        "predPositive_count": pred_positive,
        "predNegative_count": pred_negative,
        "obsPositive_count": obs_positive,
        "obsNegative_count": obs_negative,
    }

    for key, count in (("TP", tp), ("FP", fp), ("TN", tn), ("FN", fn)):
        row[f"{key}_perc"] = (count / total) * 100 if total > 0 else math.nan
    row["positiveDiff_perc"] = ((pred_positive - obs_positive) / total) * 100 if total > 0 else math.nan

    cell_area = cell_area_m2(composite)
    row["cell_area_m2"] = cell_area
    for key, count in (
        ("TP", tp),
        ("FP", fp),
        ("TN", tn),
        ("FN", fn),
        ("contingency_tot", total),
        ("predPositive", pred_positive),
        ("obsPositive", obs_positive),
    ):
        row[f"{key}_area_km2"] = (count * cell_area) / SQ_KM if cell_area is not None else None

    return row


def write_metrics(rows: List[Dict], metrics_path: str, log: Optional[logging.Logger] = None) -> pd.DataFrame:
    """Write metrics rows to CSV using fsspec for S3 compatibility."""
    log = log or logging.getLogger(JOB_ID)
    log.info(f"Writing metrics table to {metrics_path}")
    metrics_df = pd.DataFrame(rows)
    if not is_remote(metrics_path):
        os.makedirs(os.path.dirname(os.path.abspath(metrics_path)), exist_ok=True)
    with open_file(metrics_path, "wt") as f:
        metrics_df.to_csv(f, index=False)
    return metrics_df


def main():
    log = setup_logger(JOB_ID)

    warnings.filterwarnings("error", category=NotGeoreferencedWarning)

    p = argparse.ArgumentParser(description="Overlay an observed and a projected cropland raster and score their agreement.")
    p.add_argument("--reference_path", required=True, help="Observed label raster, 0/1 (local or S3)")
    p.add_argument("--predicted_path", required=True, help="Projected label raster, 0/10 (local or S3)")
    p.add_argument("--output_path", required=True, help="Path for the composite raster (local or S3)")
    p.add_argument("--metrics_path", required=False, help="Optional path for the metrics CSV (local or S3)")
    p.add_argument("--strict", action="store_true", help="Fail instead of reporting NaN for undefined rates")
    args = p.parse_args()

    try:
        reference = load_raster(args.reference_path, log=log)
        predicted = load_raster(args.predicted_path, log=log)

        composite = overlay(reference, predicted, log=log)
        result = score(tally(composite, log=log), strict=args.strict)

        save_raster(composite, args.output_path, colormap=COMPOSITE_COLORS, log=log)
        outputs = {"output_path": args.output_path}
        if args.metrics_path:
            write_metrics([summarize(result, composite)], args.metrics_path, log=log)
            outputs["metrics_path"] = args.metrics_path
        log.success(outputs)

    except NotGeoreferencedWarning as e:
        log.error(f"Raster file is not georeferenced: {e}")
        sys.exit(1)
    except Exception as e:
        log.error(f"{JOB_ID} run failed: {type(e).__name__}: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
