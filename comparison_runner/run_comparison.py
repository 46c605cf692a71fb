#!/usr/bin/env python3
"""
Compare projected and observed cropland maps for every scenario, year and
cropland inclusion policy of a run configuration.

Each (scenario, year) pair is aligned once; each policy then reclassifies the
aligned observed map and scores it against the projected map. A failure is
logged and reported for its own combinations only; the rest of the batch runs.
"""
import argparse
import json
import logging
import os
import sys
import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import dask
from dask import delayed
from dask.distributed import Client, LocalCluster
from rasterio.errors import NotGeoreferencedWarning

from overlay_scorer.score import overlay, score, summarize, tally, write_metrics
from raster_aligner.align import align_to_reference, prepare_reference
from reclassifier.reclassify import RemapTable, policy_table, projected_table, reclassify
from utils.encoding import COMPOSITE_COLORS
from utils.legends import DEFAULT_PROJECTED_CODES, INCLUSION_POLICIES
from utils.logging import combination_logger, setup_logger
from utils.models import CategoricalRaster, RegionMask
from utils.storage import boundary_for, load_raster, open_file, save_raster

# GLOBAL DASK CONFIGURATION
DASK_CLUST_MAX_MEM = os.getenv("DASK_CLUST_MAX_MEM")

JOB_ID = "comparison_runner"

STATUS_OK = "ok"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class RunConfig:
    country: str
    boundary_path: str
    projected_path_template: str
    observed_path_template: str
    scenarios: Tuple[str, ...]
    years: Tuple[int, ...]
    policies: Tuple[str, ...] = tuple(INCLUSION_POLICIES)
    projected_codes: Tuple[int, ...] = DEFAULT_PROJECTED_CODES
    boundary_name_field: Optional[str] = None
    analysis_crs: Optional[str] = None
    observed_nodata: Optional[int] = None
    projected_nodata: Optional[int] = None

    def projected_path(self, scenario: str, year: int) -> str:
        return self.projected_path_template.format(scenario=scenario, year=year)

    def observed_path(self, year: int) -> str:
        return self.observed_path_template.format(year=year)

    @classmethod
    def from_dict(cls, raw: Dict) -> "RunConfig":
        required = ["country", "boundary_path", "projected_path_template", "observed_path_template", "scenarios", "years"]
        missing = [k for k in required if k not in raw]
        if missing:
            raise ValueError(f"Run configuration is missing {missing}")
        if not raw["scenarios"] or not raw["years"]:
            raise ValueError("Run configuration needs at least one scenario and one year")

        policies = tuple(raw.get("policies") or INCLUSION_POLICIES)
        unknown = [p for p in policies if p not in INCLUSION_POLICIES]
        if unknown:
            raise ValueError(f"Unknown inclusion policies {unknown}. Expected some of {sorted(INCLUSION_POLICIES)}")

        return cls(
            country=raw["country"],
            boundary_path=raw["boundary_path"],
            projected_path_template=raw["projected_path_template"],
            observed_path_template=raw["observed_path_template"],
            scenarios=tuple(str(s) for s in raw["scenarios"]),
            years=tuple(int(y) for y in raw["years"]),
            policies=policies,
            projected_codes=tuple(int(c) for c in raw.get("projected_codes") or DEFAULT_PROJECTED_CODES),
            boundary_name_field=raw.get("boundary_name_field"),
            analysis_crs=raw.get("analysis_crs"),
            observed_nodata=raw.get("observed_nodata"),
            projected_nodata=raw.get("projected_nodata"),
        )


def load_run_config(path: str) -> RunConfig:
    with open_file(path, "rt") as f:
        return RunConfig.from_dict(json.load(f))


@dataclass(frozen=True)
class Combination:
    scenario: str
    year: int
    policy: str

    @property
    def key(self) -> str:
        return f"{self.scenario}_{self.year}_{self.policy}"


@dataclass(frozen=True)
class AlignedPair:
    """Projected labels and aligned observed codes of one (scenario, year), or the error that stopped them."""

    scenario: str
    year: int
    predicted: Optional[CategoricalRaster] = None
    observed: Optional[CategoricalRaster] = None
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class CombinationOutcome:
    combination: Combination
    status: str
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    metrics: Dict = field(default_factory=dict)
    composite: Optional[CategoricalRaster] = None
    composite_path: Optional[str] = None

    @classmethod
    def failed(cls, combination: Combination, error: BaseException) -> "CombinationOutcome":
        return cls(combination, STATUS_FAILED, type(error).__name__, str(error))

    def to_row(self) -> Dict:
        row = {
            "scenario": self.combination.scenario,
            "year": self.combination.year,
            "policy": self.combination.policy,
            "status": self.status,
            "error_type": self.error_type,
            "error_message": self.error_message,
            "composite_path": self.composite_path,
        }
        row.update(self.metrics)
        return row


def combinations(config: RunConfig) -> List[Combination]:
    return [
        Combination(scenario, year, policy)
        for scenario in config.scenarios
        for year in config.years
        for policy in config.policies
    ]


def align_pair(
    config: RunConfig,
    mask: RegionMask,
    scenario: str,
    year: int,
    predicted_table: RemapTable,
    log: logging.Logger,
) -> AlignedPair:
    """Load both maps of a (scenario, year), align the observed map to the projected grid and label the projected map."""
    clog = combination_logger(log, scenario, year)
    try:
        projected = load_raster(config.projected_path(scenario, year), nodata=config.projected_nodata, name="projected", log=clog)
        observed = load_raster(config.observed_path(year), nodata=config.observed_nodata, name="observed", log=clog)

        reference = prepare_reference(projected, mask, config.analysis_crs, log=clog)
        aligned = align_to_reference(observed, reference, mask, log=clog)
        predicted = reclassify(reference, predicted_table, log=clog)
        clog.info(f"Aligned observed map to the {reference.width}x{reference.height} projected grid")
        return AlignedPair(scenario, year, predicted, aligned)

    except Exception as e:
        clog.error(f"Alignment failed: {type(e).__name__}: {e}")
        return AlignedPair(scenario, year, error=e)


def score_combination(
    pair: AlignedPair,
    combination: Combination,
    observed_table: RemapTable,
    keep_composite: bool,
    composite_dir: Optional[str],
    log: logging.Logger,
) -> CombinationOutcome:
    """
    Reclassify the aligned observed map with one policy and score it against the
    projected labels. With `composite_dir` the composite is written here, so it
    is released when the task ends.
    """
    clog = combination_logger(log, combination.scenario, combination.year, combination.policy)
    if pair.error is not None:
        return CombinationOutcome.failed(combination, pair.error)

    try:
        reference = reclassify(pair.observed, observed_table, log=clog)
        composite = overlay(reference, pair.predicted, log=clog)
        result = score(tally(composite, log=clog))
        path = None
        if composite_dir:
            path = composite_path(composite_dir, combination)
            save_raster(composite, path, colormap=COMPOSITE_COLORS, log=clog)
        clog.info(
            f"Scored: accuracy={result.accuracy:.4f} sensitivity={result.sensitivity:.4f} "
            f"specificity={result.specificity:.4f} precision={result.precision:.4f}"
        )
        return CombinationOutcome(
            combination,
            STATUS_OK,
            metrics=summarize(result, composite),
            composite=composite if keep_composite else None,
            composite_path=path,
        )

    except Exception as e:
        clog.error(f"Scoring failed: {type(e).__name__}: {e}")
        return CombinationOutcome.failed(combination, e)


def run_batch(
    config: RunConfig,
    mask: Optional[RegionMask] = None,
    keep_composites: bool = False,
    composite_dir: Optional[str] = None,
    scheduler: Optional[str] = None,
    log: Optional[logging.Logger] = None,
) -> List[CombinationOutcome]:
    """
    Build and compute the dask graph for every combination of `config`.

    The region mask and remap tables are built before the graph and shared
    read-only by all tasks. `keep_composites` keeps every composite raster on its
    outcome; `composite_dir` writes each one from its own task instead.
    `scheduler` is passed to dask.compute; None uses the active client or
    dask's default.
    """
    log = log or logging.getLogger(JOB_ID)
    if mask is None:
        mask = boundary_for(config.country, config.boundary_path, config.boundary_name_field, log=log)

    predicted_table = projected_table(config.projected_codes)
    observed_tables = {policy: policy_table(policy) for policy in config.policies}

    tasks = []
    for scenario in config.scenarios:
        for year in config.years:
            pair = delayed(align_pair, pure=False)(config, mask, scenario, year, predicted_table, log)
            for policy in config.policies:
                combination = Combination(scenario, year, policy)
                tasks.append(
                    delayed(score_combination, pure=False)(pair, combination, observed_tables[policy], keep_composites, composite_dir, log)
                )

    log.info(f"Running {len(tasks)} combinations ({len(config.scenarios)} scenarios x {len(config.years)} years x {len(config.policies)} policies)")
    compute_kwargs = {"scheduler": scheduler} if scheduler else {}
    return list(dask.compute(*tasks, **compute_kwargs))


def composite_path(composite_dir: str, combination: Combination) -> str:
    return f"{composite_dir.rstrip('/')}/composite_{combination.key}.tif"


def setup_dask_cluster(workers: int, log: logging.Logger) -> Tuple[Client, LocalCluster]:
    """Set up a local threaded Dask cluster and return the client and cluster."""
    log.info(f"Starting Dask local cluster with {workers} worker thread(s)")

    cluster = LocalCluster(
        n_workers=1,
        threads_per_worker=workers,
        memory_limit=DASK_CLUST_MAX_MEM,
        processes=False,  # rasters are shared between tasks without serialization
        silence_logs=False,
    )

    dask.config.set(
        {
            "distributed.worker.memory.target": 0.7,
            "distributed.worker.memory.spill": 0.75,
            "distributed.worker.memory.pause": False,
            "distributed.worker.memory.terminate": 0.9,
        }
    )

    client = Client(cluster)
    log.info(f"Dask dashboard link: {client.dashboard_link}")
    return client, cluster


def main():
    log = setup_logger(JOB_ID)

    warnings.filterwarnings("error", category=NotGeoreferencedWarning)

    p = argparse.ArgumentParser(description="Score projected against observed cropland maps for every scenario, year and policy.")
    p.add_argument("--config_path", required=True, help="Path/URI to the JSON run configuration")
    p.add_argument("--metrics_path", required=True, help="Output path for the metrics CSV (local or S3)")
    p.add_argument("--composite_dir", required=False, help="Optional directory/prefix for composite rasters (local or S3)")
    p.add_argument(
        "--workers",
        type=int,
        default=int(os.getenv("COMPARISON_WORKERS", "2")),
        help="Number of combinations processed concurrently",
    )
    args = p.parse_args()

    client = cluster = None
    try:
        config = load_run_config(args.config_path)
        mask = boundary_for(config.country, config.boundary_path, config.boundary_name_field, log=log)

        client, cluster = setup_dask_cluster(args.workers, log)
        outcomes = run_batch(config, mask, composite_dir=args.composite_dir, log=log)

        write_metrics([o.to_row() for o in outcomes], args.metrics_path, log=log)

        failed = [o.combination.key for o in outcomes if o.status == STATUS_FAILED]
        if len(failed) == len(outcomes):
            log.error(f"{JOB_ID} run failed: all {len(outcomes)} combinations failed")
            sys.exit(1)
        if failed:
            log.warning(f"{len(failed)} of {len(outcomes)} combinations failed: {failed}")

        success_outputs = {"metrics_path": args.metrics_path, "ok": len(outcomes) - len(failed), "failed": len(failed)}
        if args.composite_dir:
            success_outputs["composite_paths"] = [o.composite_path for o in outcomes if o.composite_path]
        log.success(success_outputs)

    except Exception as e:
        log.error(f"{JOB_ID} run failed: {type(e).__name__}: {e}")
        sys.exit(1)

    finally:
        if client is not None:
            log.info("Shutting down Dask client and cluster")
            client.close()
            cluster.close()


if __name__ == "__main__":
    main()
