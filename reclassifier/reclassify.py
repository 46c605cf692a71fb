#!/usr/bin/env python3
import argparse
import json
import logging
import sys
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from utils.encoding import OBSERVED_NEGATIVE, OBSERVED_POSITIVE, PROJECTED_POSITIVE
from utils.legends import DEFAULT_PROJECTED_CODES, MAPBIOMAS_LEGEND, policy_codes
from utils.logging import setup_logger
from utils.models import CategoricalRaster
from utils.storage import load_raster, open_file, save_raster

JOB_ID = "reclassifier"


@dataclass(frozen=True)
class RemapTable:
    """
    Ordered (source -> target) code pairs.

    A later pair for the same source code overrides an earlier one. Codes with
    no pair keep their value when `default` is None, otherwise they become
    `default` (the threshold variant used to reduce a map to one class).
    """

    pairs: Tuple[Tuple[int, int], ...]
    default: Optional[int] = None
    name: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "pairs", tuple((int(s), int(t)) for s, t in self.pairs))
        if self.default is not None:
            object.__setattr__(self, "default", int(self.default))

    @property
    def mapping(self) -> Dict[int, int]:
        return dict(self.pairs)

    @property
    def targets(self) -> List[int]:
        values = set(self.mapping.values())
        if self.default is not None:
            values.add(self.default)
        return sorted(values)

    def unmapped(self, codes: Iterable[int]) -> List[int]:
        """Codes from `codes` without a pair in this table."""
        mapping = self.mapping
        return sorted(int(c) for c in set(codes) if int(c) not in mapping)

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[int, int]], default: Optional[int] = None, name: Optional[str] = None) -> "RemapTable":
        return cls(tuple(pairs), default, name)

    @classmethod
    def from_dict(cls, mapping: Dict, default: Optional[int] = None, name: Optional[str] = None) -> "RemapTable":
        """Build from a {source: target} mapping, e.g. one parsed from JSON with string keys."""
        return cls(tuple((int(k), int(v)) for k, v in mapping.items()), default, name)

    @classmethod
    def identity(cls, codes: Iterable[int], name: str = "identity") -> "RemapTable":
        return cls(tuple((int(c), int(c)) for c in sorted(set(codes))), None, name)

    @classmethod
    def threshold(cls, codes: Iterable[int], marker: int, name: Optional[str] = None) -> "RemapTable":
        """`codes` -> `marker`, everything else -> 0."""
        return cls(tuple((int(c), int(marker)) for c in sorted(set(codes))), 0, name)


def policy_table(policy: str, legend: Iterable[int] = MAPBIOMAS_LEGEND) -> RemapTable:
    """Exhaustive observed-map table: every legend code to 1 (in the policy) or 0."""
    included = policy_codes(policy)
    pairs = tuple((code, OBSERVED_POSITIVE if code in included else OBSERVED_NEGATIVE) for code in sorted(legend))
    return RemapTable(pairs, None, policy)


def projected_table(codes: Iterable[int] = DEFAULT_PROJECTED_CODES) -> RemapTable:
    """Projected-map threshold table: cropland codes to 10, everything else to 0."""
    return RemapTable.threshold(codes, PROJECTED_POSITIVE, name="projected")


def _output_dtype(raster: CategoricalRaster, table: RemapTable, nodata: int) -> np.dtype:
    values = table.targets + [nodata]
    return np.result_type(raster.dtype, *(np.min_scalar_type(v) for v in values))


def _output_nodata(raster: CategoricalRaster, table: RemapTable, nodata: Optional[int]) -> int:
    """Nodata of the reclassified raster; never one of the table's target codes."""
    targets = set(table.targets)
    if nodata is not None:
        if int(nodata) in targets:
            raise ValueError(f"Nodata value {nodata} collides with a target code of table {table.name or ''}")
        return int(nodata)
    if raster.nodata not in targets:
        return raster.nodata
    # e.g. an observed map with nodata 0 reclassified to 0/1 labels
    info = np.iinfo(np.result_type(raster.dtype, *(np.min_scalar_type(v) for v in targets)))
    return next(v for v in range(int(info.max), int(info.min) - 1, -1) if v not in targets)


def reclassify(
    raster: CategoricalRaster,
    table: RemapTable,
    nodata: Optional[int] = None,
    log: Optional[logging.Logger] = None,
) -> CategoricalRaster:
    """
    Replace every cell code by its target in `table`. Nodata cells stay nodata.

    The output keeps the input nodata value unless it is also a target code, in
    which case `nodata` (or the largest free value of the output dtype) is used.
    """
    log = log or logging.getLogger(JOB_ID)
    data = raster.data
    valid = raster.valid_mask
    out_nodata = _output_nodata(raster, table, nodata)
    dtype = _output_dtype(raster, table, out_nodata)
    if out_nodata != raster.nodata:
        log.info(f"Nodata of {raster.name or 'raster'} moves from {raster.nodata} to {out_nodata}")

    if table.default is None:
        missing = table.unmapped(raster.codes())
        if missing:
            log.warning(f"Codes {missing} of {raster.name or 'raster'} are not in table {table.name or ''} and keep their value")
        out = data.astype(dtype, copy=True)
    else:
        out = np.full(data.shape, table.default, dtype=dtype)

    present = set(np.unique(data[valid]).tolist())
    for source, target in table.mapping.items():
        if source in present:
            out[(data == source) & valid] = target
    out[~valid] = out_nodata

    log.info(f"Reclassified {raster.name or 'raster'} with table {table.name or ''}")
    return CategoricalRaster(out, raster.transform, raster.crs, out_nodata, raster.name)


def load_table(path: str) -> RemapTable:
    """
    Read a table from JSON: {"pairs": [[src, dst], ...], "default": null|int, "name": str}.
    """
    with open_file(path, "rt") as f:
        raw = json.load(f)
    return RemapTable.from_pairs(raw["pairs"], raw.get("default"), raw.get("name"))


def main():
    log = setup_logger(JOB_ID)
    p = argparse.ArgumentParser(description="Remap the codes of a categorical raster.")
    p.add_argument("--raster_path", required=True, help="Input raster (local or S3)")
    p.add_argument("--output_path", required=True, help="Output raster (local or S3)")
    group = p.add_mutually_exclusive_group(required=True)
    group.add_argument("--policy", help="Observed-map inclusion policy name (0/1 output)")
    group.add_argument("--projected_codes", type=int, nargs="+", help="Projected-map cropland codes (0/10 output)")
    group.add_argument("--table_path", help="JSON remap table (local or S3)")
    args = p.parse_args()

    try:
        if args.policy:
            table = policy_table(args.policy)
        elif args.projected_codes:
            table = projected_table(args.projected_codes)
        else:
            table = load_table(args.table_path)

        raster = load_raster(args.raster_path, log=log)
        save_raster(reclassify(raster, table, log=log), args.output_path, log=log)
        log.success({"output_path": args.output_path})

    except Exception as e:
        log.error(f"{JOB_ID} run failed: {type(e).__name__}: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
