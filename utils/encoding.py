#!/usr/bin/env python3
"""
Shared encoding for composite (agreement) rasters.

The observed layer is labelled 0/1 and the projected layer 0/10, so one
addition encodes every joint outcome:
- 0: neither map marks the cell as cropland (True Negative)
- 1: observed only (False Negative)
- 10: projected only (False Positive)
- 11: both maps (True Positive)
- 255: NoData (either input is nodata)
"""
import os

OBSERVED_NEGATIVE = 0
OBSERVED_POSITIVE = 1
PROJECTED_NEGATIVE = 0
PROJECTED_POSITIVE = 10

NEITHER = OBSERVED_NEGATIVE + PROJECTED_NEGATIVE
OBSERVED_ONLY = OBSERVED_POSITIVE + PROJECTED_NEGATIVE
PROJECTED_ONLY = OBSERVED_NEGATIVE + PROJECTED_POSITIVE
BOTH = OBSERVED_POSITIVE + PROJECTED_POSITIVE

COMPOSITE_CODES = (NEITHER, OBSERVED_ONLY, PROJECTED_ONLY, BOTH)

COMPOSITE_NODATA = int(os.getenv("EXTENT_NODATA_VALUE", "255"))

# (projected, observed) label pair -> composite code
COMPOSITE_PAIRING_DICT = {
    (PROJECTED_NEGATIVE, OBSERVED_NEGATIVE): NEITHER,  # True Negative
    (PROJECTED_NEGATIVE, OBSERVED_POSITIVE): OBSERVED_ONLY,  # False Negative
    (PROJECTED_POSITIVE, OBSERVED_NEGATIVE): PROJECTED_ONLY,  # False Positive
    (PROJECTED_POSITIVE, OBSERVED_POSITIVE): BOTH,  # True Positive
}

COMPOSITE_LABELS = {
    NEITHER: "neither",
    OBSERVED_ONLY: "observed_only",
    PROJECTED_ONLY: "projected_only",
    BOTH: "both",
}

# Fixed RGBA colors for the embedded color table of composite rasters
COMPOSITE_COLORS = {
    NEITHER: (230, 230, 230, 255),
    OBSERVED_ONLY: (31, 120, 180, 255),
    PROJECTED_ONLY: (227, 26, 28, 255),
    BOTH: (51, 160, 44, 255),
}
