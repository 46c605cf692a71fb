#!/usr/bin/env python3
"""
Land-cover legend of the observed map and the cropland inclusion policies.

Codes follow the MapBiomas Brazil integrated land cover collection. A policy
names the set of observed codes counted as cropland; every other legend code
is counted as not-cropland.
"""
from types import MappingProxyType

# MapBiomas Brazil legend (collection 8)
MAPBIOMAS_LEGEND = MappingProxyType({
    1: "Forest",
    3: "Forest Formation",
    4: "Savanna Formation",
    5: "Mangrove",
    6: "Floodable Forest",
    9: "Forest Plantation",
    10: "Herbaceous and Shrubby Vegetation",
    11: "Wetland",
    12: "Grassland",
    13: "Other non Forest Formations",
    14: "Farming",
    15: "Pasture",
    18: "Agriculture",
    19: "Temporary Crop",
    20: "Sugar cane",
    21: "Mosaic of Uses",
    22: "Non vegetated area",
    23: "Beach, Dune and Sand Spot",
    24: "Urban Area",
    25: "Other non Vegetated Areas",
    26: "Water",
    27: "Not Observed",
    29: "Rocky Outcrop",
    30: "Mining",
    31: "Aquaculture",
    32: "Hypersaline Tidal Flat",
    33: "River, Lake and Ocean",
    35: "Palm Oil",
    36: "Perennial Crop",
    39: "Soybean",
    40: "Rice",
    41: "Other Temporary Crops",
    46: "Coffee",
    47: "Citrus",
    48: "Other Perennial Crops",
    49: "Wooded Sandbank Vegetation",
    50: "Herbaceous Sandbank Vegetation",
    62: "Cotton",
})

# Temporary and perennial crops, including the aggregate agriculture classes
CROPLAND_CODES = frozenset({18, 19, 20, 35, 36, 39, 40, 41, 46, 47, 48, 62})
MOSAIC_CODES = frozenset({21})
PASTURE_CODES = frozenset({15})

INCLUSION_POLICIES = MappingProxyType(
    {
        "cropland": CROPLAND_CODES,
        "cropland_mosaic": CROPLAND_CODES | MOSAIC_CODES,
        "cropland_mosaic_pasture": CROPLAND_CODES | MOSAIC_CODES | PASTURE_CODES,
    }
)

# Cropland code(s) of the projected land-use map
DEFAULT_PROJECTED_CODES = (1,)


def policy_codes(policy: str) -> frozenset:
    try:
        return INCLUSION_POLICIES[policy]
    except KeyError:
        raise ValueError(f"Unknown inclusion policy '{policy}'. Expected one of {sorted(INCLUSION_POLICIES)}") from None
