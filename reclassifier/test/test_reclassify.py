#!/usr/bin/env python3
import json
import os
import tempfile
import unittest

import numpy as np
from rasterio.transform import from_origin

from reclassifier.reclassify import RemapTable, load_table, policy_table, projected_table, reclassify
from utils.legends import CROPLAND_CODES, MAPBIOMAS_LEGEND
from utils.models import CategoricalRaster


def make_raster(data, nodata=255, dtype=np.uint8):
    return CategoricalRaster(np.asarray(data, dtype=dtype), from_origin(-50.0, -9.8, 0.01, 0.01), "EPSG:4326", nodata)


class TestRemapTable(unittest.TestCase):
    def test_later_duplicate_overrides_earlier(self):
        table = RemapTable.from_pairs([(3, 0), (39, 1), (39, 0)])
        self.assertEqual(table.mapping, {3: 0, 39: 0})

    def test_tables_are_immutable(self):
        table = RemapTable.from_pairs([(3, 0)])
        with self.assertRaises(Exception):
            table.default = 0

    def test_from_dict_accepts_json_keys(self):
        table = RemapTable.from_dict({"3": 0, "39": "1"})
        self.assertEqual(table.mapping, {3: 0, 39: 1})

    def test_unmapped_codes(self):
        table = RemapTable.from_pairs([(3, 0), (39, 1)])
        self.assertEqual(table.unmapped([3, 15, 21, 39]), [15, 21])

    def test_load_table_from_json(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "table.json")
            with open(path, "w") as f:
                json.dump({"pairs": [[3, 0], [39, 1]], "default": 0, "name": "soy"}, f)

            table = load_table(path)

        self.assertEqual(table.mapping, {3: 0, 39: 1})
        self.assertEqual(table.default, 0)
        self.assertEqual(table.name, "soy")


class TestPolicyTables(unittest.TestCase):
    def test_policy_tables_are_exhaustive(self):
        for policy in ("cropland", "cropland_mosaic", "cropland_mosaic_pasture"):
            table = policy_table(policy)
            self.assertEqual(set(table.mapping), set(MAPBIOMAS_LEGEND), policy)
            self.assertEqual(set(table.mapping.values()), {0, 1}, policy)
            self.assertIsNone(table.default)

    def test_policies_differ_only_in_included_codes(self):
        cropland = policy_table("cropland").mapping
        broad = policy_table("cropland_mosaic_pasture").mapping

        for code in CROPLAND_CODES:
            self.assertEqual(cropland[code], 1)
        self.assertEqual((cropland[15], cropland[21]), (0, 0))
        self.assertEqual((broad[15], broad[21]), (1, 1))
        self.assertEqual(cropland[3], 0)
        self.assertEqual(broad[3], 0)

    def test_unknown_policy(self):
        with self.assertRaises(ValueError):
            policy_table("forest")

    def test_projected_table_is_threshold(self):
        table = projected_table([1, 4])
        self.assertEqual(table.mapping, {1: 10, 4: 10})
        self.assertEqual(table.default, 0)


class TestReclassify(unittest.TestCase):
    def test_pass_through_keeps_unmapped_codes(self):
        raster = make_raster([[3, 39], [15, 255]])
        table = RemapTable.from_pairs([(3, 0), (39, 1)], name="partial")

        with self.assertLogs("reclassifier", level="WARNING") as logs:
            result = reclassify(raster, table)

        np.testing.assert_array_equal(result.data, [[0, 1], [15, 255]])
        self.assertEqual(result.nodata, 255)
        self.assertTrue(any("[15]" in line for line in logs.output))

    def test_threshold_maps_unlisted_codes_to_zero(self):
        raster = make_raster([[1, 2], [3, 255]])
        result = reclassify(raster, projected_table([1]))

        np.testing.assert_array_equal(result.data, [[10, 0], [0, 255]])
        self.assertEqual(result.nodata, 255)
        self.assertEqual(result.dtype, np.uint8)

    def test_nodata_colliding_with_a_label_is_moved(self):
        """An observed map with nodata 0 keeps its nodata cells distinct from the 0 label."""
        raster = make_raster([[0, 3], [39, 15]], nodata=0)
        result = reclassify(raster, policy_table("cropland"))

        self.assertNotIn(result.nodata, (0, 1))
        self.assertEqual(result.nodata, 255)
        np.testing.assert_array_equal(result.data, [[255, 0], [1, 0]])

    def test_explicit_nodata(self):
        raster = make_raster([[0, 39]], nodata=0)
        result = reclassify(raster, policy_table("cropland"), nodata=200)
        np.testing.assert_array_equal(result.data, [[200, 1]])

        with self.assertRaises(ValueError):
            reclassify(raster, policy_table("cropland"), nodata=1)

    def test_identity_table_is_idempotent(self):
        labels = reclassify(make_raster([[0, 3, 39], [15, 21, 18]], nodata=0), policy_table("cropland_mosaic"))
        again = reclassify(labels, RemapTable.identity(labels.codes()))
        self.assertTrue(again.equals(labels))

    def test_wide_targets_widen_dtype(self):
        raster = make_raster([[1, 2]])
        result = reclassify(raster, RemapTable.from_pairs([(1, 1000), (2, -1)]))
        np.testing.assert_array_equal(result.data, [[1000, -1]])
        self.assertTrue(np.issubdtype(result.dtype, np.signedinteger))

    def test_input_is_unchanged(self):
        raster = make_raster([[3, 39]])
        reclassify(raster, policy_table("cropland"))
        np.testing.assert_array_equal(raster.data, [[3, 39]])


if __name__ == "__main__":
    unittest.main()
