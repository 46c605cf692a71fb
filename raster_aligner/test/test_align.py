#!/usr/bin/env python3
import unittest
from unittest import mock

import geopandas as gpd
import numpy as np
from rasterio.enums import Resampling
from rasterio.transform import from_origin
from shapely.geometry import Polygon, box

from raster_aligner.align import (
    align_to_reference,
    change_resolution,
    crop_and_mask,
    pixel_size_in_crs,
    prepare_reference,
    reproject,
    resample_to_match,
)
from utils.errors import GeometryMismatchError
from utils.models import CategoricalRaster, RegionMask

UTM = "EPSG:32723"
X0, Y0 = 500000.0, 8900000.0


def make_raster(data, res=100.0, nodata=255, crs=UTM, x0=X0, y0=Y0, dtype=np.uint8):
    return CategoricalRaster(np.asarray(data, dtype=dtype), from_origin(x0, y0, res, res), crs, nodata)


class TestCropAndMask(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.raster = make_raster(np.arange(100).reshape(10, 10))
        # rows 3-6, cols 2-5 of the raster, minus the upper-right 2 x 2 quadrant
        cls.l_shape = Polygon(
            [
                (X0 + 200, Y0 - 700),
                (X0 + 600, Y0 - 700),
                (X0 + 600, Y0 - 500),
                (X0 + 400, Y0 - 500),
                (X0 + 400, Y0 - 300),
                (X0 + 200, Y0 - 300),
            ]
        )

    def expected(self):
        out = self.raster.data[3:7, 2:6].copy()
        out[0:2, 2:4] = 255
        return out

    def test_crop_to_mask_bounds_and_mask_outside_cells(self):
        """Cells whose centers fall outside the polygon become nodata."""
        result = crop_and_mask(self.raster, RegionMask(self.l_shape, UTM))

        self.assertEqual(result.shape, (4, 4))
        self.assertEqual(tuple(result.transform)[:6], tuple(from_origin(X0 + 200, Y0 - 300, 100, 100))[:6])
        np.testing.assert_array_equal(result.data, self.expected())
        self.assertEqual(result.nodata, 255)
        self.assertEqual(result.dtype, np.uint8)

    def test_mask_in_other_crs_is_reprojected(self):
        """A geographic mask is reprojected into the raster CRS before cropping."""
        geographic = gpd.GeoSeries([self.l_shape], crs=UTM).to_crs("EPSG:4326").iloc[0]
        result = crop_and_mask(self.raster, RegionMask(geographic, "EPSG:4326"))

        self.assertEqual(result.shape, (4, 4))
        np.testing.assert_array_equal(result.data, self.expected())

    def test_no_overlap_raises(self):
        far_away = RegionMask(box(X0 + 5000, Y0 + 5000, X0 + 6000, Y0 + 6000), UTM)
        with self.assertRaises(GeometryMismatchError):
            crop_and_mask(self.raster, far_away)

    def test_input_is_not_modified(self):
        before = self.raster.data.copy()
        crop_and_mask(self.raster, RegionMask(self.l_shape, UTM))
        np.testing.assert_array_equal(self.raster.data, before)
        self.assertFalse(self.raster.data.flags.writeable)


class TestReproject(unittest.TestCase):
    def setUp(self):
        rng = np.random.default_rng(42)
        self.raster = make_raster(rng.choice([3, 15, 39], size=(30, 30)))

    def test_nearest_neighbour_never_invents_codes(self):
        result = reproject(self.raster, "EPSG:4326")

        self.assertEqual(result.crs.to_epsg(), 4326)
        codes = set(result.codes().tolist())
        self.assertTrue(codes)
        self.assertTrue(codes <= {3, 15, 39}, f"Unexpected codes after reprojection: {codes}")
        self.assertEqual(result.nodata, 255)

    def test_reprojection_is_deterministic(self):
        first = reproject(self.raster, "EPSG:4326")
        second = reproject(self.raster, "EPSG:4326")
        self.assertTrue(first.equals(second))

    def test_interpolating_resampling_is_rejected(self):
        with self.assertRaises(ValueError):
            reproject(self.raster, "EPSG:4326", Resampling.bilinear)
        with self.assertRaises(ValueError):
            reproject(self.raster, "EPSG:4326", "average")

    def test_same_crs_returns_input(self):
        self.assertIs(reproject(self.raster, UTM), self.raster)


class TestChangeResolution(unittest.TestCase):
    def test_modal_aggregation(self):
        """Mode of each block; nodata ignored; empty blocks stay nodata; ties go to the smallest code."""
        data = np.array(
            [
                [1, 1, 2, 2],
                [1, 2, 2, 0],
                [0, 0, 3, 4],
                [0, 0, 4, 3],
            ]
        )
        raster = make_raster(data, res=30, nodata=0)

        result = change_resolution(raster, 60)

        np.testing.assert_array_equal(result.data, [[1, 2], [0, 3]])
        self.assertEqual(result.resolution, (60.0, 60.0))
        self.assertEqual((result.transform.c, result.transform.f), (X0, Y0))
        self.assertEqual(result.nodata, 0)

    def test_partial_block_uses_valid_members(self):
        """A block with a single valid cell keeps that cell's code."""
        data = np.zeros((2, 2), dtype=np.uint8)
        data[1, 1] = 7
        result = change_resolution(make_raster(data, res=30, nodata=0), 60)
        np.testing.assert_array_equal(result.data, [[7]])

    def test_factor_is_ceiling_of_resolution_ratio(self):
        """1000 m from 30 m gives a factor of 34; edge blocks are padded with nodata."""
        data = np.full((70, 35), 5, dtype=np.uint8)
        data[68:, :] = 9
        result = change_resolution(make_raster(data, res=30), 1000)

        self.assertEqual(result.shape, (3, 2))
        self.assertEqual(result.resolution, (30.0 * 34, 30.0 * 34))
        np.testing.assert_array_equal(result.data, [[5, 5], [5, 5], [9, 9]])

    def test_anisotropic_target(self):
        data = np.arange(24).reshape(4, 6) % 3
        result = change_resolution(make_raster(data, res=10), (30, 20))
        self.assertEqual(result.shape, (2, 2))
        self.assertEqual(result.resolution, (30.0, 20.0))

    def test_coarser_source_is_returned_unchanged(self):
        raster = make_raster(np.ones((3, 3)), res=1000)
        self.assertIs(change_resolution(raster, 30), raster)

    def test_only_mode_aggregation(self):
        with self.assertRaises(ValueError):
            change_resolution(make_raster(np.ones((4, 4)), res=30), 60, aggregation="mean")

    def test_strips_do_not_change_result(self):
        rng = np.random.default_rng(7)
        data = rng.choice([0, 3, 15, 39], size=(64, 48))
        raster = make_raster(data, res=30, nodata=0)

        whole = change_resolution(raster, 120)
        with mock.patch.dict("os.environ", {"AGGREGATE_STRIP_ROWS": "3"}):
            stripped = change_resolution(raster, 120)

        self.assertTrue(whole.equals(stripped))


class TestResampleToMatch(unittest.TestCase):
    def test_upsample_onto_reference_grid(self):
        source = make_raster(np.array([[1, 2, 3, 4], [5, 6, 7, 8], [9, 10, 11, 12], [13, 14, 15, 255]]), res=50)
        reference = make_raster(np.zeros((8, 8)), res=25)

        result = resample_to_match(source, reference)

        self.assertTrue(result.same_grid(reference))
        expected = np.repeat(np.repeat(source.data, 2, axis=0), 2, axis=1)
        np.testing.assert_array_equal(result.data, expected)
        self.assertEqual(result.nodata, 255)

    def test_matching_grid_is_returned_unchanged(self):
        raster = make_raster(np.ones((4, 4)))
        self.assertIs(resample_to_match(raster, make_raster(np.zeros((4, 4)))), raster)


class TestAlignToReference(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        rng = np.random.default_rng(0)
        fine = rng.choice([0, 3, 15, 21, 39], size=(80, 80), p=[0.05, 0.3, 0.2, 0.15, 0.3]).astype(np.uint8)
        cls.observed = make_raster(fine, res=25, nodata=0)
        projected = rng.choice([1, 2], size=(20, 20)).astype(np.uint8)
        cls.projected = make_raster(projected, res=100)
        cls.mask = RegionMask(box(X0 + 440, Y0 - 1560, X0 + 1560, Y0 - 440), UTM)

    def test_aligned_grid_matches_reference(self):
        reference = prepare_reference(self.projected, self.mask)
        aligned = align_to_reference(self.observed, reference, self.mask)

        self.assertTrue(aligned.same_grid(reference))
        self.assertEqual(reference.shape, (12, 12))
        self.assertTrue(set(aligned.codes().tolist()) <= {3, 15, 21, 39})

    def test_alignment_is_deterministic(self):
        reference = prepare_reference(self.projected, self.mask)
        first = align_to_reference(self.observed, reference, self.mask)
        second = align_to_reference(self.observed, reference, self.mask)
        self.assertTrue(first.equals(second))

    def test_alignment_across_crs(self):
        """A reference prepared in a geographic CRS still yields an identical grid."""
        reference = prepare_reference(self.projected, self.mask, target_crs="EPSG:4326")
        aligned = align_to_reference(self.observed, reference, self.mask)

        self.assertEqual(reference.crs.to_epsg(), 4326)
        self.assertTrue(aligned.same_grid(reference))
        self.assertTrue(set(aligned.codes().tolist()) <= {3, 15, 21, 39})

    def test_source_outside_region_raises(self):
        """A source that misses the region fails instead of aligning to an all-nodata grid."""
        reference = prepare_reference(self.projected, self.mask)
        far_east = make_raster(self.observed.data, res=25, nodata=0, x0=X0 + 500000.0)

        with self.assertRaises(GeometryMismatchError):
            align_to_reference(far_east, reference, self.mask)

    def test_pixel_size_in_same_crs(self):
        self.assertEqual(pixel_size_in_crs(self.projected, UTM), (100.0, 100.0))

    def test_pixel_size_in_geographic_crs(self):
        x, y = pixel_size_in_crs(self.projected, "EPSG:4326")
        self.assertTrue(0.0005 < x < 0.002 and 0.0005 < y < 0.002, (x, y))


if __name__ == "__main__":
    unittest.main()
