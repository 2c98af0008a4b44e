"""Tests for loading and cleaning the raw track table."""

import os
import tempfile
import unittest

import pandas as pd

from music_ml.cleaning import clean_names, clean_tracks, load_dataset
from music_ml.config import BINARY_PREDICTORS, CANONICAL_COLUMNS, MIN_POPULARITY
from music_ml.errors import EmptyDatasetError, MissingColumnError
from tests.helpers import make_raw_tracks


class CleanNamesTests(unittest.TestCase):
    def test_camel_case_and_spaces_become_snake_case(self):
        self.assertEqual(clean_names(['durationMs', 'Release Year', 'id']),
                         ['duration_ms', 'release_year', 'id'])


class CleanTracksTests(unittest.TestCase):
    def setUp(self):
        self.raw = make_raw_tracks(300, seed=3)
        self.music = clean_tracks(self.raw)

    def test_low_popularity_tracks_are_dropped(self):
        self.assertTrue((self.music['popularity'] >= MIN_POPULARITY).all())
        self.assertEqual(len(self.music), int((self.raw['popularity'] >= MIN_POPULARITY).sum()))

    def test_confidence_scores_are_thresholded(self):
        kept = self.raw.loc[self.raw['popularity'] >= MIN_POPULARITY].sort_values('id')
        expected = (kept['liveness'] >= 0.8).astype(int).to_numpy()
        self.assertEqual(self.music['liveness'].astype(int).tolist(), expected.tolist())
        expected = (kept['speechiness'] >= 0.66).astype(int).to_numpy()
        self.assertEqual(self.music['speechiness'].astype(int).tolist(), expected.tolist())

    def test_binary_columns_are_categorical_with_both_levels(self):
        for col in BINARY_PREDICTORS:
            self.assertIsInstance(self.music[col].dtype, pd.CategoricalDtype, col)
            self.assertEqual(list(self.music[col].cat.categories), [0, 1])

    def test_mood_features_are_percent_scaled(self):
        self.assertLessEqual(self.music['energy'].max(), 100)
        self.assertGreater(self.music['energy'].max(), 1)

    def test_canonical_order_sorted_by_id(self):
        self.assertEqual(list(self.music.columns), CANONICAL_COLUMNS)
        self.assertTrue(self.music['id'].is_monotonic_increasing)

    def test_input_is_not_modified(self):
        before = self.raw.copy()
        clean_tracks(self.raw)
        pd.testing.assert_frame_equal(self.raw, before)

    def test_rows_without_target_are_dropped(self):
        raw = self.raw.copy()
        raw.loc[raw.index[:3], 'popularity'] = None
        music = clean_tracks(raw)
        self.assertFalse(music['popularity'].isna().any())

    def test_missing_columns_are_reported(self):
        with self.assertRaises(MissingColumnError):
            clean_tracks(self.raw.drop(columns=['tempo']))

    def test_everything_filtered_is_an_error(self):
        raw = self.raw.copy()
        raw['popularity'] = 0
        with self.assertRaises(EmptyDatasetError):
            clean_tracks(raw)

    def test_load_dataset_reads_csv(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, 'data.csv')
            self.raw.to_csv(path, index=False)
            music = load_dataset(path)
        self.assertEqual(len(music), len(self.music))


if __name__ == '__main__':
    unittest.main()
