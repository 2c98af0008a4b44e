"""Tests for the feature recipe: encoding, normalisation and leakage guards."""

import unittest

import numpy as np
import pandas as pd

from music_ml import preprocessing
from music_ml.errors import (
    AlreadyTransformedError, FormulaError, MissingColumnError, MissingTargetError, UnknownCategoryError,
)
from music_ml.preprocessing import MUSIC_RECIPE, Recipe
from music_ml.splitting import split
from tests.helpers import make_music

EXPECTED_FEATURES = (
    'danceability', 'energy', 'loudness', 'tempo', 'valence', 'year',
    'acousticness_1', 'instrumentalness_1', 'liveness_1', 'speechiness_1', 'mode_1', 'explicit_1',
)


class FormulaTests(unittest.TestCase):
    def test_parse_formula(self):
        recipe = Recipe.from_formula('y ~ a + b+c', categorical=['b'])
        self.assertEqual(recipe.target, 'y')
        self.assertEqual(recipe.predictors, ('a', 'b', 'c'))
        self.assertEqual(recipe.numeric, ['a', 'c'])
        self.assertEqual(recipe.formula, 'y ~ a + b + c')

    def test_malformed_formulas(self):
        for formula in ('y a + b', 'y ~ a ~ b', 'y ~ a + ', '~ a', 'y ~ a + a', 'y ~ y + a'):
            with self.assertRaises(FormulaError, msg=formula):
                Recipe.from_formula(formula)

    def test_categorical_must_be_a_predictor(self):
        with self.assertRaises(FormulaError):
            Recipe.from_formula('y ~ a + b', categorical=['c'])

    def test_music_recipe(self):
        self.assertEqual(MUSIC_RECIPE.target, 'popularity')
        self.assertEqual(len(MUSIC_RECIPE.predictors), 12)
        self.assertEqual(len(MUSIC_RECIPE.categorical), 6)


class RecipeTests(unittest.TestCase):
    def setUp(self):
        self.train, self.test = split(make_music(300, seed=11), 0.7, 'popularity', seed=123)
        self.fitted = preprocessing.fit(MUSIC_RECIPE, self.train)

    def test_feature_names(self):
        self.assertEqual(self.fitted.feature_names, EXPECTED_FEATURES)

    def test_training_predictors_are_centred_and_scaled(self):
        baked = preprocessing.apply(self.fitted, self.train)
        X = baked[list(EXPECTED_FEATURES)]
        np.testing.assert_allclose(X.mean().to_numpy(), 0, atol=1e-9)
        self.assertEqual(list(baked.index), list(self.train.index))

    def test_outcome_is_carried_untouched(self):
        baked = preprocessing.apply(self.fitted, self.test)
        np.testing.assert_array_equal(baked['popularity'].to_numpy(), self.test['popularity'].to_numpy())

    def test_outcome_is_optional_at_apply_time(self):
        baked = preprocessing.apply(self.fitted, self.test.drop(columns=['popularity']))
        self.assertEqual(tuple(baked.columns), EXPECTED_FEATURES)

    def test_apply_is_repeatable(self):
        first = preprocessing.apply(self.fitted, self.test)
        second = preprocessing.apply(self.fitted, self.test)
        self.assertTrue(np.array_equal(first.to_numpy(), second.to_numpy()))

    def test_apply_does_not_modify_input(self):
        before = self.test.copy()
        preprocessing.apply(self.fitted, self.test)
        pd.testing.assert_frame_equal(self.test, before)

    def test_transformed_input_is_rejected(self):
        baked = preprocessing.apply(self.fitted, self.test)
        with self.assertRaises(AlreadyTransformedError):
            preprocessing.apply(self.fitted, baked)
        with self.assertRaises(AlreadyTransformedError):
            preprocessing.fit(MUSIC_RECIPE, baked)

    def test_statistics_come_from_the_fit_subset_only(self):
        stats = self.fitted.statistics()
        self.assertAlmostEqual(stats.loc['energy', 'mean'], self.train['energy'].mean())
        self.assertAlmostEqual(stats.loc['energy', 'sd'], self.train['energy'].std(ddof=0))
        self.assertAlmostEqual(stats.loc['mode_1', 'mean'], (self.train['mode'] == 1).mean())

        test_stats = preprocessing.fit(MUSIC_RECIPE, self.test).statistics()
        self.assertFalse(np.allclose(stats['mean'], test_stats['mean']))

        baked = preprocessing.apply(self.fitted, self.test)
        # Test rows keep their own spread relative to the training statistics
        self.assertFalse(np.allclose(baked['energy'].mean(), 0, atol=1e-9))

    def test_fit_records_its_rows(self):
        self.assertEqual(self.fitted.n_rows, len(self.train))
        self.assertEqual(self.fitted.fingerprint, preprocessing.row_fingerprint(self.train))
        self.assertNotEqual(self.fitted.fingerprint, preprocessing.row_fingerprint(self.test))

    def test_missing_outcome_in_training_subset(self):
        train = self.train.copy()
        train.loc[train.index[0], 'popularity'] = np.nan
        with self.assertRaises(MissingTargetError):
            preprocessing.fit(MUSIC_RECIPE, train)

    def test_missing_predictor_column(self):
        with self.assertRaises(MissingColumnError):
            preprocessing.apply(self.fitted, self.test.drop(columns=['tempo']))


class VocabularyTests(unittest.TestCase):
    def setUp(self):
        self.recipe = Recipe.from_formula('y ~ x + colour', categorical=['colour'])
        self.train = pd.DataFrame({
            'y': [1.0, 2.0, 3.0, 4.0],
            'x': [0.5, 1.5, 2.5, 3.5],
            'colour': ['red', 'blue', 'red', 'green'],
        })

    def test_observed_levels_are_frozen(self):
        fitted = preprocessing.fit(self.recipe, self.train)
        self.assertEqual(fitted.vocabulary['colour'], ['blue', 'green', 'red'])
        self.assertEqual(fitted.feature_names, ('x', 'colour_green', 'colour_red'))

    def test_unseen_level_is_rejected(self):
        fitted = preprocessing.fit(self.recipe, self.train)
        new = pd.DataFrame({'y': [1.0], 'x': [1.0], 'colour': ['purple']})
        with self.assertRaises(UnknownCategoryError) as ctx:
            preprocessing.apply(fitted, new)
        self.assertEqual(ctx.exception.column, 'colour')
        self.assertEqual(ctx.exception.values, ['purple'])

    def test_declared_levels_survive_missing_observations(self):
        train = self.train.assign(colour=pd.Categorical(['red', 'red', 'red', 'red'],
                                                        categories=['blue', 'red']))
        fitted = preprocessing.fit(self.recipe, train)
        self.assertEqual(fitted.vocabulary['colour'], ['blue', 'red'])
        new = pd.DataFrame({'y': [1.0], 'x': [1.0], 'colour': ['blue']})
        baked = preprocessing.apply(fitted, new)
        self.assertEqual(list(baked.columns), ['x', 'colour_red', 'y'])


if __name__ == '__main__':
    unittest.main()
