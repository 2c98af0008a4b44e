"""Feature recipe: dummy encoding followed by normalisation of all predictors.

A :class:`Recipe` declares the formula. :func:`fit` freezes the categorical
vocabulary and the centring/scaling statistics from one training subset;
:func:`apply` reuses them on any other subset without refitting.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

import joblib
import numpy as np
import pandas as pd
from sklearn.compose import ColumnTransformer
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import OneHotEncoder, StandardScaler

from .config import BINARY_PREDICTORS, TARGET_COLUMN
from .errors import (
    AlreadyTransformedError,
    DataError,
    EmptyDatasetError,
    FormulaError,
    MissingColumnError,
    MissingTargetError,
    UnknownCategoryError,
)

logger = logging.getLogger(__name__)

_TRANSFORMED_ATTR = 'music_ml.recipe'
_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_.]*$')


@dataclass(frozen=True)
class Recipe:
    """Unfit recipe: outcome, ordered predictors and which ones are categorical."""
    target: str
    predictors: Tuple[str, ...]
    categorical: Tuple[str, ...] = ()

    def __post_init__(self):
        if not self.predictors:
            raise FormulaError("A recipe needs at least one predictor")
        if len(set(self.predictors)) != len(self.predictors):
            raise FormulaError(f"Duplicate predictors in {self.predictors}")
        if self.target in self.predictors:
            raise FormulaError(f"Outcome '{self.target}' cannot also be a predictor")
        stray = [c for c in self.categorical if c not in self.predictors]
        if stray:
            raise FormulaError(f"Categorical columns {stray} are not predictors")

    @classmethod
    def from_formula(cls, formula: str, categorical: Sequence[str] = ()) -> 'Recipe':
        """Parse ``"outcome ~ a + b + c"``."""
        if formula.count('~') != 1:
            raise FormulaError(f"Formula must contain exactly one '~': {formula!r}")
        lhs, rhs = (side.strip() for side in formula.split('~'))
        terms = [term.strip() for term in rhs.split('+')]
        for name in [lhs] + terms:
            if not _NAME.match(name):
                raise FormulaError(f"Malformed term {name!r} in formula {formula!r}")
        return cls(target=lhs, predictors=tuple(terms), categorical=tuple(categorical))

    @property
    def numeric(self) -> List[str]:
        return [c for c in self.predictors if c not in self.categorical]

    @property
    def formula(self) -> str:
        return f"{self.target} ~ {' + '.join(self.predictors)}"


MUSIC_RECIPE = Recipe.from_formula(
    f"{TARGET_COLUMN} ~ acousticness + danceability + energy + instrumentalness + "
    "liveness + loudness + speechiness + tempo + valence + year + mode + explicit",
    categorical=BINARY_PREDICTORS,
)


@dataclass
class FittedRecipe:
    """Recipe with encoding vocabulary and scaling statistics frozen."""
    recipe: Recipe
    vocabulary: Dict[str, List[str]]
    pipeline: Pipeline = field(repr=False)
    feature_names: Tuple[str, ...]
    n_rows: int
    fingerprint: str

    @property
    def means(self) -> pd.Series:
        return pd.Series(self.pipeline.named_steps['normalize'].mean_, index=self.feature_names)

    @property
    def scales(self) -> pd.Series:
        return pd.Series(self.pipeline.named_steps['normalize'].scale_, index=self.feature_names)

    def statistics(self) -> pd.DataFrame:
        return pd.DataFrame({'mean': self.means, 'sd': self.scales})


def row_fingerprint(frame: pd.DataFrame) -> str:
    """Identify a subset by its row labels."""
    return joblib.hash((len(frame), np.asarray(frame.index)))


def _vocabulary(column: pd.Series) -> List[str]:
    # Declared levels win over observed ones so every fold sees the same dummies
    if isinstance(column.dtype, pd.CategoricalDtype):
        return [str(level) for level in column.cat.categories]
    return sorted(column.dropna().astype(str).unique().tolist())


def _check_columns(recipe: Recipe, subset: pd.DataFrame) -> None:
    missing = [c for c in recipe.predictors if c not in subset.columns]
    if missing:
        raise MissingColumnError(f"Subset is missing predictor columns: {missing}")
    bad_numeric = [c for c in recipe.numeric if not pd.api.types.is_numeric_dtype(subset[c])]
    if bad_numeric:
        raise DataError(f"Numeric predictors have non-numeric dtype: {bad_numeric}")
    with_na = [c for c in recipe.numeric if subset[c].isna().any()]
    if with_na:
        raise DataError(f"Numeric predictors contain missing values: {with_na}")


def _design_frame(recipe: Recipe, subset: pd.DataFrame) -> pd.DataFrame:
    X = pd.DataFrame(index=subset.index)
    for col in recipe.predictors:
        if col in recipe.categorical:
            X[col] = subset[col].astype(str).to_numpy(dtype=object)
        else:
            X[col] = subset[col].astype(float)
    return X


def _build_pipeline(recipe: Recipe, vocabulary: Dict[str, List[str]]) -> Pipeline:
    transformers = []
    if recipe.numeric:
        transformers.append(('numeric', 'passthrough', recipe.numeric))
    if recipe.categorical:
        encoder = OneHotEncoder(
            categories=[vocabulary[c] for c in recipe.categorical],
            drop='first',
            handle_unknown='error',
            sparse_output=False,
        )
        transformers.append(('dummy', encoder, list(recipe.categorical)))

    encode = ColumnTransformer(
        transformers=transformers,
        remainder='drop',
        verbose_feature_names_out=False,
    )
    return Pipeline(steps=[
        ('dummy', encode),
        ('normalize', StandardScaler()),
    ])


def fit(recipe: Recipe, training_subset: pd.DataFrame) -> FittedRecipe:
    """Estimate encoding vocabulary and normalisation statistics from one subset."""
    if len(training_subset) == 0:
        raise EmptyDatasetError("Cannot fit a recipe on an empty subset")
    if recipe.target not in training_subset.columns:
        raise MissingColumnError(f"Outcome column '{recipe.target}' not found")
    if training_subset[recipe.target].isna().any():
        raise MissingTargetError(f"Outcome '{recipe.target}' has missing values in the training subset")
    if training_subset.attrs.get(_TRANSFORMED_ATTR):
        raise AlreadyTransformedError("Cannot fit a recipe on already transformed data")
    _check_columns(recipe, training_subset)

    vocabulary = {c: _vocabulary(training_subset[c]) for c in recipe.categorical}
    pipeline = _build_pipeline(recipe, vocabulary)
    pipeline.fit(_design_frame(recipe, training_subset))

    feature_names = tuple(str(name) for name in pipeline.named_steps['dummy'].get_feature_names_out())
    return FittedRecipe(
        recipe=recipe,
        vocabulary=vocabulary,
        pipeline=pipeline,
        feature_names=feature_names,
        n_rows=len(training_subset),
        fingerprint=row_fingerprint(training_subset),
    )


def apply(fitted: FittedRecipe, subset: pd.DataFrame) -> pd.DataFrame:
    """Transform ``subset`` with the frozen vocabulary and statistics.

    Returns a new frame of transformed predictors, plus the untouched outcome
    when ``subset`` carries it. Levels outside the vocabulary raise
    :class:`UnknownCategoryError`.
    """
    recipe = fitted.recipe
    raw_missing = [c for c in recipe.predictors if c not in subset.columns]
    if subset.attrs.get(_TRANSFORMED_ATTR) or (
        raw_missing and set(fitted.feature_names) <= set(subset.columns)
    ):
        raise AlreadyTransformedError("Subset has already been transformed by a recipe")
    _check_columns(recipe, subset)

    for col in recipe.categorical:
        levels = set(subset[col].astype(str))
        unknown = levels - set(fitted.vocabulary[col])
        if unknown:
            raise UnknownCategoryError(col, unknown)

    values = fitted.pipeline.transform(_design_frame(recipe, subset))
    baked = pd.DataFrame(np.asarray(values, dtype=float), columns=list(fitted.feature_names),
                         index=subset.index)
    if recipe.target in subset.columns:
        baked[recipe.target] = subset[recipe.target].to_numpy()
    baked.attrs[_TRANSFORMED_ATTR] = fitted.fingerprint
    return baked


def fit_transform(recipe: Recipe, training_subset: pd.DataFrame) -> Tuple[FittedRecipe, pd.DataFrame]:
    """Fit on ``training_subset`` and return it transformed."""
    fitted = fit(recipe, training_subset)
    return fitted, apply(fitted, training_subset)


def split_xy(baked: pd.DataFrame, fitted: FittedRecipe) -> Tuple[pd.DataFrame, pd.Series]:
    """Separate transformed predictors from the outcome."""
    target = fitted.recipe.target
    if target not in baked.columns:
        raise MissingColumnError(f"Outcome column '{target}' not found")
    return baked[list(fitted.feature_names)], baked[target]
