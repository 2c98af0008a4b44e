"""Best-configuration selection and the final refit/held-out evaluation."""

import logging
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence

import numpy as np
import pandas as pd
from sklearn.base import BaseEstimator

from . import preprocessing
from .config import DEFAULT_SEED, TEST_METRICS
from .errors import ConfigurationError, FinalFitError, LeakageError, MissingColumnError, MissingTargetError, NoValidResultsError
from .families import ModelConfig, ModelFamily, get_family
from .metrics import get_metric, score_predictions
from .preprocessing import FittedRecipe
from .tuning import TuningResult

logger = logging.getLogger(__name__)

# Scores closer than this are treated as a tie
TIE_RTOL = 1e-9
TIE_ATOL = 1e-12


class Candidate(NamedTuple):
    family: str
    config: ModelConfig
    score: float


def _check_direction(direction: str) -> str:
    if direction not in ('minimize', 'maximize'):
        raise ConfigurationError(f"direction must be 'minimize' or 'maximize', got {direction!r}")
    return direction


def _direction(metric: str, direction: Optional[str]) -> str:
    return _check_direction(direction or get_metric(metric).direction)


def _best_value(values: np.ndarray, direction: str) -> float:
    return float(values.min() if direction == 'minimize' else values.max())


def _valid_summary(tuning_result: TuningResult, metric: str) -> pd.DataFrame:
    if metric not in tuning_result.metrics:
        raise ConfigurationError(
            f"Metric '{metric}' was not computed for {tuning_result.family}; have {list(tuning_result.metrics)}"
        )
    summary = tuning_result.collect_metrics()
    summary = summary.loc[(summary['metric'] == metric) & summary['mean'].notna()]
    if summary.empty:
        raise NoValidResultsError(
            f"No configuration of '{tuning_result.family}' produced a valid {metric}"
        )
    return summary


def select_best(tuning_result: TuningResult, metric: str = 'rmse',
                direction: Optional[str] = None) -> ModelConfig:
    """Configuration with the best mean ``metric``; ties go to the simpler model."""
    direction = _direction(metric, direction)
    summary = _valid_summary(tuning_result, metric)
    best = _best_value(summary['mean'].to_numpy(), direction)
    tied = summary.loc[np.isclose(summary['mean'], best, rtol=TIE_RTOL, atol=TIE_ATOL), 'config_id']

    family = get_family(tuning_result.family)
    configs = [tuning_result.config(config_id) for config_id in tied]
    return min(configs, key=family.simplicity_key)


def best_score(tuning_result: TuningResult, config: ModelConfig, metric: str = 'rmse') -> float:
    summary = _valid_summary(tuning_result, metric)
    row = summary.loc[summary['config_id'] == config.config_id, 'mean']
    if row.empty:
        raise NoValidResultsError(f"{config} has no valid {metric}")
    return float(row.iloc[0])


def candidates(results: Iterable[TuningResult], metric: str = 'rmse',
               direction: Optional[str] = None) -> List[Candidate]:
    """Best configuration and score of each family's sweep."""
    picked = []
    for result in results:
        config = select_best(result, metric, direction)
        picked.append(Candidate(result.family, config, best_score(result, config, metric)))
    return picked


def select_winner(family_bests: Sequence[Candidate], direction: str = 'minimize') -> Candidate:
    """Global best across families; ties go to the lower complexity rank."""
    if not family_bests:
        raise NoValidResultsError("No candidate models to choose from")
    direction = _check_direction(direction)
    scores = np.array([c.score for c in family_bests], dtype=float)
    best = _best_value(scores, direction)
    tied = [c for c, s in zip(family_bests, scores) if np.isclose(s, best, rtol=TIE_RTOL, atol=TIE_ATOL)]
    return min(tied, key=lambda c: get_family(c.family).complexity_rank)


class FinalModel:
    """Winning configuration refit on the full training subset.

    Opaque handle for reporting: predictions on raw subsets and per-feature
    importances. Built once by :func:`finalize` and not refit afterwards.
    """

    def __init__(self, family: ModelFamily, config: ModelConfig, recipe: FittedRecipe,
                 estimator: BaseEstimator, X_train: pd.DataFrame, y_train: pd.Series,
                 seed: Optional[int] = None):
        self._family = family
        self._config = config
        self._recipe = recipe
        self._estimator = estimator
        self._X_train = X_train
        self._y_train = y_train
        self._seed = seed
        self._importances: Optional[Dict[str, float]] = None

    @property
    def config(self) -> ModelConfig:
        return self._config

    @property
    def family(self) -> str:
        return self._family.name

    @property
    def recipe(self) -> FittedRecipe:
        return self._recipe

    @property
    def feature_names(self) -> List[str]:
        return list(self._recipe.feature_names)

    def predict(self, subset: pd.DataFrame) -> np.ndarray:
        baked = preprocessing.apply(self._recipe, subset)
        return self._estimator.predict(baked[self.feature_names])

    def importances(self) -> Dict[str, float]:
        """Variable importance per transformed feature, largest first."""
        if self._importances is None:
            scores = self._family.importances(self._estimator, self._X_train, self._y_train, self._seed)
            self._importances = {str(k): float(v) for k, v in scores.items()}
        return dict(self._importances)

    def __repr__(self) -> str:
        return f"FinalModel({self._config})"


def evaluate(model, test: pd.DataFrame, target: str,
             metrics: Sequence[str] = TEST_METRICS) -> Dict[str, float]:
    """Score ``model.predict(test)`` against the true outcome of ``test``."""
    if target not in test.columns:
        raise MissingColumnError(f"Outcome column '{target}' not found in test subset")
    truth = test[target]
    if truth.isna().any():
        raise MissingTargetError(f"Test subset has {int(truth.isna().sum())} missing outcomes")
    return score_predictions(truth.to_numpy(), np.asarray(model.predict(test)), metrics)


def finalize(winner_config: ModelConfig, fitted_recipe: FittedRecipe,
             train: pd.DataFrame, test: pd.DataFrame,
             metrics: Sequence[str] = TEST_METRICS, seed: Optional[int] = DEFAULT_SEED,
             family: Optional[ModelFamily] = None):
    """Refit the winner on all of ``train`` and score it once on ``test``.

    ``fitted_recipe`` must have been fit on exactly ``train``. Returns
    ``(final_model, test_metrics)``.
    """
    family = family or get_family(winner_config.family)
    if fitted_recipe.fingerprint != preprocessing.row_fingerprint(train):
        raise LeakageError("Final recipe was not fit on the full training subset")

    try:
        X_train, y_train = preprocessing.split_xy(preprocessing.apply(fitted_recipe, train), fitted_recipe)
        estimator = family.build(winner_config, seed=seed, n_features=X_train.shape[1])
        estimator.fit(X_train, y_train)
    except Exception as e:
        raise FinalFitError(f"Refit of {winner_config} on the training set failed: {e}") from e

    final_model = FinalModel(family, winner_config, fitted_recipe, estimator, X_train, y_train, seed)
    test_metrics = evaluate(final_model, test, fitted_recipe.recipe.target, metrics)
    logger.info("Final %s on %d test rows: %s", winner_config, len(test),
                ', '.join(f"{k}={v:.4f}" for k, v in test_metrics.items()))
    return final_model, test_metrics
