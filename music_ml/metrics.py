"""Regression metrics used for tuning and held-out evaluation."""

from dataclasses import dataclass
from typing import Callable, Dict, Iterable

import numpy as np
from scipy import stats
from sklearn.metrics import mean_absolute_error, mean_squared_error, r2_score

from .errors import ConfigurationError


def rmse(y_true, y_pred) -> float:
    return float(np.sqrt(mean_squared_error(y_true, y_pred)))


def rsq(y_true, y_pred) -> float:
    """Squared Pearson correlation between truth and estimate.

    Returns NaN when either side is constant, as the correlation is undefined.
    """
    y_true = np.asarray(y_true, dtype=float)
    y_pred = np.asarray(y_pred, dtype=float)
    if np.ptp(y_true) == 0 or np.ptp(y_pred) == 0:
        return float('nan')
    r, _ = stats.pearsonr(y_true, y_pred)
    return float(r ** 2)


def r2(y_true, y_pred) -> float:
    return float(r2_score(y_true, y_pred))


def mae(y_true, y_pred) -> float:
    return float(mean_absolute_error(y_true, y_pred))


@dataclass(frozen=True)
class Metric:
    name: str
    func: Callable[..., float]
    direction: str  # 'minimize' or 'maximize'

    def __call__(self, y_true, y_pred) -> float:
        return self.func(y_true, y_pred)


METRICS: Dict[str, Metric] = {
    'rmse': Metric('rmse', rmse, 'minimize'),
    'rsq': Metric('rsq', rsq, 'maximize'),
    'r2': Metric('r2', r2, 'maximize'),
    'mae': Metric('mae', mae, 'minimize'),
}


def get_metric(name: str) -> Metric:
    try:
        return METRICS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown metric '{name}'. Must be one of {sorted(METRICS)}"
        ) from None


def metric_set(names: Iterable[str]) -> Dict[str, Metric]:
    """Resolve metric names, preserving order."""
    resolved = {name: get_metric(name) for name in names}
    if not resolved:
        raise ConfigurationError("At least one metric is required")
    return resolved


def score_predictions(y_true, y_pred, names: Iterable[str]) -> Dict[str, float]:
    return {name: metric(y_true, y_pred) for name, metric in metric_set(names).items()}
