"""Grid tuning over resamples.

Every (grid point, fold pair) cell is an independent task: fit a fresh
recipe on the fold's analysis rows, fit the model, score the assessment rows.
Cells run through :class:`joblib.Parallel` and come back as plain records,
merged into a :class:`TuningResult` once all of them are in.
"""

import logging
import multiprocessing
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed, effective_n_jobs

from . import preprocessing
from .config import DEFAULT_SEED, TUNING_METRICS
from .errors import ConfigurationError, EmptyGridError, SweepAbortedError
from .families import ModelConfig, ModelFamily, get_family
from .metrics import get_metric, metric_set, score_predictions
from .preprocessing import Recipe
from .splitting import FoldPair, FoldSet

logger = logging.getLogger(__name__)


def _run_cell(family: ModelFamily, config: ModelConfig, pair: FoldPair, data: pd.DataFrame,
              recipe: Recipe, metric_names: Tuple[str, ...], seed: Optional[int],
              on_error: str) -> Dict[str, Any]:
    """Fit and score one configuration on one fold pair."""
    record: Dict[str, Any] = {
        'config_id': config.config_id,
        'fold_id': pair.id,
        'repeat': pair.repeat,
        'fold': pair.fold,
        'error': None,
    }
    start_time = time.time()
    try:
        fitted = preprocessing.fit(recipe, data.iloc[pair.train_rows])
        X_train, y_train = preprocessing.split_xy(
            preprocessing.apply(fitted, data.iloc[pair.train_rows]), fitted)
        X_val, y_val = preprocessing.split_xy(
            preprocessing.apply(fitted, data.iloc[pair.val_rows]), fitted)

        model = family.build(config, seed=seed, n_features=X_train.shape[1])
        model.fit(X_train, y_train)
        record.update(score_predictions(y_val, model.predict(X_val), metric_names))
    except Exception as e:
        if on_error == 'raise':
            raise
        record.update({name: np.nan for name in metric_names})
        record['error'] = f"{type(e).__name__}: {e}"
    record['fit_seconds'] = round(time.time() - start_time, 3)
    return record


@dataclass
class TuningResult:
    """Per-cell scores of one family's sweep plus read-only aggregates.

    ``scores`` is identical across runs with the same seed. Wall-clock fit
    times vary between runs and are kept apart in ``timings``.
    """
    family: str
    configs: List[ModelConfig]
    scores: pd.DataFrame
    metrics: Tuple[str, ...]
    fold_ids: List[str]
    timings: Optional[pd.DataFrame] = field(default=None, compare=False, repr=False)

    @property
    def n_cells(self) -> int:
        return len(self.scores)

    @property
    def n_failed(self) -> int:
        return int(self.scores['error'].notna().sum())

    @property
    def is_partial(self) -> bool:
        return self.n_failed > 0

    @property
    def failures(self) -> pd.DataFrame:
        failed = self.scores.loc[self.scores['error'].notna(), ['config_id', 'fold_id', 'error']]
        return failed.merge(self.param_frame(), on='config_id', how='left')

    def config(self, config_id: str) -> ModelConfig:
        for config in self.configs:
            if config.config_id == config_id:
                return config
        raise KeyError(f"No configuration '{config_id}' in {self.family} results")

    def param_frame(self) -> pd.DataFrame:
        return pd.DataFrame([{'config_id': c.config_id, **c.as_dict()} for c in self.configs])

    def collect_metrics(self, summarize: bool = True) -> pd.DataFrame:
        """Mean, count and standard error of each metric per configuration.

        Missing cells are excluded from the aggregate and counted in
        ``n_missing``. With ``summarize=False`` the per-fold values are
        returned in long form instead.
        """
        params = self.param_frame()
        if not summarize:
            long = self.scores.melt(
                id_vars=['config_id', 'fold_id'], value_vars=list(self.metrics),
                var_name='metric', value_name='value'
            )
            return params.merge(long, on='config_id')

        rows = []
        grouped = self.scores.groupby('config_id', sort=False)
        for config in self.configs:
            cells = grouped.get_group(config.config_id)
            for metric in self.metrics:
                values = cells[metric].dropna()
                n = len(values)
                rows.append({
                    'config_id': config.config_id,
                    **config.as_dict(),
                    'metric': metric,
                    'mean': float(values.mean()) if n else np.nan,
                    'n': n,
                    'std_err': float(values.std(ddof=1) / np.sqrt(n)) if n > 1 else np.nan,
                    'n_missing': len(cells) - n,
                })
        return pd.DataFrame(rows)

    def show_best(self, metric: str = 'rmse', n: int = 5, direction: Optional[str] = None) -> pd.DataFrame:
        """Top ``n`` configurations by mean ``metric``."""
        if metric not in self.metrics:
            raise ConfigurationError(f"Metric '{metric}' was not computed; have {list(self.metrics)}")
        direction = direction or get_metric(metric).direction
        summary = self.collect_metrics()
        summary = summary.loc[(summary['metric'] == metric) & summary['mean'].notna()]
        summary = summary.sort_values('mean', ascending=(direction == 'minimize'), kind='mergesort')
        return summary.head(n).reset_index(drop=True)


def _resolve_grid(family: ModelFamily,
                  param_grid: Sequence[Union[ModelConfig, Mapping[str, Any]]]) -> List[ModelConfig]:
    if not param_grid:
        raise EmptyGridError(f"Empty parameter grid for '{family.name}'")
    if all(isinstance(point, ModelConfig) for point in param_grid):
        configs = list(param_grid)
        wrong = [c for c in configs if c.family != family.name]
        if wrong:
            raise ConfigurationError(f"Grid for '{family.name}' contains configs of {wrong[0].family}")
        if len({c.config_id for c in configs}) != len(configs):
            raise ConfigurationError("Grid configurations need unique config ids")
        return configs
    return family.grid_from(param_grid)


def tune(family: Union[ModelFamily, str],
         param_grid: Sequence[Union[ModelConfig, Mapping[str, Any]]],
         fold_set: FoldSet,
         recipe: Recipe,
         metrics: Sequence[str] = TUNING_METRICS,
         seed: Optional[int] = DEFAULT_SEED,
         n_jobs: int = 1,
         timeout_seconds: Optional[float] = None,
         on_error: str = 'record',
         max_failed_fraction: Optional[float] = None,
         backend: Optional[str] = None) -> TuningResult:
    """Evaluate every grid point on every fold pair of ``fold_set``.

    ``on_error='record'`` keeps a failed cell as missing and logs it with its
    family, configuration and fold; ``'raise'`` propagates the first failure.
    A worker exceeding ``timeout_seconds``, or more than
    ``max_failed_fraction`` of cells failing, aborts the whole sweep. With a
    single job the timeout bounds the whole sweep and is checked between
    cells.
    """
    if isinstance(family, str):
        family = get_family(family)
    if on_error not in ('record', 'raise'):
        raise ConfigurationError("on_error must be 'record' or 'raise'")
    metric_names = tuple(metric_set(metrics))
    configs = _resolve_grid(family, param_grid)
    if len(fold_set) == 0:
        raise ConfigurationError("Fold set has no fold pairs")

    n_cells = len(configs) * len(fold_set)
    logger.info("Tuning %s: %d configurations x %d resamples = %d cells",
                family.name, len(configs), len(fold_set), n_cells)
    start_time = time.time()

    cells = [(config, pair) for config in configs for pair in fold_set]
    if timeout_seconds is not None and effective_n_jobs(n_jobs) == 1:
        # Parallel ignores its timeout without workers; check the deadline between cells
        records = []
        for config, pair in cells:
            if time.time() - start_time > timeout_seconds:
                raise SweepAbortedError(
                    f"Sweep for '{family.name}' aborted after {timeout_seconds}s timeout "
                    f"({len(records)}/{n_cells} cells done)"
                )
            records.append(_run_cell(family, config, pair, fold_set.data, recipe,
                                     metric_names, seed, on_error))
    else:
        try:
            records = Parallel(n_jobs=n_jobs, timeout=timeout_seconds, backend=backend)(
                delayed(_run_cell)(family, config, pair, fold_set.data, recipe,
                                   metric_names, seed, on_error)
                for config, pair in cells
            )
        except (TimeoutError, multiprocessing.TimeoutError) as e:
            raise SweepAbortedError(
                f"Sweep for '{family.name}' aborted after {timeout_seconds}s timeout"
            ) from e

    records = pd.DataFrame.from_records(records)
    scores = records.drop(columns=['fit_seconds'])
    result = TuningResult(
        family=family.name,
        configs=configs,
        scores=scores,
        metrics=metric_names,
        fold_ids=fold_set.ids(),
        timings=records[['config_id', 'fold_id', 'fit_seconds']],
    )

    for _, cell in scores.loc[scores['error'].notna()].iterrows():
        logger.warning("%s %s failed on %s: %s", family.name,
                       result.config(cell['config_id']), cell['fold_id'], cell['error'])

    failed_fraction = result.n_failed / n_cells
    if max_failed_fraction is not None and failed_fraction > max_failed_fraction:
        raise SweepAbortedError(
            f"Sweep for '{family.name}' aborted: {result.n_failed}/{n_cells} cells failed"
        )

    logger.info("Tuned %s in %.1fs (%d/%d cells failed)", family.name,
                time.time() - start_time, result.n_failed, n_cells)
    return result
