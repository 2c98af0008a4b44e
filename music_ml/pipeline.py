"""Stage sequencing: clean -> split -> recipe -> tune -> select -> finalize.

Each stage persists its output in an :class:`ArtifactStore` together with the
settings it depends on, and reuses it on the next run while those settings
are unchanged and ``force`` is not set. Worker count, timeout and reporting
never rerun the sweep; the seed, the split and the grid do.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import pandas as pd

from . import preprocessing
from .cleaning import load_dataset
from .config import TEST_METRICS, TUNING_METRICS, FamilySummary, PipelineConfig, format_params
from .errors import NoValidResultsError, PipelineError, SweepAbortedError
from .families import ModelFamily, get_family
from .metrics import get_metric
from .preprocessing import MUSIC_RECIPE, Recipe
from .selection import Candidate, FinalModel, best_score, finalize, select_best, select_winner
from .splitting import FoldSet, Split, initial_split, make_folds
from .storage import (
    DATASET_KEY, FINAL_MODEL_KEY, FOLDS_KEY, RECIPE_KEY, SPLIT_KEY, TEST_KEY,
    TEST_METRICS_KEY, TRAIN_KEY, ArtifactStore, tuned_key,
)
from .tuning import TuningResult, tune

logger = logging.getLogger(__name__)


@dataclass
class PipelineReport:
    """What each stage did and the answer the pipeline produced."""
    stages: Dict[str, str] = field(default_factory=dict)
    families: List[FamilySummary] = field(default_factory=list)
    winner: Optional[Candidate] = None
    test_metrics: Dict[str, float] = field(default_factory=dict)
    importances: Dict[str, float] = field(default_factory=dict)

    @property
    def cells_failed(self) -> int:
        return sum(f['n_failed'] for f in self.families)

    @property
    def partial(self) -> bool:
        return any(f['partial'] for f in self.families)

    def summary_lines(self) -> List[str]:
        lines = [f"{stage:<10} {status}" for stage, status in self.stages.items()]
        for f in self.families:
            note = f" ({f['n_failed']}/{f['n_cells']} cells failed, partial grid)" if f['partial'] else ''
            if f['best_config'] is None:
                lines.append(f"{f['family']:<18} no valid results{note}")
                continue
            lines.append(f"{f['family']:<18} best {f['best_score']:.4f} with {format_params(f['best_params'])}{note}")
        if self.winner is not None:
            lines.append(f"Winner: {self.winner.config}")
        for name, value in self.test_metrics.items():
            lines.append(f"Test {name}: {value:.4f}")
        return lines


def _guard(report: PipelineReport, stage: str, func: Callable[..., Any], *args,
           family: Optional[str] = None, pending: Optional[TuningResult] = None, **kwargs) -> Any:
    """Run one stage, converting failures into a :class:`PipelineError`."""
    try:
        return func(*args, **kwargs)
    except PipelineError:
        raise
    except Exception as e:
        report.stages[stage] = 'failed'
        cells = report.cells_failed + (pending.n_failed if pending is not None else 0)
        partial = report.partial or (pending is not None and pending.is_partial)
        if isinstance(e, SweepAbortedError):
            logger.error("Sweep aborted in stage %s: %s", stage, e)
        raise PipelineError(stage, e, cells_affected=cells, partial=partial, family=family) from e


def _family(config: PipelineConfig, name: str) -> ModelFamily:
    family = get_family(name)
    overrides = config.engine_args.get(name)
    return family.with_engine_args(**overrides) if overrides else family


def clean_settings(config: PipelineConfig) -> Dict[str, Any]:
    return {'data_path': config.data_path}


def split_settings(config: PipelineConfig) -> Dict[str, Any]:
    return dict(
        clean_settings(config),
        target_column=config.target_column,
        train_fraction=config.train_fraction,
        strata_breaks=config.strata_breaks,
        v=config.v,
        repeats=config.repeats,
        seed=config.seed,
    )


def tune_settings(config: PipelineConfig, family_name: str) -> Dict[str, Any]:
    """Everything a saved sweep depends on; worker count and timeout do not count."""
    return dict(
        split_settings(config),
        levels=config.levels,
        metrics=_tuning_metrics(config),
        on_error=config.on_error,
        max_failed_fraction=config.max_failed_fraction,
        engine_args=dict(config.engine_args.get(family_name) or {}),
    )


def _tuning_metrics(config: PipelineConfig) -> Tuple[str, ...]:
    return TUNING_METRICS if config.metric in TUNING_METRICS else TUNING_METRICS + (config.metric,)


def stage_clean(config: PipelineConfig, store: ArtifactStore, force: bool = False) -> pd.DataFrame:
    settings = clean_settings(config)
    if not force and store.is_current(DATASET_KEY, settings):
        logger.info("Using cleaned dataset from %s", store)
        return store.load(DATASET_KEY)
    music = load_dataset(config.data_path)
    store.save(music, DATASET_KEY, settings)
    return music


def stage_split(config: PipelineConfig, store: ArtifactStore, music: pd.DataFrame,
                force: bool = False) -> FoldSet:
    settings = split_settings(config)
    if not force and all(store.is_current(k, settings) for k in (SPLIT_KEY, TRAIN_KEY, TEST_KEY, FOLDS_KEY)):
        logger.info("Using split and folds from %s", store)
        return store.load(FOLDS_KEY)

    music_split: Split = initial_split(
        music, train_fraction=config.train_fraction, stratify_column=config.target_column,
        seed=config.seed, breaks=config.strata_breaks,
    )
    music_train = music_split.training()
    music_folds = make_folds(music_train, v=config.v, repeats=config.repeats, seed=config.seed)

    store.save(music_split, SPLIT_KEY, settings)
    store.save(music_train, TRAIN_KEY, settings)
    store.save(music_split.testing(), TEST_KEY, settings)
    store.save(music_folds, FOLDS_KEY, settings)
    return music_folds


def stage_recipe(config: PipelineConfig, store: ArtifactStore, force: bool = False) -> Recipe:
    settings = split_settings(config)
    if not force and store.is_current(RECIPE_KEY, settings):
        return store.load(RECIPE_KEY)
    recipe = MUSIC_RECIPE
    if recipe.target != config.target_column:
        recipe = Recipe(config.target_column, recipe.predictors, recipe.categorical)

    # Prep and bake once on the training set to catch schema problems early
    fitted, _ = preprocessing.fit_transform(recipe, store.load(TRAIN_KEY))
    logger.info("Recipe %s -> %d features: %s", recipe.formula, len(fitted.feature_names),
                ', '.join(fitted.feature_names))
    store.save(recipe, RECIPE_KEY, settings)
    return recipe


def stage_tune(config: PipelineConfig, store: ArtifactStore, family_name: str,
               force: bool = False) -> TuningResult:
    key = tuned_key(family_name)
    settings = tune_settings(config, family_name)
    if not force and store.is_current(key, settings):
        logger.info("Using %s tuning results from %s", family_name, store)
        return store.load(key)

    family = _family(config, family_name)
    recipe: Recipe = store.load(RECIPE_KEY)
    music_folds: FoldSet = store.load(FOLDS_KEY)

    n_predictors = len(preprocessing.fit(recipe, music_folds.data).feature_names)
    grid = family.regular_grid(config.levels, n_predictors=n_predictors)
    result = tune(
        family, grid, music_folds, recipe,
        metrics=_tuning_metrics(config),
        seed=config.seed,
        n_jobs=config.n_jobs,
        timeout_seconds=config.timeout_seconds,
        on_error=config.on_error,
        max_failed_fraction=config.max_failed_fraction,
    )
    store.save(result, key, settings)
    return result


def summarize_family(result: TuningResult, metric: str) -> FamilySummary:
    """Best configuration of one sweep, or an empty summary when nothing scored."""
    try:
        best = select_best(result, metric)
    except NoValidResultsError as e:
        logger.error("Leaving %s out of the selection: %s", result.family, e)
        return FamilySummary(
            family=result.family,
            n_cells=result.n_cells,
            n_failed=result.n_failed,
            partial=True,
            best_config=None,
            best_params={},
            best_score=float('nan'),
        )
    return FamilySummary(
        family=result.family,
        n_cells=result.n_cells,
        n_failed=result.n_failed,
        partial=result.is_partial,
        best_config=best.config_id,
        best_params=best.as_dict(),
        best_score=best_score(result, best, metric),
    )


def stage_finalize(config: PipelineConfig, store: ArtifactStore, winner: Candidate):
    recipe: Recipe = store.load(RECIPE_KEY)
    music_train = store.load(TRAIN_KEY)
    music_test = store.load(TEST_KEY)

    # Fresh fit on the full training set; no fold recipe is reused
    fitted = preprocessing.fit(recipe, music_train)
    final_model, test_metrics = finalize(
        winner.config, fitted, music_train, music_test,
        metrics=TEST_METRICS, seed=config.seed, family=_family(config, winner.family),
    )
    store.save(final_model, FINAL_MODEL_KEY)
    store.save(test_metrics, TEST_METRICS_KEY)
    return final_model, test_metrics


def run_pipeline(config: PipelineConfig, store: Optional[ArtifactStore] = None,
                 force: bool = False) -> PipelineReport:
    """Run every stage in order and return the report.

    Raises :class:`PipelineError` naming the failed stage.
    """
    report = PipelineReport()
    _guard(report, 'config', config.validate)
    store = store or ArtifactStore(config.artifact_dir)

    music = _guard(report, 'clean', stage_clean, config, store, force=force)
    report.stages['clean'] = f"{len(music)} tracks"

    music_folds = _guard(report, 'split', stage_split, config, store, music, force=force)
    report.stages['split'] = f"{len(music_folds.data)} train rows, {len(music_folds)} resamples"

    recipe = _guard(report, 'recipe', stage_recipe, config, store, force=force)
    report.stages['recipe'] = recipe.formula

    results: List[TuningResult] = []
    for name in config.families:
        result = _guard(report, 'tune', stage_tune, config, store, name, force=force, family=name)
        results.append(result)
        report.families.append(_guard(report, 'select', summarize_family, result, config.metric,
                                      family=name, pending=result))
    report.stages['tune'] = f"{sum(r.n_cells for r in results)} cells, {report.cells_failed} failed"

    family_bests = [
        Candidate(result.family, result.config(summary['best_config']), summary['best_score'])
        for result, summary in zip(results, report.families)
        if summary['best_config'] is not None
    ]
    direction = get_metric(config.metric).direction
    report.winner = _guard(report, 'select', select_winner, family_bests, direction)
    report.stages['select'] = str(report.winner.config)

    final_model, test_metrics = _guard(report, 'finalize', stage_finalize, config, store, report.winner)
    report.test_metrics = test_metrics
    report.importances = final_model.importances()
    report.stages['finalize'] = ', '.join(f"{k}={v:.4f}" for k, v in test_metrics.items())

    if report.partial:
        logger.warning("Results are based on a partial grid: %d sweep cells failed", report.cells_failed)
    return report


def load_final_model(store: ArtifactStore) -> FinalModel:
    return store.load(FINAL_MODEL_KEY)
