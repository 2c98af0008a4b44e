"""Model family descriptors: hyperparameter schema, grid bounds and engine.

Each family is a strategy object; the tuning engine only talks to this
interface, so adding a family means registering one more descriptor.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Type

import numpy as np
import pandas as pd
from sklearn.base import BaseEstimator
from sklearn.ensemble import GradientBoostingRegressor, RandomForestRegressor
from sklearn.inspection import permutation_importance
from sklearn.linear_model import ElasticNet
from sklearn.model_selection import ParameterGrid
from sklearn.neighbors import KNeighborsRegressor

from .config import format_params
from .errors import ConfigurationError, EmptyGridError


@dataclass(frozen=True)
class ParamSpec:
    """A tunable hyperparameter and the range its regular grid spans.

    ``scale='log10'`` means ``lower``/``upper`` are exponents. ``upper=None``
    bounds the parameter by the number of predictors; ``capped`` clips a
    declared upper bound to it as well. ``simpler`` tells the selector which
    end of the range gives the simpler model.
    """
    name: str
    lower: float
    upper: Optional[float]
    scale: str = 'identity'
    integer: bool = False
    capped: bool = False
    simpler: str = 'lower'

    def bounds(self, n_predictors: Optional[int] = None) -> Tuple[float, float]:
        upper = self.upper
        if upper is None or self.capped:
            if n_predictors is None:
                if upper is None:
                    raise ConfigurationError(
                        f"'{self.name}' is bounded by the number of predictors, which is unknown"
                    )
            else:
                upper = n_predictors if upper is None else min(upper, n_predictors)
        if upper < self.lower:
            raise ConfigurationError(f"Empty range for '{self.name}': [{self.lower}, {upper}]")
        return self.lower, upper

    def values(self, levels: int, n_predictors: Optional[int] = None) -> List[Any]:
        lower, upper = self.bounds(n_predictors)
        points = np.linspace(lower, upper, levels)
        if self.scale == 'log10':
            points = 10 ** points
        if self.integer:
            # Half-to-even rounding, then drop duplicates created by narrow ranges
            return list(dict.fromkeys(int(p) for p in np.round(points)))
        return [float(p) for p in points]


@dataclass(frozen=True)
class ModelConfig:
    """Immutable (family, hyperparameter assignment) pair."""
    family: str
    params: Tuple[Tuple[str, Any], ...]
    config_id: str = field(default='', compare=False)

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.params)

    @property
    def label(self) -> str:
        return format_params(self.as_dict())

    def __str__(self) -> str:
        return f"{self.family}({self.label})"


@dataclass(frozen=True)
class ModelFamily:
    name: str
    label: str
    estimator: Type[BaseEstimator]
    params: Tuple[ParamSpec, ...]
    param_map: Mapping[str, str]
    engine_args: Mapping[str, Any] = field(default_factory=dict)
    importance: str = 'native'  # 'native', 'coef' or 'permutation'
    seeded: bool = False
    complexity_rank: int = 0

    @property
    def param_names(self) -> List[str]:
        return [spec.name for spec in self.params]

    def spec(self, name: str) -> ParamSpec:
        for spec in self.params:
            if spec.name == name:
                return spec
        raise ConfigurationError(f"Family '{self.name}' has no hyperparameter '{name}'")

    def with_engine_args(self, **engine_args) -> 'ModelFamily':
        merged = dict(self.engine_args)
        merged.update(engine_args)
        return replace(self, engine_args=merged)

    def config(self, params: Mapping[str, Any], config_id: str = '') -> ModelConfig:
        unknown = set(params) - set(self.param_names)
        missing = set(self.param_names) - set(params)
        if unknown or missing:
            raise ConfigurationError(
                f"Invalid hyperparameters for '{self.name}': unknown={sorted(unknown)}, missing={sorted(missing)}"
            )
        ordered = tuple((name, params[name]) for name in self.param_names)
        return ModelConfig(family=self.name, params=ordered, config_id=config_id)

    def grid_from(self, points: Iterable[Mapping[str, Any]]) -> List[ModelConfig]:
        """Wrap explicit grid points as numbered configurations."""
        configs = [self.config(point, f"Model{i + 1:02d}") for i, point in enumerate(points)]
        if not configs:
            raise EmptyGridError(f"Empty parameter grid for '{self.name}'")
        return configs

    def regular_grid(self, levels: int, n_predictors: Optional[int] = None) -> List[ModelConfig]:
        """Cartesian product of ``levels`` evenly spaced values per hyperparameter."""
        if levels < 1:
            raise EmptyGridError(f"levels must be at least 1, got {levels}")
        axes = {spec.name: spec.values(levels, n_predictors) for spec in self.params}
        return self.grid_from(ParameterGrid(axes))

    def build(self, config: ModelConfig, seed: Optional[int] = None,
              n_features: Optional[int] = None) -> BaseEstimator:
        if config.family != self.name:
            raise ConfigurationError(f"Config for '{config.family}' passed to '{self.name}'")
        kwargs = dict(self.engine_args)
        for name, value in config.params:
            spec = self.spec(name)
            if n_features is not None and (spec.upper is None or spec.capped):
                value = min(value, n_features)
            kwargs[self.param_map[name]] = value
        if self.seeded and seed is not None:
            kwargs['random_state'] = seed
        return self.estimator(**kwargs)

    def importances(self, estimator: BaseEstimator, X: pd.DataFrame, y: pd.Series,
                    seed: Optional[int] = None) -> pd.Series:
        """Per-feature importance of a fitted estimator, largest first."""
        if self.importance == 'native':
            scores = np.asarray(estimator.feature_importances_)
        elif self.importance == 'coef':
            scores = np.abs(np.ravel(estimator.coef_))
        else:
            result = permutation_importance(estimator, X, y, n_repeats=5, random_state=seed, n_jobs=1)
            scores = result.importances_mean
        return pd.Series(scores, index=list(X.columns), name=self.name).sort_values(ascending=False)

    def simplicity_key(self, config: ModelConfig) -> Tuple[float, ...]:
        """Sort key: smaller means simpler."""
        key = []
        for name, value in config.params:
            value = float(value)
            key.append(value if self.spec(name).simpler == 'lower' else -value)
        return tuple(key)


MTRY = ParamSpec('mtry', 1, 6, integer=True, capped=True)
MIN_N = ParamSpec('min_n', 2, 40, integer=True, simpler='higher')

ELASTIC_NET = ModelFamily(
    name='elastic_net',
    label='Elastic net',
    estimator=ElasticNet,
    params=(
        ParamSpec('penalty', -10, 0, scale='log10', simpler='higher'),
        ParamSpec('mixture', 0, 1, simpler='higher'),
    ),
    param_map={'penalty': 'alpha', 'mixture': 'l1_ratio'},
    engine_args={'max_iter': 10000},
    importance='coef',
    complexity_rank=0,
)

NEAREST_NEIGHBOR = ModelFamily(
    name='nearest_neighbor',
    label='Nearest neighbors',
    estimator=KNeighborsRegressor,
    params=(ParamSpec('neighbors', 1, 10, integer=True, simpler='higher'),),
    param_map={'neighbors': 'n_neighbors'},
    engine_args={'weights': 'distance'},
    importance='permutation',
    complexity_rank=1,
)

RANDOM_FOREST = ModelFamily(
    name='random_forest',
    label='Random forest',
    estimator=RandomForestRegressor,
    params=(MTRY, MIN_N),
    param_map={'mtry': 'max_features', 'min_n': 'min_samples_split'},
    engine_args={'n_estimators': 500, 'n_jobs': 1},
    importance='native',
    seeded=True,
    complexity_rank=2,
)

BOOSTED_TREE = ModelFamily(
    name='boosted_tree',
    label='Boosted tree',
    estimator=GradientBoostingRegressor,
    params=(MTRY, MIN_N, ParamSpec('learn_rate', -5, -0.2, scale='log10', simpler='lower')),
    param_map={'mtry': 'max_features', 'min_n': 'min_samples_split', 'learn_rate': 'learning_rate'},
    engine_args={'n_estimators': 15},
    importance='native',
    seeded=True,
    complexity_rank=3,
)

FAMILIES: Dict[str, ModelFamily] = {
    family.name: family
    for family in (ELASTIC_NET, NEAREST_NEIGHBOR, RANDOM_FOREST, BOOSTED_TREE)
}


def get_family(name: str) -> ModelFamily:
    try:
        return FAMILIES[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown model family '{name}'. Must be one of {sorted(FAMILIES)}"
        ) from None
