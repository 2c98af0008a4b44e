"""Configuration, schema constants and typed result structures."""

from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Tuple, Any, TypedDict

from .errors import ConfigurationError, InvalidFractionError


# ---------------------------------------------------------------------------
# Dataset schema
# ---------------------------------------------------------------------------
TARGET_COLUMN = 'popularity'

CONTINUOUS_PREDICTORS = [
    'danceability', 'energy', 'loudness', 'tempo', 'valence', 'year'
]

# Confidence scores turned into 0/1 indicators during cleaning
THRESHOLDED_PREDICTORS = ['acousticness', 'instrumentalness', 'liveness', 'speechiness']
BINARY_PREDICTORS = THRESHOLDED_PREDICTORS + ['mode', 'explicit']
BINARY_LEVELS = [0, 1]

CANONICAL_COLUMNS = [
    'id', 'popularity', 'acousticness', 'danceability', 'energy', 'instrumentalness',
    'liveness', 'loudness', 'speechiness', 'tempo', 'valence', 'year', 'mode',
    'explicit', 'name', 'artists', 'duration_ms', 'key'
]

# ---------------------------------------------------------------------------
# Cleaning rules
# ---------------------------------------------------------------------------
MIN_POPULARITY = 5

ACOUSTICNESS_THRESHOLD = 0.5
INSTRUMENTALNESS_THRESHOLD = 0.5
LIVENESS_THRESHOLD = 0.8
SPEECHINESS_THRESHOLD = 0.66

CONFIDENCE_THRESHOLDS = {
    'acousticness': ACOUSTICNESS_THRESHOLD,
    'instrumentalness': INSTRUMENTALNESS_THRESHOLD,
    'liveness': LIVENESS_THRESHOLD,
    'speechiness': SPEECHINESS_THRESHOLD,
}

# 0-1 scores rescaled to 0-100 for readability
PERCENT_SCALED_COLUMNS = ('danceability', 'energy', 'valence')

# ---------------------------------------------------------------------------
# Resampling defaults
# ---------------------------------------------------------------------------
DEFAULT_SEED = 123
STRATA_BREAKS = 4
STRATA_MIN_BIN_SIZE = 20

DEFAULT_FAMILIES = ('elastic_net', 'random_forest', 'boosted_tree', 'nearest_neighbor')
TUNING_METRICS = ('rmse', 'rsq')
TEST_METRICS = ('rmse', 'rsq')


@dataclass
class PipelineConfig:
    """Configuration object for the model-selection pipeline."""
    data_path: str = 'data/unprocessed/data.csv'
    artifact_dir: str = 'model_info'
    report_dir: str = 'reports'
    target_column: str = TARGET_COLUMN
    train_fraction: float = 0.7
    strata_breaks: int = STRATA_BREAKS
    v: int = 5
    repeats: int = 3
    seed: int = DEFAULT_SEED
    levels: int = 5
    families: Tuple[str, ...] = DEFAULT_FAMILIES
    metric: str = 'rmse'
    n_jobs: int = 1
    timeout_seconds: Optional[float] = None
    max_failed_fraction: Optional[float] = None
    on_error: str = 'record'
    engine_args: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def validate(self) -> None:
        """Fail fast on settings that would break a later stage."""
        # Local imports keep the registries out of module import order
        from .families import FAMILIES
        from .metrics import METRICS

        if not 0 < self.train_fraction < 1:
            raise InvalidFractionError(
                f"train_fraction must be strictly between 0 and 1, got {self.train_fraction}"
            )
        if self.v < 2:
            raise ConfigurationError(f"v must be at least 2, got {self.v}")
        if self.repeats < 1:
            raise ConfigurationError(f"repeats must be at least 1, got {self.repeats}")
        if self.levels < 1:
            raise ConfigurationError(f"levels must be at least 1, got {self.levels}")
        if not self.families:
            raise ConfigurationError("At least one model family is required")

        unknown = [name for name in self.families if name not in FAMILIES]
        if unknown:
            raise ConfigurationError(
                f"Unknown model families {unknown}. Must be among {sorted(FAMILIES)}"
            )
        if self.metric not in METRICS:
            raise ConfigurationError(
                f"Unknown metric '{self.metric}'. Must be one of {sorted(METRICS)}"
            )
        if self.on_error not in ('record', 'raise'):
            raise ConfigurationError("on_error must be 'record' or 'raise'")
        if self.max_failed_fraction is not None and not 0 <= self.max_failed_fraction <= 1:
            raise ConfigurationError("max_failed_fraction must be within [0, 1]")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class HoldoutMetrics(TypedDict, total=False):
    """Held-out metrics reported by the final evaluator."""
    rmse: float
    rsq: float
    r2: float
    mae: float


class FamilySummary(TypedDict):
    """Per-family outcome of the tuning sweep."""
    family: str
    n_cells: int
    n_failed: int
    partial: bool
    best_config: Optional[str]
    best_params: Dict[str, Any]
    best_score: float


def format_params(params: Dict[str, Any]) -> str:
    """Render hyperparameters compactly for logs and chart labels."""
    parts: List[str] = []
    for name, value in params.items():
        if isinstance(value, float):
            parts.append(f"{name}={value:.4g}")
        else:
            parts.append(f"{name}={value}")
    return ', '.join(parts)
