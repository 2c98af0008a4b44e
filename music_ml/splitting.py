"""Train/test splitting and repeated v-fold resampling."""

import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

import numpy as np
import pandas as pd
from sklearn.model_selection import RepeatedKFold, RepeatedStratifiedKFold, train_test_split

from .config import STRATA_BREAKS, STRATA_MIN_BIN_SIZE
from .errors import ConfigurationError, EmptyDatasetError, InvalidFractionError, MissingColumnError, MissingTargetError

logger = logging.getLogger(__name__)


def make_strata(values: pd.Series, breaks: int = STRATA_BREAKS,
                min_bin_size: int = STRATA_MIN_BIN_SIZE) -> Optional[np.ndarray]:
    """Bin a numeric or ordinal column into strata labels.

    Numeric columns are cut at quantiles. The number of bins shrinks until
    every bin can hold ``min_bin_size`` rows; ``None`` means the data is too
    small to stratify.
    """
    if values.isna().any():
        raise MissingTargetError(f"Stratify column '{values.name}' has missing values")

    if isinstance(values.dtype, pd.CategoricalDtype):
        if not values.cat.ordered:
            raise ConfigurationError(
                f"Stratify column '{values.name}' must be numeric or ordinal"
            )
        labels = values.cat.codes.to_numpy()
    elif pd.api.types.is_numeric_dtype(values):
        n_bins = min(breaks, len(values) // max(min_bin_size, 1))
        if n_bins < 2:
            logger.warning(
                "Too few rows (%d) to stratify on '%s'; using a plain random split",
                len(values), values.name
            )
            return None
        labels = pd.qcut(values, q=n_bins, labels=False, duplicates='drop').to_numpy()
    else:
        raise ConfigurationError(
            f"Stratify column '{values.name}' must be numeric or ordinal, got {values.dtype}"
        )

    _, counts = np.unique(labels, return_counts=True)
    if len(counts) < 2 or counts.min() < 2:
        logger.warning("Strata for '%s' are degenerate; using a plain random split", values.name)
        return None
    return labels


@dataclass
class Split:
    """Disjoint train/test partition of a dataset, by row position."""
    data: pd.DataFrame
    train_rows: np.ndarray
    test_rows: np.ndarray
    train_fraction: float
    stratify_column: Optional[str]
    seed: int

    def training(self) -> pd.DataFrame:
        return self.data.iloc[self.train_rows].copy()

    def testing(self) -> pd.DataFrame:
        return self.data.iloc[self.test_rows].copy()

    def __repr__(self) -> str:
        return f"<Training/Testing/Total> <{len(self.train_rows)}/{len(self.test_rows)}/{len(self.data)}>"


def initial_split(dataset: pd.DataFrame, train_fraction: float = 0.7,
                  stratify_column: Optional[str] = None, seed: int = 123,
                  breaks: int = STRATA_BREAKS) -> Split:
    """Partition ``dataset`` once, sampling within strata of ``stratify_column``."""
    if not 0 < train_fraction < 1:
        raise InvalidFractionError(
            f"train_fraction must be strictly between 0 and 1, got {train_fraction}"
        )
    if len(dataset) == 0:
        raise EmptyDatasetError("Cannot split an empty dataset")

    strata = None
    if stratify_column is not None:
        if stratify_column not in dataset.columns:
            raise MissingColumnError(f"Stratify column '{stratify_column}' not found in dataset")
        strata = make_strata(dataset[stratify_column], breaks=breaks)

    positions = np.arange(len(dataset))
    try:
        train_rows, test_rows = train_test_split(
            positions, train_size=train_fraction, random_state=seed, stratify=strata
        )
    except ValueError as e:
        raise ConfigurationError(f"Cannot split {len(dataset)} rows at {train_fraction}: {e}") from e

    split = Split(
        data=dataset,
        train_rows=np.sort(train_rows),
        test_rows=np.sort(test_rows),
        train_fraction=train_fraction,
        stratify_column=stratify_column,
        seed=seed,
    )
    logger.info("Initial split %r (strata=%s)", split, 'none' if strata is None else len(np.unique(strata)))
    return split


def split(dataset: pd.DataFrame, train_fraction: float = 0.7,
          stratify_column: Optional[str] = None, seed: int = 123) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Return ``(train, test)`` frames for a stratified random split."""
    result = initial_split(dataset, train_fraction, stratify_column, seed)
    return result.training(), result.testing()


@dataclass(frozen=True)
class FoldPair:
    """One analysis/assessment pair of a resampling scheme."""
    id: str
    repeat: int
    fold: int
    train_rows: np.ndarray
    val_rows: np.ndarray


@dataclass
class FoldSet:
    """Repeated v-fold partitions of a training frame."""
    data: pd.DataFrame
    pairs: List[FoldPair]
    v: int
    repeats: int
    seed: int

    def __len__(self) -> int:
        return len(self.pairs)

    def __iter__(self) -> Iterator[FoldPair]:
        return iter(self.pairs)

    def __getitem__(self, i: int) -> FoldPair:
        return self.pairs[i]

    def analysis(self, pair: FoldPair) -> pd.DataFrame:
        return self.data.iloc[pair.train_rows]

    def assessment(self, pair: FoldPair) -> pd.DataFrame:
        return self.data.iloc[pair.val_rows]

    def ids(self) -> List[str]:
        return [pair.id for pair in self.pairs]


def make_folds(train: pd.DataFrame, v: int = 5, repeats: int = 3, seed: int = 123,
               stratify_column: Optional[str] = None) -> FoldSet:
    """Partition ``train`` into ``v`` groups, independently reshuffled per repeat."""
    if v < 2:
        raise ConfigurationError(f"v must be at least 2, got {v}")
    if repeats < 1:
        raise ConfigurationError(f"repeats must be at least 1, got {repeats}")
    if len(train) == 0:
        raise EmptyDatasetError("Cannot resample an empty training set")
    if v > len(train):
        raise ConfigurationError(f"v={v} is larger than the training set ({len(train)} rows)")

    strata = None
    if stratify_column is not None:
        strata = make_strata(train[stratify_column], min_bin_size=v)

    if strata is None:
        splitter = RepeatedKFold(n_splits=v, n_repeats=repeats, random_state=seed)
        splits = splitter.split(np.zeros(len(train)))
    else:
        splitter = RepeatedStratifiedKFold(n_splits=v, n_repeats=repeats, random_state=seed)
        splits = splitter.split(np.zeros(len(train)), strata)

    pairs = []
    for i, (train_rows, val_rows) in enumerate(splits):
        repeat, fold = divmod(i, v)
        pairs.append(FoldPair(
            id=f"Repeat{repeat + 1}/Fold{fold + 1}",
            repeat=repeat + 1,
            fold=fold + 1,
            train_rows=train_rows,
            val_rows=val_rows,
        ))

    logger.info("Created %d fold pairs (v=%d, repeats=%d)", len(pairs), v, repeats)
    return FoldSet(data=train, pairs=pairs, v=v, repeats=repeats, seed=seed)
