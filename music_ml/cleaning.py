"""Loading and cleaning of the raw track table.

Produces the canonical dataset consumed by the splitter: binary indicators
for the thresholded confidence scores, categorical ``mode``/``explicit`` and
percent-scaled mood features.
"""

import logging
import re
from typing import List

import numpy as np
import pandas as pd

from .config import (
    BINARY_LEVELS,
    CANONICAL_COLUMNS,
    CONFIDENCE_THRESHOLDS,
    MIN_POPULARITY,
    PERCENT_SCALED_COLUMNS,
    TARGET_COLUMN,
)
from .errors import EmptyDatasetError, MissingColumnError

logger = logging.getLogger(__name__)


def clean_names(columns) -> List[str]:
    """Normalise column names to snake_case (``durationMs`` -> ``duration_ms``)."""
    cleaned = []
    for col in columns:
        name = re.sub(r'([a-z0-9])([A-Z])', r'\1_\2', str(col).strip())
        name = re.sub(r'[^0-9a-zA-Z]+', '_', name).strip('_').lower()
        cleaned.append(name)
    return cleaned


def load_raw(path: str) -> pd.DataFrame:
    """Read the raw comma-separated track file."""
    raw = pd.read_csv(path)
    raw.columns = clean_names(raw.columns)
    logger.info("Loaded %d raw tracks from %s", len(raw), path)
    return raw


def _binary_factor(values: pd.Series) -> pd.Series:
    return pd.Series(
        pd.Categorical(values.astype(int), categories=BINARY_LEVELS),
        index=values.index,
    )


def clean_tracks(raw: pd.DataFrame) -> pd.DataFrame:
    """Apply the filtering and type normalisation rules to a raw table."""
    missing = [col for col in CANONICAL_COLUMNS if col not in raw.columns]
    if missing:
        raise MissingColumnError(f"Raw data is missing required columns: {missing}")

    music = raw

    no_target = music[TARGET_COLUMN].isna()
    if no_target.any():
        logger.warning("Dropping %d tracks without a %s value", int(no_target.sum()), TARGET_COLUMN)
        music = music.loc[~no_target].copy()

    # Near-zero popularity tracks are mostly old catalogue filler
    before = len(music)
    music = music.loc[music[TARGET_COLUMN] >= MIN_POPULARITY].copy()
    logger.info("Filtered %d tracks with %s < %d", before - len(music), TARGET_COLUMN, MIN_POPULARITY)

    music[TARGET_COLUMN] = music[TARGET_COLUMN].astype(float)

    for col in ('explicit', 'mode'):
        music[col] = _binary_factor(music[col])

    for col, threshold in CONFIDENCE_THRESHOLDS.items():
        music[col] = _binary_factor((music[col] >= threshold).astype(np.int8))

    for col in PERCENT_SCALED_COLUMNS:
        music[col] = music[col] * 100

    music = music[CANONICAL_COLUMNS].sort_values('id').reset_index(drop=True)

    if music.empty:
        raise EmptyDatasetError("No tracks left after cleaning")

    logger.info("Cleaned dataset: %d tracks x %d columns", *music.shape)
    return music


def load_dataset(path: str) -> pd.DataFrame:
    """Read and clean in one step."""
    return clean_tracks(load_raw(path))
