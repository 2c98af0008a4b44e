"""Synthetic track tables shared by the test modules."""

import numpy as np
import pandas as pd

from music_ml.cleaning import clean_tracks


def make_raw_tracks(n: int = 200, seed: int = 0) -> pd.DataFrame:
    """Raw rows in the source file's schema, with popularity driven by year and energy."""
    rng = np.random.default_rng(seed)
    year = rng.integers(1960, 2021, n)
    energy = rng.uniform(0, 1, n)
    acousticness = rng.uniform(0, 1, n)
    popularity = 0.6 * (year - 1960) + 20 * energy - 10 * acousticness + rng.normal(0, 5, n)
    return pd.DataFrame({
        'id': [f"track{i:04d}" for i in range(n)][::-1],
        'popularity': np.clip(np.round(popularity), 0, 100),
        'acousticness': acousticness,
        'danceability': rng.uniform(0, 1, n),
        'energy': energy,
        'instrumentalness': rng.uniform(0, 1, n),
        'liveness': rng.uniform(0, 1, n),
        'loudness': rng.uniform(-30, 0, n),
        'speechiness': rng.uniform(0, 1, n),
        'tempo': rng.uniform(60, 180, n),
        'valence': rng.uniform(0, 1, n),
        'year': year,
        'mode': rng.integers(0, 2, n),
        'explicit': rng.integers(0, 2, n),
        'name': [f"Song {i}" for i in range(n)],
        'artists': [f"['Artist {i % 17}']" for i in range(n)],
        'duration_ms': rng.integers(120000, 360000, n),
        'key': rng.integers(0, 12, n),
    })


def make_music(n: int = 200, seed: int = 0) -> pd.DataFrame:
    """Cleaned dataset as produced by the loader."""
    return clean_tracks(make_raw_tracks(n, seed))


def make_uniform_target(n: int = 100, seed: int = 1) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    return pd.DataFrame({
        'popularity': rng.uniform(0, 100, n),
        'x': rng.normal(size=n),
    })
