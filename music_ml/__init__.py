"""
Model selection for track popularity.
Cleaning, stratified splitting, a fit-once feature recipe, grid tuning of
four regression families over repeated folds, and a held-out final check.
"""

from .config import PipelineConfig, HoldoutMetrics, FamilySummary
from .cleaning import load_dataset, clean_tracks
from .splitting import Split, FoldSet, split, initial_split, make_folds
from .preprocessing import Recipe, FittedRecipe, MUSIC_RECIPE, fit, apply
from .families import FAMILIES, ModelConfig, ModelFamily, get_family
from .tuning import TuningResult, tune
from .selection import FinalModel, select_best, select_winner, finalize
from .storage import ArtifactStore
from .pipeline import PipelineReport, run_pipeline

__all__ = [
    'PipelineConfig',
    'HoldoutMetrics',
    'FamilySummary',
    'load_dataset',
    'clean_tracks',
    'Split',
    'FoldSet',
    'split',
    'initial_split',
    'make_folds',
    'Recipe',
    'FittedRecipe',
    'MUSIC_RECIPE',
    'fit',
    'apply',
    'FAMILIES',
    'ModelConfig',
    'ModelFamily',
    'get_family',
    'TuningResult',
    'tune',
    'FinalModel',
    'select_best',
    'select_winner',
    'finalize',
    'ArtifactStore',
    'PipelineReport',
    'run_pipeline'
]
