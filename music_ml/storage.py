"""Persistence of stage artifacts so later stages can resume without rerunning.

Each artifact is saved together with the settings it was computed under, so
a stage only reuses it when those settings still match.
"""

import logging
import os
from typing import Any, Dict, List, Optional

from joblib import dump, load

logger = logging.getLogger(__name__)

DATASET_KEY = 'music'
SPLIT_KEY = 'music_split'
TRAIN_KEY = 'music_train'
TEST_KEY = 'music_test'
FOLDS_KEY = 'music_folds'
RECIPE_KEY = 'music_rec'
FINAL_MODEL_KEY = 'final_model'
TEST_METRICS_KEY = 'test_metrics'


def tuned_key(family: str) -> str:
    return f"{family}_tuned"


class ArtifactStore:
    """Joblib files keyed by stage name under one directory."""

    SUFFIX = '.joblib'

    def __init__(self, root: str = 'model_info'):
        self.root = root

    def path(self, key: str) -> str:
        if not key or os.sep in key or key.startswith('.'):
            raise ValueError(f"Invalid artifact key {key!r}")
        return os.path.join(self.root, key + self.SUFFIX)

    def exists(self, key: str) -> bool:
        return os.path.exists(self.path(key))

    def save(self, artifact: Any, key: str, settings: Optional[Dict[str, Any]] = None) -> str:
        os.makedirs(self.root, exist_ok=True)
        path = self.path(key)
        dump({'settings': dict(settings or {}), 'artifact': artifact}, path)
        logger.debug("Saved %s to %s", key, path)
        return path

    def _read(self, key: str) -> Dict[str, Any]:
        path = self.path(key)
        if not os.path.exists(path):
            raise FileNotFoundError(f"No artifact '{key}' in {self.root}")
        return load(path)

    def load(self, key: str) -> Any:
        return self._read(key)['artifact']

    def settings(self, key: str) -> Dict[str, Any]:
        return self._read(key)['settings']

    def is_current(self, key: str, settings: Dict[str, Any]) -> bool:
        """True when ``key`` exists and was saved under ``settings``."""
        if not self.exists(key):
            return False
        saved = self.settings(key)
        if saved != settings:
            changed = sorted(k for k in set(saved) | set(settings) if saved.get(k) != settings.get(k))
            logger.info("Recomputing %s: settings changed (%s)", key, ', '.join(changed))
            return False
        return True

    def keys(self) -> List[str]:
        if not os.path.isdir(self.root):
            return []
        return sorted(name[:-len(self.SUFFIX)] for name in os.listdir(self.root)
                      if name.endswith(self.SUFFIX))

    def __repr__(self) -> str:
        return f"ArtifactStore({self.root!r})"
