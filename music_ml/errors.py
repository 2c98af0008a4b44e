"""Exception hierarchy for the model-selection pipeline."""

from typing import Optional


class MusicModelError(Exception):
    """Base class for every error raised by music_ml."""


# Configuration errors: raised before any computation starts
class ConfigurationError(MusicModelError, ValueError):
    pass


class InvalidFractionError(ConfigurationError):
    pass


class FormulaError(ConfigurationError):
    pass


class EmptyGridError(ConfigurationError):
    pass


# Data errors
class DataError(MusicModelError, ValueError):
    pass


class EmptyDatasetError(DataError):
    pass


class MissingColumnError(DataError):
    pass


class MissingTargetError(DataError):
    pass


class UnknownCategoryError(DataError):
    """A categorical value was not part of the vocabulary frozen at fit time."""

    def __init__(self, column: str, values):
        self.column = column
        self.values = sorted(str(v) for v in values)
        super().__init__(
            f"Column '{column}' contains levels unseen when the recipe was fit: {self.values}"
        )


class AlreadyTransformedError(DataError):
    pass


class LeakageError(MusicModelError):
    pass


# Sweep and final-stage errors
class SweepAbortedError(MusicModelError, RuntimeError):
    pass


class NoValidResultsError(MusicModelError, RuntimeError):
    pass


class FinalFitError(MusicModelError, RuntimeError):
    pass


class PipelineError(MusicModelError, RuntimeError):
    """Stage failure surfaced to the user with sweep context."""

    def __init__(self, stage: str, cause: BaseException,
                 cells_affected: int = 0, partial: bool = False,
                 family: Optional[str] = None):
        self.stage = stage
        self.cause = cause
        self.cells_affected = cells_affected
        self.partial = partial
        self.family = family
        where = f"{stage} ({family})" if family else stage
        message = f"Stage '{where}' failed: {cause}"
        if cells_affected:
            message += f" [{cells_affected} sweep cells affected"
            message += ", results based on a partial grid]" if partial else "]"
        super().__init__(message)
