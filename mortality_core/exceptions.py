"""
Error taxonomy for the mortality analysis core.

- DataIntegrityError: malformed subject record (fatal unless rows are dropped
  explicitly)
- ReferenceRateLookupError: no reference rate cell after clamping (fatal)
- StatisticalUndefinedError: zero expected deaths or person-years in a stratum
  (recoverable, stratum is flagged)
- MissingDataError: survival curve undefined inside the integration range
  (fatal for one group's life expectancy only)
"""


class MortalityAnalysisError(Exception):
    """Base class for all analysis errors."""


class DataIntegrityError(MortalityAnalysisError, ValueError):
    """A subject record violates birth <= entry <= exit or has missing fields."""

    def __init__(self, message, subject_ids=None):
        super().__init__(message)
        self.subject_ids = list(subject_ids) if subject_ids is not None else []


class ReferenceRateLookupError(MortalityAnalysisError, LookupError):
    """No (sex, age band, year band, cause) cell exists after clamping."""


class StatisticalUndefinedError(MortalityAnalysisError, ArithmeticError):
    """An estimate has a zero denominator (expected deaths or person-years)."""


class MissingDataError(MortalityAnalysisError, ValueError):
    """A survival curve is not defined somewhere in [floor, horizon]."""
