"""
Typed records for the entities that flow through one analysis run.

Subject -> SurvivalEpisode -> StratumAggregate -> SmrAerEstimate

All records are frozen; every transformation returns new values.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd

from .config import Config
from .exceptions import DataIntegrityError


def decimal_year(date) -> float:
    """Calendar time of a date as a decimal year (2000-07-02 -> ~2000.5)."""
    ts = pd.Timestamp(date)
    days_in_year = 366 if ts.is_leap_year else 365
    return ts.year + (ts.dayofyear - 1) / days_in_year


def years_between(start, end, days_per_year: float = Config.DAYS_PER_YEAR) -> float:
    return (pd.Timestamp(end) - pd.Timestamp(start)) / pd.Timedelta(days=1) / days_per_year


@dataclass(frozen=True)
class Subject:
    """
    One study participant.

    `died` is the catch-all any-cause flag; `cause_of_death` is the specific
    category (None when alive, censored, or dead of a cause outside the
    analysed categories).
    """

    subject_id: Any
    sex: Any
    birth_date: pd.Timestamp
    entry_date: pd.Timestamp
    exit_date: pd.Timestamp
    diagnosis: Any = None
    died: bool = False
    cause_of_death: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        for name in ('birth_date', 'entry_date', 'exit_date'):
            if pd.isna(getattr(self, name)):
                raise DataIntegrityError(
                    f"Subject {self.subject_id}: missing {name}", [self.subject_id])
        if pd.isna(self.sex):
            raise DataIntegrityError(f"Subject {self.subject_id}: missing sex", [self.subject_id])
        if self.entry_date < self.birth_date:
            raise DataIntegrityError(
                f"Subject {self.subject_id}: entry {self.entry_date:%Y-%m-%d} before "
                f"birth {self.birth_date:%Y-%m-%d}", [self.subject_id])
        if self.exit_date < self.entry_date:
            raise DataIntegrityError(
                f"Subject {self.subject_id}: exit {self.exit_date:%Y-%m-%d} before "
                f"entry {self.entry_date:%Y-%m-%d}", [self.subject_id])
        if self.cause_of_death is not None and not self.died:
            raise DataIntegrityError(
                f"Subject {self.subject_id}: cause '{self.cause_of_death}' set but "
                f"all-cause death flag is 0", [self.subject_id])

    @property
    def entry_age(self) -> float:
        return years_between(self.birth_date, self.entry_date)

    @property
    def exit_age(self) -> float:
        return years_between(self.birth_date, self.exit_date)

    @property
    def birth_year(self) -> float:
        return decimal_year(self.birth_date)

    def has_event(self, cause: str) -> bool:
        """Whether the subject's recorded outcome is `cause`."""
        if cause == Config.ALL_CAUSES:
            return bool(self.died)
        return self.cause_of_death == cause

    def grouping_values(self) -> Dict[str, Any]:
        values = {'sex': self.sex, 'diagnosis': self.diagnosis}
        values.update(self.attributes)
        return values


@dataclass(frozen=True)
class SurvivalEpisode:
    """Sub-interval [age_start, age_end) of one subject's follow-up."""

    subject_id: Any
    sex: Any
    age_start: float
    age_end: float
    year_start: float
    year_end: float
    age_band: str
    period_band: str
    event: int
    rate: float
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration(self) -> float:
        return self.age_end - self.age_start

    @property
    def expected(self) -> float:
        return self.rate * self.duration

    def to_row(self) -> Dict[str, Any]:
        row = {k: v for k, v in asdict(self).items() if k != 'attributes'}
        row.update(self.attributes)
        row['duration'] = self.duration
        row['expected'] = self.expected
        return row


@dataclass(frozen=True)
class StratumAggregate:
    """Observed deaths d, expected deaths e and person-years y for one key."""

    key: Dict[str, Any]
    d: float
    e: float
    y: float
    n_subjects: int = 0


@dataclass(frozen=True)
class SmrAerEstimate:
    """SMR/AER point and interval estimates for one stratum."""

    key: Dict[str, Any]
    d: float
    e: float
    y: float
    n_subjects: int = 0
    smr: float = np.nan
    smr_lo: float = np.nan
    smr_hi: float = np.nan
    aer: float = np.nan
    aer_lo: float = np.nan
    aer_hi: float = np.nan
    aer_se_approximate: bool = True
    status: str = 'ok'
    reason: str = ''
    smr_display: str = ''
    aer_display: str = ''

    def to_row(self) -> Dict[str, Any]:
        row = dict(self.key)
        row.update({k: v for k, v in asdict(self).items() if k != 'key'})
        return row
