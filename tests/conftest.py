"""Shared fixtures: synthetic subjects and reference rate tables."""

import numpy as np
import pandas as pd
import pytest

from mortality_core.config import Config
from mortality_core.records import Subject
from mortality_core.reference_rates import ReferenceRateTable

BIRTH = pd.Timestamp('1960-01-01')


def at_age(birth, age):
    """Date at which someone born on `birth` reaches `age` (days / 365.25)."""
    return pd.Timestamp(birth) + pd.Timedelta(days=age * Config.DAYS_PER_YEAR)


def make_subject(subject_id, exit_age, entry_age=5.0, died=False, cause=None,
                 sex='M', birth=BIRTH, diagnosis='leukaemia', **attributes):
    return Subject(
        subject_id=subject_id,
        sex=sex,
        birth_date=pd.Timestamp(birth),
        entry_date=at_age(birth, entry_age),
        exit_date=at_age(birth, exit_age),
        diagnosis=diagnosis,
        died=died,
        cause_of_death=cause,
        attributes=attributes,
    )


def constant_rate_frame(rate=0.001, causes=None, sexes=('M', 'F'),
                        year_lo=1900.0, year_hi=2100.0):
    causes = [Config.ALL_CAUSES] + Config.CAUSES if causes is None else causes
    return pd.DataFrame([
        {'sex': s, 'age_lo': 0.0, 'age_hi': np.nan, 'year_lo': year_lo,
         'year_hi': year_hi, 'cause': c, 'rate': rate}
        for s in sexes for c in causes
    ])


@pytest.fixture
def subject_factory():
    return make_subject


@pytest.fixture
def date_at_age():
    return at_age


@pytest.fixture
def rate_frame_factory():
    return constant_rate_frame


@pytest.fixture
def constant_rates():
    """0.001 deaths per person-year for every sex, age, year and cause."""
    return ReferenceRateTable(constant_rate_frame())


@pytest.fixture
def banded_frame():
    """Two age bands x two year bands, all-cause, males only."""
    rows = []
    for age_lo, age_hi, base in [(0.0, 40.0, 0.001), (40.0, np.nan, 0.01)]:
        for year_lo, year_hi, factor in [(1950.0, 1980.0, 1.0), (1980.0, 2000.0, 2.0)]:
            rows.append({'sex': 'M', 'age_lo': age_lo, 'age_hi': age_hi,
                         'year_lo': year_lo, 'year_hi': year_hi,
                         'cause': Config.ALL_CAUSES, 'rate': base * factor})
    return pd.DataFrame(rows)


@pytest.fixture
def banded_rates(banded_frame):
    return ReferenceRateTable(banded_frame)


@pytest.fixture
def three_subjects():
    """Entry at age 5; exits at 10 (death), 15 (censored), 20 (death)."""
    return [
        make_subject(1, 10.0, died=True, cause='recur'),
        make_subject(2, 15.0),
        make_subject(3, 20.0, died=True, cause='spn'),
    ]


@pytest.fixture
def synthetic_cohort():
    """300 subjects with random birth dates, entry ages and exits up to age 75."""
    rng = np.random.default_rng(2024)
    causes = Config.CAUSES
    subjects = []
    for i in range(300):
        birth = pd.Timestamp('1950-01-01') + pd.Timedelta(days=int(rng.integers(0, 30 * 365)))
        entry = float(rng.uniform(1.0, 15.0))
        exit_ = min(entry + 0.05 + float(rng.exponential(30.0)), 75.0)
        died = bool(exit_ < 75.0 and rng.random() < 0.7)
        cause = None
        if died:
            k = int(rng.integers(0, len(causes) + 1))
            cause = causes[k] if k < len(causes) else None
        subjects.append(make_subject(
            i, exit_, entry_age=entry, died=died, cause=cause,
            sex='M' if i % 2 == 0 else 'F', birth=birth,
            era='early' if birth.year < 1965 else 'late',
        ))
    return subjects
