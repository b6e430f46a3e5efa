import numpy as np
import pandas as pd
import pytest

from mortality_core.config import Config
from mortality_core.episodes import (
    band_label,
    build_episodes,
    collapse_episodes,
    hazard_by_age,
    split_subject,
    subjects_from_frame,
)
from mortality_core.exceptions import DataIntegrityError
from mortality_core.reference_rates import ReferenceRateTable

ALL = Config.ALL_CAUSES


# =============================================================================
# SPLITTING
# =============================================================================

def test_split_at_age_and_period_cuts(subject_factory, constant_rates):
    subject = subject_factory(1, 20.0, died=True, cause='recur')
    pieces = split_subject(subject, 'recur', constant_rates)

    assert [(p.age_start, p.age_end) for p in pieces] == [
        pytest.approx((5.0, 10.0)), pytest.approx((10.0, 15.0)), pytest.approx((15.0, 20.0))]
    assert [p.age_band for p in pieces] == ['5-9', '10-14', '15-19']
    assert [p.period_band for p in pieces] == ['1965-1969', '1970-1974', '1975-1979']
    assert [p.event for p in pieces] == [0, 0, 1]


def test_split_off_grid_birth_date(subject_factory, constant_rates):
    # Born mid-1962: the 1970 period boundary falls at about age 7.5
    subject = subject_factory(1, 12.0, birth='1962-07-01')
    pieces = split_subject(subject, ALL, constant_rates)

    assert len(pieces) == 3
    assert pieces[0].age_end == pytest.approx(1970.0 - subject.birth_year)
    assert pieces[1].age_end == pytest.approx(10.0)
    assert [p.period_band for p in pieces] == ['1965-1969', '1970-1974', '1970-1974']
    assert [p.age_band for p in pieces] == ['5-9', '5-9', '10-14']
    assert pieces[1].year_start == pytest.approx(1970.0)


def test_durations_tile_follow_up(synthetic_cohort, constant_rates):
    for subject in synthetic_cohort[:60]:
        pieces = split_subject(subject, ALL, constant_rates)
        assert sum(p.duration for p in pieces) == pytest.approx(
            subject.exit_age - subject.entry_age, abs=1e-9)
        assert pieces[0].age_start == pytest.approx(subject.entry_age)
        assert pieces[-1].age_end == pytest.approx(subject.exit_age)
        for a, b in zip(pieces[:-1], pieces[1:]):
            assert a.age_end == b.age_start


def test_at_most_one_event_on_last_episode(synthetic_cohort, constant_rates):
    for cause in Config.CAUSES + [ALL]:
        frame = build_episodes(synthetic_cohort, cause, constant_rates).episodes
        events = frame.groupby('subject_id')['event'].sum()
        assert events.isin([0, 1]).all()
        last = frame.groupby('subject_id').tail(1)
        assert frame['event'].sum() == last['event'].sum()


def test_event_indicator_follows_target_cause(subject_factory, constant_rates):
    other_cause = subject_factory(1, 20.0, died=True, cause='external')
    unknown_cause = subject_factory(2, 20.0, died=True, cause=None)

    assert sum(p.event for p in split_subject(other_cause, 'recur', constant_rates)) == 0
    assert sum(p.event for p in split_subject(other_cause, 'external', constant_rates)) == 1
    assert sum(p.event for p in split_subject(unknown_cause, 'recur', constant_rates)) == 0
    assert sum(p.event for p in split_subject(unknown_cause, ALL, constant_rates)) == 1


def test_zero_follow_up_gives_no_episodes(subject_factory, constant_rates):
    subject = subject_factory(1, 5.0, entry_age=5.0)
    assert split_subject(subject, ALL, constant_rates) == []


def test_reference_band_edges_are_merged(subject_factory):
    frame = pd.DataFrame([
        {'sex': 'M', 'age_lo': 0.0, 'age_hi': 42.0, 'year_lo': 1900.0, 'year_hi': 2100.0,
         'cause': ALL, 'rate': 0.001},
        {'sex': 'M', 'age_lo': 42.0, 'age_hi': np.nan, 'year_lo': 1900.0, 'year_hi': 2100.0,
         'cause': ALL, 'rate': 0.01},
    ])
    table = ReferenceRateTable(frame)
    subject = subject_factory(1, 44.0, entry_age=41.0)

    pieces = split_subject(subject, ALL, table)
    assert [p.age_end for p in pieces] == [pytest.approx(42.0), pytest.approx(44.0)]
    assert sum(p.expected for p in pieces) == pytest.approx(1 * 0.001 + 2 * 0.01)

    unmerged = split_subject(subject, ALL, table, split_on_reference_bands=False)
    assert len(unmerged) == 1


def test_rate_uses_period_of_each_episode(subject_factory, banded_rates):
    # Born 1960, followed 10-30: the 1980 rate change falls at age 20
    subject = subject_factory(1, 30.0, entry_age=10.0)
    pieces = split_subject(subject, ALL, banded_rates)
    rates = {(round(p.age_start), round(p.age_end)): p.rate for p in pieces}
    assert rates[(15, 20)] == pytest.approx(0.001)
    assert rates[(20, 25)] == pytest.approx(0.002)


def test_calendar_years_beyond_table_are_clamped(subject_factory, banded_rates):
    # Followed to 2010, table ends in 2000
    subject = subject_factory(1, 30.0, entry_age=25.0, birth='1980-01-01')
    frame = build_episodes([subject], ALL, banded_rates).episodes
    assert len(frame) > 0
    assert np.allclose(frame['rate'], 0.002)


# =============================================================================
# SUBJECT VALIDATION
# =============================================================================

def _subject_frame():
    return pd.DataFrame({
        'subject_id': [1, 2, 3],
        'sex': ['M', 'F', 'M'],
        'dob': ['1960-01-01', '1962-05-10', '1965-03-03'],
        'dodx': ['1965-01-01', '1970-01-01', '1970-06-01'],
        'dox': ['1980-01-01', '1990-01-01', '2000-01-01'],
        'diagnosis': ['cns', 'leukaemia', 'wilms'],
        'recur': [1, 0, 0],
        'spn': [0, 0, 0],
        'allcauses': [1, 1, 0],
    })


def test_subjects_from_frame():
    subjects, invalid = subjects_from_frame(_subject_frame(), causes=['recur', 'spn'])
    assert invalid == []
    assert [s.cause_of_death for s in subjects] == ['recur', None, None]
    assert [s.died for s in subjects] == [True, True, False]
    assert subjects[0].entry_age == pytest.approx(1827 / 365.25)


def test_subjects_from_frame_rejects_invalid_rows():
    frame = _subject_frame()
    frame.loc[1, 'dox'] = '1965-01-01'  # before entry
    frame.loc[2, 'spn'] = 1
    frame.loc[2, 'recur'] = 1            # two causes

    with pytest.raises(DataIntegrityError) as info:
        subjects_from_frame(frame, causes=['recur', 'spn'])
    assert info.value.subject_ids == [2, 3]

    subjects, invalid = subjects_from_frame(frame, causes=['recur', 'spn'], drop_invalid=True)
    assert [s.subject_id for s in subjects] == [1]
    assert [item['subject_id'] for item in invalid] == [2, 3]


def test_subjects_from_frame_missing_columns():
    with pytest.raises(KeyError):
        subjects_from_frame(_subject_frame().drop(columns=['dob']))


def test_cause_without_death_is_invalid(subject_factory):
    subject = subject_factory(1, 20.0, died=False, cause='recur')
    with pytest.raises(DataIntegrityError):
        subject.validate()


def test_build_episodes_invalid_policy(subject_factory, constant_rates):
    good = subject_factory(1, 20.0)
    bad = subject_factory(2, 4.0, entry_age=5.0)  # exit before entry

    with pytest.raises(DataIntegrityError) as info:
        build_episodes([good, bad], ALL, constant_rates)
    assert info.value.subject_ids == [2]

    result = build_episodes([good, bad], ALL, constant_rates, drop_invalid=True)
    assert result.n_subjects == 1
    assert [f['subject_id'] for f in result.failures] == [2]


# =============================================================================
# SUMMARIES
# =============================================================================

def test_collapse_round_trip(synthetic_cohort, constant_rates):
    frame = build_episodes(synthetic_cohort, 'recur', constant_rates).episodes
    totals = collapse_episodes(frame).set_index('subject_id')

    for subject in synthetic_cohort:
        row = totals.loc[subject.subject_id]
        assert row['follow_up'] == pytest.approx(subject.exit_age - subject.entry_age, abs=1e-9)
        assert row['entry_age'] == pytest.approx(subject.entry_age)
        assert row['event'] == int(subject.cause_of_death == 'recur')
        assert row['expected'] == pytest.approx(0.001 * row['follow_up'])


def test_episode_frame_carries_attributes(three_subjects, constant_rates):
    frame = build_episodes(three_subjects, ALL, constant_rates).episodes
    assert 'diagnosis' in frame.columns
    assert frame['duration'].sum() == pytest.approx(30.0)
    assert frame['expected'].sum() == pytest.approx(0.03)


def test_hazard_by_age(three_subjects, constant_rates):
    frame = build_episodes(three_subjects, ALL, constant_rates).episodes
    hz = hazard_by_age(frame, [0.0, 5.0, 10.0, 15.0, 20.0, 25.0])

    assert hz['y'].tolist() == pytest.approx([0.0, 15.0, 10.0, 5.0, 0.0])
    assert hz['d'].tolist() == [0.0, 1.0, 0.0, 1.0, 0.0]
    assert hz['expected_hazard'].iloc[1:4].tolist() == pytest.approx([0.001] * 3)
    assert np.isnan(hz['observed_hazard'].iloc[0])


@pytest.mark.parametrize('cuts, index, label', [
    ([0.0, 5.0, 10.0], 0, '0-4'),
    ([0.0, 5.0, 10.0], 1, '5-9'),
    ([0.0, 5.0, 10.0], 2, '10+'),
    ([0.0, 5.0, 10.0], -1, '<0'),
    ([0.0, 2.5, 5.0], 0, '0-2.5'),
])
def test_band_label(cuts, index, label):
    assert band_label(cuts, index) == label
