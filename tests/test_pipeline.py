import json

import numpy as np
import pandas as pd
import pytest

from mortality_core.config import Config
from mortality_core.pipeline import (
    add_decade_column,
    build_episode_sets,
    convert_to_json_serializable,
    load_reference_rates,
    load_subjects,
    read_table,
    run_cumulative_mortality,
    run_life_expectancy,
    run_smr_analysis,
    save_json,
    save_table,
)

ALL = Config.ALL_CAUSES


@pytest.fixture
def subject_csv(tmp_path):
    frame = pd.DataFrame({
        'subject_id': [1, 2, 3],
        'sex': ['M', 'F', 'M'],
        'dob': ['1960-01-01', '1962-05-10', '1975-03-03'],
        'dodx': ['1965-01-01', '1970-01-01', '1981-06-01'],
        'dox': ['1980-01-01', '1990-01-01', '2000-01-01'],
        'diagnosis': ['cns', 'leukaemia', 'wilms'],
        'recur': [1, 0, 0],
        'spn': [0, 1, 0],
        'allcauses': [1, 1, 0],
    })
    path = tmp_path / 'cohort.csv'
    frame.to_csv(path, index=False)
    return path


def test_read_table_rejects_unknown_format(tmp_path):
    with pytest.raises(ValueError, match='Unsupported'):
        read_table(tmp_path / 'cohort.xlsx')


def test_load_subjects_adds_decade(subject_csv):
    subjects, invalid = load_subjects(subject_csv, causes=['recur', 'spn'])
    assert invalid == []
    assert len(subjects) == 3
    assert [s.attributes['decade'] for s in subjects] == ['1960s', '1970s', '1980s']
    assert [s.cause_of_death for s in subjects] == ['recur', 'spn', None]


def test_add_decade_column():
    frame = pd.DataFrame({'dodx': ['1969-12-31', '1970-01-01', None]})
    out = add_decade_column(frame)
    assert out['decade'].tolist()[:2] == ['1960s', '1970s']
    assert out['decade'].iloc[2] is None


def test_load_reference_rates(tmp_path, rate_frame_factory):
    path = tmp_path / 'rates.csv'
    rate_frame_factory().to_csv(path, index=False)
    table = load_reference_rates(path)
    assert table.rate('F', 12.0, 1990.0, 'recur') == pytest.approx(0.001)

    single = pd.DataFrame({'sex': ['M', 'M'], 'age': [0, 1], 'year': [2000, 2000],
                           'rate': [0.01, 0.02]})
    single_path = tmp_path / 'lifetable.csv'
    single.to_csv(single_path, index=False)
    table = load_reference_rates(single_path, single_years=True, cause=ALL)
    assert table.rate('M', 30.0, 2010.0, ALL) == pytest.approx(0.02)


def test_build_episode_sets_maps_over_causes(three_subjects, constant_rates):
    sets = build_episode_sets(three_subjects, constant_rates, causes=['recur', 'spn'])
    assert list(sets) == ['recur', 'spn', ALL]
    assert [int(s.episodes['event'].sum()) for s in sets.values()] == [1, 1, 2]


def test_build_episode_sets_with_rate_cause(three_subjects, rate_frame_factory):
    from mortality_core.reference_rates import ReferenceRateTable

    table = ReferenceRateTable(rate_frame_factory(causes=[ALL]))
    sets = build_episode_sets(three_subjects, table, causes=['recur'],
                              rate_causes={'recur': ALL})
    assert sets['recur'].episodes['expected'].sum() == pytest.approx(0.03)


def test_run_smr_analysis(three_subjects, constant_rates):
    sets = build_episode_sets(three_subjects, constant_rates, causes=['recur', 'spn'])
    result = run_smr_analysis(sets)

    estimates = result['estimates'].set_index('cause')
    assert estimates.loc[ALL, 'smr'] == pytest.approx(2 / 0.03)
    assert estimates.loc['recur', 'd'] == 1
    assert estimates.loc['recur', 'pct_excess'] == pytest.approx((1 - 0.03) / (2 - 0.03) * 100)
    assert len(result['ranking']) == 3

    by_age = run_smr_analysis(sets, by=['age_band'])['estimates']
    assert set(by_age['age_band']) == {'5-9', '10-14', '15-19'}
    assert (by_age['status'] == 'ok').all()


def test_run_cumulative_mortality(synthetic_cohort, constant_rates):
    reference = build_episode_sets(synthetic_cohort, constant_rates, causes=[])[ALL]
    result = run_cumulative_mortality(synthetic_cohort, reference.episodes,
                                      causes=['recur', 'spn'], group_col='era')

    curves = result['curves']
    assert set(curves['cause']) == {'recur', 'spn', ALL}
    assert curves['time'].between(Config.CUMMORT_AGE_MIN, Config.CUMMORT_AGE_MAX).all()
    assert set(result['tests']['cause']) == {'recur', 'spn', ALL}
    assert 'expected_smoothed' in result['expected'].columns
    assert set(result['at_risk']['group']) == {'early', 'late'}
    assert result['at_risk']['age'].unique().tolist() == Config.AT_RISK_AGES


def test_run_life_expectancy(three_subjects, constant_rates, subject_factory):
    subjects = three_subjects + [subject_factory(4, 30.0, entry_age=25.0, sex='F')]
    episodes = build_episode_sets(subjects, constant_rates, causes=[])[ALL].episodes

    overall = run_life_expectancy(episodes, floor=5.0, horizon=20.0)
    assert overall['status'].tolist() == ['ok']
    assert overall['years_lost'].iloc[0] > 0

    by_sex = run_life_expectancy(episodes, group_col='sex', floor=5.0, horizon=20.0)
    by_sex = by_sex.set_index('sex')
    assert by_sex.loc['M', 'status'] == 'ok'
    assert by_sex.loc['F', 'status'] == 'missing_data'

    with pytest.raises(ValueError):
        run_life_expectancy(episodes, method='kaplan')


def test_save_table_and_json(tmp_path):
    frame = pd.DataFrame({'cause': ['recur'], 'smr': [2.0]})
    paths = save_table(frame, tmp_path / 'out', 'smr_table')
    assert paths[0].exists()
    assert pd.read_csv(paths[0]).equals(frame)
    with pytest.raises(ValueError):
        save_table(frame, tmp_path, 'smr_table', formats=('docx',))

    path = save_json({'estimates': frame, 'p': np.float64(np.nan), 'n': np.int64(3)},
                     tmp_path / 'result.json')
    with open(path) as f:
        loaded = json.load(f)
    assert loaded == {'estimates': [{'cause': 'recur', 'smr': 2.0}], 'p': None, 'n': 3}


def test_convert_to_json_serializable():
    out = convert_to_json_serializable({
        np.int64(1): np.array([1.5, np.nan]),
        'flag': np.bool_(True),
        'items': (np.float32(0.5), 2),
    })
    assert out == {1: [1.5, None], 'flag': True, 'items': [0.5, 2]}


def test_run_smr_analysis_without_episodes(subject_factory, constant_rates):
    subjects = [subject_factory(1, 5.0, entry_age=5.0)]
    sets = build_episode_sets(subjects, constant_rates, causes=['spn'])

    result = run_smr_analysis(sets, by=['age_band'])
    assert result['aggregates'].empty
    assert result['estimates'].empty
    assert 'pct_excess' in result['estimates'].columns
    assert result['ranking'].empty

    overall = run_smr_analysis(sets)['estimates']
    assert (overall['status'] == 'undefined').all()


def test_run_life_expectancy_isolates_spline_failure(subject_factory, constant_rates):
    # group b has no deaths, so its spline hazard model cannot be fitted
    subjects = [
        subject_factory(i, 10.0 + i, died=i % 3 != 0, cause='recur' if i % 3 != 0 else None,
                        group='a')
        for i in range(60)
    ]
    subjects += [subject_factory(100 + i, 81.0, group='b') for i in range(20)]
    episodes = build_episode_sets(subjects, constant_rates, causes=[])[ALL].episodes

    table = run_life_expectancy(episodes, group_col='group', method='spline',
                                floor=5.0, horizon=60.0).set_index('group')
    assert table.loc['a', 'status'] == 'ok'
    assert table.loc['a', 'le_observed'] > 0
    assert table.loc['b', 'status'] == 'model_failed'
    assert np.isnan(table.loc['b', 'years_lost'])
    assert table.loc['b', 'reason'] != ''
