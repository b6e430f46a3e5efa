"""
Core module for the childhood-cancer survivor mortality analyses.

Contains:
- reference_rates: general-population rate table with year clamping
- episodes: Lexis splitting of follow-up into age x period episodes
- smr_aer: SMR / AER estimates with confidence intervals, relative SMR models
- cumulative_incidence: Aalen-Johansen competing-risks curves, log-rank
  heterogeneity test, expected cumulative mortality, at-risk tables
- life_expectancy: restricted mean survival and life-years lost
- pipeline: loaders, per-cause runs and table writers for the phase scripts
"""

from .config import Config
from .exceptions import (
    MortalityAnalysisError,
    DataIntegrityError,
    ReferenceRateLookupError,
    StatisticalUndefinedError,
    MissingDataError,
)
from .records import (
    Subject,
    SurvivalEpisode,
    StratumAggregate,
    SmrAerEstimate,
    decimal_year,
    years_between,
)
from .reference_rates import ReferenceRateTable
from .episodes import (
    EpisodeSet,
    subjects_from_frame,
    band_label,
    split_subject,
    episodes_to_frame,
    build_episodes,
    collapse_episodes,
    hazard_by_age,
)
from .smr_aer import (
    aggregate_episodes,
    aggregate_by_cause,
    smr_confidence_interval,
    compute_smr,
    compute_aer,
    format_estimate,
    estimate_stratum,
    estimate_smr_aer,
    add_excess_share,
    rank_strata,
    fit_relative_smr,
)
from .cumulative_incidence import (
    CumulativeIncidenceResult,
    subject_times,
    competing_risks_status,
    aalen_johansen,
    heterogeneity_test,
    cumulative_incidence,
    cumulative_incidence_by_cause,
    stack_curves,
    stack_tests,
    curve_at,
    restrict_age_window,
    number_at_risk,
    expected_cumulative_mortality,
)
from .life_expectancy import (
    SurvivalCurve,
    survival_from_hazard,
    survival_from_aalen_johansen,
    cohort_survival_curves,
    fit_survival_curve,
    restricted_mean_survival,
    life_years_lost,
    life_expectancy_table,
)

__all__ = [
    'Config',
    # Errors
    'MortalityAnalysisError',
    'DataIntegrityError',
    'ReferenceRateLookupError',
    'StatisticalUndefinedError',
    'MissingDataError',
    # Records
    'Subject',
    'SurvivalEpisode',
    'StratumAggregate',
    'SmrAerEstimate',
    'decimal_year',
    'years_between',
    # Reference rates
    'ReferenceRateTable',
    # Episodes
    'EpisodeSet',
    'subjects_from_frame',
    'band_label',
    'split_subject',
    'episodes_to_frame',
    'build_episodes',
    'collapse_episodes',
    'hazard_by_age',
    # SMR / AER
    'aggregate_episodes',
    'aggregate_by_cause',
    'smr_confidence_interval',
    'compute_smr',
    'compute_aer',
    'format_estimate',
    'estimate_stratum',
    'estimate_smr_aer',
    'add_excess_share',
    'rank_strata',
    'fit_relative_smr',
    # Cumulative incidence
    'CumulativeIncidenceResult',
    'subject_times',
    'competing_risks_status',
    'aalen_johansen',
    'heterogeneity_test',
    'cumulative_incidence',
    'cumulative_incidence_by_cause',
    'stack_curves',
    'stack_tests',
    'curve_at',
    'restrict_age_window',
    'number_at_risk',
    'expected_cumulative_mortality',
    # Life expectancy
    'SurvivalCurve',
    'survival_from_hazard',
    'survival_from_aalen_johansen',
    'cohort_survival_curves',
    'fit_survival_curve',
    'restricted_mean_survival',
    'life_years_lost',
    'life_expectancy_table',
]
