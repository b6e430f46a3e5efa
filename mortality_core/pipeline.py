"""
Pipeline helpers shared by the phase scripts: input loading, per-cause
mapping over the core estimators and result writers.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .config import Config
from .cumulative_incidence import (
    cumulative_incidence_by_cause,
    expected_cumulative_mortality,
    number_at_risk,
    restrict_age_window,
    stack_curves,
    stack_tests,
    subject_times,
)
from .episodes import EpisodeSet, build_episodes, subjects_from_frame
from .exceptions import MissingDataError
from .life_expectancy import (
    cohort_survival_curves,
    fit_survival_curve,
    life_expectancy_table,
)
from .records import Subject
from .reference_rates import ReferenceRateTable
from .smr_aer import add_excess_share, aggregate_by_cause, estimate_smr_aer, rank_strata

logger = logging.getLogger(__name__)


# =============================================================================
# INPUT
# =============================================================================

def read_table(path) -> pd.DataFrame:
    """Read a CSV, Parquet or Stata file."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == '.csv':
        return pd.read_csv(path)
    if suffix in ('.parquet', '.pq'):
        return pd.read_parquet(path)
    if suffix == '.dta':
        return pd.read_stata(path)
    raise ValueError(f"Unsupported file type '{suffix}' for {path} (expected .csv, .parquet or .dta)")


def add_decade_column(frame: pd.DataFrame, date_col: str = Config.ENTRY_COL,
                      name: str = 'decade') -> pd.DataFrame:
    """Decade of a date column as a label, e.g. '1970s'."""
    out = frame.copy()
    years = pd.to_datetime(out[date_col], errors='coerce').dt.year
    out[name] = (years // 10 * 10).map(lambda y: f"{int(y)}s" if pd.notna(y) else None)
    return out


def load_subjects(
    path,
    causes: Sequence[str] = None,
    attribute_cols: Sequence[str] = (),
    drop_invalid: bool = False,
    add_decade: bool = True,
) -> Tuple[List[Subject], List[Dict[str, Any]]]:
    """
    Load the one-row-per-subject table into Subject records.

    With add_decade, a 'decade' attribute (decade of diagnosis) is derived
    from the entry date and added to the grouping attributes.
    """
    frame = read_table(path)
    logger.info(f"Loaded {len(frame):,} subject rows from {path}")
    attribute_cols = list(attribute_cols)
    if add_decade and 'decade' not in frame.columns:
        frame = add_decade_column(frame)
    if add_decade and 'decade' not in attribute_cols:
        attribute_cols.append('decade')
    return subjects_from_frame(frame, causes, attribute_cols=attribute_cols,
                               drop_invalid=drop_invalid)


def load_reference_rates(path, single_years: bool = False, cause: str = None) -> ReferenceRateTable:
    """
    Load reference rates, either banded (sex, age_lo, age_hi, year_lo,
    year_hi, cause, rate) or single-year (sex, age, year, [cause], rate).
    """
    frame = read_table(path)
    if single_years:
        table = ReferenceRateTable.from_single_years(frame, cause=cause)
    else:
        table = ReferenceRateTable(frame)
    logger.info(f"Reference rates: {len(frame):,} rows, years "
                f"{table.min_year:g}-{table.max_year:g}, causes {table.causes}")
    return table


# =============================================================================
# CORE RUNS
# =============================================================================

def build_episode_sets(
    subjects: Sequence[Subject],
    rate_table: ReferenceRateTable,
    causes: Sequence[str] = None,
    include_all_causes: bool = True,
    rate_causes: Optional[Dict[str, str]] = None,
    age_cuts: Sequence[float] = None,
    period_cuts: Sequence[float] = None,
    drop_invalid: bool = False,
) -> Dict[str, EpisodeSet]:
    """
    One independent episode set per cause.

    rate_causes maps an analysed cause to the reference-table cause used for
    its expected deaths (default: the same name).
    """
    causes = list(Config.CAUSES if causes is None else causes)
    if include_all_causes and Config.ALL_CAUSES not in causes:
        causes.append(Config.ALL_CAUSES)
    rate_causes = rate_causes or {}

    return {
        cause: build_episodes(subjects, cause, rate_table, age_cuts, period_cuts,
                              rate_cause=rate_causes.get(cause, cause),
                              drop_invalid=drop_invalid)
        for cause in causes
    }


def run_smr_analysis(
    episode_sets: Dict[str, EpisodeSet],
    by: Sequence[str] = (),
    scale: float = Config.AER_SCALE,
    floor_negative: bool = Config.FLOOR_NEGATIVE_DISPLAY,
    rank_by: str = 'smr',
) -> Dict[str, pd.DataFrame]:
    """
    SMR/AER per cause and stratum.

    Returns:
    --------
    Dict with 'aggregates', 'estimates' (with share of all-cause excess
    when all causes are present) and 'ranking' (defined strata only)
    """
    by = list(by)
    aggregates = aggregate_by_cause(episode_sets, by)
    estimates = estimate_smr_aer(aggregates, ['cause'] + by, scale,
                                 floor_negative=floor_negative)
    if Config.ALL_CAUSES in episode_sets:
        estimates = add_excess_share(estimates, by, floor_negative=floor_negative)

    ranking = rank_strata(estimates, column=rank_by)
    logger.info(f"SMR/AER: {len(estimates)} strata, {len(ranking)} defined")
    return {'aggregates': aggregates, 'estimates': estimates, 'ranking': ranking}


def run_cumulative_mortality(
    subjects: Sequence[Subject],
    reference_episodes: pd.DataFrame,
    causes: Sequence[str] = None,
    group_col: str = None,
    left_truncate: bool = False,
    age_min: float = Config.CUMMORT_AGE_MIN,
    age_max: float = Config.CUMMORT_AGE_MAX,
    at_risk_ages: Sequence[float] = None,
    smooth_frac: Optional[float] = Config.LOWESS_FRAC,
) -> Dict[str, pd.DataFrame]:
    """
    Observed cumulative mortality per cause, the expected all-cause curve
    from the reference hazard, and the at-risk table, all restricted to the
    attained-age window [age_min, age_max].
    """
    causes = list(Config.CAUSES if causes is None else causes)
    if Config.ALL_CAUSES not in causes:
        causes.append(Config.ALL_CAUSES)
    times = subject_times(subjects, [c for c in causes if c != Config.ALL_CAUSES])

    results = cumulative_incidence_by_cause(times, causes, group_col, left_truncate)
    curves = restrict_age_window(stack_curves(results), age_min, age_max)
    expected = restrict_age_window(
        expected_cumulative_mortality(reference_episodes, smooth_frac=smooth_frac),
        age_min, age_max)

    if group_col:
        at_risk = pd.concat([
            number_at_risk(block['entry_age'], block['exit_age'], at_risk_ages).assign(group=level)
            for level, block in times.groupby(group_col, sort=True)
        ], ignore_index=True)
    else:
        at_risk = number_at_risk(times['entry_age'], times['exit_age'], at_risk_ages)

    return {
        'curves': curves,
        'tests': stack_tests(results),
        'expected': expected,
        'at_risk': at_risk,
    }


def run_life_expectancy(
    episodes: pd.DataFrame,
    group_col: str = None,
    method: str = 'hazard',
    floor: float = Config.LE_FLOOR,
    horizon: float = Config.LE_HORIZON,
    step: float = Config.LE_STEP,
    spline_df: int = Config.SPLINE_DF,
) -> pd.DataFrame:
    """
    Restricted life expectancy and life-years lost from all-cause episodes,
    overall or per level of group_col.

    method='hazard' uses piecewise-exponential observed survival (1-year
    bands); method='spline' smooths the observed hazard with a Poisson
    spline model. Expected survival always comes from the reference rates.

    Each group gets a status: 'ok', 'missing_data' (curve does not cover
    [floor, horizon]) or 'model_failed' (spline fit did not converge).
    """
    if method not in ('hazard', 'spline'):
        raise ValueError(f"Unknown method '{method}' (expected 'hazard' or 'spline')")

    group_name = group_col or 'group'
    edges = np.arange(0.0, np.ceil(horizon) + 1.0)
    blocks = episodes.groupby(group_col, sort=True) if group_col else [('all', episodes)]
    curves = {}
    failed = []

    def _failure(level, status, reason):
        return {group_name: level, 'floor': floor, 'horizon': horizon,
                'le_observed': np.nan, 'le_expected': np.nan, 'years_lost': np.nan,
                'status': status, 'reason': reason}

    for level, block in blocks:
        try:
            observed, expected = cohort_survival_curves(block, edges, label=str(level))
        except MissingDataError as e:
            logger.warning(f"Life expectancy for {group_name}={level!r} not computed: {e}")
            failed.append(_failure(level, 'missing_data', str(e)))
            continue
        if method == 'spline':
            try:
                observed = fit_survival_curve(block, df=spline_df, step=step,
                                              label=f"{level} observed (spline)")
            except (np.linalg.LinAlgError, ValueError) as e:
                logger.error(f"Spline hazard model for {group_name}={level!r} failed: {e}")
                failed.append(_failure(level, 'model_failed', str(e)))
                continue
        curves[level] = (observed, expected)

    table = life_expectancy_table(curves, floor, horizon, step, group_name=group_name)
    if failed:
        table = pd.concat([table, pd.DataFrame(failed)], ignore_index=True)
    return table


# =============================================================================
# OUTPUT
# =============================================================================

def convert_to_json_serializable(obj: Any) -> Any:
    """
    Recursively convert numpy/pandas types to JSON-serializable Python types.
    NaN becomes None.
    """
    if isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, (float, np.floating)):
        return None if np.isnan(obj) else float(obj)
    elif isinstance(obj, np.ndarray):
        return convert_to_json_serializable(obj.tolist())
    elif isinstance(obj, np.bool_):
        return bool(obj)
    elif isinstance(obj, pd.DataFrame):
        return convert_to_json_serializable(obj.to_dict('records'))
    elif isinstance(obj, dict):
        return {
            (convert_to_json_serializable(k) if isinstance(k, (np.integer, np.floating)) else k):
            convert_to_json_serializable(v)
            for k, v in obj.items()
        }
    elif isinstance(obj, (list, tuple)):
        return [convert_to_json_serializable(item) for item in obj]
    return obj


def save_table(df: pd.DataFrame, output_dir, name: str, formats: Sequence[str] = ('csv',)) -> List[Path]:
    """Save a table in each requested format ('csv', 'parquet')."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for fmt in formats:
        filepath = output_dir / f"{name}.{fmt}"
        if fmt == 'csv':
            df.to_csv(filepath, index=False)
        elif fmt == 'parquet':
            df.to_parquet(filepath, index=False)
        else:
            raise ValueError(f"Unsupported table format '{fmt}'")
        paths.append(filepath)
    logger.info(f"  Saved: {name} ({', '.join(formats)})")
    return paths


def save_json(obj: Any, path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(convert_to_json_serializable(obj), f, indent=2)
    logger.info(f"  Saved: {path.name}")
    return path
