"""
Competing-Risks Cumulative Incidence
====================================
Aalen-Johansen cumulative incidence of one cause of death over attained age,
with death from any other cause as the competing event.

At each distinct time t with risk set n(t) = #{entry < t <= exit}:
    S(t)  = S(t-) * (1 - (d1 + d2) / n)
    F1(t) = F1(t-) + S(t-) * d1 / n
    F2(t) = F2(t-) + S(t-) * d2 / n
Events of both types at the same t enter one combined update, so
S + F1 + F2 = 1 at every time.

Also:
- cause-specific log-rank heterogeneity test across strata (statsmodels)
- number at risk by attained age
- expected cumulative mortality from the integrated reference hazard,
  optionally LOWESS-smoothed
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import numpy as np
import pandas as pd
from statsmodels.duration.survfunc import survdiff
from statsmodels.nonparametric.smoothers_lowess import lowess

from .config import Config
from .episodes import hazard_by_age
from .records import Subject

logger = logging.getLogger(__name__)

CENSORED, EVENT, COMPETING = 0, 1, 2


@dataclass(frozen=True)
class CumulativeIncidenceResult:
    """Curves (one block per group level) and the heterogeneity test, if any."""

    curves: pd.DataFrame
    test: Optional[Dict[str, Any]] = None


# =============================================================================
# STATUS CODING
# =============================================================================

def subject_times(subjects: Sequence[Subject], causes: Sequence[str] = None) -> pd.DataFrame:
    """One row per subject: entry/exit age, grouping values and 0/1 cause flags."""
    causes = list(Config.CAUSES if causes is None else causes)
    rows = []
    for s in subjects:
        row = {'subject_id': s.subject_id, 'entry_age': s.entry_age, 'exit_age': s.exit_age}
        row.update(s.grouping_values())
        row.update({c: int(s.cause_of_death == c) for c in causes})
        row[Config.ALL_CAUSES] = int(s.died)
        rows.append(row)
    return pd.DataFrame(rows)


def competing_risks_status(frame: pd.DataFrame, cause: str,
                           all_cause_col: str = Config.ALL_CAUSES) -> np.ndarray:
    """1 = died of `cause`, 2 = died of anything else, 0 = censored."""
    died = frame[all_cause_col].fillna(0).to_numpy() == 1
    if cause == all_cause_col:
        return np.where(died, EVENT, CENSORED)
    event = frame[cause].fillna(0).to_numpy() == 1
    return np.where(event, EVENT, np.where(died, COMPETING, CENSORED))


# =============================================================================
# AALEN-JOHANSEN ESTIMATOR
# =============================================================================

def _prepare(time, status, entry):
    time = np.asarray(time, dtype=float)
    status = np.asarray(status, dtype=int)
    entry = np.zeros_like(time) if entry is None else np.asarray(entry, dtype=float)
    if not (len(time) == len(status) == len(entry)):
        raise ValueError("time, status and entry must have the same length")
    if not np.isin(status, [CENSORED, EVENT, COMPETING]).all():
        raise ValueError("status must be coded 0 (censored), 1 (event) or 2 (competing)")

    keep = time > entry
    if not keep.all():
        logger.warning(f"Dropped {int((~keep).sum())} record(s) with exit <= entry")
    return time[keep], status[keep], entry[keep], keep


def aalen_johansen(time, status, entry=None) -> pd.DataFrame:
    """
    Cumulative incidence of status 1 with status 2 competing.

    Parameters:
    -----------
    time : exit times (attained age at death or censoring)
    status : 0 censored, 1 event of interest, 2 competing event
    entry : optional entry times (left truncation); default 0

    Returns:
    --------
    DataFrame with time, n_risk, n_event, n_competing, n_censored, survival,
    cif, cif_competing, percentage (cif x 100). The first row is the
    origin (earliest entry) with cif 0 and survival 1.
    """
    time, status, entry, _ = _prepare(time, status, entry)
    columns = ['time', 'n_risk', 'n_event', 'n_competing', 'n_censored',
               'survival', 'cif', 'cif_competing', 'percentage']
    if len(time) == 0:
        return pd.DataFrame(columns=columns)

    times = np.unique(time)
    n = len(time)
    n_risk = ((n - np.searchsorted(np.sort(time), times, side='left'))
              - (n - np.searchsorted(np.sort(entry), times, side='left'))).astype(float)

    idx = np.searchsorted(times, time)
    d1 = np.bincount(idx, weights=(status == EVENT).astype(float), minlength=len(times))
    d2 = np.bincount(idx, weights=(status == COMPETING).astype(float), minlength=len(times))
    censored = np.bincount(idx, weights=(status == CENSORED).astype(float), minlength=len(times))

    survival = np.cumprod(1.0 - (d1 + d2) / n_risk)
    surv_prev = np.concatenate([[1.0], survival[:-1]])
    cif = np.cumsum(surv_prev * d1 / n_risk)
    cif_competing = np.cumsum(surv_prev * d2 / n_risk)

    curve = pd.DataFrame({
        'time': times,
        'n_risk': n_risk.astype(int),
        'n_event': d1.astype(int),
        'n_competing': d2.astype(int),
        'n_censored': censored.astype(int),
        'survival': survival,
        'cif': cif,
        'cif_competing': cif_competing,
    })

    origin = float(entry.min())
    if origin < times[0]:
        start = pd.DataFrame([{
            'time': origin, 'n_risk': int((entry <= origin).sum()), 'n_event': 0,
            'n_competing': 0, 'n_censored': 0, 'survival': 1.0, 'cif': 0.0,
            'cif_competing': 0.0,
        }])
        curve = pd.concat([start, curve], ignore_index=True)

    curve['percentage'] = curve['cif'] * 100
    return curve[columns]


def heterogeneity_test(time, status, group, entry=None) -> Dict[str, Any]:
    """
    K-sample log-rank test of the cause-specific hazard (status 1 vs rest)
    across group levels.
    """
    time = np.asarray(time, dtype=float)
    group = np.asarray(group)
    time, status, entry_kept, keep = _prepare(time, status, entry)
    group = group[keep]

    kwargs = {} if entry is None else {'entry': entry_kept}
    statistic, p_value = survdiff(time, (status == EVENT).astype(int), group, **kwargs)
    return {
        'statistic': float(statistic),
        'df': int(len(pd.unique(group)) - 1),
        'p_value': float(p_value),
        'method': 'log-rank (cause-specific)',
    }


def cumulative_incidence(time, status, entry=None, group=None) -> CumulativeIncidenceResult:
    """
    Aalen-Johansen curves, overall or independently per group level.

    With two or more group levels a log-rank heterogeneity test is attached.
    """
    if group is None:
        curves = aalen_johansen(time, status, entry)
        curves.insert(0, 'group', None)
        return CumulativeIncidenceResult(curves=curves)

    time = np.asarray(time, dtype=float)
    status = np.asarray(status, dtype=int)
    group = np.asarray(group)
    entry_arr = None if entry is None else np.asarray(entry, dtype=float)

    blocks = []
    levels = pd.unique(group)
    for level in sorted(levels, key=str):
        mask = group == level
        block = aalen_johansen(time[mask], status[mask],
                               None if entry_arr is None else entry_arr[mask])
        block.insert(0, 'group', level)
        blocks.append(block)
    curves = pd.concat(blocks, ignore_index=True)

    test = None
    if len(levels) > 1:
        test = heterogeneity_test(time, status, group, entry_arr)
        logger.info(f"Log-rank across {len(levels)} groups: chi2={test['statistic']:.2f}, "
                    f"df={test['df']}, p={test['p_value']:.3g}")
    return CumulativeIncidenceResult(curves=curves, test=test)


def cumulative_incidence_by_cause(
    subjects: pd.DataFrame,
    causes: Sequence[str] = None,
    group_col: str = None,
    left_truncate: bool = False,
) -> Dict[str, CumulativeIncidenceResult]:
    """
    Cumulative incidence over attained age for each cause.

    Parameters:
    -----------
    subjects : output of subject_times (exit_age, entry_age, cause flags)
    causes : causes of interest; all other deaths compete
    group_col : optional stratifying column (e.g. decade of diagnosis)
    left_truncate : count subjects at risk only from their entry age
    """
    causes = list(Config.CAUSES if causes is None else causes)
    entry = subjects['entry_age'].to_numpy() if left_truncate else None
    group = subjects[group_col].to_numpy() if group_col else None

    results = {}
    for cause in causes:
        status = competing_risks_status(subjects, cause)
        results[cause] = cumulative_incidence(subjects['exit_age'].to_numpy(), status, entry, group)
        n_events = int((status == EVENT).sum())
        logger.info(f"[{cause}] cumulative incidence from {n_events} deaths")
    return results


def stack_curves(results: Dict[str, CumulativeIncidenceResult]) -> pd.DataFrame:
    """Concatenate per-cause curves into one (cause, group, time, ...) table."""
    blocks = []
    for cause, result in results.items():
        block = result.curves.copy()
        block.insert(0, 'cause', cause)
        blocks.append(block)
    return pd.concat(blocks, ignore_index=True) if blocks else pd.DataFrame()


def stack_tests(results: Dict[str, CumulativeIncidenceResult]) -> pd.DataFrame:
    rows = [{'cause': cause, **result.test} for cause, result in results.items()
            if result.test is not None]
    return pd.DataFrame(rows)


# =============================================================================
# CURVE UTILITIES
# =============================================================================

def curve_at(curve: pd.DataFrame, ages: Sequence[float], column: str = 'percentage') -> np.ndarray:
    """
    Step-function value of `column` at each age (right-continuous).
    Ages before the first time give 0; ages after the last time give NaN,
    as does every age on an empty curve.
    """
    ages = np.asarray(ages, dtype=float)
    times = curve['time'].to_numpy(dtype=float)
    values = curve[column].to_numpy(dtype=float)
    if len(times) == 0:
        return np.full(ages.shape, np.nan)
    idx = np.searchsorted(times, ages, side='right') - 1
    out = np.where(idx >= 0, values[np.clip(idx, 0, None)], 0.0)
    return np.where(ages > times[-1], np.nan, out)


def restrict_age_window(curve: pd.DataFrame, lo: float = Config.CUMMORT_AGE_MIN,
                        hi: float = Config.CUMMORT_AGE_MAX, time_col: str = 'time') -> pd.DataFrame:
    keep = (curve[time_col] >= lo) & (curve[time_col] <= hi)
    return curve[keep].reset_index(drop=True)


def number_at_risk(entry, exit_, ages: Sequence[float] = None) -> pd.DataFrame:
    """Subjects under observation at each age (entry <= age < exit)."""
    ages = Config.AT_RISK_AGES if ages is None else ages
    entry = np.asarray(entry, dtype=float)
    exit_ = np.asarray(exit_, dtype=float)
    return pd.DataFrame({
        'age': list(ages),
        'n_at_risk': [int(((entry <= a) & (exit_ > a)).sum()) for a in ages],
    })


def expected_cumulative_mortality(
    episodes: pd.DataFrame,
    edges: Sequence[float] = None,
    smooth_frac: Optional[float] = Config.LOWESS_FRAC,
) -> pd.DataFrame:
    """
    Expected cumulative mortality (%) from the cohort's reference hazard.

    The person-time weighted reference hazard per age band is integrated
    over attained age; expected = (1 - exp(-H)) x 100. Bands without
    person-time are skipped.

    Returns:
    --------
    DataFrame with time, cumulative_hazard, expected and, when smooth_frac
    is given, expected_smoothed (LOWESS)
    """
    edges = np.arange(0, 101, 1, dtype=float) if edges is None else np.asarray(edges, dtype=float)
    hz = hazard_by_age(episodes, edges)
    hz = hz[hz['y'] > 0].reset_index(drop=True)
    if len(hz) == 0:
        return pd.DataFrame(columns=['time', 'cumulative_hazard', 'expected'])

    width = hz['age_hi'] - hz['age_lo']
    cumhaz = np.cumsum(hz['expected_hazard'].to_numpy() * width.to_numpy())
    out = pd.DataFrame({
        'time': np.concatenate([[hz['age_lo'].iloc[0]], hz['age_hi'].to_numpy()]),
        'cumulative_hazard': np.concatenate([[0.0], cumhaz]),
    })
    out['expected'] = (1 - np.exp(-out['cumulative_hazard'])) * 100

    if smooth_frac is not None and len(out) > 2:
        smoothed = lowess(out['expected'].to_numpy(), out['time'].to_numpy(),
                          frac=smooth_frac, return_sorted=False)
        out['expected_smoothed'] = smoothed
    return out
