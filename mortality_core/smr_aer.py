"""
SMR/AER Estimator
=================
Aggregates survival episodes into strata (observed deaths d, expected deaths
e, person-years y) and computes standardized mortality ratios and absolute
excess risks with 95% confidence intervals.

SMR = d / e, exact Poisson CI:
    lower = chi2.ppf(0.025, 2d) / 2e,  upper = chi2.ppf(0.975, 2(d+1)) / 2e
    d = 0: lower = 0, upper = -ln(0.05) / e
AER = (d - e) / y * scale, SE(AER) ~ sqrt(d) / y * scale (approximation: the
variance of the expected count is ignored), CI = AER +/- 1.96 SE.

Zero expected deaths or zero person-years make the stratum "undefined";
it is reported with NaN estimates and kept out of rankings.

A Poisson GLM with log(expected) offset gives relative SMRs between
categories of one or more covariates.
"""

import logging
from dataclasses import fields
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from patsy import dmatrices
import statsmodels.api as sm
from statsmodels.genmod.families import Poisson
from scipy import stats

from .config import Config
from .episodes import EpisodeSet
from .exceptions import StatisticalUndefinedError
from .records import SmrAerEstimate, StratumAggregate

logger = logging.getLogger(__name__)

Z_95 = 1.96

AGGREGATE_COLUMNS = ['d', 'e', 'y', 'n_subjects']
ESTIMATE_COLUMNS = [f.name for f in fields(SmrAerEstimate) if f.name != 'key']


# =============================================================================
# AGGREGATION
# =============================================================================

def aggregate_episodes(episodes: pd.DataFrame, by: Sequence[str] = ()) -> pd.DataFrame:
    """
    Sum observed deaths, expected deaths and person-years per stratum.

    Returns:
    --------
    DataFrame with the `by` columns plus d, e, y, n_subjects
    """
    by = list(by)
    if by and len(episodes) == 0:
        return pd.DataFrame(columns=by + AGGREGATE_COLUMNS)
    if not by:
        return pd.DataFrame([{
            'd': float(episodes['event'].sum()),
            'e': float(episodes['expected'].sum()),
            'y': float(episodes['duration'].sum()),
            'n_subjects': int(episodes['subject_id'].nunique()),
        }])

    grouped = episodes.groupby(by, sort=True, dropna=False, observed=True)
    out = grouped.agg(
        d=('event', 'sum'),
        e=('expected', 'sum'),
        y=('duration', 'sum'),
        n_subjects=('subject_id', 'nunique'),
    ).reset_index()
    out['d'] = out['d'].astype(float)
    return out


def aggregate_by_cause(
    episode_sets: Mapping[str, Any],
    by: Sequence[str] = (),
) -> pd.DataFrame:
    """Aggregate each cause's episodes independently and stack the results."""
    tables = []
    for cause, episodes in episode_sets.items():
        if isinstance(episodes, EpisodeSet):
            episodes = episodes.episodes
        agg = aggregate_episodes(episodes, by)
        agg.insert(0, 'cause', cause)
        tables.append(agg)
    if not tables:
        return pd.DataFrame(columns=['cause'] + list(by) + AGGREGATE_COLUMNS)
    return pd.concat(tables, ignore_index=True)


# =============================================================================
# POINT AND INTERVAL ESTIMATES
# =============================================================================

def smr_confidence_interval(d: float, e: float, alpha: float = 0.05) -> Tuple[float, float]:
    """Exact Poisson confidence interval for d / e."""
    if e <= 0:
        raise StatisticalUndefinedError("zero expected deaths")
    if d == 0:
        return 0.0, float(-np.log(alpha) / e)
    lower = stats.chi2.ppf(alpha / 2, 2 * d) / (2 * e)
    upper = stats.chi2.ppf(1 - alpha / 2, 2 * (d + 1)) / (2 * e)
    return float(lower), float(upper)


def compute_smr(d: float, e: float) -> float:
    if e <= 0:
        raise StatisticalUndefinedError("zero expected deaths")
    return float(d / e)


def compute_aer(d: float, e: float, y: float, scale: float = Config.AER_SCALE) -> Tuple[float, float, float]:
    """
    AER per `scale` person-years with approximate 95% CI.

    SE uses sqrt(d)/y, ignoring the variance of e.
    """
    if y <= 0:
        raise StatisticalUndefinedError("zero person-years")
    aer = (d - e) / y * scale
    se = np.sqrt(d) / y * scale
    return float(aer), float(aer - Z_95 * se), float(aer + Z_95 * se)


def format_estimate(value: float, lo: float, hi: float, decimals: int = 1,
                    floor_negative: bool = False) -> str:
    """Format an estimate with its CI, e.g. '2.0 (1.0, 3.7)'."""
    if value is None or np.isnan(value):
        return "undefined"
    if floor_negative:
        value, lo, hi = max(value, 0.0), max(lo, 0.0), max(hi, 0.0)
    return f"{value:.{decimals}f} ({lo:.{decimals}f}, {hi:.{decimals}f})"


def estimate_stratum(
    aggregate: StratumAggregate,
    scale: float = Config.AER_SCALE,
    smr_decimals: int = Config.SMR_DECIMALS,
    aer_decimals: int = Config.AER_DECIMALS,
    floor_negative: bool = False,
) -> SmrAerEstimate:
    """SMR and AER for one stratum; undefined parts are flagged, not raised."""
    d, e, y = aggregate.d, aggregate.e, aggregate.y
    smr = smr_lo = smr_hi = aer = aer_lo = aer_hi = np.nan
    reasons = []

    try:
        smr = compute_smr(d, e)
        smr_lo, smr_hi = smr_confidence_interval(d, e, 1 - Config.CI_LEVEL)
    except StatisticalUndefinedError as err:
        reasons.append(f"SMR: {err}")

    try:
        aer, aer_lo, aer_hi = compute_aer(d, e, y, scale)
    except StatisticalUndefinedError as err:
        reasons.append(f"AER: {err}")

    return SmrAerEstimate(
        key=dict(aggregate.key), d=d, e=e, y=y, n_subjects=aggregate.n_subjects,
        smr=smr, smr_lo=smr_lo, smr_hi=smr_hi,
        aer=aer, aer_lo=aer_lo, aer_hi=aer_hi,
        status='undefined' if reasons else 'ok',
        reason='; '.join(reasons),
        smr_display=format_estimate(smr, smr_lo, smr_hi, smr_decimals),
        aer_display=format_estimate(aer, aer_lo, aer_hi, aer_decimals, floor_negative=floor_negative),
    )


def estimate_smr_aer(
    aggregates: pd.DataFrame,
    by: Sequence[str] = (),
    scale: float = Config.AER_SCALE,
    smr_decimals: int = Config.SMR_DECIMALS,
    aer_decimals: int = Config.AER_DECIMALS,
    floor_negative: bool = False,
) -> pd.DataFrame:
    """
    Estimate SMR/AER for every row of an aggregate table.

    Parameters:
    -----------
    aggregates : output of aggregate_episodes / aggregate_by_cause
    by : key columns carried into the output (e.g. ['cause', 'age_band'])
    scale : AER person-year unit (10,000 or 100,000)
    smr_decimals, aer_decimals : display precision
    floor_negative : show negative AER as 0 in aer_display only

    Returns:
    --------
    DataFrame with key columns, d, e, y, smr, smr_lo, smr_hi, aer, aer_lo,
    aer_hi, status, reason and display strings
    """
    by = list(by)
    rows = []
    for record in aggregates.to_dict('records'):
        aggregate = StratumAggregate(
            key={c: record[c] for c in by},
            d=float(record['d']),
            e=float(record['e']),
            y=float(record['y']),
            n_subjects=int(record.get('n_subjects', 0)),
        )
        rows.append(estimate_stratum(aggregate, scale, smr_decimals, aer_decimals,
                                     floor_negative).to_row())

    if not rows:
        return pd.DataFrame(columns=by + ESTIMATE_COLUMNS)
    out = pd.DataFrame(rows)
    n_undefined = int((out['status'] == 'undefined').sum())
    if n_undefined:
        logger.warning(f"{n_undefined} of {len(out)} strata undefined (zero e or y)")
    return out


def add_excess_share(
    estimates: pd.DataFrame,
    by: Sequence[str] = (),
    total_cause: str = Config.ALL_CAUSES,
    cause_col: str = 'cause',
    decimals: int = 1,
    floor_negative: bool = False,
) -> pd.DataFrame:
    """
    Percentage of all-cause excess deaths (d - e) contributed by each cause,
    within each `by` stratum. Negative shares are floored only in
    pct_excess_display.
    """
    by = list(by)
    out = estimates.copy()
    out['excess'] = out['d'] - out['e']
    totals = (out.loc[out[cause_col] == total_cause, by + ['excess']]
                 .rename(columns={'excess': 'total_excess'}))

    if by:
        out = out.merge(totals, on=by, how='left')
    else:
        out['total_excess'] = totals['total_excess'].iloc[0] if len(totals) else np.nan

    out['pct_excess'] = out['excess'] / out['total_excess'].replace(0, np.nan) * 100

    def _display(p):
        if pd.isna(p):
            return "undefined"
        if floor_negative:
            p = max(p, 0.0)
        return f"{p:.{decimals}f}"

    out['pct_excess_display'] = out['pct_excess'].apply(_display)
    return out


def rank_strata(estimates: pd.DataFrame, column: str = 'smr', ascending: bool = False) -> pd.DataFrame:
    """Rank defined strata by `column`; undefined strata are excluded."""
    ok = estimates[estimates['status'] == 'ok'].copy()
    ok['rank'] = ok[column].astype(float).rank(ascending=ascending, method='min').astype(int)
    return ok.sort_values('rank').reset_index(drop=True)


# =============================================================================
# RELATIVE SMR (POISSON REGRESSION)
# =============================================================================

def fit_relative_smr(
    aggregates: pd.DataFrame,
    covariates: Sequence[str],
) -> Optional[Dict[str, Any]]:
    """
    Poisson regression of observed deaths with log(expected) offset.

    exp(coef) of a covariate level is the ratio of its SMR to the reference
    level's, adjusted for the other covariates.

    Parameters:
    -----------
    aggregates : strata with d, e and the covariate columns
    covariates : categorical covariates

    Returns:
    --------
    Dict with 'estimates' (term, rr, rr_lo, rr_hi, p), 'lrt' (covariate,
    statistic, df, p), deviance and n_obs; None if fitting fails
    """
    covariates = list(covariates)
    df = aggregates[aggregates['e'] > 0].dropna(subset=covariates).reset_index(drop=True)
    n_dropped = len(aggregates) - len(df)
    if n_dropped:
        logger.warning(f"Dropped {n_dropped} strata with zero expected deaths or missing covariates")

    def _fit(terms):
        rhs = ' + '.join(f"C({c})" for c in terms) if terms else '1'
        y, X = dmatrices(f"d ~ {rhs}", df, return_type='dataframe')
        model = sm.GLM(y, X, family=Poisson(), offset=np.log(df['e'].to_numpy(dtype=float)))
        return model.fit()

    try:
        full = _fit(covariates)
        reduced_fits = {cov: _fit([c for c in covariates if c != cov]) for cov in covariates}
    except (np.linalg.LinAlgError, ValueError) as e:
        logger.error(f"Relative SMR model failed: {e}")
        return None

    ci = full.conf_int()
    estimates = pd.DataFrame({
        'term': full.params.index,
        'rr': np.exp(full.params.to_numpy()),
        'rr_lo': np.exp(ci[0].to_numpy()),
        'rr_hi': np.exp(ci[1].to_numpy()),
        'p': full.pvalues.to_numpy(),
    })

    lrt = []
    for cov in covariates:
        reduced = reduced_fits[cov]
        statistic = max(0.0, 2 * (full.llf - reduced.llf))
        dof = int(round(full.df_model - reduced.df_model))
        lrt.append({
            'covariate': cov,
            'statistic': float(statistic),
            'df': dof,
            'p': float(stats.chi2.sf(statistic, dof)) if dof > 0 else np.nan,
        })

    return {
        'estimates': estimates,
        'lrt': pd.DataFrame(lrt),
        'deviance': float(full.deviance),
        'n_obs': int(full.nobs),
    }
