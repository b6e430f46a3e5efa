"""
Life-Expectancy Estimator
=========================
Restricted mean survival between an age floor and a truncation horizon:

    LE = integral_{floor}^{horizon} S(a) / S(floor) da

computed with the trapezoidal rule on a regular grid. Life-years lost is
expected LE (reference population) minus observed LE (cohort), kept signed.

A curve that is not defined somewhere in [floor, horizon] raises
MissingDataError instead of truncating the integral.

Survival curves can come from:
- piecewise-constant hazards per age band (observed d/y or expected e/y)
- the all-cause Aalen-Johansen / Kaplan-Meier estimate (step function)
- a Poisson GLM with a cubic regression spline of attained age
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Hashable, Mapping, Sequence, Tuple

import numpy as np
import pandas as pd
from patsy import dmatrix, build_design_matrices
import statsmodels.api as sm
from statsmodels.genmod.families import Poisson
from scipy.integrate import cumulative_trapezoid, trapezoid

from .config import Config
from .episodes import hazard_by_age
from .exceptions import MissingDataError

logger = logging.getLogger(__name__)

SUPPORT_TOL = 1e-9


@dataclass(frozen=True)
class SurvivalCurve:
    """
    S(age) on a grid of ages.

    kind='step' evaluates right-continuously (empirical curves);
    kind='linear' interpolates linearly (fitted or reference curves).
    """

    ages: np.ndarray
    survival: np.ndarray
    kind: str = 'linear'
    label: str = ''

    def __post_init__(self):
        ages = np.asarray(self.ages, dtype=float)
        survival = np.asarray(self.survival, dtype=float)
        if ages.shape != survival.shape or ages.ndim != 1 or len(ages) == 0:
            raise ValueError("ages and survival must be non-empty 1-D arrays of equal length")
        if np.any(np.diff(ages) <= 0):
            raise ValueError("ages must be strictly increasing")
        if self.kind not in ('step', 'linear'):
            raise ValueError(f"Unknown curve kind: {self.kind}")
        object.__setattr__(self, 'ages', ages)
        object.__setattr__(self, 'survival', survival)

    @property
    def support(self) -> Tuple[float, float]:
        return float(self.ages[0]), float(self.ages[-1])

    def evaluate(self, grid) -> np.ndarray:
        grid = np.asarray(grid, dtype=float)
        lo, hi = self.support
        outside = (grid < lo - SUPPORT_TOL) | (grid > hi + SUPPORT_TOL)
        if outside.any():
            raise MissingDataError(
                f"Survival curve {self.label!r} is defined on [{lo:g}, {hi:g}] "
                f"but is needed at age {grid[outside][0]:g}")

        if self.kind == 'step':
            idx = np.searchsorted(self.ages, grid + SUPPORT_TOL, side='right') - 1
            values = self.survival[np.clip(idx, 0, None)]
        else:
            values = np.interp(grid, self.ages, self.survival)

        if np.isnan(values).any():
            first = grid[np.isnan(values)][0]
            raise MissingDataError(f"Survival curve {self.label!r} has no data at age {first:g}")
        return values


# =============================================================================
# CURVE CONSTRUCTION
# =============================================================================

def survival_from_hazard(edges: Sequence[float], hazard: Sequence[float], label: str = '') -> SurvivalCurve:
    """
    Survival at band edges from a piecewise-constant hazard per band.

    A NaN hazard marks a band without person-time. The curve starts (S = 1)
    at the first band with data and ends at the first gap after it.
    """
    edges = np.asarray(edges, dtype=float)
    hazard = np.asarray(hazard, dtype=float)
    if len(edges) != len(hazard) + 1:
        raise ValueError("need one hazard per band (len(edges) - 1)")

    valid = ~np.isnan(hazard)
    if not valid.any():
        raise MissingDataError(f"Survival curve {label!r} has no person-time")
    first = int(np.argmax(valid))
    gaps = np.flatnonzero(~valid[first:])
    stop = first + int(gaps[0]) if len(gaps) else len(hazard)
    edges, hazard = edges[first:stop + 1], hazard[first:stop]

    cumhaz = np.concatenate([[0.0], np.cumsum(hazard * np.diff(edges))])
    return SurvivalCurve(edges, np.exp(-cumhaz), kind='linear', label=label)


def survival_from_aalen_johansen(curve: pd.DataFrame, label: str = '') -> SurvivalCurve:
    """All-cause survival (Kaplan-Meier) column of an Aalen-Johansen table."""
    return SurvivalCurve(curve['time'].to_numpy(), curve['survival'].to_numpy(),
                         kind='step', label=label)


def cohort_survival_curves(
    episodes: pd.DataFrame,
    edges: Sequence[float] = None,
    label: str = '',
) -> Tuple[SurvivalCurve, SurvivalCurve]:
    """
    Observed (d/y) and expected (e/y) piecewise-exponential survival curves
    from one set of all-cause episodes. Both are defined only over ages with
    person-time.
    """
    edges = np.arange(0, Config.LE_HORIZON + 1, 1, dtype=float) if edges is None else np.asarray(edges, dtype=float)
    hz = hazard_by_age(episodes, edges)
    observed = survival_from_hazard(edges, hz['observed_hazard'], label=f"{label} observed".strip())
    expected = survival_from_hazard(edges, hz['expected_hazard'], label=f"{label} expected".strip())
    return observed, expected


def fit_survival_curve(
    episodes: pd.DataFrame,
    df: int = Config.SPLINE_DF,
    step: float = Config.LE_STEP,
    label: str = '',
) -> SurvivalCurve:
    """
    Smooth observed survival from a Poisson GLM of episode deaths on a
    cubic regression spline of attained age, with log person-years offset.

    The curve is defined only over the observed age range of the episodes.

    Parameters:
    -----------
    episodes : all-cause episode table (age_start, age_end, duration, event)
    df : spline degrees of freedom
    step : spacing of the evaluation grid (years)

    Returns:
    --------
    SurvivalCurve (linear) starting at S = 1 at the youngest observed age
    """
    data = episodes[episodes['duration'] > 0]
    data = pd.DataFrame({
        'age': ((data['age_start'] + data['age_end']) / 2).to_numpy(dtype=float),
        'event': data['event'].to_numpy(dtype=float),
        'duration': data['duration'].to_numpy(dtype=float),
    })

    lo = float(episodes['age_start'].min())
    hi = float(episodes['age_end'].max())

    # cr() spans the intercept; boundary knots cover the whole prediction grid
    X = dmatrix(f"cr(age, df={df}, lower_bound={lo!r}, upper_bound={hi!r}) - 1",
                data, return_type='dataframe')
    model = sm.GLM(data['event'], X, family=Poisson(), offset=np.log(data['duration']))
    res = model.fit()
    logger.debug(f"Spline hazard fit: deviance={res.deviance:.2f}, n={int(res.nobs)}")

    n = max(1, int(np.ceil((hi - lo) / step)))
    grid = np.linspace(lo, hi, n + 1)

    X_grid = build_design_matrices([X.design_info], {'age': grid}, return_type='dataframe')[0]
    hazard = np.exp(X_grid.to_numpy() @ res.params.to_numpy())
    cumhaz = cumulative_trapezoid(hazard, grid, initial=0.0)
    return SurvivalCurve(grid, np.exp(-cumhaz), kind='linear', label=label)


# =============================================================================
# INTEGRATION
# =============================================================================

def _grid(floor: float, horizon: float, step: float) -> np.ndarray:
    if horizon <= floor:
        raise ValueError(f"horizon ({horizon}) must exceed floor ({floor})")
    if step <= 0:
        raise ValueError("step must be positive")
    n = int(round((horizon - floor) / step))
    return np.linspace(floor, horizon, max(n, 1) + 1)


def restricted_mean_survival(
    curve: SurvivalCurve,
    floor: float = Config.LE_FLOOR,
    horizon: float = Config.LE_HORIZON,
    step: float = Config.LE_STEP,
) -> float:
    """Expected years lived between floor and horizon, given alive at floor."""
    grid = _grid(floor, horizon, step)
    s = curve.evaluate(grid)
    if s[0] <= 0:
        raise MissingDataError(f"Survival curve {curve.label!r} is zero at age {floor:g}")
    return float(trapezoid(s / s[0], grid))


def life_years_lost(
    observed: SurvivalCurve,
    expected: SurvivalCurve,
    floor: float = Config.LE_FLOOR,
    horizon: float = Config.LE_HORIZON,
    step: float = Config.LE_STEP,
) -> Dict[str, float]:
    """Observed and expected restricted LE and their (signed) difference."""
    le_observed = restricted_mean_survival(observed, floor, horizon, step)
    le_expected = restricted_mean_survival(expected, floor, horizon, step)
    return {
        'le_observed': le_observed,
        'le_expected': le_expected,
        'years_lost': le_expected - le_observed,
    }


def life_expectancy_table(
    curves: Mapping[Hashable, Tuple[SurvivalCurve, SurvivalCurve]],
    floor: float = Config.LE_FLOOR,
    horizon: float = Config.LE_HORIZON,
    step: float = Config.LE_STEP,
    group_name: str = 'group',
) -> pd.DataFrame:
    """
    Life-years lost per group. A group whose curve does not cover
    [floor, horizon] gets status 'missing_data'; other groups are unaffected.
    """
    rows = []
    for group, (observed, expected) in curves.items():
        row: Dict[str, Any] = {group_name: group, 'floor': floor, 'horizon': horizon}
        try:
            row.update(life_years_lost(observed, expected, floor, horizon, step))
            row.update({'status': 'ok', 'reason': ''})
        except MissingDataError as e:
            logger.warning(f"Life expectancy for {group_name}={group!r} not computed: {e}")
            row.update({'le_observed': np.nan, 'le_expected': np.nan, 'years_lost': np.nan,
                        'status': 'missing_data', 'reason': str(e)})
        rows.append(row)
    return pd.DataFrame(rows)
