"""
Reference Rate Lookup
=====================
General-population mortality rates keyed by (sex, age band, calendar-year
band, cause), used as the expected hazard for SMR/AER and expected-survival
calculations.

Table layout (one row per cell):

    sex | age_lo | age_hi | year_lo | year_hi | cause | rate

Bands are half-open [lo, hi). A missing `age_hi` marks the open-ended top age
band. Calendar years outside [min(year_lo), max(year_hi)) are clamped to the
nearest band; ages are never clamped.
"""

import logging
from typing import Dict, List, Tuple

import numpy as np
import pandas as pd

from .exceptions import ReferenceRateLookupError

logger = logging.getLogger(__name__)


class ReferenceRateTable:
    """Read-only, fully loaded reference mortality table."""

    REQUIRED_COLUMNS = ['sex', 'age_lo', 'age_hi', 'year_lo', 'year_hi', 'cause', 'rate']

    def __init__(self, table: pd.DataFrame):
        missing = [c for c in self.REQUIRED_COLUMNS if c not in table.columns]
        if missing:
            raise KeyError(f"Missing columns in reference table: {missing}. "
                           f"Available: {list(table.columns)}")

        df = table[self.REQUIRED_COLUMNS].copy()
        df['age_hi'] = df['age_hi'].astype(float).fillna(np.inf)
        for col in ['age_lo', 'year_lo', 'year_hi', 'rate']:
            df[col] = df[col].astype(float)

        if df[['age_lo', 'year_lo', 'year_hi']].isna().any().any():
            raise ValueError("Reference table has missing age_lo/year_lo/year_hi values")
        if df['rate'].isna().any() or (df['rate'] < 0).any():
            raise ValueError("Reference table has missing or negative rates")
        duplicated = df.duplicated(['sex', 'age_lo', 'year_lo', 'cause'])
        if duplicated.any():
            raise ValueError(f"Reference table has {int(duplicated.sum())} duplicated cells")

        self._table = df.sort_values(['cause', 'sex', 'age_lo', 'year_lo']).reset_index(drop=True)
        self.min_year = float(df['year_lo'].min())
        self.max_year = float(df['year_hi'].max())

        # (cause, sex) -> (age_lo, age_hi, year_lo, year_hi, rate grid)
        self._cells: Dict[Tuple, Tuple[np.ndarray, ...]] = {}
        for (cause, sex), cell in self._table.groupby(['cause', 'sex'], sort=True):
            age_lo = np.sort(cell['age_lo'].unique())
            year_lo = np.sort(cell['year_lo'].unique())
            age_hi = cell.groupby('age_lo')['age_hi'].max().reindex(age_lo).to_numpy(dtype=float)
            year_hi = cell.groupby('year_lo')['year_hi'].max().reindex(year_lo).to_numpy(dtype=float)
            grid = (cell.pivot(index='age_lo', columns='year_lo', values='rate')
                        .reindex(index=age_lo, columns=year_lo)
                        .to_numpy(dtype=float))
            self._cells[(cause, sex)] = (age_lo, age_hi, year_lo, year_hi, grid)

        logger.debug(f"Reference table loaded: {len(df)} cells, "
                     f"years {self.min_year:g}-{self.max_year:g}, causes {self.causes}")

    @classmethod
    def from_single_years(
        cls,
        frame: pd.DataFrame,
        age_col: str = 'age',
        year_col: str = 'year',
        sex_col: str = 'sex',
        rate_col: str = 'rate',
        cause_col: str = 'cause',
        cause: str = None,
    ) -> 'ReferenceRateTable':
        """
        Build from a life-table style frame with one row per single year of
        age and calendar year. The oldest age in each (sex, cause) becomes an
        open-ended band.
        """
        df = frame.copy()
        if cause_col not in df.columns:
            if cause is None:
                raise KeyError(f"Column '{cause_col}' not found and no cause given. "
                               f"Available: {list(df.columns)}")
            df[cause_col] = cause

        out = pd.DataFrame({
            'sex': df[sex_col].to_numpy(),
            'age_lo': df[age_col].astype(float).to_numpy(),
            'year_lo': df[year_col].astype(float).to_numpy(),
            'cause': df[cause_col].to_numpy(),
            'rate': df[rate_col].astype(float).to_numpy(),
        })
        out['age_hi'] = out['age_lo'] + 1.0
        out['year_hi'] = out['year_lo'] + 1.0
        top_age = out.groupby(['sex', 'cause'])['age_lo'].transform('max')
        out.loc[out['age_lo'] == top_age, 'age_hi'] = np.inf
        return cls(out)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def causes(self) -> List[str]:
        return sorted(self._table['cause'].unique().tolist())

    @property
    def table(self) -> pd.DataFrame:
        return self._table.copy()

    def age_edges(self) -> np.ndarray:
        edges = np.concatenate([self._table['age_lo'].to_numpy(), self._table['age_hi'].to_numpy()])
        return np.unique(edges[np.isfinite(edges)])

    def year_edges(self) -> np.ndarray:
        edges = np.concatenate([self._table['year_lo'].to_numpy(), self._table['year_hi'].to_numpy()])
        return np.unique(edges)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def clamp_year(self, year):
        """Clamp calendar years into [min_year, max_year)."""
        return np.clip(year, self.min_year, np.nextafter(self.max_year, -np.inf))

    def rates(self, sex, age, year, cause: str) -> np.ndarray:
        """
        Vectorised lookup.

        Parameters:
        -----------
        sex : scalar or array of sex codes
        age : array of attained ages (years)
        year : array of calendar years (decimal); clamped before lookup
        cause : cause-of-death category of the reference rates

        Returns:
        --------
        rates : ndarray of deaths per person-year

        Raises ReferenceRateLookupError when any cell is missing.
        """
        age = np.atleast_1d(np.asarray(age, dtype=float))
        year = self.clamp_year(np.broadcast_to(np.asarray(year, dtype=float), age.shape))
        sex = np.broadcast_to(np.asarray(sex, dtype=object), age.shape)

        out = np.full(age.shape, np.nan)
        for s in pd.unique(sex.ravel()):
            key = (cause, s)
            if key not in self._cells:
                raise ReferenceRateLookupError(
                    f"No reference rates for sex={s!r}, cause={cause!r}")
            age_lo, age_hi, year_lo, year_hi, grid = self._cells[key]

            mask = sex == s
            a = age[mask]
            y = year[mask]
            ai = np.searchsorted(age_lo, a, side='right') - 1
            yi = np.searchsorted(year_lo, y, side='right') - 1
            ai_c = np.clip(ai, 0, None)
            yi_c = np.clip(yi, 0, None)
            found = (ai >= 0) & (yi >= 0) & (a < age_hi[ai_c]) & (y < year_hi[yi_c])
            values = np.where(found, grid[ai_c, yi_c], np.nan)

            if np.isnan(values).any():
                bad = int(np.flatnonzero(np.isnan(values))[0])
                raise ReferenceRateLookupError(
                    f"No reference rate for sex={s!r}, age={a[bad]:.3f}, "
                    f"year={y[bad]:.3f}, cause={cause!r}")
            out[mask] = values

        return out

    def rate(self, sex, age: float, year: float, cause: str) -> float:
        return float(self.rates(sex, [age], [year], cause)[0])
