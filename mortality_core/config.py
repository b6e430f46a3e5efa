"""
Analysis constants shared by the core modules and the phase scripts.
"""

import numpy as np


class Config:
    """Configuration for the survivor mortality analyses."""

    # Attained age in years = days since birth / DAYS_PER_YEAR
    DAYS_PER_YEAR = 365.25

    # Causes of death (one 0/1 flag column per cause in the subject table)
    ALL_CAUSES = 'allcauses'
    CAUSES = ['spn', 'recur', 'circulation', 'respiratory', 'external']

    # Lexis splitting
    AGE_CUTS = list(np.arange(0, 90, 5, dtype=float))        # 0, 5, ..., 85
    PERIOD_CUTS = list(np.arange(1940, 2030, 5, dtype=float))  # 1940, ..., 2025
    SPLIT_ON_REFERENCE_BANDS = True

    # SMR / AER
    AER_SCALE = 10_000       # AER per 10,000 person-years
    SMR_DECIMALS = 1
    AER_DECIMALS = 1
    CI_LEVEL = 0.95
    FLOOR_NEGATIVE_DISPLAY = True

    # Cumulative mortality figure
    CUMMORT_AGE_MIN = 5
    CUMMORT_AGE_MAX = 70
    AT_RISK_AGES = [5, 15, 25, 35, 45, 55, 65]
    LOWESS_FRAC = 0.3

    # Life expectancy
    LE_FLOOR = 5.0
    LE_HORIZON = 80.0
    LE_STEP = 0.1
    SPLINE_DF = 4

    # Subject table columns
    ID_COL = 'subject_id'
    SEX_COL = 'sex'
    BIRTH_COL = 'dob'
    ENTRY_COL = 'dodx'
    EXIT_COL = 'dox'
    DIAGNOSIS_COL = 'diagnosis'
