"""
01b_cumulative_mortality.py
===========================
Cumulative mortality by cause of death over attained age

Aalen-Johansen cumulative incidence for each cause (all other deaths
compete), overall or by a grouping column such as decade of diagnosis, with
the log-rank heterogeneity test, the expected all-cause curve from the
reference rates (LOWESS smoothed) and the number at risk at ages 5-65.

Usage:
    python 01b_cumulative_mortality.py --subjects cohort.dta --rates rates.csv
    python 01b_cumulative_mortality.py --subjects cohort.dta --rates rates.csv --group decade
"""

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent))
from mortality_core.config import Config
from mortality_core.episodes import build_episodes
from mortality_core.pipeline import (
    load_reference_rates,
    load_subjects,
    run_cumulative_mortality,
    save_table,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger(__name__)

SCRIPT_DIR = Path(__file__).parent
OUTPUT_DIR = SCRIPT_DIR / 'results'


def run_cummort(subjects_path, rates_path, output_dir=OUTPUT_DIR, causes=None, group=None,
                left_truncate=False, single_year_rates=False, rate_cause=Config.ALL_CAUSES,
                age_min=Config.CUMMORT_AGE_MIN, age_max=Config.CUMMORT_AGE_MAX,
                drop_invalid=False):
    """Compute and save the cumulative mortality curves and companion tables."""
    print("=" * 70)
    print("01b: CUMULATIVE MORTALITY BY CAUSE")
    print("=" * 70)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    print("\n[1] Loading inputs...")
    subjects, _ = load_subjects(subjects_path, causes, drop_invalid=drop_invalid)
    rate_table = load_reference_rates(rates_path, single_years=single_year_rates,
                                      cause=rate_cause)

    print("\n[2] Expected all-cause reference hazard...")
    reference = build_episodes(subjects, Config.ALL_CAUSES, rate_table,
                               rate_cause=rate_cause, drop_invalid=drop_invalid)

    print("\n[3] Cumulative incidence...")
    result = run_cumulative_mortality(subjects, reference.episodes, causes, group_col=group,
                                      left_truncate=left_truncate, age_min=age_min,
                                      age_max=age_max)

    suffix = f"_by_{group}" if group else ''
    save_table(result['curves'], output_dir, f"cummort_curves{suffix}")
    save_table(result['expected'], output_dir, 'cummort_expected')
    save_table(result['at_risk'], output_dir, f"cummort_at_risk{suffix}")
    if len(result['tests']) > 0:
        save_table(result['tests'], output_dir, f"cummort_tests{suffix}")
        for row in result['tests'].to_dict('records'):
            print(f"    {row['cause']:<12} chi2={row['statistic']:.2f} df={row['df']} "
                  f"p={row['p_value']:.3g}")

    print(f"\nFinished: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    return result


def main():
    parser = argparse.ArgumentParser(
        description='Cumulative mortality by cause of death over attained age',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python 01b_cumulative_mortality.py --subjects cohort.dta --rates rates.csv
  python 01b_cumulative_mortality.py --subjects cohort.dta --rates rates.csv --group decade
  python 01b_cumulative_mortality.py --subjects cohort.dta --rates rates.csv --left-truncate
        """
    )
    parser.add_argument('--subjects', required=True, help='Subject table (.csv, .parquet, .dta)')
    parser.add_argument('--rates', required=True, help='All-cause reference rate table')
    parser.add_argument('--output-dir', default=str(OUTPUT_DIR), help='Output directory')
    parser.add_argument('--causes', nargs='+', default=None,
                        help=f"Causes of death (default: {' '.join(Config.CAUSES)})")
    parser.add_argument('--group', default=None, help='Grouping column, e.g. decade or sex')
    parser.add_argument('--left-truncate', action='store_true',
                        help='Subjects enter the risk set at diagnosis age')
    parser.add_argument('--single-year-rates', action='store_true',
                        help='Reference table has single-year age and year columns')
    parser.add_argument('--rate-cause', default=Config.ALL_CAUSES,
                        help='Reference cause for the expected curve')
    parser.add_argument('--age-min', type=float, default=Config.CUMMORT_AGE_MIN)
    parser.add_argument('--age-max', type=float, default=Config.CUMMORT_AGE_MAX)
    parser.add_argument('--drop-invalid', action='store_true',
                        help='Drop invalid subject records instead of stopping')

    args = parser.parse_args()

    run_cummort(
        subjects_path=args.subjects,
        rates_path=args.rates,
        output_dir=args.output_dir,
        causes=args.causes,
        group=args.group,
        left_truncate=args.left_truncate,
        single_year_rates=args.single_year_rates,
        rate_cause=args.rate_cause,
        age_min=args.age_min,
        age_max=args.age_max,
        drop_invalid=args.drop_invalid,
    )


if __name__ == '__main__':
    main()
