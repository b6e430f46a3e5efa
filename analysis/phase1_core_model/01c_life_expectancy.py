"""
01c_life_expectancy.py
======================
Restricted life expectancy and life-years lost

Observed survival of the cohort (piecewise-exponential from 1-year age bands,
or a Poisson spline of attained age) against expected survival from the
reference rates, integrated from the age floor to the horizon.

Usage:
    python 01c_life_expectancy.py --subjects cohort.dta --rates rates.csv
    python 01c_life_expectancy.py --subjects cohort.dta --rates rates.csv --group sex --method spline
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
    run_life_expectancy,
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


def run_le(subjects_path, rates_path, output_dir=OUTPUT_DIR, group=None, method='hazard',
           floor=Config.LE_FLOOR, horizon=Config.LE_HORIZON, step=Config.LE_STEP,
           single_year_rates=False, rate_cause=Config.ALL_CAUSES, drop_invalid=False):
    print("=" * 70)
    print("01c: LIFE EXPECTANCY AND LIFE-YEARS LOST")
    print(f"     Ages {floor:g}-{horizon:g}, method: {method}")
    print("=" * 70)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    subjects, _ = load_subjects(subjects_path, drop_invalid=drop_invalid)
    rate_table = load_reference_rates(rates_path, single_years=single_year_rates,
                                      cause=rate_cause)
    episodes = build_episodes(subjects, Config.ALL_CAUSES, rate_table, rate_cause=rate_cause,
                              drop_invalid=drop_invalid).episodes

    table = run_life_expectancy(episodes, group_col=group, method=method,
                                floor=floor, horizon=horizon, step=step)
    save_table(table, output_dir, f"life_expectancy_{group}" if group else 'life_expectancy')

    for row in table.to_dict('records'):
        label = row[group or 'group']
        if row['status'] == 'ok':
            print(f"    {str(label):<12} observed {row['le_observed']:.2f}  "
                  f"expected {row['le_expected']:.2f}  lost {row['years_lost']:.2f}")
        else:
            print(f"    {str(label):<12} {row['status']}: {row['reason']}")

    print(f"\nFinished: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    return table


def main():
    parser = argparse.ArgumentParser(
        description='Restricted life expectancy and life-years lost',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python 01c_life_expectancy.py --subjects cohort.dta --rates rates.csv
  python 01c_life_expectancy.py --subjects cohort.dta --rates rates.csv --group sex
  python 01c_life_expectancy.py --subjects cohort.dta --rates rates.csv --method spline --horizon 70
        """
    )
    parser.add_argument('--subjects', required=True, help='Subject table (.csv, .parquet, .dta)')
    parser.add_argument('--rates', required=True, help='All-cause reference rate table')
    parser.add_argument('--output-dir', default=str(OUTPUT_DIR), help='Output directory')
    parser.add_argument('--group', default=None, help='Grouping column, e.g. sex or diagnosis')
    parser.add_argument('--method', choices=['hazard', 'spline'], default='hazard',
                        help='Observed survival: 1-year band hazards or Poisson spline')
    parser.add_argument('--floor', type=float, default=Config.LE_FLOOR)
    parser.add_argument('--horizon', type=float, default=Config.LE_HORIZON)
    parser.add_argument('--step', type=float, default=Config.LE_STEP)
    parser.add_argument('--single-year-rates', action='store_true',
                        help='Reference table has single-year age and year columns')
    parser.add_argument('--rate-cause', default=Config.ALL_CAUSES)
    parser.add_argument('--drop-invalid', action='store_true',
                        help='Drop invalid subject records instead of stopping')

    args = parser.parse_args()

    run_le(
        subjects_path=args.subjects,
        rates_path=args.rates,
        output_dir=args.output_dir,
        group=args.group,
        method=args.method,
        floor=args.floor,
        horizon=args.horizon,
        step=args.step,
        single_year_rates=args.single_year_rates,
        rate_cause=args.rate_cause,
        drop_invalid=args.drop_invalid,
    )


if __name__ == '__main__':
    main()
