"""
01a_smr_aer_tables.py
=====================
SMR and AER tables by cause of death

Splits each survivor's follow-up by attained age and calendar period against
the general-population reference rates, then reports observed/expected
deaths, SMR and AER (per 10,000 person-years) for each cause, overall and by
the requested strata. Optionally fits a multivariable Poisson model of
relative SMRs.

Usage:
    python 01a_smr_aer_tables.py --subjects cohort.dta --rates rates.csv
    python 01a_smr_aer_tables.py --subjects cohort.csv --rates rates.csv --by age_band sex
    python 01a_smr_aer_tables.py --subjects cohort.csv --rates lifetable.csv --single-year-rates \\
        --rate-cause allcauses --causes recur spn

Outputs (in --output-dir):
    smr_aer_overall.csv, smr_aer_by_<strata>.csv, smr_aer_ranking.csv,
    relative_smr.json (with --relative-smr)
"""

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent))
from mortality_core.config import Config
from mortality_core.pipeline import (
    build_episode_sets,
    load_reference_rates,
    load_subjects,
    run_smr_analysis,
    save_json,
    save_table,
)
from mortality_core.smr_aer import aggregate_by_cause, fit_relative_smr

# =============================================================================
# LOGGING SETUP
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger(__name__)

# =============================================================================
# PATHS
# =============================================================================

SCRIPT_DIR = Path(__file__).parent
OUTPUT_DIR = SCRIPT_DIR / 'results'


def run_smr_tables(subjects_path, rates_path, output_dir=OUTPUT_DIR, causes=None, by=None,
                   scale=Config.AER_SCALE, single_year_rates=False, rate_cause=None,
                   drop_invalid=False, relative_smr=None):
    """
    Run the SMR/AER analysis and write the tables.

    Parameters:
    -----------
    subjects_path : subject table (.csv, .parquet or .dta)
    rates_path : reference rate table
    causes : causes to analyse (default: Config.CAUSES)
    by : stratifying columns for the stratified table
    scale : AER person-year unit
    single_year_rates : reference table has single-year age/year rows
    rate_cause : reference cause used for every analysed cause
    relative_smr : covariates for the Poisson relative-SMR model
    """
    print("=" * 70)
    print("01a: SMR / AER BY CAUSE OF DEATH")
    print("=" * 70)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    print("\n[1] Loading inputs...")
    subjects, invalid = load_subjects(subjects_path, causes, drop_invalid=drop_invalid)
    rate_table = load_reference_rates(rates_path, single_years=single_year_rates,
                                      cause=rate_cause)
    print(f"    Subjects: {len(subjects):,} ({len(invalid)} dropped)")

    print("\n[2] Splitting follow-up...")
    causes = list(Config.CAUSES if causes is None else causes)
    rate_causes = {c: rate_cause for c in causes + [Config.ALL_CAUSES]} if rate_cause else None
    episode_sets = build_episode_sets(subjects, rate_table, causes, rate_causes=rate_causes,
                                      drop_invalid=drop_invalid)

    print("\n[3] Estimating SMR / AER...")
    overall = run_smr_analysis(episode_sets, scale=scale)
    save_table(overall['estimates'], output_dir, 'smr_aer_overall')

    if by:
        stratified = run_smr_analysis(episode_sets, by=by, scale=scale)
        save_table(stratified['estimates'], output_dir, f"smr_aer_by_{'_'.join(by)}")
        save_table(stratified['ranking'], output_dir, 'smr_aer_ranking')

    if relative_smr:
        print("\n[4] Relative SMR model...")
        models = {}
        aggregates = aggregate_by_cause(episode_sets, relative_smr)
        for cause, block in aggregates.groupby('cause', sort=False):
            fit = fit_relative_smr(block, relative_smr)
            if fit is not None:
                models[cause] = fit
        save_json(models, Path(output_dir) / 'relative_smr.json')

    for row in overall['estimates'].to_dict('records'):
        print(f"    {row['cause']:<12} d={row['d']:>6.0f}  e={row['e']:>8.2f}  "
              f"SMR {row['smr_display']:<22} AER {row['aer_display']}")

    print(f"\nFinished: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    return overall


def main():
    parser = argparse.ArgumentParser(
        description='SMR and AER tables by cause of death',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python 01a_smr_aer_tables.py --subjects cohort.dta --rates rates.csv
  python 01a_smr_aer_tables.py --subjects cohort.csv --rates rates.csv --by age_band sex
  python 01a_smr_aer_tables.py --subjects cohort.csv --rates rates.csv --relative-smr sex decade
        """
    )
    parser.add_argument('--subjects', required=True, help='Subject table (.csv, .parquet, .dta)')
    parser.add_argument('--rates', required=True, help='Reference rate table')
    parser.add_argument('--output-dir', default=str(OUTPUT_DIR), help='Output directory')
    parser.add_argument('--causes', nargs='+', default=None,
                        help=f"Causes of death (default: {' '.join(Config.CAUSES)})")
    parser.add_argument('--by', nargs='+', default=None,
                        help='Stratifying columns, e.g. age_band period_band sex decade')
    parser.add_argument('--scale', type=float, default=Config.AER_SCALE,
                        help='AER person-year unit (default: 10000)')
    parser.add_argument('--single-year-rates', action='store_true',
                        help='Reference table has single-year age and year columns')
    parser.add_argument('--rate-cause', default=None,
                        help='Reference cause used for every analysed cause')
    parser.add_argument('--drop-invalid', action='store_true',
                        help='Drop invalid subject records instead of stopping')
    parser.add_argument('--relative-smr', nargs='+', default=None,
                        help='Covariates for the Poisson relative-SMR model')

    args = parser.parse_args()

    run_smr_tables(
        subjects_path=args.subjects,
        rates_path=args.rates,
        output_dir=args.output_dir,
        causes=args.causes,
        by=args.by,
        scale=args.scale,
        single_year_rates=args.single_year_rates,
        rate_cause=args.rate_cause,
        drop_invalid=args.drop_invalid,
        relative_smr=args.relative_smr,
    )


if __name__ == '__main__':
    main()
