"""
Shorebird CBSM - Vigilance
==========================

Effect of CBSM campaigns on the share of focal-bird sampling intervals spent
alert or disturbed (Alert, Flush, Run, Fly).

    Vigilance_adj ~ Campaign + s(Survey_doy)
                    + s(State, re) + s(Species, re) + s(Site_ID, re),   Beta(logit)

Usage:
    python -m shorebird_cbsm.analyses.vigilance --data-dir data/ --output-dir outputs/
"""

import logging

from shorebird_cbsm.analyses.common import configure_logging, load_table, run_effect_pipeline
from shorebird_cbsm.config import (
    BEHAVIOR_FILE, DEFAULT_SMOOTH_K, AnalysisConfig, build_arg_parser,
)
from shorebird_cbsm.data.cleaning import build_vigilance_dataset
from shorebird_cbsm.models.gam import EffectGAM
from shorebird_cbsm.models.terms import Fixed, RandomIntercept, Smooth
from shorebird_cbsm.models.transform import apply_boundary_correction

logger = logging.getLogger(__name__)

NAME = 'vigilance'


def model_terms(k=DEFAULT_SMOOTH_K):
    return [
        Fixed('Campaign'),
        Smooth('Survey_doy', k=k),
        RandomIntercept('State'),
        RandomIntercept('Species'),
        RandomIntercept('Site_ID'),
    ]


def build_dataset(config):
    raw = load_table(config, 'behavior', BEHAVIOR_FILE)
    df = build_vigilance_dataset(raw, dayfirst_states=config.dayfirst_states,
                                 species=config.species)
    return apply_boundary_correction(df, 'Vigilance')


def run(config):
    df = build_dataset(config)
    model = EffectGAM('Vigilance_adj', model_terms(), family='beta')
    return run_effect_pipeline(model, df, config, NAME, sweep='Survey_doy',
                               response_label='Vigilance proportion')


def main(argv=None):
    parser = build_arg_parser('CBSM effect on shorebird vigilance (Beta GAM)')
    args = parser.parse_args(argv)

    configure_logging()
    config = AnalysisConfig.from_args(args)

    logger.info("=" * 60)
    logger.info("Shorebird CBSM - Vigilance")
    logger.info(f"Data dir: {config.data_dir}  Output dir: {config.output_dir}")
    logger.info("=" * 60)

    results = run(config)

    logger.info(f"Done: AUC={results['metrics']['auc']:.4f}, outputs in {config.output_dir}")
    return results


if __name__ == '__main__':
    main()
