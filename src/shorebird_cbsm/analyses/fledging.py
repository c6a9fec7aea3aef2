"""
Shorebird CBSM - Fledging Success
=================================

Effect of CBSM campaigns on nest productivity.

    Fledge_success_adj ~ Campaign + s(Hatch_doy)
                         + s(State, re) + s(Species, re) + s(Site_ID, re)
                         + s(Steward, re),   Beta(logit)

Fledge success is fledglings / hatched eggs; nests that hatched nothing are
excluded. ``--response Hatch_success`` fits hatched / laid instead.

Usage:
    python -m shorebird_cbsm.analyses.fledging --data-dir data/ --output-dir outputs/
"""

import logging

from shorebird_cbsm.analyses.common import configure_logging, load_table, run_effect_pipeline
from shorebird_cbsm.config import (
    DEFAULT_SMOOTH_K, PRODUCTIVITY_FILE, AnalysisConfig, build_arg_parser,
)
from shorebird_cbsm.data.cleaning import build_fledging_dataset
from shorebird_cbsm.models.gam import EffectGAM
from shorebird_cbsm.models.terms import Fixed, RandomIntercept, Smooth
from shorebird_cbsm.models.transform import apply_boundary_correction

logger = logging.getLogger(__name__)

NAME = 'fledging'


def model_terms(k=DEFAULT_SMOOTH_K):
    return [
        Fixed('Campaign'),
        Smooth('Hatch_doy', k=k),
        RandomIntercept('State'),
        RandomIntercept('Species'),
        RandomIntercept('Site_ID'),
        RandomIntercept('Steward'),
    ]


def build_dataset(config, response='Fledge_success'):
    """Load, correct, clean and boundary-correct the productivity table."""
    raw = load_table(config, 'productivity', PRODUCTIVITY_FILE)
    df = build_fledging_dataset(raw, response=response,
                                dayfirst_states=config.dayfirst_states,
                                species=config.species)
    return apply_boundary_correction(df, response)


def run(config, response='Fledge_success'):
    df = build_dataset(config, response=response)
    model = EffectGAM(f'{response}_adj', model_terms(), family='beta')
    return run_effect_pipeline(model, df, config, NAME, sweep='Hatch_doy',
                               response_label=response.replace('_', ' '))


def main(argv=None):
    parser = build_arg_parser('CBSM effect on shorebird fledging success (Beta GAM)')
    parser.add_argument('--response', default='Fledge_success',
                        choices=['Fledge_success', 'Hatch_success'],
                        help='Productivity ratio to model')
    args = parser.parse_args(argv)

    configure_logging()
    config = AnalysisConfig.from_args(args)

    logger.info("=" * 60)
    logger.info("Shorebird CBSM - Fledging Success")
    logger.info(f"Data dir: {config.data_dir}  Output dir: {config.output_dir}")
    logger.info("=" * 60)

    results = run(config, response=args.response)

    logger.info("=" * 60)
    logger.info(f"Done: AUC={results['metrics']['auc']:.4f}, outputs in {config.output_dir}")
    logger.info("=" * 60)
    return results


if __name__ == '__main__':
    main()
