"""
Shorebird CBSM Analyses - Configuration
=======================================

Column schemas, campaign taxonomy and modeling defaults shared by the three
analyses, plus the command-line options every analysis accepts.

Paths are always passed in explicitly (``--data-dir``); nothing here depends
on the process working directory.
"""

import argparse
from dataclasses import dataclass
from pathlib import Path


# ============================================================================
#  FILES
# ============================================================================

DEFAULT_DATA_DIR = 'data'
DEFAULT_OUTPUT_DIR = 'outputs'

PRODUCTIVITY_FILE = 'productivity.csv'
BEHAVIOR_FILE = 'behavior.csv'
POINT_COUNT_FILE = 'point_counts.csv'
POINT_LOCATION_FILE = 'point_locations.csv'
CORRECTIONS_FILE = 'corrections.csv'

# read_csv treats "None" as missing by default; the campaign taxonomy uses it
# as a real label, so the NA list is spelled out.
NA_VALUES = ['', 'NA', 'N/A', 'n/a', 'NaN', 'nan', '#N/A', 'NULL', 'null']


# ============================================================================
#  SCHEMAS
# ============================================================================

SCHEMAS = {
    'productivity': [
        'State', 'Site', 'Nest_ID', 'Species', 'Year', 'Campaign',
        'Steward', 'Hatch_date', 'Eggs_laid', 'Eggs_hatch', 'Fledglings',
    ],
    'behavior': [
        'State', 'Site', 'Point', 'Date', 'Species', 'Campaign',
        'Bird_ID', 'Interval', 'Behavior',
    ],
    'point_counts': [
        'State', 'Site', 'Point', 'Date', 'Visit', 'Campaign',
    ],
    'point_locations': [
        'State', 'Site', 'Point', 'Latitude', 'Longitude',
    ],
    'corrections': [
        'dataset', 'key_column', 'key_value', 'column', 'value', 'note',
    ],
}

# Columns that must be read as text even when every value looks numeric
TEXT_COLUMNS = {
    'productivity': ['State', 'Site', 'Nest_ID', 'Species', 'Campaign', 'Steward', 'Hatch_date'],
    'behavior': ['State', 'Site', 'Point', 'Date', 'Species', 'Campaign', 'Bird_ID', 'Behavior'],
    'point_counts': ['State', 'Site', 'Point', 'Date', 'Campaign'],
    'point_locations': ['State', 'Site', 'Point'],
    'corrections': ['dataset', 'key_column', 'key_value', 'column', 'value', 'note'],
}

# Point-count tables carry one count column per species code
SPECIES_CODES = [
    'AMOY', 'PIPL', 'WILL', 'LETE', 'BLSK', 'COTE', 'SAND',
    'RUTU', 'SESA', 'DUNL', 'REKN', 'BBPL', 'SEPL', 'LESA',
]

STEWARD_LABELS = {
    'y': 'Present', 'yes': 'Present', '1': 'Present', 'present': 'Present',
    'n': 'Absent', 'no': 'Absent', '0': 'Absent', 'absent': 'Absent',
}


# ============================================================================
#  CAMPAIGN TAXONOMY
# ============================================================================

CAMPAIGN_REFERENCE = 'None'
CAMPAIGN_DOG_LEASH = 'Dog leash'
CAMPAIGN_WALKERS = 'Walkers'
CAMPAIGN_LEVELS = [CAMPAIGN_REFERENCE, CAMPAIGN_DOG_LEASH, CAMPAIGN_WALKERS]

# Spelling variants seen across state field sheets (casefolded keys)
CAMPAIGN_ALIASES = {
    'none': CAMPAIGN_REFERENCE,
    'control': CAMPAIGN_REFERENCE,
    'no campaign': CAMPAIGN_REFERENCE,
    'dog leash': CAMPAIGN_DOG_LEASH,
    'dog-leash': CAMPAIGN_DOG_LEASH,
    'dogs': CAMPAIGN_DOG_LEASH,
    'leash': CAMPAIGN_DOG_LEASH,
    'walkers': CAMPAIGN_WALKERS,
    'walker': CAMPAIGN_WALKERS,
    'walk around': CAMPAIGN_WALKERS,
}


# ============================================================================
#  RESPONSES & MODELING
# ============================================================================

VIGILANT_BEHAVIORS = {'Alert', 'Flush', 'Run', 'Fly'}

# Observation unit for the vigilance proportion
VIGILANCE_KEYS = ['State', 'Site', 'Point', 'Date', 'Species', 'Campaign', 'Bird_ID']

# Rows missing any of these are dropped before the boundary correction
FLEDGING_COVARIATES = ['Campaign', 'Hatch_doy', 'State', 'Species', 'Site', 'Steward']
VIGILANCE_COVARIATES = ['Campaign', 'Survey_doy', 'State', 'Species', 'Site']
ABUNDANCE_COVARIATES = ['Campaign', 'Survey_doy', 'Longitude', 'Latitude', 'Species', 'Site']

# Normal-approximation multipliers for nested intervals
CI_MULTIPLIERS = {80: 1.28, 95: 1.96}

DEFAULT_SMOOTH_K = 10
DEFAULT_TENSOR_K = 5

# Outer REML search box for log smoothing parameters
LOG_LAMBDA_BOUNDS = (-12.0, 15.0)


@dataclass
class AnalysisConfig:
    """Run options shared by every analysis entry point."""
    data_dir: Path = Path(DEFAULT_DATA_DIR)
    output_dir: Path = Path(DEFAULT_OUTPUT_DIR)
    make_figures: bool = True
    save_model: bool = False
    dayfirst_states: tuple = ()
    species: tuple = ()

    @classmethod
    def from_args(cls, args):
        return cls(
            data_dir=Path(args.data_dir),
            output_dir=Path(args.output_dir),
            make_figures=not args.no_figures,
            save_model=args.save_model,
            dayfirst_states=tuple(args.dayfirst_state or ()),
            species=tuple(args.species or ()),
        )

    def data_path(self, filename):
        return self.data_dir / filename


def build_arg_parser(description):
    """
    Argument parser with the options every analysis accepts.

    Args:
        description: Text shown in ``--help``

    Returns:
        argparse.ArgumentParser (callers may add analysis-specific options)
    """
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument('--data-dir', default=DEFAULT_DATA_DIR,
                        help='Directory containing the survey CSV files')
    parser.add_argument('--output-dir', default=DEFAULT_OUTPUT_DIR,
                        help='Directory for figures and summary tables')
    parser.add_argument('--no-figures', action='store_true',
                        help='Skip figure rendering')
    parser.add_argument('--save-model', action='store_true',
                        help='Write the fitted model with joblib')
    parser.add_argument('--dayfirst-state', action='append', metavar='STATE',
                        help='State whose field sheets record dates day-first '
                             '(repeatable)')
    parser.add_argument('--species', action='append', metavar='CODE',
                        help='Restrict to a species code (repeatable)')
    return parser
