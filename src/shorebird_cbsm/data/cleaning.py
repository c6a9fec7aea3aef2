"""
Cleaning and reshaping of the survey tables into model datasets.

Each ``build_*_dataset`` function takes a raw (already corrected) table and
returns one validated row per analysis unit. Rows that cannot produce a valid
response are dropped and logged; nothing is imputed.
"""

import logging

import numpy as np
import pandas as pd

from shorebird_cbsm.config import (
    ABUNDANCE_COVARIATES, CAMPAIGN_ALIASES, CAMPAIGN_LEVELS, CAMPAIGN_REFERENCE,
    FLEDGING_COVARIATES, SPECIES_CODES, STEWARD_LABELS, VIGILANCE_COVARIATES,
    VIGILANCE_KEYS, VIGILANT_BEHAVIORS,
)
from shorebird_cbsm.data.loaders import require_columns
from shorebird_cbsm.errors import DataQualityError

logger = logging.getLogger(__name__)


def _log_drop(n_before, df, reason):
    n_drop = n_before - len(df)
    if n_drop > 0:
        logger.warning(f"  Dropped {n_drop:,} rows: {reason}")


# ============================================================================
#  CATEGORICAL COVARIATES
# ============================================================================

def normalize_campaign(series):
    """
    Map campaign spellings onto the canonical labels in CAMPAIGN_LEVELS.

    Missing values stay missing; an unrecognised label raises.
    """
    canonical = {level.casefold(): level for level in CAMPAIGN_LEVELS}
    canonical.update(CAMPAIGN_ALIASES)

    keys = series.astype('string').str.strip().str.casefold()
    out = keys.map(canonical)

    unknown = sorted(series[keys.notna() & out.isna()].astype(str).unique())
    if unknown:
        raise DataQualityError(
            f"Unrecognised campaign label(s) {unknown}; known: {CAMPAIGN_LEVELS}"
        )
    return out.astype(object).where(out.notna(), np.nan)


def relevel_campaign(series, reference=CAMPAIGN_REFERENCE):
    """
    Categorical of campaign labels with ``reference`` as first level.

    Only levels present in the data are kept so that no fixed-effect column is
    all zero.
    """
    labels = normalize_campaign(series)
    present = set(labels.dropna().unique())
    if reference not in present:
        raise DataQualityError(
            f"Reference campaign {reference!r} not present; found {sorted(present)}"
        )
    others = [lvl for lvl in CAMPAIGN_LEVELS if lvl in present and lvl != reference]
    return pd.Categorical(labels, categories=[reference] + others)


def normalize_steward(series):
    """Y/N style steward flags -> 'Present' / 'Absent'."""
    keys = series.astype('string').str.strip().str.casefold()
    out = keys.map(STEWARD_LABELS)
    unknown = sorted(series[keys.notna() & out.isna()].astype(str).unique())
    if unknown:
        raise DataQualityError(f"Unrecognised steward value(s) {unknown}")
    return out.astype(object).where(out.notna(), np.nan)


def drop_missing_covariates(df, columns):
    """
    Drop rows missing any model covariate.

    Runs before the boundary correction so that its N is the number of rows
    the model is trained on.
    """
    missing = df[list(columns)].isna()
    n0 = len(df)
    for col in columns:
        n_col = int(missing[col].sum())
        if n_col:
            logger.warning(f"  {n_col:,} rows missing {col}")
    df = df[~missing.any(axis=1)]
    _log_drop(n0, df, f"missing model covariates {list(columns)}")
    if df.empty:
        raise DataQualityError(f"No rows with complete covariates {list(columns)}")
    return df.copy()


def add_site_id(df):
    """Site names repeat across states; Site_ID = 'State:Site' is unique."""
    df = df.copy()
    df['Site_ID'] = df['State'].astype(str) + ':' + df['Site'].astype(str)
    return df


def filter_subset(df, species=(), campaigns=()):
    """
    Restrict to the species and campaigns under study.

    Args:
        df: Table with Species and Campaign columns
        species: Species codes to keep (empty keeps all)
        campaigns: Canonical campaign labels to keep (empty keeps all)
    """
    n0 = len(df)
    out = df
    if species:
        out = out[out['Species'].isin(list(species))]
    if campaigns:
        out = out[out['Campaign'].isin(list(campaigns))]
    if len(out) < n0:
        logger.info(f"  Subset filter: {n0:,} -> {len(out):,} rows")
    if out.empty:
        raise DataQualityError(
            f"No rows left after filtering to species={list(species)}, "
            f"campaigns={list(campaigns)}"
        )
    return out.copy()


# ============================================================================
#  DATES
# ============================================================================

def parse_survey_dates(df, column, dayfirst_states=(), out_column=None):
    """
    Convert text dates to Timestamps.

    Field sheets from some states record day-first dates (03/06/2019 meaning
    3 June); those states are listed in ``dayfirst_states``. ISO dates parse
    the same either way. Rows whose date cannot be parsed are dropped.

    Args:
        df: Table holding a State column and the text date column
        column: Text date column
        dayfirst_states: States whose sheets use day-first order
        out_column: Destination column (defaults to overwriting ``column``)
    """
    out_column = out_column or column
    df = df.copy()

    text = df[column].astype('string').str.strip()
    dayfirst = df['State'].isin(list(dayfirst_states)).to_numpy()

    parsed = pd.Series(pd.NaT, index=df.index, dtype='datetime64[ns]')
    for flag in (False, True):
        rows = dayfirst == flag
        if rows.any():
            converted = pd.to_datetime(text[rows], dayfirst=flag,
                                       format='mixed', errors='coerce')
            parsed.loc[rows] = converted.to_numpy()

    df[out_column] = parsed
    n0 = len(df)
    bad = df[out_column].isna()
    if bad.any():
        examples = text[bad].head(5).tolist()
        logger.warning(f"  Unparseable {column} values (first 5): {examples}")
    df = df[~bad].copy()
    _log_drop(n0, df, f"missing or unparseable {column}")
    return df


def add_day_of_year(df, date_column, out_column):
    df = df.copy()
    df[out_column] = df[date_column].dt.dayofyear.astype(float)
    return df


# ============================================================================
#  PRODUCTIVITY (nests)
# ============================================================================

def derive_productivity_ratios(df):
    """
    Hatch and fledge success per nest.

    Hatch_success = Eggs_hatch / Eggs_laid (undefined unless Eggs_laid > 0)
    Fledge_success = Fledglings / Eggs_hatch (undefined unless Eggs_hatch > 0)
    """
    require_columns(df, ['Eggs_laid', 'Eggs_hatch', 'Fledglings'], 'productivity')
    df = df.copy()
    for col in ['Eggs_laid', 'Eggs_hatch', 'Fledglings']:
        df[col] = pd.to_numeric(df[col], errors='coerce')

    laid = df['Eggs_laid']
    hatched = df['Eggs_hatch']
    df['Hatch_success'] = (hatched / laid).where(laid > 0)
    df['Fledge_success'] = (df['Fledglings'] / hatched).where(hatched > 0)
    return df


def _keep_valid_proportion(df, column):
    n0 = len(df)
    df = df[df[column].notna()]
    _log_drop(n0, df, f"{column} undefined (zero or missing denominator)")
    n1 = len(df)
    df = df[df[column].between(0.0, 1.0)]
    _log_drop(n1, df, f"{column} outside [0, 1]")
    return df.copy()


def build_fledging_dataset(raw, response='Fledge_success', dayfirst_states=(),
                           species=(), campaigns=()):
    """
    Nest-level dataset for the productivity model.

    Returns:
        DataFrame with the response, Campaign (releveled), Hatch_date,
        Hatch_doy and Steward ('Present'/'Absent')
    """
    if response not in ('Fledge_success', 'Hatch_success'):
        raise ValueError(f"Unsupported productivity response: {response}")

    logger.info(f"Building fledging dataset (response={response})")
    df = raw.copy()
    df['Campaign'] = normalize_campaign(df['Campaign'])
    df = filter_subset(df, species=species, campaigns=campaigns)

    df = derive_productivity_ratios(df)
    df = _keep_valid_proportion(df, response)

    df['Steward'] = normalize_steward(df['Steward'])
    df = parse_survey_dates(df, 'Hatch_date', dayfirst_states=dayfirst_states)
    df = add_day_of_year(df, 'Hatch_date', 'Hatch_doy')
    df = drop_missing_covariates(df, FLEDGING_COVARIATES)

    df['Campaign'] = relevel_campaign(df['Campaign'])
    df = add_site_id(df)
    df = df.reset_index(drop=True)

    logger.info(f"  Fledging dataset: {len(df):,} nests, "
                f"{df['Site'].nunique()} sites, {df['Species'].nunique()} species")
    return df


# ============================================================================
#  BEHAVIOR (vigilance)
# ============================================================================

def aggregate_vigilance(df):
    """
    Collapse interval records to one vigilance proportion per focal bird.

    Returns:
        DataFrame keyed by VIGILANCE_KEYS with n_intervals, n_vigilant and
        Vigilance
    """
    require_columns(df, VIGILANCE_KEYS + ['Behavior'], 'behavior')
    behavior = df['Behavior'].astype('string').str.strip().str.title()
    vigilant = behavior.isin(list(VIGILANT_BEHAVIORS)) & behavior.notna()

    work = df[VIGILANCE_KEYS].copy()
    work['is_vigilant'] = vigilant.astype(int).to_numpy()
    work['observed'] = behavior.notna().astype(int).to_numpy()

    agg = (work.groupby(VIGILANCE_KEYS, observed=True, dropna=True)
               .agg(n_intervals=('observed', 'sum'),
                    n_vigilant=('is_vigilant', 'sum'))
               .reset_index())

    n0 = len(agg)
    agg = agg[agg['n_intervals'] > 0].copy()
    _log_drop(n0, agg, "focal birds with no recorded behavior")

    agg['Vigilance'] = agg['n_vigilant'] / agg['n_intervals']
    return agg


def build_vigilance_dataset(raw, dayfirst_states=(), species=(), campaigns=()):
    """Focal-bird dataset for the vigilance model."""
    logger.info("Building vigilance dataset")
    df = raw.copy()
    df['Campaign'] = normalize_campaign(df['Campaign'])
    df = filter_subset(df, species=species, campaigns=campaigns)

    df = parse_survey_dates(df, 'Date', dayfirst_states=dayfirst_states)
    df = aggregate_vigilance(df)
    df = _keep_valid_proportion(df, 'Vigilance')
    df = add_day_of_year(df, 'Date', 'Survey_doy')
    df = drop_missing_covariates(df, VIGILANCE_COVARIATES)

    df['Campaign'] = relevel_campaign(df['Campaign'])
    df = add_site_id(df)
    df = df.reset_index(drop=True)

    logger.info(f"  Vigilance dataset: {len(df):,} focal observations, "
                f"mean vigilance={df['Vigilance'].mean():.3f}")
    return df


# ============================================================================
#  POINT COUNTS (abundance)
# ============================================================================

def melt_point_counts(df):
    """
    Wide point-count sheet (one column per species code) -> long table with
    Species and Count. Blank cells mean the species was not tallied and are
    dropped. A negative count is an entry error and stops the run; fix it
    through corrections.csv.
    """
    species_cols = [c for c in df.columns if c in SPECIES_CODES]
    id_cols = [c for c in df.columns if c not in species_cols]

    long = df.melt(id_vars=id_cols, value_vars=species_cols,
                   var_name='Species', value_name='Count')
    long['Count'] = pd.to_numeric(long['Count'], errors='coerce')

    n0 = len(long)
    long = long[long['Count'].notna()]
    _log_drop(n0, long, "species not tallied on visit")
    negative = long['Count'] < 0
    if negative.any():
        keys = [c for c in ['State', 'Site', 'Point', 'Date', 'Species'] if c in long.columns]
        rows = long.loc[negative, keys + ['Count']].head(10).values.tolist()
        raise DataQualityError(
            f"point_counts: {int(negative.sum())} negative count(s), e.g. {rows}"
        )

    return long.reset_index(drop=True)


def attach_point_locations(counts, locations):
    """
    Join survey points to their coordinates.

    Every counted point must have exactly one location row.
    """
    keys = ['State', 'Site', 'Point']
    dup = locations.duplicated(keys, keep=False)
    if dup.any():
        raise DataQualityError(
            f"point_locations: duplicate rows for {locations.loc[dup, keys].drop_duplicates().values.tolist()}"
        )

    loc = locations[keys + ['Latitude', 'Longitude']].copy()
    loc['Latitude'] = pd.to_numeric(loc['Latitude'], errors='coerce')
    loc['Longitude'] = pd.to_numeric(loc['Longitude'], errors='coerce')

    merged = counts.merge(loc, on=keys, how='left', validate='many_to_one')
    unmatched = merged['Latitude'].isna() | merged['Longitude'].isna()
    if unmatched.any():
        missing = merged.loc[unmatched, keys].drop_duplicates().values.tolist()
        raise DataQualityError(f"No coordinates for survey point(s) {missing[:10]}")
    return merged


def build_abundance_dataset(counts_raw, locations, dayfirst_states=(),
                            species=(), campaigns=()):
    """Visit x species count dataset with coordinates for the abundance model."""
    logger.info("Building abundance dataset")
    df = counts_raw.copy()
    df['Campaign'] = normalize_campaign(df['Campaign'])

    df = melt_point_counts(df)
    df = filter_subset(df, species=species, campaigns=campaigns)
    df = parse_survey_dates(df, 'Date', dayfirst_states=dayfirst_states)
    df = add_day_of_year(df, 'Date', 'Survey_doy')
    df = attach_point_locations(df, locations)
    df = drop_missing_covariates(df, ABUNDANCE_COVARIATES)

    df['Count'] = df['Count'].astype(float)
    df['Campaign'] = relevel_campaign(df['Campaign'])
    df = add_site_id(df)
    df = df.reset_index(drop=True)

    logger.info(f"  Abundance dataset: {len(df):,} visit-species rows, "
                f"{df['Count'].sum():,.0f} birds counted")
    return df
