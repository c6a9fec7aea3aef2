"""
Survey table loading and documented cell corrections.

Every table is read with ``pandas.read_csv`` and checked against its schema in
``config.SCHEMAS``; a missing column stops the run. Known data-entry errors
are fixed through an explicit list of ``Correction`` records rather than
positional overrides.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd

from shorebird_cbsm.config import NA_VALUES, SCHEMAS, SPECIES_CODES, TEXT_COLUMNS
from shorebird_cbsm.errors import DataQualityError

logger = logging.getLogger(__name__)

KEY_SEPARATOR = '|'


def require_columns(df, columns, dataset):
    """Raise DataQualityError listing every expected column absent from df."""
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise DataQualityError(
            f"{dataset}: missing required column(s) {missing}; "
            f"found {list(df.columns)}"
        )


def read_survey_table(path, dataset):
    """
    Read one survey CSV and validate its columns.

    Args:
        path: CSV file path
        dataset: Schema name (key of ``config.SCHEMAS``)

    Returns:
        DataFrame with text columns kept as strings
    """
    if dataset not in SCHEMAS:
        raise KeyError(f"Unknown dataset schema: {dataset}")

    path = Path(path)
    logger.info(f"Loading {dataset} from {path}")

    text_cols = {c: str for c in TEXT_COLUMNS.get(dataset, [])}
    df = pd.read_csv(path, dtype=text_cols, keep_default_na=False,
                     na_values=NA_VALUES)
    df.columns = [c.strip() for c in df.columns]

    require_columns(df, SCHEMAS[dataset], dataset)
    for col in text_cols:
        if col in df.columns:
            df[col] = df[col].str.strip()

    if dataset == 'point_counts':
        species_cols = [c for c in df.columns if c in SPECIES_CODES]
        if not species_cols:
            raise DataQualityError(
                f"point_counts: no species count columns found; "
                f"expected any of {SPECIES_CODES}"
            )

    logger.info(f"Loaded {len(df):,} rows x {df.shape[1]} cols")
    return df


# ============================================================================
#  CORRECTIONS
# ============================================================================

@dataclass(frozen=True)
class Correction:
    """
    One reviewed fix to a single cell.

    Attributes:
        dataset: Schema name the fix applies to
        key: Tuple of (column, value) pairs that identify exactly one row
        column: Column to overwrite
        value: Corrected value (string form; coerced to the column dtype)
        note: Why the value was changed
    """
    dataset: str
    key: tuple
    column: str
    value: str
    note: str = ''

    def describe(self):
        key = ', '.join(f"{k}={v}" for k, v in self.key)
        return f"{self.dataset}[{key}].{self.column} <- {self.value!r}"


def load_corrections(path):
    """
    Read a corrections CSV.

    Multi-column keys separate column names and values with ``|``, e.g.
    ``key_column="State|Site|Nest_ID"``, ``key_value="NJ|Holgate|14"``.

    Returns:
        List of Correction (empty when the file does not exist)
    """
    path = Path(path)
    if not path.exists():
        logger.info(f"No corrections file at {path}")
        return []

    table = read_survey_table(path, 'corrections')
    corrections = []
    for row in table.itertuples(index=False):
        cols = row.key_column.split(KEY_SEPARATOR)
        vals = row.key_value.split(KEY_SEPARATOR)
        if len(cols) != len(vals):
            raise DataQualityError(
                f"corrections: key_column {row.key_column!r} and key_value "
                f"{row.key_value!r} have different lengths"
            )
        corrections.append(Correction(
            dataset=row.dataset,
            key=tuple(zip(cols, vals)),
            column=row.column,
            value=row.value,
            note=row.note if isinstance(row.note, str) else '',
        ))

    logger.info(f"Loaded {len(corrections)} corrections from {path}")
    return corrections


def _coerce_like(value, series):
    if pd.api.types.is_numeric_dtype(series):
        return pd.to_numeric(value)
    return value


def apply_corrections(df, corrections, dataset):
    """
    Apply the corrections for one dataset.

    Each correction must match exactly one row; a stale or ambiguous key is a
    data-quality error rather than a silent no-op.

    Args:
        df: Raw survey table
        corrections: Iterable of Correction
        dataset: Schema name used to select the relevant corrections

    Returns:
        Corrected copy of df
    """
    df = df.copy()
    applied = 0

    for corr in corrections:
        if corr.dataset != dataset:
            continue

        require_columns(df, [k for k, _ in corr.key] + [corr.column],
                        f"{dataset} correction")

        mask = np.ones(len(df), dtype=bool)
        for col, val in corr.key:
            mask &= (df[col].astype(str) == str(val)).to_numpy()

        n_match = int(mask.sum())
        if n_match != 1:
            raise DataQualityError(
                f"Correction {corr.describe()} matched {n_match} rows (expected 1)"
            )

        old = df.loc[mask, corr.column].iloc[0]
        new = _coerce_like(corr.value, df[corr.column])
        if pd.api.types.is_integer_dtype(df[corr.column]) and not float(new).is_integer():
            df[corr.column] = df[corr.column].astype(float)
        df.loc[mask, corr.column] = new
        applied += 1
        logger.info(f"  {corr.describe()} (was {old!r}) {corr.note}")

    if applied:
        logger.info(f"Applied {applied} correction(s) to {dataset}")
    return df
