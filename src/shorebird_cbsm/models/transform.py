"""
Boundary correction for proportion responses.

A Beta likelihood is undefined at exactly 0 or 1, so proportions are shrunk
toward 0.5 with

    y' = (y * (N - 1) + 0.5) / N

where N is the number of rows in the cleaned dataset. N is a property of the
whole dataset: the transform runs once, after all filtering, and the N used
is recorded in ``df.attrs`` so a second pass over the same column is refused.
"""

import logging

import numpy as np

from shorebird_cbsm.errors import DataQualityError

logger = logging.getLogger(__name__)

ATTRS_KEY = 'boundary_corrected'


def squeeze_proportions(y, n):
    """
    Map proportions in [0, 1] strictly inside (0, 1).

    Args:
        y: Array-like of proportions
        n: Dataset size N (must be >= 2)

    Returns:
        numpy array of transformed values
    """
    y = np.asarray(y, dtype=float)
    if n < 2:
        raise DataQualityError(f"Boundary correction needs at least 2 rows, got {n}")
    if np.isnan(y).any():
        raise DataQualityError(f"{int(np.isnan(y).sum())} missing proportions")
    if ((y < 0) | (y > 1)).any():
        raise DataQualityError(
            f"Proportions outside [0, 1]: min={y.min():.4g}, max={y.max():.4g}"
        )
    return (y * (n - 1) + 0.5) / n


def apply_boundary_correction(df, column, out_column=None):
    """
    Add the corrected response column to a cleaned dataset.

    Args:
        df: Cleaned dataset (all filtering already done)
        column: Proportion column
        out_column: Destination (defaults to ``<column>_adj``)

    Returns:
        Copy of df with the new column; ``attrs['boundary_corrected']`` maps
        column -> N used

    Raises:
        ValueError: column was already corrected for this dataset
    """
    out_column = out_column or f"{column}_adj"
    done = dict(df.attrs.get(ATTRS_KEY, {}))
    if column in done or column in {f"{c}_adj" for c in done}:
        raise ValueError(
            f"Boundary correction already applied to {column!r} (N={done.get(column)})"
        )

    n = len(df)
    out = df.copy()
    out[out_column] = squeeze_proportions(df[column], n)
    done[column] = n
    out.attrs[ATTRS_KEY] = done

    n_boundary = int(((df[column] == 0) | (df[column] == 1)).sum())
    logger.info(f"Boundary correction on {column} (N={n}): "
                f"{n_boundary} boundary values moved inside (0, 1)")
    return out
