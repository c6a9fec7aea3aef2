"""
Goodness-of-fit diagnostic: median-split ROC AUC.

The observed response is binarised at its median (above median -> 1) and
scored against the continuous fitted values. It is a coarse check reported
alongside the model summary; it never decides whether a run succeeds.
"""

import logging

import numpy as np
from sklearn.metrics import roc_auc_score

logger = logging.getLogger(__name__)


def median_split(observed):
    observed = np.asarray(observed, dtype=float)
    return (observed > np.median(observed)).astype(int)


def median_split_auc(observed, fitted):
    """
    Area under the ROC curve of fitted values against a median split of the
    observed response.

    Args:
        observed: Observed response values
        fitted: Fitted values (any monotone scale)

    Returns:
        AUC in [0, 1], or NaN when every observation falls on one side of
        the median
    """
    observed = np.asarray(observed, dtype=float)
    fitted = np.asarray(fitted, dtype=float)
    if observed.shape != fitted.shape:
        raise ValueError(f"Shape mismatch: observed {observed.shape}, fitted {fitted.shape}")

    y_bin = median_split(observed)
    if y_bin.min() == y_bin.max():
        logger.warning("Median split is degenerate (one class only); AUC undefined")
        return float('nan')
    return float(roc_auc_score(y_bin, fitted))


def evaluate_fit(model):
    """
    Fit diagnostics for a fitted EffectGAM on its own training data. The
    model itself is not modified.

    Returns:
        Dictionary with auc, n and the model's AIC
    """
    observed = model.data_[model.response].to_numpy(dtype=float)
    fitted = model.fitted_values_.to_numpy()
    metrics = {
        'auc': median_split_auc(observed, fitted),
        'n': len(observed),
        'aic': model.metrics.get('aic'),
    }

    logger.info(f"Median-split AUC: {metrics['auc']:.4f} (n={metrics['n']:,})")
    return metrics
