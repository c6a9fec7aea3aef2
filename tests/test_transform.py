import numpy as np
import pandas as pd
import pytest

from shorebird_cbsm.errors import DataQualityError
from shorebird_cbsm.models.transform import apply_boundary_correction, squeeze_proportions


def test_squeeze_moves_boundaries_inside():
    y = np.array([0.0, 0.25, 1.0, 1.0, 0.5])

    out = squeeze_proportions(y, len(y))

    assert ((out > 0) & (out < 1)).all()
    assert out[0] == pytest.approx(0.1)
    assert out[2] == pytest.approx(0.9)
    assert np.all(np.diff(out[[0, 1, 4, 2]]) > 0)


def test_squeeze_rejects_out_of_range():
    with pytest.raises(DataQualityError):
        squeeze_proportions([0.2, 1.2], 2)


def test_squeeze_rejects_missing():
    with pytest.raises(DataQualityError):
        squeeze_proportions([0.2, np.nan], 2)


def test_squeeze_needs_two_rows():
    with pytest.raises(DataQualityError):
        squeeze_proportions([0.5], 1)


def test_correction_adds_column_and_records_n():
    df = pd.DataFrame({'Vigilance': [0.0, 0.3, 1.0, 0.6]})

    out = apply_boundary_correction(df, 'Vigilance')

    assert 'Vigilance_adj' in out.columns
    assert out['Vigilance_adj'].between(0, 1, inclusive='neither').all()
    assert out.attrs['boundary_corrected'] == {'Vigilance': 4}
    assert 'Vigilance_adj' not in df.columns


def test_correction_applied_once():
    df = apply_boundary_correction(pd.DataFrame({'y': [0.0, 0.5, 1.0]}), 'y')

    with pytest.raises(ValueError, match='already applied'):
        apply_boundary_correction(df, 'y')
    with pytest.raises(ValueError, match='already applied'):
        apply_boundary_correction(df, 'y_adj')
