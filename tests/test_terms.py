import numpy as np
import pandas as pd
import pytest

from shorebird_cbsm.errors import DataQualityError
from shorebird_cbsm.models.terms import (
    Fixed, RandomIntercept, Smooth, TensorSmooth, capped_basis_dim,
)


@pytest.fixture
def frame():
    rng = np.random.default_rng(0)
    n = 60
    return pd.DataFrame({
        'Campaign': pd.Categorical(rng.choice(['None', 'Walkers', 'Dog leash'], n),
                                   categories=['None', 'Dog leash', 'Walkers']),
        'doy': rng.uniform(120, 200, n),
        'lon': rng.uniform(-75, -74, n),
        'lat': rng.uniform(38, 39, n),
        'Site': rng.choice(['A', 'B', 'C', 'D'], n),
    })


def test_basis_cap():
    assert capped_basis_dim(np.arange(50), 10, 's(x)') == 10
    assert capped_basis_dim(np.repeat(np.arange(6), 3), 10, 's(x)') == 5
    with pytest.raises(DataQualityError, match='too few'):
        capped_basis_dim(np.array([1, 2, 3, 1, 2]), 10, 's(x)')


def test_fixed_factor_uses_first_category_as_reference(frame):
    term = Fixed('Campaign').setup(frame)

    assert term.reference == 'None'
    assert term.coef_names == ['Campaign[T.Dog leash]', 'Campaign[T.Walkers]']
    X = term.design(frame)
    assert X.shape == (len(frame), 2)
    assert (X[frame['Campaign'] == 'None'] == 0).all()
    assert X.sum(axis=1).max() == 1


def test_fixed_numeric_is_linear(frame):
    term = Fixed('doy').setup(frame)

    np.testing.assert_array_equal(term.design(frame)[:, 0], frame['doy'].to_numpy())


def test_setup_returns_a_copy(frame):
    unfitted = Fixed('Campaign')
    unfitted.setup(frame)

    assert unfitted.levels is None and not unfitted.is_setup


def test_unseen_level_raises(frame):
    term = RandomIntercept('Site').setup(frame)

    with pytest.raises(DataQualityError, match='not seen'):
        term.design(pd.DataFrame({'Site': ['A', 'Z']}))


def test_single_level_fixed_factor_raises():
    with pytest.raises(DataQualityError, match='at least 2'):
        Fixed('g').setup(pd.DataFrame({'g': ['a', 'a', 'a']}))


def test_smooth_is_centred(frame):
    term = Smooth('doy', k=8).setup(frame)
    X = term.design(frame)

    assert term.label == 's(doy)'
    assert X.shape == (len(frame), 7)
    np.testing.assert_allclose(X.sum(axis=0), 0, atol=1e-8)
    assert term.penalties[0].shape == (7, 7)


def test_smooth_clamps_outside_training_range(frame):
    term = Smooth('doy', k=6).setup(frame)
    lo = term.design(pd.DataFrame({'doy': [frame['doy'].min()]}))
    below = term.design(pd.DataFrame({'doy': [frame['doy'].min() - 30]}))

    np.testing.assert_allclose(lo, below)


def test_tensor_has_one_penalty_per_margin(frame):
    term = TensorSmooth('lon', 'lat', k=4).setup(frame)

    assert term.label == 'te(lon,lat)'
    assert term.n_coef == 15
    assert len(term.penalties) == 2
    assert all(S.shape == (15, 15) for S in term.penalties)
    np.testing.assert_allclose(term.design(frame).sum(axis=0), 0, atol=1e-8)


def test_random_intercept_dummies(frame):
    term = RandomIntercept('Site').setup(frame)
    X = term.design(frame)

    assert term.coef_names == ['s(Site)[A]', 's(Site)[B]', 's(Site)[C]', 's(Site)[D]']
    np.testing.assert_array_equal(X.sum(axis=1), 1)
    np.testing.assert_array_equal(term.penalties[0], np.eye(4))
