import numpy as np
import pandas as pd
import pytest

from shorebird_cbsm.errors import DataQualityError
from shorebird_cbsm.models import EffectGAM, Fixed, RandomIntercept, Smooth, TensorSmooth


def _campaign(values):
    return pd.Categorical(values, categories=['None', 'Walkers'])


@pytest.fixture
def tiny_beta():
    return pd.DataFrame({
        'y': [0.12, 0.35, 0.41, 0.22, 0.68, 0.55, 0.30, 0.74, 0.47, 0.61],
        'Campaign': _campaign(['None'] * 5 + ['Walkers'] * 5),
        'doy': [130.0, 141, 150, 158, 163, 171, 180, 188, 195, 204],
    })


@pytest.fixture
def beta_frame():
    rng = np.random.default_rng(11)
    n = 300
    campaign = rng.choice(['None', 'Walkers'], n)
    site = rng.choice([f'S{i}' for i in range(8)], n)
    site_eff = dict(zip([f'S{i}' for i in range(8)], rng.normal(0, 0.3, 8)))
    doy = rng.uniform(120, 220, n)
    eta = -0.4 + 0.8 * (campaign == 'Walkers') + np.sin((doy - 120) / 100 * np.pi) \
        + np.array([site_eff[s] for s in site])
    mu = 1 / (1 + np.exp(-eta))
    phi = 20.0
    y = rng.beta(mu * phi, (1 - mu) * phi)
    return pd.DataFrame({'y': np.clip(y, 1e-4, 1 - 1e-4), 'Campaign': _campaign(campaign),
                         'doy': doy, 'Site': site})


@pytest.fixture
def count_frame():
    rng = np.random.default_rng(5)
    n = 400
    campaign = rng.choice(['None', 'Walkers'], n)
    lon = rng.uniform(-75, -74, n)
    lat = rng.uniform(38, 39, n)
    mu = np.exp(1.0 + np.log(2) * (campaign == 'Walkers') + 0.3 * (lat - 38.5))
    theta = 3.0
    y = rng.negative_binomial(theta, theta / (theta + mu))
    return pd.DataFrame({'Count': y.astype(float), 'Campaign': _campaign(campaign),
                         'Longitude': lon, 'Latitude': lat})


def test_tiny_beta_fit_predicts_every_row(tiny_beta):
    model = EffectGAM('y', [Fixed('Campaign'), Smooth('doy', k=5)], family='beta')
    model.fit(tiny_beta)

    pred = model.predict(tiny_beta)

    assert len(pred) == 10
    assert np.isfinite(pred['fit']).all()
    assert np.isfinite(pred['se_fit']).all()
    assert (pred['se_fit'] >= 0).all()
    assert pred['fit'].between(0, 1).all()


def test_refit_raises(tiny_beta):
    model = EffectGAM('y', [Fixed('Campaign'), Smooth('doy', k=5)]).fit(tiny_beta)

    with pytest.raises(ValueError, match='already fitted'):
        model.fit(tiny_beta)


def test_untransformed_proportions_rejected(tiny_beta):
    tiny_beta.loc[0, 'y'] = 0.0
    model = EffectGAM('y', [Fixed('Campaign'), Smooth('doy', k=5)])

    with pytest.raises(DataQualityError, match=r'\(0, 1\)'):
        model.fit(tiny_beta)


def test_missing_covariate_column(tiny_beta):
    model = EffectGAM('y', [Fixed('Campaign'), Smooth('Hatch_doy')])

    with pytest.raises(DataQualityError, match='Hatch_doy'):
        model.fit(tiny_beta)


def test_all_missing_covariate(tiny_beta):
    tiny_beta['doy'] = np.nan
    model = EffectGAM('y', [Fixed('Campaign'), Smooth('doy', k=5)])

    with pytest.raises(DataQualityError, match='entirely missing'):
        model.fit(tiny_beta)


def test_incomplete_rows_dropped(beta_frame):
    beta_frame.loc[:4, 'doy'] = np.nan
    model = EffectGAM('y', [Fixed('Campaign'), Smooth('doy', k=6)]).fit(beta_frame)

    assert model.metrics['n'] == len(beta_frame) - 5
    assert len(model.fitted_values_) == len(beta_frame) - 5


def test_predict_before_fit():
    with pytest.raises(ValueError, match='not fitted'):
        EffectGAM('y', [Fixed('Campaign')]).predict(pd.DataFrame({'Campaign': ['None']}))


def test_beta_recovers_campaign_effect(beta_frame):
    model = EffectGAM('y', [Fixed('Campaign'), Smooth('doy', k=8),
                            RandomIntercept('Site')], family='beta').fit(beta_frame)

    par = model.summary()['parametric'].set_index('term')

    assert 0.5 < par.loc['Campaign[T.Walkers]', 'estimate'] < 1.1
    assert par.loc['Campaign[T.Walkers]', 'p_value'] < 0.001
    assert 5 < model.theta_ < 60


def test_negbin_recovers_doubling(count_frame):
    model = EffectGAM('Count', [Fixed('Campaign'),
                                TensorSmooth('Longitude', 'Latitude', k=4)],
                      family='negbin').fit(count_frame)

    par = model.summary()['parametric'].set_index('term')

    assert 0.3 < par.loc['Campaign[T.Walkers]', 'estimate'] < 1.1
    assert len(model.lambdas_) == 2
    assert model.theta_ > 0


def test_intervals_are_nested(beta_frame):
    model = EffectGAM('y', [Fixed('Campaign'), Smooth('doy', k=6),
                            RandomIntercept('Site')]).fit(beta_frame)
    grid = model.newdata_grid(sweep='doy', by='Campaign', n=20)

    pred = model.predict_intervals(grid, exclude=['Site'])

    assert len(pred) == 40
    assert (pred['lower_95'] <= pred['lower_80']).all()
    assert (pred['lower_80'] <= pred['fit']).all()
    assert (pred['fit'] <= pred['upper_80']).all()
    assert (pred['upper_80'] <= pred['upper_95']).all()
    assert ((pred['lower_95'] > 0) & (pred['upper_95'] < 1)).all()


def test_excluded_term_needs_no_column(beta_frame):
    model = EffectGAM('y', [Fixed('Campaign'), Smooth('doy', k=6),
                            RandomIntercept('Site')]).fit(beta_frame)
    new = pd.DataFrame({'Campaign': _campaign(['None', 'Walkers']), 'doy': [150.0, 150.0]})

    pred = model.predict(new, exclude=['s(Site)'])

    assert pred['fit'].iloc[1] > pred['fit'].iloc[0]
    with pytest.raises(DataQualityError, match='Site'):
        model.predict(new)


def test_unseen_level_in_prediction(beta_frame):
    model = EffectGAM('y', [Fixed('Campaign'), RandomIntercept('Site')]).fit(beta_frame)
    new = pd.DataFrame({'Campaign': _campaign(['None']), 'Site': ['S99']})

    with pytest.raises(DataQualityError, match='not seen'):
        model.predict(new)


def test_link_and_response_predictions(beta_frame):
    model = EffectGAM('y', [Fixed('Campaign'), Smooth('doy', k=6)]).fit(beta_frame)

    link = model.predict(type='link')
    resp = model.predict()

    np.testing.assert_allclose(resp['fit'], 1 / (1 + np.exp(-link['fit'])))
    np.testing.assert_allclose(resp['fit'].to_numpy(), model.fitted_values_.to_numpy())
    with pytest.raises(ValueError):
        model.predict(type='odds')


def test_newdata_grid_validates_variables(beta_frame):
    model = EffectGAM('y', [Fixed('Campaign'), Smooth('doy', k=6)]).fit(beta_frame)

    grid = model.newdata_grid(by='Campaign')

    assert grid['Campaign'].astype(str).tolist() == ['None', 'Walkers']
    assert grid['doy'].nunique() == 1
    with pytest.raises(ValueError, match='not a model variable'):
        model.newdata_grid(sweep='Latitude')


def test_random_effects_table(beta_frame):
    model = EffectGAM('y', [Fixed('Campaign'), RandomIntercept('Site')]).fit(beta_frame)

    re = model.random_effects('Site')

    assert sorted(re['level']) == [f'S{i}' for i in range(8)]
    assert re['estimate'].is_monotonic_increasing
    assert (re['lower_95'] < re['upper_95']).all()
    with pytest.raises(ValueError, match='not a random-intercept'):
        model.random_effects('Campaign')


def test_summary_tables(beta_frame):
    model = EffectGAM('y', [Fixed('Campaign'), Smooth('doy', k=6),
                            RandomIntercept('Site')]).fit(beta_frame)

    s = model.summary()
    text = model.format_summary()

    assert s['parametric']['term'].tolist() == ['Intercept', 'Campaign[T.Walkers]']
    assert s['smooth']['term'].tolist() == ['s(doy)', 's(Site)']
    assert s['smooth'].set_index('term').loc['s(Site)', 'sd'] > 0
    assert np.isfinite(s['fit']['aic'])
    assert 'Campaign[T.Walkers]' in text
    assert 'phi=' in text


def test_save_and_load(tmp_path, tiny_beta):
    model = EffectGAM('y', [Fixed('Campaign'), Smooth('doy', k=5)]).fit(tiny_beta)
    model.save(tmp_path / 'model')

    loaded = EffectGAM.load(tmp_path / 'model')

    assert (tmp_path / 'model' / 'metadata.json').exists()
    pd.testing.assert_frame_equal(loaded.predict(tiny_beta), model.predict(tiny_beta))
