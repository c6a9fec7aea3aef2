import matplotlib
matplotlib.use('Agg')

import numpy as np
import pandas as pd
import pytest

from shorebird_cbsm.config import AnalysisConfig

STATES = ['NJ', 'VA', 'NC']
SITES = ['North Beach', 'Inlet']
CAMPAIGN_BY_SITE = {
    ('NJ', 'North Beach'): 'None', ('NJ', 'Inlet'): 'Dog leash',
    ('VA', 'North Beach'): 'Walkers', ('VA', 'Inlet'): 'None',
    ('NC', 'North Beach'): 'Dog leash', ('NC', 'Inlet'): 'Walkers',
}


def _date_text(ts, state):
    # NC field sheets are day-first
    if state == 'NC':
        return ts.strftime('%d/%m/%Y')
    return f"{ts.month}/{ts.day}/{ts.year}"


def make_productivity(n=150, seed=1):
    rng = np.random.default_rng(seed)
    rows = []
    for i in range(n):
        state = STATES[i % 3]
        site = SITES[(i // 3) % 2]
        laid = int(rng.integers(2, 5))
        hatched = int(rng.binomial(laid, 0.7))
        fledged = int(rng.binomial(hatched, 0.5)) if hatched else 0
        hatch = pd.Timestamp('2019-05-10') + pd.Timedelta(days=int(rng.integers(0, 60)))
        rows.append({
            'State': state,
            'Site': site,
            'Nest_ID': f"{state}-{i:03d}",
            'Species': ['AMOY', 'PIPL', 'LETE'][(i // 2) % 3],
            'Year': 2019,
            'Campaign': CAMPAIGN_BY_SITE[(state, site)],
            'Steward': 'Y' if i % 4 else 'N',
            'Hatch_date': _date_text(hatch, state),
            'Eggs_laid': laid,
            'Eggs_hatch': hatched,
            'Fledglings': fledged,
        })
    return pd.DataFrame(rows)


def make_behavior(n_birds=90, n_intervals=10, seed=2):
    rng = np.random.default_rng(seed)
    behaviors = ['Foraging', 'Resting', 'Alert', 'Flush', 'Preening']
    rows = []
    for b in range(n_birds):
        state = STATES[b % 3]
        site = SITES[(b // 3) % 2]
        campaign = CAMPAIGN_BY_SITE[(state, site)]
        date = pd.Timestamp('2019-06-01') + pd.Timedelta(days=int(rng.integers(0, 45)))
        p_vig = 0.15 if campaign == 'Walkers' else 0.3
        for k in range(n_intervals):
            vig = rng.random() < p_vig
            rows.append({
                'State': state,
                'Site': site,
                'Point': f"P{b % 2 + 1}",
                'Date': _date_text(date, state),
                'Species': ['SAND', 'SESA', 'AMOY'][b % 3],
                'Campaign': campaign,
                'Bird_ID': f"B{b:03d}",
                'Interval': k + 1,
                'Behavior': rng.choice(behaviors[2:4]) if vig else rng.choice(behaviors[:2] + behaviors[4:]),
            })
    return pd.DataFrame(rows)


def make_point_counts(n_visits=4, seed=3):
    rng = np.random.default_rng(seed)
    counts, locations = [], []
    lat0 = {'NJ': 39.6, 'VA': 37.8, 'NC': 35.2}
    for s_idx, state in enumerate(STATES):
        for site_idx, site in enumerate(SITES):
            campaign = CAMPAIGN_BY_SITE[(state, site)]
            for p in range(3):
                point = f"P{p + 1}"
                locations.append({
                    'State': state, 'Site': site, 'Point': point,
                    'Latitude': lat0[state] + 0.05 * site_idx + 0.01 * p,
                    'Longitude': -74.5 + 0.6 * s_idx + 0.03 * site_idx + 0.007 * p,
                })
                for v in range(n_visits):
                    date = pd.Timestamp('2019-04-15') + pd.Timedelta(days=int(10 * v + rng.integers(0, 8)))
                    mult = 1.8 if campaign != 'None' else 1.0
                    counts.append({
                        'State': state, 'Site': site, 'Point': point,
                        'Date': _date_text(date, state),
                        'Visit': v + 1,
                        'Campaign': campaign,
                        'AMOY': int(rng.negative_binomial(4, 4 / (4 + 3 * mult))),
                        'PIPL': int(rng.negative_binomial(4, 4 / (4 + 1.5 * mult))),
                        'SAND': int(rng.negative_binomial(4, 4 / (4 + 8 * mult))),
                    })
    return pd.DataFrame(counts), pd.DataFrame(locations)


@pytest.fixture
def productivity_raw():
    return make_productivity()


@pytest.fixture
def behavior_raw():
    return make_behavior()


@pytest.fixture
def point_tables():
    return make_point_counts()


@pytest.fixture
def data_dir(tmp_path):
    """Directory holding all four survey CSVs plus a corrections file."""
    d = tmp_path / 'data'
    d.mkdir()

    prod = make_productivity()
    # Documented missing hatch date, restored through corrections.csv
    prod.loc[prod['Nest_ID'] == 'NJ-000', 'Hatch_date'] = ''
    prod.loc[prod['Nest_ID'] == 'VA-001', 'Eggs_laid'] = 44
    prod.to_csv(d / 'productivity.csv', index=False)

    make_behavior().to_csv(d / 'behavior.csv', index=False)
    counts, locations = make_point_counts()
    counts.to_csv(d / 'point_counts.csv', index=False)
    locations.to_csv(d / 'point_locations.csv', index=False)

    pd.DataFrame([
        {'dataset': 'productivity', 'key_column': 'Nest_ID', 'key_value': 'NJ-000',
         'column': 'Hatch_date', 'value': '6/1/2019', 'note': 'date missing on sheet; monitor log'},
        {'dataset': 'productivity', 'key_column': 'State|Nest_ID', 'key_value': 'VA|VA-001',
         'column': 'Eggs_laid', 'value': '4', 'note': 'typo 44'},
    ]).to_csv(d / 'corrections.csv', index=False)
    return d


@pytest.fixture
def config(data_dir, tmp_path):
    return AnalysisConfig(data_dir=data_dir, output_dir=tmp_path / 'out',
                          dayfirst_states=('NC',))
