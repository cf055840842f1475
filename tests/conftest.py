"""Shared fixtures: synthetic token tables with a known logistic structure."""

from pathlib import Path
import sys

import matplotlib

matplotlib.use('Agg')

import numpy as np
import pandas as pd
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from token_data import REQUIRED_COLUMNS


def make_tokens(n_types=400, seed=7) -> pd.DataFrame:
    """
    Token table as it would be read from disk (all strings).

    Each (word, cluster) type gets one attribute set and one outcome; types seen once
    are hapaxes, the rest are repeated two to four times.
    """
    rng = np.random.default_rng(seed)
    clusters = rng.choice(['pl', 'cl', 'fl'], size=n_types)
    stress = rng.choice(['stressed', 'unstressed'], size=n_types)
    prec_fav = rng.choice(['favorable', 'unfavorable'], size=n_types)
    fol_fav = rng.choice(['favorable', 'unfavorable'], size=n_types, p=[0.8, 0.2])
    transmission = rng.choice(['oral', 'learned'], size=n_types, p=[0.65, 0.35])
    ffc = rng.uniform(0, 1, size=n_types)
    log_freq = rng.normal(2.0, 1.0, size=n_types)

    eta = (0.8 - 2.5 * ffc + 0.6 * (clusters == 'cl') - 0.6 * (clusters == 'fl')
           + 0.7 * (stress == 'unstressed') - 1.5 * (transmission == 'learned'))
    palatalized = rng.uniform(size=n_types) < 1 / (1 + np.exp(-eta))
    repeats = rng.choice([1, 2, 3, 4], size=n_types, p=[0.4, 0.2, 0.2, 0.2])

    records = []
    for i in range(n_types):
        for _ in range(repeats[i]):
            records.append({
                'word': f'w{i:04d}',
                'cluster': clusters[i],
                'stress': stress[i],
                'log_freq': f'{log_freq[i]:.4f}',
                'ffc': f'{ffc[i]:.4f}',
                'prec_fav': prec_fav[i],
                'fol_fav': fol_fav[i],
                'transmission': transmission[i],
                'modern': 'palatalization' if palatalized[i] else 'preservation',
                'hapax': 'yes' if repeats[i] == 1 else 'no',
            })
    return pd.DataFrame(records, columns=list(REQUIRED_COLUMNS))


def write_tokens(frame, path, sep=','):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(path, index=False, sep=sep)
    return path


@pytest.fixture
def token_frame() -> pd.DataFrame:
    return make_tokens()


@pytest.fixture
def token_file(tmp_path, token_frame) -> Path:
    return write_tokens(token_frame, tmp_path / 'tokens.csv')
