"""Tests for the word-type key, deduplication and hapax filtering."""

from pathlib import Path
import sys

import pandas as pd

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from conftest import make_tokens, write_tokens
from token_data import load_tokens
from type_features import dedupe, derive_type, filter_multi_instance, split_type


def _small_table() -> pd.DataFrame:
    return pd.DataFrame({
        'word': ['plenu', 'clave', 'plenu', 'plenu', 'flamma'],
        'cluster': ['pl', 'cl', 'pl', 'fl', 'fl'],
        'ffc': [0.1, 0.2, 0.3, 0.4, 0.5],
        'hapax': ['no', 'yes', 'no', 'yes', 'no'],
    })


def test_derive_type_concatenates_word_and_cluster() -> None:
    table = _small_table()
    typed = derive_type(table)

    assert list(typed['type']) == ['plenu_pl', 'clave_cl', 'plenu_pl', 'plenu_fl', 'flamma_fl']
    assert 'type' not in table.columns


def test_type_key_is_injective() -> None:
    typed = derive_type(_small_table())
    pairs = {split_type(key) for key in typed['type']}
    assert pairs == set(zip(typed['word'], typed['cluster']))
    assert split_type('a_b_pl') == ('a_b', 'pl')


def test_dedupe_keeps_first_occurrence() -> None:
    deduped = dedupe(derive_type(_small_table()))

    assert list(deduped['type']) == ['plenu_pl', 'clave_cl', 'plenu_fl', 'flamma_fl']
    assert deduped.loc[deduped['type'] == 'plenu_pl', 'ffc'].item() == 0.1


def test_dedupe_derives_missing_type() -> None:
    assert len(dedupe(_small_table())) == 4


def test_dedupe_is_idempotent(token_frame) -> None:
    once = dedupe(token_frame)
    twice = dedupe(once)
    pd.testing.assert_frame_equal(once, twice)


def test_filter_multi_instance_drops_hapaxes() -> None:
    table = _small_table()
    kept = filter_multi_instance(table)

    assert len(kept) <= len(table)
    assert (kept['hapax'] == 'no').all()
    assert list(kept['word']) == ['plenu', 'plenu', 'flamma']
    assert len(table) == 5


def test_dedupe_then_filter_counts_distinct_non_hapax_pairs(tmp_path) -> None:
    # 100 hapax tokens of distinct types and 100 tokens of 25 repeated types
    rows = []
    for i in range(100):
        rows.append({'word': f'h{i}', 'cluster': ['pl', 'cl', 'fl'][i % 3], 'hapax': 'yes'})
    for i in range(25):
        for _ in range(4):
            rows.append({'word': f'm{i}', 'cluster': ['pl', 'cl', 'fl'][i % 3], 'hapax': 'no'})
    table = pd.DataFrame(rows)

    result = filter_multi_instance(dedupe(derive_type(table)))
    expected = table.loc[table['hapax'] == 'no', ['word', 'cluster']].drop_duplicates()
    assert len(table) == 200
    assert len(result) == len(expected) == 25


def test_pipeline_on_loaded_table(tmp_path) -> None:
    frame = make_tokens(n_types=60, seed=3)
    table = load_tokens(write_tokens(frame, tmp_path / 'tokens.csv'))

    types = filter_multi_instance(dedupe(derive_type(table)))
    assert types['type'].is_unique
    assert set(types['hapax'].astype(str)) <= {'no'}
    assert len(types) == frame.loc[frame['hapax'] == 'no', 'word'].nunique()
