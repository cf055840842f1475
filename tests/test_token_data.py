"""Tests for loading and typing the token table."""

from pathlib import Path
import sys

import pandas as pd
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from token_data import DataFormatError, levels, load_tokens, reference_level

HEADER = 'word,cluster,stress,log_freq,ffc,prec_fav,fol_fav,transmission,modern,hapax'
ROW = 'plenu,pl,stressed,2.5,0.3,favorable,favorable,oral,palatalization,no'


def _write(tmp_path, text, name='tokens.csv') -> Path:
    path = tmp_path / name
    path.write_text(text, encoding='utf-8')
    return path


def test_load_tokens_types_columns(token_file, token_frame) -> None:
    table = load_tokens(token_file)

    assert len(table) == len(token_frame)
    assert table['ffc'].dtype == 'float64'
    assert table['log_freq'].dtype == 'float64'
    assert isinstance(table['cluster'].dtype, pd.CategoricalDtype)
    assert list(table['cluster'].cat.categories) == ['pl', 'cl', 'fl']
    assert list(table['modern'].cat.categories) == ['preservation', 'palatalization']


def test_reference_levels_follow_enum_order() -> None:
    assert reference_level('modern') == 'preservation'
    assert reference_level('cluster') == 'pl'
    assert levels('transmission') == ['oral', 'learned']


def test_load_tokens_other_separator(tmp_path) -> None:
    path = _write(tmp_path, HEADER.replace(',', '\t') + '\n' + ROW.replace(',', '\t') + '\n')
    table = load_tokens(path, sep='\t')
    assert table.loc[0, 'word'] == 'plenu'
    assert table.loc[0, 'ffc'] == pytest.approx(0.3)


def test_load_tokens_keeps_extra_columns(tmp_path) -> None:
    path = _write(tmp_path, HEADER + ',gloss\n' + ROW + ',full\n')
    table = load_tokens(path)
    assert table.loc[0, 'gloss'] == 'full'


def test_empty_file_is_rejected(tmp_path) -> None:
    with pytest.raises(DataFormatError):
        load_tokens(_write(tmp_path, ''))


def test_missing_header_is_rejected(tmp_path) -> None:
    with pytest.raises(DataFormatError):
        load_tokens(_write(tmp_path, ROW + '\n' + ROW + '\n'))


def test_missing_column_is_rejected(tmp_path) -> None:
    header = HEADER.replace(',hapax', '')
    row = ROW.rsplit(',', 1)[0]
    with pytest.raises(DataFormatError, match='hapax'):
        load_tokens(_write(tmp_path, header + '\n' + row + '\n'))


def test_wrong_field_count_is_rejected(tmp_path) -> None:
    with pytest.raises(DataFormatError, match='Line 3'):
        load_tokens(_write(tmp_path, HEADER + '\n' + ROW + '\n' + ROW + ',extra\n'))

    with pytest.raises(DataFormatError):
        load_tokens(_write(tmp_path, HEADER + '\n' + ROW.rsplit(',', 1)[0] + '\n', name='short.csv'))


def test_non_numeric_text_is_rejected(tmp_path) -> None:
    with pytest.raises(DataFormatError, match='log_freq'):
        load_tokens(_write(tmp_path, HEADER + '\n' + ROW.replace('2.5', 'high') + '\n'))


def test_nan_text_is_not_imputed(tmp_path) -> None:
    with pytest.raises(DataFormatError):
        load_tokens(_write(tmp_path, HEADER + '\n' + ROW.replace('2.5', 'nan') + '\n'))


def test_empty_cell_is_rejected(tmp_path) -> None:
    with pytest.raises(DataFormatError, match='stress'):
        load_tokens(_write(tmp_path, HEADER + '\n' + ROW.replace('stressed', '') + '\n'))


def test_unknown_level_is_rejected(tmp_path) -> None:
    with pytest.raises(DataFormatError, match='cluster'):
        load_tokens(_write(tmp_path, HEADER + '\n' + ROW.replace(',pl,', ',tl,') + '\n'))


def test_ffc_outside_unit_interval_is_rejected(tmp_path) -> None:
    with pytest.raises(DataFormatError, match='ffc'):
        load_tokens(_write(tmp_path, HEADER + '\n' + ROW.replace('0.3', '1.3') + '\n'))


def test_byte_order_mark_is_ignored(tmp_path) -> None:
    path = tmp_path / 'tokens.csv'
    path.write_bytes(('\ufeff' + HEADER + '\n' + ROW + '\n').encode('utf-8'))
    table = load_tokens(path)

    assert list(table.columns[:2]) == ['word', 'cluster']
    assert table.loc[0, 'word'] == 'plenu'


def test_invalid_utf8_is_rejected(tmp_path) -> None:
    path = tmp_path / 'tokens.csv'
    path.write_bytes((HEADER + '\n').encode('utf-8') + b'pl\xffnu' + ROW[len('plenu'):].encode('utf-8') + b'\n')

    with pytest.raises(DataFormatError, match='UTF-8'):
        load_tokens(path)
