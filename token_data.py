import csv
import logging
import math
from enum import Enum
from pathlib import Path

import pandas as pd

logger = logging.getLogger(__name__)


class DataFormatError(ValueError):
    """Raised when the token table is malformed or misses required columns."""


# Fixed vocabularies. The first member of each enum is the reference level used
# for treatment coding, so category order never falls back to alphabetical order.
class Cluster(Enum):
    PL = 'pl'
    CL = 'cl'
    FL = 'fl'


class Stress(Enum):
    STRESSED = 'stressed'
    UNSTRESSED = 'unstressed'


class Favorability(Enum):
    FAVORABLE = 'favorable'
    UNFAVORABLE = 'unfavorable'


class Transmission(Enum):
    ORAL = 'oral'
    LEARNED = 'learned'


class Outcome(Enum):
    PRESERVATION = 'preservation'
    PALATALIZATION = 'palatalization'


class Hapax(Enum):
    NO = 'no'
    YES = 'yes'


CATEGORICAL_COLUMNS = {
    'cluster': Cluster,
    'stress': Stress,
    'prec_fav': Favorability,
    'fol_fav': Favorability,
    'transmission': Transmission,
    'modern': Outcome,
    'hapax': Hapax,
}
NUMERIC_COLUMNS = ('log_freq', 'ffc')
OPEN_COLUMNS = ('word',)
REQUIRED_COLUMNS = ('word', 'cluster', 'stress', 'log_freq', 'ffc', 'prec_fav',
                    'fol_fav', 'transmission', 'modern', 'hapax')


def levels(column) -> list[str]:
    """Category order of a fixed-vocabulary column, reference level first."""
    return [member.value for member in CATEGORICAL_COLUMNS[column]]


def reference_level(column) -> str:
    return levels(column)[0]


def _read_rows(file_path, sep):
    # utf-8-sig drops the byte order mark spreadsheet exports put before the header
    try:
        with Path(file_path).open('r', encoding='utf-8-sig', newline='') as file:
            reader = csv.reader(file, delimiter=sep)
            rows = [row for row in reader if row]
    except UnicodeDecodeError as e:
        raise DataFormatError(f"File '{file_path}' is not valid UTF-8: {e}") from e
    if not rows:
        raise DataFormatError(f"File '{file_path}' is empty.")

    header = [name.strip() for name in rows[0]]
    if len(set(header)) != len(header):
        raise DataFormatError(f"Header of '{file_path}' repeats a column name.")
    missing = [name for name in REQUIRED_COLUMNS if name not in header]
    if missing:
        raise DataFormatError(f"Header of '{file_path}' is missing or lacks columns: {', '.join(missing)}")

    body = []
    for line_number, row in enumerate(rows[1:], start=2):
        if len(row) != len(header):
            raise DataFormatError(
                f"Line {line_number} of '{file_path}' has {len(row)} fields, expected {len(header)}.")
        body.append([cell.strip() for cell in row])
    return header, body


def _type_columns(raw):
    table = pd.DataFrame(index=raw.index)
    for column in raw.columns:
        values = raw[column]
        if column in REQUIRED_COLUMNS:
            empty = values == ''
            if empty.any():
                row = empty.idxmax()
                raise DataFormatError(f"Column '{column}' has an empty value at row {row}.")

        if column in NUMERIC_COLUMNS:
            try:
                numbers = pd.to_numeric(values, errors='raise').astype('float64')
            except (ValueError, TypeError) as e:
                raise DataFormatError(f"Column '{column}' contains non-numeric text: {e}") from e
            # 'nan' and 'inf' parse as floats but are not observations
            if not numbers.map(math.isfinite).all():
                raise DataFormatError(f"Column '{column}' contains non-finite values.")
            table[column] = numbers
        elif column in CATEGORICAL_COLUMNS:
            vocabulary = levels(column)
            unknown = sorted(set(values) - set(vocabulary))
            if unknown:
                raise DataFormatError(
                    f"Column '{column}' has values outside {vocabulary}: {', '.join(unknown)}")
            table[column] = pd.Categorical(values, categories=vocabulary)
        elif column in OPEN_COLUMNS:
            table[column] = pd.Categorical(values, categories=list(dict.fromkeys(values)))
        else:
            table[column] = values

    out_of_range = ~table['ffc'].between(0.0, 1.0)
    if out_of_range.any():
        raise DataFormatError(f"Column 'ffc' must lie in [0, 1]; {int(out_of_range.sum())} values do not.")
    return table


def load_tokens(file_path, sep=',') -> pd.DataFrame:
    """
    Load the annotated token table.

    Args:
    - file_path (Path or str): Delimited text file with a header row.
    - sep (str): Field delimiter.

    Returns:
    - DataFrame: One row per token, fixed-vocabulary columns as ordered-by-enum
      categoricals and numeric columns as float64.
    """
    header, body = _read_rows(file_path, sep)
    raw = pd.DataFrame(body, columns=header, dtype=str)
    table = _type_columns(raw)
    logger.info(f"Loaded {len(table)} tokens from {file_path}")
    return table
