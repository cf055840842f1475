import logging

import pandas as pd

from token_data import Hapax

logger = logging.getLogger(__name__)

TYPE_SEPARATOR = '_'


def derive_type(table) -> pd.DataFrame:
    # Composite word-type key, e.g. 'plenu_pl'
    typed = table.copy()
    typed['type'] = typed['word'].astype(str) + TYPE_SEPARATOR + typed['cluster'].astype(str)
    return typed


def split_type(type_key) -> tuple[str, str]:
    # Clusters never contain the separator, so splitting from the right is unambiguous
    word, cluster = type_key.rsplit(TYPE_SEPARATOR, 1)
    return word, cluster


def dedupe(table) -> pd.DataFrame:
    """Keep the first row of every word type, in the original row order."""
    typed = table if 'type' in table.columns else derive_type(table)
    deduped = typed.drop_duplicates(subset='type', keep='first').copy()
    logger.info(f"Collapsed {len(table)} tokens into {len(deduped)} word types")
    return deduped


def filter_multi_instance(table) -> pd.DataFrame:
    """Drop hapax rows, keeping types attested more than once."""
    kept = table[table['hapax'] == Hapax.NO.value].copy()
    logger.info(f"Kept {len(kept)} of {len(table)} rows with hapax == '{Hapax.NO.value}'")
    return kept
