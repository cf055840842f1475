import logging
from dataclasses import dataclass, field

import pandas as pd

from model_class import FittedModel, StepwiseResult, TermSet, fit_binomial, stepwise_select
from token_data import Outcome

logger = logging.getLogger(__name__)

# Models the probability of preservation within the subset
DEFAULT_OUTCOME_MAPPING = {Outcome.PALATALIZATION.value: 0, Outcome.PRESERVATION.value: 1}


class UnmappedLevelError(ValueError):
    """Raised when an outcome value has no entry in the recoding mapping."""

    def __init__(self, column, values):
        self.column = column
        self.values = tuple(values)
        super().__init__(f"Values of '{column}' missing from the mapping: {', '.join(self.values)}")


@dataclass(frozen=True, eq=False)
class SubsetAnalysis:
    data: pd.DataFrame = field(repr=False)
    full_model: FittedModel
    selection: StepwiseResult

    @property
    def model(self) -> FittedModel:
        return self.selection.model


def _mask(table, predicate):
    if callable(predicate):
        return pd.Series(predicate(table), index=table.index).astype(bool)
    mask = pd.Series(True, index=table.index)
    for column, value in predicate.items():
        mask &= table[column].astype(str) == str(value)
    return mask


def subset_and_recode(table, predicate, outcome_column, mapping=None) -> pd.DataFrame:
    """
    Filter rows and recode the outcome into a 0/1 indicator.

    Args:
    - table (DataFrame): Word-type table; not modified.
    - predicate (dict or callable): {column: value} equality filter, or a function
      returning a boolean mask for the table.
    - outcome_column (str): Categorical outcome to recode.
    - mapping (dict): Outcome level -> 0 or 1.

    Returns:
    - DataFrame: The filtered rows with the outcome replaced by an integer indicator.
    """
    mapping = DEFAULT_OUTCOME_MAPPING if mapping is None else mapping
    if not set(mapping.values()) <= {0, 1}:
        raise ValueError(f"Outcome mapping must map to 0 or 1, got {sorted(set(mapping.values()))}")

    subset = table[_mask(table, predicate)].copy()
    values = subset[outcome_column].astype(str)
    unmapped = sorted(set(values) - set(mapping))
    if unmapped:
        raise UnmappedLevelError(outcome_column, unmapped)

    subset[outcome_column] = values.map(mapping).astype(int)
    logger.info(f"Subset kept {len(subset)} of {len(table)} rows")
    return subset


def refit_subset(table, predicate, outcome_column, interactions, mapping=None, excluded_factors=()) -> SubsetAnalysis:
    """Recode a subset, then fit and reduce an interaction-only model on it."""
    subset = subset_and_recode(table, predicate, outcome_column, mapping)
    terms = TermSet.from_interactions(interactions).excluding(excluded_factors)
    if excluded_factors:
        logger.info(f"Excluded from the subset model: {', '.join(excluded_factors)}")
    full_model = fit_binomial(subset, outcome_column, terms)
    selection = stepwise_select(full_model)
    return SubsetAnalysis(data=subset, full_model=full_model, selection=selection)
