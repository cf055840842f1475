import logging
import warnings
from dataclasses import dataclass, field
from itertools import combinations

import numpy as np
import pandas as pd
import statsmodels.api as sm
from patsy import build_design_matrices, dmatrices

from token_data import CATEGORICAL_COLUMNS, Outcome, levels

logger = logging.getLogger(__name__)

# Fitted probabilities closer than this to 0 or 1 count as saturated (separation)
SATURATION_TOLERANCE = 1e-6
# Minimum AIC improvement for a backward step to be taken, and for one candidate to beat another
STEP_TOLERANCE = 1e-7


class ModelFitWarning(UserWarning):
    """Separation, saturation or non-convergence while fitting; coefficients are still returned."""


class EmptyGroupWarning(UserWarning):
    """A factor-level combination has no observations."""


@dataclass(frozen=True)
class Term:
    """A main effect (one factor) or an interaction (several factors)."""
    factors: tuple

    @classmethod
    def parse(cls, label):
        return cls(tuple(part.strip() for part in label.split(':')))

    @property
    def label(self) -> str:
        return ':'.join(self.factors)

    @property
    def key(self) -> frozenset:
        return frozenset(self.factors)

    def is_marginal_to(self, other) -> bool:
        return self.key != other.key and self.key <= other.key

    def touches(self, factors) -> bool:
        return any(factor in factors for factor in self.factors)


@dataclass(frozen=True)
class TermSet:
    """
    Ordered model terms, each with an inclusion flag.

    The order of the entries is the order of the formula and the tie-break order
    of the stepwise search. Dropping a term flips its flag; entries are never removed.
    """
    entries: tuple

    @classmethod
    def from_terms(cls, terms):
        seen = set()
        entries = []
        for term in terms:
            term = term if isinstance(term, Term) else Term.parse(term)
            if term.key in seen:
                continue
            seen.add(term.key)
            entries.append((term, True))
        return cls(tuple(entries))

    @classmethod
    def with_interactions(cls, main_effects, interactions=()):
        return cls.from_terms([Term((factor,)) for factor in main_effects] +
                              [Term(tuple(pair)) for pair in interactions])

    @classmethod
    def full_factorial(cls, main_effects):
        """All main effects and all of their pairwise interactions."""
        return cls.with_interactions(main_effects, combinations(main_effects, 2))

    @classmethod
    def from_interactions(cls, interactions):
        """Interaction terms preceded by the main effects they imply, as in R's a*b."""
        main_effects = list(dict.fromkeys(factor for pair in interactions for factor in pair))
        return cls.with_interactions(main_effects, interactions)

    def included(self) -> tuple:
        return tuple(term for term, flag in self.entries if flag)

    def factors(self, included_only=True) -> tuple:
        terms = self.included() if included_only else [term for term, _ in self.entries]
        return tuple(dict.fromkeys(factor for term in terms for factor in term.factors))

    def candidates(self) -> tuple:
        # Terms that can be dropped without leaving an interaction whose main effect is gone
        included = self.included()
        return tuple(term for term in included if not any(term.is_marginal_to(other) for other in included))

    def without(self, term):
        return TermSet(tuple((t, flag and t.key != term.key) for t, flag in self.entries))

    def excluding(self, factors):
        factors = set(factors)
        return TermSet(tuple((t, flag and not t.touches(factors)) for t, flag in self.entries))

    def labels(self) -> list[str]:
        return [term.label for term in self.included()]

    def to_formula(self, outcome, references=None) -> str:
        references = references or {}

        def factor_expression(name):
            if name in references:
                return f"C({name}, Treatment(reference={references[name]!r}))"
            return name

        rhs = ' + '.join(':'.join(factor_expression(factor) for factor in term.factors)
                         for term in self.included())
        return f"{outcome} ~ {rhs or '1'}"


@dataclass(frozen=True, eq=False)
class FittedModel:
    terms: TermSet
    outcome: str
    formula: str
    references: dict
    data: pd.DataFrame = field(repr=False)
    result: object = field(repr=False)
    design_info: object = field(default=None, repr=False)
    fit_warnings: tuple = ()
    empty_cells: tuple = ()

    @property
    def params(self) -> pd.Series:
        return self.result.params

    @property
    def bse(self) -> pd.Series:
        return self.result.bse

    @property
    def aic(self) -> float:
        return float(self.result.aic)

    @property
    def converged(self) -> bool:
        return bool(getattr(self.result, 'converged', True))

    def coefficients(self) -> pd.DataFrame:
        return pd.DataFrame({
            'estimate': self.result.params,
            'std_error': self.result.bse,
            'z_value': self.result.tvalues,
            'p_value': self.result.pvalues,
        })

    def design_matrix(self, frame) -> pd.DataFrame:
        """Model matrix of `frame` with the columns and coding of the fitted model."""
        (matrix,) = build_design_matrices([self.design_info], frame, return_type='dataframe')
        return matrix

    def predict(self, frame) -> np.ndarray:
        """Predicted probability of the non-reference outcome for each row of `frame`."""
        return np.asarray(self.result.predict(self.design_matrix(frame)))


@dataclass(frozen=True)
class StepRecord:
    dropped: str
    aic: float
    formula: str


@dataclass(frozen=True, eq=False)
class StepwiseResult:
    model: FittedModel
    formula: str
    history: tuple

    @property
    def dropped_terms(self) -> list[str]:
        return [step.dropped for step in self.history if step.dropped is not None]


def _as_categorical(values, column):
    if isinstance(values.dtype, pd.CategoricalDtype):
        return values.cat.remove_unused_categories()
    if column in CATEGORICAL_COLUMNS:
        present = set(values)
        return pd.Categorical(values, categories=[level for level in levels(column) if level in present])
    return pd.Categorical(values, categories=list(dict.fromkeys(values)))


def _encode_outcome(values, reference_level):
    if pd.api.types.is_numeric_dtype(values) and not isinstance(values.dtype, pd.CategoricalDtype):
        if not values.isin([0, 1]).all():
            raise ValueError("A numeric outcome must be coded 0/1.")
        return values.astype(float)

    observed = set(values.astype(str))
    known = set(values.cat.categories) if isinstance(values.dtype, pd.CategoricalDtype) else observed
    if reference_level not in known:
        raise ValueError(f"Reference level '{reference_level}' is not a level of the outcome.")
    others = observed - {reference_level}
    if len(others) > 1:
        raise ValueError(f"The outcome has more than two levels: {sorted(observed)}")
    return (values.astype(str) != reference_level).astype(float)


def _model_frame(table, outcome_column, terms, reference_level):
    columns = [outcome_column] + [f for f in terms.factors(included_only=False) if f != outcome_column]
    missing = [column for column in columns if column not in table.columns]
    if missing:
        raise ValueError(f"Columns not in table: {', '.join(missing)}")

    data = table[columns].copy()
    data[outcome_column] = _encode_outcome(data[outcome_column], reference_level)
    for column in columns[1:]:
        if not pd.api.types.is_numeric_dtype(data[column]) or isinstance(data[column].dtype, pd.CategoricalDtype):
            data[column] = _as_categorical(data[column], column)
    return data


def _references(data, terms):
    # First category in enum order, i.e. the documented reference level when it occurs
    return {column: str(data[column].cat.categories[0])
            for column in terms.factors(included_only=False)
            if isinstance(data[column].dtype, pd.CategoricalDtype) and len(data[column].cat.categories)}


def _empty_cells(data, terms):
    empty = []
    for term in terms.included():
        categorical = [f for f in term.factors if isinstance(data[f].dtype, pd.CategoricalDtype)]
        if len(term.factors) < 2 or len(categorical) < 2:
            continue
        counts = data.groupby(categorical, observed=False).size()
        for combination in counts[counts == 0].index:
            empty.append(f"{term.label}: {' '.join(map(str, combination))}")
    return tuple(empty)


def _report_warnings(model):
    for message in model.fit_warnings:
        logger.warning(f"Fit warning for '{model.formula}': {message}")
        warnings.warn(message, ModelFitWarning, stacklevel=3)
    for cell in model.empty_cells:
        logger.warning(f"Empty factor combination in '{model.formula}': {cell}")
        warnings.warn(f"no observations for {cell}", EmptyGroupWarning, stacklevel=3)


def _fit(terms, outcome_column, data, references, report=True) -> FittedModel:
    formula = terms.to_formula(outcome_column, references)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter('always')
        endog, exog = dmatrices(formula, data, return_type='dataframe')
        result = sm.GLM(endog, exog, family=sm.families.Binomial()).fit()

    messages = [str(w.message) for w in caught
                if not issubclass(w.category, (DeprecationWarning, FutureWarning))]
    if not getattr(result, 'converged', True):
        messages.append('IRLS did not converge')
    fitted = np.asarray(result.fittedvalues)
    saturated = int(np.sum((fitted < SATURATION_TOLERANCE) | (fitted > 1 - SATURATION_TOLERANCE)))
    if saturated:
        messages.append(f"fitted probabilities numerically 0 or 1 occurred ({saturated} rows)")

    model = FittedModel(terms=terms, outcome=outcome_column, formula=formula, references=references,
                        data=data, result=result, design_info=exog.design_info,
                        fit_warnings=tuple(dict.fromkeys(messages)),
                        empty_cells=_empty_cells(data, terms))
    if report:
        _report_warnings(model)
    else:
        for message in model.fit_warnings:
            logger.debug(f"Trial fit '{formula}': {message}")
    return model


def fit_binomial(table, outcome_column, terms, reference_level=Outcome.PRESERVATION.value) -> FittedModel:
    """
    Fit a logistic regression (binomial GLM, logit link).

    Args:
    - table (DataFrame): Observations; not modified.
    - outcome_column (str): Two-level categorical outcome, or an already 0/1 coded column.
    - terms (TermSet or list of str): Model terms, e.g. ['cluster', 'ffc', 'cluster:ffc'].
    - reference_level (str): Outcome level coded 0; the model predicts the other level.

    Returns:
    - FittedModel: Coefficients on the log-odds scale with standard errors, z and p values and AIC.
    """
    terms = terms if isinstance(terms, TermSet) else TermSet.from_terms(terms)
    data = _model_frame(table, outcome_column, terms, reference_level)
    references = _references(data, terms)
    model = _fit(terms, outcome_column, data, references)
    logger.info(f"Fitted {model.formula} on {len(data)} rows (AIC {model.aic:.3f})")
    return model


def refit(model, terms, report=False) -> FittedModel:
    """Fit `terms` on the same data snapshot and reference levels as `model`."""
    return _fit(terms, model.outcome, model.data, model.references, report=report)


def stepwise_select(model) -> StepwiseResult:
    """
    Backward elimination by AIC.

    Each round drops the candidate whose removal gives the lowest AIC, as long as
    that improves on the current AIC. Candidates are tried in term-set order and
    the first of equally good candidates wins.
    """
    current = model
    history = [StepRecord(dropped=None, aic=model.aic, formula=model.formula)]
    while True:
        candidates = current.terms.candidates()
        if not candidates:
            break

        best_term, best_model = None, None
        for term in candidates:
            trial = refit(current, current.terms.without(term))
            logger.debug(f"  - {term.label}: AIC {trial.aic:.3f}")
            # Near ties keep the earlier candidate
            if best_model is None or trial.aic < best_model.aic - STEP_TOLERANCE:
                best_term, best_model = term, trial

        if not best_model.aic < current.aic - STEP_TOLERANCE:
            break
        logger.info(f"Step: dropped {best_term.label}, AIC {current.aic:.3f} -> {best_model.aic:.3f}")
        current = best_model
        history.append(StepRecord(dropped=best_term.label, aic=current.aic, formula=current.formula))

    if current is not model:
        _report_warnings(current)
    logger.info(f"Stepwise selection kept: {current.formula}")
    return StepwiseResult(model=current, formula=current.formula, history=tuple(history))
