import itertools
import logging
import warnings
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from scipy.special import expit
from scipy.stats import norm, studentized_range
from statsmodels.stats.multitest import multipletests

from model_class import EmptyGroupWarning, FittedModel

logger = logging.getLogger(__name__)

ADJUSTMENTS = ('tukey', 'bonferroni', 'holm', 'none')
CONTRAST_COLUMNS = ['contrast', 'estimate', 'std_error', 'z_ratio', 'p_value']


def _is_categorical(values) -> bool:
    return isinstance(values.dtype, pd.CategoricalDtype)


@dataclass(frozen=True, eq=False)
class MarginalMeans:
    """
    Estimated marginal means on the link (log-odds) scale.

    `linear_combinations` holds one row per mean, so that every mean and every
    difference of means is a linear function of `params` with covariance `cov`.
    """
    factors: tuple
    table: pd.DataFrame
    linear_combinations: np.ndarray = field(repr=False)
    params: np.ndarray = field(repr=False)
    cov: np.ndarray = field(repr=False)

    def labels(self) -> list[str]:
        return [' '.join(str(row[factor]) for factor in self.factors) for _, row in self.table.iterrows()]


def inverse_logit(eta):
    """
    Map a linear predictor to a probability, p = exp(eta) / (1 + exp(eta)).

    Strictly inside (0, 1) for |eta| below about 37; beyond that float64 rounds to
    exactly 0 or 1 without overflow.
    """
    with np.errstate(over='ignore', under='ignore'):
        probability = expit(np.asarray(eta, dtype=float))
    return float(probability) if np.ndim(probability) == 0 else probability


def predicted_probability(model, covariate_values, include_intercept=False) -> float:
    """
    Probability implied by the coefficients at the given covariate values.

    Parameters:
    - model (FittedModel or dict): Fitted model, or a mapping of coefficient name to estimate.
    - covariate_values (dict): Coefficient name -> value, e.g. {'ffc': 0.1}.
    - include_intercept (bool): Add the 'Intercept' coefficient to the linear predictor.

    Returns:
    - float: inverse_logit of the linear predictor.
    """
    coefficients = model.params if isinstance(model, FittedModel) else pd.Series(dict(model), dtype=float)
    eta = float(coefficients['Intercept']) if include_intercept else 0.0
    for name, value in covariate_values.items():
        if name not in coefficients.index:
            raise KeyError(f"No coefficient named '{name}'")
        eta += float(coefficients[name]) * value
    return inverse_logit(eta)


def _reference_grid(model, factors, covariate_values):
    data = model.data
    model_factors = model.terms.factors()
    categorical = list(factors) + [f for f in model_factors if f not in factors and _is_categorical(data[f])]
    numeric = [f for f in model_factors if f not in categorical]

    grid = pd.DataFrame(list(itertools.product(*[data[f].cat.categories for f in categorical])),
                        columns=categorical)
    for column in categorical:
        grid[column] = pd.Categorical(grid[column], categories=data[column].cat.categories)
    for column in numeric:
        grid[column] = covariate_values.get(column, float(data[column].mean()))
    return grid


def _matches(frame, factors, key):
    return np.logical_and.reduce([np.asarray(frame[f].astype(str) == str(level)) for f, level in zip(factors, key)])


def estimated_marginal_means(model, factors, covariate_values=None) -> MarginalMeans:
    """
    Link-scale marginal means for every combination of levels of `factors`.

    Numeric covariates are held at their mean (or at `covariate_values`); the
    model's other categorical factors are averaged over with equal weights.
    Combinations with no observations are omitted.
    """
    factors = tuple(factors)
    for factor in factors:
        if factor not in model.data.columns or not _is_categorical(model.data[factor]):
            raise ValueError(f"'{factor}' is not a categorical column of the model data")

    grid = _reference_grid(model, factors, covariate_values or {})
    matrix = model.design_matrix(grid)
    params = model.params.loc[matrix.columns].to_numpy()
    cov = model.result.cov_params().loc[matrix.columns, matrix.columns].to_numpy()

    rows, combinations = [], []
    for key in itertools.product(*[model.data[f].cat.categories for f in factors]):
        n = int(_matches(model.data, factors, key).sum())
        if n == 0:
            cell = ' '.join(map(str, key))
            logger.warning(f"No observations for {cell}; omitted from marginal means")
            warnings.warn(f"no observations for {cell}", EmptyGroupWarning, stacklevel=2)
            continue
        rows.append(matrix.to_numpy()[_matches(grid, factors, key)].mean(axis=0))
        combinations.append(dict(zip(factors, map(str, key)), n=n))

    linear_combinations = np.array(rows).reshape(len(rows), len(params))
    emmean = linear_combinations @ params
    variance = np.einsum('ij,jk,ik->i', linear_combinations, cov, linear_combinations)
    table = pd.DataFrame(combinations, columns=list(factors) + ['n'])
    table['emmean'] = emmean
    table['std_error'] = np.sqrt(np.maximum(variance, 0.0))
    table['probability'] = inverse_logit(emmean)
    table = table[list(factors) + ['emmean', 'std_error', 'probability', 'n']]
    return MarginalMeans(factors=factors, table=table, linear_combinations=linear_combinations,
                         params=params, cov=cov)


def _adjust(z, family_size, adjustment):
    raw = 2 * norm.sf(np.abs(z))
    if adjustment == 'tukey':
        # Studentized range over the whole family with infinite degrees of freedom
        return np.clip(studentized_range.sf(np.abs(z) * np.sqrt(2), family_size, np.inf), 0.0, 1.0)
    if adjustment in ('bonferroni', 'holm'):
        return multipletests(raw, method=adjustment)[1]
    return raw


def pairwise_contrasts(emm, adjustment='tukey') -> pd.DataFrame:
    """All pairwise differences of marginal means with multiplicity-adjusted p values."""
    adjustment = adjustment.lower()
    if adjustment not in ADJUSTMENTS:
        raise ValueError(f"Unknown adjustment '{adjustment}'; expected one of {ADJUSTMENTS}")

    labels = emm.labels()
    if len(labels) < 2:
        return pd.DataFrame(columns=CONTRAST_COLUMNS)

    records = []
    for i, j in itertools.combinations(range(len(labels)), 2):
        difference = emm.linear_combinations[i] - emm.linear_combinations[j]
        estimate = float(difference @ emm.params)
        std_error = float(np.sqrt(max(difference @ emm.cov @ difference, 0.0)))
        z_ratio = estimate / std_error if std_error > 0 else np.nan
        records.append((f"{labels[i]} - {labels[j]}", estimate, std_error, z_ratio))

    contrasts = pd.DataFrame(records, columns=CONTRAST_COLUMNS[:-1])
    contrasts['p_value'] = _adjust(contrasts['z_ratio'].to_numpy(), len(labels), adjustment)
    logger.info(f"Computed {len(contrasts)} pairwise contrasts ({adjustment} adjustment)")
    return contrasts


def probability_curve(model, covariate, values, covariate_values=None) -> pd.DataFrame:
    """
    Predicted probabilities along one numeric covariate.

    Categorical factors sit at their reference level and the other numeric
    covariates at their mean (or at `covariate_values`).
    """
    covariate_values = covariate_values or {}
    data = model.data
    grid = pd.DataFrame({covariate: np.asarray(values, dtype=float)})
    for column in model.terms.factors(included_only=False):
        if column == covariate:
            continue
        if _is_categorical(data[column]):
            categories = data[column].cat.categories
            grid[column] = pd.Categorical([categories[0]] * len(grid), categories=categories)
        else:
            grid[column] = covariate_values.get(column, float(data[column].mean()))
    grid['probability'] = model.predict(grid)
    return grid[[covariate, 'probability']]
