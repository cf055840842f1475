import logging
from dataclasses import dataclass, field
from pathlib import Path

import pandas as pd

from model_class import FittedModel, StepwiseResult, TermSet, fit_binomial, stepwise_select
from posthoc_methods import MarginalMeans, estimated_marginal_means, pairwise_contrasts, predicted_probability
from reporting import (coefficient_table, grouped_counts, outcome_proportions, plot_covariate_boxplot,
                       plot_fitted_curve, plot_outcome_counts, save_figure, write_report)
from subset_analysis import DEFAULT_OUTCOME_MAPPING, SubsetAnalysis, refit_subset
from token_data import Outcome, Transmission, load_tokens
from type_features import dedupe, derive_type, filter_multi_instance

logger = logging.getLogger(__name__)


# Configuration class for the analysis. Change the modeling inputs here.
class Config:
    def __init__(self, base_dir=None):
        self.base_dir = Path(base_dir) if base_dir else Path(__file__).parent
        self.data_dir = self.base_dir / 'data'
        self.log_dir = self.data_dir / 'logs'
        self.output_dir = self.data_dir / 'outputs'
        self.figure_dir = self.output_dir / 'figures'
        self.report_dir = self.output_dir / 'reports'
        self.input_file = self.data_dir / 'tokens.csv'
        self.separator = ','

        self.outcome_column = 'modern'
        # Full model: every main effect plus the cluster interactions. The cluster is the
        # factor of interest; crossing every pair of predictors (full_factorial = True)
        # leaves many empty cells and separated fits on a corpus of this size.
        self.main_effects = ['cluster', 'stress', 'log_freq', 'ffc', 'prec_fav', 'fol_fav', 'transmission']
        self.interactions = [('cluster', 'stress'), ('cluster', 'log_freq'), ('cluster', 'ffc'),
                             ('cluster', 'prec_fav'), ('cluster', 'fol_fav'), ('cluster', 'transmission')]
        self.full_factorial = False

        # Subset model: orally transmitted words, preservation coded 1
        self.subset_filter = {'transmission': Transmission.ORAL.value}
        self.outcome_mapping = dict(DEFAULT_OUTCOME_MAPPING)
        self.subset_interactions = [('cluster', 'stress'), ('cluster', 'ffc'), ('cluster', 'prec_fav'),
                                    ('cluster', 'fol_fav')]
        # transmission is constant within the subset; fol_fav is too imbalanced across levels
        self.excluded_factors = ['transmission', 'fol_fav']

        self.posthoc_factors = ['cluster', 'stress']
        self.adjustment = 'tukey'
        self.representative_ffc = [0.1, 0.5, 1.0]
        self.log_level = logging.INFO

    def full_terms(self) -> TermSet:
        if self.full_factorial:
            return TermSet.full_factorial(self.main_effects)
        return TermSet.with_interactions(self.main_effects, self.interactions)

    # Logging Configuration: Setup log file and console output formats
    def setup_logging(self):
        self.log_dir.mkdir(parents=True, exist_ok=True)
        logfile = self.log_dir / 'analysis.log'
        file_handler = logging.FileHandler(logfile, mode='a', encoding='utf-8')
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter('%(message)s'))

        logging.basicConfig(level=self.log_level, handlers=[file_handler, console_handler])

    def create_directories(self):
        for directory in [self.data_dir, self.log_dir, self.output_dir, self.figure_dir, self.report_dir]:
            directory.mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True, eq=False)
class AnalysisResults:
    tokens: pd.DataFrame = field(repr=False)
    types: pd.DataFrame = field(repr=False)
    full_model: FittedModel
    selection: StepwiseResult
    subset: SubsetAnalysis
    marginal_means: MarginalMeans
    contrasts: pd.DataFrame
    ffc_probabilities: pd.DataFrame
    report_path: Path


def representative_probabilities(model, covariate, values) -> pd.DataFrame:
    """Effect-only probabilities of one coefficient, e.g. FFC = 0.1 gives inverse_logit(0.1 * b_ffc)."""
    if covariate not in model.params.index:
        logger.info(f"'{covariate}' was dropped from {model.formula}; no representative probabilities")
        return pd.DataFrame(columns=[covariate, 'probability'])
    probabilities = [predicted_probability(model, {covariate: value}) for value in values]
    for value, probability in zip(values, probabilities):
        logger.info(f"{covariate} = {value}: predicted probability {probability:.2%}")
    return pd.DataFrame({covariate: list(values), 'probability': probabilities})


def describe(types, config) -> list:
    outcome = config.outcome_column
    return [
        ('Word types by cluster and outcome', grouped_counts(types, ['cluster', outcome])),
        ('Outcome shares by transmission', outcome_proportions(types, ['transmission'], outcome)),
        ('Outcome shares by stress', outcome_proportions(types, ['cluster', 'stress'], outcome)),
    ]


def render_figures(types, selection, subset, config):
    outcome = config.outcome_column
    figures = {
        'outcome_by_cluster.png': plot_outcome_counts(types, x='cluster', hue=outcome),
        'ffc_by_outcome.png': plot_covariate_boxplot(types, x=outcome, y='ffc', hue='cluster'),
    }
    for name, model in [('full', selection.model), ('oral_subset', subset.model)]:
        if 'ffc' in model.terms.factors():
            figures[f'{name}_ffc_curve.png'] = plot_fitted_curve(model, 'ffc', title=f'Fitted probability by FFC ({name})')
    return [save_figure(fig, config.figure_dir / name) for name, fig in figures.items()]


def run_pipeline(config) -> AnalysisResults:
    config.create_directories()
    outcome = config.outcome_column

    tokens = load_tokens(config.input_file, sep=config.separator)
    types = filter_multi_instance(dedupe(derive_type(tokens)))

    logger.info("Fitting the full model")
    full_model = fit_binomial(types, outcome, config.full_terms(), reference_level=Outcome.PRESERVATION.value)
    selection = stepwise_select(full_model)

    logger.info(f"Fitting the subset model for {config.subset_filter}")
    subset = refit_subset(types, config.subset_filter, outcome, config.subset_interactions,
                          mapping=config.outcome_mapping, excluded_factors=config.excluded_factors)

    marginal_means = estimated_marginal_means(subset.model, config.posthoc_factors)
    contrasts = pairwise_contrasts(marginal_means, config.adjustment)
    ffc_probabilities = representative_probabilities(selection.model, 'ffc', config.representative_ffc)

    render_figures(types, selection, subset, config)
    sections = describe(types, config) + [
        ('Full model', full_model.result.summary().as_text()),
        ('Stepwise-selected model', selection.model.result.summary().as_text()),
        ('Stepwise-selected coefficients', coefficient_table(selection.model)),
        ('Oral subset model', subset.model.result.summary().as_text()),
        ('Estimated marginal means', marginal_means.table),
        (f'Pairwise contrasts ({config.adjustment})', contrasts),
        ('Predicted probability by FFC', ffc_probabilities),
    ]
    report_path = write_report(config.report_dir / 'analysis_report.html', sections)

    return AnalysisResults(tokens=tokens, types=types, full_model=full_model, selection=selection,
                           subset=subset, marginal_means=marginal_means, contrasts=contrasts,
                           ffc_probabilities=ffc_probabilities, report_path=report_path)


def main(config=None):
    config = config or Config()
    config.setup_logging()
    try:
        run_pipeline(config)
    except FileNotFoundError:
        logger.error(f"Input file not found: {config.input_file}")
        raise


if __name__ == "__main__":
    main()
