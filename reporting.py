import html
import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from posthoc_methods import probability_curve

logger = logging.getLogger(__name__)


def _as_list(columns):
    return [columns] if isinstance(columns, str) else list(columns)


def grouped_counts(table, group_columns) -> pd.DataFrame:
    """Row counts per observed combination of the grouping columns, in category order."""
    group_columns = _as_list(group_columns)
    return (table.groupby(group_columns, observed=True, sort=True, dropna=False)
            .size()
            .reset_index(name='n'))


def outcome_proportions(table, group_columns, outcome_column='modern') -> pd.DataFrame:
    group_columns = _as_list(group_columns)
    counts = grouped_counts(table, group_columns + [outcome_column])
    totals = counts.groupby(group_columns, observed=True, dropna=False)['n'].transform('sum')
    counts['share'] = counts['n'] / totals
    return counts


def coefficient_table(model) -> pd.DataFrame:
    return model.coefficients().rename_axis('term').reset_index()


def plot_outcome_counts(table, x='cluster', hue='modern', title=None):
    """Bar chart of token counts per level of `x`, split by outcome."""
    sns.set_style('whitegrid')
    fig, ax = plt.subplots(figsize=(10, 6))
    sns.countplot(data=table, x=x, hue=hue, palette='colorblind', ax=ax)
    for container in ax.containers:
        ax.bar_label(container, fontsize=10)
    ax.set_title(title or f'Outcome by {x}', fontsize=14)
    ax.set_xlabel(x, fontsize=12)
    ax.set_ylabel('Count', fontsize=12)
    fig.tight_layout()
    return fig


def plot_fitted_curve(model, covariate='ffc', title=None):
    """
    Observed 0/1 outcomes against one covariate with the model's fitted probability curve.

    Other factors are held at their reference level and mean, as in probability_curve.
    """
    data = model.data
    values = np.linspace(data[covariate].min(), data[covariate].max(), 200)
    curve = probability_curve(model, covariate, values)

    sns.set_style('whitegrid')
    fig, ax = plt.subplots(figsize=(10, 6))
    # Small vertical jitter so stacked observations stay visible
    jitter = np.random.default_rng(0).uniform(-0.03, 0.03, len(data))
    ax.scatter(data[covariate], data[model.outcome] + jitter, color='red', alpha=0.5, label='Observed')
    ax.plot(curve[covariate], curve['probability'], color='blue', linewidth=2, label='Fitted probability')
    ax.set_xlabel(covariate, fontsize=12)
    ax.set_ylabel(f'P({model.outcome} = 1)', fontsize=12)
    ax.set_ylim(-0.1, 1.1)
    ax.set_title(title or f'Fitted probability by {covariate}', fontsize=14)
    ax.legend()
    fig.tight_layout()
    return fig


def plot_covariate_boxplot(table, x='modern', y='ffc', hue=None, title=None):
    sns.set_style('whitegrid')
    fig, ax = plt.subplots(figsize=(10, 6))
    sns.boxplot(data=table, x=x, y=y, hue=hue, palette='colorblind' if hue else None, ax=ax)
    ax.set_title(title or f'{y} by {x}', fontsize=14)
    ax.set_xlabel(x, fontsize=12)
    ax.set_ylabel(y, fontsize=12)
    fig.tight_layout()
    return fig


def save_figure(fig, output_path):
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path)
    plt.close(fig)  # Close the figure to free up memory
    logger.info(f"Figure saved to {output_path}")
    return output_path


def write_report(output_path, sections):
    """
    Write an HTML report.

    Args:
    - output_path (Path or str): Destination file.
    - sections (list): (title, content) pairs; DataFrames become tables, anything
      else is written as preformatted text.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open('w', encoding='utf-8') as file:
        file.write('<!DOCTYPE html>\n<html>\n<head><meta charset="utf-8"><title>Analysis report</title></head>\n<body>\n')
        for title, content in sections:
            file.write(f'<h2>{html.escape(title)}</h2>\n')
            if isinstance(content, pd.DataFrame):
                file.write(content.to_html(index=False, float_format=lambda value: f'{value:.4f}'))
            else:
                file.write(f'<pre>{html.escape(str(content))}</pre>')
            file.write('\n')
        file.write('</body>\n</html>\n')
    logger.info(f"Report saved to {output_path}")
    return output_path
