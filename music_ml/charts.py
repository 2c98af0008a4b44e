"""
Plotly chart generation for tuning results and the final model.
Reads only the public accessors of the core; never feeds back into it.
"""
import html
import os
from typing import Dict, Iterable, List

import plotly.graph_objects as go

from .config import FamilySummary, format_params
from .families import get_family
from .metrics import get_metric
from .tuning import TuningResult

COLORS = ['#1FB8CD', '#FF6B6B', '#4ECDC4', '#45B7D1', '#96CEB4', '#FECA57', '#FF9FF3']

CHART_CONFIG = {
    'displayModeBar': True,
    'displaylogo': False,
    'modeBarButtonsToRemove': ['pan2d', 'lasso2d', 'select2d'],
    'responsive': True
}

LAYOUT = dict(
    font=dict(size=12),
    plot_bgcolor='rgba(0,0,0,0)',
    paper_bgcolor='rgba(0,0,0,0)',
)


def _placeholder(message: str) -> str:
    return f"<div class='chart-placeholder'>{html.escape(message)}</div>"


def create_tuning_chart(result: TuningResult, metric: str = 'rmse') -> str:
    """Mean resampled metric against the first hyperparameter.

    One line per combination of the remaining hyperparameters; error bars
    are one standard error.
    """
    summary = result.collect_metrics()
    summary = summary.loc[(summary['metric'] == metric) & summary['mean'].notna()]
    if summary.empty:
        return _placeholder(f"No {metric} results for {result.family}")

    family = get_family(result.family)
    x_param = family.param_names[0]
    group_params = family.param_names[1:]

    fig = go.Figure()
    groups = summary.groupby(group_params, sort=True) if group_params else [((), summary)]
    for i, (key, frame) in enumerate(groups):
        key = key if isinstance(key, tuple) else (key,)
        frame = frame.sort_values(x_param)
        name = format_params(dict(zip(group_params, key))) or family.label
        fig.add_trace(go.Scatter(
            x=frame[x_param],
            y=frame['mean'],
            error_y=dict(type='data', array=frame['std_err'].fillna(0), visible=True),
            mode='lines+markers',
            name=name,
            marker=dict(color=COLORS[i % len(COLORS)]),
        ))

    fig.update_layout(
        title=f'{family.label} - {metric} across the grid',
        xaxis_title=x_param,
        yaxis_title=f'{metric} (mean over resamples)',
        xaxis_type='log' if family.spec(x_param).scale == 'log10' else 'linear',
        height=400,
        margin=dict(l=60, r=50, t=50, b=50),
        **LAYOUT,
    )
    return fig.to_html(full_html=False, include_plotlyjs=False, config=CHART_CONFIG,
                       div_id=f"tuning_{result.family}")


def create_family_comparison_chart(summaries: Iterable[FamilySummary], metric: str = 'rmse') -> str:
    """Best resampled score of each model family."""
    # Families with no valid configuration have nothing to plot
    summaries = [s for s in summaries if s['best_config'] is not None]
    if not summaries:
        return _placeholder("No model family results available")

    labels = [get_family(s['family']).label for s in summaries]
    scores = [s['best_score'] for s in summaries]

    fig = go.Figure(data=[
        go.Bar(
            x=labels,
            y=scores,
            marker=dict(color=COLORS[:len(labels)]),
            text=[f'{score:.3f}' for score in scores],
            textposition='auto',
            hovertext=[format_params(s['best_params']) for s in summaries],
        )
    ])

    better = 'lower' if get_metric(metric).direction == 'minimize' else 'higher'
    fig.update_layout(
        title=f'Best {metric} per model family ({better} is better)',
        xaxis_title='Model family',
        yaxis_title=metric,
        height=400,
        margin=dict(l=50, r=50, t=50, b=100),
        xaxis=dict(tickangle=45),
        **LAYOUT,
    )
    return fig.to_html(full_html=False, include_plotlyjs=False, config=CHART_CONFIG,
                       div_id="familyComparisonChart")


def create_feature_importance_chart(importances: Dict[str, float], model_name: str,
                                    top_n: int = 10) -> str:
    """Horizontal bar chart of the largest variable importances."""
    if not importances:
        return _placeholder(f"No variable importance data for {model_name}")

    top = sorted(importances.items(), key=lambda x: x[1], reverse=True)[:top_n]
    # Largest at the top of a horizontal bar chart
    features = [item[0] for item in reversed(top)]
    values = [item[1] for item in reversed(top)]

    fig = go.Figure(data=[
        go.Bar(
            x=values,
            y=features,
            orientation='h',
            marker=dict(color='#1FB8CD'),
            text=[f'{v:.4f}' for v in values],
            textposition='auto',
        )
    ])

    fig.update_layout(
        title=f'Variable Importance - {model_name}',
        xaxis_title='Importance',
        yaxis_title='Features',
        height=400,
        margin=dict(l=120, r=50, t=50, b=50),
        **LAYOUT,
    )
    return fig.to_html(full_html=False, include_plotlyjs=False, config=CHART_CONFIG,
                       div_id="featureImportanceChart")


def _metrics_table(test_metrics: Dict[str, float]) -> str:
    rows = ''.join(
        f'<tr><td>{html.escape(name)}</td><td>{value:.4f}</td></tr>'
        for name, value in test_metrics.items()
    )
    return f'<table class="data-table"><thead><tr><th>Metric</th><th>Test</th></tr></thead><tbody>{rows}</tbody></table>'


def write_report(path: str, results: List[TuningResult], summaries: List[FamilySummary],
                 winner_label: str, test_metrics: Dict[str, float],
                 importances: Dict[str, float], metric: str = 'rmse') -> str:
    """Assemble all charts into one standalone HTML page."""
    sections = [
        f'<h1>Popularity model selection</h1><h2>Winner: {html.escape(winner_label)}</h2>',
        _metrics_table(test_metrics),
        create_family_comparison_chart(summaries, metric),
        create_feature_importance_chart(importances, winner_label),
    ]
    sections.extend(create_tuning_chart(result, metric) for result in results)

    page = (
        '<!DOCTYPE html><html><head><meta charset="utf-8">'
        '<title>Popularity model selection</title>'
        '<script src="https://cdn.plot.ly/plotly-2.35.2.min.js"></script>'
        '</head><body>' + '\n'.join(sections) + '</body></html>'
    )
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(page)
    return path
