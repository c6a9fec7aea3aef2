"""
Report figures built from prediction tables.

Every function takes a DataFrame produced by EffectGAM.predict_intervals /
random_effects (or the cleaned dataset) and returns a matplotlib Figure.
No function touches a model directly.
"""

import logging
from pathlib import Path

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np

logger = logging.getLogger(__name__)

# Plot palette
C = dict(
    BG='#ffffff', PANEL='#fbfbf8', TEXT='#222222', GRID='#d9d9d9',
    SAND='#d8b365', SEA='#2c7fb8', TEAL='#41b6c4', RED='#d7301f',
    GREY='#636363',
)
GROUP_COLORS = [C['SEA'], C['RED'], C['TEAL'], C['SAND'], C['GREY']]


def style_ax(ax, title='', xlabel='', ylabel=''):
    """Apply report styling to a matplotlib axes."""
    ax.set_facecolor(C['PANEL'])
    ax.set_title(title, color=C['TEXT'], fontsize=11, fontweight='bold', pad=10)
    ax.set_xlabel(xlabel, color=C['TEXT'], fontsize=9)
    ax.set_ylabel(ylabel, color=C['TEXT'], fontsize=9)
    ax.tick_params(colors=C['TEXT'], labelsize=8)
    for spine in ax.spines.values():
        spine.set_color(C['GRID'])
    ax.grid(True, alpha=0.4, color=C['GRID'])


def _new_axes(ax, figsize):
    if ax is not None:
        return ax.figure, ax
    fig, ax = plt.subplots(figsize=figsize, facecolor=C['BG'])
    return fig, ax


def _require(df, columns):
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise KeyError(f"Prediction table missing columns {missing}")


def plot_campaign_effects(pred, x='Campaign', ax=None, title='', ylabel='Predicted response'):
    """
    Point estimate per level with nested 80 % (thick) and 95 % (thin)
    intervals.
    """
    _require(pred, [x, 'fit', 'lower_80', 'upper_80', 'lower_95', 'upper_95'])
    fig, ax = _new_axes(ax, (6, 4.5))

    pos = np.arange(len(pred))
    ax.vlines(pos, pred['lower_95'], pred['upper_95'], color=C['SEA'], lw=1.5,
              label='95% CI')
    ax.vlines(pos, pred['lower_80'], pred['upper_80'], color=C['SEA'], lw=5,
              alpha=0.8, label='80% CI')
    ax.plot(pos, pred['fit'], 'o', color=C['RED'], ms=8, zorder=3, label='Estimate')

    ax.set_xticks(pos)
    ax.set_xticklabels([str(v) for v in pred[x]])
    ax.set_xlim(-0.6, len(pred) - 0.4)
    style_ax(ax, title=title, xlabel=x, ylabel=ylabel)
    ax.legend(fontsize=8, loc='best')
    return fig


def plot_response_curves(pred, x, by=None, ax=None, title='', xlabel=None,
                         ylabel='Predicted response'):
    """Fitted curve over a covariate sweep with 95 % and 80 % ribbons."""
    _require(pred, [x, 'fit', 'lower_80', 'upper_80', 'lower_95', 'upper_95'])
    fig, ax = _new_axes(ax, (7, 4.5))

    groups = [(None, pred)] if by is None else list(pred.groupby(by, observed=True, sort=False))
    for i, (level, sub) in enumerate(groups):
        sub = sub.sort_values(x)
        col = GROUP_COLORS[i % len(GROUP_COLORS)]
        ax.fill_between(sub[x], sub['lower_95'], sub['upper_95'], color=col, alpha=0.15)
        ax.fill_between(sub[x], sub['lower_80'], sub['upper_80'], color=col, alpha=0.3)
        ax.plot(sub[x], sub['fit'], '-', color=col, lw=2,
                label=str(level) if level is not None else 'Fit')

    style_ax(ax, title=title, xlabel=xlabel or x, ylabel=ylabel)
    ax.legend(fontsize=8, loc='best', title=by)
    return fig


def plot_site_map(df, value, lon='Longitude', lat='Latitude', category='Campaign',
                  ax=None, title='', value_label=None):
    """
    Survey points on longitude/latitude coloured by ``value``, with an inset
    bar chart of the mean value per ``category``.
    """
    _require(df, [lon, lat, value, category])
    fig, ax = _new_axes(ax, (6.5, 7))

    sc = ax.scatter(df[lon], df[lat], c=df[value], cmap='viridis', s=28,
                    edgecolors='white', linewidths=0.4)
    cb = fig.colorbar(sc, ax=ax, shrink=0.6, pad=0.02)
    cb.set_label(value_label or value, fontsize=8)
    ax.set_aspect('equal', adjustable='datalim')
    style_ax(ax, title=title, xlabel='Longitude', ylabel='Latitude')

    means = df.groupby(category, observed=True)[value].mean()
    inset = ax.inset_axes([0.58, 0.04, 0.38, 0.26])
    inset.bar(range(len(means)), means.values,
              color=[GROUP_COLORS[i % len(GROUP_COLORS)] for i in range(len(means))])
    inset.set_xticks(range(len(means)))
    inset.set_xticklabels([str(v) for v in means.index], fontsize=6, rotation=20)
    inset.tick_params(labelsize=6)
    inset.set_title(f"Mean by {category}", fontsize=7)
    return fig


def plot_caterpillar(re_table, ax=None, title='', xlabel='Random effect (link scale)'):
    """Per-level random-intercept estimates with 95 % intervals."""
    _require(re_table, ['level', 'estimate', 'lower_95', 'upper_95'])
    tbl = re_table.sort_values('estimate').reset_index(drop=True)
    fig, ax = _new_axes(ax, (6, max(3.0, 0.25 * len(tbl) + 1.5)))

    pos = np.arange(len(tbl))
    ax.hlines(pos, tbl['lower_95'], tbl['upper_95'], color=C['GREY'], lw=1.2)
    ax.plot(tbl['estimate'], pos, 'o', color=C['SEA'], ms=5)
    ax.axvline(0, color=C['RED'], ls='--', lw=1, alpha=0.7)
    ax.set_yticks(pos)
    ax.set_yticklabels([str(v) for v in tbl['level']], fontsize=7)
    style_ax(ax, title=title, xlabel=xlabel)
    return fig


def save_figure(fig, path, dpi=180):
    """Write a figure to disk and release it."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(path, dpi=dpi, facecolor=C['BG'], bbox_inches='tight')
    plt.close(fig)
    logger.info(f"Figure saved: {path}")
    return path
