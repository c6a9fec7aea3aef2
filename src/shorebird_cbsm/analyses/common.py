"""
Steps shared by the three analyses: loading with corrections, and the
fit -> evaluate -> tabulate -> plot sequence run once per analysis.
"""

import logging

from shorebird_cbsm.config import CORRECTIONS_FILE
from shorebird_cbsm.data.loaders import apply_corrections, load_corrections, read_survey_table
from shorebird_cbsm.models.evaluate import evaluate_fit
from shorebird_cbsm.plots.figures import (
    plot_campaign_effects, plot_caterpillar, plot_response_curves,
    plot_site_map, save_figure,
)

logger = logging.getLogger(__name__)


def configure_logging(level=logging.INFO):
    logging.basicConfig(
        level=level,
        format='%(asctime)s | %(levelname)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def load_table(config, dataset, filename):
    """Read one survey table and apply the reviewed corrections for it."""
    df = read_survey_table(config.data_path(filename), dataset)
    corrections = load_corrections(config.data_path(CORRECTIONS_FILE))
    return apply_corrections(df, corrections, dataset)


def _render(label, build, path):
    """Build and save one figure; failures are logged, never raised."""
    try:
        return save_figure(build(), path)
    except Exception:
        logger.exception(f"Figure '{label}' failed; continuing without it")
        return None


def run_effect_pipeline(model, df, config, name, effect='Campaign', sweep=None,
                        coords=None, response_label=None):
    """
    Fit one model and produce its report tables and figures.

    Args:
        model: Unfitted EffectGAM
        df: Cleaned, transformed dataset
        config: AnalysisConfig
        name: Prefix for output files
        effect: Factor whose marginal effect is reported
        sweep: Continuous covariate for response curves (optional)
        coords: (longitude, latitude) columns for the site map (optional)
        response_label: Axis label for the response

    Returns:
        Dictionary with model, metrics, effects, curves and figure paths
    """
    out_dir = config.output_dir
    out_dir.mkdir(parents=True, exist_ok=True)
    response_label = response_label or model.response

    logger.info("=" * 60)
    logger.info(f"{name}: fitting additive model")
    logger.info("=" * 60)
    model.fit(df)

    print(model.format_summary())
    metrics = evaluate_fit(model)
    print(f"\nMedian-split AUC: {metrics['auc']:.4f}")

    summary = model.summary()
    summary['parametric'].to_csv(out_dir / f'{name}_summary_parametric.csv', index=False)
    summary['smooth'].to_csv(out_dir / f'{name}_summary_smooth.csv', index=False)

    # Marginal (population-level) predictions: random intercepts held at zero
    random_labels = [t.label for t in model.terms_ if t.kind == 'random']

    grid = model.newdata_grid(by=effect)
    effects = model.predict_intervals(grid, exclude=random_labels)
    effects.insert(0, effect, grid[effect].astype(str).to_numpy())
    effects.to_csv(out_dir / f'{name}_{effect.lower()}_effects.csv', index=False)
    print(f"\n{effect} effects ({response_label}):")
    print(effects.to_string(index=False, float_format='%.4f'))

    curves = None
    if sweep is not None:
        curve_grid = model.newdata_grid(sweep=sweep, by=effect)
        curves = model.predict_intervals(curve_grid, exclude=random_labels)
        curves.insert(0, sweep, curve_grid[sweep].to_numpy())
        curves.insert(0, effect, curve_grid[effect].astype(str).to_numpy())
        curves.to_csv(out_dir / f'{name}_{sweep.lower()}_curves.csv', index=False)

    figures = {}
    if config.make_figures:
        figures['effects'] = _render(
            'campaign effects',
            lambda: plot_campaign_effects(effects, x=effect, ylabel=response_label,
                                          title=f'{name}: {effect} effect'),
            out_dir / f'{name}_fig_effects.png')

        if curves is not None:
            figures['curves'] = _render(
                'response curves',
                lambda: plot_response_curves(curves, x=sweep, by=effect,
                                             ylabel=response_label,
                                             title=f'{name}: {sweep}'),
                out_dir / f'{name}_fig_curves.png')

        if coords is not None:
            lon, lat = coords
            site_means = (model.data_.assign(fitted=model.fitted_values_)
                          .groupby([lon, lat, effect], observed=True)['fitted']
                          .mean().reset_index())
            figures['map'] = _render(
                'site map',
                lambda: plot_site_map(site_means, value='fitted', lon=lon, lat=lat,
                                      category=effect, value_label=response_label,
                                      title=f'{name}: fitted values by point'),
                out_dir / f'{name}_fig_map.png')

        for label in random_labels:
            stem = label[2:-1].lower()
            figures[f're_{stem}'] = _render(
                f'caterpillar {label}',
                lambda label=label: plot_caterpillar(model.random_effects(label),
                                                     title=f'{name}: {label}'),
                out_dir / f'{name}_fig_re_{stem}.png')

    if config.save_model:
        model.save(out_dir / f'{name}_model')

    return {
        'model': model,
        'metrics': metrics,
        'effects': effects,
        'curves': curves,
        'figures': figures,
    }
