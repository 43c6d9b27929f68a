#!/usr/bin/env python3
"""
Faceted choropleth maps for ACS and CDC PLACES metrics.

Draws one panel per metric (the distinct values of ``variable_name`` in the
long-form data) on a fixed-column grid. All panels share one color scale
computed across every value, so a color means the same thing in each facet.
Units with no value are drawn in a hatched "no data" style.

Every panel gets a north arrow and a scale bar. Geographic data (lon/lat) is
projected to its estimated UTM zone first so the scale bar measures real
distances.
"""

import math
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import geopandas as gpd
import matplotlib as mpl
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from loguru import logger
from matplotlib.colors import LinearSegmentedColormap, Normalize
from matplotlib.figure import Figure
from matplotlib.patches import Patch
from mpl_toolkits.axes_grid1.anchored_artists import AnchoredSizeBar

from processing.errors import EmptyMetricSelection, NoDataToRender
from processing.join_reshape import to_long

# Axes-fraction anchor for the arrow tip
NORTH_ARROW_POSITIONS: Dict[str, Tuple[float, float]] = {
    "tl": (0.07, 0.95),
    "tr": (0.93, 0.95),
    "bl": (0.07, 0.2),
    "br": (0.93, 0.2),
}

SCALE_BAR_LOCATIONS: Dict[str, str] = {
    "tl": "upper left",
    "tr": "upper right",
    "bl": "lower left",
    "br": "lower right",
}

# meters per display unit
SCALE_UNITS: Dict[str, Tuple[float, str]] = {
    "metric": (1000.0, "km"),
    "imperial": (1609.344, "mi"),
}

MISSING_STYLE = {"edgecolor": "#999999", "hatch": "///", "linewidth": 0.25}


def shared_color_domain(values: Iterable) -> Tuple[float, float]:
    """
    Color scale bounds over the union of all non-missing values.

    Raises:
        NoDataToRender: every value is missing
    """
    series = pd.to_numeric(pd.Series(list(values), dtype=object), errors="coerce").astype(float)
    series = series[np.isfinite(series)]
    if series.empty:
        raise NoDataToRender("Every selected value is missing; nothing to map")

    vmin, vmax = float(series.min()), float(series.max())
    if vmin == vmax:
        pad = abs(vmin) * 0.05 or 0.5
        vmin, vmax = vmin - pad, vmax + pad
    return vmin, vmax


def nice_scale_length(span: float) -> float:
    """Largest 1/2/5 × 10^k length that fits in a quarter of ``span``."""
    if span <= 0 or not math.isfinite(span):
        return 0.0
    target = span / 4
    magnitude = 10 ** math.floor(math.log10(target))
    for step in (5, 2, 1):
        if step * magnitude <= target:
            return step * magnitude
    return magnitude


def project_for_display(gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """Reproject geographic (degree) data to its UTM zone; projected data is left alone."""
    if gdf.crs is None:
        logger.warning("  ⚠️ No CRS defined, the scale bar will use raw coordinate units")
        return gdf
    if gdf.crs.is_geographic and not gdf.empty:
        utm = gdf.estimate_utm_crs()
        logger.debug(f"  📐 Projecting from {gdf.crs} to {utm} for display")
        return gdf.to_crs(utm)
    return gdf


def add_north_arrow(ax: plt.Axes, location: str = "tr") -> None:
    """Draw a north arrow at one of tl, tr, bl, br."""
    if location not in NORTH_ARROW_POSITIONS:
        raise ValueError(f"north arrow location must be one of {list(NORTH_ARROW_POSITIONS)}")
    x, y = NORTH_ARROW_POSITIONS[location]
    ax.annotate(
        "N",
        xy=(x, y),
        xytext=(x, y - 0.1),
        xycoords="axes fraction",
        textcoords="axes fraction",
        ha="center",
        va="center",
        fontsize=10,
        fontweight="bold",
        color="#333333",
        arrowprops={"facecolor": "#333333", "edgecolor": "#333333", "width": 2, "headwidth": 8},
    )


def add_scale_bar(
    ax: plt.Axes,
    crs=None,
    units: str = "imperial",
    location: str = "bl",
) -> Optional[float]:
    """
    Draw a scale bar sized to roughly a quarter of the panel width.

    Returns:
        Bar length in display units (km or mi), or None when no bar fits
    """
    if units not in SCALE_UNITS:
        raise ValueError(f"scale units must be one of {list(SCALE_UNITS)}")
    if location not in SCALE_BAR_LOCATIONS:
        raise ValueError(f"scale bar location must be one of {list(SCALE_BAR_LOCATIONS)}")

    meters_per_unit, label = SCALE_UNITS[units]
    meters_per_map_unit = 1.0
    if crs is not None and crs.axis_info:
        meters_per_map_unit = crs.axis_info[0].unit_conversion_factor or 1.0

    x0, x1 = ax.get_xlim()
    y0, y1 = ax.get_ylim()
    span = (x1 - x0) * meters_per_map_unit / meters_per_unit
    length = nice_scale_length(span)
    if length <= 0:
        return None

    bar = AnchoredSizeBar(
        ax.transData,
        length * meters_per_unit / meters_per_map_unit,
        f"{length:g} {label}",
        loc=SCALE_BAR_LOCATIONS[location],
        pad=0.4,
        borderpad=0.6,
        sep=4,
        frameon=False,
        color="#333333",
        size_vertical=(y1 - y0) * 0.006,
    )
    ax.add_artist(bar)
    return length


def render_choropleth(
    data: gpd.GeoDataFrame,
    column: str = "value",
    facet: Optional[str] = "variable_name",
    ncol: int = 2,
    low_color: str = "#fff7ec",
    high_color: str = "#b30000",
    missing_color: str = "#f0f0f0",
    title: str = "",
    legend_label: str = "",
    panel_titles: Optional[Dict[str, str]] = None,
    north_arrow: str = "tr",
    scale_units: str = "imperial",
    scale_bar_location: str = "bl",
    panel_size: float = 5.0,
    dpi: int = 150,
    fname: Optional[Union[str, Path]] = None,
) -> Figure:
    """
    Render a choropleth, faceted by ``facet`` when given.

    Args:
        data: Long-form GeoDataFrame (one row per unit and metric), or a
              wide GeoDataFrame with ``facet=None`` for a single metric
        column: Value column to color by
        facet: Column whose distinct values become panels; None for one panel
        ncol: Panels per grid row
        low_color: Color of the scale minimum
        high_color: Color of the scale maximum
        missing_color: Fill for units without a value
        title: Figure title
        legend_label: Colorbar label
        panel_titles: Optional display names per facet value
        north_arrow: Arrow placement: tl, tr, bl or br
        scale_units: "metric" (km) or "imperial" (mi)
        scale_bar_location: Scale bar placement: tl, tr, bl or br
        panel_size: Panel edge length in inches
        dpi: Figure resolution
        fname: Save the figure here when given

    Returns:
        The matplotlib Figure

    Raises:
        EmptyMetricSelection: no panel to draw
        NoDataToRender: every value is missing
    """
    if not isinstance(data, gpd.GeoDataFrame):
        raise TypeError("render_choropleth needs a GeoDataFrame with unit geometries")
    if column not in data.columns:
        raise ValueError(f"Value column '{column}' not found in data")
    if ncol < 1:
        raise ValueError("ncol must be at least 1")

    if facet is not None:
        if facet not in data.columns:
            raise ValueError(f"Facet column '{facet}' not found in data")
        panels: List[Optional[str]] = list(pd.unique(data[facet].dropna()))
    else:
        panels = [None] if len(data) else []

    if not panels:
        raise EmptyMetricSelection("No metric selected for rendering")

    vmin, vmax = shared_color_domain(data[column])
    logger.info(f"🎨 Rendering {len(panels)} panel(s), shared scale {vmin:.3g} to {vmax:.3g}")

    plot_gdf = project_for_display(data[data.geometry.notna() & ~data.geometry.is_empty])
    if plot_gdf.empty:
        raise NoDataToRender("No unit has a geometry to draw")
    cmap = LinearSegmentedColormap.from_list("choropleth", [low_color, high_color], N=256)
    panel_titles = panel_titles or {}

    n_cols = min(ncol, len(panels))
    n_rows = math.ceil(len(panels) / n_cols)
    fig, axes = plt.subplots(
        n_rows,
        n_cols,
        figsize=(panel_size * n_cols, panel_size * n_rows),
        dpi=dpi,
        squeeze=False,
    )

    bounds = plot_gdf.total_bounds
    x_margin = (bounds[2] - bounds[0]) * 0.01
    y_margin = (bounds[3] - bounds[1]) * 0.01

    any_missing = False
    used_axes = []
    for ax, panel in zip(axes.flat, panels):
        subset = plot_gdf if panel is None else plot_gdf[plot_gdf[facet] == panel]
        values = pd.to_numeric(subset[column], errors="coerce")
        present = subset[values.notna()]
        absent = subset[values.isna()]

        if not present.empty:
            present.plot(
                column=column,
                cmap=cmap,
                vmin=vmin,
                vmax=vmax,
                linewidth=0.25,
                edgecolor="#444444",
                ax=ax,
                legend=False,
            )
        if not absent.empty:
            any_missing = True
            absent.plot(ax=ax, color=missing_color, **MISSING_STYLE)

        # Identical extent on every panel so facets line up
        ax.set_xlim(bounds[0] - x_margin, bounds[2] + x_margin)
        ax.set_ylim(bounds[1] - y_margin, bounds[3] + y_margin)
        ax.set_aspect("equal")
        ax.set_axis_off()

        if panel is not None:
            ax.set_title(panel_titles.get(panel, str(panel)), fontsize=12, color="#333333")

        add_north_arrow(ax, north_arrow)
        add_scale_bar(ax, plot_gdf.crs, scale_units, scale_bar_location)
        used_axes.append(ax)

    for ax in axes.flat[len(panels):]:
        ax.remove()

    sm = mpl.cm.ScalarMappable(norm=Normalize(vmin=vmin, vmax=vmax), cmap=cmap)
    cbar = fig.colorbar(sm, ax=used_axes, shrink=0.7, pad=0.02)
    cbar.ax.tick_params(labelsize=10, colors="#333333")
    cbar.outline.set_edgecolor("#666666")  # type: ignore
    cbar.outline.set_linewidth(0.5)  # type: ignore
    if legend_label:
        cbar.set_label(legend_label, rotation=90, labelpad=12, fontsize=11, color="#333333")

    if any_missing:
        fig.legend(
            handles=[Patch(facecolor=missing_color, label="No data", **MISSING_STYLE)],
            loc="lower left",
            frameon=False,
            fontsize=9,
        )

    if title:
        fig.suptitle(title, fontsize=16, fontweight="bold", x=0.02, ha="left")

    if fname:
        save_figure(fig, fname, dpi)

    return fig


def render_metric_maps(
    wide: gpd.GeoDataFrame,
    metrics: Sequence[str],
    **kwargs,
) -> Figure:
    """
    Reshape the selected metric columns to long form and render one panel per metric.

    Raises:
        EmptyMetricSelection: ``metrics`` is empty
    """
    if not metrics:
        raise EmptyMetricSelection("No metric selected for rendering")
    long_gdf = to_long(wide, metrics)
    return render_choropleth(long_gdf, column="value", facet="variable_name", **kwargs)


def save_figure(fig: Figure, fname: Union[str, Path], dpi: int = 150) -> Path:
    """Save a figure with tight white margins."""
    path = Path(fname)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(
        path,
        bbox_inches="tight",
        dpi=dpi,
        facecolor="white",
        edgecolor="none",
        pad_inches=0.05,
    )
    logger.success(f"  ✅ Map saved: {path}")
    return path
