# picrust2_tools/analysis/visualizations.py
"""
Plots for PICRUSt2 differential abundance results.

Every function returns a matplotlib Figure and leaves its inputs untouched.
Styling comes from a PlotStyle passed per call; matplotlib rcParams are never
modified.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from matplotlib.colors import LinearSegmentedColormap, ListedColormap
from matplotlib.patches import Patch
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler

from picrust2_tools.analysis.metadata import align_samples
from picrust2_tools.constants import DEFAULT_P_THRESHOLD, MAX_ERRORBAR_FEATURES, ORDER_POLICIES
from picrust2_tools.errors import InvalidInput

logger = logging.getLogger('picrust2_tools')


@dataclass(frozen=True)
class PlotStyle:
    """Per-call styling. Nothing here is written to matplotlib's global state."""
    colors: Optional[Sequence[str]] = None
    palette: str = "Set2"
    heatmap_colors: Tuple[str, ...] = ("#0571b0", "#92c5de", "white", "#f4a582", "#ca0020")
    increase_color: str = "#ca0020"
    decrease_color: str = "#0571b0"
    figsize: Optional[Tuple[float, float]] = None
    font_size: float = 10
    title: Optional[str] = None

    def group_colors(self, levels):
        """Map group levels to colours, cycling the palette when needed."""
        if self.colors:
            colors = list(self.colors)
            if len(colors) < len(levels):
                raise InvalidInput(f"{len(levels)} groups but only {len(colors)} colours given")
        else:
            colors = sns.color_palette(self.palette, len(levels))
        return dict(zip(levels, colors))


DEFAULT_STYLE = PlotStyle()


def _group_vector(abundance, group):
    """Accept a per-sample Series indexed by sample ID, or a sequence aligned with the columns."""
    if isinstance(group, pd.Series) and set(abundance.columns).issubset(set(group.index.astype(str))):
        groups = group.copy()
        groups.index = groups.index.astype(str)
        return groups.reindex(abundance.columns).astype(str)
    values = list(group)
    if len(values) != abundance.shape[1]:
        raise InvalidInput(f"Group vector has {len(values)} entries for {abundance.shape[1]} samples")
    return pd.Series(values, index=abundance.columns).astype(str)


def _apply_select(frame, select, column="feature"):
    if select is None:
        return frame
    wanted = set(str(s) for s in select)
    ignored = wanted - set(frame[column].astype(str))
    if ignored:
        logger.debug(f"Ignoring {len(ignored)} selected features that are not in the results")
    return frame[frame[column].astype(str).isin(wanted)]


def _select_rows(abundance, select):
    """Restrict an abundance table to the allow-listed feature IDs; unknown IDs are ignored."""
    if select is None:
        return abundance
    wanted = set(str(s) for s in select)
    index = abundance.index.astype(str)
    ignored = wanted - set(index)
    if ignored:
        logger.debug(f"Ignoring {len(ignored)} selected features that are not in the abundance table")
    keep = index.isin(wanted)
    if not keep.any():
        raise InvalidInput("None of the selected features are present in the abundance table")
    return abundance.loc[keep]


def _level_order(groups, group_order):
    levels = sorted(groups.unique())
    if group_order is None:
        return levels
    group_order = [str(g) for g in group_order]
    if sorted(group_order) != levels:
        raise InvalidInput(f"group_order {group_order} must list each group level once: {levels}")
    return group_order


def _feature_stats(abundance, groups, levels, daa_results_df=None):
    """Per-feature group means plus p_adjust and pathway_class from the results, for row ordering."""
    rel = abundance / abundance.sum(axis=0)
    means = pd.DataFrame({lvl: rel.loc[:, groups.index[groups == lvl]].mean(axis=1) for lvl in levels})
    features = abundance.index.astype(str)
    stats_df = pd.DataFrame({"feature": features, "label": features}, index=features)
    stats_df["max_group"] = means.idxmax(axis=1).values
    stats_df["max_mean"] = means.max(axis=1).values
    stats_df["p_adjust"] = np.nan
    if daa_results_df is not None:
        results = daa_results_df.assign(feature=daa_results_df["feature"].astype(str))
        stats_df["p_adjust"] = results.groupby("feature")["p_adjust"].min().reindex(features).values
        if "pathway_class" in results.columns:
            classes = results.dropna(subset=["pathway_class"]).groupby("feature")["pathway_class"].first()
            stats_df["pathway_class"] = classes.reindex(features).values
    return stats_df


def _order_features(stats_df, order):
    if order not in ORDER_POLICIES:
        raise InvalidInput(f"Unknown order '{order}'. Choose from {ORDER_POLICIES}")
    if order == "group":
        return stats_df.sort_values(["max_group", "max_mean"], ascending=[True, False], kind="mergesort")
    if order == "p_values":
        return stats_df.sort_values(["p_adjust", "feature"], kind="mergesort")
    if order == "name":
        return stats_df.sort_values("label", kind="mergesort")
    if "pathway_class" not in stats_df.columns or stats_df["pathway_class"].isna().all():
        raise InvalidInput("order='pathway_class' needs annotated results; run pathway_annotation first")
    return stats_df.sort_values(["pathway_class", "p_adjust"], na_position="last", kind="mergesort")


def pathway_errorbar(
    abundance: pd.DataFrame,
    daa_results_df: pd.DataFrame,
    group,
    p_values_threshold: float = DEFAULT_P_THRESHOLD,
    order: str = "group",
    select: Optional[Sequence[str]] = None,
    x_lab: Optional[str] = None,
    p_value_bar: bool = True,
    style: Optional[PlotStyle] = None,
):
    """
    Error-bar plot of significant features between two groups.

    Panels: mean relative abundance +/- SD per group, log2 fold change of the
    group means, adjusted p-values.

    Args:
        abundance: Features x samples table used for the analysis
        daa_results_df: Results of a single method (one method label)
        group: Group of each sample (Series indexed by sample, or sequence
            aligned with the abundance columns)
        p_values_threshold: p_adjust cutoff for features to draw
        order: One of group, p_values, name, pathway_class
        select: Optional allow-list of feature IDs
        x_lab: Results column used as feature label (default: feature)
        p_value_bar: Draw the adjusted p-value panel
        style: PlotStyle

    Returns:
        matplotlib Figure
    """
    style = style or DEFAULT_STYLE
    methods = daa_results_df["method"].unique() if "method" in daa_results_df.columns else []
    if len(methods) != 1:
        raise InvalidInput(f"pathway_errorbar expects results of exactly one method, got {list(methods)}; "
                           "filter daa_results_df by method first")
    label_col = x_lab or "feature"
    if label_col not in daa_results_df.columns:
        raise InvalidInput(f"Label column '{label_col}' not in results")
    duplicated = daa_results_df["feature"].astype(str).duplicated()
    if duplicated.any():
        dups = daa_results_df.loc[duplicated, "feature"].astype(str).unique().tolist()
        raise InvalidInput(f"Features appear more than once in the results: {dups[:10]}; "
                           "filter daa_results_df to one contrast (group1, group2) first")

    rel = abundance.copy()
    rel.index = rel.index.astype(str)
    rel.columns = rel.columns.astype(str)
    rel = rel / rel.sum(axis=0)
    groups = _group_vector(rel, group)
    levels = sorted(groups.unique())
    if len(levels) != 2:
        raise InvalidInput(f"pathway_errorbar compares two groups, got {len(levels)}: {levels}")

    first = daa_results_df.iloc[0]
    if {str(first.get("group1")), str(first.get("group2"))} == set(levels):
        levels = [str(first["group1"]), str(first["group2"])]

    results = daa_results_df[daa_results_df["p_adjust"] < p_values_threshold]
    results = _apply_select(results, select)
    results = results[results["feature"].astype(str).isin(rel.index)]
    if results.empty:
        raise InvalidInput(f"No features with p_adjust < {p_values_threshold} to plot")
    if len(results) > MAX_ERRORBAR_FEATURES:
        logger.warning(f"{len(results)} significant features; the plot may be crowded, "
                       f"consider select= or a lower threshold")

    features = results["feature"].astype(str).tolist()
    means = pd.DataFrame({lvl: rel.loc[features, groups.index[groups == lvl]].mean(axis=1) for lvl in levels})
    sds = pd.DataFrame({lvl: rel.loc[features, groups.index[groups == lvl]].std(axis=1) for lvl in levels})

    stats_df = results.assign(feature=features, label=results[label_col].fillna(results["feature"]).astype(str))
    stats_df = stats_df.set_index("feature", drop=False)
    stats_df["max_group"] = means.idxmax(axis=1)
    stats_df["max_mean"] = means.max(axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        stats_df["log2fc"] = np.log2(means[levels[1]] / means[levels[0]])
    stats_df = _order_features(stats_df, order)
    ordered = stats_df["feature"].tolist()

    n = len(ordered)
    n_panels = 3 if p_value_bar else 2
    figsize = style.figsize or (12 if p_value_bar else 10, max(3, 0.4 * n + 1.5))
    fig, axes = plt.subplots(1, n_panels, figsize=figsize, sharey=True,
                             gridspec_kw={"width_ratios": [3, 2, 1][:n_panels]})
    colors = style.group_colors(levels)
    y = np.arange(n)
    height = 0.8 / len(levels)

    ax = axes[0]
    for i, lvl in enumerate(levels):
        offset = (i - (len(levels) - 1) / 2) * height
        ax.barh(y + offset, means.loc[ordered, lvl], height=height, xerr=sds.loc[ordered, lvl],
                color=colors[lvl], label=lvl, error_kw={"elinewidth": 0.8, "capsize": 2})
    ax.set_yticks(y)
    ax.set_yticklabels(stats_df["label"], fontsize=style.font_size)
    ax.invert_yaxis()
    ax.set_xlabel("Relative Abundance", fontsize=style.font_size)
    ax.legend(fontsize=style.font_size, frameon=False, loc="lower right")

    ax = axes[1]
    fc = stats_df["log2fc"].replace([np.inf, -np.inf], np.nan).fillna(0)
    ax.barh(y, fc, color=[style.increase_color if v > 0 else style.decrease_color for v in fc])
    ax.axvline(0, color="black", linewidth=0.8)
    ax.set_xlabel(f"log2 fold change ({levels[1]} / {levels[0]})", fontsize=style.font_size)

    if p_value_bar:
        ax = axes[2]
        p = stats_df["p_adjust"].astype(float)
        ax.barh(y, -np.log10(p.clip(lower=np.finfo(float).tiny)), color="grey")
        for yi, pv in zip(y, p):
            ax.text(0, yi, f" {pv:.1e}", va="center", fontsize=style.font_size * 0.8)
        ax.set_xlabel("-log10(p_adjust)", fontsize=style.font_size)

    fig.suptitle(style.title or str(methods[0]), fontsize=style.font_size + 2)
    fig.tight_layout()
    logger.info(f"Error-bar plot with {n} features ({methods[0]})")
    return fig


def row_zscore(abundance):
    """Row-wise z-score (sample SD); rows with zero variance become 0."""
    values = abundance.astype(float)
    sd = values.std(axis=1)
    z = values.sub(values.mean(axis=1), axis=0).div(sd.replace(0, np.nan), axis=0)
    return z.fillna(0.0)


def pathway_heatmap(
    abundance: pd.DataFrame,
    metadata: pd.DataFrame,
    group: str,
    sample_id_col: Optional[str] = None,
    style: Optional[PlotStyle] = None,
    daa_results_df: Optional[pd.DataFrame] = None,
    select: Optional[Sequence[str]] = None,
    order: str = "group",
    group_order: Optional[Sequence[str]] = None,
):
    """
    Heatmap of row z-scores with samples ordered by group.

    Args:
        abundance: Features x samples table (usually the significant features)
        metadata: Sample metadata
        group: Grouping column in metadata
        sample_id_col: Sample ID column (auto-detected if None)
        style: PlotStyle
        daa_results_df: Results used for the p_values and pathway_class orders
        select: Optional allow-list of feature IDs; unknown IDs are ignored
        order: Row order, one of group, p_values, name, pathway_class
        group_order: Order of the group levels along the sample axis

    Returns:
        matplotlib Figure
    """
    style = style or DEFAULT_STYLE
    aligned = align_samples(_select_rows(abundance, select), metadata, group, sample_id_col)
    groups = aligned.groups
    levels = _level_order(groups, group_order)
    sample_order = groups.index[np.argsort(groups.map({l: i for i, l in enumerate(levels)}).values, kind="stable")]

    stats_df = _feature_stats(aligned.abundance, groups, levels, daa_results_df)
    if order == "p_values" and stats_df["p_adjust"].isna().all():
        raise InvalidInput("order='p_values' needs daa_results_df covering the plotted features")
    rows = _order_features(stats_df, order)["feature"].tolist()

    features = aligned.abundance.copy()
    features.index = features.index.astype(str)
    z = row_zscore(features.loc[rows, sample_order])
    n_feat, n_samp = z.shape
    figsize = style.figsize or (max(6, 0.35 * n_samp + 3), max(3, 0.3 * n_feat + 1.5))
    fig, (ax_strip, ax_heat) = plt.subplots(2, 1, figsize=figsize, sharex=True,
                                            gridspec_kw={"height_ratios": [1, max(4, n_feat)]})

    colors = style.group_colors(levels)
    codes = groups[sample_order].map({l: i for i, l in enumerate(levels)}).values.reshape(1, -1)
    ax_strip.imshow(codes, aspect="auto", cmap=ListedColormap([colors[l] for l in levels]),
                    vmin=-0.5, vmax=len(levels) - 0.5, extent=(0, n_samp, 0, 1))
    ax_strip.set_yticks([])
    ax_strip.legend(handles=[Patch(color=colors[l], label=l) for l in levels], title=group,
                    bbox_to_anchor=(1.02, 1), loc="upper left", frameon=False, fontsize=style.font_size)

    cmap = LinearSegmentedColormap.from_list("zscore", list(style.heatmap_colors))
    sns.heatmap(z, ax=ax_heat, cmap=cmap, center=0, xticklabels=True, yticklabels=True,
                cbar_kws={"label": "Z Score", "shrink": 0.6})
    ax_heat.set_xlabel("")
    ax_heat.tick_params(labelsize=style.font_size)
    if style.title:
        fig.suptitle(style.title, fontsize=style.font_size + 2)
    logger.info(f"Heatmap of {n_feat} features over {n_samp} samples")
    return fig


def pathway_pca(
    abundance: pd.DataFrame,
    metadata: pd.DataFrame,
    group: str,
    sample_id_col: Optional[str] = None,
    style: Optional[PlotStyle] = None,
    select: Optional[Sequence[str]] = None,
    group_order: Optional[Sequence[str]] = None,
):
    """
    PCA of samples with group-coloured scatter and density marginals.

    select restricts the features entering the PCA; group_order sets the
    legend and colour order of the group levels.

    Returns:
        matplotlib Figure of a seaborn JointGrid
    """
    style = style or DEFAULT_STYLE
    aligned = align_samples(_select_rows(abundance, select), metadata, group, sample_id_col)
    data = aligned.abundance.T
    if min(data.shape) < 2:
        raise InvalidInput(f"PCA needs at least two samples and two features, got {data.shape}")

    scaled = StandardScaler().fit_transform(data.values.astype(float))
    pca = PCA(n_components=2)
    scores = pca.fit_transform(scaled)
    variance = pca.explained_variance_ratio_ * 100
    logger.info(f"PCA variance ratio: {pca.explained_variance_ratio_[:2]}")

    levels = _level_order(aligned.groups, group_order)
    pca_df = pd.DataFrame(scores, columns=["PC1", "PC2"], index=data.index)
    pca_df[group] = aligned.groups.values

    height = style.figsize[1] if style.figsize else 6
    grid = sns.JointGrid(data=pca_df, x="PC1", y="PC2", hue=group, hue_order=levels,
                         palette=style.group_colors(levels), height=height)
    grid.plot_joint(sns.scatterplot, s=50)
    grid.plot_marginals(sns.kdeplot, fill=True, common_norm=False, warn_singular=False)
    grid.set_axis_labels(f"PC1 ({variance[0]:.2f}%)", f"PC2 ({variance[1]:.2f}%)",
                         fontsize=style.font_size)
    if style.title:
        grid.figure.suptitle(style.title, fontsize=style.font_size + 2)
    return grid.figure
