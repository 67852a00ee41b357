#!/usr/bin/env python3
"""
PICRUSt2 Tools Visualization Module

Creates error-bar plots, heatmaps and PCA plots from PICRUSt2 abundance tables
and differential abundance results.
"""
import os
import sys
import logging
import argparse

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import pandas as pd

from picrust2_tools.analysis.metadata import align_samples, read_and_process_metadata
from picrust2_tools.analysis.visualizations import (
    PlotStyle,
    pathway_errorbar,
    pathway_heatmap,
    pathway_pca,
)
from picrust2_tools.constants import DEFAULT_P_THRESHOLD, ORDER_POLICIES
from picrust2_tools.errors import InvalidInput, Picrust2ToolsError
from picrust2_tools.logger import setup_logger
from picrust2_tools.utils.file_utils import check_file_exists, read_abundance_file, sanitize_filename
from picrust2_tools.utils.resource_utils import track_peak_memory

logger = logging.getLogger('picrust2_tools')

PLOT_TYPES = ["errorbar", "heatmap", "pca"]


def save_figure(fig, output_dir, name, fmt):
    path = os.path.join(output_dir, f"{sanitize_filename(name)}.{fmt}")
    fig.savefig(path, format=fmt, dpi=300, bbox_inches="tight")
    plt.close(fig)
    logger.info(f"Saved {path}")
    return path


def parse_args(args=None):
    """Parse command line arguments for the visualization module."""
    parser = argparse.ArgumentParser(
        description="Create visualizations from PICRUSt2 abundance tables and DAA results",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Plots:
  errorbar  Mean relative abundance, log2 fold change and adjusted p-values of
            significant features (needs --results-file)
  heatmap   Row z-scores of the significant features (or all features) by group
  pca       PCA of samples with density marginals

Common Usage:
  picrust2-tools viz --abundance-file kegg_pathway_abundance.tsv --metadata-file metadata.tsv \\
      --group-col Environment --results-file ALDEx2_annotated.csv --method "ALDEx2_Welch's t test"
"""
    )
    parser.add_argument("--abundance-file", required=True, help="Feature x sample abundance table (TSV)")
    parser.add_argument("--metadata-file", required=True, help="Sample metadata (CSV or TSV)")
    parser.add_argument("--group-col", required=True, help="Column name in metadata for grouping samples")
    parser.add_argument("--results-file", help="Differential abundance results CSV (annotated or not)")
    parser.add_argument("--method", help="Method label to plot when the results hold several")
    parser.add_argument("--plots", default="errorbar,heatmap,pca",
                        help=f"Comma-separated plot types ({','.join(PLOT_TYPES)})")
    parser.add_argument("--sample-id-col", help="Column name in metadata for sample IDs")
    parser.add_argument("--order", default="group", choices=ORDER_POLICIES,
                        help="Feature order in the error-bar plot and heatmap")
    parser.add_argument("--select", help="Comma-separated list of feature IDs to draw")
    parser.add_argument("--x-lab", help="Results column used as feature label (e.g. pathway_name)")
    parser.add_argument("--no-p-value-bar", action="store_true", help="Omit the adjusted p-value panel")
    parser.add_argument("--alpha", type=float, default=DEFAULT_P_THRESHOLD,
                        help="p_adjust cutoff for plotted features (default: 0.05)")
    parser.add_argument("--colors", help="Comma-separated group colours")
    parser.add_argument("--format", default="svg", choices=["svg", "png", "pdf"], help="Output format")
    parser.add_argument("--output-dir", default="./Visualizations", help="Directory for output files")
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        help="Logging level")
    return parser.parse_args(args)


@track_peak_memory
def main(args=None):
    """Main function to create visualizations."""
    args = parse_args(args)
    setup_logger(args.log_file, getattr(logging, args.log_level.upper()))

    plots = [p.strip().lower() for p in args.plots.split(",") if p.strip()]
    unknown = [p for p in plots if p not in PLOT_TYPES]
    if unknown:
        logger.error(f"Unknown plot types: {unknown}")
        return 1
    for file_path, desc in [(args.abundance_file, "Abundance"), (args.metadata_file, "Metadata")]:
        if not check_file_exists(file_path, desc):
            return 1
    if "errorbar" in plots and not args.results_file:
        logger.error("The errorbar plot needs --results-file")
        return 1

    style = PlotStyle(colors=args.colors.split(",") if args.colors else None)
    select = [s.strip() for s in args.select.split(",")] if args.select else None
    os.makedirs(args.output_dir, exist_ok=True)

    try:
        abundance = read_abundance_file(args.abundance_file)
        metadata = read_and_process_metadata(args.metadata_file)
        results = None
        if args.results_file:
            results = pd.read_csv(args.results_file)
            if args.method:
                results = results[results["method"] == args.method]
            elif results["method"].nunique() > 1:
                first = results["method"].iloc[0]
                logger.warning(f"Results hold several methods; plotting '{first}' (use --method)")
                results = results[results["method"] == first]
            if results.empty:
                raise InvalidInput(f"No results for method '{args.method}'")

        if "errorbar" in plots:
            aligned = align_samples(abundance, metadata, args.group_col, args.sample_id_col)
            fig = pathway_errorbar(aligned.abundance, results, aligned.groups,
                                   p_values_threshold=args.alpha, order=args.order, select=select,
                                   x_lab=args.x_lab, p_value_bar=not args.no_p_value_bar, style=style)
            save_figure(fig, args.output_dir, f"errorbar_{results['method'].iloc[0]}", args.format)

        heat_abundance = abundance
        if results is not None:
            significant = results.loc[results["p_adjust"] < args.alpha, "feature"].astype(str).unique()
            if len(significant):
                heat_abundance = abundance.loc[abundance.index.astype(str).isin(significant)]
        if "heatmap" in plots:
            # p_values and pathway_class orders need the results table
            heat_order = args.order if results is not None else "group"
            fig = pathway_heatmap(heat_abundance, metadata, args.group_col, args.sample_id_col, style=style,
                                  daa_results_df=results, select=select, order=heat_order)
            save_figure(fig, args.output_dir, "heatmap", args.format)
        if "pca" in plots:
            fig = pathway_pca(abundance, metadata, args.group_col, args.sample_id_col, style=style, select=select)
            save_figure(fig, args.output_dir, "pca", args.format)
    except Picrust2ToolsError as e:
        logger.error(f"Visualization failed: {e}")
        return 1

    logger.info(f"Visualizations saved to {args.output_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
