#!/usr/bin/env python3
"""
PICRUSt2 Tools Pipeline Module

Runs conversion (optional), differential abundance, annotation and error-bar
plotting in one command.
"""
import os
import sys
import logging
import argparse

import matplotlib
matplotlib.use("Agg")

from picrust2_tools.analysis.visualizations import PlotStyle
from picrust2_tools.cli.viz_cli import save_figure
from picrust2_tools.constants import (
    DAA_METHODS,
    DEFAULT_P_THRESHOLD,
    ORDER_POLICIES,
    P_ADJUST_METHODS,
    PATHWAY_TYPES,
)
from picrust2_tools.core.pipeline import run_pathway_pipeline
from picrust2_tools.errors import Picrust2ToolsError
from picrust2_tools.logger import setup_logger
from picrust2_tools.picrust2.reference_data import read_mapping_file
from picrust2_tools.utils.file_utils import check_file_exists, sanitize_filename
from picrust2_tools.utils.resource_utils import track_peak_memory

logger = logging.getLogger('picrust2_tools')


def parse_args(args=None):
    """Parse command line arguments for the pipeline module."""
    parser = argparse.ArgumentParser(
        description="Run the PICRUSt2 downstream pipeline: DAA, annotation and error-bar plots",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Common Usage:
  picrust2-tools pipeline --abundance-file KO_metagenome_out/pred_metagenome_unstrat.tsv.gz \\
      --metadata-file metadata.tsv --group-col Environment --ko-to-kegg --method LinDA
"""
    )
    parser.add_argument("--abundance-file", required=True, help="PICRUSt2 abundance table (TSV)")
    parser.add_argument("--metadata-file", required=True, help="Sample metadata (CSV or TSV)")
    parser.add_argument("--group-col", required=True, help="Column name in metadata for grouping samples")
    parser.add_argument("--pathway", default="KO", choices=PATHWAY_TYPES, help="Feature type (default: KO)")
    parser.add_argument("--ko-to-kegg", action="store_true", help="Convert KO abundance to KEGG pathways first")
    parser.add_argument("--mapping-file", help="KO-to-pathway mapping for --ko-to-kegg (default: bundled table)")
    parser.add_argument("--kegg-link", action="store_true",
                        help="Link KOs missing from the mapping through the KEGG REST service")
    parser.add_argument("--method", default="ALDEx2", help=f"DAA method ({', '.join(DAA_METHODS)})")
    parser.add_argument("--reference", help="Reference group level")
    parser.add_argument("--sample-id-col", help="Column name in metadata for sample IDs")
    parser.add_argument("--p-adjust-method", default="BH", choices=list(P_ADJUST_METHODS),
                        help="Multiple-testing adjustment (default: BH)")
    parser.add_argument("--alpha", type=float, default=DEFAULT_P_THRESHOLD,
                        help="p_adjust cutoff for lookups and plots (default: 0.05)")
    parser.add_argument("--order", default="group", choices=ORDER_POLICIES, help="Feature order in plots")
    parser.add_argument("--select", help="Comma-separated list of feature IDs")
    parser.add_argument("--format", default="svg", choices=["svg", "png", "pdf"], help="Plot format")
    parser.add_argument("--output-dir", default="./picrust2_pipeline", help="Directory for output files")
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        help="Logging level")
    return parser.parse_args(args)


@track_peak_memory
def main(args=None):
    """Main function to run the full downstream pipeline."""
    args = parse_args(args)
    setup_logger(args.log_file, getattr(logging, args.log_level.upper()))

    for file_path, desc in [(args.abundance_file, "Abundance"), (args.metadata_file, "Metadata")]:
        if not check_file_exists(file_path, desc):
            return 1

    select = [s.strip() for s in args.select.split(",")] if args.select else None
    try:
        mapping = read_mapping_file(args.mapping_file) if args.mapping_file else None
        result = run_pathway_pipeline(
            args.metadata_file, args.group_col, file=args.abundance_file, pathway=args.pathway,
            daa_method=args.method, ko_to_kegg=args.ko_to_kegg, mapping=mapping, kegg_link=args.kegg_link,
            p_adjust_method=args.p_adjust_method,
            p_values_threshold=args.alpha, order=args.order, select=select, reference=args.reference,
            sample_id_col=args.sample_id_col, style=PlotStyle(),
        )
    except Picrust2ToolsError as e:
        logger.error(f"Pipeline failed: {e}")
        return 1

    os.makedirs(args.output_dir, exist_ok=True)
    results_file = os.path.join(args.output_dir, f"{sanitize_filename(args.method)}_annotated_results.csv")
    result.daa_results.to_csv(results_file, index=False)
    logger.info(f"Saved annotated results to {results_file}")

    for entry in result.plots:
        if entry["plot"] is None:
            continue
        first = entry["results"].iloc[0]
        name = f"errorbar_{first['method']}_{first['group2']}_vs_{first['group1']}"
        save_figure(entry["plot"], args.output_dir, name, args.format)

    for message in result.warnings:
        logger.warning(message)
    return 0


if __name__ == "__main__":
    sys.exit(main())
