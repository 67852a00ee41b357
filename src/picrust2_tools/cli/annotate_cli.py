#!/usr/bin/env python3
"""
PICRUSt2 Tools Annotation Module

Adds pathway names, descriptions and classes to differential abundance
results, or descriptions to a PICRUSt2 abundance file.
"""
import os
import sys
import logging
import argparse

import pandas as pd

from picrust2_tools.analysis.annotation import KeggClient, pathway_annotation
from picrust2_tools.constants import DEFAULT_P_THRESHOLD, KEGG_TIMEOUT, PATHWAY_TYPES
from picrust2_tools.errors import InvalidInput, Picrust2ToolsError
from picrust2_tools.logger import setup_logger
from picrust2_tools.utils.file_utils import check_file_exists
from picrust2_tools.utils.resource_utils import track_peak_memory

logger = logging.getLogger('picrust2_tools')


def parse_args(args=None):
    """Parse command line arguments for the annotation module."""
    parser = argparse.ArgumentParser(
        description="Annotate PICRUSt2 differential abundance results or abundance files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Common Usage:
  # KEGG pathways from converted KO abundance (remote lookup for significant unknown IDs):
  picrust2-tools annotate --results-file DifferentialAbundance/ALDEx2_results.csv --ko-to-kegg \\
      --output ALDEx2_annotated.csv

  # EC descriptions for an abundance file:
  picrust2-tools annotate --abundance-file EC_metagenome_out/pred_metagenome_unstrat.tsv \\
      --pathway EC --output EC_annotated.tsv
"""
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--results-file", help="Differential abundance results CSV")
    source.add_argument("--abundance-file", help="PICRUSt2 abundance TSV")
    parser.add_argument("--output", required=True, help="Output file")
    parser.add_argument("--pathway", default="KO", choices=PATHWAY_TYPES,
                        help="Feature type (default: KO)")
    parser.add_argument("--ko-to-kegg", action="store_true",
                        help="Features are KEGG pathway IDs from the KO conversion")
    parser.add_argument("--alpha", type=float, default=DEFAULT_P_THRESHOLD,
                        help="Only significant unresolved pathways are fetched from KEGG (default: 0.05)")
    parser.add_argument("--timeout", type=float, default=KEGG_TIMEOUT,
                        help="KEGG request timeout in seconds")
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        help="Logging level")
    return parser.parse_args(args)


@track_peak_memory
def main(args=None):
    """Main function to annotate results or abundance files."""
    args = parse_args(args)
    setup_logger(args.log_file, getattr(logging, args.log_level.upper()))

    input_file = args.results_file or args.abundance_file
    if not check_file_exists(input_file, "Input"):
        return 1

    try:
        if args.abundance_file:
            result = pathway_annotation(file=args.abundance_file, pathway=args.pathway)
        else:
            results_df = pd.read_csv(args.results_file)
            if results_df.empty:
                raise InvalidInput(f"Results file is empty: {args.results_file}")
            result = pathway_annotation(results_df, pathway=args.pathway, ko_to_kegg=args.ko_to_kegg,
                                        p_values_threshold=args.alpha,
                                        client=KeggClient(timeout=args.timeout))
    except Picrust2ToolsError as e:
        logger.error(f"Annotation failed: {e}")
        return 1

    for message in result.warnings:
        logger.warning(message)

    out_dir = os.path.dirname(os.path.abspath(args.output))
    os.makedirs(out_dir, exist_ok=True)
    if args.abundance_file:
        result.table.to_csv(args.output, sep="\t", index_label="function")
    else:
        result.table.to_csv(args.output, index=False)
    logger.info(f"Saved annotated table ({len(result.table)} rows) to {args.output}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
