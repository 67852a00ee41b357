#!/usr/bin/env python3
"""
PICRUSt2 Tools Differential Abundance Module

Runs one or more differential abundance methods on a PICRUSt2 abundance table
and writes one result table per method, plus a comparison of the significant
features when several methods are run.
"""
import os
import sys
import time
import logging
import argparse

from picrust2_tools.analysis.differential_abundance import pathway_daa
from picrust2_tools.analysis.metadata import read_and_process_metadata
from picrust2_tools.analysis.results import compare_daa_results
from picrust2_tools.constants import DAA_METHODS, DEFAULT_P_THRESHOLD, P_ADJUST_METHODS
from picrust2_tools.errors import MethodFailure, Picrust2ToolsError
from picrust2_tools.logger import setup_logger
from picrust2_tools.utils.file_utils import check_file_exists, read_abundance_file, sanitize_filename
from picrust2_tools.utils.resource_utils import track_peak_memory

logger = logging.getLogger('picrust2_tools')


def run_differential_abundance_analysis(
    abundance,
    metadata,
    output_dir,
    group_col,
    methods,
    reference=None,
    sample_id_col=None,
    select=None,
    p_adjust_method="BH",
    alpha=DEFAULT_P_THRESHOLD,
):
    """
    Run several methods and save their results.

    A method that fails is logged and skipped; invalid input stops the run.

    Args:
        abundance: Features x samples table
        metadata: Sample metadata
        output_dir: Directory for the result CSVs
        group_col: Grouping column in metadata
        methods: Method tags to run
        reference: Reference group level
        sample_id_col: Sample ID column in metadata
        select: Optional allow-list of feature IDs
        p_adjust_method: Multiple-testing adjustment
        alpha: Significance threshold used for the method comparison

    Returns:
        Dict of method tag -> result DataFrame for the methods that ran
    """
    os.makedirs(output_dir, exist_ok=True)
    results = {}
    for method in methods:
        logger.info(f"Running {method}...")
        try:
            res = pathway_daa(abundance, metadata, group_col, daa_method=method, select=select,
                              p_adjust_method=p_adjust_method, reference=reference,
                              sample_id_col=sample_id_col)
        except MethodFailure as e:
            logger.error(f"{method} failed, continuing with the remaining methods: {e}")
            continue
        out_file = os.path.join(output_dir, f"{sanitize_filename(method)}_results.csv")
        res.to_csv(out_file, index=False)
        logger.info(f"Saved {method} results ({len(res)} rows) to {out_file}")
        results[method] = res

    if len(results) > 1:
        comparison = compare_daa_results(list(results.values()), list(results), p_values_threshold=alpha)
        summary_file = os.path.join(output_dir, "daa_method_comparison.csv")
        comparison.summary.to_csv(summary_file, index=False)
        logger.info(f"Saved method comparison to {summary_file}")
    return results


def parse_args(args=None):
    """Parse command line arguments for the Differential Abundance module."""
    parser = argparse.ArgumentParser(
        description="Run differential abundance analysis on PICRUSt2 output",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Methods:
  {', '.join(DAA_METHODS)}

Output Files:
  [method]_results.csv: feature, method, group1, group2, effect_size, p_values, p_adjust
  daa_method_comparison.csv: significant features per method (when several methods run)

Common Usage:
  picrust2-tools daa --abundance-file kegg_pathway_abundance.tsv --metadata-file metadata.tsv \\
      --group-col Environment --methods ALDEx2,DESeq2
"""
    )
    parser.add_argument("--abundance-file", required=True,
                        help="Feature x sample abundance table (TSV)")
    parser.add_argument("--metadata-file", required=True,
                        help="Sample metadata (CSV, or TSV for .tsv/.txt)")
    parser.add_argument("--group-col", required=True,
                        help="Column name in metadata for grouping samples")
    parser.add_argument("--methods", default="ALDEx2",
                        help="Comma-separated list of methods (default: ALDEx2)")
    parser.add_argument("--reference",
                        help="Reference group level (required for >2 groups with contrast methods)")
    parser.add_argument("--sample-id-col",
                        help="Column name in metadata for sample IDs (autodetected if not specified)")
    parser.add_argument("--select",
                        help="Comma-separated list of feature IDs to test")
    parser.add_argument("--p-adjust-method", default="BH", choices=list(P_ADJUST_METHODS),
                        help="Multiple-testing adjustment (default: BH)")
    parser.add_argument("--alpha", type=float, default=DEFAULT_P_THRESHOLD,
                        help="Significance threshold for the method comparison (default: 0.05)")
    parser.add_argument("--output-dir", default="./DifferentialAbundance",
                        help="Directory for output files")
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        help="Logging level")
    return parser.parse_args(args)


@track_peak_memory
def main(args=None):
    """Main function to run differential abundance analysis."""
    args = parse_args(args)
    setup_logger(args.log_file, getattr(logging, args.log_level.upper()))
    logger.info("Starting PICRUSt2 Tools Differential Abundance Module")
    start_time = time.time()

    for file_path, desc in [(args.abundance_file, "Abundance"), (args.metadata_file, "Metadata")]:
        if not check_file_exists(file_path, desc):
            return 1

    methods = [m.strip() for m in args.methods.split(",") if m.strip()]
    select = [s.strip() for s in args.select.split(",")] if args.select else None

    try:
        abundance = read_abundance_file(args.abundance_file)
        metadata = read_and_process_metadata(args.metadata_file)
        results = run_differential_abundance_analysis(
            abundance, metadata, args.output_dir, args.group_col, methods,
            reference=args.reference, sample_id_col=args.sample_id_col, select=select,
            p_adjust_method=args.p_adjust_method, alpha=args.alpha,
        )
    except Picrust2ToolsError as e:
        logger.error(f"Differential abundance analysis failed: {e}")
        return 1

    if not results:
        logger.error("No differential abundance method completed")
        return 1

    minutes, seconds = divmod(time.time() - start_time, 60)
    logger.info(f"Total processing time: {int(minutes)}m {int(seconds)}s")
    logger.info("Next step: picrust2-tools annotate --results-file "
                f"{os.path.join(args.output_dir, sanitize_filename(methods[0]) + '_results.csv')}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
