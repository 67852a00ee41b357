#!/usr/bin/env python3
"""
PICRUSt2 Tools - Main CLI Interface

Downstream analysis of PICRUSt2 predicted functional profiles.

Available Commands:
  convert   - Convert KO abundance to KEGG pathway abundance
  daa       - Run differential abundance analysis
  annotate  - Annotate DAA results or abundance files with pathway information
  viz       - Create error-bar, heatmap and PCA plots
  pipeline  - Run DAA, annotation and plotting in one step

Example Usage:
  picrust2-tools convert --input pred_metagenome_unstrat.tsv.gz --output kegg_pathways.tsv
  picrust2-tools daa --abundance-file kegg_pathways.tsv --metadata-file metadata.tsv --group-col Environment
  picrust2-tools annotate --results-file DifferentialAbundance/ALDEx2_results.csv --ko-to-kegg --output annotated.csv
  picrust2-tools viz --abundance-file kegg_pathways.tsv --metadata-file metadata.tsv --group-col Environment --plots pca
  picrust2-tools pipeline --abundance-file pred_metagenome_unstrat.tsv.gz --metadata-file metadata.tsv --group-col Environment --ko-to-kegg

For more information on any command, use:
  picrust2-tools [command] --help
"""
import sys
import argparse
import logging
import warnings

from picrust2_tools.cli import annotate_cli
from picrust2_tools.cli import convert_cli
from picrust2_tools.cli import daa_cli
from picrust2_tools.cli import pipeline_cli
from picrust2_tools.cli import viz_cli

logger = logging.getLogger('picrust2_tools')

COMMANDS = {
    "convert": convert_cli,
    "daa": daa_cli,
    "annotate": annotate_cli,
    "viz": viz_cli,
    "pipeline": pipeline_cli,
}


def main(argv=None):
    """
    Main entry point for PICRUSt2 Tools CLI.

    Parses the command name and dispatches the remaining arguments to the
    matching module.
    """
    warnings.filterwarnings("ignore", category=FutureWarning)
    warnings.filterwarnings("ignore", category=DeprecationWarning)

    argv = sys.argv[1:] if argv is None else list(argv)
    parser = argparse.ArgumentParser(
        prog="picrust2-tools",
        description="PICRUSt2 Tools - downstream analysis of PICRUSt2 output",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    if not argv or argv[0] in ("-h", "--help"):
        parser.print_help()
        return 0

    command = argv[0]
    module = COMMANDS.get(command)
    if module is None:
        logger.error(f"Unknown command: {command}")
        parser.print_help()
        return 1
    return module.main(argv[1:])


if __name__ == "__main__":
    sys.exit(main())
