#!/usr/bin/env python3
"""
PICRUSt2 Tools KO to KEGG Conversion Module

Sums PICRUSt2 KO abundance (pred_metagenome_unstrat.tsv) into KEGG pathway
abundance using the bundled KO-to-pathway mapping, a user-supplied mapping
file, or KEGG REST lookups for KOs the mapping does not cover.
"""
import logging
import os
import sys
import argparse

from picrust2_tools.analysis.annotation import KeggClient
from picrust2_tools.errors import Picrust2ToolsError
from picrust2_tools.logger import setup_logger
from picrust2_tools.picrust2.ko_conversion import ko2kegg_abundance
from picrust2_tools.picrust2.reference_data import read_mapping_file
from picrust2_tools.utils.file_utils import check_file_exists
from picrust2_tools.utils.resource_utils import track_peak_memory

logger = logging.getLogger('picrust2_tools')


def parse_args(args=None):
    """Parse command line arguments for the conversion module."""
    parser = argparse.ArgumentParser(
        description="Convert PICRUSt2 KO abundance to KEGG pathway abundance",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Common Usage:
  picrust2-tools convert --input KO_metagenome_out/pred_metagenome_unstrat.tsv.gz \\
      --output kegg_pathway_abundance.tsv
"""
    )
    parser.add_argument("--input", required=True,
                        help="PICRUSt2 KO abundance table (TSV, optionally gzipped)")
    parser.add_argument("--output", required=True,
                        help="Output TSV for the KEGG pathway abundance table")
    parser.add_argument("--mapping-file",
                        help="KO-to-pathway mapping to use instead of the bundled table "
                             "(TSV with pathway and ko columns, or a KEGG link/pathway/ko dump)")
    parser.add_argument("--kegg-link", action="store_true",
                        help="Look up KOs missing from the mapping on the KEGG REST service")
    parser.add_argument("--unmapped-file",
                        help="Optional file listing input rows that did not map to a pathway")
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        help="Logging level")
    return parser.parse_args(args)


@track_peak_memory
def main(args=None):
    """Main function to convert KO abundance to KEGG pathways."""
    args = parse_args(args)
    setup_logger(args.log_file, getattr(logging, args.log_level.upper()))

    if not check_file_exists(args.input, "KO abundance"):
        return 1

    try:
        mapping = read_mapping_file(args.mapping_file) if args.mapping_file else None
        client = KeggClient() if args.kegg_link else None
        result = ko2kegg_abundance(file=args.input, mapping=mapping, client=client)
    except Picrust2ToolsError as e:
        logger.error(f"Conversion failed: {e}")
        return 1

    out_dir = os.path.dirname(os.path.abspath(args.output))
    os.makedirs(out_dir, exist_ok=True)
    result.abundance.to_csv(args.output, sep="\t", index_label="pathway")
    logger.info(f"Saved {result.abundance.shape[0]} pathways to {args.output}")

    if args.unmapped_file:
        with open(args.unmapped_file, "w") as handle:
            handle.write("\n".join(result.unmapped_features) + "\n")
        logger.info(f"Listed {result.n_unmapped} unmapped rows in {args.unmapped_file}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
