# picrust2_tools/utils/file_utils.py
import os
import re
import logging
import traceback

import pandas as pd

from picrust2_tools.errors import InvalidInput

logger = logging.getLogger('picrust2_tools')


def check_file_exists(filepath, description):
    """Check if a file exists and is readable."""
    if not os.path.isfile(filepath):
        logger.error(f"{description} file does not exist: {filepath}")
        return False
    if not os.access(filepath, os.R_OK):
        logger.error(f"{description} file exists but is not readable: {filepath}")
        return False
    return True


def sanitize_filename(filename):
    """Replace invalid filename characters with underscores."""
    return re.sub(r'[<>:"/\\|?*\s]', '_', filename)


def read_abundance_file(file_path):
    """
    Read a PICRUSt2 abundance table.

    The first column holds feature IDs (PICRUSt2 writes "function" for KO/EC
    tables and "pathway" for MetaCyc tables); every other column is a sample.
    Gzipped files are handled by pandas.

    Args:
        file_path: Path to the tab-separated abundance file

    Returns:
        DataFrame with feature IDs as index and samples as columns
    """
    if not check_file_exists(file_path, "Abundance"):
        raise InvalidInput(f"Abundance file not found or unreadable: {file_path}")
    try:
        df = pd.read_csv(file_path, sep="\t", index_col=0)
    except Exception as e:
        logger.error(f"Error reading abundance file: {str(e)}")
        logger.error(traceback.format_exc())
        raise InvalidInput(f"Could not parse abundance file {file_path}: {e}") from e

    df.index = df.index.astype(str)
    df.columns = [str(c) for c in df.columns]
    logger.info(f"Loaded abundance data with {df.shape[0]} features and {df.shape[1]} samples")
    return validate_abundance(df)


def validate_abundance(abundance):
    """
    Check the invariants of an abundance table and return a numeric copy.

    Raises:
        InvalidInput: empty table, duplicated feature IDs, non-numeric or negative cells
    """
    if abundance is None or abundance.shape[0] == 0 or abundance.shape[1] == 0:
        raise InvalidInput("Abundance table has no features or no samples")
    if abundance.index.has_duplicates:
        dups = abundance.index[abundance.index.duplicated()].unique().tolist()
        raise InvalidInput(f"Duplicated feature IDs in abundance table: {dups[:10]}")
    if abundance.columns.has_duplicates:
        raise InvalidInput("Duplicated sample IDs in abundance table columns")
    try:
        numeric = abundance.apply(pd.to_numeric)
    except (TypeError, ValueError) as e:
        raise InvalidInput(f"Abundance table contains non-numeric values: {e}") from e
    if numeric.isna().any().any():
        raise InvalidInput("Abundance table contains missing values")
    if (numeric < 0).any().any():
        raise InvalidInput("Abundance table contains negative values")
    return numeric


def read_metadata_file(file_path):
    """
    Read a sample metadata table (CSV, or TSV for .tsv/.txt files).

    Returns:
        DataFrame with one row per sample
    """
    if not check_file_exists(file_path, "Metadata"):
        raise InvalidInput(f"Metadata file not found or unreadable: {file_path}")
    sep = "\t" if file_path.lower().endswith((".tsv", ".txt", ".tsv.gz")) else ","
    try:
        df = pd.read_csv(file_path, sep=sep, dtype=str)
    except Exception as e:
        logger.error(f"Error reading metadata file: {str(e)}")
        logger.error(traceback.format_exc())
        raise InvalidInput(f"Could not parse metadata file {file_path}: {e}") from e
    logger.info(f"Loaded metadata with {df.shape[0]} samples and {df.shape[1]} columns")
    return df
