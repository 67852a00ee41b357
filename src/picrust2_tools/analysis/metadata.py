# picrust2_tools/analysis/metadata.py
import logging
import traceback
from typing import NamedTuple, Optional

import pandas as pd

from picrust2_tools.constants import COMMON_SAMPLE_ID_COLS
from picrust2_tools.errors import InvalidInput
from picrust2_tools.utils.file_utils import read_metadata_file

logger = logging.getLogger('picrust2_tools')


class AlignedData(NamedTuple):
    abundance: pd.DataFrame      # features x samples, columns ordered like metadata
    metadata: pd.DataFrame       # indexed by sample ID
    groups: pd.Series            # group level per sample, as strings
    sample_id_col: str


def read_and_process_metadata(sample_key, logger=logger):
    """
    Read and process sample metadata file.

    Args:
        sample_key: Path to the metadata CSV/TSV file
        logger: Logger instance for logging

    Returns:
        DataFrame containing the sample metadata
    """
    try:
        df = read_metadata_file(sample_key)
        logger.info(f"Loaded sample key {len(df)} rows, columns: {list(df.columns)}")
        return df
    except InvalidInput:
        logger.error(traceback.format_exc())
        raise


def detect_sample_id_column(metadata, sample_id_col=None):
    """
    Return the metadata column holding sample IDs.

    Uses sample_id_col when given, otherwise the first of the common names
    present, otherwise the first column.
    """
    if sample_id_col:
        if sample_id_col not in metadata.columns:
            raise InvalidInput(f"Sample ID column '{sample_id_col}' not found in metadata")
        return sample_id_col
    for col in COMMON_SAMPLE_ID_COLS:
        if col in metadata.columns:
            logger.info(f"Auto-detected sample ID column: {col}")
            return col
    first_col = metadata.columns[0]
    logger.warning(f"Could not auto-detect sample ID column, using the first column: {first_col}")
    return first_col


def align_samples(
    abundance: pd.DataFrame,
    metadata: pd.DataFrame,
    group: str,
    sample_id_col: Optional[str] = None,
) -> AlignedData:
    """
    Match abundance columns to metadata rows and extract the group vector.

    Args:
        abundance: Features x samples table
        metadata: One row per sample
        group: Grouping column in metadata
        sample_id_col: Sample ID column (auto-detected if None)

    Returns:
        AlignedData restricted to the shared samples, in metadata order

    Raises:
        InvalidInput: empty tables, duplicated or disjoint sample IDs, missing
            group column, fewer than two group levels
    """
    if abundance is None or abundance.empty:
        raise InvalidInput("Abundance table is empty")
    if metadata is None or metadata.empty:
        raise InvalidInput("Metadata table is empty")

    sample_id_col = detect_sample_id_column(metadata, sample_id_col)
    if group not in metadata.columns:
        logger.error(f"Group column '{group}' not found in metadata")
        raise InvalidInput(f"Group column '{group}' not found in metadata")

    meta = metadata.copy()
    meta[sample_id_col] = meta[sample_id_col].astype(str)
    if meta[sample_id_col].duplicated().any():
        dups = meta.loc[meta[sample_id_col].duplicated(), sample_id_col].tolist()
        raise InvalidInput(f"Duplicated sample IDs in metadata: {dups[:10]}")

    missing_group = meta[group].isna()
    if missing_group.any():
        logger.warning(f"Dropping {int(missing_group.sum())} samples with no value in '{group}'")
        meta = meta.loc[~missing_group]

    abundance_cols = [str(c) for c in abundance.columns]
    available = set(abundance_cols)
    shared = [s for s in meta[sample_id_col] if s in available]
    if not shared:
        logger.error("No matching samples between abundance data and metadata")
        raise InvalidInput("No matching samples between abundance data and metadata")

    n_meta_only = len(meta) - len(shared)
    n_abund_only = len(abundance_cols) - len(shared)
    if n_meta_only:
        logger.warning(f"{n_meta_only} metadata samples are missing from the abundance table")
    if n_abund_only:
        logger.info(f"{n_abund_only} abundance columns have no metadata and are ignored")

    meta = meta.set_index(sample_id_col).loc[shared]
    aligned = abundance.copy()
    aligned.columns = abundance_cols
    aligned = aligned[shared]

    groups = meta[group].astype(str)
    levels = sorted(groups.unique())
    if len(levels) < 2:
        raise InvalidInput(f"Group column '{group}' needs at least two levels, found {levels}")

    logger.info(f"Working with {len(shared)} samples in {len(levels)} groups: {levels}")
    return AlignedData(aligned, meta, groups, sample_id_col)
