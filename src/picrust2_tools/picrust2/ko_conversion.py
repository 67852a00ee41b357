# picrust2_tools/picrust2/ko_conversion.py
"""
Convert PICRUSt2 KO (gene family) abundance into KEGG pathway abundance.
"""
import logging
from typing import List, NamedTuple, Optional

import pandas as pd

from picrust2_tools.errors import InvalidInput
from picrust2_tools.logger import log_print
from picrust2_tools.picrust2.reference_data import (
    classify_feature_id,
    load_ko_to_kegg_mapping,
    to_map_id,
)
from picrust2_tools.utils.file_utils import read_abundance_file, validate_abundance

logger = logging.getLogger('picrust2_tools')


class ConversionResult(NamedTuple):
    abundance: pd.DataFrame
    n_unmapped: int
    unmapped_features: List[str]
    warnings: List[str]


def ko2kegg_abundance(
    abundance: Optional[pd.DataFrame] = None,
    file: Optional[str] = None,
    mapping: Optional[pd.DataFrame] = None,
    client=None,
) -> ConversionResult:
    """
    Sum KO abundances into KEGG pathway abundances.

    Each pathway value in a sample is the sum of the member KO rows present in
    the input. A KO belonging to several pathways contributes to each of them.
    Rows that are not KO IDs, or KOs absent from the mapping, are dropped and
    reported.

    Args:
        abundance: KO x sample abundance table (index = KO IDs)
        file: Path to a PICRUSt2 KO table, used when abundance is None
        mapping: Optional (pathway, ko) mapping; defaults to the bundled table
        client: Optional KeggClient; KOs missing from the mapping are then
            linked to pathways through the KEGG REST service

    Returns:
        ConversionResult with the pathway x sample table, the number of
        dropped rows, their IDs and any KEGG lookup warnings
    """
    if abundance is None and file is None:
        raise InvalidInput("Provide either an abundance table or a file path")
    if abundance is None:
        abundance = read_abundance_file(file)
    abundance = validate_abundance(abundance.copy())
    abundance.index = abundance.index.astype(str)

    if mapping is None:
        mapping = load_ko_to_kegg_mapping()
    if not {"pathway", "ko"}.issubset(mapping.columns):
        raise InvalidInput("Mapping table must have 'pathway' and 'ko' columns")
    mapping = mapping[["pathway", "ko"]].astype(str).drop_duplicates()
    mapping["pathway"] = mapping["pathway"].map(to_map_id)

    warnings = []
    if client is not None:
        known = set(mapping["ko"])
        missing = [f for f in abundance.index if classify_feature_id(f) == "KO" and f not in known]
        if missing:
            log_print(f"Linking {len(missing)} KOs missing from the mapping through KEGG", level='info')
            linked, warnings = client.link_pathways(missing)
            if not linked.empty:
                linked["pathway"] = linked["pathway"].map(to_map_id)
                mapping = pd.concat([mapping, linked[["pathway", "ko"]].astype(str)]).drop_duplicates()

    log_print(f"CONVERTING KO ABUNDANCE TO KEGG PATHWAYS ({abundance.shape[0]} features, "
              f"{abundance.shape[1]} samples)", level='info')

    kinds = abundance.index.map(classify_feature_id)
    non_ko = abundance.index[kinds != "KO"].tolist()
    if non_ko:
        logger.warning(f"{len(non_ko)} rows are not KO identifiers and will be dropped "
                       f"(e.g. {non_ko[:5]})")

    mapped = mapping[mapping["ko"].isin(abundance.index)]
    skip = set(mapped["ko"]) | set(non_ko)
    unmapped = [f for f in abundance.index if f not in skip]
    dropped = non_ko + unmapped
    if unmapped:
        logger.warning(f"{len(unmapped)} KOs have no pathway in the mapping table and were dropped")

    if mapped.empty:
        logger.error("None of the KO identifiers map to a KEGG pathway")
        raise InvalidInput("No KO in the abundance table maps to a KEGG pathway")

    member_rows = abundance.loc[mapped["ko"].values]
    member_rows.index = pd.Index(mapped["pathway"].values, name="pathway")
    pathway_abundance = member_rows.groupby(level=0, sort=True).sum()

    # Pathways with no signal in any sample carry no information downstream
    empty = pathway_abundance.sum(axis=1) == 0
    if empty.any():
        logger.info(f"Removing {int(empty.sum())} pathways with zero abundance in all samples")
        pathway_abundance = pathway_abundance.loc[~empty]

    log_print(f"Converted to {pathway_abundance.shape[0]} KEGG pathways; "
              f"{len(dropped)} input rows unmapped", level='info')
    return ConversionResult(pathway_abundance, len(dropped), dropped, warnings)
