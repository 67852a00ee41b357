# picrust2_tools/core/pipeline.py
"""
One-call workflow: read, optionally convert KO to KEGG pathways, run
differential abundance, annotate and build one error-bar plot per method
label and contrast.
"""
import logging
import time
from typing import Dict, List, NamedTuple, Optional, Sequence, Union

import pandas as pd

from picrust2_tools.analysis.annotation import KeggClient, pathway_annotation
from picrust2_tools.analysis.differential_abundance import pathway_daa
from picrust2_tools.analysis.metadata import align_samples, read_and_process_metadata
from picrust2_tools.analysis.visualizations import PlotStyle, pathway_errorbar
from picrust2_tools.constants import DEFAULT_P_THRESHOLD
from picrust2_tools.errors import InvalidInput
from picrust2_tools.logger import log_print
from picrust2_tools.picrust2.ko_conversion import ko2kegg_abundance
from picrust2_tools.utils.file_utils import read_abundance_file

logger = logging.getLogger('picrust2_tools')


class PipelineResult(NamedTuple):
    plots: List[Dict]          # {"plot": Figure or None, "results": DataFrame}
    daa_results: pd.DataFrame  # annotated results of every method label
    warnings: List[str]        # KEGG lookup and annotation warnings


def run_pathway_pipeline(
    metadata: Union[pd.DataFrame, str],
    group: str,
    file: Optional[str] = None,
    data: Optional[pd.DataFrame] = None,
    pathway: str = "KO",
    daa_method: str = "ALDEx2",
    ko_to_kegg: bool = False,
    mapping: Optional[pd.DataFrame] = None,
    kegg_link: bool = False,
    p_adjust_method: str = "BH",
    p_values_threshold: float = DEFAULT_P_THRESHOLD,
    order: str = "group",
    select: Optional[Sequence[str]] = None,
    reference: Optional[str] = None,
    sample_id_col: Optional[str] = None,
    x_lab: Optional[str] = None,
    p_value_bar: bool = True,
    style: Optional[PlotStyle] = None,
    client: Optional[KeggClient] = None,
) -> PipelineResult:
    """
    Run the PICRUSt2 downstream workflow in one call.

    Args:
        metadata: Sample metadata frame or path to a CSV/TSV file
        group: Grouping column in metadata
        file: PICRUSt2 abundance TSV, used when data is None
        data: Features x samples abundance table
        pathway: Feature type of the input (KO, EC, MetaCyc)
        daa_method: Differential abundance method tag
        ko_to_kegg: Convert KO abundance to KEGG pathways before testing
        mapping: KO-to-pathway mapping for the conversion (bundled table if None)
        kegg_link: Link KOs missing from the mapping through the KEGG REST service
        p_adjust_method: Multiple-testing adjustment
        p_values_threshold: p_adjust cutoff for annotation lookups and plots
        order: Feature order in the error-bar plots
        select: Optional allow-list of feature IDs
        reference: Reference group level
        sample_id_col: Sample ID column in metadata
        x_lab: Results column used for plot labels (default: pathway_name)
        p_value_bar: Draw the adjusted p-value panel
        style: PlotStyle for the plots
        client: KeggClient for remote lookups

    Returns:
        PipelineResult(plots, daa_results, warnings)
    """
    start_time = time.time()
    if data is None and file is None:
        raise InvalidInput("Provide either data or file")
    abundance = data.copy() if data is not None else read_abundance_file(file)
    if isinstance(metadata, str):
        metadata = read_and_process_metadata(metadata)

    conversion_warnings = []
    if ko_to_kegg:
        if pathway != "KO":
            raise InvalidInput("ko_to_kegg requires pathway='KO' input")
        link_client = (client or KeggClient()) if kegg_link else None
        conversion = ko2kegg_abundance(abundance, mapping=mapping, client=link_client)
        abundance = conversion.abundance
        conversion_warnings = conversion.warnings

    log_print(f"Running {daa_method} on {abundance.shape[0]} features", level='info')
    daa_results = pathway_daa(abundance, metadata, group, daa_method=daa_method, select=select,
                              p_adjust_method=p_adjust_method, reference=reference,
                              sample_id_col=sample_id_col)

    annotated, warnings = pathway_annotation(daa_results, pathway=pathway, ko_to_kegg=ko_to_kegg,
                                             p_values_threshold=p_values_threshold, client=client)

    aligned = align_samples(abundance, metadata, group, sample_id_col)
    plots = []
    for (label, group1, group2), results in annotated.groupby(["method", "group1", "group2"], sort=False):
        entry = {"plot": None, "results": results.reset_index(drop=True)}
        plots.append(entry)
        in_contrast = aligned.groups.isin([group1, group2])
        if set(aligned.groups[in_contrast]) == {group1, group2}:
            samples = aligned.groups.index[in_contrast]
        else:
            logger.warning(f"{label}: no two-group contrast to plot for {group1} vs {group2}")
            continue
        try:
            entry["plot"] = pathway_errorbar(
                aligned.abundance[samples], results, aligned.groups[samples],
                p_values_threshold=p_values_threshold, order=order, select=select,
                x_lab=x_lab or "pathway_name", p_value_bar=p_value_bar, style=style,
            )
        except InvalidInput as e:
            logger.warning(f"{label} ({group1} vs {group2}): no plot, {e}")

    elapsed = time.time() - start_time
    log_print(f"Pipeline finished in {elapsed:.1f} s: {len(plots)} result sets, "
              f"{sum(p['plot'] is not None for p in plots)} plots", level='info')
    return PipelineResult(plots, annotated, conversion_warnings + warnings)
