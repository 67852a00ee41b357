# picrust2_tools/analysis/differential_abundance.py
"""
Differential abundance dispatch for PICRUSt2 pathway and gene-family tables.

``pathway_daa`` validates the inputs, aligns abundance columns with the
metadata, resolves the reference level and hands the data to one backend from
``DAA_REGISTRY``. Backend output goes through ``normalize_daa_results`` so every
method returns the same columns.
"""
import inspect
import logging
import traceback
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from picrust2_tools.analysis import daa_methods
from picrust2_tools.analysis.daa_methods import DaaInput
from picrust2_tools.analysis.metadata import align_samples
from picrust2_tools.analysis.results import normalize_daa_results
from picrust2_tools.constants import DAA_METHODS, P_ADJUST_METHODS
from picrust2_tools.errors import AmbiguousReference, InvalidInput, MethodFailure
from picrust2_tools.utils.file_utils import validate_abundance

logger = logging.getLogger('picrust2_tools')


@dataclass(frozen=True)
class MethodAdapter:
    """Everything the dispatcher needs to run one backend."""
    tag: str
    labels: Sequence[str]
    prepare: Callable
    invoke: Callable
    collect: Callable
    contrast_based: bool = True
    max_groups: Optional[int] = None
    integer_counts: bool = False


def _validate_registry(registry):
    for key, adapter in registry.items():
        if key != adapter.tag.lower():
            raise ValueError(f"Registry key '{key}' does not match adapter tag '{adapter.tag}'")
        if not adapter.labels:
            raise ValueError(f"Adapter '{adapter.tag}' declares no result labels")
        for step in (adapter.prepare, adapter.invoke, adapter.collect):
            if not callable(step):
                raise ValueError(f"Adapter '{adapter.tag}' has a non-callable step")
        if adapter.max_groups is not None and adapter.max_groups < 2:
            raise ValueError(f"Adapter '{adapter.tag}' must accept at least two groups")
    missing = {m.lower() for m in DAA_METHODS} - set(registry)
    if missing:
        raise ValueError(f"No adapter registered for: {sorted(missing)}")
    return MappingProxyType(dict(registry))


_ADAPTERS = [
    MethodAdapter(
        tag="ALDEx2",
        labels=("ALDEx2_Welch's t test", "ALDEx2_Wilcoxon rank test",
                "ALDEx2_Kruskal-Wallace test", "ALDEx2_glm test"),
        prepare=daa_methods.prepare_aldex2,
        invoke=daa_methods.invoke_aldex2,
        collect=daa_methods.collect_aldex2,
        contrast_based=False,
        integer_counts=True,
    ),
    MethodAdapter(
        tag="DESeq2",
        labels=("DESeq2",),
        prepare=daa_methods.prepare_deseq2,
        invoke=daa_methods.invoke_deseq2,
        collect=daa_methods.collect_deseq2,
        integer_counts=True,
    ),
    MethodAdapter(
        tag="edgeR",
        labels=("edgeR",),
        prepare=daa_methods.prepare_edger,
        invoke=daa_methods.invoke_edger,
        collect=daa_methods.collect_edger,
        integer_counts=True,
    ),
    MethodAdapter(
        tag="limma voom",
        labels=("limma voom",),
        prepare=daa_methods.prepare_limma_voom,
        invoke=daa_methods.invoke_limma_voom,
        collect=daa_methods.collect_limma_voom,
    ),
    MethodAdapter(
        tag="metagenomeSeq",
        labels=("metagenomeSeq",),
        prepare=daa_methods.prepare_metagenomeseq,
        invoke=daa_methods.invoke_metagenomeseq,
        collect=daa_methods.collect_metagenomeseq,
    ),
    MethodAdapter(
        tag="Maaslin2",
        labels=("Maaslin2",),
        prepare=daa_methods.prepare_maaslin2,
        invoke=daa_methods.invoke_maaslin2,
        collect=daa_methods.collect_maaslin2,
    ),
    MethodAdapter(
        tag="LinDA",
        labels=("LinDA",),
        prepare=daa_methods.prepare_linda,
        invoke=daa_methods.invoke_linda,
        collect=daa_methods.collect_linda,
    ),
    MethodAdapter(
        tag="Lefser",
        labels=("Lefser",),
        prepare=daa_methods.prepare_lefser,
        invoke=daa_methods.invoke_lefser,
        collect=daa_methods.collect_lefser,
        max_groups=2,
    ),
]

# Keyed by lower-cased tag; read-only after import
DAA_REGISTRY: Mapping[str, MethodAdapter] = _validate_registry({a.tag.lower(): a for a in _ADAPTERS})


def get_method_adapter(daa_method):
    """Look up a backend by tag, ignoring case."""
    adapter = DAA_REGISTRY.get(str(daa_method).strip().lower())
    if adapter is None:
        logger.error(f"Unknown differential abundance method '{daa_method}'")
        raise InvalidInput(f"Unknown differential abundance method '{daa_method}'. "
                           f"Choose from {DAA_METHODS}")
    return adapter


def resolve_reference(levels, reference, adapter):
    """
    Order the group levels with the reference first.

    Args:
        levels: Sorted group levels
        reference: Requested reference level or None
        adapter: MethodAdapter being dispatched

    Returns:
        List of levels, reference first
    """
    if reference is not None:
        reference = str(reference)
        if reference not in levels:
            logger.error(f"Reference level '{reference}' is not a group level {levels}")
            raise InvalidInput(f"Reference level '{reference}' is not one of the group levels {levels}")
    elif len(levels) > 2 and adapter.contrast_based:
        logger.error(f"{adapter.tag} needs a reference level for {len(levels)} groups")
        raise AmbiguousReference(
            f"{adapter.tag} compares each group against a reference; the group has "
            f"{len(levels)} levels {levels}, pass reference= one of them"
        )
    else:
        reference = levels[0]
    return [reference] + [lvl for lvl in levels if lvl != reference]


def _apply_select(abundance, select):
    if select is None:
        return abundance
    wanted = [str(s) for s in select]
    present = set(abundance.index)
    unknown = [s for s in wanted if s not in present]
    if unknown:
        logger.debug(f"Ignoring {len(unknown)} selected features not in the table: {unknown[:10]}")
    keep = [f for f in abundance.index if f in set(wanted)]
    if not keep:
        logger.error("None of the selected features are present in the abundance table")
        raise InvalidInput("None of the selected features are present in the abundance table")
    logger.info(f"Restricting analysis to {len(keep)} selected features")
    return abundance.loc[keep]


def _check_options(adapter, method_options):
    accepted = set()
    for step in (adapter.prepare, adapter.invoke):
        params = list(inspect.signature(step).parameters)
        accepted.update(params[2 if step is adapter.invoke else 1:])
    unknown = set(method_options) - accepted
    if unknown:
        raise InvalidInput(f"Options {sorted(unknown)} are not accepted by {adapter.tag}; "
                           f"valid options: {sorted(accepted)}")


def _split_options(step, method_options, skip):
    params = list(inspect.signature(step).parameters)[skip:]
    return {k: v for k, v in method_options.items() if k in params}


def pathway_daa(
    abundance: pd.DataFrame,
    metadata: pd.DataFrame,
    group: str,
    daa_method: str = "ALDEx2",
    select: Optional[List[str]] = None,
    p_adjust_method: str = "BH",
    reference: Optional[str] = None,
    sample_id_col: Optional[str] = None,
    **method_options,
) -> pd.DataFrame:
    """
    Run one differential abundance method on a feature x sample table.

    Args:
        abundance: Features x samples table (pathways, KOs, ECs, ...)
        metadata: Sample metadata, one row per sample
        group: Metadata column holding the group of each sample
        daa_method: Method tag, matched case-insensitively (see DAA_METHODS)
        select: Optional allow-list of feature IDs; unknown IDs are ignored
        p_adjust_method: Multiple-testing adjustment (see P_ADJUST_METHODS)
        reference: Reference level; contrasts are reported as level vs reference
        sample_id_col: Metadata column with sample IDs (auto-detected if None)
        **method_options: Backend-specific tuning (e.g. mc_samples for ALDEx2,
            lda_threshold for Lefser)

    Returns:
        DataFrame with columns feature, method, group1, group2, effect_size,
        p_values, p_adjust

    Raises:
        InvalidInput: bad tables, options or group layout
        AmbiguousReference: >2 levels, contrast method and no reference
        MethodFailure: the backend failed
    """
    if abundance is None or abundance.empty:
        logger.error("Abundance table is empty")
        raise InvalidInput("Abundance table is empty")
    if metadata is None or metadata.empty:
        logger.error("Metadata table is empty")
        raise InvalidInput("Metadata table is empty")

    abundance = validate_abundance(abundance.copy())
    abundance.index = abundance.index.astype(str)
    aligned = align_samples(abundance, metadata, group, sample_id_col)
    levels = sorted(aligned.groups.unique())

    counts = aligned.groups.value_counts()
    too_small = counts[counts < 2]
    if not too_small.empty:
        logger.error(f"Groups with fewer than two samples: {too_small.to_dict()}")
        raise InvalidInput(f"Each group needs at least two samples; too small: {too_small.to_dict()}")

    adapter = get_method_adapter(daa_method)
    if p_adjust_method not in P_ADJUST_METHODS:
        raise InvalidInput(f"Unknown p-value adjustment '{p_adjust_method}'. "
                           f"Choose from {list(P_ADJUST_METHODS)}")
    ordered_levels = resolve_reference(levels, reference, adapter)
    if adapter.max_groups is not None and len(levels) > adapter.max_groups:
        logger.error(f"{adapter.tag} supports at most {adapter.max_groups} groups, got {len(levels)}")
        raise InvalidInput(f"{adapter.tag} supports at most {adapter.max_groups} groups, "
                           f"the group column has {len(levels)}: {levels}")
    _check_options(adapter, method_options)

    features = _apply_select(aligned.abundance, select)
    data = DaaInput(features, aligned.groups, ordered_levels)
    logger.info(f"Running {adapter.tag} on {features.shape[0]} features, {features.shape[1]} samples; "
                f"reference level '{ordered_levels[0]}'")

    try:
        prepared = adapter.prepare(data, **_split_options(adapter.prepare, method_options, 1))
        raw = adapter.invoke(prepared, data, **_split_options(adapter.invoke, method_options, 2))
        frames = adapter.collect(raw, data)
    except (InvalidInput, MethodFailure):
        raise
    except np.linalg.LinAlgError as e:
        logger.error(f"{adapter.tag} failed: {e}")
        raise MethodFailure(adapter.tag, f"singular or rank-deficient model: {e}") from e
    except Exception as e:
        logger.error(f"{adapter.tag} failed: {e}")
        logger.error(traceback.format_exc())
        raise MethodFailure(adapter.tag, str(e)) from e

    return normalize_daa_results(frames, p_adjust_method=p_adjust_method)
