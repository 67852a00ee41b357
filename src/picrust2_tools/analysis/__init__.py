# picrust2_tools/analysis/__init__.py
"""Analysis functions for PICRUSt2 abundance tables."""

from picrust2_tools.analysis.differential_abundance import (
    DAA_REGISTRY,
    MethodAdapter,
    pathway_daa,
)

from picrust2_tools.analysis.results import (
    compare_daa_results,
    normalize_daa_results,
)

from picrust2_tools.analysis.annotation import (
    AnnotationResult,
    KeggClient,
    pathway_annotation,
)

from picrust2_tools.analysis.visualizations import (
    PlotStyle,
    pathway_errorbar,
    pathway_heatmap,
    pathway_pca,
)
