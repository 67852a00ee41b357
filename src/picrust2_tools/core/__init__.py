# picrust2_tools/core/__init__.py
"""Core workflow for PICRUSt2 Tools."""

from picrust2_tools.core.pipeline import (
    PipelineResult,
    run_pathway_pipeline,
)
