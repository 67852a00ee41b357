# picrust2_tools/__init__.py
"""
PICRUSt2 Tools - downstream analysis of PICRUSt2 predicted functional profiles.

This package provides a modular workflow for PICRUSt2 output:
1. Converting KO abundance to KEGG pathway abundance
2. Differential abundance analysis with several methods
3. Pathway annotation from bundled tables and KEGG REST
4. Error-bar, heatmap and PCA plots
"""

__version__ = "0.1.0"

from picrust2_tools.logger import setup_logger, log_print

from picrust2_tools.core.pipeline import run_pathway_pipeline
