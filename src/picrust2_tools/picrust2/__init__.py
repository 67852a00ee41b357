# picrust2_tools/picrust2/__init__.py
"""PICRUSt2 output handling: reference tables and KO to KEGG conversion."""

from picrust2_tools.picrust2.ko_conversion import ConversionResult, ko2kegg_abundance
from picrust2_tools.picrust2.reference_data import read_mapping_file
