# picrust2_tools/constants.py
"""
Shared option sets and defaults for PICRUSt2 Tools.

All per-call options accepted by the library and the CLI are enumerated here
so that argument validation and ``argparse`` choices come from one place.
"""

# Differential abundance methods, keyed by their case-insensitive tag
DAA_METHODS = [
    "ALDEx2",
    "DESeq2",
    "edgeR",
    "limma voom",
    "metagenomeSeq",
    "Maaslin2",
    "LinDA",
    "Lefser",
]

# p-value adjustment names -> statsmodels.stats.multitest.multipletests method
P_ADJUST_METHODS = {
    "BH": "fdr_bh",
    "fdr": "fdr_bh",
    "BY": "fdr_by",
    "holm": "holm",
    "hochberg": "simes-hochberg",
    "hommel": "hommel",
    "bonferroni": "bonferroni",
    "none": None,
}

PATHWAY_TYPES = ["KO", "EC", "MetaCyc"]

ORDER_POLICIES = ["group", "p_values", "name", "pathway_class"]

# Candidate sample ID columns, tried in order before falling back to the first column
COMMON_SAMPLE_ID_COLS = [
    "sample_name",
    "SampleName",
    "Sample",
    "SampleID",
    "Sample_ID",
    "sample_id",
    "sample",
]

# Canonical DAA result schema
RESULT_COLUMNS = [
    "feature",
    "method",
    "group1",
    "group2",
    "effect_size",
    "p_values",
    "p_adjust",
]

ANNOTATION_COLUMNS = [
    "pathway_name",
    "pathway_description",
    "pathway_class",
    "pathway_map",
]

# KEGG REST lookups
KEGG_REST_URL = "https://rest.kegg.jp"
KEGG_BATCH_SIZE = 10  # KEGG "get" accepts at most 10 entries per request
KEGG_TIMEOUT = 10

DEFAULT_P_THRESHOLD = 0.05

# Feature count above which the error-bar plot gets crowded
MAX_ERRORBAR_FEATURES = 30
