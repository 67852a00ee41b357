# picrust2_tools/picrust2/reference_data.py
"""
Bundled reference tables shipped in picrust2_tools/data.

Tables are read once and cached; callers always receive a copy so the cached
frame stays read-only.

The tables cover the core metabolic KOs and pathways only. Use
read_mapping_file with a full KEGG link dump, or the KEGG REST lookups in
analysis.annotation, for complete coverage. The pathway_description texts of
kegg_pathway_reference.tsv are short summaries, not KEGG DESCRIPTION fields.
"""
import os
import re
import logging
from functools import lru_cache
from typing import NewType

import pandas as pd

from picrust2_tools.errors import InvalidInput

logger = logging.getLogger('picrust2_tools')

DATA_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "data")

# Identifier kinds. KO IDs are gene families; everything else is a pathway-level ID.
GeneFamilyID = NewType("GeneFamilyID", str)
PathwayID = NewType("PathwayID", str)

KO_PATTERN = re.compile(r"^K\d{5}$")
KEGG_PATHWAY_PATTERN = re.compile(r"^(?:map|ko)\d{5}$")
EC_PATTERN = re.compile(r"^EC:\d+\.(?:\d+|-)\.(?:\d+|-)\.(?:n?\d+|-)$")

DESCRIPTION_FILES = {
    "KO": "ko_reference.tsv",
    "EC": "ec_reference.tsv",
    "MetaCyc": "metacyc_reference.tsv",
}


def classify_feature_id(feature_id):
    """
    Detect the kind of a feature identifier.

    Returns:
        One of "KO", "KEGG_PATHWAY", "EC" or "MetaCyc" (anything else)
    """
    feature_id = str(feature_id).strip()
    if KO_PATTERN.match(feature_id):
        return "KO"
    if KEGG_PATHWAY_PATTERN.match(feature_id):
        return "KEGG_PATHWAY"
    if EC_PATTERN.match(feature_id):
        return "EC"
    return "MetaCyc"


def to_map_id(pathway_id):
    """Normalize a KEGG pathway ID ("ko00010", "path:map00010") to the "map00010" form."""
    pid = str(pathway_id).strip()
    if pid.startswith("path:"):
        pid = pid[len("path:"):]
    if pid.startswith("ko") and KEGG_PATHWAY_PATTERN.match(pid):
        pid = "map" + pid[2:]
    return PathwayID(pid)


def _read_table(filename):
    path = os.path.join(DATA_DIR, filename)
    if not os.path.isfile(path):
        raise InvalidInput(f"Bundled reference table missing: {path}")
    return pd.read_csv(path, sep="\t", dtype=str, keep_default_na=False)


@lru_cache(maxsize=None)
def _cached_table(filename):
    df = _read_table(filename)
    logger.debug(f"Loaded reference table {filename}: {len(df)} rows")
    return df


def load_ko_to_kegg_mapping():
    """Return the KO -> KEGG pathway mapping as a two-column frame (pathway, ko)."""
    return _cached_table("ko_to_kegg_pathway.tsv").copy()


def load_kegg_reference():
    """Return KEGG pathway names, descriptions and classes keyed by map ID."""
    return _cached_table("kegg_pathway_reference.tsv").copy()


def load_description_reference(pathway):
    """
    Return the (id, description) table for a PICRUSt2 feature type.

    Args:
        pathway: One of "KO", "EC", "MetaCyc"
    """
    if pathway not in DESCRIPTION_FILES:
        raise InvalidInput(f"Unknown pathway type '{pathway}'. Choose from {list(DESCRIPTION_FILES)}")
    return _cached_table(DESCRIPTION_FILES[pathway]).copy()


def read_mapping_file(path):
    """
    Read a user-supplied KO -> KEGG pathway mapping.

    Accepts a TSV with 'pathway' and 'ko' columns, or a raw KEGG link dump
    (e.g. rest.kegg.jp/link/pathway/ko) with one prefixed ID pair per line in
    either column order.

    Returns:
        Two-column frame (pathway, ko) with map-style pathway IDs
    """
    if not os.path.isfile(path):
        raise InvalidInput(f"Mapping file not found: {path}")
    try:
        df = pd.read_csv(path, sep="\t", dtype=str, header=None, keep_default_na=False)
    except pd.errors.EmptyDataError as e:
        raise InvalidInput(f"Mapping file is empty: {path}") from e

    header = [v.strip() for v in df.iloc[0]]
    if {"pathway", "ko"}.issubset(header):
        df = df.iloc[1:].set_axis(header, axis=1)
        pairs = zip(df["pathway"], df["ko"])
    elif df.shape[1] == 2:
        pairs = []
        for left, right in zip(df[0], df[1]):
            left, right = left.split(":")[-1].strip(), right.split(":")[-1].strip()
            pairs.append((right, left) if KO_PATTERN.match(left) else (left, right))
    else:
        raise InvalidInput(f"Mapping file {path} needs 'pathway' and 'ko' columns or two ID columns")

    mapping = pd.DataFrame(
        [(to_map_id(p), k.strip()) for p, k in pairs
         if KO_PATTERN.match(k.strip()) and KEGG_PATHWAY_PATTERN.match(to_map_id(p))],
        columns=["pathway", "ko"],
    ).drop_duplicates()
    if mapping.empty:
        raise InvalidInput(f"No KO -> pathway pairs found in {path}")
    logger.info(f"Loaded {len(mapping)} KO -> pathway pairs from {path}")
    return mapping
