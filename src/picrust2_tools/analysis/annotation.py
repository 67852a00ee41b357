# picrust2_tools/analysis/annotation.py
"""
Pathway annotation of differential abundance results and abundance tables.

Bundled reference tables are used first. KEGG pathway and KO IDs that are
still unresolved and significant are looked up on the KEGG REST service; lookup
errors degrade to empty fields plus a warning message, they never abort the
batch.
"""
import logging
from typing import Dict, Iterable, List, NamedTuple, Optional

import numpy as np
import pandas as pd
import requests

from picrust2_tools.constants import (
    ANNOTATION_COLUMNS,
    DEFAULT_P_THRESHOLD,
    KEGG_BATCH_SIZE,
    KEGG_REST_URL,
    KEGG_TIMEOUT,
    PATHWAY_TYPES,
)
from picrust2_tools.errors import AnnotationLookupFailure, InvalidInput
from picrust2_tools.picrust2.reference_data import (
    classify_feature_id,
    load_description_reference,
    load_kegg_reference,
    to_map_id,
)
from picrust2_tools.utils.file_utils import read_abundance_file

logger = logging.getLogger('picrust2_tools')

# Expected identifier kind for each annotation mode
_EXPECTED_KIND = {"KO": "KO", "EC": "EC", "MetaCyc": "MetaCyc"}

# KEGG flat-file field -> annotation column
_KEGG_FIELDS = {
    "NAME": "pathway_name",
    "DESCRIPTION": "pathway_description",
    "CLASS": "pathway_class",
    "PATHWAY_MAP": "pathway_map",
    # KO entries
    "SYMBOL": "symbol",
    "DEFINITION": "definition",
}


class AnnotationResult(NamedTuple):
    table: pd.DataFrame
    warnings: List[str]


def parse_kegg_flat_file(text):
    """
    Parse KEGG DBGET flat-file records separated by '///'.

    Field names occupy the first 12 columns; continuation lines leave them
    blank.

    Returns:
        Dict keyed by entry ID with pathway_name, pathway_description,
        pathway_class and pathway_map values (None when absent)
    """
    records = {}
    for block in text.split("///"):
        fields: Dict[str, List[str]] = {}
        current = None
        for line in block.splitlines():
            if not line.strip():
                continue
            key, value = line[:12].strip(), line[12:].strip()
            if key:
                current = key
                fields.setdefault(key, []).append(value)
            elif current:
                fields[current].append(value)
        if "ENTRY" not in fields:
            continue
        entry_id = fields["ENTRY"][0].split()[0]

        record = {}
        for field, column in _KEGG_FIELDS.items():
            values = fields.get(field)
            if not values:
                record[column] = None
            elif field == "PATHWAY_MAP":
                record[column] = values[0].split()[0]
            elif field == "NAME":
                record[column] = values[0].rstrip(";")
            else:
                record[column] = " ".join(values)
        records[entry_id] = record
    return records


def parse_kegg_link(text):
    """
    Parse a KEGG "link/pathway" response into (pathway, ko) pairs.

    Lines look like ``ko:K00844<TAB>path:map00010``; the ``path:koNNNNN``
    duplicates of each reference map are skipped.

    Raises:
        AnnotationLookupFailure: a line is not two tab-separated IDs
    """
    pairs = []
    for line in text.splitlines():
        if not line.strip():
            continue
        parts = line.strip().split("\t")
        if len(parts) != 2:
            raise AnnotationLookupFailure(f"Malformed KEGG link line: {line!r}")
        ko, target = parts[0].split(":")[-1], parts[1].split(":")[-1]
        if target.startswith("map"):
            pairs.append((target, ko))
    return pairs


def ko_description(record):
    """'SYMBOL; name' text for a KO record, in the style of the bundled KO table."""
    if record.get("symbol"):
        parts = [record["symbol"], record.get("pathway_name")]
    else:
        parts = [record.get("pathway_name"), record.get("definition")]
    return "; ".join(p for p in parts if p) or None


class KeggClient:
    """
    Minimal client for the KEGG REST "get" and "link" operations.

    Args:
        base_url: KEGG REST root
        timeout: Seconds per request
        batch_size: IDs per request (KEGG accepts at most 10)
    """

    def __init__(self, base_url=KEGG_REST_URL, timeout=KEGG_TIMEOUT, batch_size=KEGG_BATCH_SIZE):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.batch_size = min(batch_size, KEGG_BATCH_SIZE)

    def _request(self, url):
        last_error = None
        for attempt in (1, 2):
            try:
                response = requests.get(url, timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout,
                    requests.exceptions.ChunkedEncodingError) as e:
                last_error = e
                logger.warning(f"KEGG request failed (attempt {attempt}/2): {e}")
                continue
            except requests.RequestException as e:
                logger.error(f"KEGG request failed: {e}")
                raise AnnotationLookupFailure(f"KEGG request failed: {e}") from e
            if response.status_code >= 500:
                last_error = f"HTTP {response.status_code}"
                logger.warning(f"KEGG returned HTTP {response.status_code} (attempt {attempt}/2)")
                continue
            return response
        raise AnnotationLookupFailure(f"KEGG lookup failed after retry: {last_error}")

    def fetch_batch(self, ids: List[str]) -> Dict[str, Dict[str, Optional[str]]]:
        """
        Fetch up to batch_size entries in one round-trip.

        Raises:
            AnnotationLookupFailure: network error, unexpected status or
                unparseable body
        """
        if len(ids) > self.batch_size:
            raise InvalidInput(f"At most {self.batch_size} IDs per KEGG request, got {len(ids)}")
        url = f"{self.base_url}/get/{'+'.join(ids)}"
        response = self._request(url)
        if response.status_code == 404:
            # KEGG answers 404 when none of the IDs exist
            return {}
        if response.status_code != 200:
            raise AnnotationLookupFailure(f"KEGG returned HTTP {response.status_code} for {url}")
        records = parse_kegg_flat_file(response.text)
        if response.text.strip() and not records:
            raise AnnotationLookupFailure(f"Malformed KEGG response for {url}")
        return records

    def fetch(self, ids: Iterable[str]):
        """
        Fetch all IDs batch by batch.

        Returns:
            Tuple of (records dict, list of warning messages); a failed batch
            adds a warning and the remaining batches still run
        """
        ids = list(dict.fromkeys(ids))
        records, warnings = {}, []
        for start in range(0, len(ids), self.batch_size):
            batch = ids[start:start + self.batch_size]
            try:
                records.update(self.fetch_batch(batch))
            except AnnotationLookupFailure as e:
                logger.error(f"KEGG lookup failed for {batch}: {e}")
                warnings.append(f"KEGG lookup failed for {', '.join(batch)}: {e}")
        return records, warnings

    def link_pathways(self, kos: Iterable[str]):
        """
        Look up the KEGG reference pathways of KOs with the "link" operation.

        Returns:
            Tuple of (DataFrame with pathway and ko columns, list of warning
            messages); a failed batch adds a warning and the rest still run
        """
        kos = list(dict.fromkeys(kos))
        pairs, warnings = [], []
        for start in range(0, len(kos), self.batch_size):
            batch = kos[start:start + self.batch_size]
            url = f"{self.base_url}/link/pathway/{'+'.join(batch)}"
            try:
                response = self._request(url)
                if response.status_code == 404:
                    continue
                if response.status_code != 200:
                    raise AnnotationLookupFailure(f"KEGG returned HTTP {response.status_code} for {url}")
                pairs.extend(parse_kegg_link(response.text))
            except AnnotationLookupFailure as e:
                logger.error(f"KEGG link failed for {batch}: {e}")
                warnings.append(f"KEGG link failed for {', '.join(batch)}: {e}")
        return pd.DataFrame(pairs, columns=["pathway", "ko"]), warnings


def _fill_missing(table, row_mask, values: pd.DataFrame):
    """Fill null annotation fields of the masked rows; filled fields are left alone."""
    for column in ANNOTATION_COLUMNS:
        if column not in values.columns:
            continue
        fill = table.loc[row_mask, "feature"].map(values[column])
        fill = fill.replace("", np.nan)
        current = table.loc[row_mask, column]
        table.loc[row_mask, column] = current.where(current.notna(), fill)


def _annotate_abundance_file(file, pathway):
    abundance = read_abundance_file(file)
    reference = load_description_reference(pathway).set_index("id")["description"]
    annotated = abundance.copy()
    descriptions = annotated.index.to_series().map(reference)
    annotated.insert(0, "description", descriptions.replace("", np.nan).values)

    warnings = []
    missing = descriptions.isna().sum()
    if missing:
        msg = f"{int(missing)} of {len(descriptions)} {pathway} IDs have no bundled description"
        logger.warning(msg)
        warnings.append(msg)
    return AnnotationResult(annotated, warnings)


def pathway_annotation(
    daa_results_df: Optional[pd.DataFrame] = None,
    file: Optional[str] = None,
    pathway: str = "KO",
    ko_to_kegg: bool = False,
    p_values_threshold: float = DEFAULT_P_THRESHOLD,
    client: Optional[KeggClient] = None,
) -> AnnotationResult:
    """
    Attach pathway names, descriptions and classes.

    Args:
        daa_results_df: Normalized DAA results to annotate
        file: PICRUSt2 abundance file to annotate instead (bundled tables only)
        pathway: Feature type, one of KO, EC, MetaCyc
        ko_to_kegg: Features are KEGG pathway IDs (from ko2kegg_abundance)
        p_values_threshold: Only significant unresolved KEGG pathways are
            fetched remotely
        client: KeggClient to use for remote lookups

    Returns:
        AnnotationResult(table, warnings); every input row is present in the
        table, failed lookups leave the annotation fields empty
    """
    if pathway not in PATHWAY_TYPES:
        raise InvalidInput(f"Unknown pathway type '{pathway}'. Choose from {PATHWAY_TYPES}")

    if file is not None:
        logger.info(f"Annotating abundance file {file} with bundled {pathway} descriptions")
        return _annotate_abundance_file(file, pathway)

    if daa_results_df is None:
        raise InvalidInput("Provide either daa_results_df or file")
    if "feature" not in daa_results_df.columns:
        raise InvalidInput("daa_results_df needs a 'feature' column")

    table = daa_results_df.copy()
    for column in ANNOTATION_COLUMNS:
        if column not in table.columns:
            table[column] = np.nan
        table[column] = table[column].astype(object)
    warnings: List[str] = []

    expected = "KEGG_PATHWAY" if ko_to_kegg else _EXPECTED_KIND[pathway]
    kinds = table["feature"].astype(str).map(classify_feature_id)
    matches = kinds == expected
    if (~matches).any():
        bad = sorted(set(table.loc[~matches, "feature"].astype(str)))
        msg = (f"{len(bad)} features are not {expected} identifiers and were left "
               f"unannotated (e.g. {bad[:5]})")
        logger.warning(msg)
        warnings.append(msg)

    if not ko_to_kegg:
        reference = load_description_reference(pathway).set_index("id")
        values = pd.DataFrame({"pathway_name": reference["description"]})
        _fill_missing(table, matches, values)
        logger.info(f"Annotated {int(table['pathway_name'].notna().sum())} of {len(table)} rows "
                    f"from the bundled {pathway} reference")
        if pathway == "KO":
            unresolved = _significant(table, matches & table["pathway_name"].isna(), p_values_threshold)
            if unresolved.any():
                features = table.loc[unresolved, "feature"].astype(str)
                logger.info(f"Fetching {features.nunique()} KOs not in the bundled reference")
                client = client or KeggClient()
                _fill_remote(table, unresolved, dict(zip(features, features)), client, warnings,
                             lambda record: {"pathway_name": ko_description(record)})
        return AnnotationResult(table, warnings)

    # KEGG pathway IDs: bundled reference first
    map_ids = table["feature"].astype(str).map(to_map_id)
    reference = load_kegg_reference().set_index("pathway")
    reference = reference.assign(pathway_map=reference.index)
    bundled = reference.reindex(map_ids.values)
    bundled.index = table["feature"].astype(str).values
    bundled = bundled[~bundled.index.duplicated()]
    _fill_missing(table, matches, bundled)

    unresolved = _significant(table, matches & table["pathway_name"].isna(), p_values_threshold)
    if unresolved.any():
        wanted = dict(zip(table.loc[unresolved, "feature"].astype(str), map_ids[unresolved]))
        logger.info(f"Fetching {len(wanted)} KEGG pathways not in the bundled reference")
        client = client or KeggClient()
        _fill_remote(table, unresolved, wanted, client, warnings, dict)

    n_named = int(table["pathway_name"].notna().sum())
    logger.info(f"Annotated {n_named} of {len(table)} rows with KEGG pathway information")
    return AnnotationResult(table, warnings)


def _significant(table, mask, p_values_threshold):
    if "p_adjust" in table.columns:
        mask = mask & (pd.to_numeric(table["p_adjust"], errors="coerce") < p_values_threshold)
    return mask


def _fill_remote(table, row_mask, wanted, client, warnings, to_columns):
    """
    Fetch the KEGG entries in wanted (feature -> KEGG ID) and fill the masked rows.

    to_columns turns one parsed record into annotation column values.
    """
    records, fetch_warnings = client.fetch(wanted.values())
    warnings.extend(fetch_warnings)

    remote = pd.DataFrame.from_dict(
        {feature: to_columns(records[kegg_id]) for feature, kegg_id in wanted.items() if kegg_id in records},
        orient="index",
    )
    not_found = [f for f, k in wanted.items() if k not in records]
    if not_found and not fetch_warnings:
        msg = f"KEGG returned no entry for {not_found}"
        logger.warning(msg)
        warnings.append(msg)
    if not remote.empty:
        _fill_missing(table, row_mask, remote)
