# picrust2_tools/analysis/results.py
"""
Normalization of differential abundance output into the common result schema.

Every backend adapter hands over one or more frames (one per sub-method). This
module renames their columns to the canonical schema, drops untested rows,
recomputes the multiple-testing adjustment per method label and orders rows
deterministically.
"""
import logging
from typing import Dict, List, NamedTuple, Sequence

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from picrust2_tools.constants import P_ADJUST_METHODS, RESULT_COLUMNS
from picrust2_tools.errors import InvalidInput

logger = logging.getLogger('picrust2_tools')

# Backend column names -> canonical names
COLUMN_ALIASES = {
    "feature": "feature",
    "gene": "feature",
    "pathway": "feature",
    "method": "method",
    "group1": "group1",
    "group2": "group2",
    "effect_size": "effect_size",
    "log2FoldChange": "effect_size",
    "log2FC": "effect_size",
    "logFC": "effect_size",
    "coef": "effect_size",
    "statistic": "effect_size",
    "p_values": "p_values",
    "pvalue": "p_values",
    "p_value": "p_values",
    "P.Value": "p_values",
    "pval": "p_values",
    "p_adjust": "p_adjust",
    "padj": "p_adjust",
    "q_value": "p_adjust",
    "adj.P.Val": "p_adjust",
    "qval": "p_adjust",
}


def adjust_p_values(p_values, method="BH"):
    """
    Adjust raw p-values for multiple testing.

    Args:
        p_values: Array-like of raw p-values in [0, 1]
        method: One of BH, fdr, BY, holm, hochberg, hommel, bonferroni, none

    Returns:
        numpy array of adjusted p-values, same length as the input
    """
    if method not in P_ADJUST_METHODS:
        raise InvalidInput(f"Unknown p-value adjustment '{method}'. "
                           f"Choose from {list(P_ADJUST_METHODS)}")
    p = np.asarray(p_values, dtype=float)
    if p.size == 0:
        return p
    sm_method = P_ADJUST_METHODS[method]
    if sm_method is None:
        return p.copy()
    _, adjusted, _, _ = multipletests(p, method=sm_method)
    return np.clip(adjusted, 0.0, 1.0)


def _canonical(frame):
    df = frame.rename(columns={c: COLUMN_ALIASES[c] for c in frame.columns if c in COLUMN_ALIASES})
    df = df.loc[:, ~df.columns.duplicated()]
    missing = [c for c in ("feature", "method", "p_values") if c not in df.columns]
    if missing:
        raise InvalidInput(f"Backend result is missing required columns: {missing}")
    for col in ("group1", "group2"):
        if col not in df.columns:
            df[col] = np.nan
    if "effect_size" not in df.columns:
        df["effect_size"] = np.nan
    return df[["feature", "method", "group1", "group2", "effect_size", "p_values"]]


def normalize_daa_results(raw: Sequence[pd.DataFrame], p_adjust_method: str = "BH") -> pd.DataFrame:
    """
    Merge backend output into one ordered result table.

    Args:
        raw: Frames from one backend run, one per sub-method or contrast
        p_adjust_method: Adjustment applied per method label, replacing any
            adjustment done by the backend

    Returns:
        DataFrame with columns feature, method, group1, group2, effect_size,
        p_values, p_adjust; ordered by method label (first appearance), then
        p_adjust, p_values and feature ID
    """
    if p_adjust_method not in P_ADJUST_METHODS:
        raise InvalidInput(f"Unknown p-value adjustment '{p_adjust_method}'. "
                           f"Choose from {list(P_ADJUST_METHODS)}")

    frames = [_canonical(f) for f in raw if f is not None and not f.empty]
    if not frames:
        logger.warning("Differential abundance produced no tested features")
        return pd.DataFrame(columns=RESULT_COLUMNS)

    results = pd.concat(frames, ignore_index=True)
    results["feature"] = results["feature"].astype(str)
    results["method"] = results["method"].astype(str)
    results["p_values"] = pd.to_numeric(results["p_values"], errors="coerce")
    results["effect_size"] = pd.to_numeric(results["effect_size"], errors="coerce")

    untested = results["p_values"].isna()
    if untested.any():
        logger.info(f"Removing {int(untested.sum())} untested rows (no p-value)")
        results = results.loc[~untested].copy()
    results["p_values"] = results["p_values"].clip(0.0, 1.0)

    method_order = list(dict.fromkeys(results["method"]))
    results["p_adjust"] = np.nan
    for label in method_order:
        mask = results["method"] == label
        results.loc[mask, "p_adjust"] = adjust_p_values(results.loc[mask, "p_values"].values,
                                                        p_adjust_method)

    results["method"] = pd.Categorical(results["method"], categories=method_order, ordered=True)
    results = results.sort_values(["method", "p_adjust", "p_values", "feature"], kind="mergesort")
    results["method"] = results["method"].astype(str)
    results = results.reset_index(drop=True)[RESULT_COLUMNS]

    for label in method_order:
        n_sig = int(((results["method"] == label) & (results["p_adjust"] < 0.05)).sum())
        logger.info(f"{label}: {int((results['method'] == label).sum())} features tested, "
                    f"{n_sig} with p_adjust < 0.05")
    return results


class DaaComparison(NamedTuple):
    summary: pd.DataFrame
    common_features: List[str]
    unique_features: Dict[str, List[str]]


def compare_daa_results(
    daa_results_list: List[pd.DataFrame],
    method_names: List[str],
    p_values_threshold: float = 0.05,
) -> DaaComparison:
    """
    Compare significant features between several differential abundance runs.

    Args:
        daa_results_list: Normalized result tables
        method_names: Display name for each table, same length as the list
        p_values_threshold: p_adjust cutoff for significance

    Returns:
        DaaComparison with a per-method summary (num_significant, features,
        num_unique), the features significant in every method and the
        features significant in only one method
    """
    if len(daa_results_list) != len(method_names):
        raise InvalidInput("daa_results_list and method_names must have the same length")
    if len(daa_results_list) < 2:
        raise InvalidInput("At least two result tables are needed for a comparison")

    significant = {}
    for name, df in zip(method_names, daa_results_list):
        if "p_adjust" not in df.columns or "feature" not in df.columns:
            raise InvalidInput(f"Result table for '{name}' is not a normalized DAA table")
        sig = df.loc[df["p_adjust"] < p_values_threshold, "feature"].astype(str)
        significant[name] = set(sig)

    common = set.intersection(*significant.values())
    unique = {}
    for name, feats in significant.items():
        others = set().union(*(f for n, f in significant.items() if n != name))
        unique[name] = sorted(feats - others)

    summary = pd.DataFrame({
        "method": method_names,
        "num_significant": [len(significant[n]) for n in method_names],
        "features": [", ".join(sorted(significant[n])) for n in method_names],
        "num_unique": [len(unique[n]) for n in method_names],
    })

    logger.info(f"Features significant in all {len(method_names)} methods: {len(common)}")
    for name in method_names:
        logger.info(f"{name}: {len(significant[name])} significant, {len(unique[name])} unique")
    return DaaComparison(summary, sorted(common), unique)
