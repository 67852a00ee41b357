# picrust2_tools/analysis/daa_methods.py
"""
Backend adapters for the differential abundance methods.

Each method is split into three steps used by the dispatcher registry:

- prepare_*: reshape the aligned abundance table into the orientation and
  value type the backend expects (integer counts, samples as rows, ...)
- invoke_*: run the statistical computation
- collect_*: turn the backend output into frames with the canonical columns
  feature, method, group1, group2, effect_size, p_values

All adapters receive a DaaInput whose `levels` list starts with the
reference level; every other level is reported against it.
"""
import logging
import warnings
from typing import Dict, List, NamedTuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import optimize, stats
from skbio.stats.composition import clr
from sklearn.discriminant_analysis import LinearDiscriminantAnalysis
from statsmodels.formula.api import ols
from statsmodels.nonparametric.smoothers_lowess import lowess
from statsmodels.tools.sm_exceptions import ModelWarning, PerfectSeparationError
from pydeseq2.dds import DeseqDataSet
from pydeseq2.ds import DeseqStats

logger = logging.getLogger('picrust2_tools')


class DaaInput(NamedTuple):
    abundance: pd.DataFrame  # features x samples
    groups: pd.Series        # group level per sample, same order as abundance columns
    levels: List[str]        # reference level first


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def integer_counts(abundance):
    """Round predicted abundances to integer counts for count-based models."""
    rounded = abundance.round().astype(np.int64)
    if not np.allclose(abundance.values, rounded.values):
        logger.info("Rounding non-integer abundances to counts")
    return rounded


def design_matrix(groups, levels):
    """
    Treatment-coded design: intercept plus one indicator per non-reference level.

    Raises:
        numpy.linalg.LinAlgError: rank-deficient design or no residual df
    """
    columns = [np.ones(len(groups))]
    for level in levels[1:]:
        columns.append((groups.values == level).astype(float))
    X = np.column_stack(columns)
    if np.linalg.matrix_rank(X) < X.shape[1]:
        raise np.linalg.LinAlgError("design matrix is singular")
    if X.shape[0] <= X.shape[1]:
        raise np.linalg.LinAlgError("design leaves no residual degrees of freedom")
    return X


def level_tokens(levels):
    """Map group levels to formula-safe tokens (g0 is the reference)."""
    return {level: f"g{i}" for i, level in enumerate(levels)}


def _contrast_frame(features, method, reference, level, effect, p_values):
    return pd.DataFrame({
        "feature": list(features),
        "method": method,
        "group1": reference,
        "group2": level,
        "effect_size": np.asarray(effect, dtype=float),
        "p_values": np.asarray(p_values, dtype=float),
    })


def tmm_factors(counts, logratio_trim=0.3, sum_trim=0.05):
    """
    Trimmed mean of M-values normalization factors (Robinson & Oshlack 2010).

    Args:
        counts: features x samples count matrix (numpy array)

    Returns:
        Array of per-sample factors scaled to a geometric mean of 1
    """
    counts = np.asarray(counts, dtype=float)
    lib = counts.sum(axis=0)
    with np.errstate(divide="ignore", invalid="ignore"):
        upper_q = np.array([np.percentile(counts[:, j] / lib[j], 75) for j in range(counts.shape[1])])
    ref = int(np.argmin(np.abs(upper_q - upper_q.mean())))

    factors = np.ones(counts.shape[1])
    ref_counts, n_ref = counts[:, ref], lib[ref]
    for j in range(counts.shape[1]):
        obs, n_obs = counts[:, j], lib[j]
        keep = (obs > 0) & (ref_counts > 0)
        if j == ref or keep.sum() < 2:
            continue
        o, r = obs[keep], ref_counts[keep]
        log_r = np.log2((o / n_obs) / (r / n_ref))
        abs_e = (np.log2(o / n_obs) + np.log2(r / n_ref)) / 2
        var = (n_obs - o) / n_obs / o + (n_ref - r) / n_ref / r

        n = len(log_r)
        lo_l, hi_l = np.floor(n * logratio_trim) + 1, n + 1 - (np.floor(n * logratio_trim) + 1)
        lo_s, hi_s = np.floor(n * sum_trim) + 1, n + 1 - (np.floor(n * sum_trim) + 1)
        rank_r, rank_e = stats.rankdata(log_r), stats.rankdata(abs_e)
        trimmed = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)
        if trimmed.any():
            factors[j] = 2 ** (np.sum(log_r[trimmed] / var[trimmed]) / np.sum(1 / var[trimmed]))
    return factors / np.exp(np.mean(np.log(factors)))


def _drop_all_zero(abundance, method):
    nonzero = abundance.sum(axis=1) > 0
    if not nonzero.all():
        logger.info(f"{method}: skipping {int((~nonzero).sum())} features with zero counts in all samples")
    return abundance.loc[nonzero]


# ---------------------------------------------------------------------------
# ALDEx2: Monte Carlo Dirichlet instances + CLR + per-instance tests
# ---------------------------------------------------------------------------

def prepare_aldex2(data):
    counts = _drop_all_zero(integer_counts(data.abundance), "ALDEx2")
    return counts


def invoke_aldex2(counts, data, mc_samples=128, random_state=1234):
    """
    Draw mc_samples Dirichlet instances per sample, CLR-transform them and run
    the group tests on every instance. Returns expected (mean) p-values.
    """
    rng = np.random.default_rng(random_state)
    n_feats, n_samps = counts.shape
    values = counts.values.astype(float)

    clr_stack = np.empty((mc_samples, n_feats, n_samps))
    for j in range(n_samps):
        draws = rng.dirichlet(values[:, j] + 0.5, size=mc_samples)
        draws = np.maximum(draws, np.finfo(float).tiny)
        clr_stack[:, :, j] = clr(draws)

    group_idx = [np.where(data.groups.values == level)[0] for level in data.levels]
    raw = {}
    if len(data.levels) == 2:
        a, b = clr_stack[:, :, group_idx[0]], clr_stack[:, :, group_idx[1]]
        welch = stats.ttest_ind(b, a, axis=2, equal_var=False)
        wilcox = stats.mannwhitneyu(b, a, axis=2, alternative="two-sided")
        effect = b.mean(axis=2) - a.mean(axis=2)
        raw["ALDEx2_Welch's t test"] = (np.median(effect, axis=0), np.nanmean(welch.pvalue, axis=0))
        raw["ALDEx2_Wilcoxon rank test"] = (np.median(effect, axis=0), np.nanmean(wilcox.pvalue, axis=0))
    else:
        samples = [clr_stack[:, :, idx] for idx in group_idx]
        kw = stats.kruskal(*samples, axis=2)
        anova = stats.f_oneway(*samples, axis=2)
        raw["ALDEx2_Kruskal-Wallace test"] = (np.nanmean(kw.statistic, axis=0), np.nanmean(kw.pvalue, axis=0))
        raw["ALDEx2_glm test"] = (np.nanmean(anova.statistic, axis=0), np.nanmean(anova.pvalue, axis=0))
    return {"features": counts.index.tolist(), "tests": raw}


def collect_aldex2(raw, data):
    reference = data.levels[0]
    group2 = data.levels[1] if len(data.levels) == 2 else ", ".join(data.levels[1:])
    return [
        _contrast_frame(raw["features"], label, reference, group2, effect, p_values)
        for label, (effect, p_values) in raw["tests"].items()
    ]


# ---------------------------------------------------------------------------
# DESeq2 via pydeseq2
# ---------------------------------------------------------------------------

def prepare_deseq2(data):
    counts = _drop_all_zero(integer_counts(data.abundance), "DESeq2")
    tokens = level_tokens(data.levels)
    metadata = pd.DataFrame({"condition": data.groups.map(tokens).values},
                            index=counts.columns)
    return {"counts": counts.T, "metadata": metadata, "tokens": tokens}


def invoke_deseq2(prepared, data):
    dds = DeseqDataSet(
        counts=prepared["counts"],
        metadata=prepared["metadata"],
        design="~condition",
        refit_cooks=True,
        quiet=True,
    )
    dds.deseq2()

    tokens = prepared["tokens"]
    reference = data.levels[0]
    results = {}
    for level in data.levels[1:]:
        stat_res = DeseqStats(dds, contrast=["condition", tokens[level], tokens[reference]], quiet=True)
        stat_res.summary()
        results[level] = stat_res.results_df.copy()
    return results


def collect_deseq2(raw, data):
    frames = []
    for level, res in raw.items():
        frames.append(_contrast_frame(res.index, "DESeq2", data.levels[0], level,
                                      res["log2FoldChange"], res["pvalue"]))
    return frames


# ---------------------------------------------------------------------------
# edgeR: TMM offsets + negative binomial GLM per feature
# ---------------------------------------------------------------------------

def prepare_edger(data):
    counts = _drop_all_zero(integer_counts(data.abundance), "edgeR")
    factors = tmm_factors(counts.values)
    offset = np.log(counts.sum(axis=0).values * factors)
    return {"counts": counts.T, "offset": offset, "X": design_matrix(data.groups, data.levels)}


def common_dispersion(counts, offset, groups, bounds=(1e-6, 10.0)):
    """
    Negative binomial dispersion shared by every feature.

    The group-wise means are the Poisson maximum likelihood fit of a one-factor
    design; the dispersion maximizes the summed NB log-likelihood given those means.

    Args:
        counts: samples x features count matrix
        offset: log effective library size per sample
        groups: group level per sample
        bounds: search interval for the dispersion

    Returns:
        Dispersion (alpha, variance = mu + alpha * mu^2)
    """
    y = np.asarray(counts, dtype=float)
    groups = np.asarray(groups)
    lib = np.exp(offset)
    mu = np.empty_like(y)
    for level in np.unique(groups):
        mask = groups == level
        rate = y[mask].sum(axis=0) / lib[mask].sum()
        mu[mask] = np.outer(lib[mask], rate)

    def neg_loglik(log_alpha):
        size = 1.0 / np.exp(log_alpha)
        return -stats.nbinom.logpmf(y, size, size / (size + mu)).sum()

    res = optimize.minimize_scalar(neg_loglik, bounds=tuple(np.log(bounds)), method="bounded")
    return float(np.exp(res.x))


def invoke_edger(prepared, data, maxiter=100):
    counts, offset, X = prepared["counts"], prepared["offset"], prepared["X"]
    n_contrasts = X.shape[1] - 1
    coefs = np.full((counts.shape[1], n_contrasts), np.nan)
    pvals = np.full((counts.shape[1], n_contrasts), np.nan)

    dispersion = common_dispersion(counts.values, offset, data.groups.values)
    logger.info(f"edgeR: common dispersion {dispersion:.4g}")
    family = sm.families.NegativeBinomial(alpha=dispersion)

    failed = 0
    for i, feature in enumerate(counts.columns):
        y = counts[feature].values
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", ModelWarning)
                warnings.simplefilter("ignore", RuntimeWarning)
                res = sm.GLM(y, X, family=family, offset=offset).fit(maxiter=maxiter)
        except (np.linalg.LinAlgError, ValueError, OverflowError, PerfectSeparationError) as e:
            failed += 1
            logger.debug(f"edgeR: model for {feature} failed: {e}")
            continue
        p = np.asarray(res.pvalues)[1:1 + n_contrasts]
        if not np.isfinite(p).all():
            failed += 1
            logger.debug(f"edgeR: model for {feature} returned non-finite p-values")
            continue
        coefs[i] = np.asarray(res.params)[1:1 + n_contrasts]
        pvals[i] = p
    if failed:
        logger.warning(f"edgeR: {failed} features could not be fitted and were left out")
    if np.isnan(pvals).all():
        raise np.linalg.LinAlgError("negative binomial model failed for every feature")
    return {"features": counts.columns.tolist(), "coef": coefs / np.log(2), "p": pvals}


def collect_edger(raw, data):
    return [
        _contrast_frame(raw["features"], "edgeR", data.levels[0], level, raw["coef"][:, k], raw["p"][:, k])
        for k, level in enumerate(data.levels[1:])
    ]


# ---------------------------------------------------------------------------
# limma-voom: log-CPM, lowess mean-variance trend, precision-weighted fits
# ---------------------------------------------------------------------------

def prepare_limma_voom(data):
    counts = _drop_all_zero(data.abundance, "limma voom")
    lib = counts.sum(axis=0).values * tmm_factors(counts.values)
    log_cpm = np.log2((counts.values + 0.5) / (lib + 1) * 1e6)
    return {"features": counts.index.tolist(), "log_cpm": log_cpm, "lib": lib,
            "X": design_matrix(data.groups, data.levels)}


def invoke_limma_voom(prepared, data, span=0.5):
    y, lib, X = prepared["log_cpm"], prepared["lib"], prepared["X"]
    n, p = X.shape

    # Mean-variance trend from unweighted fits
    beta, _, _, _ = np.linalg.lstsq(X, y.T, rcond=None)
    fitted = (X @ beta).T
    resid_sd = np.sqrt(np.sum((y - fitted) ** 2, axis=1) / (n - p))
    mean_log_count = y.mean(axis=1) + np.mean(np.log2(lib + 1)) - np.log2(1e6)
    trend = lowess(np.sqrt(resid_sd), mean_log_count, frac=span, return_sorted=True)

    fitted_count = fitted + np.log2(lib + 1) - np.log2(1e6)
    predicted = np.interp(fitted_count, trend[:, 0], trend[:, 1])
    weights = 1.0 / np.maximum(predicted, 1e-8) ** 4

    n_contrasts = p - 1
    coefs = np.full((y.shape[0], n_contrasts), np.nan)
    pvals = np.full((y.shape[0], n_contrasts), np.nan)
    for i in range(y.shape[0]):
        res = sm.WLS(y[i], X, weights=weights[i]).fit()
        coefs[i] = res.params[1:]
        pvals[i] = res.pvalues[1:]
    return {"features": prepared["features"], "coef": coefs, "p": pvals}


def collect_limma_voom(raw, data):
    return [
        _contrast_frame(raw["features"], "limma voom", data.levels[0], level, raw["coef"][:, k], raw["p"][:, k])
        for k, level in enumerate(data.levels[1:])
    ]


# ---------------------------------------------------------------------------
# metagenomeSeq: cumulative sum scaling + log2 linear model
# ---------------------------------------------------------------------------

def css_scaling(counts, quantile=0.5):
    """Cumulative sum scaling factors: per-sample sum of counts up to the given quantile."""
    values = np.asarray(counts, dtype=float)
    scales = np.empty(values.shape[1])
    for j in range(values.shape[1]):
        col = values[:, j]
        nonzero = col[col > 0]
        if nonzero.size == 0:
            raise np.linalg.LinAlgError("sample with no counts cannot be scaled")
        q = np.quantile(nonzero, quantile)
        scales[j] = col[col <= q].sum()
    return scales


def prepare_metagenomeseq(data, quantile=0.5):
    counts = _drop_all_zero(data.abundance, "metagenomeSeq")
    scales = css_scaling(counts.values, quantile)
    normalized = np.log2(counts.values / scales * 1000 + 1)
    return {"features": counts.index.tolist(), "y": normalized, "X": design_matrix(data.groups, data.levels)}


def invoke_metagenomeseq(prepared, data):
    y, X = prepared["y"], prepared["X"]
    n_contrasts = X.shape[1] - 1
    coefs = np.full((y.shape[0], n_contrasts), np.nan)
    pvals = np.full((y.shape[0], n_contrasts), np.nan)
    for i in range(y.shape[0]):
        res = sm.OLS(y[i], X).fit()
        coefs[i] = res.params[1:]
        pvals[i] = res.pvalues[1:]
    return {"features": prepared["features"], "coef": coefs, "p": pvals}


def collect_metagenomeseq(raw, data):
    return [
        _contrast_frame(raw["features"], "metagenomeSeq", data.levels[0], level, raw["coef"][:, k], raw["p"][:, k])
        for k, level in enumerate(data.levels[1:])
    ]


# ---------------------------------------------------------------------------
# Maaslin2: TSS + LOG transform + linear model with the group as a factor
# ---------------------------------------------------------------------------

def prepare_maaslin2(data, min_prevalence=0.1):
    abundance = _drop_all_zero(data.abundance, "Maaslin2")
    tss = abundance / abundance.sum(axis=0)
    prevalence = (tss > 0).mean(axis=1)
    keep = prevalence >= min_prevalence
    if not keep.all():
        logger.info(f"Maaslin2: {int((~keep).sum())} features below prevalence {min_prevalence} not tested")
    tss = tss.loc[keep]

    def log_transform(row):
        positive = row[row > 0]
        return np.log2(row.where(row > 0, positive.min() / 2))

    transformed = tss.apply(log_transform, axis=1)
    tokens = level_tokens(data.levels)
    design = pd.DataFrame({"group": data.groups.map(tokens).values}, index=tss.columns)
    return {"values": transformed, "design": design, "tokens": tokens}


def invoke_maaslin2(prepared, data):
    design, tokens = prepared["design"], prepared["tokens"]
    term = "C(group, Treatment(reference='g0'))"
    results = {level: [] for level in data.levels[1:]}
    for feature, row in prepared["values"].iterrows():
        df_tmp = design.assign(value=row.values)
        model = ols(f"value ~ {term}", data=df_tmp).fit()
        for level in data.levels[1:]:
            name = next(n for n in model.params.index if n.endswith(f"[T.{tokens[level]}]"))
            results[level].append((feature, model.params[name], model.pvalues[name]))
    return results


def collect_maaslin2(raw, data):
    frames = []
    for level, rows in raw.items():
        if not rows:
            continue
        features, coefs, pvals = zip(*rows)
        frames.append(_contrast_frame(features, "Maaslin2", data.levels[0], level, coefs, pvals))
    return frames


# ---------------------------------------------------------------------------
# LinDA: CLR + linear model + bias correction by the mode of the coefficients
# ---------------------------------------------------------------------------

def prepare_linda(data, pseudo_count=0.5):
    counts = _drop_all_zero(data.abundance, "LinDA")
    log2_clr = clr(counts.T.values.astype(float) + pseudo_count) / np.log(2)
    return {"features": counts.index.tolist(), "W": log2_clr, "X": design_matrix(data.groups, data.levels)}


def _coefficient_mode(values):
    values = values[np.isfinite(values)]
    try:
        kde = stats.gaussian_kde(values)
    except (np.linalg.LinAlgError, ValueError):
        return float(np.median(values))
    grid = np.linspace(values.min(), values.max(), 512)
    return float(grid[np.argmax(kde(grid))])


def invoke_linda(prepared, data):
    W, X = prepared["W"], prepared["X"]
    n, p = X.shape
    df_resid = n - p
    xtx_inv = np.linalg.inv(X.T @ X)
    beta = xtx_inv @ X.T @ W                     # p x features
    resid = W - X @ beta
    sigma2 = np.sum(resid ** 2, axis=0) / df_resid
    se = np.sqrt(np.outer(np.diag(xtx_inv), sigma2))

    coefs, pvals = [], []
    for k in range(1, p):
        bias = _coefficient_mode(beta[k])
        corrected = beta[k] - bias
        with np.errstate(divide="ignore", invalid="ignore"):
            t_stat = corrected / se[k]
        coefs.append(corrected)
        pvals.append(2 * stats.t.sf(np.abs(t_stat), df_resid))
    return {"features": prepared["features"], "coef": np.array(coefs).T, "p": np.array(pvals).T}


def collect_linda(raw, data):
    return [
        _contrast_frame(raw["features"], "LinDA", data.levels[0], level, raw["coef"][:, k], raw["p"][:, k])
        for k, level in enumerate(data.levels[1:])
    ]


# ---------------------------------------------------------------------------
# LEfSe (lefser): Kruskal-Wallis and Wilcoxon filters, then LDA effect size
# ---------------------------------------------------------------------------

def prepare_lefser(data):
    counts = _drop_all_zero(data.abundance, "Lefser")
    return counts / counts.sum(axis=0) * 1e6


def invoke_lefser(rel, data, kruskal_threshold=0.05, wilcox_threshold=0.05, lda_threshold=2.0):
    reference, other = data.levels
    in_ref = (data.groups.values == reference)
    kept: Dict[str, float] = {}
    for feature, row in rel.iterrows():
        values = row.values
        try:
            kw_p = stats.kruskal(values[in_ref], values[~in_ref]).pvalue
            wx_p = stats.mannwhitneyu(values[~in_ref], values[in_ref], alternative="two-sided").pvalue
        except ValueError:
            # identical values in every sample
            continue
        if kw_p < kruskal_threshold and wx_p < wilcox_threshold:
            kept[feature] = kw_p
    logger.info(f"Lefser: {len(kept)} of {rel.shape[0]} features pass the Kruskal-Wallis/Wilcoxon filters")
    if not kept:
        return {"features": [], "score": np.array([]), "p": np.array([])}

    X = rel.loc[list(kept)].T.values
    y = np.where(in_ref, reference, other)
    lda = LinearDiscriminantAnalysis(n_components=1).fit(X, y)
    scalings = lda.scalings_[:, 0]
    scalings = scalings / np.sqrt(np.sum(scalings ** 2))
    mean_diff = X[~in_ref].mean(axis=0) - X[in_ref].mean(axis=0)
    score = np.sign(mean_diff) * np.log10(1 + np.abs((np.abs(scalings) + np.abs(mean_diff)) / 2))

    passing = np.abs(score) >= lda_threshold
    logger.info(f"Lefser: {int(passing.sum())} features with |LDA score| >= {lda_threshold}")
    features = np.array(list(kept))[passing].tolist()
    p_values = np.array(list(kept.values()))[passing]
    return {"features": features, "score": score[passing], "p": p_values}


def collect_lefser(raw, data):
    if not raw["features"]:
        return []
    return [_contrast_frame(raw["features"], "Lefser", data.levels[0], data.levels[1], raw["score"], raw["p"])]
