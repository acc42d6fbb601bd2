"""
Differential Abundance
Per-feature comparison of abundances between two sample groups
"""

import logging
import warnings

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
import statsmodels.api as sm
from scipy import stats
from statsmodels.stats.multitest import multipletests
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from ..utils.shared_functions import CONFIG, save_plot
from .dataset import clr_transform

logger = logging.getLogger(__name__)

MIN_DISPERSION = 1e-8
MIN_REPLICATES = 2
RESULT_COLUMNS = ['baseMean', 'log2FoldChange', 'lfcSE', 'stat', 'pvalue', 'padj']


def size_factors(counts):
    """
    Median-of-ratios size factors per sample.

    Geometric means use only positive counts so that features with zeros
    still contribute; factors are scaled to a geometric mean of one.
    """
    values = counts.to_numpy(dtype=float)
    positive = values > 0
    log_values = np.log(values, out=np.zeros_like(values), where=positive)
    log_geo_means = log_values.sum(axis=0) / values.shape[0]
    usable = positive.any(axis=0)
    if not usable.any():
        raise ValueError("Every feature is zero in every sample; size factors are undefined")

    factors = []
    for sample, log_row, pos_row in zip(counts.index, log_values, positive):
        keep = usable & pos_row
        if not keep.any():
            raise ValueError(f"Sample '{sample}' has no reads; remove it before normalization")
        factors.append(np.exp(np.median(log_row[keep] - log_geo_means[keep])))
    factors = np.asarray(factors)
    factors = factors / np.exp(np.mean(np.log(factors)))
    return pd.Series(factors, index=counts.index, name='size_factor')


def _contrast(metadata, group_col, reference, test):
    if group_col not in metadata.columns:
        raise KeyError(f"Grouping column '{group_col}' not found in sample metadata")
    labels = metadata[group_col].dropna().astype(str)
    levels = sorted(labels.unique().tolist())
    if reference is None and test is None:
        if len(levels) != 2:
            raise ValueError(f"'{group_col}' has {len(levels)} groups {levels}; pass reference and test to choose two")
        reference, test = levels
    elif test is None or reference is None:
        others = [lvl for lvl in levels if lvl != str(reference if test is None else test)]
        if len(others) != 1:
            raise ValueError(f"Cannot infer the second group of '{group_col}' from {levels}")
        if test is None:
            test = others[0]
        else:
            reference = others[0]
    reference, test = str(reference), str(test)
    for level in (reference, test):
        if level not in levels:
            raise ValueError(f"Group '{level}' not found in '{group_col}' (levels: {levels})")
    return labels, reference, test


def _dispersion(normalized, is_test):
    """Method-of-moments negative binomial dispersion within each group, averaged"""
    estimates = []
    for mask in (is_test, ~is_test):
        group = normalized[mask]
        mean = group.mean()
        if mean <= 0 or len(group) < 2:
            continue
        estimates.append(max((group.var(ddof=1) - mean) / mean ** 2, MIN_DISPERSION))
    return float(np.mean(estimates)) if estimates else MIN_DISPERSION


def _nb_glm(counts, is_test):
    sf = size_factors(counts)
    normalized = counts.div(sf, axis=0)
    offset = np.log(sf.to_numpy())
    design = np.column_stack([np.ones(len(is_test)), is_test.astype(float)])

    rows = []
    for feature in counts.columns:
        y = counts[feature].to_numpy(dtype=float)
        norm = normalized[feature].to_numpy()
        row = {'feature_id': feature, 'baseMean': norm.mean(), 'log2FoldChange': np.nan,
               'lfcSE': np.nan, 'stat': np.nan, 'pvalue': np.nan}
        alpha = _dispersion(norm, is_test)
        try:
            with warnings.catch_warnings():
                # all-zero groups push the coefficient to the boundary; the large SE reflects it
                warnings.simplefilter('ignore')
                fit = sm.GLM(y, design, family=sm.families.NegativeBinomial(alpha=alpha), offset=offset).fit()
            row.update({
                'log2FoldChange': fit.params[1] / np.log(2),
                'lfcSE': fit.bse[1] / np.log(2),
                'stat': fit.tvalues[1],
                'pvalue': fit.pvalues[1]
            })
        except (ValueError, np.linalg.LinAlgError, PerfectSeparationError) as e:
            logger.warning(f"Negative binomial fit failed for {feature}: {e}")
        rows.append(row)
    return pd.DataFrame(rows).set_index('feature_id')


def _wilcoxon(counts, is_test, pseudocount=0.5):
    clr = clr_transform(counts, pseudocount=pseudocount)
    rows = []
    for feature in counts.columns:
        test_values = clr.loc[is_test, feature]
        ref_values = clr.loc[~is_test, feature]
        row = {'feature_id': feature, 'baseMean': counts[feature].mean(),
               'log2FoldChange': (test_values.mean() - ref_values.mean()) / np.log(2),
               'lfcSE': np.nan, 'stat': np.nan, 'pvalue': np.nan}
        try:
            stat, pval = stats.mannwhitneyu(test_values, ref_values, alternative='two-sided')
            row.update({'stat': stat, 'pvalue': pval})
        except ValueError as ve:
            logger.warning(f"Wilcoxon test failed for {feature}: {ve}")
        rows.append(row)
    return pd.DataFrame(rows).set_index('feature_id')


def differential_abundance(dataset, group_col, reference=None, test=None, method='nb_glm', min_total=1):
    """
    Test every feature for a difference between two groups of samples.

    Parameters:
    -----------
    dataset : MicrobiomeDataset
        Raw integer counts (not rarefied, not relative)
    group_col : str
        Sample metadata column defining the groups
    reference, test : str, optional
        Levels to compare; log2FoldChange is test over reference. Needed
        when group_col has more than two levels.
    method : str
        'nb_glm' (negative binomial GLM with size-factor offset, Wald test)
        or 'wilcoxon' (Mann-Whitney U on CLR-transformed abundances)
    min_total : int
        Features with fewer reads in the compared samples are not tested

    Returns:
    --------
    pd.DataFrame
        One row per feature with baseMean, log2FoldChange, lfcSE, stat,
        pvalue, padj (Benjamini-Hochberg) and the taxonomy ranks
    """
    labels, reference, test = _contrast(dataset.sample_metadata, group_col, reference, test)
    selected = labels[labels.isin([reference, test])]
    subset = dataset.subset_samples(ids=selected.index.tolist()).prune_features(min_total)
    is_test = (selected.loc[subset.counts.index] == test).to_numpy()

    n_test, n_ref = int(is_test.sum()), int((~is_test).sum())
    if n_test < MIN_REPLICATES or n_ref < MIN_REPLICATES:
        raise ValueError(f"Need at least {MIN_REPLICATES} samples per group: {test} n={n_test}, {reference} n={n_ref}")
    logger.info(f"Differential abundance ({method}) of {subset.n_features} features: "
                f"{test} (n={n_test}) vs {reference} (n={n_ref})")

    if method == 'nb_glm':
        results = _nb_glm(subset.counts, is_test)
    elif method == 'wilcoxon':
        results = _wilcoxon(subset.counts, is_test)
    else:
        raise ValueError(f"Unknown method: {method}")

    results['padj'] = np.nan
    tested = results['pvalue'].notna()
    if tested.any():
        results.loc[tested, 'padj'] = multipletests(results.loc[tested, 'pvalue'], method='fdr_bh')[1]
    results = results[RESULT_COLUMNS]
    if subset.taxonomy is not None:
        results = results.join(subset.taxonomy, how='left')
    results = results.sort_values('padj', na_position='last')
    results.attrs['contrast'] = (group_col, test, reference)
    return results


def significant_features(results, alpha=None):
    """Features with adjusted p-value below alpha."""
    alpha = CONFIG['microbiome']['fdr_alpha'] if alpha is None else alpha
    return results[results['padj'] < alpha].sort_values('padj')


def plot_log2_fold_changes(results, output_dir, x_rank='Genus', color_rank='Phylum',
                           filename='differential_abundance'):
    """Log2 fold change of each feature grouped by taxon, ordered by the largest change."""
    data = results.dropna(subset=['log2FoldChange']).reset_index()
    x_col = x_rank if x_rank in data.columns else 'feature_id'
    hue = color_rank if color_rank in data.columns else None
    data[x_col] = data[x_col].fillna('Unassigned')
    order = data.groupby(x_col)['log2FoldChange'].max().sort_values(ascending=False).index.tolist()

    fig, ax = plt.subplots(figsize=(max(6, 0.35 * len(order)), 6))
    sns.stripplot(data=data, x=x_col, y='log2FoldChange', hue=hue, order=order, size=7, ax=ax)
    ax.axhline(0, color='grey', linestyle='--', linewidth=1)
    ax.tick_params(axis='x', rotation=90)
    contrast = results.attrs.get('contrast')
    if contrast:
        ax.set_title(f'{contrast[0]}: {contrast[1]} vs {contrast[2]}')
    if hue:
        ax.legend(bbox_to_anchor=(1.02, 1), loc='upper left', title=hue)
    fig.tight_layout()
    return save_plot(fig, filename, output_dir)
