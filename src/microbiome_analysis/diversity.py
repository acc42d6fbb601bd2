"""
Alpha Diversity
Rarefaction and within-sample diversity, compared between sample groups
"""

import logging

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from scipy import stats
from skbio.diversity import alpha_diversity as skbio_alpha_diversity
from statsmodels.stats.multitest import multipletests

from ..utils.shared_functions import CONFIG, save_plot

logger = logging.getLogger(__name__)

PHYLOGENETIC_ALPHA = ('faith_pd',)


def _integer_counts(counts):
    values = counts.to_numpy()
    if not np.allclose(values, np.round(values)):
        raise ValueError("Diversity estimates and rarefaction need raw integer counts, not transformed abundances")
    return np.round(values).astype(np.int64)


def rarefy(dataset, depth=None, seed=None, drop_empty_features=True):
    """
    Subsample every sample to the same number of reads without replacement.

    Samples with fewer reads than depth are removed. The default depth is
    the smallest sample depth.
    """
    seed = CONFIG['microbiome']['rarefaction_seed'] if seed is None else seed
    _integer_counts(dataset.counts)
    depths = dataset.sample_sums()
    if depth is None:
        depth = int(depths.min())
    if depth <= 0:
        raise ValueError(f"Rarefaction depth must be positive, got {depth}")

    kept = dataset.prune_samples(depth)
    if kept.n_samples == 0:
        raise ValueError(f"No samples have at least {depth} reads")

    table = kept.to_biom()
    rarefied = table.subsample(depth, axis='sample', by_id=False, with_replacement=False, seed=seed)
    counts = pd.DataFrame(
        rarefied.matrix_data.toarray().T,
        index=rarefied.ids(axis='sample'),
        columns=rarefied.ids(axis='observation')
    )
    counts = counts.reindex(index=kept.counts.index, columns=kept.counts.columns, fill_value=0)
    counts = counts.round().astype(np.int64)
    if drop_empty_features:
        empty = counts.columns[counts.sum(axis=0) == 0]
        if len(empty):
            logger.info(f"{len(empty)} features are no longer present after rarefaction and were removed")
        counts = counts.drop(columns=empty)

    logger.info(f"Rarefied {kept.n_samples} samples to {depth} reads (seed={seed})")
    return kept._with(counts=counts)


def alpha_diversity(dataset, metrics=None):
    """
    Within-sample diversity for each sample.

    Parameters:
    -----------
    dataset : MicrobiomeDataset
        Raw (ideally rarefied) integer counts
    metrics : list, optional
        scikit-bio metric names; Shannon is reported in natural log units,
        'faith_pd' needs the phylogenetic tree

    Returns:
    --------
    pd.DataFrame
        Samples x metrics
    """
    metrics = list(CONFIG['microbiome']['alpha_metrics'] if metrics is None else metrics)
    counts = _integer_counts(dataset.counts)
    ids = dataset.counts.index.tolist()

    results = {}
    for metric in metrics:
        if metric in PHYLOGENETIC_ALPHA:
            if dataset.tree is None:
                raise ValueError(f"Metric '{metric}' needs a phylogenetic tree")
            values = skbio_alpha_diversity(metric, counts, ids=ids,
                                           taxa=dataset.counts.columns.tolist(), tree=dataset.tree)
        elif metric == 'shannon':
            values = skbio_alpha_diversity(metric, counts, ids=ids, base=np.e)
        else:
            values = skbio_alpha_diversity(metric, counts, ids=ids)
        results[metric] = values

    alpha_df = pd.DataFrame(results)
    alpha_df.index.name = 'sample_id'
    logger.info(f"Computed {len(metrics)} alpha diversity metrics for {len(alpha_df)} samples")
    return alpha_df


def compare_alpha_diversity(alpha_df, metadata, group_col, min_group_size=None):
    """Mann-Whitney (two groups) or Kruskal-Wallis (more) per metric, BH adjusted."""
    min_group_size = CONFIG['microbiome']['min_group_size'] if min_group_size is None else min_group_size
    if group_col not in metadata.columns:
        raise KeyError(f"Grouping column '{group_col}' not found in sample metadata")
    merged = alpha_df.join(metadata[[group_col]], how='inner').dropna(subset=[group_col])
    groups = sorted(merged[group_col].unique().tolist(), key=str)
    if len(groups) < 2:
        raise ValueError(f"'{group_col}' needs at least two groups, found {groups}")

    rows = []
    for metric in alpha_df.columns:
        samples = [merged.loc[merged[group_col] == g, metric].dropna() for g in groups]
        if min(len(s) for s in samples) < min_group_size:
            logger.warning(f"Skipping {metric}: fewer than {min_group_size} samples in a group")
            continue
        try:
            if len(groups) == 2:
                test = 'mann-whitney'
                stat, pval = stats.mannwhitneyu(samples[0], samples[1], alternative='two-sided')
            else:
                test = 'kruskal-wallis'
                stat, pval = stats.kruskal(*samples)
        except ValueError as ve:
            # e.g. every value identical
            logger.warning(f"Statistical test failed for {metric} by {group_col}: {ve}")
            continue
        row = {'metric': metric, 'test': test, 'n_groups': len(groups), 'statistic': stat, 'p_value': pval}
        for g, s in zip(groups, samples):
            row[f'mean_{g}'] = s.mean()
        rows.append(row)

    results = pd.DataFrame(rows)
    if not results.empty:
        results['padj'] = multipletests(results['p_value'], method='fdr_bh')[1]
    return results


def rarefaction_curve(dataset, depths, metric='observed_features', seed=None):
    """Alpha diversity of each sample at increasing rarefaction depths (long format)."""
    frames = []
    for depth in sorted(depths):
        if (dataset.sample_sums() >= depth).sum() == 0:
            logger.warning(f"No samples reach depth {depth}; stopping the curve")
            break
        values = alpha_diversity(rarefy(dataset, depth=depth, seed=seed), metrics=[metric])[metric]
        frames.append(pd.DataFrame({'sample_id': values.index, 'depth': depth, metric: values.to_numpy()}))
    if not frames:
        return pd.DataFrame(columns=['sample_id', 'depth', metric])
    return pd.concat(frames, ignore_index=True)


def plot_alpha_diversity(alpha_df, metadata, group_col, output_dir, filename='alpha_diversity'):
    """Box and strip plots of each metric by group, one panel per metric"""
    merged = alpha_df.join(metadata[[group_col]], how='inner')
    long = merged.reset_index().melt(id_vars=['sample_id', group_col], var_name='metric', value_name='value')
    metrics = alpha_df.columns.tolist()
    fig, axes = plt.subplots(1, len(metrics), figsize=(4 * len(metrics), 5), squeeze=False)
    for ax, metric in zip(axes[0], metrics):
        data = long[long['metric'] == metric]
        sns.boxplot(data=data, x=group_col, y='value', ax=ax, showfliers=False)
        sns.stripplot(data=data, x=group_col, y='value', ax=ax, color='black', size=3, alpha=0.6)
        ax.set_title(metric)
        ax.set_ylabel('Alpha diversity')
        ax.tick_params(axis='x', rotation=45)
    fig.tight_layout()
    return save_plot(fig, filename, output_dir)


def plot_rarefaction_curve(curve_df, output_dir, metric='observed_features', filename='rarefaction_curve'):
    fig, ax = plt.subplots(figsize=(8, 5))
    sns.lineplot(data=curve_df, x='depth', y=metric, hue='sample_id', legend=False, ax=ax)
    ax.set_xlabel('Sequencing depth')
    ax.set_ylabel(metric)
    ax.set_title('Rarefaction curves')
    return save_plot(fig, filename, output_dir)
