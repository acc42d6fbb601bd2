"""
Beta diversity, ordination and permutation tests between sample groups.
"""

import logging

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from sklearn.decomposition import PCA
from skbio.diversity import beta_diversity as skbio_beta_diversity
from skbio.stats.distance import permanova as skbio_permanova, permdisp as skbio_permdisp
from skbio.stats.ordination import pcoa

from ..utils.shared_functions import CONFIG, save_plot
from .dataset import clr_transform

logger = logging.getLogger(__name__)

PHYLOGENETIC_BETA = ('unweighted_unifrac', 'weighted_unifrac')
PERMDISP_DIMENSIONS = 10


def beta_diversity(dataset, metric=None):
    """
    Pairwise between-sample distances.

    Args:
        dataset (MicrobiomeDataset): Counts or relative abundances.
        metric (str): scikit-bio/scipy metric name; the UniFrac metrics
            need integer counts and the tree.

    Returns:
        skbio.DistanceMatrix
    """
    metric = CONFIG['microbiome']['beta_metric'] if metric is None else metric
    ids = dataset.counts.index.tolist()
    values = dataset.counts.to_numpy(dtype=float)
    integral = np.allclose(values, np.round(values))

    if metric in PHYLOGENETIC_BETA:
        if dataset.tree is None:
            raise ValueError(f"Metric '{metric}' needs a phylogenetic tree")
        if not integral:
            raise ValueError(f"Metric '{metric}' needs integer counts")
        dm = skbio_beta_diversity(metric, np.round(values).astype(np.int64), ids=ids,
                                  taxa=dataset.counts.columns.tolist(), tree=dataset.tree)
    elif integral:
        dm = skbio_beta_diversity(metric, np.round(values).astype(np.int64), ids=ids)
    else:
        dm = skbio_beta_diversity(metric, values, ids=ids, validate=False)

    logger.info(f"Computed {metric} distances between {len(ids)} samples")
    return dm


def ordinate(distance_matrix, number_of_dimensions=None):
    """
    Principal coordinates analysis of a distance matrix.

    Returns the sample coordinates (PC1, PC2, ...) and the proportion of
    variance explained by each axis.
    """
    result = pcoa(distance_matrix)
    coords = result.samples.copy()
    proportion = result.proportion_explained.copy()
    if number_of_dimensions:
        coords = coords.iloc[:, :number_of_dimensions]
        proportion = proportion.iloc[:number_of_dimensions]
    coords.index.name = 'sample_id'
    logger.info(f"PCoA: first two axes explain {proportion.iloc[:2].sum():.1%} of variation")
    return coords, proportion


def clr_pca(dataset, n_components=2, pseudocount=1.0):
    """Aitchison ordination: PCA of centred log-ratio transformed counts."""
    clr = clr_transform(dataset.counts, pseudocount=pseudocount)
    n_components = min(n_components, clr.shape[0], clr.shape[1])
    pca = PCA(n_components=n_components)
    scores = pca.fit_transform(clr.to_numpy())
    axes = [f'PC{i + 1}' for i in range(n_components)]
    coords = pd.DataFrame(scores, index=clr.index, columns=axes)
    coords.index.name = 'sample_id'
    proportion = pd.Series(pca.explained_variance_ratio_, index=axes)
    return coords, proportion


def _grouping(distance_matrix, metadata, group_col):
    if group_col not in metadata.columns:
        raise KeyError(f"Grouping column '{group_col}' not found in sample metadata")
    ids = list(distance_matrix.ids)
    missing = [i for i in ids if i not in metadata.index]
    if missing:
        raise ValueError(f"Samples in the distance matrix have no metadata: {missing[:10]}")
    grouping = metadata.loc[ids, [group_col]]
    present = grouping[group_col].notna()
    if not present.all():
        logger.warning(f"Excluding {int((~present).sum())} samples with missing '{group_col}'")
        grouping = grouping[present].copy()
        distance_matrix = distance_matrix.filter(grouping.index.tolist())
    grouping[group_col] = grouping[group_col].astype(str)
    return distance_matrix, grouping


def permanova(distance_matrix, metadata, group_col, permutations=None):
    """PERMANOVA test of group separation; returns the scikit-bio result series."""
    permutations = CONFIG['microbiome']['permutations'] if permutations is None else permutations
    dm, grouping = _grouping(distance_matrix, metadata, group_col)
    result = skbio_permanova(dm, grouping, column=group_col, permutations=permutations)
    logger.info(f"PERMANOVA on {group_col}: pseudo-F={result['test statistic']:.3f}, p={result['p-value']}")
    return result


def permdisp(distance_matrix, metadata, group_col, permutations=None):
    """Test for differences in group dispersion, the usual companion of PERMANOVA."""
    permutations = CONFIG['microbiome']['permutations'] if permutations is None else permutations
    dm, grouping = _grouping(distance_matrix, metadata, group_col)
    # PCoA axes cannot outnumber the samples
    result = skbio_permdisp(dm, grouping, column=group_col, permutations=permutations,
                            dimensions=min(PERMDISP_DIMENSIONS, dm.shape[0]))
    logger.info(f"PERMDISP on {group_col}: F={result['test statistic']:.3f}, p={result['p-value']}")
    return result


def plot_ordination(coords, proportion, metadata, color_col, output_dir,
                    filename='ordination', shape_col=None, title=None):
    """Scatter plot of the first two ordination axes coloured by a metadata column."""
    columns = [c for c in (color_col, shape_col) if c]
    merged = coords.iloc[:, :2].join(metadata[columns], how='inner')
    x, y = coords.columns[0], coords.columns[1]
    fig, ax = plt.subplots(figsize=(8, 6))
    sns.scatterplot(data=merged, x=x, y=y, hue=color_col, style=shape_col, s=60, ax=ax)
    ax.set_xlabel(f'{x} [{proportion.iloc[0]:.1%}]')
    ax.set_ylabel(f'{y} [{proportion.iloc[1]:.1%}]')
    ax.set_title(title or f'Ordination coloured by {color_col}')
    ax.legend(bbox_to_anchor=(1.02, 1), loc='upper left')
    return save_plot(fig, filename, output_dir)
