import numpy as np
import pandas as pd
import pytest

from src.microbiome_analysis.dataset import MicrobiomeDataset
from src.microbiome_analysis.diversity import (
    rarefy,
    alpha_diversity,
    compare_alpha_diversity,
    rarefaction_curve,
    plot_alpha_diversity,
    plot_rarefaction_curve
)
from conftest import make_counts, make_metadata


def test_observed_features_and_shannon(toy_dataset):
    alpha = alpha_diversity(toy_dataset, metrics=['observed_features', 'shannon'])
    assert alpha.index.tolist() == toy_dataset.counts.index.tolist()
    assert alpha.loc['gut2', 'observed_features'] == 5
    assert alpha.loc['gut1', 'observed_features'] == 6

    even = MicrobiomeDataset(pd.DataFrame([[10, 10, 10, 10]], index=['s1'], columns=['a', 'b', 'c', 'd']),
                             pd.DataFrame({'site': ['gut']}, index=['s1']))
    assert alpha_diversity(even, metrics=['shannon']).loc['s1', 'shannon'] == pytest.approx(np.log(4))


def test_default_metrics(toy_dataset):
    alpha = alpha_diversity(toy_dataset)
    assert alpha.columns.tolist() == ['observed_features', 'chao1', 'shannon', 'simpson']


def test_faith_pd(toy_dataset):
    alpha = alpha_diversity(toy_dataset, metrics=['faith_pd'])
    assert alpha.loc['gut1', 'faith_pd'] == pytest.approx(8.5)
    assert alpha.loc['gut2', 'faith_pd'] == pytest.approx(7.5)


def test_faith_pd_needs_tree():
    dataset = MicrobiomeDataset(make_counts(), make_metadata())
    with pytest.raises(ValueError, match="tree"):
        alpha_diversity(dataset, metrics=['faith_pd'])


def test_alpha_diversity_rejects_relative_abundances(toy_dataset):
    with pytest.raises(ValueError):
        alpha_diversity(toy_dataset.transform_relative(), metrics=['shannon'])


def test_rarefy_to_minimum_depth(toy_dataset):
    rarefied = rarefy(toy_dataset)
    assert rarefied.n_samples == 8
    assert (rarefied.sample_sums() == 100).all()
    assert rarefied.counts.loc['gut1'].equals(toy_dataset.counts.loc['gut1'])
    assert (rarefied.counts.loc['skin4'] <= toy_dataset.counts.loc['skin4', rarefied.counts.columns]).all()
    assert rarefied.tree is toy_dataset.tree


def test_rarefy_is_reproducible(toy_dataset):
    first = rarefy(toy_dataset, depth=50, seed=3)
    second = rarefy(toy_dataset, depth=50, seed=3)
    pd.testing.assert_frame_equal(first.counts, second.counts)
    assert (first.sample_sums() == 50).all()


def test_rarefy_drops_shallow_samples(toy_dataset):
    rarefied = rarefy(toy_dataset, depth=150)
    assert rarefied.counts.index.tolist() == ['skin4']
    assert rarefied.sample_metadata.index.tolist() == ['skin4']


def test_rarefy_invalid_depth(toy_dataset):
    with pytest.raises(ValueError):
        rarefy(toy_dataset, depth=0)
    with pytest.raises(ValueError):
        rarefy(toy_dataset, depth=1000)
    with pytest.raises(ValueError):
        rarefy(toy_dataset.transform_relative())


def test_compare_alpha_diversity(toy_dataset):
    alpha = alpha_diversity(toy_dataset, metrics=['observed_features', 'shannon'])
    results = compare_alpha_diversity(alpha, toy_dataset.sample_metadata, 'body_site')
    assert results['metric'].tolist() == ['observed_features', 'shannon']
    assert (results['test'] == 'mann-whitney').all()
    assert {'mean_gut', 'mean_skin', 'padj'} <= set(results.columns)
    assert results.loc[0, 'mean_gut'] == pytest.approx(5.5)
    assert results.loc[0, 'mean_skin'] == pytest.approx(6.0)


def test_compare_alpha_diversity_group_checks(toy_dataset):
    alpha = alpha_diversity(toy_dataset, metrics=['shannon'])
    assert compare_alpha_diversity(alpha, toy_dataset.sample_metadata, 'body_site', min_group_size=5).empty
    with pytest.raises(KeyError):
        compare_alpha_diversity(alpha, toy_dataset.sample_metadata, 'diet')
    with pytest.raises(ValueError):
        gut = toy_dataset.sample_metadata[toy_dataset.sample_metadata['body_site'] == 'gut']
        compare_alpha_diversity(alpha, gut, 'body_site')


def test_compare_alpha_diversity_three_groups(toy_dataset):
    metadata = toy_dataset.sample_metadata.copy()
    metadata['subject'] = ['A', 'A', 'A', 'B', 'B', 'B', 'C', 'C']
    alpha = alpha_diversity(toy_dataset, metrics=['shannon'])
    results = compare_alpha_diversity(alpha, metadata, 'subject', min_group_size=2)
    assert results.loc[0, 'test'] == 'kruskal-wallis'
    assert results.loc[0, 'n_groups'] == 3


def test_rarefaction_curve(toy_dataset, tmp_path):
    curve = rarefaction_curve(toy_dataset, depths=[100, 20, 50, 500], seed=1)
    assert curve.columns.tolist() == ['sample_id', 'depth', 'observed_features']
    assert sorted(curve['depth'].unique().tolist()) == [20, 50, 100]
    assert len(curve) == 24
    assert (curve['observed_features'] <= 6).all()
    assert plot_rarefaction_curve(curve, str(tmp_path)).endswith('rarefaction_curve.png')


def test_plot_alpha_diversity(toy_dataset, tmp_path):
    alpha = alpha_diversity(toy_dataset, metrics=['observed_features', 'shannon'])
    path = plot_alpha_diversity(alpha, toy_dataset.sample_metadata, 'body_site', str(tmp_path))
    assert (tmp_path / 'alpha_diversity.png').exists()
    assert path.endswith('alpha_diversity.png')
