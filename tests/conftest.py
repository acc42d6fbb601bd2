import io

import matplotlib
matplotlib.use('Agg')
import numpy as np
import pandas as pd
import pytest
from skbio import TreeNode

from src.microbiome_analysis.dataset import MicrobiomeDataset

FEATURES = ['F1', 'F2', 'F3', 'F4', 'F5', 'F6']
NEWICK = "(((F1:1.0,F2:1.0):0.5,(F3:1.0,F4:1.0):0.5):0.5,(F5:1.0,F6:1.0):1.0);"


def make_counts():
    return pd.DataFrame(
        [
            [50, 40, 5, 3, 1, 1],
            [45, 45, 4, 4, 2, 0],
            [60, 30, 6, 2, 1, 1],
            [55, 35, 5, 3, 0, 2],
            [2, 3, 40, 50, 3, 2],
            [1, 4, 45, 45, 2, 3],
            [3, 2, 50, 40, 4, 1],
            [4, 4, 84, 96, 4, 8],
        ],
        index=['gut1', 'gut2', 'gut3', 'gut4', 'skin1', 'skin2', 'skin3', 'skin4'],
        columns=FEATURES
    )


def make_metadata():
    return pd.DataFrame(
        {
            'body_site': ['gut'] * 4 + ['skin'] * 4,
            'subject': ['A', 'B', 'C', 'D', 'A', 'B', 'C', 'D'],
        },
        index=['gut1', 'gut2', 'gut3', 'gut4', 'skin1', 'skin2', 'skin3', 'skin4']
    )


def make_taxonomy():
    return pd.DataFrame(
        {
            'Kingdom': ['Bacteria'] * 6,
            'Phylum': ['Firmicutes', 'Firmicutes', 'Actinobacteria', 'Actinobacteria',
                       'Proteobacteria', 'Proteobacteria'],
            'Genus': ['Lactobacillus', 'Streptococcus', 'Cutibacterium', 'Corynebacterium',
                      'Escherichia', np.nan],
        },
        index=FEATURES
    )


def make_tree():
    return TreeNode.read(io.StringIO(NEWICK), format='newick')


@pytest.fixture
def toy_dataset():
    return MicrobiomeDataset(make_counts(), make_metadata(), taxonomy=make_taxonomy(), tree=make_tree())
