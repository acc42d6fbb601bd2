"""
Dataset Loader
Loads the composite microbiome dataset from delimited tables, BIOM files
or a saved dataset directory
"""

import os
import logging

import pandas as pd
from biom import load_table as load_biom_table
from skbio import TreeNode

from ..metadata_processing.utils import load_table, export_table
from .dataset import MicrobiomeDataset, parse_taxonomy_table

logger = logging.getLogger(__name__)

BUNDLE_FILES = {
    'counts': 'counts.tsv',
    'sample_metadata': 'sample_metadata.tsv',
    'taxonomy': 'taxonomy.tsv',
    'tree': 'tree.nwk'
}
LINEAGE_COLUMNS = ('taxon', 'taxonomy', 'lineage')


def _load_indexed(path, id_col=None):
    """Load a table indexed by its id column, read as text so ids like '001' survive."""
    columns = load_table(path, nrows=0).columns
    id_col = id_col or columns[0]
    if id_col not in columns:
        raise KeyError(f"Identifier column '{id_col}' not found; columns are {columns.tolist()}")
    return load_table(path, dtype={id_col: str}).set_index(id_col)


def load_tree(tree_path):
    """Read a Newick tree, keeping underscores in tip names."""
    if not os.path.exists(tree_path):
        raise FileNotFoundError(tree_path)
    tree = TreeNode.read(tree_path, format='newick', convert_underscores=False)
    logger.info(f"Loaded tree with {tree.count(tips=True)} tips from {tree_path}")
    return tree


def load_taxonomy(taxonomy_path):
    """
    Load a taxonomy table: either one column per rank or a single lineage
    column ('Taxon' as exported by QIIME 2) that is split into ranks.
    """
    taxonomy = _load_indexed(taxonomy_path)
    lineage_cols = [c for c in taxonomy.columns if str(c).lower() in LINEAGE_COLUMNS]
    if lineage_cols:
        logger.info(f"Parsing lineage strings from column '{lineage_cols[0]}'")
        return parse_taxonomy_table(taxonomy[lineage_cols[0]])
    return taxonomy


def load_dataset(counts_path, metadata_path, taxonomy_path=None, tree_path=None,
                 features_as_rows=True, sample_id_col=None):
    """
    Load the dataset from separate files.

    Parameters:
    -----------
    counts_path : str
        Abundance table, first column holds the ids
    metadata_path : str
        Sample metadata table
    taxonomy_path : str, optional
        Feature taxonomy table
    tree_path : str, optional
        Newick tree whose tips are the feature ids
    features_as_rows : bool
        True when the abundance table is features x samples
    sample_id_col : str, optional
        Sample id column of the metadata (defaults to the first column)

    Returns:
    --------
    MicrobiomeDataset
    """
    counts = _load_indexed(counts_path)
    if features_as_rows:
        counts = counts.T
        counts.index = counts.index.astype(str)
    counts.columns = counts.columns.astype(str)
    counts = counts.apply(pd.to_numeric)
    logger.info(f"Abundance table: {counts.shape[0]} samples x {counts.shape[1]} features")

    metadata = _load_indexed(metadata_path, sample_id_col)
    extra = metadata.index.difference(counts.index)
    if len(extra):
        logger.warning(f"Dropping {len(extra)} metadata rows with no abundance data: {extra.tolist()[:10]}")
        metadata = metadata.drop(index=extra)

    taxonomy = None
    if taxonomy_path:
        taxonomy = load_taxonomy(taxonomy_path)
        taxonomy = taxonomy.loc[taxonomy.index.intersection(counts.columns)]

    tree = load_tree(tree_path) if tree_path else None
    dataset = MicrobiomeDataset(counts, metadata, taxonomy=taxonomy, tree=tree)
    logger.info(f"Loaded {dataset}")
    return dataset


def load_biom_dataset(biom_path, metadata_path=None, tree_path=None, sample_id_col=None):
    """Load a BIOM file (JSON or HDF5), optionally overriding its sample metadata."""
    if not os.path.exists(biom_path):
        raise FileNotFoundError(biom_path)
    table = load_biom_table(biom_path)
    logger.info(f"Loaded BIOM table {biom_path} with shape {table.shape} (features x samples)")

    metadata = None
    if metadata_path:
        metadata = _load_indexed(metadata_path, sample_id_col)
        metadata = metadata.loc[metadata.index.intersection(table.ids(axis='sample'))]

    tree = load_tree(tree_path) if tree_path else None
    return MicrobiomeDataset.from_biom(table, sample_metadata=metadata, tree=tree)


def save_dataset(dataset, out_dir):
    """Write the dataset as a directory of TSV files plus a Newick tree."""
    os.makedirs(out_dir, exist_ok=True)
    export_table(dataset.counts.T, os.path.join(out_dir, BUNDLE_FILES['counts']), index=True)
    export_table(dataset.sample_metadata, os.path.join(out_dir, BUNDLE_FILES['sample_metadata']), index=True)
    if dataset.taxonomy is not None:
        export_table(dataset.taxonomy, os.path.join(out_dir, BUNDLE_FILES['taxonomy']), index=True)
    if dataset.tree is not None:
        dataset.tree.write(os.path.join(out_dir, BUNDLE_FILES['tree']), format='newick')
    logger.info(f"Saved {dataset} to {out_dir}")
    return out_dir


def load_dataset_dir(path):
    """Load a dataset saved with save_dataset."""
    files = {key: os.path.join(path, name) for key, name in BUNDLE_FILES.items()}
    for key in ('counts', 'sample_metadata'):
        if not os.path.exists(files[key]):
            logger.error(f"Dataset directory {path} is missing {BUNDLE_FILES[key]}")
            raise FileNotFoundError(files[key])
    return load_dataset(
        files['counts'],
        files['sample_metadata'],
        taxonomy_path=files['taxonomy'] if os.path.exists(files['taxonomy']) else None,
        tree_path=files['tree'] if os.path.exists(files['tree']) else None,
        features_as_rows=True
    )
