"""
Microbiome Dataset
Holds an abundance table with its sample metadata, feature taxonomy and
phylogenetic tree, keyed by consistent sample and feature identifiers.
"""

import logging
import re

import numpy as np
import pandas as pd
from biom import Table
from skbio.stats.composition import clr

logger = logging.getLogger(__name__)

RANKS = ['Kingdom', 'Phylum', 'Class', 'Order', 'Family', 'Genus', 'Species']
RANK_PREFIXES = {
    'k': 'Kingdom', 'd': 'Kingdom', 'p': 'Phylum', 'c': 'Class',
    'o': 'Order', 'f': 'Family', 'g': 'Genus', 's': 'Species'
}


def parse_taxonomy_string(text, ranks=RANKS):
    """
    Split a lineage such as 'k__Bacteria; p__Firmicutes; c__' into ranks.

    Prefixed levels are placed by their prefix, unprefixed ones by position.
    Empty levels are missing.
    """
    values = dict.fromkeys(ranks, np.nan)
    if isinstance(text, (list, tuple)):
        parts = [str(p).strip() for p in text]
    elif isinstance(text, str):
        parts = [p.strip() for p in re.split(r'[;|]', text)]
    else:
        return pd.Series(values)

    for i, part in enumerate(parts):
        match = re.match(r'^([a-zA-Z])__(.*)$', part)
        if match:
            rank = RANK_PREFIXES.get(match.group(1).lower())
            name = match.group(2).strip()
        else:
            rank = ranks[i] if i < len(ranks) else None
            name = part
        if rank in values and name:
            values[rank] = name
    return pd.Series(values)


def parse_taxonomy_table(lineages, ranks=RANKS):
    """Lineage strings indexed by feature id -> one column per rank."""
    taxonomy = pd.DataFrame(
        [parse_taxonomy_string(text, ranks) for text in lineages],
        index=lineages.index,
        columns=list(ranks)
    )
    taxonomy.index.name = 'feature_id'
    return taxonomy


def _format_lineage(row):
    lineage = []
    for rank in RANKS:
        if rank not in row.index:
            continue
        prefix = rank[0].lower()
        value = row[rank]
        lineage.append(f"{prefix}__{'' if pd.isna(value) else value}")
    return lineage


def _parent_label(row, rank):
    parents = [v for v in row.drop(rank) if pd.notna(v)]
    return f"{parents[-1]};{row[rank]}" if parents else str(row[rank])


def clr_transform(counts, pseudocount=1.0):
    """Centred log-ratio transform of a samples x features table."""
    if pseudocount <= 0 and (counts.to_numpy() == 0).any():
        raise ValueError("CLR of zero counts needs a positive pseudocount")
    values = clr(counts.to_numpy(dtype=float) + pseudocount)
    return pd.DataFrame(values, index=counts.index, columns=counts.columns)


def _plain_value(value):
    # biom writes metadata as JSON
    if isinstance(value, np.generic):
        value = value.item()
    if not isinstance(value, (list, tuple)) and pd.isna(value):
        return None
    return value


class MicrobiomeDataset:
    """Abundance counts (samples x features) plus metadata, taxonomy and tree"""

    def __init__(self, counts, sample_metadata, taxonomy=None, tree=None):
        self.counts = counts.copy()
        self.sample_metadata = sample_metadata
        self.taxonomy = taxonomy
        self.tree = tree
        self.validate()

        # Align components to the order of the abundance table
        self.counts.index.name = 'sample_id'
        self.counts.columns.name = 'feature_id'
        self.sample_metadata = sample_metadata.loc[self.counts.index].copy()
        self.sample_metadata.index.name = 'sample_id'
        if taxonomy is not None:
            self.taxonomy = taxonomy.loc[self.counts.columns].copy()
            self.taxonomy.index.name = 'feature_id'

    def __repr__(self):
        parts = [f"{self.n_samples} samples", f"{self.n_features} features"]
        if self.taxonomy is not None:
            parts.append(f"{self.taxonomy.shape[1]} taxonomic ranks")
        if self.tree is not None:
            parts.append("tree")
        return f"MicrobiomeDataset({', '.join(parts)})"

    @property
    def n_samples(self):
        return self.counts.shape[0]

    @property
    def n_features(self):
        return self.counts.shape[1]

    def validate(self):
        """Check identifier consistency across components; raise ValueError on mismatch."""
        problems = []
        counts, metadata = self.counts, self.sample_metadata

        if counts.index.duplicated().any():
            problems.append(f"duplicated sample ids in counts: {counts.index[counts.index.duplicated()].tolist()}")
        if counts.columns.duplicated().any():
            problems.append(f"duplicated feature ids in counts: {counts.columns[counts.columns.duplicated()].tolist()}")
        if metadata.index.duplicated().any():
            problems.append(f"duplicated sample ids in metadata: {metadata.index[metadata.index.duplicated()].tolist()}")

        non_numeric = [c for c in counts.columns if not pd.api.types.is_numeric_dtype(counts[c])]
        if non_numeric:
            problems.append(f"non-numeric abundance columns: {non_numeric[:10]}")
        else:
            blank = counts.isna().any(axis=1)
            if blank.any():
                problems.append(f"missing abundance values in samples: {counts.index[blank.to_numpy()].tolist()[:10]}")
            if (counts.to_numpy() < 0).any():
                problems.append("negative abundance values")

        missing_meta = counts.index.difference(metadata.index)
        extra_meta = metadata.index.difference(counts.index)
        if len(missing_meta):
            problems.append(f"samples without metadata: {missing_meta.tolist()[:10]}")
        if len(extra_meta):
            problems.append(f"metadata rows without counts: {extra_meta.tolist()[:10]}")

        if self.taxonomy is not None:
            if self.taxonomy.index.duplicated().any():
                problems.append("duplicated feature ids in taxonomy")
            missing_tax = counts.columns.difference(self.taxonomy.index)
            if len(missing_tax):
                problems.append(f"features without taxonomy: {missing_tax.tolist()[:10]}")

        if self.tree is not None:
            tips = {tip.name for tip in self.tree.tips()}
            missing_tips = [f for f in counts.columns if f not in tips]
            if missing_tips:
                problems.append(f"features absent from tree: {missing_tips[:10]}")

        if problems:
            for problem in problems:
                logger.error(f"Invalid dataset: {problem}")
            raise ValueError("Inconsistent microbiome dataset: " + "; ".join(problems))
        return True

    def _with(self, counts=None, tree=None, taxonomy=None, keep_tree=True):
        counts = self.counts if counts is None else counts
        metadata = self.sample_metadata.loc[counts.index]
        if taxonomy is None and self.taxonomy is not None:
            taxonomy = self.taxonomy.loc[counts.columns]
        if tree is None and keep_tree:
            tree = self.tree
        return MicrobiomeDataset(counts.copy(), metadata, taxonomy=taxonomy, tree=tree)

    def sample_sums(self):
        return self.counts.sum(axis=1)

    def feature_sums(self):
        return self.counts.sum(axis=0)

    def summary(self):
        """Basic size and depth numbers, the usual first look at a dataset"""
        depths = self.sample_sums()
        return {
            'n_samples': self.n_samples,
            'n_features': self.n_features,
            'total_reads': float(depths.sum()),
            'min_depth': float(depths.min()) if self.n_samples else np.nan,
            'median_depth': float(depths.median()) if self.n_samples else np.nan,
            'max_depth': float(depths.max()) if self.n_samples else np.nan,
            'ranks': [] if self.taxonomy is None else self.taxonomy.columns.tolist(),
            'has_tree': self.tree is not None,
            'metadata_columns': self.sample_metadata.columns.tolist()
        }

    def subset_samples(self, query=None, ids=None):
        """Keep samples matching a metadata query expression and/or an explicit id list."""
        metadata = self.sample_metadata
        if ids is not None:
            missing = [i for i in ids if i not in metadata.index]
            if missing:
                raise KeyError(f"Unknown sample ids: {missing}")
            metadata = metadata.loc[list(ids)]
        if query:
            metadata = metadata.query(query)
        logger.info(f"Kept {len(metadata)} of {self.n_samples} samples")
        return self._with(counts=self.counts.loc[metadata.index])

    def prune_samples(self, min_depth):
        """Drop samples whose total count is below min_depth."""
        keep = self.sample_sums() >= min_depth
        dropped = self.counts.index[~keep].tolist()
        if dropped:
            logger.warning(f"Dropping {len(dropped)} samples below depth {min_depth}: {dropped[:10]}")
        return self._with(counts=self.counts.loc[keep])

    def prune_features(self, min_total=1):
        """Drop features whose total count across samples is below min_total."""
        keep = self.feature_sums() >= min_total
        logger.info(f"Pruned {int((~keep).sum())} features with total < {min_total}")
        return self._with(counts=self.counts.loc[:, keep])

    def filter_features(self, min_count=1, min_prevalence=0.0):
        """Keep features observed at least min_count times in at least min_prevalence of samples."""
        prevalence = (self.counts >= min_count).mean(axis=0)
        keep = (prevalence >= min_prevalence) & (prevalence > 0)
        logger.info(f"Kept {int(keep.sum())} of {self.n_features} features "
                    f"(count >= {min_count} in >= {min_prevalence:.0%} of samples)")
        return self._with(counts=self.counts.loc[:, keep])

    def transform_relative(self):
        """Per-sample proportions; samples with no reads stay all zero."""
        depths = self.sample_sums()
        if (depths == 0).any():
            logger.warning(f"Samples with zero reads: {depths.index[depths == 0].tolist()}")
        relative = self.counts.div(depths.replace(0, np.nan), axis=0).fillna(0.0)
        return self._with(counts=relative)

    def top_features(self, n):
        """Keep the n most abundant features."""
        top = self.feature_sums().sort_values(ascending=False, kind='stable').index[:n]
        return self._with(counts=self.counts.loc[:, top])

    def agglomerate(self, rank):
        """
        Sum features that share the same lineage down to rank. Features with
        no assignment at that rank are dropped. The tree no longer applies
        and is removed.

        Groups are named by their taxon at rank; a name shared by different
        lineages (e.g. 'uncultured') is prefixed with its parent taxon, or
        with the whole lineage if that is still ambiguous.
        """
        if self.taxonomy is None or rank not in self.taxonomy.columns:
            raise ValueError(f"Cannot agglomerate: no taxonomy rank '{rank}'")
        ranks = self.taxonomy.columns.tolist()
        upper = ranks[:ranks.index(rank) + 1]
        assigned = self.taxonomy.loc[self.taxonomy[rank].notna(), upper]
        if len(assigned) < self.n_features:
            logger.warning(f"{self.n_features - len(assigned)} features have no {rank} and are dropped")

        lineages = assigned.fillna('').astype(str).agg(';'.join, axis=1)
        groups = assigned.assign(lineage=lineages).drop_duplicates('lineage').set_index('lineage')
        labels = groups[rank].astype(str)
        ambiguous = labels.duplicated(keep=False)
        if ambiguous.any():
            labels[ambiguous] = groups[ambiguous].apply(_parent_label, axis=1, args=(rank,))
            still = labels.duplicated(keep=False)
            labels[still] = labels.index[still.to_numpy()]
            logger.info(f"{int(ambiguous.sum())} {rank} names occur in more than one lineage and were qualified")

        feature_groups = lineages.map(labels)
        counts = self.counts[assigned.index].T.groupby(feature_groups).sum().T
        taxonomy = groups.set_axis(labels.to_numpy(), axis=0).reindex(columns=ranks)
        logger.info(f"Agglomerated {len(assigned)} features into {counts.shape[1]} {rank} groups")
        return MicrobiomeDataset(counts, self.sample_metadata, taxonomy=taxonomy.loc[counts.columns])

    def to_long(self):
        """Melt to one row per sample and feature, joined to metadata and taxonomy."""
        long = self.counts.reset_index().melt(id_vars='sample_id', var_name='feature_id', value_name='abundance')
        long = long.merge(self.sample_metadata, left_on='sample_id', right_index=True, how='left')
        if self.taxonomy is not None:
            long = long.merge(self.taxonomy, left_on='feature_id', right_index=True, how='left')
        return long

    def to_biom(self):
        """Convert to a biom Table carrying sample metadata and taxonomy."""
        observation_metadata = None
        if self.taxonomy is not None:
            observation_metadata = [{'taxonomy': _format_lineage(row)} for _, row in self.taxonomy.iterrows()]
        sample_metadata = [
            {k: _plain_value(v) for k, v in row.items()}
            for _, row in self.sample_metadata.iterrows()
        ]
        return Table(
            self.counts.T.to_numpy(),
            observation_ids=[str(f) for f in self.counts.columns],
            sample_ids=[str(s) for s in self.counts.index],
            observation_metadata=observation_metadata,
            sample_metadata=sample_metadata if self.sample_metadata.shape[1] else None
        )

    @classmethod
    def from_biom(cls, table, sample_metadata=None, tree=None):
        """
        Build a dataset from a biom Table. Sample metadata and taxonomy
        embedded in the table are used unless sample_metadata is given.
        """
        sample_ids = list(table.ids(axis='sample'))
        feature_ids = list(table.ids(axis='observation'))
        counts = pd.DataFrame(table.matrix_data.toarray().T, index=sample_ids, columns=feature_ids)
        if np.allclose(counts.to_numpy(), np.round(counts.to_numpy())):
            counts = counts.round().astype(np.int64)

        if sample_metadata is None:
            embedded = table.metadata(axis='sample')
            if embedded is not None:
                sample_metadata = pd.DataFrame([dict(m) for m in embedded], index=sample_ids)
            else:
                sample_metadata = pd.DataFrame(index=sample_ids)

        taxonomy = None
        observation_metadata = table.metadata(axis='observation')
        if observation_metadata is not None and all(m and 'taxonomy' in m for m in observation_metadata):
            lineages = pd.Series([m['taxonomy'] for m in observation_metadata], index=feature_ids)
            taxonomy = parse_taxonomy_table(lineages)

        return cls(counts, sample_metadata, taxonomy=taxonomy, tree=tree)
