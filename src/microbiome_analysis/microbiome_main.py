"""
Microbiome Main Script
Runs the diversity, ordination and differential abundance pipeline
"""

import os
import argparse
import logging

import matplotlib
matplotlib.use('Agg')
import pandas as pd

from ..utils.shared_functions import CONFIG, save_results, setup_logging
from .data_loader import load_dataset, load_biom_dataset, load_dataset_dir
from .diversity import rarefy, alpha_diversity, compare_alpha_diversity, plot_alpha_diversity
from .ordination import beta_diversity, ordinate, permanova, permdisp, plot_ordination
from .differential_abundance import differential_abundance, significant_features, plot_log2_fold_changes

logger = logging.getLogger('microbiome_main')


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Run microbiome diversity and differential abundance analysis')

    # Inputs
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument('--dataset-dir', help='Directory written by save_dataset')
    source.add_argument('--biom-file', help='BIOM table (JSON or HDF5)')
    source.add_argument('--counts-file', help='Abundance table (features x samples unless --samples-as-rows)')
    parser.add_argument('--metadata-file', help='Sample metadata table')
    parser.add_argument('--taxonomy-file', help='Feature taxonomy table')
    parser.add_argument('--tree-file', help='Newick tree of the features')
    parser.add_argument('--samples-as-rows', action='store_true',
                        help='The abundance table has one row per sample')
    parser.add_argument('--sample-id-column', default=None,
                        help='Sample id column of the metadata (default: first column)')

    # Analysis options
    parser.add_argument('--group-column', required=True, help='Metadata column to compare')
    parser.add_argument('--reference', default=None, help='Reference group for differential abundance')
    parser.add_argument('--test', default=None, help='Test group for differential abundance')
    parser.add_argument('--subset', default=None, help='pandas query selecting samples, e.g. "site == \'gut\'"')
    parser.add_argument('--min-prevalence', type=float, default=0.0,
                        help='Keep features present in at least this fraction of samples')
    parser.add_argument('--rarefaction-depth', type=int, default=None,
                        help='Even depth for diversity (default: smallest sample)')
    parser.add_argument('--seed', type=int, default=CONFIG['microbiome']['rarefaction_seed'])
    parser.add_argument('--alpha-metrics', nargs='+', default=None)
    parser.add_argument('--beta-metric', default=CONFIG['microbiome']['beta_metric'])
    parser.add_argument('--permutations', type=int, default=CONFIG['microbiome']['permutations'])
    parser.add_argument('--da-method', choices=['nb_glm', 'wilcoxon'], default='nb_glm')
    parser.add_argument('--fdr-alpha', type=float, default=CONFIG['microbiome']['fdr_alpha'])
    parser.add_argument('--output-dir', default=os.path.join(CONFIG['output_dir'], 'microbiome_analysis'))

    args = parser.parse_args(argv)
    if args.counts_file and not args.metadata_file:
        parser.error('--counts-file requires --metadata-file')
    return args


def load_input(args):
    if args.dataset_dir:
        return load_dataset_dir(args.dataset_dir)
    if args.biom_file:
        return load_biom_dataset(args.biom_file, metadata_path=args.metadata_file,
                                 tree_path=args.tree_file, sample_id_col=args.sample_id_column)
    return load_dataset(args.counts_file, args.metadata_file, taxonomy_path=args.taxonomy_file,
                        tree_path=args.tree_file, features_as_rows=not args.samples_as_rows,
                        sample_id_col=args.sample_id_column)


def main(argv=None):
    args = parse_args(argv)
    output_dir = args.output_dir
    plots_dir = os.path.join(output_dir, CONFIG['plots_subdir'])
    setup_logging(output_dir)

    try:
        dataset = load_input(args)
        if args.subset:
            dataset = dataset.subset_samples(query=args.subset)
        dataset = dataset.prune_features(min_total=1)
        if args.min_prevalence > 0:
            dataset = dataset.filter_features(min_count=1, min_prevalence=args.min_prevalence)
        summary = dataset.summary()
        logger.info(f"Analysing {dataset}: depth {summary['min_depth']:.0f}-{summary['max_depth']:.0f}")
        save_results(dataset.sample_sums().rename('depth').to_frame(), output_dir, 'sample_depths.csv')

        # Alpha diversity on rarefied counts
        rarefied = rarefy(dataset, depth=args.rarefaction_depth, seed=args.seed)
        metrics = args.alpha_metrics or list(CONFIG['microbiome']['alpha_metrics'])
        if dataset.tree is not None and args.alpha_metrics is None:
            metrics.append('faith_pd')
        alpha_df = alpha_diversity(rarefied, metrics=metrics)
        save_results(alpha_df, output_dir, 'alpha_diversity.csv')
        alpha_tests = compare_alpha_diversity(alpha_df, rarefied.sample_metadata, args.group_column)
        save_results(alpha_tests, output_dir, f'alpha_diversity_by_{args.group_column}.csv', index=False)
        plot_alpha_diversity(alpha_df, rarefied.sample_metadata, args.group_column, plots_dir)

        # Beta diversity, ordination and permutation tests
        dm = beta_diversity(rarefied, metric=args.beta_metric)
        coords, proportion = ordinate(dm)
        save_results(coords.iloc[:, :5], output_dir, f'pcoa_{args.beta_metric}.csv')
        plot_ordination(coords, proportion, rarefied.sample_metadata, args.group_column, plots_dir,
                        filename=f'pcoa_{args.beta_metric}', title=f'PCoA ({args.beta_metric})')
        tests = [
            permanova(dm, rarefied.sample_metadata, args.group_column, permutations=args.permutations),
            permdisp(dm, rarefied.sample_metadata, args.group_column, permutations=args.permutations)
        ]
        save_results(pd.DataFrame(tests), output_dir, f'permutation_tests_{args.group_column}.csv', index=False)

        # Differential abundance on unrarefied counts
        da = differential_abundance(dataset, args.group_column, reference=args.reference,
                                    test=args.test, method=args.da_method)
        save_results(da, output_dir, 'differential_abundance.csv')
        significant = significant_features(da, alpha=args.fdr_alpha)
        logger.info(f"{len(significant)} features significant at FDR < {args.fdr_alpha}")
        if not significant.empty:
            plot_log2_fold_changes(significant, plots_dir)
    except Exception as e:
        logger.error(f"An error occurred during the microbiome analysis: {e}", exc_info=True)
        raise

    logger.info(f"Analysis complete! Results written to {output_dir}")
    return {
        'dataset': dataset,
        'alpha_diversity': alpha_df,
        'alpha_tests': alpha_tests,
        'pcoa': coords,
        'differential_abundance': da
    }


if __name__ == '__main__':
    main()
