"""
Grouped aggregation, cross tabulation and two-group comparisons for
metadata tables, plus the one-row-per-subject integrity check.
"""

import logging

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

logger = logging.getLogger(__name__)

MIN_GROUP_SIZE = 3


def check_unique_subjects(df, id_column):
    """Raise ValueError unless every subject identifier appears exactly once."""
    if id_column not in df.columns:
        raise KeyError(f"Identifier column '{id_column}' not found")
    if df[id_column].isna().any():
        n_missing = int(df[id_column].isna().sum())
        logger.error(f"{n_missing} rows have no {id_column}")
        raise ValueError(f"{n_missing} rows are missing '{id_column}'")
    duplicated = df.loc[df[id_column].duplicated(keep=False), id_column]
    if not duplicated.empty:
        ids = sorted(duplicated.astype(str).unique())
        logger.error(f"Duplicated {id_column} values: {ids[:10]}")
        raise ValueError(f"Expected one row per '{id_column}', found duplicates: {ids}")
    logger.info(f"{len(df)} unique subjects in '{id_column}'")
    return df


def group_summary(df, group_cols, value_cols):
    """
    Summary statistics of each value column within each group.

    Returns a long table with one row per group and variable and the
    columns n, mean, sd, median, min, max.
    """
    if isinstance(group_cols, str):
        group_cols = [group_cols]
    if isinstance(value_cols, str):
        value_cols = [value_cols]
    long = df.melt(id_vars=list(group_cols), value_vars=list(value_cols), var_name='variable')
    return (
        long.groupby(list(group_cols) + ['variable'], observed=True, sort=True)['value']
        .agg(n='count', mean='mean', sd='std', median='median', min='min', max='max')
        .reset_index()
    )


def count_table(df, row, column, normalize=False):
    """Cross tabulation with margins, or column percentages when normalize is set."""
    if normalize:
        return pd.crosstab(df[row], df[column], normalize='columns') * 100
    return pd.crosstab(df[row], df[column], margins=True)


def compare_groups(df, value_col, group_col, test='mann-whitney'):
    """
    Compare a numeric column between the two groups of group_col.

    Raises ValueError unless there are exactly two non-missing groups with
    at least three observations each.
    """
    if value_col not in df.columns:
        raise KeyError(f"Column '{value_col}' not found")
    groups = sorted(df[group_col].dropna().unique().tolist(), key=str)
    if len(groups) != 2:
        raise ValueError(f"'{group_col}' must have exactly 2 non-missing groups, found {groups}")

    group1 = df.loc[df[group_col] == groups[0], value_col].dropna()
    group2 = df.loc[df[group_col] == groups[1], value_col].dropna()
    if len(group1) < MIN_GROUP_SIZE or len(group2) < MIN_GROUP_SIZE:
        raise ValueError(
            f"Need at least {MIN_GROUP_SIZE} values per group for '{value_col}': "
            f"{groups[0]} n={len(group1)}, {groups[1]} n={len(group2)}"
        )

    if test == 'mann-whitney':
        stat, pval = stats.mannwhitneyu(group1, group2, alternative='two-sided')
    elif test == 't-test':
        stat, pval = stats.ttest_ind(group1, group2, equal_var=False)
    else:
        raise ValueError(f"Unsupported test type '{test}'")

    return {
        'variable': value_col,
        'groups': groups,
        'n': [len(group1), len(group2)],
        'means': [group1.mean(), group2.mean()],
        'medians': [group1.median(), group2.median()],
        'statistic': float(stat),
        'pvalue': float(pval)
    }


def compare_many(df, value_cols, group_col, test='mann-whitney'):
    """compare_groups over several columns with Benjamini-Hochberg FDR."""
    rows = []
    for col in value_cols:
        try:
            result = compare_groups(df, col, group_col, test=test)
        except ValueError as e:
            logger.warning(f"Comparison skipped for {col}: {e}")
            continue
        rows.append({
            'variable': col,
            'group0': result['groups'][0],
            'group1': result['groups'][1],
            'n_group0': result['n'][0],
            'n_group1': result['n'][1],
            'mean_group0': result['means'][0],
            'mean_group1': result['means'][1],
            'median_group0': result['medians'][0],
            'median_group1': result['medians'][1],
            'statistic': result['statistic'],
            'p_value': result['pvalue']
        })
    results_df = pd.DataFrame(rows)
    if results_df.empty:
        return results_df
    results_df['padj'] = multipletests(results_df['p_value'], method='fdr_bh')[1]
    results_df['significant'] = results_df['padj'] < 0.05
    return results_df.sort_values('p_value').reset_index(drop=True)


def missingness(df):
    """Count and fraction of missing values per column."""
    counts = df.isna().sum()
    return pd.DataFrame({
        'n_missing': counts,
        'fraction_missing': np.round(counts / max(len(df), 1), 4)
    })
