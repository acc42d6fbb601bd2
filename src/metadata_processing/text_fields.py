"""
Pattern matching and splitting for semi-structured free-text fields,
e.g. a medication list typed by hand into a single column.
"""

import logging
import re

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


def _compile(pattern):
    return pattern if isinstance(pattern, re.Pattern) else re.compile(pattern, re.IGNORECASE)


def classify_pattern(value, pattern, yes='yes', no='no'):
    """Return yes if pattern matches anywhere in value, no otherwise; missing stays missing."""
    if not isinstance(value, str) and pd.isna(value):
        return np.nan
    return yes if _compile(pattern).search(str(value)) else no


def flag_pattern(df, column, pattern, new_column, yes='yes', no='no'):
    """Add a yes/no column recording whether column matches pattern."""
    regex = _compile(pattern)
    out = df.copy()
    out[new_column] = df[column].map(lambda v: classify_pattern(v, regex, yes, no))
    logger.info(f"{new_column}: {(out[new_column] == yes).sum()} '{yes}' of {out[new_column].notna().sum()} non-missing")
    return out


def flag_medications(df, column, classes, prefix=''):
    """
    Flag each medication class with its own yes/no column.

    Parameters:
    -----------
    df : pd.DataFrame
        Metadata with a free-text medication column
    column : str
        Name of the medication column
    classes : dict
        Mapping of class name to regular expression
    prefix : str
        Prefix for the new column names

    Returns:
    --------
    pd.DataFrame
        Copy of df with one column per class
    """
    if column not in df.columns:
        raise KeyError(f"Medication column '{column}' not found")
    out = df
    for name, pattern in classes.items():
        out = flag_pattern(out, column, pattern, f"{prefix}{name}")
    return out


def split_text_field(df, column, sep, into, regex=False, drop=True):
    """
    Split a delimited text column into the named columns in into.

    Extra pieces stay joined in the last column, rows with fewer pieces are
    padded with missing values, empty pieces become missing.
    """
    if column not in df.columns:
        raise KeyError(f"Column '{column}' not found")
    text = df[column].astype('string')
    if len(into) == 1:
        # n=0 would mean no limit
        pieces = text.to_frame(0)
    else:
        pieces = text.str.split(sep, n=len(into) - 1, expand=True, regex=regex)
    pieces = pieces.apply(lambda col: col.str.strip())
    pieces = pieces.reindex(columns=range(len(into)))
    pieces = pieces.astype(object).where(pieces.notna(), np.nan).replace('', np.nan)
    pieces.columns = list(into)

    out = df.drop(columns=[column]) if drop else df.copy()
    for name in into:
        out[name] = pieces[name]
    return out


def split_to_long(df, column, sep, regex=False):
    """One row per delimited item in column (e.g. one row per medication)."""
    out = df.copy()
    out[column] = out[column].str.split(sep, regex=regex)
    out = out.explode(column)
    out[column] = out[column].str.strip()
    out = out[out[column].isna() | (out[column] != '')]
    return out.reset_index(drop=True)


def extract_pattern(series, pattern):
    """First capture group of pattern in each value, missing when it doesn't match."""
    extracted = series.astype('string').str.extract(pattern, flags=re.IGNORECASE, expand=True).iloc[:, 0]
    return extracted.astype(object).where(extracted.notna(), np.nan)


def unmatched_values(series, pattern):
    """Distinct non-missing values the pattern does not match, for manual review."""
    regex = _compile(pattern)
    values = series.dropna().astype(str).unique()
    return sorted(v for v in values if not regex.search(v))
