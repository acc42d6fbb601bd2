"""
Column renaming, selection, filtering and type coercion for metadata tables.
"""

import logging
import re

import numpy as np
import pandas as pd
from pandas.api.types import CategoricalDtype

logger = logging.getLogger(__name__)


def standardize_column_name(name):
    """'Subject ID' -> 'subject_id', 'BMI (kg/m2)' -> 'bmi_kg_m2'"""
    return re.sub(r'[^0-9a-zA-Z]+', '_', str(name)).strip('_').lower()


def standardize_column_names(df):
    """Return a copy of df with every column name in snake_case."""
    out = df.copy()
    out.columns = [standardize_column_name(c) for c in df.columns]
    duplicated = out.columns[out.columns.duplicated()].tolist()
    if duplicated:
        raise ValueError(f"Column names collide after standardization: {duplicated}")
    return out


def rename_columns(df, mapping):
    """Rename columns, failing loudly if a source column is absent."""
    missing = [col for col in mapping if col not in df.columns]
    if missing:
        logger.error(f"Cannot rename missing columns: {missing}")
        raise KeyError(f"Columns not found: {missing}")
    return df.rename(columns=mapping)


def select_columns(df, columns):
    """Keep and reorder the given columns."""
    missing = [col for col in columns if col not in df.columns]
    if missing:
        logger.error(f"Cannot select missing columns: {missing}")
        raise KeyError(f"Columns not found: {missing}")
    return df.loc[:, list(columns)].copy()


def filter_rows(df, query=None, dropna_subset=None):
    """
    Filter rows with a pandas query expression and/or drop rows missing
    any of the columns in dropna_subset.
    """
    total_before = len(df)
    filtered = df
    if query:
        filtered = filtered.query(query)
    if dropna_subset:
        filtered = filtered.dropna(subset=list(dropna_subset))
    removed = total_before - len(filtered)
    if total_before:
        logger.info(f"Filtered out {removed} rows ({removed / total_before:.1%}); {len(filtered)} remaining")
    return filtered.copy()


def coerce_numeric(series, caps=None):
    """
    Convert a column to float. Text listed in caps (e.g. '90 or older') is
    replaced by its numeric value first; anything else unparseable becomes NaN.
    """
    values = series
    if caps:
        lookup = {str(k).strip().lower(): v for k, v in caps.items()}
        values = series.map(
            lambda v: lookup.get(v.strip().lower(), v) if isinstance(v, str) else v
        )
    numeric = pd.to_numeric(values, errors='coerce').astype(float)
    lost = numeric.isna() & series.notna()
    if lost.any():
        examples = series[lost].astype(str).unique()[:5].tolist()
        logger.warning(f"{lost.sum()} values in '{series.name}' could not be parsed as numbers, e.g. {examples}")
    return numeric


def to_categorical(series, categories=None, ordered=False):
    """Coerce to a categorical column; values outside categories become missing."""
    if categories is None:
        categories = sorted(series.dropna().unique().tolist(), key=str)
    out = series.astype(CategoricalDtype(categories=list(categories), ordered=ordered))
    dropped = out.isna() & series.notna()
    if dropped.any():
        logger.warning(f"{dropped.sum()} values in '{series.name}' are not among {list(categories)} and were set to missing")
    return out


def recode_values(series, mapping, default=None, case_insensitive=True):
    """
    Map values through mapping. Unmapped values are kept unless default is
    given; missing values stay missing.
    """
    if case_insensitive:
        lookup = {str(k).strip().lower(): v for k, v in mapping.items()}
    else:
        lookup = dict(mapping)

    def _recode(value):
        if pd.isna(value):
            return np.nan
        key = str(value).strip().lower() if case_insensitive else value
        if key in lookup:
            return lookup[key]
        return value if default is None else default

    return series.map(_recode)


def coerce_types(df, schema, caps=None):
    """
    Apply a column type schema in one pass.

    Args:
        df (pd.DataFrame): Table to convert.
        schema (dict): column -> 'numeric', 'category', 'string' or 'identifier'.
        caps (dict, optional): Text-to-number replacements for numeric columns.

    Returns:
        pd.DataFrame: Converted copy.
    """
    out = df.copy()
    for column, kind in schema.items():
        if column not in out.columns:
            raise KeyError(f"Column '{column}' not found")
        if kind == 'numeric':
            out[column] = coerce_numeric(out[column], caps=caps)
        elif kind == 'category':
            out[column] = to_categorical(out[column])
        elif kind == 'string':
            out[column] = out[column].astype('string')
        elif kind == 'identifier':
            out[column] = out[column].astype('string').str.strip()
        else:
            raise ValueError(f"Unknown column type '{kind}' for '{column}'")
    return out
