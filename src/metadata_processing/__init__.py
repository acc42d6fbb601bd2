"""
Metadata Processing module for subject-level tabular data.

This package provides utilities for:
- Importing and exporting delimited and Excel tables
- Renaming, selecting, filtering and type coercion of columns
- Recoding categorical values and flagging patterns in free-text fields
- Grouped summaries, cross tabulations and two-group comparisons
"""

# Version information
__version__ = "1.0.0"

# Make key functions available at package level
from .utils import load_csv, load_table, export_table
from .cleaning import (
    standardize_column_names,
    rename_columns,
    select_columns,
    filter_rows,
    coerce_numeric,
    to_categorical,
    recode_values,
    coerce_types
)
from .text_fields import (
    classify_pattern,
    flag_pattern,
    flag_medications,
    split_text_field,
    split_to_long,
    extract_pattern,
    unmatched_values
)
from .summaries import (
    check_unique_subjects,
    group_summary,
    count_table,
    compare_groups,
    compare_many,
    missingness
)
