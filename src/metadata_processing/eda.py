"""
Subject Metadata Processing Pipeline
====================================
Cleans a subject-level metadata table, focusing on:
- Standardizing and renaming columns
- Recoding categorical values (sex, yes/no answers)
- Coercing numeric attributes (age, BMI)
- Flagging medication classes in the free-text medication field
- Generating demographic plots and summary reports
"""

import os
import logging
import argparse

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import seaborn as sns

from ..utils.shared_functions import CONFIG, save_plot, save_results, setup_logging
from .cleaning import standardize_column_names, rename_columns, recode_values, coerce_numeric
from .summaries import check_unique_subjects, group_summary, missingness
from .text_fields import flag_medications
from .utils import load_table, export_table

logger = logging.getLogger(__name__)

YES_NO_COLUMNS = ('smoker', 'smoking', 'alcohol', 'antibiotics_last_3_months')
NUMERIC_COLUMNS = ('age', 'bmi', 'weight', 'height')


def process_metadata(df, id_column=None, medication_column=None, renames=None, settings=None):
    """
    Run the cleaning chain on a raw metadata table.

    Args:
        df (pd.DataFrame): Raw metadata, one row per subject.
        id_column (str, optional): Subject identifier after standardization.
        medication_column (str, optional): Free-text medication column.
        renames (dict, optional): Renames applied after standardization.
        settings (dict, optional): Overrides for CONFIG['metadata'].

    Returns:
        pd.DataFrame: Cleaned metadata.
    """
    settings = {**CONFIG['metadata'], **(settings or {})}
    id_column = id_column or settings['id_column']
    medication_column = medication_column or settings['medication_column']

    cleaned = standardize_column_names(df)
    if renames:
        cleaned = rename_columns(cleaned, renames)
    logger.info(f"Columns after standardization: {cleaned.columns.tolist()}")

    check_unique_subjects(cleaned, id_column)

    if 'sex' in cleaned.columns:
        cleaned['sex'] = recode_values(cleaned['sex'], settings['sex_map'])
    for col in YES_NO_COLUMNS:
        if col in cleaned.columns:
            cleaned[col] = recode_values(cleaned[col], settings['yes_no_map'])
    for col in NUMERIC_COLUMNS:
        if col in cleaned.columns:
            cleaned[col] = coerce_numeric(cleaned[col], caps=settings['age_caps'] if col == 'age' else None)

    if medication_column in cleaned.columns:
        cleaned = flag_medications(cleaned, medication_column, settings['medication_classes'], prefix='takes_')
    else:
        logger.warning(f"No medication column '{medication_column}' found; skipping medication flags")

    return cleaned


def plot_demographics(df, plots_dir, age_col='age', sex_col='sex'):
    """Generate demographic plots and save to plots_dir."""
    paths = []
    if df.empty:
        logger.warning("No data to plot demographics.")
        return paths

    if age_col in df.columns and df[age_col].notna().any():
        fig, ax = plt.subplots(figsize=(8, 5))
        sns.histplot(df[age_col].dropna(), bins=15, kde=True, ax=ax)
        ax.set_title('Age Distribution')
        ax.set_xlabel('Age')
        ax.set_ylabel('Count')
        paths.append(save_plot(fig, 'age_distribution', plots_dir))

    if sex_col in df.columns and df[sex_col].notna().any():
        fig, ax = plt.subplots(figsize=(6, 4))
        sns.countplot(data=df, x=sex_col, ax=ax)
        ax.set_title('Sex Distribution')
        ax.set_xlabel('Sex')
        ax.set_ylabel('Count')
        paths.append(save_plot(fig, 'sex_distribution', plots_dir))

    if age_col in df.columns and sex_col in df.columns and df[[age_col, sex_col]].notna().all(axis=1).any():
        fig, ax = plt.subplots(figsize=(8, 5))
        sns.boxplot(data=df, x=sex_col, y=age_col, ax=ax)
        ax.set_title('Age by Sex')
        paths.append(save_plot(fig, 'age_by_sex', plots_dir))

    return paths


def generate_reports(df, reports_dir, flag_columns=(), group_col='sex'):
    """Write summary statistics, missingness and flag distributions to reports_dir."""
    if df.empty:
        logger.warning("No data to generate reports.")
        return

    save_results(df.describe(include='all'), reports_dir, 'summary_statistics.csv')
    save_results(missingness(df), reports_dir, 'missingness.csv')

    for col in flag_columns:
        dist = df[col].value_counts(dropna=False).rename_axis(col).reset_index(name='count')
        save_results(dist, reports_dir, f'{col}_distribution.csv', index=False)

    numeric_cols = [c for c in NUMERIC_COLUMNS if c in df.columns]
    if group_col in df.columns and numeric_cols:
        save_results(group_summary(df, group_col, numeric_cols), reports_dir,
                     f'numeric_summary_by_{group_col}.csv', index=False)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Clean a subject metadata table")
    parser.add_argument("--input-file", required=True, help="CSV/TSV/XLSX metadata table")
    parser.add_argument("--output-dir", default=CONFIG['output_dir'])
    parser.add_argument("--id-column", default=CONFIG['metadata']['id_column'],
                        help="Subject identifier column (after snake_case standardization)")
    parser.add_argument("--medication-column", default=CONFIG['metadata']['medication_column'])
    args = parser.parse_args(argv)

    plots_dir = os.path.join(args.output_dir, CONFIG['plots_subdir'])
    reports_dir = os.path.join(args.output_dir, CONFIG['reports_subdir'])
    setup_logging(args.output_dir)
    logger.info("Logging setup complete. Starting processing...")

    raw = load_table(args.input_file)
    cleaned = process_metadata(raw, id_column=args.id_column, medication_column=args.medication_column)
    export_table(cleaned, os.path.join(args.output_dir, 'cleaned_metadata.csv'))

    flag_columns = [c for c in cleaned.columns if c.startswith('takes_')]
    generate_reports(cleaned, reports_dir, flag_columns=flag_columns)
    plot_demographics(cleaned, plots_dir)
    logger.info(f"Processing complete. Outputs written to {args.output_dir}")
    return cleaned


if __name__ == "__main__":
    main()
