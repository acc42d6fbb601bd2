import argparse
import logging
import os

import pandas as pd

logger = logging.getLogger(__name__)

DELIMITERS = {'.csv': ',', '.tsv': '\t', '.txt': '\t'}
EXCEL_EXTENSIONS = ('.xlsx', '.xls')


def load_csv(path: str, sep: str = ',', **read_kwargs) -> pd.DataFrame:
    """Read a delimited file, handling UTF-8 BOM if present."""
    return pd.read_csv(path, sep=sep, encoding='utf-8-sig', **read_kwargs)


def load_table(path: str, sep: str = None, **read_kwargs) -> pd.DataFrame:
    """
    Load a CSV, TSV or Excel file according to its extension.

    Extra keyword arguments (dtype, nrows, ...) go to the pandas reader.
    Raises FileNotFoundError for a missing path and ValueError for an empty
    file or an unsupported extension.
    """
    if not os.path.exists(path):
        logger.error(f"Table not found: {path}")
        raise FileNotFoundError(path)
    if os.path.getsize(path) == 0:
        logger.error(f"Table is empty: {path}")
        raise ValueError(f"Empty file: {path}")

    extension = os.path.splitext(path)[1].lower()
    if extension in EXCEL_EXTENSIONS:
        df = pd.read_excel(path, **read_kwargs)
    elif sep is not None or extension in DELIMITERS:
        df = load_csv(path, sep=sep or DELIMITERS[extension], **read_kwargs)
    else:
        logger.error(f"Unsupported table format '{extension}' for {path}")
        raise ValueError(f"Unsupported file extension: {extension}")

    logger.info(f"Loaded {path} with shape {df.shape}")
    return df


def export_table(df: pd.DataFrame, path: str, index: bool = False) -> str:
    """Write a table as CSV or TSV (by extension), creating the parent directory."""
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    sep = '\t' if os.path.splitext(path)[1].lower() in ('.tsv', '.txt') else ','
    df.to_csv(path, sep=sep, index=index)
    logger.info(f"Wrote {len(df)} rows to {path}")
    return path


def main():
    """Command-line interface for a quick look at a metadata table."""
    parser = argparse.ArgumentParser(description='Preview a delimited or Excel metadata table')
    parser.add_argument('table', help='Path to the CSV/TSV/XLSX file')
    parser.add_argument('--sep', help='Override the column delimiter')
    parser.add_argument('--rows', type=int, default=5, help='Number of rows to show')
    args = parser.parse_args()
    df = load_table(args.table, sep=args.sep)
    print(f"{df.shape[0]} rows x {df.shape[1]} columns")
    for column, dtype in df.dtypes.items():
        print(f"{column}\t{dtype}")
    print(df.head(args.rows).to_string(index=False))


if __name__ == '__main__':
    main()
