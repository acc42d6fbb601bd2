"""
Shared Functions Module
Common utility functions used across the metadata and microbiome modules
"""

import os
import logging

import matplotlib.pyplot as plt
import pandas as pd

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Defaults shared by the pipelines; command line options override them per run
CONFIG = {
    'output_dir': 'output',
    'plots_subdir': 'plots',
    'reports_subdir': 'reports',
    'log_file': 'processing_log.txt',
    'metadata': {
        'id_column': 'subject_id',
        'medication_column': 'medications',
        'age_caps': {'90 or older': 90.0, '>89': 90.0},
        'sex_map': {'m': 'Male', 'male': 'Male', 'f': 'Female', 'female': 'Female'},
        'yes_no_map': {'y': 'yes', 'yes': 'yes', 'true': 'yes', '1': 'yes',
                       'n': 'no', 'no': 'no', 'false': 'no', '0': 'no'},
        'medication_classes': {
            'antibiotic': r'\b(?:\w+cillin|\w+mycin|\w+floxacin|cef\w+|doxycycline|metronidazole)\b',
            'statin': r'\b\w+statin\b',
            'ppi': r'\b\w+prazole\b',
            'metformin': r'\bmetformin\b',
        },
    },
    'microbiome': {
        'rarefaction_seed': 711,
        'alpha_metrics': ['observed_features', 'chao1', 'shannon', 'simpson'],
        'beta_metric': 'braycurtis',
        'permutations': 999,
        'fdr_alpha': 0.01,
        'min_group_size': 3,
    },
}


def setup_logging(output_dir=None, level=logging.INFO):
    """Configure console logging and, when output_dir is given, a processing log file."""
    handlers = [logging.StreamHandler()]
    if output_dir is not None:
        os.makedirs(output_dir, exist_ok=True)
        handlers.append(logging.FileHandler(os.path.join(output_dir, CONFIG['log_file'])))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    return logging.getLogger()


def save_results(df, output_dir, filename, index=True):
    """Save results to a CSV file and return its path"""
    os.makedirs(output_dir, exist_ok=True)
    output_file = os.path.join(output_dir, filename)
    df.to_csv(output_file, index=index)
    logger.info(f"Saved results to {output_file}")
    return output_file


def save_plot(fig, filename, output_dir):
    """
    Save a matplotlib figure to the specified output directory

    Parameters:
    -----------
    fig : matplotlib.figure.Figure
        Figure to save
    filename : str
        Name of the file (without extension)
    output_dir : str
        Directory to save the plot

    Returns:
    --------
    str
        Path of the written PNG file
    """
    os.makedirs(output_dir, exist_ok=True)
    plot_path = os.path.join(output_dir, f"{filename}.png")
    fig.savefig(plot_path, dpi=300, bbox_inches='tight')
    plt.close(fig)
    logger.info(f"Saved plot: {plot_path}")
    return plot_path
