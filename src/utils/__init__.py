"""
Utils package initialization
"""

from .shared_functions import (
    CONFIG,
    LOG_FORMAT,
    setup_logging,
    save_results,
    save_plot
)
