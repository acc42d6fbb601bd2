#!/usr/bin/env python
"""
Run Microbiome Analysis
This script runs the diversity, ordination and differential abundance pipeline
"""

import sys

from src.microbiome_analysis.microbiome_main import main

if __name__ == "__main__":
    # All options are forwarded, e.g.
    #   run_microbiome_analysis.py --dataset-dir data/bundle --group-column SampleType
    main(sys.argv[1:])
