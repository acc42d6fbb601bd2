#!/usr/bin/env python
"""
Run Metadata Processing
Cleans a subject metadata table and writes reports and demographic plots
"""

import sys

from src.metadata_processing.eda import main

if __name__ == "__main__":
    main(sys.argv[1:])
