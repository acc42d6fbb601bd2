"""
Source code for patient metadata wrangling and microbiome analysis.

This package contains modules for cleaning tabular subject metadata and
for exploring composite microbiome datasets: diversity, ordination,
permutation testing and differential abundance.
"""
