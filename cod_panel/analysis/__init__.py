"""Correlation, PCA, clustering and cluster profiling."""
