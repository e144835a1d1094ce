"""Case-control analysis of single-cell RNA-seq data across conditions."""

__version__ = "0.3.0"
