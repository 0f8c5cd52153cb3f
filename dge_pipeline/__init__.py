"""
DGE Pipeline

Differential expression analysis of paired treated/control RNA-seq samples:
count ingestion, expression filtering, TMM normalization, quasi-likelihood
GLM testing and gene-set enrichment, rendered into a single HTML report.
"""

__version__ = "1.0.0"
