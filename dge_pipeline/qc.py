"""
Quality Control module for the DGE Pipeline.

This module provides the expression filter applied before normalization,
per-sample library size summaries and a check of the recorded sex labels
against Y-chromosome expression.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Dict, Any, Optional, Tuple
import pandas as pd
import numpy as np
import edgepython as ep

from .quantify import CountData

logger = logging.getLogger(__name__)

Y_CHROMOSOMES = {'Y', 'chrY'}

@dataclass
class FilterSummary:
    """Thresholds used by :func:`filter_by_expression` and what they removed."""

    cpm_cutoff: float
    min_samples: int
    median_lib_size: float
    mean_lib_size: float
    count_floor: float
    genes_before: int
    genes_after: int

    @property
    def genes_removed(self) -> int:
        return self.genes_before - self.genes_after

    def to_dict(self) -> Dict[str, Any]:
        summary = asdict(self)
        summary['genes_removed'] = self.genes_removed
        return summary

def filter_by_expression(
    data: CountData,
    min_count: float = 10,
    min_total_count: float = 15,
    group_column: str = 'treatment'
) -> Tuple[CountData, FilterSummary]:
    """
    Remove genes too weakly expressed to be tested.

    A gene is kept when its CPM reaches ``min_count / median(lib_size) * 1e6``
    in at least as many samples as the smallest treatment group, and its
    total count reaches ``min_total_count``. Genes with no counts at all are
    removed whatever the thresholds.

    Library sizes of the returned data are the pre-filter totals.

    Args:
        data: Ingested count data
        min_count: Minimum count at the median library size
        min_total_count: Minimum total count across samples
        group_column: Sample column defining the groups

    Returns:
        Tuple of (filtered data, filter summary)
    """
    counts = data.counts.to_numpy(dtype=float)
    lib_size = data.lib_size.to_numpy(dtype=float)
    group = data.samples[group_column].astype(str).to_numpy()

    keep = ep.filter_by_expr(
        counts,
        group=group,
        lib_size=lib_size,
        min_count=min_count,
        min_total_count=min_total_count,
    )
    keep = np.asarray(keep, dtype=bool) & (counts.sum(axis=1) > 0)

    median_lib_size = float(np.median(lib_size))
    mean_lib_size = float(np.mean(lib_size))
    cpm_cutoff = min_count / median_lib_size * 1e6
    _, group_sizes = np.unique(group, return_counts=True)

    summary = FilterSummary(
        cpm_cutoff=cpm_cutoff,
        min_samples=int(group_sizes.min()),
        median_lib_size=median_lib_size,
        mean_lib_size=mean_lib_size,
        count_floor=cpm_cutoff * mean_lib_size / 1e6,
        genes_before=data.n_genes,
        genes_after=int(keep.sum()),
    )

    logger.info(
        f"Expression filter kept {summary.genes_after} of {summary.genes_before} genes "
        f"(CPM >= {cpm_cutoff:.3f} in >= {summary.min_samples} samples)"
    )
    if summary.genes_after == 0:
        raise ValueError("No genes passed the expression filter")

    return data.subset_genes(keep), summary

def library_size_summary(data: CountData) -> pd.DataFrame:
    """
    Per-sample library sizes alongside the sample labels.

    Args:
        data: Count data

    Returns:
        DataFrame indexed by sample
    """
    summary = data.samples[['treatment', 'individual']].copy()
    summary['treatment'] = summary['treatment'].astype(str)
    summary['lib_size'] = data.lib_size
    summary['norm_factors'] = data.norm_factors
    summary['effective_lib_size'] = data.effective_lib_size
    summary['detected_genes'] = (data.counts > 0).sum(axis=0)
    return summary

def _sex_code(label: str) -> Optional[str]:
    label = str(label).strip().lower()
    if label in ('m', 'male'):
        return 'male'
    if label in ('f', 'female'):
        return 'female'
    return None

def check_sex_labels(
    data: CountData,
    threshold: float = 1.0,
    prior_count: float = 2
) -> pd.DataFrame:
    """
    Compare the recorded sex of each sample with its Y-chromosome expression.

    A sample whose mean log2-CPM over Y-linked genes exceeds ``threshold`` is
    called male, otherwise female. Disagreements are logged as warnings; no
    sample is removed.

    Args:
        data: Count data with a ``chromosome`` gene column
        threshold: Mean log2-CPM separating male from female samples
        prior_count: Prior count added before taking logs

    Returns:
        DataFrame indexed by sample with recorded and inferred sex, empty if
        no Y-linked genes are present
    """
    columns = ['sex', 'y_log_cpm', 'inferred_sex', 'mismatch']
    on_y = data.genes['chromosome'].astype(str).isin(Y_CHROMOSOMES).to_numpy()
    if not on_y.any():
        logger.warning("No Y-linked genes in the annotation; skipping sex check")
        return pd.DataFrame(columns=columns)

    log_cpm = ep.cpm(
        data.counts.to_numpy(dtype=float)[on_y],
        lib_size=data.effective_lib_size.to_numpy(dtype=float),
        log=True,
        prior_count=prior_count,
    )
    y_expression = np.asarray(log_cpm).mean(axis=0)

    check = pd.DataFrame({
        'sex': data.samples['sex'].astype(str),
        'y_log_cpm': y_expression,
    }, index=data.samples.index)
    check['inferred_sex'] = np.where(check['y_log_cpm'] > threshold, 'male', 'female')
    recorded = check['sex'].map(_sex_code)
    check['mismatch'] = recorded.notna() & (recorded != check['inferred_sex'])

    for sample, row in check[check['mismatch']].iterrows():
        logger.warning(
            f"Sample {sample} is labelled {row['sex']} but Y-linked expression "
            f"({row['y_log_cpm']:.2f} log2-CPM) suggests {row['inferred_sex']}"
        )

    return check[columns]
