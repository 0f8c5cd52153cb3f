"""
Normalization module for the DGE Pipeline.

TMM scaling factors are computed by edgepython. The checks here reject the
inputs for which the factors would be meaningless: empty libraries and
samples sharing too few expressed genes with the reference sample.
"""

import logging
from dataclasses import replace
from typing import Optional, Union
import warnings
import pandas as pd
import numpy as np
import edgepython as ep

from .quantify import CountData

logger = logging.getLogger(__name__)

def _reference_column(counts: np.ndarray, lib_size: np.ndarray) -> int:
    """Sample whose upper-quartile factor is closest to the mean upper-quartile factor."""
    expressed = counts[(counts > 0).any(axis=1)]
    f75 = np.quantile(expressed, 0.75, axis=0) / lib_size
    if np.median(f75) < 1e-20:
        return int(np.argmax(np.sqrt(expressed).sum(axis=0)))
    return int(np.argmin(np.abs(f75 - f75.mean())))

def calc_tmm_factors(
    counts: pd.DataFrame,
    lib_size: Optional[Union[pd.Series, np.ndarray]] = None,
    min_overlap: int = 10,
    method: str = 'TMM'
) -> pd.Series:
    """
    Compute TMM normalization factors.

    Args:
        counts: Count matrix (genes x samples)
        lib_size: Library sizes (default: column sums)
        min_overlap: Minimum number of genes a sample must share with the
            reference sample, counting only genes expressed in both
        method: edgepython normalization method

    Returns:
        Factors indexed by sample, with geometric mean 1

    Raises:
        ValueError: If a sample has no counts, overlaps too little with the
            reference, or gets a non-finite factor
    """
    x = counts.to_numpy(dtype=float)
    if lib_size is None:
        lib = x.sum(axis=0)
    else:
        lib = np.asarray(lib_size, dtype=float)

    empty = counts.columns[x.sum(axis=0) == 0].tolist()
    if empty:
        raise ValueError(f"Samples with no counts cannot be normalized: {empty}")

    ref_column = None
    if method == 'TMM':
        ref_column = _reference_column(x, lib)
        reference = counts.columns[ref_column]
        logger.debug(f"TMM reference sample: {reference}")

        overlap = ((x > 0) & (x[:, [ref_column]] > 0)).sum(axis=0)
        too_small = [
            f"{sample} ({n})" for sample, n in zip(counts.columns, overlap) if n < min_overlap
        ]
        if too_small:
            raise ValueError(
                f"Samples share fewer than {min_overlap} expressed genes with reference "
                f"{reference}: {', '.join(too_small)}"
            )

    with warnings.catch_warnings():
        warnings.simplefilter('ignore', RuntimeWarning)
        factors = np.asarray(
            ep.calc_norm_factors(x, lib_size=lib, method=method, ref_column=ref_column),
            dtype=float
        )

    bad = ~np.isfinite(factors) | (factors <= 0)
    if bad.any():
        raise ValueError(
            f"Normalization produced invalid factors for samples: {counts.columns[bad].tolist()}"
        )

    return pd.Series(factors, index=counts.columns, name='norm_factors')

def normalize(data: CountData, min_overlap: int = 10, method: str = 'TMM') -> CountData:
    """
    Recompute library sizes from the given counts and attach normalization factors.

    Args:
        data: Filtered count data
        min_overlap: See :func:`calc_tmm_factors`
        method: edgepython normalization method

    Returns:
        New CountData with updated ``lib_size`` and ``norm_factors``
    """
    lib_size = data.counts.sum(axis=0).astype(float)
    lib_size.name = 'lib_size'
    factors = calc_tmm_factors(data.counts, lib_size=lib_size, min_overlap=min_overlap, method=method)

    logger.info(
        f"{method} factors range from {factors.min():.3f} to {factors.max():.3f} "
        f"across {len(factors)} samples"
    )
    return replace(data, lib_size=lib_size, norm_factors=factors)

def log_cpm(data: CountData, prior_count: float = 2) -> pd.DataFrame:
    """Normalized log2 counts per million."""
    values = ep.cpm(
        data.counts.to_numpy(dtype=float),
        lib_size=data.effective_lib_size.to_numpy(dtype=float),
        log=True,
        prior_count=prior_count,
    )
    return pd.DataFrame(np.asarray(values), index=data.counts.index, columns=data.counts.columns)
