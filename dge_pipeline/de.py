"""
Differential expression module for the DGE Pipeline.

The paired design blocks on the originating individual, so the treatment
effect is estimated within individuals. Dispersion estimation, the
quasi-likelihood fit and both tests are run by edgepython; this module
keeps gene and sample identifiers attached to the results and adds the
Benjamini-Hochberg correction.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Any, Optional
import pandas as pd
import numpy as np
import edgepython as ep
from scipy.stats import norm
from statsmodels.stats.multitest import multipletests

from .quantify import CountData

logger = logging.getLogger(__name__)

RESULT_COLUMNS = ['logFC', 'logCPM', 'stat', 'PValue', 'FDR']

@dataclass
class ModelFit:
    """Dispersion estimates and quasi-likelihood fit for one dataset."""

    data: CountData
    design: pd.DataFrame
    dge: Dict[str, Any]
    fit: Dict[str, Any]
    coef: int
    robust: bool = True

    @property
    def coef_name(self) -> str:
        return self.design.columns[self.coef]

    @property
    def common_dispersion(self) -> float:
        return float(np.atleast_1d(self.dge['common.dispersion'])[0])

    @property
    def bcv(self) -> float:
        """Biological coefficient of variation implied by the common dispersion."""
        return float(np.sqrt(self.common_dispersion))

    @property
    def df_prior(self) -> float:
        return float(np.median(np.atleast_1d(self.fit['df.prior'])))

@dataclass(frozen=True)
class DEResult:
    """Per-gene test results joined with gene annotation, sorted by p-value."""

    table: pd.DataFrame
    test: str
    coef_name: str
    lfc: float = 0.0

    @property
    def n_genes(self) -> int:
        return len(self.table)

def build_design(
    samples: pd.DataFrame,
    treatment_column: str = 'treatment',
    block_column: Optional[str] = 'individual'
) -> pd.DataFrame:
    """
    Build the paired design matrix.

    Columns are an intercept, one indicator per individual except the first
    (sorted) level, and the treatment indicator as the last column.

    Args:
        samples: Sample metadata indexed by sample
        treatment_column: Two-level treatment column, reference level first
        block_column: Blocking column, or None for an unpaired design

    Returns:
        Design matrix as a DataFrame indexed by sample

    Raises:
        ValueError: If the design is rank deficient or leaves no residual
            degrees of freedom
    """
    if treatment_column not in samples.columns:
        raise ValueError(f"Sample metadata has no '{treatment_column}' column")

    treatment = samples[treatment_column]
    if isinstance(treatment.dtype, pd.CategoricalDtype):
        levels = list(treatment.cat.categories)
    else:
        levels = list(pd.unique(treatment))
    if len(levels) != 2:
        raise ValueError(f"Treatment must have exactly two levels, found: {levels}")

    design = pd.DataFrame({'Intercept': 1.0}, index=samples.index)

    if block_column is not None:
        if block_column not in samples.columns:
            raise ValueError(f"Sample metadata has no '{block_column}' column")
        block = pd.Categorical(samples[block_column].astype(str))
        dummies = pd.get_dummies(block, prefix=block_column, prefix_sep='', drop_first=True, dtype=float)
        dummies.index = samples.index
        design = pd.concat([design, dummies], axis=1)

    design[f"{treatment_column}{levels[1]}"] = (treatment.astype(str) == str(levels[1])).astype(float)

    rank = np.linalg.matrix_rank(design.to_numpy())
    if rank < design.shape[1]:
        raise ValueError(
            f"Design matrix is not of full rank ({rank} < {design.shape[1]} columns); "
            f"check that treatment is not confounded with {block_column}"
        )
    if design.shape[0] <= design.shape[1]:
        raise ValueError(
            f"Design with {design.shape[1]} columns leaves no residual degrees of freedom "
            f"for {design.shape[0]} samples"
        )

    logger.debug(f"Design matrix: {design.shape[0]} samples x {design.shape[1]} columns")
    return design

def to_dgelist(data: CountData) -> Dict[str, Any]:
    """Build an edgepython DGEList carrying the stored library sizes and factors."""
    return ep.make_dgelist(
        data.counts.to_numpy(dtype=float),
        lib_size=data.lib_size.to_numpy(dtype=float),
        norm_factors=data.norm_factors.to_numpy(dtype=float),
        group=data.samples['treatment'].astype(str).to_numpy(),
    )

def _estimate_and_fit(data: CountData, X: np.ndarray, robust: bool):
    logger.info(f"Estimating dispersions for {data.n_genes} genes")
    dge = ep.estimate_disp(to_dgelist(data), design=X, robust=robust)

    logger.info("Fitting quasi-likelihood negative binomial GLM")
    fit = ep.glm_ql_fit(dge, design=X, robust=robust)
    return dge, fit

def fit_model(data: CountData, design: pd.DataFrame, robust: bool = True) -> ModelFit:
    """
    Estimate dispersions and fit the quasi-likelihood GLM.

    When robust estimation fails to converge the model is refitted with
    ordinary empirical Bayes shrinkage; ``ModelFit.robust`` records which
    mode was used.

    Args:
        data: Filtered, normalized count data
        design: Output of :func:`build_design`, rows in sample order
        robust: Robust empirical Bayes shrinkage

    Returns:
        ModelFit testing the last design column
    """
    if list(design.index) != list(data.counts.columns):
        design = design.reindex(data.counts.columns)
        if design.isna().any().any():
            raise ValueError("Design rows do not match the count matrix samples")

    X = design.to_numpy(dtype=float)
    try:
        dge, fit = _estimate_and_fit(data, X, robust)
    except ValueError as e:
        if not robust:
            raise
        # the robust F-distribution fit has no root on some datasets
        logger.warning(f"Robust hyperparameter estimation failed ({e}); refitting without robust shrinkage")
        robust = False
        dge, fit = _estimate_and_fit(data, X, robust)

    model = ModelFit(
        data=data, design=design, dge=dge, fit=fit, coef=design.shape[1] - 1, robust=robust
    )
    logger.info(
        f"Common dispersion {model.common_dispersion:.4f} (BCV {model.bcv:.3f}), "
        f"prior df {model.df_prior:.1f}"
    )
    return model

def _build_result(table: pd.DataFrame, fit: ModelFit, test: str, lfc: float = 0.0) -> DEResult:
    table = table[['logFC', 'logCPM', 'stat', 'PValue']].copy()
    table.index = fit.data.counts.index
    table['FDR'] = multipletests(table['PValue'].to_numpy(), method='fdr_bh')[1]

    genes = fit.data.genes[['symbol', 'chromosome', 'entrez_id']]
    table = genes.join(table)
    table = table.sort_values('PValue', kind='mergesort')
    return DEResult(table=table, test=test, coef_name=fit.coef_name, lfc=lfc)

def test_treatment(fit: ModelFit) -> DEResult:
    """
    Quasi-likelihood F-test of the treatment coefficient.

    Args:
        fit: Fitted model

    Returns:
        DEResult whose ``stat`` is the F statistic
    """
    out = ep.glm_ql_ftest(fit.fit, coef=fit.coef)
    table = out['table'].rename(columns={'F': 'stat'})
    result = _build_result(table, fit, test='QLF')
    logger.info(f"QL F-test: {int((result.table['FDR'] < 0.05).sum())} genes at FDR < 0.05")
    return result

def test_treatment_threshold(fit: ModelFit, lfc: float = np.log2(1.5)) -> DEResult:
    """
    Test whether the absolute treatment log2 fold change exceeds ``lfc``.

    The ``stat`` column is the normal deviate matching each two-sided
    p-value, signed by the direction of the fold change.

    Args:
        fit: Fitted model
        lfc: Log2 fold-change threshold

    Returns:
        DEResult
    """
    if lfc < 0:
        raise ValueError("lfc threshold must be non-negative")
    out = ep.glm_treat(fit.fit, coef=fit.coef, lfc=lfc)
    table = out['table'].copy()
    if 'stat' not in table.columns:
        p = np.clip(table['PValue'].to_numpy(dtype=float), 1e-300, 1.0)
        table['stat'] = np.sign(table['logFC'].to_numpy()) * norm.isf(p / 2)
    result = _build_result(table, fit, test='TREAT', lfc=lfc)
    logger.info(
        f"TREAT (|logFC| > {lfc:.3f}): {int((result.table['FDR'] < 0.05).sum())} genes at FDR < 0.05"
    )
    return result

def decide_tests(result: DEResult, fdr: float = 0.05) -> pd.Series:
    """Classify genes as down (-1), not significant (0) or up (+1)."""
    table = result.table
    significant = table['FDR'] < fdr
    status = np.where(significant, np.sign(table['logFC']), 0).astype(int)
    return pd.Series(status, index=table.index, name=result.test)

def summarize_tests(result: DEResult, fdr: float = 0.05) -> pd.Series:
    """
    Count down-regulated, unchanged and up-regulated genes.

    Args:
        result: Test result
        fdr: FDR threshold

    Returns:
        Series indexed by ``Down``, ``NotSig``, ``Up``
    """
    status = decide_tests(result, fdr=fdr)
    return pd.Series({
        'Down': int((status == -1).sum()),
        'NotSig': int((status == 0).sum()),
        'Up': int((status == 1).sum()),
    }, name=result.test)

def top_table(result: DEResult, n: Optional[int] = 10, fdr: Optional[float] = None) -> pd.DataFrame:
    """
    Leading rows of a result table.

    Args:
        result: Test result
        n: Maximum number of rows (None for all)
        fdr: Only keep rows below this FDR

    Returns:
        Annotated table sorted by p-value
    """
    table = result.table
    if fdr is not None:
        table = table[table['FDR'] < fdr]
    if n is not None:
        table = table.head(n)
    return table.copy()
