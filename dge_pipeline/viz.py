"""
Visualization module for the DGE Pipeline.

Every function writes one figure and returns its path. Static figures are
PNG files saved at 300 dpi; the interactive volcano plot is a standalone
HTML file.
"""

import logging
from pathlib import Path
from typing import Optional
import pandas as pd
import numpy as np
import matplotlib.pyplot as plt
import seaborn as sns
import plotly.graph_objects as go
import edgepython as ep
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler

from .quantify import CountData
from .de import DEResult, ModelFit, decide_tests

logger = logging.getLogger(__name__)

STATUS_COLORS = {'Down': '#3498DB', 'NotSig': 'lightgray', 'Up': '#E74C3C'}

def _save(fig: plt.Figure, output_file: Path) -> Path:
    output_file = Path(output_file)
    fig.savefig(output_file, dpi=300, bbox_inches='tight')
    plt.close(fig)
    logger.debug(f"Saved {output_file}")
    return output_file

def _status_labels(result: DEResult, fdr: float) -> pd.Series:
    status = decide_tests(result, fdr=fdr)
    return status.map({-1: 'Down', 0: 'NotSig', 1: 'Up'})

def plot_library_sizes(data: CountData, output_file: Path) -> Path:
    """Bar chart of library sizes in millions, coloured by treatment."""
    treatment = data.samples['treatment'].astype(str)
    palette = dict(zip(treatment.unique(), sns.color_palette('Set2', treatment.nunique())))

    fig, ax = plt.subplots(figsize=(max(6, 0.5 * data.n_samples), 5))
    ax.bar(
        range(data.n_samples),
        data.lib_size.to_numpy() / 1e6,
        color=[palette[t] for t in treatment],
    )
    ax.set_xticks(range(data.n_samples))
    ax.set_xticklabels(data.samples.index, rotation=45, ha='right')
    ax.set_xlabel('Sample')
    ax.set_ylabel('Library size (millions)')
    ax.set_title('Library Sizes')
    for level, color in palette.items():
        ax.bar(0, 0, color=color, label=level)
    ax.legend(title='Treatment')
    ax.grid(True, axis='y', alpha=0.3)
    plt.tight_layout()
    return _save(fig, output_file)

def plot_log_cpm_density(
    before: pd.DataFrame,
    after: pd.DataFrame,
    output_file: Path,
    cutoff: Optional[float] = None
) -> Path:
    """
    Per-sample log-CPM densities before and after expression filtering.

    Args:
        before: log-CPM matrix of all ingested genes
        after: log-CPM matrix of the retained genes
        output_file: PNG path
        cutoff: CPM cutoff drawn as a vertical line on both panels

    Returns:
        Path to the saved figure
    """
    fig, axes = plt.subplots(1, 2, figsize=(12, 5), sharey=True)
    for ax, matrix, title in zip(axes, [before, after], ['Before filtering', 'After filtering']):
        for sample in matrix.columns:
            sns.kdeplot(matrix[sample].to_numpy(), ax=ax, linewidth=1, label=sample)
        if cutoff is not None and cutoff > 0:
            ax.axvline(np.log2(cutoff), color='gray', linestyle='--', alpha=0.7)
        ax.set_title(f'{title} ({matrix.shape[0]} genes)')
        ax.set_xlabel('log2 CPM')
    axes[0].set_ylabel('Density')
    if before.shape[1] <= 12:
        axes[1].legend(fontsize=7)
    plt.tight_layout()
    return _save(fig, output_file)

def leading_logfc_distances(log_cpm: pd.DataFrame, top: int = 500) -> pd.DataFrame:
    """
    Pairwise distances between samples.

    Each distance is the root-mean-square log-fold-change over the ``top``
    genes that differ most between that pair of samples.
    """
    values = log_cpm.to_numpy()
    n = values.shape[1]
    top = min(top, values.shape[0])
    distances = np.zeros((n, n))
    for i in range(n):
        for j in range(i + 1, n):
            diff = np.sort((values[:, i] - values[:, j]) ** 2)[::-1][:top]
            distances[i, j] = distances[j, i] = np.sqrt(diff.mean())
    return pd.DataFrame(distances, index=log_cpm.columns, columns=log_cpm.columns)

def plot_mds(
    log_cpm: pd.DataFrame,
    samples: pd.DataFrame,
    output_file: Path,
    top: int = 500
) -> Path:
    """
    Classical MDS of samples, coloured by treatment and labelled by individual.

    Args:
        log_cpm: Normalized log-CPM matrix
        samples: Sample metadata
        output_file: PNG path
        top: Number of leading genes per pairwise distance

    Returns:
        Path to the saved figure
    """
    distances = leading_logfc_distances(log_cpm, top=top).to_numpy()
    n = distances.shape[0]
    centering = np.eye(n) - np.ones((n, n)) / n
    b = -0.5 * centering @ (distances ** 2) @ centering
    eigvals, eigvecs = np.linalg.eigh(b)
    order = np.argsort(eigvals)[::-1]
    eigvals = np.maximum(eigvals[order], 0)
    eigvecs = eigvecs[:, order]
    coords = eigvecs[:, :2] * np.sqrt(eigvals[:2])
    explained = eigvals[:2] / eigvals.sum() * 100 if eigvals.sum() > 0 else np.zeros(2)

    frame = pd.DataFrame({
        'dim1': coords[:, 0],
        'dim2': coords[:, 1],
        'treatment': samples['treatment'].astype(str).to_numpy(),
        'individual': samples['individual'].astype(str).to_numpy(),
    }, index=log_cpm.columns)

    fig, ax = plt.subplots(figsize=(8, 6))
    sns.scatterplot(data=frame, x='dim1', y='dim2', hue='treatment', s=100, ax=ax)
    for _, row in frame.iterrows():
        ax.annotate(row['individual'], (row['dim1'], row['dim2']),
                    textcoords='offset points', xytext=(5, 5), fontsize=8)
    ax.set_xlabel(f'Leading logFC dim 1 ({explained[0]:.1f}%)')
    ax.set_ylabel(f'Leading logFC dim 2 ({explained[1]:.1f}%)')
    ax.set_title('MDS: Sample Relationships')
    plt.tight_layout()
    return _save(fig, output_file)

def plot_pca(log_cpm: pd.DataFrame, samples: pd.DataFrame, output_file: Path) -> Path:
    """PCA of standardized log-CPM values."""
    expr_scaled = StandardScaler().fit_transform(log_cpm.T.to_numpy())
    pca = PCA(n_components=2)
    pca_result = pca.fit_transform(expr_scaled)

    frame = pd.DataFrame({
        'PC1': pca_result[:, 0],
        'PC2': pca_result[:, 1],
        'treatment': samples['treatment'].astype(str).to_numpy(),
    }, index=log_cpm.columns)

    fig, ax = plt.subplots(figsize=(8, 6))
    sns.scatterplot(data=frame, x='PC1', y='PC2', hue='treatment', s=100, alpha=0.8, ax=ax)
    for sample, row in frame.iterrows():
        ax.annotate(sample, (row['PC1'], row['PC2']), fontsize=8, ha='center', va='bottom')
    ax.set_xlabel(f'PC1 ({pca.explained_variance_ratio_[0]*100:.1f}%)')
    ax.set_ylabel(f'PC2 ({pca.explained_variance_ratio_[1]*100:.1f}%)')
    ax.set_title('PCA: Sample Distribution')
    ax.axhline(y=0, color='gray', linestyle='--', alpha=0.3)
    ax.axvline(x=0, color='gray', linestyle='--', alpha=0.3)
    plt.tight_layout()
    return _save(fig, output_file)

def plot_bcv(fit: ModelFit, output_file: Path) -> Path:
    """Biological coefficient of variation against average log-CPM."""
    fig, ax = ep.plot_bcv(fit.dge)
    ax.set_title(f'BCV (common {fit.bcv:.3f})')
    return _save(fig, output_file)

def plot_ql_dispersion(fit: ModelFit, output_file: Path) -> Path:
    """Raw, squeezed and trended quasi-likelihood dispersions."""
    fig, ax = ep.plot_ql_disp(fit.fit)
    ax.set_title('Quasi-likelihood Dispersion')
    return _save(fig, output_file)

def plot_md(result: DEResult, output_file: Path, fdr: float = 0.05) -> Path:
    """Mean-difference plot with genes coloured by test outcome."""
    status = _status_labels(result, fdr)
    table = result.table

    fig, ax = plt.subplots(figsize=(8, 6))
    for label, color in STATUS_COLORS.items():
        mask = (status == label).to_numpy()
        ax.scatter(table['logCPM'].to_numpy()[mask], table['logFC'].to_numpy()[mask],
                   s=4, alpha=0.6, c=color, label=f'{label} ({int(mask.sum())})')
    ax.axhline(y=0, color='gray', linestyle='--', linewidth=0.8)
    ax.set_xlabel('Average log CPM')
    ax.set_ylabel('log2 Fold Change')
    ax.set_title(f'MD Plot: {result.coef_name} ({result.test})')
    ax.legend(loc='upper right')
    plt.tight_layout()
    return _save(fig, output_file)

def plot_volcano(
    result: DEResult,
    output_file: Path,
    fdr: float = 0.05,
    label_top: int = 10
) -> Path:
    """
    Volcano plot of log fold change against -log10 p-value.

    Args:
        result: Test result
        output_file: PNG path
        fdr: Threshold used to colour genes
        label_top: Number of leading significant genes to label by symbol

    Returns:
        Path to the saved figure
    """
    table = result.table.copy()
    table['neg_log10_p'] = -np.log10(table['PValue'].clip(lower=1e-300))
    table['significance'] = _status_labels(result, fdr)

    fig, ax = plt.subplots(figsize=(8, 6))
    for label, color in STATUS_COLORS.items():
        subset = table[table['significance'] == label]
        ax.scatter(subset['logFC'], subset['neg_log10_p'], c=color, alpha=0.6, s=12, label=label)

    significant = table[table['significance'] != 'NotSig']
    if len(significant) > 0:
        threshold = significant['neg_log10_p'].min()
        ax.axhline(y=threshold, color='gray', linestyle='--', alpha=0.5)
    if result.lfc > 0:
        ax.axvline(x=result.lfc, color='gray', linestyle='--', alpha=0.5)
        ax.axvline(x=-result.lfc, color='gray', linestyle='--', alpha=0.5)

    for _, row in significant.head(label_top).iterrows():
        ax.annotate(row['symbol'], (row['logFC'], row['neg_log10_p']), fontsize=8,
                    ha='center', va='bottom')

    n_up = (table['significance'] == 'Up').sum()
    n_down = (table['significance'] == 'Down').sum()
    ax.text(0.02, 0.98, f'Up: {n_up}\nDown: {n_down}', transform=ax.transAxes,
            verticalalignment='top', fontsize=10,
            bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))
    ax.set_xlabel('log2 Fold Change')
    ax.set_ylabel('-log10 P-value')
    ax.set_title(f'Volcano Plot: {result.coef_name} ({result.test})')
    ax.legend(loc='upper right')
    plt.tight_layout()
    return _save(fig, output_file)

def plot_volcano_interactive(result: DEResult, output_file: Path, fdr: float = 0.05) -> Path:
    """Standalone HTML volcano plot with gene symbols on hover."""
    table = result.table.copy()
    table['neg_log10_p'] = -np.log10(table['PValue'].clip(lower=1e-300))
    table['significance'] = _status_labels(result, fdr)

    fig = go.Figure()
    for label, color in STATUS_COLORS.items():
        subset = table[table['significance'] == label]
        fig.add_trace(go.Scatter(
            x=subset['logFC'],
            y=subset['neg_log10_p'],
            mode='markers',
            name=label,
            marker=dict(color=color, size=5, opacity=0.7),
            text=subset['symbol'].astype(str),
            customdata=subset['FDR'],
            hovertemplate='<b>%{text}</b><br>logFC: %{x:.2f}<br>FDR: %{customdata:.2e}<extra></extra>',
        ))
    fig.update_layout(
        title=dict(text=f'{result.coef_name} ({result.test})', x=0.5),
        xaxis_title='log2 Fold Change',
        yaxis_title='-log10 P-value',
        template='plotly_white',
    )
    fig.write_html(str(output_file), include_plotlyjs=True, full_html=True)
    logger.debug(f"Saved {output_file}")
    return Path(output_file)

def plot_heatmap(
    log_cpm: pd.DataFrame,
    result: DEResult,
    samples: pd.DataFrame,
    output_file: Path,
    n_genes: int = 30
) -> Optional[Path]:
    """
    Heatmap of row-standardized log-CPM for the leading genes.

    Args:
        log_cpm: Normalized log-CPM matrix
        result: Test result supplying the gene order
        samples: Sample metadata, used for column labels
        output_file: PNG path
        n_genes: Number of leading genes

    Returns:
        Path to the saved figure, or None if no gene is available
    """
    genes = [g for g in result.table.index[:n_genes] if g in log_cpm.index]
    if not genes:
        logger.warning("Skipping heatmap - no genes to show")
        return None

    expr = log_cpm.loc[genes]
    sd = expr.std(axis=1).replace(0, 1)
    expr_zscore = expr.sub(expr.mean(axis=1), axis=0).div(sd, axis=0)
    expr_zscore.index = result.table.loc[genes, 'symbol'].fillna(pd.Series(genes, index=genes)).astype(str)

    order = samples.sort_values(['treatment', 'individual']).index
    expr_zscore = expr_zscore[order]
    expr_zscore.columns = [
        f"{s} ({samples.loc[s, 'treatment']})" for s in order
    ]

    fig, ax = plt.subplots(figsize=(max(8, 0.6 * len(order)), max(6, 0.3 * len(genes))))
    sns.heatmap(expr_zscore, cmap='RdBu_r', center=0, ax=ax, xticklabels=True,
                yticklabels=True, cbar_kws={'label': 'Z-score'})
    ax.set_title(f'Top {len(genes)} Genes ({result.test})')
    ax.set_xlabel('Samples')
    ax.set_ylabel('Genes')
    plt.tight_layout()
    return _save(fig, output_file)
