"""
End-to-end differential expression analysis.

``run_analysis`` executes the stages in order, each consuming the previous
stage's output: ingestion, expression filtering, normalization, model
fitting, testing, gene set enrichment and reporting. All tables and plots
are written under the configured output directory at fixed relative paths.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Any
import pandas as pd

from . import __version__
from . import de, enrichment, viz
from .config import AnalysisConfig
from .normalize import normalize, log_cpm
from .qc import filter_by_expression, check_sex_labels, library_size_summary
from .quantify import load_from_samplesheet
from .report import generate_final_report
from .utils import validate_samplesheet, create_output_dirs, save_metrics_json

logger = logging.getLogger(__name__)

OUTPUT_SUBDIRS = ['counts', 'de', 'enrichment', 'plots']

def _write_result(result: de.DEResult, output_file: Path) -> Path:
    de.top_table(result, n=None).to_csv(output_file, index_label='gene_id')
    return output_file

def run_analysis(config: AnalysisConfig) -> Dict[str, Any]:
    """
    Run the full analysis described by ``config``.

    Args:
        config: Analysis configuration

    Returns:
        Run metrics, as also written to ``metrics.json``

    Raises:
        ValueError: If any input is malformed or the data are degenerate
        FileNotFoundError: If an input file is missing
    """
    config.validate()
    output_dir = Path(config.output_dir)
    dirs = create_output_dirs(output_dir, OUTPUT_SUBDIRS)
    logger.info(f"Writing results to {output_dir}")

    # Ingestion
    samplesheet = validate_samplesheet(
        config.samplesheet,
        treatment_column=config.treatment_column,
        block_column=config.block_column,
    )
    data = load_from_samplesheet(
        samplesheet,
        annotation=config.annotation,
        treatment_column=config.treatment_column,
        block_column=config.block_column,
        reference_level=config.reference_level,
        count_column=config.count_column,
        strip_version=config.strip_version,
        output_file=dirs['counts'] / 'merged_counts.tsv',
    )
    sex_check = check_sex_labels(data)

    # Filtering and normalization
    log_cpm_before = log_cpm(data)
    filtered, filter_summary = filter_by_expression(
        data, min_count=config.min_count, min_total_count=config.min_total_count
    )
    normalized = normalize(filtered, min_overlap=config.min_overlap, method=config.normalization_method)
    normalized_log_cpm = log_cpm(normalized)
    normalized_log_cpm.to_csv(dirs['counts'] / 'log_cpm.tsv', sep='\t', index_label='gene_id')
    library_size_summary(normalized).to_csv(dirs['counts'] / 'library_sizes.tsv', sep='\t')

    # Model fitting and testing
    design = de.build_design(
        normalized.samples,
        treatment_column='treatment',
        block_column='individual' if config.block_column else None,
    )
    fit = de.fit_model(normalized, design, robust=config.robust)
    qlf = de.test_treatment(fit)
    treat = de.test_treatment_threshold(fit, lfc=config.treat_lfc)

    _write_result(qlf, dirs['de'] / 'top_genes_qlf.csv')
    _write_result(treat, dirs['de'] / 'top_genes_treat.csv')
    de_summary = pd.concat(
        [de.summarize_tests(qlf, fdr=config.fdr), de.summarize_tests(treat, fdr=config.fdr)],
        axis=1,
    )
    de_summary.to_csv(dirs['de'] / 'de_summary.csv')
    logger.info(
        f"QL F-test at FDR < {config.fdr}: {de_summary.loc['Up', 'QLF']} up, "
        f"{de_summary.loc['Down', 'QLF']} down"
    )

    # Gene set enrichment
    enrichment_metrics = {}
    for collection, gene_set_file in config.gene_sets.items():
        gene_sets = enrichment.load_gene_sets(gene_set_file)
        ora = enrichment.over_representation(
            qlf, gene_sets, fdr=config.fdr,
            min_size=config.min_set_size, max_size=config.max_set_size,
        )
        camera = enrichment.camera_test(
            fit, gene_sets,
            min_size=config.min_set_size, max_size=config.max_set_size,
            use_ranks=config.use_ranks,
        )
        ora_significant = enrichment.significant_sets(ora, fdr=config.enrichment_fdr)
        camera_significant = enrichment.significant_sets(camera, fdr=config.enrichment_fdr)
        ora_significant.to_csv(dirs['enrichment'] / f'{collection}_ora.csv', index_label='set')
        camera_significant.to_csv(dirs['enrichment'] / f'{collection}_camera.csv', index_label='set')
        enrichment_metrics[collection] = {
            'sets_loaded': len(gene_sets),
            'ora_tested': len(ora),
            'ora_significant': len(ora_significant),
            'camera_tested': len(camera),
            'camera_significant': len(camera_significant),
        }
        logger.info(
            f"{collection}: {len(ora_significant)} over-represented and "
            f"{len(camera_significant)} camera sets at FDR < {config.enrichment_fdr}"
        )

    # Plots
    plots = dirs['plots']
    viz.plot_library_sizes(data, plots / 'library_sizes.png')
    viz.plot_log_cpm_density(
        log_cpm_before, log_cpm_before.loc[normalized.counts.index],
        plots / 'log_cpm_density.png', cutoff=filter_summary.cpm_cutoff,
    )
    viz.plot_mds(normalized_log_cpm, normalized.samples, plots / 'mds.png')
    viz.plot_pca(normalized_log_cpm, normalized.samples, plots / 'pca.png')
    viz.plot_bcv(fit, plots / 'bcv.png')
    viz.plot_ql_dispersion(fit, plots / 'ql_dispersion.png')
    for name, result in [('qlf', qlf), ('treat', treat)]:
        viz.plot_md(result, plots / f'md_{name}.png', fdr=config.fdr)
        viz.plot_volcano(result, plots / f'volcano_{name}.png', fdr=config.fdr)
    viz.plot_volcano_interactive(qlf, plots / 'volcano_qlf.html', fdr=config.fdr)
    viz.plot_heatmap(
        normalized_log_cpm, qlf, normalized.samples, plots / 'heatmap_qlf.png',
        n_genes=config.heatmap_genes,
    )

    metrics = {
        'pipeline_version': __version__,
        'timestamp': datetime.now().isoformat(timespec='seconds'),
        'n_samples': normalized.n_samples,
        'samples': list(normalized.samples.index),
        'ingestion': {
            'genes_total': data.genes_parsed,
            'genes_annotated': data.n_genes,
        },
        'filtering': filter_summary.to_dict(),
        'normalization': {
            'method': config.normalization_method,
            'lib_size': normalized.lib_size.to_dict(),
            'norm_factors': normalized.norm_factors.to_dict(),
        },
        'model': {
            'design_columns': list(design.columns),
            'coefficient': fit.coef_name,
            'common_dispersion': fit.common_dispersion,
            'bcv': fit.bcv,
            'df_prior': fit.df_prior,
            'robust': fit.robust,
        },
        'de': {column: de_summary[column].to_dict() for column in de_summary.columns},
        'enrichment': enrichment_metrics,
        'sex_check': {
            'mismatches': list(sex_check.index[sex_check['mismatch'].astype(bool)]),
        },
        'parameters': {
            'min_count': config.min_count,
            'min_total_count': config.min_total_count,
            'min_overlap': config.min_overlap,
            'fdr': config.fdr,
            'treat_lfc': config.treat_lfc,
            'enrichment_fdr': config.enrichment_fdr,
            'min_set_size': config.min_set_size,
            'max_set_size': config.max_set_size,
            'use_ranks': config.use_ranks,
        },
    }
    save_metrics_json(metrics, output_dir / 'metrics.json')

    generate_final_report(output_dir, top_n=config.top_n)
    logger.info("Analysis complete")
    return metrics
