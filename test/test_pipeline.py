#!/usr/bin/env python3
"""
DGE Pipeline - Test Suite

Pytest test suite for validating pipeline components.
"""

import json
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
import yaml
from scipy.stats import hypergeom
from typer.testing import CliRunner

# Add the project root to the Python path
import sys
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dge_pipeline import cli, utils, quantify, qc, normalize, de, enrichment, viz, report
from dge_pipeline.config import AnalysisConfig
from dge_pipeline.pipeline import run_analysis
from test.generate_test_data import CountDataGenerator, create_sample_data, ABSENT_ENTREZ


def write_count_file(path: Path, rows, meta=True) -> Path:
    lines = [f"{gene}\t{count}" for gene, count in rows]
    if meta:
        lines += ["__no_feature\t500", "__ambiguous\t20", "__alignment_not_unique\t300"]
    path.write_text("\n".join(lines) + "\n")
    return path


def make_result(entrez, logfc, fdr) -> de.DEResult:
    table = pd.DataFrame({
        'symbol': [f'G{e}' for e in entrez],
        'chromosome': '1',
        'entrez_id': [str(e) for e in entrez],
        'logFC': logfc,
        'logCPM': 5.0,
        'stat': 0.0,
        'PValue': fdr,
        'FDR': fdr,
    }, index=[f'ENSG{e}' for e in entrez])
    return de.DEResult(table=table, test='QLF', coef_name='treatmenttreated')


def null_count_data(seed: int, n_individuals: int = 7) -> quantify.CountData:
    """Count data for treated/control pairs with no treatment effect."""
    generator = CountDataGenerator(
        n_genes=300, n_individuals=n_individuals, fold_change=1.0, n_y_genes=0, seed=seed
    )
    counts = generator.simulate_counts()
    samples = quantify.build_sample_metadata(
        list(counts.columns),
        treatment=generator.samples['treatment'].tolist(),
        individual=generator.samples['individual'].tolist(),
        batch=generator.samples['batch'].tolist(),
        sex=generator.samples['sex'].tolist(),
    )
    return quantify.CountData(
        counts=counts,
        samples=samples,
        genes=pd.DataFrame({
            'symbol': generator.genes['symbol'].to_numpy(),
            'chromosome': generator.genes['chromosome'].to_numpy(),
            'entrez_id': generator.genes['gene_id'].to_numpy(),
        }, index=counts.index),
        lib_size=counts.sum(axis=0).astype(float),
        norm_factors=pd.Series(1.0, index=counts.columns),
    )


class TestUtils:
    """Test utility functions."""

    def test_validate_file_exists(self, tmp_path):
        """Test file validation function."""
        test_file = tmp_path / "test.txt"
        test_file.write_text("test content")

        assert utils.validate_file_exists(test_file) == test_file

        with pytest.raises(FileNotFoundError):
            utils.validate_file_exists(tmp_path / "nonexistent.txt")

    def test_validate_samplesheet_resolves_paths(self, dataset):
        """Count file paths are made absolute relative to the sheet."""
        samples = utils.validate_samplesheet(dataset['samplesheet'])

        assert len(samples) == 8
        assert list(samples.columns[:6]) == utils.SAMPLESHEET_COLUMNS
        assert all(Path(p).is_absolute() and Path(p).exists() for p in samples['count_file'])

    def test_validate_samplesheet_missing_column(self, tmp_path):
        """Test samplesheet missing a required column."""
        samplesheet = tmp_path / "samplesheet.tsv"
        samplesheet.write_text("sample_id\tcount_file\ttreatment\nS1\ta.txt\tcontrol\n")

        with pytest.raises(ValueError, match="Missing required columns"):
            utils.validate_samplesheet(samplesheet)

    def test_validate_samplesheet_renamed_columns(self, dataset, tmp_path):
        """Treatment and individual columns can be renamed or the block dropped."""
        sheet = pd.read_csv(dataset['samplesheet'], sep='\t')
        sheet['count_file'] = [str(dataset['samplesheet'].parent / f) for f in sheet['count_file']]
        renamed = sheet.rename(columns={'individual': 'donor', 'treatment': 'condition'})
        renamed.to_csv(tmp_path / 'renamed.tsv', sep='\t', index=False)

        samples = utils.validate_samplesheet(
            tmp_path / 'renamed.tsv', treatment_column='condition', block_column='donor'
        )
        assert len(samples) == 8

        with pytest.raises(ValueError, match="individual"):
            utils.validate_samplesheet(tmp_path / 'renamed.tsv', treatment_column='condition')

        sheet.drop(columns=['individual']).to_csv(tmp_path / 'unpaired.tsv', sep='\t', index=False)
        assert len(utils.validate_samplesheet(tmp_path / 'unpaired.tsv', block_column=None)) == 8

    def test_validate_samplesheet_missing_count_file(self, tmp_path):
        """Test samplesheet referencing a count file that does not exist."""
        samplesheet = tmp_path / "samplesheet.tsv"
        samplesheet.write_text(
            "sample_id\tcount_file\ttreatment\tindividual\tbatch\tsex\n"
            "S1\tmissing.txt\tcontrol\tind1\tb1\tM\n"
            "S2\tmissing2.txt\ttreated\tind1\tb1\tM\n"
        )

        with pytest.raises(ValueError, match="Count file not found"):
            utils.validate_samplesheet(samplesheet)

    def test_metrics_round_trip_numpy_values(self, tmp_path):
        """numpy scalars are written as plain JSON numbers."""
        metrics_file = tmp_path / "metrics.json"
        utils.save_metrics_json({'n': np.int64(3), 'x': np.float64(0.5), 'path': tmp_path}, metrics_file)

        loaded = utils.load_metrics_json(metrics_file)
        assert loaded == {'n': 3, 'x': 0.5, 'path': str(tmp_path)}


class TestConfig:
    """Test configuration loading."""

    def test_from_yaml_merges_defaults(self, tmp_path):
        """Test that user settings override only what they name."""
        config_file = tmp_path / "config.yml"
        config_file.write_text(yaml.safe_dump({
            'samplesheet': 'sheet.tsv',
            'annotation': '/abs/annotation.tsv',
            'filtering': {'min_count': 5},
        }))

        config = AnalysisConfig.from_yaml(config_file)

        assert config.samplesheet == tmp_path / 'sheet.tsv'
        assert config.annotation == Path('/abs/annotation.tsv')
        assert config.output_dir == tmp_path / 'results'
        assert config.min_count == 5
        assert config.min_total_count == 15
        assert config.fdr == 0.05
        assert config.block_column == 'individual'

    def test_missing_config(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            AnalysisConfig.from_yaml(tmp_path / "missing.yml")

    def test_invalid_yaml(self, tmp_path):
        config_file = tmp_path / "config.yml"
        config_file.write_text("- just\n- a list\n")

        with pytest.raises(ValueError):
            AnalysisConfig.from_yaml(config_file)

    def test_validate_thresholds(self, tmp_path):
        config = AnalysisConfig(samplesheet=tmp_path, annotation=tmp_path, output_dir=tmp_path, fdr=1.5)

        with pytest.raises(ValueError, match="FDR"):
            config.validate()


class TestIngestion:
    """Test count file parsing, merging and annotation."""

    def test_read_count_file_excludes_meta_rows(self, tmp_path):
        """HTSeq meta rows reach neither the matrix nor the library size."""
        count_file = write_count_file(tmp_path / "S1.counts.txt", [("G1", 10), ("G2", 0), ("G3", 5)])

        counts = quantify.read_count_file(count_file)

        assert list(counts.index) == ["G1", "G2", "G3"]
        assert counts.sum() == 15
        assert counts.name == "S1"

    def test_read_star_counts_column(self, tmp_path):
        """Test choosing a column of a STAR ReadsPerGene file."""
        count_file = tmp_path / "S1.ReadsPerGene.out.tab"
        count_file.write_text(
            "N_unmapped\t100\t100\t100\n"
            "N_multimapping\t50\t50\t50\n"
            "N_noFeature\t10\t20\t30\n"
            "N_ambiguous\t5\t5\t5\n"
            "G1\t10\t1\t9\n"
            "G2\t20\t2\t18\n"
        )

        counts = quantify.read_count_file(count_file, count_column=3, sample_name="S1")

        assert counts.to_dict() == {"G1": 9, "G2": 18}

    def test_read_count_file_rejects_bad_content(self, tmp_path):
        non_numeric = write_count_file(tmp_path / "a.txt", [("G1", 10), ("G2", "x")], meta=False)
        with pytest.raises(ValueError):
            quantify.read_count_file(non_numeric)

        single_column = tmp_path / "b.txt"
        single_column.write_text("G1\nG2\n")
        with pytest.raises(ValueError):
            quantify.read_count_file(single_column)

        negative = write_count_file(tmp_path / "c.txt", [("G1", 10), ("G2", -1)])
        with pytest.raises(ValueError, match="Negative"):
            quantify.read_count_file(negative)

        duplicated = write_count_file(tmp_path / "d.txt", [("G1", 10), ("G1", 3)])
        with pytest.raises(ValueError, match="Duplicated"):
            quantify.read_count_file(duplicated)

    def test_read_missing_count_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            quantify.read_count_file(tmp_path / "missing.txt")

    def test_merge_count_files(self, tmp_path):
        """Test merging two samples into one matrix."""
        a = write_count_file(tmp_path / "A.counts.txt", [("G1", 1), ("G2", 2)])
        b = write_count_file(tmp_path / "B.counts.txt", [("G2", 4), ("G1", 3)])
        output_file = tmp_path / "merged.tsv"

        merged = quantify.merge_count_files([a, b], output_file=output_file)

        assert list(merged.columns) == ["A", "B"]
        assert merged.loc["G1"].tolist() == [1, 3]
        assert merged.loc["G2"].tolist() == [2, 4]
        assert output_file.exists()

    def test_merge_mismatched_features(self, tmp_path):
        a = write_count_file(tmp_path / "A.txt", [("G1", 1), ("G2", 2)])
        b = write_count_file(tmp_path / "B.txt", [("G1", 1), ("G3", 2)])

        with pytest.raises(ValueError, match="different features"):
            quantify.merge_count_files([a, b])

    def test_build_sample_metadata(self):
        samples = quantify.build_sample_metadata(
            ["S1", "S2", "S3", "S4"],
            treatment=["treated", "control", "treated", "control"],
            individual=["i1", "i1", "i2", "i2"],
            batch=["b1"] * 4,
            sex=["M", "M", "F", "F"],
        )

        assert list(samples['treatment'].cat.categories) == ["control", "treated"]
        assert list(samples.index) == ["S1", "S2", "S3", "S4"]

    def test_build_sample_metadata_label_mismatch(self):
        with pytest.raises(ValueError, match="individual"):
            quantify.build_sample_metadata(
                ["S1", "S2"], treatment=["control", "treated"], individual=["i1"],
                batch=["b1", "b1"], sex=["M", "M"],
            )

    def test_annotate_genes(self):
        """Genes without Entrez IDs are dropped; duplicates keep the highest total."""
        counts = pd.DataFrame(
            {"S1": [10, 50, 5, 7], "S2": [10, 50, 5, 7]},
            index=["ENSG1.2", "ENSG2.1", "ENSG3.4", "ENSG4.1"],
        )
        annotation = pd.DataFrame({
            'symbol': ["A", "B", "C", "D"],
            'chromosome': ["1", "1", "2", "X"],
            'entrez_id': ["100", "100", None, "400"],
        }, index=pd.Index(["ENSG1", "ENSG2", "ENSG3", "ENSG4"], name='gene_id'))

        annotated = quantify.annotate_genes(counts, annotation)

        assert list(annotated['counts'].index) == ["ENSG2.1", "ENSG4.1"]
        assert annotated['genes']['entrez_id'].tolist() == ["100", "400"]
        assert annotated['genes']['symbol'].tolist() == ["B", "D"]

    def test_load_count_data(self, count_data, dataset):
        """Matrix columns match the labels; Entrez IDs are unique and present."""
        generator = dataset['generator']

        assert count_data.n_samples == len(generator.samples)
        assert list(count_data.counts.columns) == generator.samples['sample_id'].tolist()
        assert count_data.genes['entrez_id'].notna().all()
        assert count_data.genes['entrez_id'].is_unique
        assert (count_data.norm_factors == 1.0).all()

        # library sizes come from the full parsed matrix
        assert np.allclose(count_data.lib_size.to_numpy(), dataset['counts'].sum(axis=0).to_numpy())

    def test_load_count_data_label_mismatch(self, dataset):
        with pytest.raises(ValueError, match="treatment"):
            quantify.load_count_data(
                dataset['count_files'],
                treatment=["control", "treated"],
                individual=["i"] * 8,
                batch=["b"] * 8,
                sex=["M"] * 8,
                annotation=dataset['annotation'],
            )


class TestFiltering:
    """Test expression filtering and sample checks."""

    def test_filter_by_expression(self, count_data):
        """Every kept gene passes the CPM cutoff in enough samples."""
        filtered, summary = qc.filter_by_expression(count_data)

        lib = count_data.lib_size.to_numpy()
        cpm = filtered.counts.to_numpy() / lib * 1e6
        passing = (cpm >= summary.cpm_cutoff - 1e-9).sum(axis=1)

        assert summary.min_samples == 4
        assert (passing >= summary.min_samples).all()
        assert (filtered.counts.sum(axis=1) > 0).all()
        assert summary.genes_after == filtered.n_genes < count_data.n_genes
        assert summary.cpm_cutoff == pytest.approx(10 / np.median(lib) * 1e6)
        assert summary.count_floor == pytest.approx(summary.cpm_cutoff * np.mean(lib) / 1e6)

    def test_filter_keeps_library_sizes(self, count_data):
        filtered, _ = qc.filter_by_expression(count_data)

        pd.testing.assert_series_equal(filtered.lib_size, count_data.lib_size)

    def test_zero_rows_always_removed(self, count_data):
        """All-zero genes are dropped even with no thresholds."""
        filtered, _ = qc.filter_by_expression(count_data, min_count=0, min_total_count=0)

        assert (filtered.counts.sum(axis=1) > 0).all()
        assert filtered.n_genes == int((count_data.counts.sum(axis=1) > 0).sum())

    def test_library_size_summary(self, count_data):
        summary = qc.library_size_summary(count_data)

        assert list(summary.index) == list(count_data.samples.index)
        assert (summary['lib_size'] > 0).all()

    def test_check_sex_labels(self, count_data):
        """A mislabelled sample is flagged and kept."""
        assert not qc.check_sex_labels(count_data)['mismatch'].any()

        samples = count_data.samples.copy()
        samples.loc['ind1_control', 'sex'] = 'F'
        relabelled = quantify.CountData(
            counts=count_data.counts, samples=samples, genes=count_data.genes,
            lib_size=count_data.lib_size, norm_factors=count_data.norm_factors,
        )

        check = qc.check_sex_labels(relabelled)

        assert check['mismatch'].sum() == 1
        assert check.loc['ind1_control', 'inferred_sex'] == 'male'
        assert len(check) == relabelled.n_samples


class TestNormalization:
    """Test TMM normalization."""

    def test_factors_geometric_mean_one(self, normalized_data):
        factors = normalized_data.norm_factors.to_numpy()

        assert np.exp(np.mean(np.log(factors))) == pytest.approx(1.0)
        assert np.all(np.isfinite(factors)) and np.all(factors > 0)

    def test_factors_scale_invariant(self, normalized_data):
        """Scaling every count by a constant leaves the factors unchanged."""
        counts = normalized_data.counts
        factors = normalize.calc_tmm_factors(counts)
        scaled = normalize.calc_tmm_factors(counts * 7)

        assert np.allclose(factors.to_numpy(), scaled.to_numpy(), rtol=1e-6)

    def test_empty_sample_rejected(self):
        counts = pd.DataFrame({'A': [10, 20, 30], 'B': [0, 0, 0], 'C': [5, 6, 7]})

        with pytest.raises(ValueError, match="no counts"):
            normalize.calc_tmm_factors(counts)

    def test_insufficient_overlap_rejected(self):
        """A sample sharing too few expressed genes with the reference is rejected."""
        rng = np.random.default_rng(1)
        a = np.concatenate([rng.integers(10, 100, 40), np.zeros(10, dtype=int)])
        b = np.concatenate([rng.integers(10, 100, 40), np.zeros(10, dtype=int)])
        c = np.concatenate([np.zeros(37, dtype=int), rng.integers(10, 100, 13)])
        counts = pd.DataFrame({'A': a, 'B': b, 'C': c})

        with pytest.raises(ValueError, match="expressed genes"):
            normalize.calc_tmm_factors(counts, min_overlap=10)

    def test_normalize_recomputes_library_sizes(self, count_data, normalized_data):
        assert np.allclose(
            normalized_data.lib_size.to_numpy(),
            normalized_data.counts.sum(axis=0).to_numpy(),
        )
        assert (normalized_data.lib_size < count_data.lib_size).all()

    def test_log_cpm(self, normalized_data):
        values = normalize.log_cpm(normalized_data)

        assert values.shape == normalized_data.counts.shape
        assert list(values.index) == list(normalized_data.counts.index)
        assert np.isfinite(values.to_numpy()).all()


class TestDifferentialExpression:
    """Test design, model fitting and tests."""

    def test_build_design(self, count_data):
        design = de.build_design(count_data.samples)

        assert list(design.columns) == [
            'Intercept', 'individualind2', 'individualind3', 'individualind4', 'treatmenttreated'
        ]
        assert design['treatmenttreated'].sum() == 4
        assert list(design.index) == list(count_data.samples.index)

    def test_confounded_design_rejected(self):
        samples = pd.DataFrame({
            'treatment': pd.Categorical(['control', 'control', 'treated', 'treated'],
                                        categories=['control', 'treated']),
            'individual': ['i1', 'i2', 'i3', 'i4'],
        }, index=['S1', 'S2', 'S3', 'S4'])

        with pytest.raises(ValueError, match="full rank"):
            de.build_design(samples)

    def test_fit_model(self, fitted, normalized_data):
        assert fitted.coef_name == 'treatmenttreated'
        assert fitted.common_dispersion > 0
        assert fitted.bcv == pytest.approx(np.sqrt(fitted.common_dispersion))
        assert fitted.design.shape == (normalized_data.n_samples, 5)
        assert fitted.coef == 4

    def test_treatment_test_finds_true_changes(self, fitted, dataset):
        """Most genes called at FDR < 0.05 are ones the simulation changed."""
        result = de.test_treatment(fitted)
        table = result.table

        assert list(table.columns) == ['symbol', 'chromosome', 'entrez_id'] + de.RESULT_COLUMNS
        assert table['PValue'].is_monotonic_increasing
        assert (table['FDR'] >= table['PValue'] - 1e-12).all()

        generator = dataset['generator']
        truth = dict(zip(generator.versioned_ids(), generator.genes['effect']))
        called = table[table['FDR'] < 0.05]
        assert len(called) > 0
        correct = [truth[g] != 1 for g in called.index]
        assert np.mean(correct) >= 0.8

        direction = [np.sign(np.log(truth[g])) == np.sign(lfc)
                     for g, lfc in zip(called.index, called['logFC']) if truth[g] != 1]
        assert np.mean(direction) >= 0.9

    def test_threshold_test(self, fitted):
        result = de.test_treatment_threshold(fitted, lfc=np.log2(1.5))
        table = result.table

        assert result.test == 'TREAT'
        assert result.lfc == pytest.approx(np.log2(1.5))
        nonzero = table['stat'] != 0
        assert (np.sign(table.loc[nonzero, 'stat']) == np.sign(table.loc[nonzero, 'logFC'])).all()

    def test_decide_and_summarize(self, fitted):
        result = de.test_treatment(fitted)
        status = de.decide_tests(result, fdr=0.05)
        summary = de.summarize_tests(result, fdr=0.05)

        assert set(status.unique()) <= {-1, 0, 1}
        assert list(summary.index) == ['Down', 'NotSig', 'Up']
        assert summary.sum() == result.n_genes
        assert summary['Up'] == int((status == 1).sum())

    def test_top_table(self, fitted):
        result = de.test_treatment(fitted)

        assert len(de.top_table(result, n=5)) == 5
        significant = de.top_table(result, n=None, fdr=0.05)
        assert (significant['FDR'] < 0.05).all()

    def test_robust_failure_falls_back(self, normalized_data, monkeypatch):
        """A robust estimation error triggers a non-robust refit."""
        estimate_disp = de.ep.estimate_disp

        def failing_estimate_disp(dge, design=None, robust=False, **kwargs):
            if robust:
                raise ValueError("f(a) and f(b) must have different signs")
            return estimate_disp(dge, design=design, robust=robust, **kwargs)

        monkeypatch.setattr(de.ep, 'estimate_disp', failing_estimate_disp)

        fit = de.fit_model(normalized_data, de.build_design(normalized_data.samples), robust=True)

        assert fit.robust is False
        assert de.test_treatment(fit).n_genes == normalized_data.n_genes

    def test_non_robust_errors_propagate(self, normalized_data, monkeypatch):
        def failing_estimate_disp(dge, design=None, robust=False, **kwargs):
            raise ValueError("degenerate")

        monkeypatch.setattr(de.ep, 'estimate_disp', failing_estimate_disp)

        with pytest.raises(ValueError, match="degenerate"):
            de.fit_model(normalized_data, de.build_design(normalized_data.samples), robust=False)

    def test_null_data_fit_completes(self):
        """Seven null pairs that break robust estimation still produce a result."""
        data = null_count_data(seed=2)
        filtered, _ = qc.filter_by_expression(data)
        normalized = normalize.normalize(filtered)

        fit = de.fit_model(normalized, de.build_design(normalized.samples), robust=True)
        result = de.test_treatment(fit)

        assert result.n_genes == normalized.n_genes
        assert (result.table['FDR'] < 0.05).mean() <= 0.05

    @pytest.mark.slow
    def test_null_fdr_calibration(self):
        """With no treatment effect the fraction called stays at the nominal rate."""
        fractions = []
        for seed in range(3):
            data = null_count_data(seed)
            filtered, _ = qc.filter_by_expression(data)
            normalized = normalize.normalize(filtered)
            fit = de.fit_model(normalized, de.build_design(normalized.samples))
            result = de.test_treatment(fit)
            fractions.append(float((result.table['FDR'] < 0.05).mean()))

        assert np.mean(fractions) <= 0.05


class TestEnrichment:
    """Test gene set loading and enrichment tests."""

    def test_load_gene_sets_json_and_gmt(self, dataset):
        from_json = enrichment.load_gene_sets(dataset['gene_sets'])
        from_gmt = enrichment.load_gene_sets(dataset['gene_sets_gmt'])

        assert from_json == from_gmt
        assert from_json['unknown_genes'] == ABSENT_ENTREZ

    def test_load_gene_sets_malformed(self, tmp_path):
        bad_json = tmp_path / "sets.json"
        bad_json.write_text('["not", "a", "mapping"]')
        with pytest.raises(ValueError):
            enrichment.load_gene_sets(bad_json)

        bad_gmt = tmp_path / "sets.gmt"
        bad_gmt.write_text("only_a_name\n")
        with pytest.raises(ValueError):
            enrichment.load_gene_sets(bad_gmt)

    def test_over_representation_counts(self):
        """Hypergeometric tail for a set with every member up-regulated."""
        entrez = list(range(1, 101))
        logfc = [2.0] * 10 + [-2.0] * 5 + [0.1] * 85
        fdr = [0.001] * 15 + [0.9] * 85
        result = make_result(entrez, logfc, fdr)
        gene_sets = {
            'all_up': ['1', '2', '3', '4', '5', '999'],
            'unchanged': [str(e) for e in range(50, 60)],
            'absent': ['5000', '5001'],
        }

        ora = enrichment.over_representation(result, gene_sets)

        assert list(ora.columns) == enrichment.ORA_COLUMNS
        assert 'absent' not in ora.index
        row = ora.loc['all_up']
        assert (row['N'], row['Up'], row['Down']) == (5, 5, 0)
        assert row['P.Up'] == pytest.approx(hypergeom.sf(4, 100, 10, 5))
        assert row['P.Down'] == pytest.approx(1.0)
        assert ora.index[0] == 'all_up'

    def test_sets_of_unknown_identifiers_give_no_row(self, fitted, dataset):
        """A set made only of unannotated identifiers produces no result row."""
        gene_sets = enrichment.load_gene_sets(dataset['gene_sets'])
        result = de.test_treatment(fitted)

        ora = enrichment.over_representation(result, gene_sets, min_size=3)
        camera = enrichment.camera_test(fitted, gene_sets, min_size=3)

        assert 'unknown_genes' not in ora.index
        assert 'unknown_genes' not in camera.index
        assert ora.loc['treatment_up', 'P.Up'] < 1e-3
        assert ora.loc['treatment_down', 'P.Down'] < 1e-3

    def test_camera(self, fitted, dataset):
        gene_sets = enrichment.load_gene_sets(dataset['gene_sets'])

        camera = enrichment.camera_test(fitted, gene_sets, min_size=3)

        assert list(camera.columns) == enrichment.CAMERA_COLUMNS
        assert set(camera['Direction']) <= {'Up', 'Down'}
        assert camera.loc['treatment_up', 'Direction'] == 'Up'
        assert camera.loc['treatment_down', 'Direction'] == 'Down'

    def test_camera_with_no_tested_sets(self, fitted):
        camera = enrichment.camera_test(fitted, {'absent': ABSENT_ENTREZ})

        assert camera.empty
        assert list(camera.columns) == enrichment.CAMERA_COLUMNS

    def test_restrict_gene_sets(self):
        sets = {'small': ['1'], 'ok': ['1', '2', '3'], 'big': [str(i) for i in range(10)]}

        restricted = enrichment.restrict_gene_sets(sets, universe=[str(i) for i in range(10)],
                                                   min_size=2, max_size=5)

        assert restricted == {'ok': ['1', '2', '3']}

    def test_significant_sets(self):
        ora = pd.DataFrame({'FDR.Up': [0.01, 0.5], 'FDR.Down': [0.9, 0.02]}, index=['a', 'b'])
        camera = pd.DataFrame({'FDR': [0.01, 0.5]}, index=['a', 'b'])

        assert list(enrichment.significant_sets(ora, fdr=0.05).index) == ['a', 'b']
        assert list(enrichment.significant_sets(camera, fdr=0.05).index) == ['a']


class TestVisualization:
    """Test plot generation."""

    def test_sample_plots(self, count_data, normalized_data, tmp_path):
        values = normalize.log_cpm(normalized_data)
        before = normalize.log_cpm(count_data)

        paths = [
            viz.plot_library_sizes(count_data, tmp_path / "library_sizes.png"),
            viz.plot_log_cpm_density(before, before.loc[values.index], tmp_path / "density.png", cutoff=2.0),
            viz.plot_mds(values, normalized_data.samples, tmp_path / "mds.png"),
            viz.plot_pca(values, normalized_data.samples, tmp_path / "pca.png"),
        ]

        for path in paths:
            assert path.exists() and path.stat().st_size > 0

    def test_model_plots(self, fitted, normalized_data, tmp_path):
        result = de.test_treatment(fitted)
        values = normalize.log_cpm(normalized_data)

        paths = [
            viz.plot_bcv(fitted, tmp_path / "bcv.png"),
            viz.plot_ql_dispersion(fitted, tmp_path / "ql.png"),
            viz.plot_md(result, tmp_path / "md.png"),
            viz.plot_volcano(result, tmp_path / "volcano.png"),
            viz.plot_volcano_interactive(result, tmp_path / "volcano.html"),
            viz.plot_heatmap(values, result, normalized_data.samples, tmp_path / "heatmap.png", n_genes=10),
        ]

        for path in paths:
            assert path.exists() and path.stat().st_size > 0

    def test_leading_logfc_distances(self):
        values = pd.DataFrame({'A': [0.0, 0.0], 'B': [3.0, 4.0], 'C': [0.0, 0.0]})

        distances = viz.leading_logfc_distances(values, top=2)

        assert distances.loc['A', 'B'] == pytest.approx(np.sqrt(12.5))
        assert distances.loc['A', 'C'] == 0
        assert (distances.to_numpy() == distances.to_numpy().T).all()


class TestPipeline:
    """End-to-end runs of the full analysis."""

    def test_run_analysis(self, dataset):
        config = AnalysisConfig.from_yaml(dataset['config'])

        metrics = run_analysis(config)

        output_dir = config.output_dir
        for relative in [
            'de/top_genes_qlf.csv', 'de/top_genes_treat.csv', 'de/de_summary.csv',
            'enrichment/synthetic_ora.csv', 'enrichment/synthetic_camera.csv',
            'counts/merged_counts.tsv', 'counts/log_cpm.tsv', 'metrics.json', 'report.html',
        ]:
            assert (output_dir / relative).exists(), relative

        summary = pd.read_csv(output_dir / 'de' / 'de_summary.csv', index_col=0)
        n_tested = metrics['filtering']['genes_after']
        for test in ['QLF', 'TREAT']:
            assert summary.loc['Up', test] >= 0 and summary.loc['Down', test] >= 0
            assert summary.loc['Up', test] + summary.loc['Down', test] <= n_tested
            assert summary[test].sum() == n_tested

        top = pd.read_csv(output_dir / 'de' / 'top_genes_qlf.csv')
        assert len(top) == n_tested
        assert top['entrez_id'].is_unique

        ora = pd.read_csv(output_dir / 'enrichment' / 'synthetic_ora.csv')
        camera = pd.read_csv(output_dir / 'enrichment' / 'synthetic_camera.csv')
        assert 'unknown_genes' not in set(ora['set']) | set(camera['set'])

        saved = json.loads((output_dir / 'metrics.json').read_text())
        assert saved['n_samples'] == 8
        assert saved['ingestion']['genes_annotated'] < saved['ingestion']['genes_total']
        assert saved['ingestion']['genes_total'] == 500
        assert saved['sex_check']['mismatches'] == []

        html = (output_dir / 'report.html').read_text()
        assert 'Differential Expression Report' in html
        assert 'data:image/png;base64' in html

    def test_run_analysis_seven_pairs(self, tmp_path):
        """Primary test summary for seven treated/control pairs."""
        paths = create_sample_data(tmp_path, n_individuals=7, seed=7)
        config = AnalysisConfig.from_yaml(paths['config'])

        metrics = run_analysis(config)

        assert metrics['n_samples'] == 14
        assert len(metrics['model']['design_columns']) == 8
        n_tested = metrics['filtering']['genes_after']
        up, down = metrics['de']['QLF']['Up'], metrics['de']['QLF']['Down']
        assert up >= 0 and down >= 0
        assert up + down <= n_tested
        assert isinstance(metrics['model']['robust'], bool)

    def test_run_analysis_custom_block_column(self, dataset, tmp_path):
        """The individual may live in a differently named samplesheet column."""
        sheet = pd.read_csv(dataset['samplesheet'], sep='\t')
        sheet['count_file'] = [str(dataset['samplesheet'].parent / f) for f in sheet['count_file']]
        sheet = sheet.rename(columns={'individual': 'donor'})
        sheet.to_csv(tmp_path / 'donors.tsv', sep='\t', index=False)

        config_file = tmp_path / 'config.yml'
        config_file.write_text(yaml.safe_dump({
            'samplesheet': 'donors.tsv',
            'annotation': str(dataset['annotation']),
            'gene_sets': {'synthetic': str(dataset['gene_sets'])},
            'design': {'block_column': 'donor'},
            'enrichment': {'min_set_size': 3},
        }))

        metrics = run_analysis(AnalysisConfig.from_yaml(config_file))

        assert metrics['n_samples'] == 8
        assert 'individualind2' in metrics['model']['design_columns']
        assert (tmp_path / 'results' / 'report.html').exists()

    def test_run_analysis_missing_samplesheet(self, tmp_path):
        config = AnalysisConfig(
            samplesheet=tmp_path / 'missing.tsv',
            annotation=tmp_path / 'annotation.tsv',
            output_dir=tmp_path / 'results',
        )

        with pytest.raises(FileNotFoundError):
            run_analysis(config)


class TestCLI:
    """Test command-line interface."""

    def test_cli_help(self):
        """Test CLI help command."""
        runner = CliRunner()
        result = runner.invoke(cli.app, ["--help"])

        assert result.exit_code == 0
        assert "DGE Pipeline" in result.output

    def test_version(self):
        runner = CliRunner()
        result = runner.invoke(cli.app, ["--version"])

        assert result.exit_code == 0
        assert "1.0.0" in result.output

    def test_validate_samplesheet_command(self, dataset, tmp_path):
        runner = CliRunner()
        output_file = tmp_path / "validated.tsv"

        result = runner.invoke(cli.app, [
            "validate-samplesheet", str(dataset['samplesheet']), "--output-file", str(output_file)
        ])

        assert result.exit_code == 0
        assert "8 valid samples" in result.output
        assert output_file.exists()

    def test_validate_samplesheet_command_fails(self, tmp_path):
        samplesheet = tmp_path / "bad.tsv"
        samplesheet.write_text("sample_id\tcount_file\nS1\ta.txt\n")

        runner = CliRunner()
        result = runner.invoke(cli.app, ["validate-samplesheet", str(samplesheet)])

        assert result.exit_code == 1
        assert "validation failed" in result.output

    def test_merge_counts_command(self, dataset, tmp_path):
        runner = CliRunner()
        output_file = tmp_path / "merged.tsv"

        result = runner.invoke(cli.app, [
            "merge-counts", *[str(f) for f in dataset['count_files'][:2]],
            "--output-file", str(output_file)
        ])

        assert result.exit_code == 0
        merged = pd.read_csv(output_file, sep='\t', index_col=0)
        assert merged.shape == (500, 2)

    def test_run_and_report_commands(self, dataset, tmp_path):
        runner = CliRunner()
        output_dir = tmp_path / "cli_results"

        result = runner.invoke(cli.app, ["run", str(dataset['config']), "--output-dir", str(output_dir)])
        assert result.exit_code == 0, result.output
        assert "completed successfully" in result.output

        report_file = tmp_path / "rebuilt.html"
        result = runner.invoke(cli.app, [
            "report", str(output_dir), "--output-file", str(report_file), "--title", "Rebuilt"
        ])
        assert result.exit_code == 0
        assert "Rebuilt" in report_file.read_text()

    def test_run_command_bad_config(self, tmp_path):
        runner = CliRunner()
        result = runner.invoke(cli.app, ["run", str(tmp_path / "missing.yml")])

        assert result.exit_code == 1
        assert "Error in analysis" in result.output


class TestDataGeneration:
    """Test synthetic data generation."""

    def test_generator_counts(self):
        generator = CountDataGenerator(n_genes=100, n_individuals=2, seed=1)
        counts = generator.simulate_counts()

        assert counts.shape == (100, 4)
        assert (counts.to_numpy() >= 0).all()
        assert len(generator.up_genes) == len(generator.down_genes) == 5

    def test_htseq_output_has_meta_rows(self, tmp_path):
        generator = CountDataGenerator(n_genes=20, n_individuals=1, seed=1)
        counts = generator.simulate_counts()
        output_file = tmp_path / "S.counts.txt"

        generator.write_htseq(counts.iloc[:, 0], output_file)

        lines = output_file.read_text().splitlines()
        assert len(lines) == 25
        assert lines[-1].startswith('__')

    def test_create_sample_data(self, tmp_path):
        paths = create_sample_data(tmp_path, n_genes=50, n_individuals=2)

        assert len(paths['count_files']) == 4
        sheet = pd.read_csv(paths['samplesheet'], sep='\t')
        assert list(sheet.columns) == utils.SAMPLESHEET_COLUMNS
        assert paths['config'].exists()


if __name__ == '__main__':
    # Run tests when script is executed directly
    pytest.main([__file__, '-v'])
