"""Shared fixtures for the DGE Pipeline test suite."""

import sys
from pathlib import Path

import pytest

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dge_pipeline import de
from dge_pipeline.normalize import normalize
from dge_pipeline.qc import filter_by_expression
from dge_pipeline.quantify import load_from_samplesheet
from dge_pipeline.utils import validate_samplesheet
from test.generate_test_data import create_sample_data


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )


@pytest.fixture(scope='session')
def dataset(tmp_path_factory):
    """Synthetic dataset with 4 treated/control pairs written to disk."""
    return create_sample_data(tmp_path_factory.mktemp('dataset'))


@pytest.fixture(scope='session')
def count_data(dataset):
    samplesheet = validate_samplesheet(dataset['samplesheet'])
    return load_from_samplesheet(samplesheet, annotation=dataset['annotation'])


@pytest.fixture(scope='session')
def normalized_data(count_data):
    filtered, _ = filter_by_expression(count_data)
    return normalize(filtered)


@pytest.fixture(scope='session')
def fitted(normalized_data):
    design = de.build_design(normalized_data.samples)
    return de.fit_model(normalized_data, design)
