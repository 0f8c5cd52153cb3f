"""Analysis configuration.

Settings are read from YAML. The packaged ``data/default_config.yml`` holds
the defaults; a user config overrides any subset of them. Relative paths are
resolved against the directory of the config file that declares them.
"""

import copy
import logging
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)


def _read_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    with open(path, 'r') as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Could not parse config {path}: {e}")
    if not isinstance(data, dict):
        raise ValueError(f"Config {path} must be a mapping, got {type(data).__name__}")
    return data


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict) and key != 'gene_sets':
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def default_settings() -> Dict[str, Any]:
    """Return the packaged default settings as a plain dictionary."""
    text = resources.files('dge_pipeline').joinpath('data/default_config.yml').read_text()
    return yaml.safe_load(text)


@dataclass
class AnalysisConfig:
    """Inputs, outputs and thresholds for one analysis run."""

    samplesheet: Path
    annotation: Path
    output_dir: Path
    gene_sets: Dict[str, Path] = field(default_factory=dict)

    treatment_column: str = 'treatment'
    reference_level: str = 'control'
    block_column: Optional[str] = 'individual'

    count_column: int = 1
    strip_version: bool = True

    min_count: float = 10
    min_total_count: float = 15

    normalization_method: str = 'TMM'
    min_overlap: int = 10

    robust: bool = True
    fdr: float = 0.05
    treat_lfc: float = 0.585
    top_n: int = 50
    heatmap_genes: int = 30

    enrichment_fdr: float = 0.05
    min_set_size: int = 5
    max_set_size: int = 500
    use_ranks: bool = False

    @classmethod
    def from_dict(cls, settings: Dict[str, Any], base_dir: Optional[Path] = None) -> 'AnalysisConfig':
        """
        Build a config from a nested settings dictionary.

        Args:
            settings: Mapping with the layout of ``default_config.yml``
            base_dir: Directory against which relative paths are resolved

        Returns:
            AnalysisConfig
        """
        base_dir = Path(base_dir) if base_dir is not None else Path.cwd()

        def resolve(value: Union[str, Path]) -> Path:
            path = Path(value)
            return path if path.is_absolute() else base_dir / path

        design = settings.get('design', {})
        counts = settings.get('counts', {})
        filtering = settings.get('filtering', {})
        normalization = settings.get('normalization', {})
        model = settings.get('model', {})
        enrichment = settings.get('enrichment', {})

        gene_sets = settings.get('gene_sets') or {}
        if not isinstance(gene_sets, dict):
            raise ValueError("'gene_sets' must map collection names to files")

        return cls(
            samplesheet=resolve(settings['samplesheet']),
            annotation=resolve(settings['annotation']),
            output_dir=resolve(settings.get('output_dir', 'results')),
            gene_sets={name: resolve(path) for name, path in gene_sets.items()},
            treatment_column=design.get('treatment_column', 'treatment'),
            reference_level=str(design.get('reference_level', 'control')),
            block_column=design.get('block_column', 'individual'),
            count_column=int(counts.get('count_column', 1)),
            strip_version=bool(counts.get('strip_version', True)),
            min_count=float(filtering.get('min_count', 10)),
            min_total_count=float(filtering.get('min_total_count', 15)),
            normalization_method=normalization.get('method', 'TMM'),
            min_overlap=int(normalization.get('min_overlap', 10)),
            robust=bool(model.get('robust', True)),
            fdr=float(model.get('fdr', 0.05)),
            treat_lfc=float(model.get('treat_lfc', 0.585)),
            top_n=int(model.get('top_n', 50)),
            heatmap_genes=int(model.get('heatmap_genes', 30)),
            enrichment_fdr=float(enrichment.get('fdr', 0.05)),
            min_set_size=int(enrichment.get('min_set_size', 5)),
            max_set_size=int(enrichment.get('max_set_size', 500)),
            use_ranks=bool(enrichment.get('use_ranks', False)),
        )

    @classmethod
    def from_yaml(cls, config_path: Union[str, Path]) -> 'AnalysisConfig':
        """
        Load a config file on top of the packaged defaults.

        Args:
            config_path: Path to YAML config

        Returns:
            AnalysisConfig
        """
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"File not found: {config_path}")
        settings = _merge(default_settings(), _read_yaml(config_path))
        logger.debug(f"Loaded config from {config_path}")
        return cls.from_dict(settings, base_dir=config_path.parent)

    def validate(self) -> None:
        """Check thresholds before any data is read."""
        if not 0 < self.fdr < 1 or not 0 < self.enrichment_fdr < 1:
            raise ValueError("FDR thresholds must lie strictly between 0 and 1")
        if self.treat_lfc < 0:
            raise ValueError("treat_lfc must be non-negative")
        if self.min_count < 0 or self.min_total_count < 0:
            raise ValueError("Filtering thresholds must be non-negative")
        if self.min_set_size < 1 or self.max_set_size < self.min_set_size:
            raise ValueError("Gene set size bounds are inconsistent")
        if self.normalization_method not in ('TMM', 'TMMwsp', 'RLE', 'upperquartile', 'none'):
            raise ValueError(f"Unknown normalization method: {self.normalization_method}")
