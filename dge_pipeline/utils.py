"""
Utility functions for the DGE Pipeline.

This module provides common utility functions used across the pipeline,
including logging setup, file validation, samplesheet parsing and
metrics persistence.
"""

import logging
from pathlib import Path
from typing import Dict, Any, List, Optional, Union
import pandas as pd
import numpy as np
import json
from rich.logging import RichHandler

SAMPLESHEET_COLUMNS = [
    'sample_id', 'count_file', 'treatment', 'individual', 'batch', 'sex'
]

def setup_logging(level: int = logging.INFO) -> None:
    """
    Set up logging with Rich handler for colored output.

    Args:
        level: Logging level (default: INFO)
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
        force=True
    )

def validate_file_exists(file_path: Union[str, Path]) -> Path:
    """
    Validate that a file exists and return Path object.

    Args:
        file_path: Path to file

    Returns:
        Path object if file exists

    Raises:
        FileNotFoundError: If file doesn't exist
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    return path

def validate_directory_exists(dir_path: Union[str, Path], create: bool = False) -> Path:
    """
    Validate that a directory exists, optionally create it.

    Args:
        dir_path: Path to directory
        create: Whether to create directory if it doesn't exist

    Returns:
        Path object

    Raises:
        FileNotFoundError: If directory doesn't exist and create=False
    """
    path = Path(dir_path)
    if not path.exists():
        if create:
            path.mkdir(parents=True, exist_ok=True)
        else:
            raise FileNotFoundError(f"Directory not found: {path}")
    return path

def validate_samplesheet(
    samplesheet_path: Union[str, Path],
    treatment_column: str = 'treatment',
    block_column: Optional[str] = 'individual'
) -> pd.DataFrame:
    """
    Validate samplesheet format and content.

    Count file paths are resolved relative to the samplesheet's directory.

    Args:
        samplesheet_path: Path to samplesheet TSV file
        treatment_column: Column holding the treatment label
        block_column: Column holding the originating individual, or None
            for an unpaired sheet

    Returns:
        Validated DataFrame with absolute ``count_file`` paths

    Raises:
        ValueError: If samplesheet format is invalid
    """
    samplesheet_path = validate_file_exists(samplesheet_path)

    try:
        df = pd.read_csv(samplesheet_path, sep='\t', dtype=str)
    except Exception as e:
        raise ValueError(f"Could not read samplesheet: {e}")

    renamed = {'treatment': treatment_column, 'individual': block_column}
    required = [renamed.get(col, col) for col in SAMPLESHEET_COLUMNS]
    required = [col for col in required if col is not None]
    missing_cols = [col for col in required if col not in df.columns]
    if missing_cols:
        raise ValueError(f"Missing required columns: {missing_cols}")

    empty = df[required].isna().any(axis=1)
    if empty.any():
        raise ValueError(f"Samplesheet rows with empty fields: {df.loc[empty, 'sample_id'].tolist()}")

    duplicated = df['sample_id'][df['sample_id'].duplicated()].unique()
    if len(duplicated) > 0:
        raise ValueError(f"Duplicated sample IDs: {list(duplicated)}")

    treatments = df[treatment_column].unique()
    if len(treatments) != 2:
        raise ValueError(f"Expected exactly two treatment levels, found: {list(treatments)}")

    base_dir = samplesheet_path.parent
    resolved = []
    for _, row in df.iterrows():
        count_file = Path(row['count_file'])
        if not count_file.is_absolute():
            count_file = base_dir / count_file
        try:
            validate_file_exists(count_file)
        except FileNotFoundError:
            raise ValueError(f"Count file not found for sample {row['sample_id']}: {count_file}")
        resolved.append(str(count_file))
    df['count_file'] = resolved

    return df

def _to_builtin(value: Any) -> Any:
    """Convert numpy scalars and containers to JSON-serialisable types."""
    if isinstance(value, dict):
        return {str(k): _to_builtin(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_builtin(v) for v in value]
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, Path):
        return str(value)
    return value

def save_metrics_json(metrics: Dict[str, Any], output_file: Union[str, Path]) -> None:
    """
    Save metrics dictionary to JSON file.

    Args:
        metrics: Dictionary of metrics
        output_file: Output JSON file path
    """
    with open(output_file, 'w') as f:
        json.dump(_to_builtin(metrics), f, indent=2)

def load_metrics_json(json_file: Union[str, Path]) -> Dict[str, Any]:
    """
    Load metrics from JSON file.

    Args:
        json_file: Path to JSON file

    Returns:
        Dictionary of metrics
    """
    with open(json_file, 'r') as f:
        return json.load(f)

def create_output_dirs(base_dir: Path, subdirs: List[str]) -> Dict[str, Path]:
    """
    Create output directory structure.

    Args:
        base_dir: Base output directory
        subdirs: List of subdirectory names

    Returns:
        Dictionary mapping subdir names to Path objects
    """
    dirs = {}

    for subdir in subdirs:
        dir_path = Path(base_dir) / subdir
        dir_path.mkdir(parents=True, exist_ok=True)
        dirs[subdir] = dir_path

    return dirs
