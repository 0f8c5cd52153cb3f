"""
Quantification module for gene expression analysis.

This module parses per-sample count files, merges them into a single
gene x sample matrix, attaches sample metadata and gene annotation, and
bundles everything into a :class:`CountData` container for the downstream
filtering, normalization and modeling stages.
"""

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import List, Dict, Any, Optional, Sequence, Union
import pandas as pd
import numpy as np
from .utils import validate_file_exists

logger = logging.getLogger(__name__)

# STAR ReadsPerGene summary rows; HTSeq meta rows all start with '__'
STAR_SUMMARY_ROWS = {'N_unmapped', 'N_multimapping', 'N_noFeature', 'N_ambiguous'}

COUNT_FILE_SUFFIXES = ['.gz', '.txt', '.tsv', '.tab', '.counts', '.count']

@dataclass
class CountData:
    """Count matrix with the sample and gene tables that describe it."""

    counts: pd.DataFrame
    samples: pd.DataFrame
    genes: pd.DataFrame
    lib_size: pd.Series
    norm_factors: pd.Series
    # features in the count files, before annotation
    genes_parsed: Optional[int] = None

    @property
    def n_genes(self) -> int:
        return self.counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]

    @property
    def effective_lib_size(self) -> pd.Series:
        """Library sizes scaled by the normalization factors."""
        return self.lib_size * self.norm_factors

    def subset_genes(self, keep: Union[pd.Series, np.ndarray]) -> 'CountData':
        """Return a copy restricted to ``keep`` rows; library sizes are carried over unchanged."""
        keep = np.asarray(keep, dtype=bool)
        return replace(
            self,
            counts=self.counts.loc[keep].copy(),
            genes=self.genes.loc[keep].copy(),
        )

def _sample_name_from_path(count_file: Path) -> str:
    name = count_file.name
    stripped = True
    while stripped:
        stripped = False
        for suffix in COUNT_FILE_SUFFIXES:
            if name.endswith(suffix) and len(name) > len(suffix):
                name = name[:-len(suffix)]
                stripped = True
    for suffix in ['_counts', '.htseq', '_ReadsPerGene', '.ReadsPerGene.out']:
        if name.endswith(suffix):
            name = name[:-len(suffix)]
    return name

def read_count_file(
    count_file: Union[str, Path],
    count_column: int = 1,
    sample_name: Optional[str] = None
) -> pd.Series:
    """
    Read one per-sample count file.

    The first column holds feature identifiers; ``count_column`` selects the
    count column (1 for HTSeq output, 1-3 for STAR ReadsPerGene files).
    HTSeq meta rows (``__no_feature`` etc.) and STAR summary rows are dropped
    so they reach neither the matrix nor the library size.

    Args:
        count_file: Path to tab-separated count file
        count_column: Zero-based index of the count column
        sample_name: Name for the returned series (default: derived from file name)

    Returns:
        Integer counts indexed by feature identifier

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is not a valid count table
    """
    count_file = validate_file_exists(count_file)
    if sample_name is None:
        sample_name = _sample_name_from_path(count_file)

    try:
        df = pd.read_csv(count_file, sep='\t', header=None, comment='#', dtype=str)
    except pd.errors.EmptyDataError:
        raise ValueError(f"Count file is empty: {count_file}")
    except pd.errors.ParserError as e:
        raise ValueError(f"Could not parse count file {count_file}: {e}")

    if df.shape[1] < 2:
        raise ValueError(
            f"Count file {count_file} has {df.shape[1]} column(s); expected identifier and count columns"
        )
    if count_column < 1 or count_column >= df.shape[1]:
        raise ValueError(
            f"Count column {count_column} out of range for {count_file} ({df.shape[1]} columns)"
        )

    # featureCounts-style header line
    if pd.to_numeric(pd.Series([df.iloc[0, count_column]]), errors='coerce').isna().iloc[0]:
        logger.debug(f"Skipping header line in {count_file}")
        df = df.iloc[1:]

    ids = df.iloc[:, 0].astype(str).str.strip()
    meta = ids.str.startswith('__') | ids.isin(STAR_SUMMARY_ROWS)
    if meta.any():
        logger.debug(f"Excluding {int(meta.sum())} meta rows from {count_file.name}")
    df = df.loc[~meta.values]
    ids = ids[~meta.values]

    if len(df) == 0:
        raise ValueError(f"Count file {count_file} contains no feature rows")

    counts = pd.to_numeric(df.iloc[:, count_column], errors='coerce')
    bad = counts.isna()
    if bad.any():
        raise ValueError(
            f"Non-numeric counts in {count_file} for features: {ids[bad.values].head(5).tolist()}"
        )
    if (counts < 0).any():
        raise ValueError(f"Negative counts in {count_file}")
    if not np.allclose(counts, np.round(counts)):
        raise ValueError(f"Non-integer counts in {count_file}")

    if ids.duplicated().any():
        raise ValueError(
            f"Duplicated feature identifiers in {count_file}: {ids[ids.duplicated()].head(5).tolist()}"
        )

    series = pd.Series(np.round(counts.values).astype(np.int64), index=ids.values, name=sample_name)
    series.index.name = 'gene_id'
    return series

def merge_count_files(
    count_files: Sequence[Union[str, Path]],
    output_file: Optional[Path] = None,
    count_column: int = 1,
    sample_names: Optional[Sequence[str]] = None
) -> pd.DataFrame:
    """
    Merge multiple count files into a single matrix.

    Args:
        count_files: List of count file paths
        output_file: Optional TSV path for the merged matrix
        count_column: Zero-based index of the count column in each file
        sample_names: Optional column names (default: derived from file names)

    Returns:
        Merged count DataFrame (genes x samples)

    Raises:
        ValueError: If files disagree on features or sample names collide
    """
    if len(count_files) == 0:
        raise ValueError("No count files given")
    if sample_names is not None and len(sample_names) != len(count_files):
        raise ValueError(
            f"Got {len(sample_names)} sample names for {len(count_files)} count files"
        )

    columns = []
    for i, count_file in enumerate(count_files):
        name = sample_names[i] if sample_names is not None else None
        columns.append(read_count_file(count_file, count_column=count_column, sample_name=name))

    names = [c.name for c in columns]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicated sample names: {names}")

    reference = columns[0].index
    for column in columns[1:]:
        if not column.index.equals(reference):
            if set(column.index) != set(reference):
                missing = reference.symmetric_difference(column.index)
                raise ValueError(
                    f"Sample {column.name} lists different features than {columns[0].name} "
                    f"({len(missing)} differ, e.g. {list(missing[:3])})"
                )

    merged_df = pd.concat([c.reindex(reference) for c in columns], axis=1)
    merged_df.index.name = 'gene_id'
    logger.info(f"Merged {merged_df.shape[1]} count files covering {merged_df.shape[0]} features")

    if output_file is not None:
        merged_df.to_csv(output_file, sep='\t')

    return merged_df

def build_sample_metadata(
    sample_names: Sequence[str],
    treatment: Sequence[str],
    individual: Sequence[str],
    batch: Sequence[str],
    sex: Sequence[str],
    reference_level: str = 'control'
) -> pd.DataFrame:
    """
    Assemble the per-sample metadata table.

    Args:
        sample_names: Sample names in matrix column order
        treatment: Treatment label per sample (two levels)
        individual: Originating individual per sample
        batch: Sequencing batch per sample
        sex: Sex label per sample
        reference_level: Treatment level used as the baseline

    Returns:
        DataFrame indexed by sample name

    Raises:
        ValueError: If any label list does not match the number of samples
    """
    n = len(sample_names)
    labels = {'treatment': treatment, 'individual': individual, 'batch': batch, 'sex': sex}
    for name, values in labels.items():
        if len(values) != n:
            raise ValueError(f"Got {len(values)} {name} labels for {n} samples")

    samples = pd.DataFrame(
        {name: [str(v) for v in values] for name, values in labels.items()},
        index=pd.Index([str(s) for s in sample_names], name='sample')
    )

    levels = list(pd.unique(samples['treatment']))
    if len(levels) != 2:
        raise ValueError(f"Treatment must have exactly two levels, found: {levels}")
    if reference_level not in levels:
        raise ValueError(f"Reference level '{reference_level}' not among treatment levels {levels}")
    other = [level for level in levels if level != reference_level][0]
    samples['treatment'] = pd.Categorical(samples['treatment'], categories=[reference_level, other])

    per_individual = samples.groupby('individual', observed=True)['treatment'].nunique()
    unpaired = per_individual[per_individual < 2].index.tolist()
    if unpaired:
        logger.warning(f"Individuals without a matched treated/control pair: {unpaired}")

    return samples

def read_gene_annotation(annotation_file: Union[str, Path]) -> pd.DataFrame:
    """
    Read the gene annotation reference.

    Expects tab-separated columns ``gene_id``, ``symbol``, ``chromosome`` and
    ``entrez_id``. When an identifier appears more than once the first entry
    is used.

    Args:
        annotation_file: Path to annotation TSV

    Returns:
        DataFrame indexed by gene_id
    """
    annotation_file = validate_file_exists(annotation_file)
    df = pd.read_csv(annotation_file, sep='\t', dtype=str)

    required = ['gene_id', 'symbol', 'chromosome', 'entrez_id']
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise ValueError(f"Annotation {annotation_file} missing columns: {missing}")

    df = df[required].copy()
    df['gene_id'] = df['gene_id'].str.strip()
    df = df.drop_duplicates('gene_id', keep='first').set_index('gene_id')
    df['entrez_id'] = _clean_entrez(df['entrez_id'])
    return df

def _clean_entrez(values: pd.Series) -> pd.Series:
    cleaned = values.astype('string').str.strip().str.replace(r'\.0$', '', regex=True)
    cleaned = cleaned.where(cleaned.str.fullmatch(r'\d+', na=False))
    return cleaned

def _strip_version(ids: pd.Index) -> pd.Index:
    return pd.Index(ids.astype(str).str.replace(r'\.\d+$', '', regex=True))

def annotate_genes(
    counts: pd.DataFrame,
    annotation: pd.DataFrame,
    strip_version: bool = True
) -> Dict[str, pd.DataFrame]:
    """
    Attach symbol, chromosome and Entrez identifier to each matrix row.

    Rows without an Entrez identifier are dropped. When several rows share an
    Entrez identifier only the one with the largest total count is kept, so
    the identifier is unique afterwards.

    Args:
        counts: Count matrix indexed by stable gene identifier
        annotation: Output of :func:`read_gene_annotation`
        strip_version: Ignore version suffixes such as ``.5`` when matching

    Returns:
        Dictionary with the filtered ``counts`` and matching ``genes`` table
    """
    if 'entrez_id' not in annotation.columns:
        raise ValueError("Annotation lacks an 'entrez_id' column")

    reference = annotation.copy()
    keys = counts.index
    if strip_version:
        keys = _strip_version(keys)
        reference.index = _strip_version(reference.index)
        reference = reference[~reference.index.duplicated(keep='first')]

    genes = reference.reindex(keys)
    genes.index = counts.index
    genes.index.name = 'gene_id'
    genes['entrez_id'] = _clean_entrez(genes['entrez_id'])

    has_id = genes['entrez_id'].notna()
    n_missing = int((~has_id).sum())
    if n_missing:
        logger.info(f"Dropping {n_missing} genes without an Entrez identifier")

    counts = counts.loc[has_id.values]
    genes = genes.loc[has_id.values]

    totals = counts.sum(axis=1)
    order = totals.sort_values(ascending=False, kind='mergesort').index
    duplicated = genes.loc[order, 'entrez_id'].duplicated()
    drop = set(order[duplicated.values])
    if drop:
        logger.info(f"Dropping {len(drop)} lower-count genes sharing an Entrez identifier")
        keep = ~counts.index.isin(drop)
        counts = counts.loc[keep]
        genes = genes.loc[keep]

    return {'counts': counts, 'genes': genes}

def load_count_data(
    count_files: Sequence[Union[str, Path]],
    treatment: Sequence[str],
    individual: Sequence[str],
    batch: Sequence[str],
    sex: Sequence[str],
    annotation: Union[str, Path, pd.DataFrame],
    sample_names: Optional[Sequence[str]] = None,
    reference_level: str = 'control',
    count_column: int = 1,
    strip_version: bool = True,
    output_file: Optional[Path] = None
) -> CountData:
    """
    Ingest count files, sample labels and gene annotation.

    Library sizes are the column totals of the full parsed matrix, taken
    before genes lacking an Entrez identifier are removed.

    Args:
        count_files: Per-sample count files
        treatment: Treatment label per file
        individual: Originating individual per file
        batch: Sequencing batch per file
        sex: Sex label per file
        annotation: Annotation DataFrame or path to annotation TSV
        sample_names: Optional sample names (default: derived from file names)
        reference_level: Baseline treatment level
        count_column: Zero-based count column in each file
        strip_version: Ignore gene identifier version suffixes
        output_file: Optional TSV path for the merged raw matrix

    Returns:
        CountData with unit normalization factors

    Raises:
        ValueError: If label counts differ from the number of files
    """
    n = len(count_files)
    labels = {'treatment': treatment, 'individual': individual, 'batch': batch, 'sex': sex}
    for name, values in labels.items():
        if len(values) != n:
            raise ValueError(f"Got {len(values)} {name} labels for {n} count files")

    logger.info(f"Reading {n} count files")
    counts = merge_count_files(
        count_files, output_file=output_file, count_column=count_column, sample_names=sample_names
    )

    samples = build_sample_metadata(
        list(counts.columns), treatment, individual, batch, sex, reference_level=reference_level
    )
    counts.columns = samples.index
    lib_size = counts.sum(axis=0).astype(float)
    lib_size.name = 'lib_size'

    if not isinstance(annotation, pd.DataFrame):
        annotation = read_gene_annotation(annotation)
    annotated = annotate_genes(counts, annotation, strip_version=strip_version)
    logger.info(
        f"Annotated {annotated['counts'].shape[0]} of {counts.shape[0]} genes with Entrez identifiers"
    )

    return CountData(
        counts=annotated['counts'],
        samples=samples,
        genes=annotated['genes'],
        lib_size=lib_size,
        norm_factors=pd.Series(1.0, index=samples.index, name='norm_factors'),
        genes_parsed=counts.shape[0],
    )

def load_from_samplesheet(
    samplesheet: pd.DataFrame,
    annotation: Union[str, Path, pd.DataFrame],
    treatment_column: str = 'treatment',
    block_column: Optional[str] = 'individual',
    reference_level: str = 'control',
    count_column: int = 1,
    strip_version: bool = True,
    output_file: Optional[Path] = None
) -> CountData:
    """
    Run :func:`load_count_data` on the rows of a validated samplesheet.

    ``treatment_column`` and ``block_column`` name the samplesheet columns
    holding the treatment and the originating individual.
    """
    for column in [treatment_column, block_column]:
        if column is not None and column not in samplesheet.columns:
            raise ValueError(f"Samplesheet has no '{column}' column")
    individual = samplesheet[block_column] if block_column is not None else samplesheet['sample_id']
    return load_count_data(
        count_files=samplesheet['count_file'].tolist(),
        treatment=samplesheet[treatment_column].tolist(),
        individual=individual.tolist(),
        batch=samplesheet['batch'].tolist(),
        sex=samplesheet['sex'].tolist(),
        annotation=annotation,
        sample_names=samplesheet['sample_id'].tolist(),
        reference_level=reference_level,
        count_column=count_column,
        strip_version=strip_version,
        output_file=output_file,
    )
