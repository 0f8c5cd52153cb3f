"""
Gene set enrichment module for the DGE Pipeline.

Two tests are offered over collections of Entrez identifier sets:

- over-representation of up- and down-regulated genes among all tested
  genes (hypergeometric, one-sided, as in goana);
- a competitive test of whole-set shifts that accounts for inter-gene
  correlation (camera, via edgepython).

Set members that were not tested contribute to neither test, and a set
with no tested member yields no row.
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union, Iterable
import pandas as pd
import numpy as np
import edgepython as ep
from scipy.stats import hypergeom
from statsmodels.stats.multitest import multipletests

from .de import DEResult, ModelFit, decide_tests
from .utils import validate_file_exists

logger = logging.getLogger(__name__)

ORA_COLUMNS = ['N', 'Up', 'Down', 'P.Up', 'P.Down', 'FDR.Up', 'FDR.Down']
CAMERA_COLUMNS = ['NGenes', 'Direction', 'PValue', 'FDR']

def _clean_members(members: Iterable) -> List[str]:
    cleaned = []
    seen = set()
    for member in members:
        member = str(member).strip()
        if member.endswith('.0'):
            member = member[:-2]
        if member and member not in seen:
            seen.add(member)
            cleaned.append(member)
    return cleaned

def load_gene_sets(gene_set_file: Union[str, Path]) -> Dict[str, List[str]]:
    """
    Load a gene set collection.

    JSON files map set names to lists of Entrez identifiers. Any other file
    is read as GMT: one set per line, tab-separated name, description and
    members.

    Args:
        gene_set_file: Path to a ``.json`` or ``.gmt`` file

    Returns:
        Mapping of set name to Entrez identifiers (as strings)

    Raises:
        ValueError: If the file content is malformed
    """
    gene_set_file = validate_file_exists(gene_set_file)

    if gene_set_file.suffix.lower() == '.json':
        with open(gene_set_file, 'r') as f:
            try:
                raw = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Could not parse gene sets {gene_set_file}: {e}")
        if not isinstance(raw, dict):
            raise ValueError(f"Gene set file {gene_set_file} must hold a JSON object")
        gene_sets = {}
        for name, members in raw.items():
            if not isinstance(members, list):
                raise ValueError(f"Gene set '{name}' in {gene_set_file} is not a list")
            gene_sets[str(name)] = _clean_members(members)
    else:
        gene_sets = {}
        with open(gene_set_file, 'r') as f:
            for line_number, line in enumerate(f, start=1):
                line = line.rstrip('\n\r')
                if not line.strip():
                    continue
                fields = line.split('\t')
                if len(fields) < 3:
                    raise ValueError(
                        f"GMT line {line_number} in {gene_set_file} needs a name, a description and members"
                    )
                gene_sets[fields[0]] = _clean_members(fields[2:])

    logger.debug(f"Loaded {len(gene_sets)} gene sets from {gene_set_file}")
    return gene_sets

def restrict_gene_sets(
    gene_sets: Dict[str, List[str]],
    universe: Iterable[str],
    min_size: int = 1,
    max_size: Optional[int] = None
) -> Dict[str, List[str]]:
    """
    Keep only tested members and drop sets outside the size bounds.

    Args:
        gene_sets: Mapping of set name to members
        universe: Identifiers of the tested genes
        min_size: Smallest number of tested members (at least 1)
        max_size: Largest number of tested members

    Returns:
        Restricted mapping
    """
    universe = set(universe)
    min_size = max(1, min_size)
    restricted = {}
    skipped = []
    for name, members in gene_sets.items():
        tested = [m for m in members if m in universe]
        if len(tested) < min_size or (max_size is not None and len(tested) > max_size):
            skipped.append(name)
            continue
        restricted[name] = tested

    if skipped:
        logger.warning(
            f"Skipped {len(skipped)} gene sets with fewer than {min_size}"
            + (f" or more than {max_size}" if max_size is not None else "")
            + " tested genes"
        )
    return restricted

def over_representation(
    result: DEResult,
    gene_sets: Dict[str, List[str]],
    universe: Optional[Iterable[str]] = None,
    fdr: float = 0.05,
    min_size: int = 1,
    max_size: Optional[int] = None
) -> pd.DataFrame:
    """
    Test each set for over-representation of up- and down-regulated genes.

    Genes are called up or down at ``fdr``. For a set with N tested members
    of which k are up, P.Up is the hypergeometric probability of drawing at
    least k up genes in N draws from the universe; likewise for down.

    Args:
        result: Test result with ``entrez_id`` and ``FDR`` columns
        gene_sets: Mapping of set name to Entrez identifiers
        universe: Background identifiers (default: every tested gene)
        fdr: Threshold used to call genes up or down
        min_size: Smallest number of tested members
        max_size: Largest number of tested members

    Returns:
        DataFrame indexed by set with columns N, Up, Down, P.Up, P.Down,
        FDR.Up, FDR.Down, sorted by the smaller of the two p-values
    """
    table = result.table
    entrez = table['entrez_id'].astype(str)
    if universe is None:
        universe = entrez
    universe = set(str(u) for u in universe)

    status = decide_tests(result, fdr=fdr)
    up = set(entrez[(status == 1).to_numpy()]) & universe
    down = set(entrez[(status == -1).to_numpy()]) & universe
    total = len(universe)

    sets = restrict_gene_sets(gene_sets, universe, min_size=min_size, max_size=max_size)
    rows = {}
    for name, members in sets.items():
        n = len(members)
        n_up = len(up.intersection(members))
        n_down = len(down.intersection(members))
        rows[name] = {
            'N': n,
            'Up': n_up,
            'Down': n_down,
            'P.Up': float(hypergeom.sf(n_up - 1, total, len(up), n)),
            'P.Down': float(hypergeom.sf(n_down - 1, total, len(down), n)),
        }

    if not rows:
        return pd.DataFrame(columns=ORA_COLUMNS)

    ora = pd.DataFrame.from_dict(rows, orient='index')
    ora['FDR.Up'] = multipletests(ora['P.Up'].to_numpy(), method='fdr_bh')[1]
    ora['FDR.Down'] = multipletests(ora['P.Down'].to_numpy(), method='fdr_bh')[1]
    ora.index.name = 'set'

    order = np.argsort(np.minimum(ora['P.Up'], ora['P.Down']).to_numpy(), kind='mergesort')
    logger.info(f"Over-representation tested {len(ora)} gene sets ({len(up)} up, {len(down)} down genes)")
    return ora.iloc[order][ORA_COLUMNS]

def camera_test(
    fit: ModelFit,
    gene_sets: Dict[str, List[str]],
    min_size: int = 1,
    max_size: Optional[int] = None,
    use_ranks: bool = False,
    inter_gene_cor: float = 0.01
) -> pd.DataFrame:
    """
    Competitive gene set test of the treatment coefficient.

    Args:
        fit: Fitted model; its dispersion-estimated DGEList is tested
        gene_sets: Mapping of set name to Entrez identifiers
        min_size: Smallest number of tested members
        max_size: Largest number of tested members
        use_ranks: Use the rank-based variant
        inter_gene_cor: Assumed inter-gene correlation

    Returns:
        DataFrame indexed by set with columns NGenes, Direction, PValue, FDR
    """
    entrez = fit.data.genes['entrez_id'].astype(str).to_numpy()
    position = {gene: i for i, gene in enumerate(entrez)}

    sets = restrict_gene_sets(gene_sets, position.keys(), min_size=min_size, max_size=max_size)
    if not sets:
        return pd.DataFrame(columns=CAMERA_COLUMNS)

    index = {name: [position[m] for m in members] for name, members in sets.items()}
    table = ep.camera(
        fit.dge,
        index,
        design=fit.design.to_numpy(dtype=float),
        contrast=fit.coef,
        use_ranks=use_ranks,
        inter_gene_cor=inter_gene_cor,
        sort=True,
    )
    table.index.name = 'set'
    logger.info(f"Camera tested {len(table)} gene sets")
    return table[CAMERA_COLUMNS]

def significant_sets(table: pd.DataFrame, fdr: float = 0.05) -> pd.DataFrame:
    """
    Rows of an enrichment table that pass ``fdr``.

    Works for both over-representation tables (either direction) and
    camera tables.
    """
    if table.empty:
        return table
    if 'FDR' in table.columns:
        return table[table['FDR'] < fdr]
    return table[(table['FDR.Up'] < fdr) | (table['FDR.Down'] < fdr)]
