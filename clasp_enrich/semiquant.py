"""
Semi-quantitative (presence/absence) significance.

Each peptide is summarized by how many treatment and how many control replicates
detected it. Peptides are tallied into a count matrix over every
(treatment_count, control_count) combination. The false discovery rate of an
enrichment cell such as (2, 0) is estimated from its mirror cell, where detection
is skewed toward the controls instead:

    FDR(t, c) = occupancy(null cell) / occupancy(t, c)

Only a fixed region of candidate cells is scored (treatment_count in {2, 3},
control_count in {0, 1} by default). A protein is called only when every one of
its peptides is called.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from .errors import DegenerateCellError

logger = logging.getLogger(__name__)

Cell = tuple[int, int]


@dataclass
class SemiQuantResult:
    """Tables produced by the semi-quantitative arm."""
    detection_counts: pd.DataFrame   # sequence, protein_id, treatment_count, control_count
    count_matrix: pd.DataFrame       # treatment_count, control_count, occupancy (full grid)
    cell_fdr: pd.DataFrame           # one row per candidate cell
    peptide_calls: pd.DataFrame      # detection_counts + fdr, significant
    protein_calls: pd.DataFrame      # protein_id, n_peptides, n_significant_peptides, significant


# ============================================================================
# Count-Matrix Builder
# ============================================================================

def detection_counts(
    peptides: pd.DataFrame,
    treatment_names: Sequence[str],
    control_names: Sequence[str],
) -> pd.DataFrame:
    """Count, per peptide, the treatment and control samples with positive intensity."""
    treatment_present = peptides[list(treatment_names)].gt(0)
    control_present = peptides[list(control_names)].gt(0)

    return pd.DataFrame({
        'sequence': peptides['sequence'].values,
        'protein_id': peptides['protein_id'].values,
        'treatment_count': treatment_present.sum(axis=1).astype(int).values,
        'control_count': control_present.sum(axis=1).astype(int).values,
    })


def build_count_matrix(
    counts: pd.DataFrame,
    n_treatment: int,
    n_control: int,
) -> pd.DataFrame:
    """
    Tally peptides by (treatment_count, control_count) over the full grid.

    Combinations that no peptide falls into are present with occupancy 0, so the
    result always has ``(n_treatment + 1) * (n_control + 1)`` rows.

    Args:
        counts: Output of ``detection_counts``
        n_treatment: Number of treatment replicates
        n_control: Number of control replicates

    Returns:
        DataFrame with treatment_count, control_count, occupancy
    """
    grid = pd.MultiIndex.from_product(
        [range(n_treatment + 1), range(n_control + 1)],
        names=['treatment_count', 'control_count'],
    )
    occupancy = (
        counts.groupby(['treatment_count', 'control_count']).size()
        .reindex(grid, fill_value=0)
        .rename('occupancy')
        .astype(int)
    )
    return occupancy.reset_index()


# ============================================================================
# Semi-Quantitative FDR Estimator
# ============================================================================

def candidate_cells(
    n_treatment: int,
    n_control: int,
    treatment_counts: Iterable[int] = (2, 3),
    control_counts: Iterable[int] = (0, 1),
) -> list[Cell]:
    """Candidate enrichment cells that exist in the count grid."""
    return [
        (t, c)
        for t in sorted(treatment_counts)
        for c in sorted(control_counts)
        if t <= n_treatment and c <= n_control
    ]


def null_cell(cell: Cell, n_treatment: int, n_control: int) -> Cell:
    """
    Mirror of a candidate cell with the treatment and control counts swapped.

    Counts are clipped to the grid, so with three treatment and two control
    replicates (3, 0) pairs with (0, 2) and (2, 1) with (1, 2).
    """
    t, c = cell
    return min(c, n_treatment), min(t, n_control)


def cell_fdr(occupancy: Mapping[Cell, int], cell: Cell, null: Cell) -> float:
    """
    FDR of one candidate cell.

    Raises:
        DegenerateCellError: If the candidate cell holds no peptides
    """
    denominator = occupancy.get(cell, 0)
    if denominator == 0:
        raise DegenerateCellError(cell)
    return occupancy.get(null, 0) / denominator


def estimate_cell_fdr(
    count_matrix: pd.DataFrame,
    n_treatment: int,
    n_control: int,
    treatment_counts: Iterable[int] = (2, 3),
    control_counts: Iterable[int] = (0, 1),
) -> pd.DataFrame:
    """
    Estimate the FDR of every candidate cell.

    Empty candidate cells get an undefined (NaN) FDR and are treated as not
    significant.

    Returns:
        DataFrame with treatment_count, control_count, null_treatment_count,
        null_control_count, candidate_occupancy, null_occupancy, fdr
    """
    occupancy = {
        (int(row.treatment_count), int(row.control_count)): int(row.occupancy)
        for row in count_matrix.itertuples(index=False)
    }

    rows = []
    for cell in candidate_cells(n_treatment, n_control, treatment_counts, control_counts):
        null = null_cell(cell, n_treatment, n_control)
        try:
            fdr = cell_fdr(occupancy, cell, null)
        except DegenerateCellError as e:
            logger.warning(f"{e.message}; peptides in this cell are not significant")
            fdr = np.nan

        rows.append({
            'treatment_count': cell[0],
            'control_count': cell[1],
            'null_treatment_count': null[0],
            'null_control_count': null[1],
            'candidate_occupancy': occupancy.get(cell, 0),
            'null_occupancy': occupancy.get(null, 0),
            'fdr': fdr,
        })

    columns = [
        'treatment_count', 'control_count', 'null_treatment_count',
        'null_control_count', 'candidate_occupancy', 'null_occupancy', 'fdr',
    ]
    fdr_table = pd.DataFrame(rows, columns=columns)
    return fdr_table.astype({col: int for col in columns[:-1]} | {'fdr': float})


def call_peptide_significance(
    counts: pd.DataFrame,
    fdr_table: pd.DataFrame,
    fdr_threshold: float = 0.01,
) -> pd.DataFrame:
    """
    Flag peptides whose count cell is a candidate with FDR below the threshold.

    Peptides outside the candidate cells get NaN FDR and are not significant.
    """
    calls = counts.merge(
        fdr_table[['treatment_count', 'control_count', 'fdr']],
        on=['treatment_count', 'control_count'],
        how='left',
    )
    calls['significant'] = calls['fdr'] < fdr_threshold
    return calls


def rollup_protein_calls(
    peptide_calls: pd.DataFrame,
    proteins: Optional[Iterable[str]] = None,
) -> pd.DataFrame:
    """
    Protein-level semi-quantitative calls.

    A protein is significant only if all of its peptides are significant; a single
    non-significant peptide vetoes the protein. Proteins listed in ``proteins`` that
    have no peptides are not significant.
    """
    grouped = peptide_calls.groupby('protein_id')['significant']
    protein_calls = pd.DataFrame({
        'n_peptides': grouped.size(),
        'n_significant_peptides': grouped.sum().astype(int),
        'significant': grouped.all().astype(bool),
    })

    if proteins is not None:
        protein_calls = protein_calls.reindex(list(proteins))
        protein_calls['n_peptides'] = protein_calls['n_peptides'].fillna(0).astype(int)
        protein_calls['n_significant_peptides'] = (
            protein_calls['n_significant_peptides'].fillna(0).astype(int)
        )
        protein_calls['significant'] = protein_calls['significant'].eq(True)

    protein_calls.index.name = 'protein_id'
    return protein_calls.reset_index()


def run_semiquant(
    peptides: pd.DataFrame,
    treatment_names: Sequence[str],
    control_names: Sequence[str],
    fdr_threshold: float = 0.01,
    treatment_counts: Iterable[int] = (2, 3),
    control_counts: Iterable[int] = (0, 1),
) -> SemiQuantResult:
    """Run the full semi-quantitative arm on a filtered peptide table."""
    n_treatment = len(treatment_names)
    n_control = len(control_names)

    counts = detection_counts(peptides, treatment_names, control_names)
    matrix = build_count_matrix(counts, n_treatment, n_control)
    fdr_table = estimate_cell_fdr(
        matrix, n_treatment, n_control,
        treatment_counts=treatment_counts,
        control_counts=control_counts,
    )
    peptide_calls = call_peptide_significance(counts, fdr_table, fdr_threshold)
    protein_calls = rollup_protein_calls(peptide_calls)

    logger.info(
        f"Semi-quantitative calls: {int(peptide_calls['significant'].sum())} of "
        f"{len(peptide_calls)} peptides, {int(protein_calls['significant'].sum())} of "
        f"{len(protein_calls)} proteins significant (FDR < {fdr_threshold})"
    )

    return SemiQuantResult(
        detection_counts=counts,
        count_matrix=matrix,
        cell_fdr=fdr_table,
        peptide_calls=peptide_calls,
        protein_calls=protein_calls,
    )
