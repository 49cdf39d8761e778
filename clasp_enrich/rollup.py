"""
Peptide filtering, ratio calculation and peptide-to-protein rollup.

Supports:
- Peptide filter: drop peptides without signal, keep proteins with >= N distinct peptides
- Per-peptide log2 ratios of each treatment sample against the control average
- Protein rollup by symmetric trimmed mean of peptide log2 ratios

Missing values are carried as NaN throughout. A ratio or aggregate that cannot be
computed is NaN (or an absent row), never zero and never -inf.
"""

import logging
from typing import List, Sequence

import numpy as np
import pandas as pd
from scipy import stats

logger = logging.getLogger(__name__)

PEPTIDE_ID_COLUMNS = ['sequence', 'protein_id']


def ratio_column(sample_name: str) -> str:
    """Name of the per-replicate log2 ratio column in protein-level tables."""
    return f'{sample_name}_log2_ratio'


# ============================================================================
# Peptide Filter
# ============================================================================

def filter_peptides(
    peptides: pd.DataFrame,
    sample_names: Sequence[str],
    min_peptides: int = 2,
) -> pd.DataFrame:
    """
    Keep peptides with signal whose protein has enough distinct peptides.

    A peptide is dropped when every intensity across ``sample_names`` is missing
    (its mean intensity is undefined). Proteins are then kept only if they are
    supported by at least ``min_peptides`` distinct peptide sequences.

    Args:
        peptides: Wide peptide table (sequence, protein_id, one column per sample)
        sample_names: Sample columns belonging to the condition being processed
        min_peptides: Minimum distinct peptide sequences per protein

    Returns:
        Filtered peptide table restricted to id columns and ``sample_names``
    """
    table = peptides[PEPTIDE_ID_COLUMNS + list(sample_names)]

    has_signal = table[list(sample_names)].notna().any(axis=1)
    with_signal = table.loc[has_signal]

    n_sequences = with_signal.groupby('protein_id')['sequence'].transform('nunique')
    kept = with_signal.loc[n_sequences >= min_peptides].reset_index(drop=True)

    logger.info(
        f"Peptide filter: {len(table)} -> {len(with_signal)} peptides with signal -> "
        f"{len(kept)} peptides on {kept['protein_id'].nunique()} proteins "
        f"with >= {min_peptides} peptides"
    )
    return kept


# ============================================================================
# Ratio Calculator
# ============================================================================

def calculate_log2_ratios(
    peptides: pd.DataFrame,
    treatment_names: Sequence[str],
    control_names: Sequence[str],
) -> pd.DataFrame:
    """
    Compute per-peptide log2 ratios of each treatment sample against the control average.

    The control average is the mean of the defined control intensities (undefined if
    all are missing). A ratio is defined only when both the treatment intensity and the
    control average are defined and positive.

    Args:
        peptides: Wide peptide table
        treatment_names: Treatment sample columns
        control_names: Control sample columns

    Returns:
        Long DataFrame with columns sequence, protein_id, sample_name, log2_ratio
    """
    columns = PEPTIDE_ID_COLUMNS + ['sample_name', 'log2_ratio']
    if len(peptides) == 0 or not treatment_names:
        return pd.DataFrame(columns=columns).astype({'log2_ratio': float})

    control_avg = peptides[list(control_names)].mean(axis=1, skipna=True)

    frames = []
    for sample in treatment_names:
        intensity = peptides[sample].astype(float)
        valid = (intensity > 0) & (control_avg > 0)
        with np.errstate(divide='ignore', invalid='ignore'):
            log_ratio = np.where(valid, np.log2(intensity / control_avg), np.nan)

        frames.append(pd.DataFrame({
            'sequence': peptides['sequence'].values,
            'protein_id': peptides['protein_id'].values,
            'sample_name': sample,
            'log2_ratio': log_ratio,
        }))

    ratios = pd.concat(frames, ignore_index=True)
    logger.debug(
        f"Computed {ratios['log2_ratio'].notna().sum()} of {len(ratios)} peptide ratios"
    )
    return ratios[columns]


# ============================================================================
# Protein Aggregator
# ============================================================================

def trimmed_mean(
    values,
    proportion: float = 0.2,
    min_values: int = 1,
) -> float:
    """
    Symmetric trimmed mean of the defined values.

    Sorts the finite values and removes ``floor(n * proportion)`` from each end
    before averaging, matching R's ``mean(x, trim=)``.

    Args:
        values: Values to average; NaN entries are ignored
        proportion: Fraction trimmed from each end
        min_values: Minimum number of defined values required

    Returns:
        Trimmed mean, or NaN if fewer than ``min_values`` values are defined
    """
    arr = np.asarray(values, dtype=float)
    arr = arr[np.isfinite(arr)]
    if arr.size == 0 or arr.size < min_values:
        return np.nan
    return float(stats.trim_mean(arr, proportion))


def aggregate_to_proteins(
    ratios: pd.DataFrame,
    proportion: float = 0.2,
    min_values: int = 1,
) -> pd.DataFrame:
    """
    Reduce peptide log2 ratios to one trimmed-mean ratio per protein per sample.

    Args:
        ratios: Long peptide ratio table from ``calculate_log2_ratios``
        proportion: Fraction trimmed from each end
        min_values: Minimum defined peptide ratios per protein/sample

    Returns:
        Long DataFrame with protein_id, sample_name, trimmed_mean_log2_ratio and
        n_values. Groups without a defined aggregate are absent.
    """
    columns = ['protein_id', 'sample_name', 'trimmed_mean_log2_ratio', 'n_values']
    if len(ratios) == 0:
        return pd.DataFrame(columns=columns).astype({'trimmed_mean_log2_ratio': float})

    grouped = ratios.groupby(['protein_id', 'sample_name'], sort=True)['log2_ratio']
    protein_ratios = grouped.agg(
        trimmed_mean_log2_ratio=lambda v: trimmed_mean(v, proportion, min_values),
        n_values='count',
    ).reset_index()

    undefined = protein_ratios['trimmed_mean_log2_ratio'].isna()
    if undefined.any():
        logger.info(f"Skipped {int(undefined.sum())} protein/sample groups without defined ratios")
        for _, row in protein_ratios.loc[undefined].head(5).iterrows():
            logger.debug(f"  {row['protein_id']} / {row['sample_name']}")

    protein_ratios = protein_ratios.loc[~undefined].reset_index(drop=True)
    logger.info(
        f"Rolled up to {protein_ratios['protein_id'].nunique()} proteins "
        f"({proportion:.0%} trimmed mean)"
    )
    return protein_ratios[columns]


def protein_ratio_matrix(
    protein_ratios: pd.DataFrame,
    sample_names: List[str],
) -> pd.DataFrame:
    """
    Reshape protein ratios to a protein x sample matrix.

    Columns are the given sample names (in that order); absent aggregates are NaN.
    """
    if len(protein_ratios) == 0:
        empty = pd.DataFrame(columns=list(sample_names), dtype=float)
        empty.index.name = 'protein_id'
        return empty

    matrix = protein_ratios.pivot_table(
        index='protein_id',
        columns='sample_name',
        values='trimmed_mean_log2_ratio',
        aggfunc='first',
    )
    matrix = matrix.reindex(columns=list(sample_names))
    matrix.columns.name = None
    return matrix
