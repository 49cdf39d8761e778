"""Merge quantitative and semi-quantitative calls into one record per protein."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import pandas as pd

from .rollup import ratio_column

logger = logging.getLogger(__name__)

QUANT_COLUMNS = ['mean_log2_ratio', 'p_value', 'adjusted_p_value', 'is_significant']


def _indexed(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df.index.name = 'protein_id'
    return df


def merge_results(
    ratio_matrix: pd.DataFrame,
    quant_calls: Optional[pd.DataFrame],
    protein_calls: Optional[pd.DataFrame],
    replicate_names: Sequence[str],
) -> pd.DataFrame:
    """
    Full outer join of protein ratios, quantitative calls and semi-quantitative calls.

    ``quant_significant`` is True only when the moderated t-test called the protein
    AND every replicate ratio is defined; a protein with any missing replicate ratio
    is never quantitatively significant. Proteins missing from one input carry
    missing values in that input's columns.

    Args:
        ratio_matrix: Protein x replicate matrix from ``protein_ratio_matrix``
        quant_calls: Output of ``call_quant_significance``, or None if the
            quantitative test could not be run
        protein_calls: Output of ``rollup_protein_calls``, or None
        replicate_names: Replicate sample names, in output column order

    Returns:
        DataFrame with protein_id, one ``<sample>_log2_ratio`` column per replicate,
        mean_log2_ratio, p_value, adjusted_p_value, quant_significant and
        semiquant_significant
    """
    ratio_cols = [ratio_column(s) for s in replicate_names]

    ratios = _indexed(ratio_matrix.reindex(columns=list(replicate_names)).rename(columns=ratio_column))

    if quant_calls is None:
        quant = pd.DataFrame(columns=QUANT_COLUMNS, index=pd.Index([], name='protein_id'))
    else:
        quant = _indexed(quant_calls[QUANT_COLUMNS])

    if protein_calls is None:
        semi = pd.DataFrame(columns=['semiquant_significant'], index=pd.Index([], name='protein_id'))
    else:
        semi = _indexed(
            protein_calls.set_index('protein_id')[['significant']]
            .rename(columns={'significant': 'semiquant_significant'})
        )

    merged = ratios.join(quant, how='outer').join(semi, how='outer')

    for col in ratio_cols + ['mean_log2_ratio', 'p_value', 'adjusted_p_value']:
        merged[col] = pd.to_numeric(merged[col], errors='coerce').astype(float)
    merged['mean_log2_ratio'] = merged['mean_log2_ratio'].fillna(merged[ratio_cols].mean(axis=1))

    complete = merged[ratio_cols].notna().all(axis=1)
    called = merged['is_significant'].eq(True)
    n_overridden = int((called & ~complete).sum())
    if n_overridden:
        logger.info(f"Cleared quantitative significance for {n_overridden} proteins with missing replicate ratios")
    merged['quant_significant'] = called & complete
    merged['semiquant_significant'] = merged['semiquant_significant'].astype('boolean')

    final = merged.reset_index()[
        ['protein_id'] + ratio_cols
        + ['mean_log2_ratio', 'p_value', 'adjusted_p_value', 'quant_significant', 'semiquant_significant']
    ]
    final = final.sort_values('protein_id').reset_index(drop=True)

    logger.info(
        f"Merged {len(final)} proteins: {int(final['quant_significant'].sum())} quantitative, "
        f"{int(final['semiquant_significant'].fillna(False).sum())} semi-quantitative calls"
    )
    return final
