"""Annotation of final protein calls against reference RNA-binding protein datasets."""

from __future__ import annotations

import logging
import re

import pandas as pd

from .data_io import ReferenceData

logger = logging.getLogger(__name__)


def reference_column(name: str) -> str:
    """Column name for membership in one reference dataset."""
    return 'in_' + re.sub(r'\W+', '_', name).strip('_').lower()


def annotate_reference_sets(final: pd.DataFrame, reference: ReferenceData) -> pd.DataFrame:
    """
    Flag proteins found in each reference RBP dataset.

    Adds one boolean ``in_<dataset>`` column per dataset and ``n_reference_sets``,
    the number of datasets listing the protein.
    """
    annotated = final.copy()
    columns = []
    for name, accessions in reference.rbp_sets.items():
        col = reference_column(name)
        annotated[col] = annotated['protein_id'].isin(accessions)
        columns.append(col)
        logger.debug(f"{int(annotated[col].sum())} proteins found in {name}")

    annotated['n_reference_sets'] = annotated[columns].sum(axis=1).astype(int) if columns else 0
    return annotated


def significance_overlap(final: pd.DataFrame) -> dict[str, int]:
    """Number of proteins called by both methods, by one only, or by neither."""
    quant = final['quant_significant'].fillna(False).astype(bool)
    semi = final['semiquant_significant'].fillna(False).astype(bool)
    return {
        'both': int((quant & semi).sum()),
        'quant_only': int((quant & ~semi).sum()),
        'semiquant_only': int((~quant & semi).sum()),
        'neither': int((~quant & ~semi).sum()),
    }
