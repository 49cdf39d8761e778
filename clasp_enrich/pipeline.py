"""
Per-condition enrichment pipeline.

Each condition is processed independently:

1. Peptide filter (>= 2 distinct peptides per protein)
2. Two arms on the filtered peptides:
   a. Quantitative: log2 ratios -> trimmed-mean protein ratios -> moderated t-test
   b. Semi-quantitative: detection count matrix -> cell FDR -> protein AND-rollup
3. Merge both arms into one record per protein and annotate against reference sets

A failure of the quantitative fit only removes the quantitative columns; the
semi-quantitative arm still completes. Structural problems abort the condition
without affecting the others.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

import pandas as pd

from .annotation import annotate_reference_sets, significance_overlap
from .data_io import ReferenceData, SampleSheet
from .errors import ClaspError, InsufficientSampleError, SchemaError
from .merge import merge_results
from .rollup import (
    aggregate_to_proteins,
    calculate_log2_ratios,
    filter_peptides,
    protein_ratio_matrix,
)
from .semiquant import SemiQuantResult, run_semiquant
from .statistics import call_quant_significance

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisParams:
    """Thresholds for the per-condition pipeline."""

    min_peptides: int = 2
    trim_proportion: float = 0.2
    min_trimmed_values: int = 1
    adj_p_threshold: float = 0.01
    min_fold_change: float = 5.0
    min_complete_proteins: int = 2
    semiquant_fdr_threshold: float = 0.01
    candidate_treatment_counts: tuple[int, ...] = (2, 3)
    candidate_control_counts: tuple[int, ...] = (0, 1)

    @classmethod
    def from_config(cls, config: dict) -> AnalysisParams:
        defaults = cls()
        peptide_filter = config.get('peptide_filter', {})
        aggregation = config.get('aggregation', {})
        quant = config.get('quant', {})
        semiquant = config.get('semiquant', {})
        return cls(
            min_peptides=peptide_filter.get('min_peptides', defaults.min_peptides),
            trim_proportion=aggregation.get('trim_proportion', defaults.trim_proportion),
            min_trimmed_values=aggregation.get('min_values', defaults.min_trimmed_values),
            adj_p_threshold=quant.get('adj_p_threshold', defaults.adj_p_threshold),
            min_fold_change=quant.get('min_fold_change', defaults.min_fold_change),
            min_complete_proteins=quant.get('min_complete_proteins', defaults.min_complete_proteins),
            semiquant_fdr_threshold=semiquant.get('fdr_threshold', defaults.semiquant_fdr_threshold),
            candidate_treatment_counts=tuple(
                semiquant.get('candidate_treatment_counts', defaults.candidate_treatment_counts)
            ),
            candidate_control_counts=tuple(
                semiquant.get('candidate_control_counts', defaults.candidate_control_counts)
            ),
        )


@dataclass
class ConditionResult:
    """Results of one condition's pipeline run."""

    condition: str
    final: Optional[pd.DataFrame] = None
    filtered_peptides: Optional[pd.DataFrame] = None
    protein_ratios: Optional[pd.DataFrame] = None
    quant_calls: Optional[pd.DataFrame] = None
    semiquant: Optional[SemiQuantResult] = None
    overlap: dict[str, int] = field(default_factory=dict)
    method_log: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.final is None


def run_condition(
    peptides: pd.DataFrame,
    sample_sheet: SampleSheet,
    condition: str,
    params: Optional[AnalysisParams] = None,
    reference: Optional[ReferenceData] = None,
) -> ConditionResult:
    """
    Run the full enrichment pipeline for one condition.

    Args:
        peptides: Wide peptide table from ``load_peptide_table``
        sample_sheet: Tagged samples for the whole table
        condition: Condition to process
        params: Pipeline thresholds (defaults if None)
        reference: Reference RBP datasets for annotation (optional)

    Returns:
        ConditionResult

    Raises:
        SchemaError: If the condition lacks treatment or control samples
    """
    if params is None:
        params = AnalysisParams()

    sheet = sample_sheet.for_condition(condition)
    treatment = sheet.treatment_names
    control = sheet.control_names
    if not treatment or not control:
        raise SchemaError(
            f"Condition '{condition}' needs treatment and control samples; "
            f"found treatment={treatment}, control={control}"
        )

    result = ConditionResult(condition=condition)
    log = result.method_log
    logger.info(f"Condition {condition}: treatment {treatment}, control {control}")

    # Step 1: Peptide filter
    filtered = filter_peptides(peptides, sheet.names, min_peptides=params.min_peptides)
    result.filtered_peptides = filtered
    log.append(
        f"Peptide filter: {len(filtered)} peptides, {filtered['protein_id'].nunique()} proteins "
        f"with >= {params.min_peptides} peptides"
    )

    # Step 2a: Quantitative arm
    ratios = calculate_log2_ratios(filtered, treatment, control)
    protein_ratios = aggregate_to_proteins(
        ratios,
        proportion=params.trim_proportion,
        min_values=params.min_trimmed_values,
    )
    result.protein_ratios = protein_ratios
    matrix = protein_ratio_matrix(protein_ratios, treatment)
    log.append(f"Protein ratios: {len(matrix)} proteins ({params.trim_proportion:.0%} trimmed mean)")

    try:
        result.quant_calls = call_quant_significance(
            matrix,
            adj_p_threshold=params.adj_p_threshold,
            min_fold_change=params.min_fold_change,
            min_complete=params.min_complete_proteins,
        )
        log.append(
            f"Moderated t-test: {int(result.quant_calls['is_significant'].sum())} of "
            f"{len(result.quant_calls)} proteins significant"
        )
    except InsufficientSampleError as e:
        logger.error(f"Condition {condition}: quantitative test skipped: {e.message}")
        result.errors.append(f"quant: {e.message}")
        log.append("Moderated t-test: skipped (insufficient data)")

    # Step 2b: Semi-quantitative arm
    result.semiquant = run_semiquant(
        filtered,
        treatment,
        control,
        fdr_threshold=params.semiquant_fdr_threshold,
        treatment_counts=params.candidate_treatment_counts,
        control_counts=params.candidate_control_counts,
    )
    log.append(
        f"Semi-quantitative: {int(result.semiquant.protein_calls['significant'].sum())} of "
        f"{len(result.semiquant.protein_calls)} proteins significant"
    )

    # Step 3: Merge and annotate
    final = merge_results(matrix, result.quant_calls, result.semiquant.protein_calls, treatment)
    if reference is not None and reference.rbp_sets:
        final = annotate_reference_sets(final, reference)
        log.append(f"Annotated against {len(reference.rbp_sets)} reference RBP datasets")

    result.final = final
    result.overlap = significance_overlap(final)
    log.append(f"Significance overlap: {result.overlap}")
    return result


def run_conditions(
    peptides: pd.DataFrame,
    sample_sheet: SampleSheet,
    conditions: Optional[Iterable[str]] = None,
    params: Optional[AnalysisParams] = None,
    reference: Optional[ReferenceData] = None,
) -> dict[str, ConditionResult]:
    """
    Run every condition independently.

    A ``ClaspError`` in one condition is logged and recorded on that condition's
    result; the remaining conditions still run.
    """
    if conditions is None:
        conditions = sample_sheet.conditions

    results = {}
    for condition in conditions:
        try:
            results[condition] = run_condition(
                peptides, sample_sheet, condition, params=params, reference=reference
            )
        except ClaspError as e:
            logger.error(f"Condition {condition} failed: {e.message}")
            results[condition] = ConditionResult(condition=condition, errors=[e.message])

    n_failed = sum(r.failed for r in results.values())
    logger.info(f"Processed {len(results)} conditions ({n_failed} failed)")
    return results
