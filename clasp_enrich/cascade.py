"""
Multi-replicate filter cascade for spectral-count protein reports.

An independent entry path working on per-protein spectral counts (one row per
protein per source file, e.g. an IDPicker protein report) rather than peptide
intensities. The stages narrow the protein list in order:

    F0  identification quality: no decoys, >= 2 distinct peptides, coverage threshold
    F1  reproducibility: present in at least N-1 of N treatment replicates
    F2  contaminants: not in the contaminant repository (avg. spectral count >= 2)
    F3  background: not present in every control replicate

Each stage records the number of distinct proteins before and after it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence

import pandas as pd

from .data_io import SampleSheet, build_sample_sheet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CascadeParams:
    """Thresholds for the filter cascade.

    ``min_coverage`` is in percent. ``min_replicate_presence`` of None means
    N-1 of the N treatment replicates.
    """

    min_distinct_peptides: int = 2
    min_coverage: float = 10.0
    min_replicate_presence: Optional[int] = None
    contaminant_min_avg_count: float = 2.0
    decoy_prefixes: tuple[str, ...] = ('rev_', 'DECOY_', 'XXX_')

    @classmethod
    def from_config(cls, config: dict) -> CascadeParams:
        section = config.get('cascade', {})
        defaults = cls()
        return cls(
            min_distinct_peptides=section.get('min_distinct_peptides', defaults.min_distinct_peptides),
            min_coverage=section.get('min_coverage', defaults.min_coverage),
            min_replicate_presence=section.get('min_replicate_presence', defaults.min_replicate_presence),
            contaminant_min_avg_count=section.get(
                'contaminant_min_avg_count', defaults.contaminant_min_avg_count
            ),
            decoy_prefixes=tuple(section.get('decoy_prefixes', defaults.decoy_prefixes)),
        )


@dataclass
class FilterStageReport:
    """Distinct protein counts around one cascade stage."""

    stage: str
    description: str
    n_before: int
    n_after: int

    @property
    def n_removed(self) -> int:
        return self.n_before - self.n_after


@dataclass
class CascadeResult:
    """Result of the filter cascade."""

    proteins: pd.DataFrame   # surviving report rows (long format)
    summary: pd.DataFrame    # one row per surviving protein, spectra per source
    audit: list[FilterStageReport] = field(default_factory=list)

    def audit_table(self) -> pd.DataFrame:
        return pd.DataFrame(
            [
                {
                    'stage': r.stage,
                    'description': r.description,
                    'n_before': r.n_before,
                    'n_after': r.n_after,
                    'n_removed': r.n_removed,
                }
                for r in self.audit
            ],
            columns=['stage', 'description', 'n_before', 'n_after', 'n_removed'],
        )


# ============================================================================
# Individual stages
# ============================================================================

def filter_identification(report: pd.DataFrame, params: CascadeParams) -> pd.DataFrame:
    """F0: drop decoys and rows below the peptide-count or coverage thresholds."""
    is_decoy = report['accession'].str.startswith(tuple(params.decoy_prefixes))
    passes = (
        ~is_decoy
        & (report['distinct_peptides'] >= params.min_distinct_peptides)
        & (report['coverage'] >= params.min_coverage)
    )
    logger.debug(f"F0: {int(is_decoy.sum())} decoy rows, {int((~passes).sum())} rows removed")
    return report.loc[passes]


def filter_replicate_presence(
    report: pd.DataFrame,
    treatment_sources: Sequence[str],
    min_presence: int,
) -> pd.DataFrame:
    """F1: keep proteins detected in at least ``min_presence`` treatment replicates."""
    detected = report.loc[
        report['source'].isin(treatment_sources) & (report['filtered_spectra'] > 0)
    ]
    n_present = detected.groupby('accession')['source'].nunique()
    reproducible = n_present.index[n_present >= min_presence]
    return report.loc[report['accession'].isin(reproducible)]


def filter_contaminants(
    report: pd.DataFrame,
    contaminants: Mapping[str, float],
    min_avg_count: float,
) -> pd.DataFrame:
    """F2: drop proteins listed as contaminants with average spectral count >= ``min_avg_count``."""
    frequent = {acc for acc, count in contaminants.items() if count >= min_avg_count}
    return report.loc[~report['accession'].isin(frequent)]


def filter_control_presence(
    report: pd.DataFrame,
    control_sources: Sequence[str],
    detections: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """F3: drop proteins detected in every control replicate.

    Presence is read from ``detections`` when given (the report before any
    identification filtering), so a protein with weak identifications in the
    controls still counts as background.
    """
    if not control_sources:
        return report
    if detections is None:
        detections = report
    detected = detections.loc[
        detections['source'].isin(control_sources) & (detections['filtered_spectra'] > 0)
    ]
    n_present = detected.groupby('accession')['source'].nunique()
    background = n_present.index[n_present >= len(control_sources)]
    return report.loc[~report['accession'].isin(background)]


# ============================================================================
# Cascade
# ============================================================================

def summarize_proteins(report: pd.DataFrame, sources: Sequence[str]) -> pd.DataFrame:
    """One row per protein with its filtered spectra in each source file."""
    if len(report) == 0:
        return pd.DataFrame(
            columns=['accession', 'description', 'distinct_peptides', 'coverage'] + list(sources)
        )

    spectra = report.pivot_table(
        index='accession',
        columns='source',
        values='filtered_spectra',
        aggfunc='sum',
        fill_value=0,
    ).reindex(columns=list(sources), fill_value=0)
    spectra.columns.name = None

    info = report.groupby('accession').agg(
        description=('description', 'first'),
        distinct_peptides=('distinct_peptides', 'max'),
        coverage=('coverage', 'max'),
    )
    return info.join(spectra).reset_index()


def run_filter_cascade(
    report: pd.DataFrame,
    contaminants: Mapping[str, float],
    params: Optional[CascadeParams] = None,
    sample_sheet: Optional[SampleSheet] = None,
) -> CascadeResult:
    """
    Run F0-F3 over a spectral-count report.

    Args:
        report: Standardized report from ``load_spectral_report``
        contaminants: accession -> average spectral count
        params: Cascade thresholds (defaults if None)
        sample_sheet: Roles of the source files; parsed from the source labels if None

    Returns:
        CascadeResult with the surviving rows, a per-protein summary and the audit trail
    """
    if params is None:
        params = CascadeParams()
    if sample_sheet is None:
        sample_sheet = build_sample_sheet(report['source'].unique())

    treatment_sources = sample_sheet.treatment_names
    control_sources = sample_sheet.control_names
    min_presence = params.min_replicate_presence
    if min_presence is None:
        min_presence = max(len(treatment_sources) - 1, 1)

    unknown = ~report['source'].isin(sample_sheet.names)
    if unknown.any():
        logger.warning(
            f"Ignoring {int(unknown.sum())} rows from source files outside the sample sheet: "
            f"{sorted(report.loc[unknown, 'source'].unique())[:5]}"
        )

    known = report.loc[~unknown]

    stages = [
        (
            'F0',
            f"no decoys, >= {params.min_distinct_peptides} distinct peptides, "
            f">= {params.min_coverage}% coverage",
            lambda df: filter_identification(df, params),
        ),
        (
            'F1',
            f"present in >= {min_presence} of {len(treatment_sources)} treatment replicates",
            lambda df: filter_replicate_presence(df, treatment_sources, min_presence),
        ),
        (
            'F2',
            f"not a contaminant with average spectral count >= {params.contaminant_min_avg_count}",
            lambda df: filter_contaminants(df, contaminants, params.contaminant_min_avg_count),
        ),
        (
            'F3',
            f"not present in all {len(control_sources)} control replicates",
            lambda df: filter_control_presence(df, control_sources, detections=known),
        ),
    ]

    current = known
    audit = []
    n_before = current['accession'].nunique()
    for name, description, apply_filter in stages:
        current = apply_filter(current)
        n_after = current['accession'].nunique()
        audit.append(FilterStageReport(name, description, n_before, n_after))
        logger.info(f"{name} ({description}): {n_before} -> {n_after} proteins")
        n_before = n_after

    current = current.reset_index(drop=True)
    return CascadeResult(
        proteins=current,
        summary=summarize_proteins(current, sample_sheet.names),
        audit=audit,
    )
