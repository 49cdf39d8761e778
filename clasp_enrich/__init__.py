"""
clasp-enrich: enrichment statistics for VIR-CLASP pulldown proteomics

Identifies proteins enriched in RNA-binding pulldowns relative to controls by
combining a moderated t-test on trimmed-mean protein log2 ratios with a
presence/absence FDR estimate from peptide detection count matrices.
"""

__version__ = "0.1.0"

from .errors import (
    ClaspError,
    SchemaError,
    InsufficientSampleError,
    DegenerateCellError,
)
from .data_io import (
    SampleRole,
    Sample,
    SampleSheet,
    ReferenceData,
    build_sample_sheet,
    load_peptide_table,
    load_spectral_report,
    load_reference_data,
)
from .rollup import (
    filter_peptides,
    calculate_log2_ratios,
    trimmed_mean,
    aggregate_to_proteins,
    protein_ratio_matrix,
)
from .statistics import (
    moderated_t_test,
    call_quant_significance,
    ModeratedTResult,
)
from .semiquant import (
    build_count_matrix,
    estimate_cell_fdr,
    rollup_protein_calls,
    run_semiquant,
    SemiQuantResult,
)
from .merge import merge_results
from .cascade import (
    run_filter_cascade,
    CascadeParams,
    CascadeResult,
    FilterStageReport,
)
from .pipeline import (
    run_condition,
    run_conditions,
    AnalysisParams,
    ConditionResult,
)
