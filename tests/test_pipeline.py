"""Tests for the per-condition pipeline and reference annotation."""

import numpy as np
import pandas as pd
import pytest

from clasp_enrich.annotation import (
    annotate_reference_sets,
    reference_column,
    significance_overlap,
)
from clasp_enrich.data_io import ReferenceData, build_sample_sheet
from clasp_enrich.errors import SchemaError
from clasp_enrich.pipeline import AnalysisParams, run_condition, run_conditions


class TestRunCondition:
    """Tests for a single condition."""

    def test_final_table(self, peptides, sheet):
        """One row per protein from either arm, with both calls."""
        result = run_condition(peptides, sheet, 'A')
        final = result.final.set_index('protein_id')

        assert not result.failed
        assert result.errors == []
        assert len(final) == 49
        assert 'A_treatment3_log2_ratio' in final.columns

    def test_quantitative_calls(self, peptides, sheet):
        """Enriched proteins are quantitatively significant, background is not."""
        final = run_condition(peptides, sheet, 'A').final.set_index('protein_id')

        enriched = final.loc[final.index.str.startswith('ENR')]
        background = final.loc[final.index.str.startswith('NULL')]
        assert enriched['quant_significant'].all()
        assert not background['quant_significant'].any()

    def test_semiquantitative_calls(self, peptides, sheet):
        """Treatment-only proteins are called from presence/absence alone."""
        result = run_condition(peptides, sheet, 'A')
        final = result.final.set_index('protein_id')

        only = final.loc[final.index.str.startswith('ONLY')]
        assert only['semiquant_significant'].all()
        assert only['mean_log2_ratio'].isna().all()
        assert not only['quant_significant'].any()
        assert not final.loc['ENR0', 'semiquant_significant']

    def test_overlap_and_log(self, peptides, sheet):
        result = run_condition(peptides, sheet, 'A')

        assert result.overlap == {'both': 0, 'quant_only': 5, 'semiquant_only': 4, 'neither': 40}
        assert any(line.startswith('Moderated t-test') for line in result.method_log)

    def test_reference_annotation(self, peptides, sheet):
        reference = ReferenceData(rbp_sets={'Castello 2012': frozenset({'ENR0', 'ONLY1'})})

        final = run_condition(peptides, sheet, 'A', reference=reference).final.set_index('protein_id')

        assert final.loc['ENR0', 'in_castello_2012']
        assert not final.loc['ENR1', 'in_castello_2012']
        assert final['n_reference_sets'].sum() == 2

    def test_missing_controls_raises(self, peptides, sheet):
        with pytest.raises(SchemaError):
            run_condition(peptides, sheet, 'B')

    def test_insufficient_replicates_keeps_semiquant(self):
        """A failed quantitative fit leaves the semi-quantitative arm intact."""
        peptides = pd.DataFrame({
            'sequence': ['AAAK', 'CCCK', 'DDDK', 'EEEK'],
            'protein_id': ['P1', 'P1', 'P2', 'P2'],
            'C_treatment1': [10.0, 12.0, 8.0, 9.0],
            'C_control1': [5.0, 5.0, np.nan, 4.0],
        })
        sheet = build_sample_sheet(peptides.columns)

        result = run_condition(peptides, sheet, 'C')

        assert not result.failed
        assert result.quant_calls is None
        assert result.errors and result.errors[0].startswith('quant:')
        assert result.semiquant is not None
        assert not result.final['quant_significant'].any()
        assert set(result.final['protein_id']) == {'P1', 'P2'}

    def test_params_applied(self, peptides, sheet):
        """Raising the peptide threshold above three removes every protein."""
        result = run_condition(peptides, sheet, 'A', params=AnalysisParams(min_peptides=4))

        assert len(result.filtered_peptides) == 0
        assert result.quant_calls is None
        assert len(result.final) == 0


class TestRunConditions:
    """Tests for running several conditions."""

    def test_failure_isolated(self, peptides, sheet):
        """A structurally broken condition does not stop the others."""
        results = run_conditions(peptides, sheet)

        assert set(results) == {'A', 'B'}
        assert not results['A'].failed
        assert results['B'].failed
        assert results['B'].errors

    def test_selected_conditions(self, peptides, sheet):
        results = run_conditions(peptides, sheet, conditions=['A'])

        assert list(results) == ['A']


class TestAnalysisParams:
    """Tests for pipeline configuration."""

    def test_from_config(self):
        config = {
            'peptide_filter': {'min_peptides': 3},
            'aggregation': {'trim_proportion': 0.1},
            'quant': {'min_fold_change': 4.0},
            'semiquant': {'candidate_treatment_counts': [3]},
        }

        params = AnalysisParams.from_config(config)

        assert params.min_peptides == 3
        assert params.trim_proportion == 0.1
        assert params.min_fold_change == 4.0
        assert params.candidate_treatment_counts == (3,)
        assert params.candidate_control_counts == (0, 1)
        assert params.adj_p_threshold == 0.01

    def test_empty_config(self):
        assert AnalysisParams.from_config({}) == AnalysisParams()


class TestAnnotation:
    """Tests for reference set annotation."""

    @pytest.fixture
    def final(self):
        return pd.DataFrame({
            'protein_id': ['P1', 'P2', 'P3', 'P4'],
            'quant_significant': [True, True, False, False],
            'semiquant_significant': pd.array([True, False, True, pd.NA], dtype='boolean'),
        })

    def test_reference_column(self):
        assert reference_column('Castello 2012') == 'in_castello_2012'
        assert reference_column('RBPbase-v0.2') == 'in_rbpbase_v0_2'

    def test_annotate(self, final):
        reference = ReferenceData(rbp_sets={'setA': frozenset({'P1', 'P2'}), 'setB': frozenset({'P1'})})

        annotated = annotate_reference_sets(final, reference)

        assert list(annotated['in_seta']) == [True, True, False, False]
        assert list(annotated['n_reference_sets']) == [2, 1, 0, 0]
        assert 'in_seta' not in final.columns

    def test_overlap_counts_missing_as_not_called(self, final):
        assert significance_overlap(final) == {
            'both': 1, 'quant_only': 1, 'semiquant_only': 1, 'neither': 1,
        }
