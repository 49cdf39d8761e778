"""Tests for the semi-quantitative count matrix, cell FDR and protein rollup."""

import logging

import numpy as np
import pandas as pd
import pytest

from clasp_enrich.errors import DegenerateCellError
from clasp_enrich.semiquant import (
    build_count_matrix,
    call_peptide_significance,
    candidate_cells,
    cell_fdr,
    detection_counts,
    estimate_cell_fdr,
    null_cell,
    rollup_protein_calls,
    run_semiquant,
)

TREATMENT = ['A_treatment1', 'A_treatment2', 'A_treatment3']
CONTROL = ['A_control1', 'A_control2']


def make_counts(cells):
    """Detection-count table with ``n`` peptides in each (t, c) cell."""
    rows = []
    for (t, c), n in cells.items():
        for i in range(n):
            rows.append({
                'sequence': f'PEP_{t}_{c}_{i}',
                'protein_id': f'PROT_{t}_{c}_{i}',
                'treatment_count': t,
                'control_count': c,
            })
    return pd.DataFrame(
        rows, columns=['sequence', 'protein_id', 'treatment_count', 'control_count']
    )


@pytest.fixture
def example_counts():
    """200 peptides at (3,0) against 1 at (0,2), 50 at (2,0), 10 at (3,1), none at (2,1)."""
    return make_counts({(3, 0): 200, (0, 2): 1, (2, 0): 50, (3, 1): 10, (0, 0): 5})


class TestDetectionCounts:
    """Tests for per-peptide detection counts."""

    def test_positive_intensities_counted(self):
        """Only positive, defined intensities count as detections."""
        peptides = pd.DataFrame({
            'sequence': ['AAAK', 'CCCK'],
            'protein_id': ['P1', 'P1'],
            'A_treatment1': [10.0, np.nan],
            'A_treatment2': [0.0, 5.0],
            'A_treatment3': [3.0, 2.0],
            'A_control1': [np.nan, 1.0],
            'A_control2': [np.nan, 1.0],
        })

        counts = detection_counts(peptides, TREATMENT, CONTROL)

        assert list(counts['treatment_count']) == [2, 2]
        assert list(counts['control_count']) == [0, 2]
        assert list(counts.columns) == ['sequence', 'protein_id', 'treatment_count', 'control_count']


class TestBuildCountMatrix:
    """Tests for the count matrix."""

    def test_full_grid(self, example_counts):
        """Every combination is present, empty ones with zero occupancy."""
        matrix = build_count_matrix(example_counts, 3, 2)

        assert len(matrix) == 4 * 3
        cells = set(zip(matrix['treatment_count'], matrix['control_count']))
        assert cells == {(t, c) for t in range(4) for c in range(3)}
        occupancy = matrix.set_index(['treatment_count', 'control_count'])['occupancy']
        assert occupancy[(2, 1)] == 0
        assert occupancy[(3, 0)] == 200

    def test_occupancy_conserved(self, example_counts):
        """Occupancies sum to the number of peptides."""
        matrix = build_count_matrix(example_counts, 3, 2)

        assert matrix['occupancy'].sum() == len(example_counts)
        assert (matrix['occupancy'] >= 0).all()

    def test_empty_counts(self):
        """No peptides still gives the full grid of zeros."""
        matrix = build_count_matrix(make_counts({}), 2, 2)

        assert len(matrix) == 9
        assert matrix['occupancy'].sum() == 0


class TestCandidateAndNullCells:
    """Tests for cell selection."""

    def test_default_candidates(self):
        """Treatment counts 2-3 and control counts 0-1."""
        assert candidate_cells(3, 2) == [(2, 0), (2, 1), (3, 0), (3, 1)]

    def test_candidates_restricted_to_grid(self):
        """Cells outside the grid are not candidates."""
        assert candidate_cells(2, 1) == [(2, 0), (2, 1)]
        assert candidate_cells(2, 0) == [(2, 0)]

    @pytest.mark.parametrize('cell,expected', [
        ((3, 0), (0, 2)),
        ((2, 1), (1, 2)),
        ((2, 0), (0, 2)),
        ((3, 1), (1, 2)),
    ])
    def test_null_cell_three_by_two(self, cell, expected):
        """Mirror cells are clipped to the 3 x 2 grid."""
        assert null_cell(cell, 3, 2) == expected

    def test_null_cell_square_grid(self):
        """With equal replicate numbers the mirror is a plain swap."""
        assert null_cell((3, 1), 3, 3) == (1, 3)


class TestCellFdr:
    """Tests for the per-cell FDR."""

    def test_ratio(self):
        """FDR is null occupancy over candidate occupancy."""
        assert cell_fdr({(3, 0): 200, (0, 2): 1}, (3, 0), (0, 2)) == pytest.approx(0.005)

    def test_empty_candidate_raises(self):
        """An empty candidate cell has no defined FDR."""
        with pytest.raises(DegenerateCellError) as exc_info:
            cell_fdr({(0, 2): 1}, (2, 1), (1, 2))

        assert exc_info.value.cell == (2, 1)

    def test_estimate_table(self, example_counts, caplog):
        """Worked example across the four candidate cells."""
        matrix = build_count_matrix(example_counts, 3, 2)

        with caplog.at_level(logging.WARNING):
            table = estimate_cell_fdr(matrix, 3, 2)

        fdr = table.set_index(['treatment_count', 'control_count'])['fdr']
        assert fdr[(3, 0)] == pytest.approx(0.005)
        assert fdr[(2, 0)] == pytest.approx(0.02)
        assert fdr[(3, 1)] == pytest.approx(0.0)
        assert np.isnan(fdr[(2, 1)])
        assert 'zero occupancy' in caplog.text

    def test_estimate_table_columns(self, example_counts):
        """Null cells and occupancies are reported alongside the FDR."""
        table = estimate_cell_fdr(build_count_matrix(example_counts, 3, 2), 3, 2)
        row = table.set_index(['treatment_count', 'control_count']).loc[(3, 0)]

        assert row['null_treatment_count'] == 0
        assert row['null_control_count'] == 2
        assert row['candidate_occupancy'] == 200
        assert row['null_occupancy'] == 1


class TestPeptideCalls:
    """Tests for peptide-level calls."""

    def test_calls_by_cell(self, example_counts):
        """Only peptides in candidate cells with FDR below threshold are called."""
        fdr_table = estimate_cell_fdr(build_count_matrix(example_counts, 3, 2), 3, 2)

        calls = call_peptide_significance(example_counts, fdr_table, fdr_threshold=0.01)
        by_cell = calls.groupby(['treatment_count', 'control_count'])['significant'].all()

        assert by_cell[(3, 0)]
        assert by_cell[(3, 1)]
        assert not by_cell[(2, 0)]
        assert not by_cell[(0, 0)]
        assert not by_cell[(0, 2)]
        assert len(calls) == len(example_counts)

    def test_non_candidate_fdr_missing(self, example_counts):
        """Peptides outside the candidate region carry no FDR."""
        fdr_table = estimate_cell_fdr(build_count_matrix(example_counts, 3, 2), 3, 2)

        calls = call_peptide_significance(example_counts, fdr_table)

        assert calls.loc[calls['treatment_count'] == 0, 'fdr'].isna().all()


class TestRollupProteinCalls:
    """Tests for the all-peptides protein rollup."""

    def test_one_failing_peptide_vetoes(self):
        """[T, T, F] is not significant; [T, T] is."""
        peptide_calls = pd.DataFrame({
            'protein_id': ['P1', 'P1', 'P1', 'P2', 'P2'],
            'significant': [True, True, False, True, True],
        })

        calls = rollup_protein_calls(peptide_calls).set_index('protein_id')

        assert not calls.loc['P1', 'significant']
        assert calls.loc['P2', 'significant']
        assert calls.loc['P1', 'n_peptides'] == 3
        assert calls.loc['P1', 'n_significant_peptides'] == 2

    def test_protein_without_peptides(self):
        """A listed protein without peptides is not significant."""
        peptide_calls = pd.DataFrame({'protein_id': ['P1'], 'significant': [True]})

        calls = rollup_protein_calls(peptide_calls, proteins=['P1', 'P9']).set_index('protein_id')

        assert calls.loc['P1', 'significant']
        assert not calls.loc['P9', 'significant']
        assert calls.loc['P9', 'n_peptides'] == 0


class TestRunSemiquant:
    """End-to-end semi-quantitative arm on an intensity table."""

    def test_enriched_protein_called(self):
        """A protein seen only in treatment is called when its cell dominates."""
        rows = []
        for i in range(150):
            rows.append({
                'sequence': f'ENR{i}', 'protein_id': f'E{i // 3}',
                'A_treatment1': 1.0, 'A_treatment2': 1.0, 'A_treatment3': 1.0,
                'A_control1': np.nan, 'A_control2': np.nan,
            })
        rows.append({
            'sequence': 'BKG0', 'protein_id': 'B0',
            'A_treatment1': np.nan, 'A_treatment2': np.nan, 'A_treatment3': np.nan,
            'A_control1': 1.0, 'A_control2': 1.0,
        })
        rows.append({
            'sequence': 'MIX0', 'protein_id': 'E0',
            'A_treatment1': 1.0, 'A_treatment2': 1.0, 'A_treatment3': np.nan,
            'A_control1': 1.0, 'A_control2': 1.0,
        })
        peptides = pd.DataFrame(rows)

        result = run_semiquant(peptides, TREATMENT, CONTROL)
        calls = result.protein_calls.set_index('protein_id')

        # (3,0) holds 150 peptides against one at (0,2)
        assert result.cell_fdr.set_index(['treatment_count', 'control_count']).loc[(3, 0), 'fdr'] \
            == pytest.approx(1 / 150)
        assert calls.loc['E1', 'significant']
        assert not calls.loc['E0', 'significant']
        assert not calls.loc['B0', 'significant']
        assert result.count_matrix['occupancy'].sum() == len(peptides)
