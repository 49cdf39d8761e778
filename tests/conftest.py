"""Shared fixtures: a synthetic two-condition peptide table."""

import numpy as np
import pandas as pd
import pytest

from clasp_enrich.data_io import build_sample_sheet

TREATMENT = ['A_treatment1', 'A_treatment2', 'A_treatment3']
CONTROL = ['A_control1', 'A_control2']


def make_peptides():
    """Condition A with 40 background, 5 enriched and 4 treatment-only proteins.

    Every protein has three peptides. Background and enriched proteins are seen
    in all five samples; treatment-only proteins have no control signal. A lone
    ``B_treatment1`` column gives a second condition without controls.
    """
    rows = []

    def add_protein(protein, log2_ratios, control_value=1000.0):
        for j in range(3):
            row = {'sequence': f'{protein}_PEP{j}', 'protein_id': protein}
            for sample, lr in zip(TREATMENT, log2_ratios):
                row[sample] = 1000.0 * 2 ** lr
            for sample in CONTROL:
                row[sample] = control_value
            row['B_treatment1'] = 1.0
            rows.append(row)

    for i in range(40):
        add_protein(f'NULL{i:02d}', [0.3 * np.sin(3 * i + r) for r in range(1, 4)])
    for i in range(5):
        add_protein(f'ENR{i}', [6.0 + 0.3 * np.sin(5 * i + r) for r in range(1, 4)])
    for i in range(4):
        add_protein(f'ONLY{i}', [0.0, 0.0, 0.0], control_value=np.nan)

    return pd.DataFrame(rows)


@pytest.fixture
def peptides():
    return make_peptides()


@pytest.fixture
def sheet(peptides):
    return build_sample_sheet(peptides.columns)
