"""Data I/O module for loading peptide tables, spectral-count reports and reference lists.

Sample columns follow the naming convention ``<condition>_<treatment|control><replicate>``
(e.g. ``8hpi_treatment1``). The role of each sample is parsed once here and carried
through the pipeline as a ``SampleSheet``; downstream stages never pattern-match
column names themselves.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

import numpy as np
import pandas as pd

from .errors import SchemaError

logger = logging.getLogger(__name__)

# Column name mapping from common search-engine exports
PEPTIDE_COLUMN_MAP = {
    'Sequence': 'sequence',
    'Peptide': 'sequence',
    'Peptide Sequence': 'sequence',
    'Stripped.Sequence': 'sequence',
    'Protein': 'protein_id',
    'Proteins': 'protein_id',
    'Protein Accession': 'protein_id',
    'Protein.Group': 'protein_id',
    'Leading razor protein': 'protein_id',
}

# IDPicker protein report columns
SPECTRAL_COLUMN_MAP = {
    'Accession': 'accession',
    'Description': 'description',
    'Distinct Peptides': 'distinct_peptides',
    'Coverage': 'coverage',
    'Filtered Spectra': 'filtered_spectra',
    'Source': 'source',
    'Source File': 'source',
}

CONTAMINANT_COLUMN_MAP = {
    'Accession': 'accession',
    'Average Spectral Count': 'avg_spectral_count',
    'Ave SC': 'avg_spectral_count',
    'AveSC': 'avg_spectral_count',
}

PEPTIDE_REQUIRED = ['sequence', 'protein_id']
SPECTRAL_REQUIRED = ['accession', 'distinct_peptides', 'coverage', 'filtered_spectra', 'source']
CONTAMINANT_REQUIRED = ['accession', 'avg_spectral_count']

SAMPLE_NAME_PATTERN = re.compile(
    r'^(?P<condition>.+)_(?P<role>treatment|control)(?P<replicate>\d+)$',
    re.IGNORECASE,
)


class SampleRole(str, Enum):
    """Role of a sample within one condition."""

    TREATMENT = 'treatment'
    CONTROL = 'control'


@dataclass(frozen=True)
class Sample:
    """One sample column, tagged at ingestion time."""

    name: str
    condition: str
    role: SampleRole
    replicate: int


@dataclass(frozen=True)
class SampleSheet:
    """Ordered collection of tagged samples."""

    samples: tuple[Sample, ...]

    def __len__(self) -> int:
        return len(self.samples)

    @property
    def names(self) -> list[str]:
        return [s.name for s in self.samples]

    @property
    def conditions(self) -> list[str]:
        """Conditions in order of first appearance."""
        seen = []
        for s in self.samples:
            if s.condition not in seen:
                seen.append(s.condition)
        return seen

    def for_condition(self, condition: str) -> SampleSheet:
        return SampleSheet(tuple(s for s in self.samples if s.condition == condition))

    def names_for(self, role: SampleRole) -> list[str]:
        """Sample names with the given role, ordered by replicate number."""
        selected = sorted(
            (s for s in self.samples if s.role == role),
            key=lambda s: (s.condition, s.replicate),
        )
        return [s.name for s in selected]

    @property
    def treatment_names(self) -> list[str]:
        return self.names_for(SampleRole.TREATMENT)

    @property
    def control_names(self) -> list[str]:
        return self.names_for(SampleRole.CONTROL)


@dataclass(frozen=True)
class ReferenceData:
    """Read-only reference inputs shared by every pipeline run.

    Attributes:
        contaminants: accession -> average spectral count in the contaminant repository
        rbp_sets: dataset name -> accessions of known RNA-binding proteins
    """

    contaminants: Mapping[str, float] = field(default_factory=lambda: MappingProxyType({}))
    rbp_sets: Mapping[str, frozenset] = field(default_factory=lambda: MappingProxyType({}))


def _read_delimited(filepath: Path) -> pd.DataFrame:
    """Read CSV or TSV, choosing the delimiter from the file suffix."""
    suffix = filepath.suffix.lower()
    sep = '\t' if suffix in ['.tsv', '.txt'] else ','
    return pd.read_csv(filepath, sep=sep)


def _standardize_columns(df: pd.DataFrame, column_map: dict[str, str]) -> pd.DataFrame:
    """Rename columns to standard names using the mapping."""
    rename_map = {orig: standard for orig, standard in column_map.items() if orig in df.columns}
    return df.rename(columns=rename_map)


def require_columns(df: pd.DataFrame, required: Iterable[str], source: str) -> None:
    """Raise SchemaError naming any required columns absent from ``df``."""
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise SchemaError(f"{source}: missing required columns {missing}")


def parse_sample_name(name: str) -> Sample:
    """Parse ``<condition>_<treatment|control><replicate>`` into a Sample.

    Raises:
        SchemaError: If the name does not follow the convention.
    """
    match = SAMPLE_NAME_PATTERN.match(name)
    if match is None:
        raise SchemaError(
            f"Sample column '{name}' does not match pattern "
            f"'<condition>_<treatment|control><replicate>'"
        )
    return Sample(
        name=name,
        condition=match.group('condition'),
        role=SampleRole(match.group('role').lower()),
        replicate=int(match.group('replicate')),
    )


def build_sample_sheet(columns: Iterable[str]) -> SampleSheet:
    """Tag every column that follows the sample naming convention.

    Columns that do not match are ignored. At least one sample column is required.
    """
    samples = []
    for col in columns:
        if SAMPLE_NAME_PATTERN.match(str(col)):
            samples.append(parse_sample_name(str(col)))

    if not samples:
        raise SchemaError(
            "No sample columns found matching "
            "'<condition>_<treatment|control><replicate>'"
        )

    names = [s.name for s in samples]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise SchemaError(f"Duplicate sample columns: {duplicates}")

    return SampleSheet(tuple(samples))


def clean_protein_id(raw) -> Optional[str]:
    """Reduce a raw protein identifier to a single accession.

    Takes the first of several ``;``-separated identifiers and extracts the accession
    from UniProt FASTA headers (``sp|P12345|NAME_HUMAN`` -> ``P12345``).
    """
    if raw is None or pd.isna(raw):
        return None
    first = str(raw).split(';')[0].strip()
    if '|' in first:
        parts = first.split('|')
        if parts[0] in ('sp', 'tr') and len(parts) >= 2:
            return parts[1]
    return first or None


def standardize_peptide_table(
    df: pd.DataFrame,
    intensity_prefix: str = '',
    zero_as_missing: bool = True,
) -> tuple[pd.DataFrame, SampleSheet]:
    """Standardize a raw peptide intensity table.

    Args:
        df: Raw table with peptide, protein and per-sample intensity columns
        intensity_prefix: Prefix stripped from intensity column names
            (e.g. ``'Intensity '`` for MaxQuant peptides.txt)
        zero_as_missing: Convert zero intensities to missing values

    Returns:
        Tuple of (wide peptide frame with ``sequence``, ``protein_id`` and one
        column per sample, SampleSheet)

    Raises:
        SchemaError: If identifier or sample columns are missing
    """
    df = _standardize_columns(df, PEPTIDE_COLUMN_MAP)
    if intensity_prefix:
        df = df.rename(columns={
            col: col[len(intensity_prefix):]
            for col in df.columns
            if isinstance(col, str) and col.startswith(intensity_prefix)
        })
    require_columns(df, PEPTIDE_REQUIRED, 'peptide table')

    sheet = build_sample_sheet(c for c in df.columns if c not in PEPTIDE_REQUIRED)

    table = df[PEPTIDE_REQUIRED + sheet.names].copy()
    table[sheet.names] = table[sheet.names].apply(pd.to_numeric, errors='coerce')
    table['protein_id'] = table['protein_id'].map(clean_protein_id)

    n_no_protein = int(table['protein_id'].isna().sum())
    if n_no_protein:
        logger.warning(f"Dropping {n_no_protein} peptides without a protein identifier")
        table = table.loc[table['protein_id'].notna()].copy()

    if zero_as_missing:
        table[sheet.names] = table[sheet.names].replace(0, np.nan)

    duplicated = table.duplicated(subset=PEPTIDE_REQUIRED).sum()
    if duplicated:
        logger.warning(f"{duplicated} duplicate (sequence, protein_id) rows in peptide table")

    return table.reset_index(drop=True), sheet


def load_peptide_table(
    filepath: Path,
    intensity_prefix: str = '',
    zero_as_missing: bool = True,
) -> tuple[pd.DataFrame, SampleSheet]:
    """Load a peptide intensity table (CSV/TSV) and tag its sample columns."""
    filepath = Path(filepath)
    df = _read_delimited(filepath)
    table, sheet = standardize_peptide_table(
        df, intensity_prefix=intensity_prefix, zero_as_missing=zero_as_missing
    )
    logger.info(
        f"Loaded {len(table)} peptides, {table['protein_id'].nunique()} proteins, "
        f"{len(sheet)} samples in {len(sheet.conditions)} conditions from {filepath.name}"
    )
    return table, sheet


def standardize_spectral_report(df: pd.DataFrame) -> pd.DataFrame:
    """Standardize a per-protein spectral-count report (one row per protein per source file)."""
    df = _standardize_columns(df, SPECTRAL_COLUMN_MAP)
    require_columns(df, SPECTRAL_REQUIRED, 'spectral-count report')

    df = df.copy()
    if 'description' not in df.columns:
        df['description'] = ''
    # IDPicker writes coverage as "12.5%"
    df['coverage'] = pd.to_numeric(
        df['coverage'].astype(str).str.rstrip('%'), errors='coerce'
    )
    for col in ['distinct_peptides', 'filtered_spectra']:
        df[col] = pd.to_numeric(df[col], errors='coerce').fillna(0)
    df['accession'] = df['accession'].astype(str).str.strip()
    df['source'] = df['source'].astype(str).str.strip()
    return df


def load_spectral_report(filepath: Path) -> pd.DataFrame:
    """Load a spectral-count protein report (CSV/TSV)."""
    filepath = Path(filepath)
    df = standardize_spectral_report(_read_delimited(filepath))
    logger.info(
        f"Loaded {len(df)} rows, {df['accession'].nunique()} proteins, "
        f"{df['source'].nunique()} source files from {filepath.name}"
    )
    return df


def load_contaminants(filepath: Path) -> pd.Series:
    """Load a contaminant repository export as accession -> average spectral count."""
    filepath = Path(filepath)
    df = _standardize_columns(_read_delimited(filepath), CONTAMINANT_COLUMN_MAP)
    require_columns(df, CONTAMINANT_REQUIRED, f'contaminant list {filepath.name}')

    counts = pd.to_numeric(df['avg_spectral_count'], errors='coerce')
    series = pd.Series(counts.values, index=df['accession'].astype(str).str.strip())
    # Keep the highest count when an accession is listed twice
    series = series.groupby(level=0).max()
    logger.info(f"Loaded {len(series)} contaminant accessions from {filepath.name}")
    return series


def load_reference_set(filepath: Path, column: Optional[str] = None) -> frozenset:
    """Load accessions of one reference RBP dataset.

    Uses ``column`` if given, otherwise the first column of the file.
    """
    filepath = Path(filepath)
    df = _read_delimited(filepath)
    if column is None:
        column = df.columns[0]
    require_columns(df, [column], f'reference set {filepath.name}')
    accessions = frozenset(
        acc for acc in df[column].map(clean_protein_id) if acc is not None
    )
    logger.info(f"Loaded {len(accessions)} accessions from {filepath.name}")
    return accessions


def load_reference_data(
    contaminants_path: Optional[Path] = None,
    rbp_set_paths: Optional[Mapping[str, Path]] = None,
) -> ReferenceData:
    """Load all reference inputs once so they can be shared across runs."""
    contaminants = {}
    if contaminants_path is not None:
        contaminants = load_contaminants(Path(contaminants_path)).to_dict()

    rbp_sets = {}
    for name, path in (rbp_set_paths or {}).items():
        rbp_sets[name] = load_reference_set(Path(path))

    return ReferenceData(
        contaminants=MappingProxyType(contaminants),
        rbp_sets=MappingProxyType(rbp_sets),
    )


def write_table(df: pd.DataFrame, path: Path, output_format: str = 'tsv') -> Path:
    """Write a table as tsv, csv or parquet; returns the path written."""
    path = Path(path)
    if output_format == 'parquet':
        df.to_parquet(path, index=False)
    elif output_format == 'csv':
        df.to_csv(path, index=False)
    elif output_format == 'tsv':
        df.to_csv(path, sep='\t', index=False)
    else:
        raise ValueError(f"Unknown output format: {output_format}")
    return path
