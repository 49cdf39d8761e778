"""Command-line interface for clasp-enrich.

Statistical enrichment analysis of VIR-CLASP pulldown proteomics data.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import yaml

from . import __version__
from .cascade import CascadeParams, run_filter_cascade
from .data_io import (
    build_sample_sheet,
    load_peptide_table,
    load_reference_data,
    load_spectral_report,
    write_table,
)
from .errors import ClaspError
from .pipeline import AnalysisParams, ConditionResult, run_conditions

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def load_config(config_path: Path | None) -> dict:
    """Load configuration from YAML file or return defaults."""
    defaults = {
        'data': {
            'intensity_prefix': '',
            'zero_as_missing': True,
        },
        'peptide_filter': {
            'min_peptides': 2,
        },
        'aggregation': {
            'trim_proportion': 0.2,
            'min_values': 1,
        },
        'quant': {
            'adj_p_threshold': 0.01,
            'min_fold_change': 5.0,
            'min_complete_proteins': 2,
        },
        'semiquant': {
            'fdr_threshold': 0.01,
            'candidate_treatment_counts': [2, 3],
            'candidate_control_counts': [0, 1],
        },
        'cascade': {
            'min_distinct_peptides': 2,
            'min_coverage': 10.0,  # percent
            'min_replicate_presence': None,  # N-1 of N treatment replicates
            'contaminant_min_avg_count': 2.0,
            'decoy_prefixes': ['rev_', 'DECOY_', 'XXX_'],
        },
        'reference': {
            'contaminants': None,
            'rbp_sets': {},
        },
        'output': {
            'format': 'tsv',
        },
    }

    if config_path and config_path.exists():
        with open(config_path) as f:
            user_config = yaml.safe_load(f) or {}
        # Deep merge user config over defaults
        defaults = _deep_merge(defaults, user_config)

    return defaults


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override dict into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _named_path(item: str) -> tuple[str, str]:
    """Parse one NAME=PATH argument."""
    name, sep, path = item.partition('=')
    if not sep or not name or not path:
        raise argparse.ArgumentTypeError(f"expected NAME=PATH, got '{item}'")
    return name, path


def _rbp_set_paths(config: dict, args: argparse.Namespace) -> dict[str, Path]:
    """Reference RBP datasets from config, overridden by ``--rbp-set`` flags."""
    rbp_sets = dict(config['reference'].get('rbp_sets') or {})
    rbp_sets.update(dict(args.rbp_set or []))
    return {name: Path(p) for name, p in rbp_sets.items()}


def generate_run_metadata(
    config: dict,
    input_files: list[str],
    results: dict[str, ConditionResult],
) -> dict:
    """Generate run metadata JSON for reproducibility and provenance.

    Contains the package version, processing timestamp, input files, all
    parameters from config, and per-condition method logs, errors and
    quant/semi-quant overlap counts.
    """
    conditions = {}
    for name, result in results.items():
        conditions[name] = {
            'status': 'failed' if result.failed else 'ok',
            'n_proteins': 0 if result.final is None else len(result.final),
            'significance_overlap': result.overlap,
            'method_log': result.method_log,
            'errors': result.errors,
        }

    return {
        'pipeline_version': __version__,
        'processing_date': datetime.now(timezone.utc).isoformat(),
        'source_files': input_files,
        'processing_parameters': {
            key: config.get(key, {})
            for key in ['data', 'peptide_filter', 'aggregation', 'quant', 'semiquant', 'cascade']
        },
        'conditions': conditions,
    }


def _write_condition_outputs(result: ConditionResult, output_dir: Path, output_format: str) -> None:
    condition_dir = output_dir / result.condition
    condition_dir.mkdir(parents=True, exist_ok=True)

    write_table(result.final, condition_dir / f"final_proteins.{output_format}", output_format)
    if result.semiquant is not None:
        write_table(result.semiquant.count_matrix, condition_dir / f"count_matrix.{output_format}", output_format)
        write_table(result.semiquant.cell_fdr, condition_dir / f"cell_fdr.{output_format}", output_format)
        write_table(result.semiquant.peptide_calls, condition_dir / f"peptide_calls.{output_format}", output_format)
    logger.info(f"Saved {result.condition} results to {condition_dir}")


def cmd_run(args: argparse.Namespace) -> int:
    """Run the enrichment pipeline for every (or the selected) condition."""
    config = load_config(Path(args.config) if args.config else None)
    params = AnalysisParams.from_config(config)
    reference = load_reference_data(rbp_set_paths=_rbp_set_paths(config, args))

    input_path = Path(args.input)
    peptides, sheet = load_peptide_table(
        input_path,
        intensity_prefix=config['data'].get('intensity_prefix', ''),
        zero_as_missing=config['data'].get('zero_as_missing', True),
    )

    results = run_conditions(
        peptides,
        sheet,
        conditions=args.condition or None,
        params=params,
        reference=reference,
    )

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    output_format = config['output'].get('format', 'tsv')

    for result in results.values():
        if not result.failed:
            _write_condition_outputs(result, output_dir, output_format)

    metadata = generate_run_metadata(config, [str(input_path)], results)
    metadata_output = output_dir / "metadata.json"
    with open(metadata_output, 'w') as f:
        json.dump(metadata, f, indent=2, default=str)
    logger.info(f"Saved run metadata to {metadata_output}")

    logger.info("=" * 60)
    logger.info("Enrichment analysis complete")
    logger.info("=" * 60)
    for name, result in results.items():
        status = 'FAILED' if result.failed else 'ok'
        logger.info(f"  {name}: {status} {result.overlap}")
        for err in result.errors:
            logger.info(f"    error: {err}")

    return 1 if any(r.failed for r in results.values()) else 0


def cmd_cascade(args: argparse.Namespace) -> int:
    """Run the multi-replicate filter cascade on a spectral-count report."""
    config = load_config(Path(args.config) if args.config else None)
    params = CascadeParams.from_config(config)
    contaminants = args.contaminants or config['reference'].get('contaminants')
    reference = load_reference_data(contaminants_path=Path(contaminants) if contaminants else None)

    report = load_spectral_report(Path(args.input))
    sheet = build_sample_sheet(report['source'].unique())

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    output_format = config['output'].get('format', 'tsv')

    n_failed = 0
    for condition in args.condition or sheet.conditions:
        condition_sheet = sheet.for_condition(condition)
        rows = report.loc[report['source'].isin(condition_sheet.names)]
        try:
            result = run_filter_cascade(
                rows, reference.contaminants, params=params, sample_sheet=condition_sheet
            )
        except ClaspError as e:
            logger.error(f"Cascade for {condition} failed: {e.message}")
            n_failed += 1
            continue

        write_table(result.summary, output_dir / f"{condition}_cascade_proteins.{output_format}", output_format)
        write_table(result.audit_table(), output_dir / f"{condition}_cascade_audit.{output_format}", output_format)
        logger.info(f"{condition}: {len(result.summary)} proteins pass the cascade")

    return 1 if n_failed else 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog='clasp-enrich',
        description='clasp-enrich: enrichment statistics for VIR-CLASP pulldown proteomics\n\n'
                    'Combines a moderated t-test on trimmed-mean protein ratios with a\n'
                    'presence/absence FDR estimate into one call per protein.\n\n'
                    'Primary usage:\n'
                    '  clasp-enrich run -i peptides.tsv -o output_dir/ -c config.yaml\n'
                    '  clasp-enrich cascade -i protein_report.tsv -o output_dir/ --contaminants crap.tsv',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    run_parser = subparsers.add_parser(
        'run',
        help='Run the quantitative and semi-quantitative pipeline',
        description='Filter peptides, compute protein ratios and significance calls for each '
                    'condition, and write one merged table per condition.'
    )
    run_parser.add_argument('-i', '--input', required=True, help='Peptide intensity table (CSV/TSV)')
    run_parser.add_argument('-o', '--output-dir', required=True, help='Output directory for results')
    run_parser.add_argument('-c', '--config', help='Configuration YAML file')
    run_parser.add_argument('--condition', action='append',
                            help='Condition to process (repeatable; default: all)')
    run_parser.add_argument('--rbp-set', action='append', type=_named_path,
                            metavar='NAME=PATH',
                            help='Reference RBP dataset (repeatable)')

    cascade_parser = subparsers.add_parser(
        'cascade',
        help='Run the spectral-count filter cascade',
        description='Apply decoy/coverage, replicate-presence, contaminant and control filters '
                    'to a spectral-count protein report and write the audit trail.'
    )
    cascade_parser.add_argument('-i', '--input', required=True, help='Spectral-count protein report')
    cascade_parser.add_argument('-o', '--output-dir', required=True, help='Output directory')
    cascade_parser.add_argument('-c', '--config', help='Configuration YAML file')
    cascade_parser.add_argument('--condition', action='append',
                                help='Condition to process (repeatable; default: all)')
    cascade_parser.add_argument('--contaminants', help='Contaminant repository table')

    args = parser.parse_args()

    setup_logging(args.verbose)

    if args.command == 'run':
        return cmd_run(args)
    elif args.command == 'cascade':
        return cmd_cascade(args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
