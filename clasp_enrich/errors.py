"""Exceptions raised by the enrichment pipeline.

Missing measurements are never raised: they travel through the tables as NaN.
These classes cover structural problems and fits that cannot be computed.
"""

from __future__ import annotations


class ClaspError(Exception):
    """Base class for pipeline errors that are isolated per condition."""

    def __init__(self, message: str = "pipeline stage failed") -> None:
        self.message = message
        super().__init__(self.message)


class SchemaError(ClaspError, ValueError):
    """An input table lacks an expected column or sample-name pattern."""

    def __init__(self, message: str = "input table does not match the expected schema") -> None:
        super().__init__(message)


class InsufficientSampleError(ClaspError):
    """The moderated t-test cannot be fitted (too few complete proteins)."""

    def __init__(self, message: str = "at least two proteins with complete ratios needed") -> None:
        super().__init__(message)


class DegenerateCellError(ClaspError):
    """A candidate count-matrix cell is empty, so its FDR has no denominator."""

    def __init__(self, cell: tuple[int, int]) -> None:
        self.cell = cell
        super().__init__(f"candidate cell {cell} has zero occupancy; FDR undefined")
