"""Exception types raised by the analysis stages."""

from typing import Optional

import pandas as pd


class PipelineError(Exception):
    """Base class for analysis failures that must abort the run."""


class DataAlignmentError(PipelineError):
    """Expression matrix and sample metadata cannot be aligned."""


class NumericalDegeneracyError(PipelineError):
    """Exclusion of degenerate genes/samples left nothing to analyze."""


class SoftThresholdSelectionError(PipelineError):
    """No candidate soft-thresholding power reached the scale-free fit target.

    The evaluated fit table is attached so the operator can choose a power.
    """

    def __init__(self, message: str, fit_table: Optional[pd.DataFrame] = None):
        super().__init__(message)
        self.fit_table = fit_table
