"""
dealer_optimiser/errors.py

Exception types raised by the allocation engine.
"""


class OptimiserError(Exception):
    """Base class for every error raised by the optimiser."""


class ValidationError(OptimiserError, ValueError):
    """Request is malformed or the target volume is not positive."""


class OptimizationFailure(OptimiserError, RuntimeError):
    """Unexpected failure while building the profit matrix or allocating."""


class PlanResolutionMiss(OptimiserError, LookupError):
    """No financing plan applies to an (institution, line, version) triple."""

    def __init__(self, institution: str, line: str, version: str = ""):
        self.institution = institution
        self.line = line
        self.version = version
        super().__init__(f"No applicable plan for {institution} - {line} {version}".rstrip())
