"""Exception hierarchy for proposal generation.

Configuration and shape problems are programming errors and surface when a
generator or layer is set up. Numerical anomalies in the raw network outputs
fail the forward call that observed them.
"""

from __future__ import annotations

__all__ = ["ConfigurationError", "NumericalError", "ProposalError", "ShapeMismatchError"]


class ProposalError(Exception):
    """Base class for all proposal generation failures."""


class ConfigurationError(ProposalError, ValueError):
    """Raised when a configuration value is outside its valid range."""


class ShapeMismatchError(ProposalError, ValueError):
    """Raised when score, delta, anchor or image tensors disagree in shape."""


class NumericalError(ProposalError, ArithmeticError):
    """Raised when NaN or Inf values reach the decode step."""
