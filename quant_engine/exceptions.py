"""
Error Taxonomy
==============
Exceptions raised by the quant engine.

Pure indicator and statistics functions raise InputValidationError or
ComputationError immediately. The orchestrator isolates every error except
ConfigurationError per symbol.
"""

from typing import Optional


class QuantEngineError(Exception):
    """Base class for all engine errors."""


class InputValidationError(QuantEngineError, ValueError):
    """Non-finite, out-of-range or insufficient input to a pure function."""


class ComputationError(QuantEngineError, ArithmeticError):
    """An internal invariant was violated (e.g. RSI outside [0, 100])."""


class UpstreamDataError(QuantEngineError):
    """Candle or funding data could not be fetched or was unusable."""

    def __init__(self, message: str, symbol: Optional[str] = None):
        super().__init__(message)
        self.symbol = symbol


class ConfigurationError(QuantEngineError, ValueError):
    """Invalid bootstrap configuration."""


__all__ = [
    'QuantEngineError',
    'InputValidationError',
    'ComputationError',
    'UpstreamDataError',
    'ConfigurationError',
]
