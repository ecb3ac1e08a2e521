"""Exception hierarchy for femgax.

Configuration problems are detected at setup and raised immediately. Solver
non-convergence is reported through result objects and only becomes an
exception when the caller asks for it.
"""


class FemgaxError(Exception):
    """Base class for all femgax errors."""


class ConfigurationError(FemgaxError, ValueError):
    """Invalid setup: unknown field or element type, inconsistent layout."""


class FieldSplitError(ConfigurationError):
    """A field-split tree whose leaves overlap or fail to cover the unknowns."""


class RecordingError(FemgaxError, RuntimeError):
    """Misuse of the process-wide differentiation recording."""


class AssemblyStateError(FemgaxError, RuntimeError):
    """A global system used out of its zero/add/close lifecycle order."""


class ConvergenceError(FemgaxError, RuntimeError):
    """Nonlinear iteration failed and the caller asked for a hard failure."""

    def __init__(self, message, result=None):
        super().__init__(message)
        self.result = result
