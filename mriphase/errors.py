"""
Exception types raised by mriphase.

Validation problems surface immediately with the offending dimensions in the
message. Numerical edge cases inside the algorithms are substituted locally
(see ``NumericsConfig``) and never raise.
"""


class MriPhaseError(Exception):
    """Base class for all mriphase errors."""
    pass


class ShapeMismatchError(MriPhaseError, ValueError):
    """Raised when phase, magnitude, mask or buffers have incompatible shapes."""

    def __init__(self, message, *shapes):
        if shapes:
            message = f"{message}: " + " vs ".join(str(tuple(s)) for s in shapes)
        super().__init__(message)
        self.shapes = shapes


class DegenerateInputError(MriPhaseError, ValueError):
    """Raised when noise statistics are undefined (empty or constant-zero input)."""
    pass


class ConvergenceError(MriPhaseError, RuntimeError):
    """Raised in strict mode when an iterative refinement hits its iteration cap."""
    pass


class ConfigurationError(MriPhaseError):
    """Raised when configuration is invalid or missing required parameters."""
    pass


def check_shape(name, array, expected_shape):
    """Raise ShapeMismatchError unless ``array`` is None or has ``expected_shape``."""
    if array is None:
        return
    if tuple(array.shape) != tuple(expected_shape):
        raise ShapeMismatchError(f"{name} shape does not match phase", array.shape, expected_shape)
