"""Exception hierarchy for cgct.

Configuration problems are raised during the metadata phase, before any
numerical work starts. Numerical non-convergence is never an error: the
solver always returns the iterate it reached.
"""


class CGCTError(Exception):
    """Base class for all errors raised by cgct."""


class ConfigurationError(CGCTError, ValueError):
    """Invalid reconstruction parameters or inconsistent inputs."""


class BackendUnavailableError(ConfigurationError):
    """A projector backend was requested that cannot run on this machine."""


class DimensionMismatchError(CGCTError, ValueError):
    """Geometry view count disagrees with the projection stack's view axis."""


class OperatorContractViolation(CGCTError):
    """A forward/back projector pair failed the adjoint check."""


class OutOfRangeError(CGCTError, IndexError):
    """Projection matrix index outside the geometry."""
