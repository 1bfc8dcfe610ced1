"""Reconstruction settings."""

import dataclasses
import numbers
from dataclasses import dataclass

from .constants import _TORCH_DTYPES
from .exceptions import ConfigurationError

_BACKEND_NAMES = ("auto", "cpu", "cuda")


@dataclass(frozen=True)
class ReconstructionConfig:
    """Settings of a conjugate gradient reconstruction.

    Parameters
    ----------
    iterations : int
        Maximum number of conjugate gradient iterations (default: 3).
    gamma : float
        Weight of the Laplacian smoothness regularization (default: 0.0).
    tikhonov : float
        Weight of the Tikhonov regularization (default: 0.0).
    enable_mask : bool
        Restrict the reconstruction to a support mask, which must then be
        passed to `run` (default: False).
    enable_weighting : bool
        Use inverse-covariance weights, which must then be passed to `run`
        (default: False).
    disable_displaced_detector : bool
        Skip the displaced detector correction (default: False).
    early_stop_threshold : float
        Stop once the squared norm of an update falls below this value; 0
        disables the early stop (default: 0.0).
    measure_times : bool
        Log the duration of the reconstruction (default: False).
    track_iteration_cost : bool
        Record the least-squares cost at every iteration (default: False).
    backend : str
        Projector backend: ``"auto"``, ``"cpu"`` or ``"cuda"`` (default:
        ``"auto"``).
    dtype : str
        Element type, ``"float32"`` or ``"float64"`` (default: ``"float32"``).
    progress : bool
        Show a progress bar over the iterations (default: False).
    """

    iterations: int = 3
    gamma: float = 0.0
    tikhonov: float = 0.0
    enable_mask: bool = False
    enable_weighting: bool = False
    disable_displaced_detector: bool = False
    early_stop_threshold: float = 0.0
    measure_times: bool = False
    track_iteration_cost: bool = False
    backend: str = "auto"
    dtype: str = "float32"
    progress: bool = False

    def validate(self):
        """Raise ConfigurationError if any setting is out of range."""
        if isinstance(self.iterations, bool) or not isinstance(self.iterations, int) or self.iterations < 0:
            raise ConfigurationError(f"iterations must be a non-negative integer, got {self.iterations!r}")
        for name in ("gamma", "tikhonov", "early_stop_threshold"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, numbers.Real):
                raise ConfigurationError(f"{name} must be a real number, got {value!r}")
            if not value >= 0:
                raise ConfigurationError(f"{name} must be non-negative, got {value!r}")
        if not isinstance(self.backend, str) or self.backend not in _BACKEND_NAMES:
            raise ConfigurationError(f"Unknown backend {self.backend!r}; expected one of {_BACKEND_NAMES}")
        if not isinstance(self.dtype, str) or self.dtype not in _TORCH_DTYPES:
            raise ConfigurationError(f"Unknown dtype {self.dtype!r}; expected one of {sorted(_TORCH_DTYPES)}")
        return self

    @property
    def torch_dtype(self):
        return _TORCH_DTYPES[self.dtype]

    def replace(self, **changes):
        """Return a validated copy with `changes` applied."""
        try:
            return dataclasses.replace(self, **changes).validate()
        except TypeError as e:
            raise ConfigurationError(str(e)) from e

    @classmethod
    def from_mapping(cls, mapping):
        """Build a validated config from a dict; unknown keys are rejected."""
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(mapping) - known)
        if unknown:
            raise ConfigurationError(f"Unknown reconstruction settings: {', '.join(unknown)}")
        return cls(**mapping).validate()
