"""Volume and projection stack containers with grid metadata.

Volumes are laid out (D, H, W) and projection stacks (n_views, n_u, n_v),
each optionally preceded by a component axis for vector-valued data. The
volume is centered on the isocenter, so its origin follows from its shape
and voxel spacing.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple

import torch

from .exceptions import ConfigurationError


@dataclass(frozen=True)
class VolumeInfo:
    """Shape and spacing of a reconstruction grid."""

    shape: Tuple[int, int, int]
    spacing: float = 1.0
    components: Optional[int] = None

    def __post_init__(self):
        if len(self.shape) != 3 or any(int(s) < 1 for s in self.shape):
            raise ConfigurationError(f"Volume shape must be three positive sizes, got {self.shape}")
        if self.spacing <= 0:
            raise ConfigurationError(f"Voxel spacing must be positive, got {self.spacing}")
        object.__setattr__(self, "shape", tuple(int(s) for s in self.shape))

    @property
    def origin(self):
        """Physical (z, y, x) position of the first voxel center."""
        return tuple(-0.5 * (n - 1) * self.spacing for n in self.shape)


@dataclass(frozen=True)
class DetectorInfo:
    """Detector size in pixels and pixel spacing in physical units."""

    n_u: int
    n_v: int
    du: float = 1.0
    dv: float = 1.0

    def __post_init__(self):
        if self.n_u < 1 or self.n_v < 1:
            raise ConfigurationError(f"Detector size must be positive, got ({self.n_u}, {self.n_v})")
        if self.du <= 0 or self.dv <= 0:
            raise ConfigurationError(f"Pixel spacing must be positive, got ({self.du}, {self.dv})")

    def u_coordinates(self):
        """Physical u-coordinate of each pixel column center."""
        return (torch.arange(self.n_u, dtype=torch.float64) - (self.n_u - 1) * 0.5) * self.du


@dataclass
class Volume:
    """Volume tensor of shape (D, H, W) or (C, D, H, W) with its voxel spacing.

    Examples
    --------
    >>> vol = Volume(torch.zeros(64, 64, 64), spacing=0.5)
    >>> vol.info.origin
    (-15.75, -15.75, -15.75)
    """

    data: torch.Tensor
    spacing: float = 1.0

    def __post_init__(self):
        if self.data.ndim not in (3, 4):
            raise ConfigurationError(f"Volume must be 3D or 4D, got {self.data.ndim}D")

    @property
    def info(self):
        components = self.data.shape[0] if self.data.ndim == 4 else None
        return VolumeInfo(tuple(self.data.shape[-3:]), self.spacing, components)

    @property
    def origin(self):
        return self.info.origin


@dataclass
class ProjectionStack:
    """Projection tensor of shape (n_views, n_u, n_v) or (C, n_views, n_u, n_v)."""

    data: torch.Tensor
    spacing: Tuple[float, float] = field(default=(1.0, 1.0))

    def __post_init__(self):
        if self.data.ndim not in (3, 4):
            raise ConfigurationError(f"Projection stack must be 3D or 4D, got {self.data.ndim}D")

    @property
    def n_views(self):
        return self.data.shape[-3]

    @property
    def detector(self):
        n_u, n_v = self.data.shape[-2:]
        return DetectorInfo(int(n_u), int(n_v), float(self.spacing[0]), float(self.spacing[1]))


def as_volume(volume, spacing=1.0):
    """Wrap a bare tensor into a `Volume`; pass `Volume` instances through."""
    if isinstance(volume, Volume):
        return volume
    return Volume(torch.as_tensor(volume), spacing)


def as_projection_stack(projections, spacing=(1.0, 1.0)):
    """Wrap a bare tensor into a `ProjectionStack`; pass stacks through."""
    if isinstance(projections, ProjectionStack):
        return projections
    return ProjectionStack(torch.as_tensor(projections), spacing)
