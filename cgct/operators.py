"""Normal-equation operator of regularized least-squares reconstruction.

The operator applied by the conjugate gradient solver is

    A(x) = S * (Backward(W * D(Forward(S * x))) + gamma * L(S * x) + tikhonov * S * x)

with `D` the displaced detector weighting, `W` the statistical weighting,
`S` the support mask and `L` the negative discrete Laplacian. It is never
materialized; every application runs one forward and one back projection.
"""

import logging

import torch

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def laplacian(x, spacing=1.0, out=None):
    """Apply ``G^T G / h^2`` where G takes forward differences along each axis.

    This is the negative discrete Laplacian with Neumann boundary conditions,
    a symmetric positive semi-definite operator. It acts on the last three
    axes, so a leading component axis is processed component-wise. Axes of
    size one contribute nothing.

    Parameters
    ----------
    x : torch.Tensor
        Volume of shape (D, H, W) or (C, D, H, W).
    spacing : float, optional
        Voxel spacing `h` (default: 1.0).
    out : torch.Tensor, optional
        Buffer receiving the result. Must not alias `x`.

    Returns
    -------
    torch.Tensor
    """
    result = out.zero_() if out is not None else torch.zeros_like(x)
    inv_h2 = 1.0 / (spacing * spacing)
    for axis in (-3, -2, -1):
        n = x.shape[axis]
        if n < 2:
            continue
        diff = torch.diff(x, dim=axis).mul_(inv_h2)
        result.narrow(axis, 0, n - 1).sub_(diff)
        result.narrow(axis, 1, n - 1).add_(diff)
    return result


class RegularizedNormalOperator:
    """Matrix-free normal operator ``A`` of the reconstruction problem.

    Parameters
    ----------
    projector : ProjectionOperator
        Configured projector pair.
    geometry : ProjectionGeometry
        Acquisition geometry. It is frozen when bound here and shared
        read-only by every stage.
    displaced_detector : DisplacedDetectorWeighting, optional
        Applied to forward projections before statistical weighting.
    statistical_weighting : StatisticalWeighting, optional
        Inverse-covariance weights; omitted stage when None.
    mask : torch.Tensor, optional
        Support mask of shape (D, H, W). It multiplies both the operator
        input and the whole output, so search directions stay inside the
        support.
    gamma : float, optional
        Weight of the Laplacian smoothness term (default: 0.0).
    tikhonov : float, optional
        Weight of the Tikhonov term (default: 0.0).

    Attributes
    ----------
    application_count : int
        Number of times the operator has been applied.
    """

    def __init__(self, projector, geometry, displaced_detector=None,
                 statistical_weighting=None, mask=None, gamma=0.0, tikhonov=0.0):
        if gamma < 0 or tikhonov < 0:
            raise ConfigurationError(
                f"Regularization weights must be non-negative, got gamma={gamma}, tikhonov={tikhonov}"
            )
        geometry.freeze()
        self.projector = projector
        self.geometry = geometry
        self.displaced_detector = displaced_detector
        self.statistical_weighting = statistical_weighting
        self.mask = mask
        self.gamma = float(gamma)
        self.tikhonov = float(tikhonov)
        self.application_count = 0
        logger.debug("Normal operator over %d views: gamma=%g, tikhonov=%g, mask=%s, weighting=%s",
                     len(geometry), self.gamma, self.tikhonov, mask is not None,
                     statistical_weighting is not None)

    @property
    def spacing(self):
        return self.projector.volume_info.spacing

    def weight_projections(self, projections):
        """Apply ``W * D`` in place to a freshly computed projection buffer."""
        if self.displaced_detector is not None:
            projections = self.displaced_detector(projections, self.geometry, out=projections)
        if self.statistical_weighting is not None:
            projections = self.statistical_weighting(projections, out=projections)
        return projections

    def __call__(self, x):
        return self.apply(x)

    def apply(self, x):
        """Return ``A(x)`` in a new tensor; `x` is not modified."""
        self.application_count += 1
        xs = x * self.mask if self.mask is not None else x
        projections = self.weight_projections(self.projector.forward(xs, self.geometry))
        result = self.projector.backward(projections, self.geometry)
        del projections

        if self.gamma > 0.0:
            result.add_(laplacian(xs, self.spacing), alpha=self.gamma)
        if self.tikhonov > 0.0:
            result.add_(xs, alpha=self.tikhonov)
        if self.mask is not None:
            result.mul_(self.mask)
        return result
