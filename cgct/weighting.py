"""Projection-domain weighting stages.

`DisplacedDetectorWeighting` compensates for detectors that are shifted
sideways so that only part of each ray family is measured twice, and
`StatisticalWeighting` applies inverse-covariance weights for generalized
least squares.
"""

import logging
import math

import numpy as np
import torch

from .constants import _CENTERED_DETECTOR_TOLERANCE
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


# ============================================================================
# Displaced Detector
# ============================================================================

class DisplacedDetectorWeighting:
    """Redundancy weights for a detector displaced from the rotation axis.

    For each view the detector columns are expressed relative to the
    projected rotation axis. Columns whose conjugate ray is also measured
    receive a smooth weight rising from 0 to 2 across the overlap region
    ``[-theta, theta]``, so that conjugate pairs always sum to 2; columns on
    the non-redundant side receive 2.

    Parameters
    ----------
    detector_info : DetectorInfo
        Detector size and pixel spacing.
    disable : bool, optional
        Bypass the correction entirely (default: False).

    Notes
    -----
    Weights are computed once per geometry and cached until the geometry's
    modification count changes. The weights have shape (n_views, n_u, 1) and
    broadcast over detector rows and a leading component axis.
    """

    def __init__(self, detector_info, disable=False):
        self.detector_info = detector_info
        self.disable = bool(disable)
        self._cache_key = None
        self._cached_weights = None

    def set_disable(self, disable):
        self.disable = bool(disable)

    def weights(self, geometry):
        """Return the (n_views, n_u, 1) float64 weights, or None for identity.

        Raises
        ------
        ConfigurationError
            If the projected rotation axis falls outside the detector for
            some view, cannot be located on it, or the displacement changes
            side between views.
        """
        if self.disable:
            return None
        key = (geometry, geometry.modified_count, self.detector_info)
        if key != self._cache_key:
            self._cached_weights = self._compute_weights(geometry)
            self._cache_key = key
        return self._cached_weights

    def is_identity(self, geometry):
        return self.weights(geometry) is None

    def _compute_weights(self, geometry):
        det = self.detector_info
        offsets = geometry.projected_axis_offsets()
        if offsets.size == 0:
            return None
        u = det.u_coordinates().numpy()
        # (n_views, n_u) column positions relative to the projected axis
        x = u[None, :] - offsets[:, None]
        inf_per_view = x[:, 0] - 0.5 * det.du
        sup_per_view = x[:, -1] + 0.5 * det.du

        if np.any(inf_per_view > 0.0) or np.any(sup_per_view < 0.0):
            raise ConfigurationError(
                "The projected rotation axis lies outside the detector for at least one view"
            )

        width = sup_per_view - inf_per_view
        shift = inf_per_view + sup_per_view
        displaced = np.abs(shift) >= _CENTERED_DETECTOR_TOLERANCE * width
        if not np.any(displaced):
            logger.debug("Detector is centered on the rotation axis, no displaced detector weighting")
            return None
        if np.any(shift[displaced] > 0.0) and np.any(shift[displaced] < 0.0):
            raise ConfigurationError("Detector displacement changes side between views")

        inf = float(inf_per_view.max())
        sup = float(sup_per_view.min())
        positive = bool(np.any(shift[displaced] > 0.0))
        theta = -inf if positive else sup
        if theta <= 0.0:
            raise ConfigurationError("Detector has no overlap region around the rotation axis")
        logger.debug("Displaced detector: %s side, overlap half-width %g",
                     "positive" if positive else "negative", theta)

        if positive:
            ramp = 2.0 * np.sin(math.pi / 4.0 * (x + theta) / theta) ** 2
            w = np.where(x > theta, 2.0, np.where(x < -theta, 0.0, ramp))
        else:
            ramp = 2.0 * np.sin(math.pi / 4.0 * (theta - x) / theta) ** 2
            w = np.where(x < -theta, 2.0, np.where(x > theta, 0.0, ramp))
        return torch.from_numpy(np.ascontiguousarray(w[:, :, None]))

    def __call__(self, projections, geometry, out=None):
        """Weight `projections`, writing into `out` when given.

        With identity weighting the input is returned as is (or copied into
        `out`).
        """
        w = self.weights(geometry)
        if w is None:
            # identity
            if out is None or out is projections:
                return projections
            return out.copy_(projections)
        if w.shape[0] != projections.shape[-3]:
            raise ConfigurationError(
                f"Geometry has {w.shape[0]} views but projections have {projections.shape[-3]}"
            )
        w = w.to(device=projections.device, dtype=projections.dtype)
        return torch.mul(projections, w, out=out) if out is not None else projections * w


# ============================================================================
# Statistical Weighting
# ============================================================================

class StatisticalWeighting:
    """Inverse-covariance weighting ``W * p`` of projection data.

    Parameters
    ----------
    weights : torch.Tensor
        Either diagonal weights with the shape of the projections, or
        per-pixel (C, C, n_views, n_u, n_v) blocks for projections with a
        component axis of size C.
    """

    def __init__(self, weights):
        self.weights = weights

    @property
    def is_block(self):
        return self.weights.ndim == 5

    def check_shape(self, projection_shape):
        """Raise ConfigurationError unless the weights fit `projection_shape`."""
        projection_shape = tuple(projection_shape)
        if self.is_block:
            n_comp = projection_shape[0] if len(projection_shape) == 4 else None
            expected = (n_comp, n_comp) + projection_shape[1:]
            ok = n_comp is not None and tuple(self.weights.shape) == expected
        else:
            ok = tuple(self.weights.shape) == projection_shape
        if not ok:
            raise ConfigurationError(
                f"Weights of shape {tuple(self.weights.shape)} do not match projections of shape {projection_shape}"
            )

    def to(self, device=None, dtype=None):
        return StatisticalWeighting(self.weights.to(device=device, dtype=dtype))

    def __call__(self, projections, out=None):
        if self.is_block:
            result = torch.einsum('ij...,j...->i...', self.weights, projections)
            return out.copy_(result) if out is not None else result
        if out is not None:
            return torch.mul(projections, self.weights, out=out)
        return projections * self.weights
