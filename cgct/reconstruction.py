"""Conjugate gradient cone beam reconstruction.

`ConjugateGradientReconstruction` wires the projector, the weighting stages
and the regularized normal operator together, builds the right-hand side
``B = S * Backward(W * D(p))`` from the measured projections `p` and runs the
conjugate gradient solver on ``A x = B``.

Examples
--------
>>> geometry = circular_geometry_3d(n_views=180, sid=600.0, sdd=900.0)
>>> recon = ConjugateGradientReconstruction().configure(iterations=10, tikhonov=0.1)
>>> result = recon.run(geometry, ProjectionStack(sino, spacing=(1.0, 1.0)), torch.zeros(64, 64, 64))
>>> result.volume.shape
torch.Size([64, 64, 64])
"""

import logging
import time
from dataclasses import dataclass
from typing import List

import torch

from .config import ReconstructionConfig
from .exceptions import ConfigurationError, DimensionMismatchError
from .images import VolumeInfo, as_projection_stack, as_volume
from .operators import RegularizedNormalOperator
from .projectors import make_projector
from .solvers import ConjugateGradientSolver
from .utils import dot
from .weighting import DisplacedDetectorWeighting, StatisticalWeighting

logger = logging.getLogger(__name__)


@dataclass
class ReconstructionResult:
    """Reconstructed volume and run statistics.

    `iteration_costs` is empty unless cost tracking is enabled, and
    `elapsed_time` is measured in seconds.
    """

    volume: torch.Tensor
    iteration_costs: List[float]
    elapsed_time: float
    iterations: int
    stop_reason: str


class ConjugateGradientReconstruction:
    """Iterative regularized least-squares cone beam reconstruction.

    Parameters
    ----------
    config : ReconstructionConfig, optional
        Initial settings; defaults to `ReconstructionConfig()`.
    projector : ProjectionOperator, optional
        Projector to use instead of the one selected by ``config.backend``.

    Attributes
    ----------
    callback : callable or None
        Passed to the solver as ``callback(iteration, x)``.
    output_information : VolumeInfo or None
        Grid of the output volume, set by `update_output_information`.
    """

    def __init__(self, config=None, projector=None):
        self._custom_projector = projector
        self.config = ReconstructionConfig() if config is None else config.validate()
        self.projector = self._select_projector(self.config)
        self.callback = None
        self.output_information = None

    def _select_projector(self, config):
        if self._custom_projector is not None:
            projector = self._custom_projector
        else:
            projector = make_projector(config.backend)
        if config.torch_dtype not in projector.supported_dtypes:
            raise ConfigurationError(
                f"dtype {config.dtype} is not supported by the {projector.backend} projector"
            )
        return projector

    def configure(self, **params):
        """Apply new settings; on error the current settings are kept.

        Returns
        -------
        ConjugateGradientReconstruction
            `self`, to allow chaining.
        """
        config = self.config.replace(**params)
        projector = self.projector
        if config.backend != self.config.backend or config.dtype != self.config.dtype:
            projector = self._select_projector(config)
        self.config, self.projector = config, projector
        return self

    def update_output_information(self, geometry, volume, projections, mask=None, weights=None):
        """Validate the inputs against the settings and return the output grid.

        No pixel data is read or written.

        Raises
        ------
        DimensionMismatchError
            If the geometry and the projections have different view counts.
        ConfigurationError
            For any other inconsistency between inputs and settings.
        """
        volume = as_volume(volume)
        projections = as_projection_stack(projections)
        if geometry.dimension != 3:
            raise ConfigurationError(f"Cone beam reconstruction needs a 3D geometry, got {geometry.dimension}D")
        if len(geometry) != projections.n_views:
            raise DimensionMismatchError(
                f"Geometry has {len(geometry)} views but projections have {projections.n_views}"
            )
        if len(geometry) == 0:
            raise ConfigurationError("Geometry contains no views")
        if volume.data.ndim != projections.data.ndim or (
                volume.data.ndim == 4 and volume.data.shape[0] != projections.data.shape[0]):
            raise ConfigurationError(
                f"Volume {tuple(volume.data.shape)} and projections {tuple(projections.data.shape)} "
                "have different component axes"
            )

        if self.config.enable_mask:
            if mask is None:
                raise ConfigurationError("enable_mask is set but no support mask was given")
            if tuple(mask.shape) != tuple(volume.data.shape[-3:]):
                raise ConfigurationError(
                    f"Mask of shape {tuple(mask.shape)} does not match the volume grid {tuple(volume.data.shape[-3:])}"
                )
        elif mask is not None:
            logger.debug("Support mask ignored because enable_mask is off")

        if self.config.enable_weighting:
            if weights is None:
                raise ConfigurationError("enable_weighting is set but no weights were given")
            StatisticalWeighting(weights).check_shape(projections.data.shape)
        elif weights is not None:
            logger.debug("Statistical weights ignored because enable_weighting is off")

        self.output_information = volume.info
        return self.output_information

    def run(self, geometry, projections, initial_volume, mask=None, weights=None):
        """Reconstruct a volume from `projections`, starting at `initial_volume`.

        Parameters
        ----------
        geometry : ProjectionGeometry
            One 3x4 matrix per view; frozen by this call.
        projections : ProjectionStack or torch.Tensor
            Measured projections, (n_views, n_u, n_v) or with a leading
            component axis. Bare tensors get unit pixel spacing.
        initial_volume : Volume or torch.Tensor
            First iterate; also defines the output grid and voxel spacing.
        mask : torch.Tensor, optional
            Support mask on the volume grid, required with ``enable_mask``.
        weights : torch.Tensor, optional
            Inverse-covariance weights, required with ``enable_weighting``.

        Returns
        -------
        ReconstructionResult
        """
        config = self.config
        info = self.update_output_information(geometry, initial_volume, projections, mask, weights)
        volume = as_volume(initial_volume)
        stack = as_projection_stack(projections)

        start = time.perf_counter()
        if config.measure_times:
            logger.info("Starting ConjugateGradient")

        projector = self.projector
        device, dtype = projector.device, config.torch_dtype
        projector.configure(VolumeInfo(info.shape, info.spacing), stack.detector)

        support = mask.to(device=device, dtype=dtype) if config.enable_mask else None
        statistical = StatisticalWeighting(weights).to(device=device, dtype=dtype) if config.enable_weighting else None
        displaced = DisplacedDetectorWeighting(stack.detector, disable=config.disable_displaced_detector)
        operator = RegularizedNormalOperator(
            projector, geometry,
            displaced_detector=displaced,
            statistical_weighting=statistical,
            mask=support,
            gamma=config.gamma,
            tikhonov=config.tikhonov,
        )

        projections = stack.data.to(device=device, dtype=dtype)
        weighted = operator.weight_projections(projections.clone())
        cost_constant = 0.0
        if config.track_iteration_cost:
            cost_constant = 0.5 * dot(weighted, projections)
        del projections

        b = projector.backward(weighted, geometry)
        del weighted
        x0 = volume.data.to(device=device, dtype=dtype)
        if support is not None:
            b.mul_(support)
            x0 = x0 * support

        solver = ConjugateGradientSolver(
            operator,
            iterations=config.iterations,
            early_stop_threshold=config.early_stop_threshold,
            track_cost=config.track_iteration_cost,
            cost_constant=cost_constant,
            callback=self.callback,
            progress=config.progress,
        )
        outcome = solver.solve(b, x0)
        del b

        result_volume = outcome.x
        if support is not None:
            result_volume.mul_(support)

        elapsed = time.perf_counter() - start
        if config.measure_times:
            logger.info("ConjugateGradient took %.3f s", elapsed)
        logger.debug("ConjugateGradient stopped (%s) after %d iterations and %d operator applications",
                     outcome.stop_reason, outcome.iterations, operator.application_count)

        return ReconstructionResult(
            volume=result_volume,
            iteration_costs=outcome.costs,
            elapsed_time=elapsed,
            iterations=outcome.iterations,
            stop_reason=outcome.stop_reason,
        )
