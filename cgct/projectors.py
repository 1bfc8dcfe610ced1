"""Forward and back projection operators for cone beam CT.

This module defines the `ProjectionOperator` interface shared by every
projector backend, the multithreaded CPU and CUDA implementations of the
Siddon ray tracer, backend selection, and the adjoint consistency check.

Each backend's `forward` and `backward` are discrete adjoints of one another:
``<forward(v), p> == <v, backward(p)>`` up to floating-point rounding.
"""

import logging
import warnings
from abc import ABC, abstractmethod

import numba
import numpy as np
import torch

from .constants import _ADJOINT_RTOL, _DTYPE
from .exceptions import (
    BackendUnavailableError,
    ConfigurationError,
    OperatorContractViolation,
)
from .kernels import _cone_3d_forward_cpu, _cone_3d_backward_cpu
from .utils import (
    DeviceManager,
    TorchCUDABridge,
    _get_numba_external_stream_for,
    _fixed_point_scale,
    _grid_3d,
    dot,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Operator Interface
# ============================================================================

class ProjectionOperator(ABC):
    """Linear projector pair bound to a volume grid and a detector.

    Subclasses implement `_forward_3d` and `_backward_3d` for a single scalar
    volume; this class validates shapes, allocates outputs and loops over a
    leading component axis.

    Notes
    -----
    `configure` is the metadata step: it records the volume grid and detector
    and may be called again whenever either changes. `forward` and `backward`
    write into `out` when it is given and return it.
    """

    backend = None

    def __init__(self):
        self.volume_info = None
        self.detector_info = None

    def configure(self, volume_info, detector_info):
        """Bind the volume grid and detector the projector works on."""
        if min(volume_info.shape) < 2:
            raise ConfigurationError(
                f"Ray tracing needs at least two voxels along each axis, got {volume_info.shape}"
            )
        self.volume_info = volume_info
        self.detector_info = detector_info
        return self

    @property
    def device(self):
        """Device the projector computes on."""
        return torch.device("cpu")

    @property
    def supported_dtypes(self):
        return (torch.float32, torch.float64)

    def _check_configured(self):
        if self.volume_info is None or self.detector_info is None:
            raise ConfigurationError(f"{type(self).__name__} used before configure()")

    def _projection_shape(self, geometry):
        return (len(geometry), self.detector_info.n_u, self.detector_info.n_v)

    def forward(self, volume, geometry, out=None):
        """Project a volume of shape ([C,] D, H, W) to ([C,] n_views, n_u, n_v)."""
        self._check_configured()
        if tuple(volume.shape[-3:]) != self.volume_info.shape or volume.ndim not in (3, 4):
            raise ConfigurationError(
                f"Volume shape {tuple(volume.shape)} does not match the configured grid {self.volume_info.shape}"
            )
        out_shape = tuple(volume.shape[:-3]) + self._projection_shape(geometry)
        out = self._prepare_output(out, out_shape, volume)
        if volume.ndim == 4:
            for c in range(volume.shape[0]):
                self._forward_3d(volume[c], geometry, out[c])
        else:
            self._forward_3d(volume, geometry, out)
        return out

    def backward(self, projections, geometry, out=None):
        """Backproject ([C,] n_views, n_u, n_v) projections to a ([C,] D, H, W) volume."""
        self._check_configured()
        expected = self._projection_shape(geometry)
        if tuple(projections.shape[-3:]) != expected or projections.ndim not in (3, 4):
            raise ConfigurationError(
                f"Projection shape {tuple(projections.shape)} does not match the expected {expected}"
            )
        out_shape = tuple(projections.shape[:-3]) + self.volume_info.shape
        out = self._prepare_output(out, out_shape, projections)
        if projections.ndim == 4:
            for c in range(projections.shape[0]):
                self._backward_3d(projections[c], geometry, out[c])
        else:
            self._backward_3d(projections, geometry, out)
        return out

    @staticmethod
    def _prepare_output(out, shape, like):
        if out is None:
            return torch.zeros(shape, dtype=like.dtype, device=like.device)
        if tuple(out.shape) != shape:
            raise ConfigurationError(f"Output buffer has shape {tuple(out.shape)}, expected {shape}")
        return out

    @abstractmethod
    def _forward_3d(self, volume, geometry, out):
        """Write the projections of scalar `volume` into `out`."""

    @abstractmethod
    def _backward_3d(self, projections, geometry, out):
        """Write the backprojection of `projections` into `out`."""


# ============================================================================
# CPU Backend
# ============================================================================

class CPUConeProjector(ProjectionOperator):
    """Multithreaded Numba implementation of the cone beam Siddon projector.

    Parameters
    ----------
    n_parts : int, optional
        Number of partial volumes the backprojection accumulates into in
        parallel. Defaults to the Numba thread count. Results are bit-for-bit
        reproducible for a fixed `n_parts`.
    """

    backend = "cpu"

    def __init__(self, n_parts=None):
        super().__init__()
        if n_parts is not None and n_parts < 1:
            raise ConfigurationError(f"n_parts must be positive, got {n_parts}")
        self.n_parts = n_parts

    def _kernel_args(self, geometry):
        det = self.detector_info
        src_pos, det_center, det_u_vec, det_v_vec = geometry.ray_vectors()
        return (float(det.du), float(det.dv), src_pos, det_center, det_u_vec, det_v_vec,
                float(self.volume_info.spacing))

    @staticmethod
    def _writable_target(out):
        if out.device.type == "cpu" and out.is_contiguous():
            return out
        return torch.empty(out.shape, dtype=out.dtype)

    def _forward_3d(self, volume, geometry, out):
        vol = volume.detach().cpu().contiguous().numpy()
        target = self._writable_target(out)
        _cone_3d_forward_cpu(vol, target.detach().numpy(), *self._kernel_args(geometry))
        if target is not out:
            out.copy_(target)

    def _backward_3d(self, projections, geometry, out):
        sino = projections.detach().cpu().contiguous().numpy()
        n_views = sino.shape[0]
        n_parts = self.n_parts or numba.get_num_threads()
        n_parts = max(1, min(n_parts, n_views))
        parts = np.zeros((n_parts,) + self.volume_info.shape, dtype=sino.dtype)
        _cone_3d_backward_cpu(sino, parts, *self._kernel_args(geometry))
        out.copy_(torch.from_numpy(parts.sum(axis=0)))


# ============================================================================
# CUDA Backend
# ============================================================================

class CudaConeProjector(ProjectionOperator):
    """Numba CUDA implementation of the cone beam Siddon projector.

    Kernels run on the current PyTorch CUDA stream; tensors are shared with
    Numba without copies. Computation is float32 only. Backprojection
    accumulates in int64 fixed point, so it is reproducible bit for bit.

    Raises
    ------
    BackendUnavailableError
        If no CUDA device is reachable from both PyTorch and Numba.
    """

    backend = "cuda"

    def __init__(self, device=None):
        super().__init__()
        if not DeviceManager.cuda_available():
            raise BackendUnavailableError("CUDA projector requested but no CUDA device is available")
        from .kernels.cone_beam import _cone_3d_forward_kernel, _cone_3d_backward_kernel
        self._forward_kernel = _cone_3d_forward_kernel
        self._backward_kernel = _cone_3d_backward_kernel
        self._device = torch.device(device) if device is not None else torch.device("cuda")
        self._cached_geometry = None
        self._cached_count = None
        self._device_vectors = None

    @property
    def device(self):
        return self._device

    @property
    def supported_dtypes(self):
        return (torch.float32,)

    def _vectors(self, geometry):
        if self._cached_geometry is not geometry or self._cached_count != geometry.modified_count:
            self._device_vectors = tuple(
                torch.as_tensor(np.ascontiguousarray(arr), dtype=torch.float32, device=self._device)
                for arr in geometry.ray_vectors()
            )
            self._cached_geometry = geometry
            self._cached_count = geometry.modified_count
        return tuple(TorchCUDABridge.tensor_to_cuda_array(t) for t in self._device_vectors)

    def _launch_args(self, geometry):
        det = self.detector_info
        D, H, W = self.volume_info.shape
        grid, tpb = _grid_3d(len(geometry), det.n_u, det.n_v)
        cx, cy, cz = _DTYPE(W * 0.5), _DTYPE(H * 0.5), _DTYPE(D * 0.5)
        stream = _get_numba_external_stream_for(torch.cuda.current_stream(self._device))
        return grid, tpb, stream, (D, H, W), (cx, cy, cz)

    def _writable_target(self, out):
        if out.device == self._device and out.dtype == torch.float32 and out.is_contiguous():
            return out
        return torch.zeros(out.shape, dtype=torch.float32, device=self._device)

    def _forward_3d(self, volume, geometry, out):
        volume = DeviceManager.ensure_device(volume.detach(), self._device).to(dtype=torch.float32).contiguous()
        target = self._writable_target(out)
        det = self.detector_info
        grid, tpb, stream, (D, H, W), (cx, cy, cz) = self._launch_args(geometry)
        d_src_pos, d_det_center, d_det_u_vec, d_det_v_vec = self._vectors(geometry)

        self._forward_kernel[grid, tpb, stream](
            TorchCUDABridge.tensor_to_cuda_array(volume), W, H, D,
            TorchCUDABridge.tensor_to_cuda_array(target), len(geometry), det.n_u, det.n_v,
            _DTYPE(det.du), _DTYPE(det.dv), d_src_pos, d_det_center, d_det_u_vec, d_det_v_vec,
            cx, cy, cz, _DTYPE(self.volume_info.spacing)
        )
        if target is not out:
            out.copy_(target)

    def _backward_3d(self, projections, geometry, out):
        sino = DeviceManager.ensure_device(projections.detach(), self._device).to(dtype=torch.float32).contiguous()
        peak = float(sino.abs().max())
        if peak == 0.0:
            out.zero_()
            return
        scale = _fixed_point_scale(peak, sino.numel())
        acc = torch.zeros(out.shape, dtype=torch.int64, device=self._device)
        det = self.detector_info
        grid, tpb, stream, (D, H, W), (cx, cy, cz) = self._launch_args(geometry)
        d_src_pos, d_det_center, d_det_u_vec, d_det_v_vec = self._vectors(geometry)

        self._backward_kernel[grid, tpb, stream](
            TorchCUDABridge.tensor_to_cuda_array(sino), len(geometry), det.n_u, det.n_v,
            TorchCUDABridge.tensor_to_cuda_array(acc), W, H, D,
            _DTYPE(det.du), _DTYPE(det.dv), d_src_pos, d_det_center, d_det_u_vec, d_det_v_vec,
            cx, cy, cz, _DTYPE(self.volume_info.spacing), np.float64(scale)
        )
        out.copy_(acc.to(torch.float64).div_(scale))


# ============================================================================
# Backend Selection
# ============================================================================

_BACKENDS = {
    "cpu": CPUConeProjector,
    "cuda": CudaConeProjector,
}


def resolve_backend(backend="auto"):
    """Map a backend request to a concrete backend name.

    ``"auto"`` picks ``"cuda"`` when a CUDA device is available and ``"cpu"``
    otherwise.
    """
    if backend == "auto":
        return "cuda" if DeviceManager.cuda_available() else "cpu"
    if backend not in _BACKENDS:
        raise ConfigurationError(
            f"Unknown projector backend {backend!r}; expected 'auto' or one of {sorted(_BACKENDS)}"
        )
    return backend


def make_projector(backend="auto", **kwargs):
    """Instantiate the projector for `backend` (``"auto"``, ``"cpu"`` or ``"cuda"``)."""
    name = resolve_backend(backend)
    logger.debug("Using %s cone beam projector", name)
    return _BACKENDS[name](**kwargs)


# ============================================================================
# Adjoint Check
# ============================================================================

def check_adjoint(projector, geometry, rtol=_ADJOINT_RTOL, seed=0, raise_on_failure=True):
    """Check ``<forward(v), p> == <v, backward(p)>`` on random inputs.

    Parameters
    ----------
    projector : ProjectionOperator
        Configured projector to check.
    geometry : ProjectionGeometry
        Geometry the projector is applied with.
    rtol : float, optional
        Maximum accepted relative mismatch (default: 1e-3).
    seed : int, optional
        Seed of the random volume and projections (default: 0).
    raise_on_failure : bool, optional
        Raise `OperatorContractViolation` on failure (default) or only emit
        a `RuntimeWarning`.

    Returns
    -------
    float
        Relative mismatch between the two inner products.
    """
    projector._check_configured()
    generator = torch.Generator().manual_seed(seed)
    volume = torch.rand(projector.volume_info.shape, generator=generator, dtype=torch.float32)
    projections = torch.rand(projector._projection_shape(geometry), generator=generator, dtype=torch.float32)
    volume = volume.to(projector.device)
    projections = projections.to(projector.device)

    lhs = dot(projector.forward(volume, geometry), projections)
    rhs = dot(volume, projector.backward(projections, geometry))
    mismatch = abs(lhs - rhs) / max(abs(lhs), abs(rhs), np.finfo(np.float64).tiny)
    logger.debug("Adjoint check for %s projector: <Fv,p>=%g <v,Bp>=%g mismatch=%g",
                 projector.backend, lhs, rhs, mismatch)

    if mismatch > rtol:
        message = (f"{type(projector).__name__} forward/backward are not adjoint: "
                   f"<Fv,p>={lhs:.6g}, <v,Bp>={rhs:.6g}, relative mismatch {mismatch:.3g} > {rtol:.3g}")
        if raise_on_failure:
            raise OperatorContractViolation(message)
        warnings.warn(message, RuntimeWarning, stacklevel=2)
    return mismatch
