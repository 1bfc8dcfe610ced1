"""Utility classes and helper functions for the cgct package.

This module provides device management, PyTorch-CUDA bridging, stream
caching, fixed-point scaling, CUDA grid computation and the inner
product shared by the operators and the solver.
"""

import math
import torch
from numba import cuda

from .constants import _FIXED_POINT_RANGE, _MAX_SAMPLE_WEIGHT, _TPB_3D


# ============================================================================
# Device Management Utilities
# ============================================================================

class DeviceManager:
    """Utilities for managing PyTorch tensor devices."""

    @staticmethod
    def ensure_device(tensor, device):
        """Return `tensor` on `device`, unchanged if already there."""
        if hasattr(tensor, "to") and tensor.device != device:
            return tensor.to(device)
        return tensor

    @staticmethod
    def cuda_available():
        """True when both PyTorch and Numba can reach a CUDA device."""
        return torch.cuda.is_available() and cuda.is_available()


# ============================================================================
# PyTorch-CUDA Bridge
# ============================================================================

class TorchCUDABridge:
    """Bridge between PyTorch tensors and Numba CUDA arrays."""

    @staticmethod
    def tensor_to_cuda_array(tensor):
        """Zero-copy view of a detached PyTorch CUDA tensor as a Numba array.

        Raises
        ------
        ValueError
            If `tensor` is not on a CUDA device.
        """
        if not tensor.is_cuda:
            raise ValueError("Tensor must be on CUDA device")
        return cuda.as_cuda_array(tensor.detach())


# ============================================================================
# Stream Management (cached external Numba stream)
# ============================================================================

_cached_stream_ptr = None
_cached_numba_stream = None


def _get_numba_external_stream_for(pt_stream=None):
    """Return a cached numba.cuda.external_stream for the current PyTorch CUDA stream.

    Caches by the underlying CUDA stream pointer to avoid repeated construction.
    """
    global _cached_stream_ptr, _cached_numba_stream
    if pt_stream is None:
        pt_stream = torch.cuda.current_stream()
    ptr = int(pt_stream.cuda_stream)
    if _cached_stream_ptr == ptr and _cached_numba_stream is not None:
        return _cached_numba_stream
    numba_stream = cuda.external_stream(pt_stream.cuda_stream)
    _cached_stream_ptr = ptr
    _cached_numba_stream = numba_stream
    return numba_stream


# ============================================================================
# Fixed-Point Accumulation
# ============================================================================

def _fixed_point_scale(peak, n_rays):
    """Power-of-two scale for int64 accumulation of a backprojection.

    Chosen so that no voxel sum of `n_rays` rays carrying values up to
    `peak` can overflow. Being a power of two, dividing by it is exact.

    Parameters
    ----------
    peak : float
        Largest absolute projection value.
    n_rays : int
        Number of rays traced.

    Returns
    -------
    float

    Raises
    ------
    ValueError
        If `peak` is not finite.
    """
    if not math.isfinite(peak):
        raise ValueError("Projections must be finite for fixed-point backprojection")
    bound = max(peak, 1e-30) * max(n_rays, 1) * _MAX_SAMPLE_WEIGHT
    return 2.0 ** math.floor(math.log2(_FIXED_POINT_RANGE / bound))


# ============================================================================
# CUDA Grid Computation
# ============================================================================

def _grid_3d(n1, n2, n3, tpb=_TPB_3D):
    """Compute 3D CUDA grid and block dimensions.

    Examples
    --------
    >>> grid, tpb = _grid_3d(360, 256, 256)
    >>> grid
    (45, 32, 32)
    """
    return (
        math.ceil(n1 / tpb[0]),
        math.ceil(n2 / tpb[1]),
        math.ceil(n3 / tpb[2]),
    ), tpb


# ============================================================================
# Inner Product
# ============================================================================

def dot(a, b):
    """Inner product over all elements, accumulated in float64.

    Sums across every axis, including a leading component axis, which makes
    it the dot product of vector-valued images.

    Returns
    -------
    float
    """
    return float(torch.sum(a * b, dtype=torch.float64))
