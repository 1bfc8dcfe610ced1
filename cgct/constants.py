"""Global constants and configuration for the cgct package.

This module defines core constants used throughout cgct, including data
types, JIT decorators for the CPU and CUDA ray tracers, CUDA thread block
configurations, and numerical tolerances.
"""

import numpy as np
import torch
from numba import cuda, njit

# ---------------------------------------------------------------------------
# Data Types and Numerical Constants
# ---------------------------------------------------------------------------

_DTYPE = np.float32
"""Default data type for numerical computations (numpy.float32)."""

_INF = _DTYPE(np.inf)
"""Floating-point infinity in default data type."""

_EPSILON = _DTYPE(1e-6)
"""Small epsilon value for numerical comparisons to avoid division by zero."""

_TORCH_DTYPES = {
    "float32": torch.float32,
    "float64": torch.float64,
}
"""Element-type tags accepted by the reconstruction configuration."""

_CENTERED_DETECTOR_TOLERANCE = 0.1
"""Fraction of the detector width below which a displacement is ignored."""

_ADJOINT_RTOL = 1e-3
"""Default relative tolerance of the projector adjoint check."""

# ---------------------------------------------------------------------------
# CUDA Thread Block Configurations
# ---------------------------------------------------------------------------

# 3D blocks: 8x8x8 = 512 threads per block for cone beam kernels
# Smaller per-dimension size accommodates higher register usage in 3D algorithms
_TPB_3D = (8, 8, 8)
"""CUDA threads-per-block for 3D cone beam kernels: (8, 8, 8) = 512 threads."""

# ---------------------------------------------------------------------------
# JIT Decorators
# ---------------------------------------------------------------------------

# CUDA fastmath optimization: trades a little precision for ray-tracing speed.
# CPU and CUDA results agree within tolerance, not bit for bit.
_FASTMATH_DECORATOR = cuda.jit(cache=True, fastmath=True)
"""Numba CUDA JIT decorator with fastmath enabled for projection kernels."""

_PARALLEL_DECORATOR = njit(cache=True, parallel=True)
"""Numba CPU JIT decorator for the multithreaded ray-tracing drivers."""

_SERIAL_DECORATOR = njit(cache=True)
"""Numba CPU JIT decorator for per-ray helpers called from the drivers."""

_DEVICE_DECORATOR = cuda.jit(device=True, cache=True, fastmath=True)
"""Numba CUDA JIT decorator for device helpers called from the kernels."""

# ---------------------------------------------------------------------------
# Fixed-Point Backprojection
# ---------------------------------------------------------------------------

_FIXED_POINT_RANGE = 2.0 ** 62
"""Largest magnitude an int64 voxel accumulator may reach on the CUDA path."""

_MAX_SAMPLE_WEIGHT = 6.0
"""Upper bound, in voxels, of the weight one ray gives to one voxel (3*sqrt(3)
with clamped boundary samples)."""
