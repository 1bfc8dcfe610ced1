"""Ray-tracing kernels for cone beam projections.

This subpackage contains the multithreaded CPU kernels for 3D cone beam
forward projection and backprojection. The CUDA kernels live in
`cgct.kernels.cone_beam` and are imported by the CUDA projector on demand.
"""

from .cone_beam_cpu import (
    _cone_3d_forward_cpu,
    _cone_3d_backward_cpu,
)

__all__ = [
    '_cone_3d_forward_cpu',
    '_cone_3d_backward_cpu',
]
