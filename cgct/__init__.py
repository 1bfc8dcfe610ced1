# cgct/__init__.py
"""cgct - Conjugate Gradient Cone Beam CT Reconstruction.

Iterative, regularized least-squares reconstruction of 3D volumes from cone
beam projections, with matrix-free normal operators built on interchangeable
Numba CPU and CUDA projectors and PyTorch tensors.
"""

from .config import ReconstructionConfig

from .exceptions import (
    CGCTError,
    ConfigurationError,
    BackendUnavailableError,
    DimensionMismatchError,
    OperatorContractViolation,
    OutOfRangeError,
)

from .geometry import (
    ProjectionGeometry,
    ConeBeamGeometry,
    circular_geometry_3d,
    spiral_geometry_3d,
    geometry_from_trajectory,
)

from .images import (
    VolumeInfo,
    DetectorInfo,
    Volume,
    ProjectionStack,
)

from .projectors import (
    ProjectionOperator,
    CPUConeProjector,
    CudaConeProjector,
    make_projector,
    check_adjoint,
)

from .weighting import (
    DisplacedDetectorWeighting,
    StatisticalWeighting,
)

from .operators import (
    RegularizedNormalOperator,
    laplacian,
)

from .solvers import (
    SolverStatus,
    SolverState,
    ConjugateGradientResult,
    ConjugateGradientSolver,
)

from .reconstruction import (
    ConjugateGradientReconstruction,
    ReconstructionResult,
)

__version__ = '0.1.0'

__all__ = [
    'ReconstructionConfig',
    'CGCTError',
    'ConfigurationError',
    'BackendUnavailableError',
    'DimensionMismatchError',
    'OperatorContractViolation',
    'OutOfRangeError',
    'ProjectionGeometry',
    'ConeBeamGeometry',
    'circular_geometry_3d',
    'spiral_geometry_3d',
    'geometry_from_trajectory',
    'VolumeInfo',
    'DetectorInfo',
    'Volume',
    'ProjectionStack',
    'ProjectionOperator',
    'CPUConeProjector',
    'CudaConeProjector',
    'make_projector',
    'check_adjoint',
    'DisplacedDetectorWeighting',
    'StatisticalWeighting',
    'RegularizedNormalOperator',
    'laplacian',
    'SolverStatus',
    'SolverState',
    'ConjugateGradientResult',
    'ConjugateGradientSolver',
    'ConjugateGradientReconstruction',
    'ReconstructionResult',
]
