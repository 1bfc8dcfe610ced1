import numpy as np
import pytest
import torch

from cgct import CPUConeProjector, ProjectionOperator, circular_geometry_3d
from cgct.images import DetectorInfo, VolumeInfo


class IdentityProjector(ProjectionOperator):
    """Projector stand-in that copies the volume into the projections.

    Only usable when the volume grid (D, H, W) equals (n_views, n_u, n_v).
    """

    backend = "identity"

    def _forward_3d(self, volume, geometry, out):
        out.copy_(volume)

    def _backward_3d(self, projections, geometry, out):
        out.copy_(projections)


@pytest.fixture
def identity_projector():
    return IdentityProjector()


@pytest.fixture
def four_view_geometry():
    return circular_geometry_3d(n_views=4, sid=100.0, sdd=150.0)


@pytest.fixture
def small_geometry():
    return circular_geometry_3d(n_views=12, sid=60.0, sdd=90.0)


@pytest.fixture
def volume_info():
    return VolumeInfo((8, 8, 8), spacing=1.0)


@pytest.fixture
def detector_info():
    return DetectorInfo(13, 13, du=1.0, dv=1.0)


@pytest.fixture
def cpu_projector(volume_info, detector_info):
    return CPUConeProjector(n_parts=4).configure(volume_info, detector_info)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
