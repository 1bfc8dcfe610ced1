import math

import numpy as np
import pytest
import torch

from cgct import (
    CPUConeProjector,
    ConfigurationError,
    CudaConeProjector,
    OperatorContractViolation,
    check_adjoint,
    circular_geometry_3d,
    make_projector,
    spiral_geometry_3d,
)
from cgct.images import DetectorInfo, VolumeInfo
from cgct.utils import DeviceManager, _fixed_point_scale, dot

requires_cuda = pytest.mark.skipif(not DeviceManager.cuda_available(), reason="CUDA not available")


def test_cpu_adjoint_circular(cpu_projector, small_geometry):
    assert check_adjoint(cpu_projector, small_geometry) < 1e-4


def test_cpu_adjoint_spiral_with_rectangular_pixels():
    geometry = spiral_geometry_3d(n_views=10, sid=50.0, sdd=80.0, z_range=6.0, n_turns=1.0)
    projector = CPUConeProjector().configure(VolumeInfo((6, 9, 7), spacing=0.8),
                                             DetectorInfo(11, 9, du=1.3, dv=1.1))
    assert check_adjoint(projector, geometry, seed=7) < 1e-4


def test_cpu_adjoint_float64(cpu_projector, small_geometry, rng):
    volume = torch.from_numpy(rng.random((8, 8, 8)))
    projections = torch.from_numpy(rng.random((len(small_geometry), 13, 13)))
    lhs = dot(cpu_projector.forward(volume, small_geometry), projections)
    rhs = dot(volume, cpu_projector.backward(projections, small_geometry))
    assert lhs == pytest.approx(rhs, rel=1e-10)


def test_central_ray_of_uniform_volume_has_box_length():
    geometry = circular_geometry_3d(n_views=4, sid=60.0, sdd=90.0)
    projector = CPUConeProjector().configure(VolumeInfo((8, 8, 8)), DetectorInfo(13, 13))
    sino = projector.forward(torch.ones(8, 8, 8, dtype=torch.float64), geometry)
    np.testing.assert_allclose(sino[:, 6, 6].numpy(), 8.0, rtol=1e-9)


def test_backward_is_reproducible(cpu_projector, small_geometry, rng):
    projections = torch.from_numpy(rng.random((len(small_geometry), 13, 13)).astype(np.float32))
    first = cpu_projector.backward(projections, small_geometry)
    second = cpu_projector.backward(projections, small_geometry)
    assert torch.equal(first, second)

    other = CPUConeProjector(n_parts=1).configure(cpu_projector.volume_info, cpu_projector.detector_info)
    torch.testing.assert_close(other.backward(projections, small_geometry), first, rtol=1e-5, atol=1e-5)


def test_forward_writes_into_out(cpu_projector, small_geometry):
    out = torch.full((len(small_geometry), 13, 13), 7.0)
    result = cpu_projector.forward(torch.zeros(8, 8, 8), small_geometry, out=out)
    assert result is out
    assert torch.count_nonzero(out) == 0


def test_component_axis_is_projected_per_component(cpu_projector, small_geometry, rng):
    volume = torch.from_numpy(rng.random((2, 8, 8, 8)))
    stacked = cpu_projector.forward(volume, small_geometry)
    assert stacked.shape == (2, len(small_geometry), 13, 13)
    for c in range(2):
        torch.testing.assert_close(stacked[c], cpu_projector.forward(volume[c], small_geometry))


def test_shape_checks(cpu_projector, small_geometry):
    with pytest.raises(ConfigurationError):
        cpu_projector.forward(torch.zeros(8, 8, 7), small_geometry)
    with pytest.raises(ConfigurationError):
        cpu_projector.backward(torch.zeros(3, 13, 13), small_geometry)
    with pytest.raises(ConfigurationError):
        cpu_projector.forward(torch.zeros(8, 8, 8), small_geometry, out=torch.zeros(1, 13, 13))


def test_configure_requires_two_voxels_per_axis(detector_info):
    with pytest.raises(ConfigurationError):
        CPUConeProjector().configure(VolumeInfo((1, 8, 8)), detector_info)


def test_unconfigured_projector_raises(small_geometry):
    with pytest.raises(ConfigurationError):
        CPUConeProjector().forward(torch.zeros(8, 8, 8), small_geometry)


def test_make_projector():
    assert isinstance(make_projector("cpu"), CPUConeProjector)
    with pytest.raises(ConfigurationError):
        make_projector("opencl")


class _ScaledBackward(CPUConeProjector):
    def _backward_3d(self, projections, geometry, out):
        super()._backward_3d(projections, geometry, out)
        out.mul_(1.5)


def test_check_adjoint_detects_mismatch(volume_info, detector_info, small_geometry):
    projector = _ScaledBackward().configure(volume_info, detector_info)
    with pytest.raises(OperatorContractViolation):
        check_adjoint(projector, small_geometry)
    with pytest.warns(RuntimeWarning):
        mismatch = check_adjoint(projector, small_geometry, raise_on_failure=False)
    assert mismatch == pytest.approx(1.0 / 3.0, rel=1e-3)


def test_non_contiguous_inputs_are_accepted(cpu_projector, small_geometry, rng):
    volume = torch.from_numpy(rng.random((8, 8, 8)).astype(np.float32)).permute(2, 0, 1)
    assert not volume.is_contiguous()
    expected = cpu_projector.forward(volume.contiguous(), small_geometry)
    torch.testing.assert_close(cpu_projector.forward(volume, small_geometry), expected, rtol=0.0, atol=0.0)

    projections = expected.flip(1)
    assert not projections.is_contiguous()
    torch.testing.assert_close(cpu_projector.backward(projections, small_geometry),
                               cpu_projector.backward(projections.contiguous(), small_geometry),
                               rtol=0.0, atol=0.0)


def test_fixed_point_scale_bounds_accumulator():
    scale = _fixed_point_scale(3.5, 1000)
    assert math.log2(scale) == int(math.log2(scale))
    assert 3.5 * 1000 * 6.0 * scale <= 2.0 ** 62
    assert 3.5 * 1000 * 6.0 * scale * 2.0 > 2.0 ** 62
    with pytest.raises(ValueError):
        _fixed_point_scale(float("nan"), 10)


@requires_cuda
def test_cuda_matches_cpu(volume_info, detector_info, small_geometry, rng):
    cpu = CPUConeProjector().configure(volume_info, detector_info)
    gpu = CudaConeProjector().configure(volume_info, detector_info)
    volume = torch.from_numpy(rng.random((8, 8, 8)).astype(np.float32))

    expected = cpu.forward(volume, small_geometry)
    actual = gpu.forward(volume.cuda(), small_geometry).cpu()
    torch.testing.assert_close(actual, expected, rtol=1e-3, atol=1e-3)

    expected_bp = cpu.backward(expected, small_geometry)
    actual_bp = gpu.backward(expected.cuda(), small_geometry).cpu()
    torch.testing.assert_close(actual_bp, expected_bp, rtol=1e-3, atol=1e-2)


@requires_cuda
def test_cuda_adjoint(volume_info, detector_info, small_geometry):
    gpu = CudaConeProjector().configure(volume_info, detector_info)
    assert check_adjoint(gpu, small_geometry) < 1e-3


@requires_cuda
def test_cuda_backward_is_reproducible(volume_info, detector_info, small_geometry, rng):
    gpu = CudaConeProjector().configure(volume_info, detector_info)
    projections = torch.from_numpy(rng.standard_normal((12, 13, 13)).astype(np.float32)).cuda()
    first = gpu.backward(projections, small_geometry)
    second = gpu.backward(projections, small_geometry)
    assert torch.equal(first, second)
    assert torch.count_nonzero(first) > 0


@requires_cuda
def test_cuda_accepts_non_contiguous_inputs(volume_info, detector_info, small_geometry, rng):
    gpu = CudaConeProjector().configure(volume_info, detector_info)
    volume = torch.from_numpy(rng.random((8, 8, 8)).astype(np.float32)).cuda().transpose(0, 2)
    torch.testing.assert_close(gpu.forward(volume, small_geometry),
                               gpu.forward(volume.contiguous(), small_geometry), rtol=0.0, atol=0.0)


@requires_cuda
def test_cuda_backward_of_zero_projections(volume_info, detector_info, small_geometry):
    gpu = CudaConeProjector().configure(volume_info, detector_info)
    out = torch.full((8, 8, 8), 5.0, device="cuda")
    gpu.backward(torch.zeros(12, 13, 13, device="cuda"), small_geometry, out=out)
    assert torch.count_nonzero(out) == 0
