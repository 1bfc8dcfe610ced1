import numpy as np
import pytest
import torch

from cgct import (
    ConfigurationError,
    DisplacedDetectorWeighting,
    RegularizedNormalOperator,
    StatisticalWeighting,
    laplacian,
)
from cgct.utils import dot


def test_laplacian_of_constant_is_zero():
    assert torch.count_nonzero(laplacian(torch.full((3, 4, 5), 2.5))) == 0


def test_laplacian_one_dimensional_profile():
    x = torch.tensor([0.0, 1.0, 3.0], dtype=torch.float64).reshape(1, 1, 3)
    np.testing.assert_allclose(laplacian(x).flatten().numpy(), [-1.0, -1.0, 2.0])
    np.testing.assert_allclose(laplacian(x, spacing=2.0).flatten().numpy(), [-0.25, -0.25, 0.5])


def test_laplacian_is_symmetric_positive_semidefinite(rng):
    x = torch.from_numpy(rng.standard_normal((2, 4, 5, 6)))
    y = torch.from_numpy(rng.standard_normal((2, 4, 5, 6)))
    assert dot(laplacian(x, 0.7), y) == pytest.approx(dot(x, laplacian(y, 0.7)), rel=1e-12)

    energy = sum(float(torch.sum(torch.diff(x, dim=d) ** 2)) for d in (-3, -2, -1)) / 0.49
    assert dot(laplacian(x, 0.7), x) == pytest.approx(energy, rel=1e-12)


def test_laplacian_out_buffer(rng):
    x = torch.from_numpy(rng.standard_normal((3, 3, 3)))
    out = torch.full_like(x, 9.0)
    assert laplacian(x, out=out) is out
    torch.testing.assert_close(out, laplacian(x))


def _operator(cpu_projector, geometry, **kwargs):
    return RegularizedNormalOperator(cpu_projector, geometry, **kwargs)


def test_normal_operator_is_symmetric_and_psd(cpu_projector, small_geometry, rng):
    operator = _operator(
        cpu_projector, small_geometry,
        displaced_detector=DisplacedDetectorWeighting(cpu_projector.detector_info),
        statistical_weighting=StatisticalWeighting(
            torch.from_numpy(rng.uniform(0.5, 2.0, (len(small_geometry), 13, 13)))),
        gamma=0.3, tikhonov=0.1,
    )
    x = torch.from_numpy(rng.standard_normal((8, 8, 8)))
    y = torch.from_numpy(rng.standard_normal((8, 8, 8)))

    assert dot(operator(x), y) == pytest.approx(dot(x, operator(y)), rel=1e-9)
    assert dot(operator(x), x) >= 0.0
    assert operator.application_count == 3


def test_masked_operator_is_symmetric_on_support(cpu_projector, small_geometry, rng):
    mask = torch.zeros(8, 8, 8, dtype=torch.float64)
    mask[2:6, 1:7, 2:7] = 1.0
    operator = _operator(cpu_projector, small_geometry, mask=mask, gamma=0.1, tikhonov=0.3)
    x = torch.from_numpy(rng.standard_normal((8, 8, 8)))
    y = torch.from_numpy(rng.standard_normal((8, 8, 8)))

    ax = operator(x)
    assert dot(ax, y) == pytest.approx(dot(x, operator(y)), rel=1e-9)
    assert torch.count_nonzero(ax * (1.0 - mask)) == 0
    # values outside the support never reach the output
    torch.testing.assert_close(ax, operator(x * mask))


def test_tikhonov_only_on_zero_data(cpu_projector, small_geometry, rng):
    operator = _operator(cpu_projector, small_geometry, tikhonov=2.0)
    x = torch.from_numpy(rng.standard_normal((8, 8, 8)))
    expected = cpu_projector.backward(cpu_projector.forward(x, small_geometry), small_geometry) + 2.0 * x
    torch.testing.assert_close(operator(x), expected)


def test_operator_does_not_modify_input(cpu_projector, small_geometry, rng):
    operator = _operator(cpu_projector, small_geometry, gamma=1.0, tikhonov=1.0)
    x = torch.from_numpy(rng.standard_normal((8, 8, 8)))
    original = x.clone()
    operator(x)
    assert torch.equal(x, original)


def test_operator_freezes_geometry(cpu_projector, small_geometry):
    _operator(cpu_projector, small_geometry)
    assert small_geometry.frozen


def test_negative_regularization_rejected(cpu_projector, small_geometry):
    with pytest.raises(ConfigurationError):
        _operator(cpu_projector, small_geometry, gamma=-1.0)
    with pytest.raises(ConfigurationError):
        _operator(cpu_projector, small_geometry, tikhonov=-0.5)
