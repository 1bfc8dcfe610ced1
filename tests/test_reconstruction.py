import logging

import numpy as np
import pytest
import torch

from cgct import (
    CPUConeProjector,
    ConfigurationError,
    ConjugateGradientReconstruction,
    DimensionMismatchError,
    ProjectionStack,
    ReconstructionConfig,
    Volume,
    VolumeInfo,
    circular_geometry_3d,
    laplacian,
)
from cgct.utils import dot

from conftest import IdentityProjector

SHAPE = (4, 5, 6)


def _identity_reco(**params):
    params.setdefault("dtype", "float64")
    return ConjugateGradientReconstruction(projector=IdentityProjector()).configure(**params)


def test_four_view_uniform_volume(four_view_geometry):
    projections = torch.ones(SHAPE, dtype=torch.float64)
    recon = _identity_reco(iterations=1)
    result = recon.run(four_view_geometry, projections, torch.zeros(SHAPE, dtype=torch.float64))
    torch.testing.assert_close(result.volume, torch.ones(SHAPE, dtype=torch.float64))
    assert result.iterations == 1
    assert result.iteration_costs == []


def test_four_view_first_iterate_closed_form(four_view_geometry, rng):
    projections = torch.from_numpy(rng.random(SHAPE))
    gamma = 0.5
    recon = _identity_reco(iterations=1, gamma=gamma)
    result = recon.run(four_view_geometry, projections, torch.zeros(SHAPE, dtype=torch.float64))

    b = projections
    ab = b + gamma * laplacian(b)
    expected = dot(b, b) / dot(b, ab) * b
    torch.testing.assert_close(result.volume, expected)


def test_pure_tikhonov_reconstruction(four_view_geometry, rng):
    projections = torch.from_numpy(rng.random(SHAPE))
    recon = _identity_reco(iterations=1, tikhonov=3.0)
    result = recon.run(four_view_geometry, projections, torch.zeros(SHAPE, dtype=torch.float64))
    torch.testing.assert_close(result.volume, projections / 4.0)


def test_statistical_weights(four_view_geometry, rng):
    projections = torch.from_numpy(rng.random(SHAPE))
    weights = torch.full(SHAPE, 2.0, dtype=torch.float64)
    recon = _identity_reco(iterations=1, enable_weighting=True)
    result = recon.run(four_view_geometry, projections, torch.zeros(SHAPE, dtype=torch.float64),
                       weights=weights)
    torch.testing.assert_close(result.volume, projections)


def test_block_weights_on_component_data(four_view_geometry, rng):
    projections = torch.from_numpy(rng.random((2,) + SHAPE))
    blocks = torch.eye(2, dtype=torch.float64)[:, :, None, None, None].expand((2, 2) + SHAPE).clone()
    recon = _identity_reco(iterations=2, enable_weighting=True)
    result = recon.run(four_view_geometry, projections, torch.zeros((2,) + SHAPE, dtype=torch.float64),
                       weights=blocks)
    assert result.volume.shape == (2,) + SHAPE
    torch.testing.assert_close(result.volume, projections)


def test_mask_idempotence(four_view_geometry, rng):
    projections = torch.from_numpy(rng.random(SHAPE))
    mask = torch.zeros(SHAPE, dtype=torch.float64)
    mask[1:3, 1:4, 2:5] = 1.0
    recon = _identity_reco(iterations=3, gamma=0.2, enable_mask=True)
    result = recon.run(four_view_geometry, projections, torch.zeros(SHAPE, dtype=torch.float64), mask=mask)

    assert torch.equal(result.volume * mask, result.volume)
    assert torch.count_nonzero(result.volume * (1.0 - mask)) == 0
    assert torch.count_nonzero(result.volume) > 0


def test_masked_reconstruction_matches_support_restricted_solution(four_view_geometry, rng):
    projections = torch.from_numpy(rng.random(SHAPE))
    mask = torch.zeros(SHAPE, dtype=torch.float64)
    mask[1:3, 1:4, 2:5] = 1.0
    gamma = 0.5
    leaks = []
    recon = _identity_reco(iterations=40, gamma=gamma, enable_mask=True)
    recon.callback = lambda it, x: leaks.append(float((x * (1.0 - mask)).abs().max()))
    result = recon.run(four_view_geometry, projections, torch.zeros(SHAPE, dtype=torch.float64), mask=mask)

    assert leaks and max(leaks) == 0.0

    # dense (I + gamma * L) restricted to the support rows and columns
    support = mask.flatten().nonzero().flatten()
    columns = []
    for index in support.tolist():
        unit = torch.zeros(mask.numel(), dtype=torch.float64)
        unit[index] = 1.0
        unit = unit.reshape(SHAPE)
        columns.append((unit + gamma * laplacian(unit)).flatten()[support])
    system = torch.stack(columns, dim=1)
    expected = torch.zeros(mask.numel(), dtype=torch.float64)
    expected[support] = torch.linalg.solve(system, projections.flatten()[support])

    torch.testing.assert_close(result.volume, expected.reshape(SHAPE), rtol=0.0, atol=1e-8)


def test_repeated_runs_share_no_buffers(four_view_geometry, rng):
    projections = torch.from_numpy(rng.random(SHAPE))
    mask = torch.zeros(SHAPE, dtype=torch.float64)
    mask[1:3, 1:4, 2:5] = 1.0
    initial = torch.from_numpy(rng.random(SHAPE))
    original = initial.clone()
    recon = _identity_reco(iterations=4, gamma=0.3, enable_mask=True, track_iteration_cost=True)
    attributes = set(vars(recon))

    first = recon.run(four_view_geometry, projections, initial, mask=mask)
    second = recon.run(four_view_geometry, projections, initial, mask=mask)

    assert torch.equal(first.volume, second.volume)
    assert first.iteration_costs == second.iteration_costs
    assert first.volume is not second.volume
    assert set(vars(recon)) == attributes
    assert torch.equal(initial, original)

    # values of the initial volume outside the support do not matter
    outside = initial + 10.0 * (1.0 - mask)
    third = recon.run(four_view_geometry, projections, outside, mask=mask)
    assert torch.equal(third.volume, first.volume)


def test_cost_tracking(four_view_geometry, rng):
    projections = torch.from_numpy(rng.random(SHAPE))
    recon = _identity_reco(iterations=2, track_iteration_cost=True)
    result = recon.run(four_view_geometry, projections, torch.zeros(SHAPE, dtype=torch.float64))
    # identity operator: exact after one step, then the residual vanishes
    assert result.iteration_costs[0] == pytest.approx(0.5 * dot(projections, projections))
    assert result.stop_reason == "converged"


def test_callback_and_timing_log(four_view_geometry, caplog):
    seen = []
    recon = _identity_reco(iterations=1, measure_times=True)
    recon.callback = lambda it, x: seen.append(it)
    with caplog.at_level(logging.INFO, logger="cgct"):
        result = recon.run(four_view_geometry, torch.ones(SHAPE, dtype=torch.float64),
                           torch.zeros(SHAPE, dtype=torch.float64))
    assert seen == [1]
    assert "Starting ConjugateGradient" in caplog.text
    assert "ConjugateGradient took" in caplog.text
    assert result.elapsed_time >= 0.0


def test_run_freezes_geometry(four_view_geometry):
    _identity_reco().run(four_view_geometry, torch.ones(SHAPE, dtype=torch.float64),
                         torch.zeros(SHAPE, dtype=torch.float64))
    assert four_view_geometry.frozen


def test_update_output_information(four_view_geometry):
    recon = _identity_reco()
    volume = Volume(torch.zeros(SHAPE), spacing=0.5)
    info = recon.update_output_information(four_view_geometry, volume, torch.ones(SHAPE))
    assert info == VolumeInfo(SHAPE, spacing=0.5)
    assert recon.output_information == info
    assert torch.count_nonzero(volume.data) == 0
    assert not four_view_geometry.frozen


def test_view_count_mismatch(four_view_geometry):
    recon = _identity_reco()
    with pytest.raises(DimensionMismatchError):
        recon.run(four_view_geometry, torch.ones(3, 5, 6), torch.zeros(SHAPE))
    with pytest.raises(ValueError):
        recon.update_output_information(four_view_geometry, torch.zeros(SHAPE), torch.ones(5, 5, 6))


def test_mask_and_weights_flags_require_data(four_view_geometry):
    args = (four_view_geometry, torch.zeros(SHAPE), torch.ones(SHAPE))
    with pytest.raises(ConfigurationError, match="mask"):
        _identity_reco(enable_mask=True).update_output_information(*args)
    with pytest.raises(ConfigurationError):
        _identity_reco(enable_mask=True).update_output_information(*args, mask=torch.ones(4, 5, 5))
    with pytest.raises(ConfigurationError, match="weights"):
        _identity_reco(enable_weighting=True).update_output_information(*args)
    with pytest.raises(ConfigurationError):
        _identity_reco(enable_weighting=True).update_output_information(*args, weights=torch.ones(4, 5, 5))


def test_configure_is_atomic():
    recon = _identity_reco(iterations=7)
    with pytest.raises(ConfigurationError):
        recon.configure(iterations=2, gamma=-1.0)
    assert recon.config.iterations == 7
    assert recon.config.gamma == 0.0
    with pytest.raises(ConfigurationError):
        recon.configure(unknown_setting=True)


def test_config_validation():
    assert ReconstructionConfig().iterations == 3
    with pytest.raises(ConfigurationError):
        ReconstructionConfig(iterations=-1).validate()
    with pytest.raises(ConfigurationError):
        ReconstructionConfig(backend="opencl").validate()
    with pytest.raises(ConfigurationError):
        ReconstructionConfig(dtype="float16").validate()
    with pytest.raises(ConfigurationError, match="bogus"):
        ReconstructionConfig.from_mapping({"iterations": 2, "bogus": 1})
    assert ReconstructionConfig.from_mapping({"tikhonov": 0.5}).tikhonov == 0.5


@pytest.mark.parametrize("settings", [
    {"gamma": "0.1"},
    {"tikhonov": None},
    {"early_stop_threshold": [1e-3]},
    {"gamma": True},
    {"dtype": ["float32"]},
    {"backend": 1},
])
def test_non_numeric_settings_raise_configuration_error(settings):
    with pytest.raises(ConfigurationError):
        ReconstructionConfig.from_mapping(settings)
    with pytest.raises(ConfigurationError):
        ReconstructionConfig(**settings).validate()
    with pytest.raises(ConfigurationError):
        _identity_reco(**settings)


def test_numpy_scalars_are_accepted():
    config = ReconstructionConfig.from_mapping({"gamma": np.float64(0.25), "tikhonov": np.float32(1.0)})
    assert config.gamma == 0.25


class _Float32OnlyProjector(IdentityProjector):
    @property
    def supported_dtypes(self):
        return (torch.float32,)


def test_unsupported_dtype_rejected_at_configure():
    recon = ConjugateGradientReconstruction(projector=_Float32OnlyProjector())
    with pytest.raises(ConfigurationError):
        recon.configure(dtype="float64")
    assert recon.config.dtype == "float32"


def test_cpu_reconstruction_decreases_cost(rng):
    geometry = circular_geometry_3d(n_views=16, sid=60.0, sdd=90.0, proj_offset_x=3.0)
    phantom = torch.zeros(8, 8, 8)
    phantom[2:6, 2:6, 2:6] = 1.0
    projector = CPUConeProjector()
    recon = ConjugateGradientReconstruction(projector=projector).configure(
        iterations=4, tikhonov=1e-3, track_iteration_cost=True)
    projector.configure(VolumeInfo((8, 8, 8)), ProjectionStack(torch.zeros(16, 13, 13)).detector)
    sino = projector.forward(phantom, geometry)

    result = recon.run(geometry, ProjectionStack(sino), torch.zeros(8, 8, 8))
    costs = np.array(result.iteration_costs)
    assert result.volume.shape == (8, 8, 8)
    assert torch.isfinite(result.volume).all()
    assert np.all(np.diff(costs) <= 1e-3 * abs(costs[0]))
    assert torch.sum((result.volume - phantom) ** 2) < torch.sum(phantom ** 2)
