import logging
import math

import numpy as np
import torch

from cgct import (
    ConjugateGradientReconstruction,
    ProjectionStack,
    Volume,
    check_adjoint,
    circular_geometry_3d,
    make_projector,
)
from cgct.images import DetectorInfo

# (x, y, z, a, b, c, phi, value) in normalized coordinates
SHEPP_LOGAN_ELLIPSOIDS = [
    (0.0, 0.0, 0.0, 0.69, 0.92, 0.81, 0.0, 1.0),
    (0.0, -0.0184, 0.0, 0.6624, 0.874, 0.78, 0.0, -0.8),
    (0.22, 0.0, 0.0, 0.11, 0.31, 0.22, -math.pi / 10.0, -0.2),
    (-0.22, 0.0, 0.0, 0.16, 0.41, 0.28, math.pi / 10.0, -0.2),
    (0.0, 0.35, -0.15, 0.21, 0.25, 0.41, 0.0, 0.1),
    (0.0, 0.1, 0.25, 0.046, 0.046, 0.05, 0.0, 0.1),
    (0.0, -0.1, 0.25, 0.046, 0.046, 0.05, 0.0, 0.1),
    (-0.08, -0.605, 0.0, 0.046, 0.023, 0.05, 0.0, 0.1),
    (0.0, -0.605, 0.0, 0.023, 0.023, 0.02, 0.0, 0.1),
    (0.06, -0.605, 0.0, 0.023, 0.046, 0.02, 0.0, 0.1),
]


def shepp_logan_3d(shape):
    """3D Shepp-Logan phantom of shape (D, H, W), clipped to [0, 1]."""
    axes = [np.linspace(-1.0, 1.0, n) for n in shape]
    zz, yy, xx = np.meshgrid(*axes, indexing="ij")
    phantom = np.zeros(shape, dtype=np.float32)
    for x0, y0, z0, a, b, c, phi, value in SHEPP_LOGAN_ELLIPSOIDS:
        xr = math.cos(phi) * (xx - x0) - math.sin(phi) * (yy - y0)
        yr = math.sin(phi) * (xx - x0) + math.cos(phi) * (yy - y0)
        inside = (xr / a) ** 2 + (yr / b) ** 2 + ((zz - z0) / c) ** 2 <= 1.0
        phantom[inside] += value
    return np.clip(phantom, 0.0, 1.0)


def main():
    logging.basicConfig(level=logging.INFO, format="%(name)s %(levelname)s: %(message)s")

    Nz, Ny, Nx = 64, 64, 64
    phantom = torch.from_numpy(shepp_logan_3d((Nz, Ny, Nx)))

    num_views = 360
    det_u, det_v = 96, 128
    du, dv = 1.0, 1.0
    sid, sdd = 600.0, 900.0
    # Detector shifted sideways: half-fan acquisition over a full turn
    offset_u = 30.0

    geometry = circular_geometry_3d(num_views, sid=sid, sdd=sdd, proj_offset_x=offset_u)

    projector = make_projector("auto")
    projector.configure(Volume(phantom).info, DetectorInfo(det_u, det_v, du, dv))
    mismatch = check_adjoint(projector, geometry)
    print(f"Adjoint mismatch of the {projector.backend} projector: {mismatch:.2e}")

    sino = projector.forward(phantom.to(projector.device), geometry)

    recon = ConjugateGradientReconstruction()
    recon.configure(iterations=20, tikhonov=1e-2, gamma=1e-1,
                    measure_times=True, track_iteration_cost=True, progress=True)
    recon.callback = lambda it, x: print(f"Iteration {it}, mean value {x.mean().item():.4f}")

    result = recon.run(geometry, ProjectionStack(sino, spacing=(du, dv)), torch.zeros_like(phantom))

    for k, cost in enumerate(result.iteration_costs):
        print(f"Cost before update {k}: {cost:.6e}")

    reco = result.volume.cpu()
    rmse = torch.sqrt(torch.mean((reco - phantom) ** 2)).item()
    print(f"Stopped after {result.iterations} iterations ({result.stop_reason}) "
          f"in {result.elapsed_time:.2f} s, RMSE {rmse:.4f}")


if __name__ == "__main__":
    main()
