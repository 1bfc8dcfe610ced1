"""Multithreaded CPU kernels for 3D cone beam projections.

This module implements the Siddon ray-tracing method with trilinear sampling
at segment midpoints for 3D cone beam forward projection and backprojection.
The backprojection scatters exactly the weights the forward projection
gathers, so the two are discrete adjoints of one another.

Volumes are indexed ``[iz, iy, ix]`` (D, H, W layout) and projection stacks
``[iview, iu, iv]``.
"""

import math
from numba import prange

from ..constants import _PARALLEL_DECORATOR, _SERIAL_DECORATOR, _EPSILON


# ============================================================================
# Per-Ray Helpers
# ============================================================================

@_SERIAL_DECORATOR
def _cone_ray(iview, iu, iv, n_u, n_v, du, dv,
              src_pos, det_center, det_u_vec, det_v_vec,
              cx, cy, cz, voxel_spacing):
    """Set up the ray through detector pixel (iu, iv) of view `iview`.

    Returns
    -------
    tuple
        ``(hit, src_x, src_y, src_z, dir_x, dir_y, dir_z, t_min, t_max)`` in
        voxel units, where `hit` is False when the ray misses the volume.
    """
    src_x = src_pos[iview, 0] / voxel_spacing
    src_y = src_pos[iview, 1] / voxel_spacing
    src_z = src_pos[iview, 2] / voxel_spacing

    # Pixel centers are symmetric around the detector center
    u_offset = (iu - (n_u - 1) * 0.5) * du / voxel_spacing
    v_offset = (iv - (n_v - 1) * 0.5) * dv / voxel_spacing

    det_x = det_center[iview, 0] / voxel_spacing + u_offset * det_u_vec[iview, 0] + v_offset * det_v_vec[iview, 0]
    det_y = det_center[iview, 1] / voxel_spacing + u_offset * det_u_vec[iview, 1] + v_offset * det_v_vec[iview, 1]
    det_z = det_center[iview, 2] / voxel_spacing + u_offset * det_u_vec[iview, 2] + v_offset * det_v_vec[iview, 2]

    dir_x, dir_y, dir_z = det_x - src_x, det_y - src_y, det_z - src_z
    length = math.sqrt(dir_x * dir_x + dir_y * dir_y + dir_z * dir_z)
    if length < _EPSILON:
        return False, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0
    dir_x, dir_y, dir_z = dir_x / length, dir_y / length, dir_z / length

    t_min, t_max = -math.inf, math.inf
    if abs(dir_x) > _EPSILON:
        tx1, tx2 = (-cx - src_x) / dir_x, (cx - src_x) / dir_x
        t_min, t_max = max(t_min, min(tx1, tx2)), min(t_max, max(tx1, tx2))
    elif src_x < -cx or src_x > cx:
        return False, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0
    if abs(dir_y) > _EPSILON:
        ty1, ty2 = (-cy - src_y) / dir_y, (cy - src_y) / dir_y
        t_min, t_max = max(t_min, min(ty1, ty2)), min(t_max, max(ty1, ty2))
    elif src_y < -cy or src_y > cy:
        return False, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0
    if abs(dir_z) > _EPSILON:
        tz1, tz2 = (-cz - src_z) / dir_z, (cz - src_z) / dir_z
        t_min, t_max = max(t_min, min(tz1, tz2)), min(t_max, max(tz1, tz2))
    elif src_z < -cz or src_z > cz:
        return False, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0

    if t_min >= t_max:
        return False, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0
    return True, src_x, src_y, src_z, dir_x, dir_y, dir_z, t_min, t_max


@_SERIAL_DECORATOR
def _traverse(vol, src_x, src_y, src_z, dir_x, dir_y, dir_z, t_min, t_max,
              cx, cy, cz, value, scatter):
    """Walk the ray voxel by voxel.

    Gathers the line integral when `scatter` is False and returns it;
    otherwise distributes `value` into `vol` with the same weights and
    returns 0.
    """
    Nz, Ny, Nx = vol.shape
    accum = 0.0
    t = t_min
    ix = int(math.floor(src_x + t * dir_x + cx))
    iy = int(math.floor(src_y + t * dir_y + cy))
    iz = int(math.floor(src_z + t * dir_z + cz))

    step_x = 1 if dir_x >= 0 else -1
    step_y = 1 if dir_y >= 0 else -1
    step_z = 1 if dir_z >= 0 else -1
    if abs(dir_x) > _EPSILON:
        dt_x = abs(1.0 / dir_x)
        tx = ((ix + 1 if step_x > 0 else ix) - cx - src_x) / dir_x
    else:
        dt_x = math.inf
        tx = math.inf
    if abs(dir_y) > _EPSILON:
        dt_y = abs(1.0 / dir_y)
        ty = ((iy + 1 if step_y > 0 else iy) - cy - src_y) / dir_y
    else:
        dt_y = math.inf
        ty = math.inf
    if abs(dir_z) > _EPSILON:
        dt_z = abs(1.0 / dir_z)
        tz = ((iz + 1 if step_z > 0 else iz) - cz - src_z) / dir_z
    else:
        dt_z = math.inf
        tz = math.inf

    while t < t_max:
        if 0 <= ix < Nx and 0 <= iy < Ny and 0 <= iz < Nz:
            t_next = min(tx, ty, tz, t_max)
            seg_len = t_next - t
            if seg_len > _EPSILON:
                # Sample at the segment midpoint
                t_mid = t + seg_len * 0.5
                mid_x = src_x + t_mid * dir_x + cx
                mid_y = src_y + t_mid * dir_y + cy
                mid_z = src_z + t_mid * dir_z + cz

                ix0, iy0, iz0 = int(math.floor(mid_x)), int(math.floor(mid_y)), int(math.floor(mid_z))
                dx, dy, dz = mid_x - ix0, mid_y - iy0, mid_z - iz0
                ix0 = max(0, min(ix0, Nx - 2))
                iy0 = max(0, min(iy0, Ny - 2))
                iz0 = max(0, min(iz0, Nz - 2))
                omdx, omdy, omdz = 1.0 - dx, 1.0 - dy, 1.0 - dz

                if scatter:
                    cval = value * seg_len
                    vol[iz0,     iy0,     ix0]     += cval * omdx * omdy * omdz
                    vol[iz0,     iy0,     ix0 + 1] += cval * dx   * omdy * omdz
                    vol[iz0,     iy0 + 1, ix0]     += cval * omdx * dy   * omdz
                    vol[iz0 + 1, iy0,     ix0]     += cval * omdx * omdy * dz
                    vol[iz0,     iy0 + 1, ix0 + 1] += cval * dx   * dy   * omdz
                    vol[iz0 + 1, iy0,     ix0 + 1] += cval * dx   * omdy * dz
                    vol[iz0 + 1, iy0 + 1, ix0]     += cval * omdx * dy   * dz
                    vol[iz0 + 1, iy0 + 1, ix0 + 1] += cval * dx   * dy   * dz
                else:
                    val = (
                        vol[iz0,     iy0,     ix0]     * omdx * omdy * omdz +
                        vol[iz0,     iy0,     ix0 + 1] * dx   * omdy * omdz +
                        vol[iz0,     iy0 + 1, ix0]     * omdx * dy   * omdz +
                        vol[iz0 + 1, iy0,     ix0]     * omdx * omdy * dz   +
                        vol[iz0,     iy0 + 1, ix0 + 1] * dx   * dy   * omdz +
                        vol[iz0 + 1, iy0,     ix0 + 1] * dx   * omdy * dz   +
                        vol[iz0 + 1, iy0 + 1, ix0]     * omdx * dy   * dz   +
                        vol[iz0 + 1, iy0 + 1, ix0 + 1] * dx   * dy   * dz
                    )
                    accum += val * seg_len

        if tx <= ty and tx <= tz:
            t = tx
            ix += step_x
            tx += dt_x
        elif ty <= tx and ty <= tz:
            t = ty
            iy += step_y
            ty += dt_y
        else:
            t = tz
            iz += step_z
            tz += dt_z
    return accum


# ============================================================================
# Drivers
# ============================================================================

@_PARALLEL_DECORATOR
def _cone_3d_forward_cpu(vol, sino, du, dv, src_pos, det_center, det_u_vec, det_v_vec, voxel_spacing):
    """Forward project `vol` (D, H, W) into `sino` (n_views, n_u, n_v), in place.

    Views are distributed over threads; each ray is written by exactly one
    thread.
    """
    Nz, Ny, Nx = vol.shape
    n_views, n_u, n_v = sino.shape
    cx, cy, cz = Nx * 0.5, Ny * 0.5, Nz * 0.5
    for iview in prange(n_views):
        for iu in range(n_u):
            for iv in range(n_v):
                hit, sx, sy, sz, rx, ry, rz, t0, t1 = _cone_ray(
                    iview, iu, iv, n_u, n_v, du, dv,
                    src_pos, det_center, det_u_vec, det_v_vec,
                    cx, cy, cz, voxel_spacing
                )
                if hit:
                    sino[iview, iu, iv] = _traverse(vol, sx, sy, sz, rx, ry, rz, t0, t1,
                                                    cx, cy, cz, 0.0, False)
                else:
                    sino[iview, iu, iv] = 0.0


@_PARALLEL_DECORATOR
def _cone_3d_backward_cpu(sino, vol_parts, du, dv, src_pos, det_center, det_u_vec, det_v_vec, voxel_spacing):
    """Backproject `sino` into per-thread partial volumes `vol_parts`.

    `vol_parts` has shape (n_parts, D, H, W) and must be zero on entry. Part
    ``k`` accumulates views ``k, k + n_parts, ...``; the caller sums the parts
    in index order, so the result only depends on `n_parts`.
    """
    n_parts, Nz, Ny, Nx = vol_parts.shape
    n_views, n_u, n_v = sino.shape
    cx, cy, cz = Nx * 0.5, Ny * 0.5, Nz * 0.5
    for part in prange(n_parts):
        vol = vol_parts[part]
        for iview in range(part, n_views, n_parts):
            for iu in range(n_u):
                for iv in range(n_v):
                    g = sino[iview, iu, iv]
                    if g == 0.0:
                        continue
                    hit, sx, sy, sz, rx, ry, rz, t0, t1 = _cone_ray(
                        iview, iu, iv, n_u, n_v, du, dv,
                        src_pos, det_center, det_u_vec, det_v_vec,
                        cx, cy, cz, voxel_spacing
                    )
                    if hit:
                        _traverse(vol, sx, sy, sz, rx, ry, rz, t0, t1, cx, cy, cz, g, True)
