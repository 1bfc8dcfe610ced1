"""CUDA kernels for 3D cone beam projections.

This module contains CUDA kernels implementing the Siddon ray-tracing method
for 3D cone beam forward projection and backprojection. They follow the same
ray parametrization, pixel convention and sampling weights as the CPU kernels
in `cone_beam_cpu`, so both backends compute the same operator up to
floating-point rounding. The backprojection accumulates in fixed point
so its result is reproducible bit for bit.
"""

import math
from numba import cuda, int64

from ..constants import _DEVICE_DECORATOR, _FASTMATH_DECORATOR, _INF, _EPSILON


# ============================================================================
# Ray Setup (device function)
# ============================================================================

@_DEVICE_DECORATOR
def _cone_ray_device(iview, iu, iv, n_u, n_v, du, dv,
                     d_src_pos, d_det_center, d_det_u_vec, d_det_v_vec,
                     cx, cy, cz, voxel_spacing):
    src_x = d_src_pos[iview, 0] / voxel_spacing
    src_y = d_src_pos[iview, 1] / voxel_spacing
    src_z = d_src_pos[iview, 2] / voxel_spacing

    u_offset = (iu - (n_u - 1) * 0.5) * du / voxel_spacing
    v_offset = (iv - (n_v - 1) * 0.5) * dv / voxel_spacing

    det_x = d_det_center[iview, 0] / voxel_spacing + u_offset * d_det_u_vec[iview, 0] + v_offset * d_det_v_vec[iview, 0]
    det_y = d_det_center[iview, 1] / voxel_spacing + u_offset * d_det_u_vec[iview, 1] + v_offset * d_det_v_vec[iview, 1]
    det_z = d_det_center[iview, 2] / voxel_spacing + u_offset * d_det_u_vec[iview, 2] + v_offset * d_det_v_vec[iview, 2]

    dir_x, dir_y, dir_z = det_x - src_x, det_y - src_y, det_z - src_z
    length = math.sqrt(dir_x * dir_x + dir_y * dir_y + dir_z * dir_z)
    if length < _EPSILON:
        return False, src_x, src_y, src_z, dir_x, dir_y, dir_z, _INF, -_INF
    inv_len = 1.0 / length
    dir_x, dir_y, dir_z = dir_x * inv_len, dir_y * inv_len, dir_z * inv_len

    t_min, t_max = -_INF, _INF
    if abs(dir_x) > _EPSILON:
        tx1, tx2 = (-cx - src_x) / dir_x, (cx - src_x) / dir_x
        t_min, t_max = max(t_min, min(tx1, tx2)), min(t_max, max(tx1, tx2))
    elif src_x < -cx or src_x > cx:
        t_max = -_INF
    if abs(dir_y) > _EPSILON:
        ty1, ty2 = (-cy - src_y) / dir_y, (cy - src_y) / dir_y
        t_min, t_max = max(t_min, min(ty1, ty2)), min(t_max, max(ty1, ty2))
    elif src_y < -cy or src_y > cy:
        t_max = -_INF
    if abs(dir_z) > _EPSILON:
        tz1, tz2 = (-cz - src_z) / dir_z, (cz - src_z) / dir_z
        t_min, t_max = max(t_min, min(tz1, tz2)), min(t_max, max(tz1, tz2))
    elif src_z < -cz or src_z > cz:
        t_max = -_INF

    return t_min < t_max, src_x, src_y, src_z, dir_x, dir_y, dir_z, t_min, t_max


@_DEVICE_DECORATOR
def _to_fixed(value, scale):
    return int64(math.floor(value * scale + 0.5))


# ============================================================================
# 3D Cone Beam Forward Projection Kernel
# ============================================================================

@_FASTMATH_DECORATOR
def _cone_3d_forward_kernel(
    d_vol, Nx, Ny, Nz,
    d_sino, n_views, n_u, n_v,
    du, dv, d_src_pos, d_det_center, d_det_u_vec, d_det_v_vec,
    cx, cy, cz, voxel_spacing
):
    """Compute the 3D cone-beam forward projection for arbitrary views.

    One thread traces one ray (view, u, v) and writes one sinogram entry.

    Parameters
    ----------
    d_vol : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Input volume on CUDA, indexed ``[iz, iy, ix]``.
    Nx, Ny, Nz : int
        Number of voxels along x, y and z.
    d_sino : numba.cuda.cudadrv.devicearray.DeviceNDArray
        Output projections on CUDA, shape (n_views, n_u, n_v).
    n_views, n_u, n_v : int
        Number of views and detector pixels along u and v.
    du, dv : float
        Physical pixel spacing along u and v.
    d_src_pos, d_det_center, d_det_u_vec, d_det_v_vec : DeviceNDArray
        Per-view source position, detector center and detector axes,
        shape (n_views, 3), in physical units.
    cx, cy, cz : float
        Half of the volume extent along x, y and z (in voxels).
    voxel_spacing : float
        Physical size of one voxel.
    """
    iview, iu, iv = cuda.grid(3)
    if iview >= n_views or iu >= n_u or iv >= n_v:
        return

    hit, src_x, src_y, src_z, dir_x, dir_y, dir_z, t_min, t_max = _cone_ray_device(
        iview, iu, iv, n_u, n_v, du, dv,
        d_src_pos, d_det_center, d_det_u_vec, d_det_v_vec,
        cx, cy, cz, voxel_spacing
    )
    if not hit:
        d_sino[iview, iu, iv] = 0.0
        return

    accum = 0.0
    t = t_min
    ix = int(math.floor(src_x + t * dir_x + cx))
    iy = int(math.floor(src_y + t * dir_y + cy))
    iz = int(math.floor(src_z + t * dir_z + cz))

    step_x, step_y, step_z = (1 if dir_x >= 0 else -1), (1 if dir_y >= 0 else -1), (1 if dir_z >= 0 else -1)
    dt_x = abs(1.0 / dir_x) if abs(dir_x) > _EPSILON else _INF
    dt_y = abs(1.0 / dir_y) if abs(dir_y) > _EPSILON else _INF
    dt_z = abs(1.0 / dir_z) if abs(dir_z) > _EPSILON else _INF
    tx = ((ix + 1 if step_x > 0 else ix) - cx - src_x) / dir_x if abs(dir_x) > _EPSILON else _INF
    ty = ((iy + 1 if step_y > 0 else iy) - cy - src_y) / dir_y if abs(dir_y) > _EPSILON else _INF
    tz = ((iz + 1 if step_z > 0 else iz) - cz - src_z) / dir_z if abs(dir_z) > _EPSILON else _INF

    while t < t_max:
        if 0 <= ix < Nx and 0 <= iy < Ny and 0 <= iz < Nz:
            t_next = min(tx, ty, tz, t_max)
            seg_len = t_next - t
            if seg_len > _EPSILON:
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

                val = (
                    d_vol[iz0,     iy0,     ix0]     * omdx*omdy*omdz +
                    d_vol[iz0,     iy0,     ix0 + 1] * dx  *omdy*omdz +
                    d_vol[iz0,     iy0 + 1, ix0]     * omdx*dy  *omdz +
                    d_vol[iz0 + 1, iy0,     ix0]     * omdx*omdy*dz   +
                    d_vol[iz0,     iy0 + 1, ix0 + 1] * dx  *dy  *omdz +
                    d_vol[iz0 + 1, iy0,     ix0 + 1] * dx  *omdy*dz   +
                    d_vol[iz0 + 1, iy0 + 1, ix0]     * omdx*dy  *dz   +
                    d_vol[iz0 + 1, iy0 + 1, ix0 + 1] * dx  *dy  *dz
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

    d_sino[iview, iu, iv] = accum


# ============================================================================
# 3D Cone Beam Backprojection Kernel
# ============================================================================

@_FASTMATH_DECORATOR
def _cone_3d_backward_kernel(
    d_sino, n_views, n_u, n_v,
    d_acc, Nx, Ny, Nz,
    du, dv, d_src_pos, d_det_center, d_det_u_vec, d_det_v_vec,
    cx, cy, cz, voxel_spacing, scale
):
    """Compute the 3D cone-beam backprojection for arbitrary views.

    Adjoint of `_cone_3d_forward_kernel`: each thread distributes one
    sinogram value along its ray with atomic adds into `d_acc`, an int64
    array that must be zero on entry. Contributions are stored as fixed-point
    integers scaled by `scale`, so the sum does not depend on the order in
    which threads commit and repeated launches give identical results. The
    caller divides by `scale` to recover the volume. Other parameters are
    those of the forward kernel.
    """
    iview, iu, iv = cuda.grid(3)
    if iview >= n_views or iu >= n_u or iv >= n_v:
        return

    g = d_sino[iview, iu, iv]
    if g == 0.0:
        return

    hit, src_x, src_y, src_z, dir_x, dir_y, dir_z, t_min, t_max = _cone_ray_device(
        iview, iu, iv, n_u, n_v, du, dv,
        d_src_pos, d_det_center, d_det_u_vec, d_det_v_vec,
        cx, cy, cz, voxel_spacing
    )
    if not hit:
        return

    t = t_min
    ix = int(math.floor(src_x + t * dir_x + cx))
    iy = int(math.floor(src_y + t * dir_y + cy))
    iz = int(math.floor(src_z + t * dir_z + cz))

    step_x, step_y, step_z = (1 if dir_x >= 0 else -1), (1 if dir_y >= 0 else -1), (1 if dir_z >= 0 else -1)
    dt_x = abs(1.0 / dir_x) if abs(dir_x) > _EPSILON else _INF
    dt_y = abs(1.0 / dir_y) if abs(dir_y) > _EPSILON else _INF
    dt_z = abs(1.0 / dir_z) if abs(dir_z) > _EPSILON else _INF
    tx = ((ix + 1 if step_x > 0 else ix) - cx - src_x) / dir_x if abs(dir_x) > _EPSILON else _INF
    ty = ((iy + 1 if step_y > 0 else iy) - cy - src_y) / dir_y if abs(dir_y) > _EPSILON else _INF
    tz = ((iz + 1 if step_z > 0 else iz) - cz - src_z) / dir_z if abs(dir_z) > _EPSILON else _INF

    while t < t_max:
        if 0 <= ix < Nx and 0 <= iy < Ny and 0 <= iz < Nz:
            t_next = min(tx, ty, tz, t_max)
            seg_len = t_next - t
            if seg_len > _EPSILON:
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
                cval = g * seg_len

                cuda.atomic.add(d_acc, (iz0,     iy0,     ix0), _to_fixed(cval * omdx*omdy*omdz, scale))
                cuda.atomic.add(d_acc, (iz0,     iy0,     ix0 + 1), _to_fixed(cval * dx  *omdy*omdz, scale))
                cuda.atomic.add(d_acc, (iz0,     iy0 + 1, ix0), _to_fixed(cval * omdx*dy  *omdz, scale))
                cuda.atomic.add(d_acc, (iz0 + 1, iy0,     ix0), _to_fixed(cval * omdx*omdy*dz, scale))
                cuda.atomic.add(d_acc, (iz0,     iy0 + 1, ix0 + 1), _to_fixed(cval * dx  *dy  *omdz, scale))
                cuda.atomic.add(d_acc, (iz0 + 1, iy0,     ix0 + 1), _to_fixed(cval * dx  *omdy*dz, scale))
                cuda.atomic.add(d_acc, (iz0 + 1, iy0 + 1, ix0), _to_fixed(cval * omdx*dy  *dz, scale))
                cuda.atomic.add(d_acc, (iz0 + 1, iy0 + 1, ix0 + 1), _to_fixed(cval * dx  *dy  *dz, scale))

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
