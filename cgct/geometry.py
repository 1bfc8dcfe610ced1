"""Projection geometry for cone beam CT.

This module provides the projection matrix container consumed by every
operator, a cone-beam specialization with circular-orbit and arbitrary-view
builders, and trajectory generators for circular and spiral scans.

A projection matrix is an M x (M+1) homogeneous matrix. Multiplying the
homogeneous physical coordinates of a point with the i-th matrix gives the
homogeneous detector coordinates of its projection on the i-th view. For
M = 3 the rows are (u, v, w) and the detector coordinates are (u/w, v/w),
measured in physical units from the detector center.
"""

import math
import operator

import numpy as np
import torch

from .exceptions import ConfigurationError, OutOfRangeError


# ============================================================================
# Projection Matrix Container
# ============================================================================

class ProjectionGeometry:
    """Append-only sequence of M x (M+1) projection matrices.

    Parameters
    ----------
    dimension : int, optional
        Spatial dimension M of the volume (default: 3).

    Notes
    -----
    Matrices are appended while building the geometry and then frozen when an
    operator binds the geometry. Every modification increments
    `modified_count`, which operators use to invalidate their caches.

    Examples
    --------
    >>> geometry = ProjectionGeometry()
    >>> geometry.add_matrix(np.eye(3, 4))
    >>> geometry.matrix_at(0).shape
    (3, 4)
    """

    def __init__(self, dimension=3):
        dimension = operator.index(dimension)
        if dimension < 2:
            raise ConfigurationError(f"Geometry dimension must be at least 2, got {dimension}")
        self._dimension = dimension
        self._matrices = []
        self._modified_count = 0
        self._frozen = False
        self._vector_cache = None

    @property
    def dimension(self):
        return self._dimension

    @property
    def modified_count(self):
        """Number of modifications since construction."""
        return self._modified_count

    @property
    def frozen(self):
        return self._frozen

    def __len__(self):
        return len(self._matrices)

    def __repr__(self):
        return (f"{type(self).__name__}(dimension={self._dimension}, "
                f"n_views={len(self)}, frozen={self._frozen})")

    def modified(self):
        """Mark the geometry as modified, invalidating derived caches."""
        self._modified_count += 1
        self._vector_cache = None

    def add_matrix(self, matrix):
        """Append a projection matrix.

        Parameters
        ----------
        matrix : array-like
            Homogeneous projection matrix of shape (M, M+1).

        Raises
        ------
        ConfigurationError
            If the matrix has the wrong shape, is not finite, or the geometry
            is frozen.
        """
        if self._frozen:
            raise ConfigurationError(
                "Geometry is frozen while bound to an operator; call clear() before adding matrices"
            )
        m = np.array(matrix, dtype=np.float64)
        expected = (self._dimension, self._dimension + 1)
        if m.shape != expected:
            raise ConfigurationError(f"Projection matrix must have shape {expected}, got {m.shape}")
        if not np.all(np.isfinite(m)):
            raise ConfigurationError("Projection matrix contains non-finite values")
        m.setflags(write=False)
        self._matrices.append(m)
        self.modified()

    def matrix_at(self, i):
        """Return the i-th projection matrix.

        Raises
        ------
        OutOfRangeError
            If `i` is not in ``[0, len(geometry))``. This is an `IndexError`.
        """
        i = operator.index(i)
        if i < 0 or i >= len(self._matrices):
            raise OutOfRangeError(f"Requested matrix index {i} is out of bound.")
        return self._matrices[i]

    @property
    def matrices(self):
        """Read-only ordered tuple of all projection matrices."""
        return tuple(self._matrices)

    @property
    def angles(self):
        """Gantry angle of each view in radians, in ``[0, 2*pi)``.

        The angle is read from the principal-ray row of each matrix, using the
        convention of `ConeBeamGeometry.add_projection` where the source sits
        at ``(-sid*sin(a), sid*cos(a), 0)``.
        """
        angles = np.empty(len(self._matrices), dtype=np.float64)
        for i, m in enumerate(self._matrices):
            n = m[-1, :self._dimension]
            angles[i] = math.atan2(n[0] + 0.0, -n[1] + 0.0) % (2.0 * math.pi)
        return angles

    def projected_axis_offsets(self):
        """Detector u-coordinate of the projected rotation axis for each view.

        Raises
        ------
        ConfigurationError
            If a matrix maps the rotation axis to infinity (zero homogeneous
            coordinate).
        """
        offsets = np.empty(len(self._matrices), dtype=np.float64)
        for i, m in enumerate(self._matrices):
            if m[-1, -1] == 0.0:
                raise ConfigurationError(
                    f"Projection matrix {i} maps the rotation axis to infinity; "
                    "cannot locate it on the detector"
                )
            offsets[i] = m[0, -1] / m[-1, -1]
        return offsets

    def ray_vectors(self):
        """Decompose every 3x4 matrix into cone-beam ray-tracing vectors.

        Returns
        -------
        src_pos : numpy.ndarray
            Source positions, shape (n_views, 3).
        det_center : numpy.ndarray
            Detector center positions, shape (n_views, 3).
        det_u_vec : numpy.ndarray
            Detector u-direction unit vectors, shape (n_views, 3).
        det_v_vec : numpy.ndarray
            Detector v-direction unit vectors, shape (n_views, 3).

        Raises
        ------
        ConfigurationError
            If the geometry is not 3D or a matrix is not a pinhole projection
            onto an orthonormal detector with square pixels.
        """
        if self._dimension != 3:
            raise ConfigurationError("Ray vectors are only defined for 3D cone beam geometries")
        if self._vector_cache is None:
            n_views = len(self._matrices)
            vectors = tuple(np.zeros((n_views, 3), dtype=np.float64) for _ in range(4))
            for i, m in enumerate(self._matrices):
                for out, vec in zip(vectors, _decompose_cone_matrix(m)):
                    out[i] = vec
            for arr in vectors:
                arr.setflags(write=False)
            self._vector_cache = vectors
        return self._vector_cache

    def freeze(self):
        """Forbid further additions until `clear()` is called."""
        self._frozen = True

    def clear(self):
        """Empty the geometry and unfreeze it."""
        self._matrices = []
        self._frozen = False
        self.modified()


def _decompose_cone_matrix(matrix):
    # Rows are r1 = h*u + <s-c,u>*n, r2 = h*v + <s-c,v>*n, r3 = n applied to (p - s)
    m = np.asarray(matrix, dtype=np.float64)
    scale = np.linalg.norm(m[2, :3])
    if scale < 1e-12:
        raise ConfigurationError("Projection matrix has a degenerate principal ray")
    m = m / scale
    r1, r2, n = m[0, :3], m[1, :3], m[2, :3]
    r1_perp = r1 - np.dot(r1, n) * n
    r2_perp = r2 - np.dot(r2, n) * n
    h = np.linalg.norm(r1_perp)
    h_v = np.linalg.norm(r2_perp)
    if h < 1e-12 or abs(h - h_v) > 1e-6 * h or abs(np.dot(r1_perp, r2_perp)) > 1e-6 * h * h_v:
        raise ConfigurationError(
            "Projection matrix does not describe an orthonormal detector with square pixels"
        )
    u_vec = r1_perp / h
    v_vec = r2_perp / h
    if np.dot(np.cross(u_vec, v_vec), n) < 0:
        # Matrix given up to a negative scale factor
        m = -m
        r1, r2, n = m[0, :3], m[1, :3], m[2, :3]
        u_vec, v_vec = -u_vec, -v_vec
    src = -np.linalg.solve(m[:, :3], m[:, 3])
    det_center = src + h * n - np.dot(r1, n) * u_vec - np.dot(r2, n) * v_vec
    return src, det_center, u_vec, v_vec


# ============================================================================
# Cone Beam Geometry
# ============================================================================

class ConeBeamGeometry(ProjectionGeometry):
    """3D cone beam geometry built from source and detector placements.

    Examples
    --------
    >>> geometry = ConeBeamGeometry()
    >>> geometry.add_projection(sid=1000.0, sdd=1500.0, angle=0.0)
    >>> geometry.angles
    array([0.])
    """

    def __init__(self):
        super().__init__(dimension=3)

    @property
    def source_positions(self):
        """Source position of each view, shape (n_views, 3)."""
        return self.ray_vectors()[0]

    @property
    def detector_centers(self):
        return self.ray_vectors()[1]

    @property
    def detector_u(self):
        return self.ray_vectors()[2]

    @property
    def detector_v(self):
        return self.ray_vectors()[3]

    def add_view(self, source, detector_center, u_vec, v_vec):
        """Append a view defined by its source and detector placement.

        Parameters
        ----------
        source : array-like
            Source position, shape (3,), in physical units.
        detector_center : array-like
            Detector center position, shape (3,), in physical units.
        u_vec : array-like
            Detector u-direction, shape (3,). Normalized here.
        v_vec : array-like
            Detector v-direction, shape (3,). Normalized here; must be
            orthogonal to `u_vec`.
        """
        s = np.asarray(source, dtype=np.float64).reshape(3)
        c = np.asarray(detector_center, dtype=np.float64).reshape(3)
        u = np.asarray(u_vec, dtype=np.float64).reshape(3)
        v = np.asarray(v_vec, dtype=np.float64).reshape(3)
        u_norm, v_norm = np.linalg.norm(u), np.linalg.norm(v)
        if u_norm < 1e-12 or v_norm < 1e-12:
            raise ConfigurationError("Detector direction vectors must be non-zero")
        u, v = u / u_norm, v / v_norm
        if abs(np.dot(u, v)) > 1e-6:
            raise ConfigurationError("Detector u and v directions must be orthogonal")

        n = np.cross(u, v)
        h = np.dot(c - s, n)
        if h < 0:
            n, h = -n, -h
        if h < 1e-9:
            raise ConfigurationError("Source lies in the detector plane")

        rows = np.stack([
            h * u + np.dot(s - c, u) * n,
            h * v + np.dot(s - c, v) * n,
            n,
        ])
        matrix = np.concatenate([rows, -(rows @ s)[:, None]], axis=1)
        self.add_matrix(matrix)

    def add_projection(self, sid, sdd, angle, proj_offset_x=0.0, proj_offset_y=0.0):
        """Append a circular-orbit view.

        The source rotates in the xy-plane around the z-axis at distance `sid`
        from the isocenter; the detector faces it at distance `sdd` from the
        source, shifted by `proj_offset_x` along u and `proj_offset_y` along v.

        Parameters
        ----------
        sid : float
            Source-to-Isocenter Distance, in physical units.
        sdd : float
            Source-to-Detector Distance, in physical units.
        angle : float
            Gantry angle in radians.
        proj_offset_x, proj_offset_y : float, optional
            Detector displacement in physical units (default: 0.0).
        """
        if sid <= 0 or sdd <= 0:
            raise ConfigurationError(f"sid and sdd must be positive, got sid={sid}, sdd={sdd}")
        cos_a, sin_a = math.cos(angle), math.sin(angle)
        n = np.array([sin_a, -cos_a, 0.0])
        u = np.array([cos_a, sin_a, 0.0])
        v = np.array([0.0, 0.0, 1.0])
        src = -sid * n
        det_center = src + sdd * n + proj_offset_x * u + proj_offset_y * v
        self.add_view(src, det_center, u, v)


# ============================================================================
# Trajectory Builders
# ============================================================================

def circular_geometry_3d(n_views, sid, sdd, start_angle=0.0, end_angle=None,
                         proj_offset_x=0.0, proj_offset_y=0.0):
    """Build a circular-orbit cone beam geometry.

    Parameters
    ----------
    n_views : int
        Number of projection views.
    sid : float
        Source-to-Isocenter Distance (SID), in physical units.
    sdd : float
        Source-to-Detector Distance (SDD), in physical units.
    start_angle : float, optional
        Starting angle in radians (default: 0.0).
    end_angle : float, optional
        Ending angle in radians, excluded (default: 2*pi, full rotation).
    proj_offset_x, proj_offset_y : float, optional
        Detector displacement applied to every view (default: 0.0).

    Returns
    -------
    ConeBeamGeometry

    Examples
    --------
    >>> geometry = circular_geometry_3d(n_views=360, sid=1000.0, sdd=1500.0)
    >>> len(geometry)
    360
    """
    if end_angle is None:
        end_angle = 2 * math.pi
    step = (end_angle - start_angle) / n_views
    geometry = ConeBeamGeometry()
    for i in range(n_views):
        geometry.add_projection(sid, sdd, start_angle + i * step, proj_offset_x, proj_offset_y)
    return geometry


def spiral_geometry_3d(n_views, sid, sdd, z_range=100.0, n_turns=2.0, start_angle=0.0):
    """Build a helical cone beam geometry.

    The source and detector rotate around the z-axis while translating
    linearly over `z_range`, completing `n_turns` rotations.
    """
    end_angle = start_angle + 2 * math.pi * n_turns
    step = (end_angle - start_angle) / n_views
    z_positions = np.linspace(-z_range / 2, z_range / 2, n_views)
    geometry = ConeBeamGeometry()
    for i in range(n_views):
        angle = start_angle + i * step
        cos_a, sin_a = math.cos(angle), math.sin(angle)
        n = np.array([sin_a, -cos_a, 0.0])
        shift = np.array([0.0, 0.0, z_positions[i]])
        src = -sid * n + shift
        geometry.add_view(src, src + sdd * n, [cos_a, sin_a, 0.0], [0.0, 0.0, 1.0])
    return geometry


def geometry_from_trajectory(src_pos, det_center, det_u_vec, det_v_vec):
    """Build a geometry from per-view source and detector arrays.

    Parameters
    ----------
    src_pos, det_center, det_u_vec, det_v_vec : array-like or torch.Tensor
        Arrays of shape (n_views, 3), e.g. from an external trajectory
        generator.

    Returns
    -------
    ConeBeamGeometry
    """
    arrays = []
    for arr in (src_pos, det_center, det_u_vec, det_v_vec):
        if isinstance(arr, torch.Tensor):
            arr = arr.detach().cpu().numpy()
        arr = np.asarray(arr, dtype=np.float64)
        if arr.ndim != 2 or arr.shape[1] != 3:
            raise ConfigurationError(f"Trajectory arrays must have shape (n_views, 3), got {arr.shape}")
        arrays.append(arr)
    n_views = arrays[0].shape[0]
    if any(arr.shape[0] != n_views for arr in arrays):
        raise ConfigurationError("Trajectory arrays must all have the same number of views")

    geometry = ConeBeamGeometry()
    for i in range(n_views):
        geometry.add_view(*(arr[i] for arr in arrays))
    return geometry
