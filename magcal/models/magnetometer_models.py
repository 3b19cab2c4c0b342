"""
Magnetometer measurement models for calibration.

The magnetometer error model is:
    b_meas = bm + (I + Mm) b_true + w

where:
    b_meas: measured magnetic flux density in body frame [T]
    bm:     hard-iron bias [T]
    Mm:     soft-iron matrix (scale factors on the diagonal, cross-couplings off it)
    b_true: ground-truth magnetic flux density in body frame [T]
    w:      measurement noise [T]

    Mm = [sx   mxy  mxz]
         [myx  sy   myz]
         [mzx  mzy  sz ]

Two families of models are provided:

    FrameMagnetometerModel: b_true is known for every measurement (device position
        and attitude are known). The model is affine in the parameters, so the
        Jacobian does not depend on them.

    NormMagnetometerModel: only ||b_true|| is known (field magnitude at the
        measurement location). Writing M = I + Mm and bm = M b, the observation is
            ||b_true||² = ||M⁻¹ b_meas - b||²
        which is nonlinear in (b, M).

Both models can estimate the hard iron, or use a known one. With the common-axis
assumption the lower-triangular couplings (myx, mzx, mzy) are fixed to zero.

Parameter layouts (general / common-axis):
    Frame, unknown hard iron: bx by bz sx sy sz mxy mxz myx myz mzx mzy / bx by bz sx sy sz mxy mxz myz
    Frame, known hard iron:   sx sy sz mxy mxz myx myz mzx mzy / sx sy sz mxy mxz myz
    Norm, unknown hard iron:  bx by bz m11 m21 m31 m12 m22 m32 m13 m23 m33 / bx by bz m11 m12 m22 m13 m23 m33
    Norm, known hard iron:    the same without bx by bz
For the norm model (bx, by, bz) is the inner bias b = M⁻¹ bm and M is stored
column by column.
"""

from typing import Optional, Tuple

import numpy as np

COMPONENTS = 3

HARD_IRON_NAMES = ("bx", "by", "bz")
SOFT_IRON_NAMES = ("sx", "sy", "sz", "mxy", "mxz", "myx", "myz", "mzx", "mzy")
COMMON_AXIS_SOFT_IRON_NAMES = ("sx", "sy", "sz", "mxy", "mxz", "myz")

# Position of every soft-iron term inside Mm
SOFT_IRON_INDEX = {
    "sx": (0, 0),
    "sy": (1, 1),
    "sz": (2, 2),
    "mxy": (0, 1),
    "mxz": (0, 2),
    "myx": (1, 0),
    "myz": (1, 2),
    "mzx": (2, 0),
    "mzy": (2, 1),
}

# Terms fixed to zero under the common-axis assumption
LOWER_TRIANGULAR_INDEX = ((1, 0), (2, 0), (2, 1))

GENERAL_MATRIX_INDEX = ((0, 0), (1, 0), (2, 0), (0, 1), (1, 1), (2, 1), (0, 2), (1, 2), (2, 2))
COMMON_AXIS_MATRIX_INDEX = ((0, 0), (0, 1), (1, 1), (0, 2), (1, 2), (2, 2))


def _as_vector(value: np.ndarray, name: str) -> np.ndarray:
    value = np.asarray(value, dtype=float)
    if value.shape != (COMPONENTS,):
        raise ValueError(f"{name} must have shape (3,), got {value.shape}")
    return value


def _as_points(points: np.ndarray, name: str) -> np.ndarray:
    points = np.asarray(points, dtype=float)
    if points.ndim == 1:
        points = points.reshape(1, -1)
    if points.ndim != 2 or points.shape[1] != COMPONENTS:
        raise ValueError(f"{name} must have shape (N, 3), got {points.shape}")
    return points


def _as_matrix(value: np.ndarray, name: str) -> np.ndarray:
    value = np.asarray(value, dtype=float)
    if value.shape != (COMPONENTS, COMPONENTS):
        raise ValueError(f"{name} must have shape (3, 3), got {value.shape}")
    return value


def soft_iron_to_array(soft_iron: np.ndarray, common_axis_used: bool = False) -> np.ndarray:
    """
    Flatten a soft-iron matrix into its parameter layout.

    Args:
        soft_iron: Soft-iron matrix Mm, shape (3, 3).
        common_axis_used: If True, return only the 6 common-axis terms.

    Returns:
        Array [sx, sy, sz, mxy, mxz, myx, myz, mzx, mzy] (9,), or
        [sx, sy, sz, mxy, mxz, myz] (6,) for the common-axis layout.
    """
    soft_iron = _as_matrix(soft_iron, "soft_iron")
    names = COMMON_AXIS_SOFT_IRON_NAMES if common_axis_used else SOFT_IRON_NAMES
    return np.array([soft_iron[SOFT_IRON_INDEX[name]] for name in names])


def array_to_soft_iron(values: np.ndarray, common_axis_used: bool = False) -> np.ndarray:
    """Inverse of soft_iron_to_array. Missing common-axis terms are zero."""
    names = COMMON_AXIS_SOFT_IRON_NAMES if common_axis_used else SOFT_IRON_NAMES
    values = np.asarray(values, dtype=float)
    if values.shape != (len(names),):
        raise ValueError(f"Expected {len(names)} soft-iron values, got shape {values.shape}")
    soft_iron = np.zeros((COMPONENTS, COMPONENTS))
    for name, value in zip(names, values):
        soft_iron[SOFT_IRON_INDEX[name]] = value
    return soft_iron


class FrameMagnetometerModel:
    """
    Magnetometer model for measurements with known ground-truth field vectors.

    Measurement: b_meas = bm + b_true + Mm b_true

    The model is affine in its parameters, hence a linear least-squares solve
    gives the exact optimum and the Jacobian is independent of the parameters.

    Example:
        >>> model = FrameMagnetometerModel(common_axis_used=True)
        >>> model.n_params
        9
        >>> b_true = np.array([[2e-5, 0.0, 4e-5]])
        >>> params = model.pack(np.array([1e-6, 2e-6, -1e-6]), np.zeros((3, 3)))
        >>> model.h(params, b_true).shape
        (1, 3)
    """

    is_linear = True
    rank_deficiency = 0
    residual_dim = COMPONENTS

    def __init__(self, common_axis_used: bool = False, hard_iron: Optional[np.ndarray] = None):
        """
        Initialize frame model.

        Args:
            common_axis_used: If True, myx, mzx and mzy are fixed to zero.
            hard_iron: Known hard-iron bias (3,) [T]. If None, it is estimated.
        """
        self.common_axis_used = common_axis_used
        self.hard_iron = None if hard_iron is None else _as_vector(hard_iron, "hard_iron")

        soft_names = COMMON_AXIS_SOFT_IRON_NAMES if common_axis_used else SOFT_IRON_NAMES
        if self.hard_iron is None:
            self.param_names = HARD_IRON_NAMES + soft_names
        else:
            self.param_names = soft_names
        self.n_params = len(self.param_names)

    @property
    def estimates_hard_iron(self) -> bool:
        return self.hard_iron is None

    @property
    def minimum_measurements(self) -> int:
        """Each measurement provides 3 equations."""
        return 4 if self.estimates_hard_iron else 3

    def pack(self, hard_iron: np.ndarray, soft_iron: np.ndarray) -> np.ndarray:
        """Build a parameter vector from hard iron (3,) and soft-iron matrix (3, 3)."""
        soft = soft_iron_to_array(soft_iron, self.common_axis_used)
        if self.estimates_hard_iron:
            return np.concatenate([_as_vector(hard_iron, "hard_iron"), soft])
        return soft

    def unpack(self, params: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Split a parameter vector into (hard_iron, soft_iron)."""
        params = np.asarray(params, dtype=float)
        if params.shape != (self.n_params,):
            raise ValueError(f"params must have shape ({self.n_params},), got {params.shape}")
        if self.estimates_hard_iron:
            return params[:3].copy(), array_to_soft_iron(params[3:], self.common_axis_used)
        return self.hard_iron.copy(), array_to_soft_iron(params, self.common_axis_used)

    def h(self, params: np.ndarray, b_true: np.ndarray) -> np.ndarray:
        """
        Predicted measurements.

        Args:
            params: Parameter vector (n_params,).
            b_true: Ground-truth field vectors, shape (N, 3) [T].

        Returns:
            Predicted measured field vectors, shape (N, 3) [T].
        """
        b_true = _as_points(b_true, "b_true")
        hard_iron, soft_iron = self.unpack(params)
        return hard_iron + b_true + b_true @ soft_iron.T

    def H(self, params: np.ndarray, b_true: np.ndarray) -> np.ndarray:
        """
        Jacobian of the predicted measurements with respect to the parameters.

        ∂(Mm b_true)_i / ∂Mm[i, j] = b_true_j and ∂b_meas / ∂bm = I.

        Args:
            params: Parameter vector (n_params,). Unused, the model is affine.
            b_true: Ground-truth field vectors, shape (N, 3).

        Returns:
            Jacobian, shape (N, 3, n_params).
        """
        b_true = _as_points(b_true, "b_true")
        n = len(b_true)
        J = np.zeros((n, COMPONENTS, self.n_params))

        col = 0
        if self.estimates_hard_iron:
            for axis in range(COMPONENTS):
                J[:, axis, axis] = 1.0
            col = COMPONENTS

        for k, name in enumerate(self.param_names[col:]):
            row, c = SOFT_IRON_INDEX[name]
            J[:, row, col + k] = b_true[:, c]

        return J

    def residual_norms(
        self,
        hard_iron: np.ndarray,
        soft_iron: np.ndarray,
        b_true: np.ndarray,
        b_meas: np.ndarray,
    ) -> np.ndarray:
        """Euclidean distance between predicted and measured vectors, shape (N,)."""
        b_true = _as_points(b_true, "b_true")
        b_meas = _as_points(b_meas, "b_meas")
        predicted = hard_iron + b_true + b_true @ np.asarray(soft_iron).T
        return np.linalg.norm(predicted - b_meas, axis=1)


class NormMagnetometerModel:
    """
    Magnetometer model for measurements where only the field magnitude is known.

    With M = I + Mm and bm = M b:
        unknown hard iron:  f = ||M⁻¹ b_meas - b||²
        known hard iron:    f = ||M⁻¹ (b_meas - bm)||²
    and f is compared against ||b_true||².

    Writing u for the recovered true field and v = M⁻¹ b_meas (or M⁻¹ (b_meas - bm)):
        ∂f/∂b = -2 u
        ∂f/∂M[i, j] = -2 (M⁻ᵀ u)_i v_j

    Without the common-axis assumption the model is invariant to M → M Rᵀ,
    b → R b for any rotation R, so the information matrix has a rank deficiency
    of 3. The hard iron bm = M b is unaffected by this gauge.
    """

    is_linear = False
    residual_dim = 1

    def __init__(self, common_axis_used: bool = False, hard_iron: Optional[np.ndarray] = None):
        """
        Initialize norm model.

        Args:
            common_axis_used: If True, M is upper triangular.
            hard_iron: Known hard-iron bias (3,) [T]. If None, it is estimated.
        """
        self.common_axis_used = common_axis_used
        self.hard_iron = None if hard_iron is None else _as_vector(hard_iron, "hard_iron")
        self.matrix_index = COMMON_AXIS_MATRIX_INDEX if common_axis_used else GENERAL_MATRIX_INDEX

        matrix_names = tuple(f"m{i + 1}{j + 1}" for i, j in self.matrix_index)
        if self.hard_iron is None:
            self.param_names = HARD_IRON_NAMES + matrix_names
        else:
            self.param_names = matrix_names
        self.n_params = len(self.param_names)

    @property
    def estimates_hard_iron(self) -> bool:
        return self.hard_iron is None

    @property
    def minimum_measurements(self) -> int:
        """Each measurement provides a single equation."""
        return self.n_params + 1

    @property
    def rank_deficiency(self) -> int:
        return 0 if self.common_axis_used else 3

    def matrices(self, params: np.ndarray) -> Tuple[Optional[np.ndarray], np.ndarray]:
        """Split a parameter vector into (b, M). b is None for a known hard iron."""
        params = np.asarray(params, dtype=float)
        if params.shape != (self.n_params,):
            raise ValueError(f"params must have shape ({self.n_params},), got {params.shape}")

        offset = COMPONENTS if self.estimates_hard_iron else 0
        M = np.zeros((COMPONENTS, COMPONENTS))
        for k, index in enumerate(self.matrix_index):
            M[index] = params[offset + k]

        b = params[:COMPONENTS].copy() if self.estimates_hard_iron else None
        return b, M

    def pack(self, hard_iron: np.ndarray, soft_iron: np.ndarray) -> np.ndarray:
        """
        Build a parameter vector from hard iron bm (3,) and soft-iron matrix Mm (3, 3).

        Raises:
            np.linalg.LinAlgError: If I + Mm is singular.
        """
        M = np.eye(COMPONENTS) + _as_matrix(soft_iron, "soft_iron")
        if self.common_axis_used:
            for index in LOWER_TRIANGULAR_INDEX:
                M[index] = 0.0
        m_values = np.array([M[index] for index in self.matrix_index])

        if self.estimates_hard_iron:
            b = np.linalg.solve(M, _as_vector(hard_iron, "hard_iron"))
            return np.concatenate([b, m_values])
        return m_values

    def unpack(self, params: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Convert a parameter vector into (hard_iron, soft_iron) = (M b, M - I)."""
        b, M = self.matrices(params)
        soft_iron = M - np.eye(COMPONENTS)
        if self.estimates_hard_iron:
            return M @ b, soft_iron
        return self.hard_iron.copy(), soft_iron

    def _recover(self, params: np.ndarray, b_meas: np.ndarray):
        b, M = self.matrices(params)
        M_inv = np.linalg.inv(M)
        if self.estimates_hard_iron:
            v = b_meas @ M_inv.T
            u = v - b
        else:
            v = (b_meas - self.hard_iron) @ M_inv.T
            u = v
        return M_inv, u, v

    def h(self, params: np.ndarray, b_meas: np.ndarray) -> np.ndarray:
        """
        Predicted squared norm of the true field.

        Args:
            params: Parameter vector (n_params,).
            b_meas: Measured field vectors, shape (N, 3) [T].

        Returns:
            ||b_true||² estimates, shape (N,) [T²].

        Raises:
            np.linalg.LinAlgError: If M is singular.
        """
        b_meas = _as_points(b_meas, "b_meas")
        _, u, _ = self._recover(params, b_meas)
        return np.sum(u ** 2, axis=1)

    def H(self, params: np.ndarray, b_meas: np.ndarray) -> np.ndarray:
        """
        Jacobian of the predicted squared norm, shape (N, n_params).

        Raises:
            np.linalg.LinAlgError: If M is singular.
        """
        b_meas = _as_points(b_meas, "b_meas")
        M_inv, u, v = self._recover(params, b_meas)
        w = u @ M_inv  # rows of (M⁻ᵀ u)ᵀ

        J = np.zeros((len(b_meas), self.n_params))
        col = 0
        if self.estimates_hard_iron:
            J[:, :COMPONENTS] = -2.0 * u
            col = COMPONENTS

        for k, (i, j) in enumerate(self.matrix_index):
            J[:, col + k] = -2.0 * w[:, i] * v[:, j]

        return J

    def residual_norms(
        self,
        hard_iron: np.ndarray,
        soft_iron: np.ndarray,
        b_meas: np.ndarray,
        norms: np.ndarray,
    ) -> np.ndarray:
        """
        Difference between recovered and expected field magnitude, shape (N,).

        Raises:
            np.linalg.LinAlgError: If I + Mm is singular.
        """
        b_meas = _as_points(b_meas, "b_meas")
        M = np.eye(COMPONENTS) + np.asarray(soft_iron)
        b_true = np.linalg.solve(M, (b_meas - hard_iron).T).T
        return np.abs(np.linalg.norm(b_true, axis=1) - norms)
