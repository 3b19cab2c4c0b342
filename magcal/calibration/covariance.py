"""
Covariance propagation between parameterizations.

Fits are carried out in a reduced or model-specific parameter vector p, while
results are reported in the full layout
    q = [bx, by, bz, sx, sy, sz, mxy, mxz, myx, myz, mzx, mzy]
(or q without the hard-iron block when it is known). For q = g(p) with
Jacobian J = ∂q/∂p, the covariance is propagated to first order:

    Cov_q = J · Cov_p · Jᵀ

Common-axis embedding:
    J is a fixed 0/1 matrix. Reduced parameters map to their full-layout slot
    and the rows of myx, mzx and mzy are zero, so those parameters receive
    zero variance and zero covariance with every other parameter.

Norm-model conversion:
    Norm models are fitted in (b, M) with bm = M b and Mm = M - I:
        ∂bm/∂b = M,   ∂bm_r/∂M[i, j] = δ_ri b_j,   ∂Mm[i, j]/∂M[i, j] = 1
"""

import numpy as np

from magcal.models import (
    COMPONENTS,
    HARD_IRON_NAMES,
    SOFT_IRON_INDEX,
    SOFT_IRON_NAMES,
    FrameMagnetometerModel,
    NormMagnetometerModel,
)

_FULL_SOFT_IRON_SLOT = {SOFT_IRON_INDEX[name]: k for k, name in enumerate(SOFT_IRON_NAMES)}


def propagate_covariance(covariance: np.ndarray, jacobian: np.ndarray) -> np.ndarray:
    """
    Propagate a covariance matrix through a linear(ized) map.

    Args:
        covariance: Covariance of the source parameters (n × n).
        jacobian: Jacobian of the map (k × n).

    Returns:
        Symmetric covariance of the target parameters (k × k).

    Raises:
        ValueError: If dimensions are inconsistent.
    """
    covariance = np.asarray(covariance, dtype=float)
    jacobian = np.asarray(jacobian, dtype=float)

    if covariance.ndim != 2 or covariance.shape[0] != covariance.shape[1]:
        raise ValueError(f"covariance must be square, got shape {covariance.shape}")
    if jacobian.ndim != 2 or jacobian.shape[1] != covariance.shape[0]:
        raise ValueError(
            f"jacobian shape {jacobian.shape} incompatible with covariance "
            f"shape {covariance.shape}"
        )

    propagated = jacobian @ covariance @ jacobian.T
    return 0.5 * (propagated + propagated.T)


def common_axis_embedding(hard_iron_estimated: bool = True) -> np.ndarray:
    """
    Embedding of the common-axis parameters into the full layout.

    With hard iron estimated the map is 12 × 9
        [bx by bz sx sy sz mxy mxz myz] → [bx by bz sx sy sz mxy mxz myx myz mzx mzy]
    and 9 × 6 without the hard-iron block.
    """
    reduced_names = ("sx", "sy", "sz", "mxy", "mxz", "myz")
    full_names = SOFT_IRON_NAMES
    if hard_iron_estimated:
        reduced_names = HARD_IRON_NAMES + reduced_names
        full_names = HARD_IRON_NAMES + full_names

    J = np.zeros((len(full_names), len(reduced_names)))
    for col, name in enumerate(reduced_names):
        J[full_names.index(name), col] = 1.0
    return J


def expand_common_axis_covariance(
    covariance: np.ndarray, hard_iron_estimated: bool = True
) -> np.ndarray:
    """
    Expand a common-axis covariance (9 × 9, or 6 × 6 with known hard iron)
    into the full layout (12 × 12, or 9 × 9).
    """
    return propagate_covariance(covariance, common_axis_embedding(hard_iron_estimated))


def norm_conversion_jacobian(model: NormMagnetometerModel, params: np.ndarray) -> np.ndarray:
    """
    Jacobian of the conversion from norm-model parameters to the full layout.

    Args:
        model: Norm-based model defining the parameter layout.
        params: Norm-model parameter vector at which to linearize.

    Returns:
        Jacobian (12 × n_params) with hard iron estimated, (9 × n_params) otherwise.
    """
    b, M = model.matrices(params)
    offset = COMPONENTS if model.estimates_hard_iron else 0
    J = np.zeros((offset + len(SOFT_IRON_NAMES), model.n_params))

    if model.estimates_hard_iron:
        J[:COMPONENTS, :COMPONENTS] = M

    for k, (i, j) in enumerate(model.matrix_index):
        col = offset + k
        if model.estimates_hard_iron:
            J[i, col] = b[j]
        J[offset + _FULL_SOFT_IRON_SLOT[(i, j)], col] = 1.0

    return J


def full_covariance(model, params: np.ndarray, covariance: np.ndarray) -> np.ndarray:
    """
    Express a fitted covariance in the full parameter layout.

    Args:
        model: FrameMagnetometerModel or NormMagnetometerModel used for the fit.
        params: Fitted parameter vector of the model.
        covariance: Covariance of params (n_params × n_params).

    Returns:
        Covariance in the full layout.
    """
    if isinstance(model, NormMagnetometerModel):
        return propagate_covariance(covariance, norm_conversion_jacobian(model, params))
    if isinstance(model, FrameMagnetometerModel):
        if model.common_axis_used:
            return expand_common_axis_covariance(covariance, model.estimates_hard_iron)
        return propagate_covariance(covariance, np.eye(model.n_params))
    raise TypeError(f"Unsupported model type: {type(model).__name__}")
