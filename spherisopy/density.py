# Import necessary modules
# ------------------------------------------------------------------------------------------------ #
import numpy as np
import numpy.typing as npt
from typing import Callable, Tuple, Union

from .df import as_scalar_function
from .numerics import GLORDER, gl_nodes_weights
from .phasevolume import PhaseVolume
# ------------------------------------------------------------------------------------------------ #


def compute_density(
        df,
        phasevol: PhaseVolume,
        grid_phi: npt.ArrayLike,
        return_vel_disp: bool = False
    ) -> Union[npt.NDArray[np.float64], Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]]:
    """
    Density (and optionally the 1D velocity dispersion) generated by an isotropic DF,

        rho(Phi)     = 4 pi sqrt(2) int_Phi^0 f(E) sqrt(E - Phi) dE,
        sigma^2(Phi) = 2/3 int_Phi^0 f(E) (E - Phi)^{3/2} dE / int_Phi^0 f(E) (E - Phi)^{1/2} dE.

    The integrals are evaluated with a fixed-order Gauss-Legendre rule on each segment
    [Phi_i, Phi_{i+1}] of the grid (the last one extending to 0), using the substitution
    Phi = Phi_i + y^2 (Phi_{i+1} - Phi_i) that removes the square-root endpoint behaviour.

    Parameters
    ----------
    df : ScalarFunction or callable
        Distribution function f(h).
    phasevol : PhaseVolume
        Phase volume of the potential.
    grid_phi : array_like
        Strictly increasing grid of negative potential values.
    return_vel_disp : bool, optional
        Whether to also return the velocity dispersion (default False).

    Returns
    -------
    rho : np.ndarray
        Density at each grid node.
    sigma : np.ndarray
        Velocity dispersion at each grid node (only if `return_vel_disp` is True).

    Raises
    ------
    ValueError
        If the grid is not monotonically increasing or not negative.
    """
    df = as_scalar_function(df)
    grid_phi = np.asarray(grid_phi, dtype=float)
    n = grid_phi.size
    delta = np.append(grid_phi[1:], 0.0) - grid_phi
    if n == 0 or not np.all(delta > 0):
        raise ValueError("computeDensity: grid in Phi must be monotonically increasing and negative")
    nodes, weights = gl_nodes_weights(GLORDER)
    rho = np.zeros(n)
    moment = np.zeros(n)
    for i in range(n):
        phi = grid_phi[i] + nodes**2 * delta[i]
        weight = weights * 2 * nodes * delta[i] * np.asarray(df(phasevol(phi))) * (4 * np.pi * np.sqrt(2))
        # contributions to rho(Phi_j) for all Phi_j <= Phi_i
        dif = np.maximum(phi[None, :] - grid_phi[: i + 1, None], 0.0)
        val = np.sqrt(dif) * weight[None, :]
        rho[: i + 1] += np.sum(val, axis=1)
        if return_vel_disp:
            moment[: i + 1] += np.sum(val * dif, axis=1)
    if return_vel_disp:
        return rho, np.sqrt(2.0 / 3 * moment / rho)
    return rho


def compute_projected_density(
        dens: Callable[[npt.NDArray[np.float64]], npt.NDArray[np.float64]],
        vel_disp: Callable[[npt.NDArray[np.float64]], npt.NDArray[np.float64]],
        grid_r: npt.ArrayLike
    ) -> Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """
    Surface density and line-of-sight velocity dispersion by Abel projection,

        Sigma(R)              = 2 int_R^inf rho(r) r / sqrt(r^2 - R^2) dr,
        Sigma(R) sigma_los^2  = 2 int_R^inf rho(r) sigma^2(r) r / sqrt(r^2 - R^2) dr.

    Each segment [R_i, R_{i+1}] uses the substitution r = R_i + y^2 (R_{i+1} - R_i);
    the last one is mapped onto [R_last, inf) by r = R_last / (1 - y^2).

    Parameters
    ----------
    dens : callable
        Density profile rho(r) (vectorised).
    vel_disp : callable
        1D velocity dispersion profile sigma(r) (vectorised).
    grid_r : array_like
        Strictly increasing grid of positive projected radii.

    Returns
    -------
    Sigma, sigma_los : np.ndarray
        Surface density and line-of-sight velocity dispersion at each grid node.

    Raises
    ------
    ValueError
        If the grid is not monotonically increasing or not positive.
    """
    grid_r = np.asarray(grid_r, dtype=float)
    n = grid_r.size
    if n == 0 or not (grid_r[0] > 0 and np.all(np.diff(grid_r) > 0)):
        raise ValueError("computeProjectedDensity: grid in R must be monotonically increasing")
    nodes, weights = gl_nodes_weights(GLORDER)
    sigma = np.zeros(n)
    moment = np.zeros(n)
    for i in range(n):
        if i == n - 1:
            delta = grid_r[i]
            r = grid_r[i] / (1 - nodes**2)
            jac = 2 * nodes / (1 - nodes**2) ** 2
        else:
            delta = grid_r[i + 1] - grid_r[i]
            r = grid_r[i] + nodes**2 * delta
            jac = 2 * nodes
        weight = weights * jac * delta * np.asarray(dens(r)) * 2 * r
        velsq = np.asarray(vel_disp(r)) ** 2
        # contributions to Sigma(R_j) for all R_j < r
        dif = r[None, :] ** 2 - grid_r[: i + 1, None] ** 2
        val = weight[None, :] / np.sqrt(dif)
        sigma[: i + 1] += np.sum(val, axis=1)
        moment[: i + 1] += np.sum(val * velsq[None, :], axis=1)
    return sigma, np.sqrt(moment / sigma)
