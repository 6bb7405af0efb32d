# Import necessary modules
# ------------------------------------------------------------------------------------------------ #
import numpy as np
import numpy.typing as npt
from typing import Tuple, Union

from .model import SphericalIsotropicModel
from .numerics import GLORDER, as_output, gl_nodes_weights
from .potential import SphericalPotential, r_max
# ------------------------------------------------------------------------------------------------ #

ArrayLike = Union[float, npt.NDArray[np.float64]]


def dif_coef_energy(model: SphericalIsotropicModel, E: ArrayLike) -> Tuple[ArrayLike, ArrayLike]:
    """
    Orbit-averaged energy diffusion coefficients <Delta E> and <Delta E^2>
    (per unit Coulomb logarithm) for a test star of energy E.

    Parameters
    ----------
    model : SphericalIsotropicModel
        The isotropic model describing the field stars.
    E : float or np.ndarray
        Energy of the test star.

    Returns
    -------
    DeltaE, DeltaE2 : float or np.ndarray
        The first- and second-order energy diffusion coefficients.
    """
    h, g = model.phasevol.eval_deriv(E)
    h, g = np.asarray(h), np.asarray(g)
    total_mass = model.cumul_mass()
    IF = np.asarray(model.I0(h))
    IFG = np.asarray(model.cumul_mass(h))
    IFH = np.asarray(model.cumul_ekin(h)) * (2.0 / 3)
    DeltaE = 16 * np.pi**2 * total_mass * (IF - IFG / g)
    DeltaE2 = 32 * np.pi**2 * total_mass * (IF * h + IFH) / g
    return as_output(DeltaE), as_output(DeltaE2)


def dif_coef_losscone(model: SphericalIsotropicModel, pot: SphericalPotential, E: float) -> float:
    """
    Orbit-averaged angular-momentum diffusion coefficient in the limit of small angular momentum,

        D(E) = 8 pi^2 / g(E) int_0^{r_max(E)} r^2 / v(E, r) <Delta v_per^2> dr,

    which governs the flux of stars into the loss cone of a central black hole.
    The part depending on I0(E) is integrated analytically; the remaining double
    integral over radius and energy uses a fixed-order Gauss-Legendre rule in both variables.

    Parameters
    ----------
    model : SphericalIsotropicModel
        The isotropic model describing the field stars.
    pot : SphericalPotential
        The potential the model lives in.
    E : float
        Energy of the test star.

    Returns
    -------
    float
        The diffusion coefficient D_RR / R at R = 0.
    """
    E = float(E)
    h = float(model.phasevol(E))
    rmax = r_max(pot, E)
    _, g, dgdh = model.phasevol.energy_deriv(h)
    result = 2.0 / 3 * dgdh * float(model.I0(h))

    nodes, weights = gl_nodes_weights(GLORDER)
    r = nodes * rmax
    phi = np.asarray(pot(r), dtype=float)
    w = 8 * np.pi**2 * rmax / g * r**2 * weights
    # inner integral over the scaled energy variable (E' - Phi) / (E - Phi)
    Ep = E * nodes[None, :] + phi[:, None] * (1 - nodes[None, :])
    fEp = np.asarray(model.value(model.phasevol(Ep)))
    vp = np.sqrt(2 * (Ep - phi[:, None]))
    result += np.sum(weights[None, :] * w[:, None] * fEp * vp * (1 - nodes[None, :] / 3))
    return float(result * 16 * np.pi**2 * model.cumul_mass())
