# Import necessary modules
# ------------------------------------------------------------------------------------------------ #
import numpy as np
import numpy.typing as npt
from scipy.optimize import brentq
from typing import Iterable, Tuple, Union

from .numerics import as_output
# ------------------------------------------------------------------------------------------------ #

ArrayLike = Union[float, npt.NDArray[np.float64]]


class SphericalPotential:
    """
    Base class for spherically-symmetric potentials Phi(r), with Phi -> 0 as r -> infinity.

    Subclasses implement `eval_deriv`, returning the potential and its first two
    radial derivatives; all methods accept scalars or numpy arrays.
    """
    num_derivs = 2

    def eval_deriv(self, r: ArrayLike) -> Tuple[ArrayLike, ArrayLike, ArrayLike]:
        raise NotImplementedError("Subclasses must implement eval_deriv(r).")

    def value(self, r: ArrayLike) -> ArrayLike:
        return self.eval_deriv(r)[0]

    def __call__(self, r: ArrayLike) -> ArrayLike:
        return self.value(r)

    def __add__(self, other: "SphericalPotential") -> "CompositePotential":
        return CompositePotential([self, other])

    def _check_positive(self, **params):
        for name, val in params.items():
            if not (np.isfinite(val) and val > 0):
                raise ValueError(f"{name} must be positive and finite, got {val}.")


class Plummer(SphericalPotential):
    """
    Plummer sphere: Phi(r) = -M / sqrt(r^2 + a^2).
    """
    def __init__(self, mass: float = 1.0, scale_radius: float = 1.0):
        self._check_positive(mass=mass, scale_radius=scale_radius)
        self.mass = float(mass)
        self.scale_radius = float(scale_radius)

    def eval_deriv(self, r):
        r = np.asarray(r, dtype=float)
        M, a = self.mass, self.scale_radius
        q = r * r + a * a
        phi = -M / np.sqrt(q)
        der = M * r / q**1.5
        der2 = M * (a * a - 2 * r * r) / q**2.5
        return as_output(phi), as_output(der), as_output(der2)

    def density(self, r: ArrayLike) -> ArrayLike:
        """Density profile rho(r) = 3M / (4 pi a^3) (1 + r^2/a^2)^(-5/2)."""
        a = self.scale_radius
        return 3 * self.mass / (4 * np.pi * a**3) * (1 + np.square(r) / a**2) ** -2.5

    def surface_density(self, R: ArrayLike) -> ArrayLike:
        """Projected density Sigma(R) = M a^2 / (pi (a^2 + R^2)^2)."""
        a2 = self.scale_radius**2
        return self.mass * a2 / (np.pi * (a2 + np.square(R)) ** 2)

    def __str__(self):
        return f"Plummer(mass={self.mass}, scale_radius={self.scale_radius})"


class Dehnen(SphericalPotential):
    """
    Dehnen (1993) family of potentials with inner density slope gamma:

        Phi(r) = -M / a / (2 - gamma) * [1 - (r / (r + a))^(2 - gamma)]
    """
    def __init__(self, mass: float = 1.0, scale_radius: float = 1.0, gamma: float = 1.0):
        self._check_positive(mass=mass, scale_radius=scale_radius)
        if not (0 <= gamma < 2):
            raise ValueError(f"gamma must lie in [0, 2), got {gamma}.")
        self.mass = float(mass)
        self.scale_radius = float(scale_radius)
        self.gamma = float(gamma)

    def eval_deriv(self, r):
        r = np.asarray(r, dtype=float)
        M, a, g = self.mass, self.scale_radius, self.gamma
        with np.errstate(divide="ignore", invalid="ignore"):
            phi = -M / a / (2 - g) * (1 - (r / (r + a)) ** (2 - g))
            der = M * r ** (1 - g) * (r + a) ** (g - 3)
            der2 = M * r ** (-g) * (r + a) ** (g - 4) * ((1 - g) * a - 2 * r)
        return as_output(phi), as_output(der), as_output(der2)

    def __str__(self):
        return f"Dehnen(mass={self.mass}, scale_radius={self.scale_radius}, gamma={self.gamma})"


class Hernquist(Dehnen):
    """Hernquist (1990) potential, the gamma = 1 member of the Dehnen family."""
    def __init__(self, mass: float = 1.0, scale_radius: float = 1.0):
        super().__init__(mass, scale_radius, gamma=1.0)


class Isochrone(SphericalPotential):
    """
    Henon's isochrone: Phi(r) = -M / (b + sqrt(b^2 + r^2)).
    """
    def __init__(self, mass: float = 1.0, scale_radius: float = 1.0):
        self._check_positive(mass=mass, scale_radius=scale_radius)
        self.mass = float(mass)
        self.scale_radius = float(scale_radius)

    def eval_deriv(self, r):
        r = np.asarray(r, dtype=float)
        M, b = self.mass, self.scale_radius
        s = np.sqrt(b * b + r * r)
        phi = -M / (b + s)
        der = M * r / (s * (b + s) ** 2)
        der2 = M * (1 / (s * (b + s) ** 2) - r * r / (s**3 * (b + s) ** 2) - 2 * r * r / (s**2 * (b + s) ** 3))
        return as_output(phi), as_output(der), as_output(der2)


class NFW(SphericalPotential):
    """
    Navarro-Frenk-White potential: Phi(r) = -M ln(1 + r/a) / r,
    where M is the mass normalisation (not the total mass, which diverges).
    """
    # below this value of r/a, series expansions replace the closed-form expressions
    SERIES_THRESHOLD = 1e-4

    def __init__(self, mass: float = 1.0, scale_radius: float = 1.0):
        self._check_positive(mass=mass, scale_radius=scale_radius)
        self.mass = float(mass)
        self.scale_radius = float(scale_radius)

    def eval_deriv(self, r):
        r = np.asarray(r, dtype=float)
        M, a = self.mass, self.scale_radius
        x = r / a
        small = x < self.SERIES_THRESHOLD
        xs = np.where(small, 1.0, x)  # placeholder to keep the closed forms finite
        log1p = np.log1p(xs)
        phi = np.where(small, -(1 - x / 2 + x * x / 3), -log1p / xs) * M / a
        der = np.where(small, 0.5 - 2 * x / 3 + 0.75 * x * x, log1p / xs**2 - 1 / (xs * (1 + xs))) * M / a**2
        der2 = np.where(
            small, -2.0 / 3 + 1.5 * x,
            (2 + 3 * xs) / (xs**2 * (1 + xs) ** 2) - 2 * log1p / xs**3
        ) * M / a**3
        return as_output(phi), as_output(der), as_output(der2)


class Kepler(SphericalPotential):
    """
    Potential of a central point mass, Phi(r) = -M / r, with Phi(0) = -infinity.
    """
    def __init__(self, mass: float = 1.0):
        self._check_positive(mass=mass)
        self.mass = float(mass)

    def eval_deriv(self, r):
        r = np.asarray(r, dtype=float)
        M = self.mass
        with np.errstate(divide="ignore"):
            phi = -M / r
            der = M / r**2
            der2 = -2 * M / r**3
        return as_output(phi), as_output(der), as_output(der2)


class CompositePotential(SphericalPotential):
    """Sum of several spherical potentials."""
    def __init__(self, components: Iterable[SphericalPotential]):
        self.components = list(components)
        if not self.components:
            raise ValueError("CompositePotential requires at least one component.")

    def eval_deriv(self, r):
        phi = der = der2 = 0.0
        for comp in self.components:
            p, d, d2 = comp.eval_deriv(r)
            phi, der, der2 = phi + p, der + d, der2 + d2
        return phi, der, der2


# Free functions of a potential
# ------------------------------------------------------------------------------------------------ #

def _solve_radius(fnc, target: float) -> float:
    """Find r such that fnc(r) = target, for a function increasing from fnc(0) to 0."""
    r_lo, r_hi = 1.0, 1.0
    while fnc(r_hi) < target:
        r_hi *= 2
        if r_hi > 1e300:
            return np.inf
    while fnc(r_lo) > target:
        r_lo *= 0.5
        if r_lo < 1e-300:
            return 0.0
    if r_lo == r_hi:
        r_lo *= 0.5
    return brentq(lambda r: fnc(r) - target, r_lo, r_hi, xtol=1e-15 * r_hi, rtol=4 * np.finfo(float).eps)


def r_max(pot: SphericalPotential, E: float) -> float:
    """
    Radius at which Phi(r) = E, i.e. the apocentre radius of a radial orbit with energy E.
    Returns 0 for E <= Phi(0) and infinity for E >= 0.
    """
    E = float(E)
    if E >= 0:
        return np.inf
    if E <= float(pot(0.0)):
        return 0.0
    return _solve_radius(lambda r: float(pot(r)), E)


def r_circ(pot: SphericalPotential, E: float) -> float:
    """
    Radius of a circular orbit with energy E, solving Phi(r) + r Phi'(r) / 2 = E.
    """
    E = float(E)
    if E >= 0:
        return np.inf
    if E <= float(pot(0.0)):
        return 0.0

    def circ_energy(r):
        phi, der, _ = pot.eval_deriv(r)
        return float(phi + 0.5 * r * der)

    return _solve_radius(circ_energy, E)


def v_circ(pot: SphericalPotential, r: ArrayLike) -> ArrayLike:
    """Circular velocity sqrt(r dPhi/dr)."""
    der = pot.eval_deriv(r)[1]
    return np.sqrt(np.asarray(r) * der)


def inner_slope(pot: SphericalPotential, r: float = 1e-6) -> Tuple[float, float]:
    """
    Power-law index of the potential near the origin.

    The potential is approximated as Phi(r) - Phi(0) ~ coef r^slope if Phi(0) is finite,
    or Phi(r) ~ coef r^slope otherwise (slope = -1 indicates a central point mass).

    Parameters
    ----------
    pot : SphericalPotential
        The potential.
    r : float, optional
        Small radius at which the logarithmic derivatives are evaluated.

    Returns
    -------
    slope, coef : float
        Power-law index and coefficient.
    """
    phi, der, der2 = pot.eval_deriv(r)
    phi0 = float(pot(0.0))
    slope = 1 + r * der2 / der
    if np.isfinite(phi0):
        coef = (phi - phi0) / r**slope
    else:
        coef = phi / r**slope
    return float(slope), float(coef)
