# Import necessary modules
# ------------------------------------------------------------------------------------------------ #
import numpy as np
import numpy.typing as npt
from scipy.interpolate import BPoly
from typing import Optional, Tuple, Union

from .numerics import as_output, segment_nodes
from .potential import SphericalPotential
# ------------------------------------------------------------------------------------------------ #

ArrayLike = Union[float, npt.NDArray[np.float64]]


class PhaseVolume:
    """
    Phase volume h(E) enclosed by the energy surface E in a spherical potential,
    and its inverse E(h).

    The phase volume and the density of states g(E) = dh/dE are

        h(E) = 16 pi^2 / 3  int_0^{r_max(E)} r^2 [2 (E - Phi(r))]^{3/2} dr,
        g(E) = 16 pi^2      int_0^{r_max(E)} r^2 [2 (E - Phi(r))]^{1/2} dr.

    Both are computed at energies E_i = Phi(r_i) on a logarithmic radial grid, and
    log(h) is interpolated by a quintic Hermite spline in the scaled energy variable

        s = log(1/Phi(0) - 1/E),

    in which log(h) is asymptotically linear at both ends (power-law behaviour of
    h(E) near the centre and at E -> 0). Beyond the tabulated range the spline is
    extrapolated linearly.

    Attributes
    ----------
    pot : SphericalPotential
        The underlying potential.
    phi0 : float
        Value of the potential at the origin (may be -inf).
    """
    # geometric ratio and number of sub-intervals in the radial quadrature
    _RADIAL_RATIO = 0.3
    _RADIAL_LEVELS = 12
    _RADIAL_ORDER = 10
    # number of Newton iterations for the inverse E(h)
    _NEWTON_ITER = 30

    def __init__(
            self,
            pot: SphericalPotential,
            r_min: float = 1e-4,
            r_max: float = 1e4,
            num_points: int = 100
        ):
        """
        Initialise the phase volume for a given potential.

        Parameters
        ----------
        pot : SphericalPotential
            Spherical potential tending to zero at infinity.
        r_min, r_max : float, optional
            Radial range of the tabulation grid (default 1e-4 .. 1e4).
        num_points : int, optional
            Number of grid nodes (default 100).

        Raises
        ------
        ValueError
            If the grid parameters are invalid, or the potential is not monotonically
            increasing and negative on the grid.
        """
        if not (0 < r_min < r_max) or num_points < 4:
            raise ValueError(f"Invalid radial grid: r_min={r_min}, r_max={r_max}, num_points={num_points}")
        self.pot = pot
        self.phi0 = float(pot(0.0))
        self._inv_phi0 = 1.0 / self.phi0 if np.isfinite(self.phi0) else 0.0

        radii = np.geomspace(r_min, r_max, num_points)
        phi = np.asarray(pot(radii), dtype=float)
        if not (np.all(np.isfinite(phi)) and np.all(np.diff(phi) > 0) and phi[-1] < 0):
            raise ValueError("Potential must be finite, negative and monotonically increasing with radius.")
        if not (self.phi0 < phi[0]):
            raise ValueError(f"Potential at the origin Phi(0)={self.phi0} is not below Phi(r_min)={phi[0]}.")
        if np.isfinite(self.phi0):
            # nodes too close to the centre suffer from cancellation in E - Phi(0)
            keep = phi - self.phi0 > 1e-8 * abs(self.phi0)
            radii, phi = radii[keep], phi[keep]
            if radii.size < 4:
                raise ValueError("Too few usable grid nodes; increase r_min.")

        h, g, dgde = self._node_integrals(radii, phi)
        s = self._scaled_energy(phi)
        es = phi * phi * np.exp(s)  # dE/ds
        logh = np.log(h)
        der1 = g * es / h
        der2 = dgde * es * es / h + der1 * (1 + 2 * phi * np.exp(s)) - der1 * der1

        self._s = s
        self._logh = logh
        self._der1 = der1
        self._spline = BPoly.from_derivatives(s, np.column_stack([logh, der1, der2]), orders=5)
        self._spline_d1 = self._spline.derivative(1)
        self._spline_d2 = self._spline.derivative(2)

    # Construction helpers
    # -------------------------------------------------------------------------------------------- #

    def _node_integrals(self, radii, phi):
        """Compute h, g and dg/dE at energies E_i = Phi(r_i) by composite scaled quadrature."""
        levels = self._RADIAL_RATIO ** np.arange(self._RADIAL_LEVELS, -1, -1)
        fractions = np.concatenate([[0.0], levels])
        lower, upper = fractions[:-1], fractions[1:]
        # cubic substitution on every sub-interval removes the endpoint singularities
        t, w = segment_nodes(np.zeros(lower.size), np.ones(lower.size), self._RADIAL_ORDER)
        u = lower[:, None] + (upper - lower)[:, None] * t * t * (3 - 2 * t)
        w = w * 6 * t * (1 - t) * (upper - lower)[:, None]
        u, w = u.ravel(), w.ravel()

        h = np.empty(radii.size)
        g = np.empty(radii.size)
        dgde = np.empty(radii.size)
        for i, (rad, E) in enumerate(zip(radii, phi)):
            r = rad * u
            dE = np.maximum(E - np.asarray(self.pot(r), dtype=float), 0.0)
            v = np.sqrt(2 * dE)
            weight = 16 * np.pi**2 * rad * w * r * r
            h[i] = np.sum(weight * v**3) / 3
            g[i] = np.sum(weight * v)
            with np.errstate(divide="ignore"):
                dgde[i] = np.sum(np.where(v > 0, weight / np.where(v > 0, v, 1.0), 0.0))
        return h, g, dgde

    def _scaled_energy(self, E):
        if np.isfinite(self.phi0):
            return np.log((E - self.phi0) / (E * self.phi0))
        return np.log(-1.0 / E)

    def _energy_from_scaled(self, s):
        if np.isfinite(self.phi0):
            return self.phi0 / (1 - self.phi0 * np.exp(s))
        return -np.exp(-s)

    def _logh_of_s(self, s):
        """log(h), d log(h)/ds, d^2 log(h)/ds^2 with linear extrapolation."""
        s0, s1 = self._s[0], self._s[-1]
        val = np.empty_like(s)
        d1 = np.empty_like(s)
        d2 = np.zeros_like(s)
        lo, hi = s < s0, s > s1
        mid = ~(lo | hi)
        val[lo] = self._logh[0] + self._der1[0] * (s[lo] - s0)
        d1[lo] = self._der1[0]
        val[hi] = self._logh[-1] + self._der1[-1] * (s[hi] - s1)
        d1[hi] = self._der1[-1]
        val[mid] = self._spline(s[mid])
        d1[mid] = self._spline_d1(s[mid])
        d2[mid] = self._spline_d2(s[mid])
        return val, d1, d2

    def _s_of_logh(self, logh):
        """Invert log(h)(s) by Newton iterations safeguarded within the bracketing segment."""
        s = np.empty_like(logh)
        lo, hi = logh < self._logh[0], logh > self._logh[-1]
        mid = ~(lo | hi)
        s[lo] = self._s[0] + (logh[lo] - self._logh[0]) / self._der1[0]
        s[hi] = self._s[-1] + (logh[hi] - self._logh[-1]) / self._der1[-1]
        if np.any(mid):
            target = logh[mid]
            seg = np.clip(np.searchsorted(self._logh, target, side="right") - 1, 0, self._s.size - 2)
            a, b = self._s[seg], self._s[seg + 1]
            la, lb = self._logh[seg], self._logh[seg + 1]
            x = a + (b - a) * (target - la) / (lb - la)
            for _ in range(self._NEWTON_ITER):
                step = (self._spline(x) - target) / self._spline_d1(x)
                x_new = np.clip(x - step, a, b)
                converged = np.all(np.abs(x_new - x) <= 1e-15 * (1 + np.abs(x)))
                x = x_new
                if converged:
                    break
            s[mid] = x
        return s

    # Public interface
    # -------------------------------------------------------------------------------------------- #

    def __call__(self, E: ArrayLike) -> ArrayLike:
        """Phase volume h(E); zero for E <= Phi(0) and infinite for E >= 0."""
        return self.eval_deriv(E)[0]

    def eval_deriv(self, E: ArrayLike) -> Tuple[ArrayLike, ArrayLike]:
        """
        Phase volume and density of states.

        Parameters
        ----------
        E : float or np.ndarray
            Energy.

        Returns
        -------
        h, g : float or np.ndarray
            h(E) and g(E) = dh/dE.
        """
        E = np.asarray(E, dtype=float)
        Ef = np.atleast_1d(E).ravel()
        h = np.zeros_like(Ef)
        g = np.zeros_like(Ef)
        h[Ef >= 0] = np.inf
        g[Ef >= 0] = np.inf
        bound = (Ef > self.phi0) & (Ef < 0)
        if np.any(bound):
            Eb = Ef[bound]
            s = self._scaled_energy(Eb)
            logh, d1, _ = self._logh_of_s(s)
            h[bound] = np.exp(logh)
            g[bound] = h[bound] * d1 / (Eb * Eb * np.exp(s))
        return as_output(h.reshape(E.shape)), as_output(g.reshape(E.shape))

    def energy(self, h: ArrayLike) -> ArrayLike:
        """Energy E(h); Phi(0) for h = 0 and 0 for h = infinity."""
        return self.energy_deriv(h)[0]

    def energy_deriv(self, h: ArrayLike) -> Tuple[ArrayLike, ArrayLike, ArrayLike]:
        """
        Energy as a function of phase volume, with the density of states and its derivative.

        Parameters
        ----------
        h : float or np.ndarray
            Phase volume (non-negative).

        Returns
        -------
        E, g, dgdh : float or np.ndarray
            E(h), g(h) = dh/dE and dg/dh.
        """
        h = np.asarray(h, dtype=float)
        hf = np.atleast_1d(h).ravel()
        E = np.empty_like(hf)
        g = np.empty_like(hf)
        dgdh = np.empty_like(hf)
        zero, inf = hf <= 0, np.isinf(hf)
        E[zero], g[zero], dgdh[zero] = self.phi0, 0.0, np.inf
        E[inf], g[inf], dgdh[inf] = 0.0, np.inf, 0.0
        mid = ~(zero | inf)
        if np.any(mid):
            s = self._s_of_logh(np.log(hf[mid]))
            _, d1, d2 = self._logh_of_s(s)
            Em = self._energy_from_scaled(s)
            es = Em * Em * np.exp(s)
            E[mid] = Em
            g[mid] = hf[mid] * d1 / es
            dgdh[mid] = (d1 * d1 + d2 - d1 * (1 + 2 * Em * np.exp(s))) / (es * d1)
        return (as_output(E.reshape(h.shape)), as_output(g.reshape(h.shape)),
                as_output(dgdh.reshape(h.shape)))

    def delta_e(self, logh1: ArrayLike, logh0: float) -> Tuple[ArrayLike, ArrayLike]:
        """
        Energy difference E(h1) - E(h0) computed without cancellation, and g(h1).

        Parameters
        ----------
        logh1 : float or np.ndarray
            log(h1).
        logh0 : float
            log(h0).

        Returns
        -------
        dE, g1 : float or np.ndarray
            E(h1) - E(h0) and the density of states at h1.
        """
        logh1 = np.asarray(logh1, dtype=float)
        l1 = np.atleast_1d(logh1).ravel()
        s1 = self._s_of_logh(l1)
        s0 = self._s_of_logh(np.atleast_1d(float(logh0)))[0]
        E1 = self._energy_from_scaled(s1)
        E0 = self._energy_from_scaled(s0)
        _, d1, _ = self._logh_of_s(s1)
        dE = E1 * E0 * np.exp(s0) * np.expm1(s1 - s0)
        g1 = np.exp(l1) * d1 / (E1 * E1 * np.exp(s1))
        return as_output(dE.reshape(logh1.shape)), as_output(g1.reshape(logh1.shape))

    def __str__(self):
        return f"PhaseVolume({self.pot}, Phi(0)={self.phi0:.6g}, {self._s.size} nodes)"
