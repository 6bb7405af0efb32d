# Import necessary modules
# ------------------------------------------------------------------------------------------------ #
import numpy as np
import numpy.typing as npt
from scipy.special import gamma, hyp2f1
from dataclasses import dataclass
from collections import Counter
from tqdm import tqdm
from typing import Dict, Optional, Tuple, Union

from .df import ScalarFunction, as_scalar_function
from .diagnostics import DiagnosticSink, FallbackEvent, ModelConstructionError, NullSink, report_fallback
from .model import IsotropicModelData, SphericalIsotropicModel, _frozen, build_model_data, make_log_grid
from .numerics import (
    GLORDER, MIN_VALUE_ROUNDOFF, ClampedSpline2D, create_nonuniform_grid, find_root,
    integrate_gl_scaled, segment_nodes,
)
from .phasevolume import PhaseVolume
# ------------------------------------------------------------------------------------------------ #

ArrayLike = Union[float, npt.NDArray[np.float64]]

# Relative tolerance of the root-finder in velocity sampling
EPSROOT = 1e-6

# Number of nodes of the grid in Y = log(h(E) / h(Phi))
NUM_POINTS_Y = 100

# Limiting values of J1/J0 and J3/J0 for E -> Phi, used in place of invalid ratios
FALLBACK_J1_OVER_J0 = 2.0 / 3
FALLBACK_J3_OVER_J0 = 2.0 / 5


class DFMomentIntegrand:
    """
    Integrand for the velocity moments of the DF at a fixed potential Phi = E(h0):

        J_P = int f(E') (E' - Phi)^{P/2} dE'  =  int f(h) h / g(h) (E(h) - Phi)^{P/2} d log(h),

    expressed as a function of log(h); the factors h and 1/g convert dE into d log(h).
    """
    def __init__(self, df: ScalarFunction, phasevol: PhaseVolume, logh0: float, power: int):
        self.df = df
        self.phasevol = phasevol
        self.logh0 = float(logh0)
        self.power = int(power)

    def __call__(self, logh: ArrayLike) -> ArrayLike:
        logh = np.asarray(logh, dtype=float)
        h = np.exp(logh)
        dE, g = self.phasevol.delta_e(logh, self.logh0)
        weight = np.sqrt(np.maximum(dE, 0.0)) ** self.power if self.power else 1.0
        return np.asarray(self.df(h)) * h / g * weight


def _moment_ratios(j0: float, j1: float, j3: float, dv: float) -> Tuple[float, float, bool]:
    """
    Normalised ratios J1/J0 / dv and J3/J0 / dv^3, or the fallback values if these are invalid.
    Returns the two ratios and a flag telling whether they are valid.
    """
    j0, dv = np.float64(j0), np.float64(dv)
    with np.errstate(divide="ignore", invalid="ignore"):
        r1 = j1 / j0 / dv
        r3 = j3 / j0 / dv**3
    if r1 > 0 and r3 > 0 and np.isfinite(r1 + r3):
        return float(r1), float(r3), True
    return FALLBACK_J1_OVER_J0, FALLBACK_J3_OVER_J0, False


@dataclass(frozen=True)
class LocalModelData:
    """
    Tabulated moment ratios of the local model.

    Attributes
    ----------
    grid_logh : np.ndarray
        Grid in X = log(h(Phi)) (trimmed so that f > 0 at its last node).
    grid_y : np.ndarray
        Grid in Y = log(h(E) / h(Phi)).
    grid_j1, grid_j3 : np.ndarray
        log(J1/J0) and log(J3/J0) on the 2D grid.
    outer_f_slope, outer_e_slope : float
        Asymptotic slopes of f(h) and E(h) at the last node of the trimmed grid.
    fallback_events : tuple of FallbackEvent
        Soft fallbacks that occurred during construction.
    """
    grid_logh: npt.NDArray[np.float64]
    grid_y: npt.NDArray[np.float64]
    grid_j1: npt.NDArray[np.float64]
    grid_j3: npt.NDArray[np.float64]
    outer_f_slope: float
    outer_e_slope: float
    fallback_events: Tuple[FallbackEvent, ...]


def _outer_row_moments(
        y: float,
        outer_e_slope: float,
        outer_ratio: float,
        outer_j1: float,
        outer_j3: float,
        I0: float,
        outer_e: float
    ) -> Tuple[float, float, float]:
    """
    Asymptotic values of J0, J1, J3 for Phi -> 0, assuming power-law f(h) and E(h);
    NaN values signal that the hypergeometric functions could not be evaluated.
    """
    e_over_phi = np.exp(y * outer_e_slope)
    one_minus = e_over_phi ** (1 + outer_ratio)
    f1 = hyp2f1(-0.5, 1 + outer_ratio, 2 + outer_ratio, e_over_phi)
    f3 = hyp2f1(-1.5, 1 + outer_ratio, 2 + outer_ratio, e_over_phi)
    sq_phi = np.sqrt(-outer_e)
    j0 = I0 * (1 - one_minus)
    j1 = I0 * (outer_j1 - one_minus * f1) * sq_phi
    j3 = I0 * (outer_j3 - one_minus * f3) * sq_phi**3
    return j0, j1, j3


def build_local_model_data(
        base: SphericalIsotropicModel,
        df,
        gridh: Optional[npt.ArrayLike] = None,
        sink: Optional[DiagnosticSink] = None,
        num_points_y: int = NUM_POINTS_Y,
        show_progress: bool = False
    ) -> LocalModelData:
    """
    Tabulate log(J1/J0) and log(J3/J0) on a 2D grid in X = log(h(Phi)) and Y = log(h(E)/h(Phi)), where

        J_n(Phi, E) = int_Phi^E f(E') [(E' - Phi) / (E - Phi)]^{n/2} dE',   n = 0, 1, 3.

    For each X the integrals are accumulated over consecutive segments in Y; the first
    segment uses a scaled quadrature to absorb the endpoint singularity at E = Phi.
    At the outermost X the values follow from the asymptotic power-law behaviour via
    the hypergeometric function 2F1.

    Parameters
    ----------
    base : SphericalIsotropicModel
        The global model built from the same DF and phase volume.
    df : ScalarFunction or callable
        Distribution function f(h).
    gridh : array_like, optional
        Grid in h; the grid of `base` if omitted.
    sink : DiagnosticSink, optional
        Receiver of one diagnostic row per node of the 2D grid.
    num_points_y : int, optional
        Number of nodes in Y (default 100).
    show_progress : bool, optional
        Whether to display a progress bar over the rows of the grid.

    Returns
    -------
    LocalModelData
        Frozen container of the 2D tables.

    Raises
    ------
    ModelConstructionError
        If fewer than 3 grid nodes have f > 0, or the asymptotic behaviour is unsuitable.
    """
    df = as_scalar_function(df)
    phasevol = base.phasevol
    sink = sink if sink is not None else NullSink()
    events = []

    # 1. grid in X, trimmed so that f(h_max) > 0, and the grid in Y
    # the adaptive grid of the global tables is reused rather than constructed again
    logh = make_log_grid(df, base.data.grid_h if gridh is None else gridh)
    positive = np.asarray(df(np.exp(logh)), dtype=float) > MIN_VALUE_ROUNDOFF
    last = logh.size
    while last > 0 and not positive[last - 1]:
        last -= 1
    logh = logh[:last]
    if logh.size < 3:
        raise ModelConstructionError("SphericalIsotropicModelLocal: f(h) is nowhere positive")
    n = logh.size
    span = logh[-1] - logh[0]
    grid_y = create_nonuniform_grid(num_points_y, min(0.1, span / num_points_y), span, True)

    # 2. asymptotic behaviour of f(h) and g(h) at the last node
    outer_h = np.exp(logh[-1])
    outer_e, outer_g, _ = phasevol.energy_deriv(outer_h)
    if df.num_derivs >= 1:
        val, der = df.eval_deriv(outer_h)
        outer_f_slope = float(der / val * outer_h)
    else:
        outer_f_slope = float(np.log(df(outer_h) / df(np.exp(logh[-2]))) / (logh[-1] - logh[-2]))
    if not (outer_f_slope < -1):
        raise ModelConstructionError(
            "SphericalIsotropicModelLocal: f(h) falls off too slowly as h-->infinity: "
            f"f ~ h^{outer_f_slope:.6g}")
    outer_e_slope = float(outer_h / outer_g / outer_e)
    outer_ratio = outer_f_slope / outer_e_slope
    if not (outer_ratio > 0):
        raise ModelConstructionError(
            "SphericalIsotropicModelLocal: weird asymptotic behaviour of phase volume\n"
            f"h(E={outer_e:.10g})={outer_h:.10g}; dh/dE={outer_g:.10g} => outerEslope={outer_e_slope:.6g}, "
            f"outerFslope={outer_f_slope:.6g}")

    # 3. asymptotic values of J1/J0 and J3/J0 as Phi --> 0 and E/Phi --> 0
    outer_j1 = 0.5 * np.sqrt(np.pi) * gamma(2 + outer_ratio) / gamma(2.5 + outer_ratio)
    outer_j3 = outer_j1 * 1.5 / (2.5 + outer_ratio)

    # 4. the 2D tables, row by row
    grid_j1 = np.empty((n, num_points_y))
    grid_j3 = np.empty((n, num_points_y))
    rows = tqdm(range(n), desc="Local model rows") if show_progress else range(n)
    for i in rows:
        lower = logh[i] + grid_y[:-1]
        upper = logh[i] + grid_y[1:]
        integrands = [DFMomentIntegrand(df, phasevol, logh[i], power) for power in (0, 1, 3)]
        # the first segment uses the scaled rule; later ones are accumulated with a plain rule
        x, w = segment_nodes(lower[1:], upper[1:], GLORDER)
        acc = []
        for integrand in integrands:
            first = integrate_gl_scaled(integrand, lower[0], upper[0], GLORDER)
            rest = np.sum(integrand(x) * w, axis=1)
            acc.append(np.cumsum(np.concatenate([[first], rest])))
        j0_acc, j1_acc, j3_acc = acc
        dv = np.sqrt(np.asarray(phasevol.delta_e(upper, logh[i])[0]))

        if i == n - 1:
            I0 = float(base.I0(outer_h))
            for j in range(1, num_points_y):
                j0, j1, j3 = _outer_row_moments(
                    grid_y[j], outer_e_slope, outer_ratio, outer_j1, outer_j3, I0, outer_e)
                if np.isfinite(j0 + j1 + j3):
                    j0_acc[j - 1], j1_acc[j - 1], j3_acc[j - 1] = j0, j1, j3
                else:
                    report_fallback(events, "hypergeometric",
                                    "SphericalIsotropicModelLocal: Can't compute asymptotic value "
                                    f"at Y={grid_y[j]:.6g}", logh[i], grid_y[j])

        # analytic limiting values for E = Phi
        grid_j1[i, 0] = np.log(FALLBACK_J1_OVER_J0)
        grid_j3[i, 0] = np.log(FALLBACK_J3_OVER_J0)
        for j in range(1, num_points_y):
            r1, r3, valid = _moment_ratios(j0_acc[j - 1], j1_acc[j - 1], j3_acc[j - 1], dv[j - 1])
            if not valid:
                report_fallback(events, "moment_ratio",
                                "SphericalIsotropicModelLocal: Invalid value "
                                f" J0={j0_acc[j - 1]:.6g}, J1={j1_acc[j - 1]:.6g}, J3={j3_acc[j - 1]:.6g}",
                                logh[i], grid_y[j])
            grid_j1[i, j] = np.log(r1)
            grid_j3[i, j] = np.log(r3)

    if not isinstance(sink, NullSink):
        for i in range(n):
            phi = float(phasevol.energy(np.exp(logh[i])))
            energies = np.asarray(phasevol.energy(np.exp(logh[i] + grid_y)))
            for j in range(num_points_y):
                sink.write({
                    "lnhPhi": logh[i], "lnhEoverhPhi": grid_y[j], "Phi": phi, "E": energies[j],
                    "J1overJ0": np.exp(grid_j1[i, j]), "J3overJ0": np.exp(grid_j3[i, j]),
                })

    return LocalModelData(
        grid_logh=_frozen(logh), grid_y=_frozen(grid_y),
        grid_j1=_frozen(grid_j1), grid_j3=_frozen(grid_j3),
        outer_f_slope=outer_f_slope, outer_e_slope=outer_e_slope,
        fallback_events=tuple(events),
    )


class SphericalIsotropicModelLocal(SphericalIsotropicModel):
    """
    Spherical isotropic model with position-dependent velocity moments.

    In addition to the global cumulative integrals, two 2D splines of log(J1/J0) and
    log(J3/J0) over X = log(h(Phi)) and Y = log(h(E)/h(Phi)) provide the local velocity
    diffusion coefficients, density, velocity dispersion and velocity sampling at a
    given value of the potential.

    Attributes
    ----------
    intJ1, intJ3 : ClampedSpline2D
        Interpolated log(J1/J0) and log(J3/J0).
    local_data : LocalModelData
        Tables the 2D splines are built from.
    fallback_events : tuple of FallbackEvent
        Soft fallbacks recorded during construction.
    """
    def __init__(
            self,
            phasevol: PhaseVolume,
            df,
            gridh: Optional[npt.ArrayLike] = None,
            sink: Optional[DiagnosticSink] = None,
            num_points_y: int = NUM_POINTS_Y,
            show_progress: bool = False
        ):
        """
        Build the local model.

        Parameters
        ----------
        phasevol : PhaseVolume
            Phase volume of the potential.
        df : ScalarFunction or callable
            Distribution function f(h).
        gridh : array_like, optional
            Grid in h; constructed adaptively if omitted.
        sink : DiagnosticSink, optional
            Receiver of diagnostic rows of both construction stages.
        num_points_y : int, optional
            Number of nodes in Y = log(h(E)/h(Phi)) (default 100).
        show_progress : bool, optional
            Whether to display a progress bar (default False).

        Raises
        ------
        ModelConstructionError
            If either the global or the local tables cannot be constructed.
        """
        df = as_scalar_function(df)
        data = build_model_data(phasevol, df, gridh, sink)
        base = SphericalIsotropicModel.from_data(phasevol, data)
        local_data = build_local_model_data(base, df, data.grid_h, sink, num_points_y, show_progress)
        self._init_from_data(phasevol, data)
        self._init_local(local_data)

    @classmethod
    def from_data(
            cls,
            phasevol: PhaseVolume,
            data: IsotropicModelData,
            local_data: LocalModelData
        ) -> "SphericalIsotropicModelLocal":
        """Construct the local model from precomputed global and local tables."""
        model = cls.__new__(cls)
        model._init_from_data(phasevol, data)
        model._init_local(local_data)
        return model

    def _init_local(self, local_data: LocalModelData) -> None:
        self.local_data = local_data
        self.fallback_events = local_data.fallback_events
        self.intJ1 = ClampedSpline2D(local_data.grid_logh, local_data.grid_y, local_data.grid_j1)
        self.intJ3 = ClampedSpline2D(local_data.grid_logh, local_data.grid_y, local_data.grid_j3)

    def fallback_counts(self) -> Dict[str, int]:
        """Number of fallback events of each kind."""
        return dict(Counter(event.kind for event in self.fallback_events))

    def _clamped_logh(self, Phi: float) -> Tuple[float, float]:
        h_phi = float(self.phasevol(Phi))
        return h_phi, float(np.clip(np.log(h_phi), self.intJ1.xmin, self.intJ1.xmax))

    def eval_local(self, Phi: float, E: float) -> Tuple[float, float, float]:
        """
        Local velocity diffusion coefficients for a particle with energy E at potential Phi.

        Parameters
        ----------
        Phi : float
            Potential (must be negative).
        E : float
            Energy of the particle (E >= Phi; values E >= 0 are allowed).

        Returns
        -------
        dvpar, dv2par, dv2per : float
            <Delta v_par>, <Delta v_par^2> and <Delta v_per^2>, up to the Coulomb logarithm.

        Raises
        ------
        ValueError
            If Phi >= 0 or h(E) < h(Phi).
        """
        Phi, E = float(Phi), float(E)
        h_phi = float(self.phasevol(Phi))
        h_e = float(self.phasevol(E))
        if not (Phi < 0 and h_e >= h_phi):
            raise ValueError(f"SphericalIsotropicModelLocal: incompatible values of E={E} and Phi={Phi}")

        I0 = float(self.I0(h_e))
        J0 = max(float(self.I0(h_phi)) - I0, 0.0)
        X = np.log(h_phi)
        Y = np.log(h_e / h_phi) if np.isfinite(h_e) else self.intJ1.ymax
        J1 = np.exp(self.intJ1(X, Y)) * J0
        J3 = np.exp(self.intJ3(X, Y)) * J0
        if E >= 0:
            # the tables correspond to E = 0, rescale to E > 0
            corr = 1 / np.sqrt(1 - E / Phi)
            J1 *= corr
            J3 *= corr**3
        mult = 32 * np.pi**2 / 3 * self.total_mass
        dvpar = -mult * J1 * 3
        dv2par = mult * (I0 + J3)
        dv2per = mult * (I0 * 2 + J1 * 3 - J3)
        return float(dvpar), float(dv2par), float(dv2per)

    def sample_velocity(self, Phi: float, rng: Optional[np.random.Generator] = None) -> float:
        """
        Draw the magnitude of velocity from the DF at a given potential.

        The cumulative distribution of E at fixed Phi is proportional to J1(Phi, E) sqrt(E - Phi);
        a uniform deviate is mapped onto it by root-finding in Y = log(h(E)/h(Phi)).

        Parameters
        ----------
        Phi : float
            Potential (must be negative).
        rng : np.random.Generator, optional
            Random number generator (default: a fresh unseeded generator).

        Returns
        -------
        float
            Speed in [0, sqrt(-2 Phi)]; 0 if the root could not be found.

        Raises
        ------
        ValueError
            If Phi >= 0.
        """
        Phi = float(Phi)
        if not (Phi < 0):
            raise ValueError(f"SphericalIsotropicModelLocal: invalid value of Phi={Phi}")
        rng = rng if rng is not None else np.random.default_rng()
        h_phi, logh_phi = self._clamped_logh(Phi)
        I0_plus_J0 = float(self.I0(h_phi))
        max_j1 = np.exp(self.intJ1(logh_phi, self.intJ1.ymax)) * I0_plus_J0
        target = rng.uniform() * max_j1 * np.sqrt(-Phi)

        def cumulative(y):
            h_e = np.exp(y + logh_phi)
            E = float(self.phasevol.energy(h_e))
            J1 = np.exp(self.intJ1(logh_phi, y)) * (I0_plus_J0 - float(self.I0(h_e)))
            return J1 * np.sqrt(max(E - Phi, 0.0)) - target

        y = find_root(cumulative, self.intJ1.ymin, self.intJ1.ymax, EPSROOT)
        if not (y >= 0):
            return 0.0
        E = float(self.phasevol.energy(np.exp(y + logh_phi)))
        return float(np.sqrt(2.0 * max(E - Phi, 0.0)))

    def density(self, Phi: ArrayLike) -> ArrayLike:
        """
        Density rho(Phi) = 4 pi sqrt(2) int_Phi^0 f(E) sqrt(E - Phi) dE.

        Raises
        ------
        ValueError
            If any Phi >= 0.
        """
        Phi = np.asarray(Phi, dtype=float)
        if not np.all(Phi < 0):
            raise ValueError("SphericalIsotropicModelLocal: invalid value of Phi")
        h_phi = np.asarray(self.phasevol(Phi))
        logh_phi = np.clip(np.log(h_phi), self.intJ1.xmin, self.intJ1.xmax)
        j1_over_j0 = np.exp(np.asarray(self.intJ1(logh_phi, self.intJ1.ymax)))
        result = 4 * np.pi * np.sqrt(2) * np.sqrt(-Phi) * j1_over_j0 * np.asarray(self.I0(h_phi))
        return float(result) if result.ndim == 0 else result

    def vel_disp(self, Phi: ArrayLike) -> ArrayLike:
        """
        One-dimensional velocity dispersion at the given potential.

        Raises
        ------
        ValueError
            If any Phi >= 0.
        """
        Phi = np.asarray(Phi, dtype=float)
        if not np.all(Phi < 0):
            raise ValueError("SphericalIsotropicModelLocal: invalid value of Phi")
        logh_phi = np.clip(np.log(np.asarray(self.phasevol(Phi))), self.intJ1.xmin, self.intJ1.xmax)
        ymax = self.intJ1.ymax
        j3_over_j1 = np.exp(np.asarray(self.intJ3(logh_phi, ymax)) - np.asarray(self.intJ1(logh_phi, ymax)))
        result = np.sqrt(-2.0 / 3 * Phi * j3_over_j1)
        return float(result) if result.ndim == 0 else result
