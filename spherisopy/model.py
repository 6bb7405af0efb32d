# Import necessary modules
# ------------------------------------------------------------------------------------------------ #
import numpy as np
import numpy.typing as npt
import matplotlib.pyplot as plt
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from .df import ScalarFunction, as_scalar_function
from .diagnostics import DiagnosticSink, ModelConstructionError, NullSink
from .numerics import (
    ACCURACY_INTERP, GLDELTA, GLORDER1, GLORDER2, MIN_VALUE_ROUNDOFF,
    LogLogScaledFunction, LogLogSpline, as_output, create_interpolation_grid, segment_nodes,
)
from .phasevolume import PhaseVolume
# ------------------------------------------------------------------------------------------------ #

ArrayLike = Union[float, npt.NDArray[np.float64]]

# intfg is differentiated to recover f(h) until it reaches this fraction of the total mass
TRANSITION_MASS_FRACTION = 0.999


def _frozen(arr: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    arr = np.array(arr, dtype=float)
    arr.setflags(write=False)
    return arr


def make_log_grid(df: ScalarFunction, gridh: Optional[npt.ArrayLike] = None) -> npt.NDArray[np.float64]:
    """
    Grid in log(h), either constructed adaptively from the log-log scaled DF
    or taken from a user-supplied grid in h (which must be positive and increasing).
    """
    if gridh is None or np.size(gridh) == 0:
        try:
            return create_interpolation_grid(LogLogScaledFunction(df), ACCURACY_INTERP)
        except ValueError as exc:
            raise ModelConstructionError(str(exc)) from exc
    gridh = np.asarray(gridh, dtype=float)
    if gridh.ndim != 1 or not np.all(gridh > 0) or not np.all(np.diff(gridh) > 0):
        raise ModelConstructionError(f"Grid in h must be positive and strictly increasing, got {gridh}")
    return np.log(gridh)


def checked_df_values(df: ScalarFunction, h: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    """
    Evaluate the DF, clamping negative values within the round-off floor to zero.

    Raises
    ------
    ModelConstructionError
        If the DF is negative beyond the round-off floor or not a number.
    """
    f = np.array(df(h), dtype=float, ndmin=1).reshape(np.shape(h))
    bad = ~(f > -MIN_VALUE_ROUNDOFF)
    if np.any(bad):
        idx = np.flatnonzero(bad.ravel())[0]
        raise ModelConstructionError(
            f"SphericalIsotropicModel: f({np.ravel(h)[idx]:.10g})={f.ravel()[idx]:.10g}")
    return np.maximum(f, 0.0)


def _log_slope(df: ScalarFunction, h: float, f: float, h_other: float, f_other: float) -> float:
    """Logarithmic slope of f at h: analytic if available, else a finite difference to the neighbour."""
    with np.errstate(divide="ignore", invalid="ignore"):
        if df.num_derivs >= 1:
            der = float(np.asarray(df.eval_deriv(h)[1]))
            return der / f * h
        return float(np.log(f_other / f) / np.log(h_other / h))


@dataclass(frozen=True)
class IsotropicModelData:
    """
    Validated arrays from which a SphericalIsotropicModel is built.

    Attributes
    ----------
    grid_h, grid_f, grid_g, grid_e : np.ndarray
        Phase volume, DF, density of states and energy at grid nodes.
    int_f, int_fg, int_fh, int_fe : np.ndarray
        Values of the four cumulative integrals at grid nodes.
    der_f, der_fg, der_fh, der_fe : np.ndarray
        Their derivatives with respect to h at grid nodes.
    inner_f_slope, outer_f_slope, inner_e_slope, outer_e_slope : float
        Asymptotic power-law indices of f(h) and E(h) at both ends.
    total_mass : float
        Total mass of the model.
    h_transition : float
        Phase volume separating the two regimes of recovering f(h).
    """
    grid_h: npt.NDArray[np.float64]
    grid_f: npt.NDArray[np.float64]
    grid_g: npt.NDArray[np.float64]
    grid_e: npt.NDArray[np.float64]
    int_f: npt.NDArray[np.float64]
    int_fg: npt.NDArray[np.float64]
    int_fh: npt.NDArray[np.float64]
    int_fe: npt.NDArray[np.float64]
    der_f: npt.NDArray[np.float64]
    der_fg: npt.NDArray[np.float64]
    der_fh: npt.NDArray[np.float64]
    der_fe: npt.NDArray[np.float64]
    inner_f_slope: float
    outer_f_slope: float
    inner_e_slope: float
    outer_e_slope: float
    total_mass: float
    h_transition: float


def build_model_data(
        phasevol: PhaseVolume,
        df,
        gridh: Optional[npt.ArrayLike] = None,
        sink: Optional[DiagnosticSink] = None
    ) -> IsotropicModelData:
    """
    Compute and validate all arrays needed for a SphericalIsotropicModel.

    The integrals are

        intf (h) = int_h^inf f(h') / g(h') dh'     (= int_E^0 f dE),
        intfg(h) = int_0^h f(h') dh'               (mass),
        intfh(h) = int_0^h f(h') h' / g(h') dh'    (2/3 of kinetic energy),
        intfE(h) = -int_0^h f(h') E(h') dh'        (minus total energy),

    computed by Gauss-Legendre quadrature on each segment of the grid in log(h),
    with the contributions from the two semi-infinite tails evaluated analytically
    from the asymptotic power-law slopes of f(h) and E(h).

    Parameters
    ----------
    phasevol : PhaseVolume
        Phase volume of the potential.
    df : ScalarFunction or callable
        Distribution function f(h).
    gridh : array_like, optional
        Grid in h; if omitted, constructed adaptively from the DF.
    sink : DiagnosticSink, optional
        Receiver of one diagnostic row per grid node.

    Returns
    -------
    IsotropicModelData
        Frozen container with all node arrays.

    Raises
    ------
    ModelConstructionError
        If the grid is invalid, the DF is negative, the asymptotic behaviour of f(h)
        or E(h) leads to divergent integrals, or the total mass is not positive.
    """
    df = as_scalar_function(df)
    sink = sink if sink is not None else NullSink()

    # 1. grid in log(h)
    logh = make_log_grid(df, gridh)
    n = logh.size
    if n < 3:
        raise ModelConstructionError(f"SphericalIsotropicModel: grid must have at least 3 nodes, got {n}")

    # 2. f, g, E at grid nodes
    H = np.exp(logh)
    F = checked_df_values(df, H)
    E, G, _ = phasevol.energy_deriv(H)
    E, G = np.asarray(E, dtype=float), np.asarray(G, dtype=float)

    # 3a. asymptotic slopes of f(h)
    inner_f_slope = _log_slope(df, H[0], F[0], H[1], F[1])
    outer_f_slope = _log_slope(df, H[-1], F[-1], H[-2], F[-2])
    if F[0] <= MIN_VALUE_ROUNDOFF:
        F[0] = inner_f_slope = 0.0
    elif not (inner_f_slope > -1):
        raise ModelConstructionError(
            "SphericalIsotropicModel: f(h) rises too rapidly as h-->0\n"
            f"f(h={H[0]:.10g})={F[0]:.10g}; f(h={H[1]:.10g})={F[1]:.10g} => f ~ h^{inner_f_slope:.6g}")
    if F[-1] <= MIN_VALUE_ROUNDOFF:
        F[-1] = outer_f_slope = 0.0
    elif not (outer_f_slope < -1):
        raise ModelConstructionError(
            "SphericalIsotropicModel: f(h) falls off too slowly as h-->infinity\n"
            f"f(h={H[-1]:.10g})={F[-1]:.10g}; f(h={H[-2]:.10g})={F[-2]:.10g} => f ~ h^{outer_f_slope:.6g}")

    # 3b. asymptotic slopes of E(h): -E ~ h^outer_e_slope at large h, E - Phi(0) ~ h^inner_e_slope at small h
    phi0 = float(phasevol.energy(0.0))
    inner_e, outer_e = E[0], E[-1]
    if not (phi0 < inner_e < outer_e < 0):
        raise ModelConstructionError(
            "SphericalIsotropicModel: weird behaviour of potential\n"
            f"Phi(0)={phi0:.10g}, innerE={inner_e:.10g}, outerE={outer_e:.10g}")
    if np.isfinite(phi0):
        inner_e -= phi0
    inner_e_slope = H[0] / G[0] / inner_e
    outer_e_slope = H[-1] / G[-1] / outer_e
    outer_ratio = outer_f_slope / outer_e_slope
    if not (outer_e_slope < 0):
        raise ModelConstructionError(
            f"SphericalIsotropicModel: weird behaviour of E(h) at infinity: E ~ h^{outer_e_slope:.6g}")
    if not (inner_e_slope + inner_f_slope > -1):
        raise ModelConstructionError(
            "SphericalIsotropicModel: weird behaviour of f(h) at origin: "
            f"E ~ h^{inner_e_slope:.6g}, f ~ h^{inner_f_slope:.6g}, "
            "their product grows faster than h^-1 => total energy is infinite")

    # 4a. integrals over interior segments, with the quadrature order chosen by the segment length
    int_f = np.zeros(n)
    int_fg = np.zeros(n)
    int_fh = np.zeros(n)
    int_fe = np.zeros(n)
    dlogh = np.diff(logh)
    for order, selected in ((GLORDER1, dlogh < GLDELTA), (GLORDER2, dlogh >= GLDELTA)):
        seg = np.flatnonzero(selected) + 1
        if seg.size == 0:
            continue
        x, w = segment_nodes(logh[seg - 1], logh[seg], order)
        h = np.exp(x)
        e, g, _ = phasevol.energy_deriv(h)
        # dE = d(log h) * h / g
        integrand = checked_df_values(df, h) * h * w
        int_f[seg - 1] += np.sum(integrand / g, axis=1)
        int_fg[seg] += np.sum(integrand, axis=1)
        int_fh[seg] += np.sum(integrand / g * h, axis=1)
        int_fe[seg] -= np.sum(integrand * e, axis=1)

    # 4b. intf accumulated from outside in, with the segment (h_max, inf) integrated analytically
    int_f[-1] = -F[-1] * outer_e / (1 + outer_ratio)
    int_f = np.cumsum(int_f[::-1])[::-1]

    # 4c. the other integrals accumulated from inside out, with the segment (0, h_min) done analytically
    int_fg[0] = F[0] * H[0] / (1 + inner_f_slope)
    int_fh[0] = F[0] * H[0] ** 2 / G[0] / (1 + inner_e_slope + inner_f_slope)
    if inner_e_slope >= 0:
        int_fe[0] = F[0] * H[0] * -phi0 / (1 + inner_f_slope)
    else:
        int_fe[0] = F[0] * H[0] * -inner_e / (1 + inner_f_slope + inner_e_slope)
    int_fg = np.cumsum(int_fg)
    int_fh = np.cumsum(int_fh)
    int_fe = np.cumsum(int_fe)
    # contributions from h_max to infinity
    int_fg[-1] -= F[-1] * H[-1] / (1 + outer_f_slope)
    int_fh[-1] -= F[-1] * H[-1] ** 2 / G[-1] / (1 + outer_e_slope + outer_f_slope)
    int_fe[-1] += F[-1] * H[-1] * outer_e / (1 + outer_e_slope + outer_f_slope)
    total_mass = float(int_fg[-1])
    if not (total_mass > 0):
        raise ModelConstructionError("SphericalIsotropicModel: f(h) is nowhere positive")

    h_transition = H[0]
    i = 1
    while i < n - 1 and int_fg[i + 1] < total_mass * TRANSITION_MASS_FRACTION:
        h_transition = H[i]
        i += 1

    # 5. derivatives of the integrals at the nodes
    der_f = -F / G
    der_fg = F.copy()
    der_fh = F * H / G
    der_fe = -F * E
    valid = (der_f <= 0) & (der_fg >= 0) & (der_fh >= 0) & (der_fe >= 0) & \
        np.isfinite(int_f + int_fg + int_fh + int_fe)
    if not np.all(valid):
        idx = np.flatnonzero(~valid)[0]
        raise ModelConstructionError(
            "SphericalIsotropicModel: cannot construct valid interpolators "
            f"at h={H[idx]:.10g}, f={F[idx]:.10g}")
    # integrals of f g, f h and f g E tend to finite limits as h-->inf
    der_fg[-1] = der_fh[-1] = der_fe[-1] = 0.0

    for i in range(n):
        sink.write({
            "h": H[i], "g": G[i], "E": E[i], "f": F[i],
            "intf": int_f[i], "intfg": int_fg[i], "intfh": int_fh[i], "intfE": int_fe[i],
        })

    return IsotropicModelData(
        grid_h=_frozen(H), grid_f=_frozen(F), grid_g=_frozen(G), grid_e=_frozen(E),
        int_f=_frozen(int_f), int_fg=_frozen(int_fg), int_fh=_frozen(int_fh), int_fe=_frozen(int_fe),
        der_f=_frozen(der_f), der_fg=_frozen(der_fg), der_fh=_frozen(der_fh), der_fe=_frozen(der_fe),
        inner_f_slope=float(inner_f_slope), outer_f_slope=float(outer_f_slope),
        inner_e_slope=float(inner_e_slope), outer_e_slope=float(outer_e_slope),
        total_mass=total_mass, h_transition=float(h_transition),
    )


class SphericalIsotropicModel(ScalarFunction):
    """
    Spherical isotropic model defined by a distribution function f(h) in a potential
    represented by its phase volume h(E).

    The model stores four cumulative integrals of the DF as log-log splines whose
    derivatives at the nodes equal the integrands exactly; it serves cumulative mass
    and energy queries, and acts itself as a smooth DF of h (with derivative).

    Attributes
    ----------
    phasevol : PhaseVolume
        Phase volume of the potential.
    data : IsotropicModelData
        Node arrays the splines are built from.
    total_mass : float
        Total mass of the model.
    h_transition : float
        Below this phase volume f(h) is recovered from intfg, above it from intf.
    """
    num_derivs = 1

    def __init__(
            self,
            phasevol: PhaseVolume,
            df,
            gridh: Optional[npt.ArrayLike] = None,
            sink: Optional[DiagnosticSink] = None
        ):
        """
        Build the model.

        Parameters
        ----------
        phasevol : PhaseVolume
            Phase volume of the potential.
        df : ScalarFunction or callable
            Distribution function f(h).
        gridh : array_like, optional
            Grid in h (at least 3 increasing values); constructed adaptively if omitted.
        sink : DiagnosticSink, optional
            Receiver of diagnostic rows (default: discard).

        Raises
        ------
        ModelConstructionError
            If the model cannot be constructed (see `build_model_data`).
        """
        self._init_from_data(phasevol, build_model_data(phasevol, df, gridh, sink))

    @classmethod
    def from_data(cls, phasevol: PhaseVolume, data: IsotropicModelData) -> "SphericalIsotropicModel":
        """Construct the model from precomputed and validated node arrays."""
        model = cls.__new__(cls)
        SphericalIsotropicModel._init_from_data(model, phasevol, data)
        return model

    def _init_from_data(self, phasevol: PhaseVolume, data: IsotropicModelData) -> None:
        self.phasevol = phasevol
        self.data = data
        self.total_mass = data.total_mass
        self.h_transition = data.h_transition
        self.intf = LogLogSpline(data.grid_h, data.int_f, data.der_f)
        self.intfg = LogLogSpline(data.grid_h, data.int_fg, data.der_fg)
        self.intfh = LogLogSpline(data.grid_h, data.int_fh, data.der_fh)
        self.intfE = LogLogSpline(data.grid_h, data.int_fe, data.der_fe)

    def eval_deriv(self, h: ArrayLike) -> Tuple[ArrayLike, ArrayLike]:
        """
        DF and its derivative recovered by differentiating the cumulative splines.

        Below `h_transition` f = d intfg/dh; above it f = -g d intf/dh, since intfg
        flattens out at large h and its derivative loses precision.

        Parameters
        ----------
        h : float or np.ndarray
            Phase volume.

        Returns
        -------
        f, dfdh : float or np.ndarray
            f(h) and df/dh.
        """
        h = np.asarray(h, dtype=float)
        _, fg1, fg2 = self.intfg.eval_deriv(h)
        _, f1, f2 = self.intf.eval_deriv(h)
        _, g, dgdh = self.phasevol.energy_deriv(h)
        low = h < self.h_transition
        with np.errstate(invalid="ignore"):
            f = np.where(low, fg1, -np.asarray(f1) * g)
            dfdh = np.where(low, fg2, -np.asarray(f2) * g - np.asarray(f1) * dgdh)
        return as_output(f), as_output(dfdh)

    def value(self, h: ArrayLike) -> ArrayLike:
        return self.eval_deriv(h)[0]

    def I0(self, h: ArrayLike) -> ArrayLike:
        """I0(h) = int_{E(h)}^0 f(E') dE'."""
        return self.intf(h)

    def cumul_mass(self, h: ArrayLike = np.inf) -> ArrayLike:
        """Mass of particles with phase volume below h; the exact total mass for h = inf."""
        h = np.asarray(h, dtype=float)
        return as_output(np.where(np.isinf(h), self.total_mass, self.intfg(h)))

    def cumul_ekin(self, h: ArrayLike) -> ArrayLike:
        """Kinetic energy of particles with phase volume below h."""
        return as_output(1.5 * np.asarray(self.intfh(h)))

    def cumul_etotal(self, h: ArrayLike) -> ArrayLike:
        """Total energy of particles with phase volume below h."""
        return as_output(-np.asarray(self.intfE(h)))

    def plot(
            self,
            h_vals: Optional[npt.NDArray[np.float64]] = None,
            save: bool = False,
            filename: Optional[str] = None,
            show: bool = True,
            ax: Optional[plt.Axes] = None
        ):
        """
        Plot the distribution function and the cumulative mass as functions of h.

        Parameters
        ----------
        h_vals : np.ndarray, optional
            Values of h to plot (default: 200 points spanning the model grid).
        save : bool, optional
            Whether to save the figure to `filename`.
        filename : str, optional
            Output filename (required if `save` is True).
        show : bool, optional
            Whether to display the plot.
        ax : plt.Axes, optional
            Axes to draw on; a new figure is created if omitted.

        Returns
        -------
        ax : plt.Axes
            The axes with the DF; the cumulative mass is drawn on a twin axis.
        """
        if save and filename is None:
            raise ValueError("filename must be provided if save is True")
        if h_vals is None:
            h_vals = np.geomspace(self.data.grid_h[0], self.data.grid_h[-1], 200)
        if ax is None:
            fig, ax = plt.subplots(figsize=(8, 6))

        ax.loglog(h_vals, self.value(h_vals), color="black", label=r"$f(h)$")
        ax.set_xlabel(r"$h$", fontsize=14)
        ax.set_ylabel(r"$f(h)$", fontsize=14)
        ax_mass = ax.twinx()
        ax_mass.semilogx(h_vals, self.cumul_mass(h_vals) / self.total_mass, color="tab:blue", linestyle="--")
        ax_mass.set_ylabel(r"$M(h) / M_{\rm tot}$", fontsize=14, color="tab:blue")
        ax.grid(True, which="both", linestyle=":", alpha=0.5)
        plt.tight_layout()

        if save:
            plt.savefig(filename, dpi=300, bbox_inches="tight")
        if show:
            plt.show()
        return ax

    def __str__(self):
        return (f"SphericalIsotropicModel(total_mass={self.total_mass:.6g}, "
                f"{self.data.grid_h.size} nodes in h=[{self.data.grid_h[0]:.3g}, {self.data.grid_h[-1]:.3g}])")
