# Import necessary modules
# ------------------------------------------------------------------------------------------------ #
import numpy as np
import numpy.typing as npt
from numpy.polynomial.legendre import leggauss
from scipy.interpolate import CubicHermiteSpline, CubicSpline, RectBivariateSpline
from scipy.optimize import brentq
from functools import lru_cache
from typing import Callable, Optional, Tuple, Union
# ------------------------------------------------------------------------------------------------ #

# Quadrature and grid constants
# ------------------------------------------------------------------------------------------------ #

# Default order of the Gauss-Legendre rule, and the two orders used for short and long segments
GLORDER = 8
GLORDER1 = 6
GLORDER2 = 10

# Segment length in log(h) separating "short" from "long" segments (~ln 2)
GLDELTA = 0.7

# Values of f or rho below this threshold are treated as zero
MIN_VALUE_ROUNDOFF = 0.9999999999999e-100

# Tolerance on the second derivative of a log-log scaled function used for grid generation
ACCURACY_INTERP = np.finfo(float).eps ** (1.0 / 3)

# Step used in finite-difference estimates of the second derivative on a log scale
_FD_DELTA = 1e-3
# Range of admissible grid steps in log(h)
_MIN_GRID_STEP = 0.01
_MAX_GRID_STEP = 1.0
# A grid stops growing after this length of nearly-linear behaviour, or at |x| = _MAX_GRID_EXTENT
_LINEAR_EXTENT = 10.0
_MAX_GRID_EXTENT = 100.0

ArrayLike = Union[float, npt.NDArray[np.float64]]


def as_output(x: npt.NDArray[np.float64]) -> ArrayLike:
    """Return a plain float for 0-d arrays and the array itself otherwise."""
    x = np.asarray(x)
    return float(x) if x.ndim == 0 else x


# Gauss-Legendre quadrature
# ------------------------------------------------------------------------------------------------ #

@lru_cache(maxsize=None)
def _gl_table(order: int) -> Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    nodes, weights = leggauss(order)
    nodes = 0.5 * (nodes + 1.0)
    weights = 0.5 * weights
    nodes.setflags(write=False)
    weights.setflags(write=False)
    return nodes, weights


def gl_nodes_weights(order: int) -> Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """
    Nodes and weights of the Gauss-Legendre rule mapped onto the unit interval [0, 1].

    Parameters
    ----------
    order : int
        Number of nodes of the quadrature rule.

    Returns
    -------
    nodes, weights : np.ndarray
        Read-only arrays of length `order`; the weights sum to unity.
    """
    if order < 1:
        raise ValueError(f"Quadrature order must be positive, got {order}.")
    return _gl_table(int(order))


def segment_nodes(
        lower: npt.NDArray[np.float64],
        upper: npt.NDArray[np.float64],
        order: int
    ) -> Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """
    Quadrature nodes and weights for a set of independent segments.

    Parameters
    ----------
    lower, upper : np.ndarray
        Endpoints of each segment (1D arrays of equal length).
    order : int
        Order of the Gauss-Legendre rule used on every segment.

    Returns
    -------
    x, w : np.ndarray
        Arrays of shape (n_segments, order) holding the nodes and the weights,
        the latter already multiplied by the segment length.
    """
    nodes, weights = gl_nodes_weights(order)
    lower = np.atleast_1d(np.asarray(lower, dtype=float))
    length = np.atleast_1d(np.asarray(upper, dtype=float)) - lower
    x = lower[:, None] + length[:, None] * nodes[None, :]
    w = length[:, None] * weights[None, :]
    return x, w


def integrate_gl(
        f: Callable[[npt.NDArray[np.float64]], npt.NDArray[np.float64]],
        a: float,
        b: float,
        order: int = GLORDER
    ) -> float:
    """
    Fixed-order Gauss-Legendre integral of a vectorised function on [a, b].
    """
    nodes, weights = gl_nodes_weights(order)
    x = a + (b - a) * nodes
    return float(np.sum(weights * f(x)) * (b - a))


def integrate_gl_scaled(
        f: Callable[[npt.NDArray[np.float64]], npt.NDArray[np.float64]],
        a: float,
        b: float,
        order: int = GLORDER
    ) -> float:
    """
    Gauss-Legendre integral on [a, b] after the cubic substitution

        x = a + (b - a) (3 s^2 - 2 s^3),   0 <= s <= 1,

    whose Jacobian vanishes at both ends. This removes integrable power-law
    singularities of the integrand at either endpoint (e.g. 1/sqrt(x - a)).

    Parameters
    ----------
    f : callable
        Vectorised integrand.
    a, b : float
        Integration limits.
    order : int, optional
        Number of Gauss-Legendre nodes (default GLORDER).

    Returns
    -------
    float
        Approximate value of the integral.
    """
    s, weights = gl_nodes_weights(order)
    x = a + (b - a) * s * s * (3 - 2 * s)
    jac = 6 * s * (1 - s)
    return float(np.sum(weights * jac * f(x)) * (b - a))


# Root finding
# ------------------------------------------------------------------------------------------------ #

def find_root(
        f: Callable[[float], float],
        a: float,
        b: float,
        rel_tol: float = 1e-6
    ) -> float:
    """
    Find a root of a scalar function bracketed by [a, b] using Brent's method.

    Parameters
    ----------
    f : callable
        Scalar function of one variable.
    a, b : float
        Endpoints of the bracket.
    rel_tol : float, optional
        Tolerance on the root relative to the length of the bracket.

    Returns
    -------
    float
        Location of the root, or NaN if the endpoints do not bracket a sign change
        or the iterations did not converge. A failed search is not an error.
    """
    fa, fb = f(a), f(b)
    if not (np.isfinite(fa) and np.isfinite(fb)):
        return np.nan
    if fa == 0:
        return a
    if fb == 0:
        return b
    if fa * fb > 0:
        return np.nan
    xtol = max(rel_tol * abs(b - a), 1e-300)
    root, info = brentq(f, a, b, xtol=xtol, full_output=True, disp=False)
    return root if info.converged else np.nan


# Grid construction
# ------------------------------------------------------------------------------------------------ #

class LogLogScaledFunction:
    """
    Log-log scaled view of a positive function: F(x) = log f(exp(x)).
    """
    def __init__(self, fnc: Callable[[ArrayLike], ArrayLike]):
        self.fnc = fnc

    def __call__(self, x: ArrayLike) -> ArrayLike:
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.log(self.fnc(np.exp(x)))


def _second_derivative(fnc: Callable, x: float) -> Tuple[float, float]:
    values = np.asarray(fnc(np.array([x - _FD_DELTA, x, x + _FD_DELTA])), dtype=float)
    return values[1], (values[0] - 2 * values[1] + values[2]) / _FD_DELTA**2


def _finite_start(fnc: Callable, x_start: float) -> float:
    if np.isfinite(fnc(np.array([x_start]))[0]):
        return x_start
    # search for the nearest point where the scaled function is finite
    for offset in np.arange(1.0, _MAX_GRID_EXTENT + 1.0):
        for x in (x_start + offset, x_start - offset):
            if np.isfinite(fnc(np.array([x]))[0]):
                return x
    raise ValueError("Cannot construct an interpolation grid: the function is nowhere positive and finite.")


def create_interpolation_grid(
        fnc: Callable[[ArrayLike], ArrayLike],
        accuracy: float = ACCURACY_INTERP,
        x_start: float = 0.0
    ) -> npt.NDArray[np.float64]:
    """
    Construct a grid in the scaled variable x that resolves the shape of a log-log scaled function.

    The grid grows from `x_start` in both directions with a local step chosen from the
    second derivative F'' of the scaled function, so that the cubic interpolation error
    stays of order `accuracy`. Each direction terminates when the function has been
    linear (a pure power law in the unscaled variables) over a long enough stretch,
    when the function ceases to be finite, or when |x| exceeds 100.

    Parameters
    ----------
    fnc : callable
        Scaled function F(x), typically a `LogLogScaledFunction`.
    accuracy : float, optional
        Target accuracy of interpolation (default ACCURACY_INTERP).
    x_start : float, optional
        Initial point of the grid (default 0).

    Returns
    -------
    np.ndarray
        Strictly increasing grid in x.
    """
    x0 = _finite_start(fnc, x_start)
    threshold = np.sqrt(accuracy)
    branches = []
    for direction in (1.0, -1.0):
        nodes = []
        x, linear = x0, 0.0
        while abs(x) < _MAX_GRID_EXTENT:
            _, der2 = _second_derivative(fnc, x)
            if not np.isfinite(der2):
                break
            step = (accuracy / max(abs(der2), 1e-300)) ** 0.25
            step = min(_MAX_GRID_STEP, max(_MIN_GRID_STEP, step))
            linear = linear + step if abs(der2) < threshold else 0.0
            x_next = x + direction * step
            if not np.isfinite(fnc(np.array([x_next]))[0]):
                break
            x = x_next
            nodes.append(x)
            if linear >= _LINEAR_EXTENT:
                break
        branches.append(nodes)
    grid = np.array(branches[1][::-1] + [x0] + branches[0])
    return grid


def create_nonuniform_grid(
        n_nodes: int,
        first_step: float,
        upper: float,
        zero_elem: bool = True
    ) -> npt.NDArray[np.float64]:
    """
    Grid with segment lengths growing geometrically.

    With `zero_elem` the grid starts at 0, its second node equals `first_step`
    and the last one equals `upper`; otherwise the grid is geometric between
    `first_step` and `upper`. When the requested first step is too large for
    geometric growth, a uniform grid is returned.

    Parameters
    ----------
    n_nodes : int
        Number of grid nodes (at least 2).
    first_step : float
        Length of the first segment (or the first node if `zero_elem` is False).
    upper : float
        Last grid node.
    zero_elem : bool, optional
        Whether the first node is zero (default True).

    Returns
    -------
    np.ndarray
        Strictly increasing grid of `n_nodes` points.
    """
    if n_nodes < 2 or not (0 < first_step < upper):
        raise ValueError(f"Invalid grid parameters: n_nodes={n_nodes}, first_step={first_step}, upper={upper}")
    if not zero_elem:
        return np.geomspace(first_step, upper, n_nodes)
    n_seg = n_nodes - 1
    if first_step * n_seg >= upper:
        return np.linspace(0.0, upper, n_nodes)
    # x_k = first_step * (exp(k*a) - 1) / (exp(a) - 1),  with a chosen so that x_{n-1} = upper
    ratio = upper / first_step

    def mismatch(a):
        return np.expm1(n_seg * a) / np.expm1(a) - ratio

    a = brentq(mismatch, 1e-12, np.log(ratio) + 1.0, xtol=1e-15)
    grid = first_step * np.expm1(a * np.arange(n_nodes)) / np.expm1(a)
    grid[-1] = upper
    return grid


# Interpolation
# ------------------------------------------------------------------------------------------------ #

class LogLogSpline:
    """
    Cubic interpolant of a positive function in log-log coordinates.

    When derivatives are supplied, the spline is a cubic Hermite interpolant whose
    derivatives at the nodes equal the supplied ones (to rounding error); otherwise
    derivatives are taken from a natural cubic spline through the nodes. Segments
    touching a non-positive node value are interpolated in linear coordinates.
    Beyond the grid the function is extrapolated as a power law with the slope
    at the boundary node (or as a constant if the boundary value is not positive).

    Attributes
    ----------
    x, y, dydx : np.ndarray
        Nodes, values and derivatives at the nodes.
    """
    def __init__(
            self,
            x: npt.NDArray[np.float64],
            y: npt.NDArray[np.float64],
            dydx: Optional[npt.NDArray[np.float64]] = None
        ):
        x = np.asarray(x, dtype=float)
        y = np.asarray(y, dtype=float)
        if x.ndim != 1 or x.size < 2 or x.shape != y.shape:
            raise ValueError("LogLogSpline requires 1D arrays of equal length with at least 2 nodes.")
        if not (x[0] > 0 and np.all(np.diff(x) > 0)):
            raise ValueError("LogLogSpline requires a positive, strictly increasing grid.")
        positive = y > 0
        logx = np.log(x)
        logy = np.where(positive, np.log(np.where(positive, y, 1.0)), 0.0)
        if dydx is None:
            if np.all(positive):
                slope = CubicSpline(logx, logy, bc_type="natural")(logx, 1)
                dydx = slope * y / x
            else:
                dydx = CubicSpline(x, y, bc_type="natural")(x, 1)
        dydx = np.asarray(dydx, dtype=float)
        if dydx.shape != x.shape:
            raise ValueError("Derivatives must have the same shape as the grid.")

        self.x, self.y, self.dydx = x, y, dydx
        self._positive = positive
        self._logx = logx
        # logarithmic slopes d(log y)/d(log x) at positive nodes
        with np.errstate(divide="ignore", invalid="ignore"):
            self._slope = np.where(positive, dydx * x / np.where(positive, y, 1.0), 0.0)
        self._log_spline = CubicHermiteSpline(logx, logy, self._slope)
        self._lin_spline = CubicHermiteSpline(x, y, dydx)
        # a segment is treated in log-log coordinates only if both its endpoints are positive
        self._log_segment = positive[:-1] & positive[1:]

    def __call__(self, x: ArrayLike) -> ArrayLike:
        return self.eval_deriv(x)[0]

    def value(self, x: ArrayLike) -> ArrayLike:
        return self.eval_deriv(x)[0]

    def _extrapolate(self, x, index):
        x0, y0 = self.x[index], self.y[index]
        if not self._positive[index]:
            return np.full_like(x, y0), np.zeros_like(x), np.zeros_like(x)
        s = self._slope[index]
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            ratio = x / x0
            val = y0 * ratio**s
            if s == 0:
                return val, np.zeros_like(x), np.zeros_like(x)
            der = y0 * s * ratio ** (s - 1) / x0
            if s == 1:
                return val, der, np.zeros_like(x)
            der2 = y0 * s * (s - 1) * ratio ** (s - 2) / x0**2
        return val, der, der2

    def eval_deriv(self, x: ArrayLike) -> Tuple[ArrayLike, ArrayLike, ArrayLike]:
        """
        Value, first and second derivative of the interpolant.

        Parameters
        ----------
        x : float or np.ndarray
            Points of evaluation (x = inf and x = 0 return the limiting values).

        Returns
        -------
        val, der, der2 : float or np.ndarray
            The interpolated function and its derivatives in linear coordinates.
        """
        x = np.asarray(x, dtype=float)
        xf = np.atleast_1d(x).ravel()
        val = np.empty_like(xf)
        der = np.empty_like(xf)
        der2 = np.empty_like(xf)

        below = xf < self.x[0]
        above = xf > self.x[-1]
        inside = ~(below | above)
        if np.any(below):
            val[below], der[below], der2[below] = self._extrapolate(xf[below], 0)
        if np.any(above):
            val[above], der[above], der2[above] = self._extrapolate(xf[above], -1)
        if np.any(inside):
            xi = xf[inside]
            seg = np.clip(np.searchsorted(self.x, xi, side="right") - 1, 0, self.x.size - 2)
            use_log = self._log_segment[seg]
            v = np.empty_like(xi)
            d = np.empty_like(xi)
            d2 = np.empty_like(xi)
            if np.any(use_log):
                xl = xi[use_log]
                lx = np.log(xl)
                ly = self._log_spline(lx)
                s1 = self._log_spline(lx, 1)
                s2 = self._log_spline(lx, 2)
                yl = np.exp(ly)
                v[use_log] = yl
                d[use_log] = yl * s1 / xl
                d2[use_log] = yl / xl**2 * (s1 * s1 + s2 - s1)
            lin = ~use_log
            if np.any(lin):
                xl = xi[lin]
                v[lin] = self._lin_spline(xl)
                d[lin] = self._lin_spline(xl, 1)
                d2[lin] = self._lin_spline(xl, 2)
            val[inside], der[inside], der2[inside] = v, d, d2

        shape = x.shape
        return as_output(val.reshape(shape)), as_output(der.reshape(shape)), as_output(der2.reshape(shape))


class ClampedSpline2D:
    """
    Bicubic interpolant on a rectangular grid, with the query coordinates
    clamped to the tabulated domain.

    Attributes
    ----------
    xmin, xmax, ymin, ymax : float
        Extent of the tabulated domain.
    """
    def __init__(
            self,
            x: npt.NDArray[np.float64],
            y: npt.NDArray[np.float64],
            z: npt.NDArray[np.float64]
        ):
        x = np.asarray(x, dtype=float)
        y = np.asarray(y, dtype=float)
        z = np.asarray(z, dtype=float)
        if z.shape != (x.size, y.size):
            raise ValueError(f"Values have shape {z.shape}, expected {(x.size, y.size)}.")
        if x.size < 2 or y.size < 2:
            raise ValueError("ClampedSpline2D requires at least 2 nodes in each dimension.")
        self._spline = RectBivariateSpline(
            x, y, z, kx=min(3, x.size - 1), ky=min(3, y.size - 1), s=0
        )
        self.xmin, self.xmax = float(x[0]), float(x[-1])
        self.ymin, self.ymax = float(y[0]), float(y[-1])

    def __call__(self, x: ArrayLike, y: ArrayLike) -> ArrayLike:
        return self.value(x, y)

    def value(self, x: ArrayLike, y: ArrayLike) -> ArrayLike:
        x = np.clip(x, self.xmin, self.xmax)
        y = np.clip(y, self.ymin, self.ymax)
        return as_output(self._spline.ev(x, y))
