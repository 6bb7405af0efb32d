# Import necessary modules
# ------------------------------------------------------------------------------------------------ #
import numpy as np
import numpy.typing as npt
from typing import Callable, Optional, Tuple, Union

from .numerics import as_output
from .phasevolume import PhaseVolume
# ------------------------------------------------------------------------------------------------ #

ArrayLike = Union[float, npt.NDArray[np.float64]]


class ScalarFunction:
    """
    Interface for a function of one variable that may provide its derivative.

    `num_derivs` tells callers whether `eval_deriv` returns an analytic derivative
    (1) or whether they should estimate slopes by finite differences (0).
    """
    num_derivs = 0

    def value(self, x: ArrayLike) -> ArrayLike:
        raise NotImplementedError("Subclasses must implement value(x).")

    def eval_deriv(self, x: ArrayLike) -> Tuple[ArrayLike, ArrayLike]:
        """Value and first derivative; the derivative is NaN if not available."""
        return self.value(x), as_output(np.full(np.shape(x), np.nan))

    def __call__(self, x: ArrayLike) -> ArrayLike:
        return self.value(x)


class FunctionWrapper(ScalarFunction):
    """
    Wrap a plain callable (and optionally its derivative) as a ScalarFunction.

    Parameters
    ----------
    func : callable
        The function f(x).
    deriv : callable, optional
        Its derivative df/dx; if given, `num_derivs` is 1.
    vectorized : bool, optional
        Whether `func` and `deriv` accept numpy arrays. If False (default),
        they are wrapped with `numpy.vectorize`.
    """
    def __init__(
            self,
            func: Callable[[float], float],
            deriv: Optional[Callable[[float], float]] = None,
            vectorized: bool = False
        ):
        if not callable(func) or (deriv is not None and not callable(deriv)):
            raise TypeError("func and deriv must be callable.")
        self._func = func if vectorized else np.vectorize(func, otypes=[float])
        self._deriv = None
        if deriv is not None:
            self._deriv = deriv if vectorized else np.vectorize(deriv, otypes=[float])
        self.num_derivs = 0 if deriv is None else 1

    def value(self, x):
        return as_output(self._func(np.asarray(x, dtype=float)))

    def eval_deriv(self, x):
        if self._deriv is None:
            return super().eval_deriv(x)
        x = np.asarray(x, dtype=float)
        return as_output(self._func(x)), as_output(self._deriv(x))


def as_scalar_function(obj) -> ScalarFunction:
    """Return `obj` if it is a ScalarFunction, or wrap a plain callable."""
    if isinstance(obj, ScalarFunction):
        return obj
    if callable(obj):
        return FunctionWrapper(obj)
    raise TypeError(f"Distribution function must be callable, got {type(obj).__name__}.")


class PlummerDF(ScalarFunction):
    """
    Isotropic distribution function of a Plummer sphere, expressed through the phase volume:

        f(h) = 24 sqrt(2) / (7 pi^3) * a^2 / M^4 * (-E(h))^{7/2}.
    """
    num_derivs = 1

    def __init__(self, phasevol: PhaseVolume, mass: float = 1.0, scale_radius: float = 1.0):
        if not (mass > 0 and scale_radius > 0):
            raise ValueError("mass and scale_radius must be positive.")
        self.phasevol = phasevol
        self.mass = float(mass)
        self.scale_radius = float(scale_radius)
        self.norm = 24 * np.sqrt(2) / (7 * np.pi**3) * scale_radius**2 / mass**4

    def value(self, h):
        E = np.minimum(np.asarray(self.phasevol.energy(h)), 0.0)
        return as_output(self.norm * (-E) ** 3.5)

    def eval_deriv(self, h):
        E, g, _ = self.phasevol.energy_deriv(h)
        E = np.minimum(np.asarray(E), 0.0)
        f = self.norm * (-E) ** 3.5
        with np.errstate(divide="ignore", invalid="ignore"):
            dfdh = np.where(np.isinf(g), 0.0, -3.5 * self.norm * (-E) ** 2.5 / g)
        return as_output(f), as_output(dfdh)

    def __str__(self):
        return f"PlummerDF(mass={self.mass}, scale_radius={self.scale_radius})"


class DoublePowerLawDF(ScalarFunction):
    """
    Broken power-law distribution function of phase volume:

        f(h) = A (h/h0)^gamma1 (1 + h/h0)^(gamma2 - gamma1),

    which behaves as h^gamma1 for h << h0 and as h^gamma2 for h >> h0.
    """
    num_derivs = 1

    def __init__(
            self,
            norm: float = 1.0,
            h0: float = 1.0,
            inner_slope: float = 0.0,
            outer_slope: float = -4.0
        ):
        if not (norm > 0 and h0 > 0):
            raise ValueError("norm and h0 must be positive.")
        self.norm = float(norm)
        self.h0 = float(h0)
        self.inner_slope = float(inner_slope)
        self.outer_slope = float(outer_slope)

    def value(self, h):
        x = np.asarray(h, dtype=float) / self.h0
        with np.errstate(divide="ignore"):
            return as_output(self.norm * x**self.inner_slope * (1 + x) ** (self.outer_slope - self.inner_slope))

    def eval_deriv(self, h):
        h = np.asarray(h, dtype=float)
        x = h / self.h0
        f = np.asarray(self.value(h))
        # logarithmic slope d log f / d log h
        slope = self.inner_slope + (self.outer_slope - self.inner_slope) * x / (1 + x)
        with np.errstate(divide="ignore", invalid="ignore"):
            dfdh = f * slope / h
        return as_output(f), as_output(dfdh)


class TruncatedDF(ScalarFunction):
    """Distribution function equal to `base` for h <= h_max and identically zero beyond."""
    def __init__(self, base, h_max: float):
        self.base = as_scalar_function(base)
        self.h_max = float(h_max)
        self.num_derivs = self.base.num_derivs

    def value(self, h):
        h = np.asarray(h, dtype=float)
        return as_output(np.where(h <= self.h_max, self.base.value(h), 0.0))

    def eval_deriv(self, h):
        h = np.asarray(h, dtype=float)
        f, der = self.base.eval_deriv(h)
        inside = h <= self.h_max
        return as_output(np.where(inside, f, 0.0)), as_output(np.where(inside, der, 0.0))
