# Import necessary modules
# ------------------------------------------------------------------------------------------------ #
import warnings
import numpy as np
import numpy.typing as npt
from typing import Optional, Tuple

from .df import as_scalar_function
from .phasevolume import PhaseVolume
from .potential import SphericalPotential
# ------------------------------------------------------------------------------------------------ #


def _unscale_rv(
        pot: SphericalPotential,
        scaled_r: npt.NDArray[np.float64],
        scaled_v: npt.NDArray[np.float64]
    ) -> Tuple[npt.NDArray[np.float64], ...]:
    """
    Map the unit square onto (r, v) with r = exp(1/(1-s) - 1/s) and v = s_v v_esc(r),
    returning r, v, Phi(r) and the Jacobian of the full six-dimensional transformation.
    """
    with np.errstate(over="ignore", divide="ignore", invalid="ignore"):
        r = np.exp(1 / (1 - scaled_r) - 1 / scaled_r)
        drds = r * (1 / (1 - scaled_r) ** 2 + 1 / scaled_r**2)
        phi = np.asarray(pot(r), dtype=float)
        vesc = np.sqrt(-2 * phi)
        v = scaled_v * vesc
        jac = (4 * np.pi) ** 2 * (r * vesc * scaled_v) ** 2 * vesc * drds
    return r, v, phi, jac


def _weights(pot, df, phasevol, scaled_r, scaled_v):
    r, v, phi, jac = _unscale_rv(pot, scaled_r, scaled_v)
    ok = np.isfinite(jac) & (jac > 1e-100) & (jac < 1e100)
    w = np.zeros_like(jac)
    if np.any(ok):
        f = np.asarray(df(phasevol(phi[ok] + 0.5 * v[ok] ** 2)), dtype=float)
        w[ok] = np.where(np.isfinite(f), f * jac[ok], 0.0)
    return r, v, w


def _random_unit_vectors(rng: np.random.Generator, n: int) -> npt.NDArray[np.float64]:
    vec = rng.normal(size=(n, 3))
    return vec / np.linalg.norm(vec, axis=1)[:, None]


def sample_pos_vel(
        pot: SphericalPotential,
        df,
        n_samples: int,
        phasevol: Optional[PhaseVolume] = None,
        rng: Optional[np.random.Generator] = None,
        batch_size: int = 100_000,
        max_iterations: int = 1000
    ) -> Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """
    Create an N-body realisation of an isotropic DF in a spherical potential.

    Radii and speeds are drawn jointly from the distribution 16 pi^2 r^2 v^2 f(h(Phi + v^2/2))
    in scaled coordinates on the unit square, using batched and vectorised rejection sampling
    against a constant envelope 1.1 times the maximum found on a coarse grid. The total
    mass is the Monte Carlo estimate of the integral of the DF over all drawn points.
    Directions of positions and velocities are isotropic.

    Parameters
    ----------
    pot : SphericalPotential
        The potential.
    df : ScalarFunction or callable
        Distribution function f(h).
    n_samples : int
        Number of particles.
    phasevol : PhaseVolume, optional
        Phase volume of the potential (constructed with defaults if omitted).
    rng : np.random.Generator, optional
        Random number generator (default: a fresh unseeded generator).
    batch_size : int, optional
        Number of proposals drawn per iteration (default 100000).
    max_iterations : int, optional
        Maximum number of batches (default 1000).

    Returns
    -------
    pos, vel : np.ndarray
        Cartesian positions and velocities, arrays of shape (n_samples, 3).
    mass : np.ndarray
        Particle masses, all equal to the total mass divided by `n_samples`.

    Raises
    ------
    ValueError
        If `n_samples` is not positive.
    RuntimeError
        If the DF vanishes everywhere or not enough samples were accepted.

    Warns
    -----
    UserWarning
        If a proposal exceeds the rejection envelope, so that the sample is biased near the peak of the PDF.
    """
    if n_samples <= 0:
        raise ValueError("n_samples must be positive.")
    df = as_scalar_function(df)
    phasevol = phasevol if phasevol is not None else PhaseVolume(pot)
    rng = rng if rng is not None else np.random.default_rng()

    # Determine the maximum of the PDF on a coarse grid in the scaled variables
    s_test = (np.arange(200) + 0.5) / 200
    sr, sv = np.meshgrid(s_test, s_test, indexing="ij")
    _, _, w_test = _weights(pot, df, phasevol, sr.ravel(), sv.ravel())
    envelope = 1.1 * np.max(w_test)
    if not (envelope > 0):
        raise RuntimeError("The distribution function is nowhere positive.")

    accepted_r = np.empty(n_samples)
    accepted_v = np.empty(n_samples)
    filled = 0
    weight_sum = 0.0
    n_drawn = 0
    envelope_exceeded = False

    # Rejection sampling loop
    for _ in range(max_iterations):
        sr = rng.uniform(size=batch_size)
        sv = rng.uniform(size=batch_size)
        u = rng.uniform(0, envelope, size=batch_size)
        r, v, w = _weights(pot, df, phasevol, sr, sv)
        if not envelope_exceeded and np.max(w) > envelope:
            envelope_exceeded = True
            warnings.warn(
                f"The sampled PDF reaches {np.max(w):.6g}, above the rejection envelope {envelope:.6g}; "
                "the samples under-represent the region around its peak.", stacklevel=2)
        weight_sum += np.sum(w)
        n_drawn += batch_size

        mask = u < w
        to_take = min(int(np.sum(mask)), n_samples - filled)
        if to_take > 0:
            accepted_r[filled:filled + to_take] = r[mask][:to_take]
            accepted_v[filled:filled + to_take] = v[mask][:to_take]
            filled += to_take
        if filled >= n_samples:
            break

    if filled < n_samples:
        raise RuntimeError(f"Only accepted {filled} samples out of {n_samples} requested.")

    total_mass = weight_sum / n_drawn
    pos = accepted_r[:, None] * _random_unit_vectors(rng, n_samples)
    vel = accepted_v[:, None] * _random_unit_vectors(rng, n_samples)
    mass = np.full(n_samples, total_mass / n_samples)
    return pos, vel, mass
