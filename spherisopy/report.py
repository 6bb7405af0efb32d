# Import necessary modules
# ------------------------------------------------------------------------------------------------ #
import numpy as np
import numpy.typing as npt
from joblib import Parallel, delayed
from typing import List, Optional

from .density import compute_density, compute_projected_density
from .diffusion import dif_coef_losscone
from .model import SphericalIsotropicModel
from .numerics import (
    ACCURACY_INTERP, GLORDER, MIN_VALUE_ROUNDOFF,
    LogLogScaledFunction, LogLogSpline, create_interpolation_grid, gl_nodes_weights,
)
from .potential import SphericalPotential, inner_slope, r_circ, r_max, v_circ
# ------------------------------------------------------------------------------------------------ #

COLUMNS = [
    "r", "M(r)", "E=Phi(r)", "rho(r)", "f(E)", "M(E)", "h(E)", "Trad(E)", "rcirc(E)", "Lcirc(E)",
    "VelDispersion", "VelDispProj", "SurfaceDensity", "DeltaE^2", "MassFlux", "EnergyFlux",
]
LOSSCONE_COLUMN = "D_RR/R(0)"


def _fmt(x: float) -> str:
    return f"{x:.8g}"


def write_spherical_isotropic_model(
        filename: str,
        header: str,
        model: SphericalIsotropicModel,
        pot: SphericalPotential,
        gridh: Optional[npt.ArrayLike] = None,
        n_jobs: int = 1
    ) -> None:
    """
    Write a text table of quantities describing a spherical isotropic model as functions of radius.

    Columns: radius, enclosed mass, Phi(r) = E, density, f(E), mass with energy below E, h(E),
    radial period, radius and angular momentum of a circular orbit, velocity dispersion,
    line-of-sight velocity dispersion, surface density, <Delta E^2>, mass and energy fluxes
    through the phase volume, and (only if a central point mass is detected in the potential)
    the loss-cone diffusion coefficient.

    Parameters
    ----------
    filename : str
        Output file name.
    header : str
        Free-form text written as the first comment line (skipped if empty).
    model : SphericalIsotropicModel
        The model to describe.
    pot : SphericalPotential
        Its potential.
    gridh : array_like, optional
        Grid in h; constructed adaptively from the model DF if omitted.
    n_jobs : int, optional
        Number of threads used for the loss-cone coefficients (default 1).

    Raises
    ------
    ValueError
        If the supplied grid has fewer than 2 nodes.
    """
    if gridh is None:
        gridh = np.exp(create_interpolation_grid(LogLogScaledFunction(model), ACCURACY_INTERP))
    else:
        gridh = np.asarray(gridh, dtype=float)
        if gridh.size < 2:
            raise ValueError("writeSphericalIsotropicModel: gridh is too small")

    # the corresponding grids in E and r, skipping closely spaced values of the potential
    phi0 = float(pot(0.0))
    grid_h: List[float] = []
    grid_phi: List[float] = []
    grid_g: List[float] = []
    grid_r: List[float] = []
    energies, gs, _ = model.phasevol.energy_deriv(gridh)
    for h, phi, g in zip(gridh, np.atleast_1d(energies), np.atleast_1d(gs)):
        previous = grid_phi[-1] if grid_phi else phi0
        if phi > previous * (1 - MIN_VALUE_ROUNDOFF):
            grid_h.append(h)
            grid_phi.append(phi)
            grid_g.append(g)
            grid_r.append(r_max(pot, phi))
    grid_h, grid_phi, grid_g, grid_r = map(np.array, (grid_h, grid_phi, grid_g, grid_r))

    # density and velocity dispersion from the DF, and their projections
    rho, vel_disp = compute_density(model, model.phasevol, grid_phi, return_vel_disp=True)
    bad = ~np.isfinite(rho + vel_disp) | (rho <= MIN_VALUE_ROUNDOFF)
    rho[bad] = vel_disp[bad] = MIN_VALUE_ROUNDOFF
    density = LogLogSpline(grid_r, rho)
    veldisp = LogLogSpline(grid_r, vel_disp)
    proj_density, proj_vel_disp = compute_projected_density(density, veldisp, grid_r)

    mult = 16 * np.pi**2 * model.cumul_mass()

    # central point mass
    slope, coef = inner_slope(pot)
    mbh = -coef if abs(slope + 1) < 1e-3 else 0.0
    if mbh > 0:
        dif_rr = Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(dif_coef_losscone)(model, pot, E) for E in grid_phi
        )
    else:
        dif_rr = [np.nan] * grid_h.size

    nodes, weights = gl_nodes_weights(GLORDER)
    m_cumul = 0.0
    with open(filename, "w") as fh:
        if header:
            fh.write("#" + header + "\n")
        fh.write("#" + "\t".join(COLUMNS))
        if mbh > 0:
            fh.write("\t" + LOSSCONE_COLUMN + "\n")
            fh.write(f"#0\tMbh = {_fmt(mbh)}\t-INFINITY\n")
        else:
            fh.write("\n")
            fh.write(f"#0\t0\t{_fmt(phi0)}\n")

        for i in range(grid_h.size):
            r, g, h, E = grid_r[i], grid_g[i], grid_h[i], grid_phi[i]
            f, dfdh = model.eval_deriv(h)
            # enclosed mass, integrating the density over the previous segment
            r_prev = grid_r[i - 1] if i > 0 else 0.0
            rk = r_prev + nodes * (r - r_prev)
            m_cumul += 4 * np.pi * (r - r_prev) * np.sum(weights * rk**2 * density(rk))
            intfg = model.cumul_mass(h)
            intfh = model.cumul_ekin(h) * (2.0 / 3)
            intf = model.I0(h)
            delta_e2 = mult * (intf * h + intfh) / g * 2
            flux_m = -mult * ((intf * h + intfh) * g * dfdh + intfg * f)
            flux_e = E * flux_m - mult * (-(intf * h + intfh) * f + intfg * intf)
            rc = r_circ(pot, E)
            lcirc = rc * float(v_circ(pot, rc))
            t_radial = g / (4 * np.pi**2 * lcirc**2)

            values = [
                r, m_cumul, E, rho[i], f, intfg, h, t_radial, rc, lcirc,
                vel_disp[i], proj_vel_disp[i], proj_density[i], delta_e2, flux_m, flux_e,
            ]
            if mbh > 0:
                values.append(dif_rr[i])
            fh.write("\t".join(_fmt(float(val)) for val in values) + "\n")
