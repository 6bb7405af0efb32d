import numpy as np
import pytest
from spherisopy import (
    Plummer,
    Dehnen,
    Hernquist,
    Isochrone,
    NFW,
    Kepler,
    CompositePotential,
    r_max,
    r_circ,
    v_circ,
    inner_slope,
)


def finite_difference(func, r, eps=1e-5):
    return (func(r + eps) - func(r - eps)) / (2 * eps)


@pytest.mark.parametrize("pot", [
    Plummer(2.0, 0.5),
    Dehnen(1.0, 1.0, 0.5),
    Hernquist(),
    Isochrone(1.0, 2.0),
    NFW(),
    Kepler(0.3),
])
def test_derivatives_match_finite_differences(pot):
    """
    First and second radial derivatives agree with finite differences of the potential.
    """
    r = np.array([0.3, 1.0, 4.0])
    _, der, der2 = pot.eval_deriv(r)
    assert np.allclose(der, finite_difference(pot.value, r), rtol=1e-6)
    assert np.allclose(der2, finite_difference(lambda x: pot.eval_deriv(x)[1], r), rtol=1e-6)


def test_potentials_are_negative_and_increasing():
    """
    All potentials are negative, increase with radius and vanish at infinity.
    """
    r = np.geomspace(1e-3, 1e3, 50)
    for pot in (Plummer(), Dehnen(gamma=1.5), Isochrone(), NFW(), Kepler()):
        phi = pot(r)
        assert np.all(phi < 0)
        assert np.all(np.diff(phi) > 0)
        assert abs(pot(1e12)) < 1e-8


def test_nfw_series_continuity():
    """
    The NFW potential and its derivative are continuous across the small-radius series threshold.
    """
    pot = NFW(1.0, 2.0)
    r_switch = NFW.SERIES_THRESHOLD * 2.0
    below = pot.eval_deriv(r_switch * (1 - 1e-6))
    above = pot.eval_deriv(r_switch * (1 + 1e-6))
    assert np.isclose(below[0], above[0], rtol=1e-8)
    assert np.isclose(below[1], above[1], rtol=1e-4)


def test_composite_potential_sums_components():
    """
    A composite potential is the sum of its components, and `+` builds one.
    """
    pot = Kepler(0.1) + Plummer()
    assert isinstance(pot, CompositePotential)
    assert np.isclose(pot(2.0), -0.05 - 1 / np.sqrt(5))
    assert pot(0.0) == -np.inf


def test_invalid_parameters():
    """
    Non-positive masses or radii and out-of-range Dehnen slopes raise a ValueError.
    """
    with pytest.raises(ValueError, match="mass"):
        Plummer(mass=-1.0)
    with pytest.raises(ValueError, match="scale_radius"):
        Isochrone(scale_radius=0.0)
    with pytest.raises(ValueError, match="gamma"):
        Dehnen(gamma=2.0)
    with pytest.raises(ValueError):
        CompositePotential([])


def test_r_max_inverts_potential():
    """
    r_max(E) solves Phi(r) = E, with limiting values for unbound and too deep energies.
    """
    pot = Plummer()
    for E in (-0.9, -0.5, -0.01):
        r = r_max(pot, E)
        assert np.isclose(pot(r), E, rtol=1e-12)
    assert r_max(pot, 0.0) == np.inf
    assert r_max(pot, -1.5) == 0.0


def test_circular_orbit_in_kepler_potential():
    """
    In a Kepler potential the circular radius is -M/(2E) and v_circ = sqrt(M/r).
    """
    pot = Kepler(2.0)
    assert np.isclose(r_circ(pot, -0.5), 2.0, rtol=1e-10)
    assert np.isclose(v_circ(pot, 4.0), np.sqrt(0.5))
    assert r_circ(pot, 0.1) == np.inf


def test_inner_slope():
    """
    The inner power-law index is 2 for a cored potential and -1 for a central point mass.
    """
    slope, coef = inner_slope(Plummer())
    assert np.isclose(slope, 2.0, atol=1e-6)
    assert np.isclose(coef, 0.5, rtol=1e-2)

    slope, coef = inner_slope(Kepler(0.7))
    assert np.isclose(slope, -1.0)
    assert np.isclose(coef, -0.7)

    slope, coef = inner_slope(Kepler(0.1) + Plummer())
    assert abs(slope + 1) < 1e-3
    assert np.isclose(-coef, 0.1, rtol=1e-4)


def test_plummer_density_profile():
    """
    The Plummer density satisfies Poisson's equation for the potential.
    """
    pot = Plummer(1.5, 0.8)
    r = np.array([0.2, 1.0, 3.0])
    _, der, der2 = pot.eval_deriv(r)
    laplacian = der2 + 2 * der / r
    assert np.allclose(pot.density(r), laplacian / (4 * np.pi), rtol=1e-10)
