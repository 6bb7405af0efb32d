import numpy as np
import pytest
from spherisopy import PhaseVolume, Plummer, Kepler, SphericalPotential


@pytest.fixture(scope="module")
def plummer_pv():
    return PhaseVolume(Plummer())


@pytest.fixture(scope="module")
def kepler_pv():
    return PhaseVolume(Kepler(2.0))


def test_kepler_phase_volume_matches_analytic(kepler_pv):
    """
    In a Kepler potential h(E) = (2 sqrt(2) pi^3 / 3) M^3 (-E)^{-3/2} and g = 3h / (-2E).
    """
    E = np.array([-100.0, -3.0, -0.05])
    h, g = kepler_pv.eval_deriv(E)
    h_exact = 2 * np.sqrt(2) * np.pi**3 / 3 * 8.0 * (-E) ** -1.5
    assert np.allclose(h, h_exact, rtol=1e-5)
    assert np.allclose(g, 1.5 * h_exact / (-E), rtol=1e-5)


def test_round_trip_energy(plummer_pv):
    """
    E(h(E)) reproduces the energy, including outside the tabulated range.
    """
    E = np.array([-0.999, -0.9, -0.5, -0.1, -1e-3, -1e-6])
    h = plummer_pv(E)
    assert np.all(np.diff(h) > 0)
    assert np.allclose(plummer_pv.energy(h), E, rtol=1e-10)


def test_density_of_states_is_derivative(plummer_pv):
    """
    g(E) agrees with a finite-difference derivative of h(E).
    """
    E = np.array([-0.8, -0.3, -0.02])
    dE = 1e-6 * np.abs(E)
    fd = (plummer_pv(E + dE) - plummer_pv(E - dE)) / (2 * dE)
    assert np.allclose(plummer_pv.eval_deriv(E)[1], fd, rtol=1e-5)


def test_energy_deriv_consistency(plummer_pv):
    """
    energy_deriv returns E(h), g(h) and dg/dh consistent with finite differences in h.
    """
    h = np.array([0.05, 1.0, 30.0])
    E, g, dgdh = plummer_pv.energy_deriv(h)
    assert np.allclose(plummer_pv.eval_deriv(E)[1], g, rtol=1e-8)
    eps = 1e-5
    g_plus = plummer_pv.energy_deriv(h * (1 + eps))[1]
    g_minus = plummer_pv.energy_deriv(h * (1 - eps))[1]
    assert np.allclose(dgdh, (g_plus - g_minus) / (2 * eps * h), rtol=1e-4)


def test_limiting_values(plummer_pv):
    """
    h vanishes below the bottom of the potential and is infinite for unbound energies.
    """
    assert plummer_pv(-1.5) == 0
    assert plummer_pv(0.0) == np.inf
    assert plummer_pv.energy(0.0) == plummer_pv.phi0 == -1.0
    assert plummer_pv.energy(np.inf) == 0.0


def test_delta_e_matches_difference_of_energies(plummer_pv):
    """
    delta_e equals E(h1) - E(h0) and returns g(h1).
    """
    logh0 = np.log(2.0)
    logh1 = np.log(np.array([2.5, 10.0, 1e4]))
    dE, g1 = plummer_pv.delta_e(logh1, logh0)
    E1, g_exact, _ = plummer_pv.energy_deriv(np.exp(logh1))
    assert np.allclose(dE, E1 - plummer_pv.energy(2.0), rtol=1e-8)
    assert np.allclose(g1, g_exact, rtol=1e-10)


def test_scalar_input_returns_float(plummer_pv):
    """
    Scalar arguments produce scalar results.
    """
    h, g = plummer_pv.eval_deriv(-0.5)
    assert np.ndim(h) == 0 and np.ndim(g) == 0


def test_rejects_non_monotonic_potential():
    """
    A potential that is not negative and increasing raises a ValueError.
    """
    class Bowl(SphericalPotential):
        def eval_deriv(self, r):
            r = np.asarray(r, dtype=float)
            return 1 / (1 + r * r), -2 * r / (1 + r * r) ** 2, np.zeros_like(r)

    with pytest.raises(ValueError, match="monotonically"):
        PhaseVolume(Bowl())


def test_rejects_invalid_grid():
    """
    An empty radial range raises a ValueError.
    """
    with pytest.raises(ValueError, match="radial grid"):
        PhaseVolume(Plummer(), r_min=10.0, r_max=1.0)
