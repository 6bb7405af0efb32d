import numpy as np
import pytest
from spherisopy import (
    PhaseVolume,
    Plummer,
    PlummerDF,
    SphericalIsotropicModel,
    dif_coef_energy,
    dif_coef_losscone,
)


@pytest.fixture(scope="module")
def potential():
    return Plummer()


@pytest.fixture(scope="module")
def model(potential):
    phasevol = PhaseVolume(potential)
    return SphericalIsotropicModel(phasevol, PlummerDF(phasevol), np.logspace(-6, 6, 97))


def test_energy_diffusion_coefficients(model):
    """
    <Delta E^2> is positive everywhere; <Delta E> heats the core and cools the halo.
    """
    E = np.linspace(-0.99, -0.01, 30)
    delta_e, delta_e2 = dif_coef_energy(model, E)
    assert np.all(np.isfinite(delta_e)) and np.all(np.isfinite(delta_e2))
    assert np.all(delta_e2 > 0)
    assert delta_e[0] > 0
    assert delta_e[-1] < 0


def test_energy_diffusion_scalar_matches_vector(model):
    """
    Scalar and vector evaluation give the same coefficients.
    """
    E = np.array([-0.7, -0.2])
    delta_e, delta_e2 = dif_coef_energy(model, E)
    scalar = dif_coef_energy(model, -0.2)
    assert np.ndim(scalar[0]) == 0
    assert np.isclose(scalar[0], delta_e[1], rtol=1e-10)
    assert np.isclose(scalar[1], delta_e2[1], rtol=1e-10)


def test_losscone_coefficient_positive(model, potential):
    """
    The orbit-averaged angular-momentum diffusion coefficient is positive and finite.
    """
    values = [dif_coef_losscone(model, potential, E) for E in (-0.9, -0.5, -0.05)]
    assert all(np.isfinite(val) and val > 0 for val in values)
