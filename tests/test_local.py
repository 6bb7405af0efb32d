import numpy as np
import pytest
import spherisopy.local as local_module
import spherisopy.model as model_module
from spherisopy import (
    PhaseVolume,
    Plummer,
    PlummerDF,
    DoublePowerLawDF,
    TruncatedDF,
    SphericalIsotropicModelLocal,
    FallbackWarning,
    ListSink,
    ModelConstructionError,
)
from spherisopy.local import FALLBACK_J1_OVER_J0, FALLBACK_J3_OVER_J0, _moment_ratios


@pytest.fixture(scope="module")
def potential():
    return Plummer()


@pytest.fixture(scope="module")
def phasevol(potential):
    return PhaseVolume(potential)


@pytest.fixture(scope="module")
def model(phasevol):
    return SphericalIsotropicModelLocal(phasevol, PlummerDF(phasevol), np.logspace(-6, 6, 61))


def test_density_matches_plummer(model, potential):
    """
    The density recovered from the DF equals the Plummer density profile.
    """
    r = np.array([0.1, 1.0, 10.0])
    rho = model.density(potential(r))
    assert np.allclose(rho, potential.density(r), rtol=1e-6)


def test_velocity_dispersion_matches_plummer(model, potential):
    """
    The Plummer sphere has sigma^2 = -Phi / 6.
    """
    phi = potential(np.array([0.3, 1.0, 3.0]))
    assert np.allclose(model.vel_disp(phi), np.sqrt(-phi / 6), rtol=1e-2)


def test_scalar_density(model):
    """
    A scalar potential gives a scalar density.
    """
    assert isinstance(model.density(-0.5), float)


def test_density_rejects_non_negative_potential(model):
    """
    Density and dispersion require Phi < 0.
    """
    with pytest.raises(ValueError):
        model.density(np.array([-0.5, 0.0]))
    with pytest.raises(ValueError):
        model.vel_disp(0.1)


def test_eval_local_signs(model):
    """
    Dynamical friction decelerates the particle and both second-order coefficients are positive.
    """
    dvpar, dv2par, dv2per = model.eval_local(-0.5, -0.3)
    assert dvpar < 0
    assert dv2par > 0
    assert dv2per > 0


def test_eval_local_unbound_particle(model):
    """
    Particles with E >= 0 are allowed and give finite coefficients.
    """
    result = model.eval_local(-0.5, 0.2)
    assert np.all(np.isfinite(result))
    assert result[0] < 0


def test_eval_local_invalid_arguments(model):
    """
    Phi >= 0 or E < Phi raise a ValueError.
    """
    with pytest.raises(ValueError, match="incompatible"):
        model.eval_local(0.0, 1.0)
    with pytest.raises(ValueError, match="incompatible"):
        model.eval_local(-0.5, -0.8)


def test_sample_velocity_range_and_moment(model):
    """
    Sampled speeds lie below the escape speed and their mean square equals 3 sigma^2.
    """
    rng = np.random.default_rng(42)
    speeds = np.array([model.sample_velocity(-0.5, rng) for _ in range(300)])
    assert np.all((speeds >= 0) & (speeds <= 1.0))
    assert np.isclose(np.mean(speeds**2), 0.25, rtol=0.15)


def test_sample_velocity_is_reproducible(model):
    """
    Generators with the same seed give the same speeds.
    """
    first = [model.sample_velocity(-0.3, np.random.default_rng(7)) for _ in range(3)]
    second = [model.sample_velocity(-0.3, np.random.default_rng(7)) for _ in range(3)]
    assert first == second


def test_sample_velocity_invalid_potential(model):
    """
    Sampling at Phi >= 0 raises a ValueError.
    """
    with pytest.raises(ValueError):
        model.sample_velocity(0.0)


def test_no_fallbacks_for_plummer(model):
    """
    The asymptotic expressions can be evaluated for a Plummer model.
    """
    assert model.fallback_counts().get("hypergeometric", 0) == 0


def test_from_data_reproduces_model(phasevol, model):
    """
    A model rebuilt from its tables evaluates identically.
    """
    clone = SphericalIsotropicModelLocal.from_data(phasevol, model.data, model.local_data)
    assert clone.density(-0.5) == model.density(-0.5)
    assert clone.eval_local(-0.5, -0.2) == model.eval_local(-0.5, -0.2)


def test_hypergeometric_failure_is_reported(phasevol, monkeypatch):
    """
    If the asymptotic hypergeometric values are not finite, the numerical ones are kept
    and every affected node is reported.
    """
    monkeypatch.setattr(local_module, "hyp2f1", lambda *args: np.nan)
    with pytest.warns(FallbackWarning, match="asymptotic"):
        model = SphericalIsotropicModelLocal(
            phasevol, PlummerDF(phasevol), np.logspace(-4, 4, 25), num_points_y=20)
    assert model.fallback_counts()["hypergeometric"] == 19
    event = model.fallback_events[0]
    assert event.kind == "hypergeometric"
    assert event.x == model.local_data.grid_logh[-1]
    assert np.isfinite(model.density(-0.5))


def test_moment_ratio_fallback():
    """
    Invalid ratios are replaced by their limiting values for E -> Phi.
    """
    assert _moment_ratios(1.0, 0.5, 0.2, 1.0) == (0.5, 0.2, True)
    assert _moment_ratios(1.0, -0.5, 0.2, 1.0) == (FALLBACK_J1_OVER_J0, FALLBACK_J3_OVER_J0, False)
    assert _moment_ratios(0.0, 0.0, 0.0, 1.0)[2] is False


def test_truncated_df(phasevol):
    """
    A DF vanishing beyond some h gives a trimmed grid of the local tables.
    """
    gridh = np.logspace(-3, 3, 40)
    model = SphericalIsotropicModelLocal(phasevol, TruncatedDF(DoublePowerLawDF(), 100.0), gridh)
    assert model.data.grid_h.size == 40
    assert model.local_data.grid_logh[-1] <= np.log(100.0)
    assert model.local_data.grid_logh.size >= 3
    phi = float(phasevol.energy(1.0))
    assert model.density(phi) > 0


def test_diagnostic_rows_of_both_stages(phasevol):
    """
    The sink receives the rows of the global tables followed by those of the 2D grid.
    """
    sink = ListSink()
    SphericalIsotropicModelLocal(
        phasevol, PlummerDF(phasevol), np.logspace(-2, 2, 9), sink=sink, num_points_y=10, show_progress=True)
    assert len(sink.rows) == 9 + 9 * 10
    assert "J1overJ0" in sink.rows[-1]
    assert np.isclose(sink.rows[9]["J1overJ0"], FALLBACK_J1_OVER_J0)


def test_too_few_positive_nodes(phasevol):
    """
    A DF that is positive on only two nodes of the grid leaves too few rows for the local tables.
    """
    df = TruncatedDF(PlummerDF(phasevol), 5e-3)
    with pytest.raises(ModelConstructionError, match=r"SphericalIsotropicModelLocal: f\(h\) is nowhere positive"):
        SphericalIsotropicModelLocal(phasevol, df, np.logspace(-3, 3, 13))


def test_asymptotic_outer_row_matches_numerical(phasevol, monkeypatch):
    """
    The hypergeometric expressions for the outermost row agree with the numerical integrals
    that are kept when these expressions cannot be evaluated.
    """
    gridh = np.logspace(-4, 4, 25)
    exact = SphericalIsotropicModelLocal(phasevol, PlummerDF(phasevol), gridh, num_points_y=20)
    monkeypatch.setattr(local_module, "hyp2f1", lambda *args: np.nan)
    with pytest.warns(FallbackWarning):
        numerical = SphericalIsotropicModelLocal(phasevol, PlummerDF(phasevol), gridh, num_points_y=20)
    assert np.allclose(exact.local_data.grid_j1[-1], numerical.local_data.grid_j1[-1], rtol=0, atol=1e-2)
    assert np.allclose(exact.local_data.grid_j3[-1], numerical.local_data.grid_j3[-1], rtol=0, atol=1e-2)
    assert np.array_equal(exact.local_data.grid_j1[:-1], numerical.local_data.grid_j1[:-1])


def test_adaptive_grid_built_once(phasevol, monkeypatch):
    """
    Without a user grid both sets of tables share one adaptively constructed grid.
    """
    calls = []
    original = model_module.create_interpolation_grid

    def counting(*args, **kwargs):
        calls.append(1)
        return original(*args, **kwargs)

    monkeypatch.setattr(model_module, "create_interpolation_grid", counting)
    model = SphericalIsotropicModelLocal(phasevol, PlummerDF(phasevol), num_points_y=10)
    assert len(calls) == 1
    assert model.local_data.grid_logh.size <= model.data.grid_h.size
