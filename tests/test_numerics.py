import numpy as np
import pytest
from spherisopy import (
    LogLogSpline,
    ClampedSpline2D,
    DoublePowerLawDF,
    create_interpolation_grid,
    create_nonuniform_grid,
    find_root,
)
from spherisopy.numerics import (
    LogLogScaledFunction,
    gl_nodes_weights,
    integrate_gl,
    integrate_gl_scaled,
    segment_nodes,
)


def test_gl_nodes_weights_unit_interval():
    """
    Gauss-Legendre nodes lie inside (0, 1) and the weights sum to one.
    """
    for order in (6, 8, 10):
        nodes, weights = gl_nodes_weights(order)
        assert nodes.shape == weights.shape == (order,)
        assert np.all((nodes > 0) & (nodes < 1))
        assert np.isclose(np.sum(weights), 1.0, rtol=1e-14)


def test_gl_invalid_order():
    """
    A non-positive quadrature order raises a ValueError.
    """
    with pytest.raises(ValueError, match="order"):
        gl_nodes_weights(0)


def test_integrate_gl_polynomial_exact():
    """
    A rule of order n integrates polynomials of degree 2n-1 exactly.
    """
    result = integrate_gl(lambda x: x**5, 0.0, 2.0, order=3)
    assert np.isclose(result, 64.0 / 6, rtol=1e-13)


def test_integrate_gl_scaled_endpoint_singularity():
    """
    The scaled rule handles an integrable 1/sqrt singularity at the lower endpoint.
    """
    result = integrate_gl_scaled(lambda x: 1 / np.sqrt(x), 0.0, 1.0, order=8)
    assert np.isclose(result, 2.0, rtol=1e-6)


def test_segment_nodes_shapes():
    """
    Nodes and weights are returned per segment, with weights scaled by the segment length.
    """
    x, w = segment_nodes(np.array([0.0, 1.0]), np.array([1.0, 3.0]), 6)
    assert x.shape == w.shape == (2, 6)
    assert np.allclose(np.sum(w, axis=1), [1.0, 2.0])
    assert np.all((x[1] > 1.0) & (x[1] < 3.0))


def test_find_root_bracketed():
    """
    The root of x^2 - 2 on [0, 2] is found to the requested tolerance.
    """
    root = find_root(lambda x: x * x - 2, 0.0, 2.0, 1e-10)
    assert np.isclose(root, np.sqrt(2), rtol=1e-9)


def test_find_root_not_bracketed_returns_nan():
    """
    Without a sign change the root finder returns NaN instead of raising.
    """
    assert np.isnan(find_root(lambda x: x * x + 1, -1.0, 1.0))


def test_nonuniform_grid_properties():
    """
    The nonuniform grid starts at zero, has the requested first step and ends at the upper limit.
    """
    grid = create_nonuniform_grid(100, 0.1, 50.0, True)
    assert grid.size == 100
    assert grid[0] == 0.0
    assert np.isclose(grid[1], 0.1, rtol=1e-10)
    assert grid[-1] == 50.0
    steps = np.diff(grid)
    assert np.all(steps > 0)
    assert np.all(np.diff(steps) > -1e-12)


def test_nonuniform_grid_falls_back_to_uniform():
    """
    If the first step is too large for geometric growth the grid is uniform.
    """
    grid = create_nonuniform_grid(10, 5.0, 20.0, True)
    assert np.allclose(grid, np.linspace(0, 20, 10))


def test_nonuniform_grid_invalid():
    """
    Invalid grid parameters raise a ValueError.
    """
    with pytest.raises(ValueError):
        create_nonuniform_grid(10, 5.0, 1.0)


def test_interpolation_grid_covers_double_power_law():
    """
    The adaptive grid is strictly increasing and extends well into both power-law regimes.
    """
    grid = create_interpolation_grid(LogLogScaledFunction(DoublePowerLawDF()))
    assert np.all(np.diff(grid) > 0)
    assert grid[0] < -5 and grid[-1] > 5


def test_interpolation_grid_stops_where_function_vanishes():
    """
    The grid does not extend beyond the point where the function drops to zero.
    """
    fnc = lambda h: np.where(h < 10.0, (1 + h) ** -4.0, 0.0)
    grid = create_interpolation_grid(LogLogScaledFunction(fnc))
    assert grid[-1] < np.log(10.0)
    assert np.all(np.diff(grid) > 0)


def test_loglog_spline_power_law_exact():
    """
    A pure power law with exact derivatives is reproduced inside and outside the grid.
    """
    x = np.geomspace(1, 100, 5)
    spline = LogLogSpline(x, 3 * x**-2.0, -6 * x**-3.0)
    xq = np.array([0.1, 2.5, 50.0, 1000.0])
    val, der, der2 = spline.eval_deriv(xq)
    assert np.allclose(val, 3 * xq**-2.0, rtol=1e-10)
    assert np.allclose(der, -6 * xq**-3.0, rtol=1e-10)
    assert np.allclose(der2, 18 * xq**-4.0, rtol=1e-9)


def test_loglog_spline_pins_node_derivatives():
    """
    Derivatives at the nodes equal the supplied ones.
    """
    x = np.array([1.0, 2.0, 4.0, 8.0])
    y = np.array([1.0, 1.8, 2.5, 2.9])
    d = np.array([0.9, 0.5, 0.25, 0.05])
    val, der, _ = LogLogSpline(x, y, d).eval_deriv(x)
    assert np.allclose(val, y, rtol=1e-13)
    assert np.allclose(der, d, rtol=1e-12)


def test_loglog_spline_natural_without_derivatives():
    """
    Without derivatives the spline is exact for a power law (linear in log-log).
    """
    x = np.geomspace(1, 10, 6)
    spline = LogLogSpline(x, x**2)
    assert np.isclose(spline(3.0), 9.0, rtol=1e-10)


def test_loglog_spline_handles_zero_values():
    """
    Segments touching zero values are interpolated linearly and extrapolated as a constant.
    """
    x = np.array([1.0, 2.0, 3.0, 4.0])
    y = np.array([1.0, 0.5, 0.0, 0.0])
    d = np.array([-0.5, -0.5, 0.0, 0.0])
    spline = LogLogSpline(x, y, d)
    assert 0.0 <= spline(2.5) <= 0.5
    assert spline(5.0) == 0.0
    assert spline(np.inf) == 0.0


def test_loglog_spline_infinite_argument():
    """
    At infinity a decreasing power law tends to zero and a flat one to its last value.
    """
    x = np.array([1.0, 2.0, 4.0])
    decreasing = LogLogSpline(x, 1 / x, -1 / x**2)
    flat = LogLogSpline(x, np.array([0.5, 0.9, 1.0]), np.array([0.5, 0.2, 0.0]))
    assert decreasing(np.inf) == 0.0
    assert flat(np.inf) == 1.0


def test_loglog_spline_invalid_grid():
    """
    A non-increasing grid raises a ValueError.
    """
    with pytest.raises(ValueError, match="increasing"):
        LogLogSpline(np.array([1.0, 3.0, 2.0]), np.ones(3))


def test_clamped_spline_2d_linear_and_clamping():
    """
    A linear function is interpolated exactly and queries outside the domain are clamped.
    """
    x = np.linspace(0, 1, 5)
    y = np.linspace(0, 2, 7)
    z = x[:, None] + 2 * y[None, :]
    spline = ClampedSpline2D(x, y, z)
    assert (spline.xmin, spline.xmax, spline.ymin, spline.ymax) == (0.0, 1.0, 0.0, 2.0)
    assert np.isclose(spline(0.5, 0.5), 1.5, rtol=1e-10)
    assert np.isclose(spline(-10.0, 0.5), spline(0.0, 0.5))
    assert np.isclose(spline(0.5, 10.0), 4.5, rtol=1e-10)


def test_clamped_spline_2d_shape_mismatch():
    """
    Values with the wrong shape raise a ValueError.
    """
    with pytest.raises(ValueError, match="shape"):
        ClampedSpline2D(np.arange(3.0), np.arange(4.0), np.zeros((4, 3)))
