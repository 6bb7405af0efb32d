"""
SpherIsoPy: A Python package to construct isotropic spherical dynamical models from a
distribution function of phase volume, and to compute their densities, velocity dispersions,
two-body relaxation coefficients and velocity samples.
"""

from .numerics import (
    LogLogSpline,
    ClampedSpline2D,
    create_interpolation_grid,
    create_nonuniform_grid,
    find_root,
)
from .potential import (
    SphericalPotential,
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
from .phasevolume import PhaseVolume
from .df import (
    ScalarFunction,
    FunctionWrapper,
    PlummerDF,
    DoublePowerLawDF,
    TruncatedDF,
    as_scalar_function,
)
from .diagnostics import (
    DiagnosticSink,
    NullSink,
    ListSink,
    TextFileSink,
    FallbackEvent,
    FallbackWarning,
    ModelConstructionError,
)
from .model import IsotropicModelData, SphericalIsotropicModel, build_model_data
from .local import LocalModelData, SphericalIsotropicModelLocal, build_local_model_data
from .diffusion import dif_coef_energy, dif_coef_losscone
from .density import compute_density, compute_projected_density
from .sampling import sample_pos_vel
from .report import write_spherical_isotropic_model
