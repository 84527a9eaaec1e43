__all__ = [
    "BoundTrackParameters", "ParameterExtractor", "identity_extractor",
    "perigee_to_state", "state_to_perigee",
    "ConstantMagneticField", "MagneticFieldCache",
    "TrackLinearizer", "NumericalTrackLinearizer", "LinearizedTrack",
    "GaussianTrackDensity", "DensityState", "TrackDensityEntry",
    "TrackDensityVertexFinder",
    "FullBilloirVertexFitter", "FitState",
    "Vertex", "TrackAtVertex", "VertexingOptions",
    "VertexFitterAlgorithm", "FitSummary",
    "VertexingError", "NoCovarianceError", "SingularMatrixError",
    "LinearizationError", "NumericFailureError",
    "load_tracks", "write_vertices", "make_tracks_from_vertex",
]

# Errors
from .errors import (
    VertexingError,
    NoCovarianceError,
    SingularMatrixError,
    LinearizationError,
    NumericFailureError,
)

# Track model & field
from .track_parameters import (
    BoundTrackParameters,
    ParameterExtractor,
    identity_extractor,
    perigee_to_state,
    state_to_perigee,
)
from .field import ConstantMagneticField, MagneticFieldCache

# Linearization
from .linearizer import TrackLinearizer, NumericalTrackLinearizer, LinearizedTrack

# Seeding
from .track_density import GaussianTrackDensity, DensityState, TrackDensityEntry
from .density_vertex_finder import TrackDensityVertexFinder

# Fitting
from .vertex import Vertex, TrackAtVertex, VertexingOptions
from .billoir_fitter import FullBilloirVertexFitter, FitState
from .algorithm import VertexFitterAlgorithm, FitSummary

# I/O & simulation
from .data import load_tracks, write_vertices
from .simulation import make_tracks_from_vertex
