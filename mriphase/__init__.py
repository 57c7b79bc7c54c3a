"""
mriphase: MCPC-3D-S coil combination and quality-guided phase unwrapping
for multi-echo MRI.
"""

__version__ = "0.1.0"

from .errors import (
    MriPhaseError,
    ShapeMismatchError,
    DegenerateInputError,
    ConvergenceError,
    ConfigurationError,
)
from .config import (
    NumericsConfig,
    MaskConfig,
    UnwrapConfig,
    CombineConfig,
    HomogeneityConfig,
    PipelineConfig,
    load_config,
)
from .smoothing import gaussiansmooth3d, gaussiansmooth3d_phase
from .quality import calculate_weights, voxelquality, romeovoxelquality
from .masking import (
    estimatenoise,
    estimatequantile,
    robustmask,
    robustmask_inplace,
    mask_from_voxelquality,
    phase_based_mask,
    fill_holes,
    get_largest_connected_region,
    brain_mask,
)
from .unwrapping import (
    unwrap,
    unwrap_inplace,
    temporal_unwrap,
    calculate_b0,
    set_progress_callback,
)
from .combine import mcpc3ds, PhaseMag, ComplexData
from .homogeneity import makehomogeneous, makehomogeneous_inplace
from .io import Volume, readphase, readmag, read_volume, savenii, write_emptynii
