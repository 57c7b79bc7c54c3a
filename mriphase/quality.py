"""
ROMEO edge weights and voxel quality maps.

Edge weights combine up to five components, each in [0, 1]:
- phase coherence: 1 - |wrap(dphi)| / pi
- phase gradient coherence against a second echo (TE scaled)
- magnitude coherence: (min / max)**2 of the two magnitudes
- a magnitude weight for each endpoint: 0.5 + 0.5 * min(1, m / (0.5 * max_mag))

and are stored quantised to uint8, one plane per neighbour offset. A weight
of 0 marks an edge that must not be used (outside the mask, outside the
volume or touching a non-finite voxel).
"""

import itertools
import logging

import numpy as np

from .config import NumericsConfig

logger = logging.getLogger(__name__)

WEIGHT_LEVELS = 255


def wrap_phase(phase):
    """Wrap phase to [-pi, pi]"""
    return np.angle(np.exp(1j * phase))


def neighbour_offsets(ndim, connectivity=6):
    """
    Forward half of the neighbourhood: each undirected edge appears once.

    ``connectivity`` follows the 3D naming (6 faces, 18 + edges, 26 + corners);
    in 2D, 6 means 4-connectivity and 18/26 mean 8-connectivity.
    """
    max_nonzero = {6: 1, 18: 2, 26: 3}[connectivity]
    offsets = []
    for offset in itertools.product((-1, 0, 1), repeat=ndim):
        nonzero = [o for o in offset if o != 0]
        if not nonzero or len(nonzero) > max_nonzero:
            continue
        if nonzero[0] > 0:
            offsets.append(offset)
    # face neighbours first, then edges and corners; first axis first
    offsets.sort(key=lambda o: (sum(abs(x) for x in o), [-abs(x) for x in o]))
    return offsets


def edge_slices(offset, shape):
    """Slices selecting the source voxels and their neighbours at ``offset``."""
    src, dst = [], []
    for o, n in zip(offset, shape):
        if o > 0:
            src.append(slice(0, n - o))
            dst.append(slice(o, n))
        elif o < 0:
            src.append(slice(-o, n))
            dst.append(slice(0, n + o))
        else:
            src.append(slice(None))
            dst.append(slice(None))
    return tuple(src), tuple(dst)


def calculate_weights(phase, mag=None, phase2=None, TEs=None, mask=None, connectivity=6,
                      weights_type='romeo', numerics=None):
    """
    Calculate ROMEO edge weights (vectorised).

    Parameters:
    -----------
    phase : ndarray
        Wrapped phase, 1 to 3 spatial dimensions
    mag : ndarray, optional
        Magnitude of the same shape
    phase2 : ndarray, optional
        Wrapped phase of a second echo, enables phase gradient coherence
    TEs : sequence of two floats, optional
        Echo times of ``phase`` and ``phase2``
    mask : ndarray of bool, optional
        Edges need both endpoints inside the mask
    connectivity : int
        6, 18 or 26

    Returns:
    --------
    weights : ndarray of uint8, shape (n_offsets, *phase.shape)
    offsets : list of tuples
    """
    numerics = numerics or NumericsConfig()
    phase = np.asarray(phase)
    shape = phase.shape
    offsets = neighbour_offsets(phase.ndim, connectivity)
    weights = np.zeros((len(offsets),) + shape, dtype=np.uint8)

    valid = np.isfinite(phase)
    phase = numerics.clean(phase)
    if mag is not None:
        mag = np.asarray(mag)
        valid &= np.isfinite(mag)
        mag = numerics.clean(mag)
        max_mag = float(np.max(mag)) if mag.size else 1.0
    if phase2 is not None:
        phase2 = np.asarray(phase2)
        valid &= np.isfinite(phase2)
        phase2 = numerics.clean(phase2)
    if mask is not None:
        valid &= np.asarray(mask, dtype=bool)

    if TEs is not None and len(TEs) >= 2:
        te1, te2 = float(TEs[0]), float(TEs[1])
    else:
        te1, te2 = 1.0, 1.0

    for i, offset in enumerate(offsets):
        src, dst = edge_slices(offset, shape)

        p1_diff = wrap_phase(phase[dst] - phase[src])
        weight = 1 - np.abs(p1_diff) / np.pi

        if phase2 is not None and weights_type != 'mag':
            p2_diff = wrap_phase(phase2[dst] - phase2[src])
            weight = weight * np.maximum(0, 1 - np.abs(p1_diff - p2_diff * te1 / te2))

        if mag is not None and weights_type != 'phase':
            m1, m2 = mag[src], mag[dst]
            mag_max = np.maximum(m1, m2)
            mag_max_safe = np.where(mag_max == 0, 1, mag_max)
            mc = np.where(mag_max == 0, 0, (np.minimum(m1, m2) / mag_max_safe) ** 2)
            mw1 = 0.5 + 0.5 * np.minimum(1, m1 / (0.5 * max_mag + 1e-12))
            mw2 = 0.5 + 0.5 * np.minimum(1, m2 / (0.5 * max_mag + 1e-12))
            weight = weight * mc * mw1 * mw2

        weight = weight * (valid[src] & valid[dst])
        weights[i][src] = (np.clip(weight, 0, 1) * WEIGHT_LEVELS).astype(np.uint8)

    return weights, offsets


def voxelquality(phase, mag=None, phase2=None, TEs=None, mask=None, connectivity=6,
                 numerics=None):
    """
    Per-voxel quality in [0, 1]: mean weight of all incident edges.

    Voxels on the volume border have fewer edges and therefore lower
    quality. Non-finite input voxels get quality 0.
    """
    phase = np.asarray(phase)
    weights, offsets = calculate_weights(phase, mag, phase2, TEs, mask, connectivity,
                                         numerics=numerics)
    qmap = np.zeros(phase.shape, dtype=np.float64)
    for w, offset in zip(weights, offsets):
        src, dst = edge_slices(offset, phase.shape)
        qmap[src] += w[src]
        qmap[dst] += w[src]
    qmap /= WEIGHT_LEVELS * 2 * len(offsets)
    return qmap


def romeovoxelquality(phase, mag=None, TEs=None, mask=None, connectivity=6, numerics=None):
    """
    Quality map for single- or multi-echo phase.

    For 4D input the first echo is rated, with the second echo providing the
    phase gradient coherence term.
    """
    phase = np.asarray(phase)
    if phase.ndim == 4:
        phase2 = phase[..., 1] if phase.shape[3] > 1 else None
        if mag is not None:
            mag = np.asarray(mag)[..., 0]
        if TEs is not None and phase2 is not None:
            TEs = (TEs[0], TEs[1])
        phase = phase[..., 0]
    else:
        phase2 = None
    return voxelquality(phase, mag, phase2, TEs, mask, connectivity, numerics)
