"""
Quality-guided region-merging phase unwrapping
==============================================

Every pair of neighbouring mask voxels is an edge carrying a ROMEO weight
(see ``mriphase.quality``) and the integer number of 2pi jumps between its
endpoints. Edges are merged from the most to the least reliable one: each
merge joins two regions and fixes the wrap count of one relative to the
other. Edges whose endpoints already share a region are skipped without a
consistency check, so conflicts are resolved by processing order alone.

A voxel is unvisited while it is a singleton region and unwrapped once it
has been merged; voxels outside the mask are never touched.

Multi-echo data is unwrapped either temporally (one template echo spatially,
the others from the TE-scaled neighbouring echo) or echo by echo followed by
a global multi-echo wrap correction.
"""

import logging
from concurrent.futures import ThreadPoolExecutor

import numpy as np
from scipy import ndimage

from .config import UnwrapConfig
from .errors import ShapeMismatchError, check_shape
from .quality import calculate_weights, edge_slices

logger = logging.getLogger(__name__)

TWO_PI = 2.0 * np.pi

# Global progress callback (set by the embedding application)
_progress_callback = None


def set_progress_callback(callback):
    """Set the progress callback function, called as ``callback(stage, percent)``"""
    global _progress_callback
    _progress_callback = callback


def report_progress(stage, percent):
    """Report progress if callback is set"""
    if _progress_callback is not None:
        _progress_callback(stage, percent)
    logger.debug(f"  [{stage}] {percent}%")


def unwrap_voxel(new_val, old_val):
    """Unwrap a value relative to a reference value"""
    return new_val - TWO_PI * np.round((new_val - old_val) / TWO_PI)


class RegionMerger:
    """
    Union-find arena over voxel ids.

    ``offset[x]`` is the wrap count of ``x`` relative to ``parent[x]``; after
    ``find(x)`` the parent is the region representative, so ``offset[x]`` is
    the wrap count relative to the representative. Representatives always
    have offset 0.
    """
    __slots__ = ['parent', 'offset', 'size']

    def __init__(self, n):
        self.parent = list(range(n))
        self.offset = [0] * n
        self.size = [1] * n

    def find(self, x):
        parent = self.parent
        path = []
        while parent[x] != x:
            path.append(x)
            x = parent[x]
        offset = self.offset
        acc = 0
        for node in reversed(path):
            acc += offset[node]
            offset[node] = acc
            parent[node] = x
        return x

    def merge(self, i, j, k):
        """
        Join the regions of ``i`` and ``j`` so that count(j) - count(i) == k.

        Returns False if both already share a region (the edge is skipped).
        """
        ri = self.find(i)
        rj = self.find(j)
        if ri == rj:
            return False
        # count(rj) - count(ri)
        rel = k + self.offset[i] - self.offset[j]
        size = self.size
        if size[ri] >= size[rj]:
            self.parent[rj] = ri
            self.offset[rj] = rel
            size[ri] += size[rj]
        else:
            self.parent[ri] = rj
            self.offset[ri] = -rel
            size[rj] += size[ri]
        return True

    def wrap_counts(self):
        for x in range(len(self.parent)):
            self.find(x)
        return np.array(self.offset, dtype=np.int64)


def region_merge_counts(phase, weights, offsets, mask):
    """
    Wrap counts for the voxels of ``mask`` (in ``np.nonzero`` order).

    Parameters:
    -----------
    phase : ndarray
        Finite phase values
    weights : ndarray of uint8, shape (n_offsets, *phase.shape)
        Edge weights, 0 for unusable edges
    offsets : list of tuples
        Neighbour offset of every weight plane
    mask : ndarray of bool
    """
    nvox = int(np.count_nonzero(mask))
    ids = np.full(phase.shape, -1, dtype=np.int64)
    ids[mask] = np.arange(nvox)

    edge_w, edge_i, edge_j, edge_k = [], [], [], []
    for w, offset in zip(weights, offsets):
        src, dst = edge_slices(offset, phase.shape)
        w_src = w[src]
        use = w_src > 0
        edge_w.append(w_src[use])
        edge_i.append(ids[src][use])
        edge_j.append(ids[dst][use])
        edge_k.append(np.round((phase[src][use] - phase[dst][use]) / TWO_PI).astype(np.int64))

    edge_w = np.concatenate(edge_w).astype(np.int16)
    # highest weight first, ties in neighbour order
    order = np.argsort(-edge_w, kind='stable')
    edge_i = np.concatenate(edge_i)[order].tolist()
    edge_j = np.concatenate(edge_j)[order].tolist()
    edge_k = np.concatenate(edge_k)[order].tolist()

    merger = RegionMerger(nvox)
    merge = merger.merge
    merged = 0
    last_progress_pct = 0
    for i, j, k in zip(edge_i, edge_j, edge_k):
        if merge(i, j, k):
            merged += 1
            progress_pct = (100 * merged) // max(nvox - 1, 1)
            if progress_pct >= last_progress_pct + 10:
                report_progress("region_merge", progress_pct)
                last_progress_pct = progress_pct

    logger.debug(f"Merged {merged} edges over {nvox} voxels ({nvox - merged} regions)")
    return merger.wrap_counts()


def _bounding_box(mask):
    return ndimage.find_objects(mask.astype(np.int8))[0]


def _spatial_mask(phase, mask):
    finite = np.isfinite(phase)
    if mask is None:
        return finite
    return np.asarray(mask, dtype=bool) & finite


def unwrap_volume_inplace(phase, mag=None, mask=None, phase2=None, TEs=None, config=None):
    """
    Spatially unwrap a single volume (up to 3 dimensions) in place.

    Only the bounding box of the mask is read, and only voxels whose wrap
    count changes are written back.
    """
    config = config or UnwrapConfig()
    if mask is None:
        roi_mask = np.isfinite(np.asarray(phase))
    else:
        roi_mask = np.asarray(mask, dtype=bool)
    if not np.any(roi_mask):
        logger.info("Empty mask, phase left unchanged")
        return phase

    roi = _bounding_box(roi_mask)
    local_phase = np.asarray(phase[roi], dtype=np.float64)
    local_mask = roi_mask[roi] & np.isfinite(local_phase)
    nvox = int(np.count_nonzero(local_mask))
    if nvox == 0:
        logger.info("No finite phase inside the mask, phase left unchanged")
        return phase
    local_mag = None if mag is None else np.asarray(mag[roi], dtype=np.float64)
    local_phase2 = None if phase2 is None else np.asarray(phase2[roi], dtype=np.float64)

    logger.info(f"Mask coverage: {nvox}/{roi_mask.size} voxels ({nvox / roi_mask.size * 100:.1f}%)")

    weights, offsets = calculate_weights(
        local_phase, local_mag, local_phase2, TEs, local_mask,
        config.connectivity, config.weights, config.numerics,
    )
    counts = region_merge_counts(local_phase, weights, offsets, local_mask)

    if config.correct_global:
        values = local_phase[local_mask] + TWO_PI * counts
        counts -= int(np.round(np.median(values) / TWO_PI))

    changed = counts != 0
    coords = tuple(c[changed] for c in np.nonzero(local_mask))
    view = phase[roi]
    view[coords] = view[coords] + TWO_PI * counts[changed]

    logger.info(f"Voxels changed: {int(np.count_nonzero(changed))}")
    if np.any(changed):
        max_wraps = int(np.max(np.abs(counts)))
        logger.debug(f"Max phase change: {max_wraps} wraps")
    return phase


def temporal_unwrap(phase, TEs, template_idx, mask):
    """
    Temporal phase unwrapping using TE scaling (in place).

    ``phase[..., template_idx]`` must already be spatially unwrapped. Echoes
    before the template are processed backwards, later echoes forwards, each
    from its already unwrapped neighbour scaled by the TE ratio. Only mask
    voxels are modified.
    """
    necho = phase.shape[3]
    echo_order = list(range(template_idx - 1, -1, -1)) + list(range(template_idx + 1, necho))
    logger.info(f"  Echo processing order: {[i + 1 for i in echo_order]} (1-indexed)")

    if not np.any(mask):
        return phase
    roi = _bounding_box(mask)
    local_mask = mask[roi]

    for ieco in echo_order:
        iref = ieco + 1 if ieco < template_idx else ieco - 1
        logger.debug(f"    Processing echo {ieco + 1}, reference: echo {iref + 1}")

        ref_view = phase[roi + (iref,)]
        view = phase[roi + (ieco,)]
        refvalue = np.asarray(ref_view[local_mask]) * (TEs[ieco] / TEs[iref])
        view[local_mask] = unwrap_voxel(np.asarray(view[local_mask]), refvalue)

    return phase


def correct_multi_echo_wraps(phase, TEs, mask):
    """Shift every echo by the median wrap difference to the TE-scaled previous echo."""
    if not np.any(mask):
        return phase
    for ieco in range(1, phase.shape[3]):
        iref = ieco - 1
        phase_ref = np.asarray(phase[..., iref][mask])
        phase_cur = np.asarray(phase[..., ieco][mask])
        diff = phase_ref * (TEs[ieco] / TEs[iref]) - phase_cur
        diff = diff[np.isfinite(diff)]
        if diff.size == 0:
            continue
        nwraps = np.median(np.round(diff / TWO_PI))
        if nwraps != 0:
            view = phase[..., ieco]
            view[mask] = view[mask] + TWO_PI * nwraps
        logger.info(f"    Echo {ieco + 1}: corrected {nwraps:.1f} wraps")
    return phase


def _unwrap_echoes_inplace(phase, mag, mask, TEs, config):
    necho = phase.shape[3]

    def echo_mag(i):
        return None if mag is None else mag[..., i]

    if necho == 1:
        unwrap_volume_inplace(phase[..., 0], echo_mag(0), mask, config=config)
        return phase

    if TEs is not None and config.temporal:
        template_idx = config.template - 1
        if not 0 <= template_idx < necho:
            raise ShapeMismatchError(f"Template echo {config.template} outside of {necho} echoes")
        p2ref_idx = min(1 if template_idx == 0 else template_idx - 1, necho - 1)
        logger.info(f"Temporal unwrapping: template echo {template_idx + 1}, "
                    f"reference echo {p2ref_idx + 1}")

        template_mask = _spatial_mask(np.asarray(phase[..., template_idx]), mask)
        unwrap_volume_inplace(
            phase[..., template_idx], echo_mag(template_idx), template_mask,
            phase2=phase[..., p2ref_idx], TEs=(TEs[template_idx], TEs[p2ref_idx]), config=config,
        )
        return temporal_unwrap(phase, TEs, template_idx, template_mask)

    logger.info(f"Individual unwrapping of {necho} echoes...")
    for i in range(necho):
        logger.info(f"  Unwrapping echo {i + 1}...")
        if TEs is not None:
            e2 = 1 if i == 0 else i - 1
            phase2, TEs_pair = phase[..., e2], (TEs[i], TEs[e2])
        else:
            phase2, TEs_pair = None, None
        unwrap_volume_inplace(phase[..., i], echo_mag(i), mask, phase2, TEs_pair, config)

    if TEs is not None:
        logger.info("  Applying global multi-echo wrap correction...")
        correction_mask = np.all(np.isfinite(phase), axis=3)
        if mask is not None:
            correction_mask &= np.asarray(mask, dtype=bool)
        correct_multi_echo_wraps(phase, TEs, correction_mask)
    return phase


def _validate(phase, mag, mask, TEs):
    check_shape("magnitude", mag, phase.shape)
    if mask is not None:
        spatial = phase.shape[:3]
        if tuple(mask.shape) != tuple(spatial):
            raise ShapeMismatchError("mask shape does not match spatial phase shape", mask.shape, spatial)
    if TEs is not None and phase.ndim >= 4 and len(TEs) < phase.shape[3]:
        raise ShapeMismatchError(f"{len(TEs)} echo times for {phase.shape[3]} echoes")


def unwrap_inplace(phase, mag=None, mask=None, TEs=None, config=None):
    """
    Unwrap ``phase`` in place and return it.

    Works on numpy memmaps: with a mask only the mask's bounding box is
    loaded per volume. Axes beyond the fourth (echo) axis are unwrapped
    independently, in parallel when ``config.n_jobs > 1``.

    Parameters:
    -----------
    phase : ndarray, shape (nx[, ny[, nz[, necho[, ...]]]])
        Wrapped phase, floating point
    mag : ndarray, optional
        Magnitude of the same shape
    mask : ndarray of bool, optional
        Spatial mask (shape of the first three axes); default all finite voxels
    TEs : sequence, optional
        Echo times; enable temporal unwrapping and multi-echo wrap correction
    config : UnwrapConfig, optional

    Returns:
    --------
    phase : the input array, unwrapped
    """
    config = config or UnwrapConfig()
    if not np.issubdtype(phase.dtype, np.floating):
        raise TypeError(f"In-place unwrapping needs a floating point array, got {phase.dtype}")
    _validate(phase, mag, mask, TEs)
    if TEs is not None:
        TEs = np.asarray(TEs, dtype=np.float64)

    logger.info(f"Data shape: {phase.shape}")
    if phase.ndim <= 3:
        return unwrap_volume_inplace(phase, mag, mask, config=config)
    if phase.ndim == 4:
        return _unwrap_echoes_inplace(phase, mag, mask, TEs, config)

    def job(index):
        sl = (slice(None),) * 4 + index
        _unwrap_echoes_inplace(phase[sl], None if mag is None else mag[sl], mask, TEs, config)

    indices = list(np.ndindex(*phase.shape[4:]))
    if config.n_jobs > 1 and len(indices) > 1:
        with ThreadPoolExecutor(max_workers=config.n_jobs) as executor:
            list(executor.map(job, indices))
    else:
        for index in indices:
            job(index)
    return phase


def unwrap(phase, mag=None, mask=None, TEs=None, config=None):
    """Unwrap a copy of ``phase``; see ``unwrap_inplace``."""
    phase = np.asarray(phase)
    dtype = phase.dtype if np.issubdtype(phase.dtype, np.floating) else np.float64
    return unwrap_inplace(np.array(phase, dtype=dtype), mag, mask, TEs, config)


def calculate_b0(unwrapped_phase, mag, TEs, weighting_type='phase_snr'):
    """
    B0 field map in Hz from unwrapped phase:

        B0 = (1000 / 2pi) * sum(phase / TEs * weight) / sum(weight)

    with TEs in milliseconds. Handles both single-echo and multi-echo data.
    """
    TEs = np.asarray(TEs, dtype=np.float64)
    if unwrapped_phase.ndim == 3:
        unwrapped_phase = unwrapped_phase[..., np.newaxis]
    if mag is not None and mag.ndim == 3:
        mag = mag[..., np.newaxis]
    TEs_4d = TEs[:unwrapped_phase.shape[3]].reshape(1, 1, 1, -1)
    ones = np.ones_like(unwrapped_phase)

    if weighting_type == 'phase_var':
        weight = mag * mag * TEs_4d * TEs_4d if mag is not None else TEs_4d * TEs_4d * ones
    elif weighting_type == 'average':
        weight = ones
    elif weighting_type == 'TEs':
        weight = TEs_4d * ones
    elif weighting_type == 'mag':
        weight = mag if mag is not None else ones
    elif weighting_type == 'phase_snr':
        weight = mag * TEs_4d if mag is not None else TEs_4d * ones
    else:
        raise ValueError(f"Unknown B0 weighting: {weighting_type}")

    numerator = np.sum((unwrapped_phase / TEs_4d) * weight, axis=3)
    denominator = np.sum(weight, axis=3)
    denominator[denominator == 0] = 1

    B0 = (1000 / TWO_PI) * numerator / denominator
    B0[~np.isfinite(B0)] = 0
    return B0
