"""
Mask generation from magnitude, phase or quality maps.

``robustmask`` assumes that at least one corner of the volume contains only
noise. Examples::

    mask1 = robustmask(mag)                                # using magnitude
    mask2 = robustmask(phase_based_mask(phase))            # using phase
    mask3 = robustmask(romeovoxelquality(phase, mag=mag))  # magnitude and phase
"""

import itertools
import logging

import numpy as np
from scipy import ndimage

from .config import MaskConfig
from .errors import DegenerateInputError
from .smoothing import boxsmooth_mask

logger = logging.getLogger(__name__)

PHASE_MASK_RADIUS = 6
PHASE_MASK_THRESHOLD = 500 * 6


def estimatenoise(image):
    """
    Mean and standard deviation of the darkest corner block.

    Corner blocks are up to 10 voxels (and at most a third of the axis)
    along each of the first three axes.

    Raises
    ------
    DegenerateInputError
        If the image has no finite, non-zero samples
    """
    image = np.asarray(image, dtype=np.float64)
    finite = np.isfinite(image)
    if image.size == 0 or not np.any(image[finite] != 0):
        raise DegenerateInputError(
            f"Cannot estimate noise of an empty or all-zero image of shape {image.shape}"
        )

    spatial = image.shape[:3]
    n = [max(1, min(10, s // 3)) for s in spatial]
    ranges = [(slice(0, k), slice(s - k, s)) for k, s in zip(n, spatial)]

    lowest_mean, sigma = np.inf, 0.0
    for corner in itertools.product(*ranges):
        block = image[corner]
        block = block[np.isfinite(block)]
        if block.size == 0:
            continue
        m = block.mean()
        if m < lowest_mean:
            lowest_mean = m
            sigma = block.std()

    if not np.isfinite(lowest_mean):
        raise DegenerateInputError(f"All corner samples are non-finite in image of shape {image.shape}")
    return float(lowest_mean), float(sigma)


def estimatequantile(array, p, nsamples=100000):
    """Quantile of the finite values, sub-sampled with a fixed stride for large arrays."""
    values = np.asarray(array, dtype=np.float64).ravel()
    values = values[np.isfinite(values)]
    if values.size == 0:
        raise DegenerateInputError("Cannot estimate a quantile without finite values")
    if values.size > nsamples:
        values = values[::int(np.ceil(values.size / nsamples))]
    return float(np.quantile(values, p))


def robust_threshold(weight):
    """max(5 sigma, mean(values > 5 sigma) / 5) from the corner noise estimate."""
    _, sigma = estimatenoise(weight)
    weight = np.asarray(weight, dtype=np.float64)
    above = weight[weight > 5 * sigma]
    above = above[np.isfinite(above)]
    m = above.mean() if above.size else 0.0
    return max(5 * sigma, m / 5)


def robustmask(weight, threshold=None, config=None):
    """
    Create a mask from an intensity/weight image.

    Parameters:
    -----------
    weight : ndarray
        Magnitude, quality map or any image that is high inside the object
    threshold : float, optional
        Explicit threshold; estimated from the corner noise when omitted
    config : MaskConfig, optional
        Box size, smoothing thresholds and maximum hole size

    Returns:
    --------
    mask : ndarray of bool
    """
    config = config or MaskConfig()
    weight = np.asarray(weight)
    if threshold is None:
        threshold = config.threshold
    if threshold is None:
        threshold = robust_threshold(weight)
    logger.debug(f"robustmask threshold: {threshold:.4g}")

    with np.errstate(invalid='ignore'):
        mask = weight > threshold
    # remove small holes and minimally grow
    mask = boxsmooth_mask(mask, config.box_size) > config.low_threshold
    mask = fill_holes(mask, max_hole_size=config.max_hole_fraction * mask.size)
    mask = boxsmooth_mask(mask, config.box_size) > config.high_threshold
    return mask


def robustmask_inplace(image, masked_value=None, config=None):
    """Set voxels outside ``robustmask(image)`` to NaN (float) or 0 (integer)."""
    if masked_value is None:
        masked_value = np.nan if np.issubdtype(image.dtype, np.floating) else 0
    image[~robustmask(image, config=config)] = masked_value
    return image


def mask_from_voxelquality(qmap, threshold=None, config=None):
    """Mask from a quality map, see ``romeovoxelquality``."""
    return robustmask(qmap, threshold, config)


def sphere(radius, ndim=3):
    """Boolean ball of the given radius in a (2 radius + 1)**ndim array."""
    grid = np.indices((2 * radius + 1,) * ndim) - radius
    return np.sqrt(np.sum(grid ** 2, axis=0)) < radius


def imclose(image, strel):
    image = ndimage.grey_dilation(image, footprint=strel)
    return ndimage.grey_erosion(image, footprint=strel)


def imopen(image, strel):
    image = ndimage.grey_erosion(image, footprint=strel)
    return ndimage.grey_dilation(image, footprint=strel)


def phase_based_mask(phase, morphology=False):
    """
    Create a mask from a phase image.

    Flags voxels where the Laplacian of sign(phase) is small in a spherical
    neighbourhood, i.e. where the phase is smooth. Filtering is required
    afterwards (``robustmask`` or ``morphology=True`` for a closing and
    opening with the same sphere).
    """
    phase = np.asarray(phase, dtype=np.float64)
    strel = sphere(PHASE_MASK_RADIUS, phase.ndim)
    laplacian = ndimage.laplace(np.sign(np.nan_to_num(phase)), mode='nearest')
    test = ndimage.convolve(np.abs(laplacian), strel.astype(np.float64), mode='nearest')
    mask = test < PHASE_MASK_THRESHOLD
    if morphology:
        mask = imopen(imclose(mask.astype(np.uint8), strel), strel) > 0
    return mask


def fill_holes(mask, max_hole_size=None):
    """Fill background components up to ``max_hole_size`` voxels (face connectivity)."""
    mask = np.asarray(mask, dtype=bool)
    if max_hole_size is None:
        max_hole_size = mask.size / 20
    structure = ndimage.generate_binary_structure(mask.ndim, 1)
    labels, n = ndimage.label(~mask, structure=structure)
    if n == 0:
        return mask.copy()
    sizes = np.bincount(labels.ravel())
    small = sizes <= max_hole_size
    small[0] = False
    return mask | small[labels]


def get_largest_connected_region(mask):
    """Keep only the connected component with the most voxels."""
    mask = np.asarray(mask, dtype=bool)
    labels, n = ndimage.label(mask)
    if n == 0:
        return np.zeros_like(mask)
    sizes = np.bincount(labels.ravel())
    sizes[0] = 0
    return labels == np.argmax(sizes)


def brain_mask(mask):
    """
    Extract the brain from a mask with skull and a gap between brain and skull.

    The mask border is cleared, the mask is eroded by smoothing, the largest
    component is kept and grown back, and the result is intersected with the
    input.
    """
    mask = np.asarray(mask, dtype=bool)
    shrink_mask = mask.copy()
    if shrink_mask.ndim == 3 and all(s > 5 for s in shrink_mask.shape):
        shrink_mask[[0, -1], :, :] = False
        shrink_mask[:, [0, -1], :] = False
        shrink_mask[:, :, [0, -1]] = False

    shrink_mask2 = boxsmooth_mask(shrink_mask, 7) > 0.7
    brain = get_largest_connected_region(shrink_mask2)

    # grow brain mask
    brain = boxsmooth_mask(brain, 7, nbox=2) > 0.2
    return brain & mask
