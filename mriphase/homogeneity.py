"""
Magnitude inhomogeneity correction by iterative local normalisation.

The bias field is estimated by smoothing the first echo inside a white-matter
like segmentation, which is refined until it stops changing (or the
iteration cap is reached), and then divided out of every echo.
"""

import itertools
import logging

import numpy as np

from .config import HomogeneityConfig
from .errors import ConvergenceError
from .masking import robustmask
from .smoothing import gaussiansmooth3d

logger = logging.getLogger(__name__)

FINAL_SMOOTHING_FACTOR = 0.7
INTEGER_SCALE = 2048


def getsigma(voxel_size, sigma_mm=7.0):
    """Split sigma (mm, scalar or per axis) into the iterative and final part, in voxels."""
    sigma = np.asarray(sigma_mm, dtype=np.float64) / np.asarray(voxel_size, dtype=np.float64)[:3]
    sigma1 = np.sqrt(1 - FINAL_SMOOTHING_FACTOR ** 2) * sigma
    sigma2 = FINAL_SMOOTHING_FACTOR * sigma
    return sigma, sigma1, sigma2


def threshold(image, mask, low_threshold=0.95):
    """Voxels between ``low_threshold * m`` and ``1.5 * m``, m being the bright-tissue mean."""
    masked = np.nan_to_num(image[mask])
    wm_mask = np.zeros(mask.shape, dtype=bool)
    if masked.size == 0:
        return wm_mask
    m = masked.mean()
    bright = masked[(masked > m) & (masked < 2 * m)]
    if bright.size == 0:
        return wm_mask
    m = bright.mean()
    with np.errstate(invalid='ignore'):
        wm_mask[(low_threshold * m < image) & (image < 1.5 * m) & mask] = True
    return wm_mask


def boxsegment(image, mask, nboxes=20):
    """Intersect ``mask`` with the local ``threshold`` of half-overlapping boxes."""
    N = image.shape[:3]
    boxsize = [max(1, int(round(n / nboxes))) for n in N]
    boxshift = [int(np.ceil(b / 2)) for b in boxsize]
    segmented = mask.copy()
    starts = [range(0, n, s) for n, s in zip(N, boxshift)]
    for t in itertools.product(*starts):
        I = tuple(slice(t[d], min(t[d] + boxsize[d], N[d])) for d in range(3))
        segmented[I] &= threshold(image[I], mask[I])
    return segmented


def iterative(firstecho, mask, segmentation, sigma, max_iterations=10, tolerance=0.01):
    """
    Alternate bias field estimation and segmentation.

    Returns:
    --------
    lowpass : ndarray
    iterations : int
    converged : bool
        Whether the fraction of changed segmentation voxels dropped below
        ``tolerance`` before ``max_iterations``
    """
    wm_mask = segmentation
    converged = False
    for i in range(1, max_iterations + 1):
        lowpass = gaussiansmooth3d(firstecho, sigma, mask=wm_mask, nbox=8)
        with np.errstate(invalid='ignore', divide='ignore'):
            highpass = firstecho / lowpass
        highpass[~np.isfinite(highpass)] = 0

        new_mask = threshold(highpass, mask, low_threshold=0.99)

        if i > 1:
            change = np.count_nonzero(new_mask != wm_mask) / wm_mask.size
            logger.info(f"Iteration {i}: segmentation change {change:.4f}")
            if change < tolerance:
                converged = True
                break
        wm_mask = new_mask
    return lowpass, i, converged


def fillandsmooth(lowpass, stablemean, sigma2):
    """Replace unreliable bias field values and smooth with reduced weight on them."""
    lowpass = lowpass.copy()
    stablethresh = stablemean / 4
    with np.errstate(invalid='ignore'):
        lowpassmask = (lowpass < stablethresh) | np.isnan(lowpass) | (lowpass > 10 * stablemean)
    lowpass[lowpassmask] = 3 * stablemean
    lowpassweight = 1.2 - lowpassmask
    return gaussiansmooth3d(lowpass, sigma2, weight=lowpassweight)


def makehomogeneous_inplace(mag, voxel_size=None, config=None, return_info=False):
    """
    Divide the bias field out of ``mag`` (3D or 4D, first echo used for estimation).

    Float data is divided by the bias field; integer data is rescaled to
    ``mag / (lowpass / 2048)`` and clipped to the dtype maximum.

    Raises
    ------
    ConvergenceError
        If ``config.strict`` is set and the refinement hits the iteration cap
    """
    config = config or HomogeneityConfig()
    if voxel_size is None:
        voxel_size = np.ones(3)
    sigma, sigma1, sigma2 = getsigma(voxel_size, config.sigma_mm)

    firstecho = np.asarray(mag[..., 0] if mag.ndim == 4 else mag, dtype=np.float64)
    mask = robustmask(firstecho)

    lowpass = gaussiansmooth3d(firstecho, sigma)
    with np.errstate(invalid='ignore', divide='ignore'):
        segmentation = boxsegment(firstecho / lowpass, mask, config.nboxes)

    lowpass, iterations, converged = iterative(
        firstecho, mask, segmentation, sigma1, config.max_iterations, config.tolerance
    )
    if not converged:
        message = f"Homogeneity correction did not converge within {iterations} iterations"
        if config.strict:
            raise ConvergenceError(message)
        logger.warning(message)

    lowpass = fillandsmooth(lowpass, firstecho[mask].mean(), sigma2)
    if mag.ndim == 4:
        lowpass = lowpass[..., np.newaxis]

    if np.issubdtype(mag.dtype, np.floating):
        mag /= lowpass
    else:
        lowpass[np.isnan(lowpass) | (lowpass <= 0)] = np.finfo(np.float64).max
        maxval = np.iinfo(mag.dtype).max
        mag[...] = np.clip(np.floor(mag / (lowpass / INTEGER_SCALE)), 0, maxval).astype(mag.dtype)

    if return_info:
        return mag, {'iterations': iterations, 'converged': converged}
    return mag


def makehomogeneous(mag, voxel_size=None, config=None, datatype=None, return_info=False):
    """Homogeneity-corrected copy of ``mag``, optionally converted to ``datatype``."""
    mag = np.array(mag, dtype=datatype if datatype is not None else np.asarray(mag).dtype)
    return makehomogeneous_inplace(mag, voxel_size, config, return_info)
