"""
Gaussian smoothing by repeated box filtering.

A Gaussian with standard deviation sigma is approximated by ``nbox``
consecutive box filters whose widths are chosen so that the summed variance
matches sigma**2. Masked and weighted smoothing are normalised convolutions,
so values outside the mask never leak into the result.
"""

import numpy as np
from scipy import ndimage

# Normalisation weights below this are treated as "no support".
SUPPORT_EPS = 1e-9


def getboxsizes(sigma, n):
    """Odd box widths whose ``n``-fold convolution has variance ``sigma**2``."""
    wideal = np.sqrt((12 * sigma ** 2 / n) + 1)
    wl = int(np.round(wideal - (wideal + 1) % 2))  # next lower odd integer
    wl = max(wl, 1)
    wu = wl + 2
    mideal = (12 * sigma ** 2 - n * wl ** 2 - 4 * n * wl - 3 * n) / (-4 * wl - 4)
    m = round(mideal)
    return [wl if i < m else wu for i in range(n)]


def _as_float(image):
    image = np.asarray(image)
    if np.iscomplexobj(image):
        return image.astype(np.complex128)
    if image.dtype == np.float32:
        return image.copy()
    return image.astype(np.float64)


def _boxsmooth(data, boxsizes, dims):
    if np.iscomplexobj(data):
        return _boxsmooth(data.real, boxsizes, dims) + 1j * _boxsmooth(data.imag, boxsizes, dims)
    for dim, sizes in zip(dims, boxsizes):
        for size in sizes:
            if size > 1:
                data = ndimage.uniform_filter1d(data, int(size), axis=dim, mode='nearest')
    return data


def _expand_sigma(sigma, dims, voxel_size):
    sigma = np.broadcast_to(np.asarray(sigma, dtype=float), (len(dims),)).copy()
    if voxel_size is not None:
        voxel_size = np.asarray(voxel_size, dtype=float)
        sigma = sigma / voxel_size[list(dims)]
    return sigma


def gaussiansmooth3d(image, sigma=(5, 5, 5), mask=None, weight=None, nbox=None, dims=None,
                     boxsizes=None, voxel_size=None):
    """
    Smooth ``image`` with a box-filter approximation of a Gaussian.

    Parameters:
    -----------
    image : ndarray
        Real, complex or boolean array; axes beyond ``dims`` are smoothed independently
    sigma : float or sequence
        Standard deviation per smoothed axis (voxels, or mm when ``voxel_size`` is given)
    mask : ndarray of bool, optional
        Only voxels inside the mask contribute; voxels without masked
        neighbours within the kernel support become NaN
    weight : ndarray, optional
        Per-voxel weight for a weighted average
    nbox : int, optional
        Number of box passes (default 3, or 4 with a mask)
    dims : sequence of int, optional
        Axes to smooth (default: the first three)
    boxsizes : list of lists, optional
        Explicit box widths per axis, overrides ``sigma``
    voxel_size : sequence, optional
        Voxel spacing; when given ``sigma`` is in physical units

    Returns:
    --------
    smoothed : ndarray
        Float or complex array of the input shape
    """
    data = _as_float(image)
    if dims is None:
        dims = tuple(range(min(data.ndim, 3)))
    if nbox is None:
        nbox = 3 if mask is None else 4
    if boxsizes is None:
        boxsizes = [getboxsizes(s, nbox) for s in _expand_sigma(sigma, dims, voxel_size)]

    if mask is None and weight is None:
        return _boxsmooth(data, boxsizes, dims)

    w = np.ones(data.shape) if weight is None else np.asarray(weight, dtype=np.float64)
    if mask is not None:
        mask = np.asarray(mask, dtype=bool)
        if mask.ndim < data.ndim:
            mask = mask.reshape(mask.shape + (1,) * (data.ndim - mask.ndim))
        w = w * mask
    w = np.broadcast_to(w, data.shape)

    valid = np.isfinite(data)
    w = np.where(valid, w, 0)
    num = _boxsmooth(np.where(valid, data, 0) * w, boxsizes, dims)
    den = _boxsmooth(w, boxsizes, dims)

    supported = den > SUPPORT_EPS
    out = np.full(data.shape, np.nan, dtype=num.dtype)
    out[supported] = num[supported] / den[supported]
    return out


def gaussiansmooth3d_phase(phase, sigma=(5, 5, 5), mask=None, weight=None, **kwargs):
    """Smooth a phase image on the unit circle; returns wrapped phase."""
    signal = np.exp(1j * np.asarray(phase))
    if weight is not None:
        signal = signal * weight
    return np.angle(gaussiansmooth3d(signal, sigma, mask=mask, **kwargs))


def boxsmooth_mask(mask, box_size, nbox=1):
    """Fraction of true voxels in a (repeated) box neighbourhood of a boolean mask."""
    mask = np.asarray(mask)
    boxsizes = [[box_size] * nbox for _ in range(mask.ndim)]
    return gaussiansmooth3d(mask, boxsizes=boxsizes, dims=tuple(range(mask.ndim)))
