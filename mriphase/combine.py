"""
MCPC-3D-S coil combination and phase offset removal.

Works on multi-echo, multi-channel data ``(x, y, z, echo, channel)`` given as
complex values, as phase only, or as phase plus magnitude. The algorithm is
written against the small ``EchoData`` interface so both representations
behave identically.

For very large files the phase offsets can be written to a memory-mapped
buffer::

    po = write_emptynii(phase.shape[:3] + (phase.shape[4],), "po.nii")
    combined = mcpc3ds(phase, mag, TEs=[4, 8, 12], po=po)
"""

import logging
from dataclasses import replace

import numpy as np

from .config import PipelineConfig
from .errors import ShapeMismatchError, check_shape
from .masking import robustmask
from .quality import wrap_phase
from .smoothing import gaussiansmooth3d_phase
from .unwrapping import unwrap

logger = logging.getLogger(__name__)

BIPOLAR_INTEGER_TOLERANCE = 0.01


class EchoData:
    """
    Multi-echo image with the echo on axis 3 and optional channels on axis 4.

    Subclasses provide ``angle``, ``magnitude``, ``echo_slice``,
    ``subtract_angle`` and ``_from_complex``; ``hip`` and ``recombine`` are
    built on top of those.
    """

    @property
    def shape(self):
        raise NotImplementedError

    @property
    def dtype(self):
        raise NotImplementedError

    @property
    def necho(self):
        return self.shape[3]

    def angle(self, echo):
        raise NotImplementedError

    def magnitude(self, echo):
        raise NotImplementedError

    def echo_slice(self, echo):
        """Complex signal of one echo (all channels)."""
        raise NotImplementedError

    def subtract_angle(self, echo, sub):
        raise NotImplementedError

    def _from_complex(self, combined):
        raise NotImplementedError

    def hip(self, echoes):
        """Hermitian inner product of two echoes, summed over channels."""
        e1, e2 = echoes
        product = np.conj(self.echo_slice(e1)) * self.echo_slice(e2)
        if len(self.shape) > 4:
            product = product.sum(axis=-1)
        return product

    def recombine(self, po):
        """Sum of |s| * s * exp(-i po) over channels, normalised by sqrt(|.|)."""
        combined = np.zeros(self.shape[:4], dtype=np.result_type(self.dtype, np.complex64))
        correction = np.exp(-1j * po)
        for ieco in range(self.necho):
            signal = self.echo_slice(ieco)
            combined[:, :, :, ieco] = np.sum(np.abs(signal) * signal * correction, axis=-1)
        return self._from_complex(combined)


class ComplexData(EchoData):
    """Complex valued data."""

    def __init__(self, data):
        self.data = data

    @property
    def shape(self):
        return self.data.shape

    @property
    def dtype(self):
        return self.data.real.dtype

    def angle(self, echo):
        return np.angle(self.data[:, :, :, echo])

    def magnitude(self, echo):
        return np.abs(self.data[:, :, :, echo])

    def echo_slice(self, echo):
        return self.data[:, :, :, echo]

    def subtract_angle(self, echo, sub):
        self.data[:, :, :, echo] *= np.exp(-1j * sub)

    def _from_complex(self, combined):
        norm = np.sqrt(np.abs(combined))
        return ComplexData(np.divide(combined, norm, out=np.zeros_like(combined), where=norm > 0))


class PhaseMag(EchoData):
    """Phase and magnitude pair; unpacks as ``phase, mag = result``."""

    def __init__(self, phase, mag):
        self.phase = phase
        self.mag = mag

    def __iter__(self):
        yield self.phase
        yield self.mag

    @property
    def shape(self):
        return self.phase.shape

    @property
    def dtype(self):
        return np.result_type(self.phase.dtype, self.mag.dtype, np.float32)

    def angle(self, echo):
        return self.phase[:, :, :, echo]

    def magnitude(self, echo):
        return self.mag[:, :, :, echo]

    def echo_slice(self, echo):
        return self.mag[:, :, :, echo] * np.exp(1j * self.phase[:, :, :, echo])

    def subtract_angle(self, echo, sub):
        self.phase[:, :, :, echo] = wrap_phase(self.phase[:, :, :, echo] - sub)

    def _from_complex(self, combined):
        return PhaseMag(np.angle(combined), np.sqrt(np.abs(combined)))


def _with_channel_axis(array):
    if array is not None and array.ndim == 4:
        return array[..., np.newaxis]
    return array


def mcpc3ds(image, mag=None, TEs=None, echoes=None, sigma=None, bipolar_correction=None,
            po=None, voxel_size=None, return_po=False, config=None):
    """
    Perform MCPC-3D-S coil combination and phase offset removal on 4D
    (multi-echo) and 5D (multi-echo, uncombined) input.

    Parameters:
    -----------
    image : ndarray
        Complex data, or wrapped phase (real) of shape (x, y, z, echo[, channel])
    mag : ndarray, optional
        Magnitude matching a real ``image``; the result is then a PhaseMag
    TEs : sequence
        Echo times
    echoes : pair of int, optional
        1-based echoes used for the phase offset estimation (default (1, 2))
    sigma : sequence, optional
        Smoothing of the phase offsets (default (10, 10, 5)); in voxels, or
        in mm when ``voxel_size`` is given
    bipolar_correction : bool, optional
        Remove the linear phase artefact of bipolar readouts
    po : ndarray, optional
        Buffer of shape (x, y, z, channel) receiving the phase offsets
    return_po : bool
        Also return the phase offsets
    config : PipelineConfig, optional
        Defaults for the above plus mask, unwrap and numerics settings

    Returns:
    --------
    combined : complex ndarray, phase ndarray or PhaseMag (x, y, z, echo),
        matching the input representation; ``(combined, po)`` with ``return_po``
    """
    config = config or PipelineConfig()
    if TEs is None:
        raise ValueError("mcpc3ds requires echo times (TEs)")

    image = np.asarray(image) if not hasattr(image, 'dtype') else image
    if mag is not None:
        check_shape("magnitude", mag, image.shape)
        data = PhaseMag(_with_channel_axis(image), _with_channel_axis(mag))
    elif np.iscomplexobj(image):
        data = ComplexData(_with_channel_axis(image))
    else:
        result = mcpc3ds(np.exp(1j * np.asarray(image)), TEs=TEs, echoes=echoes, sigma=sigma,
                         bipolar_correction=bipolar_correction, po=po, voxel_size=voxel_size,
                         return_po=return_po, config=config)
        if return_po:
            return np.angle(result[0]), result[1]
        return np.angle(result)

    combined, po = _mcpc3ds(data, TEs, echoes, sigma, bipolar_correction, po, voxel_size, config)
    result = combined.data if isinstance(combined, ComplexData) else combined
    if return_po:
        return result, po
    return result


def _mcpc3ds(data, TEs, echoes, sigma, bipolar_correction, po, voxel_size, config):
    if len(data.shape) != 5:
        raise ShapeMismatchError(f"mcpc3ds needs 4D or 5D input, got shape {data.shape}")
    echoes = config.combine.echoes if echoes is None else tuple(echoes)
    sigma = config.combine.sigma if sigma is None else tuple(sigma)
    if bipolar_correction is None:
        bipolar_correction = config.combine.bipolar_correction
    if len(TEs) < data.necho:
        raise ShapeMismatchError(f"{len(TEs)} echo times for {data.necho} echoes")

    po_shape = data.shape[:3] + (data.shape[4],)
    if po is None:
        po = np.zeros(po_shape, dtype=data.dtype)
    elif tuple(po.shape) != po_shape:
        raise ShapeMismatchError("phase offset buffer has wrong shape", po.shape, po_shape)

    i1, i2 = echoes[0] - 1, echoes[1] - 1
    delta_te = TEs[i2] - TEs[i1]
    logger.info(f"MCPC-3D-S: echoes {echoes}, dTE = {delta_te}, {data.shape[4]} channels")

    hip = data.hip((i1, i2))
    weight = np.sqrt(np.abs(hip))
    # an explicit threshold is meant for magnitude images, not the HIP weight
    mask = robustmask(weight, config=replace(config.mask, threshold=None))
    logger.info(f"HIP mask coverage: {np.count_nonzero(mask)}/{mask.size} voxels")

    phaseevolution = (TEs[i1] / delta_te) * unwrap(np.angle(hip), mag=weight, mask=mask,
                                                   config=config.unwrap)
    po[...] = data.angle(i1) - phaseevolution[..., np.newaxis]
    for icha in range(po.shape[3]):
        smoothed = gaussiansmooth3d_phase(po[:, :, :, icha], sigma, mask=mask, voxel_size=voxel_size)
        po[:, :, :, icha] = config.numerics.clean(smoothed)

    combined = data.recombine(po)
    if bipolar_correction:
        apply_bipolar_correction(combined, TEs, sigma, mask, voxel_size, config)
    return combined, po


## Bipolar correction
# Eckstein, doi:10.34726/hss.2021.43447, 3.1.3 Bipolar Corrections

def getm(TEs):
    return TEs[0] / (TEs[1] - TEs[0])


def getk(TEs):
    return (TEs[0] + TEs[2]) / TEs[1]


def artefact(image, TEs, config=None):
    """
    Phase of the gradient-polarity artefact: phi1 + phi3 - k * phi2.

    Echo 2 only needs unwrapping when k is not an integer.
    """
    config = config or PipelineConfig()
    if image.necho < 3:
        raise ShapeMismatchError(f"Bipolar correction needs at least 3 echoes, got {image.necho}")
    k = getk(TEs)
    if abs(k - round(k)) < BIPOLAR_INTEGER_TOLERANCE:
        p2 = image.angle(1)
    else:
        p2 = unwrap(image.angle(1), mag=image.magnitude(1), config=config.unwrap)
    return image.angle(0) + image.angle(2) - k * p2


def remove_artefact(image, fG, TEs):
    m = getm(TEs)
    k = getk(TEs)
    f = (2 - k) * m - k
    for ieco in range(image.necho):
        # echoes are counted from 1, even echoes are read out with reversed polarity
        t = (m + 1 if (ieco + 1) % 2 == 0 else m) / f
        image.subtract_angle(ieco, t * fG)


def apply_bipolar_correction(image, TEs, sigma, mask, voxel_size=None, config=None):
    """Estimate, smooth and unwrap the bipolar artefact, then remove it from every echo."""
    config = config or PipelineConfig()
    fG = artefact(image, TEs, config)
    fG = config.numerics.clean(gaussiansmooth3d_phase(fG, sigma, mask=mask, voxel_size=voxel_size))
    fG = unwrap(fG, mag=image.magnitude(0), config=config.unwrap)
    remove_artefact(image, fG, TEs)
    return fG
