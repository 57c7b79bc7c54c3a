"""
NIfTI input and output through nibabel.

Phase images are rescaled to [-pi, pi] on reading when their raw range
exceeds it (scanner phase is commonly stored as integers). ``mmap=True``
keeps the voxel data on disk for uncompressed, unscaled files.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import nibabel as nib
import numpy as np

from .masking import estimatequantile

logger = logging.getLogger(__name__)

NIFTI1_VOX_OFFSET = 352
PHASE_RANGE_TOLERANCE = 1e-3


@dataclass
class Volume:
    data: np.ndarray
    voxel_size: Tuple[float, ...]
    affine: np.ndarray
    header: nib.Nifti1Header


def _load(path, mmap):
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Image file not found: {path}")
    return nib.load(str(path), mmap=mmap)


def read_volume(path, mmap=False) -> Volume:
    img = _load(path, mmap)
    data = np.asanyarray(img.dataobj)
    ndim_spatial = min(data.ndim, 3)
    voxel_size = tuple(float(z) for z in img.header.get_zooms()[:ndim_spatial])
    logger.debug(f"Read {path}: shape {data.shape}, voxel size {voxel_size}")
    return Volume(data, voxel_size, img.affine, img.header)


def rescale_phase(phase):
    """Linearly map the data range to [-pi, pi] unless it already lies within it."""
    phase = np.asarray(phase)
    finite = phase[np.isfinite(phase)]
    if finite.size == 0:
        return phase.astype(np.float32)
    lo, hi = float(finite.min()), float(finite.max())
    if lo >= -np.pi - PHASE_RANGE_TOLERANCE and hi <= np.pi + PHASE_RANGE_TOLERANCE:
        return phase.astype(np.float32, copy=False)
    logger.info(f"Rescaling phase from [{lo:.4g}, {hi:.4g}] to [-pi, pi]")
    return ((phase - lo) / (hi - lo) * 2 * np.pi - np.pi).astype(np.float32)


def readphase(path, mmap=False, rescale=True) -> Volume:
    volume = read_volume(path, mmap)
    if rescale:
        volume.data = rescale_phase(volume.data)
    return volume


def readmag(path, mmap=False, normalize=False) -> Volume:
    """Read magnitude; ``normalize`` divides by the 99.9th percentile."""
    volume = read_volume(path, mmap)
    if normalize:
        scale = estimatequantile(volume.data, 0.999)
        if scale > 0:
            volume.data = (volume.data / scale).astype(np.float32)
    return volume


def similar_header(header):
    """Copy of ``header`` without intensity scaling."""
    header = header.copy()
    header.set_slope_inter(1, 0)
    return header


def savenii(data, path, header=None, affine=None, voxel_size: Optional[Tuple[float, ...]] = None):
    """Write ``data`` as NIfTI; boolean arrays are stored as uint8."""
    data = np.asarray(data)
    if data.dtype == bool:
        data = data.astype(np.uint8)
    if header is not None:
        header = similar_header(header)
        if affine is None:
            affine = header.get_best_affine()
    if affine is None:
        affine = np.eye(4)
    img = nib.Nifti1Image(data, affine, header)
    img.set_data_dtype(data.dtype)
    if voxel_size is not None:
        zooms = list(img.header.get_zooms())
        zooms[:len(voxel_size)] = voxel_size
        img.header.set_zooms(zooms)
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    nib.save(img, str(path))
    logger.info(f"Saved {path}")
    return Path(path)


def write_emptynii(shape, path, dtype=np.float32, voxel_size=None):
    """
    Create a zero-filled NIfTI file and return a writable memmap of its voxels.

    The file is extended sparsely, so no full-size array is built in memory.
    """
    header = nib.Nifti1Header()
    header.set_data_shape(shape)
    header.set_data_dtype(dtype)
    header['vox_offset'] = NIFTI1_VOX_OFFSET
    if voxel_size is not None:
        zooms = [1.0] * len(shape)
        zooms[:len(voxel_size)] = voxel_size
        header.set_zooms(zooms)

    dtype = header.get_data_dtype()
    nbytes = int(np.prod(shape)) * dtype.itemsize
    block = header.binaryblock
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'wb') as f:
        f.write(block)
        f.write(b'\x00' * (NIFTI1_VOX_OFFSET - len(block)))
        f.truncate(NIFTI1_VOX_OFFSET + nbytes)

    return np.memmap(path, dtype=dtype, mode='r+', offset=NIFTI1_VOX_OFFSET,
                     shape=tuple(shape), order='F')
