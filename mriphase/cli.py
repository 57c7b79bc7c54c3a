#!/usr/bin/env python3
"""
Command line interface: coil combination, masking and phase unwrapping.

Usage:
    mriphase phase.nii -m mag.nii -t 4 8 12 -o out/
    mriphase phase5D.nii -m mag5D.nii -t 4 8 12 --phase-smoothing 10 10 5 \\
        --bipolar-correction --write-phase-offsets -o out/

5D input (x, y, z, echo, channel) is combined with MCPC-3D-S before
unwrapping. Exit code 0 on success, 1 on invalid input.
"""

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path

import numpy as np
from nibabel.filebasedimages import ImageFileError

from .combine import mcpc3ds
from .config import SUPPORTED_CONNECTIVITY, load_config
from .errors import ConfigurationError, DegenerateInputError, ShapeMismatchError
from .homogeneity import makehomogeneous
from .io import read_volume, readmag, readphase, savenii, write_emptynii
from .masking import brain_mask, mask_from_voxelquality, phase_based_mask, robustmask
from .quality import romeovoxelquality
from .unwrapping import calculate_b0, unwrap

logger = logging.getLogger(__name__)

MASK_MODES = ('robustmask', 'phase', 'qualitymask', 'brain', 'nomask')


def build_parser():
    parser = argparse.ArgumentParser(
        prog='mriphase',
        description='MCPC-3D-S coil combination and quality-guided phase unwrapping',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('phase', type=Path, help='Wrapped phase NIfTI (3D, 4D or 5D)')
    parser.add_argument('-m', '--magnitude', type=Path, help='Magnitude NIfTI of the same shape')
    parser.add_argument('-t', '--TEs', type=float, nargs='+', help='Echo times in ms')
    parser.add_argument('-o', '--output', type=Path, default=Path('.'), help='Output directory')
    parser.add_argument('--phase-smoothing', type=float, nargs=3, metavar=('SX', 'SY', 'SZ'),
                        help='Smoothing sigma of the coil phase offsets (mm)')
    parser.add_argument('--mag-smoothing', type=float, nargs='+', metavar='SIGMA_MM',
                        help='Write a homogeneity-corrected magnitude with this sigma (mm), '
                             'one value or one per axis')
    parser.add_argument('--mask', default='robustmask',
                        help=f"Mask mode {MASK_MODES} or path to a mask NIfTI")
    parser.add_argument('--bipolar-correction', action='store_true',
                        help='Remove the bipolar readout artefact during coil combination')
    parser.add_argument('--individual', action='store_true',
                        help='Unwrap echoes individually instead of temporally')
    parser.add_argument('--connectivity', type=int, choices=SUPPORTED_CONNECTIVITY,
                        help='Neighbourhood of the unwrapping graph')
    parser.add_argument('--write-phase-offsets', action='store_true',
                        help='Store the coil phase offsets as phase_offsets.nii')
    parser.add_argument('--b0', action='store_true', help='Also write a B0 map in Hz')
    parser.add_argument('--config', type=Path, help='YAML configuration file')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug output')
    return parser


def _apply_overrides(config, args):
    if args.phase_smoothing is not None:
        config.combine = replace(config.combine, sigma=tuple(args.phase_smoothing))
    if args.bipolar_correction:
        config.combine = replace(config.combine, bipolar_correction=True)
    if args.connectivity is not None:
        config.unwrap = replace(config.unwrap, connectivity=args.connectivity)
    if args.individual:
        config.unwrap = replace(config.unwrap, temporal=False)
    if args.mag_smoothing is not None:
        sigma_mm = args.mag_smoothing[0] if len(args.mag_smoothing) == 1 else args.mag_smoothing
        config.homogeneity = replace(config.homogeneity, sigma_mm=sigma_mm)
    return config


def _first_echo(array):
    return array[..., 0] if array is not None and array.ndim == 4 else array


def make_mask(mode, phase, mag, TEs, config):
    """Mask for unwrapping according to the ``--mask`` option."""
    if mode == 'nomask':
        return None
    if mode not in MASK_MODES:
        mask = read_volume(mode).data
        mask = _first_echo(np.asarray(mask)) > 0
        if mask.shape != phase.shape[:3]:
            raise ShapeMismatchError("mask file does not match phase", mask.shape, phase.shape[:3])
        return mask
    if mode == 'phase':
        return robustmask(phase_based_mask(_first_echo(phase)), config=config.mask)

    if mode == 'qualitymask' or mag is None:
        qmap = romeovoxelquality(phase, mag, TEs, connectivity=config.unwrap.connectivity)
        if mode == 'qualitymask':
            return mask_from_voxelquality(qmap, config=config.mask)
        weight = qmap
    else:
        weight = _first_echo(mag)
    mask = robustmask(weight, config=config.mask)
    if mode == 'brain':
        mask = brain_mask(mask)
    return mask


def run(args):
    config = _apply_overrides(load_config(args.config), args)
    output = args.output
    output.mkdir(parents=True, exist_ok=True)

    phase_volume = readphase(args.phase)
    phase = np.asarray(phase_volume.data, dtype=np.float32)
    header = phase_volume.header
    mag = None
    if args.magnitude is not None:
        mag = np.asarray(readmag(args.magnitude).data, dtype=np.float32)
        if mag.shape != phase.shape:
            raise ShapeMismatchError("magnitude does not match phase", mag.shape, phase.shape)
    TEs = args.TEs

    if phase.ndim == 5:
        if TEs is None:
            raise ConfigurationError("Coil combination of 5D data requires --TEs")
        po = None
        if args.write_phase_offsets:
            po = write_emptynii(phase.shape[:3] + (phase.shape[4],), output / 'phase_offsets.nii',
                                voxel_size=phase_volume.voxel_size)
        logger.info("Combining channels with MCPC-3D-S...")
        voxel_size = phase_volume.voxel_size
        if mag is not None:
            phase, mag = mcpc3ds(phase, mag, TEs=TEs, po=po, voxel_size=voxel_size, config=config)
            savenii(mag, output / 'combined_mag.nii', header=header)
        else:
            phase = mcpc3ds(phase, TEs=TEs, po=po, voxel_size=voxel_size, config=config)
        if po is not None:
            po.flush()
        savenii(phase, output / 'combined_phase.nii', header=header)

    mask = make_mask(args.mask, phase, mag, TEs, config)
    if mask is not None:
        savenii(mask, output / 'mask.nii', header=header)

    unwrapped = unwrap(phase, mag=mag, mask=mask, TEs=TEs, config=config.unwrap)
    savenii(unwrapped, output / 'unwrapped.nii', header=header)

    if args.b0:
        if TEs is None:
            raise ConfigurationError("B0 calculation requires --TEs")
        savenii(calculate_b0(unwrapped, mag, TEs), output / 'B0.nii', header=header)

    if args.mag_smoothing is not None:
        if mag is None:
            raise ConfigurationError("--mag-smoothing requires a magnitude image")
        homogeneous = makehomogeneous(mag, phase_volume.voxel_size, config.homogeneity)
        savenii(homogeneous, output / 'homogeneous_mag.nii', header=header)
    return 0


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format='%(message)s')
    try:
        return run(args)
    except (ShapeMismatchError, DegenerateInputError, ConfigurationError,
            FileNotFoundError, ImageFileError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
