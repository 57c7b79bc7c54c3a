#!/usr/bin/env python3
"""
Unit tests for NIfTI input and output.
"""

import nibabel as nib
import numpy as np
import pytest

from mriphase.io import (
    NIFTI1_VOX_OFFSET,
    read_volume,
    readmag,
    readphase,
    rescale_phase,
    savenii,
    similar_header,
    write_emptynii,
)


@pytest.fixture
def phase_file(tmp_path):
    """Integer encoded scanner phase, 4D."""
    rng = np.random.RandomState(0)
    data = rng.randint(-4096, 4096, size=(8, 8, 4, 2)).astype(np.int16)
    data.flat[0] = -4096
    data.flat[1] = 4095
    path = tmp_path / 'phase.nii'
    img = nib.Nifti1Image(data, np.diag([0.5, 0.5, 2.0, 1.0]))
    img.header.set_zooms((0.5, 0.5, 2.0, 1.0))
    nib.save(img, str(path))
    return path


class TestReading:
    """Tests for readphase(), readmag() and read_volume()."""

    def test_read_volume(self, phase_file):
        volume = read_volume(phase_file)
        assert volume.data.shape == (8, 8, 4, 2)
        assert volume.voxel_size == (0.5, 0.5, 2.0)
        np.testing.assert_allclose(volume.affine[:3, :3], np.diag([0.5, 0.5, 2.0]))

    def test_readphase_rescales_integers(self, phase_file):
        phase = readphase(phase_file).data
        assert phase.dtype == np.float32
        assert phase.min() == pytest.approx(-np.pi, abs=1e-5)
        assert phase.max() == pytest.approx(np.pi, abs=1e-5)

    def test_readphase_without_rescale(self, phase_file):
        phase = readphase(phase_file, rescale=False).data
        assert phase.max() == 4095

    def test_radian_phase_unchanged(self):
        phase = np.linspace(-np.pi, np.pi, 100)
        np.testing.assert_allclose(rescale_phase(phase), phase, atol=1e-6)

    def test_readmag_normalize(self, tmp_path):
        rng = np.random.RandomState(0)
        data = rng.uniform(0, 100, size=(20, 20, 20)).astype(np.float32)
        savenii(data, tmp_path / 'mag.nii')
        mag = readmag(tmp_path / 'mag.nii', normalize=True).data
        assert 1.0 <= mag.max() < 1.01

    def test_mmap(self, tmp_path):
        data = np.arange(24, dtype=np.float32).reshape(2, 3, 4)
        savenii(data, tmp_path / 'data.nii')
        volume = read_volume(tmp_path / 'data.nii', mmap=True)
        np.testing.assert_array_equal(volume.data, data)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            readphase(tmp_path / 'missing.nii')


class TestWriting:
    """Tests for savenii() and write_emptynii()."""

    def test_round_trip_with_header(self, phase_file, tmp_path):
        volume = read_volume(phase_file)
        data = np.ones(volume.data.shape, dtype=np.float32)
        out = savenii(data, tmp_path / 'sub' / 'out.nii', header=volume.header)
        assert out.exists()
        loaded = read_volume(out)
        assert loaded.voxel_size == volume.voxel_size
        np.testing.assert_array_equal(loaded.data, data)

    def test_bool_saved_as_uint8(self, tmp_path):
        mask = np.zeros((4, 4, 4), dtype=bool)
        mask[1, 2, 3] = True
        savenii(mask, tmp_path / 'mask.nii')
        loaded = nib.load(str(tmp_path / 'mask.nii'))
        assert loaded.get_data_dtype() == np.uint8
        assert np.asanyarray(loaded.dataobj)[1, 2, 3] == 1

    def test_voxel_size(self, tmp_path):
        savenii(np.zeros((4, 4, 4), dtype=np.float32), tmp_path / 'a.nii', voxel_size=(1, 2, 3))
        assert read_volume(tmp_path / 'a.nii').voxel_size == (1.0, 2.0, 3.0)

    def test_similar_header_removes_scaling(self):
        header = nib.Nifti1Header()
        header.set_slope_inter(2.0, 5.0)
        assert similar_header(header).get_slope_inter() == (1.0, 0.0)

    def test_write_emptynii(self, tmp_path):
        path = tmp_path / 'empty.nii'
        buffer = write_emptynii((6, 5, 4, 2), path, voxel_size=(1.0, 1.5, 2.0))
        assert path.stat().st_size == NIFTI1_VOX_OFFSET + 6 * 5 * 4 * 2 * 4
        assert np.all(buffer == 0)

        buffer[2, 3, 1, 1] = 7.5
        buffer.flush()
        del buffer

        loaded = read_volume(path)
        assert loaded.data.shape == (6, 5, 4, 2)
        assert loaded.data[2, 3, 1, 1] == 7.5
        assert loaded.data.sum() == 7.5
        assert loaded.voxel_size == (1.0, 1.5, 2.0)
