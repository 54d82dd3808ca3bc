"""Pytest configuration and fixtures for yearsplit tests."""
import sys
from pathlib import Path

# Add project root to Python path for imports
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import numpy as np
import pytest


class FakeBand:
    """Stands in for a GDAL band: records writes and serves reads."""

    def __init__(self, data=None, fail_read_at=None, write_error=None):
        self.data = data
        self.fail_read_at = fail_read_at
        self.write_error = write_error
        self.writes = []

    def ReadAsArray(self, xoff, yoff, xsize, ysize):
        if yoff == self.fail_read_at:
            raise RuntimeError("simulated read failure")
        return self.data[yoff:yoff + ysize, xoff:xoff + xsize].copy()

    def WriteArray(self, array, xoff, yoff):
        if self.write_error is not None:
            raise self.write_error
        self.writes.append((yoff, np.array(array, copy=True)))
        return 0


class FakeDataset:
    def __init__(self, path):
        self.path = path
        self.band = FakeBand()
        self.projection = None
        self.geotransform = None
        self.flushes = 0
        self.flush_error = None

    def SetProjection(self, projection):
        self.projection = projection

    def SetGeoTransform(self, geotransform):
        self.geotransform = geotransform

    def GetRasterBand(self, index):
        assert index == 1
        return self.band

    def FlushCache(self):
        self.flushes += 1
        if self.flush_error is not None:
            raise self.flush_error


class FakeDriver:
    """Creates FakeDatasets and touches the file so existence checks see it."""

    def __init__(self):
        self.created = {}

    def Create(self, path, width, height, bands, data_type):
        Path(path).touch()
        dataset = FakeDataset(path)
        self.created[path] = dataset
        return dataset


@pytest.fixture
def fake_driver():
    return FakeDriver()


@pytest.fixture
def geotransform():
    # Hansen-style tile origin: 20E, 10N, 0.00025 degree pixels
    return (20.0, 0.00025, 0.0, 10.0, 0.0, -0.00025)


@pytest.fixture
def year_raster():
    """A small loss-year grid with codes 0 (no loss) through 5."""
    return np.array([
        [0, 1, 2, 3, 4, 5, 0],
        [5, 4, 3, 2, 1, 0, 1],
        [2, 2, 2, 0, 0, 3, 3],
    ], dtype=np.uint8)


@pytest.fixture
def make_band():
    return FakeBand
