"""
Cumulative loss-year masks - splits a single-band "event year" raster into
one 0/255 mask per year threshold, one output GeoTIFF per year.

A pixel is switched on in the mask for year N when its loss year falls in
[min_level, N], so every mask contains all the loss of the previous ones.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

MASK_ON = 255
MASK_OFF = 0

DEFAULT_MIN_YEAR = 1
DEFAULT_MAX_YEAR = 20

MASK_EXTENSION = "tiff"
PYRAMID_EXTENSION = "mbtiles"


class YearSplitError(Exception):
    """Base class for every fatal error raised while splitting a raster."""


class OutputExistsError(YearSplitError):
    """A derived output path is already on disk."""


class RasterIOError(YearSplitError):
    """Reading the source or writing a mask raster failed."""


@dataclass(frozen=True)
class ThresholdRange:
    """Inclusive range of year codes, one mask raster per level."""

    min_level: int = DEFAULT_MIN_YEAR
    max_level: int = DEFAULT_MAX_YEAR

    def __post_init__(self):
        if self.min_level < 1:
            raise ValueError(f"min level must be >= 1, got {self.min_level}")
        if self.max_level < self.min_level:
            raise ValueError(
                f"max level ({self.max_level}) must be >= min level ({self.min_level})"
            )

    @property
    def levels(self) -> List[int]:
        return list(range(self.min_level, self.max_level + 1))

    def __len__(self) -> int:
        return self.max_level - self.min_level + 1


def mask(pixel_value: int, level: int, min_level: int) -> int:
    """Mask value for one pixel at one threshold level: 255 when min_level <= value <= level."""
    if min_level <= pixel_value <= level:
        return MASK_ON
    return MASK_OFF


def chunk_ranges(width: int, workers: int) -> List[Tuple[int, int]]:
    """
    Split [0, width) into `workers` contiguous (start, stop) ranges.

    Every chunk is width // workers wide except the last, which also takes
    the remainder. When width < workers the leading chunks are empty.
    """
    if workers < 1:
        raise ValueError(f"worker count must be >= 1, got {workers}")
    base = width // workers
    ranges = []
    for i in range(workers):
        start = i * base
        stop = width if i == workers - 1 else start + base
        ranges.append((start, stop))
    return ranges


def _fill_chunk(row: np.ndarray, out: np.ndarray, thresholds: ThresholdRange):
    """Fill one worker's column slice of the (levels, width) mask buffer."""
    if row.size == 0:
        return
    in_range = row >= thresholds.min_level
    for i, level in enumerate(thresholds.levels):
        out[i] = np.where(in_range & (row <= level), MASK_ON, MASK_OFF)


def compute_mask_rows(
    row: np.ndarray,
    thresholds: ThresholdRange,
    chunks: Sequence[Tuple[int, int]],
    executor: Optional[ThreadPoolExecutor] = None,
    out: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Compute every level's mask row for one source row.

    Each chunk gets its own column view of `out`, so workers never touch the
    same slot. All chunks finish before this returns; a worker exception is
    re-raised here.
    """
    width = row.shape[0]
    if out is None:
        out = np.empty((len(thresholds), width), dtype=np.uint8)

    if executor is None:
        for start, stop in chunks:
            _fill_chunk(row[start:stop], out[:, start:stop], thresholds)
        return out

    futures = [
        executor.submit(_fill_chunk, row[start:stop], out[:, start:stop], thresholds)
        for start, stop in chunks
    ]
    for future in futures:
        future.result()
    return out


def origin_lat_long(geotransform: Sequence[float]) -> Tuple[int, int]:
    """Origin of a geotransform as whole degrees wrapped into [0, 360)."""
    long = (int(geotransform[0]) + 360) % 360
    lat = (int(geotransform[3]) + 360) % 360
    return lat, long


def output_stem(level: int, geotransform: Sequence[float]) -> str:
    lat, long = origin_lat_long(geotransform)
    return f"accumulative_lossyear_to_2{level:03d}_{lat}_{long}"


def mask_filename(level: int, geotransform: Sequence[float]) -> str:
    return f"{output_stem(level, geotransform)}.{MASK_EXTENSION}"


def pyramid_filename(level: int, geotransform: Sequence[float]) -> str:
    return f"{output_stem(level, geotransform)}.{PYRAMID_EXTENSION}"


class MaskStreamSet:
    """
    One output GeoTIFF per threshold level, written strictly row by row.

    Every derived path is checked before the first dataset is created, so a
    clash leaves the output directory untouched. Datasets are closed exactly
    once; `close()` hands back the level -> path mapping for the pyramid phase.
    """

    def __init__(self, driver, output_dir: Path, thresholds: ThresholdRange,
                 width: int, height: int, projection: str, geotransform: Sequence[float],
                 data_type: int, extra_paths: Optional[Dict[int, Path]] = None):
        self.driver = driver
        self.output_dir = Path(output_dir)
        self.thresholds = thresholds
        self.width = width
        self.height = height
        self.projection = projection
        self.geotransform = tuple(geotransform)
        self.data_type = data_type
        self.paths: Dict[int, Path] = {
            level: self.output_dir / mask_filename(level, self.geotransform)
            for level in thresholds.levels
        }
        # Other per-level outputs (pyramids) that must not exist either
        self.extra_paths = extra_paths or {}
        self.datasets: Dict[int, object] = {}
        self.next_row = 0
        self.closed = False

    def check_paths(self):
        for level in self.thresholds.levels:
            for path in (self.paths[level], self.extra_paths.get(level)):
                if path is not None and os.path.exists(path):
                    raise OutputExistsError(f"Dataset {path} already exists, aborting.")

    def open(self):
        self.check_paths()
        self.output_dir.mkdir(parents=True, exist_ok=True)
        for level, path in self.paths.items():
            try:
                dataset = self.driver.Create(str(path), self.width, self.height, 1, self.data_type)
            except RuntimeError as e:
                raise RasterIOError(f"Failed to create {path.name} for year 2{level:03d}: {e}") from e
            if dataset is None:
                raise RasterIOError(f"Failed to create {path.name} for year 2{level:03d}")
            dataset.SetProjection(self.projection)
            dataset.SetGeoTransform(self.geotransform)
            self.datasets[level] = dataset
            logger.debug("Created %s", path.name)
        return self

    def write_rows(self, y: int, mask_rows: np.ndarray):
        """Write row `y` of every level; rows must arrive in order 0..height-1."""
        if self.closed:
            raise RasterIOError(f"Cannot write row {y}: mask datasets already closed")
        if y != self.next_row:
            raise RasterIOError(f"Row {y} written out of order (expected row {self.next_row})")

        for i, level in enumerate(self.thresholds.levels):
            band = self.datasets[level].GetRasterBand(1)
            try:
                err = band.WriteArray(mask_rows[i:i + 1, :], 0, y)
            except RuntimeError as e:
                raise RasterIOError(
                    f"Failed to write row {y} of {self.paths[level].name} for year 2{level:03d}: {e}"
                ) from e
            if err:
                raise RasterIOError(
                    f"Failed to write row {y} of {self.paths[level].name} for year 2{level:03d} (error {err})"
                )
        self.next_row += 1

    def close(self) -> Dict[int, Path]:
        """Flush and release every level; the first flush failure is raised after all are released."""
        if self.closed:
            return dict(self.paths)

        failure = None
        for level in self.thresholds.levels:
            dataset = self.datasets.pop(level, None)
            if dataset is None:
                continue
            try:
                dataset.FlushCache()
            except RuntimeError as e:
                if failure is None:
                    failure = RasterIOError(
                        f"Failed to flush {self.paths[level].name} for year 2{level:03d}: {e}"
                    )
            dataset = None
        self.closed = True

        if failure is not None:
            raise failure
        return dict(self.paths)

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.close()
            return False
        # Already failing: report the flush error but let the original propagate
        try:
            self.close()
        except RasterIOError as e:
            logger.error("%s", e)
        return False


def split_rows(band, streams: MaskStreamSet, workers: int,
               progress_cb: Optional[Callable[[int, int], None]] = None,
               source_name: str = "source raster"):
    """
    Row phase: read each source row, fan the pixels out across `workers`
    threads, then write every level's mask row before moving on.

    `band` is anything with GDAL's ReadAsArray(xoff, yoff, xsize, ysize).
    `progress_cb(rows_done, height)` is called after each row is written.
    `source_name` identifies the input in read errors.
    """
    width, height = streams.width, streams.height
    thresholds = streams.thresholds
    chunks = chunk_ranges(width, workers)
    mask_rows = np.empty((len(thresholds), width), dtype=np.uint8)

    logger.info("Processing %d x %d area across %d workers (%d levels)",
                width, height, workers, len(thresholds))

    with ThreadPoolExecutor(max_workers=workers) as executor:
        for y in range(height):
            try:
                row = band.ReadAsArray(0, y, width, 1)
            except RuntimeError as e:
                raise RasterIOError(f"Failed to read row {y} of {source_name}: {e}") from e
            if row is None:
                raise RasterIOError(f"Failed to read row {y} of {source_name}")

            compute_mask_rows(row.reshape(width), thresholds, chunks, executor, out=mask_rows)
            streams.write_rows(y, mask_rows)

            if progress_cb:
                progress_cb(y + 1, height)
