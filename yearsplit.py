#!/usr/bin/env python3
"""
Year Split - turns a loss-year raster into cumulative per-year masks and MBTiles.

For every year code in [--min-year, --max-year] it writes
accumulative_lossyear_to_2NNN_<lat>_<long>.tiff, where a pixel is 255 if
its loss year is at or before that year, then converts each mask into an
MBTiles pyramid with nearest-neighbour overviews.

Usage:
    python yearsplit.py lossyear.tif                  # 4 workers, years 1-20
    python yearsplit.py lossyear.tif -w 8 -o out/     # 8 workers, output to out/
    python yearsplit.py lossyear.tif --masks-only     # Skip the MBTiles phase
"""

import argparse
import logging
import multiprocessing
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional

import psutil
from osgeo import gdal
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn, TimeRemainingColumn

from masks import (
    DEFAULT_MAX_YEAR,
    DEFAULT_MIN_YEAR,
    MaskStreamSet,
    RasterIOError,
    ThresholdRange,
    YearSplitError,
    pyramid_filename,
    split_rows,
)
from pyramids import LOSSLESS_TILE_FORMATS, MIN_TILE_SIZE, PyramidDispatcher

gdal.UseExceptions()

logger = logging.getLogger(__name__)
console = Console()

DEFAULT_WORKERS = 4
cpu_count = multiprocessing.cpu_count()


def _get_available_ram_mb(default_mb: int = 4096) -> int:
    """Return currently available RAM in MB, or a conservative fallback."""
    try:
        return max(1, int(psutil.virtual_memory().available // (1024 * 1024)))
    except (OSError, AttributeError):
        return default_mb


def _configure_gdal_for_phase(phase: str, workers: int = 1, available_ram_mb: int = None):
    """
    Configure GDAL settings for specific processing phases.

    Args:
        phase: One of 'masks', 'pyramids'
        workers: Number of parallel workers
        available_ram_mb: Available RAM in MB (auto-detect if None)
    """
    if available_ram_mb is None:
        available_ram_mb = _get_available_ram_mb()
    workers = max(1, workers)

    if phase == 'masks':
        # Every level keeps dirty row blocks in the cache until close
        gdal.SetConfigOption('GDAL_CACHEMAX', str(max(512, min(8192, available_ram_mb * 3 // 4))))

    elif phase == 'pyramids':
        # Single worker gets all CPUs, multiple workers throttled
        if workers > 1:
            gdal.SetConfigOption('GDAL_NUM_THREADS', '1')
        else:
            gdal.SetConfigOption('GDAL_NUM_THREADS', 'ALL_CPUS')
        cache_per_worker = max(256, min(4096, available_ram_mb // workers))
        gdal.SetConfigOption('GDAL_CACHEMAX', str(cache_per_worker))


def _progress_columns():
    return (
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(bar_width=40),
        TaskProgressColumn(),
        TimeRemainingColumn(),
    )


class YearSplitter:
    """Drives the row phase then the pyramid phase for one source raster."""

    def __init__(self, input_path: Path, output_dir: Path, thresholds: ThresholdRange,
                 workers: int = DEFAULT_WORKERS, tile_size: int = MIN_TILE_SIZE,
                 tile_format: str = 'PNG', build_pyramids: bool = True,
                 show_progress: bool = True):
        if workers < 1:
            raise ValueError(f"worker count must be >= 1, got {workers}")
        self.input_path = Path(input_path)
        self.output_dir = Path(output_dir)
        self.thresholds = thresholds
        self.workers = workers
        self.tile_size = tile_size
        self.tile_format = tile_format
        self.build_pyramids = build_pyramids
        self.show_progress = show_progress

    def open_source(self):
        try:
            ds = gdal.Open(str(self.input_path), gdal.GA_ReadOnly)
        except RuntimeError as e:
            raise RasterIOError(f"Failed to open {self.input_path}: {e}") from e
        if ds is None:
            raise RasterIOError(f"Failed to open {self.input_path}")

        logger.info("Bands: %d", ds.RasterCount)
        if ds.RasterCount != 1:
            logger.warning("%s has %d bands, using band 1", self.input_path.name, ds.RasterCount)
        band = ds.GetRasterBand(1)
        block_width, block_height = band.GetBlockSize()
        logger.info("Processing %d x %d area", band.XSize, band.YSize)
        logger.info("Block size %d x %d", block_width, block_height)
        return ds, band

    def _pyramid_paths(self, geotransform) -> Dict[int, Path]:
        return {
            level: self.output_dir / pyramid_filename(level, geotransform)
            for level in self.thresholds.levels
        }

    def write_masks(self, ds, band, pyramid_paths: Dict[int, Path]) -> Dict[int, Path]:
        """Row phase. Returns level -> closed mask GeoTIFF path."""
        _configure_gdal_for_phase('masks', workers=self.workers)
        driver = gdal.GetDriverByName('GTiff')
        if driver is None:
            raise RasterIOError("Failed to load GeoTIFF driver")

        streams = MaskStreamSet(
            driver, self.output_dir, self.thresholds,
            band.XSize, band.YSize, ds.GetProjection(), ds.GetGeoTransform(),
            data_type=gdal.GDT_Byte,
            extra_paths=pyramid_paths,
        )

        with Progress(*_progress_columns(), console=console, disable=not self.show_progress) as progress:
            task = progress.add_task("Writing masks", total=band.YSize)

            def on_row(rows_done, height):
                progress.update(task, completed=rows_done)

            with streams:
                split_rows(band, streams, self.workers, progress_cb=on_row,
                           source_name=self.input_path.name)

        return streams.close()

    def write_pyramids(self, mask_paths: Dict[int, Path], pyramid_paths: Dict[int, Path]) -> List[Dict]:
        """Pyramid phase, at most `workers` levels at a time."""
        _configure_gdal_for_phase('pyramids', workers=min(self.workers, len(mask_paths)))
        dispatcher = PyramidDispatcher(self.workers, tile_size=self.tile_size, tile_format=self.tile_format)

        with Progress(*_progress_columns(), console=console, disable=not self.show_progress) as progress:
            task = progress.add_task("Building pyramids", total=len(mask_paths))
            return dispatcher.run(mask_paths, pyramid_paths,
                                  on_complete=lambda result: progress.advance(task))

    def run(self) -> Dict[int, Path]:
        start_time = time.time()
        ds, band = self.open_source()
        geotransform = ds.GetGeoTransform()
        pyramid_paths = self._pyramid_paths(geotransform) if self.build_pyramids else {}

        mask_paths = self.write_masks(ds, band, pyramid_paths)
        band = None
        ds = None
        logger.info("Wrote %d mask rasters in %.1fs", len(mask_paths), time.time() - start_time)

        if not self.build_pyramids:
            return mask_paths

        self.write_pyramids(mask_paths, pyramid_paths)
        logger.info("Built %d pyramids in %.1fs", len(pyramid_paths), time.time() - start_time)
        return pyramid_paths


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Split a loss-year raster into cumulative per-year masks and MBTiles pyramids",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s Hansen_GFC-2020-v1.8_lossyear_10N_020E.tif
  %(prog)s lossyear.tif --workers 8 --max-year 22 -o /data/masks
        """
    )

    parser.add_argument("input", type=Path, help="Single-band loss-year raster")

    parser.add_argument(
        "-w", "--workers",
        type=int,
        default=DEFAULT_WORKERS,
        help=f"Worker threads for row processing and pyramid building (default: {DEFAULT_WORKERS}, this machine has {cpu_count} CPUs)"
    )

    parser.add_argument(
        "-o", "--output-dir",
        type=Path,
        default=Path("."),
        help="Directory for the mask GeoTIFFs and MBTiles (default: current directory)"
    )

    parser.add_argument(
        "--min-year",
        type=int,
        default=DEFAULT_MIN_YEAR,
        help=f"First year code to emit a mask for (default: {DEFAULT_MIN_YEAR})"
    )

    parser.add_argument(
        "--max-year",
        type=int,
        default=DEFAULT_MAX_YEAR,
        help=f"Last year code to emit a mask for (default: {DEFAULT_MAX_YEAR})"
    )

    parser.add_argument(
        "--tile-size",
        type=int,
        default=MIN_TILE_SIZE,
        help=f"Stop adding overviews once an axis fits in this many pixels (default: {MIN_TILE_SIZE})"
    )

    parser.add_argument(
        "--tile-format",
        type=str,
        choices=list(LOSSLESS_TILE_FORMATS),
        default='PNG',
        help="Tile format for MBTiles, lossless only so masks stay 0/255 (default: PNG)"
    )

    parser.add_argument(
        "--masks-only",
        action="store_true",
        help="Only write the mask GeoTIFFs, skip MBTiles creation"
    )

    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    if not args.input.exists():
        console.print(f"[red]Error:[/red] Input raster not found: {args.input}")
        return 1

    try:
        thresholds = ThresholdRange(args.min_year, args.max_year)
        splitter = YearSplitter(
            args.input, args.output_dir, thresholds,
            workers=args.workers,
            tile_size=args.tile_size,
            tile_format=args.tile_format,
            build_pyramids=not args.masks_only,
        )
        outputs = splitter.run()
    except (YearSplitError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        return 1

    console.print(f"\n[green]Success![/green] Wrote {len(outputs)} outputs to [bold]{args.output_dir}[/bold]")
    return 0


if __name__ == '__main__':
    sys.exit(main())
