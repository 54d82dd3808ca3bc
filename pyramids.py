"""
Tile pyramids for the cumulative masks - converts each mask GeoTIFF to
MBTiles and adds nearest-neighbour overviews down to roughly one tile.
"""

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor, wait, FIRST_COMPLETED
from pathlib import Path
from typing import Callable, Dict, List, Optional

from masks import YearSplitError

logger = logging.getLogger(__name__)

MIN_TILE_SIZE = 256

# Nearest keeps overview pixels in {0, 255}
OVERVIEW_RESAMPLING = "NEAREST"

# Lossy tile encodings would smear the 0/255 edges
LOSSLESS_TILE_FORMATS = ('PNG',)


class PyramidEncodingError(YearSplitError):
    """Translating a mask to MBTiles or building its overviews failed."""


def overview_levels(width: int, height: int, tile_size: int = MIN_TILE_SIZE) -> List[int]:
    """
    Downsampling factors 2, 4, 8, ... for a width x height raster.

    A factor is added while the level it halves (factor // 2, starting from
    full resolution) is still wider and taller than one tile. An empty list
    means the raster already fits in a tile on at least one axis.
    """
    if tile_size < 1:
        raise ValueError(f"tile size must be >= 1, got {tile_size}")
    levels: List[int] = []
    factor = 2
    while (math.ceil(width / (factor // 2)) > tile_size
           and math.ceil(height / (factor // 2)) > tile_size):
        levels.append(factor)
        factor *= 2
    return levels


def build_pyramid_worker(args) -> Dict:
    """Worker for one level: mask GeoTIFF -> MBTiles, then overviews."""
    level, input_tiff, output_mbtiles, tile_size, tile_format = args
    input_tiff = Path(input_tiff)
    output_mbtiles = Path(output_mbtiles)
    start_time = time.time()
    result = {
        'success': False,
        'level': level,
        'source': str(input_tiff),
        'output': str(output_mbtiles),
        'overviews': [],
    }

    from osgeo import gdal
    gdal.UseExceptions()

    try:
        translate_options = gdal.TranslateOptions(
            format='MBTiles',
            creationOptions=[f'TILE_FORMAT={tile_format}']
        )
        ds = gdal.Translate(str(output_mbtiles), str(input_tiff), options=translate_options)
        if not ds:
            result['error'] = "gdal.Translate returned None"
            return result
        ds = None

        ds = gdal.Open(str(output_mbtiles), gdal.GA_Update)
        # MBTiles resamples onto its zoom grid, so plan from the translated size
        levels = overview_levels(ds.RasterXSize, ds.RasterYSize, tile_size)
        if levels:
            err = ds.BuildOverviews(OVERVIEW_RESAMPLING, levels)
            if err:
                result['error'] = f"BuildOverviews failed (error {err})"
                return result
        ds = None

        result['overviews'] = levels
        result['success'] = True
        result['elapsed'] = time.time() - start_time
        return result

    except RuntimeError as e:
        result['error'] = str(e)
        return result


class PyramidDispatcher:
    """
    Runs one pyramid job per mask level with at most `workers` in flight.

    Jobs are admitted as earlier ones finish. After the first failure no new
    job starts; the ones already running are waited for, then the run fails
    with every failed level listed.
    """

    def __init__(self, workers: int, tile_size: int = MIN_TILE_SIZE, tile_format: str = 'PNG',
                 worker: Callable[[tuple], Dict] = build_pyramid_worker):
        if workers < 1:
            raise ValueError(f"worker count must be >= 1, got {workers}")
        if tile_format not in LOSSLESS_TILE_FORMATS:
            raise ValueError(f"tile format must be one of {', '.join(LOSSLESS_TILE_FORMATS)}, got {tile_format}")
        self.workers = workers
        self.tile_size = tile_size
        self.tile_format = tile_format
        self.worker = worker

    def run(self, jobs: Dict[int, Path], output_paths: Dict[int, Path],
            on_complete: Optional[Callable[[Dict], None]] = None) -> List[Dict]:
        """
        Build pyramids for every level in `jobs` (level -> mask GeoTIFF).

        `on_complete(result)` is called once per finished job.
        """
        pending = [
            (level, jobs[level], output_paths[level], self.tile_size, self.tile_format)
            for level in sorted(jobs)
        ]
        total_jobs = len(pending)
        results: List[Dict] = []
        failures: List[Dict] = []

        if not pending:
            return results

        with ThreadPoolExecutor(max_workers=min(self.workers, total_jobs)) as executor:
            futures = {}
            next_job_index = 0

            def submit_next() -> bool:
                nonlocal next_job_index
                if failures or next_job_index >= total_jobs:
                    return False
                job = pending[next_job_index]
                next_job_index += 1
                logger.debug("Starting [%d/%d]: %s", next_job_index, total_jobs, Path(job[1]).name)
                futures[executor.submit(self.worker, job)] = job
                return True

            while len(futures) < self.workers and submit_next():
                pass

            while futures:
                done, _ = wait(futures, return_when=FIRST_COMPLETED)
                for future in done:
                    level, source, output = futures.pop(future)[:3]
                    try:
                        result = future.result()
                    except Exception as e:
                        result = {
                            'success': False,
                            'level': level,
                            'source': str(source),
                            'output': str(output),
                            'overviews': [],
                            'error': str(e),
                        }

                    results.append(result)
                    if result.get('success'):
                        factors = ", ".join(str(f) for f in result['overviews']) or "none"
                        logger.info("Pyramid %s ready (overviews: %s, %.1fs)",
                                    Path(result['output']).name, factors, result.get('elapsed', 0.0))
                    else:
                        failures.append(result)
                        logger.error("Pyramid for year 2%03d failed: %s", level, result.get('error'))

                    if on_complete:
                        on_complete(result)

                while len(futures) < self.workers and submit_next():
                    pass

        if failures:
            details = "; ".join(
                f"year 2{r['level']:03d} ({Path(r['output']).name}): {r.get('error', 'unknown error')}"
                for r in failures
            )
            raise PyramidEncodingError(f"Pyramid build failed for {details}")

        return results
