"""
Tests for overview planning and the pyramid dispatcher.

The dispatcher tests swap the GDAL worker for small fakes, so they run
without GDAL installed.
"""

import math
import threading
import time
from pathlib import Path

import pytest

from masks import YearSplitError
from pyramids import MIN_TILE_SIZE, PyramidDispatcher, PyramidEncodingError, overview_levels


class TestOverviewLevels:
    def test_just_over_one_tile(self):
        assert overview_levels(300, 300, 256) == [2]

    def test_fits_in_a_tile(self):
        assert overview_levels(256, 4000, 256) == []
        assert overview_levels(100, 100) == []

    def test_one_pixel_over_a_tile_gets_one_level(self):
        assert overview_levels(257, 257, 256) == [2]
        assert overview_levels(512, 512, 256) == [2]
        assert overview_levels(513, 513, 256) == [2, 4]

    def test_narrow_axis_limits_depth(self):
        assert overview_levels(40000, 600, 256) == [2, 4]

    def test_hansen_tile(self):
        # 40000 x 40000 pixels, the 1/256 level is the first at or under one tile
        assert overview_levels(40000, 40000) == [2, 4, 8, 16, 32, 64, 128, 256]

    def test_default_tile_size(self):
        assert MIN_TILE_SIZE == 256
        assert overview_levels(1025, 1025) == overview_levels(1025, 1025, 256) == [2, 4, 8]

    def test_rejects_zero_tile_size(self):
        with pytest.raises(ValueError):
            overview_levels(100, 100, 0)

    def test_sequence_properties(self):
        for width in (1, 255, 257, 513, 1000, 4097, 12345):
            for height in (1, 300, 999, 5000):
                for tile_size in (1, 16, 256, 512):
                    levels = overview_levels(width, height, tile_size)
                    for i, factor in enumerate(levels):
                        assert factor == 2 ** (i + 1)
                        assert math.ceil(width / (factor // 2)) > tile_size
                        assert math.ceil(height / (factor // 2)) > tile_size
                    # The next candidate must fail the check
                    next_factor = 2 ** (len(levels) + 1)
                    assert (math.ceil(width / (next_factor // 2)) <= tile_size
                            or math.ceil(height / (next_factor // 2)) <= tile_size)


def make_jobs(levels):
    jobs = {level: Path(f"mask_{level}.tiff") for level in levels}
    outputs = {level: Path(f"mask_{level}.mbtiles") for level in levels}
    return jobs, outputs


def ok_result(args):
    level, source, output, tile_size, tile_format = args
    return {
        'success': True,
        'level': level,
        'source': str(source),
        'output': str(output),
        'overviews': [2, 4],
        'elapsed': 0.0,
    }


class TestPyramidDispatcher:
    def test_runs_every_level(self):
        seen = []

        def worker(args):
            seen.append(args)
            return ok_result(args)

        jobs, outputs = make_jobs(range(1, 6))
        results = PyramidDispatcher(2, tile_size=128, tile_format='PNG', worker=worker).run(jobs, outputs)

        assert sorted(r['level'] for r in results) == [1, 2, 3, 4, 5]
        assert sorted(seen) == [
            (level, jobs[level], outputs[level], 128, 'PNG') for level in range(1, 6)
        ]

    def test_concurrency_is_bounded(self):
        lock = threading.Lock()
        state = {'active': 0, 'peak': 0}

        def worker(args):
            with lock:
                state['active'] += 1
                state['peak'] = max(state['peak'], state['active'])
            time.sleep(0.02)
            with lock:
                state['active'] -= 1
            return ok_result(args)

        jobs, outputs = make_jobs(range(1, 11))
        results = PyramidDispatcher(3, worker=worker).run(jobs, outputs)

        assert len(results) == 10
        assert 1 <= state['peak'] <= 3

    def test_progress_called_per_job(self):
        completed = []
        jobs, outputs = make_jobs(range(1, 8))
        PyramidDispatcher(4, worker=ok_result).run(jobs, outputs, on_complete=completed.append)
        assert len(completed) == 7

    def test_no_jobs(self):
        assert PyramidDispatcher(4, worker=ok_result).run({}, {}) == []

    def test_rejects_zero_workers(self):
        with pytest.raises(ValueError):
            PyramidDispatcher(0)

    @pytest.mark.parametrize("tile_format", ["JPEG", "WEBP"])
    def test_rejects_lossy_tile_formats(self, tile_format):
        with pytest.raises(ValueError, match=tile_format):
            PyramidDispatcher(2, tile_format=tile_format, worker=ok_result)

    def test_failure_stops_new_work(self):
        called = []

        def worker(args):
            called.append(args[0])
            if args[0] == 2:
                result = ok_result(args)
                result.update(success=False, error="MBTiles driver exploded")
                return result
            return ok_result(args)

        jobs, outputs = make_jobs(range(1, 6))
        with pytest.raises(PyramidEncodingError) as exc_info:
            PyramidDispatcher(1, worker=worker).run(jobs, outputs)

        assert called == [1, 2]
        assert "year 2002" in str(exc_info.value)
        assert "MBTiles driver exploded" in str(exc_info.value)
        assert isinstance(exc_info.value, YearSplitError)

    def test_in_flight_jobs_finish_before_failing(self):
        release = threading.Event()
        called = []
        finished = []

        def worker(args):
            called.append(args[0])
            if args[0] == 1:
                raise RuntimeError("translate failed")
            release.wait(5)
            finished.append(args[0])
            return ok_result(args)

        def on_complete(result):
            if not result['success']:
                release.set()

        jobs, outputs = make_jobs(range(1, 7))
        with pytest.raises(PyramidEncodingError, match="translate failed"):
            PyramidDispatcher(3, worker=worker).run(jobs, outputs, on_complete=on_complete)

        assert sorted(called) == [1, 2, 3]
        assert sorted(finished) == [2, 3]
