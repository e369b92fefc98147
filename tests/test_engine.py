"""
Integration tests for the engine facade: validation, image batches and
background video jobs with progress and cancellation
"""

import io
import os
import threading

import pytest
from PIL import Image

from conftest import FakeProbe, FakeTranscoder, make_image_bytes
from compressit import CompressionEngine
from compressit.config_manager import ConfigManager
from compressit.engine import default_output_path
from compressit.errors import ErrorKind, InvalidConfiguration
from compressit.models import MB, ResultStatus, TerminalState


class Gate:
    """Holds an attempt inside wait() until the test lets it go"""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def __call__(self, handle):
        self.entered.set()
        assert self.release.wait(5)


@pytest.fixture
def make_engine(temp_files):
    engines = []

    def _make(transcoder, probe=None, **kwargs):
        engine = CompressionEngine(config=ConfigManager(config_dir=None), transcoder=transcoder,
                                   probe=probe or FakeProbe(40 * MB), temp_files=temp_files, **kwargs)
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.shutdown()


class TestVideoJobs:

    def test_job_reports_progress_for_every_attempt(self, make_engine, source_video):
        engine = make_engine(FakeTranscoder(20 * MB, 15 * MB))

        job = engine.compress_video(source_video, target_size_mb=16)
        events = list(job.events())
        result = job.result(timeout=5)

        assert result.succeeded
        assert result.attempts == 2
        assert [event.attempt for event in events] == [1, 1, 2, 2]
        assert events[-1].terminal
        assert job.attempt == 2
        assert job.progress == pytest.approx(1.0)

    def test_callback_errors_do_not_break_the_job(self, make_engine, source_video):
        def broken_callback(event):
            raise RuntimeError("ui went away")

        engine = make_engine(FakeTranscoder(15 * MB))
        job = engine.compress_video(source_video, {'target_size_mb': 16}, on_progress=broken_callback)

        assert job.result(timeout=5).succeeded

    def test_invalid_settings_raise_before_anything_starts(self, make_engine, source_video):
        transcoder = FakeTranscoder(15 * MB)
        engine = make_engine(transcoder)

        with pytest.raises(InvalidConfiguration):
            engine.compress_video(source_video, target_size_mb=0)
        with pytest.raises(InvalidConfiguration):
            engine.compress_video(source_video, target_size_mb=5, quality='ultra')

        assert transcoder.started == []

    def test_cancel_by_request_id(self, make_engine, source_video):
        gate = Gate()
        transcoder = FakeTranscoder(TerminalState.cancelled(-9), on_wait=gate)
        engine = make_engine(transcoder)

        job = engine.compress_video(source_video, target_size_mb=16, request_id='job-42')
        assert gate.entered.wait(5)
        assert engine.get_job('job-42') is job

        assert engine.cancel('job-42') is True
        gate.release.set()
        result = job.result(timeout=5)

        assert result.status == ResultStatus.CANCELLED
        assert len(transcoder.cancelled) == 1

    def test_cancel_unknown_request_is_false(self, make_engine):
        engine = make_engine(FakeTranscoder())
        assert engine.cancel('nope') is False

    def test_duplicate_request_id_is_rejected_while_running(self, make_engine, source_video):
        gate = Gate()
        engine = make_engine(FakeTranscoder(15 * MB, on_wait=gate))

        job = engine.compress_video(source_video, target_size_mb=16, request_id='same')
        assert gate.entered.wait(5)
        with pytest.raises(ValueError):
            engine.compress_video(source_video, target_size_mb=16, request_id='same')

        gate.release.set()
        assert job.result(timeout=5).succeeded

    def test_cancel_of_queued_job_reports_cancelled(self, make_engine, source_video):
        gate = Gate()
        engine = make_engine(FakeTranscoder(15 * MB, 15 * MB, on_wait=gate), max_video_jobs=1)

        running = engine.compress_video(source_video, target_size_mb=16)
        assert gate.entered.wait(5)
        queued = engine.compress_video(source_video, target_size_mb=16)
        queued.cancel()
        gate.release.set()

        assert queued.result(timeout=5).was_cancelled
        assert list(queued.events()) == []
        assert running.result(timeout=5).succeeded

    def test_probe_failure_surfaces_in_result(self, make_engine, source_video):
        engine = make_engine(FakeTranscoder(15 * MB), probe=FakeProbe(40 * MB, fail=True))

        result = engine.compress_video(source_video, target_size_mb=16).result(timeout=5)

        assert result.error_kind == ErrorKind.PROBE_FAILURE


class TestImages:

    def test_compress_image_from_bytes(self, make_engine):
        engine = make_engine(FakeTranscoder())

        result = engine.compress_image(make_image_bytes(size=(64, 64), noise=True), quality=60, format='webp')

        assert result.succeeded
        assert Image.open(io.BytesIO(result.data)).format == 'WEBP'
        assert result.output_location is None

    def test_compress_image_uses_configured_default_quality(self, make_engine):
        engine = make_engine(FakeTranscoder())
        engine.default_image_quality = 50

        result = engine.compress_image(make_image_bytes(size=(40, 40)), output_format='png')

        assert Image.open(io.BytesIO(result.data)).mode == 'P'

    def test_batch_keeps_input_order_and_isolates_failures(self, make_engine, tmp_path):
        sources = []
        for name, payload in (('a.png', make_image_bytes()), ('b.png', b'corrupt'),
                              ('c.jpg', make_image_bytes(fmt='JPEG'))):
            path = tmp_path / name
            path.write_bytes(payload)
            sources.append(str(path))
        seen = []
        engine = make_engine(FakeTranscoder())

        results = engine.compress_images(sources, {'quality': 70}, output_dir=tmp_path / 'out',
                                         max_workers=2, on_result=lambda path, result: seen.append(path))

        assert [result.status for result in results] == [
            ResultStatus.SUCCESS, ResultStatus.FAILURE, ResultStatus.SUCCESS]
        assert results[1].error_kind == ErrorKind.IO_FAILURE
        assert results[0].output_location == str(tmp_path / 'out' / 'a.png')
        assert results[2].output_location == str(tmp_path / 'out' / 'c.jpg')
        assert os.path.exists(results[0].output_location)
        assert sorted(seen) == sorted(sources)
        assert engine.last_batch_errors.get_error_summary()['total_errors'] == 1

    def test_batch_rejects_bad_settings_up_front(self, make_engine, tmp_path):
        engine = make_engine(FakeTranscoder())
        with pytest.raises(InvalidConfiguration):
            engine.compress_images([str(tmp_path / 'a.png')], quality=500)

    def test_empty_batch(self, make_engine):
        assert make_engine(FakeTranscoder()).compress_images([]) == []


def test_default_output_path(tmp_path):
    source = tmp_path / 'photo.png'
    assert default_output_path(source, '.webp') == str(tmp_path / 'photo.webp')
    assert default_output_path(source, '') == str(tmp_path / 'photo_compressed.png')
    assert default_output_path(tmp_path / 'scan.bmp', '') == str(tmp_path / 'scan.jpg')
    assert default_output_path(source, '.jpg', tmp_path / 'out') == str(tmp_path / 'out' / 'photo.jpg')


def test_shutdown_clears_leftover_temp_files(temp_files):
    leftover = temp_files.allocate(suffix='.mp4')
    leftover.write_bytes(b'partial')

    with CompressionEngine(config=ConfigManager(config_dir=None), transcoder=FakeTranscoder(),
                           probe=FakeProbe(1), temp_files=temp_files):
        pass

    assert not leftover.exists()
