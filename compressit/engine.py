"""
Compression Engine
Public entry point: validates settings, runs image requests inline or as a
bounded batch, and runs video requests as cancellable background jobs
"""

import os
import queue
import logging
import threading
import subprocess
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Union

import psutil

from .config_manager import ConfigManager
from .encoding_profiles import EncodingProfileResolver
from .errors import ErrorHandler
from .image_processing.image_pipeline import ImageCompressionPipeline
from .models import MB, CompressionResult, ImageFormat, ProgressEvent, VideoCompressionRequest
from .request_validator import validate_image_settings, validate_video_settings
from .temp_file_manager import TempFileManager
from .video_processing.convergence_controller import (ConvergenceController, ConvergencePhase,
                                                      ConvergenceSettings)
from .video_processing.media_probe import MediaProbe
from .video_processing.transcode_controller import KILL_TIMEOUT_SECONDS, TranscodeProcessController

logger = logging.getLogger(__name__)

ImageSource = Union[bytes, bytearray, memoryview, str, os.PathLike]

_END_OF_EVENTS = object()

KEEP_SUFFIXES = {'.jpg', '.jpeg', '.png', '.webp', '.gif'}


def default_worker_count() -> int:
    """Physical cores, falling back to logical ones where psutil cannot tell"""
    return psutil.cpu_count(logical=False) or psutil.cpu_count() or 1


def default_output_path(source_path: Union[str, os.PathLike], extension: str,
                        output_dir: Optional[Union[str, os.PathLike]] = None) -> str:
    """<stem><ext> beside the source (or in output_dir); never the source itself"""
    source = Path(source_path)
    directory = Path(output_dir) if output_dir else source.parent
    if not extension:
        # "original" keeps a known image suffix; anything else is re-encoded as jpeg
        extension = source.suffix if source.suffix.lower() in KEEP_SUFFIXES else ImageFormat.JPEG.extension
    candidate = directory / f"{source.stem}{extension}"
    if candidate.resolve() == source.resolve():
        candidate = directory / f"{source.stem}_compressed{extension}"
    return str(candidate)


class VideoCompressionJob:
    """
    Handle for one running video request.

    ``events()`` yields every ProgressEvent of every attempt and ends when the
    request is terminal; ``result()`` blocks for the CompressionResult.
    """

    def __init__(self, request: VideoCompressionRequest, controller: ConvergenceController,
                 on_progress: Optional[Callable[[ProgressEvent], None]] = None):
        self.request = request
        self._controller = controller
        self._on_progress = on_progress
        self._events: "queue.Queue" = queue.Queue()
        self._future: Optional[Future] = None
        self._events_taken = False
        self._lock = threading.Lock()
        self.attempt = 0
        self.progress = 0.0

    @property
    def request_id(self) -> str:
        return self.request.request_id

    @property
    def phase(self) -> ConvergencePhase:
        return self._controller.phase

    def _run(self) -> CompressionResult:
        try:
            return self._controller.run(self.request, on_progress=self._forward)
        finally:
            self._events.put(_END_OF_EVENTS)

    def _forward(self, event: ProgressEvent):
        with self._lock:
            if event.attempt != self.attempt:
                self.attempt = event.attempt
                self.progress = 0.0
            self.progress = max(self.progress, event.fraction)
        self._events.put(event)
        if self._on_progress is not None:
            try:
                self._on_progress(event)
            except Exception as e:
                logger.warning(f"Progress callback raised for job {self.request_id}: {e}")

    def events(self) -> Iterator[ProgressEvent]:
        """Progress events of all attempts; one consumer only"""
        with self._lock:
            if self._events_taken:
                raise RuntimeError(f"events of job {self.request_id} were already consumed")
            self._events_taken = True
        while True:
            event = self._events.get()
            if event is _END_OF_EVENTS:
                return
            yield event

    def result(self, timeout: Optional[float] = None) -> CompressionResult:
        if self._future.cancelled():
            return CompressionResult.cancelled()
        return self._future.result(timeout)

    def done(self) -> bool:
        return self._future is not None and self._future.done()

    def cancel(self):
        """Cancel the request; a no-op once it has a result"""
        if self._future is not None and self._future.cancel():
            # Never started: report it like any other cancellation
            self._events.put(_END_OF_EVENTS)
        self._controller.cancel()


class CompressionEngine:
    """Media Compression Engine facade"""

    def __init__(self, config: Optional[ConfigManager] = None,
                 ffmpeg_path: Optional[str] = None, ffprobe_path: Optional[str] = None,
                 max_video_jobs: Optional[int] = None,
                 popen_factory: Callable = subprocess.Popen,
                 transcoder: Optional[TranscodeProcessController] = None,
                 probe: Optional[MediaProbe] = None,
                 temp_files: Optional[TempFileManager] = None):
        self.config = config or ConfigManager(config_dir=None)
        self.resolver = EncodingProfileResolver.from_config(self.config)
        self.settings = ConvergenceSettings.from_config(self.config)

        self.transcoder = transcoder or TranscodeProcessController(
            ffmpeg_path or self.config.get('video_compression.ffmpeg_path'),
            popen_factory=popen_factory,
            kill_timeout=float(self.config.get('video_compression.kill_timeout_seconds', KILL_TIMEOUT_SECONDS)),
        )
        self.probe = probe or MediaProbe(ffprobe_path or self.config.get('video_compression.ffprobe_path'))
        self.temp_files = temp_files or TempFileManager(self.config.get('general.temp_dir'))

        max_input_mb = self.config.get('image_compression.max_input_size_mb')
        self.image_pipeline = ImageCompressionPipeline(
            self.resolver, max_input_bytes=int(max_input_mb * MB) if max_input_mb else None)
        self.default_image_quality = int(self.config.get('image_compression.default_quality', 80))

        self.max_video_jobs = max_video_jobs or self.config.get('video_compression.max_concurrent_jobs') \
            or default_worker_count()
        self._video_executor = ThreadPoolExecutor(max_workers=self.max_video_jobs,
                                                  thread_name_prefix='compressit-video')
        self._jobs: Dict[str, VideoCompressionJob] = {}
        self._jobs_lock = threading.Lock()
        self.last_batch_errors: Optional[ErrorHandler] = None

    # ===== Images =====

    def compress_image(self, source: ImageSource, settings=None, **overrides) -> CompressionResult:
        """
        Compress one image from bytes or a file path.

        Raises:
            InvalidConfiguration: settings are out of range
        """
        request = validate_image_settings(settings, default_quality=self.default_image_quality, **overrides)
        if isinstance(source, (bytes, bytearray, memoryview)):
            return self.image_pipeline.compress(bytes(source), request)
        return self.image_pipeline.compress_file(os.fspath(source), request)

    def compress_images(self, sources: Sequence[Union[str, os.PathLike]], settings=None,
                        output_dir: Optional[Union[str, os.PathLike]] = None,
                        max_workers: Optional[int] = None,
                        on_result: Optional[Callable[[str, CompressionResult], None]] = None,
                        **overrides) -> List[CompressionResult]:
        """
        Compress many image files concurrently; results come back in input order.

        One failure never aborts the rest; failures are categorized and summarized.

        Raises:
            InvalidConfiguration: settings are out of range (checked once, before any work)
        """
        base_request = validate_image_settings(settings, default_quality=self.default_image_quality, **overrides)
        sources = [os.fspath(source) for source in sources]
        if not sources:
            return []

        workers = max_workers or self.config.get('image_compression.max_concurrent_jobs') or default_worker_count()
        workers = max(1, min(int(workers), len(sources)))
        error_handler = ErrorHandler()
        results: List[Optional[CompressionResult]] = [None] * len(sources)

        def _compress_one(source_path: str) -> CompressionResult:
            output_path = default_output_path(source_path, base_request.output_format.extension, output_dir)
            request = validate_image_settings({
                'quality': base_request.quality,
                'output_format': base_request.output_format,
                'resize_width': base_request.resize.width if base_request.resize else None,
                'resize_height': base_request.resize.height if base_request.resize else None,
                'keep_aspect_ratio': base_request.resize.keep_aspect_ratio if base_request.resize else True,
                'source_name': os.path.basename(source_path),
                'output_path': output_path,
            })
            return self.image_pipeline.compress_file(source_path, request)

        logger.info(f"Compressing {len(sources)} images with {workers} workers")
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='compressit-image') as executor:
            future_map = {executor.submit(_compress_one, path): index for index, path in enumerate(sources)}
            for future in as_completed(future_map):
                index = future_map[future]
                source_path = sources[index]
                try:
                    result = future.result()
                except Exception as e:
                    error = error_handler.handle_error(e, source_path)
                    result = CompressionResult.failure(error.as_exception())
                else:
                    error_handler.handle_result(result, source_path)
                results[index] = result
                if on_result is not None:
                    on_result(source_path, result)

        successful = sum(1 for result in results if result.succeeded)
        error_handler.log_batch_summary(len(sources), successful)
        self.last_batch_errors = error_handler
        return results

    # ===== Video =====

    def compress_video(self, source: Union[str, os.PathLike], settings=None,
                       on_progress: Optional[Callable[[ProgressEvent], None]] = None,
                       **overrides) -> VideoCompressionJob:
        """
        Start a target-size video request in the background.

        Raises:
            InvalidConfiguration: settings are out of range; nothing is started
        """
        request = validate_video_settings(source, settings, **overrides)
        controller = ConvergenceController(self.transcoder, self.probe, self.temp_files,
                                           self.resolver, self.settings)
        job = VideoCompressionJob(request, controller, on_progress)
        with self._jobs_lock:
            if request.request_id in self._jobs:
                raise ValueError(f"A job with request id {request.request_id} is already running")
            self._jobs[request.request_id] = job
            job._future = self._video_executor.submit(job._run)
        job._future.add_done_callback(lambda _: self._forget(request.request_id))
        logger.info(f"Queued video job {request.request_id}: {request.source_path} -> "
                    f"{request.target_size_bytes / MB:.2f}MB {request.container.value}")
        return job

    def get_job(self, request_id: str) -> Optional[VideoCompressionJob]:
        with self._jobs_lock:
            return self._jobs.get(request_id)

    def cancel(self, request_id: str) -> bool:
        """Cancel a running video request; False when it is unknown or already finished"""
        job = self.get_job(request_id)
        if job is None:
            return False
        job.cancel()
        return True

    def _forget(self, request_id: str):
        with self._jobs_lock:
            self._jobs.pop(request_id, None)

    # ===== Lifecycle =====

    def shutdown(self, cancel_running: bool = True):
        """Stop accepting work, optionally cancel running jobs, and clear leftover temp files"""
        if cancel_running:
            with self._jobs_lock:
                jobs = list(self._jobs.values())
            for job in jobs:
                job.cancel()
        self._video_executor.shutdown(wait=True)
        self.temp_files.cleanup()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown(cancel_running=exc_type is not None)
        return False

