"""
Convergence Controller
Drives a target-size video request: pre-check, first attempt at the estimated
bitrate, and at most one corrective second pass when the first overshoots
"""

import os
import shutil
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from ..encoding_profiles import EncodingProfileResolver
from ..errors import CompressionError, EncodeFailure, IOFailure, ProbeFailure
from ..models import (MB, AttemptStatus, CompressionResult, ProgressEvent,
                      TranscodeAttempt, VideoCompressionRequest)
from ..temp_file_manager import TempFileManager
from .bitrate_estimator import (MIN_SECOND_PASS_BITRATE_KBPS, MIN_VIDEO_BITRATE_KBPS,
                                SECOND_PASS_SAFETY_MARGIN, estimate_video_bitrate,
                                rescale_video_bitrate)
from .media_probe import MediaInfo, MediaProbe
from .transcode_controller import TranscodeProcessController

logger = logging.getLogger(__name__)

class ConvergencePhase(Enum):
    IDLE = "idle"
    ATTEMPT1_RUNNING = "attempt1_running"
    ATTEMPT1_SUCCEEDED = "attempt1_succeeded"
    ATTEMPT1_FAILED = "attempt1_failed"
    ATTEMPT1_CANCELLED = "attempt1_cancelled"
    ATTEMPT2_RUNNING = "attempt2_running"
    DONE = "done"


_RUNNING_PHASES = {1: ConvergencePhase.ATTEMPT1_RUNNING, 2: ConvergencePhase.ATTEMPT2_RUNNING}
_ATTEMPT1_OUTCOMES = {
    AttemptStatus.SUCCEEDED: ConvergencePhase.ATTEMPT1_SUCCEEDED,
    AttemptStatus.FAILED: ConvergencePhase.ATTEMPT1_FAILED,
    AttemptStatus.CANCELLED: ConvergencePhase.ATTEMPT1_CANCELLED,
}


@dataclass(frozen=True)
class ConvergenceSettings:
    audio_bitrate_kbps: int = 128
    min_video_bitrate_kbps: int = MIN_VIDEO_BITRATE_KBPS
    fallback_duration_seconds: float = 60.0
    tolerance: float = 1.05
    safety_margin: float = SECOND_PASS_SAFETY_MARGIN
    second_pass_min_video_bitrate_kbps: int = MIN_SECOND_PASS_BITRATE_KBPS

    @classmethod
    def from_config(cls, config_manager) -> 'ConvergenceSettings':
        defaults = cls()
        get = config_manager.get
        return cls(
            audio_bitrate_kbps=int(get('video_compression.audio_bitrate_kbps', defaults.audio_bitrate_kbps)),
            min_video_bitrate_kbps=int(get('video_compression.min_video_bitrate_kbps',
                                           defaults.min_video_bitrate_kbps)),
            fallback_duration_seconds=float(get('video_compression.fallback_duration_seconds',
                                                defaults.fallback_duration_seconds)),
            tolerance=float(get('video_compression.second_pass.tolerance', defaults.tolerance)),
            safety_margin=float(get('video_compression.second_pass.safety_margin', defaults.safety_margin)),
            second_pass_min_video_bitrate_kbps=int(get('video_compression.second_pass.min_video_bitrate_kbps',
                                                       defaults.second_pass_min_video_bitrate_kbps)),
        )


class ConvergenceController:
    """
    Runs one VideoCompressionRequest to a terminal CompressionResult.

    One controller serves one request. ``cancel()`` may be called from any
    thread; it kills the live ffmpeg process and guarantees no further attempt
    starts and no late success is delivered.
    """

    def __init__(self, transcoder: TranscodeProcessController, probe: MediaProbe,
                 temp_files: TempFileManager, resolver: Optional[EncodingProfileResolver] = None,
                 settings: Optional[ConvergenceSettings] = None):
        self.transcoder = transcoder
        self.probe = probe
        self.temp_files = temp_files
        self.resolver = resolver or EncodingProfileResolver()
        self.settings = settings or ConvergenceSettings()
        self.attempts: List[TranscodeAttempt] = []
        self._phase = ConvergencePhase.IDLE
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._live: Optional[TranscodeAttempt] = None
        self._delivered: Optional[str] = None

    @property
    def phase(self) -> ConvergencePhase:
        return self._phase

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self):
        """Stop the request; a no-op once it is done"""
        with self._lock:
            if self._phase == ConvergencePhase.DONE:
                return
            self._cancelled.set()
            handle = self._live.handle if self._live is not None else None
        logger.info("Cancellation requested for video compression")
        if handle is not None:
            self.transcoder.cancel(handle)

    def run(self, request: VideoCompressionRequest,
            on_progress: Optional[Callable[[ProgressEvent], None]] = None) -> CompressionResult:
        original_size = None
        try:
            original_size = self.probe.source_size(request.source_path)
            result = self._run(request, original_size, on_progress)
        except CompressionError as e:
            logger.error(f"Video compression failed for {request.source_path}: {e.describe()}")
            result = CompressionResult.failure(e, original_size=original_size, attempts=len(self.attempts))
        finally:
            for attempt in self.attempts:
                if attempt.output_path != self._delivered:
                    self.temp_files.release(attempt.output_path)
            with self._lock:
                self._phase = ConvergencePhase.DONE
                self._live = None
        return result

    def _run(self, request: VideoCompressionRequest, original_size: int,
             on_progress: Optional[Callable[[ProgressEvent], None]]) -> CompressionResult:
        target = request.target_size_bytes
        if self.cancelled:
            return CompressionResult.cancelled(original_size=original_size)

        if original_size <= target:
            logger.info(f"Source already within target ({original_size / MB:.2f}MB <= {target / MB:.2f}MB)")
            location = self._deliver_source(request)
            return CompressionResult.success(original_size, original_size, location,
                                             attempts=0, output_format=request.container.value)

        info = self._probe(request, original_size)
        duration = info.duration
        if not duration or duration <= 0:
            duration = request.fallback_duration_seconds or self.settings.fallback_duration_seconds
            logger.warning(f"Source reported no usable duration, assuming {duration}s")

        audio_kbps = self.settings.audio_bitrate_kbps
        size_ratio = target / original_size
        video_kbps = estimate_video_bitrate(duration, target, audio_kbps, self.settings.min_video_bitrate_kbps)
        logger.info(f"Attempt 1: {video_kbps}k video + {audio_kbps}k audio over {duration:.1f}s "
                    f"(target {target / MB:.2f}MB, ratio {size_ratio:.2f})")

        profile = self.resolver.resolve_video(request.quality, request.container, video_kbps,
                                              audio_bitrate_kbps=audio_kbps, size_ratio=size_ratio,
                                              source_height=info.height)
        first = self._attempt(1, request, profile, duration, on_progress)
        if first is None or first.state.status == AttemptStatus.CANCELLED or self.cancelled:
            return CompressionResult.cancelled(original_size=original_size, attempts=len(self.attempts))
        if first.state.status == AttemptStatus.FAILED:
            raise EncodeFailure(first.state.reason, returncode=first.state.returncode)

        observed = first.state.output_size
        if observed <= target * self.settings.tolerance:
            return self._deliver(request, first, original_size)

        # Overshoot: recompute from the observed ratio and try exactly once more
        second_kbps = rescale_video_bitrate(video_kbps, target, observed, self.settings.safety_margin,
                                            self.settings.second_pass_min_video_bitrate_kbps)
        logger.info(f"Attempt 1 overshot ({observed / MB:.2f}MB > {target / MB:.2f}MB), "
                    f"attempt 2 at {second_kbps}k")
        self.temp_files.release(first.output_path)

        profile = self.resolver.resolve_video(request.quality, request.container, second_kbps,
                                              audio_bitrate_kbps=audio_kbps, size_ratio=size_ratio,
                                              source_height=info.height, second_pass=True)
        second = self._attempt(2, request, profile, duration, on_progress)
        if second is None or second.state.status == AttemptStatus.CANCELLED or self.cancelled:
            return CompressionResult.cancelled(original_size=original_size, attempts=len(self.attempts))
        if second.state.status == AttemptStatus.FAILED:
            raise EncodeFailure(second.state.reason, returncode=second.state.returncode)

        if second.state.output_size > target * self.settings.tolerance:
            logger.warning(f"Attempt 2 still above target ({second.state.output_size / MB:.2f}MB > "
                           f"{target / MB:.2f}MB); delivering best effort")
        return self._deliver(request, second, original_size)

    def _probe(self, request: VideoCompressionRequest, original_size: int) -> MediaInfo:
        try:
            return self.probe.probe(request.source_path)
        except ProbeFailure as e:
            if not request.fallback_duration_seconds:
                raise
            logger.warning(f"{e.describe()}; using fallback duration {request.fallback_duration_seconds}s")
            return MediaInfo(path=request.source_path, size_bytes=original_size,
                             duration=request.fallback_duration_seconds)

    def _attempt(self, number: int, request: VideoCompressionRequest, profile, duration: float,
                 on_progress: Optional[Callable[[ProgressEvent], None]]) -> Optional[TranscodeAttempt]:
        output_path = str(self.temp_files.allocate(suffix=request.container.extension))
        attempt = TranscodeAttempt(number=number, profile=profile, output_path=output_path)

        with self._lock:
            if self.cancelled:
                self.temp_files.release(output_path)
                return None
            self.attempts.append(attempt)
            attempt.handle = self.transcoder.start(request.source_path, profile, output_path,
                                                   duration_seconds=duration, attempt=number)
            self._live = attempt
            self._phase = _RUNNING_PHASES[number]

        for event in self.transcoder.progress(attempt.handle):
            if event.fraction > attempt.fraction:
                attempt.fraction = event.fraction
            if on_progress is not None:
                on_progress(event)

        attempt.state = self.transcoder.wait(attempt.handle)
        with self._lock:
            self._live = None
            attempt.handle = None
            if number == 1:
                self._phase = _ATTEMPT1_OUTCOMES[attempt.state.status]
        logger.debug(f"Attempt {number} ended: {attempt.state}")
        return attempt

    def _deliver(self, request: VideoCompressionRequest, attempt: TranscodeAttempt,
                 original_size: int) -> CompressionResult:
        # Success that lands after cancel() is discarded
        with self._lock:
            if self.cancelled:
                return CompressionResult.cancelled(original_size=original_size, attempts=len(self.attempts))
            self._phase = ConvergencePhase.DONE

        self._delivered = attempt.output_path
        location = str(self.temp_files.promote(attempt.output_path))
        if request.output_path:
            try:
                os.makedirs(os.path.dirname(os.path.abspath(request.output_path)), exist_ok=True)
                shutil.move(location, request.output_path)
            except OSError as e:
                self.temp_files.release(location)
                raise IOFailure(f"Cannot write output: {e}", context=request.output_path) from e
            location = request.output_path

        compressed_size = attempt.state.output_size
        logger.info(f"Compressed {original_size / MB:.2f}MB -> {compressed_size / MB:.2f}MB "
                    f"in {len(self.attempts)} attempt(s)")
        return CompressionResult.success(original_size, compressed_size, location,
                                         attempts=len(self.attempts), output_format=request.container.value)

    @staticmethod
    def _deliver_source(request: VideoCompressionRequest) -> str:
        """The untouched source is the result; copied when the caller asked for a specific location"""
        if not request.output_path or os.path.abspath(request.output_path) == os.path.abspath(request.source_path):
            return request.source_path
        try:
            os.makedirs(os.path.dirname(os.path.abspath(request.output_path)), exist_ok=True)
            shutil.copyfile(request.source_path, request.output_path)
        except OSError as e:
            raise IOFailure(f"Cannot write output: {e}", context=request.output_path) from e
        return request.output_path
