"""
Compression Data Model
Requests, encoder profiles, attempt states, progress events and results shared by
the image and video paths
"""

import uuid
from typing import Dict, Any, Optional, List, Tuple
from dataclasses import dataclass, field
from enum import Enum

from .errors import CompressionError, ErrorKind

MB = 1024 * 1024


class MediaKind(Enum):
    IMAGE = "image"
    VIDEO = "video"


class QualityTier(Enum):
    """Video quality tiers; each maps to a (preset, CRF) pair"""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class VideoContainer(Enum):
    MP4 = "mp4"
    WEBM = "webm"

    @property
    def extension(self) -> str:
        return f".{self.value}"


class ImageFormat(Enum):
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"
    GIF = "gif"
    ORIGINAL = "original"

    @property
    def extension(self) -> str:
        return _IMAGE_EXTENSIONS.get(self, "")

    @property
    def pil_format(self) -> str:
        return self.value.upper()


_IMAGE_EXTENSIONS = {
    ImageFormat.JPEG: ".jpg",
    ImageFormat.PNG: ".png",
    ImageFormat.WEBP: ".webp",
    ImageFormat.GIF: ".gif",
}


@dataclass(frozen=True)
class ResizeBounds:
    """Optional resize box; with keep_aspect_ratio the image fits inside it"""
    width: Optional[int] = None
    height: Optional[int] = None
    keep_aspect_ratio: bool = True


@dataclass(frozen=True)
class ImageCompressionRequest:
    quality: int = 80
    output_format: ImageFormat = ImageFormat.ORIGINAL
    resize: Optional[ResizeBounds] = None
    source_name: str = ""
    output_path: Optional[str] = None


@dataclass(frozen=True)
class VideoCompressionRequest:
    source_path: str
    target_size_bytes: int
    quality: QualityTier = QualityTier.MEDIUM
    container: VideoContainer = VideoContainer.MP4
    output_path: Optional[str] = None
    fallback_duration_seconds: Optional[float] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class EncoderProfile:
    """Fully resolved, encoder-ready parameter bundle.

    ``options`` holds ordered (name, value) pairs: ffmpeg flags for video,
    Pillow ``save()`` keywords for images. Filter directives live beside them
    (``scale_filter`` for video, ``palette_colors`` for palette formats).
    """
    kind: MediaKind
    format: str
    codec: str
    options: Tuple[Tuple[str, Any], ...] = ()
    audio_codec: Optional[str] = None
    preset: Optional[str] = None
    rate_factor: Optional[int] = None
    quality: Optional[int] = None
    video_bitrate_kbps: Optional[int] = None
    audio_bitrate_kbps: Optional[int] = None
    scale_filter: Optional[str] = None
    palette_colors: Optional[int] = None

    def option_dict(self) -> Dict[str, Any]:
        return dict(self.options)

    def ffmpeg_args(self) -> List[str]:
        """Flatten video options into an ffmpeg argument list"""
        if self.kind != MediaKind.VIDEO:
            raise TypeError("ffmpeg_args() is only defined for video profiles")
        args: List[str] = []
        for name, value in self.options:
            args.append(name)
            if value is not None:
                args.append(str(value))
        return args


@dataclass(frozen=True)
class ProgressEvent:
    """One progress tick of a transcoding attempt.

    ``fraction`` is monotonic within an attempt; the final event of an attempt
    has ``terminal`` set.
    """
    fraction: float
    throughput_hint: Optional[str] = None
    attempt: int = 1
    timemark: Optional[str] = None
    terminal: bool = False


class AttemptStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TerminalState:
    status: AttemptStatus
    output_size: Optional[int] = None
    reason: Optional[str] = None
    returncode: Optional[int] = None

    @classmethod
    def succeeded(cls, output_size: int, returncode: int = 0) -> 'TerminalState':
        return cls(AttemptStatus.SUCCEEDED, output_size=output_size, returncode=returncode)

    @classmethod
    def failed(cls, reason: str, returncode: Optional[int] = None) -> 'TerminalState':
        return cls(AttemptStatus.FAILED, reason=reason, returncode=returncode)

    @classmethod
    def cancelled(cls, returncode: Optional[int] = None) -> 'TerminalState':
        return cls(AttemptStatus.CANCELLED, returncode=returncode)


@dataclass
class TranscodeAttempt:
    """A single pass of the convergence loop"""
    number: int
    profile: EncoderProfile
    output_path: str
    handle: Any = None
    fraction: float = 0.0
    state: Optional[TerminalState] = None

    @property
    def finished(self) -> bool:
        return self.state is not None


class ResultStatus(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class CompressionResult:
    status: ResultStatus
    original_size: Optional[int] = None
    compressed_size: Optional[int] = None
    output_location: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    attempts: int = 0
    output_format: Optional[str] = None
    dimensions: Optional[Tuple[int, int]] = None
    original_dimensions: Optional[Tuple[int, int]] = None
    data: Optional[bytes] = field(default=None, repr=False)

    @classmethod
    def success(cls, original_size: int, compressed_size: int,
                output_location: Optional[str] = None, **extra) -> 'CompressionResult':
        return cls(ResultStatus.SUCCESS, original_size=original_size,
                   compressed_size=compressed_size, output_location=output_location, **extra)

    @classmethod
    def failure(cls, error: CompressionError, **extra) -> 'CompressionResult':
        return cls(ResultStatus.FAILURE, error_kind=error.kind, error_message=error.message, **extra)

    @classmethod
    def cancelled(cls, **extra) -> 'CompressionResult':
        return cls(ResultStatus.CANCELLED, **extra)

    @property
    def succeeded(self) -> bool:
        return self.status == ResultStatus.SUCCESS

    @property
    def failed(self) -> bool:
        return self.status == ResultStatus.FAILURE

    @property
    def was_cancelled(self) -> bool:
        return self.status == ResultStatus.CANCELLED

    @property
    def saved_bytes(self) -> int:
        if self.original_size is None or self.compressed_size is None:
            return 0
        return self.original_size - self.compressed_size

    @property
    def savings_percent(self) -> float:
        if not self.original_size:
            return 0.0
        return round(self.saved_bytes / self.original_size * 100, 1)

    def describe(self) -> str:
        if self.succeeded:
            return (f"{self.original_size / MB:.2f}MB -> {self.compressed_size / MB:.2f}MB "
                    f"({self.savings_percent:.1f}% saved)")
        if self.was_cancelled:
            return "cancelled"
        return f"{self.error_kind.value}: {self.error_message}"
