"""Compress-It package root.

Export the engine, requests and results for convenience when installed via pip.
"""

from .engine import CompressionEngine, VideoCompressionJob  # noqa: F401
from .errors import (CompressionError, EncodeFailure, ErrorKind, InvalidConfiguration,  # noqa: F401
                     IOFailure, ProbeFailure)
from .models import (CompressionResult, EncoderProfile, ImageCompressionRequest, ImageFormat,  # noqa: F401
                     ProgressEvent, QualityTier, ResizeBounds, ResultStatus, VideoCompressionRequest,
                     VideoContainer)
from .encoding_profiles import EncodingProfileResolver, resolve  # noqa: F401

__version__ = "1.0.0"
