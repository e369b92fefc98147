"""
Request Validation Module
Turns loosely-typed settings (CLI arguments, dicts from callers) into frozen
requests, rejecting anything out of range before a process is started
"""

import os
import math
import logging
from typing import Dict, Any, Optional, Union

from .encoding_profiles import coerce_choice, validate_quality
from .errors import InvalidConfiguration
from .models import (MB, ImageCompressionRequest, ImageFormat, QualityTier, ResizeBounds,
                     VideoCompressionRequest, VideoContainer)

logger = logging.getLogger(__name__)

SettingsLike = Union[Dict[str, Any], ImageCompressionRequest, VideoCompressionRequest, None]


def _parse_int(value, name: str) -> int:
    if isinstance(value, bool):
        raise InvalidConfiguration(f"{name} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise InvalidConfiguration(f"{name} must be an integer, got {value!r}")


def _parse_positive_number(value, name: str) -> float:
    if isinstance(value, bool):
        raise InvalidConfiguration(f"{name} must be a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidConfiguration(f"{name} must be a number, got {value!r}") from None
    if not math.isfinite(number):
        raise InvalidConfiguration(f"{name} must be a finite number, got {value!r}")
    if not number > 0:
        raise InvalidConfiguration(f"{name} must be positive, got {value!r}")
    return number


def _parse_dimension(value, name: str) -> Optional[int]:
    if value in (None, '', 0):
        return None
    dimension = _parse_int(value, name)
    if dimension < 1:
        raise InvalidConfiguration(f"{name} must be at least 1 pixel, got {dimension}")
    return dimension


def _parse_bool(value, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ('true', 'yes', '1', 'on'):
        return True
    if isinstance(value, str) and value.strip().lower() in ('false', 'no', '0', 'off'):
        return False
    raise InvalidConfiguration(f"{name} must be true or false, got {value!r}")


def validate_image_settings(settings: SettingsLike = None, default_quality: int = 80,
                            **overrides) -> ImageCompressionRequest:
    """
    Build an ImageCompressionRequest from settings.

    Accepted keys: quality, output_format (or format), resize_width, resize_height,
    keep_aspect_ratio, source_name, output_path.

    Raises:
        InvalidConfiguration: quality outside 1-100, unknown format or bad resize bounds
    """
    if isinstance(settings, ImageCompressionRequest):
        if overrides:
            raise InvalidConfiguration("Overrides are not accepted together with a prepared request")
        validate_quality(settings.quality)
        coerce_choice(ImageFormat, settings.output_format, 'image format')
        return settings

    values = {key: value for key, value in dict(settings or {}).items() if value is not None}
    values.update({key: value for key, value in overrides.items() if value is not None})

    quality = validate_quality(_parse_int(values.get('quality', default_quality), 'quality'))
    output_format = coerce_choice(ImageFormat, values.get('output_format', values.get('format', 'original')),
                                  'image format')

    width = _parse_dimension(values.get('resize_width'), 'resize_width')
    height = _parse_dimension(values.get('resize_height'), 'resize_height')
    resize = None
    if width or height:
        resize = ResizeBounds(
            width=width,
            height=height,
            keep_aspect_ratio=_parse_bool(values.get('keep_aspect_ratio', True), 'keep_aspect_ratio'),
        )

    return ImageCompressionRequest(
        quality=quality,
        output_format=output_format,
        resize=resize,
        source_name=str(values.get('source_name') or ''),
        output_path=values.get('output_path'),
    )


def parse_target_size(settings: Dict[str, Any]) -> int:
    """Target size in bytes from target_size_bytes or target_size_mb (1 MB = 1024 * 1024 bytes)"""
    if settings.get('target_size_bytes') is not None:
        target = _parse_int(settings['target_size_bytes'], 'target_size_bytes')
    elif settings.get('target_size_mb') is not None:
        target = int(_parse_positive_number(settings['target_size_mb'], 'target_size_mb') * MB)
    else:
        raise InvalidConfiguration("A target size is required (target_size_mb or target_size_bytes)")

    if target < 1:
        raise InvalidConfiguration(f"Target size must be at least 1 byte, got {target}")
    return target


def validate_video_settings(source_path: str, settings: SettingsLike = None,
                            **overrides) -> VideoCompressionRequest:
    """
    Build a VideoCompressionRequest from settings.

    Accepted keys: target_size_mb or target_size_bytes, quality (high/medium/low),
    output_format (or container: mp4/webm), output_path, fallback_duration_seconds,
    request_id.

    Raises:
        InvalidConfiguration: missing/non-positive target, unknown tier or container
    """
    if isinstance(settings, VideoCompressionRequest):
        if settings.target_size_bytes < 1:
            raise InvalidConfiguration(f"Target size must be at least 1 byte, got {settings.target_size_bytes}")
        coerce_choice(QualityTier, settings.quality, 'quality tier')
        coerce_choice(VideoContainer, settings.container, 'video container')
        return settings

    if not source_path:
        raise InvalidConfiguration("A source video path is required")

    values = {key: value for key, value in dict(settings or {}).items() if value is not None}
    values.update({key: value for key, value in overrides.items() if value is not None})

    target = parse_target_size(values)
    quality = coerce_choice(QualityTier, values.get('quality', QualityTier.MEDIUM), 'quality tier')
    container = coerce_choice(VideoContainer, values.get('output_format', values.get('container', 'mp4')),
                               'video container')

    fallback = values.get('fallback_duration_seconds')
    if fallback is not None:
        fallback = _parse_positive_number(fallback, 'fallback_duration_seconds')

    extra = {}
    if values.get('request_id'):
        extra['request_id'] = str(values['request_id'])

    request = VideoCompressionRequest(
        source_path=os.fspath(source_path),
        target_size_bytes=target,
        quality=quality,
        container=container,
        output_path=values.get('output_path'),
        fallback_duration_seconds=fallback,
        **extra,
    )
    logger.debug(f"Validated video request {request.request_id}: {request}")
    return request
