"""
Encoding Profile Resolver
Maps user-facing settings (quality tier or 1-100 quality, output format) onto
concrete, encoder-ready option sets for ffmpeg and Pillow
"""

import math
import logging
from typing import Dict, Any, Optional, List, Tuple, Union

from .errors import InvalidConfiguration
from .models import (EncoderProfile, ImageFormat, MediaKind, QualityTier,
                     VideoContainer)

logger = logging.getLogger(__name__)

# Tier -> (preset, CRF); factor rises and preset gets faster from high to low
DEFAULT_QUALITY_TIERS: Dict[QualityTier, Dict[str, Any]] = {
    QualityTier.HIGH: {'preset': 'slow', 'crf': 20},
    QualityTier.MEDIUM: {'preset': 'medium', 'crf': 23},
    QualityTier.LOW: {'preset': 'fast', 'crf': 28},
}

# (target/source size ratio below which to cap, max frame height)
DEFAULT_SCALE_THRESHOLDS: Tuple[Tuple[float, int], ...] = ((0.15, 480), (0.35, 720))

SECOND_PASS_AUDIO_CAP_KBPS = 96

MIN_PALETTE_COLORS = 16
MAX_PALETTE_COLORS = 256
JPEG_FULL_CHROMA_ABOVE = 90
WEBP_NEAR_LOSSLESS_ABOVE = 95

PILLOW_FORMATS = {
    ImageFormat.JPEG: 'JPEG',
    ImageFormat.PNG: 'PNG',
    ImageFormat.WEBP: 'WEBP',
    ImageFormat.GIF: 'GIF',
}


def coerce_choice(enum_cls, value, label: str):
    """Accept an enum member or its string value; anything else is a caller error"""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except ValueError:
            pass
    choices = ', '.join(member.value for member in enum_cls)
    raise InvalidConfiguration(f"Unknown {label} '{value}' (expected one of: {choices})")


def validate_quality(quality) -> int:
    if isinstance(quality, bool) or not isinstance(quality, int):
        raise InvalidConfiguration(f"quality must be an integer between 1 and 100, got {quality!r}")
    if not 1 <= quality <= 100:
        raise InvalidConfiguration(f"quality must be between 1 and 100, got {quality}")
    return quality


def palette_size(quality: int) -> int:
    """Palette depth for png/gif: quality directly controls the colour-table size"""
    return max(MIN_PALETTE_COLORS, math.floor(MAX_PALETTE_COLORS * quality / 100))


class EncodingProfileResolver:
    """Pure resolver from settings to EncoderProfile; holds only lookup tables"""

    def __init__(self, quality_tiers: Optional[Dict[QualityTier, Dict[str, Any]]] = None,
                 scale_thresholds: Optional[Tuple[Tuple[float, int], ...]] = None,
                 second_pass_audio_cap_kbps: int = SECOND_PASS_AUDIO_CAP_KBPS):
        self.quality_tiers = dict(quality_tiers or DEFAULT_QUALITY_TIERS)
        self.scale_thresholds = tuple(sorted(scale_thresholds or DEFAULT_SCALE_THRESHOLDS))
        self.second_pass_audio_cap_kbps = second_pass_audio_cap_kbps

    @classmethod
    def from_config(cls, config_manager) -> 'EncodingProfileResolver':
        """Build a resolver from the video_compression section of the config"""
        tiers = {}
        for tier in QualityTier:
            entry = config_manager.get(f'video_compression.quality_tiers.{tier.value}')
            if entry:
                tiers[tier] = {'preset': str(entry['preset']), 'crf': int(entry['crf'])}
        thresholds = tuple(
            (float(item['max_ratio']), int(item['max_height']))
            for item in config_manager.get('video_compression.scale_thresholds', []) or []
        )
        return cls(
            quality_tiers={**DEFAULT_QUALITY_TIERS, **tiers},
            scale_thresholds=thresholds or None,
            second_pass_audio_cap_kbps=int(config_manager.get(
                'video_compression.second_pass.audio_bitrate_kbps', SECOND_PASS_AUDIO_CAP_KBPS)),
        )

    def resolve(self, kind: Union[MediaKind, str], quality, output_format,
                video_bitrate_kbps: Optional[int] = None, **video_options) -> EncoderProfile:
        """
        Resolve settings into an EncoderProfile.

        Args:
            kind: MediaKind (or 'image' / 'video')
            quality: QualityTier for video, 1-100 integer for images
            output_format: VideoContainer or ImageFormat (or their string values)
            video_bitrate_kbps: Target video bitrate, required for video
            **video_options: audio_bitrate_kbps, size_ratio, source_height, second_pass

        Raises:
            InvalidConfiguration: unknown kind/format/tier or out-of-range values
        """
        kind = coerce_choice(MediaKind, kind, 'media kind')
        if kind == MediaKind.VIDEO:
            return self.resolve_video(quality, output_format, video_bitrate_kbps, **video_options)
        if video_options:
            raise InvalidConfiguration(f"Video options are not valid for images: {sorted(video_options)}")
        return self.resolve_image(quality, output_format)

    # ===== Video =====

    def resolve_video(self, tier, container, video_bitrate_kbps: Optional[int],
                      audio_bitrate_kbps: int = 128, size_ratio: Optional[float] = None,
                      source_height: Optional[int] = None, second_pass: bool = False) -> EncoderProfile:
        tier = coerce_choice(QualityTier, tier, 'quality tier')
        container = coerce_choice(VideoContainer, container, 'video container')
        if tier not in self.quality_tiers:
            raise InvalidConfiguration(f"No encoder settings defined for quality tier '{tier.value}'")
        if video_bitrate_kbps is None or video_bitrate_kbps <= 0:
            raise InvalidConfiguration(f"video bitrate must be positive, got {video_bitrate_kbps}")
        if audio_bitrate_kbps <= 0:
            raise InvalidConfiguration(f"audio bitrate must be positive, got {audio_bitrate_kbps}")

        if second_pass:
            audio_bitrate_kbps = min(audio_bitrate_kbps, self.second_pass_audio_cap_kbps)

        settings = self.quality_tiers[tier]
        scale_filter = self.scale_filter_for(size_ratio, source_height)
        builder = self._VIDEO_BUILDERS[container]
        codec, audio_codec, options = builder(self, settings, video_bitrate_kbps, audio_bitrate_kbps,
                                              scale_filter, second_pass)

        return EncoderProfile(
            kind=MediaKind.VIDEO,
            format=container.value,
            codec=codec,
            options=tuple(options),
            audio_codec=audio_codec,
            preset=settings['preset'] if container == VideoContainer.MP4 else None,
            rate_factor=None if second_pass else settings['crf'],
            video_bitrate_kbps=video_bitrate_kbps,
            audio_bitrate_kbps=audio_bitrate_kbps,
            scale_filter=scale_filter,
        )

    def scale_filter_for(self, size_ratio: Optional[float], source_height: Optional[int] = None) -> Optional[str]:
        """Height cap for extreme compression ratios; bitrate alone cannot rescue those at full resolution"""
        if size_ratio is None:
            return None
        for max_ratio, max_height in self.scale_thresholds:
            if size_ratio < max_ratio:
                if source_height and source_height <= max_height:
                    return None
                return f"scale=-2:{max_height}"
        return None

    def _build_mp4_options(self, settings, video_kbps, audio_kbps, scale_filter, second_pass):
        options: List[Tuple[str, Any]] = [
            ('-c:v', 'libx264'),
            ('-preset', settings['preset']),
        ]
        if second_pass:
            options.append(('-b:v', f"{video_kbps}k"))
        else:
            options.append(('-crf', settings['crf']))
        options.extend([
            ('-maxrate', f"{video_kbps}k"),
            ('-bufsize', f"{video_kbps * 2}k"),
        ])
        if scale_filter:
            options.append(('-vf', scale_filter))
        options.extend([
            ('-c:a', 'aac'),
            ('-b:a', f"{audio_kbps}k"),
            ('-movflags', '+faststart'),
            ('-threads', 0),
        ])
        return 'libx264', 'aac', options

    def _build_webm_options(self, settings, video_kbps, audio_kbps, scale_filter, second_pass):
        options: List[Tuple[str, Any]] = [('-c:v', 'libvpx-vp9')]
        if not second_pass:
            # CRF together with -b:v puts VP9 in constrained-quality mode
            options.append(('-crf', settings['crf']))
        options.extend([
            ('-b:v', f"{video_kbps}k"),
            ('-deadline', 'good'),
            ('-cpu-used', 4),
            ('-row-mt', 1),
        ])
        if scale_filter:
            options.append(('-vf', scale_filter))
        options.extend([
            ('-c:a', 'libopus'),
            ('-b:a', f"{audio_kbps}k"),
            ('-threads', 0),
        ])
        return 'libvpx-vp9', 'libopus', options

    _VIDEO_BUILDERS = {
        VideoContainer.MP4: _build_mp4_options,
        VideoContainer.WEBM: _build_webm_options,
    }

    # ===== Images =====

    def resolve_image(self, quality, output_format) -> EncoderProfile:
        quality = validate_quality(quality)
        output_format = coerce_choice(ImageFormat, output_format, 'image format')
        if output_format not in _IMAGE_BUILDERS:
            raise InvalidConfiguration(
                f"Image format '{output_format.value}' must be resolved to a concrete format first")

        options, palette_colors = _IMAGE_BUILDERS[output_format](quality)
        return EncoderProfile(
            kind=MediaKind.IMAGE,
            format=output_format.value,
            codec=PILLOW_FORMATS[output_format],
            options=tuple(options),
            quality=quality,
            palette_colors=palette_colors,
        )


def _jpeg_options(quality: int):
    # Full-resolution chroma only pays off when the request is near-lossless
    subsampling = '4:4:4' if quality > JPEG_FULL_CHROMA_ABOVE else '4:2:0'
    return [
        ('quality', quality),
        ('subsampling', subsampling),
        ('optimize', True),
        ('progressive', True),
    ], None


def _png_options(quality: int):
    palette_colors = palette_size(quality) if quality < 100 else None
    return [
        ('optimize', True),
        ('compress_level', 9),
    ], palette_colors


def _gif_options(quality: int):
    return [('optimize', True)], palette_size(quality)


def _webp_options(quality: int):
    # Pillow has no separate near-lossless switch; libwebp's lossless mode stands in for it
    return [
        ('quality', quality),
        ('method', 6),
        ('lossless', quality > WEBP_NEAR_LOSSLESS_ABOVE),
    ], None


_IMAGE_BUILDERS = {
    ImageFormat.JPEG: _jpeg_options,
    ImageFormat.PNG: _png_options,
    ImageFormat.WEBP: _webp_options,
    ImageFormat.GIF: _gif_options,
}

_default_resolver = EncodingProfileResolver()


def resolve(kind, quality, output_format, video_bitrate_kbps: Optional[int] = None,
            **video_options) -> EncoderProfile:
    """Resolve with the built-in tier and threshold tables"""
    return _default_resolver.resolve(kind, quality, output_format, video_bitrate_kbps, **video_options)
