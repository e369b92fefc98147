"""
Bitrate Estimation Module
Translates a byte-size goal into an average video bitrate, and rescales that
bitrate for the second convergence pass
"""

import math
import logging

from ..errors import InvalidConfiguration

logger = logging.getLogger(__name__)

# kbps floors: first pass, and the lower floor allowed on the forced second pass
MIN_VIDEO_BITRATE_KBPS = 100
MIN_SECOND_PASS_BITRATE_KBPS = 50
SECOND_PASS_SAFETY_MARGIN = 0.9

# 1 kbit = 1024 bits, matching the 1024-based MB used for target sizes
BITS_PER_KILOBIT = 1024


def total_bitrate_kbps(duration_seconds: float, target_bytes: int) -> float:
    """Average bitrate (kbps) that fills exactly target_bytes over duration_seconds"""
    return target_bytes * 8 / duration_seconds / BITS_PER_KILOBIT


def estimate_video_bitrate(duration_seconds: float, target_bytes: int, audio_bitrate_kbps: int,
                           floor_kbps: int = MIN_VIDEO_BITRATE_KBPS) -> int:
    """
    Video bitrate that keeps video + audio within target_bytes.

    Audio is budgeted first; the remainder goes to video, rounded down and
    never below floor_kbps. A zero or unknown duration must be replaced by the
    caller (e.g. with a 60s fallback) before calling.

    Args:
        duration_seconds: Source duration, > 0
        target_bytes: Size goal in bytes, > 0
        audio_bitrate_kbps: Audio budget in kbps, >= 0
        floor_kbps: Minimum returned bitrate

    Returns:
        Video bitrate in kbps
    """
    if duration_seconds is None or duration_seconds <= 0:
        raise InvalidConfiguration(f"duration must be positive, got {duration_seconds}")
    if target_bytes is None or target_bytes <= 0:
        raise InvalidConfiguration(f"target size must be positive, got {target_bytes}")
    if audio_bitrate_kbps < 0:
        raise InvalidConfiguration(f"audio bitrate cannot be negative, got {audio_bitrate_kbps}")

    video_kbps = math.floor(total_bitrate_kbps(duration_seconds, target_bytes) - audio_bitrate_kbps)
    if video_kbps < floor_kbps:
        logger.debug(f"Video bitrate {video_kbps}k below floor, clamped to {floor_kbps}k")
        return floor_kbps
    return video_kbps


def rescale_video_bitrate(previous_kbps: int, target_bytes: int, observed_bytes: int,
                          safety_margin: float = SECOND_PASS_SAFETY_MARGIN,
                          floor_kbps: int = MIN_SECOND_PASS_BITRATE_KBPS) -> int:
    """
    Second-pass bitrate from the first pass's observed overshoot.

    The previous bitrate is scaled by (target / observed) * safety_margin and
    floored; it is never adjusted upward.
    """
    if observed_bytes <= 0:
        raise InvalidConfiguration(f"observed size must be positive, got {observed_bytes}")

    ratio = target_bytes / observed_bytes
    scaled = math.floor(previous_kbps * min(ratio, 1.0) * safety_margin)
    adjusted = max(floor_kbps, scaled)
    logger.debug(f"Second pass bitrate: {previous_kbps}k x {ratio:.3f} x {safety_margin} -> {adjusted}k")
    return adjusted
