"""
Media Probe Module
ffprobe wrapper reporting duration, resolution and stream details of a source
"""

import os
import json
import shutil
import logging
import subprocess
from dataclasses import dataclass
from fractions import Fraction
from typing import Dict, Any, Optional

from ..errors import ProbeFailure, IOFailure

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_SECONDS = 30


def find_executable(name: str, configured_path: Optional[str] = None) -> str:
    """Resolve an ffmpeg-family binary from an explicit path or PATH"""
    if configured_path:
        return configured_path
    found = shutil.which(name)
    return found or name


def parse_fps(rate_str: Optional[str]) -> Optional[float]:
    """Parse ffprobe's r_frame_rate like '30000/1001' into FPS; None when unusable"""
    if not rate_str:
        return None
    try:
        fps = float(Fraction(rate_str))
    except (ValueError, ZeroDivisionError):
        return None
    return fps if fps > 0 else None


def _to_float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class MediaInfo:
    """What the controller needs to know about a video source"""
    path: str
    size_bytes: int
    duration: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    fps: Optional[float] = None
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    bitrate_kbps: Optional[int] = None

    @property
    def has_audio(self) -> bool:
        return self.audio_codec is not None


class MediaProbe:
    """Runs ffprobe once per source and parses its JSON report"""

    def __init__(self, ffprobe_path: Optional[str] = None, run=subprocess.run,
                 timeout: float = PROBE_TIMEOUT_SECONDS):
        self.ffprobe_path = find_executable('ffprobe', ffprobe_path)
        self._run = run
        self.timeout = timeout

    def source_size(self, video_path: str) -> int:
        try:
            return os.path.getsize(video_path)
        except OSError as e:
            raise IOFailure(f"Cannot read source file: {e}", context=video_path) from e

    def probe(self, video_path: str) -> MediaInfo:
        """
        Probe a video file.

        Raises:
            IOFailure: the source is missing or unreadable
            ProbeFailure: ffprobe could not run or reported nothing usable
        """
        size_bytes = self.source_size(video_path)
        data = self._run_ffprobe(video_path)

        video_stream = None
        audio_stream = None
        for stream in data.get('streams', []):
            if stream.get('codec_type') == 'video' and video_stream is None:
                video_stream = stream
            elif stream.get('codec_type') == 'audio' and audio_stream is None:
                audio_stream = stream

        if video_stream is None:
            raise ProbeFailure("No video stream found", context=video_path)

        format_info = data.get('format', {})
        duration = _to_float(format_info.get('duration')) or _to_float(video_stream.get('duration'))
        bit_rate = _to_int(format_info.get('bit_rate'))

        info = MediaInfo(
            path=video_path,
            size_bytes=size_bytes,
            duration=duration,
            width=_to_int(video_stream.get('width')),
            height=_to_int(video_stream.get('height')),
            fps=parse_fps(video_stream.get('r_frame_rate')),
            video_codec=video_stream.get('codec_name'),
            audio_codec=audio_stream.get('codec_name') if audio_stream else None,
            bitrate_kbps=bit_rate // 1000 if bit_rate else None,
        )
        logger.debug(f"Probed {video_path}: {info}")
        return info

    def _run_ffprobe(self, video_path: str) -> Dict[str, Any]:
        cmd = [
            self.ffprobe_path, '-v', 'quiet', '-print_format', 'json',
            '-show_format', '-show_streams', os.path.abspath(video_path)
        ]
        try:
            result = self._run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding='utf-8',
                errors='replace',
                timeout=self.timeout
            )
        except subprocess.TimeoutExpired as e:
            raise ProbeFailure(f"ffprobe timed out after {self.timeout}s", context=video_path) from e
        except OSError as e:
            raise ProbeFailure(f"ffprobe could not be started: {e}", context=video_path) from e

        if result.returncode != 0:
            detail = (result.stderr or '').strip()[-300:]
            raise ProbeFailure(f"ffprobe exited with code {result.returncode}: {detail}", context=video_path)

        stdout_text = result.stdout or ""
        try:
            return json.loads(stdout_text) if stdout_text.strip() else {}
        except json.JSONDecodeError as e:
            raise ProbeFailure(f"ffprobe returned malformed JSON: {e}", context=video_path) from e
