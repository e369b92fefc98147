import json
import subprocess
from types import SimpleNamespace

import pytest

from compressit.errors import IOFailure, ProbeFailure
from compressit.video_processing.media_probe import MediaProbe, find_executable, parse_fps

FFPROBE_REPORT = {
    'streams': [
        {'codec_type': 'video', 'codec_name': 'h264', 'width': 1920, 'height': 1080,
         'r_frame_rate': '30000/1001', 'duration': '119.9'},
        {'codec_type': 'audio', 'codec_name': 'aac'},
    ],
    'format': {'duration': '120.000000', 'bit_rate': '8000000'},
}


class FakeRun:
    def __init__(self, stdout='', returncode=0, stderr='', error=None):
        self.stdout = stdout
        self.returncode = returncode
        self.stderr = stderr
        self.error = error
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append((cmd, kwargs))
        if self.error is not None:
            raise self.error
        return SimpleNamespace(stdout=self.stdout, stderr=self.stderr, returncode=self.returncode)


def test_probe_parses_ffprobe_json(source_video):
    run = FakeRun(stdout=json.dumps(FFPROBE_REPORT))
    probe = MediaProbe('/usr/bin/ffprobe', run=run)

    info = probe.probe(source_video)

    assert info.duration == pytest.approx(120.0)
    assert (info.width, info.height) == (1920, 1080)
    assert info.fps == pytest.approx(29.97, rel=1e-3)
    assert info.video_codec == 'h264'
    assert info.has_audio
    assert info.bitrate_kbps == 8000
    assert info.size_bytes == len(b'source video bytes')

    cmd, kwargs = run.calls[0]
    assert cmd[0] == '/usr/bin/ffprobe'
    assert '-show_streams' in cmd
    assert kwargs['timeout'] == 30


def test_stream_duration_used_when_container_has_none(source_video):
    report = {'streams': [{'codec_type': 'video', 'duration': '42.5', 'r_frame_rate': '0/0'}], 'format': {}}
    info = MediaProbe('ffprobe', run=FakeRun(stdout=json.dumps(report))).probe(source_video)

    assert info.duration == pytest.approx(42.5)
    assert info.fps is None
    assert not info.has_audio


@pytest.mark.parametrize("run", [
    FakeRun(returncode=1, stderr='Invalid data found when processing input'),
    FakeRun(stdout='{not json'),
    FakeRun(stdout=json.dumps({'streams': [{'codec_type': 'audio'}]})),
    FakeRun(error=subprocess.TimeoutExpired(['ffprobe'], 30)),
    FakeRun(error=FileNotFoundError(2, 'No such file or directory')),
])
def test_unusable_probe_is_probe_failure(source_video, run):
    with pytest.raises(ProbeFailure):
        MediaProbe('ffprobe', run=run).probe(source_video)


def test_missing_source_is_io_failure(tmp_path):
    probe = MediaProbe('ffprobe', run=FakeRun(stdout=json.dumps(FFPROBE_REPORT)))
    with pytest.raises(IOFailure):
        probe.source_size(str(tmp_path / 'missing.mov'))


def test_parse_fps():
    assert parse_fps('25/1') == 25.0
    assert parse_fps('0/0') is None
    assert parse_fps('N/A') is None
    assert parse_fps(None) is None


def test_find_executable_prefers_configured_path():
    assert find_executable('ffprobe', '/opt/bin/ffprobe') == '/opt/bin/ffprobe'
    assert find_executable('definitely-not-a-real-binary') == 'definitely-not-a-real-binary'
