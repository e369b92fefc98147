"""
Unit tests for the ffmpeg process controller, driven by a scripted Popen double
"""

import os

import pytest

from conftest import FakePopen
from compressit.encoding_profiles import resolve
from compressit.errors import EncodeFailure
from compressit.models import AttemptStatus
from compressit.video_processing.transcode_controller import (
    TranscodeProcessController,
    parse_duration,
    parse_speed,
    parse_time_seconds,
)

PROGRESS_LINES = [
    "Input #0, mov,mp4,m4a,3gp,3g2,mj2, from 'clip.mov':\n",
    "  Duration: 00:00:10.00, start: 0.000000, bitrate: 8000 kb/s\n",
    "frame=   50 fps=25 q=28.0 size=     256kB time=00:00:02.00 bitrate=1048.6kbits/s speed=2.01x\n",
    "frame=   40 fps=25 q=28.0 size=     256kB time=00:00:01.00 bitrate=1048.6kbits/s speed=2.00x\n",
    "frame=  125 fps=25 q=28.0 size=     768kB time=00:00:05.00 bitrate=1258.3kbits/s speed=1.52x\n",
    "frame=  250 fps=25 q=-1.0 Lsize=    1500kB time=00:00:10.00 bitrate=1228.8kbits/s speed=1.49x\n",
]


@pytest.fixture
def profile():
    return resolve('video', 'medium', 'mp4', video_bitrate_kbps=964)


@pytest.fixture
def output_path(tmp_path):
    return str(tmp_path / 'out' / 'attempt.mp4')


def test_status_line_parsing():
    line = PROGRESS_LINES[4]
    assert parse_time_seconds(line) == pytest.approx(5.0)
    assert parse_speed(line) == '1.52x'
    assert parse_duration(PROGRESS_LINES[1]) == pytest.approx(10.0)
    assert parse_time_seconds("frame=0 time=01:02:03.50") == pytest.approx(3723.5)
    assert parse_speed("speed=N/A") is None
    assert parse_time_seconds("Stream mapping:") is None


def test_progress_is_monotonic_and_ends_with_terminal_event(profile, output_path):
    popen = FakePopen({'lines': PROGRESS_LINES, 'output_bytes': b'x' * 1500})
    controller = TranscodeProcessController('/usr/bin/ffmpeg', popen_factory=popen)

    handle = controller.start('clip.mov', profile, output_path)
    events = list(controller.progress(handle))
    state = controller.wait(handle)

    fractions = [event.fraction for event in events]
    assert fractions == pytest.approx([0.2, 0.5, 0.99, 1.0])
    assert fractions == sorted(fractions)
    assert [event.terminal for event in events] == [False, False, False, True]
    assert events[0].throughput_hint == '2.01x'
    assert events[0].timemark == '00:00:02.00'

    assert state.status == AttemptStatus.SUCCEEDED
    assert state.output_size == 1500
    assert os.path.exists(output_path)


def test_command_line_layout(profile, output_path):
    popen = FakePopen({'output_bytes': b'x'})
    controller = TranscodeProcessController('/opt/ffmpeg/bin/ffmpeg', popen_factory=popen)

    controller.wait(controller.start('clip.mov', profile, output_path))

    cmd = popen.commands[0]
    assert cmd[:6] == ['/opt/ffmpeg/bin/ffmpeg', '-hide_banner', '-nostdin', '-y', '-i', 'clip.mov']
    assert cmd[6:-1] == profile.ffmpeg_args()
    assert cmd[-1] == output_path
    assert popen.kwargs[0]['stderr'] is not None


def test_explicit_duration_is_used_before_ffmpeg_reports_one(profile, output_path):
    lines = ["frame=1 time=00:00:30.00 speed=3.0x\n"]
    popen = FakePopen({'lines': lines, 'output_bytes': b'x'})
    controller = TranscodeProcessController('ffmpeg', popen_factory=popen)

    handle = controller.start('clip.mov', profile, output_path, duration_seconds=120.0, attempt=2)
    events = list(controller.progress(handle))

    assert events[0].fraction == pytest.approx(0.25)
    assert all(event.attempt == 2 for event in events)


def test_progress_stream_cannot_be_taken_twice(profile, output_path):
    popen = FakePopen({'output_bytes': b'x'})
    controller = TranscodeProcessController('ffmpeg', popen_factory=popen)
    handle = controller.start('clip.mov', profile, output_path)

    list(controller.progress(handle))
    with pytest.raises(RuntimeError):
        controller.progress(handle)


def test_non_zero_exit_is_failure_with_stderr_reason(profile, output_path):
    lines = PROGRESS_LINES[:3] + ["[libx264 @ 0x1] Error initializing output stream 0:0\n",
                                  "Conversion failed!\n"]
    popen = FakePopen({'lines': lines, 'returncode': 1, 'output_bytes': b'half written'})
    controller = TranscodeProcessController('ffmpeg', popen_factory=popen)

    handle = controller.start('clip.mov', profile, output_path)
    events = list(controller.progress(handle))
    state = controller.wait(handle)

    assert state.status == AttemptStatus.FAILED
    assert state.returncode == 1
    assert 'code 1' in state.reason
    assert 'Conversion failed!' in state.reason
    assert events[-1].terminal
    assert events[-1].fraction == pytest.approx(0.2)
    assert not os.path.exists(output_path)


def test_clean_exit_without_output_is_failure(profile, output_path):
    popen = FakePopen({'returncode': 0})
    controller = TranscodeProcessController('ffmpeg', popen_factory=popen)

    state = controller.wait(controller.start('clip.mov', profile, output_path))

    assert state.status == AttemptStatus.FAILED
    assert 'no output' in state.reason


def test_cancel_kills_process_and_removes_partial_output(profile, output_path):
    popen = FakePopen({'lines': PROGRESS_LINES[:3], 'block': True})
    controller = TranscodeProcessController('ffmpeg', popen_factory=popen, kill_timeout=5)

    handle = controller.start('clip.mov', profile, output_path)
    controller.cancel(handle)
    state = controller.wait(handle, timeout=5)

    assert popen.processes[0].killed
    assert state.status == AttemptStatus.CANCELLED
    assert not os.path.exists(output_path)
    assert list(controller.progress(handle))[-1].terminal


@pytest.mark.parametrize("returncode", [-9, -15, -2, 137])
def test_death_by_kill_signal_is_cancelled_not_failed(profile, output_path, returncode):
    popen = FakePopen({'lines': PROGRESS_LINES[:2], 'returncode': returncode})
    controller = TranscodeProcessController('ffmpeg', popen_factory=popen)

    state = controller.wait(controller.start('clip.mov', profile, output_path))

    assert state.status == AttemptStatus.CANCELLED
    assert state.returncode == returncode


def test_cancel_after_terminal_state_is_a_no_op(profile, output_path):
    popen = FakePopen({'output_bytes': b'done'})
    controller = TranscodeProcessController('ffmpeg', popen_factory=popen)

    handle = controller.start('clip.mov', profile, output_path)
    state = controller.wait(handle)
    controller.cancel(handle)

    assert not popen.processes[0].killed
    assert controller.wait(handle) is state
    assert state.status == AttemptStatus.SUCCEEDED
    assert os.path.exists(output_path)


def test_missing_binary_is_encode_failure(profile, output_path):
    def missing_binary(cmd, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", cmd[0])

    controller = TranscodeProcessController('/nope/ffmpeg', popen_factory=missing_binary)

    with pytest.raises(EncodeFailure):
        controller.start('clip.mov', profile, output_path)


def test_cancel_all_kills_every_live_attempt(profile, tmp_path):
    popen = FakePopen({'block': True}, {'block': True})
    controller = TranscodeProcessController('ffmpeg', popen_factory=popen)
    first = controller.start('a.mov', profile, str(tmp_path / 'a.mp4'))
    second = controller.start('b.mov', profile, str(tmp_path / 'b.mp4'))

    controller.cancel_all()

    assert controller.wait(first, timeout=5).status == AttemptStatus.CANCELLED
    assert controller.wait(second, timeout=5).status == AttemptStatus.CANCELLED
