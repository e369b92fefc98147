import io
import queue
import threading
from pathlib import Path
from types import SimpleNamespace

import pytest
from PIL import Image

from compressit.errors import ProbeFailure
from compressit.models import ProgressEvent, TerminalState
from compressit.temp_file_manager import TempFileManager
from compressit.video_processing.media_probe import MediaInfo


class FakeStderr:
    """Line source that blocks like a pipe until the process ends"""

    def __init__(self, lines, block):
        self._lines = queue.Queue()
        for line in lines:
            self._lines.put(line)
        if not block:
            self._lines.put(None)
        self.closed = False

    def eof(self):
        self._lines.put(None)

    def __iter__(self):
        while True:
            line = self._lines.get()
            if line is None:
                return
            yield line

    def close(self):
        self.closed = True


class FakeProcess:
    def __init__(self, output_path, lines=(), returncode=0, output_bytes=b'', block=False):
        self.output_path = output_path
        self.stderr = FakeStderr(list(lines), block)
        self.returncode = None
        self.pid = 4242
        self.killed = False
        self._final_returncode = returncode
        self._output_bytes = output_bytes
        self._exited = threading.Event()

    def poll(self):
        return self.returncode

    def kill(self):
        self.killed = True
        self._final_returncode = -9
        self.stderr.eof()

    def wait(self, timeout=None):
        if self.returncode is None:
            if self._output_bytes and not self.killed:
                Path(self.output_path).write_bytes(self._output_bytes)
            elif self.killed:
                # ffmpeg leaves a partial file behind when killed mid-write
                Path(self.output_path).write_bytes(b'partial')
            self.returncode = self._final_returncode
        return self.returncode


class FakePopen:
    """Popen stand-in replaying scripted ffmpeg runs in order"""

    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.commands = []
        self.kwargs = []
        self.processes = []

    def __call__(self, cmd, **kwargs):
        self.commands.append(cmd)
        self.kwargs.append(kwargs)
        process = FakeProcess(cmd[-1], **self.scripts.pop(0))
        self.processes.append(process)
        return process


class FakeTranscoder:
    """
    Transcoder double for the convergence loop.

    Each outcome is either an output size (a successful attempt) or a
    TerminalState. ``on_wait`` runs just before an attempt's state is
    returned, which is where a racing cancel() lands.
    """

    def __init__(self, *outcomes, on_wait=None):
        self.outcomes = list(outcomes)
        self.on_wait = on_wait
        self.started = []
        self.cancelled = []

    def start(self, input_path, profile, output_path, duration_seconds=None, attempt=1):
        handle = SimpleNamespace(input_path=input_path, profile=profile, output_path=output_path,
                                 duration_seconds=duration_seconds, attempt=attempt,
                                 outcome=self.outcomes.pop(0))
        self.started.append(handle)
        return handle

    def progress(self, handle):
        yield ProgressEvent(0.5, throughput_hint='2.0x', attempt=handle.attempt)
        yield ProgressEvent(1.0, attempt=handle.attempt, terminal=True)

    def wait(self, handle, timeout=None):
        if self.on_wait is not None:
            self.on_wait(handle)
        outcome = handle.outcome
        if isinstance(outcome, TerminalState):
            return outcome
        Path(handle.output_path).write_bytes(b'encoded')
        return TerminalState.succeeded(outcome)

    def cancel(self, handle):
        self.cancelled.append(handle)


class FakeProbe:
    def __init__(self, size_bytes, duration=120.0, height=1080, fail=False):
        self.size_bytes = size_bytes
        self.duration = duration
        self.height = height
        self.fail = fail
        self.probed = []

    def source_size(self, path):
        return self.size_bytes

    def probe(self, path):
        self.probed.append(path)
        if self.fail:
            raise ProbeFailure("ffprobe exited with code 1", context=path)
        return MediaInfo(path=path, size_bytes=self.size_bytes, duration=self.duration,
                         width=1920, height=self.height, video_codec='h264', audio_codec='aac')


@pytest.fixture
def temp_files(tmp_path):
    return TempFileManager(tmp_path / 'temp')


@pytest.fixture
def source_video(tmp_path):
    path = tmp_path / 'clip.mov'
    path.write_bytes(b'source video bytes')
    return str(path)


def make_image_bytes(size=(64, 48), mode='RGB', fmt='PNG', color=None, noise=False, **save_kwargs):
    if noise:
        image = Image.effect_noise(size, 64).convert(mode)
    else:
        image = Image.linear_gradient('L').resize(size).convert(mode)
        if color is not None:
            image = Image.new(mode, size, color)
    buffer = io.BytesIO()
    image.save(buffer, format=fmt, **save_kwargs)
    return buffer.getvalue()


@pytest.fixture
def image_bytes():
    return make_image_bytes
