"""
Transcode Process Controller
Owns one ffmpeg process per attempt: launches it, turns its stderr into
progress events, kills it on request and classifies how it ended
"""

import os
import re
import queue
import signal
import logging
import threading
import subprocess
from collections import deque
from typing import Callable, Deque, Iterator, List, Optional

from ..errors import EncodeFailure, IOFailure
from ..models import EncoderProfile, ProgressEvent, TerminalState
from .media_probe import find_executable

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20
# Reported progress stays below 1.0 until the process has actually exited
MAX_RUNNING_FRACTION = 0.99
KILL_TIMEOUT_SECONDS = 5.0

TIME_PATTERN = re.compile(r'time=\s*(-?\d+):(\d{2}):(\d{2}(?:\.\d+)?)')
SPEED_PATTERN = re.compile(r'speed=\s*(\S+?x)')
DURATION_PATTERN = re.compile(r'Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)')

_KILL_SIGNALS = (signal.SIGKILL, signal.SIGTERM, signal.SIGINT) if hasattr(signal, 'SIGKILL') \
    else (signal.SIGTERM, signal.SIGINT)
# Popen reports death-by-signal as -N; shells wrapping ffmpeg report 128+N
KILL_RETURNCODES = frozenset([-int(sig) for sig in _KILL_SIGNALS] + [128 + int(sig) for sig in _KILL_SIGNALS])


def _clock_to_seconds(hours: str, minutes: str, seconds: str) -> float:
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def parse_time_seconds(line: str) -> Optional[float]:
    """Encoded media time from an ffmpeg status line, if present"""
    match = TIME_PATTERN.search(line)
    if not match:
        return None
    return max(0.0, _clock_to_seconds(*match.groups()))


def parse_speed(line: str) -> Optional[str]:
    match = SPEED_PATTERN.search(line)
    if not match or match.group(1) == 'N/Ax':
        return None
    return match.group(1)


def parse_duration(line: str) -> Optional[float]:
    match = DURATION_PATTERN.search(line)
    if not match:
        return None
    return _clock_to_seconds(*match.groups())


class TranscodeHandle:
    """Live state of one ffmpeg invocation, shared between the reader thread and callers"""

    def __init__(self, process, output_path: str, attempt: int = 1,
                 duration_seconds: Optional[float] = None):
        self.process = process
        self.output_path = output_path
        self.attempt = attempt
        self.duration_seconds = duration_seconds if duration_seconds and duration_seconds > 0 else None
        self.events: "queue.Queue[ProgressEvent]" = queue.Queue()
        self.stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self.cancel_requested = threading.Event()
        self.finished = threading.Event()
        self.state: Optional[TerminalState] = None
        self.max_fraction = 0.0
        self.throughput_hint: Optional[str] = None
        self.reader: Optional[threading.Thread] = None
        self._progress_taken = False
        self._lock = threading.Lock()

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, 'pid', None)

    def take_progress(self):
        with self._lock:
            if self._progress_taken:
                raise RuntimeError("progress stream of this attempt was already consumed")
            self._progress_taken = True

    def __repr__(self):
        return f"TranscodeHandle(attempt={self.attempt}, pid={self.pid}, output={self.output_path!r})"


class TranscodeProcessController:
    """Launches ffmpeg for one EncoderProfile and reports its progress and outcome"""

    def __init__(self, ffmpeg_path: Optional[str] = None,
                 popen_factory: Callable = subprocess.Popen,
                 kill_timeout: float = KILL_TIMEOUT_SECONDS):
        self.ffmpeg_path = find_executable('ffmpeg', ffmpeg_path)
        self._popen = popen_factory
        self.kill_timeout = kill_timeout
        self._live: List[TranscodeHandle] = []
        self._live_lock = threading.Lock()

    def build_command(self, input_path: str, profile: EncoderProfile, output_path: str) -> List[str]:
        return [self.ffmpeg_path, '-hide_banner', '-nostdin', '-y', '-i', input_path] \
            + profile.ffmpeg_args() + [output_path]

    def start(self, input_path: str, profile: EncoderProfile, output_path: str,
              duration_seconds: Optional[float] = None, attempt: int = 1) -> TranscodeHandle:
        """
        Launch ffmpeg writing to output_path.

        Raises:
            IOFailure: the output directory cannot be created
            EncodeFailure: the ffmpeg process could not be started
        """
        cmd = self.build_command(input_path, profile, output_path)
        output_dir = os.path.dirname(os.path.abspath(output_path))
        try:
            os.makedirs(output_dir, exist_ok=True)
        except OSError as e:
            raise IOFailure(f"Cannot create output directory: {e}", context=output_dir) from e

        logger.debug(f"FFmpeg command (attempt {attempt}): {' '.join(cmd)}")
        try:
            process = self._popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                universal_newlines=True,
                bufsize=1,
                encoding='utf-8',
                errors='replace'
            )
        except OSError as e:
            raise EncodeFailure(f"ffmpeg could not be started: {e}", context=self.ffmpeg_path) from e

        handle = TranscodeHandle(process, output_path, attempt, duration_seconds)
        with self._live_lock:
            self._live.append(handle)

        handle.reader = threading.Thread(
            target=self._read_stderr, args=(handle,),
            name=f"ffmpeg-stderr-{handle.pid}", daemon=True
        )
        handle.reader.start()
        return handle

    def progress(self, handle: TranscodeHandle) -> Iterator[ProgressEvent]:
        """Finite event stream for one attempt; it ends with the terminal event and can be taken once."""
        handle.take_progress()
        return self._iter_events(handle)

    @staticmethod
    def _iter_events(handle: TranscodeHandle) -> Iterator[ProgressEvent]:
        while True:
            event = handle.events.get()
            yield event
            if event.terminal:
                return

    def cancel(self, handle: TranscodeHandle):
        """Kill the process abruptly; a no-op once the attempt is terminal"""
        if handle.finished.is_set():
            return
        handle.cancel_requested.set()
        process = handle.process
        if process.poll() is None:
            try:
                process.kill()
                logger.info(f"Killed ffmpeg process {handle.pid} (attempt {handle.attempt})")
            except OSError as e:
                # Already gone between poll() and kill()
                logger.debug(f"Kill of ffmpeg process {handle.pid} failed: {e}")
        if not handle.finished.wait(self.kill_timeout):
            logger.warning(f"FFmpeg process {handle.pid} did not exit within {self.kill_timeout}s of kill")

    def cancel_all(self):
        """Kill every live ffmpeg process started by this controller"""
        with self._live_lock:
            live = list(self._live)
        for handle in live:
            self.cancel(handle)

    def wait(self, handle: TranscodeHandle, timeout: Optional[float] = None) -> TerminalState:
        """Block until the attempt is terminal and return how it ended"""
        if not handle.finished.wait(timeout):
            raise TimeoutError(f"ffmpeg attempt {handle.attempt} still running after {timeout}s")
        if handle.reader is not None and handle.reader is not threading.current_thread():
            handle.reader.join()
        return handle.state

    # ===== Reader thread =====

    def _read_stderr(self, handle: TranscodeHandle):
        process = handle.process
        try:
            for line in process.stderr:
                self._consume_line(handle, line)
        except (OSError, ValueError) as e:
            # Pipe closed under us by a kill
            logger.debug(f"Stopped reading ffmpeg stderr: {e}")

        try:
            returncode = process.wait()
        finally:
            stderr = getattr(process, 'stderr', None)
            if stderr is not None and hasattr(stderr, 'close'):
                stderr.close()

        state = self._classify(handle, returncode)
        if state.output_size is None:
            self._discard_output(handle.output_path)

        handle.state = state
        final_fraction = 1.0 if state.output_size is not None else handle.max_fraction
        handle.events.put(ProgressEvent(
            fraction=final_fraction,
            throughput_hint=handle.throughput_hint,
            attempt=handle.attempt,
            terminal=True,
        ))
        with self._live_lock:
            if handle in self._live:
                self._live.remove(handle)
        handle.finished.set()
        logger.debug(f"FFmpeg attempt {handle.attempt} finished: {state}")

    def _consume_line(self, handle: TranscodeHandle, line: str):
        line = line.rstrip()
        if not line:
            return
        handle.stderr_tail.append(line)

        if handle.duration_seconds is None:
            duration = parse_duration(line)
            if duration:
                handle.duration_seconds = duration

        speed = parse_speed(line)
        if speed:
            handle.throughput_hint = speed

        seconds = parse_time_seconds(line)
        if seconds is None or not handle.duration_seconds:
            return
        fraction = min(seconds / handle.duration_seconds, MAX_RUNNING_FRACTION)
        if fraction <= handle.max_fraction:
            return
        handle.max_fraction = fraction
        handle.events.put(ProgressEvent(
            fraction=fraction,
            throughput_hint=handle.throughput_hint,
            attempt=handle.attempt,
            timemark=TIME_PATTERN.search(line).group(0)[len('time='):].strip(),
        ))

    def _classify(self, handle: TranscodeHandle, returncode: int) -> TerminalState:
        if handle.cancel_requested.is_set() or returncode in KILL_RETURNCODES:
            return TerminalState.cancelled(returncode)

        if returncode != 0:
            tail = [line for line in handle.stderr_tail if not line.startswith(('frame=', 'size='))]
            reason = ' | '.join(tail[-3:]) or 'no diagnostic output'
            return TerminalState.failed(f"ffmpeg exited with code {returncode}: {reason}", returncode)

        try:
            output_size = os.path.getsize(handle.output_path)
        except OSError:
            return TerminalState.failed("ffmpeg exited cleanly but wrote no output", returncode)
        if output_size == 0:
            return TerminalState.failed("ffmpeg exited cleanly but the output is empty", returncode)
        return TerminalState.succeeded(output_size, returncode)

    @staticmethod
    def _discard_output(output_path: str):
        try:
            if os.path.exists(output_path):
                os.remove(output_path)
                logger.debug(f"Removed partial output: {output_path}")
        except OSError as e:
            logger.warning(f"Could not remove partial output {output_path}: {e}")
