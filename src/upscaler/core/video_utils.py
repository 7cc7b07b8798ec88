"""ffmpeg/ffprobe invocation with progress parsing and cancellation."""

import logging
import shutil
import subprocess
import threading

from upscaler.core.errors import FfmpegError, OperationCancelled, PreconditionError

logger = logging.getLogger(__name__)

DEFAULT_FPS = 30.0


def parse_framerate(value):
    """Parse ffprobe framerate strings like 30000/1001; DEFAULT_FPS when unusable."""
    value = (value or "").strip()
    if not value:
        return DEFAULT_FPS

    try:
        if "/" in value:
            num, den = value.split("/", maxsplit=1)
            denominator = float(den)
            if denominator == 0:
                return DEFAULT_FPS
            framerate = float(num) / denominator
        else:
            framerate = float(value)
    except (TypeError, ValueError):
        return DEFAULT_FPS

    if framerate <= 0:
        return DEFAULT_FPS
    return framerate


def parse_progress_line(line, duration_seconds):
    """Percent complete from one ``-progress`` line, or None if it carries none.

    ``out_time_us`` and ``out_time_ms`` are both reported in microseconds.
    """
    key, sep, value = line.strip().partition("=")
    if not sep:
        return None

    if key == "progress" and value == "end":
        return 100.0
    if key in ("out_time_us", "out_time_ms") and duration_seconds > 0:
        try:
            micros = int(value)
        except ValueError:
            return None
        return min(max(micros / (duration_seconds * 1_000_000.0) * 100.0, 0.0), 100.0)
    return None


class FfmpegRunner:
    """Runs ffmpeg/ffprobe resolved from PATH (or explicit paths)."""

    def __init__(self, ffmpeg=None, ffprobe=None):
        self.ffmpeg = ffmpeg or shutil.which("ffmpeg")
        if not self.ffmpeg:
            raise PreconditionError("ffmpeg not found. Add it to PATH.")
        self.ffprobe = ffprobe or shutil.which("ffprobe")

    def probe_frame_rate(self, input_path, cancel=None):
        if not self.ffprobe:
            logger.warning(f"ffprobe not found. Defaulting frame rate to {DEFAULT_FPS:g}.")
            return DEFAULT_FPS

        output = self._run_capture([
            self.ffprobe, "-v", "error", "-select_streams", "v:0",
            "-show_entries", "stream=avg_frame_rate", "-of", "default=nk=1:nw=1",
            str(input_path),
        ], cancel)
        return parse_framerate(output.splitlines()[0] if output else "")

    def probe_duration(self, input_path, cancel=None):
        """Container duration in seconds, 0 when unknown."""
        if not self.ffprobe:
            logger.warning("ffprobe not found. Duration unknown.")
            return 0.0

        output = self._run_capture([
            self.ffprobe, "-v", "error", "-show_entries", "format=duration",
            "-of", "default=nk=1:nw=1", str(input_path),
        ], cancel)
        try:
            seconds = float(output.strip())
        except ValueError:
            logger.warning("Failed to parse duration.")
            return 0.0
        return seconds if seconds > 0 else 0.0

    def run_with_progress(self, args, duration_seconds, on_progress=None, cancel=None):
        """Run ffmpeg, reporting percent complete from its ``-progress pipe:1`` output.

        stdout and stderr are drained on separate threads; the last non-empty
        stderr line becomes the error message on failure.

        Raises:
            OperationCancelled: If the token fired (the process is terminated)
            FfmpegError: On a non-zero exit status
        """
        process = subprocess.Popen(
            [self.ffmpeg, *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1,
        )
        last_error = {"line": None}

        def read_stdout():
            for line in process.stdout:
                percent = parse_progress_line(line, duration_seconds)
                if percent is not None and on_progress is not None:
                    on_progress(percent)

        def read_stderr():
            for line in process.stderr:
                if line.strip():
                    last_error["line"] = line.strip()

        readers = [
            threading.Thread(target=read_stdout, daemon=True),
            threading.Thread(target=read_stderr, daemon=True),
        ]
        unregister = cancel.on_cancel(process.terminate) if cancel is not None else None
        try:
            for reader in readers:
                reader.start()
            returncode = process.wait()
            for reader in readers:
                reader.join()
        finally:
            if unregister is not None:
                unregister()
            _reap(process)

        if cancel is not None and cancel.cancelled:
            raise OperationCancelled("Operation cancelled.")
        if returncode != 0:
            raise FfmpegError(last_error["line"] or f"ffmpeg failed with exit code {returncode}.", returncode)

    @staticmethod
    def _run_capture(cmd, cancel=None):
        process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        unregister = cancel.on_cancel(process.terminate) if cancel is not None else None
        try:
            stdout, stderr = process.communicate()
        finally:
            if unregister is not None:
                unregister()
            _reap(process)

        if cancel is not None and cancel.cancelled:
            raise OperationCancelled("Operation cancelled.")
        if process.returncode != 0:
            message = (stderr or stdout or "").strip()
            raise FfmpegError(message or f"{cmd[0]} failed with exit code {process.returncode}.", process.returncode)
        return stdout.strip()


def _reap(process):
    if process.poll() is None:
        process.kill()
        process.wait()
    for stream in (process.stdout, process.stderr):
        if stream is not None:
            stream.close()
