"""Exception types raised by the upscaling pipelines."""


class UpscaleError(RuntimeError):
    """Base class for job-level failures."""


class PreconditionError(UpscaleError):
    """Raised before any work starts: missing inputs, model, or tools."""


class FfmpegError(UpscaleError):
    """An ffmpeg/ffprobe invocation exited with a non-zero status."""

    def __init__(self, message, returncode=None):
        super().__init__(message)
        self.returncode = returncode


class EncodeError(UpscaleError):
    """Every encoder and audio mode combination failed."""


class JobInProgressError(UpscaleError):
    """A job was submitted while another one is still running."""


class OperationCancelled(Exception):
    """The caller cancelled the running job.

    Deliberately not an UpscaleError so callers can tell a cancelled job
    apart from a failed one.
    """
