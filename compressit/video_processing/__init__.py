"""Target-size video compression: estimation, ffmpeg control and the convergence loop."""

from .bitrate_estimator import estimate_video_bitrate, rescale_video_bitrate  # noqa: F401
from .media_probe import MediaInfo, MediaProbe  # noqa: F401
from .transcode_controller import TranscodeHandle, TranscodeProcessController  # noqa: F401
from .convergence_controller import ConvergenceController, ConvergencePhase, ConvergenceSettings  # noqa: F401
