from .intake import VideoIntake, parse_timestamps
from .job_store import JobStore
from .pipeline import (
    ChromaKey,
    MultiStagePipeline,
    Pipeline,
    ProcessingResult,
    SinglePassPipeline,
    build_pipeline,
)
from .transcoder import (
    EncodeParams,
    FFmpegError,
    FFmpegTranscoder,
    MediaInfo,
    ProbeError,
    StageTimeouts,
    TranscodeCancelled,
    TranscodeFailure,
    TranscodeTimeout,
    Transcoder,
)
from .workspace import Workspace, WorkspaceManager, WorkspaceReaper

__all__ = [
    "JobStore",
    "VideoIntake",
    "parse_timestamps",
    "ChromaKey",
    "Pipeline",
    "MultiStagePipeline",
    "SinglePassPipeline",
    "ProcessingResult",
    "build_pipeline",
    "EncodeParams",
    "FFmpegError",
    "FFmpegTranscoder",
    "MediaInfo",
    "ProbeError",
    "StageTimeouts",
    "TranscodeCancelled",
    "TranscodeFailure",
    "TranscodeTimeout",
    "Transcoder",
    "Workspace",
    "WorkspaceManager",
    "WorkspaceReaper",
]
