from .base import Base, create_db_engine, engine
from .job import Completed, Failed, JobEvent, JobState, JobStatus, Processing, VideoJob

__all__ = [
    "Base",
    "engine",
    "create_db_engine",
    "VideoJob",
    "JobEvent",
    "JobStatus",
    "JobState",
    "Processing",
    "Completed",
    "Failed",
]
