from .job import CancelResponse, ChallengeVideoResponse, JobView, UploadResponse

__all__ = ["UploadResponse", "JobView", "ChallengeVideoResponse", "CancelResponse"]
