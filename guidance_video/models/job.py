import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base
from .types import GUID, JSONType


class JobStatus(str, enum.Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.PROCESSING


@dataclass(frozen=True)
class Processing:
    status = JobStatus.PROCESSING


@dataclass(frozen=True)
class Completed:
    processed_path: str
    duration: float
    file_size: int
    # When the artifact was published; the store stamps the transition time if unset.
    completed_at: datetime | None = field(default=None, compare=False)

    status = JobStatus.COMPLETED


@dataclass(frozen=True)
class Failed:
    error_message: str

    status = JobStatus.FAILED

    def __post_init__(self) -> None:
        if not self.error_message:
            raise ValueError("Failed state requires a non-empty error message")


JobState = Union[Processing, Completed, Failed]

# Rows store enum names; the constraint mirrors the three JobState variants.
_STATE_SHAPE = (
    "(status = 'PROCESSING' AND processed_path IS NULL AND error_message IS NULL"
    " AND duration IS NULL AND file_size IS NULL)"
    " OR (status = 'COMPLETED' AND processed_path IS NOT NULL AND error_message IS NULL"
    " AND duration IS NOT NULL AND file_size IS NOT NULL)"
    " OR (status = 'FAILED' AND processed_path IS NULL AND error_message IS NOT NULL"
    " AND duration IS NULL AND file_size IS NULL)"
)


class VideoJob(Base):
    __tablename__ = "guidance_videos"
    __table_args__ = (CheckConstraint(_STATE_SHAPE, name="ck_guidance_videos_state"),)

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    challenge_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    quest_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus), default=JobStatus.PROCESSING, nullable=False, index=True
    )

    raw_path: Mapped[str] = mapped_column(String(512), nullable=False)
    processed_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    timestamps: Mapped[list[Any]] = mapped_column(JSONType(), default=list, nullable=False)

    duration: Mapped[float | None] = mapped_column(Float, nullable=True)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    events: Mapped[list["JobEvent"]] = relationship(
        "JobEvent", back_populates="job", cascade="all, delete-orphan"
    )

    @property
    def state(self) -> JobState:
        if self.status is JobStatus.COMPLETED:
            return Completed(
                processed_path=self.processed_path,
                duration=self.duration,
                file_size=self.file_size,
                completed_at=self.completed_at,
            )
        if self.status is JobStatus.FAILED:
            return Failed(error_message=self.error_message)
        return Processing()

    def __repr__(self) -> str:
        return f"<VideoJob {self.id} {self.challenge_id} {self.status.value}>"


class JobEvent(Base):
    __tablename__ = "guidance_video_events"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("guidance_videos.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    old_status: Mapped[JobStatus | None] = mapped_column(Enum(JobStatus), nullable=True)
    new_status: Mapped[JobStatus | None] = mapped_column(Enum(JobStatus), nullable=True)
    event_data: Mapped[dict | None] = mapped_column(JSONType(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    job: Mapped["VideoJob"] = relationship("VideoJob", back_populates="events")
