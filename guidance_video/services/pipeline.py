"""
Background-removal pipelines.

Both variants honour the same contract: ``process(job_id, raw_path, challenge_id, cancel)``
returns a ProcessingResult for a complete, playable artifact at
``processed/<challenge_id>.webm`` or raises. The artifact is rendered under a job-unique
staging name and renamed into place only after it probes cleanly, so readers never see a
half-written file and concurrent jobs for one challenge resolve last-writer-wins.
``published_at`` is taken under the same lock as the rename, so ordering jobs by it
matches the order in which their files landed.

The raw upload is removed on success only; on failure it stays for inspection unless
``keep_raw_on_failure`` is off.
"""

import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import structlog

from guidance_video.core.config import Settings

from .transcoder import EncodeParams, ProbeError, TranscodeFailure, Transcoder
from .workspace import Workspace, WorkspaceManager

logger = structlog.get_logger()

_publish_lock = threading.Lock()


@dataclass(frozen=True)
class ProcessingResult:
    processed_path: str
    duration: float
    file_size: int
    published_at: datetime | None = None


@dataclass(frozen=True)
class ChromaKey:
    color: str = "0x00FF00"
    similarity: float = 0.3
    blend: float = 0.1

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChromaKey":
        return cls(
            color=settings.chroma_key_color,
            similarity=settings.chroma_key_similarity,
            blend=settings.chroma_key_blend,
        )


class Pipeline:
    variant = "base"

    def __init__(
        self,
        transcoder: Transcoder,
        processed_dir: str | Path,
        fps: int = 12,
        width: int = 200,
        height: int = 130,
        key: ChromaKey | None = None,
        encode: EncodeParams | None = None,
        keep_raw_on_failure: bool = True,
    ) -> None:
        self.transcoder = transcoder
        self.processed_dir = Path(processed_dir)
        self.fps = fps
        self.width = width
        self.height = height
        self.key = key or ChromaKey()
        self.encode = encode or EncodeParams()
        self.keep_raw_on_failure = keep_raw_on_failure

    def output_path(self, challenge_id: str) -> Path:
        return self.processed_dir / f"{challenge_id}.{self.encode.container}"

    def staging_path(self, job_id, challenge_id: str) -> Path:
        return self.processed_dir / f".{challenge_id}.{job_id}.{self.encode.container}"

    def process(
        self, job_id, raw_path: str, challenge_id: str, cancel: threading.Event | None = None
    ) -> ProcessingResult:
        final_path = self.output_path(challenge_id)
        staging = self.staging_path(job_id, challenge_id)
        self.processed_dir.mkdir(parents=True, exist_ok=True)

        logger.info("processing_started", job_id=str(job_id), challenge_id=challenge_id, variant=self.variant)

        try:
            self._render(job_id, raw_path, staging, cancel)
            result = self._finalize(staging, final_path, cancel)
        except BaseException:
            _discard(staging)
            if not self.keep_raw_on_failure:
                _discard(raw_path)
            raise

        _discard(raw_path)
        logger.info(
            "processing_completed",
            job_id=str(job_id),
            duration=result.duration,
            size_mb=round(result.file_size / 1024 / 1024, 2),
        )
        return result

    def _render(self, job_id, raw_path: str, output_path: Path, cancel: threading.Event | None) -> None:
        raise NotImplementedError

    def _finalize(self, staging: Path, final_path: Path, cancel: threading.Event | None) -> ProcessingResult:
        info = self.transcoder.probe(str(staging), cancel=cancel)
        file_size = staging.stat().st_size
        if info.duration <= 0 or file_size == 0:
            raise ProbeError(f"Output is not playable (duration={info.duration}, size={file_size})")

        with _publish_lock:
            published_at = datetime.now(timezone.utc)
            os.replace(staging, final_path)

        return ProcessingResult(
            processed_path=str(final_path),
            duration=info.duration,
            file_size=file_size,
            published_at=published_at,
        )


class SinglePassPipeline(Pipeline):
    """One ffmpeg invocation: fps -> scale -> chromakey -> VP9/Opus, raw input as both sources."""

    variant = "single_pass"

    def _render(self, job_id, raw_path, output_path, cancel) -> None:
        self.transcoder.encode_single_pass(
            str(raw_path),
            str(output_path),
            self.fps,
            self.width,
            self.height,
            self.key.color,
            self.key.similarity,
            self.key.blend,
            self.encode,
            cancel=cancel,
        )


class MultiStagePipeline(Pipeline):
    """Extract frames, key each frame, reassemble with the raw input's audio."""

    variant = "multi_stage"

    def __init__(self, *args, workspace: WorkspaceManager, key_frame_workers: int = 1, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.workspace = workspace
        self.key_frame_workers = key_frame_workers

    def _render(self, job_id, raw_path, output_path, cancel) -> None:
        with self.workspace.allocate(job_id) as ws:
            frames = self.transcoder.extract_frames(
                str(raw_path), str(ws.frames), self.fps, self.width, self.height, cancel=cancel
            )
            if not frames:
                raise TranscodeFailure("No frames extracted")

            self._key_frames(frames, ws, cancel)

            self.transcoder.reassemble(
                str(ws.clean), self.fps, str(raw_path), str(output_path), self.encode, cancel=cancel
            )

    def _key_frames(self, frames: list[str], ws: Workspace, cancel: threading.Event | None) -> None:
        # clean/ keeps the extracted file names, so sequence order survives parallel keying.
        def key_one(name: str) -> None:
            self.transcoder.key_frame(
                str(ws.frames / name),
                str(ws.clean / name),
                self.key.color,
                self.key.similarity,
                self.key.blend,
                cancel=cancel,
            )

        if self.key_frame_workers <= 1:
            for name in frames:
                key_one(name)
            return

        with ThreadPoolExecutor(max_workers=self.key_frame_workers, thread_name_prefix="keyframe") as pool:
            futures = [pool.submit(key_one, name) for name in frames]
            try:
                for future in futures:
                    future.result()
            except BaseException:
                for future in futures:
                    future.cancel()
                raise


def build_pipeline(
    settings: Settings, transcoder: Transcoder, workspace: WorkspaceManager | None = None
) -> Pipeline:
    common = dict(
        transcoder=transcoder,
        processed_dir=settings.processed_dir,
        fps=settings.output_fps,
        width=settings.output_width,
        height=settings.output_height,
        key=ChromaKey.from_settings(settings),
        encode=EncodeParams.from_settings(settings),
        keep_raw_on_failure=settings.keep_raw_on_failure,
    )
    if settings.pipeline_variant == "multi_stage":
        return MultiStagePipeline(
            workspace=workspace or WorkspaceManager(settings.frames_dir),
            key_frame_workers=settings.key_frame_workers,
            **common,
        )
    return SinglePassPipeline(**common)


def _discard(path: str | Path) -> None:
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as e:
        logger.error("file_cleanup_failed", path=str(path), error=str(e))
