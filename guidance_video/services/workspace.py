import shutil
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class Workspace:
    root: Path
    frames: Path
    clean: Path


class WorkspaceManager:
    """Per-job scratch directories under ``frames_root``, keyed by job id."""

    def __init__(self, frames_root: str | Path) -> None:
        self.frames_root = Path(frames_root)
        self._active: set[Path] = set()
        self._lock = threading.Lock()

    def path_for(self, job_id) -> Path:
        return self.frames_root / f"job_{job_id}"

    @contextmanager
    def allocate(self, job_id) -> Iterator[Workspace]:
        """
        Create ``job_<id>/{frames,clean}`` and remove the whole tree when the block exits,
        however it exits. Raises FileExistsError if the directory is already present.
        """
        root = self.path_for(job_id)
        self.frames_root.mkdir(parents=True, exist_ok=True)
        root.mkdir()

        with self._lock:
            self._active.add(root)

        try:
            frames = root / "frames"
            clean = root / "clean"
            frames.mkdir()
            clean.mkdir()
            yield Workspace(root=root, frames=frames, clean=clean)
        finally:
            with self._lock:
                self._active.discard(root)
            self.remove(root)

    def remove(self, directory: str | Path) -> bool:
        """Remove directory and contents. Errors are logged, never raised."""
        path = Path(directory)
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return True
        except OSError as e:
            logger.error("workspace_cleanup_failed", path=str(path), error=str(e))
            return False
        return True

    def active(self) -> set[Path]:
        with self._lock:
            return set(self._active)

    def reap_orphans(self, max_age_seconds: float, now: float | None = None) -> list[Path]:
        """Remove ``job_*`` directories no live job owns and that are older than the threshold."""
        if not self.frames_root.is_dir():
            return []

        now = time.time() if now is None else now
        active = self.active()
        removed: list[Path] = []

        for path in sorted(self.frames_root.glob("job_*")):
            if not path.is_dir() or path in active:
                continue
            try:
                age = now - path.stat().st_mtime
            except FileNotFoundError:
                continue
            if age > max_age_seconds and self.remove(path):
                removed.append(path)

        if removed:
            logger.info("workspaces_reaped", count=len(removed), paths=[p.name for p in removed])
        return removed


class WorkspaceReaper(threading.Thread):
    """Periodically reaps workspaces left behind by a crashed worker."""

    def __init__(self, manager: WorkspaceManager, interval_seconds: float, max_age_seconds: float) -> None:
        super().__init__(name="workspace-reaper", daemon=True)
        self.manager = manager
        self.interval_seconds = interval_seconds
        self.max_age_seconds = max_age_seconds
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.manager.reap_orphans(self.max_age_seconds)
            except Exception as e:
                logger.error("workspace_reap_failed", error=str(e))

    def stop(self) -> None:
        self._stop_event.set()
