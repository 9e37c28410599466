import json
import os
import re
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import structlog

from guidance_video.core.config import Settings

logger = structlog.get_logger()

FRAME_PATTERN = "%04d.png"
_COLOR_RE = re.compile(r"^(?:(?:0x|#)[0-9A-Fa-f]{6}(?:[0-9A-Fa-f]{2})?|[A-Za-z]+)$")


class TranscodeFailure(Exception):
    """Any failed external media tool invocation."""


class FFmpegError(TranscodeFailure):
    """The tool exited non-zero or could not be started."""


class TranscodeTimeout(TranscodeFailure):
    pass


class TranscodeCancelled(TranscodeFailure):
    pass


class ProbeError(TranscodeFailure):
    """Probe output was missing, unparsable, or described an unusable file."""


@dataclass(frozen=True)
class MediaInfo:
    duration: float
    width: int | None = None
    height: int | None = None


@dataclass(frozen=True)
class EncodeParams:
    """Alpha-capable WebM target: VP9 with yuva420p plus Opus audio."""

    video_codec: str = "libvpx-vp9"
    pix_fmt: str = "yuva420p"
    crf: int = 30
    audio_codec: str = "libopus"
    audio_bitrate: str = "64k"
    deadline: str = "good"
    cpu_used: int = 4
    container: str = "webm"

    @classmethod
    def from_settings(cls, settings: Settings) -> "EncodeParams":
        return cls(crf=settings.video_crf, audio_bitrate=settings.audio_bitrate)

    def video_args(self) -> list[str]:
        return ["-c:v", self.video_codec, "-pix_fmt", self.pix_fmt, "-crf", str(self.crf), "-b:v", "0"]

    def audio_args(self) -> list[str]:
        return ["-c:a", self.audio_codec, "-b:a", self.audio_bitrate]

    def speed_args(self) -> list[str]:
        return ["-deadline", self.deadline, "-cpu-used", str(self.cpu_used)]


@dataclass(frozen=True)
class StageTimeouts:
    extract: float = 300
    key_frame: float = 30
    reassemble: float = 300
    single_pass: float = 600
    probe: float = 30

    @classmethod
    def from_settings(cls, settings: Settings) -> "StageTimeouts":
        return cls(
            extract=settings.extract_timeout_seconds,
            key_frame=settings.key_frame_timeout_seconds,
            reassemble=settings.reassemble_timeout_seconds,
            single_pass=settings.single_pass_timeout_seconds,
            probe=settings.probe_timeout_seconds,
        )


class Transcoder(Protocol):
    """The media operations the pipeline needs; every call is bounded and cancellable."""

    def extract_frames(
        self,
        input_path: str,
        output_dir: str,
        fps: int,
        width: int,
        height: int,
        cancel: threading.Event | None = None,
    ) -> list[str]: ...

    def key_frame(
        self,
        input_frame: str,
        output_frame: str,
        color_hex: str,
        similarity: float,
        blend: float,
        cancel: threading.Event | None = None,
    ) -> None: ...

    def reassemble(
        self,
        frame_dir: str,
        fps: int,
        audio_source: str,
        output_path: str,
        encode: EncodeParams,
        cancel: threading.Event | None = None,
    ) -> None: ...

    def encode_single_pass(
        self,
        input_path: str,
        output_path: str,
        fps: int,
        width: int,
        height: int,
        color_hex: str,
        similarity: float,
        blend: float,
        encode: EncodeParams,
        cancel: threading.Event | None = None,
    ) -> None: ...

    def probe(
        self, path: str, cancel: threading.Event | None = None, timeout: float | None = None
    ) -> MediaInfo: ...


def summarize_stderr(stderr: str | None, limit: int = 500) -> str:
    """Last few non-empty stderr lines; ffmpeg puts the actual error at the end."""
    lines = [line.strip() for line in (stderr or "").splitlines() if line.strip()]
    if not lines:
        return "no error output"
    return "\n".join(lines[-5:])[-limit:]


def parse_probe_output(stdout: str | None) -> MediaInfo:
    try:
        data = json.loads(stdout or "")
    except json.JSONDecodeError as e:
        raise ProbeError(f"Unparsable probe output: {e}") from e

    if not isinstance(data, dict):
        raise ProbeError("Unparsable probe output: expected a JSON object")

    fmt = data.get("format") or {}
    try:
        duration = float(fmt["duration"])
    except (KeyError, TypeError, ValueError) as e:
        raise ProbeError("Probe output has no container duration") from e

    video = next(
        (s for s in data.get("streams") or [] if isinstance(s, dict) and s.get("codec_type") == "video"),
        {},
    )
    return MediaInfo(duration=duration, width=video.get("width"), height=video.get("height"))


def _require_positive_ints(**values) -> None:
    for name, value in values.items():
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValueError(f"{name} must be a positive integer, got {value!r}")


def _require_key_params(color_hex: str, similarity: float, blend: float) -> None:
    if not _COLOR_RE.match(color_hex or ""):
        raise ValueError(f"Invalid key color: {color_hex!r}")
    for name, value in (("similarity", similarity), ("blend", blend)):
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"{name} must be within [0, 1], got {value!r}")


class FFmpegTranscoder:
    """Runs ffmpeg/ffprobe as child processes in their own process group."""

    def __init__(
        self,
        ffmpeg_bin: str = "ffmpeg",
        ffprobe_bin: str = "ffprobe",
        timeouts: StageTimeouts | None = None,
        poll_interval: float = 0.25,
    ) -> None:
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.timeouts = timeouts or StageTimeouts()
        self.poll_interval = poll_interval

    @classmethod
    def from_settings(cls, settings: Settings) -> "FFmpegTranscoder":
        return cls(
            ffmpeg_bin=settings.ffmpeg_bin,
            ffprobe_bin=settings.ffprobe_bin,
            timeouts=StageTimeouts.from_settings(settings),
        )

    def extract_frames(self, input_path, output_dir, fps, width, height, cancel=None) -> list[str]:
        """
        Extract a scaled PNG sequence.
        Command: ffmpeg -y -i {input} -vf fps={fps},scale={w}:{h} {output_dir}/%04d.png
        """
        _require_positive_ints(fps=fps, width=width, height=height)
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        cmd = [
            self.ffmpeg_bin, "-y", "-i", str(input_path),
            "-vf", f"fps={fps},scale={width}:{height}",
            str(output_path / FRAME_PATTERN),
        ]
        self._run(cmd, self.timeouts.extract, cancel)

        frames = sorted(f.name for f in output_path.glob("*.png"))
        logger.info("frames_extracted", input_path=str(input_path), frame_count=len(frames))
        return frames

    def key_frame(self, input_frame, output_frame, color_hex, similarity, blend, cancel=None) -> None:
        _require_key_params(color_hex, similarity, blend)
        cmd = [
            self.ffmpeg_bin, "-y", "-i", str(input_frame),
            "-vf", f"chromakey={color_hex}:{similarity}:{blend}",
            str(output_frame),
        ]
        self._run(cmd, self.timeouts.key_frame, cancel)

    def reassemble(self, frame_dir, fps, audio_source, output_path, encode, cancel=None) -> None:
        """Mux the keyed frame sequence with the audio track of ``audio_source`` (if it has one)."""
        _require_positive_ints(fps=fps)
        cmd = [
            self.ffmpeg_bin, "-y",
            "-framerate", str(fps), "-i", str(Path(frame_dir) / FRAME_PATTERN),
            "-i", str(audio_source),
            *encode.video_args(),
            "-map", "0:v", "-map", "1:a?",
            *encode.audio_args(),
            *encode.speed_args(),
            "-f", encode.container,
            str(output_path),
        ]
        self._run(cmd, self.timeouts.reassemble, cancel)

    def encode_single_pass(
        self, input_path, output_path, fps, width, height, color_hex, similarity, blend, encode, cancel=None
    ) -> None:
        _require_positive_ints(fps=fps, width=width, height=height)
        _require_key_params(color_hex, similarity, blend)
        cmd = [
            self.ffmpeg_bin, "-y", "-i", str(input_path),
            "-vf", f"fps={fps},scale={width}:{height},chromakey={color_hex}:{similarity}:{blend}",
            *encode.video_args(),
            *encode.audio_args(),
            *encode.speed_args(),
            "-f", encode.container,
            str(output_path),
        ]
        self._run(cmd, self.timeouts.single_pass, cancel)

    def probe(self, path, cancel=None, timeout=None) -> MediaInfo:
        cmd = [
            self.ffprobe_bin, "-v", "error",
            "-print_format", "json", "-show_format", "-show_streams",
            str(path),
        ]
        stdout = self._run(cmd, timeout if timeout is not None else self.timeouts.probe, cancel)
        return parse_probe_output(stdout)

    def _run(self, cmd: list[str], timeout: float, cancel: threading.Event | None = None) -> str:
        tool = Path(cmd[0]).name
        if cancel is not None and cancel.is_set():
            raise TranscodeCancelled(f"{tool} cancelled before start")

        logger.debug("ffmpeg_started", tool=tool, cmd=" ".join(cmd), timeout=timeout)

        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise FFmpegError(f"{tool} not found: {cmd[0]}") from e

        deadline = time.monotonic() + timeout
        while True:
            wait = min(self.poll_interval, max(0.0, deadline - time.monotonic()))
            try:
                stdout, stderr = proc.communicate(timeout=wait)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    self._kill(proc)
                    logger.info("ffmpeg_cancelled", tool=tool)
                    raise TranscodeCancelled(f"{tool} cancelled")
                if time.monotonic() >= deadline:
                    self._kill(proc)
                    logger.error("ffmpeg_timeout", tool=tool, timeout=timeout)
                    raise TranscodeTimeout(f"{tool} timed out after {timeout:g}s")

        if proc.returncode != 0:
            summary = summarize_stderr(stderr)
            logger.error("ffmpeg_failed", tool=tool, returncode=proc.returncode, stderr=summary)
            raise FFmpegError(f"{tool} failed (exit {proc.returncode}): {summary}")

        return stdout

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        """Kill the whole process group so helpers spawned by the tool die too."""
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        proc.communicate()
