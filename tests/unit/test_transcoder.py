"""
Unit tests for guidance_video/services/transcoder.py

Command construction is checked with a patched Popen; timeout, cancellation and exit
handling run real child processes (the Python interpreter standing in for ffmpeg).
"""

import json
import sys
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from guidance_video.services.transcoder import (
    EncodeParams,
    FFmpegError,
    FFmpegTranscoder,
    ProbeError,
    StageTimeouts,
    TranscodeCancelled,
    TranscodeTimeout,
    parse_probe_output,
    summarize_stderr,
)

SLEEPER = [sys.executable, "-c", "import time; time.sleep(30)"]


def mock_process(returncode: int = 0, stdout: str = "", stderr: str = "") -> MagicMock:
    proc = MagicMock()
    proc.pid = 4242
    proc.returncode = returncode
    proc.communicate.return_value = (stdout, stderr)
    return proc


@pytest.fixture
def transcoder() -> FFmpegTranscoder:
    return FFmpegTranscoder(poll_interval=0.05)


class TestCommandLines:
    """The argument vectors handed to ffmpeg and ffprobe."""

    @pytest.mark.unit
    def test_extract_frames_command(self, transcoder, tmp_path):
        """Extraction resamples and scales into a numbered PNG sequence."""
        out = tmp_path / "frames"
        out.mkdir()
        for i in range(3):
            (out / f"{i + 1:04d}.png").touch()

        with patch("subprocess.Popen", return_value=mock_process()) as popen:
            frames = transcoder.extract_frames("in.webm", str(out), 12, 200, 130)

        cmd = popen.call_args[0][0]
        assert cmd == ["ffmpeg", "-y", "-i", "in.webm", "-vf", "fps=12,scale=200:130", str(out / "%04d.png")]
        assert frames == ["0001.png", "0002.png", "0003.png"]

    @pytest.mark.unit
    def test_extract_frames_creates_output_directory(self, transcoder, tmp_path):
        """Missing output directories are created before ffmpeg runs."""
        out = tmp_path / "nested" / "frames"

        with patch("subprocess.Popen", return_value=mock_process()):
            frames = transcoder.extract_frames("in.webm", str(out), 12, 200, 130)

        assert out.is_dir()
        assert frames == []

    @pytest.mark.unit
    def test_key_frame_command(self, transcoder):
        """Keying applies the chromakey filter with color, similarity and blend."""
        with patch("subprocess.Popen", return_value=mock_process()) as popen:
            transcoder.key_frame("frames/0001.png", "clean/0001.png", "0x00FF00", 0.3, 0.1)

        cmd = popen.call_args[0][0]
        assert cmd == ["ffmpeg", "-y", "-i", "frames/0001.png", "-vf", "chromakey=0x00FF00:0.3:0.1", "clean/0001.png"]

    @pytest.mark.unit
    def test_reassemble_maps_optional_audio(self, transcoder, tmp_path):
        """Reassembly reads the frame sequence and takes audio from the raw input when present."""
        with patch("subprocess.Popen", return_value=mock_process()) as popen:
            transcoder.reassemble(str(tmp_path), 12, "raw.webm", "out.webm", EncodeParams())

        cmd = popen.call_args[0][0]
        assert cmd[cmd.index("-framerate") + 1] == "12"
        assert str(tmp_path / "%04d.png") in cmd
        assert ["-map", "0:v", "-map", "1:a?"] == cmd[cmd.index("-map"):cmd.index("-map") + 4]
        assert cmd[cmd.index("-c:v") + 1] == "libvpx-vp9"
        assert cmd[cmd.index("-pix_fmt") + 1] == "yuva420p"
        assert cmd[cmd.index("-c:a") + 1] == "libopus"
        assert cmd[-3:] == ["-f", "webm", "out.webm"]

    @pytest.mark.unit
    def test_single_pass_filter_chain(self, transcoder):
        """Single pass chains fps, scale and chromakey in that order."""
        encode = EncodeParams(crf=28, audio_bitrate="48k")
        with patch("subprocess.Popen", return_value=mock_process()) as popen:
            transcoder.encode_single_pass("raw.webm", "out.webm", 12, 200, 130, "0x00FF00", 0.3, 0.1, encode)

        cmd = popen.call_args[0][0]
        assert cmd[cmd.index("-vf") + 1] == "fps=12,scale=200:130,chromakey=0x00FF00:0.3:0.1"
        assert cmd[cmd.index("-crf") + 1] == "28"
        assert cmd[cmd.index("-b:a") + 1] == "48k"
        assert cmd[cmd.index("-deadline") + 1] == "good"
        assert cmd[cmd.index("-cpu-used") + 1] == "4"

    @pytest.mark.unit
    def test_probe_parses_json(self, transcoder):
        """Probe returns the container duration and the video stream size."""
        stdout = json.dumps(
            {
                "format": {"duration": "10.04"},
                "streams": [
                    {"codec_type": "audio"},
                    {"codec_type": "video", "width": 200, "height": 130},
                ],
            }
        )
        with patch("subprocess.Popen", return_value=mock_process(stdout=stdout)) as popen:
            info = transcoder.probe("out.webm")

        cmd = popen.call_args[0][0]
        assert cmd[0] == "ffprobe"
        assert "-show_format" in cmd
        assert info.duration == pytest.approx(10.04)
        assert (info.width, info.height) == (200, 130)

    @pytest.mark.unit
    def test_child_runs_in_new_session(self, transcoder):
        """Children get their own process group so a kill reaches helpers too."""
        with patch("subprocess.Popen", return_value=mock_process()) as popen:
            transcoder.key_frame("a.png", "b.png", "0x00FF00", 0.3, 0.1)

        assert popen.call_args.kwargs["start_new_session"] is True

    @pytest.mark.unit
    def test_configured_binaries_are_used(self):
        """Tool paths come from configuration."""
        transcoder = FFmpegTranscoder(ffmpeg_bin="/opt/ffmpeg/bin/ffmpeg", ffprobe_bin="/opt/ffmpeg/bin/ffprobe")
        with patch("subprocess.Popen", return_value=mock_process(stdout='{"format": {"duration": "1"}}')) as popen:
            transcoder.key_frame("a.png", "b.png", "0x00FF00", 0.3, 0.1)
            transcoder.probe("b.webm")

        assert popen.call_args_list[0][0][0][0] == "/opt/ffmpeg/bin/ffmpeg"
        assert popen.call_args_list[1][0][0][0] == "/opt/ffmpeg/bin/ffprobe"


class TestParameterValidation:
    """Invalid parameters are rejected before any process starts."""

    @pytest.mark.unit
    @pytest.mark.parametrize("fps,width,height", [(0, 200, 130), (12, -1, 130), (12, 200, 0), (12.5, 200, 130)])
    def test_rejects_non_positive_dimensions(self, transcoder, tmp_path, fps, width, height):
        with patch("subprocess.Popen") as popen:
            with pytest.raises(ValueError):
                transcoder.extract_frames("in.webm", str(tmp_path), fps, width, height)

        popen.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.parametrize("color", ["", "00FF00", "0xGGGGGG", "0x00FF00; rm -rf /"])
    def test_rejects_bad_key_color(self, transcoder, color):
        with patch("subprocess.Popen") as popen:
            with pytest.raises(ValueError):
                transcoder.key_frame("a.png", "b.png", color, 0.3, 0.1)

        popen.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.parametrize("similarity,blend", [(-0.1, 0.1), (1.5, 0.1), (0.3, 2.0)])
    def test_rejects_out_of_range_key_params(self, transcoder, similarity, blend):
        with pytest.raises(ValueError):
            transcoder.encode_single_pass(
                "raw.webm", "out.webm", 12, 200, 130, "0x00FF00", similarity, blend, EncodeParams()
            )

    @pytest.mark.unit
    @pytest.mark.parametrize("color", ["0x00FF00", "#00ff00", "0x00FF00AA", "green"])
    def test_accepts_ffmpeg_color_forms(self, transcoder, color):
        with patch("subprocess.Popen", return_value=mock_process()):
            transcoder.key_frame("a.png", "b.png", color, 0.0, 1.0)


class TestProcessControl:
    """Exit codes, timeouts and cancellation of real child processes."""

    @pytest.mark.unit
    def test_non_zero_exit_raises_with_stderr_summary(self, transcoder):
        """A failing tool raises FFmpegError carrying the tail of its stderr."""
        cmd = [
            sys.executable, "-c",
            "import sys; sys.stderr.write('banner\\nInvalid data found when processing input\\n'); sys.exit(3)",
        ]
        with pytest.raises(FFmpegError) as exc_info:
            transcoder._run(cmd, timeout=10)

        assert "exit 3" in str(exc_info.value)
        assert "Invalid data found" in str(exc_info.value)

    @pytest.mark.unit
    def test_missing_binary_raises(self):
        """A tool that cannot be started is an FFmpegError, not an OSError."""
        transcoder = FFmpegTranscoder(ffmpeg_bin="/nonexistent/ffmpeg")

        with pytest.raises(FFmpegError) as exc_info:
            transcoder.key_frame("a.png", "b.png", "0x00FF00", 0.3, 0.1)

        assert "not found" in str(exc_info.value)

    @pytest.mark.unit
    def test_timeout_kills_process(self, transcoder):
        """A process exceeding its stage timeout is killed and TranscodeTimeout raised."""
        started = time.monotonic()

        with pytest.raises(TranscodeTimeout) as exc_info:
            transcoder._run(SLEEPER, timeout=0.5)

        assert time.monotonic() - started < 10
        assert "timed out after 0.5s" in str(exc_info.value)

    @pytest.mark.unit
    def test_cancel_kills_running_process(self, transcoder):
        """Setting the cancel event stops a running tool promptly."""
        cancel = threading.Event()
        timer = threading.Timer(0.3, cancel.set)
        timer.start()
        started = time.monotonic()

        try:
            with pytest.raises(TranscodeCancelled):
                transcoder._run(SLEEPER, timeout=30, cancel=cancel)
        finally:
            timer.cancel()

        assert time.monotonic() - started < 10

    @pytest.mark.unit
    def test_cancel_before_start_spawns_nothing(self, transcoder):
        cancel = threading.Event()
        cancel.set()

        with patch("subprocess.Popen") as popen:
            with pytest.raises(TranscodeCancelled):
                transcoder.key_frame("a.png", "b.png", "0x00FF00", 0.3, 0.1, cancel=cancel)

        popen.assert_not_called()

    @pytest.mark.unit
    def test_stage_timeouts_are_applied(self):
        """Each operation uses its own configured timeout."""
        transcoder = FFmpegTranscoder(timeouts=StageTimeouts(key_frame=7, probe=3))

        with patch.object(FFmpegTranscoder, "_run", return_value='{"format": {"duration": "1"}}') as run:
            transcoder.key_frame("a.png", "b.png", "0x00FF00", 0.3, 0.1)
            transcoder.probe("b.webm")
            transcoder.probe("b.webm", timeout=1.5)

        assert [c.args[1] for c in run.call_args_list] == [7, 3, 1.5]


class TestProbeParsing:
    """Unit tests for parse_probe_output and summarize_stderr."""

    @pytest.mark.unit
    def test_missing_duration(self):
        with pytest.raises(ProbeError) as exc_info:
            parse_probe_output('{"format": {}, "streams": []}')

        assert "no container duration" in str(exc_info.value)

    @pytest.mark.unit
    @pytest.mark.parametrize("stdout", ["", "not json", "[1, 2]", None])
    def test_unparsable_output(self, stdout):
        with pytest.raises(ProbeError):
            parse_probe_output(stdout)

    @pytest.mark.unit
    def test_audio_only_file_has_no_dimensions(self):
        info = parse_probe_output('{"format": {"duration": "2.5"}, "streams": [{"codec_type": "audio"}]}')

        assert info.duration == 2.5
        assert info.width is None and info.height is None

    @pytest.mark.unit
    def test_summarize_keeps_last_lines(self):
        stderr = "\n".join(f"line {i}" for i in range(20))

        assert summarize_stderr(stderr) == "\n".join(f"line {i}" for i in range(15, 20))

    @pytest.mark.unit
    def test_summarize_empty(self):
        assert summarize_stderr("") == "no error output"
        assert summarize_stderr(None) == "no error output"

    @pytest.mark.unit
    def test_summarize_is_bounded(self):
        assert len(summarize_stderr("x" * 5000)) == 500
