"""FFmpeg runner with process isolation, timeout enforcement, and progress monitoring.

This module is the transcoding tool used by the task executors. It builds the
transcode and thumbnail command lines, runs ffmpeg in a child process and
turns the outcome into an FfmpegResult.

Key Features:
- Process isolation with subprocess.Popen
- Dual timeout enforcement (global + no-progress)
- Progress parsed from ``-progress pipe:2`` into a side channel
  (debug logging and an optional callback; job progress stays coarse)
- Process tree cleanup with psutil
- Error classification (permanent vs transient) for diagnostics
- Artifact preservation on failure
"""

import logging
import os
import re
import shlex
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import imageio_ffmpeg
import psutil

from .profiles import QualityProfile

logger = logging.getLogger(__name__)

# Lines of ffmpeg's -progress output; everything else on stderr is diagnostics
PROGRESS_KEYS = (
    "frame", "fps", "stream_0_0_q", "bitrate", "total_size", "out_time_us",
    "out_time_ms", "out_time", "dup_frames", "drop_frames", "speed", "progress",
)

OUT_TIME_RE = re.compile(r"out_time=(\d+):(\d+):(\d+)\.(\d+)")
FRAME_RE = re.compile(r"frame=\s*(\d+)")
FPS_RE = re.compile(r"fps=\s*([\d.]+)")
BITRATE_RE = re.compile(r"bitrate=\s*([\d.]+)kbits/s")
SPEED_RE = re.compile(r"speed=\s*([\d.]+)x")

# Fixed x264/aac encode settings shared by every quality tier
ENCODE_ARGS = [
    "-c:v", "libx264",
    "-preset", "medium",
    "-crf", "23",
    "-c:a", "aac",
    "-b:a", "128k",
    "-movflags", "+faststart",
]


class FfmpegErrorType(Enum):
    """FFmpeg failure classification."""
    PERMANENT = "permanent"     # File not found, invalid format, codec error
    TRANSIENT = "transient"     # I/O error, disk full
    TIMEOUT = "timeout"         # Global or no-progress timeout


@dataclass
class FfmpegProgress:
    """Latest progress metrics reported by ffmpeg."""
    current_time_s: float = 0.0
    fps: float = 0.0
    bitrate_kbps: float = 0.0
    speed: float = 0.0
    frame: int = 0
    last_update: float = 0.0     # time.monotonic() of the last progress line


@dataclass
class FfmpegResult:
    """Result of one ffmpeg execution."""
    success: bool
    returncode: int
    stderr: str
    duration_s: float
    error_type: Optional[FfmpegErrorType] = None
    timeout_reason: Optional[str] = None
    final_progress: Optional[FfmpegProgress] = None
    artifacts_saved: List[Path] = field(default_factory=list)

    def error_summary(self, max_lines: int = 3) -> str:
        """Short human-readable reason for a failed run."""
        if self.timeout_reason:
            return self.timeout_reason
        lines = [line.strip() for line in self.stderr.splitlines() if line.strip()]
        if lines:
            return " | ".join(lines[-max_lines:])
        return f"ffmpeg exited with status {self.returncode}"


class FfmpegRunner:
    """FFmpeg orchestration with timeouts and zombie prevention.

    Example:
        >>> runner = FfmpegRunner(global_timeout_s=1800, no_progress_timeout_s=120)
        >>> result = runner.transcode("in.mov", "out.mp4", quality_profile("720p"))
        >>> if not result.success:
        ...     print(result.error_type, result.error_summary())
    """

    def __init__(
        self,
        global_timeout_s: int = 1800,
        no_progress_timeout_s: int = 120,
        kill_grace_period_s: int = 5,
        save_artifacts_on_failure: bool = False,
        artifacts_dir: Optional[str] = None,
        ffmpeg_loglevel: str = "error",
        ffmpeg_path: Optional[str] = None,
        thumbnail_size: tuple = (320, 240),
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
    ):
        """Initialize FFmpeg runner.

        Args:
            global_timeout_s: Maximum duration for any ffmpeg operation
            no_progress_timeout_s: Kill ffmpeg if no progress update in N seconds
            kill_grace_period_s: Grace period between terminate and kill
            save_artifacts_on_failure: Save command and stderr of failed runs
            artifacts_dir: Where failure artifacts go (system temp if None)
            ffmpeg_loglevel: ffmpeg -loglevel (error, warning, info)
            ffmpeg_path: ffmpeg executable (bundled imageio-ffmpeg binary if None)
            thumbnail_size: (width, height) of extracted thumbnails
            progress_callback: Optional callback for progress updates
        """
        self.global_timeout_s = global_timeout_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.artifacts_dir = artifacts_dir
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.ffmpeg_path = ffmpeg_path
        self.thumbnail_size = thumbnail_size
        self.progress_callback = progress_callback

        self._progress = FfmpegProgress()

    @classmethod
    def from_config(
        cls,
        ffmpeg_config,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
    ) -> "FfmpegRunner":
        """Build a runner from the ``ffmpeg`` config section."""
        return cls(
            progress_callback=progress_callback,
            global_timeout_s=ffmpeg_config.global_timeout_s,
            no_progress_timeout_s=ffmpeg_config.no_progress_timeout_s,
            save_artifacts_on_failure=ffmpeg_config.save_artifacts_on_failure,
            artifacts_dir=ffmpeg_config.artifacts_dir,
            ffmpeg_loglevel=ffmpeg_config.loglevel,
            ffmpeg_path=ffmpeg_config.ffmpeg_path,
            thumbnail_size=(ffmpeg_config.thumbnail_width, ffmpeg_config.thumbnail_height),
        )

    def transcode_command(self, input_path: str, output_path: str, profile: QualityProfile) -> List[str]:
        return (
            [self.get_ffmpeg_exe(), "-i", str(input_path)]
            + ENCODE_ARGS
            + profile.ffmpeg_args()
            + self._common_args()
            + ["-y", str(output_path)]
        )

    def thumbnail_command(self, input_path: str, output_path: str) -> List[str]:
        width, height = self.thumbnail_size
        return (
            [self.get_ffmpeg_exe(), "-i", str(input_path)]
            + ["-vf", f"thumbnail,scale={width}:{height}", "-frames:v", "1", "-q:v", "2"]
            + self._common_args()
            + ["-y", str(output_path)]
        )

    def transcode(self, input_path: str, output_path: str, profile: QualityProfile) -> FfmpegResult:
        """Transcode ``input_path`` to an H.264/AAC MP4 using ``profile``."""
        return self._run_ffmpeg(self.transcode_command(input_path, output_path, profile))

    def extract_thumbnail(self, input_path: str, output_path: str) -> FfmpegResult:
        """Write a single representative JPEG frame of ``input_path``."""
        return self._run_ffmpeg(self.thumbnail_command(input_path, output_path))

    def _common_args(self) -> List[str]:
        return ["-progress", "pipe:2", "-nostats", "-loglevel", self.ffmpeg_loglevel]

    def _run_ffmpeg(self, cmd: List[str]) -> FfmpegResult:
        """Execute ffmpeg, enforcing both timeouts.

        stderr carries the progress stream and diagnostics; a monitor thread
        splits them while the calling thread watches the deadlines.
        """
        start = time.monotonic()
        self._progress = FfmpegProgress(last_update=start)
        diagnostics: List[str] = []

        logger.debug("Running: %s", " ".join(shlex.quote(arg) for arg in cmd))
        process = subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
            bufsize=1,
        )
        monitor = threading.Thread(
            target=self._monitor_progress,
            args=(process.stderr, diagnostics),
            daemon=True,
        )
        monitor.start()

        timeout_reason = None
        try:
            while True:
                try:
                    process.wait(timeout=0.5)
                    break
                except subprocess.TimeoutExpired:
                    pass

                now = time.monotonic()
                if now - start > self.global_timeout_s:
                    timeout_reason = f"global timeout after {self.global_timeout_s}s"
                elif now - self._progress.last_update > self.no_progress_timeout_s:
                    timeout_reason = f"no progress for {self.no_progress_timeout_s}s"
                if timeout_reason:
                    logger.warning("Killing ffmpeg (pid %d): %s", process.pid, timeout_reason)
                    self._kill_process_tree(process)
                    break
        except BaseException:
            self._kill_process_tree(process)
            raise
        finally:
            monitor.join(timeout=2)

        returncode = process.returncode if process.returncode is not None else -1
        stderr = "\n".join(diagnostics)
        success = returncode == 0 and timeout_reason is None

        error_type = None
        if timeout_reason:
            error_type = FfmpegErrorType.TIMEOUT
        elif not success:
            error_type = self._classify_error(stderr)

        artifacts = []
        if not success and self.save_artifacts_on_failure:
            artifacts = self._save_failure_artifacts(cmd, stderr)

        return FfmpegResult(
            success=success,
            returncode=returncode,
            stderr=stderr,
            duration_s=time.monotonic() - start,
            error_type=error_type,
            timeout_reason=timeout_reason,
            final_progress=self._progress,
            artifacts_saved=artifacts,
        )

    def _monitor_progress(self, stderr_stream, diagnostics: List[str]) -> None:
        """Parse ffmpeg's progress lines; keep the rest as diagnostics.

        Progress format (one key per line):
            frame=123
            fps=25.00
            bitrate=1234.5kbits/s
            out_time=00:00:05.123456
            speed=2.5x
            progress=continue
        """
        for line in stderr_stream:
            line = line.rstrip("\n")
            key = line.split("=", 1)[0].strip()
            if key not in PROGRESS_KEYS:
                diagnostics.append(line)
                continue

            self._progress.last_update = time.monotonic()

            match = OUT_TIME_RE.search(line)
            if match:
                h, m, s, frac = match.groups()
                self._progress.current_time_s = (
                    int(h) * 3600 + int(m) * 60 + int(s) + float(f"0.{frac}")
                )
            match = FRAME_RE.search(line)
            if match:
                self._progress.frame = int(match.group(1))
            match = FPS_RE.search(line)
            if match:
                self._progress.fps = float(match.group(1))
            match = BITRATE_RE.search(line)
            if match:
                self._progress.bitrate_kbps = float(match.group(1))
            match = SPEED_RE.search(line)
            if match:
                self._progress.speed = float(match.group(1))

            if key == "progress":
                logger.debug(
                    "ffmpeg progress: t=%.1fs frame=%d fps=%.1f speed=%.2fx",
                    self._progress.current_time_s, self._progress.frame,
                    self._progress.fps, self._progress.speed,
                )
                if self.progress_callback:
                    try:
                        self.progress_callback(self._progress)
                    except Exception as e:
                        logger.warning("Progress callback error: %s", e)

    def _kill_process_tree(self, process: subprocess.Popen) -> None:
        """Terminate ffmpeg and its children, then kill survivors after the grace period."""
        try:
            parent = psutil.Process(process.pid)
        except psutil.NoSuchProcess:
            return

        procs = parent.children(recursive=True) + [parent]
        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            process.wait(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            logger.error("ffmpeg (pid %d) did not exit after kill", process.pid)

    def _classify_error(self, stderr: str) -> FfmpegErrorType:
        stderr_lower = stderr.lower()

        permanent_patterns = [
            "no such file or directory",
            "invalid data found",
            "invalid argument",
            "permission denied",
            "unsupported codec",
            "invalid codec",
            "moov atom not found",
            "end of file",
            "corrupt",
        ]
        for pattern in permanent_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.PERMANENT

        transient_patterns = [
            "i/o error",
            "connection refused",
            "connection timeout",
            "resource temporarily unavailable",
            "no space left on device",
            "disk full",
        ]
        for pattern in transient_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.TRANSIENT

        return FfmpegErrorType.TRANSIENT

    def _save_failure_artifacts(self, cmd: List[str], stderr: str) -> List[Path]:
        """Save the command and stderr of a failed run.

        Creates:
        - ffmpeg_error_{timestamp}_{pid}.log: command + stderr
        - ffmpeg_cmd_{timestamp}_{pid}.sh: reproducible command script
        """
        artifacts = []
        out_dir = Path(self.artifacts_dir) if self.artifacts_dir else Path(tempfile.gettempdir())
        stamp = f"{int(time.time())}_{os.getpid()}"

        try:
            out_dir.mkdir(parents=True, exist_ok=True)

            log_path = out_dir / f"ffmpeg_error_{stamp}.log"
            with open(log_path, "w") as f:
                f.write(f"Timestamp: {time.ctime()}\n")
                f.write(f"PID: {os.getpid()}\n\n")
                f.write("COMMAND:\n")
                f.write(" ".join(cmd) + "\n\n")
                f.write("STDERR:\n")
                f.write((stderr or "(empty)") + "\n")
            artifacts.append(log_path)

            script_path = out_dir / f"ffmpeg_cmd_{stamp}.sh"
            with open(script_path, "w") as f:
                f.write("#!/bin/bash\n")
                f.write("# Reproducible FFmpeg command\n\n")
                f.write(" \\\n  ".join(shlex.quote(arg) for arg in cmd) + "\n")
            script_path.chmod(0o755)
            artifacts.append(script_path)
        except OSError as e:
            logger.warning("Failed to save ffmpeg failure artifacts: %s", e)

        if artifacts:
            logger.info("Saved ffmpeg failure artifacts: %s", ", ".join(str(p) for p in artifacts))
        return artifacts

    def get_ffmpeg_exe(self) -> str:
        """Get FFmpeg executable path."""
        if self.ffmpeg_path:
            return self.ffmpeg_path
        return imageio_ffmpeg.get_ffmpeg_exe()


def check_ffmpeg(ffmpeg_path: Optional[str] = None) -> bool:
    """Verify the ffmpeg executable exists and runs."""
    try:
        exe = ffmpeg_path or imageio_ffmpeg.get_ffmpeg_exe()
        subprocess.run(
            [exe, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
        return True
    except (RuntimeError, subprocess.CalledProcessError, OSError):
        return False
