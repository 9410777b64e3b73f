"""
FFmpeg transcoding pipeline for podradio.

One ffmpeg process per playback attempt. The remote enclosure is fetched with
httpx and copied into ffmpeg stdin by a feeder thread; ffmpeg emits Ogg/Opus
on stdout, which the voice sink reads through PipelineHandle.read().

Seek policy (chosen per input container):
- mp3: input seeking (-ss before -i). Cheap, and MP3 frames resynchronise
  on their own, so imprecision is bounded to a single frame.
- anything else (mp4/aac/unknown): output seeking (-ss after -i). Exact, but
  ffmpeg decodes everything up to the offset before emitting the first byte.
  The startup watchdog window is sized for this slower path.
"""

import asyncio
import logging
import os
import signal
import subprocess
import threading
from typing import Callable, List, Optional

import httpx

from podradio.errors import PipelineStartError, PipelineStreamError

logger = logging.getLogger(__name__)

FETCH_USER_AGENT = "Mozilla/5.0 (PodcastPlayer/1.0; +https://discord.com)"
FETCH_ACCEPT = "audio/mpeg,audio/*;q=0.9,*/*;q=0.8"
FETCH_TIMEOUT_SEC = 60.0
FETCH_MAX_REDIRECTS = 5

READ_CHUNK_SIZE = 8192
EXIT_WAIT_SEC = 2.0
SAMPLE_RATE = 48000

SEEK_INPUT = "input"
SEEK_OUTPUT = "output"


def infer_input_format(content_type: Optional[str]) -> Optional[str]:
    """
    Map an HTTP Content-Type to an ffmpeg demuxer name.

    Returns:
        "mp3", "mp4", or None to let ffmpeg probe the stream
    """
    ct = (content_type or "").lower()
    if "mpeg" in ct:
        return "mp3"
    if "x-m4a" in ct or "mp4" in ct or "aac" in ct:
        return "mp4"
    return None


def seek_policy(input_format: Optional[str]) -> str:
    """Input seeking for mp3, output seeking for every other container."""
    return SEEK_INPUT if input_format == "mp3" else SEEK_OUTPUT


def build_ffmpeg_cmd(
    input_format: Optional[str],
    offset_ms: int = 0,
    ffmpeg_path: str = "ffmpeg",
    bitrate: str = "96k",
    channels: int = 2,
    application: str = "audio",
) -> List[str]:
    """
    Build the ffmpeg command line for one playback attempt.

    Args:
        input_format: Demuxer name from infer_input_format(), or None
        offset_ms: Start offset within the episode
        ffmpeg_path: ffmpeg binary
        bitrate: Opus bitrate (e.g. "96k")
        channels: Output channel count
        application: Opus application profile

    Returns:
        Argument list suitable for subprocess.Popen
    """
    cmd = [ffmpeg_path, "-hide_banner", "-loglevel", "warning"]

    seek_args: List[str] = []
    if offset_ms > 0:
        seek_args = ["-ss", f"{offset_ms / 1000.0:.3f}"]

    policy = seek_policy(input_format)
    if policy == SEEK_INPUT:
        cmd += seek_args
    if input_format:
        cmd += ["-f", input_format]
    cmd += ["-i", "pipe:0"]
    if policy == SEEK_OUTPUT:
        cmd += seek_args

    cmd += [
        "-vn",
        "-ac", str(channels),
        "-ar", str(SAMPLE_RATE),
        "-c:a", "libopus",
        "-b:a", bitrate,
        "-application", application,
        "-f", "ogg",
        "pipe:1",
    ]
    return cmd


class PipelineHandle:
    """
    Ownership of one live ffmpeg process and the HTTP stream feeding it.

    The first non-empty read() fires on_first_bytes exactly once. kill() is
    the only cancellation primitive; it is idempotent and safe on a process
    that already exited.

    A stream that reaches EOF because the HTTP body broke or ffmpeg exited
    non-zero reports why through `error`.
    """

    def __init__(
        self,
        proc: subprocess.Popen,
        response: httpx.Response,
        locator: str,
        offset_ms: int = 0,
        input_format: Optional[str] = None,
        on_first_bytes: Optional[Callable[[], None]] = None,
        chunk_size: int = READ_CHUNK_SIZE,
    ):
        self.proc = proc
        self.locator = locator
        self.offset_ms = offset_ms
        self.input_format = input_format
        self._response = response
        self._on_first_bytes = on_first_bytes
        self._chunk_size = chunk_size

        self._lock = threading.Lock()
        self._killed = False
        self._first_bytes_seen = False
        self._feed_error: Optional[Exception] = None
        self._exit_code: Optional[int] = None
        self._feeder_thread: Optional[threading.Thread] = None
        self._stderr_thread: Optional[threading.Thread] = None

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def alive(self) -> bool:
        return not self._killed and self.proc.poll() is None

    @property
    def first_bytes_received(self) -> bool:
        return self._first_bytes_seen

    @property
    def error(self) -> Optional[Exception]:
        """Why the stream ended early, or None for a clean end or a kill."""
        if self._killed:
            return None
        if self._feed_error is not None:
            return self._feed_error
        if self._exit_code:
            return PipelineStreamError(self.locator, f"ffmpeg exited with code {self._exit_code}")
        return None

    def start_io_threads(self) -> None:
        """Start the stdin feeder and the stderr drain."""
        self._feeder_thread = threading.Thread(
            target=self._feed_stdin,
            name=f"pipeline-feeder-{self.pid}",
            daemon=True,
        )
        self._feeder_thread.start()

        if self.proc.stderr is not None:
            self._stderr_thread = threading.Thread(
                target=self._drain_stderr,
                name=f"pipeline-stderr-{self.pid}",
                daemon=True,
            )
            self._stderr_thread.start()

    def read(self, size: int) -> bytes:
        """
        Read encoded audio from ffmpeg stdout.

        Called from the voice sink's reader thread. Returns b"" at EOF and
        after the handle has been killed. At EOF the ffmpeg exit code is
        collected so `error` can tell a failed stream from a finished one.
        """
        stdout = self.proc.stdout
        if stdout is None or self._killed:
            return b""
        try:
            data = stdout.read(size)
        except (OSError, ValueError):
            data = b""

        if not data:
            self._collect_exit_code()
            return b""

        if not self._first_bytes_seen:
            self._first_bytes_seen = True
            logger.debug(f"[PIPELINE] First bytes received (pid={self.pid})")
            if self._on_first_bytes is not None:
                try:
                    self._on_first_bytes()
                except Exception as e:
                    logger.error(f"[PIPELINE] first-bytes callback failed: {e}", exc_info=True)
        return data

    def kill(self) -> None:
        """
        Forcefully terminate ffmpeg and release its I/O.

        ffmpeg runs in its own process group, so the whole group is killed.
        Safe to call any number of times from any thread.
        """
        with self._lock:
            if self._killed:
                return
            self._killed = True

        proc = self.proc
        if proc.poll() is None:
            try:
                os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
                logger.debug(f"[PIPELINE] SIGKILL sent (pid={proc.pid})")
            except ProcessLookupError:
                logger.debug(f"[PIPELINE] ffmpeg already exited (pid={proc.pid})")
            except OSError as e:
                logger.warning(f"[PIPELINE] killpg failed (pid={proc.pid}): {e}, killing process only")
                try:
                    proc.kill()
                except OSError:
                    pass
            threading.Thread(
                target=self._reap_killed,
                name=f"pipeline-reaper-{proc.pid}",
                daemon=True,
            ).start()

        for stream in (proc.stdout, proc.stderr):
            if stream is not None:
                try:
                    stream.close()
                except (OSError, ValueError):
                    pass

        self._response.close()

    def _feed_stdin(self) -> None:
        """Copy the HTTP body into ffmpeg stdin until EOF, error, or kill."""
        stdin = self.proc.stdin
        if stdin is None:
            return
        try:
            for chunk in self._response.iter_bytes(self._chunk_size):
                if self._killed:
                    break
                stdin.write(chunk)
        except (BrokenPipeError, ValueError, OSError):
            logger.debug(f"[PIPELINE] ffmpeg stdin closed (pid={self.pid})")
        except (httpx.HTTPError, httpx.StreamError) as e:
            if not self._killed:
                self._feed_error = e
                logger.error(f"[PIPELINE] HTTP stream error: {e}")
        finally:
            try:
                stdin.close()
            except (OSError, ValueError):
                pass
            self._response.close()

    def _collect_exit_code(self) -> None:
        if self._killed or self._exit_code is not None:
            return
        try:
            self._exit_code = self.proc.wait(timeout=EXIT_WAIT_SEC)
        except subprocess.TimeoutExpired:
            logger.warning(f"[PIPELINE] ffmpeg still running after end of output (pid={self.pid})")
            return
        if self._exit_code:
            logger.warning(f"[PIPELINE] ffmpeg exited with code {self._exit_code} (pid={self.pid})")

    def _reap_killed(self) -> None:
        try:
            self.proc.wait(timeout=EXIT_WAIT_SEC)
        except subprocess.TimeoutExpired:
            logger.error(f"[PIPELINE] ffmpeg did not exit after SIGKILL (pid={self.pid})")

    def _drain_stderr(self) -> None:
        stderr = self.proc.stderr
        try:
            for raw in iter(stderr.readline, b""):
                line = raw.decode("utf-8", errors="replace").strip()
                if line:
                    logger.info(f"[ffmpeg] {line}")
        except (OSError, ValueError):
            pass


class FFmpegPipeline:
    """
    Factory for PipelineHandle instances.

    start() is split into open_source() and spawn() so that callers can drop a
    stale attempt after the (slow) HTTP open without ever spawning ffmpeg.
    """

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        bitrate: str = "96k",
        channels: int = 2,
        application: str = "audio",
        http_client: Optional[httpx.Client] = None,
        fetch_timeout_sec: float = FETCH_TIMEOUT_SEC,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.bitrate = bitrate
        self.channels = channels
        self.application = application
        self._http = http_client or httpx.Client(
            follow_redirects=True,
            max_redirects=FETCH_MAX_REDIRECTS,
            timeout=fetch_timeout_sec,
            headers={"User-Agent": FETCH_USER_AGENT, "Accept": FETCH_ACCEPT},
        )

    async def start(
        self,
        locator: str,
        offset_ms: int = 0,
        on_first_bytes: Optional[Callable[[], None]] = None,
    ) -> PipelineHandle:
        """Open the source and spawn ffmpeg seeking to offset_ms."""
        response = await self.open_source(locator)
        return self.spawn(response, locator, offset_ms, on_first_bytes)

    async def open_source(self, locator: str) -> httpx.Response:
        """
        Open a streaming GET for the enclosure in a worker thread.

        Raises:
            PipelineStartError: On transport errors or an error status
        """
        return await asyncio.to_thread(self._open_source, locator)

    def spawn(
        self,
        response: httpx.Response,
        locator: str,
        offset_ms: int = 0,
        on_first_bytes: Optional[Callable[[], None]] = None,
    ) -> PipelineHandle:
        """
        Spawn ffmpeg for an already opened source.

        The response is owned by the returned handle; on failure it is closed
        here.

        Raises:
            PipelineStartError: If ffmpeg cannot be spawned
        """
        input_format = infer_input_format(response.headers.get("content-type"))
        cmd = build_ffmpeg_cmd(
            input_format,
            offset_ms,
            ffmpeg_path=self.ffmpeg_path,
            bitrate=self.bitrate,
            channels=self.channels,
            application=self.application,
        )
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                preexec_fn=os.setsid,
            )
        except OSError as e:
            response.close()
            raise PipelineStartError(locator, f"ffmpeg spawn failed: {e}") from e

        handle = PipelineHandle(
            proc,
            response,
            locator,
            offset_ms=offset_ms,
            input_format=input_format,
            on_first_bytes=on_first_bytes,
        )
        handle.start_io_threads()
        logger.info(
            f"[PIPELINE] ffmpeg started (pid={proc.pid}, format={input_format or 'probe'}, "
            f"seek={seek_policy(input_format)}, offset_ms={offset_ms})"
        )
        return handle

    def close(self) -> None:
        self._http.close()

    def _open_source(self, locator: str) -> httpx.Response:
        request = self._http.build_request("GET", locator, headers={"Range": "bytes=0-"})
        try:
            response = self._http.send(request, stream=True)
        except httpx.HTTPError as e:
            raise PipelineStartError(locator, f"source request failed: {e}") from e

        if response.is_error:
            status = response.status_code
            response.close()
            raise PipelineStartError(locator, f"source returned HTTP {status}")
        return response
