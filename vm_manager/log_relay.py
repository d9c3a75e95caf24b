"""Container log relay: tail, filter, sanitize and stream process output."""

import asyncio
import codecs
import json
import logging
import re
from typing import AsyncIterator, Optional

from vm_manager.docker_client import DockerClient
from vm_manager.errors import VMManagerError
from vm_manager.runtime import run_blocking
from vm_manager.workloads import NOISE_PATTERNS, PHASE_DOWNLOAD, get_profile, phase_of, workload_of

logger = logging.getLogger(__name__)

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]|\x1b\][^\x07]*\x07")
# Control characters other than tab, newline and carriage return
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
TIMESTAMP_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?Z\s")
STEAMCMD_PROGRESS = re.compile(r"progress:\s*(\d+(?:\.\d+)?)")
STEAMCMD_SUCCESS = re.compile(r"Success! App '\d+' fully installed")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes (color/formatting) from text."""
    return ANSI_ESCAPE.sub("", text)


def sanitize_line(line: str) -> str:
    """Drop escape sequences and control characters outside tab/newline/CR."""
    return CONTROL_CHARS.sub("", strip_ansi_codes(line))


def frame_event(event_type: str, message: str) -> str:
    """One server-sent-event frame carrying {"type", "message"} as JSON.

    json.dumps escapes backslash, double quote, newline, carriage return and
    tab, so the frame always occupies a single data line.
    """
    payload = json.dumps({"type": event_type, "message": message}, ensure_ascii=False)
    return f"data: {payload}\n\n"


def is_informational(line: str, markers: tuple[str, ...]) -> bool:
    """Allow-list check for one log line (timestamp prefix ignored)."""
    body = TIMESTAMP_PREFIX.sub("", line).strip()
    if not body:
        return False
    if any(pattern.search(body) for pattern in NOISE_PATTERNS):
        return False
    return any(marker in body for marker in markers)


def filter_lines(text: str, markers: tuple[str, ...]) -> str:
    kept = [line for line in text.splitlines() if is_informational(line, markers)]
    return "\n".join(kept)


def download_progress(text: str) -> tuple[Optional[float], bool]:
    """Parse steamcmd output.

    Returns:
        Tuple of (last reported percent or None, install finished).
    """
    if STEAMCMD_SUCCESS.search(text):
        return 100.0, True
    matches = STEAMCMD_PROGRESS.findall(text)
    if not matches:
        return None, False
    return min(float(matches[-1]), 100.0), False


class LogRelay:
    """Reads container output for the tail and console endpoints."""

    def __init__(self, docker_client: DockerClient, timeout: float = 30.0):
        self.docker = docker_client
        self.timeout = timeout

    async def tail(self, container_id: str, lines: int = 100, raw: bool = False) -> str:
        """Last ``lines`` lines of combined output with timestamps.

        Unless ``raw`` is set, lines of a game-serving container are reduced
        to known informational markers for its workload type.
        """
        logs = await run_blocking(
            self.docker.get_container_logs, container_id, tail=lines, timeout=self.timeout
        )
        logs = strip_ansi_codes(logs).rstrip("\n")
        if raw or not logs:
            return logs

        attrs = await run_blocking(self.docker.inspect_container, container_id, timeout=self.timeout)
        workload = workload_of(attrs)
        if workload is None or phase_of(attrs) == PHASE_DOWNLOAD:
            return logs
        return filter_lines(logs, get_profile(workload).log_markers)

    async def stream(self, container_id: str) -> AsyncIterator[str]:
        """Follow a container's output as framed events, one per line.

        Runs until the consumer stops iterating; closing the generator closes
        the runtime's follow-read. A read error ends the stream with one
        error event.
        """
        try:
            follow = await run_blocking(self.docker.follow_logs, container_id, timeout=self.timeout)
        except VMManagerError as e:
            yield frame_event("error", e.message)
            return

        logger.info(f"Console stream opened for {container_id}")
        yield frame_event("connected", f"Connected to {container_id}")
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        try:
            while True:
                chunk = await asyncio.to_thread(next, follow, None)
                if chunk is None:
                    break
                pending += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
                *complete, pending = pending.split("\n")
                for line in complete:
                    yield frame_event("log", sanitize_line(line.rstrip("\r")))
            pending += decoder.decode(b"", final=True)
            if pending:
                yield frame_event("log", sanitize_line(pending))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Log stream for {container_id} failed: {e}")
            yield frame_event("error", f"Log stream failed: {e}")
        finally:
            try:
                follow.close()
            except Exception as e:
                logger.debug(f"Closing log stream for {container_id} raised: {e}")
            logger.info(f"Console stream closed for {container_id}")
