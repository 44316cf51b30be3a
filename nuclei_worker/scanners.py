from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import threading
from dataclasses import dataclass, field

LOGGER = logging.getLogger(__name__)


class ScannerError(RuntimeError):
    pass


class ProcessLaunchError(ScannerError):
    pass


@dataclass
class ProcessResult:
    exit_status: int
    output_lines: list[str] = field(default_factory=list)
    stderr: str = ""
    timed_out: bool = False


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


def build_scan_command(binary: str, target_url: str, rule_category: str) -> list[str]:
    return [binary, target_url, f"{rule_category.rstrip('/')}/"]


def build_update_command(binary: str) -> list[str]:
    return [binary]


def _drain(stream, sink: list[str]) -> None:
    for chunk in stream:
        sink.append(chunk)


def run_command(command: list[str], timeout: float | None = None, env: dict[str, str] | None = None) -> ProcessResult:
    """Run ``command`` and collect its standard output line by line.

    Lines are read as the process writes them, so output flushed in arbitrary
    chunks is still split on line boundaries and kept in emission order. Stderr
    is drained on a separate thread so a chatty child cannot block on a full
    pipe.

    ``timeout`` is optional. When it expires the process is killed and the
    lines already read are returned with ``timed_out`` set.
    """
    LOGGER.info("Executing command: %s", " ".join(command))
    try:
        process = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            env=env or os.environ.copy(),
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=True,
        )
    except OSError as exc:
        raise ProcessLaunchError(f"unable to start {command[0]}: {exc}") from exc

    stderr_chunks: list[str] = []
    stderr_thread = threading.Thread(target=_drain, args=(process.stderr, stderr_chunks), daemon=True)
    stderr_thread.start()

    expired = threading.Event()

    def _kill() -> None:
        if process.poll() is not None:
            return
        LOGGER.warning("Command %s exceeded %ss, killing process group %s", command[0], timeout, process.pid)
        # the launcher script forks the scanner; kill the whole group so the pipe closes
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        expired.set()

    timer = threading.Timer(timeout, _kill) if timeout else None
    if timer is not None:
        timer.daemon = True
        timer.start()

    lines: list[str] = []
    try:
        with process.stdout:
            for line in process.stdout:
                lines.append(line.rstrip("\r\n"))
        exit_status = process.wait()
    finally:
        if timer is not None:
            timer.cancel()
        stderr_thread.join()
        process.stderr.close()

    return ProcessResult(
        exit_status=exit_status,
        output_lines=lines,
        stderr="".join(stderr_chunks),
        timed_out=expired.is_set(),
    )


def run_nuclei_scan(binary: str, target_url: str, rule_category: str, timeout: float | None = None) -> ProcessResult:
    return run_command(build_scan_command(binary, target_url, rule_category), timeout=timeout)


def run_template_update(binary: str, timeout: float | None = None) -> ProcessResult:
    return run_command(build_update_command(binary), timeout=timeout)
