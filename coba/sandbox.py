"""Containerised command execution for the executeCommand tool.

Commands run inside a throwaway Docker container with the workDir mounted at
/data (read-only unless the caller asks for a read-write mount). The image is
built on first use from the inline Dockerfile below.
"""

import logging
import os
import shlex
import shutil
import signal
import subprocess
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

DOCKER_IMAGE = "coba-sandbox:0"
DOCKERFILE = """\
FROM debian:bookworm-slim
RUN apt-get update \\
 && apt-get install -y --no-install-recommends \\
      ca-certificates git jq curl grep tree python3 \\
 && rm -rf /var/lib/apt/lists/*
WORKDIR /data
"""

COMMAND_TIMEOUT = 30  # seconds, enforced inside the container by timeout(1)
HOST_GRACE = 15  # extra seconds before the host kills the docker client
BUILD_TIMEOUT = 600
MAX_STREAM_BYTES = 50 * 1024  # per stream
TIMEOUT_EXIT_CODE = 124
DOCKER_ERROR_EXIT_CODE = 125
_KILL_WAIT_TIMEOUT = 5

NO_OUTPUT = "Command executed successfully with no output."


class SandboxError(Exception):
    """The sandbox itself could not be prepared or started."""


def _truncate(data: bytes) -> str:
    text = data[:MAX_STREAM_BYTES].decode("utf-8", errors="replace")
    if len(data) > MAX_STREAM_BYTES:
        text += "\n[output truncated at 50KB]"
    return text


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill the docker client process group, then wait for it to exit."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except OSError:
        pass  # already exited
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass


def format_output(stdout: str, stderr: str) -> str:
    parts = []
    if stdout.strip():
        parts.append(f"STDOUT:\n{stdout}")
    if stderr.strip():
        parts.append(f"STDERR:\n{stderr}")
    return "\n\n".join(parts)


class Sandbox:
    """Runs commands in a Docker container rooted at a host directory."""

    def __init__(
        self,
        image: str = DOCKER_IMAGE,
        timeout: int = COMMAND_TIMEOUT,
        docker: str = "docker",
    ):
        self.image = image
        self.timeout = timeout
        self.docker = docker
        self._ready = False
        self._lock = threading.Lock()

    def _docker_path(self) -> str:
        found = shutil.which(self.docker)
        if found is None:
            raise SandboxError(f"{self.docker!r} executable not found on PATH")
        return found

    def ensure_image(self) -> str:
        """Build the sandbox image once per process. Returns the docker path."""
        docker = self._docker_path()
        with self._lock:
            if self._ready:
                return docker
            logger.debug("Building sandbox image %s", self.image)
            try:
                proc = subprocess.run(
                    [docker, "build", "-q", "-t", self.image, "-"],
                    input=DOCKERFILE.encode(),
                    capture_output=True,
                    timeout=BUILD_TIMEOUT,
                )
            except subprocess.TimeoutExpired as exc:
                raise SandboxError(
                    f"building image {self.image} timed out after {BUILD_TIMEOUT}s"
                ) from exc
            except OSError as exc:
                raise SandboxError(f"failed to run docker build: {exc}") from exc
            if proc.returncode != 0:
                detail = proc.stderr.decode("utf-8", errors="replace").strip()
                raise SandboxError(f"failed to build image {self.image}: {detail}")
            self._ready = True
        return docker

    def _exec(self, argv: list[str]) -> tuple[int | None, bytes, bytes]:
        """Run the docker client. Returns (exit code or None on host timeout, stdout, stderr)."""
        proc = subprocess.Popen(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            start_new_session=True,
        )
        try:
            stdout, stderr = proc.communicate(timeout=self.timeout + HOST_GRACE)
        except subprocess.TimeoutExpired:
            _kill_process_tree(proc)
            stdout, stderr = proc.communicate()
            return None, stdout or b"", stderr or b""
        return proc.returncode, stdout, stderr

    def run(self, command: str, args: list[str], root: Path, mount: str = "ro") -> str:
        """Execute ``command args`` with ``root`` mounted at /data.

        Never raises: every outcome is reported as text.
        """
        display = shlex.join([command, *args])
        try:
            docker = self.ensure_image()
            volume = f"{root}:/data" if mount == "rw" else f"{root}:/data:ro"
            argv = [
                docker, "run", "--rm",
                "-v", volume,
                "-w", "/data",
                self.image,
                "timeout", str(self.timeout),
                command, *args,
            ]  # fmt: skip
            logger.debug("sandbox: %s", shlex.join(argv))
            code, out, err = self._exec(argv)
        except (SandboxError, OSError) as exc:
            return f"ERROR: Tool `executeCommand` failed unexpectedly: {exc}"

        stdout, stderr = _truncate(out), _truncate(err)
        output = format_output(stdout, stderr)

        if code == DOCKER_ERROR_EXIT_CODE:
            return (
                "ERROR: Tool `executeCommand` failed unexpectedly: "
                f"{stderr.strip() or 'docker run failed'}"
            )
        if code is None or code == TIMEOUT_EXIT_CODE:
            msg = f'ERROR: Command "{display}" timed out after {self.timeout}s.'
            return f"{msg}\n\n{output}" if output else msg
        if code != 0:
            msg = f'ERROR: Command "{display}" failed with exit code {code}.'
            return f"{msg}\n\n{output}" if output else msg
        return output or NO_OUTPUT
