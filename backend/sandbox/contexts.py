"""Isolated execution contexts for sandbox runs.

An execution context runs exactly one bundled program and reports back over
an ``asyncio.Queue`` of ``RunMessage`` objects: any number of ``stdout`` /
``stderr`` chunks followed by one terminal ``exit`` or ``error`` message.
Nothing is shared between runs; every context gets a fresh interpreter
process or a fresh container and is torn down by ``terminate()``.

Two implementations exist:
    SubprocessContext: ``python -I`` child process in a private temp dir.
    DockerContext: throwaway container with networking disabled.
"""

import asyncio
import codecs
import contextlib
import json
import os
import shutil
import tarfile
import tempfile
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Literal

import docker
import structlog
from docker.errors import APIError, DockerException, NotFound

from sandbox.bundler import ERROR_MARKER

logger = structlog.get_logger()

PROGRAM_DIR = "/sandbox"
PROGRAM_NAME = "program.py"

# Container security configuration
CONTAINER_CONFIG: dict[str, Any] = {
    "cpu_period": 100000,
    "network_disabled": True,
    "security_opt": ["no-new-privileges"],
    "cap_drop": ["ALL"],
    "pids_limit": 64,
    "user": "nobody",
}


@dataclass
class RunMessage:
    """One message from an execution context.

    ``stdout``/``stderr`` carry ``text``; ``exit`` carries ``code``; ``error``
    carries ``error``.
    """

    type: Literal["stdout", "stderr", "exit", "error"]
    run_id: str
    text: str = ""
    code: int | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type in ("exit", "error")


class _StderrSplitter:
    """Separates user stderr text from the bundle's error marker line."""

    def __init__(self) -> None:
        self._buffer = ""
        self.error: dict[str, Any] | None = None

    def feed(self, text: str) -> str:
        self._buffer += text
        *complete, self._buffer = self._buffer.split("\n")
        return "".join(self._scan(line) for line in complete)

    def close(self) -> str:
        remainder, self._buffer = self._buffer, ""
        if not remainder:
            return ""
        return self._scan(remainder).rstrip("\n")

    def _scan(self, line: str) -> str:
        if line.startswith(ERROR_MARKER):
            try:
                self.error = json.loads(line[len(ERROR_MARKER):])
                return ""
            except json.JSONDecodeError:
                logger.warning("sandbox_error_marker_invalid")
        return line + "\n"


class ExecutionContext(ABC):
    """Base class for one isolated program execution.

    Attributes:
        run_id: Run the context belongs to
        messages: Queue the driver consumes
    """

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self.messages: asyncio.Queue[RunMessage] = asyncio.Queue()
        self._stderr = _StderrSplitter()
        self._decoders = {
            "stdout": codecs.getincrementaldecoder("utf-8")(errors="replace"),
            "stderr": codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }

    @abstractmethod
    async def start(self, program: str) -> None:
        """Launch the program; output then flows into ``messages``."""

    @abstractmethod
    async def terminate(self) -> None:
        """Release every resource held by the context. Safe to call twice."""

    async def stop(self) -> None:
        """Stop a live run: report it as an error, then tear down."""
        self._emit(RunMessage(type="error", run_id=self.run_id, error="Run stopped"))
        await self.terminate()

    def _emit(self, message: RunMessage) -> None:
        self.messages.put_nowait(message)

    def _on_output(self, kind: Literal["stdout", "stderr"], data: bytes, final: bool = False) -> None:
        text = self._decoders[kind].decode(data, final=final)
        if kind == "stderr":
            text = self._stderr.feed(text)
            if final:
                text += self._stderr.close()
        if text:
            self._emit(RunMessage(type=kind, run_id=self.run_id, text=text))

    def _finish(self, exit_code: int) -> None:
        """Emit the terminal message once both output streams are drained."""
        self._on_output("stdout", b"", final=True)
        self._on_output("stderr", b"", final=True)
        if self._stderr.error is not None:
            error = self._stderr.error.get("traceback") or self._stderr.error.get("message", "")
            self._emit(RunMessage(type="error", run_id=self.run_id, error=error.rstrip("\n")))
        else:
            self._emit(RunMessage(type="exit", run_id=self.run_id, code=exit_code))


class SubprocessContext(ExecutionContext):
    """Runs the program in a fresh isolated interpreter process.

    The interpreter starts with ``-I`` (no environment variables, no user
    site-packages, no script directory on ``sys.path``) in an empty temporary
    working directory, and reads the program from stdin.
    """

    def __init__(self, run_id: str, python: str) -> None:
        super().__init__(run_id)
        self.python = python
        self._process: asyncio.subprocess.Process | None = None
        self._pump: asyncio.Task[None] | None = None
        self._workdir: str | None = None

    async def start(self, program: str) -> None:
        self._workdir = tempfile.mkdtemp(prefix=f"{self.run_id}_")
        self._process = await asyncio.create_subprocess_exec(
            self.python,
            "-I",
            "-X",
            "utf8",
            "-",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self._workdir,
            env={"PATH": os.environ.get("PATH", "")},
            limit=1 << 20,
        )
        stdin = self._process.stdin
        if stdin is None:
            raise RuntimeError("Interpreter process has no stdin pipe")
        stdin.write(program.encode("utf-8"))
        await stdin.drain()
        stdin.close()
        self._pump = asyncio.create_task(self._pump_output(), name=f"pump_{self.run_id}")
        logger.debug("subprocess_context_started", run_id=self.run_id, pid=self._process.pid)

    async def _read(self, stream: asyncio.StreamReader, kind: Literal["stdout", "stderr"]) -> None:
        while chunk := await stream.read(4096):
            self._on_output(kind, chunk)

    async def _pump_output(self) -> None:
        process = self._process
        if process is None or process.stdout is None or process.stderr is None:
            self._emit(
                RunMessage(type="error", run_id=self.run_id, error="Process output is not available")
            )
            return
        try:
            await asyncio.gather(
                self._read(process.stdout, "stdout"),
                self._read(process.stderr, "stderr"),
            )
            exit_code = await process.wait()
        except (OSError, ValueError) as e:
            logger.error("subprocess_context_failed", run_id=self.run_id, error=str(e))
            self._emit(RunMessage(type="error", run_id=self.run_id, error=str(e)))
            return
        self._finish(exit_code)

    async def terminate(self) -> None:
        process, self._process = self._process, None
        if process is not None and process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            logger.info("subprocess_context_killed", run_id=self.run_id)

        pump, self._pump = self._pump, None
        if pump is not None and not pump.done():
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump

        workdir, self._workdir = self._workdir, None
        if workdir is not None:
            shutil.rmtree(workdir, ignore_errors=True)


class DockerContext(ExecutionContext):
    """Runs the program in a fresh container that is removed afterwards."""

    def __init__(
        self,
        run_id: str,
        client: docker.DockerClient,
        image: str,
        mem_limit: str,
        cpu_quota: int,
    ) -> None:
        super().__init__(run_id)
        self.client = client
        self.image = image
        self.mem_limit = mem_limit
        self.cpu_quota = cpu_quota
        self._container_id: str | None = None
        self._pump: asyncio.Task[None] | None = None
        self._terminated = False

    async def start(self, program: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            container = await loop.run_in_executor(None, self._create_container, program)
        except DockerException as e:
            logger.error("docker_context_creation_failed", run_id=self.run_id, error=str(e))
            raise RuntimeError(f"Failed to create sandbox container: {e}") from e

        self._container_id = container.id
        self._pump = asyncio.create_task(self._pump_output(container), name=f"pump_{self.run_id}")
        logger.debug(
            "docker_context_started",
            run_id=self.run_id,
            container_id=container.id[:12],
        )

    def _create_container(self, program: str) -> Any:
        """Create, populate and start the container (blocking operation)."""
        container = self.client.containers.create(
            self.image,
            command=["python", "-I", "-X", "utf8", f"{PROGRAM_DIR}/{PROGRAM_NAME}"],
            name=f"sandbox-{self.run_id}",
            working_dir=PROGRAM_DIR,
            mem_limit=self.mem_limit,
            cpu_quota=self.cpu_quota,
            **CONTAINER_CONFIG,
        )
        self._container_id = container.id
        if self._terminated:
            # Torn down while the container was being created
            container.remove(force=True)
            raise RuntimeError("Execution context terminated during start")

        tar_stream = BytesIO()
        with tarfile.open(fileobj=tar_stream, mode="w") as tar:
            data = program.encode("utf-8")
            directory = tarfile.TarInfo(name=PROGRAM_DIR.lstrip("/"))
            directory.type = tarfile.DIRTYPE
            directory.mode = 0o755
            directory.mtime = int(time.time())
            tar.addfile(directory)
            tarinfo = tarfile.TarInfo(name=f"{PROGRAM_DIR.lstrip('/')}/{PROGRAM_NAME}")
            tarinfo.size = len(data)
            tarinfo.mode = 0o644
            tarinfo.mtime = int(time.time())
            tar.addfile(tarinfo, BytesIO(data))
        tar_stream.seek(0)
        container.put_archive("/", tar_stream)

        container.start()
        return container

    def _stream_container(self, container: Any, loop: asyncio.AbstractEventLoop) -> int:
        """Forward demultiplexed output to the loop, then wait (blocking)."""
        stream = container.attach(stdout=True, stderr=True, stream=True, logs=True, demux=True)
        for stdout_chunk, stderr_chunk in stream:
            if stdout_chunk:
                loop.call_soon_threadsafe(self._on_output, "stdout", stdout_chunk)
            if stderr_chunk:
                loop.call_soon_threadsafe(self._on_output, "stderr", stderr_chunk)
        result = container.wait()
        return int(result.get("StatusCode", 1))

    async def _pump_output(self, container: Any) -> None:
        loop = asyncio.get_running_loop()
        try:
            exit_code = await loop.run_in_executor(None, self._stream_container, container, loop)
        except DockerException as e:
            logger.error("docker_context_failed", run_id=self.run_id, error=str(e))
            self._emit(RunMessage(type="error", run_id=self.run_id, error=str(e)))
            return
        # Let chunks scheduled from the executor thread land first
        await asyncio.sleep(0)
        self._finish(exit_code)

    def _remove_container(self, container_id: str) -> None:
        try:
            self.client.containers.get(container_id).remove(force=True)
        except NotFound:
            pass  # Already removed

    async def terminate(self) -> None:
        self._terminated = True
        container_id, self._container_id = self._container_id, None
        if container_id is not None:
            try:
                await asyncio.get_running_loop().run_in_executor(
                    None, self._remove_container, container_id
                )
                logger.info("docker_context_removed", run_id=self.run_id)
            except APIError as e:
                logger.error("docker_context_remove_failed", run_id=self.run_id, error=str(e))

        pump, self._pump = self._pump, None
        if pump is not None and not pump.done():
            pump.cancel()


ContextFactory = Callable[[str], ExecutionContext]


class DockerContextFactory:
    """Builds DockerContexts sharing one lazily created client."""

    def __init__(self, image: str, mem_limit: str, cpu_quota: int) -> None:
        self.image = image
        self.mem_limit = mem_limit
        self.cpu_quota = cpu_quota
        self._client: docker.DockerClient | None = None

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def __call__(self, run_id: str) -> ExecutionContext:
        try:
            client = self.client
        except DockerException as e:
            logger.error("docker_client_unavailable", run_id=run_id, error=str(e))
            raise RuntimeError(f"Docker is not available: {e}") from e
        return DockerContext(
            run_id,
            client=client,
            image=self.image,
            mem_limit=self.mem_limit,
            cpu_quota=self.cpu_quota,
        )


def make_context_factory(settings: Any) -> ContextFactory:
    """Pick the execution context implementation configured in settings."""
    if settings.sandbox_backend == "docker":
        return DockerContextFactory(
            image=settings.sandbox_image,
            mem_limit=settings.sandbox_mem_limit,
            cpu_quota=settings.sandbox_cpu_quota,
        )

    def subprocess_factory(run_id: str) -> ExecutionContext:
        return SubprocessContext(run_id, python=settings.sandbox_python)

    return subprocess_factory
