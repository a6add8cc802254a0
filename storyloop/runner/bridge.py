"""
Process bridge for external AI tools and gate commands.

Discovers which tool executables are installed, launches one as a child
process with a hard timeout, and exposes its stdout/stderr as a single
ordered line stream. Two reader threads pump the pipes into a bounded queue
so the caller can poll with short timeouts and keep its own stuck and
timeout checks explicit.

Usage:
    bridge = ProcessBridge()
    inv = bridge.launch(tool, prompt, timeout=600)
    while True:
        item = bridge.read_next(inv, poll=0.5)
        if item is StreamSignal.EOF:
            break
        if item is StreamSignal.TIMEOUT:
            continue  # No output yet, check stuck/cancel here
        handle(item)
"""

import logging
import os
import queue
import shlex
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from storyloop.lib.settings import ToolSpec

logger = logging.getLogger(__name__)

_PROMPT_PLACEHOLDER = "__PROMPT_PLACEHOLDER__"


class ProcessLaunchError(RuntimeError):
    """The executable could not be started."""

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Could not launch '{command}': {reason}")


class ToolTimeoutError(RuntimeError):
    """The process did not exit within its hard timeout and was killed."""

    def __init__(self, command: str, timeout: float):
        self.command = command
        self.timeout = timeout
        super().__init__(f"'{command}' did not exit within {timeout:g}s and was terminated")


class StreamSignal(Enum):
    """Non-line results of read_next()."""
    EOF = "eof"  # Both streams drained and the process has exited
    TIMEOUT = "timeout"  # No line within the poll interval


@dataclass(frozen=True)
class ToolDescriptor:
    """A discovered AI tool. Immutable once discovered."""
    name: str
    command: str  # argv template, may contain {prompt}
    parser: str  # Parser family key
    available: bool
    version: Optional[str] = None
    path: Optional[str] = None
    interactive: bool = False


@dataclass
class ProcessInvocation:
    """One running or finished child process."""
    pid: int
    argv: list[str]
    started_at: float  # time.monotonic()
    timeout: float
    exit_code: Optional[int] = None
    lines_read: int = 0
    timed_out: bool = False
    _process: subprocess.Popen = field(default=None, repr=False)
    _lines: queue.Queue = field(default=None, repr=False)
    _stop: threading.Event = field(default_factory=threading.Event, repr=False)
    _open_streams: int = field(default=2, repr=False)
    _terminated: bool = field(default=False, repr=False)

    @property
    def name(self) -> str:
        return os.path.basename(self.argv[0]) if self.argv else "?"

    @property
    def deadline(self) -> float:
        return self.started_at + self.timeout

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def is_alive(self) -> bool:
        return self._process is not None and self._process.poll() is None


@dataclass
class CommandResult:
    """A command run to completion (or killed at its timeout)."""
    argv: list[str]
    exit_code: Optional[int]
    output: str
    duration: float
    timed_out: bool = False


def _probe_version(path: str, timeout: float) -> tuple[bool, Optional[str]]:
    """Run `<tool> --version`. Returns (ok, first line of output)."""
    try:
        result = subprocess.run(
            [path, "--version"],
            capture_output=True,
            text=True,
            timeout=timeout,
            stdin=subprocess.DEVNULL,
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"Version probe for {path} timed out after {timeout}s")
        return False, None
    except OSError as e:
        logger.warning(f"Version probe for {path} failed: {e}")
        return False, None

    text = (result.stdout or result.stderr).strip()
    version = text.splitlines()[0] if text else None
    return result.returncode == 0, version


def discover_tools(specs: Iterable[ToolSpec], probe_timeout: float = 5.0) -> list[ToolDescriptor]:
    """Probe each configured tool and return descriptors, available or not."""
    found = []
    for spec in specs:
        path = shutil.which(spec.binary) if spec.binary else None
        if path is None:
            logger.debug(f"Tool {spec.name}: '{spec.binary}' not on PATH")
            found.append(ToolDescriptor(
                spec.name, spec.command, spec.parser, available=False, interactive=spec.interactive,
            ))
            continue

        ok, version = _probe_version(path, probe_timeout)
        if ok:
            logger.info(f"Detected {spec.name} ({version or 'unknown version'}) at {path}")
        found.append(ToolDescriptor(
            name=spec.name,
            command=spec.command,
            parser=spec.parser,
            available=ok,
            version=version,
            path=path,
            interactive=spec.interactive,
        ))
    return found


def build_argv(tool: ToolDescriptor, prompt: str) -> tuple[list[str], Optional[str]]:
    """Build argv for a tool invocation.

    If {prompt} is in the command template it's substituted as a CLI arg.
    Otherwise the prompt is returned as stdin text.

    Returns:
        (argv, stdin_text)
    """
    template = tool.command
    via_stdin = "{prompt}" not in template

    # Swap {prompt} for a placeholder shlex won't choke on
    argv = shlex.split(template.replace("{prompt}", _PROMPT_PLACEHOLDER))
    argv = [prompt if arg == _PROMPT_PLACEHOLDER else arg for arg in argv]
    if tool.path and argv:
        argv[0] = tool.path

    return argv, (prompt if via_stdin else None)


def _put(lines: queue.Queue, item: tuple, stop: threading.Event) -> bool:
    """Put into a bounded queue without blocking forever once stopped."""
    while not stop.is_set():
        try:
            lines.put(item, timeout=0.1)
            return True
        except queue.Full:
            continue
    return False


def _pump(stream, name: str, lines: queue.Queue, stop: threading.Event) -> None:
    """Reader thread: forward each line of stream, then an end marker."""
    try:
        for raw in iter(stream.readline, ""):
            if not _put(lines, (name, raw.rstrip("\r\n")), stop):
                break
    except (OSError, ValueError):
        pass
    finally:
        _put(lines, (name, None), stop)


class ProcessBridge:
    """Launches child processes and streams their output line by line."""

    def __init__(self, queue_size: int = 1000, term_grace: float = 2.0):
        self.queue_size = queue_size
        self.term_grace = term_grace

    def launch(
        self,
        tool: ToolDescriptor,
        prompt: str,
        timeout: float,
        cwd=None,
        env: Optional[dict] = None,
    ) -> ProcessInvocation:
        """Launch an AI tool with a prompt.

        Raises:
            ValueError: If timeout <= 0
            ProcessLaunchError: If the tool is unavailable or cannot start
        """
        if not tool.available:
            raise ProcessLaunchError(tool.name, "not available on PATH or failed its version probe")
        argv, stdin_text = build_argv(tool, prompt)
        if stdin_text is None and not tool.interactive:
            # Non-interactive tools get EOF on stdin right away
            stdin_text = ""
        return self.launch_command(argv, timeout, cwd=cwd, env=env, stdin_text=stdin_text)

    def launch_command(
        self,
        argv: list[str],
        timeout: float,
        cwd=None,
        env: Optional[dict] = None,
        stdin_text: Optional[str] = None,
    ) -> ProcessInvocation:
        """Launch an arbitrary command. See launch()."""
        if timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {timeout}")
        if not argv:
            raise ValueError("empty command")

        try:
            process = subprocess.Popen(
                argv,
                cwd=cwd,
                env={**os.environ, **env} if env else None,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                bufsize=1,
                start_new_session=True,  # Own process group, so terminate reaches grandchildren
            )
        except (OSError, ValueError) as e:
            raise ProcessLaunchError(argv[0], str(e)) from e

        inv = ProcessInvocation(
            pid=process.pid,
            argv=list(argv),
            started_at=time.monotonic(),
            timeout=timeout,
            _process=process,
            _lines=queue.Queue(maxsize=self.queue_size),
        )
        logger.debug(f"Launched {inv.name} (pid {inv.pid}, timeout {timeout:g}s)")

        for name, stream in (("stdout", process.stdout), ("stderr", process.stderr)):
            threading.Thread(
                target=_pump,
                args=(stream, name, inv._lines, inv._stop),
                name=f"pump-{name}-{inv.pid}",
                daemon=True,
            ).start()

        if stdin_text is not None:
            # Tools that read the prompt from stdin expect EOF after it
            try:
                process.stdin.write(stdin_text)
                process.stdin.close()
            except OSError as e:
                logger.warning(f"Could not write prompt to {inv.name} stdin: {e}")

        return inv

    def read_next(self, inv: ProcessInvocation, poll: float = 0.5):
        """Return the next output line, StreamSignal.EOF, or StreamSignal.TIMEOUT.

        Never blocks longer than min(poll, time left before the hard timeout).

        Raises:
            ToolTimeoutError: If the hard timeout elapsed (process is killed first)
        """
        if inv.exit_code is not None and inv._open_streams == 0:
            return StreamSignal.EOF

        while True:
            remaining = inv.deadline - time.monotonic()
            if remaining <= 0:
                inv.timed_out = True
                self.terminate(inv)
                raise ToolTimeoutError(inv.name, inv.timeout)

            wait = min(poll, remaining)

            if inv._open_streams == 0:
                # Pipes closed, process may still be winding down
                try:
                    inv.exit_code = inv._process.wait(timeout=wait)
                except subprocess.TimeoutExpired:
                    return StreamSignal.TIMEOUT
                return StreamSignal.EOF

            try:
                _stream, line = inv._lines.get(timeout=wait)
            except queue.Empty:
                return StreamSignal.TIMEOUT

            if line is None:
                inv._open_streams -= 1
                continue

            inv.lines_read += 1
            return line

    def send(self, inv: ProcessInvocation, text: str) -> bool:
        """Write a line to the process's stdin. Returns False if stdin is closed."""
        stdin = inv._process.stdin if inv._process else None
        if stdin is None or stdin.closed or not inv.is_alive():
            return False
        try:
            stdin.write(text + "\n")
            stdin.flush()
        except (OSError, ValueError) as e:
            logger.debug(f"Could not write to {inv.name} stdin: {e}")
            return False
        return True

    def terminate(self, inv: ProcessInvocation) -> Optional[int]:
        """Stop the process and its group: SIGTERM, wait, SIGKILL. Idempotent."""
        process = inv._process
        if inv._terminated or process is None:
            return inv.exit_code
        inv._terminated = True

        if process.poll() is None:
            logger.info(f"Terminating {inv.name} (pid {inv.pid})")
            self._signal_group(process, signal.SIGTERM)
            try:
                process.wait(timeout=self.term_grace)
            except subprocess.TimeoutExpired:
                self._signal_group(process, signal.SIGKILL)
                try:
                    process.wait(timeout=self.term_grace)
                except subprocess.TimeoutExpired:
                    logger.error(f"{inv.name} (pid {inv.pid}) survived SIGKILL")

        inv.exit_code = process.poll()
        # Reader threads exit on pipe EOF; the stop flag keeps them off the full queue
        inv._stop.set()
        if process.stdin is not None and not process.stdin.closed:
            try:
                process.stdin.close()
            except OSError:
                pass
        inv._open_streams = 0
        return inv.exit_code

    @staticmethod
    def _signal_group(process: subprocess.Popen, sig: int) -> None:
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            return
        except OSError:
            try:
                process.send_signal(sig)
            except OSError:
                pass

    def run(
        self,
        argv: list[str],
        timeout: float,
        cwd=None,
        env: Optional[dict] = None,
        poll: float = 1.0,
    ) -> CommandResult:
        """Run a command to completion and collect its output.

        A timeout is reported in the result rather than raised.

        Raises:
            ProcessLaunchError: If the executable cannot start
        """
        inv = self.launch_command(argv, timeout, cwd=cwd, env=env, stdin_text="")
        output: list[str] = []
        try:
            while True:
                item = self.read_next(inv, poll=poll)
                if item is StreamSignal.EOF:
                    break
                if item is StreamSignal.TIMEOUT:
                    continue
                output.append(item)
        except ToolTimeoutError:
            logger.warning(f"{' '.join(argv)} timed out after {timeout:g}s")
        finally:
            self.terminate(inv)

        return CommandResult(
            argv=list(argv),
            exit_code=inv.exit_code,
            output="\n".join(output),
            duration=inv.elapsed,
            timed_out=inv.timed_out,
        )
