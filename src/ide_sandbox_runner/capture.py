"""Concurrent stdin/stdout/stderr pumping with bounded capture."""

from __future__ import annotations

import os
import threading
import time
from typing import IO, TYPE_CHECKING

from .models import CapturedOutput

if TYPE_CHECKING:
    from .controller import SandboxHandle

_CHUNK_BYTES = 64 * 1024


class BoundedBuffer:
    """Keeps the first ``cap`` bytes and counts the rest."""

    def __init__(self, cap: int) -> None:
        self.cap = max(0, int(cap))
        self._data = bytearray()
        self.total_bytes = 0

    def append(self, chunk: bytes) -> None:
        self.total_bytes += len(chunk)
        room = self.cap - len(self._data)
        if room > 0:
            self._data += chunk[:room]

    @property
    def truncated(self) -> bool:
        return self.total_bytes > self.cap

    def snapshot(self) -> CapturedOutput:
        return CapturedOutput(data=bytes(self._data), total_bytes=self.total_bytes, truncated=self.truncated)


class CaptureChannel:
    """Pumps the three standard streams of a sandboxed process on their own threads.

    Readers keep draining after the cap is reached so the workload never blocks
    on a full pipe; only the retained prefix is bounded.
    """

    def __init__(self, process, stdin: bytes, max_output_bytes: int, *, interleave: bool = False, name: str = "") -> None:
        self._process = process
        self._stdin = bytes(stdin or b"")
        self.stdout = BoundedBuffer(max_output_bytes)
        self.stderr = BoundedBuffer(max_output_bytes)
        self.combined = BoundedBuffer(max_output_bytes) if interleave else None
        self._combined_lock = threading.Lock()
        self.stdin_bytes_written = 0
        self.stdin_closed_early = False
        self.errors: list[BaseException] = []
        label = name or str(getattr(process, "pid", ""))
        self._threads = [
            threading.Thread(target=self._write_stdin, name=f"sandbox-stdin-{label}", daemon=True),
            threading.Thread(
                target=self._read_stream,
                args=(process.stdout, self.stdout),
                name=f"sandbox-stdout-{label}",
                daemon=True,
            ),
            threading.Thread(
                target=self._read_stream,
                args=(process.stderr, self.stderr),
                name=f"sandbox-stderr-{label}",
                daemon=True,
            ),
        ]

    def start(self) -> "CaptureChannel":
        for thread in self._threads:
            thread.start()
        return self

    def wait(self, timeout: float | None = None) -> bool:
        """Join all pump threads; False when some are still running at the timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        return not any(thread.is_alive() for thread in self._threads)

    def outputs(self) -> tuple[CapturedOutput, CapturedOutput, CapturedOutput | None]:
        combined = self.combined.snapshot() if self.combined is not None else None
        return self.stdout.snapshot(), self.stderr.snapshot(), combined

    def _write_stdin(self) -> None:
        pipe: IO[bytes] | None = self._process.stdin
        if pipe is None:
            return
        try:
            fd = pipe.fileno()
            view = memoryview(self._stdin)
            while self.stdin_bytes_written < len(view):
                end = self.stdin_bytes_written + _CHUNK_BYTES
                self.stdin_bytes_written += os.write(fd, view[self.stdin_bytes_written:end])
        except (BrokenPipeError, ConnectionResetError):
            # the workload closed its input before reading everything
            self.stdin_closed_early = True
        except (OSError, ValueError) as exc:
            self.errors.append(exc)
        finally:
            try:
                pipe.close()
            except OSError:
                pass

    def _read_stream(self, pipe: IO[bytes] | None, buffer: BoundedBuffer) -> None:
        if pipe is None:
            return
        try:
            fd = pipe.fileno()
            while True:
                chunk = os.read(fd, _CHUNK_BYTES)
                if not chunk:
                    break
                if self.combined is None:
                    buffer.append(chunk)
                    continue
                with self._combined_lock:
                    buffer.append(chunk)
                    self.combined.append(chunk)
        except (OSError, ValueError) as exc:
            self.errors.append(exc)
        finally:
            try:
                pipe.close()
            except OSError:
                pass


def pump(handle: "SandboxHandle", stdin: bytes, max_output_bytes: int, *, interleave: bool = False) -> CaptureChannel:
    """Start pumping the streams of a running sandbox."""
    if handle.process is None:
        raise RuntimeError(f"sandbox {handle.sandbox_id} 尚未啟動")
    channel = CaptureChannel(handle.process, stdin, max_output_bytes, interleave=interleave, name=handle.sandbox_id[:12])
    return channel.start()
