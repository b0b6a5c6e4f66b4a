"""Line based transport to a UCI analysis process running as a subprocess.

The process is started once and kept running for the life of a game room.
Incoming lines are pushed to a callback from a reader task so the caller
never blocks on the engine.
"""

import asyncio
from typing import Callable

from loguru import logger

from chessduel.exceptions import EngineProcessError

LineHandler = Callable[[str], None]
ExitHandler = Callable[[int | None], None]


class UciProcess:
    """Asyncio subprocess speaking UCI over stdin/stdout."""

    def __init__(self, command: list[str], *, quit_timeout: float = 2.0) -> None:
        if not command:
            raise EngineProcessError("Empty engine command")
        self.command = list(command)
        self.quit_timeout = quit_timeout
        self._proc: asyncio.subprocess.Process | None = None
        self._reader: asyncio.Task | None = None
        self._closing = False

    async def start(self, on_line: LineHandler, on_exit: ExitHandler) -> None:
        """Spawn the engine. Raises EngineProcessError if it cannot be started."""
        logger.debug(f"Starting UCI engine: {' '.join(self.command)}")
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            raise EngineProcessError(f"Cannot start engine {self.command[0]!r}: {exc}") from exc

        self._reader = asyncio.create_task(self._pump(on_line, on_exit))

    def send(self, command: str) -> None:
        """Write one command line to the engine."""
        if self._proc is None or self._proc.stdin is None or self._proc.stdin.is_closing():
            raise EngineProcessError("Engine not running")

        logger.trace(f"UCI send: {command}")
        try:
            self._proc.stdin.write(f"{command}\n".encode())
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise EngineProcessError(f"Engine pipe closed: {exc}") from exc

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def close(self) -> None:
        """Ask the engine to quit, terminating it if it does not exit in time."""
        self._closing = True
        proc = self._proc
        if proc is None:
            return

        if proc.returncode is None:
            try:
                self.send("quit")
            except EngineProcessError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.quit_timeout)
            except asyncio.TimeoutError:
                logger.warning("Engine ignored quit, terminating")
                proc.kill()
                await proc.wait()

        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._proc = None

    async def _pump(self, on_line: LineHandler, on_exit: ExitHandler) -> None:
        proc = self._proc
        assert proc is not None and proc.stdout is not None
        stdout = proc.stdout
        returncode = None
        try:
            while True:
                raw = await stdout.readline()
                if not raw:
                    break
                line = raw.decode(errors="replace").strip()
                if line:
                    logger.trace(f"UCI recv: {line}")
                    on_line(line)
            returncode = await proc.wait()
        except Exception:
            # The engine can no longer be heard, treat it as gone
            logger.opt(exception=True).error("Engine reader failed")
        finally:
            if not self._closing:
                logger.warning(f"Engine process exited with code {returncode}")
                on_exit(returncode)
