"""Bridge between the game and a background UCI analysis process.

The bridge never blocks its caller and never keeps more than one evaluation
request outstanding. When the engine cannot be loaded, is still loading, or
dies mid-game, requests are answered by the random fallback instead.
"""

import asyncio
import itertools
import random
from collections import deque
from dataclasses import dataclass
from enum import StrEnum
from typing import Callable, Protocol

from loguru import logger

from chessduel.config import Difficulty, EngineSettings
from chessduel.exceptions import EngineProcessError
from chessduel.fallback import FallbackMoveSource
from chessduel.game_state import Move
from chessduel.uci_process import UciProcess

NO_MOVE_SENTINELS = ("", "(none)", "0000")

LOADING_NOTICE = "Loading engine..."
LOAD_FAILED_NOTICE = "Engine failed to load. Using fallback random AI."
UNAVAILABLE_NOTICE = "Engine unavailable. Using fallback random AI."


class EngineState(StrEnum):
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class AnalysisProcess(Protocol):
    async def start(
        self, on_line: Callable[[str], None], on_exit: Callable[[int | None], None]
    ) -> None: ...

    def send(self, command: str) -> None: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class EvaluationRequest:
    id: int
    position: str
    depth: int


@dataclass
class _Pending:
    request: EvaluationRequest
    future: asyncio.Future
    timer: asyncio.TimerHandle


class _NoMove:
    """Marker for a `bestmove` reply that names no move."""


NO_MOVE = _NoMove()


def parse_bestmove(line: str) -> "Move | _NoMove | None":
    """Decode a `bestmove` line.

    Returns NO_MOVE for the engine's explicit "no move" answer and None for a
    malformed move encoding.
    """
    parts = line.split()
    best = parts[1] if len(parts) > 1 else ""
    if best in NO_MOVE_SENTINELS:
        return NO_MOVE
    return Move.from_uci(best)


class EngineBridge:
    """Owns one analysis process and its single in-flight evaluation request."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        process_factory: Callable[[], AnalysisProcess] | None = None,
        fallback: FallbackMoveSource | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self._process_factory = process_factory or (
            lambda: UciProcess(self.settings.command, quit_timeout=self.settings.quit_timeout)
        )
        self.rng = rng or random.Random()
        self.fallback = fallback or FallbackMoveSource(self.rng)

        self.state = EngineState.LOADING
        self.notice: str | None = LOADING_NOTICE
        self._listeners: list[Callable[["EngineBridge"], None]] = []
        self._process: AnalysisProcess | None = None
        self._handshake = asyncio.Event()
        self._load_task: asyncio.Task | None = None

        self._ids = itertools.count(1)
        self._pending: _Pending | None = None
        # Ids of requests whose `go` was written, oldest first. UCI answers
        # every `go` with exactly one `bestmove`, in order.
        self._sent: deque[int] = deque()

    # -- Lifecycle --
    def add_listener(self, callback: Callable[["EngineBridge"], None]) -> None:
        self._listeners.append(callback)

    def initialize(self) -> None:
        """Start loading the engine in the background. Must run inside an event loop."""
        if self._load_task is None:
            self._load_task = asyncio.create_task(self._load())

    async def close(self) -> None:
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
            try:
                await self._load_task
            except asyncio.CancelledError:
                pass
        self._cancel_pending("bridge closed")
        if self._process is not None:
            await self._process.close()
            self._process = None

    async def _load(self) -> None:
        self._set_state(EngineState.LOADING, LOADING_NOTICE)
        try:
            self._process = self._process_factory()
            await self._process.start(self._handle_line, self._handle_exit)
            self._process.send("uci")
            await asyncio.wait_for(self._handshake.wait(), timeout=self.settings.handshake_timeout)
        except EngineProcessError as exc:
            logger.warning(f"Engine failed to load: {exc}")
            self._fail(LOAD_FAILED_NOTICE)
        except asyncio.TimeoutError:
            logger.warning(f"Engine handshake timed out after {self.settings.handshake_timeout}s")
            self._fail(UNAVAILABLE_NOTICE)

    # -- Requests --
    async def request_best_move(self, position: str, difficulty: Difficulty) -> Move | None:
        """Ask for the best move in `position`.

        Always resolves: with the engine's move, a fallback move, or None when
        the request is superseded, times out, or the engine fails meanwhile.
        """
        request = EvaluationRequest(
            id=next(self._ids),
            position=position,
            depth=self.settings.depth_for(difficulty),
        )
        self._cancel_pending(f"superseded by request {request.id}")

        if (
            difficulty == Difficulty.EASY
            and self.rng.random() < self.settings.easy_fallback_probability
        ):
            logger.debug(f"Request {request.id}: easy mode random move")
            return self.fallback.random_legal_move(position)

        if self.state is not EngineState.READY:
            logger.debug(f"Request {request.id}: engine {self.state}, using fallback")
            return self.fallback.random_legal_move(position)

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        timer = loop.call_later(self.settings.request_timeout, self._expire, request.id)
        self._pending = _Pending(request, future, timer)

        try:
            self._process.send(f"position fen {position}")
            self._process.send(f"go depth {request.depth}")
        except EngineProcessError as exc:
            logger.error(f"Engine write failed: {exc}")
            self._fail(UNAVAILABLE_NOTICE)
            return await future

        self._sent.append(request.id)
        logger.debug(f"Request {request.id}: sent at depth {request.depth}")
        return await future

    @property
    def pending_request(self) -> EvaluationRequest | None:
        return self._pending.request if self._pending else None

    def _resolve(self, request_id: int, move: Move | None) -> bool:
        # Resolves the pending slot only if it still belongs to `request_id`
        pending = self._pending
        if pending is None or pending.request.id != request_id:
            return False
        self._pending = None
        pending.timer.cancel()
        if not pending.future.done():
            pending.future.set_result(move)
        return True

    def _cancel_pending(self, reason: str) -> None:
        if self._pending is not None:
            logger.debug(f"Request {self._pending.request.id} cancelled: {reason}")
            self._resolve(self._pending.request.id, None)

    def _expire(self, request_id: int) -> None:
        if self._resolve(request_id, None):
            logger.warning(
                f"Request {request_id} timed out after {self.settings.request_timeout}s"
            )

    # -- Engine messages --
    def _handle_line(self, line: str) -> None:
        if line == "uciok":
            if self.state is EngineState.LOADING:
                self._handshake.set()
                self._set_state(EngineState.READY, None)
            return

        if line.startswith("bestmove"):
            self._handle_bestmove(line)

    def _handle_bestmove(self, line: str) -> None:
        reply_to = self._sent.popleft() if self._sent else None
        pending = self._pending
        if pending is None or reply_to is None or pending.request.id != reply_to:
            logger.debug(f"Dropping stale reply for request {reply_to}: {line}")
            return

        decoded = parse_bestmove(line)
        if decoded is NO_MOVE:
            move = self.fallback.random_legal_move(pending.request.position)
        else:
            move = decoded
        self._resolve(reply_to, move)

    def _handle_exit(self, returncode: int | None) -> None:
        self._fail(UNAVAILABLE_NOTICE)

    # -- State --
    def _fail(self, notice: str) -> None:
        self._handshake.set()
        self._sent.clear()
        self._cancel_pending("engine failed")
        self._set_state(EngineState.FAILED, notice)

    def _set_state(self, state: EngineState, notice: str | None) -> None:
        if self.state is EngineState.FAILED:
            return
        self.state = state
        self.notice = notice
        logger.debug(f"Engine state: {state}")
        for callback in self._listeners:
            callback(self)
