"""Turn state machine for a human playing against the computer.

The orchestrator is the only writer of game state. Human intents arrive as
plain method calls; the computer's reply arrives later from the engine bridge
and is applied only if nothing the human did in between has made it stale.
Staleness is tracked by a turn-sequence token that every new game, undo,
resignation and computer request increments.
"""

import asyncio
import random
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Callable, Protocol

from loguru import logger

from chessduel.config import Difficulty
from chessduel.fallback import FallbackMoveSource
from chessduel.game_state import PROMOTION_PIECES, ChessGame, Move, MoveResult, color_name

COLORS = ("white", "black")


class GameStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    ENDED = "ended"


class EndReason(StrEnum):
    CHECKMATE = "checkmate"
    STALEMATE = "stalemate"
    THREEFOLD_REPETITION = "threefold_repetition"
    INSUFFICIENT_MATERIAL = "insufficient_material"
    FIFTY_MOVE_RULE = "fifty_move_rule"
    GAME_OVER = "game_over"
    RESIGNATION = "resignation"


END_MESSAGES = {
    EndReason.STALEMATE: "Stalemate - Draw",
    EndReason.THREEFOLD_REPETITION: "Threefold Repetition - Draw",
    EndReason.INSUFFICIENT_MATERIAL: "Insufficient Material - Draw",
    EndReason.FIFTY_MOVE_RULE: "50 Move Rule - Draw",
    EndReason.GAME_OVER: "Game Over",
}


class EventKind(StrEnum):
    MOVE = "move"
    CAPTURE = "capture"
    CHECK = "check"
    CHECKMATE = "checkmate"
    ERROR = "error"


@dataclass(frozen=True)
class FeedbackEvent:
    kind: EventKind
    square: str | None = None

    def payload(self) -> dict:
        return {"type": "event", "kind": str(self.kind), "square": self.square}


@dataclass(frozen=True)
class Snapshot:
    fen: str
    board: list[list[str | None]]
    turn: str
    human_color: str
    selection: str | None
    legal_targets: tuple[str, ...]
    last_move: Move | None
    status: GameStatus
    end_reason: EndReason | None
    winner: str | None
    thinking: bool
    difficulty: Difficulty
    history: tuple[str, ...]
    captured: dict[str, list[str]] = field(default_factory=dict)
    pending_promotion: Move | None = None
    in_check: bool = False
    message: str = ""

    def payload(self) -> dict:
        """Return the snapshot as a JSON-friendly dict."""
        return {
            "type": "state",
            "fen": self.fen,
            "board": self.board,
            "turn": self.turn,
            "humanColor": self.human_color,
            "selected": self.selection,
            "legalTargets": list(self.legal_targets),
            "lastMove": (
                {"from": self.last_move.src, "to": self.last_move.dst}
                if self.last_move
                else None
            ),
            "status": str(self.status),
            "gameOver": self.status is GameStatus.ENDED,
            "reason": str(self.end_reason) if self.end_reason else None,
            "winner": self.winner,
            "thinking": self.thinking,
            "difficulty": str(self.difficulty),
            "history": list(self.history),
            "captured": self.captured,
            "pendingPromotion": (
                self.pending_promotion.payload() if self.pending_promotion else None
            ),
            "inCheck": self.in_check,
            "message": self.message,
        }


class MoveProvider(Protocol):
    async def request_best_move(self, position: str, difficulty: Difficulty) -> Move | None: ...


def other_color(color: str) -> str:
    return "black" if color == "white" else "white"


class TurnOrchestrator:
    """Owns one game against the computer and drives its turns."""

    def __init__(
        self,
        engine: MoveProvider,
        *,
        fallback: FallbackMoveSource | None = None,
        difficulty: Difficulty = Difficulty.NORMAL,
        human_color: str = "white",
        rng: random.Random | None = None,
        on_change: Callable[[Snapshot], None] | None = None,
        on_event: Callable[[FeedbackEvent], None] | None = None,
    ) -> None:
        self.engine = engine
        self.rng = rng or random.Random()
        self.fallback = fallback or FallbackMoveSource(self.rng)
        self.on_change = on_change
        self.on_event = on_event

        self.game = ChessGame()
        self.difficulty = difficulty
        self.human_color = human_color if human_color in COLORS else "white"
        self.token = 0
        self.status = GameStatus.IN_PROGRESS
        self.end_reason: EndReason | None = None
        self.winner: str | None = None
        self.selection: str | None = None
        self.legal_targets: tuple[str, ...] = ()
        self.pending_promotion: Move | None = None
        self.last_move: Move | None = None
        self.thinking = False
        self._reply_task: asyncio.Task | None = None

    @property
    def computer_color(self) -> str:
        return other_color(self.human_color)

    # -- Intents --
    def start_game(self, difficulty: Difficulty | None = None, color: str | None = None) -> None:
        """Reset to the initial position. `color` is white, black or random."""
        if difficulty is not None:
            self.difficulty = difficulty
        if color == "random":
            color = self.rng.choice(COLORS)
        if color in COLORS:
            self.human_color = color

        self.token += 1
        self.game.reset()
        self.status = GameStatus.IN_PROGRESS
        self.end_reason = None
        self.winner = None
        self._clear_selection()
        self.pending_promotion = None
        self.last_move = None
        self.thinking = False
        logger.info(f"New game: human plays {self.human_color} at {self.difficulty}")

        self._request_reply()
        self._changed()

    def select_square(self, square: str) -> None:
        if (
            self.status is GameStatus.ENDED
            or self.thinking
            or self.pending_promotion is not None
            or self.game.side_to_move != self.human_color
        ):
            return

        piece = self.game.piece_at(square)
        own_piece = piece is not None and color_name(piece.color) == self.human_color

        if self.selection is None:
            if own_piece:
                self._select(square)
                self._changed()
            return

        if square == self.selection:
            self._clear_selection()
            self._changed()
            return

        if own_piece:
            self._select(square)
            self._changed()
            return

        candidates = [mv for mv in self.game.legal_moves(self.selection) if mv.dst == square]
        if not candidates:
            self._emit(EventKind.ERROR)
            return

        if any(mv.promotion for mv in candidates):
            self.pending_promotion = Move(self.selection, square)
            self._changed()
            return

        self._play_human_move(candidates[0])

    def choose_promotion(self, piece: str) -> None:
        if self.pending_promotion is None:
            return

        piece = (piece or "").strip().lower()[:1]
        if piece not in PROMOTION_PIECES:
            self._emit(EventKind.ERROR)
            return

        pending = self.pending_promotion
        self.pending_promotion = None
        self._play_human_move(Move(pending.src, pending.dst, piece))

    def undo(self) -> None:
        """Take back the human's last move together with the computer's reply."""
        if self.game.ply_count == 0:
            self._emit(EventKind.ERROR)
            return

        self.token += 1
        self.thinking = False
        self.pending_promotion = None
        self._clear_selection()

        # Human move and computer reply go together; a lone half-move goes alone
        self.game.undo_last_half_move()
        if self.game.ply_count > 0:
            self.game.undo_last_half_move()

        self.status = GameStatus.IN_PROGRESS
        self.end_reason = None
        self.winner = None
        self.last_move = None
        self._emit(EventKind.MOVE)

        self._request_reply()
        self._changed()

    def resign(self) -> None:
        if self.status is GameStatus.ENDED:
            return

        self.token += 1
        self.thinking = False
        self.pending_promotion = None
        self._clear_selection()
        self.status = GameStatus.ENDED
        self.end_reason = EndReason.RESIGNATION
        self.winner = self.computer_color
        logger.info("Human resigned")
        self._emit(EventKind.ERROR)
        self._changed()

    # -- Computer reply --
    def _request_reply(self) -> None:
        if self.status is GameStatus.ENDED or self.game.side_to_move != self.computer_color:
            return

        self.token += 1
        token, position = self.token, self.game.position
        self.thinking = True
        self._reply_task = asyncio.create_task(self._await_reply(token, position, self.difficulty))
        self._reply_task.add_done_callback(self._reply_done)

    async def _await_reply(self, token: int, position: str, difficulty: Difficulty) -> None:
        best = await self.engine.request_best_move(position, difficulty)

        if token != self.token:
            logger.debug(f"Discarding stale reply for turn {token} (current {self.token})")
            return

        if best is None:
            best = self.fallback.random_legal_move(self.game.position)

        self.thinking = False
        if position != self.game.position or self.status is GameStatus.ENDED or best is None:
            self._changed()
            return

        if self._apply(best) is None:
            # An engine move the rules reject must not stall the game
            logger.warning(f"Engine move {best.uci()} rejected, playing a random move")
            substitute = self.fallback.random_legal_move(self.game.position)
            if substitute is not None:
                self._apply(substitute)
        self._changed()

    def _reply_done(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.opt(exception=task.exception()).error("Computer reply failed")

    async def wait_idle(self) -> None:
        """Wait until no computer reply is outstanding."""
        while self._reply_task is not None and not self._reply_task.done():
            await asyncio.wait([self._reply_task])

    async def shutdown(self) -> None:
        self.token += 1
        if self._reply_task is not None and not self._reply_task.done():
            self._reply_task.cancel()
            await asyncio.wait([self._reply_task])

    # -- Move application --
    def _play_human_move(self, move: Move) -> None:
        if self._apply(move) is None:
            return
        self._request_reply()
        self._changed()

    def _apply(self, move: Move) -> MoveResult | None:
        result = self.game.apply_move(move)
        if result is None:
            self._emit(EventKind.ERROR)
            return None

        self._clear_selection()
        self.last_move = Move(result.move.src, result.move.dst)
        if result.captured:
            self._emit(EventKind.CAPTURE, result.move.dst)
        else:
            self._emit(EventKind.MOVE)

        self._evaluate_terminal()
        return result

    def _evaluate_terminal(self) -> None:
        reason = self._terminal_reason()
        if reason is not None:
            self.status = GameStatus.ENDED
            self.end_reason = reason
            if reason is EndReason.CHECKMATE:
                self.winner = other_color(self.game.side_to_move)
            logger.info(f"Game ended: {reason}")
            self._emit(EventKind.CHECKMATE)
            return

        if self.game.is_check():
            self._emit(EventKind.CHECK, self.game.king_square(self.game.side_to_move))

    def _terminal_reason(self) -> EndReason | None:
        game = self.game
        if game.is_checkmate():
            return EndReason.CHECKMATE
        if game.is_stalemate():
            return EndReason.STALEMATE
        if game.is_threefold_repetition():
            return EndReason.THREEFOLD_REPETITION
        if game.is_insufficient_material():
            return EndReason.INSUFFICIENT_MATERIAL
        if game.is_fifty_moves():
            return EndReason.FIFTY_MOVE_RULE
        if game.is_game_over():
            return EndReason.GAME_OVER
        return None

    # -- Helpers --
    def _select(self, square: str) -> None:
        self.selection = square
        self.legal_targets = tuple(
            sorted({mv.dst for mv in self.game.legal_moves(square)})
        )

    def _clear_selection(self) -> None:
        self.selection = None
        self.legal_targets = ()

    def _status_line(self) -> str:
        if self.status is GameStatus.ENDED:
            if self.end_reason is EndReason.RESIGNATION:
                return f"You resigned. {self.winner.capitalize()} wins."
            if self.end_reason is EndReason.CHECKMATE:
                return f"Checkmate - {self.winner.capitalize()} wins"
            return END_MESSAGES.get(self.end_reason, "Game Over")
        if self.thinking:
            return f"{self.computer_color.capitalize()} thinking ({self.difficulty})..."
        return f"{self.game.side_to_move.capitalize()} to move"

    def snapshot(self) -> Snapshot:
        return Snapshot(
            fen=self.game.position,
            board=self.game.board_rows(),
            turn=self.game.side_to_move,
            human_color=self.human_color,
            selection=self.selection,
            legal_targets=self.legal_targets,
            last_move=self.last_move,
            status=self.status,
            end_reason=self.end_reason,
            winner=self.winner,
            thinking=self.thinking,
            difficulty=self.difficulty,
            history=tuple(self.game.move_history()),
            captured=self.game.captured_pieces(),
            pending_promotion=self.pending_promotion,
            in_check=self.game.is_check(),
            message=self._status_line(),
        )

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self.snapshot())

    def _emit(self, kind: EventKind, square: str | None = None) -> None:
        if self.on_event is not None:
            self.on_event(FeedbackEvent(kind, square))
