import random

import chess
import pytest

from chessduel.config import Difficulty, EngineSettings
from chessduel.engine_bridge import EngineBridge, EngineState
from chessduel.game_state import ChessGame, Move
from chessduel.orchestrator import (
    EndReason,
    EventKind,
    FeedbackEvent,
    GameStatus,
    TurnOrchestrator,
)
from chessduel.tests.fakes import FakeProcess, ScriptedEngine, settle

AFTER_E4 = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1"


def make_orchestrator(engine=None, **kwargs):
    events: list[FeedbackEvent] = []
    snapshots = []
    orchestrator = TurnOrchestrator(
        engine or ScriptedEngine(),
        rng=random.Random(0),
        on_event=events.append,
        on_change=snapshots.append,
        **kwargs,
    )
    return orchestrator, events, snapshots


def play(orchestrator: TurnOrchestrator, src: str, dst: str) -> None:
    orchestrator.select_square(src)
    orchestrator.select_square(dst)


async def move(orchestrator: TurnOrchestrator, src: str, dst: str) -> None:
    play(orchestrator, src, dst)
    await settle()


def kinds(events: list[FeedbackEvent]) -> list[EventKind]:
    return [event.kind for event in events]


# ---- Selection ----
def test_select_own_piece_shows_targets():
    orchestrator, _, snapshots = make_orchestrator()

    orchestrator.select_square("g1")
    assert orchestrator.selection == "g1"
    assert orchestrator.legal_targets == ("f3", "h3")
    assert snapshots[-1].legal_targets == ("f3", "h3")

    # Same square again clears the selection
    orchestrator.select_square("g1")
    assert orchestrator.selection is None
    assert orchestrator.legal_targets == ()


def test_select_other_own_piece_replaces_selection():
    orchestrator, _, _ = make_orchestrator()

    orchestrator.select_square("g1")
    orchestrator.select_square("b1")
    assert orchestrator.selection == "b1"
    assert orchestrator.legal_targets == ("a3", "c3")


def test_select_opponent_or_empty_square_without_selection_is_ignored():
    orchestrator, events, snapshots = make_orchestrator()

    orchestrator.select_square("e7")
    orchestrator.select_square("e4")
    assert orchestrator.selection is None
    assert events == []
    assert snapshots == []


def test_illegal_target_emits_error_and_keeps_state():
    orchestrator, events, _ = make_orchestrator()

    play(orchestrator, "e2", "e5")

    assert kinds(events) == [EventKind.ERROR]
    assert orchestrator.selection == "e2"
    assert orchestrator.game.position == chess.STARTING_FEN


# ---- Human move and computer reply ----
@pytest.mark.asyncio
async def test_human_move_requests_computer_reply():
    engine = ScriptedEngine()
    orchestrator, events, _ = make_orchestrator(engine)
    token_before = orchestrator.token

    await move(orchestrator, "e2", "e4")

    assert kinds(events) == [EventKind.MOVE]
    assert orchestrator.last_move == Move("e2", "e4")
    assert orchestrator.thinking
    assert orchestrator.token == token_before + 1
    assert engine.requests[0][:2] == (AFTER_E4, Difficulty.NORMAL)

    # No human input while the computer thinks
    orchestrator.select_square("d2")
    assert orchestrator.selection is None

    engine.answer(Move("e7", "e5"))
    await orchestrator.wait_idle()

    assert not orchestrator.thinking
    assert orchestrator.last_move == Move("e7", "e5")
    assert orchestrator.game.side_to_move == "white"
    assert orchestrator.game.move_history() == ["e4", "e5"]
    assert kinds(events) == [EventKind.MOVE, EventKind.MOVE]


@pytest.mark.asyncio
async def test_empty_reply_is_replaced_by_random_move():
    engine = ScriptedEngine()
    orchestrator, _, _ = make_orchestrator(engine)

    await move(orchestrator, "e2", "e4")
    engine.answer(None)
    await orchestrator.wait_idle()

    assert orchestrator.game.ply_count == 2
    assert orchestrator.game.side_to_move == "white"
    assert not orchestrator.thinking


@pytest.mark.asyncio
async def test_rejected_engine_move_is_replaced_by_random_move():
    engine = ScriptedEngine()
    orchestrator, events, _ = make_orchestrator(engine)

    await move(orchestrator, "e2", "e4")
    engine.answer(Move("e7", "e4"))
    await orchestrator.wait_idle()

    assert EventKind.ERROR in kinds(events)
    assert orchestrator.game.ply_count == 2


@pytest.mark.asyncio
async def test_failed_engine_answers_with_fallback_move():
    bridge = EngineBridge(
        EngineSettings(),
        process_factory=lambda: FakeProcess(fail_start=True),
        rng=random.Random(5),
    )
    bridge.initialize()
    await settle()
    assert bridge.state is EngineState.FAILED

    orchestrator, events, _ = make_orchestrator(bridge, fallback=bridge.fallback)
    await move(orchestrator, "e2", "e4")
    await orchestrator.wait_idle()

    history = orchestrator.game.move_history(verbose=True)
    assert len(history) == 2
    assert history[1].color == "black"
    assert orchestrator.game.side_to_move == "white"
    assert orchestrator.status is GameStatus.IN_PROGRESS
    assert not orchestrator.thinking
    assert len(events) >= 2


# ---- Stale replies ----
@pytest.mark.asyncio
async def test_reply_after_undo_is_discarded():
    engine = ScriptedEngine()
    orchestrator, _, _ = make_orchestrator(engine)

    await move(orchestrator, "e2", "e4")
    token = orchestrator.token

    orchestrator.undo()
    assert orchestrator.token == token + 1
    assert orchestrator.game.position == chess.STARTING_FEN
    assert not orchestrator.thinking

    engine.answer(Move("e7", "e5"))
    await orchestrator.wait_idle()

    assert orchestrator.game.position == chess.STARTING_FEN
    assert orchestrator.game.ply_count == 0
    assert orchestrator.status is GameStatus.IN_PROGRESS
    assert orchestrator.last_move is None


@pytest.mark.asyncio
async def test_reply_after_new_game_is_discarded():
    engine = ScriptedEngine()
    orchestrator, _, _ = make_orchestrator(engine)

    await move(orchestrator, "e2", "e4")
    orchestrator.start_game(Difficulty.HARD)

    engine.answer(Move("e7", "e5"))
    await orchestrator.wait_idle()

    assert orchestrator.game.position == chess.STARTING_FEN
    assert orchestrator.difficulty is Difficulty.HARD
    assert not orchestrator.thinking


@pytest.mark.asyncio
async def test_reply_for_changed_position_is_discarded():
    engine = ScriptedEngine()
    orchestrator, _, _ = make_orchestrator(engine)

    await move(orchestrator, "e2", "e4")
    # Position moves on without the token changing
    orchestrator.game.apply_move(Move("d7", "d5"))
    position = orchestrator.game.position

    engine.answer(Move("e7", "e5"))
    await orchestrator.wait_idle()

    assert orchestrator.game.position == position
    assert not orchestrator.thinking


@pytest.mark.asyncio
async def test_resign_discards_reply_and_is_idempotent():
    engine = ScriptedEngine()
    orchestrator, events, _ = make_orchestrator(engine)

    await move(orchestrator, "e2", "e4")
    orchestrator.resign()
    token = orchestrator.token

    assert orchestrator.status is GameStatus.ENDED
    assert orchestrator.end_reason is EndReason.RESIGNATION
    assert orchestrator.winner == "black"
    assert not orchestrator.thinking
    assert kinds(events)[-1] is EventKind.ERROR

    orchestrator.resign()
    assert orchestrator.token == token

    engine.answer(Move("e7", "e5"))
    await orchestrator.wait_idle()
    assert orchestrator.game.position == AFTER_E4
    assert orchestrator.snapshot().message == "You resigned. Black wins."


# ---- Undo ----
def test_undo_without_history_is_an_error():
    orchestrator, events, snapshots = make_orchestrator()
    token = orchestrator.token

    orchestrator.undo()

    assert kinds(events) == [EventKind.ERROR]
    assert orchestrator.token == token
    assert snapshots == []


@pytest.mark.asyncio
async def test_undo_takes_back_move_pair():
    engine = ScriptedEngine()
    orchestrator, events, _ = make_orchestrator(engine)

    await move(orchestrator, "e2", "e4")
    engine.answer(Move("e7", "e5"))
    await orchestrator.wait_idle()

    orchestrator.undo()

    assert orchestrator.game.position == chess.STARTING_FEN
    assert orchestrator.last_move is None
    assert kinds(events)[-1] is EventKind.MOVE
    assert len(engine.requests) == 1


@pytest.mark.asyncio
async def test_undo_while_thinking_takes_back_move_and_previous_reply():
    engine = ScriptedEngine()
    orchestrator, _, _ = make_orchestrator(engine)

    await move(orchestrator, "e2", "e4")
    engine.answer(Move("e7", "e5"))
    await orchestrator.wait_idle()
    await move(orchestrator, "g1", "f3")
    assert orchestrator.thinking

    orchestrator.undo()
    await settle()

    assert orchestrator.game.move_history() == ["e4"]
    assert orchestrator.game.side_to_move == "black"
    assert orchestrator.thinking
    assert len(engine.requests) == 3
    assert engine.requests[-1][0] == AFTER_E4

    # The reply to Nf3 no longer applies
    engine.answer(Move("b8", "c6"), index=1)
    await settle()
    assert orchestrator.game.move_history() == ["e4"]

    engine.answer(Move("d7", "d5"))
    await orchestrator.wait_idle()
    assert orchestrator.game.move_history() == ["e4", "d5"]
    assert not orchestrator.thinking


@pytest.mark.asyncio
async def test_undo_after_game_end_resumes_play():
    engine = ScriptedEngine()
    orchestrator, _, _ = make_orchestrator(engine)

    await move(orchestrator, "e2", "e4")
    engine.answer(Move("e7", "e5"))
    await orchestrator.wait_idle()
    orchestrator.resign()

    orchestrator.undo()
    assert orchestrator.status is GameStatus.IN_PROGRESS
    assert orchestrator.end_reason is None
    assert orchestrator.winner is None


@pytest.mark.asyncio
async def test_human_playing_black_lets_computer_open():
    engine = ScriptedEngine()
    orchestrator, _, _ = make_orchestrator(engine)

    orchestrator.start_game(Difficulty.EASY, "black")
    await settle()
    assert orchestrator.human_color == "black"
    assert orchestrator.thinking
    assert engine.requests[0][:2] == (chess.STARTING_FEN, Difficulty.EASY)

    engine.answer(Move("e2", "e4"))
    await orchestrator.wait_idle()
    assert orchestrator.game.side_to_move == "black"

    # Undoing the computer's opening move asks it to move again
    orchestrator.undo()
    await settle()
    assert orchestrator.game.ply_count == 0
    assert orchestrator.thinking
    assert len(engine.requests) == 2
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_random_color_is_resolved():
    orchestrator, _, _ = make_orchestrator()
    orchestrator.start_game(color="random")
    assert orchestrator.human_color in ("white", "black")
    await orchestrator.shutdown()


# ---- Promotion ----
@pytest.mark.asyncio
async def test_promotion_waits_for_piece_choice():
    engine = ScriptedEngine()
    orchestrator, events, _ = make_orchestrator(engine)
    orchestrator.game = ChessGame("8/4P3/8/8/8/8/k7/4K3 w - - 0 1")

    await move(orchestrator, "e7", "e8")
    assert orchestrator.pending_promotion == Move("e7", "e8")
    assert orchestrator.game.ply_count == 0
    assert events == []

    # Board input is frozen until a piece is chosen
    orchestrator.select_square("e1")
    assert orchestrator.selection == "e7"

    orchestrator.choose_promotion("k")
    assert kinds(events) == [EventKind.ERROR]
    assert orchestrator.pending_promotion is not None

    orchestrator.choose_promotion("q")
    assert orchestrator.pending_promotion is None
    assert orchestrator.game.piece_at("e8") == chess.Piece(chess.QUEEN, chess.WHITE)
    assert orchestrator.thinking
    await orchestrator.shutdown()


def test_choose_promotion_without_pending_is_ignored():
    orchestrator, events, _ = make_orchestrator()
    orchestrator.choose_promotion("q")
    assert events == []


# ---- Terminal evaluation ----
def test_human_checkmate_ends_game():
    engine = ScriptedEngine()
    orchestrator, events, _ = make_orchestrator(engine)
    orchestrator.game = ChessGame(
        "r1bqkb1r/pppp1ppp/2n2n2/4p2Q/2B1P3/8/PPPP1PPP/RNB1K1NR w KQkq - 4 4"
    )

    play(orchestrator, "h5", "f7")

    assert orchestrator.status is GameStatus.ENDED
    assert orchestrator.end_reason is EndReason.CHECKMATE
    assert orchestrator.winner == "white"
    assert events == [
        FeedbackEvent(EventKind.CAPTURE, "f7"),
        FeedbackEvent(EventKind.CHECKMATE),
    ]
    assert engine.requests == []
    assert orchestrator.snapshot().message == "Checkmate - White wins"

    # Ended games accept no moves
    orchestrator.select_square("e1")
    assert orchestrator.selection is None


@pytest.mark.asyncio
async def test_check_is_reported_with_king_square():
    engine = ScriptedEngine()
    orchestrator, events, _ = make_orchestrator(engine)
    orchestrator.game = ChessGame("4k3/8/8/8/8/8/8/R3K3 w - - 0 1")

    await move(orchestrator, "a1", "a8")

    assert events == [FeedbackEvent(EventKind.MOVE), FeedbackEvent(EventKind.CHECK, "e8")]
    assert orchestrator.status is GameStatus.IN_PROGRESS
    assert orchestrator.snapshot().in_check
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_computer_checkmate_ends_game():
    engine = ScriptedEngine()
    orchestrator, events, _ = make_orchestrator(engine)

    await move(orchestrator, "f2", "f3")
    engine.answer(Move("e7", "e5"))
    await orchestrator.wait_idle()
    await move(orchestrator, "g2", "g4")
    engine.answer(Move("d8", "h4"))
    await orchestrator.wait_idle()

    assert orchestrator.status is GameStatus.ENDED
    assert orchestrator.end_reason is EndReason.CHECKMATE
    assert orchestrator.winner == "black"
    assert kinds(events)[-1] is EventKind.CHECKMATE
    assert len(engine.requests) == 2


@pytest.mark.parametrize(
    "fen, src, dst, reason",
    [
        ("7k/3Q4/6K1/8/8/8/8/8 w - - 0 1", "d7", "f7", EndReason.STALEMATE),
        ("8/8/8/8/8/8/3p4/4K2k w - - 0 1", "e1", "d2", EndReason.INSUFFICIENT_MATERIAL),
        ("8/8/4k3/8/8/4K3/8/R7 w - - 99 80", "a1", "a2", EndReason.FIFTY_MOVE_RULE),
    ],
)
def test_draws_end_game(fen, src, dst, reason):
    orchestrator, events, _ = make_orchestrator()
    orchestrator.game = ChessGame(fen)

    play(orchestrator, src, dst)

    assert orchestrator.status is GameStatus.ENDED
    assert orchestrator.end_reason is reason
    assert orchestrator.winner is None
    assert kinds(events)[-1] is EventKind.CHECKMATE


def test_stalemate_outranks_insufficient_material():
    orchestrator, _, _ = make_orchestrator()
    orchestrator.game = ChessGame("7k/5K2/8/8/4B3/8/8/8 w - - 0 1")

    play(orchestrator, "e4", "g6")

    # King and bishop against king is also a dead position
    assert orchestrator.game.is_insufficient_material()
    assert orchestrator.status is GameStatus.ENDED
    assert orchestrator.end_reason is EndReason.STALEMATE


@pytest.mark.asyncio
async def test_threefold_repetition_ends_game():
    engine = ScriptedEngine()
    orchestrator, _, _ = make_orchestrator(engine)

    for _ in range(2):
        await move(orchestrator, "g1", "f3")
        engine.answer(Move("g8", "f6"))
        await orchestrator.wait_idle()
        await move(orchestrator, "f3", "g1")
        engine.answer(Move("f6", "g8"))
        await orchestrator.wait_idle()

    assert orchestrator.status is GameStatus.ENDED
    assert orchestrator.end_reason is EndReason.THREEFOLD_REPETITION
    assert orchestrator.snapshot().message == "Threefold Repetition - Draw"


# ---- Snapshot ----
@pytest.mark.asyncio
async def test_snapshot_payload():
    engine = ScriptedEngine()
    orchestrator, _, snapshots = make_orchestrator(engine)

    await move(orchestrator, "e2", "e4")
    payload = snapshots[-1].payload()

    assert payload["type"] == "state"
    assert payload["fen"] == AFTER_E4
    assert payload["turn"] == "black"
    assert payload["lastMove"] == {"from": "e2", "to": "e4"}
    assert payload["thinking"] is True
    assert payload["gameOver"] is False
    assert payload["history"] == ["e4"]
    assert payload["message"] == "Black thinking (normal)..."
    assert payload["board"][4][4] == "P"
    await orchestrator.shutdown()
