from dataclasses import dataclass

import chess

PROMOTION_PIECES = ("q", "r", "b", "n")


def color_name(color: chess.Color) -> str:
    return "white" if color == chess.WHITE else "black"


@dataclass(frozen=True)
class Move:
    """A move reduced to what the UI and the engine exchange."""

    src: str
    dst: str
    promotion: str | None = None

    @classmethod
    def from_uci(cls, uci: str) -> "Move | None":
        """Decode a UCI move string; returns None when it is malformed."""
        uci = (uci or "").strip()
        if len(uci) < 4:
            return None
        src, dst, promotion = uci[:2], uci[2:4], uci[4:5] or None
        try:
            chess.parse_square(src)
            chess.parse_square(dst)
        except ValueError:
            return None
        if promotion is not None and promotion not in PROMOTION_PIECES:
            return None
        return cls(src, dst, promotion)

    @classmethod
    def from_chess(cls, move: chess.Move) -> "Move":
        promotion = chess.piece_symbol(move.promotion) if move.promotion else None
        return cls(
            chess.square_name(move.from_square),
            chess.square_name(move.to_square),
            promotion,
        )

    def uci(self) -> str:
        return f"{self.src}{self.dst}{self.promotion or ''}"

    def payload(self) -> dict:
        return {"from": self.src, "to": self.dst, "promotion": self.promotion}


@dataclass(frozen=True)
class MoveResult:
    move: Move
    san: str
    color: str
    piece: str
    captured: str | None = None


# Thin wrapper around python-chess that owns the board and the chess rules
class ChessGame:
    def __init__(self, fen: str | None = None) -> None:
        self.board = chess.Board(fen) if fen is not None else chess.Board()

    def reset(self) -> None:
        """Reset the game to the initial position."""
        self.board = chess.Board()

    @property
    def position(self) -> str:
        return self.board.fen()

    @property
    def ply_count(self) -> int:
        return len(self.board.move_stack)

    @property
    def side_to_move(self) -> str:
        return color_name(self.board.turn)

    def piece_at(self, square: str) -> chess.Piece | None:
        try:
            return self.board.piece_at(chess.parse_square(square))
        except ValueError:
            return None

    def legal_moves(self, square: str | None = None) -> list[Move]:
        """Legal moves in the current position, optionally only those leaving `square`."""
        if square is None:
            return [Move.from_chess(mv) for mv in self.board.legal_moves]
        try:
            src = chess.parse_square(square)
        except ValueError:
            return []
        return [
            Move.from_chess(mv)
            for mv in self.board.legal_moves
            if mv.from_square == src
        ]

    def apply_move(self, move: Move) -> MoveResult | None:
        """
        Try to play a move.
        Returns the result if it was legal and applied, None otherwise.
        """
        try:
            candidate = chess.Move.from_uci(move.uci())
        except ValueError:
            return None

        if candidate not in self.board.legal_moves:
            return None

        result = self._describe(self.board, candidate)
        self.board.push(candidate)
        return result

    def undo_last_half_move(self) -> MoveResult | None:
        if not self.board.move_stack:
            return None
        undone = self.board.pop()
        return self._describe(self.board, undone)

    def move_history(self, verbose: bool = False) -> list:
        """SAN list of the moves played, or MoveResult records when verbose."""
        replay = self.board.root()
        history = []
        for mv in self.board.move_stack:
            history.append(self._describe(replay, mv) if verbose else replay.san(mv))
            replay.push(mv)
        return history

    def captured_pieces(self) -> dict[str, list[str]]:
        """Piece symbols captured by each side, in capture order."""
        captured: dict[str, list[str]] = {"white": [], "black": []}
        for result in self.move_history(verbose=True):
            if result.captured:
                captured[result.color].append(result.captured)
        return captured

    def king_square(self, color: str) -> str | None:
        king = self.board.king(chess.WHITE if color == "white" else chess.BLACK)
        return chess.square_name(king) if king is not None else None

    def board_rows(self) -> list[list[str | None]]:
        """Piece symbols from rank 8 down to rank 1, files a to h."""
        rows = []
        for rank in range(7, -1, -1):
            row = []
            for file in range(8):
                piece = self.board.piece_at(chess.square(file, rank))
                row.append(piece.symbol() if piece else None)
            rows.append(row)
        return rows

    def is_check(self) -> bool:
        return self.board.is_check()

    def is_checkmate(self) -> bool:
        return self.board.is_checkmate()

    def is_stalemate(self) -> bool:
        return self.board.is_stalemate()

    def is_threefold_repetition(self) -> bool:
        return self.board.is_repetition(3)

    def is_insufficient_material(self) -> bool:
        return self.board.is_insufficient_material()

    def is_fifty_moves(self) -> bool:
        return self.board.is_fifty_moves()

    def is_game_over(self) -> bool:
        return self.board.is_game_over()

    @staticmethod
    def _describe(board: chess.Board, move: chess.Move) -> MoveResult:
        # `board` must be the position before `move` is played
        piece = board.piece_at(move.from_square)
        captured = None
        if board.is_en_passant(move):
            captured = "p"
        elif board.is_capture(move):
            target = board.piece_at(move.to_square)
            captured = target.symbol().lower() if target else None
        return MoveResult(
            move=Move.from_chess(move),
            san=board.san(move),
            color=color_name(board.turn),
            piece=piece.symbol().lower() if piece else "",
            captured=captured,
        )
