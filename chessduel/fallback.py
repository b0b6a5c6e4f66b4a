"""Random legal move source used whenever the engine cannot or should not answer."""

import random

from loguru import logger

from chessduel.game_state import ChessGame, Move


class FallbackMoveSource:
    """Picks a uniformly random legal move for a position."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self.rng = rng or random.Random()

    def random_legal_move(self, position: str) -> Move | None:
        """Return a random legal move for `position`, or None.

        None is returned both for terminal positions and for positions that
        cannot be parsed; no exception reaches the caller.
        """
        try:
            legal = ChessGame(position).legal_moves()
        except ValueError as exc:
            logger.debug(f"Fallback cannot parse position {position!r}: {exc}")
            return None

        if not legal:
            return None
        return self.rng.choice(legal)
