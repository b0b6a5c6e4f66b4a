"""Client intent models received over the game websocket."""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from chessduel.config import Difficulty
from chessduel.exceptions import InvalidIntentError


class StartIntent(BaseModel):
    type: Literal["start"]
    difficulty: Optional[Difficulty] = None
    color: Optional[Literal["white", "black", "random"]] = None


class SelectIntent(BaseModel):
    type: Literal["select"]
    square: str

    @field_validator("square")
    @classmethod
    def validate_square(cls, value: str) -> str:
        value = value.strip().lower()
        if len(value) != 2 or value[0] not in "abcdefgh" or value[1] not in "12345678":
            raise ValueError(f"Cannot interpret square: {value!r} as a valid square name.")
        return value


class PromoteIntent(BaseModel):
    type: Literal["promote"]
    piece: Literal["q", "r", "b", "n"]


class UndoIntent(BaseModel):
    type: Literal["undo"]


class ResignIntent(BaseModel):
    type: Literal["resign"]


Intent = Annotated[
    Union[StartIntent, SelectIntent, PromoteIntent, UndoIntent, ResignIntent],
    Field(discriminator="type"),
]

_intent_adapter = TypeAdapter(Intent)


def parse_intent(data: str) -> Intent:
    """Validate a raw websocket message into an intent."""
    try:
        return _intent_adapter.validate_json(data)
    except ValidationError as exc:
        errors = "; ".join(err["msg"] for err in exc.errors())
        raise InvalidIntentError(errors) from exc
