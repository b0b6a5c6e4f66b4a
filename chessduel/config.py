"""Configuration loading utilities."""

from enum import StrEnum
from pathlib import Path

from omegaconf import OmegaConf
from omegaconf.errors import OmegaConfBaseException
from pydantic import BaseModel, Field, ValidationError

from chessduel.exceptions import ConfigError

CONFIG_ENV_VAR = "CHESSDUEL_CONFIG"


class Difficulty(StrEnum):
    EASY = "easy"
    NORMAL = "normal"
    HARD = "hard"
    HELL = "hell"


class EngineSettings(BaseModel):
    command: list[str] = Field(default_factory=lambda: ["stockfish"])
    handshake_timeout: float = Field(default=10.0, gt=0)
    request_timeout: float = Field(default=10.0, gt=0)
    quit_timeout: float = Field(default=2.0, gt=0)
    easy_fallback_probability: float = Field(default=0.4, ge=0.0, le=1.0)
    depth_by_difficulty: dict[Difficulty, int] = Field(
        default_factory=lambda: {
            Difficulty.EASY: 2,
            Difficulty.NORMAL: 6,
            Difficulty.HARD: 12,
            Difficulty.HELL: 18,
        }
    )

    def depth_for(self, difficulty: Difficulty) -> int:
        return self.depth_by_difficulty.get(difficulty, 6)


class Settings(BaseModel):
    engine: EngineSettings = Field(default_factory=EngineSettings)
    default_difficulty: Difficulty = Difficulty.NORMAL
    log_level: str = "INFO"
    log_file: str | None = None


def load_settings(
    config_path: str | Path | None = None,
    overrides: list[str] | None = None,
) -> Settings:
    """Load settings from a YAML file with optional overrides.

    Args:
        config_path: Path to the YAML configuration file. Defaults are used when None.
        overrides: Optional list of CLI-style overrides (e.g., ["engine.request_timeout=5"]).

    Returns:
        Validated settings.
    """
    config = OmegaConf.create()

    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            msg = f"Config file not found: {config_path}"
            raise ConfigError(msg)
        config = OmegaConf.load(config_path)

    try:
        if overrides:
            config = OmegaConf.merge(config, OmegaConf.from_dotlist(overrides))
        raw = OmegaConf.to_container(config, resolve=True) or {}
        return Settings.model_validate(raw)
    except (OmegaConfBaseException, ValidationError) as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
