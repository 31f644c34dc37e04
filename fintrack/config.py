import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


LOG_FORMAT = "%(asctime)s %(levelname)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    saves_dir: Path = Path("saves")
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    sweep_workers: int = 4
    user_id: str = "local"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < 1:
        raise ValueError(f"{name} must be at least 1, got {value}")
    return value


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Read settings from the environment, after loading a .env file if present."""
    load_dotenv(env_file)
    log_file = os.getenv("FINTRACK_LOG_FILE")
    return Settings(
        saves_dir=Path(os.getenv("FINTRACK_SAVES_DIR") or "saves"),
        log_level=(os.getenv("FINTRACK_LOG_LEVEL") or "INFO").upper(),
        log_file=Path(log_file) if log_file else None,
        sweep_workers=_int_env("FINTRACK_SWEEP_WORKERS", 4),
        user_id=os.getenv("FINTRACK_USER") or "local",
    )


def configure_logging(settings: Settings) -> None:
    options = {
        "level": getattr(logging, settings.log_level, logging.INFO),
        "format": LOG_FORMAT,
    }
    if settings.log_file is not None:
        settings.log_file.parent.mkdir(parents=True, exist_ok=True)
        options["filename"] = settings.log_file
    logging.basicConfig(**options)
