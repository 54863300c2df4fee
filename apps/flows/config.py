"""Runtime settings for the flow engine, read from the environment (and an optional .env file)."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

import environ

BASE_DIR = Path(__file__).resolve().parent.parent.parent

env = environ.Env()


@dataclass(frozen=True)
class FlowSettings:
    # langgraph recursion_limit for a single turn
    max_steps: int = 25
    traversal_cache_size: int = 64
    formula_cache_size: int = 256
    max_history_turns: int = 50
    log_level: str = "INFO"


@lru_cache
def get_settings() -> FlowSettings:
    env_file = os.path.join(BASE_DIR, ".env")
    if os.path.exists(env_file):
        env.read_env(env_file)

    return FlowSettings(
        max_steps=env.int("FLOWS_MAX_STEPS", default=25),
        traversal_cache_size=env.int("FLOWS_TRAVERSAL_CACHE_SIZE", default=64),
        formula_cache_size=env.int("FLOWS_FORMULA_CACHE_SIZE", default=256),
        max_history_turns=env.int("FLOWS_MAX_HISTORY_TURNS", default=50),
        log_level=env("FLOWS_LOG_LEVEL", default="INFO"),
    )


def reload_settings() -> FlowSettings:
    get_settings.cache_clear()
    return get_settings()


def configure_logging(settings: FlowSettings | None = None):
    """Set the level of the ``flows`` logger hierarchy."""
    settings = settings or get_settings()
    logging.getLogger("flows").setLevel(settings.log_level.upper())
