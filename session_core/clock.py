"""Wall-clock helpers. Everything in the core measures time in epoch milliseconds."""

import secrets
import time
from typing import Callable

Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_session_id(clock: Clock = now_ms) -> str:
    """Local session identifier: ``session_<ms>_<8 hex>``."""
    return f"session_{clock()}_{secrets.token_hex(4)}"
