"""Store readers and the atomic writer for shared state files."""

from .atomic import write_atomic, write_json_atomic
from .events_db import load_events
from .paths import StatePaths
from .tokens import TokenError, TokenRecord, TokenStore

__all__ = [
    "StatePaths",
    "TokenError",
    "TokenRecord",
    "TokenStore",
    "load_events",
    "write_atomic",
    "write_json_atomic",
]
