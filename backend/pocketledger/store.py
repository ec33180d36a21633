from itertools import count
from typing import Any

from .tables import REQUIRED_TABLES


class InMemoryStore:
    def __init__(self) -> None:
        self.tables: dict[str, dict[int, dict[str, Any]]] = {name: {} for name in REQUIRED_TABLES}
        self._sequences = {name: count(1) for name in REQUIRED_TABLES}

    def next_id(self, table: str) -> int:
        return next(self._sequences[table])
