"""
Founder Roster

The engine never owns the list of founders; it asks a FounderRegistry.
The registry always hands founders back sorted by id, which is the order
remainder cents are distributed in when a bill is split.
"""

import json
from pathlib import Path
from typing import Iterable, Optional

from pydantic import TypeAdapter, ValidationError

from expense_engine.models.bill import Founder


class RosterError(Exception):
    """The founder roster could not be loaded."""
    pass


_FOUNDER_LIST = TypeAdapter(list[Founder])


class FounderRegistry:
    """
    Current roster of founders.

    Holds the roster in memory; replace() swaps it atomically when the
    user directory changes.
    """

    def __init__(self, founders: Optional[Iterable[Founder]] = None):
        self._founders: list[Founder] = []
        self.replace(founders or [])

    def replace(self, founders: Iterable[Founder]) -> None:
        by_id: dict[str, Founder] = {}
        for founder in founders:
            if founder.id in by_id:
                raise RosterError(f"Duplicate founder id in roster: {founder.id}")
            by_id[founder.id] = founder
        self._founders = sorted(by_id.values(), key=lambda f: f.id)

    def founders(self) -> list[Founder]:
        """Founders ordered by id ascending."""
        return list(self._founders)

    def get(self, user_id: str) -> Optional[Founder]:
        for founder in self._founders:
            if founder.id == user_id:
                return founder
        return None

    def __len__(self) -> int:
        return len(self._founders)

    @classmethod
    def from_json_file(cls, path: str) -> "FounderRegistry":
        """
        Load a roster from a JSON list of {"id": ..., "name": ...} records.

        Raises:
            RosterError: If the file is missing or malformed
        """
        try:
            raw = Path(path).read_text(encoding="utf-8")
            founders = _FOUNDER_LIST.validate_python(json.loads(raw))
        except FileNotFoundError as e:
            raise RosterError(f"Founder roster not found: {path}") from e
        except (json.JSONDecodeError, ValidationError) as e:
            raise RosterError(f"Invalid founder roster {path}: {e}") from e
        return cls(founders)
