"""
Core data structures for request/response inspection.

Provides:
- MultiDict: Multi-value dictionary for query params and form data
- Headers: Case-insensitive header access over raw ASGI headers
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Mapping, MutableMapping, Optional, Tuple, Union


class MultiDict(MutableMapping[str, List[str]]):
    """
    Dictionary that supports multiple values per key.

    Used for query parameters and form data where keys can repeat.
    """

    def __init__(self, items: Optional[Union[List[Tuple[str, str]], Mapping[str, Union[str, List[str]]]]] = None):
        self._data: Dict[str, List[str]] = {}

        if items:
            if isinstance(items, list):
                for key, value in items:
                    self.add(key, value)
            else:
                for key, value in items.items():
                    if isinstance(value, list):
                        self._data[key] = value.copy()
                    else:
                        self._data[key] = [value]

    def __getitem__(self, key: str) -> List[str]:
        return self._data[key]

    def __setitem__(self, key: str, value: Union[str, List[str]]) -> None:
        if isinstance(value, list):
            self._data[key] = value
        else:
            self._data[key] = [value]

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"MultiDict({dict(self._data)})"

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get first value for a key."""
        values = self._data.get(key)
        return values[0] if values else default

    def get_all(self, key: str) -> List[str]:
        return self._data.get(key, [])

    def add(self, key: str, value: str) -> None:
        self._data.setdefault(key, []).append(value)

    def to_dict(self, multi: bool = False) -> Dict[str, Union[str, List[str]]]:
        """
        Convert to regular dict.

        Single-valued keys map to their value; with ``multi`` every key
        maps to its list. Repeated keys always keep all their values.
        """
        if multi:
            return {k: list(v) for k, v in self._data.items()}
        return {k: (v[0] if len(v) == 1 else list(v)) for k, v in self._data.items() if v}


@dataclass
class Headers:
    """
    Case-insensitive header access with raw preservation.
    """

    raw: List[Tuple[bytes, bytes]] = field(default_factory=list)
    _index: Dict[str, List[bytes]] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        self._index = {}
        for name, value in self.raw:
            self._index.setdefault(name.decode("latin-1").lower(), []).append(value)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Get first value for header (case-insensitive)."""
        values = self._index.get(name.lower())
        if values:
            return values[0].decode("latin-1")
        return default

    def get_all(self, name: str) -> List[str]:
        return [value.decode("latin-1") for value in self._index.get(name.lower(), [])]

    def has(self, name: str) -> bool:
        return name.lower() in self._index

    def items(self) -> Iterator[Tuple[str, str]]:
        for name, value in self.raw:
            yield name.decode("latin-1"), value.decode("latin-1")

    def to_dict(self) -> Dict[str, List[str]]:
        """Lowercased name -> list of values, in arrival order."""
        return {name: [v.decode("latin-1") for v in values] for name, values in self._index.items()}

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.has(name)

    def __getitem__(self, name: str) -> str:
        value = self.get(name)
        if value is None:
            raise KeyError(f"Header '{name}' not found")
        return value

    def __repr__(self) -> str:
        return f"Headers({list(self.items())})"
