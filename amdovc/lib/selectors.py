"""
Adapter selection — the 'ADAPTERS' part of a parameter and the -a option.

Grammar:
  all                  every adapter the backend reports
  N                    one adapter
  FIRST-LAST           inclusive range, FIRST <= LAST
  TERM,TERM,...        union of terms

Examples: 'all', '0-2', '0,1,3-5'. The result is deduplicated and sorted,
so '0,2-4,1' selects 0,1,2,3,4.

The device count is not known while parsing (the backend is opened later),
so selections are stored unresolved. AdapterIterator expands them once the
count is known. Explicit indices are yielded even when they are out of range;
the validator reports those, once, for the whole batch.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Iterator

from amdovc.lib.errors import SelectorSyntaxError

_TERM_RE = re.compile(r"([0-9]+)(?:-([0-9]+))?")


@dataclass(frozen=True)
class DeviceSelection:
    """Either every adapter, or an ascending tuple of unique indices."""

    indices: tuple[int, ...] = ()
    all_devices: bool = False

    @classmethod
    def every(cls) -> DeviceSelection:
        return cls(all_devices=True)

    @classmethod
    def of(cls, indices: Iterable[int]) -> DeviceSelection:
        normalized = tuple(sorted(set(indices)))
        if not normalized:
            raise ValueError("explicit selection must not be empty")
        return cls(indices=normalized)

    def __str__(self) -> str:
        if self.all_devices:
            return "all"
        return ",".join(str(i) for i in self.indices)


# Selection used when a parameter names no adapters.
DEFAULT_SELECTION = DeviceSelection.of([0])


def parse_selection(text: str) -> DeviceSelection:
    """Parse an adapter list. Raises SelectorSyntaxError on bad input."""
    if text == "all":
        return DeviceSelection.every()
    if not text:
        raise SelectorSyntaxError("Empty adapter list")

    indices: list[int] = []
    for term in text.split(","):
        m = _TERM_RE.match(term)
        if m is None:
            raise SelectorSyntaxError("Unable to parse adapter index")
        if m.end() != len(term):
            raise SelectorSyntaxError("Invalid data in adapter list")
        first = int(m.group(1))
        if m.group(2) is None:
            indices.append(first)
            continue
        last = int(m.group(2))
        if first > last:
            raise SelectorSyntaxError("Wrong range of adapter indices in adapter list")
        indices.extend(range(first, last + 1))

    return DeviceSelection.of(indices)


class AdapterIterator:
    """Expands a DeviceSelection against the live adapter count.

    Iterable any number of times:

        for index in AdapterIterator(selection, count):
            ...
    """

    def __init__(self, selection: DeviceSelection, device_count: int):
        self.selection = selection
        self.device_count = device_count

    def __iter__(self) -> Iterator[int]:
        if self.selection.all_devices:
            return iter(range(self.device_count))
        return iter(self.selection.indices)

    def out_of_range(self) -> list[int]:
        """Explicit indices the backend does not have."""
        if self.selection.all_devices:
            return []
        return [i for i in self.selection.indices if i >= self.device_count]
