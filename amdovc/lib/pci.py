"""
PCI device names — lookup of adapter names in the system pci.ids file.

ADL sometimes reports an empty adapter name and the amdgpu sysfs tree never
has one, so both backends fall back to the PCI ID database:

  /usr/share/hwdata/pci.ids   (Fedora, Arch, ...)
  /usr/share/misc/pci.ids     (Debian, Ubuntu, ...)

or an explicit path ($AMDOVC_PCI_IDS / PciDatabase(path=...)).

The database is an owned resource: open() loads it, close() releases it,
and `with PciDatabase() as db:` guarantees both. A missing file is not an
error — every lookup then returns "" and the caller prints what it has.

File format (only the parts we read):

  1002  Advanced Micro Devices, Inc. [AMD/ATI]
  \t67df  Ellesmere [Radeon RX 470/480/570/570X/580/580X/590]
  \t\t1002 0b31  Radeon RX 580          <- subsystem, ignored
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

log = logging.getLogger(__name__)

DEFAULT_PATHS = (
    Path("/usr/share/hwdata/pci.ids"),
    Path("/usr/share/misc/pci.ids"),
)


class PciDatabase:
    """Vendor/device names from a pci.ids file."""

    def __init__(self, path: str | os.PathLike | None = None):
        self.path = Path(path) if path else None
        self._vendors: dict[int, str] = {}
        self._devices: dict[tuple[int, int], str] = {}
        self._loaded = False

    # ── Lifecycle ──

    def open(self) -> PciDatabase:
        if self._loaded:
            return self
        path = self._locate()
        if path is None:
            log.debug("no pci.ids file found, adapter names fall back to empty")
        else:
            with open(path, "rt", encoding="utf-8", errors="replace") as f:
                self._parse(f)
            log.debug("loaded %d PCI device names from %s", len(self._devices), path)
        self._loaded = True
        return self

    def close(self) -> None:
        self._vendors.clear()
        self._devices.clear()
        self._loaded = False

    def __enter__(self) -> PciDatabase:
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()

    def _locate(self) -> Path | None:
        if self.path is not None:
            return self.path if self.path.is_file() else None
        for candidate in DEFAULT_PATHS:
            if candidate.is_file():
                return candidate
        return None

    def _parse(self, lines) -> None:
        vendor: int | None = None
        for raw in lines:
            line = raw.rstrip("\n")
            if not line or line.startswith("#"):
                continue
            # Device classes ("C 03  Display controller") end the vendor list.
            if line.startswith("C "):
                break
            if line.startswith("\t\t"):
                continue
            try:
                if line.startswith("\t"):
                    if vendor is None:
                        continue
                    ident, _, name = line[1:].partition("  ")
                    self._devices[(vendor, int(ident, 16))] = name.strip()
                else:
                    ident, _, name = line.partition("  ")
                    vendor = int(ident, 16)
                    self._vendors[vendor] = name.strip()
            except ValueError:
                log.debug("skipping malformed pci.ids line: %r", line)

    # ── Lookup ──

    def vendor_name(self, vendor_id: int) -> str:
        return self._vendors.get(vendor_id, "")

    def device_name(self, vendor_id: int, device_id: int) -> str:
        """Device name, or "" when the IDs are unknown or no file was loaded."""
        return self._devices.get((vendor_id, device_id), "")
