"""
Backend capability interface shared by the Catalyst and AMDGPU backends.

The grammar, validator and apply engine only talk to an OverdriveBackend.
Two implementations exist and exactly one is opened per run:

  adl.AdlBackend        AMD Catalyst/Crimson (ADL Overdrive5, libatiadlxx.so)
  amdgpu.AmdGpuBackend  amdgpu kernel driver (sysfs pp_*_od, hwmon pwm1)

open_backend() picks one: ADL if its library loads and initializes, else
AMDGPU. Backend-specific policy lives behind the interface:

  - legal ranges      value_ranges()   (ADL OD ranges / AMDGPU base*1.20)
  - value encoding    encode()         (ADL clock*100, V*1000 / AMDGPU %)
  - the write itself  write_performance_levels()

CapabilitySnapshot.take() reads device count, level counts and ranges once.
Validation and apply both use that one snapshot, so 'last level' means the
same level in both phases.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Protocol

from amdovc.lib.errors import BackendUnavailable
from amdovc.lib.params import ParameterKind

log = logging.getLogger(__name__)

FAN_SPEED_RANGE = (0.0, 100.0)


def round_half_away(value: float) -> int:
    """Round to the nearest int, halves away from zero (2.5 -> 3, not 2)."""
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


@dataclass
class PerfLevel:
    """One performance level in the backend's own encoding.

    ADL:    core/memory in 10 kHz units, voltage in mV.
    AMDGPU: core/memory are overdrive percentages, voltage is unused (0).
    """

    core: int = 0
    memory: int = 0
    voltage: int = 0


# Which PerfLevel field each level-bound kind writes.
LEVEL_FIELDS = {
    ParameterKind.CORE_CLOCK: "core",
    ParameterKind.CORE_OVERDRIVE: "core",
    ParameterKind.MEMORY_CLOCK: "memory",
    ParameterKind.MEMORY_OVERDRIVE: "memory",
    ParameterKind.VOLTAGE: "voltage",
}


@dataclass
class AdapterInfo:
    """Read-only adapter telemetry for the information display.

    Fields a backend cannot provide stay None and are not printed.
    Units: clocks MHz, voltage V, temperatures °C, fan %.
    """

    index: int = 0
    name: str = ""
    bus: int = 0
    device: int = 0
    function: int = 0
    vendor_id: int = 0
    device_id: int | None = None

    core_clock: float = 0.0
    memory_clock: float = 0.0
    voltage: float | None = None
    load: int | None = None
    current_level: int | None = None
    bus_speed: int | None = None
    bus_lanes: int | None = None

    temperature: float = 0.0
    temperature_critical: float | None = None

    fan_speed: float = 0.0
    fan_min: int | None = None      # raw pwm (AMDGPU) or percent (ADL)
    fan_max: int | None = None
    fan_min_rpm: int | None = None
    fan_max_rpm: int | None = None
    fan_auto: bool | None = None

    core_od: int | None = None
    memory_od: int | None = None

    # AMDGPU DPM tables (MHz)
    core_clocks: list[int] = field(default_factory=list)
    memory_clocks: list[int] = field(default_factory=list)

    # ADL Overdrive ranges and levels: (min, max, step) in MHz / V
    core_range: tuple[float, float, float] | None = None
    memory_range: tuple[float, float, float] | None = None
    voltage_range: tuple[float, float, float] | None = None
    levels: list[tuple[float, float, float]] = field(default_factory=list)
    default_levels: list[tuple[float, float, float]] = field(default_factory=list)


class OverdriveBackend(Protocol):
    """What the core needs from a driver family."""

    @property
    def name(self) -> str:
        """Short identifier: 'adl' or 'amdgpu'."""
        ...

    def device_count(self) -> int:
        ...

    def performance_level_count(self, device: int) -> int:
        ...

    def value_ranges(self, device: int, level: int) -> dict[ParameterKind, tuple[float, float]]:
        """Legal (min, max) per supported level-bound kind, in user units.

        A kind missing from the result is not supported by this backend.
        """
        ...

    def read_performance_levels(self, device: int, defaults: bool = False) -> list[PerfLevel]:
        ...

    def encode(self, device: int, kind: ParameterKind, value: float) -> int:
        """Convert a user value (MHz, V, %) to the PerfLevel encoding."""
        ...

    def write_performance_levels(self, device: int, levels: list[PerfLevel]) -> None:
        """Write the full level array of one adapter in one operation."""
        ...

    def set_fan_speed(self, device: int, percent: int) -> None:
        ...

    def set_fan_speed_to_default(self, device: int) -> None:
        ...

    def adapter_info(self, device: int) -> AdapterInfo:
        ...

    def close(self) -> None:
        ...


# ── Capability snapshot ─────────────────────────────────────────────────────

@dataclass
class DeviceCapabilities:
    """Level count and per-level ranges of one adapter."""

    level_count: int
    level_ranges: list[dict[ParameterKind, tuple[float, float]]] = field(default_factory=list)

    def range_for(self, kind: ParameterKind, level: int) -> tuple[float, float] | None:
        if kind is ParameterKind.FAN_SPEED:
            return FAN_SPEED_RANGE
        if not 0 <= level < len(self.level_ranges):
            return None
        return self.level_ranges[level].get(kind)

    def supports(self, kind: ParameterKind) -> bool:
        if kind is ParameterKind.FAN_SPEED:
            return True
        return any(kind in ranges for ranges in self.level_ranges)


@dataclass
class CapabilitySnapshot:
    """Everything validation needs, read from the backend exactly once."""

    devices: list[DeviceCapabilities] = field(default_factory=list)

    @property
    def device_count(self) -> int:
        return len(self.devices)

    @classmethod
    def take(cls, backend: OverdriveBackend) -> CapabilitySnapshot:
        devices = []
        for i in range(backend.device_count()):
            n = backend.performance_level_count(i)
            ranges = [backend.value_ranges(i, level) for level in range(n)]
            devices.append(DeviceCapabilities(level_count=n, level_ranges=ranges))
        log.debug("capability snapshot: %d adapter(s) via %s", len(devices), backend.name)
        return cls(devices=devices)


# ── Backend selection ───────────────────────────────────────────────────────

def open_backend(
    sysfs_root: str = "/sys",
    pci_db=None,
    prefer: str | None = None,
) -> OverdriveBackend:
    """Open the ADL backend if available, otherwise the AMDGPU backend.

    prefer='adl' or prefer='amdgpu' forces one (no fallback).
    The caller owns the result and must close() it.
    """
    if prefer not in (None, "", "auto", "adl", "amdgpu"):
        raise BackendUnavailable(f"Unknown backend '{prefer}'")

    if prefer in (None, "", "auto", "adl"):
        from amdovc.lib.adl import AdlBackend

        try:
            backend = AdlBackend.open(pci_db=pci_db, sysfs_root=sysfs_root)
            log.debug("using ADL backend")
            return backend
        except BackendUnavailable as e:
            if prefer == "adl":
                raise
            log.debug("ADL unavailable (%s), falling back to amdgpu sysfs", e)

    from amdovc.lib.amdgpu import AmdGpuBackend

    return AmdGpuBackend(sysfs_root=sysfs_root, pci_db=pci_db)
