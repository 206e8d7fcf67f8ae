"""
Apply engine — preview, merge and commit a validated batch.

Only called after validate() passed. Three steps:

  1. Preview: one line per (directive x adapter) saying what will change.
     Fan speed lines come first, then the level-bound ones, each group in
     input order.
  2. Merge:
     - fanspeed directives fill one FanSpeedSetup per adapter. A later
       directive for the same adapter replaces the earlier one.
     - all other directives edit a copy of the adapter's level array
       (read once per adapter, current + defaults). Several directives on
       the same adapter/level land in the same record.
  3. Commit: one fan write per adapter that got a fan directive, then one
     write_performance_levels() per adapter whose levels were edited.
     Never one write per directive.

A BackendError in step 3 propagates; writes already issued stay applied.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from amdovc.lib.backend import (
    LEVEL_FIELDS,
    CapabilitySnapshot,
    OverdriveBackend,
    PerfLevel,
    round_half_away,
)
from amdovc.lib.params import Directive, ParameterKind
from amdovc.lib.selectors import AdapterIterator

log = logging.getLogger(__name__)


@dataclass
class FanSpeedSetup:
    value: float = 0.0
    use_default: bool = False
    is_set: bool = False


@dataclass
class ApplyReport:
    """What the commit phase wrote."""

    fan_devices: list[int] = field(default_factory=list)
    level_devices: list[int] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


# ── Preview ─────────────────────────────────────────────────────────────────

_UNSUPPORTED_NOTICES = {
    ParameterKind.CORE_OVERDRIVE: "Core OD available only for AMDGPU-(PRO) drivers.",
    ParameterKind.MEMORY_OVERDRIVE: "Memory OD available only for AMDGPU-(PRO) drivers.",
    ParameterKind.VOLTAGE: "VDDC voltage available only for AMD Catalyst/Crimson drivers.",
}


def _preview_line(d: Directive, device: int, level: int, backend_name: str, supported: bool) -> str:
    if not supported:
        return _UNSUPPORTED_NOTICES.get(
            d.kind, f"{d.kind.label.capitalize()} is not available with the {backend_name} backend."
        )
    where = "thermal controller" if d.kind is ParameterKind.FAN_SPEED else "performance level"
    return f"Setting {d.kind.label} to {d.describe_value()} for adapter {device} at {where} {level}"


def preview(
    directives: list[Directive],
    caps: CapabilitySnapshot,
    backend_name: str,
    out: Callable[[str], None] = print,
) -> None:
    fans = [d for d in directives if d.kind is ParameterKind.FAN_SPEED]
    others = [d for d in directives if d.kind is not ParameterKind.FAN_SPEED]

    for d in fans:
        for i in AdapterIterator(d.selection, caps.device_count):
            out(_preview_line(d, i, d.resolve_level(1), backend_name, True))

    for d in others:
        for i in AdapterIterator(d.selection, caps.device_count):
            dev = caps.devices[i]
            out(_preview_line(d, i, d.resolve_level(dev.level_count), backend_name,
                              dev.supports(d.kind)))


# ── Merge ───────────────────────────────────────────────────────────────────

def merge_fan_speeds(directives: list[Directive], device_count: int) -> list[FanSpeedSetup]:
    setups = [FanSpeedSetup() for _ in range(device_count)]
    for d in directives:
        if d.kind is not ParameterKind.FAN_SPEED:
            continue
        for i in AdapterIterator(d.selection, device_count):
            setups[i] = FanSpeedSetup(
                value=0.0 if d.use_default else d.value,
                use_default=d.use_default,
                is_set=True,
            )
    return setups


class LevelState:
    """Per-adapter level arrays, read from the backend on first touch."""

    def __init__(self, backend: OverdriveBackend):
        self.backend = backend
        self.current: dict[int, list[PerfLevel]] = {}
        self.defaults: dict[int, list[PerfLevel]] = {}
        self.changed: set[int] = set()

    def levels(self, device: int) -> tuple[list[PerfLevel], list[PerfLevel]]:
        if device not in self.current:
            self.current[device] = self.backend.read_performance_levels(device, defaults=False)
            self.defaults[device] = self.backend.read_performance_levels(device, defaults=True)
        return self.current[device], self.defaults[device]


def merge_levels(
    directives: list[Directive],
    caps: CapabilitySnapshot,
    state: LevelState,
    out: Callable[[str], None] = print,
) -> list[str]:
    """Fold level-bound directives into `state`. Returns warnings printed."""
    warnings: list[str] = []
    backend = state.backend

    for d in directives:
        if d.kind is ParameterKind.FAN_SPEED:
            continue
        attr = LEVEL_FIELDS[d.kind]
        for i in AdapterIterator(d.selection, caps.device_count):
            dev = caps.devices[i]
            if not dev.supports(d.kind):
                continue
            level = d.resolve_level(dev.level_count)
            current, defaults = state.levels(i)
            record = current[level]

            if d.use_default:
                setattr(record, attr, getattr(defaults[level], attr))
            elif d.kind is ParameterKind.VOLTAGE and record.voltage == 0:
                msg = f"Voltage for adapter {i} is not set!"
                out(msg)
                warnings.append(msg)
            else:
                setattr(record, attr, backend.encode(i, d.kind, d.value))

            state.changed.add(i)
    return warnings


# ── Commit ──────────────────────────────────────────────────────────────────

def commit(
    fan_setups: list[FanSpeedSetup],
    state: LevelState,
    report: ApplyReport,
) -> None:
    backend = state.backend

    for i, setup in enumerate(fan_setups):
        if not setup.is_set:
            continue
        if setup.use_default:
            backend.set_fan_speed_to_default(i)
        else:
            backend.set_fan_speed(i, round_half_away(setup.value))
        report.fan_devices.append(i)

    for i in sorted(state.changed):
        log.debug("writing %d level(s) to adapter %d", len(state.current[i]), i)
        backend.write_performance_levels(i, state.current[i])
        report.level_devices.append(i)


def apply_directives(
    directives: list[Directive],
    caps: CapabilitySnapshot,
    backend: OverdriveBackend,
    out: Callable[[str], None] = print,
) -> ApplyReport:
    """Preview, merge and commit a batch that already passed validate()."""
    report = ApplyReport()
    preview(directives, caps, backend.name, out)

    fan_setups = merge_fan_speeds(directives, caps.device_count)
    state = LevelState(backend)
    report.skipped = merge_levels(directives, caps, state, out)

    commit(fan_setups, state, report)
    return report
