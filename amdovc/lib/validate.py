"""
Batch validation — every directive is checked before anything is written.

The scan never stops at the first problem: all violations of the batch are
collected so the user can fix everything in one go. If any exist, the batch
is rejected as a whole and no adapter is touched.

Checks, in order:
  1. adapter indices of explicit selections exist (one report per directive)
  2. fanspeed: thermal controller index is 0, value in [0, 100]
  3. level-bound kinds, per in-range adapter:
       level within [0, level_count)
       value within the snapshot's (min, max) for that adapter and level
"""

from __future__ import annotations

from amdovc.lib.backend import CapabilitySnapshot
from amdovc.lib.errors import ValidationError, Violation
from amdovc.lib.params import Directive, ParameterKind
from amdovc.lib.selectors import AdapterIterator

_RANGE_MESSAGES = {
    ParameterKind.CORE_CLOCK: "Core clock out of range",
    ParameterKind.MEMORY_CLOCK: "Memory clock out of range",
    ParameterKind.VOLTAGE: "Voltage out of range",
    ParameterKind.CORE_OVERDRIVE: "Core Overdrive out of range",
    ParameterKind.MEMORY_OVERDRIVE: "Memory Overdrive out of range",
}


def _check_adapters(d: Directive, caps: CapabilitySnapshot) -> list[Violation]:
    if AdapterIterator(d.selection, caps.device_count).out_of_range():
        return [Violation("Some adapter indices are out of range", d.source_text)]
    return []


def _check_fan_speed(d: Directive) -> list[Violation]:
    found = []
    if d.level not in (None, 0):
        found.append(Violation("Thermal Control Index is not 0", d.source_text))
    if not d.use_default and not 0.0 <= d.value <= 100.0:
        found.append(Violation("FanSpeed value out of range", d.source_text))
    return found


def _check_levels(d: Directive, caps: CapabilitySnapshot) -> list[Violation]:
    found = []
    for i in AdapterIterator(d.selection, caps.device_count):
        if i >= caps.device_count:
            continue  # reported by _check_adapters

        dev = caps.devices[i]
        level = d.resolve_level(dev.level_count)
        if not 0 <= level < dev.level_count:
            found.append(Violation("Performance level out of range", d.source_text))
            continue

        if d.use_default:
            continue
        bounds = dev.range_for(d.kind, level)
        if bounds is None:
            continue  # unsupported by this backend; apply prints a notice
        lo, hi = bounds
        if not lo <= d.value <= hi:
            found.append(Violation(_RANGE_MESSAGES[d.kind], d.source_text))
    return found


def collect_violations(directives: list[Directive], caps: CapabilitySnapshot) -> list[Violation]:
    """All reasons the batch cannot be applied. Empty list = valid."""
    violations: list[Violation] = []

    for d in directives:
        violations.extend(_check_adapters(d, caps))

    for d in directives:
        if d.kind is ParameterKind.FAN_SPEED:
            violations.extend(_check_fan_speed(d))

    for d in directives:
        if d.kind is not ParameterKind.FAN_SPEED:
            violations.extend(_check_levels(d, caps))

    return violations


def validate(directives: list[Directive], caps: CapabilitySnapshot) -> None:
    """Raise ValidationError carrying every violation, if there are any."""
    violations = collect_violations(directives, caps)
    if violations:
        raise ValidationError(violations)
