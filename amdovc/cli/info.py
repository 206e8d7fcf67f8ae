"""
CLI info — read-only adapter information.

Two layouts, each in a Catalyst and an AMDGPU flavor because the drivers
expose different things:

  (default)   a few lines per adapter: clocks, load, temperature, fan,
              plus ranges/levels (ADL) or DPM clock tables (AMDGPU)
  -v          everything: PCI topology, bus, fan limits, every
              performance level and the driver defaults

-a LIST restricts the output to the listed adapters. Listing an adapter
that does not exist is an error (nothing is printed).
"""

from __future__ import annotations

from amdovc.lib.backend import AdapterInfo
from amdovc.lib.errors import BackendError
from amdovc.lib.selectors import AdapterIterator, DeviceSelection


def _g(value: float) -> str:
    """Shortest form, like iostream's default: 900.0 -> '900', 1.1 -> '1.1'."""
    return f"{value:g}"


# ── Catalyst (ADL) ──────────────────────────────────────────────────────────

def _render_adl_short(info: AdapterInfo) -> list[str]:
    lines = [
        f"Adapter {info.index}: {info.name}",
        f"  Core: {_g(info.core_clock)} MHz, Mem: {_g(info.memory_clock)} MHz, "
        f"Vddc: {_g(info.voltage or 0.0)} V, Load: {info.load}%, "
        f"Temp: {_g(info.temperature)} C, Fan: {_g(info.fan_speed)}%",
    ]
    if info.core_range and info.memory_range and info.voltage_range:
        lines.append(
            f"  Max Ranges: Core: {_g(info.core_range[0])} - {_g(info.core_range[1])} MHz, "
            f"Mem: {_g(info.memory_range[0])} - {_g(info.memory_range[1])} MHz, "
            f"Vddc: {_g(info.voltage_range[0])} - {_g(info.voltage_range[1])} V"
        )
    if info.levels:
        first, last = info.levels[0], info.levels[-1]
        lines.append(
            f"  PerfLevels: Core: {_g(first[0])} - {_g(last[0])} MHz, "
            f"Mem: {_g(first[1])} - {_g(last[1])} MHz, "
            f"Vddc: {_g(first[2])} - {_g(last[2])} V"
        )
    lines.append("")
    return lines


def _render_levels(title: str, levels: list[tuple[float, float, float]]) -> list[str]:
    lines = [f"  {title}: {len(levels)}"]
    for j, (core, memory, voltage) in enumerate(levels):
        lines += [
            f"    Performance Level: {j}",
            f"      CoreClock: {_g(core)} MHz",
            f"      MemClock: {_g(memory)} MHz",
            f"      Voltage: {_g(voltage)} V",
        ]
    return lines


def _render_adl_verbose(info: AdapterInfo) -> list[str]:
    lines = [
        f"Adapter {info.index}: {info.name}",
        f"  Device Topology: {info.bus}:{info.device}:{info.function}",
        f"  Vendor ID: {info.vendor_id}",
        f"  Current CoreClock: {_g(info.core_clock)} MHz",
        f"  Current MemoryClock: {_g(info.memory_clock)} MHz",
        f"  Current Voltage: {_g(info.voltage or 0.0)} V",
        f"  GPU Load: {info.load}%",
        f"  Current PerfLevel: {info.current_level}",
        f"  Current BusSpeed: {info.bus_speed}",
        f"  Current BusLanes: {info.bus_lanes}",
        f"  Temperature: {_g(info.temperature)} C",
        f"  FanSpeed Min: {info.fan_min}%",
        f"  FanSpeed Max: {info.fan_max}%",
        f"  FanSpeed MinRPM: {info.fan_min_rpm} RPM",
        f"  FanSpeed MaxRPM: {info.fan_max_rpm} RPM",
        f"  Current FanSpeed: {_g(info.fan_speed)}%",
    ]
    for label, unit, rng in (("CoreClock", "MHz", info.core_range),
                             ("MemClock", "MHz", info.memory_range),
                             ("Voltage", "V", info.voltage_range)):
        if rng:
            lines.append(f"  {label}: {_g(rng[0])} - {_g(rng[1])} {unit}, step: {_g(rng[2])} {unit}")
    lines += _render_levels("Performance levels", info.levels)
    lines += _render_levels("Default Performance levels", info.default_levels)
    lines.append("")
    return lines


# ── AMDGPU ──────────────────────────────────────────────────────────────────

def _render_amdgpu_short(info: AdapterInfo) -> list[str]:
    load = f"Load: {info.load}%, " if info.load is not None else ""
    lines = [
        f"Adapter {info.index}: {info.name}",
        f"  Core: {_g(info.core_clock)} MHz, Mem: {_g(info.memory_clock)} MHz, "
        f"CoreOD: {info.core_od}, MemOD: {info.memory_od}, {load}"
        f"Temp: {_g(info.temperature)} C, Fan: {_g(info.fan_speed)}%",
    ]
    if info.core_clocks:
        lines.append("  Core clocks: " + " ".join(str(c) for c in info.core_clocks))
    if info.memory_clocks:
        lines.append("  Memory clocks: " + " ".join(str(c) for c in info.memory_clocks))
    return lines


def _render_amdgpu_verbose(info: AdapterInfo) -> list[str]:
    device_id = f"{info.device_id}" if info.device_id is not None else "?"
    lines = [
        f"Adapter {info.index}: {info.name}",
        f"  Device Topology: {info.bus}:{info.device}:{info.function}",
        f"  Vendor ID: {info.vendor_id}",
        f"  Device ID: {device_id}",
        f"  Current CoreClock: {_g(info.core_clock)} MHz",
        f"  Current MemoryClock: {_g(info.memory_clock)} MHz",
        f"  Core Overdrive: {info.core_od}",
        f"  Memory Overdrive: {info.memory_od}",
    ]
    if info.load is not None:
        lines.append(f"  GPU Load: {info.load}%")
    if info.bus_speed is not None:
        lines.append(f"  Current BusSpeed: {info.bus_speed}")
        lines.append(f"  Current BusLanes: {info.bus_lanes}")
    lines.append(f"  Temperature: {_g(info.temperature)} C")
    if info.temperature_critical is not None:
        lines.append(f"  Critical temperature: {_g(info.temperature_critical)} C")
    lines += [
        f"  FanSpeed Min (Value): {info.fan_min}",
        f"  FanSpeed Max (Value): {info.fan_max}",
        f"  Current FanSpeed: {_g(info.fan_speed)}%",
    ]
    if info.fan_auto is not None:
        lines.append(f"  Controlled FanSpeed: {'yes' if info.fan_auto else 'no'}")
    if info.core_clocks:
        lines.append("  Core clocks:")
        lines += [f"    {c}MHz" for c in info.core_clocks]
    if info.memory_clocks:
        lines.append("  Memory clocks:")
        lines += [f"    {c}MHz" for c in info.memory_clocks]
    lines.append("")
    return lines


_RENDERERS = {
    ("adl", False): _render_adl_short,
    ("adl", True): _render_adl_verbose,
    ("amdgpu", False): _render_amdgpu_short,
    ("amdgpu", True): _render_amdgpu_verbose,
}


def render(info: AdapterInfo, backend_name: str, verbose: bool = False) -> list[str]:
    return _RENDERERS[(backend_name, verbose)](info)


def cmd_info(args, backend) -> int:
    """Print short or verbose information for the selected adapters."""
    selection = args.adapters if args.adapters is not None else DeviceSelection.every()
    adapters = AdapterIterator(selection, backend.device_count())

    missing = adapters.out_of_range()
    if missing:
        raise BackendError(
            f"Some adapter indices out of range: {', '.join(str(i) for i in missing)}"
        )

    for i in adapters:
        for line in render(backend.adapter_info(i), backend.name, args.verbose):
            print(line)
    return 0
