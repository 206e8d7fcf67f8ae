"""
AMDGPU backend — overdrive and fan control through the amdgpu sysfs files.

The open-source amdgpu kernel driver exposes everything as small text files,
no library needed. Root is required for writes (reads mostly work as user).

Per card (<root>/class/drm/cardN/device/):
  vendor                 0x1002 for AMD, other cards are skipped
  device                 PCI device id
  pp_dpm_sclk            core DPM table,   lines "N: 300Mhz" ('*' = active)
  pp_dpm_mclk            memory DPM table, same format
  pp_dpm_pcie            PCIe states,      lines "N: 8.0GB, x16 *"
  pp_sclk_od             core overdrive in percent (0..20)
  pp_mclk_od             memory overdrive in percent (0..20)
  hwmon/hwmonM/          lowest M wins
    pwm1_enable          1 = manual, 2 = automatic
    pwm1_min, pwm1_max   raw PWM range
    pwm1                 raw PWM duty
    temp1_input          m°C
    temp1_crit           m°C
GPU load comes from debugfs: <root>/kernel/debug/dri/N/amdgpu_pm_info.

Overdrive model:
  - one performance level (level 0)
  - the DPM tables already include the current overdrive, so the base
    (stock) clock is ceil(last_dpm / (1 + od/100))
  - legal clocks are [base, base * 1.20], legal OD is [0, 20]
  - a clock becomes OD percent: round((clock - base) / base * 100)
  - 'default' is OD 0
  - no voltage control (Catalyst only)

Every read/write failure raises SysfsError. Telemetry in adapter_info()
goes through _safe() instead so a missing sensor file only blanks a field.
"""

from __future__ import annotations

import logging
import math
import os
import re
from dataclasses import dataclass
from pathlib import Path

from amdovc.lib.backend import AdapterInfo, PerfLevel, round_half_away
from amdovc.lib.errors import BackendError
from amdovc.lib.params import ParameterKind

log = logging.getLogger(__name__)

AMD_VENDOR_ID = 0x1002
OVERDRIVE_MAX = 20
CLOCK_HEADROOM = 1.20

PWM_MANUAL = 1
PWM_AUTO = 2

_CARD_RE = re.compile(r"card([0-9]+)$")
_HWMON_RE = re.compile(r"hwmon([0-9]+)$")
_DPM_RE = re.compile(r"([0-9]+): ([0-9]+)Mhz( \*)?")
_PCIE_RE = re.compile(r"([0-9]+): ([0-9]*\.?[0-9]+)([A-Za-z]{2}), x([0-9]+)( \*)?")
_PCI_ADDR_RE = re.compile(r"[0-9a-fA-F]+:([0-9a-fA-F]+):([0-9a-fA-F]+)\.([0-7])$")
_LOAD_PREFIXES = ("GPU load: ", "GPU Load: ")

# PCIe bandwidth unit -> MB/s multiplier
_PCIE_UNITS = {"GB": 1000.0, "MB": 1.0}


class SysfsError(BackendError):
    """A sysfs/debugfs file could not be read, parsed or written."""


# ── File helpers ────────────────────────────────────────────────────────────

def read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="ascii", errors="replace")
    except OSError as e:
        raise SysfsError(f"Unable to read '{path}': {e.strerror or e}") from e


def read_value(path: Path) -> int:
    """First token of the file as an integer (decimal, or 0x-prefixed hex)."""
    text = read_text(path).strip()
    token = text.split()[0] if text else ""
    try:
        return int(token, 0)
    except ValueError as e:
        raise SysfsError(f"Unable to parse value from '{path}': {text!r}") from e


def write_value(path: Path, value: int) -> None:
    log.debug("writing '%s' to %s", value, path)
    try:
        with open(path, "w", encoding="ascii") as f:
            f.write(f"{value}\n")
    except OSError as e:
        raise SysfsError(f"Unable to write to file '{path}': {e.strerror or e}") from e


def parse_dpm(text: str) -> tuple[list[int], int | None]:
    """Parse a pp_dpm_sclk / pp_dpm_mclk table.

    Returns (clocks indexed by level, active level or None).
    """
    clocks: list[int] = []
    active: int | None = None
    for line in text.splitlines():
        if not line:
            break
        m = _DPM_RE.match(line)
        if m is None:
            raise SysfsError(f"Unable to parse DPM line: {line!r}")
        index, clock = int(m.group(1)), int(m.group(2))
        if index >= len(clocks):
            clocks.extend([0] * (index + 1 - len(clocks)))
        clocks[index] = clock
        if m.group(3):
            active = index
    return clocks, active


def parse_dpm_pcie(text: str) -> tuple[int | None, int | None]:
    """Parse pp_dpm_pcie. Returns (bandwidth MB, lanes) of the active state."""
    for line in text.splitlines():
        if not line:
            break
        m = _PCIE_RE.match(line)
        if m is None:
            raise SysfsError(f"Unable to parse PCIe line: {line!r}")
        unit = m.group(3)
        if unit not in _PCIE_UNITS:
            raise SysfsError(f"Invalid bandwidth unit '{unit}' in: {line!r}")
        if m.group(5):
            return int(float(m.group(2)) * _PCIE_UNITS[unit]), int(m.group(4))
    return None, None


def parse_gpu_load(text: str) -> int | None:
    """GPU load percent from amdgpu_pm_info, None if the line is absent."""
    for line in text.splitlines():
        for prefix in _LOAD_PREFIXES:
            if line.startswith(prefix):
                m = re.match(r"[0-9]+", line[len(prefix):])
                if m is None:
                    raise SysfsError(f"Unable to parse GPU load: {line!r}")
                return int(m.group(0))
    return None


def base_clock(dpm_clocks: list[int], overdrive: int) -> int:
    """Stock clock of the top DPM level, with the current overdrive removed."""
    if not dpm_clocks:
        return 0
    return int(math.ceil(dpm_clocks[-1] / (1.0 + overdrive * 0.01)))


def _safe(fn, *args, default=None):
    """Telemetry read that blanks the field instead of failing the display."""
    try:
        return fn(*args)
    except (SysfsError, OSError, ValueError) as e:
        log.debug("%s%r failed: %s", getattr(fn, "__name__", fn), args, e)
        return default


# ── Backend ─────────────────────────────────────────────────────────────────

@dataclass
class _Card:
    """One AMD card: DRM index (cardN) and its device/hwmon directories."""

    drm_index: int
    device_dir: Path
    hwmon_dir: Path


class AmdGpuBackend:
    """OverdriveBackend over /sys/class/drm. Adapter i = i-th AMD card."""

    name = "amdgpu"

    def __init__(self, sysfs_root: str | os.PathLike = "/sys", pci_db=None):
        self.root = Path(sysfs_root)
        self.pci_db = pci_db
        self._cards = self._discover()
        self._base_clocks: dict[int, tuple[int, int]] = {}
        log.debug("amdgpu: %d AMD card(s) under %s", len(self._cards), self.root)

    def _discover(self) -> list[_Card]:
        drm = self.root / "class" / "drm"
        try:
            entries = os.listdir(drm)
        except OSError as e:
            raise SysfsError(f"Unable to open '{drm}': {e.strerror or e}") from e

        indices = sorted(int(m.group(1)) for m in map(_CARD_RE.match, entries) if m)
        cards = []
        for n in indices:
            device_dir = drm / f"card{n}" / "device"
            vendor_file = device_dir / "vendor"
            if not vendor_file.is_file():
                continue
            if read_value(vendor_file) != AMD_VENDOR_ID:
                continue
            cards.append(_Card(n, device_dir, self._find_hwmon(device_dir)))
        return cards

    @staticmethod
    def _find_hwmon(device_dir: Path) -> Path:
        hwmon = device_dir / "hwmon"
        try:
            entries = os.listdir(hwmon)
        except OSError as e:
            raise SysfsError(f"Unable to open directory '{hwmon}': {e.strerror or e}") from e
        numbers = [int(m.group(1)) for m in map(_HWMON_RE.match, entries) if m]
        if not numbers:
            raise SysfsError(f"Unable to find hwmon directory in '{hwmon}'")
        return hwmon / f"hwmon{min(numbers)}"

    def _card(self, device: int) -> _Card:
        if not 0 <= device < len(self._cards):
            raise SysfsError(f"Adapter {device} does not exist")
        return self._cards[device]

    # ── Capability interface ──

    def device_count(self) -> int:
        return len(self._cards)

    def performance_level_count(self, device: int) -> int:
        self._card(device)
        return 1

    def base_clocks(self, device: int) -> tuple[int, int]:
        """(core, memory) stock clocks in MHz, read once per adapter."""
        if device not in self._base_clocks:
            card = self._card(device)
            core_od = read_value(card.device_dir / "pp_sclk_od")
            memory_od = read_value(card.device_dir / "pp_mclk_od")
            core, _ = parse_dpm(read_text(card.device_dir / "pp_dpm_sclk"))
            memory, _ = parse_dpm(read_text(card.device_dir / "pp_dpm_mclk"))
            self._base_clocks[device] = (base_clock(core, core_od), base_clock(memory, memory_od))
        return self._base_clocks[device]

    def value_ranges(self, device: int, level: int) -> dict[ParameterKind, tuple[float, float]]:
        core, memory = self.base_clocks(device)
        return {
            ParameterKind.CORE_CLOCK: (float(core), core * CLOCK_HEADROOM),
            ParameterKind.MEMORY_CLOCK: (float(memory), memory * CLOCK_HEADROOM),
            ParameterKind.CORE_OVERDRIVE: (0.0, float(OVERDRIVE_MAX)),
            ParameterKind.MEMORY_OVERDRIVE: (0.0, float(OVERDRIVE_MAX)),
        }

    def read_performance_levels(self, device: int, defaults: bool = False) -> list[PerfLevel]:
        if defaults:
            self._card(device)
            return [PerfLevel(core=0, memory=0)]
        card = self._card(device)
        return [PerfLevel(
            core=read_value(card.device_dir / "pp_sclk_od"),
            memory=read_value(card.device_dir / "pp_mclk_od"),
        )]

    def encode(self, device: int, kind: ParameterKind, value: float) -> int:
        if kind in (ParameterKind.CORE_OVERDRIVE, ParameterKind.MEMORY_OVERDRIVE):
            return round_half_away(value)
        if kind not in (ParameterKind.CORE_CLOCK, ParameterKind.MEMORY_CLOCK):
            raise SysfsError(f"{kind.label} is not supported by the amdgpu driver")
        core, memory = self.base_clocks(device)
        base = core if kind is ParameterKind.CORE_CLOCK else memory
        if base == 0:
            raise SysfsError(f"No DPM clock table for adapter {device}")
        return round_half_away((value - base) / base * 100.0)

    def write_performance_levels(self, device: int, levels: list[PerfLevel]) -> None:
        card = self._card(device)
        target = levels[0]
        current = self.read_performance_levels(device)[0]
        if target.core != current.core:
            write_value(card.device_dir / "pp_sclk_od", target.core)
        if target.memory != current.memory:
            write_value(card.device_dir / "pp_mclk_od", target.memory)
        self._base_clocks.pop(device, None)

    def set_fan_speed(self, device: int, percent: int) -> None:
        hwmon = self._card(device).hwmon_dir
        write_value(hwmon / "pwm1_enable", PWM_MANUAL)
        lo = read_value(hwmon / "pwm1_min")
        hi = read_value(hwmon / "pwm1_max")
        write_value(hwmon / "pwm1", round_half_away(percent / 100.0 * (hi - lo) + lo))

    def set_fan_speed_to_default(self, device: int) -> None:
        write_value(self._card(device).hwmon_dir / "pwm1_enable", PWM_AUTO)

    # ── Telemetry ──

    def _pci_location(self, card: _Card) -> tuple[int, int, int]:
        # device -> ../../../0000:01:00.0
        m = _PCI_ADDR_RE.search(os.path.basename(os.path.realpath(card.device_dir)))
        if m is None:
            raise SysfsError(f"Invalid PCI bus string for card{card.drm_index}")
        return int(m.group(1), 16), int(m.group(2), 16), int(m.group(3))

    def adapter_info(self, device: int) -> AdapterInfo:
        card = self._card(device)
        dev, hwmon = card.device_dir, card.hwmon_dir
        info = AdapterInfo(index=device, vendor_id=AMD_VENDOR_ID)

        bus = _safe(self._pci_location, card, default=None)
        if bus is not None:
            info.bus, info.device, info.function = bus
        info.device_id = _safe(read_value, dev / "device")
        if self.pci_db is not None and info.device_id is not None:
            info.name = self.pci_db.device_name(AMD_VENDOR_ID, info.device_id)

        info.core_clocks, active = _safe(lambda: parse_dpm(read_text(dev / "pp_dpm_sclk")),
                                         default=([], None))
        info.core_clock = info.core_clocks[active] if active is not None else 0
        info.memory_clocks, active = _safe(lambda: parse_dpm(read_text(dev / "pp_dpm_mclk")),
                                           default=([], None))
        info.memory_clock = info.memory_clocks[active] if active is not None else 0

        info.core_od = _safe(read_value, dev / "pp_sclk_od")
        info.memory_od = _safe(read_value, dev / "pp_mclk_od")

        info.fan_min = _safe(read_value, hwmon / "pwm1_min")
        info.fan_max = _safe(read_value, hwmon / "pwm1_max")
        pwm = _safe(read_value, hwmon / "pwm1")
        if None not in (pwm, info.fan_min, info.fan_max) and info.fan_max != info.fan_min:
            info.fan_speed = (pwm - info.fan_min) / (info.fan_max - info.fan_min) * 100.0
        enable = _safe(read_value, hwmon / "pwm1_enable")
        info.fan_auto = None if enable is None else enable == PWM_AUTO

        temp = _safe(read_value, hwmon / "temp1_input")
        info.temperature = temp / 1000.0 if temp is not None else 0.0
        crit = _safe(read_value, hwmon / "temp1_crit")
        info.temperature_critical = crit / 1000.0 if crit is not None else None

        pm_info = self.root / "kernel" / "debug" / "dri" / str(card.drm_index) / "amdgpu_pm_info"
        info.load = _safe(lambda: parse_gpu_load(read_text(pm_info)))

        info.bus_speed, info.bus_lanes = _safe(lambda: parse_dpm_pcie(read_text(dev / "pp_dpm_pcie")),
                                               default=(None, None))
        return info

    def close(self) -> None:
        self._base_clocks.clear()
