"""
amdovc test configuration and fixtures.

  fake_backend   in-memory OverdriveBackend with Catalyst-style encoding
  make_card      builds an amdgpu sysfs card tree under tmp_path
  sysfs_root     tmp sysfs with one AMD card, ready for AmdGpuBackend
  pci_ids        small pci.ids file
"""

from __future__ import annotations

import copy
import os
from pathlib import Path

import pytest

from amdovc.lib.backend import AdapterInfo, PerfLevel, round_half_away
from amdovc.lib.errors import BackendError
from amdovc.lib.params import ParameterKind


# =============================================================================
# Fake backend
# =============================================================================

class FakeBackend:
    """Two adapters, two levels each, ADL-like units (10 kHz, mV).

    Level l: core 500 + 500*l MHz, memory 1000 MHz, Vddc 0.9 + 0.2*l V.
    Defaults are 50 MHz lower on the core.
    Every mutating call is appended to `calls`.
    """

    def __init__(self, devices: int = 2, levels: int = 2, name: str = "adl"):
        self.name = name
        self.calls: list[tuple] = []
        self.fail_write_on: int | None = None
        self.current = {
            i: [PerfLevel(core=50000 + 50000 * lv, memory=100000, voltage=900 + 200 * lv)
                for lv in range(levels)]
            for i in range(devices)
        }
        self.defaults = {
            i: [PerfLevel(core=45000 + 50000 * lv, memory=100000, voltage=900 + 200 * lv)
                for lv in range(levels)]
            for i in range(devices)
        }

    def device_count(self) -> int:
        return len(self.current)

    def performance_level_count(self, device: int) -> int:
        return len(self.current[device])

    def value_ranges(self, device: int, level: int):
        ranges = {
            ParameterKind.CORE_CLOCK: (300.0, 1200.0),
            ParameterKind.MEMORY_CLOCK: (150.0, 1500.0),
        }
        if self.name == "adl":
            ranges[ParameterKind.VOLTAGE] = (0.8, 1.25)
        else:
            ranges[ParameterKind.CORE_OVERDRIVE] = (0.0, 20.0)
            ranges[ParameterKind.MEMORY_OVERDRIVE] = (0.0, 20.0)
        return ranges

    def read_performance_levels(self, device: int, defaults: bool = False):
        self.calls.append(("read", device, defaults))
        source = self.defaults if defaults else self.current
        return copy.deepcopy(source[device])

    def encode(self, device: int, kind: ParameterKind, value: float) -> int:
        if kind is ParameterKind.VOLTAGE:
            return round_half_away(value * 1000)
        if kind in (ParameterKind.CORE_OVERDRIVE, ParameterKind.MEMORY_OVERDRIVE):
            return round_half_away(value)
        return round_half_away(value * 100)

    def write_performance_levels(self, device: int, levels):
        if self.fail_write_on == device:
            raise BackendError(f"write failed on adapter {device}")
        self.calls.append(("write", device, copy.deepcopy(levels)))
        self.current[device] = copy.deepcopy(levels)

    def set_fan_speed(self, device: int, percent: int):
        self.calls.append(("fan", device, percent))

    def set_fan_speed_to_default(self, device: int):
        self.calls.append(("fan_default", device))

    def adapter_info(self, device: int) -> AdapterInfo:
        return AdapterInfo(index=device, name=f"Fake GPU {device}")

    def close(self):
        self.calls.append(("close",))

    def writes(self):
        return [c for c in self.calls if c[0] in ("write", "fan", "fan_default")]


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def amdgpu_fake() -> FakeBackend:
    """Fake with amdgpu capabilities: overdrive kinds, no voltage."""
    return FakeBackend(levels=1, name="amdgpu")


# =============================================================================
# sysfs trees
# =============================================================================

def _write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


@pytest.fixture
def make_card():
    """Build /class/drm/cardN under `root` the way amdgpu lays it out.

    The device directory is a real PCI device directory reached through a
    symlink, so the PCI address can be read back from it.
    """

    def _make(
        root: Path,
        n: int,
        vendor: str = "0x1002",
        device_id: str = "0x67df",
        pci_addr: str | None = None,
        sclk: str = "0: 300Mhz\n1: 600Mhz\n2: 1000Mhz *\n",
        mclk: str = "0: 300Mhz\n1: 2000Mhz *\n",
        sclk_od: str = "0\n",
        mclk_od: str = "0\n",
        pcie: str = "0: 2.5GB, x8 \n1: 8.0GB, x16 *\n",
        hwmons: tuple[str, ...] = ("hwmon2",),
        pwm: tuple[int, int, int, int] = (0, 255, 102, 2),   # min, max, pwm1, enable
        temp: str = "45000\n",
        temp_crit: str = "89000\n",
        pm_info: str | None = "GFX Clocks and Power:\n\tmclk 2000\nGPU load: 37 %\n",
    ) -> Path:
        pci_addr = pci_addr or f"0000:{n + 1:02x}:00.0"
        device_dir = root / "devices" / "pci0000:00" / pci_addr
        _write(device_dir / "vendor", f"{vendor}\n")
        _write(device_dir / "device", f"{device_id}\n")
        _write(device_dir / "pp_dpm_sclk", sclk)
        _write(device_dir / "pp_dpm_mclk", mclk)
        _write(device_dir / "pp_sclk_od", sclk_od)
        _write(device_dir / "pp_mclk_od", mclk_od)
        _write(device_dir / "pp_dpm_pcie", pcie)
        (device_dir / "hwmon").mkdir(exist_ok=True)
        for name in hwmons:
            hw = device_dir / "hwmon" / name
            lo, hi, duty, enable = pwm
            _write(hw / "pwm1_min", f"{lo}\n")
            _write(hw / "pwm1_max", f"{hi}\n")
            _write(hw / "pwm1", f"{duty}\n")
            _write(hw / "pwm1_enable", f"{enable}\n")
            _write(hw / "temp1_input", temp)
            _write(hw / "temp1_crit", temp_crit)

        card = root / "class" / "drm" / f"card{n}"
        card.mkdir(parents=True, exist_ok=True)
        os.symlink(device_dir, card / "device")

        if pm_info is not None:
            _write(root / "kernel" / "debug" / "dri" / str(n) / "amdgpu_pm_info", pm_info)
        return device_dir

    return _make


@pytest.fixture
def sysfs_root(tmp_path, make_card) -> Path:
    """sysfs with one AMD card (card0) plus the connector/render noise of a real tree."""
    root = tmp_path / "sys"
    make_card(root, 0)
    drm = root / "class" / "drm"
    (drm / "card0-DP-1").mkdir()
    (drm / "renderD128").mkdir()
    _write(drm / "version", "drm 1.1.0 20060810\n")
    return root


@pytest.fixture
def pci_ids(tmp_path) -> Path:
    path = tmp_path / "pci.ids"
    path.write_text(
        "#\n"
        "#\tList of PCI ID's\n"
        "#\n"
        "1002  Advanced Micro Devices, Inc. [AMD/ATI]\n"
        "\t67df  Ellesmere [Radeon RX 470/480/570/570X/580/580X/590]\n"
        "\t\t1002 0b31  Radeon RX 580\n"
        "\t687f  Vega 10 XL/XT [Radeon RX Vega 56/64]\n"
        "10de  NVIDIA Corporation\n"
        "\t1b80  GP104 [GeForce GTX 1080]\n"
        "\n"
        "# List of known device classes\n"
        "C 03  Display controller\n"
        "\t00  VGA compatible controller\n"
    )
    return path
