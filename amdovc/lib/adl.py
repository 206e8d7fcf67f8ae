"""
ADL ctypes wrapper — Overdrive5 control for AMD Catalyst/Crimson (Linux).

Uses the AMD Display Library (libatiadlxx.so, installed with fglrx /
Catalyst / Crimson) for:
  - Overdrive ranges and performance levels (ADL_Overdrive5_OD*)
  - Fan speed control (ADL_Overdrive5_FanSpeed*)
  - Telemetry: current activity, temperature, fan info

Struct layouts are the public ones from the ADL SDK (adl_structures.h),
Linux variant of AdapterInfo. Units used by ADL:
  clocks   10 kHz   (90000 = 900 MHz)
  Vddc     mV       (1100 = 1.1 V)
  temp     m°C

ADL reports one entry per adapter *and* per display path; only the active
ones count. User adapter i = i-th active ADL adapter.

If the X server is not running, ADL needs root.
"""

from __future__ import annotations

import ctypes
import ctypes.util
import logging
import os
import re
from pathlib import Path

from amdovc.lib.backend import AdapterInfo, PerfLevel, round_half_away
from amdovc.lib.errors import BackendError, BackendUnavailable
from amdovc.lib.params import ParameterKind

log = logging.getLogger(__name__)

ADL_LIBRARY = "libatiadlxx.so"

# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Error handling
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

# ADL return codes (adl_defines.h). 0 = OK, 1 = OK with warning, negative = error.
ADL_OK = 0
ADL_OK_WARNING = 1

ADL_ERRORS = {
    0:   "ADL_OK",
    1:   "ADL_OK_WARNING",
    -1:  "ADL_ERR",
    -2:  "ADL_ERR_NOT_INIT",
    -3:  "ADL_ERR_INVALID_PARAM",
    -4:  "ADL_ERR_INVALID_PARAM_SIZE",
    -5:  "ADL_ERR_INVALID_ADL_IDX",
    -6:  "ADL_ERR_INVALID_CONTROLLER_IDX",
    -7:  "ADL_ERR_INVALID_DIPLAY_IDX",
    -8:  "ADL_ERR_NOT_SUPPORTED",
    -9:  "ADL_ERR_NULL_POINTER",
    -10: "ADL_ERR_DISABLED_ADAPTER",
    -11: "ADL_ERR_INVALID_CALLBACK",
    -12: "ADL_ERR_RESOURCE_CONFLICT",
    -20: "ADL_ERR_SET_INCOMPLETE",
    -21: "ADL_ERR_NO_XDISPLAY",
}


class AdlError(BackendError):
    """ADL call failed."""

    def __init__(self, func_name: str, status: int):
        name = ADL_ERRORS.get(status, f"UNKNOWN({status})")
        super().__init__(f"{func_name} returned {status} ({name})")
        self.status = status
        self.func_name = func_name


def _check(func_name: str, status: int) -> int:
    if status not in (ADL_OK, ADL_OK_WARNING):
        raise AdlError(func_name, status)
    return status


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Structures (adl_structures.h)
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

ADL_MAX_PATH = 256

ADL_DL_FANCTRL_SPEED_TYPE_PERCENT = 1
ADL_DL_FANCTRL_FLAG_USER_DEFINED_SPEED = 1

_c_int = ctypes.c_int


class ADLAdapterInfo(ctypes.Structure):
    # Linux layout: iXScreenNum/iDrvIndex/strXScreenConfigName instead of
    # the Windows iExist/strDriverPath fields.
    _fields_ = [
        ("iSize", _c_int),
        ("iAdapterIndex", _c_int),
        ("strUDID", ctypes.c_char * ADL_MAX_PATH),
        ("iBusNumber", _c_int),
        ("iDeviceNumber", _c_int),
        ("iFunctionNumber", _c_int),
        ("iVendorID", _c_int),
        ("strAdapterName", ctypes.c_char * ADL_MAX_PATH),
        ("strDisplayName", ctypes.c_char * ADL_MAX_PATH),
        ("iPresent", _c_int),
        ("iXScreenNum", _c_int),
        ("iDrvIndex", _c_int),
        ("strXScreenConfigName", ctypes.c_char * ADL_MAX_PATH),
    ]


class ADLODParameterRange(ctypes.Structure):
    _fields_ = [("iMin", _c_int), ("iMax", _c_int), ("iStep", _c_int)]


class ADLODParameters(ctypes.Structure):
    _fields_ = [
        ("iSize", _c_int),
        ("iNumberOfPerformanceLevels", _c_int),
        ("iActivityReportingSupported", _c_int),
        ("iDiscretePerformanceLevels", _c_int),
        ("iReserved", _c_int),
        ("sEngineClock", ADLODParameterRange),
        ("sMemoryClock", ADLODParameterRange),
        ("sVddc", ADLODParameterRange),
    ]


class ADLODPerformanceLevel(ctypes.Structure):
    _fields_ = [("iEngineClock", _c_int), ("iMemoryClock", _c_int), ("iVddc", _c_int)]


def _levels_struct(count: int):
    """ADLODPerformanceLevels with room for `count` levels.

    The C struct declares aLevels[1] and is over-allocated; iSize must be
    the size of the whole allocation.
    """

    class ADLODPerformanceLevels(ctypes.Structure):
        _fields_ = [
            ("iSize", _c_int),
            ("iReserved", _c_int),
            ("aLevels", ADLODPerformanceLevel * count),
        ]

    levels = ADLODPerformanceLevels()
    levels.iSize = ctypes.sizeof(ADLODPerformanceLevels)
    return levels


class ADLPMActivity(ctypes.Structure):
    _fields_ = [
        ("iSize", _c_int),
        ("iEngineClock", _c_int),
        ("iMemoryClock", _c_int),
        ("iVddc", _c_int),
        ("iActivityPercent", _c_int),
        ("iCurrentPerformanceLevel", _c_int),
        ("iCurrentBusSpeed", _c_int),
        ("iCurrentBusLanes", _c_int),
        ("iMaximumBusLanes", _c_int),
        ("iReserved", _c_int),
    ]


class ADLTemperature(ctypes.Structure):
    _fields_ = [("iSize", _c_int), ("iTemperature", _c_int)]


class ADLFanSpeedInfo(ctypes.Structure):
    _fields_ = [
        ("iSize", _c_int),
        ("iFlags", _c_int),
        ("iMinPercent", _c_int),
        ("iMaxPercent", _c_int),
        ("iMinRPM", _c_int),
        ("iMaxRPM", _c_int),
    ]


class ADLFanSpeedValue(ctypes.Structure):
    _fields_ = [
        ("iSize", _c_int),
        ("iSpeedType", _c_int),
        ("iFanSpeed", _c_int),
        ("iFlags", _c_int),
    ]


def _sized(struct_type):
    """New zeroed struct with iSize filled in, as every ADL Get expects."""
    s = struct_type()
    s.iSize = ctypes.sizeof(struct_type)
    return s


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Library loading
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

# Every symbol we call. Checked once on open so a partial/old library is
# reported as "unavailable" instead of failing halfway through a batch.
_FUNCTIONS = (
    "ADL_Main_Control_Create",
    "ADL_Main_Control_Destroy",
    "ADL_Adapter_NumberOfAdapters_Get",
    "ADL_Adapter_Active_Get",
    "ADL_Adapter_AdapterInfo_Get",
    "ADL_Overdrive5_ODParameters_Get",
    "ADL_Overdrive5_ODPerformanceLevels_Get",
    "ADL_Overdrive5_ODPerformanceLevels_Set",
    "ADL_Overdrive5_CurrentActivity_Get",
    "ADL_Overdrive5_Temperature_Get",
    "ADL_Overdrive5_FanSpeedInfo_Get",
    "ADL_Overdrive5_FanSpeed_Get",
    "ADL_Overdrive5_FanSpeed_Set",
    "ADL_Overdrive5_FanSpeedToDefault_Set",
)

# void* ADL_Main_Memory_Alloc(int size). ADL allocates its own result
# buffers through this callback and never frees them itself.
_ADL_MALLOC = ctypes.CFUNCTYPE(ctypes.c_void_p, ctypes.c_int)


def _libc_malloc():
    libc = ctypes.CDLL(ctypes.util.find_library("c"))
    libc.malloc.restype = ctypes.c_void_p
    libc.malloc.argtypes = [ctypes.c_size_t]
    return _ADL_MALLOC(lambda size: libc.malloc(size))


def load_library(name: str = ADL_LIBRARY):
    """dlopen the ADL library. BackendUnavailable if absent or incomplete."""
    try:
        lib = ctypes.CDLL(name)
    except OSError as e:
        raise BackendUnavailable(f"Cannot load {name}: {e}") from e
    missing = [fn for fn in _FUNCTIONS if not hasattr(lib, fn)]
    if missing:
        raise BackendUnavailable(f"{name} lacks {', '.join(missing)}")
    return lib


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Backend
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

_UDID_DEVICE_RE = re.compile(r"DEV_([0-9A-Fa-f]{4})")


class AdlBackend:
    """OverdriveBackend over ADL Overdrive5."""

    name = "adl"

    def __init__(self, lib, pci_db=None, sysfs_root: str | os.PathLike = "/sys", malloc=None):
        self._lib = lib
        self.pci_db = pci_db
        self.sysfs_root = Path(sysfs_root)
        # Must stay referenced while ADL is initialized.
        self._malloc = malloc if malloc is not None else _libc_malloc()
        self._call("ADL_Main_Control_Create", self._malloc, 1)
        self._open = True
        self._od_params: dict[int, ADLODParameters] = {}
        try:
            self._total = self._adapter_count()
            self._active = [i for i in range(self._total) if self._is_active(i)]
        except AdlError:
            self.close()
            raise
        log.debug("ADL: %d adapter(s), active: %s", self._total, self._active)

    @classmethod
    def open(cls, pci_db=None, sysfs_root: str | os.PathLike = "/sys", lib_name: str = ADL_LIBRARY):
        """Load and initialize ADL, or raise BackendUnavailable."""
        lib = load_library(lib_name)
        try:
            return cls(lib, pci_db=pci_db, sysfs_root=sysfs_root)
        except AdlError as e:
            raise BackendUnavailable(f"ADL initialization failed: {e}") from e

    def _call(self, func_name: str, *args) -> int:
        status = getattr(self._lib, func_name)(*args)
        log.debug("%s -> %s", func_name, status)
        return _check(func_name, status)

    def _adapter_count(self) -> int:
        n = ctypes.c_int(0)
        self._call("ADL_Adapter_NumberOfAdapters_Get", ctypes.byref(n))
        return n.value

    def _is_active(self, adl_index: int) -> bool:
        status = ctypes.c_int(0)
        self._call("ADL_Adapter_Active_Get", adl_index, ctypes.byref(status))
        return bool(status.value)

    def _adl_index(self, device: int) -> int:
        if not 0 <= device < len(self._active):
            raise BackendError(f"Adapter {device} does not exist")
        return self._active[device]

    # ── Capability interface ──

    def device_count(self) -> int:
        return len(self._active)

    def od_parameters(self, device: int) -> ADLODParameters:
        if device not in self._od_params:
            params = _sized(ADLODParameters)
            self._call("ADL_Overdrive5_ODParameters_Get", self._adl_index(device), ctypes.byref(params))
            self._od_params[device] = params
        return self._od_params[device]

    def performance_level_count(self, device: int) -> int:
        return self.od_parameters(device).iNumberOfPerformanceLevels

    def value_ranges(self, device: int, level: int) -> dict[ParameterKind, tuple[float, float]]:
        # Overdrive5 ranges are per adapter, the same for every level.
        p = self.od_parameters(device)
        return {
            ParameterKind.CORE_CLOCK: (p.sEngineClock.iMin / 100.0, p.sEngineClock.iMax / 100.0),
            ParameterKind.MEMORY_CLOCK: (p.sMemoryClock.iMin / 100.0, p.sMemoryClock.iMax / 100.0),
            ParameterKind.VOLTAGE: (p.sVddc.iMin / 1000.0, p.sVddc.iMax / 1000.0),
        }

    def read_performance_levels(self, device: int, defaults: bool = False) -> list[PerfLevel]:
        count = self.performance_level_count(device)
        levels = _levels_struct(count)
        self._call(
            "ADL_Overdrive5_ODPerformanceLevels_Get",
            self._adl_index(device),
            int(defaults),
            ctypes.byref(levels),
        )
        return [
            PerfLevel(core=lv.iEngineClock, memory=lv.iMemoryClock, voltage=lv.iVddc)
            for lv in levels.aLevels
        ]

    def encode(self, device: int, kind: ParameterKind, value: float) -> int:
        if kind in (ParameterKind.CORE_CLOCK, ParameterKind.MEMORY_CLOCK):
            return round_half_away(value * 100.0)
        if kind is ParameterKind.VOLTAGE:
            return round_half_away(value * 1000.0)
        raise BackendError(f"{kind.label} is not supported by ADL")

    def write_performance_levels(self, device: int, levels: list[PerfLevel]) -> None:
        packed = _levels_struct(len(levels))
        for slot, lv in zip(packed.aLevels, levels):
            slot.iEngineClock = lv.core
            slot.iMemoryClock = lv.memory
            slot.iVddc = lv.voltage
        self._call("ADL_Overdrive5_ODPerformanceLevels_Set", self._adl_index(device), ctypes.byref(packed))

    def set_fan_speed(self, device: int, percent: int) -> None:
        value = _sized(ADLFanSpeedValue)
        value.iSpeedType = ADL_DL_FANCTRL_SPEED_TYPE_PERCENT
        value.iFanSpeed = percent
        value.iFlags = ADL_DL_FANCTRL_FLAG_USER_DEFINED_SPEED
        self._call("ADL_Overdrive5_FanSpeed_Set", self._adl_index(device), 0, ctypes.byref(value))

    def set_fan_speed_to_default(self, device: int) -> None:
        self._call("ADL_Overdrive5_FanSpeedToDefault_Set", self._adl_index(device), 0)

    # ── Telemetry ──

    def _adapter_infos(self):
        infos = (ADLAdapterInfo * max(self._total, 1))()
        for info in infos:
            info.iSize = ctypes.sizeof(ADLAdapterInfo)
        self._call("ADL_Adapter_AdapterInfo_Get", ctypes.byref(infos), ctypes.sizeof(infos))
        return infos

    def _device_id(self, raw: ADLAdapterInfo) -> int | None:
        m = _UDID_DEVICE_RE.search(raw.strUDID.decode("ascii", errors="replace"))
        if m:
            return int(m.group(1), 16)
        # No id in the UDID: ask sysfs for the device at that bus location.
        path = (self.sysfs_root / "bus" / "pci" / "devices"
                / f"0000:{raw.iBusNumber:02x}:{raw.iDeviceNumber:02x}.{raw.iFunctionNumber}" / "device")
        try:
            return int(path.read_text().strip(), 16)
        except (OSError, ValueError):
            return None

    def adapter_info(self, device: int) -> AdapterInfo:
        adl = self._adl_index(device)
        raw = self._adapter_infos()[adl]
        info = AdapterInfo(
            index=device,
            name=raw.strAdapterName.decode("utf-8", errors="replace"),
            bus=raw.iBusNumber,
            device=raw.iDeviceNumber,
            function=raw.iFunctionNumber,
            vendor_id=raw.iVendorID,
            device_id=self._device_id(raw),
        )
        if not info.name and self.pci_db is not None and info.device_id is not None:
            info.name = self.pci_db.device_name(info.vendor_id, info.device_id)

        activity = _sized(ADLPMActivity)
        self._call("ADL_Overdrive5_CurrentActivity_Get", adl, ctypes.byref(activity))
        info.core_clock = activity.iEngineClock / 100.0
        info.memory_clock = activity.iMemoryClock / 100.0
        info.voltage = activity.iVddc / 1000.0
        info.load = activity.iActivityPercent
        info.current_level = activity.iCurrentPerformanceLevel
        info.bus_speed = activity.iCurrentBusSpeed
        info.bus_lanes = activity.iCurrentBusLanes

        temp = _sized(ADLTemperature)
        self._call("ADL_Overdrive5_Temperature_Get", adl, 0, ctypes.byref(temp))
        info.temperature = temp.iTemperature / 1000.0

        fan_info = _sized(ADLFanSpeedInfo)
        self._call("ADL_Overdrive5_FanSpeedInfo_Get", adl, 0, ctypes.byref(fan_info))
        info.fan_min, info.fan_max = fan_info.iMinPercent, fan_info.iMaxPercent
        info.fan_min_rpm, info.fan_max_rpm = fan_info.iMinRPM, fan_info.iMaxRPM

        fan = _sized(ADLFanSpeedValue)
        fan.iSpeedType = ADL_DL_FANCTRL_SPEED_TYPE_PERCENT
        self._call("ADL_Overdrive5_FanSpeed_Get", adl, 0, ctypes.byref(fan))
        info.fan_speed = float(fan.iFanSpeed)

        p = self.od_parameters(device)
        info.core_range = (p.sEngineClock.iMin / 100.0, p.sEngineClock.iMax / 100.0, p.sEngineClock.iStep / 100.0)
        info.memory_range = (p.sMemoryClock.iMin / 100.0, p.sMemoryClock.iMax / 100.0, p.sMemoryClock.iStep / 100.0)
        info.voltage_range = (p.sVddc.iMin / 1000.0, p.sVddc.iMax / 1000.0, p.sVddc.iStep / 1000.0)

        def _user_units(levels):
            return [(lv.core / 100.0, lv.memory / 100.0, lv.voltage / 1000.0) for lv in levels]

        info.levels = _user_units(self.read_performance_levels(device))
        info.default_levels = _user_units(self.read_performance_levels(device, defaults=True))
        return info

    def close(self) -> None:
        if getattr(self, "_open", False):
            self._open = False
            self._call("ADL_Main_Control_Destroy")
