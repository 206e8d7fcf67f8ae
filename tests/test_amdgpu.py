"""
amdgpu sysfs backend against a temporary sysfs tree.
"""

import pytest


def _hwmon(device_dir, name="hwmon2"):
    return device_dir / "hwmon" / name


class TestParsers:
    """Tests for the sysfs text parsers."""

    def test_parse_dpm(self):
        from amdovc.lib.amdgpu import parse_dpm

        assert parse_dpm("0: 300Mhz\n1: 600Mhz *\n2: 1000Mhz\n") == ([300, 600, 1000], 1)

    def test_parse_dpm_without_active(self):
        from amdovc.lib.amdgpu import parse_dpm

        assert parse_dpm("0: 300Mhz\n1: 2000Mhz\n") == ([300, 2000], None)

    def test_parse_dpm_rejects_garbage(self):
        from amdovc.lib.amdgpu import SysfsError, parse_dpm

        with pytest.raises(SysfsError):
            parse_dpm("0: fast\n")

    def test_parse_dpm_pcie_active_state(self):
        from amdovc.lib.amdgpu import parse_dpm_pcie

        assert parse_dpm_pcie("0: 2.5GB, x8 \n1: 8.0GB, x16 *\n") == (8000, 16)
        assert parse_dpm_pcie("0: 250MB, x1 *\n") == (250, 1)

    def test_parse_dpm_pcie_no_active(self):
        from amdovc.lib.amdgpu import parse_dpm_pcie

        assert parse_dpm_pcie("0: 2.5GB, x8 \n") == (None, None)

    def test_parse_dpm_pcie_unknown_unit(self):
        from amdovc.lib.amdgpu import SysfsError, parse_dpm_pcie

        with pytest.raises(SysfsError, match="Invalid bandwidth unit"):
            parse_dpm_pcie("0: 2.5TB, x8 *\n")

    def test_parse_gpu_load(self):
        from amdovc.lib.amdgpu import parse_gpu_load

        assert parse_gpu_load("GFX Clocks and Power:\nGPU load: 37 %\n") == 37
        assert parse_gpu_load("GPU Load: 5 %\n") == 5
        assert parse_gpu_load("UVD: Disabled\n") is None

    def test_base_clock_removes_overdrive(self):
        from amdovc.lib.amdgpu import base_clock

        assert base_clock([300, 1100], 10) == 1000
        assert base_clock([300, 1000], 0) == 1000
        assert base_clock([], 5) == 0


class TestDiscovery:
    """Tests for card enumeration."""

    def test_skips_connectors_and_render_nodes(self, sysfs_root):
        from amdovc.lib.amdgpu import AmdGpuBackend

        assert AmdGpuBackend(sysfs_root).device_count() == 1

    def test_skips_other_vendors(self, tmp_path, make_card):
        from amdovc.lib.amdgpu import AmdGpuBackend

        root = tmp_path / "sys"
        make_card(root, 0, vendor="0x10de", device_id="0x1b80")
        make_card(root, 1)
        make_card(root, 2, device_id="0x687f")

        backend = AmdGpuBackend(root)

        assert backend.device_count() == 2
        assert backend.adapter_info(1).device_id == 0x687f

    def test_skips_card_without_vendor_file(self, tmp_path, make_card):
        from amdovc.lib.amdgpu import AmdGpuBackend

        root = tmp_path / "sys"
        make_card(root, 1)
        (root / "class" / "drm" / "card0").mkdir(parents=True)

        assert AmdGpuBackend(root).device_count() == 1

    def test_cards_in_numeric_order(self, tmp_path, make_card):
        from amdovc.lib.amdgpu import AmdGpuBackend

        root = tmp_path / "sys"
        make_card(root, 10, device_id="0x687f")
        make_card(root, 2)

        backend = AmdGpuBackend(root)

        assert backend.adapter_info(0).device_id == 0x67df
        assert backend.adapter_info(1).device_id == 0x687f

    def test_lowest_hwmon_wins(self, tmp_path, make_card):
        from amdovc.lib.amdgpu import AmdGpuBackend

        root = tmp_path / "sys"
        dev = make_card(root, 0, hwmons=("hwmon7", "hwmon3"))

        AmdGpuBackend(root).set_fan_speed(0, 50)

        assert (_hwmon(dev, "hwmon3") / "pwm1").read_text() == "128\n"
        assert (_hwmon(dev, "hwmon7") / "pwm1").read_text() == "102\n"

    def test_missing_hwmon_is_an_error(self, tmp_path, make_card):
        from amdovc.lib.amdgpu import AmdGpuBackend, SysfsError

        root = tmp_path / "sys"
        make_card(root, 0, hwmons=())

        with pytest.raises(SysfsError, match="Unable to find hwmon"):
            AmdGpuBackend(root)

    def test_missing_drm_directory(self, tmp_path):
        from amdovc.lib.amdgpu import AmdGpuBackend, SysfsError

        with pytest.raises(SysfsError):
            AmdGpuBackend(tmp_path / "nothing")


class TestOverdrive:
    """Tests for ranges, encoding and level writes."""

    def test_single_level(self, sysfs_root):
        from amdovc.lib.amdgpu import AmdGpuBackend

        assert AmdGpuBackend(sysfs_root).performance_level_count(0) == 1

    def test_ranges_from_base_clock(self, sysfs_root):
        from amdovc.lib.amdgpu import AmdGpuBackend
        from amdovc.lib.params import ParameterKind

        ranges = AmdGpuBackend(sysfs_root).value_ranges(0, 0)

        assert ranges[ParameterKind.CORE_CLOCK] == pytest.approx((1000.0, 1200.0))
        assert ranges[ParameterKind.MEMORY_CLOCK] == pytest.approx((2000.0, 2400.0))
        assert ranges[ParameterKind.CORE_OVERDRIVE] == (0.0, 20.0)
        assert ranges[ParameterKind.MEMORY_OVERDRIVE] == (0.0, 20.0)
        assert ParameterKind.VOLTAGE not in ranges

    def test_base_clock_accounts_for_current_overdrive(self, tmp_path, make_card):
        from amdovc.lib.amdgpu import AmdGpuBackend

        root = tmp_path / "sys"
        make_card(root, 0, sclk="0: 300Mhz\n1: 1100Mhz *\n", sclk_od="10\n")

        assert AmdGpuBackend(root).base_clocks(0) == (1000, 2000)

    def test_encode(self, sysfs_root):
        from amdovc.lib.amdgpu import AmdGpuBackend
        from amdovc.lib.params import ParameterKind

        backend = AmdGpuBackend(sysfs_root)

        assert backend.encode(0, ParameterKind.CORE_CLOCK, 1100) == 10
        assert backend.encode(0, ParameterKind.MEMORY_CLOCK, 2100) == 5
        assert backend.encode(0, ParameterKind.CORE_OVERDRIVE, 12.5) == 13

    def test_encode_voltage_unsupported(self, sysfs_root):
        from amdovc.lib.amdgpu import AmdGpuBackend, SysfsError
        from amdovc.lib.params import ParameterKind

        with pytest.raises(SysfsError):
            AmdGpuBackend(sysfs_root).encode(0, ParameterKind.VOLTAGE, 1.1)

    def test_levels_current_and_default(self, tmp_path, make_card):
        from amdovc.lib.amdgpu import AmdGpuBackend
        from amdovc.lib.backend import PerfLevel

        root = tmp_path / "sys"
        make_card(root, 0, sclk_od="7\n", mclk_od="3\n")
        backend = AmdGpuBackend(root)

        assert backend.read_performance_levels(0) == [PerfLevel(core=7, memory=3)]
        assert backend.read_performance_levels(0, defaults=True) == [PerfLevel(core=0, memory=0)]

    def test_write_touches_changed_files_only(self, sysfs_root, monkeypatch):
        from amdovc.lib import amdgpu
        from amdovc.lib.backend import PerfLevel

        written = []
        real_write = amdgpu.write_value
        monkeypatch.setattr(amdgpu, "write_value",
                            lambda path, value: (written.append((path.name, value)), real_write(path, value)))

        backend = amdgpu.AmdGpuBackend(sysfs_root)
        backend.write_performance_levels(0, [PerfLevel(core=10, memory=0)])

        assert written == [("pp_sclk_od", 10)]
        device_dir = sysfs_root / "class" / "drm" / "card0" / "device"
        assert (device_dir / "pp_sclk_od").read_text() == "10\n"

    def test_write_invalidates_base_clock_cache(self, sysfs_root):
        from amdovc.lib.amdgpu import AmdGpuBackend
        from amdovc.lib.backend import PerfLevel

        backend = AmdGpuBackend(sysfs_root)
        backend.base_clocks(0)
        device_dir = sysfs_root / "class" / "drm" / "card0" / "device"
        (device_dir / "pp_dpm_sclk").write_text("0: 300Mhz\n1: 1100Mhz *\n")

        backend.write_performance_levels(0, [PerfLevel(core=10, memory=0)])

        assert backend.base_clocks(0) == (1000, 2000)

    def test_unknown_adapter(self, sysfs_root):
        from amdovc.lib.amdgpu import AmdGpuBackend, SysfsError

        with pytest.raises(SysfsError):
            AmdGpuBackend(sysfs_root).read_performance_levels(3)


class TestFan:
    """Tests for pwm fan control."""

    def test_percent_maps_onto_pwm_range(self, sysfs_root):
        from amdovc.lib.amdgpu import AmdGpuBackend

        AmdGpuBackend(sysfs_root).set_fan_speed(0, 50)

        hw = sysfs_root / "class" / "drm" / "card0" / "device" / "hwmon" / "hwmon2"
        assert (hw / "pwm1_enable").read_text() == "1\n"
        assert (hw / "pwm1").read_text() == "128\n"

    def test_percent_with_pwm_minimum(self, tmp_path, make_card):
        from amdovc.lib.amdgpu import AmdGpuBackend

        root = tmp_path / "sys"
        dev = make_card(root, 0, pwm=(50, 250, 100, 2))

        AmdGpuBackend(root).set_fan_speed(0, 25)

        assert (_hwmon(dev) / "pwm1").read_text() == "100\n"

    def test_default_restores_automatic(self, sysfs_root):
        from amdovc.lib.amdgpu import AmdGpuBackend

        hw = sysfs_root / "class" / "drm" / "card0" / "device" / "hwmon" / "hwmon2"
        (hw / "pwm1_enable").write_text("1\n")

        AmdGpuBackend(sysfs_root).set_fan_speed_to_default(0)

        assert (hw / "pwm1_enable").read_text() == "2\n"


class TestAdapterInfo:
    """Tests for telemetry."""

    def test_full_info(self, sysfs_root, pci_ids):
        from amdovc.lib.amdgpu import AmdGpuBackend
        from amdovc.lib.pci import PciDatabase

        with PciDatabase(pci_ids) as db:
            info = AmdGpuBackend(sysfs_root, pci_db=db).adapter_info(0)

        assert info.name == "Ellesmere [Radeon RX 470/480/570/570X/580/580X/590]"
        assert (info.bus, info.device, info.function) == (1, 0, 0)
        assert info.vendor_id == 0x1002
        assert info.device_id == 0x67df
        assert info.core_clocks == [300, 600, 1000]
        assert info.memory_clocks == [300, 2000]
        assert info.core_clock == 1000
        assert info.memory_clock == 2000
        assert (info.core_od, info.memory_od) == (0, 0)
        assert info.fan_speed == pytest.approx(40.0)
        assert info.fan_auto is True
        assert info.temperature == 45.0
        assert info.temperature_critical == 89.0
        assert info.load == 37
        assert (info.bus_speed, info.bus_lanes) == (8000, 16)

    def test_missing_sensors_blank_fields(self, tmp_path, make_card):
        from amdovc.lib.amdgpu import AmdGpuBackend

        root = tmp_path / "sys"
        dev = make_card(root, 0, pm_info=None)
        (_hwmon(dev) / "temp1_input").unlink()
        (_hwmon(dev) / "temp1_crit").unlink()

        info = AmdGpuBackend(root).adapter_info(0)

        assert info.load is None
        assert info.temperature == 0.0
        assert info.temperature_critical is None
        assert info.core_clock == 1000

    def test_without_pci_db_name_is_empty(self, sysfs_root):
        from amdovc.lib.amdgpu import AmdGpuBackend

        assert AmdGpuBackend(sysfs_root).adapter_info(0).name == ""


class TestEndToEnd:
    """Parse, validate and apply against the sysfs tree."""

    def test_coreclk_and_fanspeed(self, sysfs_root):
        from amdovc.lib.amdgpu import AmdGpuBackend
        from amdovc.lib.apply import apply_directives
        from amdovc.lib.backend import CapabilitySnapshot
        from amdovc.lib.params import parse_directives
        from amdovc.lib.validate import validate

        backend = AmdGpuBackend(sysfs_root)
        ds = parse_directives(["coreclk=1100", "memod=default", "fanspeed=50"])
        caps = CapabilitySnapshot.take(backend)
        validate(ds, caps)
        lines = []

        apply_directives(ds, caps, backend, out=lines.append)

        dev = sysfs_root / "class" / "drm" / "card0" / "device"
        assert (dev / "pp_sclk_od").read_text() == "10\n"
        assert (dev / "pp_mclk_od").read_text() == "0\n"
        assert (dev / "hwmon" / "hwmon2" / "pwm1").read_text() == "128\n"
        assert lines[0] == "Setting fan speed to 50% for adapter 0 at thermal controller 0"

    def test_clock_above_headroom_rejected(self, sysfs_root):
        from amdovc.lib.amdgpu import AmdGpuBackend
        from amdovc.lib.backend import CapabilitySnapshot
        from amdovc.lib.errors import ValidationError
        from amdovc.lib.params import parse_directives
        from amdovc.lib.validate import validate

        backend = AmdGpuBackend(sysfs_root)

        with pytest.raises(ValidationError):
            validate(parse_directives(["coreclk=1300"]), CapabilitySnapshot.take(backend))
