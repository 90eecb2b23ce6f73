"""Temperature sources for the fan controller.

Each source implements read() -> TemperatureReading and raises
SensorUnavailable when none of its acquisition strategies yields a value.
"""

from __future__ import annotations

import dataclasses
import logging
import pathlib
import re
import subprocess
from typing import Callable, Protocol

log = logging.getLogger("fan-control")

CPU_SENSOR_LABELS = ("CPU Temp", "CPU1 Temp", "CPU Temperature", "Processor Temp")
CPU_HWMON_NAMES = ("coretemp", "k10temp", "zenpower")
CPU_TEMP_MAX_VALID = 150
DISK_TEMP_LIMIT = 100  # exclusive
# smartctl exit bits 0-1 mean the query failed; higher bits report drive
# health and still come with a full attribute table.
SMARTCTL_FATAL_BITS = 0b11

_DISK_NAME = re.compile(r"^(sd[a-z]{1,2}|nvme[0-9]n1)$")
_CPU_LABEL = re.compile(r"cpu|processor", re.IGNORECASE)


class FanControlError(Exception):
    """Base class for fan control errors."""


class SensorUnavailable(FanControlError):
    """A temperature source yielded no valid reading."""


@dataclasses.dataclass(frozen=True, slots=True)
class TemperatureReading:
    """One temperature sample in whole degrees Celsius."""

    celsius: int
    source: str
    valid: bool = True


class TemperatureSource(Protocol):
    """Protocol for temperature sources."""

    tag: str

    def read(self) -> TemperatureReading: ...


def run_cmd(
    cmd: list[str], timeout: float = 10.0, fatal_mask: int = -1
) -> str | None:
    """Run command with timeout. Returns stdout on success, None on failure.

    The command failed if any exit status bit in fatal_mask is set; the
    default treats every non-zero status as failure.
    """
    try:
        r = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        return r.stdout if r.returncode & fatal_mask == 0 else None
    except (subprocess.TimeoutExpired, OSError):
        return None


@dataclasses.dataclass(slots=True, kw_only=True)
class Ipmitool:
    """ipmitool invocation with optional remote BMC credentials.

    Credentials are passed through untouched; a host of "localhost" (or
    empty) talks to the local BMC through the kernel interface.
    """

    host: str = "localhost"
    user: str = ""
    password: str = ""
    timeout: float = 10.0

    def command(self, *args: str) -> list[str]:
        cmd = ["ipmitool"]
        if self.host and self.host != "localhost":
            cmd += ["-H", self.host]
            if self.user:
                cmd += ["-U", self.user]
            if self.password:
                cmd += ["-P", self.password]
        cmd.extend(args)
        return cmd

    def run(self, *args: str) -> str | None:
        return run_cmd(self.command(*args), self.timeout)


def _int_in_range(text: str, upper: int) -> int | None:
    """Return int(text) if text is all digits and the value is <= upper."""
    text = text.strip()
    if not re.fullmatch(r"[0-9]+", text):
        return None
    value = int(text)
    return value if value <= upper else None


def parse_sensor_reading(output: str) -> int | None:
    """Parse `ipmitool sensor reading` output, e.g. "CPU Temp | 45.000"."""
    for line in output.splitlines():
        parts = line.split("|")
        if len(parts) < 2:
            continue
        temp = _int_in_range(parts[1].strip().split(".")[0], CPU_TEMP_MAX_VALID)
        if temp is not None:
            return temp
    return None


def parse_sdr_cpu_temp(output: str) -> int | None:
    """Parse the first CPU row of `ipmitool sdr type Temperature`.

    Rows look like "CPU Temp | 01h | ok | 3.1 | 45 degrees C".
    """
    for line in output.splitlines():
        parts = line.split("|")
        if len(parts) < 5 or not _CPU_LABEL.search(parts[0]):
            continue
        m = re.search(r"\d+", parts[4])
        if m is None:
            continue
        temp = _int_in_range(m.group(0), CPU_TEMP_MAX_VALID)
        if temp is not None:
            return temp
    return None


def parse_millidegrees(text: str) -> int | None:
    """Convert a sysfs millidegree value to whole degrees, or None."""
    try:
        millidegrees = int(text.strip())
    except ValueError:
        return None
    if millidegrees < 0:
        return None
    temp = millidegrees // 1000
    return temp if temp <= CPU_TEMP_MAX_VALID else None


def parse_smart_temperature(output: str) -> int | None:
    """Extract a drive temperature from `smartctl -A` output.

    Attribute 194 wins over attribute 190 (airflow); NVMe devices report a
    "Temperature:" line instead of an attribute table. Values that are not
    non-negative integers below 100 are discarded.
    """
    found: dict[str, int] = {}
    for line in output.splitlines():
        parts = line.split()
        if not parts:
            continue
        if parts[0] == "Temperature:" and len(parts) >= 2:
            key = "nvme"
            raw = parts[1]
        elif len(parts) >= 10 and parts[0] == "194" and "Temperature" in parts[1]:
            key = "194"
            raw = parts[9]
        elif len(parts) >= 10 and parts[0] == "190" and "Airflow_Temp" in parts[1]:
            key = "190"
            raw = parts[9]
        else:
            continue
        temp = _int_in_range(raw, DISK_TEMP_LIMIT - 1)
        if temp is not None and key not in found:
            found[key] = temp
    for key in ("194", "190", "nvme"):
        if key in found:
            return found[key]
    return None


def detect_disks(dev_dir: pathlib.Path = pathlib.Path("/dev")) -> tuple[str, ...]:
    """Find SATA/SAS (sdX, sdXX) and NVMe (nvmeNn1) block devices."""
    disks: list[str] = []
    for dev in dev_dir.iterdir():
        if _DISK_NAME.match(dev.name) and dev.is_block_device():
            disks.append(str(dev))
    return tuple(sorted(disks))


class CpuSource:
    """CPU temperature via BMC sensors, falling back to sysfs."""

    tag = "cpu"

    ipmi: Ipmitool
    _thermal_dir: pathlib.Path
    _hwmon_dir: pathlib.Path
    strategies: tuple[Callable[[], int | None], ...]

    def __init__(
        self,
        ipmi: Ipmitool,
        thermal_dir: pathlib.Path = pathlib.Path("/sys/class/thermal"),
        hwmon_dir: pathlib.Path = pathlib.Path("/sys/class/hwmon"),
    ) -> None:
        self.ipmi = ipmi
        self._thermal_dir = thermal_dir
        self._hwmon_dir = hwmon_dir
        self.strategies = (
            self._from_named_sensor,
            self._from_sdr_table,
            self._from_thermal_zone,
            self._from_hwmon,
        )

    def read(self) -> TemperatureReading:
        """Return the first valid reading from the strategy chain."""
        for strategy in self.strategies:
            temp = strategy()
            if temp is not None:
                log.debug("CPU temp %d°C via %s", temp, strategy.__name__)
                return TemperatureReading(temp, self.tag)
        raise SensorUnavailable("Could not read CPU temperature")

    def _from_named_sensor(self) -> int | None:
        for label in CPU_SENSOR_LABELS:
            out = self.ipmi.run("sensor", "reading", label)
            if out is None:
                continue
            temp = parse_sensor_reading(out)
            if temp is not None:
                return temp
        return None

    def _from_sdr_table(self) -> int | None:
        out = self.ipmi.run("sdr", "type", "Temperature")
        if out is None:
            return None
        return parse_sdr_cpu_temp(out)

    def _from_thermal_zone(self) -> int | None:
        if not self._thermal_dir.is_dir():
            return None
        return _first_millidegrees(sorted(self._thermal_dir.glob("thermal_zone*/temp")))

    def _from_hwmon(self) -> int | None:
        if not self._hwmon_dir.is_dir():
            return None
        chips = sorted(self._hwmon_dir.iterdir())

        def is_cpu(chip: pathlib.Path) -> bool:
            name = chip / "name"
            try:
                return name.read_text().strip() in CPU_HWMON_NAMES
            except OSError:
                return False

        # Stable sort: CPU drivers first, name order otherwise.
        chips.sort(key=lambda chip: not is_cpu(chip))
        for chip in chips:
            temp = _first_millidegrees(sorted(chip.glob("temp*_input")))
            if temp is not None:
                return temp
        return None


def _first_millidegrees(paths: list[pathlib.Path]) -> int | None:
    for path in paths:
        try:
            temp = parse_millidegrees(path.read_text())
        except OSError:
            continue
        if temp is not None:
            return temp
    return None


class DiskSource:
    """Hottest drive temperature via smartctl."""

    tag = "disk"

    _devices: tuple[str, ...] | None
    _dev_dir: pathlib.Path
    _timeout: float

    def __init__(
        self,
        devices: tuple[str, ...] | None = None,
        timeout: float = 10.0,
        dev_dir: pathlib.Path = pathlib.Path("/dev"),
    ) -> None:
        """Initialize with a fixed device list, or None to auto-detect.

        Auto-detection runs on every read so hot-swapped drives are picked up.
        """
        self._devices = devices
        self._timeout = timeout
        self._dev_dir = dev_dir

    def devices(self) -> tuple[str, ...]:
        if self._devices is not None:
            return self._devices
        return detect_disks(self._dev_dir)

    def read_devices(self) -> dict[str, int]:
        """Read each drive. Returns {device: celsius} for drives that answered."""
        temps: dict[str, int] = {}
        for dev in self.devices():
            out = run_cmd(["smartctl", "-A", dev], self._timeout, SMARTCTL_FATAL_BITS)
            if out is None:
                log.debug("Failed to read SMART data from %s", dev)
                continue
            temp = parse_smart_temperature(out)
            if temp is not None:
                temps[dev] = temp
        return temps

    def read(self) -> TemperatureReading:
        """Return the maximum temperature across all drives."""
        temps = self.read_devices()
        if not temps:
            raise SensorUnavailable("No disk temperatures could be read")
        hottest = max(temps.values())
        log.debug("Read temperatures from %d disks, max: %d°C", len(temps), hottest)
        return TemperatureReading(hottest, self.tag)
