#!/usr/bin/env python3
"""
Fan control for Supermicro X10 boards using linear temperature curves.

CPU and disk temperatures each map to a duty cycle through their own
linear curve. Fan duty = max(cpu_duty, disk_duty), applied to every zone.
Changes within the hysteresis threshold are ignored to avoid fan hunting.

Sensor or BMC failures never stop the loop: a missing reading counts as
0°C and a failed command is retried on the next cycle. Fans are left at
their last commanded speed on exit.

Usage:
    fan_daemon.py              # run one cycle, print temps and duty
    fan_daemon.py status       # show sensors, fans, configuration
    fan_daemon.py daemon       # run continuously

Monitor logs:
    tail -f /var/log/fan_control.log

Dependencies:
    sudo apt install ipmitool smartmontools
    # ipmitool      - IPMI fan control and CPU temp monitoring
    # smartmontools - disk temperature monitoring (optional)
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import logging.handlers
import os
import shutil
import signal
import sys
import threading
from typing import Protocol, cast

import sensors

log = logging.getLogger("fan-control")

MODE_FULL = "0x01"


class ConfigurationInvalid(sensors.FanControlError):
    """Configured bounds violate the curve invariants."""


class ActuatorCommandFailed(sensors.FanControlError):
    """A BMC command did not succeed."""


class PrivilegeDenied(sensors.FanControlError):
    """Not running as root."""


class MissingDependency(sensors.FanControlError):
    """A required external tool is not installed."""


@dataclasses.dataclass(frozen=True, slots=True)
class CurveConfig:
    """Linear temperature-to-duty curve: (temp_min, temp_max) -> (duty_min, duty_max)."""

    temp_min: int
    temp_max: int
    duty_min: int
    duty_max: int

    def validate(self, name: str) -> None:
        if self.temp_min >= self.temp_max:
            raise ConfigurationInvalid(
                "%s temp min (%d) must be below temp max (%d)"
                % (name, self.temp_min, self.temp_max)
            )
        if not 0 <= self.duty_min <= self.duty_max <= 100:
            raise ConfigurationInvalid(
                "%s duty bounds must satisfy 0 <= min <= max <= 100, got %d-%d"
                % (name, self.duty_min, self.duty_max)
            )


def evaluate_curve(temp: int, cfg: CurveConfig) -> int:
    """Map temperature to duty by linear interpolation with floor division."""
    if temp <= cfg.temp_min:
        return cfg.duty_min
    if temp >= cfg.temp_max:
        return cfg.duty_max
    return cfg.duty_min + (temp - cfg.temp_min) * (cfg.duty_max - cfg.duty_min) // (
        cfg.temp_max - cfg.temp_min
    )


def combine(a: int, b: int) -> int:
    """Cooling must satisfy the hotter source."""
    return max(a, b)


def damp(previous: int | None, target: int, threshold: int) -> int:
    """Suppress duty changes of at most threshold percent.

    With no previous duty (first cycle) the target is always accepted.
    """
    if previous is None or abs(target - previous) > threshold:
        return target
    return previous


@dataclasses.dataclass(frozen=True, slots=True)
class ControlState:
    """What the loop last applied and measured. None means unknown."""

    last_applied_duty: int | None = None
    last_cpu_temp: int | None = None
    last_disk_temp: int | None = None


@dataclasses.dataclass(slots=True, kw_only=True)
class Config:
    """Controller configuration."""

    min_speed_percent: int = 50
    max_speed_percent: int = 100
    cpu_temp_min_celsius: int = 40
    cpu_temp_max_celsius: int = 70
    disk_temp_min_celsius: int = 35
    disk_temp_max_celsius: int = 50
    interval_seconds: float = 30.0
    hysteresis_percent: int = 3
    zones: tuple[int, ...] = (0, 1)
    disk_devices: tuple[str, ...] | None = None  # None = auto-detect
    ipmi_host: str = "localhost"
    ipmi_user: str = ""
    ipmi_password: str = ""
    cmd_timeout_seconds: float = 10.0
    log_file: str | None = "/var/log/fan_control.log"
    log_max_bytes: int = 10 * 1024 * 1024
    verbose: bool = False

    @property
    def cpu_curve(self) -> CurveConfig:
        return CurveConfig(
            self.cpu_temp_min_celsius,
            self.cpu_temp_max_celsius,
            self.min_speed_percent,
            self.max_speed_percent,
        )

    @property
    def disk_curve(self) -> CurveConfig:
        return CurveConfig(
            self.disk_temp_min_celsius,
            self.disk_temp_max_celsius,
            self.min_speed_percent,
            self.max_speed_percent,
        )

    def validate(self) -> None:
        """Raise ConfigurationInvalid if any invariant is violated."""
        self.cpu_curve.validate("CPU")
        self.disk_curve.validate("Disk")
        if self.interval_seconds <= 0:
            raise ConfigurationInvalid("Interval must be > 0, got %s" % self.interval_seconds)
        if self.hysteresis_percent < 0:
            raise ConfigurationInvalid(
                "Hysteresis must be >= 0, got %d" % self.hysteresis_percent
            )
        if self.cmd_timeout_seconds <= 0:
            raise ConfigurationInvalid(
                "Command timeout must be > 0, got %s" % self.cmd_timeout_seconds
            )
        if not self.zones:
            raise ConfigurationInvalid("At least one fan zone is required")
        for zone in self.zones:
            if not 0 <= zone <= 0xFF:
                raise ConfigurationInvalid("Zone must be 0-255, got %d" % zone)

    def ipmitool(self) -> sensors.Ipmitool:
        return sensors.Ipmitool(
            host=self.ipmi_host,
            user=self.ipmi_user,
            password=self.ipmi_password,
            timeout=self.cmd_timeout_seconds,
        )

    @staticmethod
    def parser() -> argparse.ArgumentParser:
        d = Config()
        p = argparse.ArgumentParser(
            prog="supermicro-fan-control",
            description="Fan control for Supermicro X10 motherboards",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Commands:
  run-once   Run a single fan speed update and print the result (default)
  status     Show current temperatures, fan speeds and configuration
  daemon     Run continuously until SIGTERM/SIGINT
  help       Show this help message

-d/--daemon and -s/--status are accepted as aliases for the daemon and
status commands.

Fan duty = max(cpu_curve(cpu_temp), disk_curve(hottest_disk_temp)).
Each curve is min-speed at or below its temp min, max-speed at or above
its temp max, and linear in between.
""",
        )
        _ = p.add_argument(
            "command",
            nargs="?",
            choices=("run-once", "status", "daemon", "help"),
            help="What to do (default: run-once).",
        )
        legacy = p.add_mutually_exclusive_group()
        _ = legacy.add_argument(
            "-d",
            "--daemon",
            dest="legacy_command",
            action="store_const",
            const="daemon",
            help="Same as the daemon command.",
        )
        _ = legacy.add_argument(
            "-s",
            "--status",
            dest="legacy_command",
            action="store_const",
            const="status",
            help="Same as the status command.",
        )
        _ = p.add_argument(
            "--min-speed",
            type=int,
            default=d.min_speed_percent,
            help="Min fan speed %%.",
        )
        _ = p.add_argument(
            "--max-speed",
            type=int,
            default=d.max_speed_percent,
            help="Max fan speed %%.",
        )
        _ = p.add_argument(
            "--cpu-temp-min",
            type=int,
            default=d.cpu_temp_min_celsius,
            help="CPU temp (C) at or below which fans run at min speed.",
        )
        _ = p.add_argument(
            "--cpu-temp-max",
            type=int,
            default=d.cpu_temp_max_celsius,
            help="CPU temp (C) at or above which fans run at max speed.",
        )
        _ = p.add_argument(
            "--disk-temp-min",
            type=int,
            default=d.disk_temp_min_celsius,
            help="Disk temp (C) at or below which fans run at min speed.",
        )
        _ = p.add_argument(
            "--disk-temp-max",
            type=int,
            default=d.disk_temp_max_celsius,
            help="Disk temp (C) at or above which fans run at max speed.",
        )
        _ = p.add_argument(
            "--interval",
            type=float,
            default=d.interval_seconds,
            help="Poll interval (seconds).",
        )
        _ = p.add_argument(
            "--hysteresis",
            type=int,
            default=d.hysteresis_percent,
            help="Ignore duty changes of at most this many %%.",
        )
        _ = p.add_argument(
            "--zones",
            type=str,
            default=",".join(str(z) for z in d.zones),
            help="Comma-separated BMC fan zones.",
        )
        _ = p.add_argument(
            "--disks",
            type=str,
            default="",
            help="Comma-separated disk paths (default: auto-detect).",
        )
        _ = p.add_argument(
            "--ipmi-host",
            type=str,
            default=d.ipmi_host,
            help="BMC host; localhost uses the local interface.",
        )
        _ = p.add_argument("--ipmi-user", type=str, default=d.ipmi_user)
        _ = p.add_argument("--ipmi-password", type=str, default=d.ipmi_password)
        _ = p.add_argument(
            "--cmd-timeout",
            type=float,
            default=d.cmd_timeout_seconds,
            help="Timeout for each external command (seconds).",
        )
        _ = p.add_argument(
            "--log-file",
            type=str,
            default=d.log_file,
            help="Log file path.",
        )
        _ = p.add_argument(
            "--no-log",
            action="store_true",
            help="Disable the log file.",
        )
        _ = p.add_argument(
            "--log-max-bytes",
            type=int,
            default=d.log_max_bytes,
            help="Rotate the log file when it exceeds this size.",
        )
        _ = p.add_argument(
            "-v",
            "--verbose",
            action="store_true",
            help="Echo all log messages to stderr.",
        )
        return p

    @classmethod
    def from_args(cls, argv: list[str] | None = None) -> tuple[str, Config]:
        """Parse command-line arguments. Returns (command, config)."""
        p = cls.parser()
        args = p.parse_args(argv)
        command = cast("str | None", args.command)
        legacy = cast("str | None", args.legacy_command)
        if legacy and command and command != legacy:
            p.error("--%s conflicts with the %s command" % (legacy, command))
        command = command or legacy or "run-once"
        try:
            zones = tuple(
                int(z.strip(), 0) for z in cast(str, args.zones).split(",") if z.strip()
            )
        except ValueError:
            p.error("--zones must be comma-separated integers")
        disks_str = cast(str, args.disks)
        disks: tuple[str, ...] | None = None  # auto-detect
        if disks_str:
            disks = tuple(x.strip() for x in disks_str.split(",") if x.strip())
        config = cls(
            min_speed_percent=cast(int, args.min_speed),
            max_speed_percent=cast(int, args.max_speed),
            cpu_temp_min_celsius=cast(int, args.cpu_temp_min),
            cpu_temp_max_celsius=cast(int, args.cpu_temp_max),
            disk_temp_min_celsius=cast(int, args.disk_temp_min),
            disk_temp_max_celsius=cast(int, args.disk_temp_max),
            interval_seconds=cast(float, args.interval),
            hysteresis_percent=cast(int, args.hysteresis),
            zones=zones,
            disk_devices=disks,
            ipmi_host=cast(str, args.ipmi_host),
            ipmi_user=cast(str, args.ipmi_user),
            ipmi_password=cast(str, args.ipmi_password),
            cmd_timeout_seconds=cast(float, args.cmd_timeout),
            log_file=None if args.no_log else cast(str, args.log_file),
            log_max_bytes=cast(int, args.log_max_bytes),
            verbose=cast(bool, args.verbose),
        )
        return command, config


class Actuator(Protocol):
    """BMC fan control protocol."""

    def set_manual_mode(self) -> None: ...
    def set_duty(self, zone: int, percent: int) -> None: ...


class Supermicro:
    """Actuator for Supermicro X10 boards via ipmitool raw commands."""

    ipmi: sensors.Ipmitool

    def __init__(self, ipmi: sensors.Ipmitool) -> None:
        self.ipmi = ipmi

    def set_manual_mode(self) -> None:
        """Switch the BMC fan mode to Full so duty commands stick."""
        if self.ipmi.run("raw", "0x30", "0x45", "0x01", MODE_FULL) is None:
            raise ActuatorCommandFailed("Failed to set fan mode to manual")

    def set_duty(self, zone: int, percent: int) -> None:
        """Set fan zone duty cycle, clamped to 0-100%."""
        percent = max(0, min(100, percent))
        log.debug("Setting zone %d fan duty to %d%% (0x%02x)", zone, percent, percent)
        out = self.ipmi.run(
            "raw",
            "0x30",
            "0x70",
            "0x66",
            "0x01",
            f"0x{zone:02x}",
            f"0x{percent:02x}",
        )
        if out is None:
            raise ActuatorCommandFailed("Failed to set fan duty for zone %d" % zone)


class FanDaemon:
    """Fan control loop."""

    config: Config
    cpu: sensors.TemperatureSource
    disk: sensors.TemperatureSource
    actuator: Actuator
    stop: threading.Event

    def __init__(
        self,
        config: Config,
        cpu: sensors.TemperatureSource,
        disk: sensors.TemperatureSource,
        actuator: Actuator,
    ) -> None:
        self.config = config
        self.cpu = cpu
        self.disk = disk
        self.actuator = actuator
        self.stop = threading.Event()

    def sample(self, source: sensors.TemperatureSource) -> sensors.TemperatureReading:
        """Read a source, substituting 0°C (min duty) when it has no reading."""
        try:
            return source.read()
        except sensors.SensorUnavailable as e:
            log.warning("%s, assuming 0°C", e)
            return sensors.TemperatureReading(0, source.tag, valid=False)

    def set_manual_mode(self) -> None:
        log.info("Setting fan mode to Full (manual control)")
        try:
            self.actuator.set_manual_mode()
        except ActuatorCommandFailed as e:
            log.error("%s", e)

    def apply(self, percent: int) -> bool:
        """Set every zone to percent. Returns True if any zone accepted it."""
        ok = False
        for zone in self.config.zones:
            try:
                self.actuator.set_duty(zone, percent)
                ok = True
            except ActuatorCommandFailed as e:
                log.error("%s", e)
        return ok

    def cycle(self, state: ControlState) -> ControlState:
        """Run one read -> curve -> arbitrate -> damp -> actuate pass."""
        cfg = self.config
        cpu = self.sample(self.cpu)
        disk = self.sample(self.disk)

        cpu_duty = evaluate_curve(cpu.celsius, cfg.cpu_curve)
        disk_duty = evaluate_curve(disk.celsius, cfg.disk_curve)
        target = damp(
            state.last_applied_duty,
            combine(cpu_duty, disk_duty),
            cfg.hysteresis_percent,
        )

        applied = state.last_applied_duty
        if target != applied:
            log.info(
                "Adjusting fans: CPU=%d°C, Disk=%d°C -> Fan=%d%%",
                cpu.celsius,
                disk.celsius,
                target,
            )
            if self.apply(target):
                applied = target
        else:
            log.debug(
                "No change: CPU=%d°C, Disk=%d°C, Fan=%d%%",
                cpu.celsius,
                disk.celsius,
                target,
            )
        return ControlState(
            last_applied_duty=applied,
            last_cpu_temp=cpu.celsius,
            last_disk_temp=disk.celsius,
        )

    def run_once(self) -> ControlState:
        """Single-shot mode: set manual mode and run exactly one cycle."""
        self.set_manual_mode()
        return self.cycle(ControlState())

    def shutdown(
        self,
        signum: int | None = None,
        _frame: object = None,
    ) -> None:
        """Request a clean stop. Fans keep their last commanded speed."""
        log.info("Received signal %d, shutting down", signum or 0)
        self.stop.set()

    def _on_signal(self, signum: int, _frame: object = None) -> None:
        # The main thread may hold the Event's lock inside stop.wait().
        threading.Thread(target=self.shutdown, args=(signum,), daemon=True).start()

    def run(self) -> ControlState:
        """Daemon mode: cycle every interval until shutdown() is called."""
        previous = {
            signum: signal.signal(signum, self._on_signal)
            for signum in (signal.SIGTERM, signal.SIGINT)
        }
        cfg = self.config
        log.info(
            "Starting fan control daemon (interval: %ss, zones: %s)",
            cfg.interval_seconds,
            ",".join(str(z) for z in cfg.zones),
        )
        state = ControlState()
        try:
            self.set_manual_mode()
            while not self.stop.is_set():
                try:
                    state = self.cycle(state)
                except Exception:
                    log.exception("Control loop error")
                if self.stop.wait(cfg.interval_seconds):
                    break
            log.info(
                "Fan control daemon stopping, fans left at %s%%",
                "-" if state.last_applied_duty is None else state.last_applied_duty,
            )
        finally:
            for signum, handler in previous.items():
                _ = signal.signal(signum, handler)
        return state


def status_report(
    config: Config,
    ipmi: sensors.Ipmitool,
    cpu: sensors.TemperatureSource,
    disk: sensors.DiskSource,
) -> str:
    """Read-only report of sensors, fans and configuration."""
    lines = ["=== Supermicro X10 Fan Control Status ===", ""]

    lines.append("CPU Temperature:")
    out = ipmi.run("sdr", "type", "Temperature")
    cpu_rows = [
        line
        for line in (out or "").splitlines()
        if "cpu" in line.lower() or "processor" in line.lower()
    ]
    lines.extend(cpu_rows or ["  (Could not read)"])
    try:
        reading = cpu.read()
        lines.append("  Controller reading: %d°C" % reading.celsius)
    except sensors.SensorUnavailable:
        lines.append("  Controller reading: (unavailable)")
    lines.append("")

    lines.append("Fan Speeds:")
    out = ipmi.run("sdr", "type", "Fan")
    lines.extend(out.rstrip().splitlines() if out and out.strip() else ["  (Could not read)"])
    lines.append("")

    lines.append("Disk Temperatures:")
    disk_temps = disk.read_devices()
    if disk_temps:
        lines.extend("  %s: %d°C" % (dev, t) for dev, t in sorted(disk_temps.items()))
    else:
        lines.append("  (Could not read)")
    lines.append("")

    lines.append("Configuration:")
    lines.append(
        "  CPU temp range: %d°C - %d°C"
        % (config.cpu_temp_min_celsius, config.cpu_temp_max_celsius)
    )
    lines.append(
        "  Disk temp range: %d°C - %d°C"
        % (config.disk_temp_min_celsius, config.disk_temp_max_celsius)
    )
    lines.append(
        "  Fan speed range: %d%% - %d%%"
        % (config.min_speed_percent, config.max_speed_percent)
    )
    lines.append("  Poll interval: %ss" % config.interval_seconds)
    lines.append("  Hysteresis: %d%%" % config.hysteresis_percent)
    lines.append("  Zones: %s" % ",".join(str(z) for z in config.zones))
    return "\n".join(lines)


def setup_logging(config: Config) -> None:
    """Log to a size-rotated file and to stderr (errors only unless verbose)."""
    logging.addLevelName(logging.WARNING, "WARN")
    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )
    log.setLevel(logging.DEBUG)
    log.propagate = False
    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()

    stderr = logging.StreamHandler(sys.stderr)
    stderr.setLevel(logging.DEBUG if config.verbose else logging.ERROR)
    stderr.setFormatter(formatter)
    log.addHandler(stderr)

    if config.log_file:
        try:
            handler = logging.handlers.RotatingFileHandler(
                config.log_file, maxBytes=config.log_max_bytes, backupCount=1
            )
        except OSError as e:
            log.error("Cannot open log file %s: %s", config.log_file, e)
            return
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(formatter)
        log.addHandler(handler)


def check_environment() -> None:
    """Raise PrivilegeDenied or MissingDependency if we cannot run."""
    if os.geteuid() != 0:
        raise PrivilegeDenied("This program must be run as root")
    if shutil.which("ipmitool") is None:
        raise MissingDependency("ipmitool not found")
    if shutil.which("smartctl") is None:
        log.warning("smartctl not found, disk temperature monitoring disabled")


def main(argv: list[str] | None = None) -> int:
    command, config = Config.from_args(argv)
    if command == "help":
        Config.parser().print_help()
        return 0

    setup_logging(config)
    try:
        config.validate()
        check_environment()
    except sensors.FanControlError as e:
        log.error("%s", e)
        return 1

    ipmi = config.ipmitool()
    cpu = sensors.CpuSource(ipmi)
    disk = sensors.DiskSource(config.disk_devices, config.cmd_timeout_seconds)

    if command == "status":
        print(status_report(config, ipmi, cpu, disk))
        return 0

    daemon = FanDaemon(config, cpu, disk, Supermicro(ipmi))
    if command == "daemon":
        _ = daemon.run()
        return 0

    state = daemon.run_once()
    print(
        "CPU: %d°C, Max Disk: %d°C, Fan: %s%%"
        % (
            state.last_cpu_temp or 0,
            state.last_disk_temp or 0,
            state.last_applied_duty if state.last_applied_duty is not None else "-",
        )
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
