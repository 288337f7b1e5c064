#!/usr/bin/env python3
"""
Fan daemon for the Argon ONE V3 case (Raspberry Pi 5).

Reads the SoC temperature every few seconds, picks one of five fan levels
with hysteresis and writes it to the case microcontroller at I2C 0x1a.

Level rises immediately with temperature. It only drops once the temperature
is HYST degrees below the current level's own entry threshold.

Fail-safe: unreadable sensor -> assume 65C; shutdown -> MEDIUM speed.

Run with --help for configuration options.

Monitor logs:
    journalctl -t argon_daemon -f      # systemd
    logread -e argon_daemon -f         # OpenWrt

Dependencies:
    pip install smbus2                 # default transport
    opkg install i2c-tools             # --transport i2c-tools
"""

from __future__ import annotations

import argparse
import dataclasses
import enum
import logging
import logging.handlers
import os
import pathlib
import signal
import sys
import time
from typing import Callable, cast

from argon_i2c import (
    CHIP_ADDR,
    DEV_ROOT,
    TRANSPORTS,
    Bus,
    BusNotFoundError,
    ToolingError,
    find_bus,
)
from argon_lock import LOCK_DIR, LockError, PidLock
from argon_sensors import (
    FAILSAFE_CELSIUS,
    THERMAL_ROOT,
    EdgeFlag,
    SensorNotFoundError,
    ThermalZone,
    find_sensor,
)

log = logging.getLogger("argon_daemon")

SYSLOG_TAG = "argon_daemon"

MODE_REGISTER = 0x03
MODE_VALUE = 0x01
SPEED_REGISTER = 0x01


class FanLevel(enum.IntEnum):
    OFF = 0
    QUIET = 1
    LOW = 2
    MEDIUM = 3
    HIGH = 4


# Argon protocol: speed register takes 0-100 (percent).
SPEEDS: dict[FanLevel, int] = {
    FanLevel.OFF: 0x00,
    FanLevel.QUIET: 0x0A,  # 10%  - Silent
    FanLevel.LOW: 0x19,  # 25%  - Light load
    FanLevel.MEDIUM: 0x37,  # 55%  - Medium load, also the shutdown speed
    FanLevel.HIGH: 0x64,  # 100% - Full load
}

FAILSAFE_LEVEL = FanLevel.MEDIUM


@dataclasses.dataclass(frozen=True, slots=True, kw_only=True)
class Thresholds:
    """Entry temperature (C) of each level, plus the drop margin."""

    quiet: int = 40
    low: int = 45
    medium: int = 55
    high: int = 60
    hysteresis: int = 4

    def __post_init__(self) -> None:
        if not self.quiet < self.low < self.medium < self.high:
            raise ValueError(
                "Thresholds must be strictly ascending, got %d,%d,%d,%d"
                % (self.quiet, self.low, self.medium, self.high)
            )
        if self.hysteresis < 0:
            raise ValueError("Hysteresis must be >= 0, got %d" % self.hysteresis)

    def breakpoints(self) -> tuple[tuple[FanLevel, int], ...]:
        """(level, entry temp) pairs, hottest first."""
        return (
            (FanLevel.HIGH, self.high),
            (FanLevel.MEDIUM, self.medium),
            (FanLevel.LOW, self.low),
            (FanLevel.QUIET, self.quiet),
        )

    def base(self, level: FanLevel) -> int:
        """Entry threshold of level; OFF has base 0."""
        for lvl, temp in self.breakpoints():
            if lvl == level:
                return temp
        return 0

    @classmethod
    def parse(cls, s: str, hysteresis: int = 4) -> Thresholds:
        """Parse "QUIET,LOW,MED,HIGH" (e.g. "40,45,55,60")."""
        parts = [p.strip() for p in s.split(",") if p.strip()]
        if len(parts) != 4:
            raise ValueError(
                "Invalid thresholds: %s (expected QUIET,LOW,MED,HIGH)" % s
            )
        try:
            quiet, low, medium, high = (int(p) for p in parts)
        except ValueError:
            raise ValueError("Thresholds must be integers, got %s" % s) from None
        return cls(
            quiet=quiet, low=low, medium=medium, high=high, hysteresis=hysteresis
        )


DEFAULT_THRESHOLDS = Thresholds()


def target_level(temp: int, thresholds: Thresholds = DEFAULT_THRESHOLDS) -> FanLevel:
    """Highest level whose entry threshold temp meets."""
    for level, entry in thresholds.breakpoints():
        if temp >= entry:
            return level
    return FanLevel.OFF


def decide(
    temp: int,
    current: FanLevel,
    thresholds: Thresholds = DEFAULT_THRESHOLDS,
) -> FanLevel:
    """New fan level for temp given the current one.

    Rising: adopt the target at once. Falling: adopt it only when temp is at
    or below the current level's entry threshold minus the hysteresis.
    """
    target = target_level(temp, thresholds)
    if target > current:
        return target
    if target < current:
        if temp <= thresholds.base(current) - thresholds.hysteresis:
            return target
        return current
    return current


@dataclasses.dataclass(frozen=True, slots=True)
class DeviceLocation:
    """Where the hardware lives. Discovered once per process."""

    sensor: pathlib.Path
    bus: int
    address: int = CHIP_ADDR


@dataclasses.dataclass(slots=True)
class RuntimeState:
    """Mutable state of the control loop."""

    level: FanLevel = FanLevel.OFF
    last_write: float | None = None  # time.monotonic() of last confirmed write
    sensor_error: EdgeFlag = dataclasses.field(
        default_factory=lambda: EdgeFlag("sensor")
    )
    bus_error: EdgeFlag = dataclasses.field(default_factory=lambda: EdgeFlag("bus"))


class Actuator:
    """Writes fan registers and keeps RuntimeState in step with the hardware."""

    transport: Bus
    location: DeviceLocation
    state: RuntimeState
    heartbeat_seconds: float

    def __init__(
        self,
        transport: Bus,
        location: DeviceLocation,
        state: RuntimeState,
        heartbeat_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.location = location
        self.state = state
        self.heartbeat_seconds = heartbeat_seconds
        self._clock = clock

    def write(self, register: int, value: int) -> bool:
        """Write one register. Logs only when the bus error state flips."""
        bus = self.location.bus
        ok = self.transport.write_byte_data(
            bus, self.location.address, register, value
        )
        if not ok:
            if self.state.bus_error.set():
                log.error(
                    "I2C Communication Error! Bus: %d, Reg: 0x%02x, Val: 0x%02x",
                    bus,
                    register,
                    value,
                )
            return False
        if self.state.bus_error.clear():
            log.info("I2C connection restored.")
        return True

    def due(self, level: FanLevel, now: float) -> bool:
        """True if level must be written now (changed, or heartbeat expired)."""
        last = self.state.last_write
        if level != self.state.level or last is None:
            return True
        return now - last >= self.heartbeat_seconds

    def apply(self, level: FanLevel, temp: int, now: float | None = None) -> bool:
        """Write level if due. Returns True if a write went through."""
        if now is None:
            now = self._clock()
        if not self.due(level, now):
            return False
        value = SPEEDS[level]
        if not self.write(SPEED_REGISTER, value):
            return False
        if level != self.state.level:
            log.info(
                "State Changed: %dC -> Fan Level: %d (0x%02X)", temp, level, value
            )
        self.state.level = level
        self.state.last_write = now
        return True


class PrivilegeError(RuntimeError):
    """Not running as root."""


STARTUP_ERRORS = (
    PrivilegeError,
    ToolingError,
    LockError,
    SensorNotFoundError,
    BusNotFoundError,
)


def check_root() -> None:
    if os.geteuid() != 0:
        raise PrivilegeError("This script must be run as root.")


class Phase(enum.Enum):
    INIT = "init"
    DISCOVERING = "discovering"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


@dataclasses.dataclass(slots=True, kw_only=True)
class Config:
    """Daemon configuration."""

    interval_seconds: float = 5.0
    heartbeat_seconds: float = 60.0
    kickstart_seconds: float = 1.0
    thresholds: Thresholds = DEFAULT_THRESHOLDS
    failsafe_celsius: int = FAILSAFE_CELSIUS
    lock_dir: pathlib.Path = LOCK_DIR
    thermal_root: pathlib.Path = THERMAL_ROOT
    dev_root: pathlib.Path = DEV_ROOT
    transport: str = "smbus"
    foreground_log: bool = False
    verbose: bool = False

    @classmethod
    def from_args(cls, argv: list[str] | None = None) -> Config:
        """Parse command-line arguments and return Config."""
        d = cls()
        p = argparse.ArgumentParser(
            description="Argon ONE V3 fan daemon",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Fan levels (default thresholds, C):
  >=60 HIGH 100%%   >=55 MEDIUM 55%%   >=45 LOW 25%%   >=40 QUIET 10%%   else OFF

  A level is left only when the temperature falls to its own threshold
  minus --hysteresis, e.g. HIGH is kept until <=56C.
""",
        )
        _ = p.add_argument(
            "--interval",
            type=float,
            default=d.interval_seconds,
            help="Poll interval (seconds).",
        )
        _ = p.add_argument(
            "--heartbeat",
            type=float,
            default=d.heartbeat_seconds,
            help="Rewrite an unchanged level after this many seconds.",
        )
        _ = p.add_argument(
            "--kickstart",
            type=float,
            default=d.kickstart_seconds,
            help="Full-speed spin-up pulse at start (seconds).",
        )
        _ = p.add_argument(
            "--thresholds",
            type=str,
            default="%d,%d,%d,%d"
            % (
                d.thresholds.quiet,
                d.thresholds.low,
                d.thresholds.medium,
                d.thresholds.high,
            ),
            metavar="QUIET,LOW,MED,HIGH",
            help="Level entry temperatures (C).",
        )
        _ = p.add_argument(
            "--hysteresis",
            type=int,
            default=d.thresholds.hysteresis,
            help="Drop margin (C) below a level's threshold.",
        )
        _ = p.add_argument(
            "--failsafe-temp",
            type=int,
            default=d.failsafe_celsius,
            help="Temperature assumed while the sensor is unreadable (C).",
        )
        _ = p.add_argument(
            "--lock-dir",
            type=pathlib.Path,
            default=d.lock_dir,
            help="Single-instance lock directory.",
        )
        _ = p.add_argument(
            "--thermal-root",
            type=pathlib.Path,
            default=d.thermal_root,
            help="sysfs thermal class directory.",
        )
        _ = p.add_argument(
            "--dev-root",
            type=pathlib.Path,
            default=d.dev_root,
            help="Directory holding i2c-N device nodes.",
        )
        _ = p.add_argument(
            "--transport",
            choices=sorted(TRANSPORTS),
            default=d.transport,
            help="I2C access method.",
        )
        _ = p.add_argument(
            "--foreground-log",
            action="store_true",
            help="Log to stderr instead of syslog.",
        )
        _ = p.add_argument(
            "-v",
            "--verbose",
            action="store_true",
            help="Debug logging.",
        )
        args = p.parse_args(argv)
        try:
            thresholds = Thresholds.parse(
                cast(str, args.thresholds), cast(int, args.hysteresis)
            )
        except ValueError as e:
            p.error(str(e))
        interval = cast(float, args.interval)
        heartbeat = cast(float, args.heartbeat)
        kickstart = cast(float, args.kickstart)
        if interval <= 0:
            p.error("--interval must be > 0")
        if heartbeat <= 0:
            p.error("--heartbeat must be > 0")
        if kickstart < 0:
            p.error("--kickstart must be >= 0")
        return cls(
            interval_seconds=interval,
            heartbeat_seconds=heartbeat,
            kickstart_seconds=kickstart,
            thresholds=thresholds,
            failsafe_celsius=cast(int, args.failsafe_temp),
            lock_dir=cast(pathlib.Path, args.lock_dir),
            thermal_root=cast(pathlib.Path, args.thermal_root),
            dev_root=cast(pathlib.Path, args.dev_root),
            transport=cast(str, args.transport),
            foreground_log=cast(bool, args.foreground_log),
            verbose=cast(bool, args.verbose),
        )


class _SysLogHandler(logging.handlers.SysLogHandler):
    """Syslog handler sending INFO at notice priority."""

    priority_map = {
        **logging.handlers.SysLogHandler.priority_map,
        "INFO": "notice",
    }


def setup_logging(
    foreground: bool = False,
    verbose: bool = False,
    address: str = "/dev/log",
) -> logging.Handler:
    """Send the daemon's log to syslog (facility daemon), or stderr.

    Falls back to stderr when the syslog socket does not exist (containers,
    development machines).
    """
    handler: logging.Handler
    if not foreground and pathlib.Path(address).exists():
        syslog = _SysLogHandler(
            address=address, facility=logging.handlers.SysLogHandler.LOG_DAEMON
        )
        syslog.ident = SYSLOG_TAG + ": "
        syslog.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
        handler = syslog
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    log.handlers.clear()
    log.addHandler(handler)
    log.setLevel(logging.DEBUG if verbose else logging.INFO)
    return handler


class _Interrupted(Exception):
    """Raised out of the signal handler to end a sleep early."""


class FanDaemon:
    """Main fan control daemon."""

    config: Config
    transport: Bus
    lock: PidLock
    state: RuntimeState
    phase: Phase
    location: DeviceLocation | None
    zone: ThermalZone | None
    actuator: Actuator | None

    def __init__(
        self,
        config: Config,
        transport: Bus,
        lock: PidLock | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.transport = transport
        self.lock = lock if lock is not None else PidLock(config.lock_dir)
        self.state = RuntimeState()
        self.phase = Phase.INIT
        self.location = None
        self.zone = None
        self.actuator = None
        self._clock = clock
        self._stop_requested = False
        self._stop_signal: int | None = None
        self._sleeping = False

    def start(self) -> None:
        """INIT and DISCOVERING: privilege, tooling, lock, hardware.

        Raises one of STARTUP_ERRORS. The lock is released before a discovery
        failure propagates.
        """
        self.phase = Phase.INIT
        check_root()
        self.transport.check()

        self.phase = Phase.DISCOVERING
        self.lock.acquire()
        log.info("Starting Argon ONE v3 Daemon...")
        try:
            sensor = find_sensor(self.config.thermal_root)
            bus = find_bus(self.transport, self.config.dev_root)
        except Exception:
            self.lock.release()
            raise

        self.location = DeviceLocation(sensor=sensor, bus=bus)
        self.zone = ThermalZone(
            sensor, self.config.failsafe_celsius, self.state.sensor_error
        )
        self.actuator = Actuator(
            self.transport,
            self.location,
            self.state,
            self.config.heartbeat_seconds,
            self._clock,
        )
        log.info("Configuration Successful: Bus=/dev/i2c-%d | Sensor=%s", bus, sensor)

    def kickstart(self) -> None:
        """Set mode, spin to full speed briefly, then off."""
        actuator = self._require_actuator()
        # Mode register varies by firmware revision; written once for safety.
        _ = actuator.write(MODE_REGISTER, MODE_VALUE)
        if actuator.write(SPEED_REGISTER, SPEEDS[FanLevel.HIGH]):
            # last_write stays unset until OFF lands, so the loop rewrites.
            self.state.level = FanLevel.HIGH
        self._sleep(self.config.kickstart_seconds)
        if actuator.write(SPEED_REGISTER, SPEEDS[FanLevel.OFF]):
            self.state.level = FanLevel.OFF
            self.state.last_write = self._clock()

    def control_loop(self) -> FanLevel:
        """One iteration: read, decide, actuate. Returns the current level."""
        zone = self._require_zone()
        actuator = self._require_actuator()
        temp = zone.read()
        level = decide(temp, self.state.level, self.config.thresholds)
        _ = actuator.apply(level, temp)
        return self.state.level

    def request_stop(self) -> None:
        """Make the loop exit before its next sleep."""
        self._stop_requested = True

    def shutdown(self) -> None:
        """Fail-safe speed, release the lock. Runs once."""
        if self.phase in (Phase.SHUTTING_DOWN, Phase.TERMINATED):
            return
        self.phase = Phase.SHUTTING_DOWN
        if self._stop_signal is not None:
            log.info(
                "Shutdown signal received (%s)...",
                signal.Signals(self._stop_signal).name,
            )
        if self.actuator is not None:
            # Best effort; the process is exiting either way.
            _ = self.actuator.write(SPEED_REGISTER, SPEEDS[FAILSAFE_LEVEL])
        self.lock.release()
        log.info("Service stopped successfully.")
        self.phase = Phase.TERMINATED

    def _sleep(self, seconds: float) -> None:
        """Sleep unless a stop was requested. A shutdown signal cuts it short."""
        try:
            self._sleeping = True
            if not self._stop_requested:
                time.sleep(seconds)
            self._sleeping = False
        except _Interrupted:
            self._sleeping = False

    def _on_signal(self, signum: int, _frame: object = None) -> None:
        # Takes no locks: the main thread may be anywhere when this runs.
        if self._stop_requested:
            return
        self._stop_signal = signum
        self._stop_requested = True
        if self._sleeping:
            raise _Interrupted()

    def run(self) -> int:
        """Start, loop until signalled, shut down. Returns the exit status."""
        previous = {
            sig: signal.signal(sig, self._on_signal)
            for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)
        }
        try:
            try:
                self.start()
            except STARTUP_ERRORS as e:
                log.error("%s", e)
                self.phase = Phase.TERMINATED
                return 1

            self.phase = Phase.RUNNING
            try:
                self.kickstart()
                log.info(
                    "Entering Main Control Loop. Interval: %ss",
                    self.config.interval_seconds,
                )
                while not self._stop_requested:
                    try:
                        _ = self.control_loop()
                    except Exception:
                        log.exception("Control loop error")
                    self._sleep(self.config.interval_seconds)
            finally:
                self.shutdown()
            return 0
        finally:
            for sig, handler in previous.items():
                _ = signal.signal(sig, handler)

    def _require_zone(self) -> ThermalZone:
        if self.zone is None:
            raise RuntimeError("control loop used before start()")
        return self.zone

    def _require_actuator(self) -> Actuator:
        if self.actuator is None:
            raise RuntimeError("actuator used before start()")
        return self.actuator


def main(argv: list[str] | None = None) -> int:
    config = Config.from_args(argv)
    _ = setup_logging(config.foreground_log, config.verbose)
    transport = TRANSPORTS[config.transport]()
    daemon = FanDaemon(config, transport)
    return daemon.run()


if __name__ == "__main__":
    sys.exit(main())
