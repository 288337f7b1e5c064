"""Thermal-zone discovery and reading for the SoC temperature sensor.

The sensor is a sysfs integer file in millidegrees Celsius. Discovery picks the
first zone with a known CPU/SoC type label and falls back to thermal_zone0.
"""

from __future__ import annotations

import logging
import pathlib
import subprocess

log = logging.getLogger("argon_daemon")

THERMAL_ROOT = pathlib.Path("/sys/class/thermal")

# Type labels of CPU/SoC zones on the Pi and common Linux boards.
THERMAL_TYPES = frozenset(
    {"cpu-thermal", "soc-thermal", "x86_pkg_temp", "bcm2835_thermal"}
)

# Assumed temperature while the sensor cannot be read. Warm enough that the
# controller keeps the fan running.
FAILSAFE_CELSIUS = 65


class SensorNotFoundError(RuntimeError):
    """No usable thermal zone on this host."""


class EdgeFlag:
    """Error flag that reports only its transitions.

    set() is True only on clear->set, clear() only on set->clear, so callers
    log once per outage and once per recovery.
    """

    __slots__ = ("name", "active")

    def __init__(self, name: str) -> None:
        self.name = name
        self.active = False

    def set(self) -> bool:
        if self.active:
            return False
        self.active = True
        return True

    def clear(self) -> bool:
        if not self.active:
            return False
        self.active = False
        return True

    def __repr__(self) -> str:
        return "EdgeFlag(%r, active=%r)" % (self.name, self.active)


def find_sensor(root: pathlib.Path = THERMAL_ROOT) -> pathlib.Path:
    """Return the temp file of the CPU/SoC thermal zone.

    Raises SensorNotFoundError if no labelled zone matches and the default
    zone is missing.
    """
    for zone in sorted(root.glob("thermal_zone*")):
        type_file = zone / "type"
        try:
            zone_type = type_file.read_text().strip()
        except OSError:
            continue
        if zone_type in THERMAL_TYPES:
            path = zone / "temp"
            log.info("Thermal Sensor Detected: %s -> %s", zone_type, path)
            return path

    default = root / "thermal_zone0" / "temp"
    if default.is_file():
        log.info(
            "WARNING: Specific thermal label not found, defaulting to 'thermal_zone0'."
        )
        return default
    raise SensorNotFoundError(
        "No valid temperature sensor found under %s! Check kernel modules." % root
    )


class ThermalZone:
    """Reads whole-degree samples from a discovered sensor file."""

    path: pathlib.Path
    failsafe_celsius: int
    error: EdgeFlag

    def __init__(
        self,
        path: pathlib.Path,
        failsafe_celsius: int = FAILSAFE_CELSIUS,
        error: EdgeFlag | None = None,
    ) -> None:
        self.path = path
        self.failsafe_celsius = failsafe_celsius
        self.error = error if error is not None else EdgeFlag("sensor")

    def read(self) -> int:
        """Return the temperature in whole degrees C, or the fail-safe value."""
        raw = self._read_raw()
        if raw is None or raw < 0:
            if self.error.set():
                log.error(
                    "Sensor Read Error! Activating Safe Mode (Assuming Temp=%d).",
                    self.failsafe_celsius,
                )
            return self.failsafe_celsius

        temp = raw // 1000
        if self.error.clear():
            log.info("Sensor reading restored. Current: %dC", temp)
        return temp

    def _read_raw(self) -> int | None:
        try:
            text = self.path.read_text().strip()
        except OSError:
            return None
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            return None


def run_cmd(cmd: list[str], timeout: float = 5.0) -> str | None:
    """Run command with timeout. Returns stdout on success, None on failure."""
    try:
        r = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        return r.stdout if r.returncode == 0 else None
    except (subprocess.TimeoutExpired, OSError):
        return None
