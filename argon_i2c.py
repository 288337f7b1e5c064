"""I2C transports and bus discovery for the fan controller at 0x1a.

Two transports implement the same Bus protocol: smbus2 (default) and the
i2c-tools command line (i2cdetect/i2cset), which is what stock OpenWrt images
ship.
"""

from __future__ import annotations

import errno
import logging
import pathlib
import re
import shutil
from typing import Protocol

from smbus2 import SMBus

from argon_sensors import run_cmd

log = logging.getLogger("argon_daemon")

CHIP_ADDR = 0x1A
DEV_ROOT = pathlib.Path("/dev")
I2C_DEV_CLASS = pathlib.Path("/sys/class/i2c-dev")

_BUS_NODE = re.compile(r"^i2c-(\d+)$")


class ToolingError(RuntimeError):
    """The host lacks what the selected transport needs."""


class BusNotFoundError(RuntimeError):
    """No bus answers at the controller address."""


class Bus(Protocol):
    """I2C transport protocol."""

    def check(self) -> None: ...
    def probe(self, bus: int, address: int) -> bool: ...
    def write_byte_data(
        self, bus: int, address: int, register: int, value: int
    ) -> bool: ...


class SMBusTransport:
    """Transport over /dev/i2c-N via smbus2."""

    def __init__(self, sysfs_class: pathlib.Path = I2C_DEV_CLASS) -> None:
        self._sysfs_class = sysfs_class

    def check(self) -> None:
        if not self._sysfs_class.is_dir():
            raise ToolingError(
                "Missing Dependency: i2c-dev interface not available "
                "(Run: modprobe i2c-dev)"
            )

    def probe(self, bus: int, address: int) -> bool:
        """True if the address answers or is claimed by a kernel driver."""
        try:
            with SMBus(bus) as smbus:
                smbus.read_byte(address)
        except OSError as e:
            # EBUSY on I2C_SLAVE is what i2cdetect shows as "UU".
            return e.errno == errno.EBUSY
        return True

    def write_byte_data(
        self, bus: int, address: int, register: int, value: int
    ) -> bool:
        try:
            with SMBus(bus) as smbus:
                smbus.write_byte_data(address, register, value, force=True)
        except OSError as e:
            log.debug("write to bus %d failed: %s", bus, e)
            return False
        return True


class I2cToolsTransport:
    """Transport shelling out to i2cdetect/i2cset."""

    TOOLS = ("i2cdetect", "i2cset")

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout

    def check(self) -> None:
        missing = [tool for tool in self.TOOLS if shutil.which(tool) is None]
        for tool in missing:
            log.error(
                "Missing Dependency: '%s' not found. (Run: opkg install i2c-tools)",
                tool,
            )
        if missing:
            raise ToolingError("missing i2c-tools: %s" % ", ".join(missing))

    def probe(self, bus: int, address: int) -> bool:
        out = run_cmd(["i2cdetect", "-y", "-r", str(bus)], self.timeout)
        if out is None:
            return False
        cell = _i2cdetect_cell(out, address)
        return cell in ("%02x" % address, "UU")

    def write_byte_data(
        self, bus: int, address: int, register: int, value: int
    ) -> bool:
        out = run_cmd(
            [
                "i2cset",
                "-y",
                "-f",
                str(bus),
                f"0x{address:02x}",
                f"0x{register:02x}",
                f"0x{value:02x}",
            ],
            self.timeout,
        )
        return out is not None


def _i2cdetect_cell(output: str, address: int) -> str | None:
    """Return the i2cdetect table cell for address ("1a", "UU", "--"...)."""
    row = "%02x:" % (address & 0xF0)
    col = address & 0x0F
    for line in output.splitlines():
        if not line.startswith(row):
            continue
        # "10: -- -- 1a ..." : one 3-char cell per column after the 4-char label.
        start = 4 + 3 * col
        cell = line[start : start + 2].strip()
        return cell or None
    return None


def bus_indices(dev_root: pathlib.Path = DEV_ROOT) -> list[int]:
    """Numeric suffixes of /dev/i2c-N nodes, ascending."""
    indices: list[int] = []
    for node in dev_root.glob("i2c-*"):
        m = _BUS_NODE.match(node.name)
        if m:
            indices.append(int(m.group(1)))
    return sorted(indices)


def find_bus(
    transport: Bus,
    dev_root: pathlib.Path = DEV_ROOT,
    address: int = CHIP_ADDR,
) -> int:
    """Return the first bus on which the controller address responds."""
    for bus in bus_indices(dev_root):
        if transport.probe(bus, address):
            log.info("Controller 0x%02x found on /dev/i2c-%d", address, bus)
            return bus
    raise BusNotFoundError(
        "Argon One (0x%02x) not found on I2C bus! "
        "(Check config.txt: dtparam=i2c_arm=on)" % address
    )


TRANSPORTS = {
    "smbus": SMBusTransport,
    "i2c-tools": I2cToolsTransport,
}
