"""Default OTSC catalog.

This is the opcode table of the reference firmware, pinned at catalog version ``2.1``. The engine
only needs the handful of codes used for verification, identification, passthrough and baud rate
negotiation; the stream packets are included so a controller can be driven out of the box. Device
families with their own command tables get their own ``Catalog``.
"""

import enum

from otsc.protocol.catalog import Catalog, DeviceIdentity, Field, PacketShape
from otsc.protocol.elements import ElementType as T
from otsc.protocol.elements import Fixed, Prefixed

CATALOG_VERSION = "2.1"

# Firmware versions verified against this catalog. Add entries as new versions are tested.
CONFIRMED_FIRMWARE_VERSIONS = ("2.1.0", "2.1.1", "2.2.0")


class Opcode(enum.IntEnum):
  # Connection
  REQ_COMM_VERIFY = 0x0001
  REQ_DEVICE_ID = 0x0002
  DEVICE_ID = 0x0003
  REQ_FW_VERSION = 0x0004
  FW_VERSION = 0x0005
  REQ_DEVICE_ALIAS = 0x0006
  DEVICE_ALIAS = 0x0007
  SET_DEVICE_ALIAS = 0x0008
  # Baud rate
  REQ_CUR_BAUDRATE = 0x0010
  CUR_BAUDRATE = 0x0011
  REQ_MAX_BAUDRATE = 0x0012
  MAX_BAUDRATE = 0x0013
  SET_BAUDRATE = 0x0014
  # Streaming
  STREAM_ENABLE = 0x0020
  # Module ports
  REQ_ACTIVE_PORTS = 0x0030
  ACTIVE_PORTS = 0x0031
  PASSTHRU_DOWN = 0x0040
  PASSTHRU_UP = 0x0041
  # Stream data
  POKE_BITMASK = 0x0100
  LICK_BITMASK = 0x0101
  TEMPERATURE = 0x0110
  HUMIDITY = 0x0111
  SAMPLE_BLOCK = 0x0120
  # Errors
  DEVICE_FAULT = 0x0F00
  # The verification key doubles as its reply opcode.
  COMM_VERIFY = 0xABCD
  UNKNOWN_BLOCK_ERROR = 0xFEFE


_SCALAR = Fixed(1)

_SHAPES = [
  PacketShape(Opcode.REQ_COMM_VERIFY, "REQ_COMM_VERIFY"),
  PacketShape(Opcode.COMM_VERIFY, "COMM_VERIFY"),
  PacketShape(Opcode.REQ_DEVICE_ID, "REQ_DEVICE_ID"),
  PacketShape(Opcode.DEVICE_ID, "DEVICE_ID", (Field(_SCALAR, T.UINT16, "device_id"),)),
  PacketShape(Opcode.REQ_FW_VERSION, "REQ_FW_VERSION"),
  PacketShape(Opcode.FW_VERSION, "FW_VERSION", (Field(Prefixed(), T.CHAR, "version"),)),
  PacketShape(Opcode.REQ_DEVICE_ALIAS, "REQ_DEVICE_ALIAS"),
  PacketShape(Opcode.DEVICE_ALIAS, "DEVICE_ALIAS", (Field(Prefixed(), T.CHAR, "alias"),)),
  PacketShape(Opcode.SET_DEVICE_ALIAS, "SET_DEVICE_ALIAS", (Field(Prefixed(), T.CHAR, "alias"),)),
  PacketShape(Opcode.REQ_CUR_BAUDRATE, "REQ_CUR_BAUDRATE"),
  PacketShape(Opcode.CUR_BAUDRATE, "CUR_BAUDRATE", (Field(_SCALAR, T.UINT32, "baudrate"),)),
  PacketShape(Opcode.REQ_MAX_BAUDRATE, "REQ_MAX_BAUDRATE"),
  PacketShape(Opcode.MAX_BAUDRATE, "MAX_BAUDRATE", (Field(_SCALAR, T.UINT32, "baudrate"),)),
  # High byte: passthrough target (0 = primary controller), low 24 bits: baud rate.
  PacketShape(Opcode.SET_BAUDRATE, "SET_BAUDRATE", (Field(_SCALAR, T.UINT32, "encoded"),)),
  PacketShape(Opcode.STREAM_ENABLE, "STREAM_ENABLE", (Field(_SCALAR, T.UINT8, "enable"),)),
  PacketShape(Opcode.REQ_ACTIVE_PORTS, "REQ_ACTIVE_PORTS"),
  PacketShape(Opcode.ACTIVE_PORTS, "ACTIVE_PORTS", (Field(_SCALAR, T.UINT8, "bitmask"),)),
  PacketShape(
    Opcode.PASSTHRU_DOWN,
    "PASSTHRU_DOWN",
    (Field(_SCALAR, T.UINT8, "port"), Field(_SCALAR, T.UINT8, "length")),
  ),
  PacketShape(
    Opcode.PASSTHRU_UP,
    "PASSTHRU_UP",
    (Field(_SCALAR, T.UINT8, "port"), Field(_SCALAR, T.UINT16, "length")),
  ),
  PacketShape(
    Opcode.POKE_BITMASK,
    "POKE_BITMASK",
    (Field(_SCALAR, T.UINT32, "millis"), Field(_SCALAR, T.UINT8, "bitmask")),
  ),
  PacketShape(
    Opcode.LICK_BITMASK,
    "LICK_BITMASK",
    (Field(_SCALAR, T.UINT32, "millis"), Field(_SCALAR, T.UINT8, "bitmask")),
  ),
  PacketShape(
    Opcode.TEMPERATURE,
    "TEMPERATURE",
    (Field(_SCALAR, T.UINT32, "millis"), Field(_SCALAR, T.FLOAT32, "celsius")),
  ),
  PacketShape(
    Opcode.HUMIDITY,
    "HUMIDITY",
    (Field(_SCALAR, T.UINT32, "millis"), Field(_SCALAR, T.FLOAT32, "percent_rh")),
  ),
  PacketShape(
    Opcode.SAMPLE_BLOCK,
    "SAMPLE_BLOCK",
    (Field(_SCALAR, T.UINT32, "millis"), Field(Prefixed(), T.INT16, "samples")),
  ),
  PacketShape(
    Opcode.DEVICE_FAULT,
    "DEVICE_FAULT",
    (Field(_SCALAR, T.UINT16, "code"), Field(Prefixed(), T.CHAR, "message")),
    fault=True,
  ),
  PacketShape(
    Opcode.UNKNOWN_BLOCK_ERROR,
    "UNKNOWN_BLOCK_ERROR",
    (Field(_SCALAR, T.UINT16, "opcode"),),
    fault=True,
  ),
]

_DEVICES = [
  DeviceIdentity(0x0010, "CTRL-8P", "Module Controller (8 port)", module_ports=8),
  DeviceIdentity(0x0011, "CTRL-4P", "Module Controller (4 port)", module_ports=4),
  DeviceIdentity(0x0020, "NP-1", "Nosepoke Module"),
  DeviceIdentity(0x0021, "LK-1", "Lick Sensor Module"),
  DeviceIdentity(0x0030, "ENV-1", "Environmental Sensor Module"),
  DeviceIdentity(0x0040, "PD-1", "Pellet Dispenser"),
  DeviceIdentity(0x0050, "AI-4", "Analog Input Module (4 channel)"),
]

DEFAULT_CATALOG = Catalog(
  _SHAPES,
  devices=_DEVICES,
  version=CATALOG_VERSION,
  confirmed_firmware=CONFIRMED_FIRMWARE_VERSIONS,
)
