from otsc.controller import ModularController
from otsc.io.ftdi import FTDI
from otsc.io.io import IOBase
from otsc.io.serial import Serial
from otsc.protocol.backend import OTSCBackend
from otsc.protocol.catalog import Catalog, DeviceIdentity, Field, PacketShape
from otsc.protocol.codes import DEFAULT_CATALOG, Opcode
from otsc.protocol.elements import ElementType, Fixed, Prefixed
from otsc.protocol.errors import (
  BaudRateError,
  CatalogError,
  OTSCError,
  ProtocolDesyncError,
  TransportError,
  VerificationError,
)
from otsc.protocol.simulator import SimulatedDevice, SimulatorIO

__all__ = [
  "ModularController",
  "FTDI",
  "IOBase",
  "Serial",
  "OTSCBackend",
  "Catalog",
  "DeviceIdentity",
  "Field",
  "PacketShape",
  "DEFAULT_CATALOG",
  "Opcode",
  "ElementType",
  "Fixed",
  "Prefixed",
  "BaudRateError",
  "CatalogError",
  "OTSCError",
  "ProtocolDesyncError",
  "TransportError",
  "VerificationError",
  "SimulatedDevice",
  "SimulatorIO",
]
