"""In-memory OTSC controller for tests and for running without hardware.

``SimulatorIO`` is an ``IOBase``: hand it to ``OTSCBackend`` in place of ``Serial``. Host writes
are framed with the same ``Framer`` the backend uses, so everything the host sends must be valid
OTSC traffic. Requests addressed through ``PASSTHRU_DOWN`` land on the source of the module port and
are answered with ``PASSTHRU_UP`` envelopes.

>>> sim = SimulatorIO(modules={0: SimulatedDevice(0x0020, "1.0.0"), 2: SimulatedDevice(0x0030)})
>>> backend = OTSCBackend(io=sim)
>>> await backend.setup()
>>> sim.emit("TEMPERATURE", [1000, 21.5], source=3)
"""

import dataclasses
import logging
from typing import Any, Dict, List, Optional, Sequence, Set

from otsc.io.io import IOBase
from otsc.protocol.catalog import OPCODE_SIZE, Catalog
from otsc.protocol.codes import DEFAULT_CATALOG
from otsc.protocol.errors import ProtocolDesyncError
from otsc.protocol.framing import Framer, port_to_source, source_to_port

logger = logging.getLogger("otsc")

_BAUD_TARGET_SHIFT = 24
_BAUD_RATE_MASK = (1 << _BAUD_TARGET_SHIFT) - 1


@dataclasses.dataclass
class SimulatedDevice:
  """A device answering OTSC requests.

  Attributes:
    device_id: numeric ID reported in ``DEVICE_ID``.
    firmware_version: reported in ``FW_VERSION``.
    alias: reported in ``DEVICE_ALIAS``, changed by ``SET_DEVICE_ALIAS``.
    responding: False simulates a device that is powered (its port bit is set) but never answers.
  """

  device_id: int
  firmware_version: str = "2.1.0"
  alias: str = ""
  responding: bool = True
  streaming: bool = False


class SimulatorIO(IOBase):
  """A simulated controller with simulated devices on its module ports.

  Args:
    controller: the primary device. Defaults to an 8 port module controller.
    modules: devices by module port.
    catalog: opcode catalog spoken by the simulated devices.
    baudrate: baud rate the controller listens at. Writes made at any other host baud rate are
      lost, like on a real line.
    max_baudrate: reported in ``MAX_BAUDRATE``.
  """

  def __init__(
    self,
    controller: Optional[SimulatedDevice] = None,
    modules: Optional[Dict[int, SimulatedDevice]] = None,
    catalog: Catalog = DEFAULT_CATALOG,
    baudrate: int = 115200,
    max_baudrate: int = 921600,
  ):
    self.controller = controller if controller is not None else SimulatedDevice(0x0010)
    self.modules: Dict[int, SimulatedDevice] = dict(modules or {})
    self.catalog = catalog
    self.device_baudrate = baudrate
    self.max_baudrate = max_baudrate
    self.host_baudrate = baudrate
    self.is_open = False

    self.written: List[bytes] = []
    self.requests: List[tuple] = []
    self._rx = bytearray()
    self._up = catalog.shape("PASSTHRU_UP")

    self._framer = Framer(catalog)
    for name in (
      "REQ_COMM_VERIFY",
      "REQ_DEVICE_ID",
      "REQ_FW_VERSION",
      "REQ_DEVICE_ALIAS",
      "SET_DEVICE_ALIAS",
      "REQ_CUR_BAUDRATE",
      "REQ_MAX_BAUDRATE",
      "SET_BAUDRATE",
      "STREAM_ENABLE",
      "REQ_ACTIVE_PORTS",
    ):
      self._framer.handlers.register(name, self._make_handler(name))

  @property
  def active_ports(self) -> int:
    """Bitmask of module ports with a powered device."""
    mask = 0
    for port in self.modules:
      mask |= 1 << port
    return mask

  @property
  def streaming(self) -> Set[int]:
    """Sources the host has switched streaming on for."""
    sources = {0} if self.controller.streaming else set()
    sources |= {port_to_source(p) for p, d in self.modules.items() if d.streaming}
    return sources

  def device(self, source: int) -> Optional[SimulatedDevice]:
    if source == 0:
      return self.controller
    return self.modules.get(source_to_port(source))

  # -- IOBase ----------------------------------------------------------------

  async def setup(self) -> None:
    self.is_open = True
    self._rx.clear()

  async def stop(self) -> None:
    self.is_open = False

  async def write(self, data: bytes) -> int:
    self.written.append(bytes(data))
    if self.host_baudrate != self.device_baudrate:
      logger.debug("simulator: dropped %d byte(s) sent at the wrong baud rate", len(data))
      return len(data)
    try:
      self._framer.feed(bytes(data))
    except ProtocolDesyncError as e:
      self._reply(e.source, "UNKNOWN_BLOCK_ERROR", [e.opcode])
      self._framer.reset()
    return len(data)

  async def read(self, num_bytes: int = 1) -> bytes:
    data = bytes(self._rx[:num_bytes])
    del self._rx[:num_bytes]
    return data

  async def bytes_available(self) -> int:
    return len(self._rx)

  async def flush(self) -> None:
    self._rx.clear()

  async def set_baudrate(self, baudrate: int) -> None:
    self.host_baudrate = baudrate

  def serialize(self) -> dict:
    return {
      **super().serialize(),
      "baudrate": self.device_baudrate,
      "max_baudrate": self.max_baudrate,
      "modules": {port: d.device_id for port, d in self.modules.items()},
    }

  # -- device side -----------------------------------------------------------

  def emit(self, name: str, values: Sequence[Any] = (), source: int = 0) -> None:
    """Send a packet from ``source`` to the host, e.g. a stream sample."""
    self._reply(source, name, values, force=True)

  def inject(self, data: bytes) -> None:
    """Put raw bytes on the line towards the host."""
    self._rx.extend(data)

  def _reply(self, source: int, name: str, values: Sequence[Any] = (), force: bool = False) -> None:
    device = self.device(source)
    if device is None or not (device.responding or force):
      return
    shape = self.catalog.shape(name)
    packet = shape.opcode.to_bytes(OPCODE_SIZE, "little") + shape.encode(values)
    if source > 0:
      header = self._up.encode([source_to_port(source), len(packet)])
      packet = self._up.opcode.to_bytes(OPCODE_SIZE, "little") + header + packet
    self._rx.extend(packet)

  def _make_handler(self, name: str):
    def handler(source: int, *values: Any) -> None:
      self.requests.append((source, name) + values)
      device = self.device(source)
      if device is None:
        logger.debug("simulator: %s for empty port of source %d", name, source)
        return
      self._handle(device, source, name, values)

    return handler

  def _handle(self, device: SimulatedDevice, source: int, name: str, values: Sequence[Any]):
    if name == "REQ_COMM_VERIFY":
      self._reply(source, "COMM_VERIFY")
    elif name == "REQ_DEVICE_ID":
      self._reply(source, "DEVICE_ID", [device.device_id])
    elif name == "REQ_FW_VERSION":
      self._reply(source, "FW_VERSION", [device.firmware_version])
    elif name == "REQ_DEVICE_ALIAS":
      self._reply(source, "DEVICE_ALIAS", [device.alias])
    elif name == "SET_DEVICE_ALIAS":
      device.alias = values[0]
      self._reply(source, "DEVICE_ALIAS", [device.alias])
    elif name == "REQ_CUR_BAUDRATE":
      self._reply(source, "CUR_BAUDRATE", [self.device_baudrate])
    elif name == "REQ_MAX_BAUDRATE":
      self._reply(source, "MAX_BAUDRATE", [self.max_baudrate])
    elif name == "SET_BAUDRATE":
      target, rate = values[0] >> _BAUD_TARGET_SHIFT, values[0] & _BAUD_RATE_MASK
      if target != 0 or rate > self.max_baudrate:
        self._reply(source, "CUR_BAUDRATE", [self.device_baudrate])
        return
      # The confirmation goes out at the old rate, then the controller switches.
      self._reply(source, "CUR_BAUDRATE", [rate])
      self.device_baudrate = rate
    elif name == "STREAM_ENABLE":
      device.streaming = bool(values[0])
    elif name == "REQ_ACTIVE_PORTS" and source == 0:
      self._reply(source, "ACTIVE_PORTS", [self.active_ports])
