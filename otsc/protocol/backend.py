import asyncio
import logging
import warnings
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from otsc.io.io import IOBase
from otsc.machines.backend import MachineBackend
from otsc.protocol import handshake
from otsc.protocol.catalog import Catalog, DeviceIdentity
from otsc.protocol.codes import DEFAULT_CATALOG
from otsc.protocol.errors import ProtocolDesyncError, TransportError
from otsc.protocol.framing import Diagnostic, Framer, Handler, port_to_source
from otsc.protocol.handshake import DiscoveryResult
from otsc.protocol.transaction import OpcodeLike, Reply, TransactionProtocol

logger = logging.getLogger("otsc")


class OTSCBackend(MachineBackend):
  """Backend for one OTSC link: a primary controller and the modules on its ports.

  Requests go through ``transact``. Streamed packets are read by a background task that runs while
  at least one source has streaming enabled, and are handed to the handlers registered with
  ``register_handler``. An unknown opcode on the wire stops the reader, switches streaming off and
  latches a ``ProtocolDesyncError`` that every later call raises until ``reset``.

  Example:

  >>> backend = OTSCBackend(io=Serial("/dev/ttyACM0"))
  >>> await backend.setup()
  >>> backend.register_handler("TEMPERATURE", lambda source, millis, celsius: print(celsius))
  >>> await backend.enable([0, 1])
  """

  DEFAULT_BAUDRATE = 115200
  ALTERNATE_BAUDRATES = (9600, 57600, 230400, 460800, 921600)
  POLL_INTERVAL = 0.002

  # --------------------------------------------------------------------------
  # Constructor
  # --------------------------------------------------------------------------

  def __init__(
    self,
    io: IOBase,
    catalog: Catalog = DEFAULT_CATALOG,
    baudrate: int = DEFAULT_BAUDRATE,
    alternate_baudrates: Sequence[int] = ALTERNATE_BAUDRATES,
    timeout: float = TransactionProtocol.DEFAULT_TIMEOUT,
    passthrough_timeout: float = TransactionProtocol.PASSTHROUGH_TIMEOUT,
    elevate_baudrate: bool = False,
    poll_interval: float = POLL_INTERVAL,
  ):
    """Create a new OTSC backend.

    Args:
      io: the link to the primary controller, e.g. ``Serial`` or ``FTDI``.
      catalog: opcode catalog of the firmware.
      baudrate: baud rate tried first.
      alternate_baudrates: baud rates tried, in order, if the device does not answer at
        ``baudrate``.
      timeout: reply timeout in seconds for requests to the primary controller.
      passthrough_timeout: reply timeout in seconds for requests to module port devices.
      elevate_baudrate: after connecting, switch to the highest baud rate the controller supports.
      poll_interval: pause in seconds between reads of the stream reader when the link is idle.
    """
    if baudrate <= 0:
      raise ValueError(f"baudrate must be > 0, got {baudrate}.")
    if any(b <= 0 for b in alternate_baudrates):
      raise ValueError(f"alternate_baudrates must all be > 0, got {list(alternate_baudrates)}.")
    if poll_interval <= 0:
      raise ValueError(f"poll_interval must be > 0, got {poll_interval}.")

    self.io = io
    self.catalog = catalog
    self.baudrate = baudrate
    self.alternate_baudrates = tuple(alternate_baudrates)
    self.elevate_baudrate = elevate_baudrate
    self.poll_interval = poll_interval

    self.protocol = TransactionProtocol(
      io, catalog, timeout=timeout, passthrough_timeout=passthrough_timeout
    )
    self.framer = Framer(catalog)
    self.discovery: Optional[DiscoveryResult] = None

    self.configuration: Dict[str, Any] = {
      "catalog_version": catalog.version,
      "baudrate": None,
      "device_id": None,
      "sku": "",
      "name": "",
      "firmware_version": "",
      "module_ports": 0,
      "devices": {},
    }
    self._streaming: Set[int] = set()
    self._reader: Optional[asyncio.Task] = None

  @property
  def diagnostics(self) -> Deque[Diagnostic]:
    """Errors reported by the devices (unknown commands, device faults), most recent last."""
    return self.framer.diagnostics

  @property
  def fault(self) -> Optional[ProtocolDesyncError]:
    return self.framer.fault

  @property
  def streaming(self) -> Set[int]:
    """Sources that currently have streaming enabled."""
    return set(self._streaming)

  # --------------------------------------------------------------------------
  # Life cycle
  # --------------------------------------------------------------------------

  async def setup(self) -> None:
    """Open the link, find the baud rate, identify the controller and discover its modules."""
    await self.io.setup()
    try:
      await self._connect()
    except Exception:
      await self.io.stop()
      raise

  async def _connect(self) -> None:
    self.framer.reset()
    self._streaming.clear()
    baudrates = [self.baudrate] + [b for b in self.alternate_baudrates if b != self.baudrate]
    baudrate = await handshake.connect(self.protocol, baudrates)
    if self.elevate_baudrate:
      baudrate = await handshake.elevate_baudrate(self.protocol, baudrate)
    self.configuration["baudrate"] = baudrate

    firmware = await handshake.request_firmware_version(self.protocol)
    self.configuration["firmware_version"] = firmware or ""
    if (
      firmware is not None
      and self.catalog.confirmed_firmware
      and firmware not in self.catalog.confirmed_firmware
    ):
      warnings.warn(
        f"Firmware version {firmware!r} has not been tested with catalog "
        f"{self.catalog.version!r}. Confirmed versions: "
        f"{', '.join(sorted(self.catalog.confirmed_firmware))}. Proceed with caution.",
        stacklevel=2,
      )

    skus = await self.discover_devices()
    logger.info(
      "connected to %s (firmware %s) at %d baud, modules: %s",
      self.configuration["sku"] or "unknown device",
      firmware or "?",
      baudrate,
      ", ".join(skus) or "none",
    )

  async def stop(self) -> None:
    """Switch off streaming, stop the reader and close the link."""
    if self.fault is None:
      for source in sorted(self._streaming):
        await self.protocol.transact("STREAM_ENABLE", [0], source=source)
    self._streaming.clear()
    await self._stop_reader()
    await self.io.stop()

  async def reset(self) -> None:
    """Clear a latched protocol fault and every partially framed packet.

    Streaming stays off; call ``enable`` again once the cause of the fault is resolved.
    """
    await self._stop_reader()
    self._streaming.clear()
    async with self.protocol.lock:
      await self.io.flush()
      self.framer.reset()
    logger.info("protocol state reset")

  def serialize(self) -> dict:
    return {
      **super().serialize(),
      "io": self.io.serialize(),
      "catalog_version": self.catalog.version,
      "baudrate": self.baudrate,
      "alternate_baudrates": list(self.alternate_baudrates),
      "timeout": self.protocol.timeout,
      "passthrough_timeout": self.protocol.passthrough_timeout,
      "elevate_baudrate": self.elevate_baudrate,
      "poll_interval": self.poll_interval,
    }

  # --------------------------------------------------------------------------
  # Requests
  # --------------------------------------------------------------------------

  def _check_fault(self) -> None:
    if self.framer.fault is not None:
      raise self.framer.fault

  async def _halt_on_fault(self, coro):
    try:
      return await coro
    except ProtocolDesyncError:
      await self._halt_streaming()
      raise

  async def transact(
    self,
    opcode: OpcodeLike,
    payload: Sequence[Any] = (),
    reply: Optional[OpcodeLike] = None,
    source: int = 0,
    timeout: Optional[float] = None,
  ) -> Reply:
    """Send a request to ``source`` and, if ``reply`` is given, wait for the answer.

    See ``TransactionProtocol.transact``.

    Raises:
      ProtocolDesyncError: if a protocol fault is latched.
    """
    self._check_fault()
    return await self._halt_on_fault(
      self.protocol.transact(opcode, payload, reply, source=source, timeout=timeout)
    )

  def register_handler(self, name: str, handler: Optional[Handler] = None) -> None:
    """Call ``handler(source, *values)`` for every streamed ``name`` packet.

    None restores the default, which ignores the packet.
    """
    self.framer.handlers.register(name, handler)

  async def verify(self) -> bool:
    """Check that the controller still answers the comm verification request."""
    self._check_fault()
    return await self._halt_on_fault(handshake.verify(self.protocol, drain=not self._streaming))

  async def discover_devices(self) -> List[str]:
    """Identify the controller and the devices on its module ports.

    Sources of devices that are no longer connected are retired.

    Returns:
      SKUs of the devices on the module ports, in port order.
    """
    self._check_fault()
    primary, result = await self._halt_on_fault(self._discover())

    self.framer.retire_sources(result.active_sources)
    self.framer.add_source(0).identity = primary
    for port, identity in result.devices.items():
      self.framer.add_source(port_to_source(port)).identity = identity
    self.discovery = result

    self.configuration.update(
      {
        "device_id": primary.device_id if primary is not None else None,
        "sku": primary.sku if primary is not None else "",
        "name": primary.name if primary is not None else "",
        "module_ports": primary.module_ports if primary is not None else 0,
        "devices": {port: identity.sku for port, identity in result.devices.items()},
      }
    )
    return result.skus

  async def _discover(self) -> Tuple[Optional[DeviceIdentity], DiscoveryResult]:
    primary = await handshake.identify(self.protocol)
    if primary is None:
      logger.warning("primary device did not report its device ID")
    return primary, await handshake.discover(self.protocol, primary)

  # --------------------------------------------------------------------------
  # Streaming
  # --------------------------------------------------------------------------

  async def enable(self, sources: Iterable[int] = (0,), on: bool = True) -> None:
    """Switch streaming on or off for ``sources``.

    The background reader runs while any source is streaming. While it runs, replies to
    ``transact`` are read through the same framer, so stream packets that arrive during a request
    still reach their handlers.
    """
    self._check_fault()
    for source in sources:
      await self.protocol.transact("STREAM_ENABLE", [1 if on else 0], source=source)
      if on:
        self._streaming.add(source)
      else:
        self._streaming.discard(source)
    if self._streaming:
      self._start_reader()
    else:
      await self._stop_reader()

  def _start_reader(self) -> None:
    self.protocol.framer = self.framer
    if self._reader is None or self._reader.done():
      self._reader = asyncio.create_task(self._read_loop())

  async def _stop_reader(self) -> None:
    reader, self._reader = self._reader, None
    if reader is not None and reader is not asyncio.current_task():
      reader.cancel()
      try:
        await reader
      except asyncio.CancelledError:
        pass
    async with self.protocol.lock:
      self.protocol.framer = None
      self.framer.clear_buffers()

  async def _read_loop(self) -> None:
    logger.debug("stream reader started")
    while True:
      try:
        async with self.protocol.lock:
          available = await self.io.bytes_available()
          data = await self.io.read(available) if available > 0 else b""
      except TransportError as e:
        logger.error("stream reader stopped: %s", e)
        self._streaming.clear()
        await self._stop_reader()
        return
      if not data:
        await asyncio.sleep(self.poll_interval)
        continue
      try:
        self.framer.feed(data)
      except ProtocolDesyncError:
        await self._halt_streaming()
        return

  async def _halt_streaming(self) -> None:
    sources, self._streaming = sorted(self._streaming), set()
    if sources:
      logger.error("disabling streaming on sources %s after protocol fault", sources)
    try:
      for source in sources:
        await self.protocol.transact("STREAM_ENABLE", [0], source=source)
    except TransportError as e:
      logger.error("could not disable streaming after protocol fault: %s", e)
    await self._stop_reader()
