"""Comm verification, baud rate negotiation and device discovery.

Everything here is built from ``TransactionProtocol.transact``. Missing replies are not errors at
this level: ``verify`` returns False, ``identify`` returns None, and a silent module port is
reported as non-responding. Only the connection-level failures raise: no baud rate answering
(``VerificationError``) and an unconfirmed baud rate change (``BaudRateError``).
"""

import asyncio
import dataclasses
import enum
import logging
import time
from typing import Dict, List, Optional, Sequence

from otsc.protocol.catalog import DeviceIdentity
from otsc.protocol.errors import BaudRateError, VerificationError
from otsc.protocol.framing import port_to_source
from otsc.protocol.transaction import TransactionProtocol

logger = logging.getLogger("otsc")

DRAIN_TIMEOUT = 1.0
_DRAIN_INTERVAL = 0.05

# SET_BAUDRATE carries the passthrough target in the high byte and the rate in the low 24 bits.
_BAUD_TARGET_SHIFT = 24
_MAX_ENCODED_BAUDRATE = (1 << _BAUD_TARGET_SHIFT) - 1


class PortStatus(enum.Enum):
  CONNECTED = "connected"
  NON_RESPONDING = "non_responding"
  DISCONNECTED = "disconnected"


@dataclasses.dataclass
class DiscoveryResult:
  """Devices found on the link.

  Attributes:
    primary: identity of the primary device.
    ports: status of every module port of the primary device.
    devices: identity of the device on each connected port.
  """

  primary: Optional[DeviceIdentity]
  ports: Dict[int, PortStatus] = dataclasses.field(default_factory=dict)
  devices: Dict[int, DeviceIdentity] = dataclasses.field(default_factory=dict)

  @property
  def skus(self) -> List[str]:
    """SKUs of the attached (module port) devices, in port order."""
    return [self.devices[port].sku for port in sorted(self.devices)]

  @property
  def active_sources(self) -> List[int]:
    return [0] + [port_to_source(port) for port in sorted(self.devices)]


async def _drain(protocol: TransactionProtocol, timeout: float = DRAIN_TIMEOUT) -> bool:
  """Discard incoming bytes until the line is quiet. Returns False if it never went quiet."""
  t = time.time()
  while time.time() - t < timeout:
    await protocol.io.flush()
    await asyncio.sleep(_DRAIN_INTERVAL)
    if await protocol.io.bytes_available() == 0:
      return True
  logger.warning("line still busy after draining for %.1f s", timeout)
  return False


async def verify(
  protocol: TransactionProtocol, timeout: Optional[float] = None, drain: bool = True
) -> bool:
  """Check that the far end speaks OTSC.

  If ``drain`` is set and the line already carries data (a device left streaming), streaming is
  switched off and the line drained first. Pass False while streaming on purpose. The device must
  answer ``REQ_COMM_VERIFY`` with the 2-byte ``COMM_VERIFY`` key.
  """
  if drain and await protocol.io.bytes_available() > 0:
    logger.info("line busy before verification, disabling streaming")
    await protocol.transact("STREAM_ENABLE", [0])
    await _drain(protocol)

  _, opcode = await protocol.transact("REQ_COMM_VERIFY", reply="COMM_VERIFY", timeout=timeout)
  verified = opcode == protocol.catalog.name_to_opcode("COMM_VERIFY")
  if not verified:
    logger.debug(
      "verification failed: %s", "no reply" if opcode is None else f"got 0x{opcode:04X}"
    )
  return verified


async def connect(
  protocol: TransactionProtocol,
  baudrates: Sequence[int],
  timeout: Optional[float] = None,
) -> int:
  """Find the baud rate the device talks at, trying ``baudrates`` in order.

  Returns:
    The first baud rate at which verification succeeded. The link is left at that rate.

  Raises:
    VerificationError: if no baud rate works.
  """
  if len(baudrates) == 0:
    raise ValueError("No baud rates to try")
  for baudrate in baudrates:
    await protocol.io.set_baudrate(baudrate)
    if await verify(protocol, timeout=timeout):
      logger.info("OTSC communication verified at %d baud", baudrate)
      return baudrate
    logger.debug("no OTSC reply at %d baud", baudrate)
  raise VerificationError(
    "Could not verify OTSC communication at any baud rate "
    f"(tried {', '.join(str(b) for b in baudrates)}). Is the device powered and connected?"
  )


async def identify(protocol: TransactionProtocol, source: int = 0) -> Optional[DeviceIdentity]:
  """Request the numeric device ID of ``source`` and resolve it against the catalog.

  Returns:
    The identity (tagged unknown for IDs not in the catalog), or None if the device did not send
    a valid ``DEVICE_ID`` reply.
  """
  values, opcode = await protocol.transact("REQ_DEVICE_ID", reply="DEVICE_ID", source=source)
  if opcode != protocol.catalog.name_to_opcode("DEVICE_ID"):
    if opcode is not None:
      logger.warning("source %d answered REQ_DEVICE_ID with 0x%04X", source, opcode)
    return None
  identity = protocol.catalog.identify(values[0])
  if not identity.known:
    logger.warning("source %d: device ID 0x%04X is not in the catalog", source, values[0])
  return identity


async def _request_text(
  protocol: TransactionProtocol, request: str, reply: str, source: int
) -> Optional[str]:
  values, opcode = await protocol.transact(request, reply=reply, source=source)
  if opcode != protocol.catalog.name_to_opcode(reply):
    return None
  return values[0]


async def request_firmware_version(
  protocol: TransactionProtocol, source: int = 0
) -> Optional[str]:
  return await _request_text(protocol, "REQ_FW_VERSION", "FW_VERSION", source)


async def request_alias(protocol: TransactionProtocol, source: int = 0) -> Optional[str]:
  """Request the user-assigned alias stored on the device."""
  return await _request_text(protocol, "REQ_DEVICE_ALIAS", "DEVICE_ALIAS", source)


async def set_alias(protocol: TransactionProtocol, alias: str, source: int = 0) -> bool:
  """Store ``alias`` on the device. Returns True if the device echoed it back."""
  values, opcode = await protocol.transact(
    "SET_DEVICE_ALIAS", [alias], reply="DEVICE_ALIAS", source=source
  )
  return opcode == protocol.catalog.name_to_opcode("DEVICE_ALIAS") and values[0] == alias


async def request_active_ports(protocol: TransactionProtocol) -> Optional[int]:
  """Request the bitmask of powered module ports on the primary device."""
  values, opcode = await protocol.transact("REQ_ACTIVE_PORTS", reply="ACTIVE_PORTS")
  if opcode != protocol.catalog.name_to_opcode("ACTIVE_PORTS"):
    return None
  return values[0]


async def discover(
  protocol: TransactionProtocol, primary: Optional[DeviceIdentity]
) -> DiscoveryResult:
  """Enumerate the devices on the primary device's module ports.

  A port whose bit is clear in the active-port mask is disconnected. A port whose bit is set but
  whose device does not answer ``REQ_DEVICE_ID`` is non-responding; this is reported and discovery
  carries on with the other ports.
  """
  result = DiscoveryResult(primary=primary)
  if primary is None or primary.module_ports == 0:
    return result

  mask = await request_active_ports(protocol)
  if mask is None:
    logger.warning("%s did not report its active module ports", primary.sku)
    mask = 0

  for port in range(primary.module_ports):
    if not mask & (1 << port):
      result.ports[port] = PortStatus.DISCONNECTED
      continue
    identity = await identify(protocol, source=port_to_source(port))
    if identity is None:
      logger.warning("module port %d is powered but its device is not responding", port)
      result.ports[port] = PortStatus.NON_RESPONDING
      continue
    result.ports[port] = PortStatus.CONNECTED
    result.devices[port] = identity
    logger.info("module port %d: %s (%s)", port, identity.name, identity.sku)
  return result


async def elevate_baudrate(protocol: TransactionProtocol, current: int, target: int = 0) -> int:
  """Switch the link to the device's maximum baud rate, if it is higher than ``current``.

  Args:
    current: the baud rate the link runs at now.
    target: passthrough target of the rate change, 0 for the primary controller.

  Returns:
    The baud rate the link runs at afterwards.

  Raises:
    BaudRateError: if the device does not confirm the new rate. The local rate is left unchanged,
      but the device may already have switched, so the connection must be torn down.
  """
  values, opcode = await protocol.transact("REQ_MAX_BAUDRATE", reply="MAX_BAUDRATE")
  if opcode != protocol.catalog.name_to_opcode("MAX_BAUDRATE"):
    logger.info("device did not report a maximum baud rate, staying at %d", current)
    return current
  maximum = values[0]
  if maximum <= current:
    return current
  if maximum > _MAX_ENCODED_BAUDRATE:
    raise BaudRateError(f"Baud rate {maximum} cannot be encoded in a SET_BAUDRATE request")

  encoded = (target << _BAUD_TARGET_SHIFT) | maximum
  values, opcode = await protocol.transact("SET_BAUDRATE", [encoded], reply="CUR_BAUDRATE")
  if opcode != protocol.catalog.name_to_opcode("CUR_BAUDRATE") or values[0] != maximum:
    raise BaudRateError(
      f"Device did not confirm the change from {current} to {maximum} baud "
      f"(reply: {'none' if opcode is None else values}). The link may be desynchronized."
    )
  await protocol.io.set_baudrate(maximum)
  logger.info("baud rate raised from %d to %d", current, maximum)
  return maximum
