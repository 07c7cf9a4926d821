"""Packet framing and dispatch.

The framer owns one ``ByteBuffer`` per logical source and turns arbitrarily chunked bytes into
packets. Its single step, "try to consume one packet", runs in a loop while the source buffer is
``ready``:

  1. peek the opcode; passthrough envelopes are unwrapped and their inner bytes are moved to the
     addressed source's buffer, which is then framed on its own,
  2. unknown opcodes are fatal (except the unknown-block-error report from the device),
  3. resolve the packet length from the catalog shape, resolving count prefixes as they arrive,
  4. consume and decode the packet,
  5. hand the decoded values to the handler registered for the packet name, unless the packet is
     the reply a transaction is waiting for (see ``expect``). A failing handler is logged and
     framing carries on with the next packet.

When a step cannot complete, the buffer's ``waiting_for`` threshold is set from the exact number
of bytes still missing, so the loop wakes up neither too early nor too late. ``ready`` means
``count > waiting_for``; a requirement of ``n`` bytes is therefore stored as ``n - 1``.
"""

import collections
import dataclasses
import logging
import threading
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from otsc.protocol.buffer import ByteBuffer
from otsc.protocol.catalog import OPCODE_SIZE, Catalog, DeviceIdentity, PacketShape
from otsc.protocol.codes import Opcode
from otsc.protocol.elements import ElementType
from otsc.protocol.errors import CatalogError, ProtocolDesyncError

logger = logging.getLogger("otsc")

Handler = Callable[..., None]

PASSTHROUGH_NAMES = ("PASSTHRU_UP", "PASSTHRU_DOWN")
_UNKNOWN_BLOCK_SIZE = OPCODE_SIZE + 2


def _noop(source: int, *values: Any) -> None:
  pass


def port_to_source(port: int) -> int:
  """Source id of the device on module port ``port`` (the envelope index)."""
  return port + 1


def source_to_port(source: int) -> int:
  if source < 1:
    raise ValueError(f"Source {source} is not behind a module port")
  return source - 1


@dataclasses.dataclass
class Source:
  """A logical endpoint on the link: 0 is the primary device, n > 0 the device on port n - 1."""

  index: int
  buffer: ByteBuffer = dataclasses.field(default_factory=lambda: ByteBuffer(OPCODE_SIZE - 1))
  last_opcode: Optional[int] = None
  identity: Optional[DeviceIdentity] = None


@dataclasses.dataclass(frozen=True)
class Diagnostic:
  """An error reported by the far end. The link stays usable."""

  source: int
  opcode: int
  message: str
  values: Tuple[Any, ...] = ()


class HandlerRegistry:
  """Maps packet names to handlers, with a no-op default for every name in the catalog.

  Handlers can be replaced at any time. ``dispatch`` takes a snapshot of the handler under the
  lock and calls it outside, so a replacement never races a dispatch already in progress.
  """

  def __init__(self, catalog: Catalog):
    self._catalog = catalog
    self._lock = threading.Lock()
    self._handlers: Dict[str, Handler] = {shape.name: _noop for shape in catalog}

  def register(self, name: str, handler: Optional[Handler] = None) -> None:
    """Register ``handler(source, *values)`` for packet ``name``. None restores the no-op."""
    if name not in self._catalog:
      raise CatalogError(f"Cannot register a handler for unknown packet {name!r}")
    with self._lock:
      self._handlers[name] = handler if handler is not None else _noop

  def get(self, name: str) -> Handler:
    with self._lock:
      return self._handlers.get(name, _noop)

  def dispatch(self, name: str, source: int, values: Iterable[Any]) -> None:
    handler = self.get(name)
    handler(source, *values)


class Framer:
  """Reassembles packets per source and dispatches them to registered handlers.

  Args:
    catalog: packet shapes used to size and decode packets.
    on_fault: called with the ``ProtocolDesyncError`` when framing halts.
    on_diagnostic: called with each ``Diagnostic`` reported by the far end.
  """

  MAX_DIAGNOSTICS = 100

  def __init__(
    self,
    catalog: Catalog,
    on_fault: Optional[Callable[[ProtocolDesyncError], None]] = None,
    on_diagnostic: Optional[Callable[[Diagnostic], None]] = None,
  ):
    self.catalog = catalog
    self.handlers = HandlerRegistry(catalog)
    self.on_fault = on_fault
    self.on_diagnostic = on_diagnostic
    self.sources: Dict[int, Source] = {0: Source(0)}
    self.diagnostics: Deque[Diagnostic] = collections.deque(maxlen=self.MAX_DIAGNOSTICS)
    self.fault: Optional[ProtocolDesyncError] = None
    self._expected: Optional[Tuple[int, int]] = None
    self._reply: Optional[Tuple[PacketShape, List[Any]]] = None

    self._envelopes: Dict[int, PacketShape] = {
      catalog.name_to_opcode(name): catalog.shape(name)
      for name in PASSTHROUGH_NAMES
      if name in catalog
    }
    for shape in self._envelopes.values():
      if len(shape.fields) != 2 or not shape.fixed_size:
        raise ValueError(f"{shape.name} must have exactly two fixed fields: port and length")
    self._unknown_block_opcode = (
      catalog.name_to_opcode("UNKNOWN_BLOCK_ERROR")
      if "UNKNOWN_BLOCK_ERROR" in catalog
      else int(Opcode.UNKNOWN_BLOCK_ERROR)
    )

  # -- sources ---------------------------------------------------------------

  def add_source(self, index: int) -> Source:
    """Return the source with ``index``, creating it (and its buffer) on first sight."""
    source = self.sources.get(index)
    if source is None:
      logger.debug("new source %d", index)
      source = self.sources[index] = Source(index)
    return source

  def retire_sources(self, active: Iterable[int]) -> None:
    """Drop every source not in ``active``. The primary device (0) is never retired."""
    keep = set(active) | {0}
    for index in list(self.sources):
      if index not in keep:
        logger.debug("retiring source %d", index)
        del self.sources[index]

  def reset(self) -> None:
    """Clear every buffer and the fault latch. Sources and handlers are kept."""
    self.clear_buffers()
    self.fault = None

  def clear_buffers(self) -> None:
    """Drop partially framed packets on every source. A latched fault is kept."""
    for source in self.sources.values():
      source.buffer.clear()
      source.buffer.waiting_for = OPCODE_SIZE - 1
      source.last_opcode = None
    self._expected = None
    self._reply = None

  # -- replies ---------------------------------------------------------------

  def expect(self, source: int, opcode: int) -> None:
    """Hold back the next ``opcode`` packet from ``source`` instead of dispatching it.

    An unknown-block report from ``source`` is held back as well, since that is how a device
    answers a request it does not understand. Collect the packet with ``take_reply``.
    """
    self.add_source(source)
    self._expected = (source, opcode)
    self._reply = None

  def take_reply(self) -> Optional[Tuple[PacketShape, List[Any]]]:
    """The packet held back since ``expect``, or None if it has not been framed yet."""
    reply, self._reply = self._reply, None
    return reply

  def cancel_expect(self) -> None:
    self._expected = None
    self._reply = None

  def _capture(self, src: Source, shape: PacketShape, values: List[Any]) -> bool:
    if self._expected is None or self._expected[0] != src.index:
      return False
    if shape.opcode != self._expected[1] and shape.opcode != self._unknown_block_opcode:
      return False
    self._expected = None
    self._reply = (shape, values)
    return True

  def _dispatch(self, name: str, source: int, values: Iterable[Any]) -> None:
    try:
      self.handlers.dispatch(name, source, values)
    except Exception:
      # Packets behind this one are still buffered and must be framed.
      logger.exception("source %d: %s handler failed", source, name)

  # -- framing ---------------------------------------------------------------

  def feed(self, data: bytes, source: int = 0) -> int:
    """Append ``data`` to a source buffer and dispatch every complete packet.

    Returns:
      The number of packets dispatched, across all sources reached through passthrough.

    Raises:
      ProtocolDesyncError: if an unknown opcode is framed now or was framed before the last reset.
    """
    self.add_source(source).buffer.write(data)
    return self.process(source)

  def process(self, source: int = 0) -> int:
    if self.fault is not None:
      raise self.fault
    src = self.add_source(source)
    dispatched = 0
    while src.buffer.ready:
      n = self._step(src)
      if n is None:
        break
      dispatched += n
    return dispatched

  def _wait_for(self, buffer: ByteBuffer, required: int) -> None:
    buffer.waiting_for = required - 1

  def _step(self, src: Source) -> Optional[int]:
    """Try to consume one packet from ``src``.

    Returns:
      None if more bytes are needed, otherwise the number of packets dispatched.
    """
    buf = src.buffer
    if buf.count < OPCODE_SIZE:
      self._wait_for(buf, OPCODE_SIZE)
      return None
    opcode = buf.peek(1, ElementType.UINT16)[0]

    envelope = self._envelopes.get(opcode)
    if envelope is not None:
      return self._unwrap(src, envelope)

    if opcode == self._unknown_block_opcode:
      return self._unknown_block(src, opcode)

    shape = self.catalog.lookup(opcode)
    if shape is None:
      raise self._halt(src, opcode)

    required = shape.required_bytes(buf.peek_bytes())
    if buf.count < required:
      self._wait_for(buf, required)
      return None

    packet = buf.read_bytes(required)
    self._wait_for(buf, OPCODE_SIZE)
    src.last_opcode = opcode
    values = shape.decode(packet)
    if logger.isEnabledFor(logging.DEBUG):
      logger.debug(
        "source %d: %s(%s) %s", src.index, shape.name, _describe(shape, values), packet.hex()
      )
    if shape.fault:
      self._diagnose(Diagnostic(src.index, opcode, f"device reported {shape.name}", tuple(values)))
    if not self._capture(src, shape, values):
      self._dispatch(shape.name, src.index, values)
    return 1

  def _unwrap(self, src: Source, envelope: PacketShape) -> Optional[int]:
    buf = src.buffer
    header_size = envelope.min_bytes
    if buf.count < header_size:
      self._wait_for(buf, header_size)
      return None
    port, length = envelope.decode(buf.peek_bytes(header_size))
    if buf.count < header_size + length:
      self._wait_for(buf, header_size + length)
      return None

    buf.clear(header_size)
    inner = buf.read_bytes(length)
    self._wait_for(buf, OPCODE_SIZE)
    src.last_opcode = envelope.opcode
    target = self.add_source(port_to_source(port))
    if logger.isEnabledFor(logging.DEBUG):
      logger.debug("%s: %d bytes for source %d", envelope.name, length, target.index)
    target.buffer.write(inner)
    return self.process(target.index)

  def _unknown_block(self, src: Source, opcode: int) -> Optional[int]:
    buf = src.buffer
    if buf.count < _UNKNOWN_BLOCK_SIZE:
      self._wait_for(buf, _UNKNOWN_BLOCK_SIZE)
      return None
    packet = buf.read_bytes(_UNKNOWN_BLOCK_SIZE)
    self._wait_for(buf, OPCODE_SIZE)
    src.last_opcode = opcode
    unrecognized = int.from_bytes(packet[OPCODE_SIZE:], "little")
    self._diagnose(
      Diagnostic(
        src.index,
        opcode,
        f"device did not recognize opcode 0x{unrecognized:04X}",
        (unrecognized,),
      )
    )
    if "UNKNOWN_BLOCK_ERROR" in self.catalog:
      shape = self.catalog.shape("UNKNOWN_BLOCK_ERROR")
      if not self._capture(src, shape, [unrecognized]):
        self._dispatch(shape.name, src.index, (unrecognized,))
    return 1

  def _diagnose(self, diagnostic: Diagnostic) -> None:
    logger.warning("source %d: %s", diagnostic.source, diagnostic.message)
    self.diagnostics.append(diagnostic)
    if self.on_diagnostic is not None:
      self.on_diagnostic(diagnostic)

  def _halt(self, src: Source, opcode: int) -> ProtocolDesyncError:
    self.fault = ProtocolDesyncError(opcode, src.index)
    logger.error(
      "source %d: unknown opcode 0x%04X (last good opcode %s), halting dispatch. Buffered: %s",
      src.index,
      opcode,
      f"0x{src.last_opcode:04X}" if src.last_opcode is not None else "none",
      src.buffer.peek_bytes(32).hex(),
    )
    if self.on_fault is not None:
      self.on_fault(self.fault)
    return self.fault

