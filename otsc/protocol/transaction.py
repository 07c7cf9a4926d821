"""Synchronous request/reply transactions.

A transaction writes one request and, optionally, waits for one reply:

  request:  [PASSTHRU_DOWN | port | length]  opcode | payload
  reply:    [PASSTHRU_UP   | port | length]  opcode | payload

The bracketed envelope is only present when the request is addressed to a module port. The
protocol is not pipelined: ``lock`` is held for the whole call, and anything else that reads from
the same link (the backend's reader task) must hold it too.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from otsc.io.io import IOBase
from otsc.protocol.buffer import ByteBuffer
from otsc.protocol.catalog import OPCODE_SIZE, Catalog, PacketShape
from otsc.protocol.elements import ElementType
from otsc.protocol.framing import Framer, source_to_port

logger = logging.getLogger("otsc")

OpcodeLike = Union[int, str]
Reply = Tuple[List[Any], Optional[int]]

EMPTY_REPLY: Reply = ([], None)


class TransactionProtocol:
  """Sends requests on a link and waits for typed replies.

  Args:
    io: the link.
    catalog: packet shapes for requests and replies.
    timeout: default reply timeout in seconds for requests to the primary device.
    passthrough_timeout: default reply timeout in seconds for requests to a module port.
    slow_send_threshold: requests longer than this many bytes are written one element at a time.
      None disables slow sending.
    slow_send_delay: pause in seconds between elements when slow sending.
    poll_interval: pause in seconds between polls of the link while waiting for a reply.
    framer: if set, replies are read through it and every packet that is not the reply is
      dispatched to its handlers. Set it while a reader task frames the same link, so stream
      packets arriving during a transaction reach the right source.
  """

  DEFAULT_TIMEOUT = 1.0
  PASSTHROUGH_TIMEOUT = 0.1

  def __init__(
    self,
    io: IOBase,
    catalog: Catalog,
    timeout: float = DEFAULT_TIMEOUT,
    passthrough_timeout: float = PASSTHROUGH_TIMEOUT,
    slow_send_threshold: Optional[int] = 64,
    slow_send_delay: float = 0.001,
    poll_interval: float = 0.0005,
    framer: Optional[Framer] = None,
  ):
    if timeout <= 0 or passthrough_timeout <= 0:
      raise ValueError(f"Timeouts must be > 0, got {timeout} and {passthrough_timeout}.")
    if slow_send_threshold is not None and slow_send_threshold < 1:
      raise ValueError(f"slow_send_threshold must be >= 1 or None, got {slow_send_threshold}.")

    self.io = io
    self.catalog = catalog
    self.timeout = timeout
    self.passthrough_timeout = passthrough_timeout
    self.slow_send_threshold = slow_send_threshold
    self.slow_send_delay = slow_send_delay
    self.poll_interval = poll_interval
    self.lock = asyncio.Lock()
    self.discarded_bytes = 0
    self.framer = framer

    self._down = catalog.shape("PASSTHRU_DOWN") if "PASSTHRU_DOWN" in catalog else None
    self._up = catalog.shape("PASSTHRU_UP") if "PASSTHRU_UP" in catalog else None
    self._envelopes: Dict[int, PacketShape] = {
      shape.opcode: shape for shape in (self._down, self._up) if shape is not None
    }

  def _shape(self, opcode: OpcodeLike) -> PacketShape:
    return self.catalog.shape(opcode)

  async def transact(
    self,
    opcode: OpcodeLike,
    payload: Sequence[Any] = (),
    reply: Optional[OpcodeLike] = None,
    *,
    source: int = 0,
    timeout: Optional[float] = None,
  ) -> Reply:
    """Send a request and, if ``reply`` is given, wait for the answer.

    Args:
      opcode: request packet name or opcode.
      payload: one value per field of the request shape.
      reply: expected reply packet name or opcode. None sends without waiting.
      source: 0 for the primary device, n > 0 for the device on module port n - 1.
      timeout: seconds to wait for the reply. Defaults to ``timeout`` for the primary device and
        ``passthrough_timeout`` for module ports.

    Returns:
      ``(values, reply_opcode)``. The reply is decoded with the shape of the opcode actually
      received, which may differ from ``reply``; callers check. Envelopes never count as a direct
      reply. With a ``framer``, only ``reply`` or an unknown-block report from ``source`` is
      returned and other packets go to their handlers. ``([], None)`` if no reply was expected, or
      none arrived in time.

    Raises:
      CatalogError: if the request or expected reply is not in the catalog.
      ValueError: if the payload does not match the request shape.
      TransportError: if the link fails.
      ProtocolDesyncError: if the framer meets an unknown opcode while waiting.
    """
    request = self._shape(opcode)
    expected = self._shape(reply) if reply is not None else None
    port = source_to_port(source) if source else None
    if timeout is None:
      timeout = self.passthrough_timeout if port is not None else self.timeout

    chunks = [request.opcode.to_bytes(OPCODE_SIZE, "little")] + request.encode_elements(payload)
    if port is not None:
      chunks = [self._envelope(port, sum(len(c) for c in chunks))] + chunks

    async with self.lock:
      # With a framer, pending input may complete a packet it already holds part of.
      if expected is not None and self.framer is None:
        await self.io.flush()
      await self._send(chunks)
      if expected is None:
        return EMPTY_REPLY
      if self.framer is not None:
        return await self._await_framed_reply(request, expected, source, timeout)
      return await self._await_reply(request, expected, port, timeout)

  def _envelope(self, port: int, length: int) -> bytes:
    if self._down is None:
      raise ValueError(f"Catalog {self.catalog.version!r} has no PASSTHRU_DOWN packet")
    max_length = (1 << (8 * self._down.fields[1].type.size)) - 1
    if length > max_length:
      raise ValueError(f"Passthrough request of {length} bytes exceeds {max_length} bytes")
    return self._down.opcode.to_bytes(OPCODE_SIZE, "little") + self._down.encode([port, length])

  async def _send(self, chunks: List[bytes]) -> None:
    data = b"".join(chunks)
    if self.slow_send_threshold is None or len(data) <= self.slow_send_threshold:
      await self.io.write(data)
      return
    # Element by element, so a slow receiver's input buffer is not overrun.
    for i, chunk in enumerate(chunks):
      await self.io.write(chunk)
      if i < len(chunks) - 1:
        await asyncio.sleep(self.slow_send_delay)

  async def _fill(self, buffer: ByteBuffer, required: int) -> None:
    """Move available bytes into ``buffer``, never more than ``required - buffer.count``."""
    missing = required - buffer.count
    if missing <= 0:
      return
    available = await self.io.bytes_available()
    if available > 0:
      buffer.write(await self.io.read(min(missing, available)))

  def _reply_required(self, inner: ByteBuffer) -> Tuple[Optional[PacketShape], int]:
    """Shape of the reply in ``inner`` (None if unknown yet) and the bytes it needs."""
    if inner.count < OPCODE_SIZE:
      return None, OPCODE_SIZE
    opcode = inner.peek(1, ElementType.UINT16)[0]
    shape = self.catalog.lookup(opcode)
    if shape is None:
      raise _UnknownReply(opcode)
    return shape, shape.required_bytes(inner.peek_bytes())

  async def _await_reply(
    self,
    request: PacketShape,
    expected: PacketShape,
    port: Optional[int],
    timeout: float,
  ) -> Reply:
    wire = ByteBuffer()
    inner = ByteBuffer()
    required = inner_required = OPCODE_SIZE
    t = time.time()

    try:
      while True:
        progress = (wire.count, inner.count, required)
        required = await self._demultiplex(wire, inner, port, required)
        shape, inner_required = self._reply_required(inner)
        if shape is not None and inner.count >= inner_required:
          return self._decode(shape, expected, inner.read_bytes(inner_required), port)

        if time.time() - t > timeout:
          # A direct reply stays on the wire until it is complete.
          if port is None:
            self._log_timeout(request, expected, port, timeout, wire.count, required)
          else:
            self._log_timeout(request, expected, port, timeout, inner.count, inner_required)
          return EMPTY_REPLY
        if progress == (wire.count, inner.count, required):
          await asyncio.sleep(self.poll_interval)
    except _UnknownReply as e:
      logger.error(
        "%s: reply opcode 0x%04X is not in catalog %r, discarding input",
        request.name,
        e.opcode,
        self.catalog.version,
      )
      await self.io.flush()
      return EMPTY_REPLY

  async def _await_framed_reply(
    self,
    request: PacketShape,
    expected: PacketShape,
    source: int,
    timeout: float,
  ) -> Reply:
    """Wait for the reply by feeding the link to ``framer``, which dispatches everything else."""
    framer = self.framer
    framer.expect(source, expected.opcode)
    port = source_to_port(source) if source else None
    t = time.time()

    try:
      while True:
        available = await self.io.bytes_available()
        if available > 0:
          framer.feed(await self.io.read(available))
        reply = framer.take_reply()
        if reply is not None:
          shape, values = reply
          return self._accept(shape, expected, values, port)

        if time.time() - t > timeout:
          buffer = framer.sources[source].buffer
          self._log_timeout(request, expected, port, timeout, buffer.count, buffer.waiting_for + 1)
          return EMPTY_REPLY
        if available == 0:
          await asyncio.sleep(self.poll_interval)
    finally:
      framer.cancel_expect()

  def _log_timeout(
    self,
    request: PacketShape,
    expected: PacketShape,
    port: Optional[int],
    timeout: float,
    received: int,
    needed: int,
  ) -> None:
    logger.warning(
      "%s%s: timed out after %.3f s waiting for %s, received %d of %d byte(s)",
      request.name,
      f" (port {port})" if port is not None else "",
      timeout,
      expected.name,
      received,
      needed,
    )

  async def _demultiplex(
    self, wire: ByteBuffer, inner: ByteBuffer, port: Optional[int], required: int
  ) -> int:
    """Advance one step through the wire, moving reply candidates to ``inner``.

    Candidates are packets from the primary device when ``port`` is None, and the contents of
    envelopes from ``port`` otherwise. Everything else is discarded.

    Returns the number of wire bytes needed for the next step.
    """
    await self._fill(wire, required)
    if wire.count < OPCODE_SIZE:
      return OPCODE_SIZE
    opcode = wire.peek(1, ElementType.UINT16)[0]

    envelope = self._envelopes.get(opcode)
    if envelope is not None:
      header_size = envelope.min_bytes
      if wire.count < header_size:
        return header_size
      index, length = envelope.decode(wire.peek_bytes(header_size))
      if wire.count < header_size + length:
        return header_size + length
      wire.clear(header_size)
      body = wire.read_bytes(length)
      if port is not None and index == port and envelope is self._up:
        inner.write(body)
      else:
        self.discarded_bytes += header_size + length
        logger.debug(
          "discarded %s with %d byte(s) for port %d while waiting on %s",
          envelope.name,
          length,
          index,
          f"port {port}" if port is not None else "the primary device",
        )
      return OPCODE_SIZE

    shape = self.catalog.lookup(opcode)
    if shape is None:
      raise _UnknownReply(opcode)
    packet_required = shape.required_bytes(wire.peek_bytes())
    if wire.count < packet_required:
      return packet_required
    if port is None:
      inner.write(wire.read_bytes(packet_required))
      return OPCODE_SIZE
    wire.clear(packet_required)
    self.discarded_bytes += packet_required
    logger.debug("discarded %s from the primary device while waiting on port %d", shape.name, port)
    return OPCODE_SIZE

  def _decode(
    self,
    shape: PacketShape,
    expected: PacketShape,
    packet: bytes,
    port: Optional[int],
  ) -> Reply:
    values = shape.decode(packet)
    if logger.isEnabledFor(logging.DEBUG):
      logger.debug(
        "reply%s: %s %s (%s)",
        f" from port {port}" if port is not None else "",
        shape.name,
        values,
        packet.hex(),
      )
    return self._accept(shape, expected, values, port)

  def _accept(
    self, shape: PacketShape, expected: PacketShape, values: List[Any], port: Optional[int]
  ) -> Reply:
    if shape.opcode != expected.opcode:
      logger.warning(
        "expected %s%s, got %s",
        expected.name,
        f" from port {port}" if port is not None else "",
        shape.name,
      )
    return values, shape.opcode


class _UnknownReply(Exception):
  def __init__(self, opcode: int):
    super().__init__(opcode)
    self.opcode = opcode
