import time
import unittest
from typing import List, Optional

from otsc.io.io import IOBase
from otsc.protocol.catalog import OPCODE_SIZE
from otsc.protocol.codes import DEFAULT_CATALOG
from otsc.protocol.errors import CatalogError, ProtocolDesyncError
from otsc.protocol.framing import Framer
from otsc.protocol.transaction import EMPTY_REPLY, TransactionProtocol


def packet(name: str, *values) -> bytes:
  shape = DEFAULT_CATALOG.shape(name)
  return shape.opcode.to_bytes(OPCODE_SIZE, "little") + shape.encode(values)


def up(port: int, inner: bytes) -> bytes:
  return packet("PASSTHRU_UP", port, len(inner)) + inner


def down(port: int, inner: bytes) -> bytes:
  return packet("PASSTHRU_DOWN", port, len(inner)) + inner


class MockIO(IOBase):
  """Records writes and answers each write with the next queued response.

  Args:
    chunk_size: if set, ``read`` returns at most this many bytes per call.
  """

  def __init__(self, chunk_size: Optional[int] = None) -> None:
    self.written: List[bytes] = []
    self.responses: List[bytes] = []
    self.rx = bytearray()
    self.baudrates: List[int] = []
    self.chunk_size = chunk_size
    self.flushes = 0
    self.stop_called = False

  def queue_response(self, *responses: bytes) -> None:
    """Queue one response per future write. ``b""`` leaves a write unanswered."""
    self.responses.extend(responses)

  async def setup(self) -> None:
    pass

  async def stop(self) -> None:
    self.stop_called = True

  async def write(self, data: bytes) -> int:
    self.written.append(bytes(data))
    if self.responses:
      self.rx.extend(self.responses.pop(0))
    return len(data)

  async def read(self, num_bytes: int = 1) -> bytes:
    if self.chunk_size is not None:
      num_bytes = min(num_bytes, self.chunk_size)
    data = bytes(self.rx[:num_bytes])
    del self.rx[:num_bytes]
    return data

  async def bytes_available(self) -> int:
    return len(self.rx)

  async def flush(self) -> None:
    self.flushes += 1
    self.rx.clear()

  async def set_baudrate(self, baudrate: int) -> None:
    self.baudrates.append(baudrate)


class TransactionTestBase(unittest.IsolatedAsyncioTestCase):
  def setUp(self):
    self.io = MockIO()
    self.protocol = TransactionProtocol(
      self.io, DEFAULT_CATALOG, timeout=0.2, passthrough_timeout=0.1
    )


class DirectTransactionTests(TransactionTestBase):
  async def test_request_and_reply(self):
    self.io.queue_response(packet("DEVICE_ID", 0x0020))
    values, opcode = await self.protocol.transact("REQ_DEVICE_ID", reply="DEVICE_ID")
    self.assertEqual(values, [0x0020])
    self.assertEqual(opcode, 0x0003)
    self.assertEqual(self.io.written, [b"\x02\x00"])

  async def test_variable_reply_in_small_reads(self):
    self.io.chunk_size = 1
    self.io.queue_response(packet("FW_VERSION", "2.1.0"))
    values, opcode = await self.protocol.transact("REQ_FW_VERSION", reply="FW_VERSION")
    self.assertEqual(values, ["2.1.0"])
    self.assertEqual(opcode, 0x0005)

  async def test_reply_leaves_following_bytes_unread(self):
    self.io.queue_response(packet("DEVICE_ID", 1) + packet("POKE_BITMASK", 5, 1))
    await self.protocol.transact("REQ_DEVICE_ID", reply="DEVICE_ID")
    self.assertEqual(bytes(self.io.rx), packet("POKE_BITMASK", 5, 1))

  async def test_stale_input_is_flushed_before_request(self):
    self.io.rx.extend(b"\x99\x99\x99")
    self.io.queue_response(packet("COMM_VERIFY"))
    values, opcode = await self.protocol.transact("REQ_COMM_VERIFY", reply="COMM_VERIFY")
    self.assertEqual((values, opcode), ([], 0xABCD))

  async def test_no_reply_expected(self):
    self.io.rx.extend(b"\x01")
    result = await self.protocol.transact("STREAM_ENABLE", [1])
    self.assertEqual(result, EMPTY_REPLY)
    self.assertEqual(self.io.written, [b"\x20\x00\x01"])
    self.assertEqual(self.io.flushes, 0)
    self.assertEqual(bytes(self.io.rx), b"\x01")

  async def test_timeout_is_bounded(self):
    t = time.time()
    result = await self.protocol.transact("REQ_DEVICE_ID", reply="DEVICE_ID", timeout=0.05)
    elapsed = time.time() - t
    self.assertEqual(result, ([], None))
    self.assertGreaterEqual(elapsed, 0.05)
    self.assertLess(elapsed, 0.5)

  async def test_partial_reply_times_out(self):
    self.io.queue_response(packet("DEVICE_ID", 1)[:3])
    with self.assertLogs("otsc", level="WARNING") as logs:
      result = await self.protocol.transact("REQ_DEVICE_ID", reply="DEVICE_ID", timeout=0.05)
    self.assertEqual(result, EMPTY_REPLY)
    self.assertIn("received 3 of 4 byte(s)", logs.output[-1])

  async def test_envelopes_are_never_direct_replies(self):
    noise = up(2, packet("TEMPERATURE", 20, 21.5)) + up(0, packet("COMM_VERIFY"))
    self.io.queue_response(noise + packet("COMM_VERIFY"))
    _, opcode = await self.protocol.transact("REQ_COMM_VERIFY", reply="COMM_VERIFY")
    self.assertEqual(opcode, DEFAULT_CATALOG.name_to_opcode("COMM_VERIFY"))
    self.assertEqual(self.protocol.discarded_bytes, len(noise))
    self.assertEqual(len(self.io.rx), 0)

  async def test_mismatched_reply_is_returned(self):
    self.io.queue_response(packet("FW_VERSION", "x"))
    with self.assertLogs("otsc", level="WARNING"):
      values, opcode = await self.protocol.transact("REQ_DEVICE_ID", reply="DEVICE_ID")
    self.assertEqual(values, ["x"])
    self.assertEqual(opcode, 0x0005)

  async def test_unknown_reply_opcode_flushes_input(self):
    self.io.queue_response(b"\x77\x77\x01\x02\x03")
    with self.assertLogs("otsc", level="ERROR"):
      result = await self.protocol.transact("REQ_DEVICE_ID", reply="DEVICE_ID")
    self.assertEqual(result, EMPTY_REPLY)
    self.assertEqual(len(self.io.rx), 0)

  async def test_request_validation(self):
    with self.assertRaises(CatalogError):
      await self.protocol.transact("NOPE")
    with self.assertRaises(CatalogError):
      await self.protocol.transact("REQ_DEVICE_ID", reply="NOPE")
    with self.assertRaises(ValueError):
      await self.protocol.transact("STREAM_ENABLE", [])
    self.assertEqual(self.io.written, [])

  def test_constructor_validation(self):
    with self.assertRaises(ValueError):
      TransactionProtocol(MockIO(), DEFAULT_CATALOG, timeout=0)
    with self.assertRaises(ValueError):
      TransactionProtocol(MockIO(), DEFAULT_CATALOG, slow_send_threshold=0)


class SlowSendTests(TransactionTestBase):
  async def test_long_requests_are_sent_per_element(self):
    protocol = TransactionProtocol(
      self.io, DEFAULT_CATALOG, slow_send_threshold=4, slow_send_delay=0
    )
    await protocol.transact("SAMPLE_BLOCK", [7, [1, -1]])
    self.assertEqual(
      self.io.written,
      [b"\x20\x01", b"\x07\x00\x00\x00", b"\x02", b"\x01\x00", b"\xff\xff"],
    )

  async def test_short_requests_are_sent_at_once(self):
    protocol = TransactionProtocol(self.io, DEFAULT_CATALOG, slow_send_threshold=64)
    await protocol.transact("SAMPLE_BLOCK", [7, [1, -1]])
    self.assertEqual(len(self.io.written), 1)

  async def test_slow_send_disabled(self):
    protocol = TransactionProtocol(self.io, DEFAULT_CATALOG, slow_send_threshold=None)
    await protocol.transact("SAMPLE_BLOCK", [7, list(range(100))])
    self.assertEqual(len(self.io.written), 1)


class PassthroughTransactionTests(TransactionTestBase):
  async def test_request_is_wrapped(self):
    self.io.queue_response(up(2, packet("DEVICE_ID", 0x0030)))
    values, opcode = await self.protocol.transact("REQ_DEVICE_ID", reply="DEVICE_ID", source=3)
    self.assertEqual(self.io.written, [down(2, b"\x02\x00")])
    self.assertEqual(values, [0x0030])
    self.assertEqual(opcode, 0x0003)

  async def test_other_traffic_is_discarded(self):
    noise = up(0, packet("LICK_BITMASK", 1, 1)) + packet("POKE_BITMASK", 2, 2)
    self.io.queue_response(noise + up(2, packet("DEVICE_ID", 0x0030)))
    values, _ = await self.protocol.transact("REQ_DEVICE_ID", reply="DEVICE_ID", source=3)
    self.assertEqual(values, [0x0030])
    self.assertEqual(self.protocol.discarded_bytes, len(noise))

  async def test_reply_split_over_envelopes(self):
    reply = packet("FW_VERSION", "1.0.4")
    self.io.queue_response(up(5, reply[:3]) + up(1, b"") + up(5, reply[3:]))
    values, _ = await self.protocol.transact("REQ_FW_VERSION", reply="FW_VERSION", source=6)
    self.assertEqual(values, ["1.0.4"])

  async def test_default_passthrough_timeout(self):
    t = time.time()
    result = await self.protocol.transact("REQ_DEVICE_ID", reply="DEVICE_ID", source=1)
    elapsed = time.time() - t
    self.assertEqual(result, EMPTY_REPLY)
    self.assertLess(elapsed, self.protocol.timeout)

  async def test_request_too_long_for_envelope(self):
    with self.assertRaises(ValueError):
      await self.protocol.transact("SAMPLE_BLOCK", [0, list(range(200))], source=1)

  async def test_timeout_reports_partial_reply(self):
    self.io.queue_response(up(0, packet("DEVICE_ID", 1)[:3]))
    with self.assertLogs("otsc", level="WARNING") as logs:
      result = await self.protocol.transact(
        "REQ_DEVICE_ID", reply="DEVICE_ID", source=1, timeout=0.02
      )
    self.assertEqual(result, EMPTY_REPLY)
    self.assertIn("(port 0)", logs.output[-1])
    self.assertIn("received 3 of 4 byte(s)", logs.output[-1])


class FramedTransactionTests(TransactionTestBase):
  def setUp(self):
    super().setUp()
    self.received: List[tuple] = []
    self.framer = Framer(DEFAULT_CATALOG)
    for name in ("TEMPERATURE", "DEVICE_ID", "COMM_VERIFY"):
      self.framer.handlers.register(name, self._recorder(name))
    self.protocol.framer = self.framer

  def _recorder(self, name: str):
    def handler(source, *values):
      self.received.append((name, source) + values)

    return handler

  async def test_stream_packets_reach_handlers(self):
    stream = up(2, packet("TEMPERATURE", 20, 21.5)) + packet("TEMPERATURE", 30, 22.0)
    self.io.queue_response(stream + packet("COMM_VERIFY"))
    _, opcode = await self.protocol.transact("REQ_COMM_VERIFY", reply="COMM_VERIFY")
    self.assertEqual(opcode, DEFAULT_CATALOG.name_to_opcode("COMM_VERIFY"))
    self.assertEqual(
      self.received, [("TEMPERATURE", 3, 20, 21.5), ("TEMPERATURE", 0, 30, 22.0)]
    )
    self.assertEqual(self.io.flushes, 0)

  async def test_reply_comes_from_the_addressed_source(self):
    self.io.queue_response(up(0, packet("DEVICE_ID", 0x0020)) + up(2, packet("DEVICE_ID", 0x0030)))
    values, _ = await self.protocol.transact("REQ_DEVICE_ID", reply="DEVICE_ID", source=3)
    self.assertEqual(values, [0x0030])
    self.assertEqual(self.received, [("DEVICE_ID", 1, 0x0020)])

  async def test_pending_input_completes_a_framed_packet(self):
    sample = packet("TEMPERATURE", 20, 21.5)
    self.framer.feed(sample[:3])
    self.io.rx.extend(sample[3:])
    self.io.queue_response(packet("COMM_VERIFY"))
    _, opcode = await self.protocol.transact("REQ_COMM_VERIFY", reply="COMM_VERIFY")
    self.assertEqual(opcode, DEFAULT_CATALOG.name_to_opcode("COMM_VERIFY"))
    self.assertEqual(self.received, [("TEMPERATURE", 0, 20, 21.5)])

  async def test_unknown_block_answers_the_request(self):
    self.io.queue_response(packet("UNKNOWN_BLOCK_ERROR", 0x0002))
    with self.assertLogs("otsc", level="WARNING"):
      values, opcode = await self.protocol.transact("REQ_DEVICE_ID", reply="DEVICE_ID")
    self.assertEqual(values, [0x0002])
    self.assertEqual(opcode, DEFAULT_CATALOG.name_to_opcode("UNKNOWN_BLOCK_ERROR"))

  async def test_late_reply_goes_to_handler(self):
    with self.assertLogs("otsc", level="WARNING"):
      result = await self.protocol.transact("REQ_COMM_VERIFY", reply="COMM_VERIFY", timeout=0.02)
    self.assertEqual(result, EMPTY_REPLY)
    self.framer.feed(packet("COMM_VERIFY"))
    self.assertEqual(self.received, [("COMM_VERIFY", 0)])

  async def test_unknown_opcode_raises(self):
    self.io.queue_response(b"\x77\x77")
    with self.assertLogs("otsc", level="ERROR"):
      with self.assertRaises(ProtocolDesyncError):
        await self.protocol.transact("REQ_DEVICE_ID", reply="DEVICE_ID")
    self.assertIsNotNone(self.framer.fault)
