import unittest
from typing import List

from otsc.protocol.catalog import OPCODE_SIZE
from otsc.protocol.codes import DEFAULT_CATALOG
from otsc.protocol.errors import CatalogError, ProtocolDesyncError
from otsc.protocol.framing import Framer, HandlerRegistry, port_to_source, source_to_port


def packet(name: str, *values) -> bytes:
  shape = DEFAULT_CATALOG.shape(name)
  return shape.opcode.to_bytes(OPCODE_SIZE, "little") + shape.encode(values)


def up(port: int, inner: bytes) -> bytes:
  return packet("PASSTHRU_UP", port, len(inner)) + inner


STREAM = b"".join(
  [
    packet("POKE_BITMASK", 1000, 0b0001),
    up(2, packet("TEMPERATURE", 1010, 21.5)),
    packet("SAMPLE_BLOCK", 1020, [1, -2, 3, -4]),
    up(0, packet("LICK_BITMASK", 1030, 0b0010) + packet("SAMPLE_BLOCK", 1040, [])),
    packet("FW_VERSION", "2.1.0"),
  ]
)

EXPECTED = [
  ("POKE_BITMASK", 0, (1000, 1)),
  ("TEMPERATURE", 3, (1010, 21.5)),
  ("SAMPLE_BLOCK", 0, (1020, [1, -2, 3, -4])),
  ("LICK_BITMASK", 1, (1030, 2)),
  ("SAMPLE_BLOCK", 1, (1040, [])),
  ("FW_VERSION", 0, ("2.1.0",)),
]


class FramerTestBase(unittest.TestCase):
  def setUp(self):
    self.dispatched: List[tuple] = []
    self.framer = Framer(DEFAULT_CATALOG)
    for shape in DEFAULT_CATALOG:
      self.framer.handlers.register(shape.name, self._recorder(shape.name))

  def _recorder(self, name: str):
    def handler(source, *values):
      self.dispatched.append((name, source, values))

    return handler


class FramingTests(FramerTestBase):
  def test_whole_stream(self):
    n = self.framer.feed(STREAM)
    self.assertEqual(self.dispatched, EXPECTED)
    self.assertEqual(n, len(EXPECTED))

  def test_every_split_point(self):
    for i in range(len(STREAM) + 1):
      with self.subTest(split=i):
        self.setUp()
        self.framer.feed(STREAM[:i])
        self.framer.feed(STREAM[i:])
        self.assertEqual(self.dispatched, EXPECTED)

  def test_byte_by_byte(self):
    for b in STREAM:
      self.framer.feed(bytes([b]))
    self.assertEqual(self.dispatched, EXPECTED)
    self.assertEqual(self.framer.sources[0].buffer.count, 0)

  def test_waits_for_exact_packet_length(self):
    data = packet("SAMPLE_BLOCK", 5, [1, 2, 3])
    self.framer.feed(data[:-1])
    self.assertEqual(self.dispatched, [])
    buf = self.framer.sources[0].buffer
    self.assertEqual(buf.waiting_for, len(data) - 1)
    self.assertFalse(buf.ready)
    self.framer.feed(data[-1:])
    self.assertEqual(self.dispatched, [("SAMPLE_BLOCK", 0, (5, [1, 2, 3]))])

  def test_passthrough_creates_sources(self):
    self.framer.feed(up(4, packet("DEVICE_ID", 0x0020)))
    self.assertIn(5, self.framer.sources)
    self.assertEqual(self.dispatched, [("DEVICE_ID", 5, (0x0020,))])

  def test_passthrough_down_is_unwrapped(self):
    inner = packet("REQ_DEVICE_ID")
    self.framer.feed(packet("PASSTHRU_DOWN", 1, len(inner)) + inner)
    self.assertEqual(self.dispatched, [("REQ_DEVICE_ID", 2, ())])

  def test_passthrough_partial_inner_packet(self):
    sample = packet("SAMPLE_BLOCK", 7, [10, 20])
    self.framer.feed(up(1, sample[:5]))
    self.assertEqual(self.dispatched, [])
    self.framer.feed(up(1, sample[5:]))
    self.assertEqual(self.dispatched, [("SAMPLE_BLOCK", 2, (7, [10, 20]))])

  def test_source_port_mapping(self):
    self.assertEqual(port_to_source(0), 1)
    self.assertEqual(source_to_port(8), 7)
    with self.assertRaises(ValueError):
      source_to_port(0)

  def test_retire_sources_keeps_primary(self):
    self.framer.add_source(1)
    self.framer.add_source(3)
    self.framer.retire_sources([3])
    self.assertEqual(sorted(self.framer.sources), [0, 3])


class FaultTests(FramerTestBase):
  def test_unknown_opcode_halts_until_reset(self):
    faults = []
    self.framer.on_fault = faults.append
    data = packet("POKE_BITMASK", 1, 1) + b"\x77\x77" + packet("POKE_BITMASK", 2, 2)
    with self.assertRaises(ProtocolDesyncError) as ctx:
      self.framer.feed(data)
    self.assertEqual(ctx.exception.opcode, 0x7777)
    self.assertEqual(ctx.exception.source, 0)
    self.assertEqual(len(self.dispatched), 1)
    self.assertEqual(faults, [ctx.exception])

    with self.assertRaises(ProtocolDesyncError):
      self.framer.feed(packet("POKE_BITMASK", 3, 3))
    self.assertEqual(len(self.dispatched), 1)

    self.framer.reset()
    self.assertIsNone(self.framer.fault)
    self.framer.feed(packet("POKE_BITMASK", 4, 4))
    self.assertEqual(self.dispatched[-1], ("POKE_BITMASK", 0, (4, 4)))

  def test_unknown_opcode_behind_port(self):
    with self.assertRaises(ProtocolDesyncError) as ctx:
      self.framer.feed(up(2, b"\x77\x77"))
    self.assertEqual(ctx.exception.source, 3)

  def test_unknown_block_error_is_a_diagnostic(self):
    self.framer.feed(packet("UNKNOWN_BLOCK_ERROR", 0x1234) + packet("POKE_BITMASK", 1, 1))
    self.assertIsNone(self.framer.fault)
    self.assertEqual(len(self.framer.diagnostics), 1)
    diagnostic = self.framer.diagnostics[0]
    self.assertEqual(diagnostic.values, (0x1234,))
    self.assertIn("0x1234", diagnostic.message)
    self.assertEqual(
      self.dispatched,
      [("UNKNOWN_BLOCK_ERROR", 0, (0x1234,)), ("POKE_BITMASK", 0, (1, 1))],
    )

  def test_device_fault_is_dispatched_and_recorded(self):
    reported = []
    self.framer.on_diagnostic = reported.append
    self.framer.feed(up(0, packet("DEVICE_FAULT", 3, "jam")))
    self.assertEqual(self.dispatched, [("DEVICE_FAULT", 1, (3, "jam"))])
    self.assertEqual(len(reported), 1)
    self.assertEqual(reported[0].source, 1)

  def test_failing_handler_does_not_strand_later_packets(self):
    def fail(source, *values):
      raise RuntimeError("handler bug")

    self.framer.handlers.register("LICK_BITMASK", fail)
    data = up(0, packet("LICK_BITMASK", 1, 0)) + up(0, packet("POKE_BITMASK", 2, 4))
    with self.assertLogs("otsc", level="ERROR"):
      n = self.framer.feed(data + packet("POKE_BITMASK", 3, 5))
    self.assertEqual(n, 3)
    self.assertEqual(self.dispatched, [("POKE_BITMASK", 1, (2, 4)), ("POKE_BITMASK", 0, (3, 5))])
    self.assertEqual(self.framer.sources[0].buffer.count, 0)
    self.assertEqual(self.framer.sources[1].buffer.count, 0)
    self.assertIsNone(self.framer.fault)


class ReplyTests(FramerTestBase):
  def test_expected_packet_is_held_back(self):
    self.framer.expect(3, DEFAULT_CATALOG.name_to_opcode("DEVICE_ID"))
    self.framer.feed(
      up(0, packet("DEVICE_ID", 0x0020))
      + up(2, packet("TEMPERATURE", 5, 20.0) + packet("DEVICE_ID", 0x0030))
      + up(2, packet("DEVICE_ID", 0x0031))
    )
    shape, values = self.framer.take_reply()
    self.assertEqual(shape.name, "DEVICE_ID")
    self.assertEqual(values, [0x0030])
    self.assertIsNone(self.framer.take_reply())
    self.assertEqual(
      self.dispatched,
      [
        ("DEVICE_ID", 1, (0x0020,)),
        ("TEMPERATURE", 3, (5, 20.0)),
        ("DEVICE_ID", 3, (0x0031,)),
      ],
    )

  def test_unknown_block_answers_the_request(self):
    self.framer.expect(0, DEFAULT_CATALOG.name_to_opcode("DEVICE_ID"))
    self.framer.feed(packet("UNKNOWN_BLOCK_ERROR", 0x0002))
    shape, values = self.framer.take_reply()
    self.assertEqual(shape.name, "UNKNOWN_BLOCK_ERROR")
    self.assertEqual(values, [0x0002])
    self.assertEqual(self.dispatched, [])
    self.assertEqual(len(self.framer.diagnostics), 1)

  def test_cancel_expect(self):
    self.framer.expect(0, DEFAULT_CATALOG.name_to_opcode("COMM_VERIFY"))
    self.framer.cancel_expect()
    self.framer.feed(packet("COMM_VERIFY"))
    self.assertIsNone(self.framer.take_reply())
    self.assertEqual(self.dispatched, [("COMM_VERIFY", 0, ())])

  def test_clear_buffers_keeps_fault(self):
    self.framer.feed(packet("POKE_BITMASK", 1, 1)[:3])
    with self.assertRaises(ProtocolDesyncError):
      self.framer.feed(b"\x77\x77", source=2)
    self.framer.clear_buffers()
    self.assertEqual(self.framer.sources[0].buffer.count, 0)
    self.assertIsNotNone(self.framer.fault)


class HandlerRegistryTests(unittest.TestCase):
  def test_defaults_are_noops(self):
    registry = HandlerRegistry(DEFAULT_CATALOG)
    registry.dispatch("TEMPERATURE", 0, (1, 2.0))

  def test_register_and_restore(self):
    registry = HandlerRegistry(DEFAULT_CATALOG)
    calls = []
    registry.register("HUMIDITY", lambda source, *values: calls.append((source, values)))
    registry.dispatch("HUMIDITY", 2, (5, 40.0))
    self.assertEqual(calls, [(2, (5, 40.0))])
    registry.register("HUMIDITY", None)
    registry.dispatch("HUMIDITY", 2, (6, 41.0))
    self.assertEqual(len(calls), 1)

  def test_unknown_name(self):
    with self.assertRaises(CatalogError):
      HandlerRegistry(DEFAULT_CATALOG).register("NOPE", print)
