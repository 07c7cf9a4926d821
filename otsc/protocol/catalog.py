"""Packet shapes and the opcode catalog.

A catalog is static, version-pinned data: it maps each 16-bit opcode to a name and a payload
shape, and each numeric device ID to a SKU. It is built once and injected into the framer and
the transaction protocol; nothing here talks to a device.

Payload layout of a packet::

  opcode (2, LE) | field 0 | field 1 | ...

where a ``Fixed(n)`` field is ``n`` elements and a ``Prefixed(w)`` field is a ``w``-byte element
count followed by that many elements.
"""

import dataclasses
from typing import (
  Any,
  Dict,
  FrozenSet,
  Iterable,
  Iterator,
  List,
  NamedTuple,
  Optional,
  Sequence,
  Tuple,
  Union,
)

from otsc.protocol.elements import ElementType, FieldCount, Fixed
from otsc.protocol.errors import CatalogError

OPCODE_SIZE = 2
UNKNOWN_SKU = "UNKNOWN"


class Field(NamedTuple):
  count: FieldCount
  type: ElementType
  name: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class PacketShape:
  """Name and payload layout of one opcode.

  Attributes:
    opcode: 16-bit packet code.
    name: catalog name, used as the handler key.
    fields: ordered payload fields.
    fault: the packet is a device-reported fault and is reported as a diagnostic.
  """

  opcode: int
  name: str
  fields: Tuple[Field, ...] = ()
  fault: bool = False

  def __post_init__(self):
    if not 0 <= self.opcode <= 0xFFFF:
      raise ValueError(f"Opcode must fit in 16 bits, got {self.opcode}")
    object.__setattr__(self, "fields", tuple(Field(*f) for f in self.fields))

  @property
  def fixed_size(self) -> bool:
    """True if the packet length is known from the opcode alone."""
    return all(isinstance(f.count, Fixed) for f in self.fields)

  @property
  def min_bytes(self) -> int:
    """Smallest possible packet length, opcode included. Exact for fixed-size shapes."""
    n = OPCODE_SIZE
    for f in self.fields:
      if isinstance(f.count, Fixed):
        n += f.count.count * f.type.size
      else:
        n += f.count.width
    return n

  def required_bytes(self, data: bytes) -> int:
    """Return the number of bytes needed to make progress on a packet starting at ``data[0]``.

    Count prefixes that are already buffered are resolved; the walk stops at the first prefix that
    is not, so the result is exact: the packet is complete iff ``len(data) >= required_bytes``.
    """
    offset = OPCODE_SIZE
    for f in self.fields:
      if isinstance(f.count, Fixed):
        offset += f.count.count * f.type.size
        continue
      prefix_end = offset + f.count.width
      if len(data) < prefix_end:
        return prefix_end
      offset = prefix_end + f.count.decode(data[offset:prefix_end]) * f.type.size
    return offset

  def decode(self, packet: bytes) -> List[Any]:
    """Decode the field values of a complete packet (opcode included in ``packet``).

    ``Fixed(1)`` numeric fields decode to a scalar, ``CHAR`` fields to a ``str`` and everything
    else to a list.
    """
    values: List[Any] = []
    offset = OPCODE_SIZE
    for f in self.fields:
      if isinstance(f.count, Fixed):
        n = f.count.count
      else:
        n = f.count.decode(packet[offset : offset + f.count.width])
        offset += f.count.width
      end = offset + n * f.type.size
      value = f.type.decode(packet[offset:end])
      if isinstance(f.count, Fixed) and n == 1 and f.type is not ElementType.CHAR:
        value = value[0]
      values.append(value)
      offset = end
    return values

  def encode_elements(self, values: Sequence[Any]) -> List[bytes]:
    """Serialize payload values into one chunk per element, count prefixes included."""
    if len(values) != len(self.fields):
      raise ValueError(
        f"{self.name} takes {len(self.fields)} payload field(s), got {len(values)}"
      )
    chunks: List[bytes] = []
    for f, value in zip(self.fields, values):
      if f.type is ElementType.CHAR:
        data = f.type.encode(value)
        elements = [data[i : i + 1] for i in range(len(data))]
      else:
        if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
          value = [value]
        elements = [f.type.encode(v) for v in value]
      if isinstance(f.count, Fixed):
        if len(elements) != f.count.count:
          raise ValueError(
            f"{self.name}.{f.name or f.type.name} takes {f.count.count} element(s), "
            f"got {len(elements)}"
          )
      else:
        chunks.append(f.count.encode(len(elements)))
      chunks.extend(elements)
    return chunks

  def encode(self, values: Sequence[Any] = ()) -> bytes:
    """Serialize payload values (without the opcode)."""
    return b"".join(self.encode_elements(values))


@dataclasses.dataclass(frozen=True)
class DeviceIdentity:
  """Identity of a device resolved from its numeric ID."""

  device_id: int
  sku: str
  name: str
  module_ports: int = 0

  @property
  def known(self) -> bool:
    return self.sku != UNKNOWN_SKU


class Catalog:
  """Immutable lookup tables for one firmware catalog version."""

  def __init__(
    self,
    shapes: Iterable[PacketShape],
    devices: Optional[Iterable[DeviceIdentity]] = None,
    version: str = "",
    confirmed_firmware: Iterable[str] = (),
  ):
    self.version = version
    self.confirmed_firmware: FrozenSet[str] = frozenset(confirmed_firmware)
    self._by_opcode: Dict[int, PacketShape] = {}
    self._by_name: Dict[str, PacketShape] = {}
    for shape in shapes:
      if shape.opcode in self._by_opcode:
        raise ValueError(
          f"Opcode 0x{shape.opcode:04X} defined twice "
          f"({self._by_opcode[shape.opcode].name} and {shape.name})"
        )
      if shape.name in self._by_name:
        raise ValueError(f"Packet name {shape.name!r} defined twice")
      self._by_opcode[shape.opcode] = shape
      self._by_name[shape.name] = shape
    self._devices: Dict[int, DeviceIdentity] = {d.device_id: d for d in devices or ()}

  def __contains__(self, key: Union[int, str]) -> bool:
    if isinstance(key, str):
      return key in self._by_name
    return key in self._by_opcode

  def __iter__(self) -> Iterator[PacketShape]:
    return iter(self._by_opcode.values())

  def __len__(self) -> int:
    return len(self._by_opcode)

  def lookup(self, opcode: int) -> Optional[PacketShape]:
    """Return the shape of ``opcode``, or None if the catalog does not know it."""
    return self._by_opcode.get(opcode)

  def shape(self, key: Union[int, str]) -> PacketShape:
    """Return the shape for a packet name or opcode, raising ``CatalogError`` if unknown."""
    shape = self._by_name.get(key) if isinstance(key, str) else self._by_opcode.get(key)
    if shape is None:
      if isinstance(key, str):
        raise CatalogError(f"No packet named {key!r} in catalog {self.version or '?'}")
      raise CatalogError(f"No packet with opcode 0x{key:04X} in catalog {self.version or '?'}")
    return shape

  def name_to_opcode(self, name: str) -> int:
    return self.shape(name).opcode

  def identify(self, device_id: int) -> DeviceIdentity:
    """Resolve a numeric device ID. Unlisted IDs are tagged unknown rather than rejected."""
    identity = self._devices.get(device_id)
    if identity is None:
      return DeviceIdentity(device_id, UNKNOWN_SKU, f"Unknown device (0x{device_id:04X})")
    return identity

  def __repr__(self) -> str:
    return f"Catalog(version={self.version!r}, packets={len(self)}, devices={len(self._devices)})"
