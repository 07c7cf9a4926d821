"""Wire element types and field counts.

All multi-byte values on the OTSC wire are little-endian.
"""

import dataclasses
import enum
import struct
from typing import Any, List, Sequence, Union


class ElementType(enum.Enum):
  """Element types a packet field can carry, valued by their ``struct`` format character."""

  INT8 = "b"
  UINT8 = "B"
  INT16 = "h"
  UINT16 = "H"
  INT32 = "i"
  UINT32 = "I"
  INT64 = "q"
  UINT64 = "Q"
  FLOAT32 = "f"
  FLOAT64 = "d"
  CHAR = "c"

  @property
  def size(self) -> int:
    """Size of one element in bytes."""
    return struct.calcsize("<" + self.value)

  @property
  def is_integer(self) -> bool:
    return self.value in "bBhHiIqQ"

  def decode(self, data: bytes) -> Union[List[Any], str]:
    """Decode as many whole elements as ``data`` holds. ``CHAR`` data decodes to a ``str``."""
    if self is ElementType.CHAR:
      return bytes(data).decode("latin-1")
    n = len(data) // self.size
    return list(struct.unpack(f"<{n}{self.value}", bytes(data[: n * self.size])))

  def encode(self, values: Union[Any, Sequence[Any]]) -> bytes:
    """Encode a scalar or a sequence of values, casting each to this wire type."""
    if self is ElementType.CHAR:
      if isinstance(values, str):
        return values.encode("latin-1")
      return bytes(values)
    if isinstance(values, (str, bytes)) or not isinstance(values, Sequence):
      values = [values]
    cast = int if self.is_integer else float
    return struct.pack(f"<{len(values)}{self.value}", *(cast(v) for v in values))


@dataclasses.dataclass(frozen=True)
class Fixed:
  """A field with a constant number of elements."""

  count: int

  def __post_init__(self):
    if self.count < 0:
      raise ValueError(f"Element count must be >= 0, got {self.count}")


@dataclasses.dataclass(frozen=True)
class Prefixed:
  """A field whose element count is sent in ``width`` bytes immediately before the elements."""

  width: int = 1

  def __post_init__(self):
    if self.width not in (1, 2, 4):
      raise ValueError(f"Count prefix width must be 1, 2 or 4 bytes, got {self.width}")

  def decode(self, data: bytes) -> int:
    return int.from_bytes(data[: self.width], "little")

  def encode(self, count: int) -> bytes:
    if count >= 1 << (8 * self.width):
      raise ValueError(f"{count} elements do not fit a {self.width}-byte count prefix")
    return count.to_bytes(self.width, "little")


FieldCount = Union[Fixed, Prefixed]
