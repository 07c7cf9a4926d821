from typing import Any, List, Optional, Union

from otsc.protocol.elements import ElementType


class ByteBuffer:
  """FIFO byte store: append at the tail, consume from the head.

  ``ready`` is True iff more than ``waiting_for`` bytes are buffered. It is recomputed after every
  mutation, so callers can poll it without touching the data.

  Reads and peeks never block and never raise on a short buffer: they return only the whole
  elements that are present, and it is up to the caller to check.
  """

  def __init__(self, waiting_for: int = 0):
    self._data = bytearray()
    self._waiting_for = waiting_for
    self.ready = False
    self._update_ready()

  @property
  def count(self) -> int:
    """Number of valid bytes in the buffer."""
    return len(self._data)

  def __len__(self) -> int:
    return len(self._data)

  @property
  def waiting_for(self) -> int:
    return self._waiting_for

  @waiting_for.setter
  def waiting_for(self, value: int) -> None:
    if value < 0:
      raise ValueError(f"waiting_for must be >= 0, got {value}")
    self._waiting_for = value
    self._update_ready()

  def write(self, data: Union[bytes, bytearray, memoryview]) -> None:
    self._data.extend(data)
    self._update_ready()

  def peek(
    self, count: int = 1, element_type: ElementType = ElementType.UINT8
  ) -> Union[List[Any], str]:
    """Return up to ``count`` elements from the head without consuming them."""
    n = min(count, len(self._data) // element_type.size)
    return element_type.decode(self._data[: n * element_type.size])

  def read(
    self, count: int = 1, element_type: ElementType = ElementType.UINT8
  ) -> Union[List[Any], str]:
    """Remove and return up to ``count`` elements from the head."""
    n = min(count, len(self._data) // element_type.size)
    values = element_type.decode(self._data[: n * element_type.size])
    self.clear(n * element_type.size)
    return values

  def peek_bytes(self, n: Optional[int] = None) -> bytes:
    if n is None:
      return bytes(self._data)
    return bytes(self._data[:n])

  def read_bytes(self, n: Optional[int] = None) -> bytes:
    data = self.peek_bytes(n)
    self.clear(len(data))
    return data

  def clear(self, n: Optional[int] = None) -> None:
    """Discard the first ``n`` bytes, or everything if ``n`` is None."""
    if n is None:
      self._data.clear()
    else:
      del self._data[:n]
    self._update_ready()

  def _update_ready(self) -> None:
    self.ready = len(self._data) > self._waiting_for

  def __repr__(self) -> str:
    return f"ByteBuffer(count={self.count}, waiting_for={self._waiting_for}, ready={self.ready})"
