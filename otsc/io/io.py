from abc import ABC, abstractmethod


class IOBase(ABC):
  """Duplex byte transport used by the protocol engine.

  Reads never block: ``read`` returns at most what is available, possibly nothing. Waiting for
  data is the caller's business, done by polling ``bytes_available`` under a timeout.
  """

  @abstractmethod
  async def setup(self) -> None:
    """Open the link."""

  @abstractmethod
  async def stop(self) -> None:
    """Close the link."""

  @abstractmethod
  async def write(self, data: bytes) -> int:
    """Write ``data`` and return the number of bytes written."""

  @abstractmethod
  async def read(self, num_bytes: int = 1) -> bytes:
    """Read up to ``num_bytes`` bytes that are already available."""

  @abstractmethod
  async def bytes_available(self) -> int:
    """Number of received bytes that can be read without waiting."""

  @abstractmethod
  async def flush(self) -> None:
    """Discard every received byte that has not been read yet."""

  async def set_baudrate(self, baudrate: int) -> None:
    raise NotImplementedError(f"{self.__class__.__name__} does not support baud rate changes")

  def serialize(self) -> dict:
    return {"type": self.__class__.__name__}
