import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from pylibftdi import USB_PID_LIST, USB_VID_LIST, Device, FtdiError

from otsc.io.io import IOBase
from otsc.protocol.errors import TransportError

logger = logging.getLogger("otsc")


class FTDI(IOBase):
  """Controllers behind an FTDI USB-serial bridge, driven through libftdi.

  libftdi has no "bytes waiting" query, so ``bytes_available`` reads whatever the chip holds into a
  local buffer and ``read`` serves from that buffer first.
  """

  _CHUNK_SIZE = 4096

  def __init__(
    self,
    device_id: Optional[str] = None,
    vid: Optional[int] = None,
    pid: Optional[int] = None,
    baudrate: int = 115200,
  ):
    self._device_id = device_id
    self._vid = vid
    self._pid = pid
    self._baudrate = baudrate
    self._dev: Optional[Device] = None
    self._executor: Optional[ThreadPoolExecutor] = None
    self._pending = bytearray()

  @property
  def device_id(self) -> Optional[str]:
    return self._device_id

  def _require_open(self) -> Device:
    if self._dev is None or self._executor is None:
      raise TransportError("FTDI device is not open, call setup() first.")
    return self._dev

  async def _run(self, func, *args):
    self._require_open()
    loop = asyncio.get_running_loop()
    try:
      return await loop.run_in_executor(self._executor, func, *args)
    except (FtdiError, OSError) as e:
      raise TransportError(f"FTDI {self._device_id or ''}: {e}") from e

  async def setup(self) -> None:
    # Custom VID/PIDs must be registered before libftdi enumerates devices.
    if self._vid is not None and self._vid not in USB_VID_LIST:
      USB_VID_LIST.append(self._vid)
    if self._pid is not None and self._pid not in USB_PID_LIST:
      USB_PID_LIST.append(self._pid)

    loop = asyncio.get_running_loop()
    self._executor = ThreadPoolExecutor(max_workers=1)

    def _open() -> Device:
      dev = Device(device_id=self._device_id, mode="b", lazy_open=True)
      dev.open()
      dev.baudrate = self._baudrate
      dev.flush_input()
      return dev

    try:
      self._dev = await loop.run_in_executor(self._executor, _open)
    except FtdiError as e:
      self._executor.shutdown(wait=False)
      self._executor = None
      raise TransportError(f"Could not open FTDI device {self._device_id or '(any)'}: {e}") from e
    self._pending.clear()
    logger.debug("opened FTDI %s at %d baud", self._device_id or "(first found)", self._baudrate)

  async def stop(self) -> None:
    if self._dev is not None and self._executor is not None:
      loop = asyncio.get_running_loop()
      await loop.run_in_executor(self._executor, self._dev.close)
    self._dev = None
    if self._executor is not None:
      self._executor.shutdown(wait=True)
      self._executor = None

  async def write(self, data: bytes) -> int:
    dev = self._require_open()
    n = await self._run(dev.write, bytes(data))
    if logger.isEnabledFor(logging.DEBUG):
      logger.debug("FTDI wrote %s", bytes(data).hex())
    return n

  async def _fill(self) -> None:
    dev = self._require_open()
    data = await self._run(dev.read, self._CHUNK_SIZE)
    if data:
      self._pending.extend(data)

  async def read(self, num_bytes: int = 1) -> bytes:
    if len(self._pending) < num_bytes:
      await self._fill()
    data = bytes(self._pending[:num_bytes])
    del self._pending[:num_bytes]
    if data and logger.isEnabledFor(logging.DEBUG):
      logger.debug("FTDI read %s", data.hex())
    return data

  async def bytes_available(self) -> int:
    await self._fill()
    return len(self._pending)

  async def flush(self) -> None:
    dev = self._require_open()
    self._pending.clear()
    await self._run(dev.flush_input)

  async def set_baudrate(self, baudrate: int) -> None:
    self._baudrate = baudrate
    if self._dev is not None:
      dev = self._dev

      def _set() -> None:
        dev.baudrate = baudrate

      await self._run(_set)
    logger.debug("FTDI baud rate set to %d", baudrate)

  def serialize(self) -> dict:
    return {
      **super().serialize(),
      "device_id": self._device_id,
      "vid": self._vid,
      "pid": self._pid,
      "baudrate": self._baudrate,
    }
