import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import serial

from otsc.io.io import IOBase
from otsc.protocol.errors import TransportError

logger = logging.getLogger("otsc")


class Serial(IOBase):
  """Serial port (USB CDC or RS-232) through pyserial.

  pyserial is blocking, so every call runs on a single worker thread. One worker keeps calls in
  submission order, which the protocol relies on.
  """

  def __init__(
    self,
    port: str,
    baudrate: int = 115200,
    bytesize: int = serial.EIGHTBITS,
    parity: str = serial.PARITY_NONE,
    stopbits: float = serial.STOPBITS_ONE,
    write_timeout: float = 1,
  ):
    self._port = port
    self._baudrate = baudrate
    self._bytesize = bytesize
    self._parity = parity
    self._stopbits = stopbits
    self._write_timeout = write_timeout

    self._ser: Optional[serial.Serial] = None
    self._executor: Optional[ThreadPoolExecutor] = None

  @property
  def port(self) -> str:
    return self._port

  @property
  def baudrate(self) -> int:
    return self._baudrate

  def _require_open(self) -> serial.Serial:
    if self._ser is None or self._executor is None:
      raise TransportError(f"Serial port {self._port} is not open, call setup() first.")
    return self._ser

  async def _run(self, func, *args):
    self._require_open()
    loop = asyncio.get_running_loop()
    try:
      return await loop.run_in_executor(self._executor, func, *args)
    except (serial.SerialException, OSError) as e:
      raise TransportError(f"Serial port {self._port}: {e}") from e

  async def setup(self) -> None:
    loop = asyncio.get_running_loop()
    self._executor = ThreadPoolExecutor(max_workers=1)

    def _open() -> serial.Serial:
      return serial.Serial(
        port=self._port,
        baudrate=self._baudrate,
        bytesize=self._bytesize,
        parity=self._parity,
        stopbits=self._stopbits,
        timeout=0,  # non-blocking reads
        write_timeout=self._write_timeout,
      )

    try:
      self._ser = await loop.run_in_executor(self._executor, _open)
    except serial.SerialException as e:
      logger.error("Could not open %s, is it in use by another process?", self._port)
      self._executor.shutdown(wait=False)
      self._executor = None
      raise TransportError(f"Could not open serial port {self._port}: {e}") from e
    logger.debug("opened %s at %d baud", self._port, self._baudrate)

  async def stop(self) -> None:
    if self._ser is not None and self._executor is not None:
      loop = asyncio.get_running_loop()
      await loop.run_in_executor(self._executor, self._ser.close)
    self._ser = None
    if self._executor is not None:
      self._executor.shutdown(wait=True)
      self._executor = None

  async def write(self, data: bytes) -> int:
    ser = self._require_open()
    n = await self._run(ser.write, data)
    if logger.isEnabledFor(logging.DEBUG):
      logger.debug("%s wrote %s", self._port, bytes(data).hex())
    return n

  async def read(self, num_bytes: int = 1) -> bytes:
    ser = self._require_open()
    data = await self._run(ser.read, num_bytes)
    if data and logger.isEnabledFor(logging.DEBUG):
      logger.debug("%s read %s", self._port, data.hex())
    return data

  async def bytes_available(self) -> int:
    ser = self._require_open()
    return await self._run(lambda: ser.in_waiting)

  async def flush(self) -> None:
    ser = self._require_open()
    await self._run(ser.reset_input_buffer)

  async def set_baudrate(self, baudrate: int) -> None:
    self._baudrate = baudrate
    if self._ser is not None:
      ser = self._ser

      def _set() -> None:
        ser.baudrate = baudrate

      await self._run(_set)
    logger.debug("%s baud rate set to %d", self._port, baudrate)

  def serialize(self) -> dict:
    return {
      **super().serialize(),
      "port": self._port,
      "baudrate": self._baudrate,
      "bytesize": self._bytesize,
      "parity": self._parity,
      "stopbits": self._stopbits,
      "write_timeout": self._write_timeout,
    }
