"""Exceptions raised by the OTSC protocol engine.

Timeouts have no exception: a transaction that gets no reply returns an empty result and
the caller decides whether to retry.
"""

from typing import Optional


class OTSCError(Exception):
  """Base class for all OTSC errors."""


class TransportError(OTSCError):
  """Raised when the underlying link cannot be opened, read or written. Fatal to the connection."""


class CatalogError(OTSCError, KeyError):
  """Raised when a packet name or opcode is not part of the catalog."""

  def __str__(self) -> str:
    # KeyError quotes its argument, we want the plain message.
    return str(self.args[0]) if self.args else ""


class ProtocolDesyncError(OTSCError):
  """Raised when the framer reads an opcode that is not in the catalog.

  Local framing state can no longer be trusted after this: dispatch stops until the framer is
  reset.
  """

  def __init__(self, opcode: int, source: int, message: Optional[str] = None):
    self.opcode = opcode
    self.source = source
    if message is None:
      message = f"Unknown opcode 0x{opcode:04X} from source {source}, framing halted"
    super().__init__(message)


class VerificationError(OTSCError):
  """Raised when the far end does not answer the comm verification at any baud rate."""


class BaudRateError(OTSCError):
  """Raised when a baud rate change is not confirmed by the device."""
