from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence

from otsc.machines.machine import Machine, need_setup_finished
from otsc.protocol.backend import OTSCBackend
from otsc.protocol.framing import Diagnostic, Handler
from otsc.protocol.transaction import OpcodeLike, Reply


class ModularController(Machine):
  """The front end for OTSC module controllers: a primary controller and the devices plugged into
  its module ports, all reached through one serial link.

  Here's an example of how to use this class in a Jupyter Notebook:

  >>> from otsc import ModularController, OTSCBackend, Serial
  >>> controller = ModularController(backend=OTSCBackend(io=Serial("/dev/ttyACM0")))
  >>> await controller.setup()
  >>> controller.devices
  {0: 'NP-1', 2: 'ENV-1'}
  >>> controller.register_handler("POKE_BITMASK", print)
  >>> await controller.enable([0, 1])
  """

  def __init__(self, backend: OTSCBackend) -> None:
    super().__init__(backend=backend)
    self.backend: OTSCBackend = backend  # fix type

  @property
  def configuration(self) -> Dict[str, Any]:
    return self.backend.configuration

  @property
  def devices(self) -> Dict[int, str]:
    """SKU of the device on each connected module port."""
    return dict(self.backend.configuration["devices"])

  @property
  def diagnostics(self) -> Deque[Diagnostic]:
    return self.backend.diagnostics

  def register_handler(self, name: str, handler: Optional[Handler] = None) -> None:
    """Call ``handler(source, *values)`` for every streamed packet called ``name``."""
    self.backend.register_handler(name, handler)

  @need_setup_finished
  async def transact(
    self,
    opcode: OpcodeLike,
    payload: Sequence[Any] = (),
    reply: Optional[OpcodeLike] = None,
    source: int = 0,
    timeout: Optional[float] = None,
  ) -> Reply:
    return await self.backend.transact(opcode, payload, reply, source=source, timeout=timeout)

  @need_setup_finished
  async def enable(self, sources: Iterable[int] = (0,), on: bool = True) -> None:
    await self.backend.enable(sources, on=on)

  @need_setup_finished
  async def verify(self) -> bool:
    return await self.backend.verify()

  @need_setup_finished
  async def discover_devices(self) -> List[str]:
    return await self.backend.discover_devices()

  @need_setup_finished
  async def reset(self) -> None:
    await self.backend.reset()
