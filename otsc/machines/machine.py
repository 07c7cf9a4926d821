import functools
from typing import Any, Awaitable, Callable, TypeVar

from otsc.machines.backend import MachineBackend

_F = TypeVar("_F", bound=Callable[..., Awaitable[Any]])


def need_setup_finished(func: _F) -> _F:
  """Decorator for front end methods that need the machine to be set up.

  Raises:
    RuntimeError: if ``setup`` has not finished.
  """

  @functools.wraps(func)
  async def wrapper(self: "Machine", *args, **kwargs):
    if not self.setup_finished:
      raise RuntimeError("The setup has not finished. See `setup`.")
    return await func(self, *args, **kwargs)

  return wrapper  # type: ignore[return-value]


class Machine:
  """Front end for a machine. Forwards calls to its backend."""

  def __init__(self, backend: MachineBackend):
    self.backend = backend
    self._setup_finished = False

  @property
  def setup_finished(self) -> bool:
    return self._setup_finished

  async def setup(self, **backend_kwargs) -> None:
    await self.backend.setup(**backend_kwargs)
    self._setup_finished = True

  @need_setup_finished
  async def stop(self) -> None:
    await self.backend.stop()
    self._setup_finished = False

  async def __aenter__(self):
    await self.setup()
    return self

  async def __aexit__(self, exc_type, exc_value, traceback):
    await self.stop()

  def serialize(self) -> dict:
    return {"type": self.__class__.__name__, "backend": self.backend.serialize()}
