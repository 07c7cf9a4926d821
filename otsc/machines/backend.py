from abc import ABC, abstractmethod


class MachineBackend(ABC):
  """Abstract class for machine backends. A backend owns the link to one physical machine."""

  @abstractmethod
  async def setup(self) -> None:
    """Open the link and bring the machine into a usable state."""

  @abstractmethod
  async def stop(self) -> None:
    """Release the machine and close the link."""

  def serialize(self) -> dict:
    return {"type": self.__class__.__name__}
