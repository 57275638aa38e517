# src/tools/base.py
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional, Sequence

STDOUT = "stdout"
STDERR = "stderr"


@dataclass
class ContainerSpec:
    image: str
    command: Sequence[str]
    cpu_limit: float
    memory_limit_mb: int
    name: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class OutputChunk:
    stream: str
    text: str


class ContainerHandle(ABC):
    @property
    @abstractmethod
    def id(self) -> str:
        pass


class ContainerRuntime(ABC):
    """
    Process lifecycle boundary around a container engine. Implementations do not
    interpret tool semantics.
    """

    mode = "real"

    @abstractmethod
    def ping(self) -> bool:
        pass

    @abstractmethod
    def image_present(self, image: str) -> bool:
        pass

    @abstractmethod
    def ensure_image(self, image: str) -> None:
        pass

    @abstractmethod
    def create(self, spec: ContainerSpec) -> ContainerHandle:
        pass

    @abstractmethod
    def attach(self, handle: ContainerHandle) -> Iterator[OutputChunk]:
        pass

    @abstractmethod
    def start(self, handle: ContainerHandle) -> None:
        pass

    @abstractmethod
    def wait(self, handle: ContainerHandle) -> int:
        pass

    @abstractmethod
    def stop(self, handle: ContainerHandle, grace_seconds: int = 0) -> None:
        pass

    @abstractmethod
    def remove(self, handle: ContainerHandle, force: bool = True) -> None:
        pass
