"""
Backend and executor contracts.

A backend (e.g. the EBS driver) is created through a DriverRegistry by name
and can hand out Executors by hint. An Executor runs exactly one use case:

    registry = build_registry()
    backend = registry.get_driver("ebs", "/var/lib/ebs-backend", {})
    execs = backend.executors("ebs.volume.create.executor")
    resp = execs["ebs.volume.create.executor"].exec(Request("vol1", {"Size": "4G"}))

Both registries are plain objects populated once at startup and passed to
whoever composes the backend.
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Mapping, TypeVar

from ebs_backend.errors import NoExecutorsError, RegistrationError, UnknownDriverError

logger = logging.getLogger(__name__)


@dataclass
class Request:
    """Input of a use case: a target name plus string options."""

    name: str = ""
    options: Dict[str, str] = field(default_factory=dict)


@dataclass
class Response:
    values: Dict[str, Any] = field(default_factory=dict)


class Executor(ABC):
    @abstractmethod
    def exec(self, req: Request) -> Response:
        raise NotImplementedError


class BackendDriver(ABC):
    """Contract every storage backend implements."""

    @abstractmethod
    def name(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def info(self) -> Dict[str, str]:
        raise NotImplementedError

    @abstractmethod
    def executors(self, *hints: str) -> Dict[str, Executor]:
        raise NotImplementedError


T = TypeVar("T")


class Registry(Generic[T]):
    """name -> factory map that refuses duplicate names."""

    kind = "entry"

    def __init__(self) -> None:
        self._factories: Dict[str, T] = {}

    def register(self, name: str, factory: T) -> None:
        if name in self._factories:
            raise RegistrationError(f"{self.kind} '{name}' has already been registered")
        self._factories[name] = factory

    def get(self, name: str) -> T:
        return self._factories[name]

    def __contains__(self, name: str) -> bool:
        return name in self._factories

    def names(self) -> List[str]:
        return sorted(self._factories)


class ExecutorRegistry(Registry[Callable[[Any], Executor]]):
    kind = "Executor"

    def resolve(self, backend, hints) -> Dict[str, Executor]:
        """
        Build the executors named by `hints` for `backend`.

        Unknown hints and failing factories are skipped with a warning; it
        is only an error if nothing at all could be resolved.
        """
        execs: Dict[str, Executor] = {}
        for hint in hints:
            if hint not in self:
                logger.warning("Executor not initialized for: %s", hint)
                continue
            try:
                execs[hint] = self.get(hint)(backend)
            except Exception as e:
                logger.warning("Failed to fetch executor %s, err: %s", hint, e)

        if not execs:
            raise NoExecutorsError(hints)
        return execs


InitFunc = Callable[..., BackendDriver]


class DriverRegistry(Registry[InitFunc]):
    kind = "Driver"

    def get_driver(self, name: str, root: str, config: Mapping[str, str], **kwargs) -> BackendDriver:
        """Create backend `name` rooted at <root>/<name>."""
        if name not in self:
            raise UnknownDriverError(name)
        return self.get(name)(os.path.join(root, name), dict(config), **kwargs)


def build_registry() -> DriverRegistry:
    """Registry holding every backend shipped with this package."""
    from ebs_backend import ebs_driver

    registry = DriverRegistry()
    ebs_driver.register(registry)
    return registry
