"""
Capability Packages — units of functionality loaded into every runtime.

A package is created by a factory (a zero-argument callable) and exposes
a fixed interface:

  load_bot(runtime, system_packages)   always; registers dialogs/scripts
  get_dialogs(runtime)                 only when supports_dialogs is True
  on_new_session(runtime, step)        only when supports_new_session is True

Factories are configured as "module:attribute" references.
"""
from __future__ import annotations

import abc
import importlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, Sequence

from botbuilder.dialogs import DialogContext, DialogTurnResult, WaterfallStepContext

if TYPE_CHECKING:
    from core.runtime import RuntimeContext

WaterfallStep = Callable[[WaterfallStepContext], Awaitable[DialogTurnResult]]


@dataclass
class DialogDefinition:
    """A dialog a package supplies: identifier plus waterfall steps."""
    id: str
    steps: list[WaterfallStep] = field(default_factory=list)


class CapabilityPackage(abc.ABC):

    name: str = ""
    supports_dialogs: bool = False
    supports_new_session: bool = False

    @property
    def package_name(self) -> str:
        return self.name or type(self).__name__

    @abc.abstractmethod
    async def load_bot(
        self,
        runtime: "RuntimeContext",
        system_packages: Sequence["CapabilityPackage"] = (),
    ) -> None:
        ...

    def get_dialogs(self, runtime: "RuntimeContext") -> list[DialogDefinition]:
        return []

    async def on_new_session(self, runtime: "RuntimeContext", step: DialogContext) -> None:
        return None


PackageFactory = Callable[[], CapabilityPackage]


def load_factory(reference: str) -> PackageFactory:
    """Resolve a "module:attribute" reference to a package factory."""
    module_name, sep, attribute = reference.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Invalid package reference '{reference}', expected 'module:factory'")
    module = importlib.import_module(module_name)
    factory = getattr(module, attribute)
    if not callable(factory):
        raise TypeError(f"Package reference '{reference}' is not callable")
    return factory


def load_factories(references: Sequence[str]) -> list[PackageFactory]:
    return [load_factory(ref) for ref in references]
