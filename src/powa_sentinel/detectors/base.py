from typing import Any, Protocol, runtime_checkable

from powa_sentinel.domain import Finding, ScenarioKind, SnapshotPair


@runtime_checkable
class Detector(Protocol):
    """Protocol for scenario detectors."""

    @property
    def name(self) -> str:
        ...

    @property
    def kind(self) -> ScenarioKind:
        ...

    @property
    def requires_previous(self) -> bool:
        ...

    async def detect(self, pair: SnapshotPair) -> list[Finding]:
        ...


@runtime_checkable
class StatefulDetector(Protocol):
    """Detectors carrying cross-cycle state that must roll back with the cycle."""

    def checkpoint(self) -> Any:
        ...

    def restore(self, state: Any) -> None:
        ...
