"""
Engine resolution.

Maps a requested (source format, target format, preferred engine) to the
engine that will perform it, or to a failure reason plus suggestions the
caller can act on. Resolution only reads the capability table.
"""

from dataclasses import dataclass, field
from typing import Union

from .capabilities import CapabilityTable, normalize_format


@dataclass(frozen=True)
class Valid:
    engine_id: str

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Invalid:
    reason: str
    suggestions: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return False


Resolution = Union[Valid, Invalid]


class EngineResolver:
    def __init__(self, capabilities: CapabilityTable) -> None:
        self._capabilities = capabilities

    def resolve(self, source: str, target: str, preferred_engine: str | None = None) -> Resolution:
        source = normalize_format(source)
        target = normalize_format(target)

        if preferred_engine:
            engine = self._capabilities.get(preferred_engine)
            if engine is None:
                return Invalid(
                    reason=f"Engine '{preferred_engine}' not found",
                    suggestions=[e.id for e in self._capabilities.list()],
                )
            if not self._capabilities.supports(engine.id, source, target):
                if not engine.enabled:
                    reason = f"Engine '{engine.id}' is disabled and cannot convert {source} → {target}"
                else:
                    reason = f"Engine '{engine.id}' does not support {source} → {target} conversion"
                return Invalid(reason=reason, suggestions=self._capabilities.outputs_for(engine.id, source))
            return Valid(engine_id=engine.id)

        # engines_for() is ordered by id, so the first match is deterministic.
        candidates = self._capabilities.engines_for(source, target)
        if candidates:
            return Valid(engine_id=candidates[0])

        reachable: set[str] = set()
        for outputs in self._capabilities.targets_for(source).values():
            reachable.update(outputs)
        return Invalid(
            reason=f"No engine supports {source} → {target} conversion",
            suggestions=sorted(reachable),
        )
