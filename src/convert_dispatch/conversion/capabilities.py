"""
Engine capability table.

Maps each conversion engine to the (input format -> output formats) pairs it
can perform. Populated at startup from the engine catalog; registration at
runtime is allowed but rare, so a single lock guards both reads and writes.
Format tokens are case-insensitive and stored lowercase.
"""

import threading
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping

from ..logging_config import get_logger

logger = get_logger(name=__name__)


def normalize_format(token: str) -> str:
    return token.strip().lower().lstrip(".")


@dataclass(frozen=True)
class Engine:
    id: str
    name: str
    description: str = ""
    category: str = ""
    conversions: Mapping[str, frozenset[str]] = field(default_factory=dict)
    enabled: bool = True
    # Engine-specific parameter schema, passed through untouched.
    parameters: Mapping[str, object] | None = None

    @classmethod
    def build(
        cls,
        id: str,
        name: str,
        description: str = "",
        category: str = "",
        conversions: Mapping[str, Iterable[str]] | None = None,
        *,
        enabled: bool = True,
        parameters: Mapping[str, object] | None = None,
    ) -> "Engine":
        table: dict[str, frozenset[str]] = {}
        for source, targets in (conversions or {}).items():
            key = normalize_format(source)
            table[key] = table.get(key, frozenset()) | frozenset(normalize_format(t) for t in targets)
        return cls(
            id=id,
            name=name,
            description=description,
            category=category,
            conversions=MappingProxyType(table),
            enabled=enabled,
            parameters=parameters,
        )

    def input_formats(self) -> list[str]:
        return sorted(self.conversions)

    def output_formats(self) -> list[str]:
        outputs: set[str] = set()
        for targets in self.conversions.values():
            outputs |= targets
        return sorted(outputs)

    def conversion_pairs(self) -> list[tuple[str, str]]:
        return sorted(
            (source, target)
            for source, targets in self.conversions.items()
            for target in targets
        )


class CapabilityTable:
    """In-memory registry of engines keyed by id.

    Engines are immutable values; every read returns the stored value or a
    freshly built list, so callers never see a table mid-update.
    """

    def __init__(self, engines: Iterable[Engine] = ()) -> None:
        self._lock = threading.RLock()
        self._engines: dict[str, Engine] = {}
        for engine in engines:
            self.register(engine)

    def register(self, engine: Engine) -> None:
        """Insert or replace an engine by id."""
        # Re-normalise in case the engine was constructed without build().
        normalized = Engine.build(
            engine.id,
            engine.name,
            engine.description,
            engine.category,
            engine.conversions,
            enabled=engine.enabled,
            parameters=engine.parameters,
        )
        with self._lock:
            replaced = engine.id in self._engines
            self._engines[engine.id] = normalized
        logger.debug(
            "{} engine '{}' ({} input formats)",
            "Replaced" if replaced else "Registered",
            engine.id,
            len(normalized.conversions),
        )

    def set_enabled(self, engine_id: str, enabled: bool) -> bool:
        with self._lock:
            engine = self._engines.get(engine_id)
            if engine is None:
                return False
            self._engines[engine_id] = replace(engine, enabled=enabled)
        logger.info("Engine '{}' {}", engine_id, "enabled" if enabled else "disabled")
        return True

    def get(self, engine_id: str) -> Engine | None:
        with self._lock:
            return self._engines.get(engine_id)

    def list(self) -> List[Engine]:
        """All engines, enabled or not, ordered by id."""
        with self._lock:
            return [self._engines[k] for k in sorted(self._engines)]

    def _enabled(self) -> List[Engine]:
        return [e for e in self.list() if e.enabled]

    def supports(self, engine_id: str, source: str, target: str) -> bool:
        engine = self.get(engine_id)
        if engine is None or not engine.enabled:
            return False
        return normalize_format(target) in engine.conversions.get(normalize_format(source), frozenset())

    def outputs_for(self, engine_id: str, source: str) -> List[str]:
        engine = self.get(engine_id)
        if engine is None or not engine.enabled:
            return []
        return sorted(engine.conversions.get(normalize_format(source), frozenset()))

    def engines_for(self, source: str, target: str) -> List[str]:
        """Ids of enabled engines able to convert source -> target."""
        return [e.id for e in self._enabled() if self.supports(e.id, source, target)]

    def targets_for(self, source: str) -> Dict[str, List[str]]:
        key = normalize_format(source)
        result: Dict[str, List[str]] = {}
        for engine in self._enabled():
            outputs = engine.conversions.get(key)
            if outputs:
                result[engine.id] = sorted(outputs)
        return result

    def all_input_formats(self) -> List[str]:
        formats: set[str] = set()
        for engine in self._enabled():
            formats.update(engine.conversions)
        return sorted(formats)

    def all_output_formats(self) -> List[str]:
        formats: set[str] = set()
        for engine in self._enabled():
            formats.update(engine.output_formats())
        return sorted(formats)

    def __len__(self) -> int:
        with self._lock:
            return len(self._engines)
