"""Engine registry and factories used to build the fallback chain."""

from collections.abc import Callable
from typing import Any

from ..config import DEFAULT_ENGINE_PRIORITY, ENGINE_ALIASES
from .base import TranscriptionEngine
from .local_whisper import LocalWhisperEngine
from .native_speech import NativeSpeechEngine
from .remote_whisper import RemoteWhisperEngine

EngineFactory = Callable[[], TranscriptionEngine]

_engine_registry: dict[str, type[TranscriptionEngine]] = {
    LocalWhisperEngine.name: LocalWhisperEngine,
    RemoteWhisperEngine.name: RemoteWhisperEngine,
    NativeSpeechEngine.name: NativeSpeechEngine,
}


def get_registered_engines() -> list[str]:
    return list(_engine_registry)


def resolve_engine_id(engine_id: str) -> str:
    """Map a former engine id to its current name; other names pass through."""
    return ENGINE_ALIASES.get(engine_id, engine_id)


def create_engine(engine_id: str, **kwargs: Any) -> TranscriptionEngine:
    """
    Create an instance of the specified engine.

    Args:
        engine_id: Registered engine name or alias
        **kwargs: Constructor arguments for the engine

    Returns:
        The engine instance

    Raises:
        ValueError: If the engine name is unknown
    """
    engine_id = resolve_engine_id(engine_id)
    if engine_id not in _engine_registry:
        raise ValueError(f"Unknown engine: {engine_id}. Available: {', '.join(_engine_registry)}")
    return _engine_registry[engine_id](**kwargs)


def build_engine_factories(
    priority: list[str] | None = None,
    engine_options: dict[str, dict[str, Any]] | None = None,
) -> list[tuple[str, EngineFactory]]:
    """
    Build ordered ``(name, factory)`` pairs for the orchestrator.

    Args:
        priority: Engine names or aliases in fallback order
        engine_options: Per-engine constructor arguments

    Returns:
        Factories in priority order
    """
    engine_options = engine_options or {}
    factories = []
    for engine_id in map(resolve_engine_id, priority or DEFAULT_ENGINE_PRIORITY):
        if engine_id not in _engine_registry:
            raise ValueError(f"Unknown engine: {engine_id}. Available: {', '.join(_engine_registry)}")
        options = dict(engine_options.get(engine_id, {}))
        factories.append((engine_id, lambda engine_id=engine_id, options=options: create_engine(engine_id, **options)))
    return factories
