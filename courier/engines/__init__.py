from courier.engines.base import (
    EngineAdapter,
    EngineTask,
    Evidence,
    EvidenceScorer,
    SizeAndMarkerScorer,
)
from courier.engines.registry import ENGINE_KINDS, build_default_adapters

__all__ = [
    "EngineAdapter",
    "EngineTask",
    "Evidence",
    "EvidenceScorer",
    "SizeAndMarkerScorer",
    "ENGINE_KINDS",
    "build_default_adapters",
]
