from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from livescribe.core.config import INSTANCE_ID
from livescribe.corrections.engine import CorrectionEngine
from livescribe.corrections.store import build_correction_store
from livescribe.db.transcripts import TranscriptRepository, build_transcript_repository
from livescribe.pipeline.coordinator import AdapterFactory, PipelineCoordinator
from livescribe.session.fragment_bus import FragmentBus, build_fragment_bus


@dataclass
class Runtime:
    engine: CorrectionEngine
    repository: TranscriptRepository
    bus: FragmentBus
    coordinator: PipelineCoordinator


_runtime: Optional[Runtime] = None


def build_runtime(
    engine: Optional[CorrectionEngine] = None,
    repository: Optional[TranscriptRepository] = None,
    bus: Optional[FragmentBus] = None,
    adapter_factory: Optional[AdapterFactory] = None,
) -> Runtime:
    engine = engine or CorrectionEngine(build_correction_store())
    repository = repository or build_transcript_repository()
    bus = bus or build_fragment_bus(INSTANCE_ID)
    coordinator = PipelineCoordinator(
        engine=engine,
        repository=repository,
        bus=bus,
        adapter_factory=adapter_factory,
    )
    return Runtime(engine=engine, repository=repository, bus=bus, coordinator=coordinator)


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: Optional[Runtime]) -> None:
    global _runtime
    _runtime = runtime
