"""Item processor registry.

Maps a job-type string to the function that processes one queue item of that
type, and optionally to a Pydantic model describing the job's config blob.

    registry = ProcessorRegistry()

    @registry.processor("video_processing", config_model=VideoProcessingConfig)
    async def process_video(item: WorkItem, update_progress) -> dict:
        await update_progress(50, "Transcribing")
        ...

The manager takes a registry instance, so tests build their own. The
application uses `default_registry`.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from pydantic import BaseModel, ValidationError

from app.services.exceptions import InvalidJobConfigError, UnregisteredProcessorError

logger = logging.getLogger(__name__)


class ProgressCallback(Protocol):
    async def __call__(self, percent: float, stage: Optional[str] = None) -> float: ...


@dataclass(frozen=True)
class WorkItem:
    """Snapshot of a queue item handed to a processor."""

    id: uuid.UUID
    batch_job_id: uuid.UUID
    job_type: str
    video_id: Optional[str] = None
    priority: int = 0
    retry_count: int = 0
    max_retries: int = 3
    metadata: dict = field(default_factory=dict)
    # Validated config model instance when the job type declares one, else the raw dict
    config: Any = None


# (item, update_progress) -> outcome; sync or async
ProcessorFn = Callable[[WorkItem, ProgressCallback], Any]


@dataclass(frozen=True)
class RegisteredProcessor:
    job_type: str
    fn: ProcessorFn
    config_model: Optional[type[BaseModel]] = None


class ProcessorRegistry:
    """Exactly one processor per job type."""

    def __init__(self):
        self._processors: dict[str, RegisteredProcessor] = {}

    def register(
        self,
        job_type: str,
        fn: ProcessorFn,
        config_model: Optional[type[BaseModel]] = None,
    ) -> ProcessorFn:
        if not job_type:
            raise ValueError("job_type must be a non-empty string")
        if job_type in self._processors:
            logger.warning(f"Replacing processor for job type '{job_type}'")
        self._processors[job_type] = RegisteredProcessor(job_type, fn, config_model)
        return fn

    def processor(self, job_type: str, config_model: Optional[type[BaseModel]] = None):
        """Decorator to register a processor function."""
        def decorator(func):
            return self.register(job_type, func, config_model)
        return decorator

    def unregister(self, job_type: str) -> None:
        self._processors.pop(job_type, None)

    def get(self, job_type: str) -> RegisteredProcessor:
        entry = self._processors.get(job_type)
        if entry is None:
            raise UnregisteredProcessorError(job_type)
        return entry

    def has(self, job_type: str) -> bool:
        return job_type in self._processors

    def job_types(self) -> list[str]:
        return sorted(self._processors)

    def validate_config(self, job_type: str, config: Optional[dict]) -> Any:
        """Check a job config against the declared model.

        Returns the model instance, or the raw dict when the job type declares
        no model or is not registered yet.
        """
        config = config or {}
        entry = self._processors.get(job_type)
        if entry is None or entry.config_model is None:
            return config
        try:
            return entry.config_model.model_validate(config)
        except ValidationError as e:
            raise InvalidJobConfigError(job_type, str(e)) from e


default_registry = ProcessorRegistry()
