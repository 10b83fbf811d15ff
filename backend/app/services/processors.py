"""Built-in queue item processors.

`video_processing` is the job type batch uploads are created with. The
heavy lifting (audio extraction, speech-to-text, metadata templating) is done
by collaborators passed in at registration time; any of them may be omitted,
in which case that stage only reports progress.
"""
import logging
from typing import Optional, Protocol

from pydantic import Field, field_validator

from app.schemas.base import CamelModel
from app.services.processor_registry import ProcessorRegistry, ProgressCallback, WorkItem

logger = logging.getLogger(__name__)

VIDEO_PROCESSING = "video_processing"
SUPPORTED_PLATFORMS = ("youtube", "instagram", "tiktok")


class VideoProcessingConfig(CamelModel):
    """Config blob of a video_processing batch job."""
    description: str = ""
    language: str = "en"
    platforms: list[str] = Field(default_factory=lambda: list(SUPPORTED_PLATFORMS))
    generate_subtitles: bool = True
    creator_name: str = ""
    keywords: str = ""

    @field_validator("platforms")
    @classmethod
    def check_platforms(cls, value: list[str]) -> list[str]:
        normalized = [p.strip().lower() for p in value]
        unknown = [p for p in normalized if p not in SUPPORTED_PLATFORMS]
        if unknown:
            raise ValueError(f"Unsupported platform(s): {', '.join(unknown)}")
        return normalized


class AudioExtractor(Protocol):
    async def extract(self, item: WorkItem) -> bytes: ...


class TranscriptionEngine(Protocol):
    async def transcribe(self, audio: bytes, language: str) -> dict: ...


class MetadataGenerator(Protocol):
    def generate(self, transcript: Optional[dict], config: VideoProcessingConfig, platform: str) -> dict: ...


def make_video_processor(
    extractor: Optional[AudioExtractor] = None,
    transcriber: Optional[TranscriptionEngine] = None,
    metadata_generator: Optional[MetadataGenerator] = None,
):
    """Build the video_processing processor around the given collaborators."""

    async def process_video(item: WorkItem, update_progress: ProgressCallback) -> dict:
        config = item.config
        if not isinstance(config, VideoProcessingConfig):
            config = VideoProcessingConfig.model_validate(config or {})

        await update_progress(10, "Initializing")

        audio = None
        await update_progress(30, "Extracting audio")
        if extractor is not None:
            audio = await extractor.extract(item)

        transcript = None
        await update_progress(60, "Generating transcription")
        if transcriber is not None and audio is not None:
            transcript = await transcriber.transcribe(audio, config.language)

        metadata = {}
        await update_progress(80, "Creating metadata")
        if metadata_generator is not None:
            for platform in config.platforms:
                metadata[platform] = metadata_generator.generate(transcript, config, platform)

        await update_progress(100, "Complete")
        logger.debug(f"Processed video {item.video_id} for item {item.id}")
        return {
            "video_id": item.video_id,
            "transcribed": transcript is not None,
            "platforms": sorted(metadata),
            "metadata": metadata,
        }

    return process_video


def register_default_processors(
    registry: ProcessorRegistry,
    extractor: Optional[AudioExtractor] = None,
    transcriber: Optional[TranscriptionEngine] = None,
    metadata_generator: Optional[MetadataGenerator] = None,
) -> None:
    registry.register(
        VIDEO_PROCESSING,
        make_video_processor(extractor, transcriber, metadata_generator),
        config_model=VideoProcessingConfig,
    )
