"""Tests for the built-in video_processing processor."""
import uuid

import pytest
from pydantic import ValidationError

from app.services.processor_registry import ProcessorRegistry, WorkItem
from app.services.processors import (
    VIDEO_PROCESSING,
    VideoProcessingConfig,
    make_video_processor,
    register_default_processors,
)


class FakeExtractor:
    async def extract(self, item):
        return b"audio-bytes"


class FakeTranscriber:
    def __init__(self):
        self.languages = []

    async def transcribe(self, audio, language):
        self.languages.append(language)
        return {"text": "hello world"}


class FakeMetadataGenerator:
    def generate(self, transcript, config, platform):
        return {"title": f"{config.creator_name} on {platform}", "text": transcript["text"]}


class ProgressRecorder:
    def __init__(self):
        self.reports = []

    async def __call__(self, percent, stage=None):
        self.reports.append((percent, stage))
        return percent


def work_item(config) -> WorkItem:
    return WorkItem(
        id=uuid.uuid4(),
        batch_job_id=uuid.uuid4(),
        job_type=VIDEO_PROCESSING,
        video_id="vid-1",
        config=config,
    )


class TestVideoProcessingConfig:

    def test_defaults(self) -> None:
        config = VideoProcessingConfig()
        assert config.language == "en"
        assert config.platforms == ["youtube", "instagram", "tiktok"]
        assert config.generate_subtitles is True

    def test_accepts_camel_case_and_normalizes_platforms(self) -> None:
        config = VideoProcessingConfig.model_validate(
            {"creatorName": "Ana", "platforms": [" YouTube ", "tiktok"]}
        )
        assert config.creator_name == "Ana"
        assert config.platforms == ["youtube", "tiktok"]

    def test_rejects_unknown_platform(self) -> None:
        with pytest.raises(ValidationError):
            VideoProcessingConfig(platforms=["myspace"])


class TestVideoProcessor:

    @pytest.mark.asyncio
    async def test_full_pipeline(self) -> None:
        transcriber = FakeTranscriber()
        process = make_video_processor(FakeExtractor(), transcriber, FakeMetadataGenerator())
        progress = ProgressRecorder()
        config = VideoProcessingConfig(language="es", platforms=["youtube"], creator_name="Ana")

        result = await process(work_item(config), progress)

        assert progress.reports == [
            (10, "Initializing"),
            (30, "Extracting audio"),
            (60, "Generating transcription"),
            (80, "Creating metadata"),
            (100, "Complete"),
        ]
        assert transcriber.languages == ["es"]
        assert result == {
            "video_id": "vid-1",
            "transcribed": True,
            "platforms": ["youtube"],
            "metadata": {"youtube": {"title": "Ana on youtube", "text": "hello world"}},
        }

    @pytest.mark.asyncio
    async def test_without_collaborators_only_reports_progress(self) -> None:
        process = make_video_processor()
        progress = ProgressRecorder()

        result = await process(work_item({"platforms": ["instagram"]}), progress)

        assert len(progress.reports) == 5
        assert result["transcribed"] is False
        assert result["metadata"] == {}

    def test_register_default_processors(self) -> None:
        registry = ProcessorRegistry()
        register_default_processors(registry)

        entry = registry.get(VIDEO_PROCESSING)
        assert entry.config_model is VideoProcessingConfig
