from __future__ import annotations

from .attachment import AttachmentSession, AttachmentState
from .audio import SAMPLE_RATE, AudioAnalysis, DecodedAudio, analyze_audio_content, decode_wav, encode_wav
from .bank import RegistrationStatus, Sample, SampleBank
from .bus import CoordinationBus, PlayingState, UnitCallbacks
from .cache import CacheStats, RenderCache
from .codegen import SILENCE, generate_pattern, referenced_sample_names
from .config import EngineSettings, SourceReference, UnitConfigUpdate, parse_source
from .engine import Engine
from .errors import (
    EvaluationError,
    InvalidConfigError,
    KromoliveError,
    RegistrationError,
    RenderError,
    ResourceRevokedError,
    SampleNameCollisionError,
    UnitClosedError,
)
from .evaluator import Evaluator, HostElement
from .fetcher import CallableRenderer, HttpAudioFetcher, RenderCollaborator
from .logging_utils import configure_logging as _configure_logging
from .materializer import RenderedAudio, ResourceHandle, ResourceMaterializer, ResourceStore
from .unit import LiveCodingUnit, PlaybackStatus, UnitHooks

__version__ = "0.1.0"

__all__ = [
    "SAMPLE_RATE",
    "SILENCE",
    "AttachmentSession",
    "AttachmentState",
    "AudioAnalysis",
    "CacheStats",
    "CallableRenderer",
    "CoordinationBus",
    "DecodedAudio",
    "Engine",
    "EngineSettings",
    "EvaluationError",
    "Evaluator",
    "HostElement",
    "HttpAudioFetcher",
    "InvalidConfigError",
    "KromoliveError",
    "LiveCodingUnit",
    "PlaybackStatus",
    "PlayingState",
    "RegistrationError",
    "RegistrationStatus",
    "RenderCache",
    "RenderCollaborator",
    "RenderError",
    "RenderedAudio",
    "ResourceHandle",
    "ResourceMaterializer",
    "ResourceRevokedError",
    "ResourceStore",
    "Sample",
    "SampleBank",
    "SampleNameCollisionError",
    "SourceReference",
    "UnitCallbacks",
    "UnitClosedError",
    "UnitConfigUpdate",
    "UnitHooks",
    "analyze_audio_content",
    "decode_wav",
    "encode_wav",
    "generate_pattern",
    "parse_source",
    "referenced_sample_names",
]

_configure_logging()
del _configure_logging
