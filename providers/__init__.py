from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .avatar import AvatarVideoGenerator, verify_signature
from .base import AsyncHandle, SyncResult
from .captions import CaptionEditor, CaptionOptions, caption_language
from .script import ScriptGenerator
from .storage import StoredObject, load_storage, media_key
from .thumbnail import ThumbnailGenerator
from .transcription import Transcriber, Transcript
from .voice import SpeechAudio, VoiceSynthesizer


@dataclass
class ProviderSet:
    script: Any
    voice: Any
    avatar: Any
    captions: Any
    transcription: Any
    thumbnail: Any


def load_providers() -> ProviderSet:
    return ProviderSet(
        script=ScriptGenerator(),
        voice=VoiceSynthesizer(),
        avatar=AvatarVideoGenerator(),
        captions=CaptionEditor(),
        transcription=Transcriber(),
        thumbnail=ThumbnailGenerator(),
    )


__all__ = [
    "AsyncHandle",
    "AvatarVideoGenerator",
    "CaptionEditor",
    "CaptionOptions",
    "ProviderSet",
    "ScriptGenerator",
    "SpeechAudio",
    "StoredObject",
    "SyncResult",
    "ThumbnailGenerator",
    "Transcriber",
    "Transcript",
    "VoiceSynthesizer",
    "caption_language",
    "load_providers",
    "load_storage",
    "media_key",
    "verify_signature",
]
