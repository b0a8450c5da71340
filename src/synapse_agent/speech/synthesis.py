"""Text-to-speech for spoken assistant responses."""

from __future__ import annotations

import base64
import logging
import re
import threading
from collections import OrderedDict
from typing import Any, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

MEDICAL_PRONUNCIATIONS: dict[str, str] = {
    "pneumothorax": "new-mo-THOR-ax",
    "pneumonia": "new-MOAN-ya",
    "atelectasis": "at-uh-LEK-tuh-sis",
    "bronchiectasis": "brong-kee-EK-tuh-sis",
    "emphysema": "em-fuh-SEE-muh",
    "pleural": "PLOOR-al",
    "pericardial": "pair-ih-CAR-dee-al",
    "myocardial": "my-oh-CAR-dee-al",
    "hepatomegaly": "hep-uh-toe-MEG-uh-lee",
    "splenomegaly": "splee-no-MEG-uh-lee",
    "lymphadenopathy": "lim-fad-uh-NOP-uh-thee",
    "adenocarcinoma": "ad-uh-no-car-sih-NO-muh",
    "glioblastoma": "glee-oh-blas-TOE-muh",
    "meningioma": "meh-nin-jee-OH-muh",
}

_MEASUREMENT = re.compile(r"(\d+(?:\.\d+)?\s*(?:mm|cm|m|inches|inch|feet)\b)", re.IGNORECASE)
_TERMS = re.compile(
    r"\b(" + "|".join(sorted(MEDICAL_PRONUNCIATIONS, key=len, reverse=True)) + r")\b",
    re.IGNORECASE,
)


def preprocess_medical_text(text: str) -> str:
    """Swap in phonetic spellings and pause after measurements."""
    processed = _TERMS.sub(lambda match: MEDICAL_PRONUNCIATIONS[match.group(1).lower()], text)
    return _MEASUREMENT.sub(r"\1... ", processed)


class SpeechSettings(BaseModel):
    model: str = "gpt-4o-mini-tts"
    voice: str = "alloy"
    speed: float = Field(default=1.0, ge=0.25, le=4.0)
    medical_terminology: bool = True
    cache_size: int = Field(default=100, ge=0)


class SpeechSynthesizer(Protocol):
    def synthesize(self, text: str) -> str | None: ...


class SilentSpeechSynthesizer:
    """Offline synthesizer; responses are delivered without audio."""

    def synthesize(self, text: str) -> str | None:
        del text
        return None


class OpenAISpeechSynthesizer:
    """Synthesizes WAV audio with the OpenAI speech endpoint.

    Returns a `data:audio/wav;base64,...` URI. Recent results are kept in a
    small LRU keyed by text and voice.
    """

    def __init__(self, client: Any | None = None, settings: SpeechSettings | None = None) -> None:
        if client is None:
            from openai import OpenAI

            client = OpenAI()
        self.client = client
        self.settings = settings or SpeechSettings()
        self._cache: OrderedDict[str, str] = OrderedDict()
        self._lock = threading.Lock()

    def synthesize(self, text: str) -> str | None:
        if not text.strip():
            return None
        key = f"{self.settings.voice}:{self.settings.speed}:{text}"
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._cache.move_to_end(key)
                return cached

        spoken = preprocess_medical_text(text) if self.settings.medical_terminology else text
        response = self.client.audio.speech.create(
            model=self.settings.model,
            voice=self.settings.voice,
            input=spoken,
            response_format="wav",
            speed=self.settings.speed,
        )
        audio = "data:audio/wav;base64," + base64.b64encode(response.content).decode("ascii")
        logger.debug("Synthesized %d characters of speech", len(spoken))

        if self.settings.cache_size:
            with self._lock:
                self._cache[key] = audio
                while len(self._cache) > self.settings.cache_size:
                    self._cache.popitem(last=False)
        return audio
