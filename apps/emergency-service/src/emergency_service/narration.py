from __future__ import annotations

import asyncio
import itertools
import logging
import re
from collections import OrderedDict
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

_MARKUP = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")

_EDGE_VOICES = {
    "en": "en-US-JennyNeural",
    "es": "es-ES-ElviraNeural",
    "fr": "fr-FR-DeniseNeural",
    "de": "de-DE-KatjaNeural",
    "hi": "hi-IN-SwaraNeural",
}


def strip_markup(text: str) -> str:
    return _WHITESPACE.sub(" ", _MARKUP.sub("", text)).strip()


class SpeechAnnouncer(Protocol):
    """Fire-and-forget speech output. `cancel_all` silences everything queued or playing."""

    def speak(self, text: str, language: str) -> None: ...

    def cancel_all(self) -> None: ...


@dataclass(frozen=True)
class SpeechClip:
    name: str
    text: str
    path: Path


@runtime_checkable
class ClipSource(Protocol):
    """Announcer that keeps its synthesized audio around for playback."""

    @property
    def clips(self) -> list[SpeechClip]: ...

    def clip(self, name: str) -> SpeechClip | None: ...


class EdgeTtsAnnouncer:
    """Synthesizes each utterance to an mp3 clip with edge-tts.

    Only the newest `max_clips` finished clips are kept on disk. `cancel_all`
    drops pending synthesis and deletes every clip this announcer wrote.
    """

    def __init__(
        self,
        output_dir: str | Path,
        voice: str | None = None,
        prefix: str = "utterance",
        max_clips: int = 20,
    ) -> None:
        self._output_dir = Path(output_dir)
        self._voice = voice
        self._prefix = prefix
        self._max_clips = max_clips
        self._tasks: set[asyncio.Task[None]] = set()
        self._clips: OrderedDict[str, SpeechClip] = OrderedDict()
        self._sequence = itertools.count(1)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @property
    def clips(self) -> list[SpeechClip]:
        return list(self._clips.values())

    def clip(self, name: str) -> SpeechClip | None:
        return self._clips.get(name)

    def speak(self, text: str, language: str) -> None:
        if not text.strip():
            return
        name = f"{self._prefix}-{next(self._sequence):06d}.mp3"
        clip = SpeechClip(name=name, text=text, path=self._output_dir / name)
        task = asyncio.get_running_loop().create_task(self._synthesize(clip, language))
        self._tasks.add(task)
        task.add_done_callback(self._on_done)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        clips, self._clips = self._clips, OrderedDict()
        for clip in clips.values():
            clip.path.unlink(missing_ok=True)

    def _voice_for(self, language: str) -> str:
        if self._voice:
            return self._voice
        return _EDGE_VOICES.get(language.split("-", 1)[0].lower(), _EDGE_VOICES["en"])

    async def _synthesize(self, clip: SpeechClip, language: str) -> None:
        try:
            import edge_tts
        except ImportError as exc:
            raise RuntimeError("edge-tts is required for speech synthesis") from exc
        clip.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            await edge_tts.Communicate(text=clip.text, voice=self._voice_for(language)).save(str(clip.path))
        except BaseException:
            clip.path.unlink(missing_ok=True)
            raise
        self._clips[clip.name] = clip
        while len(self._clips) > self._max_clips:
            _, expired = self._clips.popitem(last=False)
            expired.path.unlink(missing_ok=True)

    def _on_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("speech_synthesis_failed", extra={"error": repr(exc)})


class Narration:
    def __init__(self, task: asyncio.Task[None]) -> None:
        self._task = task

    @property
    def done(self) -> bool:
        return self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._task.cancelled()

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        await asyncio.wait({self._task})


class Narrator:
    """Speaks route instructions one at a time with a fixed pause between steps.

    Only one narration runs at a time: starting a new one cancels the previous
    narration and silences the announcer first.
    """

    def __init__(
        self,
        announcer: SpeechAnnouncer,
        step_delay_seconds: float = 3.5,
        language: str = "en-US",
    ) -> None:
        self._announcer = announcer
        self._step_delay_seconds = step_delay_seconds
        self._language = language
        self._current: Narration | None = None

    @property
    def announcer(self) -> SpeechAnnouncer:
        return self._announcer

    @property
    def current(self) -> Narration | None:
        return self._current

    def narrate(self, instructions: Sequence[str]) -> Narration:
        self.cancel()
        steps = [text for text in (strip_markup(item) for item in instructions) if text]
        task = asyncio.get_running_loop().create_task(self._run(steps))
        self._current = Narration(task)
        return self._current

    def say(self, text: str) -> None:
        """Speak a single announcement outside of any narration."""
        cleaned = strip_markup(text)
        if cleaned:
            self._announcer.speak(cleaned, self._language)

    def cancel(self) -> None:
        current, self._current = self._current, None
        if current is not None:
            current.cancel()
        self._announcer.cancel_all()

    async def _run(self, steps: list[str]) -> None:
        for index, text in enumerate(steps):
            if index:
                await asyncio.sleep(self._step_delay_seconds)
            self._announcer.speak(text, self._language)
        logger.debug("narration_completed", extra={"steps": len(steps)})
