from __future__ import annotations
import logging
import random
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional

import aiohttp

logger = logging.getLogger(__name__)

SPEECH_URL = 'https://api.streamelements.com/kappa/v2/speech'
AUDIO_PATH = '/audio/'

VOICE_ROSTER = [
    'Filiz', 'Astrid', 'Tatyana', 'Maxim', 'Carmen', 'Ines', 'Cristiano', 'Vitoria',
    'Ricardo', 'Maja', 'Jan', 'Jacek', 'Ewa', 'Ruben', 'Lotte', 'Liv', 'Seoyeon',
    'Takumi', 'Mizuki', 'Giorgio', 'Carla', 'Bianca', 'Karl', 'Dora', 'Mathieu',
    'Celine', 'Chantal', 'Penelope', 'Miguel', 'Mia', 'Enrique', 'Conchita', 'Geraint',
    'Salli', 'Matthew', 'Kimberly', 'Kendra', 'Justin', 'Joey', 'Joanna', 'Ivy',
    'Raveena', 'Aditi', 'Emma', 'Brian', 'Amy', 'Russell', 'Nicole', 'Vicki',
    'Marlene', 'Hans', 'Naja', 'Mads', 'Gwyneth', 'Zhiyu', 'Tracy', 'Danny',
    'Huihui', 'Yaoyao', 'Kangkang', 'HanHan', 'Zhiwei', 'Asaf', 'An', 'Stefanos',
    'Filip', 'Ivan', 'Heidi', 'Herena', 'Kalpana', 'Hemant', 'Matej', 'Andika',
    'Rizwan', 'Lado', 'Valluvar', 'Linda', 'Heather', 'Sean', 'Michael', 'Karsten',
    'Guillaume', 'Pattara', 'Jakub', 'Szabolcs', 'Hoda', 'Naayf',
]

DEFAULT_SPEAKERS = {
    '2da16ec5-b966-4ce0-a40d-6d0ba2f94a6e': 'Brian',
    'ca333739-872c-4fbe-8866-b8c291a2fe87': 'Kendra',
    '0fcde0bf-f827-4506-b845-986fe1259418': 'Geraint',
    'ca6afa06-77d2-440f-b8b6-5a7729c26fe8': 'Kimberly',
    '01dee543-d5b1-488a-87b1-ff1c5be5ec3e': 'Russell',
}
DEFAULT_SKIP_TTS_ID = '7481775e-5c63-43b9-83c7-d65061922f68'
DEFAULT_RANDOM_TTS_ID = '0fa537dd-c9fe-4f84-ab8d-0be967dc3c16'


class SpeechError(RuntimeError):
    def __init__(self, status: int, detail: str):
        super().__init__(detail or f'speech synthesis failed with status {status}')
        self.status = status
        self.detail = detail


@dataclass
class AudioClip:
    data: bytes
    content_type: str


class AudioStore:
    """In-memory holder for synthesized clips, addressed by locator."""

    def __init__(self) -> None:
        self._clips: Dict[str, AudioClip] = {}

    def add(self, data: bytes, content_type: str = 'audio/mpeg') -> str:
        clip_id = uuid.uuid4().hex
        self._clips[clip_id] = AudioClip(data=data, content_type=content_type)
        return f'{AUDIO_PATH}{clip_id}'

    def get(self, clip_id: str) -> Optional[AudioClip]:
        return self._clips.get(clip_id)

    def discard(self, locator: str) -> None:
        self._clips.pop(locator.rsplit('/', 1)[-1], None)

    def __len__(self) -> int:
        return len(self._clips)


class SpeechClient:
    def __init__(self, store: AudioStore, base_url: str = SPEECH_URL):
        self.store = store
        self.base_url = base_url
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession()

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def synthesize(self, voice: str, text: str) -> str:
        if not self.session:
            await self.start()
        params = {'voice': voice, 'text': text.strip()}
        async with self.session.get(self.base_url, params=params) as r:
            if r.status != 200:
                raise SpeechError(r.status, await r.text())
            data = await r.read()
            content_type = r.headers.get('content-type', 'audio/mpeg')
        return self.store.add(data, content_type)


class AudioSequencer:
    """Plays one audio item at a time and queues the rest in arrival order.

    Transitions are synchronous so that a completion callback can never
    interleave with ``enqueue_or_play``. ``player`` needs ``play(locator)``
    and ``stop()``; ``on_discard`` is called with every item that finished or
    was skipped.
    """

    def __init__(self, player, on_discard: Optional[Callable[[str], None]] = None):
        self.player = player
        self.on_discard = on_discard
        self.queue: Deque[str] = deque()
        self.current: Optional[str] = None

    @property
    def playing(self) -> bool:
        return self.current is not None

    def enqueue_or_play(self, item: str) -> None:
        if self.current is None:
            self._play(item)
            return
        self.queue.append(item)
        logger.debug('Queued audio %s behind %s (%d waiting)', item, self.current, len(self.queue))

    def on_playback_complete(self, item: Optional[str] = None) -> None:
        if self.current is None:
            logger.debug('Ignoring playback completion while idle')
            return
        if item is not None and item != self.current:
            logger.debug('Ignoring stale completion for %s', item)
            return
        finished = self.current
        self.current = None
        if self.on_discard:
            self.on_discard(finished)
        next_item = self.queue.popleft() if self.queue else None
        logger.info('Audio ended, next: %s', next_item)
        if next_item is not None:
            self._play(next_item)

    def skip_current(self) -> None:
        if self.current is None:
            return
        self.player.stop()
        self.on_playback_complete()

    def snapshot(self) -> Dict[str, object]:
        return {'current': self.current, 'queue': list(self.queue)}

    def _play(self, item: str) -> None:
        self.current = item
        self.player.play(item)


class TTSHandler:
    def __init__(
        self,
        speech: SpeechClient,
        sequencer: AudioSequencer,
        *,
        speakers: Optional[Dict[str, str]] = None,
        skip_tts_id: str = DEFAULT_SKIP_TTS_ID,
        random_tts_id: str = DEFAULT_RANDOM_TTS_ID,
        roster: Optional[List[str]] = None,
        choice: Callable[[List[str]], str] = random.choice,
    ):
        self.speech = speech
        self.sequencer = sequencer
        self.speakers = dict(DEFAULT_SPEAKERS if speakers is None else speakers)
        self.skip_tts_id = skip_tts_id
        self.random_tts_id = random_tts_id
        self.roster = list(roster or VOICE_ROSTER)
        self._choice = choice

    def get_speaker_ids(self) -> List[str]:
        return list(self.speakers)

    async def handle_reward(self, user: str, reward_id: str, message: str, extra: Dict[str, object]) -> None:
        speaker = self.speakers.get(reward_id)
        if not speaker:
            logger.info('Unhandled speaker: %s', reward_id)
            return
        await self._speak(user, speaker, message)

    async def handle_random_tts(self, user: str, reward_id: str, message: str, extra: Dict[str, object]) -> None:
        await self._speak(user, self._choice(self.roster), message)

    async def handle_skip_tts(self, user: str, reward_id: str, message: str, extra: Dict[str, object]) -> None:
        self.sequencer.skip_current()

    async def _speak(self, user: str, speaker: str, message: str) -> None:
        if not (message or '').strip():
            logger.info('Ignoring empty TTS message from %s', user)
            return
        locator = await self.speech.synthesize(speaker, message)
        logger.info('TTS from %s as %s -> %s', user, speaker, locator)
        self.sequencer.enqueue_or_play(locator)
