from __future__ import annotations
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from streambot.events import DEFAULT_PREFIX, CommandResponse, Flags, RewardHandler
from streambot.spotify import NoActiveDeviceError, SpotifyClient

logger = logging.getLogger(__name__)

# command -> aliases; the first alias is the name shown by !songcommands
DEFAULT_COMMANDS: Dict[str, List[str]] = {
    'skip': ['skip'],
    'song': ['song'],
    'next': ['next'],
    'lookup': ['lookup'],
    'add': ['add'],
    'songcommands': ['songcommands'],
}

DEFAULT_REWARDS: Dict[str, str] = {
    'skip': '1e9fe39f-2e7d-4f24-8a76-97e31fd6e065',
    'add': '6006568f-5023-47b9-93c7-191596139370',
    'pause': 'b8981d1c-65db-466d-b335-34855badf054',
    'resume': '919846e7-2442-4f07-b8ae-fd4644e137dc',
}

DEFAULT_MESSAGES: Dict[str, str] = {
    'not_allowed': 'RIPBOZO command is not for you.',
    'now_playing': 'Now playing: {song}',
    'nothing_playing': 'No song is currently playing',
    'playing_next': 'Playing Next: {song}',
    'queue_empty': 'There are no songs in the queue.',
    'found': 'Found: {song} on the album {album}',
    'not_found': 'No song found for: {query}',
    'added': 'Added {name} to the queue.',
    'add_usage': 'Usage: {prefix}add <song name>',
    'no_device': 'No active Spotify device found.',
    'reward_added': '@{user} Added {song} to the queue.',
    'reward_not_found': '@{user} No song found for: {query}; hopefully someone refunds you.',
    'reward_no_device': '@{user} No active Spotify device found; hopefully someone refunds you.',
}

SpotifyCommandHandler = Callable[[str, str, Flags, Dict[str, object]], Awaitable[Optional[CommandResponse]]]


class SpotifyCommands:
    def __init__(
        self,
        spotify: SpotifyClient,
        *,
        commands: Optional[Dict[str, List[str]]] = None,
        rewards: Optional[Dict[str, str]] = None,
        messages: Optional[Dict[str, str]] = None,
        prefix: str = DEFAULT_PREFIX,
        on_now_playing: Optional[Callable[[str], None]] = None,
    ):
        self.spotify = spotify
        self.prefix = prefix
        self.messages = {**DEFAULT_MESSAGES, **(messages or {})}
        self.on_now_playing = on_now_playing
        handlers: Dict[str, SpotifyCommandHandler] = {
            'skip': self.on_skip_song,
            'song': self.get_current_song,
            'next': self.get_next_song,
            'lookup': self.on_find_song,
            'add': self.on_add_song,
            'songcommands': self.on_song_commands,
        }
        aliases = {**DEFAULT_COMMANDS, **(commands or {})}
        self.commands: Dict[str, SpotifyCommandHandler] = {}
        for key, handler in handlers.items():
            for alias in aliases.get(key) or [key]:
                self.commands[str(alias).removeprefix(prefix).lower()] = handler
        reward_handlers: Dict[str, RewardHandler] = {
            'skip': self.on_skip_song_reward,
            'add': self.on_add_song_reward,
            'pause': self.on_pause_song_reward,
            'resume': self.on_resume_song_reward,
        }
        reward_ids = {**DEFAULT_REWARDS, **(rewards or {})}
        self.rewards: Dict[str, RewardHandler] = {
            reward_ids[key]: handler for key, handler in reward_handlers.items() if reward_ids.get(key)
        }

    def get_command_names(self) -> List[str]:
        return list(self.commands)

    def get_reward_ids(self) -> List[str]:
        return list(self.rewards)

    def _say(self, key: str, **values: object) -> CommandResponse:
        return CommandResponse.say(self.messages[key].format(**values))

    async def on_command(
        self, user: str, command: str, message: str, flags: Flags, extra: Dict[str, object]
    ) -> Optional[CommandResponse]:
        handler = self.commands.get(command)
        if not handler:
            logger.info('Unhandled command: %s', command)
            return None
        return await handler(user, message, flags, extra)

    async def on_reward(
        self, user: str, reward_id: str, message: str, extra: Dict[str, object]
    ) -> Optional[CommandResponse]:
        handler = self.rewards.get(reward_id)
        if not handler:
            logger.info('Unhandled reward: %s', reward_id)
            return None
        return await handler(user, reward_id, message, extra)

    # ---- chat commands ----
    async def on_skip_song(self, user: str, message: str, flags: Flags, extra: Dict[str, object]) -> Optional[CommandResponse]:
        if not flags.privileged:
            return self._say('not_allowed')
        try:
            await self.spotify.skip_song()
        except NoActiveDeviceError:
            return self._say('no_device')
        return None

    async def on_add_song(self, user: str, message: str, flags: Flags, extra: Dict[str, object]) -> CommandResponse:
        if not flags.privileged:
            return self._say('not_allowed')
        query = (message or '').strip()
        if not query:
            return self._say('add_usage', prefix=self.prefix)
        try:
            track = await self.spotify.add_to_queue(query)
        except NoActiveDeviceError:
            return self._say('no_device')
        if not track:
            return self._say('not_found', query=query)
        return self._say('added', name=track.name)

    async def get_current_song(self, user: str, message: str, flags: Flags, extra: Dict[str, object]) -> CommandResponse:
        track = await self.spotify.get_current_song()
        if not track:
            return self._say('nothing_playing')
        response = self._say('now_playing', song=track.describe())
        if self.on_now_playing:
            self.on_now_playing(response.message)
        return response

    async def get_next_song(self, user: str, message: str, flags: Flags, extra: Dict[str, object]) -> CommandResponse:
        track = await self.spotify.get_next_song()
        if not track:
            return self._say('queue_empty')
        return self._say('playing_next', song=track.describe())

    async def on_find_song(self, user: str, message: str, flags: Flags, extra: Dict[str, object]) -> CommandResponse:
        query = (message or '').strip()
        track = await self.spotify.find_song(query) if query else None
        if not track:
            return self._say('not_found', query=query)
        return self._say('found', song=track.describe(), album=track.album)

    async def on_song_commands(self, user: str, message: str, flags: Flags, extra: Dict[str, object]) -> CommandResponse:
        return CommandResponse.say(', '.join(f'{self.prefix}{name}' for name in self.get_command_names()))

    # ---- channel point rewards ----
    async def on_skip_song_reward(self, user: str, reward_id: str, message: str, extra: Dict[str, object]) -> Optional[CommandResponse]:
        try:
            await self.spotify.skip_song()
        except NoActiveDeviceError:
            return self._say('reward_no_device', user=user)
        return None

    async def on_add_song_reward(self, user: str, reward_id: str, message: str, extra: Dict[str, object]) -> CommandResponse:
        query = (message or '').strip()
        try:
            track = await self.spotify.add_to_queue(query) if query else None
        except NoActiveDeviceError:
            return self._say('reward_no_device', user=user)
        if not track:
            return self._say('reward_not_found', user=user, query=query)
        return self._say('reward_added', user=user, song=track.describe())

    async def on_pause_song_reward(self, user: str, reward_id: str, message: str, extra: Dict[str, object]) -> Optional[CommandResponse]:
        try:
            await self.spotify.pause_song()
        except NoActiveDeviceError:
            return self._say('reward_no_device', user=user)
        return None

    async def on_resume_song_reward(self, user: str, reward_id: str, message: str, extra: Dict[str, object]) -> Optional[CommandResponse]:
        try:
            await self.spotify.resume_song()
        except NoActiveDeviceError:
            return self._say('reward_no_device', user=user)
        return None
