from __future__ import annotations
import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = '!'


class ResponseType(enum.Enum):
    SAY = 'say'
    WHISPER = 'whisper'


@dataclass(frozen=True)
class CommandResponse:
    type: ResponseType
    message: Optional[str] = None

    @classmethod
    def say(cls, message: str) -> 'CommandResponse':
        return cls(ResponseType.SAY, message)

    @classmethod
    def whisper(cls, message: str) -> 'CommandResponse':
        return cls(ResponseType.WHISPER, message)


@dataclass(frozen=True)
class Flags:
    broadcaster: bool = False
    mod: bool = False
    subscriber: bool = False
    vip: bool = False
    founder: bool = False

    @property
    def privileged(self) -> bool:
        return self.broadcaster or self.mod


class UnknownResponseType(RuntimeError):
    def __init__(self, response_type: object):
        super().__init__(f'Unknown response type: {response_type}')
        self.response_type = response_type


CommandHandler = Callable[[str, str, str, Flags, Dict[str, object]], Awaitable[Optional[CommandResponse]]]
RewardHandler = Callable[[str, str, str, Dict[str, object]], Awaitable[Optional[CommandResponse]]]


class CommandRegistry:
    """Dispatch table for chat commands and channel-point rewards.

    Keys are opaque strings matched exactly. Registering a key that already
    exists replaces its handler, so two handler sets answering the same alias
    resolve to whichever registered last.
    """

    def __init__(self, prefix: str = DEFAULT_PREFIX):
        self.prefix = prefix
        self._commands: Dict[str, CommandHandler] = {}
        self._rewards: Dict[str, RewardHandler] = {}

    def register_command(self, name: str, handler: CommandHandler) -> None:
        if self.prefix and name.startswith(self.prefix):
            name = name[len(self.prefix):]
        if name in self._commands:
            logger.debug('Replacing handler for command %s', name)
        self._commands[name] = handler

    def register_commands(self, names: Iterable[str], handler: CommandHandler) -> None:
        for name in names:
            self.register_command(name, handler)

    def register_reward(self, reward_id: str, handler: RewardHandler) -> None:
        if reward_id in self._rewards:
            logger.debug('Replacing handler for reward %s', reward_id)
        self._rewards[reward_id] = handler

    def register_rewards(self, reward_ids: Iterable[str], handler: RewardHandler) -> None:
        for reward_id in reward_ids:
            self.register_reward(reward_id, handler)

    def resolve_command(self, name: str) -> Optional[CommandHandler]:
        return self._commands.get(name)

    def resolve_reward(self, reward_id: str) -> Optional[RewardHandler]:
        return self._rewards.get(reward_id)

    def command_names(self) -> List[str]:
        return list(self._commands)

    def reward_ids(self) -> List[str]:
        return list(self._rewards)


def _reward_id(extra: Dict[str, object]) -> Optional[str]:
    reward = extra.get('reward') if isinstance(extra, dict) else None
    if isinstance(reward, dict):
        reward_id = reward.get('id')
        return str(reward_id) if reward_id else None
    return None


class EventDispatcher:
    """Routes platform events to registered handlers and delivers replies.

    ``chat`` is the chat-platform collaborator; it must provide the
    coroutines ``say(message, channel)`` and ``whisper(user, message)``.
    """

    def __init__(self, chat, registry: Optional[CommandRegistry] = None):
        self.chat = chat
        self.registry = registry or CommandRegistry()

    async def on_command_event(
        self,
        user: str,
        command: str,
        message: str,
        flags: Flags,
        extra: Dict[str, object],
    ) -> Optional[CommandResponse]:
        handler = self.registry.resolve_command(command)
        if handler is None:
            logger.info('Unhandled command: %s', command)
            return None
        response = await handler(user, command, message, flags, extra)
        await self._deliver(user, response, extra)
        return response

    async def on_reward_event(
        self,
        user: str,
        reward: object,
        cost: object,
        message: str,
        extra: Dict[str, object],
    ) -> Optional[CommandResponse]:
        reward_id = _reward_id(extra)
        handler = self.registry.resolve_reward(reward_id) if reward_id else None
        if handler is None:
            logger.info('Unhandled reward: %s', reward_id)
            return None
        response = await handler(user, reward_id, message, extra)
        await self._deliver(user, response, extra)
        return response

    async def _deliver(
        self,
        user: str,
        response: Optional[CommandResponse],
        extra: Dict[str, object],
    ) -> None:
        if response is None:
            return
        response_type = getattr(response, 'type', response)
        if response_type is ResponseType.SAY:
            await self.chat.say(response.message, extra.get('channel'))
        elif response_type is ResponseType.WHISPER:
            await self.chat.whisper(user, response.message)
        else:
            raise UnknownResponseType(response_type)
