from __future__ import annotations
import os, asyncio, logging, yaml
from typing import Optional, Dict, List, Callable, Awaitable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

import uvicorn
from twitchio import eventsub
from twitchio.ext import commands
from twitchio.payloads import TokenRefreshedPayload

import overlay_app
from streambot.credentials import SPOTIFY_REFRESH_TOKEN_KEY, DEFAULT_DB_URL, CredentialStore
from streambot.events import CommandRegistry, EventDispatcher, Flags, UnknownResponseType
from streambot.spotify import CredentialError, SpotifyClient
from streambot.spotify_commands import DEFAULT_COMMANDS, DEFAULT_MESSAGES, DEFAULT_REWARDS, SpotifyCommands
from streambot.tts import (
    DEFAULT_RANDOM_TTS_ID,
    DEFAULT_SKIP_TTS_ID,
    DEFAULT_SPEAKERS,
    AudioSequencer,
    AudioStore,
    SpeechClient,
    TTSHandler,
)

logger = logging.getLogger(__name__)

# ---- Env ----
COMMANDS_FILE = os.getenv('COMMANDS_FILE', 'commands.yml')
MESSAGES_PATH = Path(os.getenv('BOT_MESSAGES_PATH', 'messages.yml'))
REWARDS_FILE = os.getenv('REWARDS_FILE', 'rewards.yml')

DEFAULT_REWARD_CONFIG: Dict[str, object] = {
    'spotify': dict(DEFAULT_REWARDS),
    'tts': {
        'speakers': dict(DEFAULT_SPEAKERS),
        'skip': DEFAULT_SKIP_TTS_ID,
        'random': DEFAULT_RANDOM_TTS_ID,
    },
}

# Fatal errors stop every further automated action until restart.
FATAL_ERRORS = (UnknownResponseType, CredentialError)


class ConfigError(RuntimeError):
    pass


@dataclass
class BotSettings:
    client_id: Optional[str]
    client_secret: Optional[str]
    token: Optional[str]
    refresh_token: Optional[str]
    bot_user_id: Optional[str]
    channel: Optional[str]
    channel_id: Optional[str]
    spotify_client_id: Optional[str]
    spotify_refresh_token: Optional[str]
    spotify_market: Optional[str] = None
    db_url: str = DEFAULT_DB_URL
    overlay_host: str = '127.0.0.1'
    overlay_port: int = 8080
    log_level: str = 'INFO'
    missing: List[str] = field(default_factory=list)


def _format_token(token: str) -> str:
    return token.removeprefix('oauth:') if token else token


def load_settings(env: Optional[Mapping[str, str]] = None) -> BotSettings:
    env = os.environ if env is None else env
    token = env.get('TWITCH_TOKEN')
    settings = BotSettings(
        client_id=env.get('TWITCH_CLIENT_ID'),
        client_secret=env.get('TWITCH_CLIENT_SECRET'),
        token=_format_token(token) if token else None,
        refresh_token=env.get('TWITCH_REFRESH_TOKEN'),
        bot_user_id=env.get('BOT_USER_ID') or env.get('TWITCH_BOT_USER_ID'),
        channel=(env.get('TWITCH_CHANNEL') or '').lower() or None,
        channel_id=env.get('TWITCH_CHANNEL_ID') or env.get('BOT_USER_ID') or env.get('TWITCH_BOT_USER_ID'),
        spotify_client_id=env.get('SPOTIFY_CLIENT_ID'),
        spotify_refresh_token=env.get('SPOTIFY_REFRESH_TOKEN'),
        spotify_market=env.get('SPOTIFY_MARKET') or None,
        db_url=env.get('DB_URL') or DEFAULT_DB_URL,
        overlay_host=env.get('OVERLAY_HOST') or '127.0.0.1',
        overlay_port=int(env.get('OVERLAY_PORT') or 8080),
        log_level=(env.get('LOG_LEVEL') or 'INFO').upper(),
    )
    required = {
        'TWITCH_CLIENT_ID': settings.client_id,
        'TWITCH_CLIENT_SECRET': settings.client_secret,
        'TWITCH_TOKEN': settings.token,
        'TWITCH_REFRESH_TOKEN': settings.refresh_token,
        'BOT_USER_ID': settings.bot_user_id,
        'TWITCH_CHANNEL': settings.channel,
        'SPOTIFY_CLIENT_ID': settings.spotify_client_id,
    }
    settings.missing = [name for name, value in required.items() if not value]
    return settings


def _load_yaml(path) -> Dict:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f'{path} must contain a mapping')
    return data


def load_commands(path: str) -> Dict[str, List[str]]:
    cfg: Dict[str, object] = {'prefix': '!', **DEFAULT_COMMANDS}
    cfg.update(_load_yaml(path))
    commands_map = {k: v if isinstance(v, list) else [v] for k, v in cfg.items()}
    prefix = commands_map['prefix']
    if not prefix or not isinstance(prefix[0], str) or not prefix[0]:
        raise ConfigError(f'{path}: prefix must be a non-empty string')
    return commands_map


def load_messages(path: Path) -> Dict[str, str]:
    cfg: Dict[str, str] = DEFAULT_MESSAGES.copy()
    cfg.update(_load_yaml(path))
    return cfg


def load_rewards(path: str) -> Dict[str, Dict]:
    data = _load_yaml(path)
    spotify = {**DEFAULT_REWARD_CONFIG['spotify'], **(data.get('spotify') or {})}
    tts = {**DEFAULT_REWARD_CONFIG['tts'], **(data.get('tts') or {})}
    return {'spotify': spotify, 'tts': tts}


def resolve_spotify_refresh_token(store: CredentialStore, supplied: Optional[str]) -> str:
    stored = store.get(SPOTIFY_REFRESH_TOKEN_KEY)
    if stored:
        return stored
    if not supplied:
        raise ConfigError('Missing SPOTIFY_REFRESH_TOKEN! It needs to be provided once; run spotify_auth.py to get one')
    store.set(SPOTIFY_REFRESH_TOKEN_KEY, supplied)
    return supplied


# ---- bot ----
def flags_from_chatter(chatter) -> Flags:
    return Flags(
        broadcaster=bool(getattr(chatter, 'broadcaster', False)),
        mod=bool(getattr(chatter, 'moderator', False)),
        subscriber=bool(getattr(chatter, 'subscriber', False)),
        vip=bool(getattr(chatter, 'vip', False)),
        founder=bool(getattr(chatter, 'founder', False)),
    )


class StreamBot(commands.Bot):
    """Chat-platform side of the bot.

    Turns EventSub chat messages and reward redemptions into command/reward
    events for the dispatcher and implements ``say``/``whisper`` on top of
    the twitchio client.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        bot_id: str,
        token: str,
        refresh_token: str,
        broadcaster_id: str,
        channel: str,
        prefix: str = '!',
        overlay: Optional[overlay_app.OverlayBroker] = None,
        registry: Optional[CommandRegistry] = None,
    ):
        if not token or not refresh_token or not bot_id or not broadcaster_id:
            raise RuntimeError('token, refresh_token, bot_id, and broadcaster_id are required')
        super().__init__(
            client_id=client_id,
            client_secret=client_secret,
            bot_id=str(bot_id),
            prefix=prefix,
            fetch_client_user=False,
        )
        self.broadcaster_id = str(broadcaster_id)
        self.channel = channel
        self.bot_user_id = str(bot_id)
        self.overlay = overlay
        self.event_dispatcher = EventDispatcher(self, registry or CommandRegistry(prefix))
        self.halted = False
        self.on_halt: Optional[Callable[[], None]] = None
        self.ready_event = asyncio.Event()
        self._user_token = token
        self._refresh_token = refresh_token
        self._scopes: List[str] = []
        self._user_ids: Dict[str, str] = {}
        self._event_lock = asyncio.Lock()

    @property
    def registry(self) -> CommandRegistry:
        return self.event_dispatcher.registry

    async def load_tokens(self, path: Optional[str] = None) -> None:
        payload = await super().add_token(self._user_token, self._refresh_token)
        self._scopes = list(payload.scopes)
        logger.info('Loaded Twitch token with scopes %s (expires in %ss)', ' '.join(self._scopes), payload.expires_in)

    async def save_tokens(self, path: Optional[str] = None) -> None:
        # Rotated Twitch tokens live in memory only.
        return None

    async def event_token_refreshed(self, payload: TokenRefreshedPayload) -> None:
        self._user_token = payload.token
        self._refresh_token = payload.refresh_token
        self._scopes = list(payload.scopes)
        logger.info('Twitch token refreshed (expires in %ss)', payload.expires_in)

    async def event_ready(self) -> None:
        subscriptions = (
            (
                eventsub.ChatMessageSubscription(broadcaster_user_id=self.broadcaster_id, user_id=self.bot_user_id),
                {'as_bot': True},
            ),
            (
                eventsub.ChannelPointsRedeemAddSubscription(broadcaster_user_id=self.broadcaster_id),
                {'token_for': self.broadcaster_id},
            ),
        )
        for payload, options in subscriptions:
            try:
                await self.subscribe_websocket(payload=payload, **options)
            except Exception as exc:
                logger.error('Failed to subscribe %s for %s: %s', type(payload).__name__, self.channel, exc)
                if self.overlay:
                    self.overlay.show_error(f'Failed to subscribe to Twitch events: {exc}')
        logger.info('Connected to %s as %s', self.channel, self.bot_user_id)
        self.ready_event.set()

    async def say(self, message: str, channel: Optional[str] = None) -> None:
        if channel and channel.lower() != self.channel:
            logger.warning('Reply for %s sent to %s instead', channel, self.channel)
        partial = self.create_partialuser(self.broadcaster_id, self.channel)
        await partial.send_message(message, sender=self.bot_user_id, token_for=self.bot_user_id)
        logger.info('Sent message to %s: %s', self.channel, message)

    async def whisper(self, user: str, message: str) -> None:
        login = user.lower()
        user_id = self._user_ids.get(login)
        if not user_id:
            users = await self.fetch_users(logins=[login])
            if not users:
                raise LookupError(f'Unknown user {user}')
            user_id = str(users[0].id)
            self._remember(login, user_id)
        await self.create_partialuser(self.bot_user_id).send_whisper(to_user=user_id, message=message)
        logger.info('Whispered %s: %s', user, message)

    def _remember(self, login: Optional[str], user_id: Optional[str]) -> None:
        if login and user_id:
            self._user_ids[login.lower()] = str(user_id)

    async def event_message(self, message) -> None:
        chatter = message.chatter
        if str(getattr(chatter, 'id', '')) == self.bot_user_id:
            return
        content = (message.text or '').strip()
        prefix = self.registry.prefix
        if not prefix or not content.startswith(prefix):
            return
        cmd, *rest = content[len(prefix):].split(' ', 1)
        if not cmd:
            return
        args = rest[0].strip() if rest else ''
        self._remember(chatter.name, chatter.id)
        user = getattr(chatter, 'display_name', None) or chatter.name
        extra = {
            'channel': message.broadcaster.name or self.channel,
            'channel_id': str(message.broadcaster.id or self.broadcaster_id),
            'user_id': str(chatter.id),
            'message_id': message.id,
        }
        flags = flags_from_chatter(chatter)
        await self._run(lambda: self.event_dispatcher.on_command_event(user, cmd.lower(), args, flags, extra))

    async def event_custom_redemption_add(self, payload) -> None:
        reward = payload.reward
        self._remember(payload.user.name, payload.user.id)
        user = getattr(payload.user, 'display_name', None) or payload.user.name
        extra = {
            'channel': payload.broadcaster.name or self.channel,
            'channel_id': str(payload.broadcaster.id or self.broadcaster_id),
            'user_id': str(payload.user.id),
            'redemption_id': payload.id,
            'reward': {
                'id': reward.id,
                'title': reward.title,
                'cost': reward.cost,
            },
        }
        message = payload.user_input or ''
        await self._run(lambda: self.event_dispatcher.on_reward_event(user, reward.title, reward.cost, message, extra))

    async def _run(self, call: Callable[[], Awaitable[object]]) -> None:
        async with self._event_lock:
            if self.halted:
                logger.debug('Ignoring event; bot is halted')
                return
            try:
                await call()
            except FATAL_ERRORS as exc:
                self.halt(exc)
            except Exception as exc:
                logger.exception('Event handler failed: %s', exc)
                if self.overlay:
                    self.overlay.show_error(str(exc))

    def halt(self, exc: BaseException) -> None:
        if self.halted:
            return
        self.halted = True
        logger.error('Halting automated actions: %s', exc)
        if self.overlay:
            self.overlay.show_error(str(exc))
        if self.on_halt:
            self.on_halt()

    async def shutdown(self) -> None:
        await super().close()


def register_handlers(
    registry: CommandRegistry,
    tts_handler: TTSHandler,
    spotify_commands: SpotifyCommands,
) -> None:
    registry.register_rewards(tts_handler.get_speaker_ids(), tts_handler.handle_reward)
    if tts_handler.skip_tts_id:
        registry.register_reward(tts_handler.skip_tts_id, tts_handler.handle_skip_tts)
    if tts_handler.random_tts_id:
        registry.register_reward(tts_handler.random_tts_id, tts_handler.handle_random_tts)

    registry.register_commands(spotify_commands.get_command_names(), spotify_commands.on_command)
    registry.register_rewards(spotify_commands.get_reward_ids(), spotify_commands.on_reward)


@dataclass
class App:
    bot: StreamBot
    spotify: SpotifyClient
    speech: SpeechClient
    store: CredentialStore
    overlay: overlay_app.OverlayBroker
    sequencer: AudioSequencer
    audio_store: AudioStore


def build_app(
    settings: BotSettings,
    *,
    commands_map: Optional[Dict[str, List[str]]] = None,
    messages: Optional[Dict[str, str]] = None,
    rewards: Optional[Dict[str, Dict]] = None,
) -> App:
    if settings.missing:
        raise ConfigError(f"Missing settings: {', '.join(settings.missing)}")
    commands_map = commands_map or load_commands(COMMANDS_FILE)
    messages = messages or load_messages(MESSAGES_PATH)
    rewards = rewards or load_rewards(REWARDS_FILE)
    prefix = commands_map['prefix'][0]

    store = CredentialStore(settings.db_url)
    resolve_spotify_refresh_token(store, settings.spotify_refresh_token)

    overlay = overlay_app.OverlayBroker()
    audio_store = AudioStore()
    sequencer = AudioSequencer(overlay, on_discard=audio_store.discard)
    speech = SpeechClient(audio_store)
    bot = StreamBot(
        client_id=settings.client_id,
        client_secret=settings.client_secret,
        bot_id=settings.bot_user_id,
        token=settings.token,
        refresh_token=settings.refresh_token,
        broadcaster_id=settings.channel_id,
        channel=settings.channel,
        prefix=prefix,
        overlay=overlay,
    )
    spotify = SpotifyClient(
        settings.spotify_client_id,
        store,
        market=settings.spotify_market,
        on_credential_error=bot.halt,
    )

    tts_rewards = rewards['tts']
    tts_handler = TTSHandler(
        speech,
        sequencer,
        speakers=tts_rewards.get('speakers') or {},
        skip_tts_id=tts_rewards.get('skip'),
        random_tts_id=tts_rewards.get('random'),
    )
    spotify_commands = SpotifyCommands(
        spotify,
        commands={k: v for k, v in commands_map.items() if k != 'prefix'},
        rewards=rewards['spotify'],
        messages=messages,
        prefix=prefix,
        on_now_playing=overlay.now_playing,
    )
    register_handlers(bot.registry, tts_handler, spotify_commands)
    logger.info(
        'Registered commands %s and %d rewards',
        ', '.join(bot.registry.command_names()),
        len(bot.registry.reward_ids()),
    )
    return App(
        bot=bot,
        spotify=spotify,
        speech=speech,
        store=store,
        overlay=overlay,
        sequencer=sequencer,
        audio_store=audio_store,
    )


async def run(app: App, settings: BotSettings) -> None:
    web = overlay_app.create_app(app.overlay, app.sequencer, app.audio_store)
    server = uvicorn.Server(uvicorn.Config(web, host=settings.overlay_host, port=settings.overlay_port, log_level='warning'))
    server_task = asyncio.create_task(server.serve())
    logger.info('Overlay listening on http://%s:%s/', settings.overlay_host, settings.overlay_port)
    bot_task: Optional[asyncio.Task] = None
    halted = asyncio.Event()
    app.bot.on_halt = halted.set
    try:
        try:
            await app.spotify.setup()
        except CredentialError as exc:
            app.bot.halt(exc)
        if not app.bot.halted:
            bot_task = asyncio.create_task(app.bot.start())
            halt_task = asyncio.create_task(halted.wait())
            done, _ = await asyncio.wait({bot_task, halt_task}, return_when=asyncio.FIRST_COMPLETED)
            if bot_task in done and not bot_task.cancelled() and bot_task.exception():
                app.bot.halt(bot_task.exception())
            halt_task.cancel()
            await app.bot.shutdown()
            bot_task = None
        # keep serving the overlay so the error stays visible
        await server_task
    finally:
        if bot_task:
            bot_task.cancel()
            await app.bot.shutdown()
        server.should_exit = True
        await app.spotify.close()
        await app.speech.close()
        app.store.dispose()


# ---- entry ----
async def main():
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    try:
        app = build_app(settings)
    except ConfigError as exc:
        logger.critical('%s', exc)
        raise SystemExit(1)
    await run(app, settings)


def cli():
    asyncio.run(main())

if __name__ == '__main__':
    cli()
