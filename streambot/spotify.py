from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import aiohttp

from streambot.credentials import SPOTIFY_REFRESH_TOKEN_KEY, CredentialStore

logger = logging.getLogger(__name__)

API_URL = 'https://api.spotify.com/v1'
TOKEN_URL = 'https://accounts.spotify.com/api/token'
# refresh this many seconds before the access token actually expires
REFRESH_MARGIN = 120
# delay before retrying a refresh that failed in transport
REFRESH_RETRY_DELAY = 30


class SpotifyError(RuntimeError):
    def __init__(self, status: int, detail: object):
        message = detail if isinstance(detail, str) else str(detail)
        super().__init__(message)
        self.status = status
        self.detail = message


class NoActiveDeviceError(RuntimeError):
    pass


class CredentialError(RuntimeError):
    pass


@dataclass(frozen=True)
class Track:
    name: str
    uri: str
    album: str
    artists: Tuple[str, ...]

    def describe(self) -> str:
        return f"{self.name} by {', '.join(self.artists)}"

    @classmethod
    def from_api(cls, item: Dict) -> 'Track':
        return cls(
            name=item.get('name', ''),
            uri=item.get('uri', ''),
            album=(item.get('album') or {}).get('name', ''),
            artists=tuple(a.get('name', '') for a in item.get('artists') or []),
        )


class SpotifyClient:
    def __init__(
        self,
        client_id: str,
        store: CredentialStore,
        *,
        market: Optional[str] = None,
        api_url: str = API_URL,
        token_url: str = TOKEN_URL,
        on_credential_error: Optional[Callable[[CredentialError], None]] = None,
    ):
        self.client_id = client_id
        self.store = store
        self.market = market
        self.base = api_url.rstrip('/')
        self.token_url = token_url
        self.on_credential_error = on_credential_error
        self.session: Optional[aiohttp.ClientSession] = None
        self.access_token: Optional[str] = None
        self._refresher_task: Optional[asyncio.Task] = None

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession()

    async def close(self):
        await self._cancel_refresher()
        if self.session:
            await self.session.close()
            self.session = None

    async def setup(self) -> None:
        if self.access_token:
            return
        expires_in = await self.refresh_access_token()
        self._refresher_task = asyncio.create_task(self.token_refresher(expires_in))

    async def refresh_access_token(self) -> int:
        refresh_token = self.store.get(SPOTIFY_REFRESH_TOKEN_KEY)
        if not refresh_token:
            raise CredentialError('Missing Spotify refresh token')
        if not self.session:
            await self.start()
        form = {
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
            'client_id': self.client_id,
        }
        async with self.session.post(self.token_url, data=form) as r:
            status = r.status
            try:
                payload = await r.json(content_type=None)
            except ValueError:
                payload = None
            text = '' if isinstance(payload, dict) else await r.text()
        if status in (400, 401) and isinstance(payload, dict) and payload.get('error'):
            # rejected by the identity provider; re-authorization is required
            self.store.clear(SPOTIFY_REFRESH_TOKEN_KEY)
            self.access_token = None
            raise CredentialError(payload.get('error_description') or payload['error'])
        if status >= 400 or not isinstance(payload, dict) or not payload.get('access_token'):
            raise SpotifyError(status, text or payload or 'Spotify token refresh failed')
        self.access_token = payload['access_token']
        if payload.get('refresh_token'):
            self.store.set(SPOTIFY_REFRESH_TOKEN_KEY, payload['refresh_token'])
        expires_in = int(payload.get('expires_in') or 3600)
        logger.info('Refreshed Spotify access token; expires in %ss', expires_in)
        return expires_in

    async def token_refresher(self, expires_in: int) -> None:
        try:
            while True:
                await asyncio.sleep(max(expires_in - REFRESH_MARGIN, 1))
                try:
                    expires_in = await self.refresh_access_token()
                except CredentialError as exc:
                    logger.error('Spotify credential refresh rejected: %s', exc)
                    if self.on_credential_error:
                        self.on_credential_error(exc)
                    return
                except (SpotifyError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
                    logger.warning('Spotify token refresh failed, retrying in %ss: %s', REFRESH_RETRY_DELAY, exc)
                    expires_in = REFRESH_MARGIN + REFRESH_RETRY_DELAY
        except asyncio.CancelledError:
            raise
        finally:
            self._refresher_task = None

    async def _cancel_refresher(self) -> None:
        task = self._refresher_task
        if not task:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._refresher_task = None

    async def _req(self, method: str, path: str, params: Optional[dict] = None):
        if not self.session:
            await self.start()
        url = f"{self.base}{path}"
        headers = {'Authorization': f'Bearer {self.access_token}'}
        async with self.session.request(method, url, headers=headers, params=params) as r:
            content_type = r.headers.get('content-type', '')
            is_json = content_type.startswith('application/json')
            if r.status >= 400:
                detail: object = ''
                if is_json:
                    try:
                        data = await r.json()
                    except Exception:
                        data = None
                    if isinstance(data, dict) and isinstance(data.get('error'), dict):
                        detail = data['error'].get('message', '')
                    else:
                        detail = data or ''
                if not detail:
                    detail = await r.text()
                raise SpotifyError(r.status, detail or f"{method} {path} failed")
            if r.status == 204:
                return None
            if is_json:
                return await r.json()
            return await r.text()

    async def search(self, query: str, categories: List[str], market: Optional[str], limit: int) -> Dict:
        params = {'q': query, 'type': ','.join(categories), 'limit': str(limit)}
        if market:
            params['market'] = market
        return await self._req('GET', '/search', params) or {}

    async def find_song(self, query: str) -> Optional[Track]:
        results = await self.search(query, ['track'], self.market, 1)
        items = (results.get('tracks') or {}).get('items') or []
        if not items:
            return None
        return Track.from_api(items[0])

    async def get_active_device_id(self) -> str:
        data = await self._req('GET', '/me/player/devices') or {}
        for device in data.get('devices') or []:
            if device.get('is_active'):
                return device['id']
        raise NoActiveDeviceError('No active device found')

    async def add_to_queue(self, query: str) -> Optional[Track]:
        track = await self.find_song(query)
        if not track:
            return None
        device_id = await self.get_active_device_id()
        await self._req('POST', '/me/player/queue', {'uri': track.uri, 'device_id': device_id})
        return track

    async def get_queue(self) -> List[Track]:
        data = await self._req('GET', '/me/player/queue') or {}
        return [Track.from_api(item) for item in data.get('queue') or [] if item]

    async def get_next_song(self) -> Optional[Track]:
        queue = await self.get_queue()
        return queue[0] if queue else None

    async def get_current_song(self) -> Optional[Track]:
        state = await self._req('GET', '/me/player/currently-playing')
        if not isinstance(state, dict):
            return None
        if state.get('currently_playing_type') != 'track' or not state.get('item') or not state.get('is_playing'):
            return None
        return Track.from_api(state['item'])

    async def skip_song(self) -> None:
        await self._req('POST', '/me/player/next', {'device_id': await self.get_active_device_id()})

    async def pause_song(self) -> None:
        await self._req('PUT', '/me/player/pause', {'device_id': await self.get_active_device_id()})

    async def resume_song(self) -> None:
        await self._req('PUT', '/me/player/play', {'device_id': await self.get_active_device_id()})
