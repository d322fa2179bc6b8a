import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import streambot.spotify as spotify
from streambot.credentials import SPOTIFY_REFRESH_TOKEN_KEY, CredentialStore
from streambot.spotify import (
    CredentialError,
    NoActiveDeviceError,
    SpotifyClient,
    SpotifyError,
    Track,
)


class FakeResponse:
    def __init__(self, status: int = 200, payload=None, headers=None, text: str = ''):
        self.status = status
        self.payload = payload
        self.headers = headers or {'content-type': 'application/json'}
        self._text = text

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def json(self, content_type='application/json'):
        if self.payload is None and self._text:
            raise ValueError('Expecting value: line 1 column 1 (char 0)')
        return self.payload

    async def text(self):
        return self._text


TRACK_ITEM = {
    'name': 'Snowman',
    'uri': 'spotify:track:1',
    'album': {'name': 'Everyday Is Christmas'},
    'artists': [{'name': 'Sia'}],
}


class SpotifyClientTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.store = CredentialStore(f"sqlite:///{Path(self.tmp.name) / 'creds.sqlite'}")
        self.client = SpotifyClient('client-id', self.store)
        self.client.access_token = 'access'

    async def asyncTearDown(self) -> None:
        await self.client.close()
        self.store.dispose()
        self.tmp.cleanup()

    async def test_find_song_searches_single_track(self) -> None:
        self.client._req = AsyncMock(return_value={'tracks': {'items': [TRACK_ITEM]}})

        track = await self.client.find_song('snowman')

        self.client._req.assert_awaited_once_with(
            'GET', '/search', {'q': 'snowman', 'type': 'track', 'limit': '1'}
        )
        self.assertEqual(track, Track('Snowman', 'spotify:track:1', 'Everyday Is Christmas', ('Sia',)))

    async def test_find_song_passes_market(self) -> None:
        client = SpotifyClient('client-id', self.store, market='US')
        client._req = AsyncMock(return_value={'tracks': {'items': []}})

        self.assertIsNone(await client.find_song('asdkfjhasdkjfh'))
        params = client._req.call_args.args[2]
        self.assertEqual(params['market'], 'US')

    async def test_add_to_queue_targets_active_device(self) -> None:
        responses = {
            '/search': {'tracks': {'items': [TRACK_ITEM]}},
            '/me/player/devices': {'devices': [{'id': 'idle', 'is_active': False}, {'id': 'dev', 'is_active': True}]},
            '/me/player/queue': None,
        }
        self.client._req = AsyncMock(side_effect=lambda method, path, params=None: responses[path])

        track = await self.client.add_to_queue('snowman')

        self.assertEqual(track.name, 'Snowman')
        self.client._req.assert_any_await('POST', '/me/player/queue', {'uri': 'spotify:track:1', 'device_id': 'dev'})

    async def test_add_to_queue_without_active_device(self) -> None:
        responses = {
            '/search': {'tracks': {'items': [TRACK_ITEM]}},
            '/me/player/devices': {'devices': [{'id': 'idle', 'is_active': False}]},
        }
        self.client._req = AsyncMock(side_effect=lambda method, path, params=None: responses[path])

        with self.assertRaises(NoActiveDeviceError):
            await self.client.add_to_queue('snowman')
        paths = [c.args[1] for c in self.client._req.await_args_list]
        self.assertNotIn('/me/player/queue', paths)

    async def test_add_to_queue_not_found_skips_device_lookup(self) -> None:
        self.client._req = AsyncMock(return_value={'tracks': {'items': []}})

        self.assertIsNone(await self.client.add_to_queue('asdkfjhasdkjfh'))
        self.client._req.assert_awaited_once()

    async def test_current_song_requires_playing_track(self) -> None:
        cases = [
            None,
            {'currently_playing_type': 'episode', 'item': TRACK_ITEM, 'is_playing': True},
            {'currently_playing_type': 'track', 'item': None, 'is_playing': True},
            {'currently_playing_type': 'track', 'item': TRACK_ITEM, 'is_playing': False},
        ]
        for state in cases:
            self.client._req = AsyncMock(return_value=state)
            self.assertIsNone(await self.client.get_current_song(), state)

        self.client._req = AsyncMock(
            return_value={'currently_playing_type': 'track', 'item': TRACK_ITEM, 'is_playing': True}
        )
        self.assertEqual((await self.client.get_current_song()).describe(), 'Snowman by Sia')

    async def test_next_song_is_head_of_queue(self) -> None:
        self.client._req = AsyncMock(return_value={'queue': [TRACK_ITEM, {**TRACK_ITEM, 'name': 'Other'}]})
        self.assertEqual((await self.client.get_next_song()).name, 'Snowman')

        self.client._req = AsyncMock(return_value={'queue': []})
        self.assertIsNone(await self.client.get_next_song())

    async def test_transport_controls_use_active_device(self) -> None:
        for method_name, verb, path in (
            ('skip_song', 'POST', '/me/player/next'),
            ('pause_song', 'PUT', '/me/player/pause'),
            ('resume_song', 'PUT', '/me/player/play'),
        ):
            self.client._req = AsyncMock(
                side_effect=lambda method, p, params=None: {'devices': [{'id': 'dev', 'is_active': True}]}
                if p == '/me/player/devices' else None
            )
            await getattr(self.client, method_name)()
            self.client._req.assert_awaited_with(verb, path, {'device_id': 'dev'})

    async def test_req_raises_api_error_message(self) -> None:
        self.client.session = MagicMock()
        self.client.session.close = AsyncMock()
        self.client.session.request = MagicMock(
            return_value=FakeResponse(404, {'error': {'status': 404, 'message': 'Player command failed'}})
        )

        with self.assertRaises(SpotifyError) as ctx:
            await self.client._req('POST', '/me/player/next')

        self.assertEqual(ctx.exception.status, 404)
        self.assertEqual(ctx.exception.detail, 'Player command failed')
        headers = self.client.session.request.call_args.kwargs['headers']
        self.assertEqual(headers['Authorization'], 'Bearer access')

    async def test_req_no_content_returns_none(self) -> None:
        self.client.session = MagicMock()
        self.client.session.close = AsyncMock()
        self.client.session.request = MagicMock(return_value=FakeResponse(204, headers={}))

        self.assertIsNone(await self.client._req('PUT', '/me/player/pause'))


class SpotifyRefreshTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.store = CredentialStore(f"sqlite:///{Path(self.tmp.name) / 'creds.sqlite'}")
        self.store.set(SPOTIFY_REFRESH_TOKEN_KEY, 'old-refresh')
        self.client = SpotifyClient('client-id', self.store)
        self.client.session = MagicMock()
        self.client.session.close = AsyncMock()

    async def asyncTearDown(self) -> None:
        await self.client.close()
        self.store.dispose()
        self.tmp.cleanup()

    async def test_refresh_rotates_stored_token(self) -> None:
        self.client.session.post = MagicMock(return_value=FakeResponse(200, {
            'access_token': 'new-access',
            'refresh_token': 'new-refresh',
            'expires_in': 3600,
        }))

        expires_in = await self.client.refresh_access_token()

        self.assertEqual(expires_in, 3600)
        self.assertEqual(self.client.access_token, 'new-access')
        self.assertEqual(self.store.get(SPOTIFY_REFRESH_TOKEN_KEY), 'new-refresh')
        form = self.client.session.post.call_args.kwargs['data']
        self.assertEqual(form, {
            'grant_type': 'refresh_token',
            'refresh_token': 'old-refresh',
            'client_id': 'client-id',
        })

    async def test_refresh_keeps_token_when_not_rotated(self) -> None:
        self.client.session.post = MagicMock(return_value=FakeResponse(200, {'access_token': 'new-access'}))

        await self.client.refresh_access_token()

        self.assertEqual(self.store.get(SPOTIFY_REFRESH_TOKEN_KEY), 'old-refresh')

    async def test_refresh_error_clears_stored_token(self) -> None:
        self.client.session.post = MagicMock(return_value=FakeResponse(400, {
            'error': 'invalid_grant',
            'error_description': 'Refresh token revoked',
        }))

        with self.assertRaises(CredentialError) as ctx:
            await self.client.refresh_access_token()

        self.assertIn('Refresh token revoked', str(ctx.exception))
        self.assertIsNone(self.store.get(SPOTIFY_REFRESH_TOKEN_KEY))
        self.assertIsNone(self.client.access_token)

    async def test_refresh_without_stored_token(self) -> None:
        self.store.clear(SPOTIFY_REFRESH_TOKEN_KEY)
        self.client.session.post = MagicMock()

        with self.assertRaises(CredentialError):
            await self.client.refresh_access_token()
        self.client.session.post.assert_not_called()

    async def test_refresh_server_error_keeps_stored_token(self) -> None:
        self.client.session.post = MagicMock(return_value=FakeResponse(
            503, None, headers={'content-type': 'text/html'}, text='<html>Service Unavailable</html>',
        ))

        with self.assertRaises(SpotifyError) as ctx:
            await self.client.refresh_access_token()

        self.assertEqual(ctx.exception.status, 503)
        self.assertEqual(self.store.get(SPOTIFY_REFRESH_TOKEN_KEY), 'old-refresh')

    async def test_refresh_without_access_token_keeps_stored_token(self) -> None:
        self.client.session.post = MagicMock(return_value=FakeResponse(200, {'token_type': 'Bearer'}))

        with self.assertRaises(SpotifyError):
            await self.client.refresh_access_token()

        self.assertEqual(self.store.get(SPOTIFY_REFRESH_TOKEN_KEY), 'old-refresh')

    async def test_refresher_retries_after_transport_error(self) -> None:
        reported = []
        self.client.on_credential_error = reported.append
        self.client.refresh_access_token = AsyncMock(side_effect=[
            aiohttp.ClientConnectionError('dns'),
            SpotifyError(502, 'Bad Gateway'),
            3600,
            CredentialError('revoked'),
        ])

        with patch.object(spotify.asyncio, 'sleep', AsyncMock()) as sleep:
            await self.client.token_refresher(3600)

        self.assertEqual(self.client.refresh_access_token.await_count, 4)
        self.assertEqual(
            [c.args[0] for c in sleep.await_args_list],
            [3600 - spotify.REFRESH_MARGIN, spotify.REFRESH_RETRY_DELAY, spotify.REFRESH_RETRY_DELAY, 3600 - spotify.REFRESH_MARGIN],
        )
        self.assertEqual(len(reported), 1)

    async def test_refresher_reports_rejected_credentials(self) -> None:
        reported = []
        self.client.on_credential_error = reported.append
        self.client.refresh_access_token = AsyncMock(side_effect=CredentialError('revoked'))

        with patch.object(spotify.asyncio, 'sleep', AsyncMock()):
            await self.client.token_refresher(0)

        self.assertEqual(len(reported), 1)
        self.assertIsInstance(reported[0], CredentialError)


if __name__ == "__main__":
    unittest.main()
