import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import spotify_auth


class PkceTests(unittest.TestCase):
    def test_code_challenge_matches_rfc7636_vector(self) -> None:
        verifier = "dBjftJeZ4CVP-mJ92K1qzjVRNvDAeQeafOhsKCgwuOA"

        self.assertEqual(
            spotify_auth.code_challenge(verifier),
            "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM",
        )

    def test_random_verifier_uses_safe_alphabet(self) -> None:
        verifier = spotify_auth.random_code_verifier()

        self.assertEqual(len(verifier), 64)
        self.assertTrue(set(verifier) <= set(spotify_auth.VERIFIER_ALPHABET))
        self.assertNotEqual(verifier, spotify_auth.random_code_verifier())

    def test_auth_url_parameters(self) -> None:
        url = spotify_auth.generate_auth_url(
            "client", "user-read-playback-state user-modify-playback-state", spotify_auth.REDIRECT_URI, "verifier"
        )
        parsed = urlparse(url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}

        self.assertEqual(f"{parsed.scheme}://{parsed.netloc}{parsed.path}", spotify_auth.AUTHORIZE_URL)
        self.assertEqual(params["client_id"], "client")
        self.assertEqual(params["response_type"], "code")
        self.assertEqual(params["redirect_uri"], "http://localhost:3000/callback")
        self.assertEqual(params["code_challenge_method"], "S256")
        self.assertEqual(params["code_challenge"], spotify_auth.code_challenge("verifier"))
        self.assertEqual(params["scope"], "user-read-playback-state user-modify-playback-state")

    def test_exchange_posts_verifier(self) -> None:
        response = MagicMock()
        response.json.return_value = {"access_token": "a", "refresh_token": "r"}
        with patch.object(spotify_auth.requests, "post", return_value=response) as post:
            tokens = spotify_auth.exchange_code_for_token("the-code", "client", spotify_auth.REDIRECT_URI, "verifier")

        self.assertEqual(tokens["refresh_token"], "r")
        response.raise_for_status.assert_called_once()
        data = post.call_args.kwargs["data"]
        self.assertEqual(data["grant_type"], "authorization_code")
        self.assertEqual(data["code"], "the-code")
        self.assertEqual(data["code_verifier"], "verifier")


class CallbackTests(unittest.TestCase):
    def setUp(self) -> None:
        self.result = spotify_auth.CallbackResult()
        self.client = TestClient(spotify_auth.create_callback_app(self.result))

    def test_code_completes_flow(self) -> None:
        res = self.client.get("/callback", params={"code": "abc"})

        self.assertEqual(res.status_code, 200)
        self.assertIn("Code Received. You can close this tab now.", res.text)
        self.assertTrue(self.result.done.is_set())
        self.assertEqual(self.result.code, "abc")

    def test_error_completes_flow_with_failure(self) -> None:
        res = self.client.get("/callback", params={"error": "access_denied"})

        self.assertEqual(res.status_code, 400)
        self.assertTrue(self.result.done.is_set())
        self.assertEqual(self.result.error, "access_denied")
        self.assertIsNone(self.result.code)

    def test_missing_code_keeps_waiting(self) -> None:
        res = self.client.get("/callback")

        self.assertEqual(res.status_code, 400)
        self.assertFalse(self.result.done.is_set())


if __name__ == "__main__":
    unittest.main()
