import unittest
from unittest.mock import MagicMock

import requests

from ai_style import (
    DEFAULT_PIXAR_PROMPT,
    AIStyleClient,
    AIStyleError,
    AIStyleNotConfigured,
    AIStyleResult,
    decode_data_uri,
    normalize_response,
    to_data_uri,
)
from config import Settings


def fake_response(status=200, payload=None, content=b""):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 400
    resp.content = content
    if payload is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = payload
    if resp.ok:
        resp.raise_for_status.return_value = None
    else:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    return resp


class TestNormalizeResponse(unittest.TestCase):

    def test_image_url(self):
        self.assertEqual(normalize_response({"imageUrl": "https://x/y.png"}),
                         AIStyleResult(image_url="https://x/y.png"))

    def test_bare_base64_gets_data_prefix(self):
        self.assertEqual(normalize_response({"imageBase64": " QUJD "}).image_data_uri,
                         "data:image/png;base64,QUJD")

    def test_data_uri_is_kept(self):
        uri = "data:image/jpeg;base64,QUJD"
        self.assertEqual(normalize_response({"imageBase64": uri}).image_data_uri, uri)

    def test_openai_like_shapes(self):
        self.assertEqual(normalize_response({"data": [{"url": "https://x/1.png"}]}).image_url, "https://x/1.png")
        self.assertEqual(normalize_response({"data": [{"b64_json": "QUJD"}]}).image_data_uri,
                         "data:image/png;base64,QUJD")

    def test_unexpected_shape(self):
        for payload in ({}, {"data": []}, {"imageUrl": 5}, ["not", "a", "dict"]):
            with self.assertRaises(AIStyleError):
                normalize_response(payload)


class TestDataUris(unittest.TestCase):

    def test_round_trip(self):
        uri = to_data_uri(b"\x89PNG raw", "image/png")
        self.assertTrue(uri.startswith("data:image/png;base64,"))
        self.assertEqual(decode_data_uri(uri), b"\x89PNG raw")

    def test_missing_mimetype_defaults_to_png(self):
        self.assertTrue(to_data_uri(b"x", None).startswith("data:image/png;base64,"))

    def test_invalid_base64(self):
        with self.assertRaises(AIStyleError):
            decode_data_uri("data:image/png;base64,@@@")


class TestAIStyleClient(unittest.TestCase):

    def setUp(self):
        self.session = MagicMock()
        self.client = AIStyleClient("https://ai.test/stylize", api_key="secret-key",
                                    timeout=12.5, session=self.session)

    def test_requires_url(self):
        with self.assertRaises(AIStyleNotConfigured):
            AIStyleClient("")

    def test_from_settings(self):
        self.assertIsNone(AIStyleClient.from_settings(Settings()))
        client = AIStyleClient.from_settings(Settings(
            ai_style_api_url="https://ai.test", ai_style_timeout_ms=3000,
            ai_style_prompt_pixar_3d="make it shiny",
        ))
        self.assertEqual(client.timeout, 3.0)
        self.assertEqual(client.prompt, "make it shiny")
        self.assertIsNone(client.api_key)

    def test_stylize_posts_json(self):
        self.session.post.return_value = fake_response(payload={"imageUrl": "https://cdn/out.png"})
        result = self.client.stylize("data:image/png;base64,QUJD", request_id="r1")

        self.assertEqual(result.image_url, "https://cdn/out.png")
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "https://ai.test/stylize")
        self.assertEqual(kwargs["json"], {
            "style": "pixar_3d",
            "prompt": DEFAULT_PIXAR_PROMPT,
            "image": "data:image/png;base64,QUJD",
        })
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer secret-key")
        self.assertEqual(kwargs["timeout"], 12.5)

    def test_no_authorization_without_key(self):
        client = AIStyleClient("https://ai.test", session=self.session)
        self.session.post.return_value = fake_response(payload={"imageUrl": "https://cdn/out.png"})
        client.stylize("data:image/png;base64,QUJD")
        self.assertNotIn("Authorization", self.session.post.call_args.kwargs["headers"])

    def test_error_message_from_body(self):
        self.session.post.return_value = fake_response(400, {"message": "face not found"})
        with self.assertRaisesRegex(AIStyleError, "face not found"):
            self.client.stylize("data:image/png;base64,QUJD")

    def test_error_without_body(self):
        self.session.post.return_value = fake_response(503)
        with self.assertRaisesRegex(AIStyleError, r"HTTP 503"):
            self.client.stylize("data:image/png;base64,QUJD")

    def test_network_error(self):
        self.session.post.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(AIStyleError):
            self.client.stylize("data:image/png;base64,QUJD")

    def test_missing_image(self):
        with self.assertRaises(AIStyleError):
            self.client.stylize("")
        self.session.post.assert_not_called()

    def test_fetch_image_from_data_uri(self):
        data = self.client.fetch_image(AIStyleResult(image_data_uri=to_data_uri(b"png-bytes")))
        self.assertEqual(data, b"png-bytes")
        self.session.get.assert_not_called()

    def test_fetch_image_downloads_url(self):
        self.session.get.return_value = fake_response(content=b"downloaded")
        self.assertEqual(self.client.fetch_image(AIStyleResult(image_url="https://cdn/out.png")), b"downloaded")

    def test_fetch_image_download_failure(self):
        self.session.get.return_value = fake_response(404)
        with self.assertRaises(AIStyleError):
            self.client.fetch_image(AIStyleResult(image_url="https://cdn/gone.png"))

    def test_fetch_image_without_payload(self):
        with self.assertRaises(AIStyleError):
            self.client.fetch_image(AIStyleResult())


if __name__ == "__main__":
    unittest.main()
