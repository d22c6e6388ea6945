"""
Remote AI stylization ("pixar_3d") over a plain HTTP JSON API.

Request:  POST <AI_STYLE_API_URL> {"style", "prompt", "image": <data URI>}
Response: {"imageUrl"} | {"imageBase64"} | {"data": [{"url"} | {"b64_json"}]}

The client is constructed once by the app factory and passed in; there is
no module-level client.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Optional

import requests

log = logging.getLogger(__name__)

DEFAULT_STYLE = 'pixar_3d'

DEFAULT_PIXAR_PROMPT = (
    "A high-quality 3D digital animation style portrait, reminiscent of modern feature film character designs. "
    "Preserve the person's identity and facial structure. "
    "Large expressive eyes, soft cinematic lighting, stylized semi-realistic textures, "
    "rosy cheeks, subtle freckles, highly detailed voluminous hair, clean vibrant colors, "
    "hand-painted 3D render feel, plain white background. "
    "No text, no watermark, no artifacts."
)

DOWNLOAD_TIMEOUT = 30


class AIStyleError(Exception):
    """The AI style provider failed or answered with something unusable."""


class AIStyleNotConfigured(AIStyleError):
    pass


@dataclass(frozen=True)
class AIStyleResult:
    image_url: Optional[str] = None
    image_data_uri: Optional[str] = None


def to_data_uri(data: bytes, mimetype: Optional[str] = 'image/png') -> str:
    return f"data:{mimetype or 'image/png'};base64,{base64.b64encode(data).decode('ascii')}"


def decode_data_uri(uri: str) -> bytes:
    """Bytes from a `data:...;base64,` URI (or a bare base64 string)."""
    payload = uri.split('base64,', 1)[1] if 'base64,' in uri else uri
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AIStyleError(f'Invalid base64 image data: {e}') from e


def normalize_response(payload) -> AIStyleResult:
    """Map the provider's JSON onto an `AIStyleResult`."""
    if not isinstance(payload, dict):
        payload = {}

    image_url = payload.get('imageUrl')
    if isinstance(image_url, str) and image_url:
        return AIStyleResult(image_url=image_url)

    image_b64 = payload.get('imageBase64')
    if isinstance(image_b64, str) and image_b64.strip():
        value = image_b64.strip()
        if value.startswith('data:'):
            return AIStyleResult(image_data_uri=value)
        return AIStyleResult(image_data_uri=f'data:image/png;base64,{value}')

    # OpenAI-like shape
    data = payload.get('data')
    first = data[0] if isinstance(data, list) and data and isinstance(data[0], dict) else {}
    if isinstance(first.get('url'), str) and first['url']:
        return AIStyleResult(image_url=first['url'])
    if isinstance(first.get('b64_json'), str) and first['b64_json']:
        return AIStyleResult(image_data_uri=f"data:image/png;base64,{first['b64_json']}")

    raise AIStyleError(
        'AI style API returned an unexpected response. Expected {imageUrl} or {imageBase64} '
        '(or OpenAI-like {data:[{url|b64_json}]})'
    )


class AIStyleClient:
    """HTTP client for the configured AI style endpoint."""

    def __init__(self, api_url: str, api_key: Optional[str] = None, timeout: float = 120.0,
                 prompt: Optional[str] = None, session: Optional[requests.Session] = None):
        if not api_url:
            raise AIStyleNotConfigured(
                'AI Pixar-style is not configured. Set AI_STYLE_API_URL (and optionally AI_STYLE_API_KEY) on the server.'
            )
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout
        self.prompt = prompt or DEFAULT_PIXAR_PROMPT
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings, session: Optional[requests.Session] = None) -> Optional['AIStyleClient']:
        """Client for `settings`, or None when no API URL is configured."""
        if not settings.ai_style_api_url:
            return None
        return cls(
            settings.ai_style_api_url,
            api_key=settings.ai_style_api_key,
            timeout=settings.ai_style_timeout_ms / 1000.0,
            prompt=settings.ai_style_prompt_pixar_3d,
            session=session,
        )

    def _headers(self) -> dict:
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'
        return headers

    def stylize(self, image_data_uri: str, style: str = DEFAULT_STYLE,
                request_id: Optional[str] = None) -> AIStyleResult:
        """Send one image to the provider and return the normalized result."""
        if not image_data_uri:
            raise AIStyleError('Missing input image for AI stylization.')

        log.info('ai_style.request request_id=%s style=%s', request_id, style)
        try:
            resp = self.session.post(
                self.api_url,
                json={'style': style, 'prompt': self.prompt, 'image': image_data_uri},
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise AIStyleError(f'AI style request failed: {e}') from e

        try:
            payload = resp.json()
        except ValueError:
            payload = {}

        if not resp.ok:
            message = None
            if isinstance(payload, dict):
                message = payload.get('message') or payload.get('error')
            raise AIStyleError(message or f'AI style request failed (HTTP {resp.status_code})')

        return normalize_response(payload)

    def fetch_image(self, result: AIStyleResult) -> bytes:
        """Image bytes of a result, downloading it if the provider gave a URL."""
        if result.image_data_uri:
            return decode_data_uri(result.image_data_uri)
        if not result.image_url:
            raise AIStyleError('AI style result has neither an image URL nor image data.')

        log.info('Downloading stylized image from %s', result.image_url[:60])
        try:
            resp = self.session.get(result.image_url, timeout=DOWNLOAD_TIMEOUT)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise AIStyleError(f'Could not download stylized image: {e}') from e
        return resp.content
