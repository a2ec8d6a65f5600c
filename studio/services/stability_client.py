from __future__ import annotations

from typing import Any, Dict, List, Tuple

import httpx

from studio.config import get_settings
from studio.services.generation import GenerationRequest
from studio.utils.logging import get_logger


logger = get_logger('stability')


RESOLUTIONS: Dict[str, Tuple[int, int]] = {
    'normal': (512, 512),
    'hd': (768, 768),
    'square': (1024, 1024),
    'landscape': (1344, 768),
    'portrait': (768, 1344),
    'widescreen': (1024, 576),
    'ratio_4_3': (1024, 768),
    'poster_landscape': (1280, 720),
    'poster_portrait': (720, 1280),
    'thumbnail_youtube': (1280, 720),
    'logo': (512, 512),
}

# Prompt decoration per generation type: (prefix, suffix, negative prompt, default resolution).
TYPE_PRESETS: Dict[str, Tuple[str, str, str, str]] = {
    'general': (
        'high quality, detailed, ',
        ', masterpiece, photorealistic, 8k',
        'ugly, deformed, poor quality, blurry, watermark',
        'landscape',
    ),
    'anime': (
        'anime style, manga, detailed, 2D, ',
        ', vibrant colors, clean lines, anime illustration',
        'ugly, deformed, poor quality, blurry, photorealistic, 3D',
        'normal',
    ),
    'realistic': (
        'photorealistic, hyperrealistic, highly detailed, sharp focus, ',
        ', 8k, professional photography, realistic lighting',
        'cartoon, anime, illustration, painting, deformed, blurry',
        'hd',
    ),
    'logo': (
        'minimalist logo design for ',
        ', professional, vector style, clean lines, isolated on white background',
        'text, words, letters, busy, detailed background, noisy, blurry',
        'logo',
    ),
    'poster': (
        'professional poster design for ',
        ', advertisement, marketing material, high quality',
        'amateur, low quality, blurry, distorted, watermark',
        'poster_landscape',
    ),
    'thumbnail': (
        'eye-catching thumbnail for ',
        ', colorful, attention-grabbing, clear focal point',
        'text, words, letters, small details, low quality, blurry',
        'thumbnail_youtube',
    ),
    'wallpaper': (
        'stunning wallpaper of ',
        ', ultra detailed, cinematic lighting',
        'low quality, blurry, distorted, watermark',
        'widescreen',
    ),
}

# Free daily generations are rendered at this size.
REDUCED_RESOLUTION = (512, 512)


class StabilityError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StabilityClient:
    """Text-to-image calls against the Stability AI REST API."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        engine: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.stability_api_key
        self.base_url = (base_url or settings.stability_api_url).rstrip('/')
        self.engine = engine or settings.stability_engine
        self._client = client or httpx.AsyncClient(timeout=90)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }

    @staticmethod
    def build_payload(request: GenerationRequest, *, reduced_quality: bool = False) -> Dict[str, Any]:
        prefix, suffix, negative, default_resolution = TYPE_PRESETS.get(
            request.generation_type, TYPE_PRESETS['general']
        )
        resolution = (request.resolution or default_resolution).strip().lower()
        width, height = RESOLUTIONS.get(resolution, RESOLUTIONS[default_resolution])
        if reduced_quality:
            width, height = REDUCED_RESOLUTION

        prompts: List[Dict[str, Any]] = [{'text': f'{prefix}{request.prompt}{suffix}', 'weight': 1}]
        negative_prompt = request.negative_prompt or negative
        if negative_prompt:
            prompts.append({'text': negative_prompt, 'weight': -1})

        body: Dict[str, Any] = {
            'text_prompts': prompts,
            'cfg_scale': 7,
            'height': height,
            'width': width,
            'samples': 1,
            'steps': 20 if reduced_quality else 30,
        }
        if request.style:
            body['style_preset'] = request.style
        return body

    async def generate(self, request: GenerationRequest, *, reduced_quality: bool = False) -> Dict[str, Any]:
        url = f'{self.base_url}/generation/{self.engine}/text-to-image'
        body = self.build_payload(request, reduced_quality=reduced_quality)
        resp = await self._client.post(url, headers=self._headers(), json=body)
        if resp.status_code >= 400:
            raise StabilityError(f'Stability text-to-image error {resp.status_code}: {resp.text}', resp.status_code)
        data = resp.json()
        artifacts = data.get('artifacts') if isinstance(data, dict) else None
        if not artifacts:
            raise StabilityError('Stability response has no artifacts')

        images = []
        for artifact in artifacts:
            if artifact.get('finishReason') not in (None, 'SUCCESS'):
                logger.warning('stability_artifact_filtered', reason=artifact.get('finishReason'))
                continue
            images.append({'base64': artifact.get('base64'), 'seed': artifact.get('seed')})
        if not images:
            raise StabilityError('Stability returned no usable images')

        return {
            'engine': self.engine,
            'width': body['width'],
            'height': body['height'],
            'images': images,
        }
