import base64
import logging
from typing import Dict

import aiohttp

from lumen.error_handler import AppError

logger = logging.getLogger(__name__)

HUGGING_FACE_MODEL_URL = 'https://api-inference.huggingface.co/models/ali-vilab/text-to-video-ms-1.7b'


class VideoService:
    def __init__(self, access_token: str, timeout: float = 300):
        self.access_token = access_token
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def generate(self, prompt: str) -> Dict[str, str]:
        if not self.access_token:
            raise AppError("Hugging Face API token not found")

        logger.info(f"Generating video with Hugging Face, prompt: {prompt[:80]}")
        payload = {
            'inputs': prompt,
            'parameters': {'num_frames': 16, 'fps': 8},
        }
        headers = {'Authorization': f"Bearer {self.access_token}"}

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(HUGGING_FACE_MODEL_URL, json=payload, headers=headers) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"Hugging Face API error: {error_text}")
                    raise AppError(f"Video generation failed: {response.status} {error_text}")
                video = await response.read()

        logger.info(f"Video generated successfully: {len(video)} bytes")
        return {
            'videoUrl': f"data:video/mp4;base64,{base64.b64encode(video).decode('ascii')}",
            'provider': 'huggingface',
        }
