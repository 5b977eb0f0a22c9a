import logging
from typing import Dict, Optional

import openai
from openai import OpenAI

from lumen.error_handler import AppError

logger = logging.getLogger(__name__)


class ImageService:
    def __init__(self, openai_client: Optional[OpenAI]):
        self.client = openai_client

    async def generate(self, prompt: str) -> Dict[str, Optional[str]]:
        """Generate a 1024x1024 illustration and return it as a data URI."""
        if self.client is None:
            raise AppError("OpenAI API key not found")

        logger.info(f"Generating image with prompt: {prompt[:80]}")
        try:
            response = self.client.images.generate(
                model="gpt-image-1",
                prompt=prompt,
                n=1,
                size="1024x1024",
                quality="high"
            )
        except openai.APIError as e:
            logger.error(f"OpenAI Image API error: {str(e)}")
            raise AppError(f"OpenAI Image API error: {str(e)}")

        image = response.data[0]
        logger.info("Image generated successfully")
        return {
            'imageUrl': f"data:image/png;base64,{image.b64_json}",
            'revisedPrompt': getattr(image, 'revised_prompt', None),
        }
