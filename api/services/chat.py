import logging
from typing import Any, Dict, List, Optional

import openai
from openai import OpenAI

from lumen.error_handler import AppError, RateLimitError
from lumen.text import filter_history

logger = logging.getLogger(__name__)

IMAGE_PROMPT_INSTRUCTIONS = """
Based on the following question and AI response, create a concise image prompt (max 100 words) for a text-to-image AI model. Focus on a single clear illustration that would help explain the concept.

Question: {question}

AI Response: {answer}

Create an image prompt that:
- Describes the key visual elements and their layout
- Uses a clean, educational illustration style
- Keeps it under 100 words
- Avoids text-heavy diagrams

Image Prompt:"""

VIDEO_PROMPT_INSTRUCTIONS = """
Based on the following question and AI response, create a concise video prompt (max 100 words) for a text-to-video AI model. Focus on visual elements, scenes, and animations that would help explain the concept.

Question: {question}

AI Response: {answer}

Create a video prompt that:
- Describes visual scenes and elements
- Includes relevant animations or transitions
- Keeps it under 100 words
- Focuses on educational/explanatory visuals
- Avoids complex technical details

Video Prompt:"""


class ChatService:
    def __init__(self, openai_client: Optional[OpenAI], model: str = 'gemini-1.5-flash'):
        self.client = openai_client
        self.model = model

    def _build_messages(self, message: str, history: List[Dict[str, Any]],
                        files: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Build the chat messages: filtered history, then the new user turn"""
        messages = [
            {"role": entry['role'], "content": entry['content']}
            for entry in filter_history(history)
        ]

        images = [f for f in files or [] if (f.get('type') or '').startswith('image/')]
        if not images:
            messages.append({"role": "user", "content": message})
            return messages

        content = [{"type": "text", "text": message}]
        for image in images:
            content.append({"type": "image_url", "image_url": {"url": image['data']}})
        messages.append({"role": "user", "content": content})
        return messages

    def _complete(self, messages: List[Dict[str, Any]], max_tokens: int) -> str:
        if self.client is None:
            raise AppError("GOOGLE_API_KEY not found", status_code=500)
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=0.7,
                max_tokens=max_tokens
            )
        except openai.RateLimitError as e:
            logger.error(f"Chat model rate limited: {str(e)}")
            retry_after = e.response.headers.get('retry-after') if e.response is not None else None
            raise RateLimitError(
                "Gemini rate limit exceeded. Please try again in a moment.",
                provider='gemini',
                retry_after=retry_after
            )
        except openai.APIStatusError as e:
            logger.error(f"Chat model upstream error {e.status_code}: {str(e)}")
            raise AppError(
                f"Gemini upstream error: {e.status_code} {str(e)[:800]}",
                status_code=502 if e.status_code >= 500 else 400
            )
        except openai.APIError as e:
            logger.error(f"Chat model request failed: {str(e)}")
            raise AppError(f"Gemini upstream error: {str(e)}", status_code=502)

        if not response.choices or not response.choices[0].message.content:
            raise AppError("Invalid response structure from Gemini", status_code=502)
        return response.choices[0].message.content

    async def complete(self, message: str, history: List[Dict[str, Any]],
                       files: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        """Answer a question and return the reply with the extended history"""
        files = files or []
        logger.info(f"Chat completion request: {len(history)} history entries, {len(files)} files")
        messages = self._build_messages(message, history, files)
        reply = self._complete(messages, max_tokens=1000)

        return {
            'response': reply,
            'conversationHistory': list(history) + [
                {'role': 'user', 'content': message or 'Message with attachments'},
                {'role': 'assistant', 'content': reply},
            ],
        }

    async def generate_prompt(self, user_question: str, ai_response: str, kind: str = 'image') -> str:
        template = VIDEO_PROMPT_INSTRUCTIONS if kind == 'video' else IMAGE_PROMPT_INSTRUCTIONS
        logger.info(f"Generating {kind} prompt")
        prompt = self._complete(
            [{"role": "user", "content": template.format(question=user_question, answer=ai_response)}],
            max_tokens=200
        ).strip()
        if not prompt:
            raise AppError(f"No {kind} prompt generated", status_code=502)
        return prompt
