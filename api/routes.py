import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from flask import Flask, jsonify, request
from openai import OpenAI

from lumen.config import Settings, get_settings
from lumen.error_handler import AppError, RateLimitError
from lumen.providers import ElevenLabsProvider, OpenAISpeechProvider

from .services.chat import ChatService
from .services.images import ImageService
from .services.speech_to_text import SpeechToTextService
from .services.text_to_speech import TextToSpeechService
from .services.video import VideoService

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': 'authorization, x-client-info, apikey, content-type',
    'Access-Control-Allow-Methods': 'POST, OPTIONS',
}


@dataclass
class Services:
    speech_to_text: SpeechToTextService
    text_to_speech: TextToSpeechService
    chat: ChatService
    images: ImageService
    video: VideoService


def build_services(settings: Settings) -> Services:
    logger.info("Initializing services...")
    chat_client = None
    if settings.google_api_key:
        chat_client = OpenAI(api_key=settings.google_api_key, base_url=settings.chat_base_url)
    else:
        logger.warning("GOOGLE_API_KEY not set; chat completion is unavailable")
    openai_client = OpenAI(api_key=settings.openai_api_key) if settings.openai_api_key else None

    services = Services(
        speech_to_text=SpeechToTextService(
            settings.assemblyai_api_key,
            max_attempts=settings.transcription_max_attempts,
            poll_interval=settings.transcription_poll_interval
        ),
        text_to_speech=TextToSpeechService(
            ElevenLabsProvider(settings.elevenlabs_api_key, settings.elevenlabs_voice_id),
            OpenAISpeechProvider(settings.openai_api_key, client=openai_client)
        ),
        chat=ChatService(chat_client, model=settings.chat_model),
        images=ImageService(openai_client),
        video=VideoService(settings.hugging_face_access_token),
    )
    logger.info("All services initialized successfully")
    return services


def _bad_request(message: str, status: int = 400):
    return jsonify({'error': message}), status


def create_app(services: Optional[Services] = None) -> Flask:
    app = Flask(__name__)
    if services is None:
        services = build_services(get_settings())

    def run(name: str, handler: Callable[[], Awaitable[Dict[str, Any]]]):
        """Run an async handler from a sync Flask view and map errors to JSON."""
        try:
            result = asyncio.run(handler())
            logger.info(f"{name} completed")
            return jsonify(result), 200
        except RateLimitError as e:
            logger.warning(f"{name} rate limited: {e.message}")
            return jsonify({'error': e.message, 'type': 'rate_limit', 'retryAfter': e.retry_after}), 429
        except AppError as e:
            logger.error(f"Error in {name} function: {e.message}")
            return jsonify({'error': e.message}), e.status_code
        except Exception as e:
            logger.error(f"Error in {name} function: {str(e)}", exc_info=True)
            return jsonify({'error': 'Edge function crashed', 'details': str(e)}), 500

    @app.after_request
    def add_cors_headers(response):
        for header, value in CORS_HEADERS.items():
            response.headers[header] = value
        return response

    @app.route("/", methods=['GET'])
    def health():
        return jsonify({"status": "ok", "message": "Server is running"})

    @app.route("/functions/v1/speech-to-text", methods=['POST'])
    def speech_to_text():
        body = request.get_json(silent=True) or {}
        audio = body.get('audio')
        if not audio:
            return _bad_request('No audio data provided', 500)

        async def handler():
            try:
                audio_bytes = base64.b64decode(audio)
            except ValueError as e:
                raise AppError(f"Invalid audio data: {str(e)}")
            return {'text': await services.speech_to_text.transcribe(audio_bytes)}

        return run('speech-to-text', handler)

    @app.route("/functions/v1/text-to-speech", methods=['POST'])
    def text_to_speech():
        body = request.get_json(silent=True) or {}
        text = body.get('text')
        if not text:
            return _bad_request('Text is required')

        async def handler():
            return {'audioContent': await services.text_to_speech.synthesize(text, body.get('voice'))}

        return run('text-to-speech', handler)

    @app.route("/functions/v1/chat-completion", methods=['POST'])
    def chat_completion():
        body = request.get_json(silent=True) or {}
        message = body.get('message')
        if not message:
            return _bad_request('Missing "message" in request body')

        async def handler():
            return await services.chat.complete(
                message,
                body.get('conversationHistory') or [],
                body.get('files') or []
            )

        return run('chat-completion', handler)

    def prompt_route(kind: str, key: str):
        body = request.get_json(silent=True) or {}
        user_question = body.get('userQuestion')
        ai_response = body.get('aiResponse')
        if not user_question or not ai_response:
            return _bad_request('Missing userQuestion or aiResponse')

        async def handler():
            return {key: await services.chat.generate_prompt(user_question, ai_response, kind)}

        return run(f"generate-{kind}-prompt", handler)

    @app.route("/functions/v1/generate-image-prompt", methods=['POST'])
    def generate_image_prompt():
        return prompt_route('image', 'imagePrompt')

    @app.route("/functions/v1/generate-video-prompt", methods=['POST'])
    def generate_video_prompt():
        return prompt_route('video', 'videoPrompt')

    @app.route("/functions/v1/image-generation", methods=['POST'])
    def image_generation():
        body = request.get_json(silent=True) or {}
        prompt = body.get('prompt')
        if not prompt:
            return _bad_request('Missing prompt')
        return run('image-generation', lambda: services.images.generate(prompt))

    @app.route("/functions/v1/video-generation", methods=['POST'])
    def video_generation():
        body = request.get_json(silent=True) or {}
        prompt = body.get('prompt')
        if not prompt:
            return _bad_request('Missing prompt')
        return run('video-generation', lambda: services.video.generate(prompt))

    return app
