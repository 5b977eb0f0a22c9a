import base64
import logging
from typing import Any, Dict, List, Optional, Tuple

from lumen.audio_capture import AudioCapture
from lumen.config import Settings
from lumen.database import Database
from lumen.error_handler import (
    AppError,
    CannotNarrateError,
    ErrorHandler,
    MicrophoneUnavailableError,
    NarrationError,
    NoSpeechDetectedError,
    RateLimitError,
)
from lumen.functions_client import EdgeFunctionsClient
from lumen.models import Attachment, Message, SynthesisResult
from lumen.notifications import Notifier
from lumen.playback import CommandSpeechSynthesizer, SubprocessAudioPlayer
from lumen.providers import ProviderChain, build_default_chain
from lumen.speech import SpeechOrchestrator
from lumen.text import filter_history, is_error_content
from lumen.transcription import TranscriptionClient

logger = logging.getLogger(__name__)

IMAGE_PROMPT_TEMPLATE = (
    "Create an educational illustration that explains: {question}. "
    "Show the key concepts visually in a clear, engaging style."
)
VIDEO_PROMPT_TEMPLATE = (
    "An animated educational video explaining: {question}. "
    "Simple visual scenes with smooth transitions that illustrate the key concepts."
)


class ConversationController:
    """Runs question/answer turns for one conversation.

    A turn goes Idle -> Sending -> AwaitingAIResponse -> Success | Failure
    -> Idle. The ``is_processing`` flag rejects a second question while one
    is in flight. Failed turns become an assistant bubble explaining the
    error plus a toast; they are not persisted.
    """

    def __init__(
        self,
        functions: EdgeFunctionsClient,
        provider_chain: ProviderChain,
        database: Optional[Database] = None,
        transcriber: Optional[TranscriptionClient] = None,
        capture: Optional[AudioCapture] = None,
        notifier: Optional[Notifier] = None,
        user_id: Optional[str] = None,
        auto_speak: bool = False,
        auto_generate_image: bool = False,
        **narrator_options
    ):
        self.functions = functions
        self.database = database
        self.transcriber = transcriber or TranscriptionClient(functions)
        self.capture = capture or AudioCapture()
        self.notifier = notifier or Notifier()
        self.user_id = user_id
        self.auto_speak = auto_speak
        self.auto_generate_image = auto_generate_image

        self.messages: List[Message] = []
        self.conversation_id: Optional[str] = None
        self.is_processing = False
        self.narrator = SpeechOrchestrator(
            self.messages,
            provider_chain,
            notifier=self.notifier,
            on_audio_resolved=self._record_audio,
            **narrator_options
        )

    @classmethod
    def from_settings(cls, settings: Settings, database: Optional[Database] = None,
                      user_id: Optional[str] = None, **kwargs) -> 'ConversationController':
        synthesizer = CommandSpeechSynthesizer()
        return cls(
            functions=EdgeFunctionsClient.from_settings(settings),
            provider_chain=build_default_chain(settings, synthesizer),
            database=database,
            user_id=user_id,
            player=SubprocessAudioPlayer(),
            synthesizer=synthesizer,
            chars_per_second=settings.chars_per_second,
            poll_interval=settings.position_poll_interval,
            **kwargs
        )

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id) and self.database is not None

    async def send_question(self, content: str, files: Optional[List[Attachment]] = None) -> Optional[Message]:
        files = files or []
        content = (content or '').strip()
        if self.is_processing:
            logger.warning("Ignoring question: a response is already in progress")
            return None
        if not content and not files:
            return None

        self.is_processing = True
        try:
            history = filter_history([m.to_history_entry() for m in self.messages])
            user_message = Message(content=content or 'Message with attachments', role='user')
            self.messages.append(user_message)
            await self._persist_message(user_message)

            message_text, file_parts = self._prepare_attachments(content, files)
            try:
                data = await self.functions.invoke('chat-completion', {
                    'message': message_text or user_message.content,
                    'conversationHistory': history,
                    'files': file_parts,
                })
                response_text = (data.get('response') or '').strip()
                if not response_text:
                    raise AppError("Empty response from AI service", status_code=502)
            except Exception as e:
                return self._handle_turn_error(e)

            assistant_message = Message(content=response_text, role='assistant')
            self.messages.append(assistant_message)
            await self._persist_message(assistant_message)
        finally:
            self.is_processing = False

        await self._after_response(assistant_message)
        return assistant_message

    def start_recording(self) -> bool:
        try:
            self.capture.start()
        except MicrophoneUnavailableError as e:
            self.notifier.error("Microphone Access Required", e.user_message)
            return False
        return True

    async def stop_recording_and_send(self) -> Optional[Message]:
        audio = self.capture.stop()
        try:
            text = await self.transcriber.transcribe(audio)
        except NoSpeechDetectedError as e:
            self.notifier.error("No speech detected", e.user_message)
            return None
        except AppError as e:
            self.notifier.error("Transcription Error", ErrorHandler.handle_transcription_error(e))
            return None
        return await self.send_question(text)

    async def handle_read_aloud(self, message_id: str) -> bool:
        message = self._find_message(message_id)
        if message is None:
            logger.warning(f"Read aloud requested for unknown message {message_id}")
            return False
        return await self.narrator.handle_read_aloud(message_id, message.content)

    async def handle_generate_image(self, message_id: str) -> str:
        message, question = self._illustration_source(message_id)
        prompt = await self._generate_prompt(
            'generate-image-prompt', 'imagePrompt', question, message.content, IMAGE_PROMPT_TEMPLATE
        )

        data = await self.functions.invoke('image-generation', {'prompt': prompt})
        image_url = data.get('imageUrl')
        if not image_url:
            raise AppError("No image returned from image generation", status_code=502)
        message.generated_image_url = image_url
        logger.info(f"Image generated for message {message_id}")

        if self.is_authenticated:
            try:
                await self.database.save_generated_image(
                    message.id, image_url, prompt, question, message.content, provider='openai'
                )
            except Exception as e:
                ErrorHandler.handle_storage_error(e)
        return image_url

    async def handle_generate_video(self, message_id: str) -> str:
        message, question = self._illustration_source(message_id)
        prompt = await self._generate_prompt(
            'generate-video-prompt', 'videoPrompt', question, message.content, VIDEO_PROMPT_TEMPLATE
        )

        data = await self.functions.invoke('video-generation', {'prompt': prompt})
        video_url = data.get('videoUrl')
        if not video_url:
            raise AppError("No video returned from video generation", status_code=502)
        message.generated_video_url = video_url
        logger.info(f"Video generated for message {message_id}")

        if self.is_authenticated:
            try:
                await self.database.save_generated_video(
                    message.id, video_url, prompt, question, message.content,
                    provider=data.get('provider', 'huggingface')
                )
            except Exception as e:
                ErrorHandler.handle_storage_error(e)
        return video_url

    async def list_conversations(self, limit: int = 20) -> List[Dict[str, Any]]:
        if not self.is_authenticated:
            return []
        return await self.database.list_conversations(self.user_id, limit)

    async def load_conversation(self, conversation_id: str) -> List[Message]:
        if self.database is None:
            raise AppError("Conversation history requires a database", status_code=400)
        self.narrator.stop_speech()
        messages = await self.database.load_messages(conversation_id)
        self.messages[:] = messages
        self.conversation_id = conversation_id
        logger.info(f"Loaded {len(messages)} messages from conversation {conversation_id}")
        return self.messages

    def new_conversation(self) -> None:
        self.narrator.stop_speech()
        self.messages.clear()
        self.conversation_id = None

    def _handle_turn_error(self, error: Exception) -> Message:
        logger.error(f"Error getting AI response: {str(error)}")
        classification = ErrorHandler.classify_chat_error(error)
        description = classification.explanation
        if isinstance(error, RateLimitError) and error.retry_after:
            description = f"{description} Retry after {error.retry_after} seconds."

        error_message = Message(content=classification.explanation, role='assistant')
        self.messages.append(error_message)
        self.notifier.error(classification.title, description)
        return error_message

    async def _after_response(self, message: Message) -> None:
        if self.auto_speak and not self.narrator.muted:
            try:
                await self.narrator.start_speech(message.id, message.content)
            except NarrationError as e:
                self.notifier.error(e.title, ErrorHandler.handle_narration_error(e))

        if self.auto_generate_image:
            try:
                await self.handle_generate_image(message.id)
            except CannotNarrateError:
                logger.info(f"Skipping image generation for message {message.id}")
            except AppError as e:
                logger.error(f"Image generation failed: {str(e)}")
                self.notifier.error("Image Generation Failed", "Could not generate an image for this answer.")

    def _prepare_attachments(self, content: str, files: List[Attachment]) -> Tuple[str, List[Dict[str, Any]]]:
        parts = []
        notes = []
        for attachment in files:
            if attachment.is_image:
                encoded = base64.b64encode(attachment.data).decode('ascii')
                parts.append({
                    'name': attachment.name,
                    'type': attachment.content_type,
                    'data': f"data:{attachment.content_type};base64,{encoded}",
                })
            else:
                # Only images are forwarded as binary
                notes.append(f"[Attached file: {attachment.name}]")

        message_text = content
        if notes:
            message_text = f"{content}\n\n" + "\n".join(notes) if content else "\n".join(notes)
        return message_text, parts

    def _illustration_source(self, message_id: str) -> Tuple[Message, str]:
        index = next((i for i, m in enumerate(self.messages) if m.id == message_id), None)
        if index is None:
            raise CannotNarrateError("Message not found")
        message = self.messages[index]
        if message.role != 'assistant' or is_error_content(message.content):
            raise CannotNarrateError("Cannot generate media for this message")

        question = ''
        for previous in reversed(self.messages[:index]):
            if previous.role == 'user':
                question = previous.content
                break
        return message, question

    async def _generate_prompt(self, function: str, key: str, question: str, answer: str, template: str) -> str:
        try:
            data = await self.functions.invoke(function, {'userQuestion': question, 'aiResponse': answer})
            prompt = (data.get(key) or '').strip()
            if prompt:
                return prompt
            logger.warning(f"{function} returned an empty prompt, using template")
        except Exception as e:
            logger.warning(f"{function} failed, using template: {str(e)}")
        return template.format(question=question or answer[:200])

    async def _persist_message(self, message: Message) -> None:
        if not self.is_authenticated:
            return
        try:
            if self.conversation_id is None:
                conversation = await self.database.create_conversation(self.user_id, message.content[:50])
                self.conversation_id = conversation['id']
            await self.database.save_message(self.conversation_id, message)
            await self.database.touch_conversation(self.conversation_id)
        except Exception as e:
            ErrorHandler.handle_storage_error(e)

    async def _record_audio(self, message: Message, result: SynthesisResult) -> None:
        if not self.is_authenticated:
            return
        try:
            await self.database.update_message_playback(message.id, audio_url=message.audio_url)
            await self.database.save_conversation_audio(
                message.id, message.audio_url, result.provider, result.voice_id
            )
        except Exception as e:
            ErrorHandler.handle_storage_error(e)

    def _find_message(self, message_id: str) -> Optional[Message]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None
