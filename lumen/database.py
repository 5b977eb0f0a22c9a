import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from supabase import Client, create_client

from lumen.config import Settings
from lumen.error_handler import AppError
from lumen.models import Message

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    def __init__(self, supabase_client: Client):
        self.supabase = supabase_client
        self.conversations_table = 'conversations'
        self.messages_table = 'conversation_messages'
        self.images_table = 'generated_images'
        self.videos_table = 'generated_videos'
        self.audio_table = 'conversation_audio'
        logger.info("Database initialized")

    def _insert(self, table: str, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = self.supabase.table(table).insert(data).execute()
        except Exception as e:
            logger.error(f"Failed to insert into {table}: {str(e)}")
            raise AppError(f"Database storage error: {str(e)}", status_code=500)
        if not result.data:
            raise AppError(f"Database storage error: no row returned from {table}", status_code=500)
        return result.data[0]

    async def create_conversation(self, user_id: str, title: Optional[str] = None) -> Dict[str, Any]:
        """Create a conversation owned by ``user_id``."""
        data = {
            'user_id': user_id,
            'title': (title or 'New conversation')[:100],
        }
        logger.info(f"Creating conversation for user {user_id}")
        return self._insert(self.conversations_table, data)

    async def list_conversations(self, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        try:
            result = self.supabase.table(self.conversations_table)\
                .select('*')\
                .eq('user_id', user_id)\
                .order('updated_at', desc=True)\
                .limit(limit)\
                .execute()
            return result.data or []
        except Exception as e:
            raise AppError(f"Error listing conversations: {str(e)}", status_code=500)

    async def touch_conversation(self, conversation_id: str) -> None:
        try:
            self.supabase.table(self.conversations_table)\
                .update({'updated_at': _now()})\
                .eq('id', conversation_id)\
                .execute()
        except Exception as e:
            raise AppError(f"Error updating conversation: {str(e)}", status_code=500)

    async def save_message(self, conversation_id: str, message: Message) -> Dict[str, Any]:
        """Store a message; the row id is the local message id."""
        data = {
            'id': message.id,
            'conversation_id': conversation_id,
            'content': message.content,
            'role': message.role,
            'audio_url': message.audio_url,
            'is_playing': message.is_playing,
            'created_at': message.timestamp.isoformat(),
        }
        logger.info(f"Storing {message.role} message {message.id}")
        return self._insert(self.messages_table, data)

    async def load_messages(self, conversation_id: str) -> List[Message]:
        try:
            result = self.supabase.table(self.messages_table)\
                .select('*')\
                .eq('conversation_id', conversation_id)\
                .order('created_at')\
                .execute()
        except Exception as e:
            raise AppError(f"Error loading messages: {str(e)}", status_code=500)

        messages = []
        for row in result.data or []:
            messages.append(Message(
                id=row['id'],
                content=row['content'],
                role=row['role'],
                timestamp=datetime.fromisoformat(row['created_at']),
                audio_url=row.get('audio_url'),
            ))
        return messages

    async def update_message_playback(self, message_id: str, audio_url: Optional[str] = None,
                                      is_playing: Optional[bool] = None) -> None:
        update: Dict[str, Any] = {}
        if audio_url is not None:
            update['audio_url'] = audio_url
        if is_playing is not None:
            update['is_playing'] = is_playing
        if not update:
            return
        try:
            self.supabase.table(self.messages_table)\
                .update(update)\
                .eq('id', message_id)\
                .execute()
        except Exception as e:
            raise AppError(f"Error updating message: {str(e)}", status_code=500)

    async def save_conversation_audio(self, message_id: str, audio_url: str, voice_provider: str,
                                      voice_id: Optional[str] = None) -> Dict[str, Any]:
        return self._insert(self.audio_table, {
            'message_id': message_id,
            'audio_url': audio_url,
            'voice_provider': voice_provider,
            'voice_id': voice_id,
        })

    async def save_generated_image(self, message_id: str, image_url: str, image_prompt: str,
                                   user_question: str, ai_response: str,
                                   provider: str = 'openai') -> Dict[str, Any]:
        return self._insert(self.images_table, {
            'message_id': message_id,
            'image_url': image_url,
            'image_prompt': image_prompt,
            'user_question': user_question,
            'ai_response': ai_response,
            'provider': provider,
        })

    async def save_generated_video(self, message_id: str, video_url: str, video_prompt: str,
                                   user_question: str, ai_response: str,
                                   provider: str = 'huggingface') -> Dict[str, Any]:
        return self._insert(self.videos_table, {
            'message_id': message_id,
            'video_url': video_url,
            'video_prompt': video_prompt,
            'user_question': user_question,
            'ai_response': ai_response,
            'provider': provider,
        })


def create_database(settings: Settings) -> Database:
    client = create_client(settings.supabase_url, settings.supabase_key)
    return Database(client)
