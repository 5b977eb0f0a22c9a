import base64

import pytest
from unittest.mock import AsyncMock, MagicMock

from lumen.conversation import IMAGE_PROMPT_TEMPLATE, ConversationController
from lumen.error_handler import (
    AppError,
    CannotNarrateError,
    FunctionInvokeError,
    MicrophoneUnavailableError,
    NoSpeechDetectedError,
    RateLimitError,
)
from lumen.models import Attachment, Message
from lumen.providers import ProviderChain


@pytest.fixture
def make_controller(make_provider, player, synthesizer, notifier):
    def factory(functions, providers=None, **kwargs):
        if providers is None:
            providers = [make_provider('elevenlabs')]
        return ConversationController(
            functions,
            ProviderChain(providers, synthesizer=synthesizer),
            notifier=notifier,
            player=player,
            synthesizer=synthesizer,
            poll_interval=60,
            **kwargs
        )
    return factory


@pytest.fixture
def mock_database():
    database = MagicMock()
    database.create_conversation = AsyncMock(return_value={'id': 'conv-1'})
    database.save_message = AsyncMock(return_value={})
    database.touch_conversation = AsyncMock()
    database.list_conversations = AsyncMock(return_value=[{'id': 'conv-1', 'title': 'What is 2+2?'}])
    database.update_message_playback = AsyncMock()
    database.save_conversation_audio = AsyncMock(return_value={})
    database.save_generated_image = AsyncMock(return_value={})
    database.save_generated_video = AsyncMock(return_value={})
    database.load_messages = AsyncMock(return_value=[])
    return database


@pytest.mark.asyncio
async def test_question_is_answered_and_narrated(make_functions, make_controller, player):
    functions = make_functions({'chat-completion': {'response': '4'}})
    controller = make_controller(functions, auto_speak=True)

    answer = await controller.send_question("What is 2+2?")

    assert [(m.role, m.content) for m in controller.messages] == [('user', 'What is 2+2?'), ('assistant', '4')]
    assert answer is controller.messages[1]
    assert functions.calls[0] == ('chat-completion', {
        'message': 'What is 2+2?',
        'conversationHistory': [],
        'files': [],
    })
    assert not controller.is_processing

    assert controller.narrator.state.message_id == answer.id
    assert answer.is_playing
    assert answer.audio_url.startswith('data:audio/mpeg;base64,')
    assert player.plays[0][0] == answer.audio_url

    controller.new_conversation()
    assert controller.messages == []
    assert controller.narrator.state.is_empty


@pytest.mark.asyncio
async def test_rate_limited_turn_becomes_an_unplayable_error_message(make_functions, make_controller, notifier):
    functions = make_functions({
        'chat-completion': RateLimitError(
            "Gemini rate limit exceeded. Please try again in a moment.",
            provider='chat-completion',
            retry_after='30'
        )
    })
    controller = make_controller(functions, auto_speak=True)

    error_message = await controller.send_question("What is 2+2?")

    assert error_message.role == 'assistant'
    assert error_message.content == "Error: AI service rate limit exceeded. Please wait a moment and try again."
    assert notifier.last.title == "Rate Limit Exceeded"
    assert notifier.last.variant == 'destructive'
    assert "Retry after 30 seconds" in notifier.last.description
    assert not controller.is_processing

    assert not await controller.handle_read_aloud(error_message.id)
    assert notifier.last.title == "Cannot Read Aloud"
    with pytest.raises(CannotNarrateError):
        await controller.handle_generate_image(error_message.id)
    assert [name for name, _ in functions.calls] == ['chat-completion']


@pytest.mark.asyncio
@pytest.mark.parametrize("error, title", [
    (FunctionInvokeError("quota exceeded for project"), "Quota Exceeded"),
    (FunctionInvokeError("Invalid API key (Edge Function returned a non-2xx status code: 401)"), "Configuration Error"),
    (FunctionInvokeError("Gemini upstream error (Edge Function returned a non-2xx status code: 400)"), "Service Error"),
    (FunctionInvokeError("Function invoke error: connection reset"), "Error"),
])
async def test_failed_turns_are_classified(make_functions, make_controller, notifier, error, title):
    controller = make_controller(make_functions({'chat-completion': error}))

    message = await controller.send_question("Why is the sky blue?")

    assert notifier.last.title == title
    assert message.content == notifier.last.description


@pytest.mark.asyncio
async def test_error_messages_are_left_out_of_history(make_functions, make_controller):
    functions = make_functions({'chat-completion': FunctionInvokeError("rate limit exceeded")})
    controller = make_controller(functions)
    await controller.send_question("First question")

    functions.responses['chat-completion'] = {'response': 'Second answer'}
    await controller.send_question("Second question")

    history = functions.bodies('chat-completion')[1]['conversationHistory']
    assert history == [{'role': 'user', 'content': 'First question'}]


@pytest.mark.asyncio
async def test_second_question_is_ignored_while_processing(make_functions, make_controller):
    functions = make_functions({'chat-completion': {'response': 'ok'}})
    controller = make_controller(functions)
    controller.is_processing = True

    assert await controller.send_question("Hello?") is None
    assert functions.calls == []
    assert controller.messages == []


@pytest.mark.asyncio
async def test_empty_question_is_ignored(make_functions, make_controller):
    functions = make_functions()
    controller = make_controller(functions)

    assert await controller.send_question("   ") is None
    assert functions.calls == []


@pytest.mark.asyncio
async def test_attachments_are_forwarded(make_functions, make_controller):
    functions = make_functions({'chat-completion': {'response': 'A chart of sales.'}})
    controller = make_controller(functions)
    image = Attachment('chart.png', 'image/png', b'\x89PNG fake')
    document = Attachment('notes.pdf', 'application/pdf', b'%PDF fake')

    await controller.send_question("What does this show?", files=[image, document])

    body = functions.bodies('chat-completion')[0]
    assert body['message'] == "What does this show?\n\n[Attached file: notes.pdf]"
    assert body['files'] == [{
        'name': 'chart.png',
        'type': 'image/png',
        'data': 'data:image/png;base64,' + base64.b64encode(b'\x89PNG fake').decode('ascii'),
    }]


@pytest.mark.asyncio
async def test_image_prompt_falls_back_to_template(make_functions, make_controller, mock_database):
    functions = make_functions({
        'chat-completion': {'response': 'Plants turn sunlight into sugar.'},
        'generate-image-prompt': FunctionInvokeError("Function invoke error: boom"),
        'image-generation': {'imageUrl': 'data:image/png;base64,aW1n'},
    })
    controller = make_controller(functions, database=mock_database, user_id='user-1')
    answer = await controller.send_question("What is photosynthesis?")

    image_url = await controller.handle_generate_image(answer.id)

    expected_prompt = IMAGE_PROMPT_TEMPLATE.format(question="What is photosynthesis?")
    assert functions.bodies('image-generation') == [{'prompt': expected_prompt}]
    assert image_url == answer.generated_image_url == 'data:image/png;base64,aW1n'
    mock_database.save_generated_image.assert_awaited_once_with(
        answer.id, image_url, expected_prompt, "What is photosynthesis?",
        'Plants turn sunlight into sugar.', provider='openai'
    )


@pytest.mark.asyncio
async def test_video_uses_generated_prompt(make_functions, make_controller):
    functions = make_functions({
        'chat-completion': {'response': 'Water evaporates, condenses and falls.'},
        'generate-video-prompt': {'videoPrompt': 'Animated water cycle'},
        'video-generation': {'videoUrl': 'data:video/mp4;base64,dmlk', 'provider': 'huggingface'},
    })
    controller = make_controller(functions)
    answer = await controller.send_question("How does rain form?")

    video_url = await controller.handle_generate_video(answer.id)

    assert video_url == answer.generated_video_url == 'data:video/mp4;base64,dmlk'
    assert functions.bodies('generate-video-prompt') == [{
        'userQuestion': 'How does rain form?',
        'aiResponse': 'Water evaporates, condenses and falls.',
    }]
    assert functions.bodies('video-generation') == [{'prompt': 'Animated water cycle'}]


@pytest.mark.asyncio
async def test_turns_are_persisted_for_signed_in_users(make_functions, make_controller, mock_database):
    functions = make_functions({'chat-completion': {'response': '4'}})
    controller = make_controller(functions, database=mock_database, user_id='user-1', auto_speak=True)

    answer = await controller.send_question("What is 2+2?")

    mock_database.create_conversation.assert_awaited_once_with('user-1', 'What is 2+2?')
    assert controller.conversation_id == 'conv-1'
    assert mock_database.save_message.await_count == 2
    mock_database.update_message_playback.assert_awaited_once_with(answer.id, audio_url=answer.audio_url)
    mock_database.save_conversation_audio.assert_awaited_once_with(
        answer.id, answer.audio_url, 'elevenlabs', None
    )


@pytest.mark.asyncio
async def test_storage_failures_do_not_break_the_turn(make_functions, make_controller, mock_database):
    mock_database.save_message.side_effect = AppError("Database storage error: offline")
    controller = make_controller(
        make_functions({'chat-completion': {'response': '4'}}),
        database=mock_database,
        user_id='user-1'
    )

    answer = await controller.send_question("What is 2+2?")

    assert answer.content == '4'
    assert len(controller.messages) == 2


@pytest.mark.asyncio
async def test_anonymous_turns_are_not_persisted(make_functions, make_controller, mock_database):
    controller = make_controller(make_functions({'chat-completion': {'response': '4'}}), database=mock_database)

    await controller.send_question("What is 2+2?")

    assert not controller.is_authenticated
    mock_database.save_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_voice_question_is_transcribed_and_sent(make_functions, make_controller):
    functions = make_functions({
        'speech-to-text': {'text': 'What is 2+2?'},
        'chat-completion': {'response': '4'},
    })
    capture = MagicMock()
    capture.stop.return_value = b'RIFF fake wav'
    controller = make_controller(functions, capture=capture)

    assert controller.start_recording()
    answer = await controller.stop_recording_and_send()

    assert answer.content == '4'
    assert functions.bodies('speech-to-text') == [{'audio': base64.b64encode(b'RIFF fake wav').decode('ascii')}]


@pytest.mark.asyncio
async def test_silent_recording_shows_toast(make_functions, make_controller, notifier):
    transcriber = MagicMock()
    transcriber.transcribe = AsyncMock(side_effect=NoSpeechDetectedError())
    functions = make_functions()
    controller = make_controller(functions, transcriber=transcriber, capture=MagicMock())

    assert await controller.stop_recording_and_send() is None
    assert notifier.last.title == "No speech detected"
    assert functions.calls == []


def test_microphone_denied_shows_toast(make_functions, make_controller, notifier):
    capture = MagicMock()
    capture.start.side_effect = MicrophoneUnavailableError("Permission denied")
    controller = make_controller(make_functions(), capture=capture)

    assert not controller.start_recording()
    assert notifier.last.title == "Microphone Access Required"
    assert notifier.last.description == "Please allow microphone access to use voice features."


@pytest.mark.asyncio
async def test_load_conversation_replaces_messages(make_functions, make_controller, mock_database):
    stored = [Message(content='Hi', role='user'), Message(content='Hello!', role='assistant')]
    mock_database.load_messages.return_value = stored
    controller = make_controller(make_functions(), database=mock_database, user_id='user-1')
    narrated_messages = controller.narrator.messages

    await controller.load_conversation('conv-9')

    assert controller.conversation_id == 'conv-9'
    assert controller.messages == stored
    assert narrated_messages is controller.messages


@pytest.mark.asyncio
async def test_list_conversations(make_functions, make_controller, mock_database):
    anonymous = make_controller(make_functions())
    assert await anonymous.list_conversations() == []

    controller = make_controller(make_functions(), database=mock_database, user_id='user-1')
    conversations = await controller.list_conversations()

    assert conversations[0]['id'] == 'conv-1'
    mock_database.list_conversations.assert_awaited_once_with('user-1', 20)
