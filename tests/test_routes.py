import base64

import pytest
from unittest.mock import AsyncMock, MagicMock

from api.routes import Services, create_app
from lumen.error_handler import AppError, RateLimitError, TranscriptionTimeoutError


@pytest.fixture
def services():
    return Services(
        speech_to_text=MagicMock(transcribe=AsyncMock(return_value='What is 2+2?')),
        text_to_speech=MagicMock(synthesize=AsyncMock(return_value='bXAz')),
        chat=MagicMock(
            complete=AsyncMock(return_value={'response': '4', 'conversationHistory': []}),
            generate_prompt=AsyncMock(return_value='A prompt')
        ),
        images=MagicMock(generate=AsyncMock(return_value={'imageUrl': 'data:image/png;base64,aW1n', 'revisedPrompt': None})),
        video=MagicMock(generate=AsyncMock(return_value={'videoUrl': 'data:video/mp4;base64,dmlk', 'provider': 'huggingface'})),
    )


@pytest.fixture
def test_client(services):
    app = create_app(services)
    app.config['TESTING'] = True
    return app.test_client()


def test_health(test_client):
    response = test_client.get('/')
    assert response.status_code == 200
    assert response.get_json()['status'] == 'ok'


def test_preflight_has_cors_headers(test_client):
    response = test_client.options('/functions/v1/chat-completion')
    assert response.status_code == 200
    assert response.headers['Access-Control-Allow-Origin'] == '*'
    assert 'apikey' in response.headers['Access-Control-Allow-Headers']


def test_chat_completion(test_client, services):
    response = test_client.post('/functions/v1/chat-completion', json={
        'message': 'What is 2+2?',
        'conversationHistory': [{'role': 'user', 'content': 'Hi'}],
    })

    assert response.status_code == 200
    assert response.get_json()['response'] == '4'
    assert response.headers['Access-Control-Allow-Origin'] == '*'
    services.chat.complete.assert_awaited_once_with(
        'What is 2+2?', [{'role': 'user', 'content': 'Hi'}], []
    )


def test_chat_completion_requires_message(test_client):
    response = test_client.post('/functions/v1/chat-completion', json={})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Missing "message" in request body'


def test_chat_rate_limit(test_client, services):
    services.chat.complete.side_effect = RateLimitError(
        "Gemini rate limit exceeded. Please try again in a moment.", provider='gemini', retry_after='15'
    )

    response = test_client.post('/functions/v1/chat-completion', json={'message': 'Hi'})

    assert response.status_code == 429
    assert response.get_json() == {
        'error': "Gemini rate limit exceeded. Please try again in a moment.",
        'type': 'rate_limit',
        'retryAfter': '15',
    }


def test_speech_to_text(test_client, services):
    audio = base64.b64encode(b'wav-bytes').decode('ascii')

    response = test_client.post('/functions/v1/speech-to-text', json={'audio': audio})

    assert response.status_code == 200
    assert response.get_json() == {'text': 'What is 2+2?'}
    services.speech_to_text.transcribe.assert_awaited_once_with(b'wav-bytes')


def test_speech_to_text_requires_audio(test_client):
    response = test_client.post('/functions/v1/speech-to-text', json={})
    assert response.status_code == 500
    assert response.get_json()['error'] == 'No audio data provided'


def test_speech_to_text_timeout(test_client, services):
    services.speech_to_text.transcribe.side_effect = TranscriptionTimeoutError()

    response = test_client.post('/functions/v1/speech-to-text', json={'audio': 'AAAA'})

    assert response.status_code == 500
    assert response.get_json()['error'] == "Transcription timeout - please try again"


def test_text_to_speech(test_client, services):
    response = test_client.post('/functions/v1/text-to-speech', json={'text': 'Hello', 'voice': 'Aria'})

    assert response.status_code == 200
    assert response.get_json() == {'audioContent': 'bXAz'}
    services.text_to_speech.synthesize.assert_awaited_once_with('Hello', 'Aria')


def test_text_to_speech_failure(test_client, services):
    services.text_to_speech.synthesize.side_effect = AppError("Both TTS services failed.", status_code=400)

    response = test_client.post('/functions/v1/text-to-speech', json={'text': 'Hello'})

    assert response.status_code == 400
    assert response.get_json()['error'] == "Both TTS services failed."


def test_text_to_speech_requires_text(test_client):
    assert test_client.post('/functions/v1/text-to-speech', json={}).status_code == 400


@pytest.mark.parametrize("name, key, kind", [
    ('generate-image-prompt', 'imagePrompt', 'image'),
    ('generate-video-prompt', 'videoPrompt', 'video'),
])
def test_prompt_generation(test_client, services, name, key, kind):
    response = test_client.post(f'/functions/v1/{name}', json={
        'userQuestion': 'What is photosynthesis?',
        'aiResponse': 'Plants make sugar from light.',
    })

    assert response.status_code == 200
    assert response.get_json() == {key: 'A prompt'}
    services.chat.generate_prompt.assert_awaited_once_with(
        'What is photosynthesis?', 'Plants make sugar from light.', kind
    )


def test_prompt_generation_requires_both_fields(test_client):
    response = test_client.post('/functions/v1/generate-image-prompt', json={'userQuestion': 'Q'})
    assert response.status_code == 400


def test_image_and_video_generation(test_client):
    image = test_client.post('/functions/v1/image-generation', json={'prompt': 'A leaf'})
    video = test_client.post('/functions/v1/video-generation', json={'prompt': 'A leaf'})

    assert image.get_json()['imageUrl'] == 'data:image/png;base64,aW1n'
    assert video.get_json() == {'videoUrl': 'data:video/mp4;base64,dmlk', 'provider': 'huggingface'}
    assert test_client.post('/functions/v1/image-generation', json={}).status_code == 400


def test_unexpected_errors_return_500(test_client, services):
    services.video.generate.side_effect = KeyError('frames')

    response = test_client.post('/functions/v1/video-generation', json={'prompt': 'A leaf'})

    assert response.status_code == 500
    assert response.get_json()['error'] == 'Edge function crashed'
