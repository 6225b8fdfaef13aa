import base64
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from openai import OpenAIError

from services.ai_provider import (
    EnhancedImage,
    OpenRouterProvider,
    PassthroughProvider,
    ReferenceImage,
    TextOnly,
    decode_data_url,
    get_ai_provider,
    parse_chat_message,
)
from services.errors import ProviderUnavailableError, ValidationError
from services.prompts import build_prompt, normalize_parameters


IMAGE_BYTES = b"\x89PNG\r\n\x1a\ngenerated"
DATA_URL = "data:image/webp;base64," + base64.b64encode(IMAGE_BYTES).decode("utf-8")


def _mock_client(message):
    response = SimpleNamespace(choices=[SimpleNamespace(message=MagicMock(model_dump=lambda: message))])
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=response)
    return client


def test_decode_data_url_extracts_mime_and_bytes():
    assert decode_data_url(DATA_URL) == (IMAGE_BYTES, "image/webp")
    assert decode_data_url("https://example.com/a.png") is None


def test_parse_chat_message_reads_images_field():
    result = parse_chat_message({"content": "Here you go", "images": [{"image_url": {"url": DATA_URL}}]})
    assert result == EnhancedImage(image_bytes=IMAGE_BYTES, mime_type="image/webp")


def test_parse_chat_message_reads_content_parts():
    message = {
        "content": [
            {"type": "text", "text": "Edited."},
            {"type": "image_url", "image_url": {"url": DATA_URL}},
        ]
    }
    assert isinstance(parse_chat_message(message), EnhancedImage)


def test_parse_chat_message_reads_b64_json_part():
    message = {"content": [{"type": "image", "b64_json": base64.b64encode(IMAGE_BYTES).decode("utf-8")}]}
    result = parse_chat_message(message)
    assert result.image_bytes == IMAGE_BYTES
    assert result.mime_type == "image/png"


def test_parse_chat_message_reads_data_url_string():
    assert parse_chat_message({"content": DATA_URL}).image_bytes == IMAGE_BYTES


def test_parse_chat_message_without_image_is_text_only():
    result = parse_chat_message({"content": "I can't help with that photo."})
    assert result == TextOnly(text="I can't help with that photo.")
    assert parse_chat_message({"content": None}) == TextOnly(text="")


@pytest.mark.asyncio
async def test_openrouter_provider_sends_prompt_and_images():
    client = _mock_client({"content": "", "images": [{"image_url": {"url": DATA_URL}}]})
    provider = OpenRouterProvider(api_key="sk-or-test", model="test/model", client=client)

    result = await provider.enhance(
        b"original",
        "image/jpeg",
        "faceSwap",
        {},
        reference_image=ReferenceImage(image_bytes=b"face", mime_type="image/png"),
    )

    assert result.image_bytes == IMAGE_BYTES
    kwargs = client.chat.completions.create.await_args.kwargs
    assert kwargs["model"] == "test/model"
    assert kwargs["extra_body"] == {"modalities": ["image", "text"]}
    content = kwargs["messages"][0]["content"]
    assert content[0]["text"] == build_prompt("faceSwap", {})
    assert content[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")
    assert content[2]["image_url"]["url"].startswith("data:image/png;base64,")


@pytest.mark.asyncio
async def test_openrouter_provider_maps_sdk_errors():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=OpenAIError("rate limited"))
    provider = OpenRouterProvider(api_key="sk-or-test", client=client)

    with pytest.raises(ProviderUnavailableError) as exc_info:
        await provider.enhance(b"original", "image/png", "enhance", {"enhanceType": "auto"})
    assert "rate limited" in exc_info.value.message


@pytest.mark.asyncio
async def test_openrouter_provider_rejects_empty_choices():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(choices=[]))
    provider = OpenRouterProvider(api_key="sk-or-test", client=client)

    with pytest.raises(ProviderUnavailableError):
        await provider.enhance(b"original", "image/png", "restore", {})


@pytest.mark.asyncio
async def test_passthrough_provider_never_returns_an_image():
    provider = PassthroughProvider()
    result = await provider.enhance(b"original", "image/png", "enhance", {})
    assert isinstance(result, TextOnly)
    assert provider.configured is False


def test_get_ai_provider_depends_on_key():
    with patch("config.settings.OPENROUTER_API_KEY", ""):
        assert isinstance(get_ai_provider(), PassthroughProvider)
    with patch("config.settings.OPENROUTER_API_KEY", "your_openrouter_key"):
        assert isinstance(get_ai_provider(), PassthroughProvider)
    with patch("config.settings.OPENROUTER_API_KEY", "sk-or-live"):
        assert isinstance(get_ai_provider(), OpenRouterProvider)


def test_normalize_parameters_applies_defaults_and_bounds():
    assert normalize_parameters("enhance", None) == {"enhanceType": "auto"}
    assert normalize_parameters("filter", {"filter": "noir"}) == {"filter": "noir"}
    assert normalize_parameters("aging", {"targetAge": "30"}) == {"targetAge": 30}
    assert normalize_parameters("restore", {"ignored": True}) == {}
    with pytest.raises(ValidationError):
        normalize_parameters("aging", {"targetAge": 0})
    with pytest.raises(ValidationError):
        normalize_parameters("styleTransfer", {"style": "cubism"})


@pytest.mark.parametrize(
    "operation_type,parameters",
    [
        ("enhance", {"enhanceType": ["auto"]}),
        ("enhance", {"enhanceType": {"a": 1}}),
        ("styleTransfer", {"style": ["anime"]}),
        ("filter", {"filter": {"noir": True}}),
        ("aging", {"targetAge": 30.7}),
        ("aging", {"targetAge": [30]}),
        ("aging", {"targetAge": True}),
    ],
)
def test_normalize_parameters_rejects_non_scalar_and_fractional_values(operation_type, parameters):
    with pytest.raises(ValidationError):
        normalize_parameters(operation_type, parameters)


def test_normalize_parameters_accepts_integral_float_age():
    assert normalize_parameters("aging", {"targetAge": 30.0}) == {"targetAge": 30}


def test_build_prompt_includes_target_age():
    assert "45" in build_prompt("aging", {"targetAge": 45})
    with pytest.raises(ValidationError):
        build_prompt("babyGenerator")
