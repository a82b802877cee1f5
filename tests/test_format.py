"""
Unit tests for MessageFormatter and request body construction.
"""

import json

import pytest

from smart_chat.config import DispatchSettings
from smart_chat.exceptions import ChatConfigError, ChatValidationError
from smart_chat.format import PROVIDER_FAMILIES, MessageFormatter, build_chat_body, image_url
from smart_chat.models import Attachment, Capability, Message, Provider, Role, RouteDecision
from smart_chat.router import CapabilityRouter

PNG = Attachment(name="a.png", mime_type="image/png", data="base64:AAAA")


def vision_decision(prompt="SYS"):
    return RouteDecision(provider=Provider.VISION, model="moonshot-v1-8k-vision", capability=Capability.VISION, system_prompt=prompt)


def text_decision(prompt="SYS"):
    return RouteDecision(provider=Provider.BASE_TEXT, model="deepseek-chat", capability=Capability.TEXT, system_prompt=prompt)


class TestMultimodalFormat:
    """Test content-part formatting for vision providers."""

    def test_image_only_message(self, all_credentials):
        """Test the image-upload scenario end to end from a frontend dict."""
        messages = [{"role": "user", "content": "", "files": [{"name": "a.png", "mimeType": "image/png", "payload": "base64:AAAA"}]}]
        decision = CapabilityRouter().decide(messages, credentials=all_credentials)

        body = build_chat_body(decision, messages)

        assert decision.provider is Provider.VISION
        assert body["messages"][-1]["content"] == [
            {"type": "text", "text": "请分析这张图片"},
            {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
        ]

    def test_text_kept_with_image(self):
        msg = Message(role=Role.USER, content="这是什么花", files=(PNG,))

        formatted = MessageFormatter.format([msg], Provider.VISION, "SYS")

        assert formatted[1]["content"][0] == {"type": "text", "text": "这是什么花"}

    def test_multiple_images_in_order(self):
        second = Attachment(name="b.jpg", mime_type="image/jpeg", url="https://cdn.test/b.jpg")
        msg = Message(role=Role.USER, content="对比", files=(PNG, second))

        parts = MessageFormatter.format([msg], Provider.MULTIMODAL, "SYS")[1]["content"]

        assert [p["type"] for p in parts] == ["text", "image_url", "image_url"]
        assert parts[2]["image_url"]["url"] == "https://cdn.test/b.jpg"

    def test_message_without_images_stays_plain(self):
        msg = Message(role=Role.ASSISTANT, content="好的")

        assert MessageFormatter.format([msg], Provider.VISION, "SYS")[1] == {"role": "assistant", "content": "好的"}

    def test_non_image_files_skipped_for_multimodal(self):
        doc = Attachment(name="a.pdf", mime_type="application/pdf", url="https://cdn.test/a.pdf")
        msg = Message(role=Role.USER, content="读一下", files=(doc,))

        assert MessageFormatter.format([msg], Provider.VISION, "SYS")[1] == {"role": "user", "content": "读一下"}


class TestTextFormat:
    """Test flattening for text-only providers."""

    def test_attachment_note_prefix(self):
        audio = Attachment(name="memo.mp3", mime_type="audio/mpeg", url="https://cdn.test/memo.mp3")
        msg = Message(role=Role.USER, content="总结一下", files=(PNG, audio))

        formatted = MessageFormatter.format([msg], Provider.BASE_TEXT, "SYS")

        assert formatted[1] == {"role": "user", "content": "[用户上传了图片、音频]\n\n总结一下"}

    def test_system_prompt_first(self):
        msgs = [Message(role=Role.USER, content="hi"), Message(role=Role.ASSISTANT, content="hello")]

        formatted = MessageFormatter.format(msgs, Provider.BASE_TEXT, "SYS")

        assert formatted[0] == {"role": "system", "content": "SYS"}
        assert [m["role"] for m in formatted] == ["system", "user", "assistant"]

    def test_text_messages_without_system(self):
        assert MessageFormatter.text_messages([{"role": "user", "content": "hi"}]) == [{"role": "user", "content": "hi"}]


class TestImageUrl:
    """Test data URI construction."""

    def test_remote_url_passthrough(self):
        assert image_url(Attachment(name="x", url="https://cdn.test/x.png")) == "https://cdn.test/x.png"

    def test_data_uri_passthrough(self):
        assert image_url(Attachment(name="x", data="data:image/gif;base64,R0lG")) == "data:image/gif;base64,R0lG"

    def test_base64_prefix_stripped(self):
        assert image_url(PNG) == "data:image/png;base64,AAAA"

    def test_default_mime(self):
        assert image_url(Attachment(name="x.jpg", data="/9j/")) == "data:image/jpeg;base64,/9j/"


class TestBuildChatBody:
    """Test request body fields and determinism."""

    def test_idempotent_bytes(self):
        """Test that formatting twice yields byte-identical bodies."""
        msgs = [Message(role=Role.USER, content="看图", files=(PNG,))]
        decision = vision_decision()

        first = json.dumps(build_chat_body(decision, msgs), ensure_ascii=False, sort_keys=False)
        second = json.dumps(build_chat_body(decision, msgs), ensure_ascii=False, sort_keys=False)

        assert first == second

    def test_fields(self):
        body = build_chat_body(text_decision(), [Message(role=Role.USER, content="hi")], DispatchSettings(temperature=0.2, max_tokens=100))

        assert body["model"] == "deepseek-chat"
        assert body["stream"] is True
        assert body["temperature"] == 0.2
        assert body["max_tokens"] == 100

    def test_model_override(self):
        body = build_chat_body(text_decision(), [Message(role=Role.USER, content="hi")], model="deepseek-reasoner")

        assert body["model"] == "deepseek-reasoner"

    def test_inputs_not_mutated(self):
        raw = [{"role": "user", "content": "hi", "files": []}]
        snapshot = json.dumps(raw)

        build_chat_body(text_decision(), raw)

        assert json.dumps(raw) == snapshot


class TestProviderTables:
    """Test that every provider is registered for formatting."""

    def test_every_provider_has_family(self):
        for provider in Provider:
            assert MessageFormatter.family(provider) in ("text", "multimodal")

    def test_family_table_is_exhaustive(self):
        assert set(PROVIDER_FAMILIES) == set(Provider)

    def test_unknown_provider_rejected(self):
        with pytest.raises(ChatConfigError):
            MessageFormatter.family("carrier-pigeon")


class TestMessageValidation:
    """Test message and attachment invariants."""

    def test_empty_message_without_files_rejected(self):
        with pytest.raises(ChatValidationError):
            Message(role=Role.USER, content="")

    def test_unknown_role_rejected(self):
        with pytest.raises(ChatValidationError):
            Message.from_dict({"role": "tool", "content": "x"})

    def test_attachment_needs_exactly_one_source(self):
        with pytest.raises(ChatValidationError):
            Attachment(name="x")
        with pytest.raises(ChatValidationError):
            Attachment(name="x", url="https://a", data="AAAA")

    def test_role_coerced_from_string(self):
        assert Message(role="assistant", content="ok").role is Role.ASSISTANT
