"""
Unit tests for CapabilityRouter.

Tests priority order, credential degradation and prompt composition.
"""

import itertools

import pytest

from smart_chat.config import CredentialAvailability
from smart_chat.exceptions import ChatConfigError
from smart_chat.lexicons import Lexicons
from smart_chat.models import Attachment, Capability, Message, Provider, Role
from smart_chat.prompts import BRAND_IDENTITY
from smart_chat.router import CAPABILITY_PROVIDERS, FALLBACK_REASONS, PROVIDER_CREDENTIALS, CapabilityRouter, RouteModels

IMAGE = Attachment(name="cat.png", mime_type="image/png", data="base64:AAAA")
AUDIO = Attachment(name="memo.mp3", mime_type="audio/mpeg", url="https://cdn.test/memo.mp3")


def user(content="", *files):
    return Message(role=Role.USER, content=content, files=files)


def all_availabilities():
    for vision, multimodal, transcription in itertools.product((True, False), repeat=3):
        yield CredentialAvailability(base_text=True, vision=vision, multimodal=multimodal, transcription=transcription)


class TestRouterPriority:
    """Test the fixed capability priority order."""

    def test_audio_beats_image_generation_keywords(self, all_credentials):
        """Test that an audio attachment wins even with drawing keywords."""
        decision = CapabilityRouter().decide([user("帮我画一只猫", AUDIO)], credentials=all_credentials)

        assert decision.capability is Capability.AUDIO_TRANSCRIPTION
        assert decision.provider is Provider.TRANSCRIPTION

    def test_image_generation_beats_image_attachment(self, all_credentials):
        decision = CapabilityRouter().decide([user("参考这张图，生成图片", IMAGE)], credentials=all_credentials)

        assert decision.capability is Capability.IMAGE_GENERATION
        assert decision.provider is Provider.MULTIMODAL

    def test_image_attachment_beats_video_keyword(self, all_credentials):
        decision = CapabilityRouter().decide([user("这是视频截图", IMAGE)], credentials=all_credentials)

        assert decision.capability is Capability.VISION
        assert decision.provider is Provider.VISION

    def test_video_beats_audio_synthesis(self, all_credentials):
        decision = CapabilityRouter().decide([user("给视频配上语音")], credentials=all_credentials)

        assert decision.capability is Capability.VIDEO

    def test_audio_synthesis_keyword(self, all_credentials):
        decision = CapabilityRouter().decide([user("请朗读这段话")], credentials=all_credentials)

        assert decision.capability is Capability.AUDIO
        assert decision.provider is Provider.MULTIMODAL

    def test_plain_text_defaults(self, all_credentials):
        decision = CapabilityRouter().decide([user("你好")], credentials=all_credentials)

        assert decision.capability is Capability.TEXT
        assert decision.provider is Provider.BASE_TEXT
        assert decision.model == "deepseek-chat"
        assert not decision.degraded

    def test_only_latest_user_message_counts(self, all_credentials):
        """Test that earlier turns do not influence routing."""
        messages = [
            user("画一只猫"),
            Message(role=Role.ASSISTANT, content="好的"),
            user("谢谢"),
        ]

        decision = CapabilityRouter().decide(messages, credentials=all_credentials)

        assert decision.capability is Capability.TEXT

    def test_no_user_message_defaults_to_text(self, all_credentials):
        decision = CapabilityRouter().decide([Message(role=Role.ASSISTANT, content="欢迎")], credentials=all_credentials)

        assert decision.capability is Capability.TEXT

    def test_accepts_frontend_dicts(self, all_credentials):
        """Test routing straight from frontend message dicts."""
        messages = [{"role": "user", "content": "", "files": [{"name": "a.png", "mimeType": "image/png", "payload": "base64:AAAA"}]}]

        decision = CapabilityRouter().decide(messages, credentials=all_credentials)

        assert decision.capability is Capability.VISION


class TestRouterKeywords:
    """Test keyword matching."""

    def test_case_insensitive(self, all_credentials):
        router = CapabilityRouter()

        first = router.decide([user("请帮我 Generate Image of a cat")], credentials=all_credentials)
        second = router.decide([user("请帮我 generate IMAGE of a cat")], credentials=all_credentials)

        assert first == second
        assert first.capability is Capability.IMAGE_GENERATION

    def test_substring_match_without_tokenisation(self, all_credentials):
        """Test that keywords match inside longer words."""
        decision = CapabilityRouter().decide([user("please redraw this")], credentials=all_credentials)

        assert decision.capability is Capability.IMAGE_GENERATION

    def test_custom_lexicons(self, all_credentials):
        lexicons = Lexicons(image_generation=("paint",), video=("clip",), audio_synthesis=("read aloud",))
        router = CapabilityRouter(lexicons=lexicons)

        assert router.decide([user("paint a boat")], credentials=all_credentials).capability is Capability.IMAGE_GENERATION
        assert router.decide([user("画一只猫")], credentials=all_credentials).capability is Capability.TEXT
        assert router.decide([user("a short clip")], credentials=all_credentials).capability is Capability.VIDEO
        assert router.decide([user("read aloud")], credentials=all_credentials).capability is Capability.AUDIO

    def test_audio_classified_by_extension_without_mime(self, all_credentials):
        voice = Attachment(name="voice.M4A", data="AAAA")

        decision = CapabilityRouter().decide([user("", voice)], credentials=all_credentials)

        assert decision.capability is Capability.AUDIO_TRANSCRIPTION

    def test_mime_overrides_extension(self, all_credentials):
        """Test that a non-media MIME type keeps a .png name from counting as an image."""
        doc = Attachment(name="scan.png", mime_type="application/pdf", data="AAAA")

        decision = CapabilityRouter().decide([user("看看这个", doc)], credentials=all_credentials)

        assert decision.capability is Capability.TEXT


class TestRouterDegradation:
    """Test behaviour when optional credentials are missing."""

    def test_draw_cat_without_openai(self):
        creds = CredentialAvailability(base_text=True, vision=True, multimodal=False, transcription=True)

        decision = CapabilityRouter().decide([user("画一只猫")], credentials=creds)

        assert decision.provider is Provider.BASE_TEXT
        assert decision.capability is Capability.TEXT
        assert decision.degraded is True
        assert "图像生成" in decision.reason
        assert decision.hard_failure is False
        assert decision.system_prompt.startswith("【提示】")

    @pytest.mark.parametrize(
        "message, capability",
        [
            (user("", AUDIO), Capability.AUDIO_TRANSCRIPTION),
            (user("生成图片：海边日落"), Capability.IMAGE_GENERATION),
            (user("分析这个视频"), Capability.VIDEO),
            (user("文本转语音"), Capability.AUDIO),
        ],
    )
    def test_soft_degradation(self, base_only, message, capability):
        decision = CapabilityRouter().decide([message], credentials=base_only)

        assert decision.provider is Provider.BASE_TEXT
        assert decision.degraded is True
        assert decision.hard_failure is False
        assert decision.reason == FALLBACK_REASONS[capability]
        assert decision.reason in decision.system_prompt

    def test_vision_does_not_degrade_silently(self, base_only):
        """Test that a missing vision key yields an explicit failure notice."""
        decision = CapabilityRouter().decide([user("这是什么", IMAGE)], credentials=base_only)

        assert decision.provider is Provider.BASE_TEXT
        assert decision.hard_failure is True
        assert "MOONSHOT_API_KEY" in decision.reason
        assert "重试" in decision.reason
        assert decision.system_prompt.startswith("【错误】")
        assert "不得描述" in decision.system_prompt
        assert "请配置相应的API密钥后重新上传图片" in decision.system_prompt

    def test_never_routes_to_unavailable_provider(self):
        """Test every scenario against every optional credential combination."""
        scenarios = [
            user("", AUDIO),
            user("画一只猫"),
            user("", IMAGE),
            user("视频"),
            user("voice"),
            user("你好"),
        ]
        router = CapabilityRouter()

        for creds in all_availabilities():
            for message in scenarios:
                decision = router.decide([message], credentials=creds)
                assert getattr(creds, PROVIDER_CREDENTIALS[decision.provider]), (creds, message)

    def test_missing_baseline_raises(self):
        creds = CredentialAvailability(base_text=False, vision=True, multimodal=True, transcription=True)

        with pytest.raises(ChatConfigError) as exc_info:
            CapabilityRouter().decide([user("你好")], credentials=creds)

        assert "DEEPSEEK_API_KEY" in str(exc_info.value)
        assert exc_info.value.kind == "configuration-missing"

    def test_missing_baseline_with_available_target_still_routes(self):
        """Test that a reachable non-text capability does not need the base key."""
        creds = CredentialAvailability(base_text=False, vision=True)

        decision = CapabilityRouter().decide([user("", IMAGE)], credentials=creds)

        assert decision.provider is Provider.VISION

    def test_default_lists_missing_optional_keys(self, base_only):
        decision = CapabilityRouter().decide([user("你好")], credentials=base_only)

        assert len(decision.missing_keys) == 3
        assert not any(k.startswith("DEEPSEEK_API_KEY") for k in decision.missing_keys)
        assert "检测到以下API密钥未配置" in decision.system_prompt

    def test_default_without_missing_keys_has_no_notice(self, all_credentials):
        decision = CapabilityRouter().decide([user("你好")], credentials=all_credentials)

        assert decision.missing_keys == ()
        assert decision.system_prompt.startswith(BRAND_IDENTITY)


class TestRouterPrompt:
    """Test system prompt composition."""

    def test_page_context_and_locale(self, all_credentials):
        decision = CapabilityRouter().decide(
            [user("介绍一下 AURION")], page_context="/products/aurion", credentials=all_credentials, locale="en-US"
        )

        assert "（当前页面：/products/aurion）" in decision.system_prompt
        assert "使用英文回答" in decision.system_prompt

    def test_capability_fragment(self, all_credentials):
        decision = CapabilityRouter().decide([user("", IMAGE)], credentials=all_credentials)

        assert "QELAR (Nebulix-Vision)" in decision.system_prompt

    def test_custom_models(self, all_credentials):
        router = CapabilityRouter(models=RouteModels(vision="kimi-vision"))

        decision = router.decide([user("", IMAGE)], credentials=all_credentials)

        assert decision.model == "kimi-vision"

    def test_deterministic(self, base_only):
        router = CapabilityRouter()
        messages = [user("画一只猫")]

        assert router.decide(messages, "/home", base_only) == router.decide(messages, "/home", base_only)

    def test_payload_shape(self, base_only):
        payload = CapabilityRouter().decide([user("画一只猫")], credentials=base_only).to_payload()

        assert payload["provider"] == "base-text"
        assert payload["capability"] == "text"
        assert payload["degraded"] is True


class TestRoutingTables:
    """Test that routing tables cover every enum member."""

    def test_every_provider_has_credential_field(self):
        fields = set(CredentialAvailability.__slots__)

        for provider in Provider:
            assert PROVIDER_CREDENTIALS[provider] in fields

    def test_every_capability_has_provider_and_model(self):
        models = RouteModels()

        for capability in Capability:
            assert CAPABILITY_PROVIDERS[capability] in Provider
            assert models.for_capability(capability)

    def test_every_degradable_capability_has_reason(self):
        for capability in Capability:
            if capability is not Capability.TEXT:
                assert capability in FALLBACK_REASONS
