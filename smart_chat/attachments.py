"""附件分类：先看 MIME 前缀，MIME 缺失时再看扩展名。"""
from __future__ import annotations

from typing import Iterable, Optional

from .models import Attachment, Message

IMAGE = "image"
AUDIO = "audio"
FILE = "file"

IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "webp", "bmp"})
# 豆包语音识别支持的格式
AUDIO_EXTENSIONS = frozenset({"mp3", "wav", "opus", "ogg", "flac", "m4a", "aac", "amr", "wma"})

CATEGORY_LABELS = {IMAGE: "图片", AUDIO: "音频", FILE: "文件"}


def _extension(name: Optional[str]) -> str:
    if not name or "." not in name:
        return ""
    return name.rsplit(".", 1)[-1].lower()


def classify(attachment: Attachment) -> str:
    mime = (attachment.mime_type or "").strip().lower()
    if mime:
        if mime.startswith("image/"):
            return IMAGE
        if mime.startswith("audio/"):
            return AUDIO
        return FILE
    ext = _extension(attachment.name)
    if ext in IMAGE_EXTENSIONS:
        return IMAGE
    if ext in AUDIO_EXTENSIONS:
        return AUDIO
    return FILE


def images_of(message: Message) -> list[Attachment]:
    return [f for f in message.files if classify(f) == IMAGE]


def has_category(message: Optional[Message], category: str) -> bool:
    if message is None:
        return False
    return any(classify(f) == category for f in message.files)


def describe(files: Iterable[Attachment]) -> str:
    """生成 "图片、音频" 形式的附件说明。"""
    return "、".join(CATEGORY_LABELS[classify(f)] for f in files)


__all__ = [
    "IMAGE",
    "AUDIO",
    "FILE",
    "IMAGE_EXTENSIONS",
    "AUDIO_EXTENSIONS",
    "classify",
    "images_of",
    "has_category",
    "describe",
]
