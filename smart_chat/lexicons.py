"""能力检测关键词表加载。"""
from __future__ import annotations

import functools
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Tuple

from .exceptions import ChatValidationError

try:
    import yaml
except ImportError as exc:  # pragma: no cover - import guard
    raise ImportError("需要 PyYAML: pip install pyyaml") from exc

logger = logging.getLogger(__name__)

DEFAULT_LEXICON_PATH = Path(__file__).resolve().parent / "lexicons.yaml"
SECTIONS = ("image_generation", "video", "audio_synthesis")


def contains_any(text: str, keywords: Iterable[str]) -> bool:
    """不区分大小写的子串匹配，不做分词。"""
    folded = (text or "").casefold()
    return any(k.casefold() in folded for k in keywords)


@dataclass(frozen=True, slots=True)
class Lexicons:
    """按能力划分的关键词表。"""

    image_generation: Tuple[str, ...]
    video: Tuple[str, ...]
    audio_synthesis: Tuple[str, ...]
    version: str = "custom"

    def wants_image_generation(self, text: str) -> bool:
        return contains_any(text, self.image_generation)

    def wants_video(self, text: str) -> bool:
        return contains_any(text, self.video)

    def wants_audio_synthesis(self, text: str) -> bool:
        return contains_any(text, self.audio_synthesis)

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "Lexicons":
        if not isinstance(data, dict):
            raise ChatValidationError("关键词表顶层必须为字典")
        sections = {}
        for name in SECTIONS:
            words = data.get(name)
            if not isinstance(words, list) or not words:
                raise ChatValidationError(f"关键词表缺少非空列表: {name}")
            cleaned = []
            for word in words:
                if not isinstance(word, str) or not word.strip():
                    raise ChatValidationError(f"关键词表 {name} 含有无效条目: {word!r}")
                cleaned.append(word.strip())
            sections[name] = tuple(cleaned)
        return cls(version=str(data.get("version", "custom")), **sections)


def load_lexicons(path: str | os.PathLike[str] | None = None) -> Lexicons:
    """从 YAML 文件加载关键词表，path 为空时使用内置默认表。"""
    if path is None:
        return default_lexicons()
    return _load(Path(path))


@functools.lru_cache(maxsize=1)
def default_lexicons() -> Lexicons:
    return _load(DEFAULT_LEXICON_PATH)


def _load(lexicon_path: Path) -> Lexicons:
    if not lexicon_path.exists():
        raise ChatValidationError(f"关键词表不存在: {lexicon_path}")
    try:
        data = yaml.safe_load(lexicon_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ChatValidationError(f"关键词表 YAML 解析失败: {exc}") from exc
    lexicons = Lexicons.from_mapping(data)
    logger.debug("已加载关键词表 %s version=%s", lexicon_path, lexicons.version)
    return lexicons


__all__ = ["Lexicons", "contains_any", "load_lexicons", "default_lexicons"]
