"""Keyword reply rules and saved audio assets."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any


@dataclass
class KeywordRule:
    """Reply configured for an exact inbound keyword."""

    keyword: str
    reply_type: str = "text"  # text, audio
    message: str | None = None
    audio_id: str | None = None

    @property
    def is_audio(self) -> bool:
        return self.reply_type == "audio"

    @classmethod
    def from_config(cls, raw: dict[str, Any]) -> "KeywordRule":
        return cls(
            keyword=str(raw.get("keyword") or ""),
            reply_type=str(raw.get("replyType") or raw.get("reply_type") or "text"),
            message=raw.get("message"),
            audio_id=raw.get("audioId") or raw.get("audio_id"),
        )


@dataclass
class SavedAudio:
    """Pre-recorded audio asset."""

    id: str
    name: str
    path: str


def parse_rules(raw_rules: list[dict[str, Any]] | None) -> list[KeywordRule]:
    """Parse the stored rule list, skipping entries without a keyword."""
    rules = []
    for raw in raw_rules or []:
        if not isinstance(raw, dict):
            continue
        rule = KeywordRule.from_config(raw)
        if rule.keyword.strip():
            rules.append(rule)
    return rules


def find_rule(rules: list[KeywordRule], text: str | None) -> KeywordRule | None:
    """Exact, case-insensitive, whitespace-trimmed keyword match.

    Returns:
        The first matching rule, or None (no reply)
    """
    if not text:
        return None
    needle = text.strip().lower()
    if not needle:
        return None
    for rule in rules:
        if rule.keyword.strip().lower() == needle:
            return rule
    return None


def find_audio(saved_audios: list[dict[str, Any]] | None, audio_id: str | None) -> SavedAudio | None:
    """Look up a saved audio asset by id."""
    if not audio_id:
        return None
    for raw in saved_audios or []:
        if isinstance(raw, dict) and str(raw.get("id")) == str(audio_id) and raw.get("path"):
            return SavedAudio(id=str(raw["id"]), name=str(raw.get("name") or ""), path=str(raw["path"]))
    return None


def resolve_audio_path(audio: SavedAudio, data_dir: str | Path) -> Path:
    """Absolute location of an asset; relative paths live under ``data_dir``."""
    path = Path(audio.path)
    if path.is_absolute():
        return path
    return Path(data_dir) / path
