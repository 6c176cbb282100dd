from __future__ import annotations

import hashlib


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def chapter_input_hash(novel_id: int, chapter_number: int, title: str, text: str) -> str:
    return sha256_text(f"{novel_id}::{chapter_number}::{title}::{text}")


def roster_hash(character_names: list[str], quest_names: list[str]) -> str:
    """Order-insensitive fingerprint of the canonicalization roster."""

    joined = "\n".join(sorted(character_names)) + "\n--\n" + "\n".join(sorted(quest_names))
    return sha256_text(joined)
