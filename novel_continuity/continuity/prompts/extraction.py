from __future__ import annotations

EXTRACTION_PROMPT_VERSION = "v1-core-state"

_NONE_MARKER = {"zh": "（暂无）", "en": "(none yet)"}


def _roster_block(names: list[str], language: str) -> str:
    if not names:
        return _NONE_MARKER.get(language, _NONE_MARKER["en"])
    return "\n".join(f"- {name}" for name in names)


def extraction_prompt(language: str, roster_names: list[str], quest_names: list[str]) -> tuple[str, str]:
    """Return (system, user_template); the template takes chapter_number/chapter_title/chapter_text."""

    roster = _roster_block(roster_names, language).replace("{", "{{").replace("}", "}}")
    quests = _roster_block(quest_names, language).replace("{", "{{").replace("}", "}}")

    if language == "en":
        system = (
            "You extract the core story state from a freshly written novel chapter. "
            "Output strictly valid JSON only: no markdown, no explanations."
        )
        user = (
            "Chapter {chapter_number}: {chapter_title}\n\n"
            "Known characters (reuse these names verbatim, including any qualifier in parentheses):\n"
            f"{roster}\n\n"
            "Open quests (reuse these names verbatim when the chapter advances them):\n"
            f"{quests}\n\n"
            "Rules:\n"
            "- protagonist: the point-of-view character with location, realm (power tier), inventory and alive flag.\n"
            "- keyCharacters: at most 3 other characters who matter in this chapter, with their relation to the protagonist.\n"
            "- questProgress: quest name -> one short progress phrase; say 'completed' when it is resolved "
            "and 'blocked' when it stalls.\n"
            "- If a new character shares a name with a known one but is a different person, add a qualifier "
            "in parentheses, e.g. \"Name (role)\".\n"
            "- Leave a field out instead of guessing.\n"
            'Output JSON only: {{"protagonist": {{"name": "", "location": "", "realm": "", "inventory": [], '
            '"alive": true}}, "keyCharacters": [{{"name": "", "location": "", "relation": ""}}], '
            '"questProgress": {{"quest name": "progress"}}}}\n\n'
            "<chapter_text>\n"
            "{chapter_text}\n"
            "</chapter_text>\n"
        )
        return system, user

    system = "你是小说连载的状态抽取器，负责从新写成的章节中提取核心状态。只输出严格有效 JSON，不要输出 markdown，不要输出解释。"
    user = (
        "第{chapter_number}章：{chapter_title}\n\n"
        "已知角色（必须原样复用这些名字，包括括号中的限定词）：\n"
        f"{roster}\n\n"
        "未完成任务（本章推进这些任务时原样复用任务名）：\n"
        f"{quests}\n\n"
        "要求：\n"
        "- protagonist：主角的名字、所在地点、境界、随身物品、是否存活。\n"
        "- keyCharacters：本章最重要的其他角色，最多 3 个，写明与主角的关系。\n"
        "- questProgress：任务名 -> 简短进展；任务已完成写“完成”，推进受阻写“受阻”。\n"
        "- 新角色与已知角色同名但不是同一人时，用括号加限定词区分，例如“名字（身份）”。\n"
        "- 不确定的字段直接省略，不要臆造。\n"
        '仅输出 JSON：{{"protagonist": {{"name": "", "location": "", "realm": "", "inventory": [], '
        '"alive": true}}, "keyCharacters": [{{"name": "", "location": "", "relation": ""}}], '
        '"questProgress": {{"任务名": "进展"}}}}\n\n'
        "<chapter_text>\n"
        "{chapter_text}\n"
        "</chapter_text>\n"
    )
    return system, user
