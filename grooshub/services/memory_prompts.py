"""
Prompts for the background memory pipeline, in Dutch (default) and English.
"""

from typing import Optional

DEFAULT_LOCALE = "nl"
SUPPORTED_LOCALES = ("nl", "en")

ROLE_LABELS = {
    "nl": {"user": "Gebruiker", "assistant": "Assistent"},
    "en": {"user": "User", "assistant": "Assistant"},
}


def normalize_locale(locale: Optional[str]) -> str:
    return locale if locale in SUPPORTED_LOCALES else DEFAULT_LOCALE


def format_conversation(messages: list[dict], locale: str = DEFAULT_LOCALE, last_n: Optional[int] = None) -> str:
    """Render user/assistant turns as 'Role: text' blocks. Tool and system turns are skipped."""
    labels = ROLE_LABELS[normalize_locale(locale)]
    selected = messages[-last_n:] if last_n else messages
    lines = []
    for msg in selected:
        role = msg.get("role")
        if role not in labels or not msg.get("content"):
            continue
        lines.append(f"{labels[role]}: {msg['content']}")
    return "\n\n".join(lines)


# ── Summarization only ───────────────────────────────────────────────

def summarization_prompt(messages: list[dict], locale: str = DEFAULT_LOCALE) -> str:
    locale = normalize_locale(locale)
    conversation = format_conversation(messages, locale)

    if locale == "nl":
        return f"""Vat het volgende gesprek samen in een beknopt overzicht.

## Gesprek

{conversation}

## Taak

Maak een beknopte samenvatting (max 300 woorden) van dit gesprek. Focus op:
1. Hoofdonderwerpen die besproken zijn
2. Belangrijke vragen en antwoorden
3. Conclusies of beslissingen

Retourneer JSON in dit format:
```json
{{"text": "Beknopte samenvatting...", "keyPoints": ["Kernpunt 1", "Kernpunt 2"]}}
```"""

    return f"""Summarize the following conversation in a concise overview.

## Conversation

{conversation}

## Task

Create a concise summary (max 300 words) of this conversation. Focus on:
1. Main topics discussed
2. Important questions and answers
3. Conclusions or decisions

Return JSON in this format:
```json
{{"text": "Concise summary...", "keyPoints": ["Key point 1", "Key point 2"]}}
```"""


# ── Unified analysis (summary + memory in one call) ──────────────────

_SUMMARY_TASK = {
    "nl": """### Deel 1: Samenvatting
Vat de berichten onder "Samen te vatten" samen (max 300 woorden): hoofdonderwerpen,
belangrijke vragen en antwoorden, conclusies of beslissingen.""",
    "en": """### Part 1: Summary
Summarize the messages under "To summarize" (max 300 words): main topics,
important questions and answers, conclusions or decisions.""",
}

_MEMORY_TASK = {
    "nl": """### Deel 2: Geheugen
Bepaal of het gesprek nieuwe, blijvende informatie over de gebruiker bevat:
naam en rol, voorkeuren (beknopt of gedetailleerd, taal, opmaak), terugkerende
taken, huidige projecten en interesses.

- Houd het geheugen BEKNOPT: maximaal ~{target} tokens
- Alleen concrete, verifieerbare feiten uit het gesprek
- Verwijder verouderde informatie
- Markeer een voorkeur als isExplicit wanneer de gebruiker die letterlijk uitspreekt
- projectFacts zijn feiten over het project, niet over de gebruiker
- Zonder nieuwe informatie: shouldUpdate = false""",
    "en": """### Part 2: Memory
Decide whether the conversation holds new, lasting information about the user:
name and role, preferences (brief or detailed, language, formatting), recurring
tasks, current projects and interests.

- Keep memory BRIEF: max ~{target} tokens
- Only concrete, verifiable facts from the conversation
- Remove outdated information
- Mark a preference isExplicit when the user states it literally
- projectFacts are facts about the project, not about the user
- With no new information: shouldUpdate = false""",
}

_HEADINGS = {
    "nl": {
        "intro": "Je analyseert een gesprek voor het geheugensysteem van een AI-assistent.",
        "memory": "Huidig gebruikersgeheugen",
        "no_memory": "(Nog geen geheugen - dit is de eerste keer)",
        "summarize": "Samen te vatten",
        "recent": "Recent gesprek",
        "output": "Retourneer ALLEEN JSON in dit format (laat een deel weg als het niet gevraagd is):",
    },
    "en": {
        "intro": "You are analyzing a conversation for an AI assistant's memory system.",
        "memory": "Current user memory",
        "no_memory": "(No memory yet - this is the first time)",
        "summarize": "To summarize",
        "recent": "Recent conversation",
        "output": "Return ONLY JSON in this format (omit a part if it was not requested):",
    },
}

_OUTPUT_FORMAT = """```json
{
  "summary": {"text": "...", "keyPoints": ["..."]},
  "memory": {
    "shouldUpdate": true,
    "reason": "max 100 chars",
    "memoryContent": "full updated memory text",
    "identity": {"name": null, "role": null},
    "preferences": [{"key": "response_style", "value": "concise", "isExplicit": false, "sourceText": "..."}],
    "projectFacts": [{"category": "requirement", "content": "..."}]
  }
}
```"""


def unified_analysis_prompt(
    summary_messages: Optional[list[dict]],
    recent_messages: Optional[list[dict]],
    current_memory: str = "",
    locale: str = DEFAULT_LOCALE,
    memory_token_target: int = 500,
) -> str:
    """
    One prompt asking for a summary of summary_messages and/or a memory delta
    from recent_messages. Pass None for a part that is not due.
    """
    locale = normalize_locale(locale)
    h = _HEADINGS[locale]
    parts = [h["intro"]]

    if summary_messages:
        parts.append(f"## {h['summarize']}\n\n{format_conversation(summary_messages, locale)}")

    if recent_messages is not None:
        parts.append(f"## {h['memory']}\n\n{current_memory or h['no_memory']}")
        parts.append(f"## {h['recent']}\n\n{format_conversation(recent_messages, locale)}")

    if summary_messages:
        parts.append(_SUMMARY_TASK[locale])
    if recent_messages is not None:
        parts.append(_MEMORY_TASK[locale].format(target=memory_token_target))

    parts.append(f"{h['output']}\n{_OUTPUT_FORMAT}")
    return "\n\n".join(parts)


# ── System prompt enhancement ────────────────────────────────────────

MEMORY_SECTION_HEADERS = {
    "nl": {
        "section": "## Context over deze gebruiker en dit project",
        "personal": "### Over de gebruiker",
        "project": "### Over dit project",
        "summaries": "## Eerdere delen van dit gesprek",
    },
    "en": {
        "section": "## Context about this user and project",
        "personal": "### About the user",
        "project": "### About this project",
        "summaries": "## Earlier parts of this conversation",
    },
}

MEMORY_USAGE_INSTRUCTIONS = {
    "nl": """BELANGRIJK over bovenstaande context:
- Gebruik deze informatie natuurlijk, noem niet expliciet dat je dit "onthoudt"
- Pas voorkeuren toe zonder er aandacht op te vestigen
- Verwijs naar projectfeiten wanneer relevant
- Nooit verzonnen informatie toevoegen""",
    "en": """IMPORTANT about the above context:
- Use this information naturally, don't explicitly mention that you "remember" these things
- Apply preferences without calling attention to them
- Reference project facts when relevant
- Never add made-up information""",
}


def enhance_system_prompt_with_memory(
    base_prompt: str,
    memory_content: str,
    locale: str = DEFAULT_LOCALE,
) -> str:
    """Append a user-memory section to a system prompt. Empty memory leaves it untouched."""
    if not memory_content or not memory_content.strip():
        return base_prompt

    if normalize_locale(locale) == "nl":
        section = (
            "## Gebruikersgeheugen\n\n"
            "Je hebt de volgende context over deze specifieke gebruiker. "
            "Gebruik deze informatie om je antwoorden te personaliseren:\n\n"
            f"{memory_content}\n\n"
            "Let op: vermeld niet expliciet dat je een \"geheugen\" hebt, maar pas je "
            "antwoorden aan op de voorkeuren en context van de gebruiker."
        )
    else:
        section = (
            "## User Memory\n\n"
            "You have the following context about this specific user. "
            "Use this information to personalize your responses:\n\n"
            f"{memory_content}\n\n"
            "Note: don't explicitly mention that you have \"memory\", but adapt your "
            "responses to the user's preferences and context."
        )
    return f"{base_prompt}\n\n{section}"
