"""
Tests for the chat context builder: memory section budget, summaries in place of old messages.
"""

from grooshub.core.flags import get_flags
from grooshub.services import conversation_store, memory_store, project_memory, summary_store
from grooshub.services.memory_injector import (
    build_chat_context,
    build_memory_section,
    compose_memory_section,
    trim_to_tokens,
)
from grooshub.services.memory_prompts import enhance_system_prompt_with_memory

TENANT = "org-1"
USER = "user-1"
BASE = "Je bent de GroosHub assistent."


class TestCompose:

    def test_empty_memory_gives_empty_section(self):
        section = compose_memory_section("", "  ")
        assert section.is_empty
        assert section.prompt_section == ""
        assert section.token_estimate == 0

    def test_both_parts_with_headers(self):
        section = compose_memory_section("User: Sanne", "Project facts:\n- Units: 140", locale="nl")
        assert section.included_personal and section.included_project
        assert "### Over de gebruiker\nUser: Sanne" in section.prompt_section
        assert "### Over dit project\nProject facts:" in section.prompt_section
        assert "BELANGRIJK" in section.prompt_section

    def test_english_headers(self):
        section = compose_memory_section("User: Sam", "", locale="en")
        assert "### About the user" in section.prompt_section
        assert "About this project" not in section.prompt_section
        assert section.included_project is False

    def test_over_budget_splits_forty_sixty(self):
        personal = "\n".join(f"personal line {i:03d} " + "x" * 30 for i in range(100))
        project = "\n".join(f"project line {i:03d} " + "y" * 30 for i in range(100))

        section = compose_memory_section(personal, project, max_tokens=100)

        text = section.prompt_section
        personal_part = text.split("### Over de gebruiker\n")[1].split("\n\n")[0]
        project_part = text.split("### Over dit project\n")[1].split("\n\n")[0]
        assert len(personal_part) <= 40 * 4
        assert len(project_part) <= 60 * 4
        assert personal_part.startswith("personal line 000")

    def test_trim_prefers_line_boundary(self):
        text = "first line\nsecond line that is long"
        assert trim_to_tokens(text, 4) == "first line"
        assert trim_to_tokens("short", 100) == "short"


class TestEnhanceSystemPrompt:

    def test_empty_memory_leaves_prompt(self):
        assert enhance_system_prompt_with_memory(BASE, "   ") == BASE

    def test_appends_localized_section(self):
        nl = enhance_system_prompt_with_memory(BASE, "Naam: Sanne", "nl")
        en = enhance_system_prompt_with_memory(BASE, "Name: Sanne", "en")
        assert nl.startswith(BASE)
        assert "## Gebruikersgeheugen" in nl and "Naam: Sanne" in nl
        assert "## User Memory" in en

    def test_unknown_locale_falls_back_to_dutch(self):
        assert "## Gebruikersgeheugen" in enhance_system_prompt_with_memory(BASE, "x", "de")


class TestBuildMemorySection:

    def test_uses_stored_memory(self, run_db):
        async def scenario(db):
            await memory_store.create_user_memory(db, TENANT, USER, "Werkt aan woningbouw.", user_name="Sanne")
            await project_memory.update_hard_values(db, TENANT, "proj-1", {"units": 140})
            return await build_memory_section(db, TENANT, USER, "proj-1", "nl")

        section = run_db(scenario)
        assert "User: Sanne" in section.prompt_section
        assert "Werkt aan woningbouw." in section.prompt_section
        assert "- Units: 140" in section.prompt_section

    def test_respects_flags(self, run_db, monkeypatch):
        monkeypatch.setenv("FF_ENABLE_MEMORY", "false")
        monkeypatch.setenv("FF_ENABLE_PROJECT_MEMORY", "false")
        get_flags.cache_clear()

        async def scenario(db):
            await memory_store.create_user_memory(db, TENANT, USER, "Werkt aan woningbouw.")
            await project_memory.update_hard_values(db, TENANT, "proj-1", {"units": 140})
            return await build_memory_section(db, TENANT, USER, "proj-1", "nl")

        assert run_db(scenario).is_empty

    def test_no_memory_yet(self, run_db):
        async def scenario(db):
            return await build_memory_section(db, TENANT, USER, "proj-unknown")

        assert run_db(scenario).is_empty


class TestBuildChatContext:

    def test_without_summaries_sends_everything(self, run_db):
        async def scenario(db):
            convo = await conversation_store.get_or_create_conversation(db, TENANT, "s1", user_id=USER)
            await conversation_store.add_message(db, convo, "user", "Hallo")
            await conversation_store.add_message(db, convo, "assistant", "Hoi!")
            return await build_chat_context(db, convo, BASE)

        context = run_db(scenario)
        assert context.system_prompt == BASE
        assert context.summary_count == 0
        assert context.first_message_index == 0
        assert context.messages == [
            {"role": "user", "content": "Hallo"},
            {"role": "assistant", "content": "Hoi!"},
        ]
        assert context.token_estimate > 0

    def test_summarized_messages_are_replaced(self, run_db):
        async def scenario(db):
            convo = await conversation_store.get_or_create_conversation(
                db, TENANT, "s1", user_id=USER, locale="en",
            )
            for i in range(20):
                await conversation_store.add_message(db, convo, "user" if i % 2 == 0 else "assistant", f"m{i}")
            await summary_store.create_chat_summary(
                db, TENANT, convo.id, "First part about parking.", ["parking norm 1.2"], 0, 4,
            )
            await summary_store.create_chat_summary(
                db, TENANT, convo.id, "Second part about budget.", [], 5, 9,
            )
            await memory_store.create_user_memory(db, TENANT, USER, "Prefers tables.")
            return await build_chat_context(db, convo, BASE)

        context = run_db(scenario)
        assert context.summary_count == 2
        assert context.first_message_index == 10
        assert [m["content"] for m in context.messages] == [f"m{i}" for i in range(10, 20)]

        prompt = context.system_prompt
        assert prompt.startswith(BASE)
        assert prompt.index("Prefers tables.") < prompt.index("## Earlier parts of this conversation")
        assert "First part about parking." in prompt
        assert "- parking norm 1.2" in prompt
        assert context.memory.included_personal is True
