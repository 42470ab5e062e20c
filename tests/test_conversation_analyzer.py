"""
Tests for the conversation analyzer: thresholds, the single LLM call, and applying its answer.
"""

import asyncio
import json

import pytest

from grooshub.core.database import close_db, init_db, session_scope
from grooshub.core.flags import get_flags
from grooshub.services import conversation_store, memory_store, project_memory, summary_store
from grooshub.services.conversation_analyzer import (
    analyze_conversation,
    parse_summary_section,
    plan_summary_range,
    queue_conversation_analysis,
    summarize_pending_messages,
)

TENANT = "org-1"
USER = "user-1"


async def seed(db, count, project_id=None, locale="nl", session_id="sess-1"):
    """A conversation with `count` alternating user/assistant messages."""
    convo = await conversation_store.get_or_create_conversation(
        db, TENANT, session_id, user_id=USER, project_id=project_id, locale=locale,
    )
    for i in range(count):
        role = "user" if i % 2 == 0 else "assistant"
        await conversation_store.add_message(db, convo, role, f"{role} bericht {i}")
    return convo


def answer(summary=None, memory=None, fenced=True) -> str:
    body = {}
    if summary is not None:
        body["summary"] = summary
    if memory is not None:
        body["memory"] = memory
    text = json.dumps(body)
    return f"Hier is de analyse:\n```json\n{text}\n```" if fenced else text


class TestPlanSummaryRange:

    def test_short_conversation_not_summarized(self):
        assert plan_summary_range(10, 0) is None

    def test_needs_three_pending_outside_recent_window(self):
        assert plan_summary_range(11, 0) is None
        assert plan_summary_range(12, 0) is None
        assert plan_summary_range(13, 0) == (0, 2)

    def test_chunk_capped_at_fifteen(self):
        assert plan_summary_range(40, 0) == (0, 14)

    def test_continues_after_latest_summary(self):
        assert plan_summary_range(40, 15) == (15, 29)
        assert plan_summary_range(40, 28) is None


class TestParsing:

    def test_unified_answer(self):
        parsed = {"summary": {"text": " Over budget ", "keyPoints": ["a", "", "b"]}}
        assert parse_summary_section(parsed, "raw") == ("Over budget", ["a", "b"])

    def test_summary_only_answer(self):
        assert parse_summary_section({"text": "t", "keyPoints": ["k"]}, "raw") == ("t", ["k"])

    def test_unparseable_answer_becomes_summary(self):
        assert parse_summary_section(None, "  Gewoon tekst.  ") == ("Gewoon tekst.", [])


class TestAnalyzeConversation:

    def test_nothing_due_makes_no_call(self, run_db, fake_llm):
        llm = fake_llm()

        async def scenario(db):
            convo = await seed(db, 2)
            return await analyze_conversation(db, convo)

        result = run_db(scenario)
        assert result.analyzed is False
        assert llm.prompts == []

    def test_memory_only(self, run_db, fake_llm):
        llm = fake_llm(answer(memory={
            "shouldUpdate": True,
            "reason": "Naam en voorkeur geleerd",
            "memoryContent": "Naam: Sanne\nVoorkeuren:\n- Korte antwoorden",
            "identity": {"name": "Sanne", "role": "ontwikkelaar"},
            "preferences": [
                {"key": "response_style", "value": "concise", "isExplicit": True, "sourceText": "hou het kort"},
                {"key": "", "value": "ignored"},
            ],
            "projectFacts": [{"category": "requirement", "content": "30% sociale huur"}],
        }))

        async def scenario(db):
            convo = await seed(db, 6, project_id="proj-1")
            result = await analyze_conversation(db, convo)
            memory = await memory_store.get_user_memory(db, TENANT, USER)
            project = await project_memory.get_project_memory(db, TENANT, "proj-1")
            summaries = await summary_store.get_chat_summaries(db, TENANT, convo.id)
            return result, memory, project, summaries

        result, memory, project, summaries = run_db(scenario)

        assert len(llm.prompts) == 1
        assert "Samen te vatten" not in llm.prompts[0]
        assert "Huidig gebruikersgeheugen" in llm.prompts[0]

        assert result.summary is None
        assert summaries == []
        update = result.memory_update
        assert update.should_update is True
        assert update.memory_updated is True
        assert update.identity_updated is True
        assert update.preferences == [{"key": "response_style", "action": "created"}]
        assert update.project_facts_added == 1

        assert memory.memory_content.startswith("Naam: Sanne")
        assert memory.user_name == "Sanne"
        assert memory.preferences[0]["confidence"] == 0.5
        assert memory.preferences[0]["learned_from_text"] == "hou het kort"
        assert memory.last_analysis_at is not None
        assert project.soft_context[0]["content"] == "30% sociale huur"

    def test_summary_and_memory_in_one_call(self, run_db, fake_llm):
        llm = fake_llm(answer(
            summary={"text": "Gesprek over een locatie in Utrecht.", "keyPoints": ["Utrecht", "140 woningen"]},
            memory={"shouldUpdate": False, "reason": "niets nieuws"},
        ))

        async def scenario(db):
            convo = await seed(db, 24)
            result = await analyze_conversation(db, convo)
            summaries = await summary_store.get_chat_summaries(db, TENANT, convo.id)
            memory = await memory_store.get_user_memory(db, TENANT, USER)
            return convo, result, summaries, memory

        convo, result, summaries, memory = run_db(scenario)

        assert len(llm.prompts) == 1
        prompt = llm.prompts[0]
        assert "Samen te vatten" in prompt
        assert "bericht 0" in prompt

        assert result.summary.message_range_start == 0
        assert result.summary.message_range_end == 13
        assert 0 < result.summary.compression_ratio <= 1
        assert len(summaries) == 1
        assert summaries[0].key_points == ["Utrecht", "140 woningen"]
        assert summaries[0].token_count > 0
        assert convo.last_summary_at is not None

        assert result.memory_update.should_update is False
        assert memory.memory_content == ""
        assert memory.last_analysis_at is not None

    def test_unparseable_answer_keeps_raw_summary_and_skips_memory(self, run_db, fake_llm):
        fake_llm("Dit gesprek ging over parkeernormen.")

        async def scenario(db):
            convo = await seed(db, 24)
            result = await analyze_conversation(db, convo)
            memory = await memory_store.get_user_memory(db, TENANT, USER)
            return result, memory

        result, memory = run_db(scenario)
        assert result.summary.text == "Dit gesprek ging over parkeernormen."
        assert result.summary.key_points == []
        assert result.memory_update.should_update is False
        assert memory.memory_content == ""

    def test_english_conversation_gets_english_prompt(self, run_db, fake_llm):
        llm = fake_llm(answer(memory={"shouldUpdate": False}))

        async def scenario(db):
            convo = await seed(db, 6, locale="en")
            return await analyze_conversation(db, convo)

        run_db(scenario)
        assert "Current user memory" in llm.prompts[0]
        assert "User: user bericht 0" in llm.prompts[0]

    def test_disabled_stages_make_no_call(self, run_db, fake_llm, monkeypatch):
        monkeypatch.setenv("FF_ENABLE_SUMMARIZATION", "false")
        monkeypatch.setenv("FF_ENABLE_MEMORY", "false")
        get_flags.cache_clear()
        llm = fake_llm()

        async def scenario(db):
            convo = await seed(db, 30)
            return await analyze_conversation(db, convo)

        assert run_db(scenario).analyzed is False
        assert llm.prompts == []

    def test_memory_not_due_after_recent_analysis(self, run_db, fake_llm):
        fake_llm(answer(memory={"shouldUpdate": False}))

        async def first(db):
            convo = await seed(db, 6)
            await analyze_conversation(db, convo)

        run_db(first)
        llm = fake_llm()

        async def second(db):
            convo = await conversation_store.get_conversation(db, TENANT, "sess-1")
            await conversation_store.add_message(db, convo, "user", "nog een vraag")
            return await analyze_conversation(db, convo)

        assert run_db(second).analyzed is False
        assert llm.prompts == []

    def test_assistant_reply_does_not_retrigger_memory(self, run_db, fake_llm, monkeypatch):
        monkeypatch.setenv("FF_ENABLE_SUMMARIZATION", "false")
        get_flags.cache_clear()
        llm = fake_llm(answer(memory={"shouldUpdate": False}), answer(memory={"shouldUpdate": False}))

        async def scenario(db):
            convo = await seed(db, 17)  # 9 user messages
            first = await analyze_conversation(db, convo)
            await conversation_store.add_message(db, convo, "user", "tiende vraag")
            second = await analyze_conversation(db, convo)
            await conversation_store.add_message(db, convo, "assistant", "antwoord")
            third = await analyze_conversation(db, convo)
            return first, second, third, convo.analyzed_user_messages

        first, second, third, analyzed = run_db(scenario)
        assert first.analyzed is True
        assert second.analyzed is True
        assert third.analyzed is False
        assert len(llm.prompts) == 2
        assert analyzed == 10


class TestSummarizePending:

    def test_consecutive_chunks_do_not_overlap(self, run_db, fake_llm, monkeypatch):
        monkeypatch.setenv("FF_ENABLE_MEMORY", "false")
        get_flags.cache_clear()
        fake_llm(
            json.dumps({"text": "Deel een", "keyPoints": ["a"]}),
            json.dumps({"text": "Deel twee", "keyPoints": ["b"]}),
        )

        async def scenario(db):
            convo = await seed(db, 40)
            first = await summarize_pending_messages(db, convo)
            second = await summarize_pending_messages(db, convo)
            third = await summarize_pending_messages(db, convo)
            return first, second, third

        first, second, third = run_db(scenario)
        assert (first.message_range_start, first.message_range_end) == (0, 14)
        assert (second.message_range_start, second.message_range_end) == (15, 29)
        assert third is None


@pytest.mark.usefixtures("encryption_on")
class TestEncryptedConversation:

    def test_summary_from_encrypted_messages(self, run_db, fake_llm):
        llm = fake_llm(json.dumps({"text": "Samenvatting", "keyPoints": []}))

        async def scenario(db):
            convo = await seed(db, 13)
            summary = await summarize_pending_messages(db, convo)
            messages = await conversation_store.load_messages(db, convo)
            return summary, messages

        summary, messages = run_db(scenario)
        assert summary.message_range_end == 2
        assert "user bericht 0" in llm.prompts[0]
        assert messages[0]["content"] == "user bericht 0"


class TestBackgroundAnalysis:

    def run_queued(self, *answers, fake_llm):
        llm = fake_llm(*answers)

        async def main():
            await init_db()
            try:
                async with session_scope() as db:
                    await seed(db, 6)
                await queue_conversation_analysis(TENANT, "sess-1", USER)
                await queue_conversation_analysis(TENANT, "missing-session", USER)
                async with session_scope() as db:
                    return await memory_store.get_user_memory(db, TENANT, USER)
            finally:
                await close_db()

        return llm, asyncio.run(main())

    def test_commits_result(self, fake_llm):
        llm, memory = self.run_queued(
            answer(memory={"shouldUpdate": True, "memoryContent": "Werkt aan Project Noord."}),
            fake_llm=fake_llm,
        )
        assert len(llm.prompts) == 1
        assert memory.memory_content == "Werkt aan Project Noord."

    def test_failure_is_logged_not_raised(self, fake_llm, caplog):
        llm, memory = self.run_queued(fake_llm=fake_llm)
        assert len(llm.prompts) == 1
        assert "Background analysis failed" in caplog.text
        assert memory.exists is False

    def test_concurrent_runs_store_one_summary(self, fake_llm):
        llm = fake_llm(
            answer(summary={"text": "Eerste tien berichten", "keyPoints": []}, memory={"shouldUpdate": False}),
            delay=0.05,
        )

        async def main():
            await init_db()
            try:
                async with session_scope() as db:
                    convo = await seed(db, 20)
                await asyncio.gather(
                    queue_conversation_analysis(TENANT, "sess-1", USER),
                    queue_conversation_analysis(TENANT, "sess-1", USER),
                )
                async with session_scope() as db:
                    return await summary_store.get_chat_summaries(db, TENANT, convo.id)
            finally:
                await close_db()

        summaries = asyncio.run(main())
        assert len(llm.prompts) == 1
        assert [(s.message_range_start, s.message_range_end) for s in summaries] == [(0, 9)]
        assert summaries[0].model_used == llm.model
