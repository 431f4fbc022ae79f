"""
End-to-end tests of one conversation turn against fake providers and the in-memory store.
"""
from contextlib import contextmanager
import threading
import time
import unittest

from ci_rag.errors import InputError, NotFound, UpstreamError
from ci_rag.rag.conversation_manager import ConversationManager
from fakes import (
    USER_ID, CLIENT_ID, FakeLLM, FakeEmbedder, FakeVectorSearch, build_pipeline, create_mock_chunk,
)


def dated_candidates():
    """Two reports, the 17th scoring higher than the 14th."""
    return [
        create_mock_chunk(0, titre="Veille 17/11", date_rapport="2025-11-17", similarity=0.9,
                          chunk_text="On the 17th, Acme launched an AI agent platform."),
        create_mock_chunk(1, titre="Veille 14/11", date_rapport="2025-11-14", similarity=0.6,
                          chunk_text="On the 14th, Globex raised 50M for robotics."),
    ]


class TestDatedQuestions(unittest.TestCase):

    def test_wrong_date_selected_by_model_is_never_cited(self):
        """Model picks both reports; only the 14th may reach the answer."""
        llm = FakeLLM(select='{"relevant_indices": [0, 1]}', generate="Globex raised 50M [1].")
        pipeline = build_pipeline(llm=llm, candidates=dated_candidates())

        result = pipeline.run("What happened on November 14th?", USER_ID)

        assert [s.source_number for s in result.sources] == [1]
        assert result.sources[0].rapport_id == "rapport-1"
        assert result.sources[0].titre == "Veille 14/11"
        assert "Veille 17/11" not in llm.calls_of("generate")[0]["messages"][0]["content"]

    def test_no_report_on_that_date(self):
        llm = FakeLLM(select='{"relevant_indices": [0]}', generate="Nothing in the reports for that day.")
        candidates = [dated_candidates()[0]]
        pipeline = build_pipeline(llm=llm, candidates=candidates)

        result = pipeline.run("What happened on November 14th?", USER_ID)

        assert result.sources == []
        assert "No relevant excerpt" in llm.calls_of("generate")[0]["messages"][0]["content"]

    def test_follow_up_reformulated_with_new_date(self):
        llm = FakeLLM(
            reformulate="What happened on November 17?",
            select='{"relevant_indices": [0, 1]}',
            generate="Here is what happened [1]."
        )
        embedder = FakeEmbedder()
        pipeline = build_pipeline(llm=llm, candidates=dated_candidates(), embedder=embedder)

        first = pipeline.run("What happened on November 14th?", USER_ID)
        second = pipeline.run("and for the 17th?", USER_ID, first.conversation_id)

        assert second.has_history
        assert second.conversation_id == first.conversation_id
        assert embedder.texts == ["What happened on November 14th?", "What happened on November 17?"]
        assert [s.rapport_id for s in second.sources] == ["rapport-0"]

        # Generation answers the user's own words; history sits before the question
        generate_messages = llm.calls_of("generate")[1]["messages"]
        assert [m["role"] for m in generate_messages] == ["system", "user", "assistant", "user"]
        assert generate_messages[-1]["content"].endswith("Question: and for the 17th?")

        history = pipeline.store.get_history(first.conversation_id)
        assert history[2].metadata["reformulated_question"] == "What happened on November 17?"


class TestThematicQuestions(unittest.TestCase):

    def test_at_most_five_sources_in_filter_order(self):
        candidates = [create_mock_chunk(i, similarity=0.9 - i * 0.05) for i in range(10)]
        llm = FakeLLM(
            select='{"relevant_indices": [7, 2, 9, 0, 4, 1, 3]}',
            generate="A [1]. B [2]. C [3]. D [4]. E [5]. F [6]."
        )
        pipeline = build_pipeline(llm=llm, candidates=candidates)

        result = pipeline.run("Summarize competitor activity in AI", USER_ID)

        assert [s.rapport_id for s in result.sources] == [
            "rapport-7", "rapport-2", "rapport-9", "rapport-0", "rapport-4"
        ]
        assert [s.source_number for s in result.sources] == [1, 2, 3, 4, 5]
        assert "[6]" not in result.answer

    def test_fraction_in_question_does_not_gate_by_date(self):
        """'2/3' is a share, not the 2nd of March; the thematic selection stands."""
        candidates = [create_mock_chunk(0, date_rapport="2025-11-14")]
        llm = FakeLLM(select='{"relevant_indices": [0]}', generate="Most launched agents [1].")
        pipeline = build_pipeline(llm=llm, candidates=candidates)

        result = pipeline.run("What did 2/3 of competitors launch?", USER_ID)

        assert [s.rapport_id for s in result.sources] == ["rapport-0"]
        assert result.answer == "Most launched agents [1]."

    def test_only_cited_passages_returned(self):
        candidates = [create_mock_chunk(i) for i in range(3)]
        llm = FakeLLM(select='{"relevant_indices": [0, 1, 2]}', generate="Only this [2].")
        pipeline = build_pipeline(llm=llm, candidates=candidates)

        result = pipeline.run("What did competitors announce?", USER_ID)

        assert [s.source_number for s in result.sources] == [2]
        assert result.sources[0].rapport_id == "rapport-1"

    def test_filter_failure_falls_back_to_similarity(self):
        candidates = [create_mock_chunk(i, similarity=s) for i, s in enumerate([0.3, 0.8, 0.5])]
        llm = FakeLLM(fail=("filter",), generate="X [1]. Y [2].")
        pipeline = build_pipeline(llm=llm, candidates=candidates)

        result = pipeline.run("What did competitors announce?", USER_ID)

        assert [s.rapport_id for s in result.sources] == ["rapport-1", "rapport-2"]
        history = pipeline.store.get_history(result.conversation_id)
        assert history[1].metadata["filter_outcome"] == "unparseable"

    def test_unparseable_filter_output_falls_back(self):
        candidates = [create_mock_chunk(0, similarity=0.7)]
        llm = FakeLLM(select="Sources 0 looks good", generate="X [1].")
        pipeline = build_pipeline(llm=llm, candidates=candidates)

        result = pipeline.run("What did competitors announce?", USER_ID)

        assert len(result.sources) == 1

    def test_empty_filter_is_final(self):
        """A deliberate empty selection is not overridden by the similarity fallback."""
        candidates = [create_mock_chunk(0, similarity=0.95)]
        llm = FakeLLM(select='{"relevant_indices": []}', generate="No information [1].")
        pipeline = build_pipeline(llm=llm, candidates=candidates)

        result = pipeline.run("What about quantum computing?", USER_ID)

        assert result.sources == []
        assert result.answer == "No information."

    def test_search_uses_tenant_and_settings(self):
        search = FakeVectorSearch([create_mock_chunk(0, similarity=0.5)])
        pipeline = build_pipeline(vector_search=search, match_threshold=0.4, match_count=12)

        pipeline.run("Anything new?", USER_ID)

        assert search.calls == [{"client_id": CLIENT_ID, "match_threshold": 0.4, "match_count": 12}]


class TestConversationTurns(unittest.TestCase):

    def test_first_turn_not_reformulated(self):
        llm = FakeLLM(reformulate="should not be used")
        pipeline = build_pipeline(llm=llm, candidates=[])

        result = pipeline.run("What is new?", USER_ID)

        assert not result.has_history
        assert llm.calls_of("reformulate") == []

    def test_follow_up_without_sources_has_no_markers(self):
        llm = FakeLLM(select='{"relevant_indices": []}', generate="As explained before [1], funding rose [2].")
        pipeline = build_pipeline(llm=llm, candidates=[create_mock_chunk(0)])

        first = pipeline.run("What is new?", USER_ID)
        second = pipeline.run("Can you expand?", USER_ID, first.conversation_id)

        assert second.sources == []
        assert "[" not in second.answer
        assert "follow-up" in llm.calls_of("generate")[1]["messages"][0]["content"]

    def test_turn_persisted_with_metadata(self):
        candidates = [create_mock_chunk(0), create_mock_chunk(1)]
        llm = FakeLLM(select='{"relevant_indices": [1, 0]}', generate="Answer [2].")
        pipeline = build_pipeline(llm=llm, candidates=candidates)

        result = pipeline.run("What did competitors announce?", USER_ID)
        conversation = pipeline.store.get_conversation(result.conversation_id, user_id=USER_ID)
        user_msg, assistant_msg = pipeline.store.get_history(result.conversation_id)

        assert conversation.titre == "What did competitors announce?"
        assert conversation.message_count == 2
        assert user_msg.metadata["chunks_found"] == 2
        assert user_msg.metadata["reformulated_question"] is None
        assert assistant_msg.metadata["model"] == "test-model"
        assert assistant_msg.metadata["sources_count"] == 1
        assert assistant_msg.metadata["total_sources_available"] == 2
        assert assistant_msg.metadata["total_chunks_found"] == 2
        assert assistant_msg.metadata["filter_outcome"] == "selected"
        assert assistant_msg.metadata["sources"] == [s.to_dict() for s in result.sources]
        assert assistant_msg.created_at > user_msg.created_at

    def test_history_limit_passed_to_generation(self):
        llm = FakeLLM(generate="ok")
        pipeline = build_pipeline(llm=llm, candidates=[], history_limit=4)

        conversation_id = pipeline.run("Q0", USER_ID).conversation_id
        for i in range(1, 4):
            pipeline.run(f"Q{i}", USER_ID, conversation_id)

        # 4 history messages + system + current turn
        assert len(llm.calls_of("generate")[-1]["messages"]) == 6


class TestFailures(unittest.TestCase):

    def test_missing_question_makes_no_calls(self):
        llm = FakeLLM()
        embedder = FakeEmbedder()
        pipeline = build_pipeline(llm=llm, embedder=embedder)

        for question in (None, "", "   "):
            with self.assertRaises(InputError):
                pipeline.run(question, USER_ID)
        with self.assertRaises(InputError):
            pipeline.run("What is new?", "")

        assert llm.calls == []
        assert embedder.texts == []

    def test_unknown_user(self):
        with self.assertRaises(NotFound):
            build_pipeline().run("What is new?", "stranger")

    def test_unknown_conversation(self):
        with self.assertRaises(NotFound):
            build_pipeline().run("What is new?", USER_ID, "does-not-exist")

    def test_other_users_conversation(self):
        pipeline = build_pipeline(candidates=[])
        pipeline.store.register_client("other-user", "client-2")
        conversation_id = pipeline.run("Mine", "other-user").conversation_id

        with self.assertRaises(NotFound):
            pipeline.run("Not yours", USER_ID, conversation_id)

    def test_generation_failure_persists_nothing(self):
        llm = FakeLLM(fail=("generate",))
        pipeline = build_pipeline(llm=llm, candidates=[create_mock_chunk(0)])

        with self.assertRaises(UpstreamError):
            pipeline.run("What is new?", USER_ID)

        assert pipeline.store.conversations == {}

    def test_generation_failure_on_follow_up_leaves_history_intact(self):
        llm = FakeLLM(generate="ok")
        pipeline = build_pipeline(llm=llm, candidates=[])
        conversation_id = pipeline.run("First", USER_ID).conversation_id

        llm.fail = ("generate",)
        with self.assertRaises(UpstreamError):
            pipeline.run("Second", USER_ID, conversation_id)

        assert len(pipeline.store.get_history(conversation_id)) == 2

    def test_embedding_failure(self):
        pipeline = build_pipeline(embedder=FakeEmbedder(fail=True))

        with self.assertRaises(UpstreamError):
            pipeline.run("What is new?", USER_ID)

        assert pipeline.store.conversations == {}

    def test_time_budget_exhausted(self):
        embedder = FakeEmbedder(delay=0.1)
        search = FakeVectorSearch([create_mock_chunk(0)])
        pipeline = build_pipeline(embedder=embedder, vector_search=search, request_timeout_seconds=0.05)

        with self.assertRaises(UpstreamError):
            pipeline.run("What is new?", USER_ID)

        assert search.calls == []
        assert pipeline.store.conversations == {}

    def test_reformulation_failure_is_not_fatal(self):
        llm = FakeLLM(generate="ok")
        embedder = FakeEmbedder()
        pipeline = build_pipeline(llm=llm, embedder=embedder, candidates=[])
        conversation_id = pipeline.run("First", USER_ID).conversation_id

        llm.fail = ("reformulate",)
        result = pipeline.run("and then?", USER_ID, conversation_id)

        assert result.answer == "ok"
        assert embedder.texts[-1] == "and then?"


class RecordingStore(ConversationManager):
    """In-memory store that records when the turn lock is taken and released."""

    def __init__(self):
        super().__init__({USER_ID: CLIENT_ID})
        self.events = []

    @contextmanager
    def turn_lock(self, conversation_id, timeout=None):
        self.events.append("lock")
        try:
            yield
        finally:
            self.events.append("unlock")

    def get_history(self, conversation_id, limit=10):
        self.events.append("history")
        return super().get_history(conversation_id, limit)

    def append_turn(self, conversation_id, user_message, assistant_message, new_conversation=None):
        self.events.append("append")
        super().append_turn(conversation_id, user_message, assistant_message, new_conversation)


class TestConcurrentTurns(unittest.TestCase):

    def test_overlapping_turns_on_one_conversation_stay_ordered(self):
        llm = FakeLLM(generate="ok")
        pipeline = build_pipeline(llm=llm, candidates=[])
        conversation_id = pipeline.run("First", USER_ID).conversation_id

        llm.delay = 0.3
        errors = []

        def ask(question):
            try:
                pipeline.run(question, USER_ID, conversation_id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=ask, args=(q,)) for q in ("Second", "Third")]
        threads[0].start()
        time.sleep(0.05)
        threads[1].start()
        for t in threads:
            t.join()

        assert errors == []
        history = pipeline.store.get_history(conversation_id, limit=10)
        assert [m.role for m in history] == ["user", "assistant"] * 3
        assert [m.content for m in history if m.role == "user"] == ["First", "Second", "Third"]
        stamps = [m.created_at for m in history]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == len(stamps)

        # The later turn was generated with the earlier one already in its history
        generate_calls = llm.calls_of("generate")
        assert len(generate_calls[2]["messages"]) > len(generate_calls[1]["messages"])

    def test_store_lock_spans_history_read_to_append(self):
        store = RecordingStore()
        pipeline = build_pipeline(llm=FakeLLM(generate="ok"), candidates=[], store=store)
        conversation_id = pipeline.run("First", USER_ID).conversation_id

        store.events.clear()
        pipeline.run("And then?", USER_ID, conversation_id)

        assert store.events == ["lock", "history", "append", "unlock"]

    def test_store_lock_released_when_turn_fails(self):
        store = RecordingStore()
        pipeline = build_pipeline(llm=FakeLLM(fail=("generate",)), candidates=[], store=store)

        with self.assertRaises(UpstreamError):
            pipeline.run("What is new?", USER_ID)

        assert store.events == ["lock", "unlock"]
        assert store.conversations == {}


if __name__ == '__main__':
    unittest.main()
