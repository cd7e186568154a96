"""Tests for request payload assembly."""

from __future__ import annotations

import pytest

from conftest import make_transcript
from patientsim.context import CacheStrategy, ContextAssembler
from patientsim.context.tokens import TokenEstimator
from patientsim.conversation import PATIENT, THERAPIST, Turn
from patientsim.errors import ValidationError


@pytest.fixture
def assembler():
    return ContextAssembler(
        TokenEstimator(encoding=None), model="test-model", max_output_tokens=512, temperature=0.5
    )


class TestValidation:
    @pytest.mark.parametrize("transcript", ["a string", b"bytes", 42, None, {"role": "patient"}])
    def test_rejects_non_sequence(self, assembler, transcript):
        with pytest.raises(ValidationError):
            assembler.assemble(transcript, "prompt")

    def test_rejects_unknown_role(self, assembler):
        with pytest.raises(ValidationError):
            assembler.assemble([{"role": "narrator", "content": "hi"}], "prompt")

    def test_rejects_missing_content(self, assembler):
        with pytest.raises(ValidationError):
            assembler.assemble([{"role": "therapist"}], "prompt")

    def test_rejects_non_string_prompt(self, assembler):
        with pytest.raises(ValidationError):
            assembler.assemble([], 123)

    def test_accepts_mappings_with_api_roles(self, assembler):
        payload = assembler.assemble(
            [{"role": "user", "content": "Hello"}, {"role": "assistant", "content": "Hi."}],
            "prompt",
        )
        assert payload.messages == (
            {"role": "user", "content": "Hello"},
            {"role": "assistant", "content": "Hi."},
        )


class TestSimple:
    def test_empty_transcript(self, assembler):
        payload = assembler.assemble([], "short prompt")
        assert payload.plan.strategy is CacheStrategy.SIMPLE
        assert payload.messages == ()
        assert payload.system == [{"type": "text", "text": "short prompt"}]

    def test_no_prompt_means_no_system(self, assembler):
        payload = assembler.assemble(make_transcript(2), None)
        assert payload.system is None
        assert "system" not in payload.to_request_kwargs()

    def test_large_prompt_is_cached(self, assembler):
        payload = assembler.assemble(make_transcript(3), "x" * 4000)
        assert payload.system[0]["cache_control"] == {"type": "ephemeral"}

    def test_roles_are_mapped(self, assembler):
        payload = assembler.assemble(
            [Turn(THERAPIST, "How are you?"), Turn(PATIENT, "Fine.")], "prompt"
        )
        assert [m["role"] for m in payload.messages] == ["user", "assistant"]

    def test_request_kwargs(self, assembler):
        kwargs = assembler.assemble(make_transcript(1), "prompt").to_request_kwargs()
        assert kwargs["model"] == "test-model"
        assert kwargs["max_tokens"] == 512
        assert kwargs["temperature"] == 0.5
        assert kwargs["messages"] == [{"role": "user", "content": "therapist line 0"}]


class TestWindowPayload:
    def test_resumed_long_session(self, assembler):
        transcript = make_transcript(32) + [Turn(THERAPIST, "Shall we pick up where we left off?")]
        payload = assembler.assemble(transcript, "You are Anna.")

        assert payload.plan.strategy is CacheStrategy.SLIDING_WINDOW_SUMMARIZED
        assert len(payload.messages) == 6
        assert payload.messages[-1] == {
            "role": "user",
            "content": "Shall we pick up where we left off?",
        }
        (block,) = payload.system
        assert block["cache_control"] == {"type": "ephemeral"}
        assert "Segment 1:" in block["text"]
        for message in payload.messages:
            assert "cache_control" not in message

    def test_literal_window_never_caches_messages(self, assembler):
        payload = assembler.assemble(make_transcript(20), "prompt")
        kwargs = payload.to_request_kwargs()
        assert all(set(m) == {"role", "content"} for m in kwargs["messages"])
        assert kwargs["system"][0]["cache_control"] == {"type": "ephemeral"}

    def test_assembly_is_pure(self, assembler):
        transcript = make_transcript(35)
        snapshot = list(transcript)
        first = assembler.assemble(transcript, "prompt", new_week=True)
        second = assembler.assemble(transcript, "prompt", new_week=True)
        assert first == second
        assert transcript == snapshot

    def test_custom_estimator_changes_simple_caching(self):
        assembler = ContextAssembler(estimator=TokenEstimator(counter=lambda text: 1000))
        payload = assembler.assemble(make_transcript(2), "tiny")
        assert payload.plan.label == "simple-cached"
