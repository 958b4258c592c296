"""
Integration Tests for SessionController

Wires a real TranscriptionLink, OrderedSynthesisQueue and InferenceInvocation
to in-memory providers and a recording sink.

Tests:
    - Final transcript -> history -> reply sentences -> ordered audio
    - [TTS Error] fallback keeps the assistant turn
    - "clear" command semantics
    - Turn policies (cancel, sequential)
    - Inference failure ends the turn, produced sentences stand
    - Close semantics and outbound failure handling

Run with:
    pytest voice_session/tests/test_session_controller.py -v
"""

import asyncio
import base64
import dataclasses

import pytest

from voice_session.exceptions import ProviderError
from voice_session.inference import InferenceInvocation
from voice_session.models import Turn
from voice_session.providers.base import TranscriptionParams
from voice_session.session_controller import SessionController
from voice_session.transcription_link import ConnectionState, TranscriptionLink

from .conftest import (
    FakeTranscriptionProvider,
    RecordingSink,
    ScriptedInferenceProvider,
    ScriptedSynthesisProvider,
    wait_until,
)

CLEAR = '{"type": "cmd", "data": "clear"}'


def make_controller(config, sink, stt, tts, llm):
    link = TranscriptionLink(
        stt,
        TranscriptionParams(),
        session_id="s1",
        connect_timeout=config.stt_connect_timeout,
        reconnect_delay=config.stt_reconnect_delay,
        max_reconnect_attempts=config.stt_max_reconnect_attempts,
        audio_backlog_chunks=config.stt_audio_backlog_chunks,
    )
    inference = InferenceInvocation(llm, model="test-model", system_prompt="be brief")
    return SessionController("s1", sink, link, tts, inference, config)


def spoken(sink):
    return [m["text"] for m in sink.messages if m["type"] == "audio"]


class InterruptibleInference:
    """First reply stalls after one sentence; later replies complete."""

    name = "interruptible"

    def __init__(self):
        self.calls = 0

    async def stream_chat(self, model, system_prompt, messages):
        self.calls += 1
        if self.calls == 1:
            yield "Stale start. "
            await asyncio.Event().wait()
        else:
            yield "Fresh answer."


@pytest.mark.integration
class TestResponseTurn:

    @pytest.mark.asyncio
    async def test_final_transcript_produces_ordered_audio(self, session_config, sink, stt_provider, tts_provider):
        llm = ScriptedInferenceProvider(replies=[["Hello there", ". How are", " you?"]])
        controller = make_controller(session_config, sink, stt_provider, tts_provider, llm)
        assert await controller.start()

        stt_provider.current.push("hel")
        stt_provider.current.push("hello", is_final=True)
        await wait_until(lambda: len(spoken(sink)) == 2)

        assert sink.messages[0] == {"type": "text", "text": "hel", "interim": True}
        assert sink.messages[1] == {"type": "text", "text": "hello", "interim": False}
        assert spoken(sink) == ["Hello there.", "How are you?"]
        assert base64.b64decode(sink.messages[2]["audio"]) == b"audio:Hello there."

        assert controller.history == (
            Turn("user", "hello"),
            Turn("assistant", "Hello there."),
            Turn("assistant", "How are you?"),
        )
        assert llm.requests[0] == [{"role": "user", "content": "hello"}]
        await controller.close()

    @pytest.mark.asyncio
    async def test_tts_failure_sends_text_fallback(self, session_config, sink, stt_provider):
        tts = ScriptedSynthesisProvider(errors={"How are you?": ProviderError("fake_tts", "unavailable", 503)})
        llm = ScriptedInferenceProvider(replies=[["Hello there. How are you?"]])
        controller = make_controller(session_config, sink, stt_provider, tts, llm)
        await controller.start()

        stt_provider.current.push("hi", is_final=True)
        await wait_until(lambda: len(sink.messages) == 3)

        assert sink.messages[1]["type"] == "audio"
        assert sink.messages[2] == {"type": "text", "text": "[TTS Error] How are you?"}
        assert controller.history[-1] == Turn("assistant", "How are you?")
        await controller.close()

    @pytest.mark.asyncio
    async def test_synthesis_timeout_sends_text_fallback(self, session_config, sink, stt_provider):
        config = dataclasses.replace(session_config, tts_timeout=0.05)
        tts = ScriptedSynthesisProvider(latencies={"Never mind.": "hang"})
        llm = ScriptedInferenceProvider(replies=[["Never mind. Moving on."]])
        controller = make_controller(config, sink, stt_provider, tts, llm)
        await controller.start()

        stt_provider.current.push("hm", is_final=True)
        await wait_until(lambda: len(sink.messages) == 3)

        assert sink.messages[1] == {"type": "text", "text": "[TTS Error] Never mind."}
        assert sink.messages[2]["type"] == "audio"
        await controller.close()

    @pytest.mark.asyncio
    async def test_inference_failure_keeps_produced_sentences(self, session_config, sink, stt_provider, tts_provider):
        llm = ScriptedInferenceProvider(replies=[["Partial answer", " that never ends"]], error_after=1)
        controller = make_controller(session_config, sink, stt_provider, tts_provider, llm)
        await controller.start()

        stt_provider.current.push("question", is_final=True)
        await wait_until(lambda: len(spoken(sink)) == 1)

        assert spoken(sink) == ["Partial answer"]
        assert controller.history[-1] == Turn("assistant", "Partial answer")
        assert controller.get_stats()["turns_failed"] == 1
        await controller.close()


@pytest.mark.integration
class TestClearCommand:

    @pytest.mark.asyncio
    async def test_clear_resets_history(self, session_config, sink, stt_provider, tts_provider):
        gate = asyncio.Event()
        gate.set()
        llm = ScriptedInferenceProvider(replies=[["First."], ["Second."]], gate=gate)
        controller = make_controller(session_config, sink, stt_provider, tts_provider, llm)
        await controller.start()

        stt_provider.current.push("one", is_final=True)
        await wait_until(lambda: len(spoken(sink)) == 1)
        assert len(controller.history) == 2

        await controller.handle_text(CLEAR)
        assert controller.history == ()

        gate.clear()
        stt_provider.current.push("again", is_final=True)
        await wait_until(lambda: len(controller.history) == 1)
        assert controller.history == (Turn("user", "again"),)

        gate.set()
        await wait_until(lambda: len(spoken(sink)) == 2)
        assert controller.history == (Turn("user", "again"), Turn("assistant", "Second."))
        assert llm.requests[1] == [{"role": "user", "content": "again"}]
        await controller.close()

    @pytest.mark.asyncio
    async def test_clear_does_not_stop_inflight_synthesis(self, session_config, sink, stt_provider):
        tts = ScriptedSynthesisProvider(latencies={"Still speaking.": 0.1})
        llm = ScriptedInferenceProvider(replies=[["Still speaking."]])
        controller = make_controller(session_config, sink, stt_provider, tts, llm)
        await controller.start()

        stt_provider.current.push("talk", is_final=True)
        await wait_until(lambda: tts.calls == ["Still speaking."])
        await controller.handle_text(CLEAR)
        await wait_until(lambda: len(spoken(sink)) == 1)

        assert controller.history == ()
        await controller.close()

    @pytest.mark.asyncio
    async def test_malformed_messages_ignored(self, session_config, sink, stt_provider, tts_provider, llm_provider):
        controller = make_controller(session_config, sink, stt_provider, tts_provider, llm_provider)
        await controller.start()

        for raw in ("not json", "[1, 2]", '{"data": "clear"}', '{"type": "cmd", "data": "dance"}'):
            await controller.handle_text(raw)

        assert sink.messages == []
        assert not controller.closed
        await controller.close()


@pytest.mark.integration
class TestTurnPolicy:

    @pytest.mark.asyncio
    async def test_cancel_policy_interrupts_stale_reply(self, session_config, sink, stt_provider, tts_provider):
        llm = InterruptibleInference()
        controller = make_controller(session_config, sink, stt_provider, tts_provider, llm)
        await controller.start()

        stt_provider.current.push("first", is_final=True)
        await wait_until(lambda: len(spoken(sink)) == 1)

        stt_provider.current.push("second", is_final=True)
        await wait_until(lambda: len(spoken(sink)) == 2)

        assert spoken(sink) == ["Stale start.", "Fresh answer."]
        assert controller.history == (
            Turn("user", "first"),
            Turn("assistant", "Stale start."),
            Turn("user", "second"),
            Turn("assistant", "Fresh answer."),
        )
        assert controller.get_stats()["turns_cancelled"] == 1
        await controller.close()

    @pytest.mark.asyncio
    async def test_sequential_policy_runs_turns_in_order(self, session_config, sink, stt_provider, tts_provider):
        config = dataclasses.replace(session_config, turn_policy="sequential")
        gate = asyncio.Event()
        llm = ScriptedInferenceProvider(replies=[["A one. ", "A two."], ["B one."]], gate=gate)
        controller = make_controller(config, sink, stt_provider, tts_provider, llm)
        await controller.start()

        stt_provider.current.push("first", is_final=True)
        stt_provider.current.push("second", is_final=True)
        await wait_until(lambda: len(sink.of_type("text")) == 2)
        await wait_until(lambda: len(controller.history) == 1)
        assert controller.history == (Turn("user", "first"),)

        gate.set()
        await wait_until(lambda: len(spoken(sink)) == 3)

        assert spoken(sink) == ["A one.", "A two.", "B one."]
        assert [t.content for t in controller.history] == ["first", "A one.", "A two.", "second", "B one."]
        await controller.close()


@pytest.mark.integration
class TestLifecycle:

    @pytest.mark.asyncio
    async def test_audio_forwarded_to_link(self, session_config, sink, stt_provider, tts_provider, llm_provider):
        controller = make_controller(session_config, sink, stt_provider, tts_provider, llm_provider)
        await controller.start()

        await controller.handle_audio(b"\x01\x02")
        assert stt_provider.current.sent == [b"\x01\x02"]
        await controller.close()

    @pytest.mark.asyncio
    async def test_link_failure_keeps_session_open(self, session_config, sink, tts_provider, llm_provider):
        stt = FakeTranscriptionProvider(failures=[ConnectionError("refused")])
        controller = make_controller(session_config, sink, stt, tts_provider, llm_provider)

        assert await controller.start() is False
        assert not controller.closed
        await controller.handle_text(CLEAR)
        await controller.close()

    @pytest.mark.asyncio
    async def test_close_releases_and_drops_late_output(self, session_config, sink, stt_provider):
        tts = ScriptedSynthesisProvider(latencies={"Late reply.": 0.1})
        llm = ScriptedInferenceProvider(replies=[["Late reply."]])
        controller = make_controller(session_config, sink, stt_provider, tts, llm)
        await controller.start()

        stt_provider.current.push("go", is_final=True)
        await wait_until(lambda: tts.calls == ["Late reply."])
        await controller.close()
        await controller.close()
        await asyncio.sleep(0.15)

        assert spoken(sink) == []
        assert controller.link.state == ConnectionState.DISCONNECTED
        assert stt_provider.current.closed
        assert controller.queue.closed

        await controller.handle_audio(b"ignored")
        assert stt_provider.current.sent == []

    @pytest.mark.asyncio
    async def test_sink_failure_disables_output(self, session_config, stt_provider, tts_provider, llm_provider):
        sink = RecordingSink(fail=True)
        controller = make_controller(session_config, sink, stt_provider, tts_provider, llm_provider)
        await controller.start()

        stt_provider.current.push("hello", is_final=True)
        await wait_until(lambda: controller.get_stats()["synthesis"]["sentences_synthesized"] == 1)

        stats = controller.get_stats()
        assert stats["messages_sent"] == 0
        assert stats["messages_dropped"] >= 2
        await controller.close()
