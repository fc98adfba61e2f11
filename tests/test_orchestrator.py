"""End-to-end tests for the Director/Actor round loop.

Both sessions run against their own ScriptedProvider, so each test scripts
the Director's and the Actor's turns separately and then inspects the
requests each side received. The event bus is not started: events are
dispatched inline and collected in order.
"""

import asyncio
from dataclasses import dataclass, field
from unittest.mock import AsyncMock

import pytest

from tandem.api.builtin_tools import ACTOR_FILE_TOOLS, register_builtin_tools
from tandem.api.compaction import ConversationCompactor
from tandem.api.control_tools import ControlChannel, ControlRequests, register_control_tools
from tandem.api.model_registry import FALLBACK_MODELS
from tandem.api.models import ApiResponse, Message
from tandem.api.session import ACTOR_SYSTEM_PROMPT, ActorSession, DirectorSession
from tandem.api.tools import ToolDispatcher
from tandem.errors import ProviderError
from tandem.events import ALL_EVENTS, Event, EventBus
from tandem.orchestrator import CORRECTION_PROMPT, TIMEOUT_PROMPT, Orchestrator, OrchestratorState, RunStatus
from tandem.storage.models import ACTOR_MESSAGE, DIRECTOR_MESSAGE, METADATA, SYSTEM_BOUNDARY
from tests.conftest import ScriptedProvider, Stall, make_settings, message_events, text, text_turn, tool_turn

# ---------------------------------------------------------------------------
# Harness
# ---------------------------------------------------------------------------


@dataclass
class Harness:
    orchestrator: Orchestrator
    director_provider: ScriptedProvider
    actor_provider: ScriptedProvider
    call_api: AsyncMock
    events: list[Event] = field(default_factory=list)

    @property
    def director(self) -> DirectorSession:
        return self.orchestrator.director

    @property
    def actor(self) -> ActorSession:
        return self.orchestrator.actor

    def of_type(self, event_type: str) -> list[Event]:
        return [e for e in self.events if e.type == event_type]

    def statuses(self) -> list[str]:
        return [e.data["message"] for e in self.of_type("status")]

    def director_input(self, call: int) -> str:
        """Text of the newest user content in the ``call``-th Director request."""
        return self.director_provider.calls[call]["messages"][-1]["content"][-1]["text"]


def _build(settings, director_turns=(), actor_turns=(), **kwargs) -> Harness:
    director_provider = ScriptedProvider(*director_turns)
    actor_provider = ScriptedProvider(*actor_turns)

    channel = ControlChannel(ACTOR_FILE_TOOLS + ("web_search",))
    dispatcher = ToolDispatcher.from_settings(settings)
    register_builtin_tools(dispatcher, settings)
    register_control_tools(dispatcher, channel)

    director = DirectorSession(director_provider, dispatcher, settings, model="claude-director")
    actor = ActorSession(actor_provider, dispatcher, settings, model="claude-actor")
    call_api = AsyncMock(
        return_value=ApiResponse(content=[{"type": "text", "text": "Summary of the work"}], stop_reason="end_turn")
    )
    bus = EventBus()
    orchestrator = Orchestrator(
        director,
        actor,
        settings,
        compactor=ConversationCompactor(call_api, model="claude-compact"),
        channel=channel,
        bus=bus,
        session_id="test-session",
        **kwargs,
    )
    harness = Harness(orchestrator, director_provider, actor_provider, call_api)

    async def collect(event: Event) -> None:
        harness.events.append(event)

    bus.on(ALL_EVENTS, collect)
    return harness


def _stalled(partial: str) -> list:
    """An Actor/Director stream that sends ``partial`` and then goes silent."""
    events = message_events(text(partial))
    return events[:3] + [Stall(5.0)]


# ---------------------------------------------------------------------------
# Delegation
# ---------------------------------------------------------------------------


class TestDelegation:
    @pytest.mark.asyncio
    async def test_tell_worker_round_trip(self, settings):
        h = _build(
            settings,
            director_turns=[text_turn("Plan first.\nTell worker: create hello.txt"), text_turn("Verified.\nDONE")],
            actor_turns=[text_turn("Created hello.txt")],
        )

        result = await h.orchestrator.run("Make a hello file")

        assert result.status is RunStatus.FINISHED
        assert result.exit_code == 0
        assert (result.rounds, result.director_turns) == (1, 2)
        assert h.orchestrator.state is OrchestratorState.FINISHED
        assert h.actor_provider.calls[0]["messages"] == [
            {"role": "user", "content": [{"type": "text", "text": "create hello.txt"}]}
        ]
        assert h.director_input(1) == "Worker says: Created hello.txt"
        assert [e.data["kind"] for e in h.of_type("directive")] == ["delegate", "finished"]
        assert h.of_type("finished")[0].data["status"] == "finished"

    @pytest.mark.asyncio
    async def test_call_worker_resets_and_picks_model(self, settings):
        h = _build(
            settings,
            director_turns=[
                tool_turn(("c1", "call_worker", {"instruction": "write tests", "model": "haiku"})),
                text_turn("Delegated."),
                text_turn("DONE"),
            ],
            actor_turns=[text_turn("Tests written.")],
        )
        h.actor.restore([Message.user("old work"), Message.agent("old reply")])
        h.actor.system_prompt = "Stale prompt"

        result = await h.orchestrator.run("Add tests")

        assert result.status is RunStatus.FINISHED
        assert h.actor.model == FALLBACK_MODELS["haiku"]
        assert h.actor_provider.calls[0]["model"] == FALLBACK_MODELS["haiku"]
        assert h.actor.system_prompt == ACTOR_SYSTEM_PROMPT
        # fresh context: only the new instruction was sent
        assert len(h.actor_provider.calls[0]["messages"]) == 1
        assert "call_worker" in h.director_provider.tool_names(0)

    @pytest.mark.asyncio
    async def test_tell_worker_tool_continues_actor_history(self, settings):
        h = _build(
            settings,
            director_turns=[
                text_turn("Tell worker: step one"),
                tool_turn(("c1", "tell_worker", {"message": "step two"})),
                text_turn("Sent."),
                text_turn("DONE"),
            ],
            actor_turns=[text_turn("one done"), text_turn("two done")],
        )

        result = await h.orchestrator.run("Two steps")

        assert result.rounds == 2
        second = h.actor_provider.calls[1]["messages"]
        assert [m["role"] for m in second] == ["user", "assistant", "user"]
        assert second[-1]["content"][0]["text"] == "step two"
        assert h.director_input(3) == "Worker says: two done"

    @pytest.mark.asyncio
    async def test_actor_tool_loop_limit_relays_partial(self, tmp_path):
        settings = make_settings(workspace_dir=str(tmp_path), actor_max_tool_iterations=1)
        h = _build(
            settings,
            director_turns=[text_turn("Tell worker: search"), text_turn("DONE")],
            actor_turns=[
                tool_turn(("a1", "glob_files", {"pattern": "*"}), preface="step 1"),
                tool_turn(("a2", "glob_files", {"pattern": "*"}), preface="step 2"),
            ],
        )

        await h.orchestrator.run("Find files")

        assert h.director_input(1) == "Worker says: step 1\n\nstep 2 [Stopped after 1 tool iterations]"

    @pytest.mark.asyncio
    async def test_actor_tool_failure_emits_tool_error(self, settings):
        h = _build(
            settings,
            director_turns=[text_turn("Tell worker: check git"), text_turn("DONE")],
            actor_turns=[tool_turn(("g1", "git_command", {"command": "status"})), text_turn("no git for me")],
        )

        await h.orchestrator.run("Inspect the repo")

        errors = h.of_type("tool_error")
        assert len(errors) == 1
        assert errors[0].source == "actor"
        assert errors[0].data["tool"] == "git_command"
        assert "is not permitted" in errors[0].data["status_line"]


# ---------------------------------------------------------------------------
# Corrections
# ---------------------------------------------------------------------------


class TestCorrections:
    @pytest.mark.asyncio
    async def test_prose_gets_correction_prompt(self, settings):
        h = _build(
            settings,
            director_turns=[
                text_turn("Let me think about the approach."),
                text_turn("Tell worker: go"),
                text_turn("DONE"),
            ],
            actor_turns=[text_turn("went")],
        )

        result = await h.orchestrator.run("Do it")

        assert result.status is RunStatus.FINISHED
        assert h.director_input(1) == CORRECTION_PROMPT
        assert result.director_turns == 3
        assert any(s.startswith("Requesting correction 1/") for s in h.statuses())

    @pytest.mark.asyncio
    async def test_corrections_exhausted(self, tmp_path):
        settings = make_settings(workspace_dir=str(tmp_path), max_correction_attempts=2)
        h = _build(settings, director_turns=[text_turn("Hmm."), text_turn("Still thinking."), text_turn("Well.")])

        result = await h.orchestrator.run("Do it")

        assert result.status is RunStatus.CORRECTION_EXHAUSTED
        assert result.exit_code == 0
        assert (result.rounds, result.director_turns) == (0, 3)
        assert h.actor_provider.calls == []

    @pytest.mark.asyncio
    async def test_director_tool_loop_takes_correction_path(self, tmp_path):
        settings = make_settings(workspace_dir=str(tmp_path), director_max_tool_iterations=1)
        h = _build(
            settings,
            director_turns=[
                tool_turn(("d1", "glob_files", {"pattern": "*.py"})),
                tool_turn(("d2", "glob_files", {"pattern": "*.md"})),
                text_turn("DONE"),
            ],
        )

        result = await h.orchestrator.run("Explore")

        assert result.status is RunStatus.FINISHED
        assert result.director_turns == 2
        assert h.director_input(2) == CORRECTION_PROMPT
        h.director.conversation.check_invariants()


# ---------------------------------------------------------------------------
# Round ceiling and operator prefixes
# ---------------------------------------------------------------------------


class TestRounds:
    @pytest.mark.asyncio
    async def test_round_limit_then_more_rounds(self, tmp_path):
        settings = make_settings(workspace_dir=str(tmp_path), max_rounds=1)
        h = _build(
            settings,
            director_turns=[text_turn("Tell worker: a"), text_turn("Tell worker: b")],
            actor_turns=[text_turn("did a")],
        )

        first = await h.orchestrator.run("Letters")

        assert first.status is RunStatus.ROUND_LIMIT
        assert first.rounds == 1
        assert h.orchestrator.remaining_rounds == 0
        assert any("No remaining rounds" in s for s in h.statuses())

        h.director_provider.add(text_turn("Tell worker: c"), text_turn("DONE"))
        h.actor_provider.add(text_turn("did c"))
        second = await h.orchestrator.run("[r+1] continue")

        assert second.status is RunStatus.FINISHED
        assert second.rounds == 2
        assert "Remaining rounds: 1" in h.statuses()
        assert h.director_input(2) == "continue"

    @pytest.mark.asyncio
    async def test_prefixes_on_unlimited_rounds(self, settings):
        h = _build(settings)
        assert h.orchestrator.remaining_rounds is None

        await h.orchestrator.apply_operator_input("[r+3] go")
        assert h.orchestrator.remaining_rounds == 3

        await h.orchestrator.apply_operator_input("[r=2]")
        assert h.orchestrator.remaining_rounds == 2

        await h.orchestrator.apply_operator_input("[r+1]")
        assert h.orchestrator.remaining_rounds == 3

    @pytest.mark.asyncio
    async def test_empty_task_without_operator(self, settings):
        h = _build(settings)
        result = await h.orchestrator.run("   ")
        assert result.status is RunStatus.INTERRUPTED
        assert result.detail == "No instruction provided"

    @pytest.mark.asyncio
    async def test_compact_prefix_asks_for_instruction(self, settings):
        source = AsyncMock(return_value="now finish")
        h = _build(settings, director_turns=[text_turn("DONE")], instruction_source=source)

        result = await h.orchestrator.run("[compact]")

        assert result.status is RunStatus.FINISHED
        assert "No director history to compact" in h.statuses()
        source.assert_awaited_once_with("Instruction: ")
        assert h.director_input(0) == "now finish"


# ---------------------------------------------------------------------------
# Control tools
# ---------------------------------------------------------------------------


class TestControlTools:
    @pytest.mark.asyncio
    async def test_revoke_and_timeout_apply_before_actor_turn(self, settings):
        h = _build(
            settings,
            director_turns=[
                tool_turn(
                    ("c1", "revoke_worker_tool", {"tool_name": "bash_command"}),
                    ("c2", "set_worker_timeout", {"timeout_seconds": 60}),
                    ("c3", "tell_worker", {"message": "list files"}),
                ),
                text_turn("Sent."),
                text_turn("DONE"),
            ],
            actor_turns=[text_turn("files listed")],
        )

        await h.orchestrator.run("List files")

        assert h.actor.inactivity_timeout == 60.0
        assert "bash_command" not in h.actor_provider.tool_names(0)
        assert "read_file" in h.actor_provider.tool_names(0)
        assert "Worker inactivity timeout set to 60s" in h.statuses()

    @pytest.mark.asyncio
    async def test_trim_worker_context(self, settings):
        h = _build(
            settings,
            director_turns=[
                tool_turn(
                    ("c1", "compact_worker_context", {"keep_rounds": 1, "reason": "too long"}),
                    ("c2", "tell_worker", {"message": "continue"}),
                ),
                text_turn("ok"),
                text_turn("DONE"),
            ],
            actor_turns=[text_turn("continuing")],
        )
        history = []
        for n in range(1, 4):
            history += [Message.user(f"instruction {n}"), Message.agent(f"reply {n}")]
        h.actor.restore(history)

        await h.orchestrator.run("Carry on")

        sent = h.actor_provider.calls[0]["messages"]
        assert len(sent) == 3
        assert sent[0]["content"][0]["text"] == "instruction 3"
        assert "Worker context: Trimmed 3 rounds to 1 (too long)" in h.statuses()

    @pytest.mark.asyncio
    async def test_forbidden_grant_reported(self, settings):
        h = _build(settings)
        await h.orchestrator._apply_control(ControlRequests(grants=["git_command"]))

        assert not h.actor.permissions.allows("git_command")
        assert any("git_command" in s and "is not permitted" in s for s in h.statuses())


# ---------------------------------------------------------------------------
# Timeouts and interrupts
# ---------------------------------------------------------------------------


class TestTimeoutsAndInterrupts:
    @pytest.mark.asyncio
    async def test_actor_timeout_relays_partial(self, tmp_path):
        settings = make_settings(workspace_dir=str(tmp_path), actor_inactivity_timeout=0.05)
        h = _build(
            settings,
            director_turns=[text_turn("Tell worker: slow job"), text_turn("DONE")],
            actor_turns=[_stalled("half done")],
        )

        result = await h.orchestrator.run("Be slow")

        assert result.status is RunStatus.FINISHED
        assert h.director_input(1) == "Worker says: half done [TIMEOUT after 0.05s]"
        assert h.of_type("timeout")[0].source == "actor"

    @pytest.mark.asyncio
    async def test_actor_timeout_without_text(self, tmp_path):
        settings = make_settings(workspace_dir=str(tmp_path), actor_inactivity_timeout=0.05)
        h = _build(
            settings,
            director_turns=[text_turn("Tell worker: slow job"), text_turn("DONE")],
            actor_turns=[[Stall(5.0)]],
        )

        await h.orchestrator.run("Be slow")

        assert h.director_input(1) == "Worker says: [No response received - TIMEOUT after 0.05s]"

    @pytest.mark.asyncio
    async def test_director_timeout_never_delegates_cut_off_instruction(self, tmp_path):
        settings = make_settings(workspace_dir=str(tmp_path), director_inactivity_timeout=0.05)
        h = _build(
            settings,
            director_turns=[
                _stalled("Tell worker: delete the tmp dir and the build"),
                text_turn("Tell worker: delete the tmp dir only"),
                text_turn("DONE"),
            ],
            actor_turns=[text_turn("Deleted tmp")],
        )

        result = await h.orchestrator.run("Clean up")

        assert result.status is RunStatus.FINISHED
        assert result.rounds == 1
        assert h.actor_provider.calls[0]["messages"][-1]["content"][-1]["text"] == "delete the tmp dir only"
        assert h.director_input(1) == TIMEOUT_PROMPT.format(
            relay="Tell worker: delete the tmp dir and the build [TIMEOUT after 0.05s]"
        )
        assert h.of_type("timeout")[0].source == "director"
        assert "Director timed out, nothing sent to the worker (1/3)" in h.statuses()

    @pytest.mark.asyncio
    async def test_director_timeouts_use_correction_budget(self, tmp_path):
        settings = make_settings(
            workspace_dir=str(tmp_path), director_inactivity_timeout=0.05, max_correction_attempts=1
        )
        h = _build(settings, director_turns=[[Stall(5.0)], [Stall(5.0)]])

        result = await h.orchestrator.run("Plan")

        assert result.status is RunStatus.CORRECTION_EXHAUSTED
        assert h.actor_provider.calls == []
        assert "[No response received - TIMEOUT after 0.05s]" in h.director_input(1)

    @pytest.mark.asyncio
    async def test_interrupt_actor_then_redirect(self, settings):
        source = AsyncMock(return_value="focus on tests")
        h = _build(
            settings,
            director_turns=[text_turn("Tell worker: refactor everything"), text_turn("DONE")],
            actor_turns=[_stalled("partial")],
            instruction_source=source,
            actor_sink=lambda chunk: h.orchestrator.interrupt(),
        )

        result = await h.orchestrator.run("Refactor")

        assert result.status is RunStatus.FINISHED
        assert h.director_input(1) == "Worker says: partial [Interrupted by operator]\n\n[Operator] focus on tests"
        assert "Paused by operator" in h.statuses()

    @pytest.mark.asyncio
    async def test_interrupt_director_then_stop(self, settings):
        source = AsyncMock(return_value=None)
        h = _build(
            settings,
            director_turns=[_stalled("Thinking")],
            instruction_source=source,
            director_sink=lambda chunk: h.orchestrator.interrupt(),
        )

        result = await h.orchestrator.run("Plan")

        assert result.status is RunStatus.INTERRUPTED
        assert result.exit_code == 130
        assert h.director.conversation.last.text == "Thinking"

    @pytest.mark.asyncio
    async def test_interrupt_director_then_redirect(self, settings):
        source = AsyncMock(return_value="new plan")
        h = _build(
            settings,
            director_turns=[_stalled("Thinking"), text_turn("DONE")],
            instruction_source=source,
            director_sink=lambda chunk: h.orchestrator.interrupt() if chunk == "Thinking" else None,
        )

        result = await h.orchestrator.run("Plan")

        assert result.status is RunStatus.FINISHED
        assert h.director_input(1) == "[Operator] new plan"

    @pytest.mark.asyncio
    async def test_interrupt_before_run_applies_to_first_turn(self, settings):
        h = _build(settings, director_turns=[text_turn("never streamed")])
        h.orchestrator.interrupt()

        result = await h.orchestrator.run("Plan")

        assert result.status is RunStatus.INTERRUPTED
        assert h.director_provider.calls == []


# ---------------------------------------------------------------------------
# Compaction and provider failures
# ---------------------------------------------------------------------------


class TestCompactionAndFailures:
    @pytest.mark.asyncio
    async def test_auto_compaction_before_turn(self, tmp_path):
        settings = make_settings(workspace_dir=str(tmp_path), context_window=1000, compaction_threshold=0.1)
        h = _build(settings, director_turns=[text_turn("DONE")])
        h.director.restore([Message.user("x" * 800), Message.agent("noted")])

        result = await h.orchestrator.run("next")

        assert result.status is RunStatus.FINISHED
        h.call_api.assert_awaited_once()
        compaction = h.of_type("compaction")[0]
        assert compaction.source == "director"
        assert compaction.data["trigger"] == "auto"
        sent = h.director_provider.calls[0]["messages"]
        assert sent[0]["content"][0]["text"].startswith("This session is being continued")
        assert h.director_input(0) == "next"

    @pytest.mark.asyncio
    async def test_interrupt_stops_auto_compaction(self, tmp_path):
        settings = make_settings(workspace_dir=str(tmp_path), context_window=1000, compaction_threshold=0.1)
        h = _build(settings, director_turns=[text_turn("never streamed")])
        history = [Message.user("x" * 800), Message.agent("noted")]
        h.director.restore(history)

        async def slow_summary(**kwargs):
            h.orchestrator.interrupt()
            await asyncio.sleep(5)

        h.call_api.side_effect = slow_summary

        result = await asyncio.wait_for(h.orchestrator.run("next"), timeout=1.0)

        assert result.status is RunStatus.INTERRUPTED
        assert list(h.director.conversation.messages[:2]) == history
        assert h.of_type("compaction") == []
        assert any("aborted (interrupt)" in s for s in h.statuses())
        assert h.director_provider.calls == []

    @pytest.mark.asyncio
    async def test_interrupt_stops_manual_compaction(self, settings):
        h = _build(settings, director_turns=[text_turn("never streamed")])
        h.director.restore([Message.user("old task"), Message.agent("old reply")])

        async def slow_summary(**kwargs):
            h.orchestrator.interrupt()
            await asyncio.sleep(5)

        h.call_api.side_effect = slow_summary

        result = await asyncio.wait_for(h.orchestrator.run("[compact] carry on"), timeout=1.0)

        assert result.status is RunStatus.INTERRUPTED
        assert h.director.conversation.messages[0].text == "old task"
        assert h.director_provider.calls == []

    @pytest.mark.asyncio
    async def test_overflow_compacts_and_continues(self, settings):
        overflow = ProviderError("prompt is too long", status_code=400, context_overflow=True)
        h = _build(settings, director_turns=[overflow, text_turn("DONE")])

        result = await h.orchestrator.run("Big task")

        assert result.status is RunStatus.FINISHED
        assert h.of_type("compaction")[0].data["trigger"] == "overflow"
        assert h.director.conversation.messages[0].text.startswith("This session is being continued")
        assert len(h.director_provider.calls) == 2

    @pytest.mark.asyncio
    async def test_overflow_with_failed_compaction_fails_run(self, settings):
        overflow = ProviderError("prompt is too long", status_code=400, context_overflow=True)
        h = _build(settings, director_turns=[overflow])
        h.call_api.side_effect = ProviderError("overloaded", status_code=529, retryable=True)

        result = await h.orchestrator.run("Big task")

        assert result.status is RunStatus.FAILED
        assert result.exit_code == 1
        assert any(s.startswith("Failed to compact director conversation") for s in h.statuses())

    @pytest.mark.asyncio
    async def test_provider_error_fails_run(self, settings):
        h = _build(settings, director_turns=[ProviderError("invalid x-api-key", status_code=401)])

        result = await h.orchestrator.run("Anything")

        assert result.status is RunStatus.FAILED
        assert result.detail == "Provider error: invalid x-api-key"
        assert h.of_type("finished")[0].data["status"] == "failed"


# ---------------------------------------------------------------------------
# Transcript records
# ---------------------------------------------------------------------------


class TestTranscriptEvents:
    @pytest.mark.asyncio
    async def test_records_emitted_in_order(self, settings):
        h = _build(
            settings,
            director_turns=[text_turn("Tell worker: go"), text_turn("DONE")],
            actor_turns=[text_turn("gone")],
        )

        await h.orchestrator.run("Go")

        records = [(e.data["record_type"], e.source) for e in h.of_type("transcript")]
        assert records == [
            (METADATA, "orchestrator"),
            (DIRECTOR_MESSAGE, "director"),
            (DIRECTOR_MESSAGE, "director"),
            (ACTOR_MESSAGE, "actor"),
            (ACTOR_MESSAGE, "actor"),
            (DIRECTOR_MESSAGE, "director"),
            (DIRECTOR_MESSAGE, "director"),
        ]
        assert all(e.session_id == "test-session" for e in h.events)

    @pytest.mark.asyncio
    async def test_compaction_records_boundary(self, settings):
        h = _build(settings)
        h.director.restore([Message.user("hello"), Message.agent("hi")])

        assert await h.orchestrator.compact_director() is True

        boundary = [e for e in h.of_type("transcript") if e.data["record_type"] == SYSTEM_BOUNDARY]
        assert len(boundary) == 1
        payload = boundary[0].data["payload"]
        assert payload["source"] == "director"
        assert payload["boundary"]["trigger"] == "manual"
        assert payload["summary"]["role"] == "user"
