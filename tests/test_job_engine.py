"""
Tests for the job execution state machine.
"""

import asyncio
import threading

import pytest

from plugin_sender.hook_registry import HookRegistry
from plugin_sender.job_engine import JobEngine
from plugin_sender.types import JobReason, JobState
from plugin_sender.utils.exceptions import (
    GrblAlarmException,
    GrblBusyError,
    JobBusyError,
    SerialTimeoutError,
)

from conftest import wait_until

THREE_LINES = "G21\nG0 X1\nG0 X2\n"


class Recorder:
    """Registers handlers for every hook and records the calls."""

    def __init__(self, hooks, plugin_id="recorder"):
        self.events = []
        hooks.register("onBeforeJobStart", plugin_id, self.before_job)
        hooks.register("onBeforeGcodeLine", plugin_id, self.before_line)
        hooks.register("onAfterGcodeLine", plugin_id, self.after_line)
        hooks.register("onAfterJobEnd", plugin_id, self.after_job)

    def before_job(self, source, ctx):
        self.events.append(("start", ctx.total_lines))

    def before_line(self, line, ctx):
        self.events.append(("before", ctx.line_number, line))

    def after_line(self, line, response, ctx):
        self.events.append(("after", ctx.line_number, line, response))

    def after_job(self, ctx, outcome):
        self.events.append(("end", outcome))

    def of(self, kind):
        return [e for e in self.events if e[0] == kind]


class TestLifecycle:
    """Hook sequence and terminal outcomes."""

    def test_three_line_job_completes(self, engine, hooks, transport):
        recorder = Recorder(hooks)
        outcome = engine.run_job(THREE_LINES, filename="a.nc", source_id="a")

        assert outcome.reason is JobReason.COMPLETED
        assert outcome.total_lines == 3
        assert outcome.lines_processed == 3
        assert transport.sent == ["G21", "G0 X1", "G0 X2"]
        assert [e[1] for e in recorder.of("before")] == [1, 2, 3]
        assert [e[1] for e in recorder.of("after")] == [1, 2, 3]
        assert all(e[3] == "ok" for e in recorder.of("after"))
        ends = recorder.of("end")
        assert len(ends) == 1
        assert ends[0][1].reason is JobReason.COMPLETED
        assert recorder.events[-1][0] == "end"
        assert engine.state is JobState.IDLE
        assert engine.last_outcome == outcome

    def test_line_events_alternate(self, engine, hooks):
        recorder = Recorder(hooks)
        engine.run_job(THREE_LINES)
        kinds = [e[0] for e in recorder.events if e[0] in ("before", "after")]
        assert kinds == ["before", "after"] * 3

    def test_hooks_see_snapshot_context(self, engine, hooks):
        contexts = []
        hooks.register("onBeforeGcodeLine", "p", lambda line, ctx: contexts.append(ctx))
        engine.run_job(THREE_LINES, filename="a.nc", file_path="/tmp/a.nc", source_id="a")
        assert [c.line_number for c in contexts] == [1, 2, 3]
        assert contexts[0].filename == "a.nc"
        assert contexts[0].file_path == "/tmp/a.nc"
        assert contexts[0].total_lines == 3

    def test_empty_program_completes(self, engine, hooks, transport):
        recorder = Recorder(hooks)
        outcome = engine.run_job("")
        assert outcome.reason is JobReason.COMPLETED
        assert outcome.total_lines == 0
        assert transport.sent == []
        assert len(recorder.of("end")) == 1

    def test_blank_and_comment_lines_not_sent(self, engine, hooks, transport):
        recorder = Recorder(hooks)
        outcome = engine.run_job("G21\n\n(comment)\n; note\nG0 X1")
        assert outcome.reason is JobReason.COMPLETED
        assert outcome.total_lines == 5
        assert transport.sent == ["G21", "G0 X1"]
        responses = [e[3] for e in recorder.of("after")]
        assert responses == ["ok", None, None, None, "ok"]

    def test_comments_stripped_before_sending(self, engine, transport):
        engine.run_job("G0 X1 (rapid) ; move\n")
        assert transport.sent == ["G0 X1"]


class TestTransforms:
    """Program and line rewriting by hooks."""

    def test_before_job_start_rewrites_program(self, engine, hooks, transport):
        hooks.register("onBeforeJobStart", "p", lambda source, ctx: source + "M2\n")
        outcome = engine.run_job(THREE_LINES)
        assert outcome.total_lines == 4
        assert transport.sent[-1] == "M2"

    def test_line_chain_composes(self, engine, hooks, transport):
        hooks.register("onBeforeGcodeLine", "a", lambda line, ctx: line + " F100" if line.startswith("G0") else None)
        hooks.register("onBeforeGcodeLine", "b", lambda line, ctx: line.replace("G0", "G1"))
        engine.run_job(THREE_LINES)
        assert transport.sent == ["G21", "G1 X1 F100", "G1 X2 F100"]

    def test_after_hook_receives_modified_line(self, engine, hooks):
        seen = []
        hooks.register("onBeforeGcodeLine", "a", lambda line, ctx: line + " S1")
        hooks.register("onAfterGcodeLine", "b", lambda line, response, ctx: seen.append(line))
        engine.run_job("M3\n")
        assert seen == ["M3 S1"]

    def test_failing_handler_uses_previous_output(self, engine, hooks, transport):
        def boom(line, ctx):
            raise RuntimeError("plugin bug")

        after = []
        hooks.register("onBeforeGcodeLine", "a", lambda line, ctx: line + " F200")
        hooks.register("onBeforeGcodeLine", "bad", boom)
        hooks.register("onBeforeGcodeLine", "c", lambda line, ctx: after.append(line))
        outcome = engine.run_job("G1 X1\n")
        assert outcome.reason is JobReason.COMPLETED
        assert after == ["G1 X1 F200"]
        assert transport.sent == ["G1 X1 F200"]

    def test_cancelled_async_handler_does_not_end_job(self, transport, broadcaster):
        inline_hooks = HookRegistry(timeout_s=None)
        engine = JobEngine(transport, inline_hooks, broadcaster, ack_timeout=1.0)

        async def cancelled(line, ctx):
            raise asyncio.CancelledError()

        inline_hooks.register("onBeforeGcodeLine", "cancels", cancelled)
        outcome = engine.run_job("G21\nG0 X1\n")
        assert outcome.reason is JobReason.COMPLETED
        assert transport.sent == ["G21", "G0 X1"]
        assert len(inline_hooks.faults()) == 2

    def test_non_string_result_ignored(self, engine, hooks, transport):
        hooks.register("onBeforeGcodeLine", "a", lambda line, ctx: 123)
        engine.run_job("G0 X1\n")
        assert transport.sent == ["G0 X1"]
        assert hooks.faults()[0].plugin_id == "a"

    def test_failing_before_job_start_still_runs(self, engine, hooks, transport):
        hooks.register("onBeforeJobStart", "a", lambda source, ctx: 1 / 0)
        outcome = engine.run_job(THREE_LINES)
        assert outcome.reason is JobReason.COMPLETED
        assert len(transport.sent) == 3


class TestStopAndErrors:
    """Stop requests and transport faults."""

    def test_stop_between_lines(self, engine, hooks, transport):
        recorder = Recorder(hooks)

        def stop_after_second(line, response, ctx):
            if ctx.line_number == 2:
                engine.stop_job()

        hooks.register("onAfterGcodeLine", "stopper", stop_after_second)
        outcome = engine.run_job(THREE_LINES)

        assert outcome.reason is JobReason.STOPPED
        assert outcome.error is None
        assert outcome.lines_processed == 2
        assert transport.sent == ["G21", "G0 X1"]
        assert [e[1] for e in recorder.of("before")] == [1, 2]
        assert [e[1] for e in recorder.of("after")] == [1, 2]
        assert len(recorder.of("end")) == 1
        assert engine.state is JobState.IDLE

    def test_disconnect_during_line_two(self, engine, hooks, transport, disconnect_error):
        recorder = Recorder(hooks)
        transport.fail_on_call[2] = disconnect_error
        outcome = engine.run_job(THREE_LINES)

        assert outcome.reason is JobReason.ERROR
        assert "device unplugged" in outcome.error
        assert "Line 2" in outcome.error
        assert [e[1] for e in recorder.of("before")] == [1, 2]
        assert [e[1] for e in recorder.of("after")] == [1]
        ends = recorder.of("end")
        assert len(ends) == 1
        assert ends[0][1].reason is JobReason.ERROR

    def test_controller_error_ends_job(self, engine, transport, grbl_error):
        transport.failures["G0 X1"] = grbl_error
        outcome = engine.run_job(THREE_LINES)
        assert outcome.reason is JobReason.ERROR
        assert "Unsupported or invalid g-code command" in outcome.error
        assert transport.sent == ["G21"]

    def test_alarm_ends_job(self, engine, transport):
        transport.failures["G0 X2"] = GrblAlarmException("ALARM:1 (Hard limit triggered)", alarm_code="1")
        outcome = engine.run_job(THREE_LINES)
        assert outcome.reason is JobReason.ERROR
        assert "Hard limit" in outcome.error
        assert outcome.lines_processed == 2

    def test_ack_timeout_ends_job(self, engine, transport):
        transport.failures["G21"] = SerialTimeoutError("No acknowledgment for 'G21' within 1.0s")
        outcome = engine.run_job(THREE_LINES)
        assert outcome.reason is JobReason.ERROR
        assert "No acknowledgment" in outcome.error

    def test_not_connected_errors_before_running(self, engine, hooks, transport, broadcaster):
        states = []
        broadcaster.subscribe("job-state", lambda p: states.append(p["state"]))
        recorder = Recorder(hooks)
        transport.connected = False
        outcome = engine.run_job(THREE_LINES)

        assert outcome.reason is JobReason.ERROR
        assert outcome.total_lines == 0
        assert "not connected" in outcome.error
        assert recorder.of("start") == []
        assert len(recorder.of("end")) == 1
        assert broadcaster.flush(timeout=2.0)
        assert "running" not in states
        assert states == ["starting", "errored", "idle"]

    def test_ack_timeout_passed_to_transport(self, engine, transport):
        engine.run_job("G21\n")
        assert transport.timeouts == [1.0]


class TestConcurrency:
    """Background jobs, the idle gate and plugin sends."""

    def test_start_job_runs_in_background(self, engine, hooks, transport):
        gate = threading.Event()
        hooks.register("onBeforeGcodeLine", "p", lambda line, ctx: gate.wait(2.0) and None)
        context = engine.start_job(THREE_LINES, filename="bg.nc")
        assert context.filename == "bg.nc"
        assert engine.state in (JobState.STARTING, JobState.RUNNING)
        assert engine.is_busy() is True
        assert engine.context().filename == "bg.nc"
        gate.set()
        outcome = engine.wait(timeout=5.0)
        assert outcome is not None
        assert outcome.reason is JobReason.COMPLETED
        assert engine.state is JobState.IDLE
        assert engine.context() is None

    def test_second_job_rejected_while_busy(self, engine, hooks):
        gate = threading.Event()
        hooks.register("onBeforeGcodeLine", "p", lambda line, ctx: gate.wait(2.0) and None)
        engine.start_job(THREE_LINES)
        try:
            with pytest.raises(JobBusyError):
                engine.start_job(THREE_LINES)
        finally:
            gate.set()
        assert engine.wait(timeout=5.0).reason is JobReason.COMPLETED
        assert engine.run_job("G21").reason is JobReason.COMPLETED

    def test_stop_background_job(self, engine, hooks, transport):
        started = threading.Event()
        gate = threading.Event()

        def block_first(line, ctx):
            if ctx.line_number == 1:
                started.set()
                gate.wait(2.0)

        hooks.register("onBeforeGcodeLine", "p", block_first)
        engine.start_job(THREE_LINES)
        assert started.wait(2.0)
        assert engine.stop_job() is True
        gate.set()
        outcome = engine.wait(timeout=5.0)
        assert outcome.reason is JobReason.STOPPED
        assert transport.sent == []
        assert engine.stop_job() is False

    def test_send_gcode_from_hook(self, engine, hooks, transport):
        responses = []

        def dwell_after_first(line, response, ctx):
            if ctx.line_number == 1:
                responses.append(engine.send_gcode("G4 P0"))

        hooks.register("onAfterGcodeLine", "p", dwell_after_first)
        outcome = engine.run_job("G21\nG0 X1\n")
        assert outcome.reason is JobReason.COMPLETED
        assert responses == ["ok"]
        assert transport.sent == ["G21", "G4 P0", "G0 X1"]

    def test_send_gcode_rejected_outside_hook_phase(self, engine, transport):
        errors = []

        def try_send(line):
            if line == "G0 X1":
                try:
                    engine.send_gcode("G4 P0")
                except GrblBusyError as exc:
                    errors.append(exc)

        transport.on_send = try_send
        engine.run_job(THREE_LINES)
        assert len(errors) == 1
        assert "G4 P0" not in transport.sent

    def test_send_gcode_when_idle(self, engine, transport):
        assert engine.send_gcode("$X ; unlock", {"timeout": 2.0}) == "ok"
        assert transport.sent == ["$X"]
        assert transport.timeouts == [2.0]


class TestToolTracking:
    """Tool tracking and same-tool elision."""

    def test_tool_tracked_after_change(self, engine, broadcaster):
        events = []
        broadcaster.subscribe("tool-change", events.append)
        engine.run_job("M6 T2\nG0 X1\nT3 M6\n")
        assert engine.current_tool == 3
        assert broadcaster.flush(timeout=2.0)
        assert [e["tool_number"] for e in events] == [2, 3]
        assert events[1]["previous_tool"] == 2

    def test_same_tool_sent_when_elision_off(self, engine, transport):
        engine.set_current_tool(2)
        engine.run_job("M6 T2\nM6 T2\n")
        assert transport.sent == ["M6 T2", "M6 T2"]

    def test_same_tool_elided_when_enabled(self, transport, hooks, broadcaster):
        engine = JobEngine(
            transport,
            hooks,
            broadcaster,
            elide_same_tool_changes=True,
            initial_tool=2,
        )
        recorder = Recorder(hooks)
        outcome = engine.run_job("M6 T2\nM6 T2\nM6 T3\nG0 X1\n")
        assert outcome.reason is JobReason.COMPLETED
        assert transport.sent == ["M6 T3", "G0 X1"]
        assert [e[1] for e in recorder.of("after")] == [1, 2, 3, 4]
        assert [e[3] for e in recorder.of("after")] == [None, None, "ok", "ok"]
        assert engine.current_tool == 3

    def test_elision_keeps_other_words(self, transport, hooks, broadcaster):
        engine = JobEngine(
            transport,
            hooks,
            broadcaster,
            elide_same_tool_changes=True,
            initial_tool=2,
        )
        outcome = engine.run_job("G53 G0 Z-5 M6 T2\nT2 M6\n")
        assert outcome.reason is JobReason.COMPLETED
        assert transport.sent == ["G53 G0 Z-5"]
        assert engine.current_tool == 2

    def test_bare_m6_keeps_tool(self, engine, transport):
        engine.set_current_tool(4)
        engine.run_job("M6\n")
        assert transport.sent == ["M6"]
        assert engine.current_tool == 4


class TestEvents:
    """Engine events on the broadcaster."""

    def test_state_progress_and_end_events(self, engine, broadcaster):
        states, progress, ends = [], [], []
        broadcaster.subscribe("job-state", lambda p: states.append(p["state"]))
        broadcaster.subscribe("job-progress", progress.append)
        broadcaster.subscribe("job-end", ends.append)
        engine.run_job(THREE_LINES, filename="a.nc")
        assert broadcaster.flush(timeout=2.0)
        assert states == ["starting", "running", "completed", "idle"]
        assert [p["line_number"] for p in progress] == [1, 2, 3]
        assert len(ends) == 1
        assert ends[0]["reason"] == "completed"
        assert ends[0]["filename"] == "a.nc"

    def test_wait_when_idle_returns_last_outcome(self, engine):
        assert engine.wait(timeout=0.1) is None
        outcome = engine.run_job("G21")
        assert engine.wait(timeout=0.1) == outcome
        assert wait_until(lambda: engine.state is JobState.IDLE)
