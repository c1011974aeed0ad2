import json
import os
import tempfile
import time
import unittest
from pathlib import Path

from agentpulse.engine.aggregator import ActivityEngine
from agentpulse.engine.settings import EngineConfig
from agentpulse.engine.tailing import read_from_offset
from agentpulse.models import ActivityStatus
from agentpulse.parsers.sessions import derive_session_detail


def _call(call_id: str, name: str, arguments: dict) -> dict:
    return {
        "type": "message",
        "timestamp": "2026-02-16T10:00:00Z",
        "message": {
            "role": "assistant",
            "content": [{"type": "toolCall", "id": call_id, "name": name, "arguments": arguments}],
        },
    }


def _result(call_id: str, text: str) -> dict:
    return {
        "type": "message",
        "timestamp": "2026-02-16T10:00:03Z",
        "message": {
            "role": "toolResult",
            "toolCallId": call_id,
            "content": [{"type": "text", "text": text}],
            "details": {"exitCode": 0, "durationMs": 3000},
        },
    }


class ActivityEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name)
        self.now = time.time()
        self.reads: list[Path] = []
        self.derived: list[str] = []

    def _clock(self) -> float:
        return self.now

    def _reader(self, path, offset):
        self.reads.append(Path(path))
        return read_from_offset(path, offset)

    def _derive(self, path, status, now, max_recent_actions):
        self.derived.append(path.stem)
        return derive_session_detail(path, status, now, max_recent_actions)

    def _engine(self, **overrides) -> ActivityEngine:
        settings = EngineConfig.for_directory(self.root, **overrides)
        return ActivityEngine(settings, clock=self._clock, reader=self._reader, derive=self._derive)

    def _append(self, path: Path, *entries: dict) -> None:
        with open(path, "a", encoding="utf-8") as fh:
            for entry in entries:
                fh.write(json.dumps(entry) + "\n")

    def _write_registry(self, entries: dict) -> None:
        (self.root / "sessions.json").write_text(json.dumps(entries), encoding="utf-8")

    @property
    def progress_path(self) -> Path:
        return self.root / "progress.jsonl"

    def test_empty_inputs_produce_empty_state(self) -> None:
        engine = self._engine()

        result = engine.tick()

        self.assertFalse(result.changed)
        self.assertEqual(result.failed_steps, [])
        self.assertEqual(engine.get_progress(), [])
        self.assertEqual(engine.get_sessions(), [])
        metrics = engine.get_metrics()
        self.assertEqual(metrics.tracked_files, 0)
        self.assertEqual(metrics.total_buffered_events, 0)
        self.assertEqual(metrics.ticks, 1)

    def test_one_appended_line_gives_one_event_and_offset_at_size(self) -> None:
        engine = self._engine()
        self._append(self.progress_path, {"ts": 1_700_000_000_000, "agent": "main", "action": "edit", "status": "done"})

        result = engine.tick()

        self.assertTrue(result.changed)
        self.assertEqual(len(result.progress), 1)
        self.assertEqual(engine.get_progress()[0].action, "edit")
        self.assertEqual(engine.progress_offset, self.progress_path.stat().st_size)

    def test_ticks_without_new_input_are_idempotent(self) -> None:
        self._write_registry({"agent:main:main": {"sessionId": "s-main", "updatedAt": int(self.now * 1000)}})
        self._append(self.root / "s-main.jsonl", _call("c1", "exec", {"command": "ls"}))
        self._append(self.progress_path, {"ts": 1_700_000_000_000, "action": "a"})
        engine = self._engine()
        engine.tick()
        progress, sessions = engine.get_progress(), engine.get_sessions()
        offsets, progress_offset = engine.offsets.snapshot(), engine.progress_offset

        result = engine.tick()

        self.assertEqual(result.progress, [])
        self.assertIsNone(result.sessions)
        self.assertFalse(result.changed)
        self.assertEqual(engine.get_progress(), progress)
        self.assertEqual(engine.get_sessions(), sessions)
        self.assertEqual(engine.offsets.snapshot(), offsets)
        self.assertEqual(engine.progress_offset, progress_offset)

    def test_offsets_only_grow_until_truncation_resets_them(self) -> None:
        engine = self._engine()
        self._append(self.progress_path, *({"ts": 1_700_000_000_000 + i, "action": "long-action-name"} for i in range(3)))
        engine.tick()
        first = engine.progress_offset

        self._append(self.progress_path, {"ts": 1_700_000_000_100, "action": "b"})
        engine.tick()
        self.assertGreater(engine.progress_offset, first)

        self.progress_path.write_text(json.dumps({"ts": 1_700_000_000_200, "action": "c"}) + "\n", encoding="utf-8")
        result = engine.tick()

        self.assertEqual(engine.progress_offset, self.progress_path.stat().st_size)
        self.assertEqual([event.action for event in result.progress], ["c"])
        self.assertTrue(result.changed)

    def test_buffer_and_offsets_stay_bounded(self) -> None:
        engine = self._engine(max_active_transcripts=60)
        self._append(self.progress_path, *({"ts": 1_700_000_000_000 + i, "action": "step"} for i in range(150)))
        for index in range(60):
            self._append(self.root / f"t{index:02d}.jsonl", _call(f"c{index}", "exec", {"command": "ls"}))

        engine.tick()

        metrics = engine.get_metrics()
        self.assertEqual(metrics.total_buffered_events, 100)
        self.assertLessEqual(metrics.tracked_files, 50)
        progress = engine.get_progress()
        self.assertEqual(progress, sorted(progress, key=lambda event: event.timestamp))

    def test_call_then_result_is_running_then_done(self) -> None:
        self._write_registry({"agent:main:subagent:s1": {"sessionId": "s1", "label": "builder", "updatedAt": int(self.now * 1000)}})
        transcript = self.root / "s1.jsonl"
        engine = self._engine()
        self._append(transcript, _call("c1", "exec", {"command": "make test"}))

        first = engine.tick()

        self.assertEqual([event.status for event in first.progress], [ActivityStatus.RUNNING])
        self.assertEqual(first.progress[0].agent_label, "builder")

        self._append(transcript, _result("c1", "ok\nall passed"))
        second = engine.tick()

        self.assertEqual([event.status for event in second.progress], [ActivityStatus.DONE])
        self.assertEqual(second.progress[0].output_summary, "exit 0 · 2 lines · 3.0s")
        buffered = [event for event in engine.get_progress() if event.call_id == "c1"]
        self.assertEqual(len(buffered), 1)
        self.assertEqual(buffered[0].status, ActivityStatus.DONE)

    def test_three_idle_ticks_back_off(self) -> None:
        engine = self._engine()

        intervals = [engine.tick().next_interval_ms for _ in range(3)]

        self.assertEqual(intervals, [1250, 1500, 1750])
        self.assertEqual(engine.get_metrics().current_poll_interval, 1750)
        self.assertEqual(engine.poll_interval_seconds, 1.75)

    def test_only_recent_transcripts_are_read(self) -> None:
        old = self.now - 3600
        recent = []
        for index in range(60):
            path = self.root / f"t{index:02d}.jsonl"
            self._append(path, _call(f"c{index}", "read", {"path": f"/f{index}"}))
            if index in (7, 21, 42):
                recent.append(path)
            else:
                os.utime(path, (old, old))
        engine = self._engine()

        engine.tick()

        transcript_reads = [path for path in self.reads if path != self.progress_path]
        self.assertEqual(sorted(transcript_reads), sorted(recent))

    def test_session_ages_from_running_to_completed_with_cached_detail(self) -> None:
        updated_at = int(self.now * 1000) - 30_000
        self._write_registry(
            {
                "agent:main:main": {"sessionId": "s-main", "updatedAt": updated_at, "model": "claude-sonnet-4"},
                "agent:main:cron:nightly": {"sessionId": "s-cron", "updatedAt": updated_at},
            }
        )
        self._append(
            self.root / "s-main.jsonl",
            {"type": "message", "timestamp": "2026-02-16T10:00:00Z", "message": {"role": "user", "content": "Ship COR-9"}},
            {"type": "message", "timestamp": "2026-02-16T10:00:30Z", "message": {"role": "assistant", "content": "Done, opened PR #12."}},
        )
        engine = self._engine()

        engine.tick()
        sessions = engine.get_sessions()
        self.assertEqual([session.id for session in sessions], ["s-main"])
        self.assertEqual(sessions[0].status, ActivityStatus.RUNNING)
        self.assertEqual(sessions[0].label, "main")
        self.assertEqual(sessions[0].time_marker, "30s ago")
        self.assertEqual(sessions[0].task_summary, "Ship COR-9")
        self.assertEqual(sessions[0].extracted_tickets, ["COR-9"])

        self.now += 170
        engine.tick()
        self.assertEqual(engine.get_sessions()[0].status, ActivityStatus.IDLE)

        self.now += 200
        engine.tick()
        completed = engine.get_sessions()[0]
        self.assertEqual(completed.status, ActivityStatus.COMPLETED)
        self.assertEqual(completed.result_snippet, "Done, opened PR #12.")
        scans = len(self.derived)

        self.now += 1
        result = engine.tick()

        self.assertEqual(len(self.derived), scans)
        self.assertEqual(engine.get_sessions()[0].result_snippet, completed.result_snippet)
        self.assertIsNone(result.sessions)

    def test_sessions_are_sorted_and_capped(self) -> None:
        now_ms = int(self.now * 1000)
        self._write_registry(
            {f"agent:main:subagent:{index}": {"sessionId": f"s{index}", "updatedAt": now_ms - index * 1000} for index in range(5)}
        )
        engine = self._engine(max_sessions=3)

        engine.tick()

        self.assertEqual([session.id for session in engine.get_sessions()], ["s0", "s1", "s2"])

    def test_returned_sessions_are_copies(self) -> None:
        self._write_registry({"agent:main:main": {"sessionId": "s-main", "updatedAt": int(self.now * 1000)}})
        engine = self._engine()
        engine.tick()

        engine.get_sessions()[0].label = "mutated"

        self.assertEqual(engine.get_sessions()[0].label, "main")

    def test_failed_step_is_skipped_and_others_still_run(self) -> None:
        self._write_registry({"agent:main:main": {"sessionId": "s-main", "updatedAt": int(self.now * 1000)}})
        self._append(self.progress_path, {"ts": 1_700_000_000_000})

        def reader(path, offset):
            if Path(path) == self.progress_path:
                raise PermissionError("denied")
            return read_from_offset(path, offset)

        engine = ActivityEngine(EngineConfig.for_directory(self.root), clock=self._clock, reader=reader)

        result = engine.tick()

        self.assertEqual(result.failed_steps, ["progress"])
        self.assertEqual(engine.get_progress(), [])
        self.assertEqual(len(engine.get_sessions()), 1)

    def test_tick_budget_skips_remaining_steps(self) -> None:
        engine = self._engine(tick_budget=1e-9)

        result = engine.tick()

        self.assertEqual(result.skipped_steps, ["progress", "transcripts", "sessions"])

    def test_malformed_registry_yields_no_sessions(self) -> None:
        (self.root / "sessions.json").write_text("{not json", encoding="utf-8")
        engine = self._engine()

        result = engine.tick()

        self.assertEqual(result.failed_steps, [])
        self.assertEqual(engine.get_sessions(), [])

    def test_non_finite_numbers_in_inputs_do_not_fail_steps(self) -> None:
        updated_at = int(self.now * 1000) - 30_000
        (self.root / "sessions.json").write_text(
            '{"agent:main:main": {"sessionId": "s-main", "updatedAt": %d},'
            ' "agent:main:subagent:x1": {"sessionId": "s-sub", "updatedAt": Infinity}}' % updated_at,
            encoding="utf-8",
        )
        self._append(
            self.progress_path,
            {"ts": float("inf"), "action": "bad-ts"},
            {"ts": 1_700_000_000_000, "action": "good"},
        )
        self._append(
            self.root / "s-main.jsonl",
            {
                "type": "message",
                "timestamp": "2026-02-16T09:59:00Z",
                "message": {"role": "assistant", "usage": {"input": float("inf"), "output": 5}, "content": "Working."},
            },
            _call("c1", "exec", {"command": "ls"}),
        )
        engine = self._engine()

        result = engine.tick()

        self.assertEqual(result.failed_steps, [])
        self.assertEqual(sorted(event.action for event in engine.get_progress()), ["bad-ts", "exec", "good"])
        sessions = {session.id: session for session in engine.get_sessions()}
        self.assertEqual(sorted(sessions), ["s-main", "s-sub"])
        self.assertEqual(sessions["s-main"].status, ActivityStatus.RUNNING)
        self.assertEqual(sessions["s-main"].tokens_in, 0)
        self.assertEqual(sessions["s-main"].tokens_out, 5)
        self.assertEqual(sessions["s-sub"].status, ActivityStatus.COMPLETED)


if __name__ == "__main__":
    unittest.main()
