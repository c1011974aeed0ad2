import json
import tempfile
import unittest
from collections import OrderedDict
from pathlib import Path

from agentpulse.engine.merger import TranscriptMerger
from agentpulse.engine.scanner import TranscriptFile
from agentpulse.engine.tailing import FileOffsets
from agentpulse.models import ActivityStatus, PendingToolCall, ToolResult
from agentpulse.parsers.transcripts import (
    extract_target,
    merge_calls_and_results,
    parse_transcript_lines,
    summarize_output,
)


def _call(call_id: str, name: str, arguments: dict, ts: str = "2026-02-16T10:00:00Z") -> dict:
    return {
        "type": "message",
        "timestamp": ts,
        "message": {
            "role": "assistant",
            "content": [{"type": "toolCall", "id": call_id, "name": name, "arguments": arguments}],
        },
    }


def _result(call_id: str, text: str, ts: str = "2026-02-16T10:00:02Z", **extra) -> dict:
    message = {"role": "toolResult", "toolCallId": call_id, "content": [{"type": "text", "text": text}]}
    message.update(extra)
    return {"type": "message", "timestamp": ts, "message": message}


class TranscriptParsingTests(unittest.TestCase):
    def test_target_prefers_path_and_truncates(self) -> None:
        self.assertEqual(extract_target({"command": "ls", "path": "/tmp/a.txt"}), "/tmp/a.txt")
        long_command = "echo " + "x" * 80
        target = extract_target({"command": long_command})
        self.assertEqual(len(target), 50)
        self.assertTrue(target.endswith("..."))
        self.assertEqual(extract_target({"unrelated": 1}), "")

    def test_claude_code_tool_use_and_result_blocks(self) -> None:
        lines = [
            json.dumps(
                {
                    "type": "assistant",
                    "timestamp": "2026-02-16T10:00:00Z",
                    "message": {
                        "role": "assistant",
                        "content": [
                            {"type": "tool_use", "id": "toolu_1", "name": "Read", "input": {"file_path": "/repo/README.md"}}
                        ],
                    },
                }
            ),
            json.dumps(
                {
                    "type": "user",
                    "timestamp": "2026-02-16T10:00:01Z",
                    "message": {
                        "role": "user",
                        "content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "one\ntwo"}],
                    },
                }
            ),
        ]

        calls, results = parse_transcript_lines(lines, "main", 0)

        self.assertEqual([call.id for call in calls], ["toolu_1"])
        self.assertEqual(calls[0].target, "/repo/README.md")
        self.assertIn("toolu_1", results)
        events = merge_calls_and_results(calls, results, OrderedDict())
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].status, ActivityStatus.DONE)
        self.assertEqual(events[0].output_summary, "2 lines")
        self.assertEqual(events[0].details["duration"], 1.0)

    def test_malformed_transcript_lines_are_skipped(self) -> None:
        lines = ["{oops", json.dumps(_call("c1", "exec", {"command": "ls"}))]

        calls, results = parse_transcript_lines(lines, "main", 0)

        self.assertEqual(len(calls), 1)
        self.assertEqual(results, {})

    def test_non_finite_result_details_are_ignored(self) -> None:
        lines = [
            json.dumps(_call("c1", "exec", {"command": "make"})),
            json.dumps(_result("c1", "built", details={"durationMs": float("inf"), "exitCode": float("inf")})),
            json.dumps(_result("c2", "orphan", details={"durationMs": float("nan")})),
        ]

        calls, results = parse_transcript_lines(lines, "main", 0)
        events = merge_calls_and_results(calls, results, OrderedDict())

        self.assertEqual(sorted(results), ["c1", "c2"])
        self.assertIsNone(results["c1"].exit_code)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].status, ActivityStatus.DONE)
        self.assertEqual(events[0].details, {"duration": 2.0})

    def test_output_summary_per_tool_kind(self) -> None:
        exec_result = ToolResult(call_id="c", output="a\nb\nc", exit_code=0, duration=1.2)
        self.assertEqual(summarize_output("exec", exec_result), "exit 0 · 3 lines · 1.2s")
        self.assertEqual(summarize_output("read", ToolResult(call_id="c", output="x\ny")), "2 lines")
        self.assertEqual(summarize_output("write", ToolResult(call_id="c", output="ok")), "saved")
        self.assertEqual(summarize_output("edit", ToolResult(call_id="c")), "saved")
        self.assertEqual(summarize_output("web_search", ToolResult(call_id="c", output="abcd")), "4 bytes")
        self.assertEqual(summarize_output("web_search", ToolResult(call_id="c")), "done")
        failed = ToolResult(call_id="c", output="No such file\nmore", is_error=True)
        self.assertEqual(summarize_output("read", failed), "error: No such file")

    def test_unmatched_call_is_running_with_empty_output(self) -> None:
        open_calls: OrderedDict[str, PendingToolCall] = OrderedDict()
        calls, results = parse_transcript_lines([json.dumps(_call("c1", "exec", {"command": "make"}))], "main", 0)

        events = merge_calls_and_results(calls, results, open_calls)

        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].status, ActivityStatus.RUNNING)
        self.assertEqual(events[0].output, "")
        self.assertIn("c1", open_calls)

    def test_result_for_unknown_call_is_ignored(self) -> None:
        calls, results = parse_transcript_lines([json.dumps(_result("ghost", "x"))], "main", 0)

        self.assertEqual(merge_calls_and_results(calls, results, OrderedDict()), [])


class TranscriptMergerTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.path = Path(tmpdir.name) / "abc12345-session.jsonl"
        self.path.write_text("", encoding="utf-8")
        self.offsets = FileOffsets(50)
        self.merger = TranscriptMerger(self.offsets)

    def _append(self, *entries: dict) -> None:
        with open(self.path, "a", encoding="utf-8") as fh:
            for entry in entries:
                fh.write(json.dumps(entry) + "\n")

    def _collect(self):
        stat = self.path.stat()
        candidate = TranscriptFile(path=self.path, mtime=stat.st_mtime, size=stat.st_size)
        return self.merger.collect([candidate], lambda session_id: "worker", 0)

    def test_call_then_result_across_ticks_finalizes_running_event(self) -> None:
        self._append(_call("c1", "exec", {"command": "pytest -q"}))
        first, changed = self._collect()

        self.assertTrue(changed)
        self.assertEqual(len(first), 1)
        self.assertEqual(first[0].status, ActivityStatus.RUNNING)
        self.assertEqual(first[0].agent_label, "worker")
        self.assertEqual(first[0].target, "pytest -q")

        self._append(_result("c1", "1\n2\n3", details={"exitCode": 0, "durationMs": 1200}))
        second, _ = self._collect()

        self.assertEqual(len(second), 1)
        self.assertEqual(second[0].status, ActivityStatus.DONE)
        self.assertEqual(second[0].identity, first[0].identity)
        self.assertEqual(second[0].output_summary, "exit 0 · 3 lines · 1.2s")
        self.assertEqual(self.merger.open_calls, OrderedDict())

    def test_duplicate_result_is_ignored(self) -> None:
        self._append(_call("c1", "read", {"path": "/tmp/a.txt"}), _result("c1", "hello"))
        events, _ = self._collect()
        self.assertEqual([event.status for event in events], [ActivityStatus.DONE])

        self._append(_result("c1", "hello again"))
        again, _ = self._collect()

        self.assertEqual(again, [])

    def test_offset_advances_to_file_size_and_is_idempotent(self) -> None:
        self._append(_call("c1", "exec", {"command": "ls"}))
        self._collect()
        self.assertEqual(self.offsets.get(self.path), self.path.stat().st_size)

        events, changed = self._collect()

        self.assertEqual(events, [])
        self.assertFalse(changed)

    def test_partial_trailing_line_waits_for_newline(self) -> None:
        line = json.dumps(_call("c1", "exec", {"command": "ls"}))
        with open(self.path, "a", encoding="utf-8") as fh:
            fh.write(line[:20])
        events, _ = self._collect()
        self.assertEqual(events, [])
        self.assertEqual(self.offsets.get(self.path), 0)

        with open(self.path, "a", encoding="utf-8") as fh:
            fh.write(line[20:] + "\n")
        events, _ = self._collect()

        self.assertEqual(len(events), 1)

    def test_open_calls_are_bounded(self) -> None:
        merger = TranscriptMerger(self.offsets, max_open_calls=2)
        self._append(*[_call(f"c{i}", "exec", {"command": "sleep 1"}) for i in range(4)])
        stat = self.path.stat()

        merger.collect([TranscriptFile(path=self.path, mtime=stat.st_mtime, size=stat.st_size)], lambda sid: "w", 0)

        self.assertEqual(list(merger.open_calls), ["c2", "c3"])


if __name__ == "__main__":
    unittest.main()
