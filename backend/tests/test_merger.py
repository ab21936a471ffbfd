"""Tests for coordination/merger.py -- lenient findings parsing and the
merged coordinator message."""

import time
from typing import Any

from coordination.merger import (
    NO_DESCRIPTION,
    NO_SUMMARY,
    format_concern,
    format_coordinator_message,
    parse_concern,
    parse_findings,
)
from models.schemas import MergedSubtaskResults, SubtaskRecord, SubtaskStatus


def _subtask(
    subtask_id: str,
    label: str | None,
    status: SubtaskStatus,
    findings: Any = None,
    error: str | None = None,
) -> SubtaskRecord:
    now = time.time()
    definition: dict[str, Any] = {"files": ["a.py"]}
    if label is not None:
        definition["label"] = label
    return SubtaskRecord(
        id=subtask_id,
        parent_session_id="sess_coord",
        workflow_id="wf_test",
        task_definition=definition,
        status=status,
        findings=findings,
        error=error,
        created_at=now,
        updated_at=now,
    )


class TestParseFindings:
    def test_full_findings(self) -> None:
        parsed = parse_findings({
            "summary": "Looks fine",
            "concerns": [
                {"severity": "Major", "description": "Leak", "scope": "line", "file": "a.py", "line": 3}
            ],
            "positive_observations": ["Clear names"],
        })
        assert parsed.summary == "Looks fine"
        assert parsed.concerns[0].severity == "major"
        assert parsed.concerns[0].location == "a.py:3"
        assert parsed.positive_observations == ["Clear names"]

    def test_camel_case_observations(self) -> None:
        parsed = parse_findings({"summary": "s", "positiveObservations": ["Good tests"]})
        assert parsed.positive_observations == ["Good tests"]

    def test_garbage_falls_back_to_placeholders(self) -> None:
        parsed = parse_findings({"summary": "", "concerns": "not a list"})
        assert parsed.summary == NO_SUMMARY
        assert parsed.concerns == []
        assert parse_findings(None).summary == NO_SUMMARY
        assert parse_findings(42).concerns == []

    def test_string_findings_become_summary(self) -> None:
        assert parse_findings("plain text").summary == "plain text"


class TestParseConcern:
    def test_missing_fields(self) -> None:
        concern = parse_concern({})
        assert concern.severity == "unknown"
        assert concern.description == NO_DESCRIPTION
        assert concern.scope == "general"
        assert concern.location == ""

    def test_invalid_scope_and_line(self) -> None:
        concern = parse_concern({"scope": "module", "file": "b.py", "line": 0})
        assert concern.scope == "general"
        assert concern.line is None
        assert concern.location == "b.py"

    def test_format(self) -> None:
        concern = parse_concern(
            {"severity": "minor", "description": "Typo", "scope": "file", "file": "c.py"}
        )
        assert format_concern(concern) == "- [MINOR] (c.py) [file] Typo"


class TestFormatCoordinatorMessage:
    def test_completed_and_failed_sections(self) -> None:
        merged = MergedSubtaskResults(
            parent_session_id="sess_coord",
            completed=[
                _subtask(
                    "subtask_a",
                    "Backend",
                    SubtaskStatus.COMPLETED,
                    {
                        "summary": "API is solid",
                        "concerns": [{"severity": "major", "description": "No auth", "scope": "general"}],
                        "positive_observations": ["Typed models"],
                    },
                ),
                _subtask("subtask_b", "Frontend", SubtaskStatus.COMPLETED, {"summary": "UI ok"}),
            ],
            failed=[_subtask("subtask_c", "Docs", SubtaskStatus.FAILED, error="timeout")],
        )

        message = format_coordinator_message(merged)

        assert message.startswith("# Sub-Task Results")
        assert "All 3 sub-tasks have finished (2 completed, 1 failed)" in message
        assert "## Backend" in message
        assert "**Summary:** API is solid" in message
        assert "- [MAJOR] [general] No auth" in message
        assert "**Positive Observations:**\n- Typed models" in message
        assert "## Frontend" in message
        assert "## Failed Subtasks" in message
        assert "- **Docs**: timeout" in message
        assert message.index("## Backend") < message.index("## Frontend")
        assert "## Next Steps" in message
        assert "`complete_review`" in message

    def test_no_failed_section_when_all_completed(self) -> None:
        merged = MergedSubtaskResults(
            parent_session_id="sess_coord",
            completed=[_subtask("subtask_a", None, SubtaskStatus.COMPLETED, None)],
        )
        message = format_coordinator_message(merged)
        assert "## Subtask" in message
        assert f"**Summary:** {NO_SUMMARY}" in message
        assert "## Failed Subtasks" not in message
        assert "**Concerns:**" not in message

    def test_failed_without_error_text(self) -> None:
        merged = MergedSubtaskResults(
            parent_session_id="sess_coord",
            failed=[_subtask("subtask_a", "Only", SubtaskStatus.FAILED, error=None)],
        )
        message = format_coordinator_message(merged)
        assert "(0 completed, 1 failed)" in message
        assert "- **Only**: Unknown error" in message
