"""Merging of sub-agent findings into one coordinator message.

Findings are stored as opaque JSON, so they are re-read leniently here:
missing or malformed fields fall back to placeholders instead of failing
the fan-in.

Usage:
    >>> merged = await store.merged_results_for("sess_coord")
    >>> message = format_coordinator_message(merged)
"""

from dataclasses import dataclass, field
from typing import Any

from models.schemas import MergedSubtaskResults

NO_SUMMARY = "No summary provided"
NO_DESCRIPTION = "no description"
UNKNOWN_SEVERITY = "unknown"
DEFAULT_SCOPE = "general"
_SCOPES = ("line", "file", "general")

NEXT_STEPS = """\
---

## Next Steps

Review the findings above for cross-cutting concerns, then record them as review comments:
- `add_line_comment` for concerns tied to a specific line
- `add_file_comment` for concerns about a whole file
- `add_review_comment` for general concerns

Finish the review with `complete_review`."""


@dataclass
class ParsedConcern:
    severity: str = UNKNOWN_SEVERITY
    description: str = NO_DESCRIPTION
    scope: str = DEFAULT_SCOPE
    file: str | None = None
    line: int | None = None

    @property
    def location(self) -> str:
        if not self.file:
            return ""
        if self.line is not None:
            return f"{self.file}:{self.line}"
        return self.file


@dataclass
class ParsedFindings:
    summary: str = NO_SUMMARY
    concerns: list[ParsedConcern] = field(default_factory=list)
    positive_observations: list[str] = field(default_factory=list)


def _text(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _line(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int) and value >= 1:
        return value
    if isinstance(value, str) and value.strip().isdigit() and int(value) >= 1:
        return int(value)
    return None


def parse_concern(raw: Any) -> ParsedConcern:
    if isinstance(raw, str):
        return ParsedConcern(description=_text(raw, NO_DESCRIPTION))
    if not isinstance(raw, dict):
        return ParsedConcern()
    scope = raw.get("scope")
    file = raw.get("file")
    return ParsedConcern(
        severity=_text(raw.get("severity"), UNKNOWN_SEVERITY).lower(),
        description=_text(raw.get("description"), NO_DESCRIPTION),
        scope=scope if scope in _SCOPES else DEFAULT_SCOPE,
        file=file.strip() if isinstance(file, str) and file.strip() else None,
        line=_line(raw.get("line")),
    )


def parse_findings(raw: Any) -> ParsedFindings:
    """Read findings leniently, accepting snake_case and camelCase keys."""
    if isinstance(raw, str):
        return ParsedFindings(summary=_text(raw, NO_SUMMARY))
    if not isinstance(raw, dict):
        return ParsedFindings()

    concerns = raw.get("concerns")
    observations = raw.get("positive_observations", raw.get("positiveObservations"))
    return ParsedFindings(
        summary=_text(raw.get("summary"), NO_SUMMARY),
        concerns=[parse_concern(c) for c in concerns] if isinstance(concerns, list) else [],
        positive_observations=[
            o.strip() for o in observations if isinstance(o, str) and o.strip()
        ]
        if isinstance(observations, list)
        else [],
    )


def format_concern(concern: ParsedConcern) -> str:
    location = f" ({concern.location})" if concern.location else ""
    return f"- [{concern.severity.upper()}]{location} [{concern.scope}] {concern.description}"


def format_coordinator_message(merged: MergedSubtaskResults) -> str:
    """Render the merged sub-agent results for the coordinator session.

    Completed subtasks get one section each; failed subtasks are listed
    with their error so the coordinator can account for the gap.
    """
    lines: list[str] = [
        "# Sub-Task Results",
        "",
        f"All {merged.total} sub-tasks have finished "
        f"({len(merged.completed)} completed, {len(merged.failed)} failed). "
        "Below are the merged findings from each sub-task.",
        "",
    ]

    for subtask in merged.completed:
        findings = parse_findings(subtask.findings)
        lines.append(f"## {subtask.label}")
        lines.append("")
        lines.append(f"**Summary:** {findings.summary}")
        lines.append("")
        if findings.concerns:
            lines.append("**Concerns:**")
            lines.extend(format_concern(c) for c in findings.concerns)
            lines.append("")
        if findings.positive_observations:
            lines.append("**Positive Observations:**")
            lines.extend(f"- {o}" for o in findings.positive_observations)
            lines.append("")

    if merged.failed:
        lines.append("## Failed Subtasks")
        lines.append("")
        lines.append("The following sub-tasks failed and may need manual review:")
        lines.append("")
        for subtask in merged.failed:
            lines.append(f"- **{subtask.label}**: {subtask.error or 'Unknown error'}")
        lines.append("")

    if merged.unfinished:
        lines.append("## Unfinished Subtasks")
        lines.append("")
        lines.extend(f"- **{s.label}**: {s.status.value}" for s in merged.unfinished)
        lines.append("")

    lines.append(NEXT_STEPS)
    return "\n".join(lines)
