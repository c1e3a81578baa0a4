"""Persistence of the did-not-finish run record."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from gitgang.schemas.status import RunRecord

logger = logging.getLogger(__name__)


class RunRecorder:
    """Writes the run record for a run that could not converge.

    A recorder belongs to one run and writes at most once; later calls are
    logged and return the path of the existing record. Agent-level failures
    seen along the way are kept as incidents and included in the details of
    the record, so the record's reason is always the run's terminal reason.
    """

    def __init__(self, directory: Path, task: str, base_branch: str):
        self.directory = Path(directory)
        self.task = task
        self.base_branch = base_branch
        self.markdown_path = self.directory / "DNF.md"
        self.json_path = self.directory / "DNF.json"
        self._record: RunRecord | None = None
        self._incidents: list[str] = []

    @property
    def recorded(self) -> RunRecord | None:
        return self._record

    @property
    def incidents(self) -> list[str]:
        return list(self._incidents)

    def note_incident(self, summary: str, details: str | None = None) -> None:
        """Remember an agent-level failure for the eventual run record."""
        logger.error("Incident: %s", summary)
        text = summary if not details else f"{summary}\n{details.strip()}"
        self._incidents.append(text)

    def record(self, reason: str, details: str | None = None) -> Path:
        """Persist the record unless one was already written for this run.

        Args:
            reason: Short reason for the failure
            details: Supporting details (stderr, per-agent reasons, ...)

        Returns:
            Path to the markdown record
        """
        if self._record is not None:
            logger.info("Run record already written; not recording: %s", reason)
            return self.markdown_path

        if self._incidents:
            sections = [details.strip()] if details else []
            sections.append("Incidents:\n" + "\n\n".join(self._incidents))
            details = "\n\n".join(sections)

        record = RunRecord(
            task=self.task,
            base_branch=self.base_branch,
            reason=reason,
            details=details,
        )
        self.directory.mkdir(parents=True, exist_ok=True)
        self.markdown_path.write_text(render_markdown(record))
        with open(self.json_path, "w") as f:
            json.dump(record.model_dump(mode="json"), f, indent=2)

        self._record = record
        logger.error("DNF recorded at %s: %s", self.markdown_path, reason)
        return self.markdown_path

    def load(self) -> RunRecord | None:
        """Load a previously written record, if any."""
        if not self.json_path.exists():
            return None

        with open(self.json_path) as f:
            data = json.load(f)
        return RunRecord.model_validate(data)


def render_markdown(record: RunRecord) -> str:
    """Render a run record as a short markdown document."""
    lines = [
        "# Did Not Finish",
        "",
        f"- Timestamp: {record.timestamp}",
        f"- Task: {record.task}",
        f"- Base branch: {record.base_branch}",
        f"- Reason: {record.reason}",
        "",
    ]
    if record.details:
        lines.extend(["Details:", "```", record.details.strip(), "```", ""])
    return "\n".join(lines)
