from __future__ import annotations

from pathlib import Path
from typing import Optional

import pytest

from app.core.constants import ErrorCode
from app.services.remote_clients import RemoteServiceError
from app.services.retry import RetryPolicy
from app.services.workflow import WorkflowExecutor, extract_work_items, parse_outputs


class FakeWorkflowClient:
    def __init__(self, payload=None, error=None) -> None:
        self.payload = payload or {}
        self.error = error
        self.uploaded: list[tuple[str, str, str]] = []
        self.inputs: list[dict] = []
        self.document_existed_during_run = False
        self._document: Optional[Path] = None

    def upload_file(self, path: Path, *, api_key: str, file_type: str = "audio", content_type: str = "audio/mpeg") -> str:
        self._document = path
        self.uploaded.append((path.read_text(encoding="utf-8"), file_type, content_type))
        return "doc-1"

    def run_workflow(self, inputs: dict, *, api_key: str) -> dict:
        self.inputs.append(inputs)
        self.document_existed_during_run = self._document is not None and self._document.exists()
        if self.error is not None:
            raise self.error
        return self.payload


def _executor(client, tmp_path) -> WorkflowExecutor:
    return WorkflowExecutor(
        client,
        upload_api_key="up",
        analysis_api_key="an",
        policy=RetryPolicy(max_attempts=1),
        temp_dir=tmp_path / "tmp",
        sleep=lambda seconds: None,
    )


def test_extract_work_items_from_fenced_json() -> None:
    structured = '```json\n{"a": {"summary": "Led migration"}, "b": {"summary": 3}, "c": "x"}\n```'
    assert extract_work_items(structured) == ["Led migration", "", ""]
    assert extract_work_items("") == []


def test_parse_outputs_fills_missing_fields() -> None:
    payload = {"data": {"outputs": {"skillsheet": "not json", "lor": "Strong candidate", "skills": None}}}

    outputs = parse_outputs(1, payload)

    assert outputs.fields == {"skillsheet": "not json", "lor": "Strong candidate", "skills": "", "hope": ""}
    assert outputs.work_items == []


def test_run_uploads_transcript_and_cleans_up(tmp_path) -> None:
    payload = {
        "data": {
            "outputs": {
                "skillsheet": '{"p1": {"summary": "Built the API"}}',
                "lor": "Recommended",
                "skills": "python",
                "hope": "remote",
            }
        }
    }
    client = FakeWorkflowClient(payload=payload)

    outputs = _executor(client, tmp_path).run(5, "line one\nline two", {"prompt": "be brief"})

    assert client.uploaded == [("line one\nline two", "document", "text/csv")]
    assert client.inputs[0]["txtFile"]["upload_file_id"] == "doc-1"
    assert client.inputs[0]["prompt"] == "be brief"
    assert client.document_existed_during_run is True
    assert outputs.work_items == ["Built the API"]
    assert outputs.fields["lor"] == "Recommended"
    assert list((tmp_path / "tmp").iterdir()) == []


def test_run_removes_temp_file_on_failure(tmp_path) -> None:
    error = RemoteServiceError("timed out", code=ErrorCode.WORKFLOW_TIMEOUT)
    client = FakeWorkflowClient(error=error)

    with pytest.raises(RemoteServiceError):
        _executor(client, tmp_path).run(5, "text")

    assert list((tmp_path / "tmp").iterdir()) == []
