"""Run the text-analysis workflow over a merged transcript."""

from __future__ import annotations

import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

import structlog

from app.core.settings import Settings
from app.services.remote_clients import AnalysisServiceClient, extract_first_json_object, parse_workflow_data
from app.services.retry import RetryPolicy, call_with_retry

logger = structlog.get_logger(__name__)

DEFAULT_OUTPUT_FIELDS = ("skillsheet", "lor", "skills", "hope")


@dataclass
class WorkflowOutputs:
    fields: dict[str, Any] = field(default_factory=dict)
    work_items: list[str] = field(default_factory=list)


def _as_text(value: Any) -> Any:
    if value is None:
        return ""
    return value


def extract_work_items(structured: Any) -> list[str]:
    """Collect each entry's ``summary`` from a JSON object, tolerating code fences and prose."""
    if not structured:
        return []
    data = structured
    if isinstance(structured, str):
        data = extract_first_json_object(structured)
    if isinstance(data, dict):
        entries = list(data.values())
    elif isinstance(data, list):
        entries = data
    else:
        return []
    items: list[str] = []
    for entry in entries:
        summary = entry.get("summary") if isinstance(entry, dict) else None
        items.append(summary if isinstance(summary, str) else "")
    return items


def parse_outputs(
    job_id: int,
    payload: dict[str, Any],
    *,
    output_fields: Sequence[str] = DEFAULT_OUTPUT_FIELDS,
    structured_field: Optional[str] = "skillsheet",
) -> WorkflowOutputs:
    """Missing fields become empty strings; an unparsable structured field yields no work items."""
    data = parse_workflow_data(payload)
    outputs = data.get("outputs")
    if not isinstance(outputs, dict):
        outputs = {}

    fields = {name: _as_text(outputs.get(name)) for name in output_fields}
    work_items: list[str] = []
    if structured_field:
        try:
            work_items = extract_work_items(outputs.get(structured_field))
        except (TypeError, ValueError) as exc:
            logger.warning("workflow_structured_output_unparsable", job_id=job_id, error=str(exc))

    logger.debug(
        "workflow_outputs_parsed",
        job_id=job_id,
        present=[name for name, value in fields.items() if value],
        work_items=len(work_items),
    )
    return WorkflowOutputs(fields=fields, work_items=work_items)


class WorkflowExecutor:
    def __init__(
        self,
        client: AnalysisServiceClient,
        *,
        upload_api_key: str,
        analysis_api_key: str,
        policy: Optional[RetryPolicy] = None,
        output_fields: Sequence[str] = DEFAULT_OUTPUT_FIELDS,
        structured_field: Optional[str] = "skillsheet",
        temp_dir: Optional[Path] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.upload_api_key = upload_api_key
        self.analysis_api_key = analysis_api_key
        self.policy = policy or RetryPolicy()
        self.output_fields = tuple(output_fields)
        self.structured_field = structured_field
        self.temp_dir = temp_dir
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: Optional[AnalysisServiceClient] = None,
        temp_dir: Optional[Path] = None,
    ) -> "WorkflowExecutor":
        return cls(
            client or AnalysisServiceClient.from_settings(settings),
            upload_api_key=settings.upload_api_key,
            analysis_api_key=settings.analysis_api_key,
            policy=RetryPolicy.from_settings(settings),
            output_fields=settings.workflow_output_fields,
            structured_field=settings.workflow_structured_field or None,
            temp_dir=temp_dir,
        )

    def run(self, job_id: int, transcript: str, parameters: Optional[dict[str, Any]] = None) -> WorkflowOutputs:
        if self.temp_dir is not None:
            self.temp_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            suffix=".csv",
            prefix=f"transcript_{job_id}_",
            dir=self.temp_dir,
            delete=False,
        ) as handle:
            handle.write(transcript)
            document = Path(handle.name)

        logger.info("workflow_started", job_id=job_id, transcript_chars=len(transcript))
        try:
            document_id = call_with_retry(
                lambda: self.client.upload_file(
                    document,
                    api_key=self.upload_api_key,
                    file_type="document",
                    content_type="text/csv",
                ),
                policy=self.policy,
                operation="document_upload",
                sleep=self._sleep,
                job_id=job_id,
            )
            inputs: dict[str, Any] = {
                "txtFile": {
                    "transfer_method": "local_file",
                    "upload_file_id": document_id,
                    "type": "document",
                }
            }
            inputs.update(parameters or {})
            payload = call_with_retry(
                lambda: self.client.run_workflow(inputs, api_key=self.analysis_api_key),
                policy=self.policy,
                operation="analysis_workflow",
                sleep=self._sleep,
                job_id=job_id,
            )
        finally:
            try:
                document.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("temp_document_cleanup_failed", job_id=job_id, path=str(document), error=str(exc))

        outputs = parse_outputs(
            job_id,
            payload,
            output_fields=self.output_fields,
            structured_field=self.structured_field,
        )
        logger.info("workflow_completed", job_id=job_id)
        return outputs
