"""HTTP client for the remote upload, transcription and analysis endpoints."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Optional

import httpx
import structlog

from app.core.constants import ErrorCode
from app.core.settings import Settings

logger = structlog.get_logger(__name__)


class RemoteServiceError(RuntimeError):
    def __init__(self, message: str, *, code: ErrorCode, status_code: Optional[int] = None) -> None:
        super().__init__(f"{code.value}: {message}")
        self.code = code
        self.status_code = status_code

    @property
    def response_received(self) -> bool:
        return self.status_code is not None


def _deep_find(data: Any, keys: set[str]) -> list[Any]:
    found: list[Any] = []
    if isinstance(data, dict):
        for k, v in data.items():
            if k in keys:
                found.append(v)
            found.extend(_deep_find(v, keys))
    elif isinstance(data, list):
        for item in data:
            found.extend(_deep_find(item, keys))
    return found


def _first_string(values: list[Any]) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def strip_code_fences(text: str) -> str:
    text = text.strip()
    text = re.sub(r"^```(?:json)?\s*", "", text)
    text = re.sub(r"\s*```$", "", text)
    return text.strip()


def extract_first_json_object(text: str) -> dict[str, Any]:
    text = strip_code_fences(text)
    if not text:
        raise ValueError("empty output")

    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    match = re.search(r"\{.*\}", text, flags=re.DOTALL)
    if not match:
        raise ValueError("no json object found in output")

    parsed = json.loads(match.group(0))
    if not isinstance(parsed, dict):
        raise ValueError("output json must be object")
    return parsed


def parse_upload_id(payload: dict[str, Any]) -> Optional[str]:
    file_id = payload.get("id")
    if isinstance(file_id, str) and file_id.strip():
        return file_id.strip()
    return _first_string(_deep_find(payload, {"upload_file_id", "file_id"}))


def parse_workflow_data(payload: dict[str, Any]) -> dict[str, Any]:
    data = payload.get("data")
    if isinstance(data, dict):
        return data
    return payload


def parse_transcript(payload: dict[str, Any]) -> str:
    outputs = parse_workflow_data(payload).get("outputs")
    if isinstance(outputs, dict):
        stt = outputs.get("stt")
        if isinstance(stt, str):
            return stt.strip()
    return _first_string(_deep_find(payload, {"stt", "text"})) or ""


class AnalysisServiceClient:
    """Sync client; pass ``transport`` to route requests elsewhere (tests use ``httpx.MockTransport``)."""

    def __init__(
        self,
        base_url: str,
        *,
        user: str,
        upload_timeout_s: float = 300.0,
        workflow_timeout_s: float = 240.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.user = user
        self.upload_timeout_s = upload_timeout_s
        self.workflow_timeout_s = workflow_timeout_s
        self._transport = transport

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> "AnalysisServiceClient":
        return cls(
            settings.service_base_url,
            user=settings.service_user,
            upload_timeout_s=settings.upload_timeout_s,
            workflow_timeout_s=settings.workflow_timeout_s,
            transport=transport,
        )

    def _client(self, timeout: float) -> httpx.Client:
        return httpx.Client(timeout=timeout, transport=self._transport)

    def upload_file(
        self,
        path: Path,
        *,
        api_key: str,
        file_type: str = "audio",
        content_type: str = "audio/mpeg",
    ) -> str:
        url = f"{self.base_url}/files/upload"
        headers = {"Authorization": f"Bearer {api_key}"}
        data = {"type": file_type, "purpose": "workflow_input", "user": self.user}
        try:
            with path.open("rb") as handle, self._client(self.upload_timeout_s) as client:
                resp = client.post(
                    url,
                    headers=headers,
                    data=data,
                    files={"file": (path.name, handle, content_type)},
                )
        except httpx.TimeoutException as exc:
            raise RemoteServiceError(f"upload timed out: {exc}", code=ErrorCode.UPLOAD_TIMEOUT) from exc
        except httpx.TransportError as exc:
            raise RemoteServiceError(f"upload request failed: {exc}", code=ErrorCode.NETWORK_ERROR) from exc

        if resp.status_code >= 400:
            raise RemoteServiceError(
                f"upload failed: {resp.status_code} {resp.text[:500]}",
                code=ErrorCode.UPLOAD_FAILED,
                status_code=resp.status_code,
            )
        file_id = parse_upload_id(resp.json())
        if not file_id:
            raise RemoteServiceError(
                "upload response did not include a file id",
                code=ErrorCode.UPLOAD_FAILED,
                status_code=resp.status_code,
            )
        logger.debug("file_uploaded", path=str(path), file_id=file_id)
        return file_id

    def run_workflow(self, inputs: dict[str, Any], *, api_key: str) -> dict[str, Any]:
        url = f"{self.base_url}/workflows/run"
        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        payload = {"inputs": inputs, "response_mode": "blocking", "user": self.user}
        try:
            with self._client(self.workflow_timeout_s) as client:
                resp = client.post(url, headers=headers, json=payload)
        except httpx.TimeoutException as exc:
            raise RemoteServiceError(f"workflow timed out: {exc}", code=ErrorCode.WORKFLOW_TIMEOUT) from exc
        except httpx.TransportError as exc:
            raise RemoteServiceError(f"workflow request failed: {exc}", code=ErrorCode.NETWORK_ERROR) from exc

        if resp.status_code >= 400:
            raise RemoteServiceError(
                f"workflow failed: {resp.status_code} {resp.text[:500]}",
                code=ErrorCode.WORKFLOW_FAILED,
                status_code=resp.status_code,
            )
        return resp.json()

    def transcribe(self, upload_file_id: str, *, api_key: str) -> str:
        inputs = {
            "audioFile": {
                "transfer_method": "local_file",
                "upload_file_id": upload_file_id,
                "type": "audio",
            }
        }
        return parse_transcript(self.run_workflow(inputs, api_key=api_key))
