"""Client for the code generation service.

The service is a black box reached over HTTP. Each operation is one POST
with a JSON body; responses are JSON, or ``{"content": "<model text>"}``
when the gateway returns raw model output, which is parsed leniently.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import json
import re
from typing import Any, Protocol

import httpx
import structlog

from ..clients.base import HTTPAdapter
from ..errors import UnsupportedModeError
from ..resilience import CircuitBreaker, RetryPolicy
from .schemas import (
    FileSpec,
    FixResult,
    GeneratedFile,
    IterationResult,
    Requirements,
    ValidationIssue,
)

logger = structlog.get_logger(__name__)

_FENCE_START = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_END = re.compile(r"\s*```$")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")


class FileLike(Protocol):
    path: str
    content: str


@dataclass(frozen=True)
class RequestMeta:
    """Attribution sent with every generation request."""

    project_id: str
    user_id: str
    correlation_id: str | None = None
    model: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "projectId": self.project_id,
            "userId": self.user_id,
            "correlationId": self.correlation_id,
            "model": self.model,
        }


def parse_json_response(content: str) -> Any:
    """Parse model output that should be JSON but may carry fences or chatter."""
    cleaned = _FENCE_END.sub("", _FENCE_START.sub("", content.strip()))
    cleaned = _CONTROL_CHARS.sub("", cleaned)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as parse_error:
        starts = [i for i in (cleaned.find("{"), cleaned.find("[")) if i != -1]
        if not starts:
            raise ValueError(
                f"Failed to parse response as JSON: no object found. Content preview: {content[:200]}"
            ) from parse_error
        start = min(starts)
        end = cleaned.rfind("}" if cleaned[start] == "{" else "]")
        if end <= start:
            raise ValueError(
                f"Failed to parse response as JSON: unbalanced delimiters. Content preview: {content[:200]}"
            ) from parse_error
        try:
            return json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError as second_error:
            raise ValueError(
                f"Failed to parse response as JSON after extraction: {second_error}. "
                f"Content preview: {content[:200]}"
            ) from second_error


def _file_payload(files: list[FileLike]) -> list[dict[str, Any]]:
    return [{"path": f.path, "content": f.content, "language": getattr(f, "language", None)} for f in files]


def _files_from(data: Any) -> list[GeneratedFile]:
    items = data.get("files", []) if isinstance(data, dict) else data
    return [GeneratedFile.model_validate(item) for item in items or []]


class CodeGenerationService(ABC):
    """Contract of the code generation service."""

    @abstractmethod
    async def analyze(self, message: str, context: str, meta: RequestMeta) -> Requirements: ...

    @abstractmethod
    async def scaffold(self, requirements: Requirements, meta: RequestMeta) -> list[GeneratedFile]: ...

    @abstractmethod
    async def generate(
        self,
        requirements: Requirements,
        spec: FileSpec,
        existing_files: list[FileLike],
        context: str,
        meta: RequestMeta,
    ) -> GeneratedFile: ...

    @abstractmethod
    async def generate_batch(
        self, requirements: Requirements, specs: list[FileSpec], context: str, meta: RequestMeta
    ) -> list[GeneratedFile]: ...

    @abstractmethod
    async def iterate(
        self,
        message: str,
        files: list[FileLike],
        requirements: Requirements,
        context: str,
        meta: RequestMeta,
    ) -> IterationResult: ...

    async def agent_session(
        self, message: str, files: list[FileLike], context: str, meta: RequestMeta
    ) -> IterationResult:
        """Multi-step agent iteration. Implementations without it raise UnsupportedModeError."""
        raise UnsupportedModeError("agent sessions are not supported")

    @abstractmethod
    async def fix(
        self,
        errors: list[ValidationIssue],
        affected_files: list[FileLike],
        all_files: list[FileLike],
        meta: RequestMeta,
    ) -> FixResult: ...

    @abstractmethod
    async def summarize_context(
        self, project_name: str, messages: list[dict[str, str]], files: list[FileLike], meta: RequestMeta
    ) -> str: ...


class HTTPCodeGenerationClient(HTTPAdapter, CodeGenerationService):
    """httpx client for the code generation service."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 180.0,
        breaker: CircuitBreaker | None = None,
        retry: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(
            base_url,
            headers={"Authorization": f"Bearer {api_key}"} if api_key else None,
            timeout=timeout,
            breaker=breaker,
            retry=retry,
            transport=transport,
        )

    async def _post_once(self, path: str, body: dict[str, Any]) -> Any:
        client = await self._get_client()
        resp = await client.post(path, json=body)
        resp.raise_for_status()
        data = resp.json()
        if isinstance(data, dict) and set(data) == {"content"} and isinstance(data["content"], str):
            return parse_json_response(data["content"])
        return data

    async def _post(self, path: str, body: dict[str, Any], meta: RequestMeta) -> Any:
        body = {**body, "meta": meta.as_dict()}
        return await self._call(f"codegen{path}", self._post_once, path, body)

    async def analyze(self, message: str, context: str, meta: RequestMeta) -> Requirements:
        data = await self._post("/v1/requirements", {"message": message, "context": context}, meta)
        requirements = Requirements.model_validate(data)
        logger.info(
            "requirements_analyzed",
            project_id=meta.project_id,
            framework=requirements.framework,
            page_count=len(requirements.pages),
        )
        return requirements

    async def scaffold(self, requirements: Requirements, meta: RequestMeta) -> list[GeneratedFile]:
        data = await self._post(
            "/v1/scaffold", {"requirements": requirements.model_dump(mode="json", by_alias=True)}, meta
        )
        return _files_from(data)

    async def generate(
        self,
        requirements: Requirements,
        spec: FileSpec,
        existing_files: list[FileLike],
        context: str,
        meta: RequestMeta,
    ) -> GeneratedFile:
        data = await self._post(
            "/v1/files",
            {
                "requirements": requirements.model_dump(mode="json", by_alias=True),
                "fileSpec": spec.model_dump(by_alias=True),
                "existingFiles": _file_payload(existing_files),
                "context": context,
            },
            meta,
        )
        file = GeneratedFile.model_validate(data)
        if file.language is None:
            file.language = spec.language
        return file

    async def generate_batch(
        self, requirements: Requirements, specs: list[FileSpec], context: str, meta: RequestMeta
    ) -> list[GeneratedFile]:
        data = await self._post(
            "/v1/files/batch",
            {
                "requirements": requirements.model_dump(mode="json", by_alias=True),
                "fileSpecs": [s.model_dump(by_alias=True) for s in specs],
                "context": context,
            },
            meta,
        )
        return _files_from(data)

    async def iterate(
        self,
        message: str,
        files: list[FileLike],
        requirements: Requirements,
        context: str,
        meta: RequestMeta,
    ) -> IterationResult:
        data = await self._post(
            "/v1/iterations",
            {
                "message": message,
                "files": _file_payload(files),
                "requirements": requirements.model_dump(mode="json", by_alias=True),
                "context": context,
            },
            meta,
        )
        return IterationResult.model_validate(data)

    async def agent_session(
        self, message: str, files: list[FileLike], context: str, meta: RequestMeta
    ) -> IterationResult:
        try:
            data = await self._post(
                "/v1/agent-sessions",
                {"message": message, "files": _file_payload(files), "context": context},
                meta,
            )
        except httpx.HTTPStatusError as e:
            if e.response.status_code in (httpx.codes.NOT_FOUND, httpx.codes.NOT_IMPLEMENTED):
                raise UnsupportedModeError("agent sessions are not supported by the service") from e
            raise
        return IterationResult.model_validate(data)

    async def fix(
        self,
        errors: list[ValidationIssue],
        affected_files: list[FileLike],
        all_files: list[FileLike],
        meta: RequestMeta,
    ) -> FixResult:
        affected = {f.path for f in affected_files}
        data = await self._post(
            "/v1/fixes",
            {
                "errors": [e.model_dump() for e in errors],
                "affectedFiles": _file_payload(affected_files),
                "contextFiles": _file_payload([f for f in all_files if f.path not in affected]),
            },
            meta,
        )
        return FixResult.model_validate(data)

    async def summarize_context(
        self, project_name: str, messages: list[dict[str, str]], files: list[FileLike], meta: RequestMeta
    ) -> str:
        data = await self._post(
            "/v1/context",
            {
                "projectName": project_name,
                "messages": messages,
                "filePaths": [f.path for f in files],
            },
            meta,
        )
        return data.get("context", "") if isinstance(data, dict) else str(data)
