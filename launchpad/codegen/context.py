"""Project context (context.md) maintenance."""

from __future__ import annotations

import structlog

from ..store import ProjectStore
from .client import CodeGenerationService, RequestMeta

logger = structlog.get_logger(__name__)

MAX_MESSAGES = 100
MAX_MESSAGE_CHARS = 500
MAX_FILES = 50


class ContextBuilder:
    def __init__(self, store: ProjectStore, service: CodeGenerationService):
        self.store = store
        self.service = service

    async def rebuild(self, project_id: str, meta: RequestMeta) -> str:
        """Summarize conversation history and the file list into context.md."""
        project = await self.store.get_project(project_id)
        messages = await self.store.list_messages(project_id, limit=MAX_MESSAGES)
        files = (await self.store.list_files(project_id))[:MAX_FILES]

        context_md = await self.service.summarize_context(
            project.name,
            [{"role": m.role, "content": (m.content or "")[:MAX_MESSAGE_CHARS]} for m in messages],
            files,
            meta,
        )
        await self.store.set_context(project_id, context_md)
        logger.info("context_rebuilt", project_id=project_id, context_length=len(context_md))
        return context_md

