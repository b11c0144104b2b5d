"""Per-user orchestrator instances for the HTTP layer."""

import asyncio
from typing import Dict, Optional

import structlog

from ..core.identity import IdentityCell
from ..core.orchestrator import ChatSessionOrchestrator
from ..domain.models import ModelOption
from ..repositories.base import Repository
from ..services.llm import ProviderRegistry, TitleService
from ..services.storage import UploadService

logger = structlog.get_logger()


class WorkspaceManager:
    """Creates one orchestrator per signed-in user and tears it down on sign-out."""

    def __init__(
        self,
        repository: Repository,
        registry: ProviderRegistry,
        uploads: UploadService,
        title_service: Optional[TitleService],
        page_size: int,
        model: ModelOption,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.uploads = uploads
        self.title_service = title_service
        self.page_size = page_size
        self.model = model
        self._workspaces: Dict[str, ChatSessionOrchestrator] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> ChatSessionOrchestrator:
        async with self._lock:
            workspace = self._workspaces.get(user_id)
            if workspace is None:
                workspace = ChatSessionOrchestrator(
                    self.repository,
                    self.registry,
                    IdentityCell(user_id),
                    uploads=self.uploads,
                    title_service=self.title_service,
                    page_size=self.page_size,
                    model=self.model,
                )
                self._workspaces[user_id] = workspace
                logger.info("workspace_created", user_id=user_id)
            return workspace

    async def sign_out(self, user_id: str) -> bool:
        async with self._lock:
            workspace = self._workspaces.pop(user_id, None)
        if workspace is None:
            return False
        workspace.identity.set(None)
        await workspace.close()
        logger.info("workspace_closed", user_id=user_id)
        return True

    async def close_all(self) -> None:
        for user_id in list(self._workspaces):
            await self.sign_out(user_id)
