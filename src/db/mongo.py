"""MongoDB-backed task store for deployments that must survive restarts."""

from __future__ import annotations

from typing import Any

from pymongo import AsyncMongoClient

from src.db.task_store import check_update_fields
from src.models.research_models import ResearchStatus, ResearchTask


class MongoTaskStore:
    """Async MongoDB repository holding one document per research task."""

    def __init__(self, mongo_url: str, database: str = "deep_research", *, client: Any | None = None) -> None:
        self.client = client or AsyncMongoClient(mongo_url)
        self.db = self.client[database]
        self.tasks = self.db.research_tasks

    async def ping(self) -> None:
        await self.client.admin.command("ping")

    async def close(self) -> None:
        await self.client.close()

    async def save(self, task: ResearchTask) -> None:
        if not task.id:
            raise ValueError("Task id is required")
        doc = task.model_dump(mode="json")
        await self.tasks.replace_one({"id": task.id}, doc, upsert=True)

    async def get(self, task_id: str) -> ResearchTask | None:
        doc = await self.tasks.find_one({"id": task_id}, projection={"_id": 0})
        if not doc:
            return None
        return ResearchTask.model_validate(doc)

    async def update(self, task_id: str, **fields: Any) -> None:
        """Partial update; matches only running tasks so terminal snapshots stay frozen.

        Never upserts: a missing id is a silent no-op.
        """
        check_update_fields(fields)
        if not fields:
            return
        partial = ResearchTask.model_validate({"id": task_id, "goal": "", **fields})
        update = partial.model_dump(mode="json", include=set(fields))
        await self.tasks.update_one(
            {"id": task_id, "status": ResearchStatus.running.value},
            {"$set": update},
            upsert=False,
        )

    async def delete(self, task_id: str) -> bool:
        result = await self.tasks.delete_one({"id": task_id})
        return result.deleted_count > 0

    async def list_all(self) -> list[ResearchTask]:
        cursor = self.tasks.find({}, projection={"_id": 0}).sort("created_at", 1)
        return [ResearchTask.model_validate(doc) async for doc in cursor]
