"""Persisted tool outputs (tool_results collection)."""
from typing import Optional, List, Union
import logging

from assignsavvy.errors import InvalidArgumentError
from assignsavvy.models.credits import ToolType
from assignsavvy.models.tools import ToolResultRecord

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class ToolHistoryStore:
    def __init__(self, db):
        self.db = db

    async def ensure_indexes(self) -> None:
        await self.db.tool_results.create_index("result_id", unique=True)
        await self.db.tool_results.create_index([("user_id", 1), ("created_at", -1)])
        await self.db.tool_results.create_index([("user_id", 1), ("tool_type", 1), ("created_at", -1)])

    async def save(self, record: ToolResultRecord) -> str:
        await self.db.tool_results.insert_one(record.model_dump(mode="json"))
        return record.result_id

    async def list_results(
        self,
        user_id: str,
        tool_type: Optional[Union[str, ToolType]] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[ToolResultRecord]:
        """A user's results, newest first, optionally for one tool."""
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise InvalidArgumentError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise InvalidArgumentError("offset must not be negative")

        query = {"user_id": user_id}
        if tool_type:
            try:
                query["tool_type"] = ToolType(tool_type).value
            except ValueError:
                raise InvalidArgumentError(f"Unknown tool type: {tool_type!r}")

        cursor = self.db.tool_results.find(query, {"_id": 0}).sort("created_at", -1).skip(offset).limit(limit)
        return [ToolResultRecord(**doc) async for doc in cursor]

    async def get_result(self, user_id: str, result_id: str) -> Optional[ToolResultRecord]:
        """One saved result, only if it belongs to user_id."""
        doc = await self.db.tool_results.find_one({"user_id": user_id, "result_id": result_id}, {"_id": 0})
        return ToolResultRecord(**doc) if doc else None

    async def delete_result(self, user_id: str, result_id: str) -> bool:
        result = await self.db.tool_results.delete_one({"user_id": user_id, "result_id": result_id})
        if result.deleted_count:
            logger.info(f"Deleted tool result {result_id} for {user_id}")
        return result.deleted_count > 0
