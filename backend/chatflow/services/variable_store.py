# /chatflow/services/variable_store.py

from typing import Any, Dict, Tuple

from chatflow.models.flow import utcnow
from chatflow.services.group_store import set_path

# User-scoped and global (per flow owner) variables. Session and group
# variables live on their own documents.

USER_SCOPE = "user"
GLOBAL_SCOPE = "global"


def _doc_id(owner_id: str, scope: str, subject_id: str) -> str:
    return f"{owner_id}:{scope}:{subject_id}"


class MongoVariableStore:
    def __init__(self, db):
        self.collection = db.flow_variables

    async def get(self, owner_id: str, scope: str, subject_id: str = "") -> Dict[str, Any]:
        document = await self.collection.find_one({"_id": _doc_id(owner_id, scope, subject_id)})
        return dict(document.get("values", {})) if document else {}

    async def merge(self, owner_id: str, scope: str, subject_id: str, patch: Dict[str, Any]):
        if not patch:
            return
        update = {f"values.{key}": value for key, value in patch.items()}
        update["updated_at"] = utcnow()
        await self.collection.update_one(
            {"_id": _doc_id(owner_id, scope, subject_id)},
            {"$set": update, "$setOnInsert": {"owner_id": owner_id, "scope": scope, "subject_id": subject_id}},
            upsert=True,
        )


class MemoryVariableStore:
    def __init__(self):
        self.values: Dict[Tuple[str, str, str], Dict[str, Any]] = {}

    async def get(self, owner_id: str, scope: str, subject_id: str = "") -> Dict[str, Any]:
        return dict(self.values.get((owner_id, scope, subject_id), {}))

    async def merge(self, owner_id: str, scope: str, subject_id: str, patch: Dict[str, Any]):
        target = self.values.setdefault((owner_id, scope, subject_id), {})
        for key, value in patch.items():
            set_path(target, key, value)
