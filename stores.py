"""
Task and User stores.

Plain CRUD over the two collections. Every method takes the session of the
ambient transaction (None outside one); none of them knows about the
Task <-> User relationship, which is owned by `coordinator.py`.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from bson import ObjectId
from loguru import logger
from pymongo import ReturnDocument
from pymongo.client_session import ClientSession
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError

from database import now, parse_object_id
from errors import DuplicateKey, NotFound, ValidationError

UNASSIGNED = "unassigned"

Document = Dict[str, Any]
Session = Optional[ClientSession]


class _Store:
    entity = "Document"

    def __init__(self, collection: Collection):
        self.collection = collection

    def _require_id(self, entity_id: Any) -> ObjectId:
        object_id = parse_object_id(entity_id)
        if object_id is None:
            raise NotFound(f"{self.entity} not found")
        return object_id

    def list(
        self,
        where: Optional[Dict[str, Any]] = None,
        sort: Optional[Sequence[Tuple[str, int]]] = None,
        projection: Optional[Dict[str, int]] = None,
        skip: Optional[int] = None,
        limit: Optional[int] = None,
        session: Session = None,
    ) -> List[Document]:
        cursor = self.collection.find(where or {}, projection or None, session=session)
        if sort:
            cursor = cursor.sort(list(sort))
        if skip is not None:
            cursor = cursor.skip(skip)
        if limit is not None:
            cursor = cursor.limit(limit)
        return list(cursor)

    def count(self, where: Optional[Dict[str, Any]] = None, session: Session = None) -> int:
        return self.collection.count_documents(where or {}, session=session)

    def get(self, entity_id: Any, projection: Optional[Dict[str, int]] = None, session: Session = None) -> Document:
        doc = self.collection.find_one({"_id": self._require_id(entity_id)}, projection or None, session=session)
        if doc is None:
            raise NotFound(f"{self.entity} not found")
        return doc

    def find(self, entity_id: Any, session: Session = None) -> Optional[Document]:
        """Like get() but returns None for a missing or malformed id."""
        object_id = parse_object_id(entity_id)
        if object_id is None:
            return None
        return self.collection.find_one({"_id": object_id}, session=session)

    def existing_ids(self, ids: Iterable[ObjectId], session: Session = None) -> List[ObjectId]:
        ids = list(ids)
        if not ids:
            return []
        found = {d["_id"] for d in self.collection.find({"_id": {"$in": ids}}, {"_id": 1}, session=session)}
        return [i for i in ids if i in found]

    def _replace(self, object_id: ObjectId, values: Document, session: Session) -> Document:
        doc = self.collection.find_one_and_update(
            {"_id": object_id},
            {"$set": values},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if doc is None:
            raise NotFound(f"{self.entity} not found")
        return doc

    def delete(self, entity_id: Any, session: Session = None) -> None:
        result = self.collection.delete_one({"_id": self._require_id(entity_id)}, session=session)
        if result.deleted_count == 0:
            raise NotFound(f"{self.entity} not found")
        logger.debug("{} {} deleted", self.entity, entity_id)


class TaskStore(_Store):
    entity = "Task"

    @staticmethod
    def _validated(fields: Dict[str, Any]) -> Document:
        name = fields.get("name")
        deadline = fields.get("deadline")
        if not name or not deadline:
            raise ValidationError("name and deadline are required")
        if not isinstance(deadline, datetime):
            raise ValidationError("deadline must be a date")
        assigned_user = fields.get("assignedUser") or ""
        return {
            "name": name,
            "description": fields.get("description") or "",
            "deadline": deadline,
            "completed": bool(fields.get("completed", False)),
            "assignedUser": assigned_user,
            "assignedUserName": (fields.get("assignedUserName") or UNASSIGNED) if assigned_user else UNASSIGNED,
        }

    def create(self, fields: Dict[str, Any], session: Session = None) -> Document:
        doc = self._validated(fields)
        doc["dateCreated"] = now()
        res = self.collection.insert_one(doc, session=session)
        doc["_id"] = res.inserted_id
        logger.debug("Task {} inserted", res.inserted_id)
        return doc

    def update(self, task_id: Any, fields: Dict[str, Any], session: Session = None) -> Document:
        object_id = self._require_id(task_id)
        return self._replace(object_id, self._validated(fields), session)

    def set_assignment(self, task_id: ObjectId, user_id: str, user_name: str, session: Session = None) -> Document:
        values = {"assignedUser": user_id, "assignedUserName": user_name if user_id else UNASSIGNED}
        return self._replace(task_id, values, session)

    def assign_many(self, task_ids: Sequence[ObjectId], user_id: str, user_name: str, session: Session = None) -> int:
        if not task_ids:
            return 0
        res = self.collection.update_many(
            {"_id": {"$in": list(task_ids)}},
            {"$set": {"assignedUser": user_id, "assignedUserName": user_name}},
            session=session,
        )
        return res.modified_count

    def unassign_user(self, user_id: str, keep_ids: Sequence[ObjectId] = (), session: Session = None) -> int:
        """Clear the assignment of every task pointing at `user_id` except `keep_ids`."""
        where: Dict[str, Any] = {"assignedUser": user_id}
        if keep_ids:
            where["_id"] = {"$nin": list(keep_ids)}
        res = self.collection.update_many(
            where,
            {"$set": {"assignedUser": "", "assignedUserName": UNASSIGNED}},
            session=session,
        )
        return res.modified_count


class UserStore(_Store):
    entity = "User"

    @staticmethod
    def normalize_email(email: Any) -> str:
        return email.strip().lower() if isinstance(email, str) else ""

    def _validated(self, fields: Dict[str, Any]) -> Document:
        name = fields.get("name")
        email = self.normalize_email(fields.get("email"))
        if not name or not email:
            raise ValidationError("name and email are required")
        return {"name": name, "email": email}

    def _ensure_email_free(self, email: str, exclude: Optional[ObjectId], session: Session) -> None:
        where: Dict[str, Any] = {"email": email}
        if exclude is not None:
            where["_id"] = {"$ne": exclude}
        if self.collection.find_one(where, {"_id": 1}, session=session):
            raise DuplicateKey()

    def create(self, fields: Dict[str, Any], session: Session = None) -> Document:
        doc = self._validated(fields)
        self._ensure_email_free(doc["email"], None, session)
        doc["pendingTasks"] = list(fields.get("pendingTasks") or [])
        doc["dateCreated"] = now()
        try:
            res = self.collection.insert_one(doc, session=session)
        except DuplicateKeyError as exc:
            raise DuplicateKey() from exc
        doc["_id"] = res.inserted_id
        logger.debug("User {} inserted", res.inserted_id)
        return doc

    def update(self, user_id: Any, fields: Dict[str, Any], session: Session = None) -> Document:
        object_id = self._require_id(user_id)
        values = self._validated(fields)
        self._ensure_email_free(values["email"], object_id, session)
        if "pendingTasks" in fields:
            values["pendingTasks"] = list(fields["pendingTasks"] or [])
        try:
            return self._replace(object_id, values, session)
        except DuplicateKeyError as exc:
            raise DuplicateKey() from exc

    def add_pending_task(self, user_id: ObjectId, task_id: ObjectId, session: Session = None) -> bool:
        res = self.collection.update_one({"_id": user_id}, {"$addToSet": {"pendingTasks": task_id}}, session=session)
        return res.modified_count > 0

    def remove_pending_task(self, user_id: Any, task_id: ObjectId, session: Session = None) -> bool:
        object_id = parse_object_id(user_id)
        if object_id is None:
            return False
        res = self.collection.update_one({"_id": object_id}, {"$pull": {"pendingTasks": task_id}}, session=session)
        return res.modified_count > 0

    def replace_pending_tasks(self, user_id: ObjectId, task_ids: Sequence[ObjectId], session: Session = None) -> Document:
        return self._replace(user_id, {"pendingTasks": list(task_ids)}, session)

    def pull_pending_tasks(self, task_ids: Sequence[ObjectId], except_user: ObjectId, session: Session = None) -> int:
        """Remove `task_ids` from every pending set but `except_user`'s."""
        if not task_ids:
            return 0
        res = self.collection.update_many(
            {"_id": {"$ne": except_user}, "pendingTasks": {"$in": list(task_ids)}},
            {"$pull": {"pendingTasks": {"$in": list(task_ids)}}},
            session=session,
        )
        return res.modified_count
