"""
Consistency coordinator for the Task <-> User relationship.

A Task stores `assignedUser` (a User id string) plus a cached
`assignedUserName`; a User stores the ids of its `pendingTasks`. Both sides
are written here and only here, each operation inside one transaction, so a
failed step leaves neither side changed.
"""
from typing import Any, Dict, List, Optional

from bson import ObjectId
from loguru import logger
from pymongo.client_session import ClientSession

from database import Database, parse_object_id
from errors import ValidationError
from stores import UNASSIGNED, Document, TaskStore, UserStore

Session = Optional[ClientSession]


def _task_ids(raw: Any) -> List[ObjectId]:
    """Validate a caller-supplied pendingTasks value; non-arrays become empty."""
    if not isinstance(raw, list):
        return []
    ids: List[ObjectId] = []
    for value in raw:
        object_id = parse_object_id(value)
        if object_id is None:
            raise ValidationError("Invalid identifier in pendingTasks")
        if object_id not in ids:
            ids.append(object_id)
    return ids


class ConsistencyCoordinator:
    def __init__(self, database: Database, tasks: TaskStore, users: UserStore):
        self.database = database
        self.tasks = tasks
        self.users = users

    # -----------------------------
    # Tasks
    # -----------------------------
    def create_task(self, fields: Dict[str, Any]) -> Document:
        task = self.database.run_transaction(lambda s: self._create_task(fields, s))
        logger.info("Task {} created assignedUser={!r}", task["_id"], task["assignedUser"])
        return task

    def _create_task(self, fields: Dict[str, Any], session: Session) -> Document:
        task = self.tasks.create(fields, session=session)
        return self._sync_assignee(task, session)

    def update_task(self, task_id: Any, fields: Dict[str, Any]) -> Document:
        task = self.database.run_transaction(lambda s: self._update_task(task_id, fields, s))
        logger.info("Task {} updated assignedUser={!r}", task["_id"], task["assignedUser"])
        return task

    def _update_task(self, task_id: Any, fields: Dict[str, Any], session: Session) -> Document:
        existing = self.tasks.get(task_id, session=session)
        previous_user = existing.get("assignedUser") or ""

        task = self.tasks.update(existing["_id"], fields, session=session)

        # unconditional; the new owner is re-added below
        if previous_user:
            self.users.remove_pending_task(previous_user, task["_id"], session=session)

        return self._sync_assignee(task, session)

    def delete_task(self, task_id: Any) -> None:
        self.database.run_transaction(lambda s: self._delete_task(task_id, s))
        logger.info("Task {} deleted", task_id)

    def _delete_task(self, task_id: Any, session: Session) -> None:
        task = self.tasks.get(task_id, session=session)
        self.tasks.delete(task["_id"], session=session)
        if task.get("assignedUser"):
            self.users.remove_pending_task(task["assignedUser"], task["_id"], session=session)

    def _sync_assignee(self, task: Document, session: Session) -> Document:
        """Reconcile a freshly written task with the user it points at.

        Adds the task to the user's pending set when it is not completed,
        copies the user's real name into the cache, and resets the task to
        unassigned when the user does not exist.
        """
        assigned_user = task.get("assignedUser") or ""
        if not assigned_user:
            return task

        user = self.users.find(assigned_user, session=session)
        if user is None:
            logger.info("Task {} referenced missing user {!r}, unassigning", task["_id"], assigned_user)
            return self.tasks.set_assignment(task["_id"], "", UNASSIGNED, session=session)

        if not task.get("completed"):
            self.users.add_pending_task(user["_id"], task["_id"], session=session)
        # store the id as the sweeps match it, e.g. lower-case hex
        canonical = str(user["_id"])
        if assigned_user != canonical or task.get("assignedUserName") != user["name"]:
            return self.tasks.set_assignment(task["_id"], canonical, user["name"], session=session)
        return task

    # -----------------------------
    # Users
    # -----------------------------
    def create_user(self, fields: Dict[str, Any]) -> Document:
        user = self.database.run_transaction(lambda s: self._create_user(fields, s))
        logger.info("User {} created with {} pending tasks", user["_id"], len(user["pendingTasks"]))
        return user

    def _create_user(self, fields: Dict[str, Any], session: Session) -> Document:
        pending = self.tasks.existing_ids(_task_ids(fields.get("pendingTasks")), session=session)
        user = self.users.create({**fields, "pendingTasks": pending}, session=session)
        self._claim_pending(user, session)
        return user

    def update_user(self, user_id: Any, fields: Dict[str, Any]) -> Document:
        user = self.database.run_transaction(lambda s: self._update_user(user_id, fields, s))
        logger.info("User {} updated with {} pending tasks", user["_id"], len(user["pendingTasks"]))
        return user

    def _update_user(self, user_id: Any, fields: Dict[str, Any], session: Session) -> Document:
        existing = self.users.get(user_id, session=session)
        requested = _task_ids(fields.get("pendingTasks"))
        pending = self.tasks.existing_ids(requested, session=session)
        if len(pending) != len(requested):
            logger.info("User {} dropped {} unknown pending task ids", existing["_id"], len(requested) - len(pending))

        user = self.users.update(existing["_id"], {**fields, "pendingTasks": pending}, session=session)
        self._claim_pending(user, session)

        # full sweep: any other task still pointing here is stale
        cleared = self.tasks.unassign_user(str(user["_id"]), keep_ids=pending, session=session)
        if cleared:
            logger.info("User {} sweep unassigned {} tasks", user["_id"], cleared)
        return user

    def _claim_pending(self, user: Document, session: Session) -> None:
        """Point every task in the user's pending set at the user."""
        pending = user["pendingTasks"]
        if not pending:
            return
        self.tasks.assign_many(pending, str(user["_id"]), user["name"], session=session)
        self.users.pull_pending_tasks(pending, except_user=user["_id"], session=session)

    def delete_user(self, user_id: Any) -> None:
        self.database.run_transaction(lambda s: self._delete_user(user_id, s))
        logger.info("User {} deleted", user_id)

    def _delete_user(self, user_id: Any, session: Session) -> None:
        user = self.users.get(user_id, session=session)
        cleared = self.tasks.unassign_user(str(user["_id"]), session=session)
        self.users.delete(user["_id"], session=session)
        if cleared:
            logger.info("User {} deletion unassigned {} tasks", user["_id"], cleared)
