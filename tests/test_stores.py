"""Tests for TaskStore and UserStore."""

from __future__ import annotations

from datetime import datetime

import pytest
from bson import ObjectId

from errors import DuplicateKey, NotFound, ValidationError
from stores import TaskStore, UserStore


def _task(deadline: datetime, **extra) -> dict:
    return {"name": "Write report", "deadline": deadline, **extra}


class TestTaskStore:
    def test_create_applies_defaults(self, tasks: TaskStore, deadline: datetime) -> None:
        task = tasks.create(_task(deadline))
        assert task["description"] == ""
        assert task["completed"] is False
        assert task["assignedUser"] == ""
        assert task["assignedUserName"] == "unassigned"
        assert "dateCreated" in task
        assert tasks.get(str(task["_id"]))["name"] == "Write report"

    @pytest.mark.parametrize("missing", ["name", "deadline"])
    def test_create_requires_name_and_deadline(self, tasks: TaskStore, deadline: datetime, missing: str) -> None:
        fields = _task(deadline)
        fields[missing] = None
        with pytest.raises(ValidationError, match="name and deadline are required"):
            tasks.create(fields)
        assert tasks.count() == 0

    def test_empty_assignee_forces_unassigned_name(self, tasks: TaskStore, deadline: datetime) -> None:
        task = tasks.create(_task(deadline, assignedUser="", assignedUserName="Ann"))
        assert task["assignedUserName"] == "unassigned"

    def test_get_missing_or_malformed_id(self, tasks: TaskStore) -> None:
        with pytest.raises(NotFound, match="Task not found"):
            tasks.get(str(ObjectId()))
        with pytest.raises(NotFound):
            tasks.get("not-an-id")

    def test_get_with_projection(self, tasks: TaskStore, deadline: datetime) -> None:
        task = tasks.create(_task(deadline, description="long"))
        doc = tasks.get(str(task["_id"]), {"name": 1})
        assert set(doc) == {"_id", "name"}

    def test_update_replaces_fields(self, tasks: TaskStore, deadline: datetime) -> None:
        task = tasks.create(_task(deadline, description="old"))
        updated = tasks.update(str(task["_id"]), _task(deadline, name="Renamed", completed=True))
        assert updated["name"] == "Renamed"
        assert updated["description"] == ""
        assert updated["completed"] is True

    def test_update_missing(self, tasks: TaskStore, deadline: datetime) -> None:
        with pytest.raises(NotFound):
            tasks.update(str(ObjectId()), _task(deadline))

    def test_update_validates(self, tasks: TaskStore, deadline: datetime) -> None:
        task = tasks.create(_task(deadline))
        with pytest.raises(ValidationError):
            tasks.update(str(task["_id"]), {"name": "", "deadline": deadline})

    def test_delete(self, tasks: TaskStore, deadline: datetime) -> None:
        task = tasks.create(_task(deadline))
        tasks.delete(str(task["_id"]))
        with pytest.raises(NotFound):
            tasks.delete(str(task["_id"]))

    def test_list_sort_skip_limit(self, tasks: TaskStore, deadline: datetime) -> None:
        for name in ["c", "a", "d", "b"]:
            tasks.create(_task(deadline, name=name))
        docs = tasks.list(sort=[("name", 1)], skip=1, limit=2)
        assert [d["name"] for d in docs] == ["b", "c"]
        assert tasks.count({"name": {"$in": ["a", "b"]}}) == 2

    def test_unassign_user_keeps_listed_ids(self, tasks: TaskStore, deadline: datetime) -> None:
        uid = str(ObjectId())
        keep = tasks.create(_task(deadline, assignedUser=uid, assignedUserName="Ann"))
        drop = tasks.create(_task(deadline, assignedUser=uid, assignedUserName="Ann"))
        assert tasks.unassign_user(uid, keep_ids=[keep["_id"]]) == 1
        assert tasks.get(keep["_id"])["assignedUser"] == uid
        assert tasks.get(drop["_id"])["assignedUserName"] == "unassigned"


class TestUserStore:
    def test_email_is_trimmed_and_lowercased(self, users: UserStore) -> None:
        user = users.create({"name": "Ann", "email": "  Ann@X.com "})
        assert user["email"] == "ann@x.com"
        assert user["pendingTasks"] == []

    @pytest.mark.parametrize("fields", [{"name": "Ann"}, {"email": "ann@x.com"}, {"name": "", "email": "a@x.com"}])
    def test_create_requires_name_and_email(self, users: UserStore, fields: dict) -> None:
        with pytest.raises(ValidationError, match="name and email are required"):
            users.create(fields)

    def test_duplicate_email_is_case_insensitive(self, users: UserStore) -> None:
        users.create({"name": "Ann", "email": "ann@x.com"})
        with pytest.raises(DuplicateKey):
            users.create({"name": "Other Ann", "email": "ANN@x.com"})
        assert users.count() == 1

    def test_update_to_taken_email(self, users: UserStore) -> None:
        users.create({"name": "Ann", "email": "ann@x.com"})
        bob = users.create({"name": "Bob", "email": "bob@x.com"})
        with pytest.raises(DuplicateKey):
            users.update(str(bob["_id"]), {"name": "Bob", "email": "ann@x.com"})
        assert users.get(bob["_id"])["email"] == "bob@x.com"

    def test_update_keeping_own_email(self, users: UserStore) -> None:
        ann = users.create({"name": "Ann", "email": "ann@x.com"})
        updated = users.update(str(ann["_id"]), {"name": "Annie", "email": "ann@x.com"})
        assert updated["name"] == "Annie"

    def test_pending_primitives(self, users: UserStore) -> None:
        ann = users.create({"name": "Ann", "email": "ann@x.com"})
        t1, t2 = ObjectId(), ObjectId()

        assert users.add_pending_task(ann["_id"], t1)
        assert not users.add_pending_task(ann["_id"], t1)
        assert users.get(ann["_id"])["pendingTasks"] == [t1]

        users.replace_pending_tasks(ann["_id"], [t1, t2])
        assert users.remove_pending_task(str(ann["_id"]), t1)
        assert not users.remove_pending_task("garbage", t2)
        assert users.get(ann["_id"])["pendingTasks"] == [t2]

    def test_pull_pending_tasks_spares_owner(self, users: UserStore) -> None:
        t1 = ObjectId()
        ann = users.create({"name": "Ann", "email": "ann@x.com", "pendingTasks": [t1]})
        bob = users.create({"name": "Bob", "email": "bob@x.com", "pendingTasks": [t1]})
        assert users.pull_pending_tasks([t1], except_user=bob["_id"]) == 1
        assert users.get(ann["_id"])["pendingTasks"] == []
        assert users.get(bob["_id"])["pendingTasks"] == [t1]
