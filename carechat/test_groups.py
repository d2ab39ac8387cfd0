"""
Tests for group administration.

Tests cover:
- Capability gate on every group operation
- POST /groups validation
- GET /groups and GET /groups/{id}
- Adding participants (skip existing, conflict, invalid ids, concurrency)
- Removing participants
- Deleting a group with its messages and memberships
- Failed writes leave no partial rows
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from carechat import groups as groups_module
from carechat.conftest import auth_headers, caller_for
from carechat.conversations import ConversationRegistry
from carechat.exceptions import Conflict, Forbidden, InvalidArgument, NotFound
from carechat.groups import GroupManager
from carechat.models import Conversation, ConversationParticipant, Message
from carechat.participants import ParticipantRegistry


def create_group(client, name="Ward 3", user_ids=(2, 3), description=None, caller_id=1):
    body = {"name": name, "userIds": list(user_ids)}
    if description is not None:
        body["description"] = description
    return client.post("/groups", json=body, headers=auth_headers(caller_id))


@pytest.fixture
def ward(client, users):
    """Group created by Alice containing Bob and Carol."""
    response = create_group(client, user_ids=[users.bob, users.carol], description="Night shift")
    assert response.status_code == 201
    return response.json()["group"]["id"]


class TestCapabilityGate:
    """Test that only callers with CanManageGroups reach group operations."""

    def test_nurse_cannot_create(self, client, users):
        response = create_group(client, caller_id=users.bob)

        assert response.status_code == 403
        assert response.json() == {"error": "FORBIDDEN", "detail": "Admin access required"}

    @pytest.mark.parametrize("method,path,body", [
        ("post", "/groups/{id}/participants", {"userIds": [4]}),
        ("delete", "/groups/{id}/participants/2", None),
        ("delete", "/groups/{id}", None),
        ("get", "/groups", None),
    ])
    def test_doctor_cannot_administer(self, client, users, ward, method, path, body):
        kwargs = {"headers": auth_headers(users.carol)}
        if body is not None:
            kwargs["json"] = body

        response = getattr(client, method)(path.format(id=ward), **kwargs)

        assert response.status_code == 403

    def test_gate_checked_before_lookup(self, client, users):
        """Test a non-admin gets 403 even for a missing group."""
        response = client.delete("/groups/9999", headers=auth_headers(users.dan))

        assert response.status_code == 403

    def test_manager_rejects_without_capability(self, db, users):
        with pytest.raises(Forbidden):
            GroupManager(db).create_group(caller_for(users.eve), "Ops", None, [users.bob])

    def test_any_member_can_view_group(self, client, users, ward):
        response = client.get(f"/groups/{ward}", headers=auth_headers(users.bob))

        assert response.status_code == 200


class TestCreateGroup:
    """Test POST /groups."""

    def test_create_group(self, client, users):
        response = create_group(
            client,
            name="  Ward 3  ",
            user_ids=[users.bob, users.carol, users.dan],
            description="Night shift",
        )

        assert response.status_code == 201
        group = response.json()["group"]
        assert group["type"] == "group"
        assert group["name"] == "Ward 3"
        assert group["description"] == "Night shift"
        assert group["createdBy"] == {"id": users.alice, "name": "Alice Admin", "email": "alice@hospital.test"}
        assert sorted(p["id"] for p in group["participants"]) == [users.bob, users.carol, users.dan]

    def test_creator_not_added_automatically(self, client, users):
        response = create_group(client, user_ids=[users.bob])

        ids = [p["id"] for p in response.json()["group"]["participants"]]
        assert users.alice not in ids

    def test_duplicate_ids_collapsed(self, client, users):
        response = create_group(client, user_ids=[users.bob, users.bob, users.carol])

        assert response.status_code == 201
        assert len(response.json()["group"]["participants"]) == 2

    def test_blank_name_rejected(self, client, users):
        response = create_group(client, name="   ")

        assert response.status_code == 400
        assert response.json()["detail"] == "Group name is required"

    def test_empty_members_rejected(self, client, users):
        response = create_group(client, user_ids=[])

        assert response.status_code == 400

    def test_unknown_member_not_found(self, client, users):
        response = create_group(client, user_ids=[users.bob, 404])

        assert response.status_code == 404

        listing = client.get("/groups", headers=auth_headers(users.alice))
        assert listing.json()["total"] == 0

    def test_store_failure_leaves_no_rows(self, db, store, users, monkeypatch):
        """Test a failure while inserting members rolls back the group row too."""
        def failing_add(self, conversation_id, user_ids):
            raise SQLAlchemyError("store unavailable")

        monkeypatch.setattr(ParticipantRegistry, "add", failing_add)

        with pytest.raises(SQLAlchemyError):
            GroupManager(db).create_group(caller_for(users.alice), "Ward 3", None, [users.bob, users.carol])

        with store.session() as session:
            assert session.scalar(select(func.count(Conversation.id))) == 0
            assert session.scalar(select(func.count(ConversationParticipant.id))) == 0


class TestGetAndListGroups:
    """Test GET /groups/{id} and GET /groups."""

    def test_get_group(self, client, users, ward):
        response = client.get(f"/groups/{ward}", headers=auth_headers(users.alice))

        assert response.status_code == 200
        group = response.json()["group"]
        assert group["id"] == ward
        assert group["createdBy"]["id"] == users.alice
        assert len(group["participants"]) == 2

    def test_get_direct_conversation_as_group(self, client, users):
        """Test direct conversations are not reachable as groups."""
        response = client.post(
            "/conversations/direct", json={"userId": users.carol}, headers=auth_headers(users.bob)
        )
        conversation_id = response.json()["conversation"]["id"]

        response = client.get(f"/groups/{conversation_id}", headers=auth_headers(users.alice))

        assert response.status_code == 404

    def test_list_groups_newest_first(self, client, users):
        first = create_group(client, name="Ward 1").json()["group"]["id"]
        second = create_group(client, name="Ward 2", user_ids=[users.dan]).json()["group"]["id"]

        response = client.get("/groups", headers=auth_headers(users.alice))

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert [g["id"] for g in data["groups"]] == [second, first]
        assert data["groups"][0]["participantCount"] == 1
        assert data["groups"][0]["createdBy"]["id"] == users.alice

    def test_list_groups_paginates(self, client, users):
        for i in range(3):
            create_group(client, name=f"Ward {i}")

        response = client.get("/groups", params={"limit": 2, "offset": 2}, headers=auth_headers(users.alice))

        data = response.json()
        assert data["total"] == 3
        assert len(data["groups"]) == 1
        assert data["limit"] == 2
        assert data["offset"] == 2


class TestAddParticipants:
    """Test POST /groups/{id}/participants."""

    def test_adds_new_users(self, client, users, ward):
        response = client.post(
            f"/groups/{ward}/participants",
            json={"userIds": [users.dan, users.eve]},
            headers=auth_headers(users.alice),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Users added successfully"
        assert [u["id"] for u in data["addedUsers"]] == [users.dan, users.eve]

    def test_existing_members_skipped(self, client, users, ward):
        response = client.post(
            f"/groups/{ward}/participants",
            json={"userIds": [users.bob, users.dan]},
            headers=auth_headers(users.alice),
        )

        assert response.status_code == 200
        assert [u["id"] for u in response.json()["addedUsers"]] == [users.dan]

        group = client.get(f"/groups/{ward}", headers=auth_headers(users.alice)).json()["group"]
        assert sorted(p["id"] for p in group["participants"]) == [users.bob, users.carol, users.dan]

    def test_all_existing_conflict(self, client, users, ward):
        response = client.post(
            f"/groups/{ward}/participants",
            json={"userIds": [users.bob, users.carol]},
            headers=auth_headers(users.alice),
        )

        assert response.status_code == 409
        assert response.json()["error"] == "CONFLICT"

    def test_invalid_user_id(self, client, users, ward):
        response = client.post(
            f"/groups/{ward}/participants",
            json={"userIds": [users.dan, 999]},
            headers=auth_headers(users.alice),
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "One or more user IDs are invalid"

    def test_empty_list(self, client, users, ward):
        response = client.post(
            f"/groups/{ward}/participants",
            json={"userIds": []},
            headers=auth_headers(users.alice),
        )

        assert response.status_code == 400

    def test_missing_group(self, client, users):
        response = client.post(
            "/groups/555/participants",
            json={"userIds": [users.dan]},
            headers=auth_headers(users.alice),
        )

        assert response.status_code == 404

    def test_user_deleted_mid_add_is_invalid(self, db, users, ward, monkeypatch):
        """Test a user that vanishes before the insert is reported as invalid, not as a race."""
        real_missing = groups_module.missing_user_ids
        calls = []

        def stale_then_real(session, ids):
            calls.append(ids)
            return [] if len(calls) == 1 else real_missing(session, ids)

        monkeypatch.setattr(groups_module, "missing_user_ids", stale_then_real)

        with pytest.raises(InvalidArgument):
            GroupManager(db).add_participants(ward, caller_for(users.alice), [999])

        assert len(calls) == 2

    def test_group_deleted_mid_add_not_found(self, db, users, monkeypatch):
        """Test a group that vanishes before the insert is reported as missing."""
        real_get_group = ConversationRegistry.get_group
        calls = []

        def stale_then_real(self, conversation_id):
            calls.append(conversation_id)
            if len(calls) == 1:
                return None
            return real_get_group(self, conversation_id)

        monkeypatch.setattr(ConversationRegistry, "get_group", stale_then_real)

        with pytest.raises(NotFound):
            GroupManager(db).add_participants(4040, caller_for(users.alice), [users.dan])

        assert db.scalar(select(func.count(ConversationParticipant.id))) == 0

    def test_concurrent_adds_keep_one_row_per_user(self, store, users, ward):
        """Test overlapping batches never duplicate a membership."""
        barrier = threading.Barrier(6)
        admin = caller_for(users.alice)

        def worker(index: int) -> str:
            batch = [users.dan, users.eve] if index % 2 else [users.eve, users.dan]
            with store.session() as session:
                barrier.wait(timeout=10)
                try:
                    GroupManager(session).add_participants(ward, admin, batch)
                    return "added"
                except Conflict:
                    return "conflict"

        with ThreadPoolExecutor(max_workers=6) as pool:
            outcomes = list(pool.map(worker, range(6)))

        assert "added" in outcomes

        with store.session() as session:
            rows = session.execute(
                select(ConversationParticipant.user_id, func.count(ConversationParticipant.id))
                .where(ConversationParticipant.conversation_id == ward)
                .group_by(ConversationParticipant.user_id)
            ).all()
        counts = dict(rows)
        assert counts == {users.bob: 1, users.carol: 1, users.dan: 1, users.eve: 1}


class TestRemoveParticipant:
    """Test DELETE /groups/{id}/participants/{userId}."""

    def test_remove_member(self, client, users, ward):
        response = client.delete(f"/groups/{ward}/participants/{users.bob}", headers=auth_headers(users.alice))

        assert response.status_code == 200
        assert response.json()["message"] == "User removed from group successfully"

        response = client.get(f"/conversations/{ward}/messages", headers=auth_headers(users.bob))
        assert response.status_code == 403

    def test_remove_non_member(self, client, users, ward):
        response = client.delete(f"/groups/{ward}/participants/{users.eve}", headers=auth_headers(users.alice))

        assert response.status_code == 404


class TestDeleteGroup:
    """Test DELETE /groups/{id}."""

    def test_delete_cascades(self, client, store, users, ward):
        client.post(
            f"/conversations/{ward}/messages",
            json={"content": "handover at 7"},
            headers=auth_headers(users.bob),
        )

        response = client.delete(f"/groups/{ward}", headers=auth_headers(users.alice))

        assert response.status_code == 200
        assert response.json()["message"] == "Group deleted successfully"
        with store.session() as session:
            assert session.get(Conversation, ward) is None
            assert session.scalar(
                select(func.count(Message.id)).where(Message.conversation_id == ward)
            ) == 0
            assert session.scalar(
                select(func.count(ConversationParticipant.id)).where(
                    ConversationParticipant.conversation_id == ward
                )
            ) == 0

    def test_delete_removes_from_inbox(self, client, users, ward):
        client.delete(f"/groups/{ward}", headers=auth_headers(users.alice))

        response = client.get("/conversations", headers=auth_headers(users.bob))

        assert response.json()["conversations"] == []

    def test_delete_missing_group(self, client, users):
        response = client.delete("/groups/8080", headers=auth_headers(users.alice))

        assert response.status_code == 404
