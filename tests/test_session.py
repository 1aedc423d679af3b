"""
Study Session Tests

Tests for login/logout, the write actions and on-demand fetches.
"""

import asyncio

import httpx
import pytest

from sukistudy.exceptions import APIError, AuthenticationError, NetworkError
from sukistudy.session import StudySession
from sukistudy.store import CURSOR_KEYS

from .conftest import (
    BASE_URL,
    assignment_record,
    assignment_resource,
    collection,
    resource,
    subject_record,
    subject_resource,
    user_resource,
)


@pytest.fixture
def session(settings, store, client, now):
    """Create a session over the scripted API."""
    return StudySession(settings, store=store, client=client, clock=now)


def script_account(api):
    api.add("/user", user_resource(username="tanuki", level=3))
    api.add("/subjects", collection([subject_resource(1)]))
    api.add("/assignments", collection([assignment_resource(1, 1, srs_stage=0)]))
    api.add("/study_materials", collection([]))


class TestAuthentication:
    """Tests for login and logout."""

    def test_login_verifies_stores_and_syncs(self, session, store, api):
        """Test that a valid token is saved and a sync is started."""
        script_account(api)

        async def scenario():
            user = await session.login("new-token")
            result = await session.sync_task
            return user, result

        user, result = asyncio.run(scenario())

        assert user.username == "tanuki"
        assert store.get_credential() == "new-token"
        assert store.users.get("current").level == 3
        assert session.is_authenticated
        assert result.success
        assert store.subjects.count() == 1
        assert all(r.headers["Authorization"] == "Bearer new-token" for r in api.requests)

    def test_login_rejected_token(self, session, store, api, client):
        """Test that an invalid token is not stored."""
        api.add("/user", (401, {"error": "Unauthorized. Nice try.", "code": 401}))

        with pytest.raises(AuthenticationError):
            asyncio.run(session.login("bad-token"))

        assert store.get_credential() is None
        assert not client.has_token
        assert session.sync_task is None
        assert len(api.requests) == 1

    def test_logout_clears_everything(self, session, store, client):
        """Test that logout forgets the token and all local data."""
        store.save_credential("test-token")
        store.subjects.upsert(subject_record(1))
        store.assignments.upsert(assignment_record(1, 1))
        store.set_cursor("subjects", "2026-01-01T00:00:00.000000Z")

        asyncio.run(session.logout())

        assert store.get_credential() is None
        assert all(c.count() == 0 for c in store.collections)
        assert store.get_cursor("subjects") is None
        assert not client.has_token
        assert not session.is_authenticated

    def test_logout_during_sync_leaves_nothing_behind(self, session, store, api):
        """Test that a sync still in flight at logout cannot repopulate the store."""
        api.add("/user", user_resource(username="tanuki", level=3))
        api.add("/subjects", collection([subject_resource(1)]))
        api.add("/assignments", collection([assignment_resource(1, 1)]))
        api.add("/study_materials", collection([resource("study_material", 1, subject_id=1, meaning_note="note")]))
        arrived, release = api.hold("/study_materials")

        async def scenario():
            await session.login("new-token")
            task = session.sync_task
            await arrived.wait()
            await session.logout()
            release.set()
            await asyncio.sleep(0)
            return task

        task = asyncio.run(scenario())

        assert task.done()
        assert store.get_credential() is None
        assert all(c.count() == 0 for c in store.collections)
        assert all(store.get_cursor(name) is None for name in CURSOR_KEYS)
        assert session.sync_task is None

    def test_login_network_failure_keeps_stored_token(self, session, store, api, client):
        """Test that an unverified token does not stay on the client."""
        store.save_credential("old-token")
        client.set_token("old-token")
        api.add("/user", httpx.ConnectError("connection refused"))

        with pytest.raises(NetworkError):
            asyncio.run(session.login("new-token"))

        assert client.token == "old-token"
        assert store.get_credential() == "old-token"
        assert session.sync_task is None

    def test_login_server_error_without_stored_token(self, session, store, api, client):
        """Test that a failed first login leaves no token on the client."""
        api.add("/user", (503, {"error": "Service unavailable"}))

        with pytest.raises(APIError):
            asyncio.run(session.login("new-token"))

        assert not client.has_token
        assert store.get_credential() is None

    def test_connectivity_change_triggers_sync(self, session, store, api):
        """Test that coming back online starts a sync for a logged-in user."""
        store.save_credential("test-token")
        script_account(api)

        async def scenario():
            assert session.on_connectivity_change(False) is None
            task = session.on_connectivity_change(True)
            return await task

        result = asyncio.run(scenario())

        assert result.success
        assert store.subjects.count() == 1

    def test_connectivity_change_when_logged_out(self, session, api):
        """Test that reconnecting without a credential does nothing."""
        async def scenario():
            return session.on_connectivity_change(True)

        assert asyncio.run(scenario()) is None
        assert api.requests == []

    def test_stored_credential_is_loaded(self, settings, store, client, now):
        """Test that a saved token is used on startup."""
        store.save_credential("saved-token")
        client.clear_token()

        StudySession(settings, store=store, client=client, clock=now)

        assert client.token == "saved-token"

    def test_start_without_credential_does_nothing(self, session, api):
        """Test that startup sync needs a stored token."""
        async def scenario():
            return session.start()

        assert asyncio.run(scenario()) is None
        assert api.requests == []

    def test_start_with_credential_syncs(self, session, store, api):
        """Test that startup sync runs in the background."""
        store.save_credential("test-token")
        script_account(api)

        async def scenario():
            task = session.start()
            return await task

        result = asyncio.run(scenario())

        assert result.success
        assert session.user.username == "tanuki"


class TestWriteActions:
    """Tests for lesson start and review submission."""

    @pytest.fixture
    def logged_in(self, session, store):
        store.save_credential("test-token")
        store.subjects.upsert(subject_record(1))
        store.assignments.upsert(assignment_record(7, 1, srs_stage=0, unlocked_at="2026-02-01T00:00:00Z"))
        return session

    def test_start_assignment_updates_store(self, logged_in, store, api):
        """Test that a started lesson moves out of the lessons view."""
        api.add("/assignments/7/start", assignment_resource(
            7, 1, srs_stage=1,
            unlocked_at="2026-02-01T00:00:00.000000Z",
            started_at="2026-02-10T12:00:00.000000Z",
            available_at="2026-02-10T16:00:00.000000Z",
        ))

        async def scenario():
            lessons = logged_in.lessons()
            before = len(lessons.results)
            assignment = await logged_in.start_assignment(7)
            after = len(lessons.results)
            lessons.deactivate()
            return assignment, before, after

        assignment, before, after = asyncio.run(scenario())

        assert (before, after) == (1, 0)
        assert assignment.srs_stage == 1
        assert store.assignments.get(7).started_at is not None
        assert api.requests[0].method == "PUT"

    def test_submit_review_stores_updated_assignment(self, logged_in, store, api):
        """Test that the assignment returned with a review is stored."""
        api.add("/reviews", {
            **resource("review", 99, assignment_id=7, subject_id=1),
            "resources_updated": {
                "assignment": assignment_resource(7, 1, srs_stage=2, available_at="2026-02-11T08:00:00.000000Z"),
                "review_statistic": resource("review_statistic", 7, subject_id=1),
            },
        })

        updated = asyncio.run(logged_in.submit_review(7, incorrect_meaning_answers=0, incorrect_reading_answers=1))

        assert updated.srs_stage == 2
        assert store.assignments.get(7).srs_stage == 2

    def test_submit_review_without_updated_assignment(self, logged_in, store, api):
        """Test that a bare review response leaves the store alone."""
        api.add("/reviews", resource("review", 99, assignment_id=7))

        updated = asyncio.run(logged_in.submit_review(7))

        assert updated is None
        assert store.assignments.get(7).srs_stage == 0

    def test_rejected_write_wipes_local_data(self, logged_in, store, api, client):
        """Test that a 401 on a write action logs the user out."""
        api.add("/assignments/7/start", (401, {"error": "Unauthorized. Nice try.", "code": 401}))

        with pytest.raises(AuthenticationError):
            asyncio.run(logged_in.start_assignment(7))

        assert store.get_credential() is None
        assert store.assignments.count() == 0
        assert not client.has_token


class TestFetches:
    """Tests for on-demand fetches and status."""

    def test_fetch_level_subjects_follows_pages(self, session, store, api):
        """Test that every page of a level is cached."""
        api.add(
            "/subjects",
            collection([subject_resource(1, level=4), subject_resource(2, level=4)],
                       next_url=f"{BASE_URL}/subjects?levels=4&page_after_id=2"),
            collection([subject_resource(3, level=4)]),
        )

        subjects = asyncio.run(session.fetch_level_subjects(4))

        assert [s.id for s in subjects] == [1, 2, 3]
        assert store.subjects.count(level=4) == 3
        assert api.requests[0].url.params["levels"] == "4"

    def test_fetch_subjects_by_id(self, session, store, api):
        """Test fetching specific subjects."""
        api.add("/subjects", collection([subject_resource(5), subject_resource(6)]))

        subjects = asyncio.run(session.fetch_subjects([5, 6]))

        assert len(subjects) == 2
        assert api.requests[0].url.params["ids"] == "5,6"
        assert store.subjects.get(6) is not None

    def test_status(self, session, store):
        """Test the combined status report."""
        store.save_credential("test-token")
        store.users.upsert({"id": "current", "username": "tanuki", "level": 3})
        store.subjects.upsert(subject_record(1))

        status = session.status()

        assert status["user"] == "tanuki"
        assert status["is_authenticated"] is True
        assert status["counts"]["subjects"] == 1
        assert status["counts"]["assignments"] == 0

    def test_context_manager_closes_client(self, session, api):
        """Test that leaving the session releases the HTTP client."""
        api.add("/summary", {"object": "report", "data": {"lessons": [], "reviews": []}})

        async def scenario():
            async with session:
                session.client.set_token("test-token")
                await session.fetch_summary()
            return session.client._http_client

        assert asyncio.run(scenario()) is None
