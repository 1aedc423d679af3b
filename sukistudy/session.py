"""
SukiStudy - Study Session

Application entry point for UI/game code. Builds and owns the API client,
local store and sync engine, and exposes login/logout, live queries, the
two write actions and on-demand fetches.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from .client import WaniKaniClient
from .config import Settings, get_settings
from .exceptions import AuthenticationError, SukiStudyError
from .models import (
    CURRENT_USER_ID,
    Assignment,
    CollectionPage,
    Resource,
    Subject,
    Summary,
    User,
    utc_now,
)
from .queries import AllSubjectsQuery, LearnedSubjectsQuery, LessonsQuery
from .store import LocalStore
from .sync import SyncEngine, SyncResult

logger = logging.getLogger(__name__)


class StudySession:
    """Owns the sync core's objects for the lifetime of the application."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[LocalStore] = None,
        client: Optional[WaniKaniClient] = None,
        is_online: Optional[Callable[[], bool]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or get_settings()
        self.store = store or LocalStore(self.settings.db_path)
        self.client = client or WaniKaniClient(self.settings)
        self._is_online = is_online or (lambda: not self.settings.offline_mode)
        self._clock = clock
        self.engine = SyncEngine(self.client, self.store, is_online=self._is_online, clock=clock)
        self.sync_task: Optional[asyncio.Task] = None

        token = self.store.get_credential()
        if token:
            self.client.set_token(token)

    async def __aenter__(self) -> "StudySession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        """Stop background work and release the HTTP client."""
        await self.engine.stop_background_sync()
        await self.client.close()

    # === State ===

    @property
    def is_authenticated(self) -> bool:
        return self.store.get_credential() is not None

    @property
    def is_syncing(self) -> bool:
        return self.engine.in_progress

    @property
    def user(self) -> Optional[User]:
        return self.store.users.get(CURRENT_USER_ID)

    def status(self) -> dict:
        status = self.engine.get_status()
        user = self.user
        status["user"] = user.username if user else None
        status["counts"] = {c.name: c.count() for c in self.store.collections}
        return status

    # === Authentication ===

    def start(self) -> Optional[asyncio.Task]:
        """Run the startup sync in the background if a credential is stored."""
        if not self.is_authenticated:
            return None
        self.sync_task = self.engine.trigger()
        return self.sync_task

    async def login(self, token: str) -> User:
        """
        Verify a token against the API, store it and start a background sync.

        Raises:
            AuthenticationError: The API rejected the token
        """
        self.client.set_token(token)
        try:
            resource = await self.client.get_user()
        except SukiStudyError:
            # Fall back to whatever credential is still stored
            stored = self.store.get_credential()
            if stored:
                self.client.set_token(stored)
            else:
                self.client.clear_token()
            raise

        self.store.save_credential(token)
        record = resource.to_record()
        record["id"] = CURRENT_USER_ID
        user = self.store.users.upsert(record)
        logger.info(f"Logged in as {user.username}")

        self.sync_task = self.engine.trigger()
        return user

    async def logout(self) -> None:
        """Forget the credential and all locally mirrored data."""
        await self.engine.stop_background_sync()
        await self.engine.cancel_pending()
        self.sync_task = None
        self.client.clear_token()
        self.store.clear_credential()
        self.store.clear_all()
        logger.info("Logged out successfully")

    async def _handle_auth_failure(self) -> None:
        logger.warning("Credential rejected, clearing local data")
        await self.engine.cancel_pending()
        self.client.clear_token()
        self.store.clear_credential()
        self.store.clear_all()

    # === Sync ===

    async def sync(self) -> SyncResult:
        return await self.engine.sync()

    async def full_resync(self) -> SyncResult:
        return await self.engine.full_resync()

    async def start_background_sync(self) -> None:
        await self.engine.start_background_sync(
            self.settings.sync_interval,
            self.settings.connectivity_poll_interval,
        )

    def on_connectivity_change(self, online: bool) -> Optional[asyncio.Task]:
        """Start a sync when the network comes back; returns its task."""
        if not online or not self.is_authenticated:
            return None
        logger.info("Network available again, syncing")
        self.sync_task = self.engine.trigger()
        return self.sync_task

    # === Live Queries ===

    def all_subjects(self) -> AllSubjectsQuery:
        query = AllSubjectsQuery(self.store, clock=self._clock)
        query.activate()
        return query

    def learned_subjects(
        self,
        subject_types: Optional[Iterable[str]] = None,
        min_level: Optional[int] = None,
        max_level: Optional[int] = None,
    ) -> LearnedSubjectsQuery:
        query = LearnedSubjectsQuery(
            self.store,
            subject_types=subject_types,
            min_level=min_level,
            max_level=max_level,
            clock=self._clock,
        )
        query.activate()
        return query

    def lessons(self, subject_types: Optional[Iterable[str]] = None) -> LessonsQuery:
        query = LessonsQuery(self.store, subject_types=subject_types, clock=self._clock)
        query.activate()
        return query

    # === Write Actions ===

    async def start_assignment(self, assignment_id: int) -> Assignment:
        """Mark a lesson done and store the updated assignment."""
        try:
            resource = await self.client.start_assignment(assignment_id)
        except AuthenticationError:
            await self._handle_auth_failure()
            raise
        return self.store.assignments.upsert(resource.to_record())

    async def submit_review(
        self,
        assignment_id: int,
        incorrect_meaning_answers: int = 0,
        incorrect_reading_answers: int = 0,
    ) -> Optional[Assignment]:
        """
        Submit a review outcome.

        Returns:
            The updated assignment (also stored locally), or None when the
            API response did not include one.
        """
        try:
            body = await self.client.create_review(
                assignment_id,
                incorrect_meaning_answers,
                incorrect_reading_answers,
            )
        except AuthenticationError:
            await self._handle_auth_failure()
            raise

        updated = (body.get("resources_updated") or {}).get("assignment")
        if not updated:
            return None
        return self.store.assignments.upsert(Resource.model_validate(updated).to_record())

    # === On-demand Fetches ===

    async def fetch_subjects(self, ids: Iterable[int]) -> list[Subject]:
        """Fetch subjects by id from the API and cache them locally."""
        return await self._fetch_subject_pages(await self.client.get_subjects(ids))

    async def fetch_level_subjects(self, level: int) -> list[Subject]:
        """Fetch every subject of a level from the API and cache them locally."""
        return await self._fetch_subject_pages(await self.client.get_level_subjects(level))

    async def fetch_summary(self) -> Summary:
        return await self.client.get_summary()

    async def _fetch_subject_pages(self, page: CollectionPage) -> list[Subject]:
        records = page.records()
        while page.next_url and page.data:
            page = await self.client.get_collection(page.next_url)
            records.extend(page.records())
        return self.store.subjects.upsert_many(records)
