"""
Discussion posts — the debate threads attached to amendments.

Posts are soft-deleted (``is_deleted``) so the chair can restore them. A
locked or archived thread accepts neither new posts nor edits; deletion of
one's own post is still allowed there.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy import select

from league_assembly.assembly.schema import PostCreate, PostUpdate, PostView, ThreadView, utcnow
from league_assembly.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from league_assembly.governance.access import AccessGuard
from league_assembly.store.database import Database
from league_assembly.store.models import AmendmentDB, DiscussionPostDB, DiscussionThreadDB

logger = logging.getLogger(__name__)


class DiscussionBoard:
    def __init__(
        self,
        database: Database,
        guard: AccessGuard,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.database = database
        self.guard = guard
        self.clock = clock

    def open_thread(self, amendment_slug: str, country_id: str | None) -> tuple[ThreadView, bool]:
        """
        Return the amendment's discussion thread, creating it on first use.

        Returns:
            (thread, created)
        """
        with self.database.SessionLocal() as session:
            self.guard.acting_country(session, country_id)
            amendment = session.execute(
                select(AmendmentDB).where(AmendmentDB.slug == amendment_slug)
            ).scalar_one_or_none()
            if amendment is None:
                raise NotFoundError("Amendment not found")

            thread = session.execute(
                select(DiscussionThreadDB).where(DiscussionThreadDB.amendment_id == amendment.id)
            ).scalars().first()
            if thread is not None:
                return ThreadView.model_validate(thread), False

            thread = DiscussionThreadDB(
                title=f"Discussion: {amendment.title}",
                amendment_id=amendment.id,
                created_at=self.clock(),
            )
            session.add(thread)
            session.commit()
            logger.info("Discussion thread %s opened for %s", thread.id, amendment.slug)
            return ThreadView.model_validate(thread), True

    def list_posts(self, thread_id: str) -> list[PostView]:
        with self.database.SessionLocal() as session:
            if session.get(DiscussionThreadDB, thread_id) is None:
                raise NotFoundError("Thread not found")
            posts = session.execute(
                select(DiscussionPostDB)
                .where(DiscussionPostDB.thread_id == thread_id)
                .order_by(DiscussionPostDB.created_at.asc())
            ).scalars().all()
            return [PostView.model_validate(post) for post in posts]

    def create_post(self, thread_id: str, country_id: str | None, request: PostCreate) -> PostView:
        """
        Raises:
            NotFoundError: Unknown thread.
            ForbiddenError: Thread locked or archived.
            ValidationError: Parent post missing or in another thread.
        """
        with self.database.SessionLocal() as session:
            country = self.guard.acting_country(session, country_id)
            thread = session.get(DiscussionThreadDB, thread_id)
            if thread is None:
                raise NotFoundError("Thread not found")
            if thread.is_locked or thread.is_archived:
                raise ForbiddenError("Thread is not accepting new posts")

            if request.parent_post_id:
                parent = session.get(DiscussionPostDB, request.parent_post_id)
                if parent is None or parent.thread_id != thread.id:
                    raise ValidationError(
                        "Parent post must belong to the same thread",
                        fields={"parent_post_id": "Unknown post in this thread"},
                    )

            post = DiscussionPostDB(
                thread_id=thread.id,
                parent_post_id=request.parent_post_id,
                author_country_id=country.id,
                body=request.body,
                created_at=self.clock(),
            )
            session.add(post)
            session.commit()

            logger.info("Post %s added to thread %s by %s", post.id, thread.id, country.slug)
            return PostView.model_validate(post)

    def edit_post(
        self, thread_id: str, post_id: str, country_id: str | None, request: PostUpdate
    ) -> PostView:
        with self.database.SessionLocal() as session:
            country = self.guard.acting_country(session, country_id)
            post = self._post_in_thread(session, thread_id, post_id)

            thread = session.get(DiscussionThreadDB, post.thread_id)
            if thread.is_locked or thread.is_archived:
                raise ForbiddenError("Thread is not accepting updates")
            if post.author_country_id != country.id:
                raise ForbiddenError("Cannot edit another country's post")

            post.body = request.body
            post.is_edited = True
            post.edited_at = self.clock()
            session.commit()
            return PostView.model_validate(post)

    def delete_post(self, thread_id: str, post_id: str, country_id: str | None) -> PostView:
        with self.database.SessionLocal() as session:
            country = self.guard.acting_country(session, country_id)
            post = self._post_in_thread(session, thread_id, post_id)

            if post.author_country_id != country.id:
                raise ForbiddenError("Cannot delete another country's post")
            if post.is_deleted:
                raise ConflictError("Post already deleted")

            post.is_deleted = True
            post.deleted_at = self.clock()
            session.commit()

            logger.info("Post %s deleted by %s", post.id, country.slug)
            return PostView.model_validate(post)

    @staticmethod
    def _post_in_thread(session, thread_id: str, post_id: str) -> DiscussionPostDB:
        post = session.get(DiscussionPostDB, post_id)
        if post is None or post.thread_id != thread_id:
            raise NotFoundError("Post not found")
        return post
