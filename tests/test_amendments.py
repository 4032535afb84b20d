"""
Tests for the Amendment Lifecycle Manager.

Validates:
- Creation rules (sanctions, per-op fields, eligible snapshot)
- Vote upsert, ABSENT deletion and window checks
- Applying passed amendments with contiguous article orders
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from helpers import Assembly, add_country, add_sanction, add_treaty, list_articles
from league_assembly.assembly.schema import AmendmentCreate, AmendmentStatus, VoteCast, VoteChoice
from league_assembly.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from league_assembly.store.models import VoteDB


class TestAmendmentCreate:

    def setup_method(self):
        self.assembly = Assembly()
        self.ids = self.assembly.seat("france", "italy", "japan")
        self.treaty_id, self.article_ids = add_treaty(self.assembly.database)

    def test_create_opens_a_24_hour_window(self):
        view = self.assembly.amendments.create(
            self.ids["france"], AmendmentCreate(title="Admit Germany", op="ADD", new_body="Germany joins.")
        )
        assert view.slug == "amendment-1"
        assert view.status == AmendmentStatus.OPEN
        assert view.result is None
        assert view.opens_at == self.assembly.clock.now
        assert view.closes_at - view.opens_at == timedelta(hours=24)
        assert view.threshold == pytest.approx(2 / 3)
        assert view.treaty_id == self.treaty_id

    def test_slugs_increase(self):
        request = AmendmentCreate(title="Admit Germany", op="ADD", new_body="Germany joins.")
        self.assembly.amendments.create(self.ids["france"], request)
        second = self.assembly.amendments.create(self.ids["italy"], request)
        assert second.slug == "amendment-2"

    def test_eligible_count_is_a_snapshot(self):
        view = self.assembly.amendments.create(
            self.ids["france"], AmendmentCreate(title="Admit Germany", op="ADD", new_body="Germany joins.")
        )
        add_country(self.assembly.database, "spain")
        add_country(self.assembly.database, "greece", is_active=False)

        again = self.assembly.amendments.get_amendment(view.slug)
        assert again.eligible_count == 3
        assert again.tally.absent == 3

    def test_missing_fields_reported_per_op(self):
        with pytest.raises(ValidationError) as excinfo:
            self.assembly.amendments.create(self.ids["france"], AmendmentCreate(title="  ", op="EDIT"))
        assert set(excinfo.value.fields) == {"title", "target_article_id", "new_body"}

    def test_remove_requires_target_only(self):
        view = self.assembly.amendments.create(
            self.ids["france"],
            AmendmentCreate(title="Drop disarmament", op="REMOVE", target_article_id=self.article_ids[2]),
        )
        assert view.target_article_id == self.article_ids[2]

    def test_unknown_treaty(self):
        with pytest.raises(NotFoundError, match="Treaty not found"):
            self.assembly.amendments.create(
                self.ids["france"],
                AmendmentCreate(title="X", op="ADD", new_body="Y", treaty_slug="no-such-treaty"),
            )

    def test_unknown_target_article(self):
        with pytest.raises(NotFoundError):
            self.assembly.amendments.create(
                self.ids["france"],
                AmendmentCreate(title="X", op="REMOVE", target_article_id="missing"),
            )

    def test_sanctioned_country_cannot_propose(self):
        add_sanction(self.assembly.database, self.ids["italy"], title="Abyssinia embargo")
        with pytest.raises(ForbiddenError, match="Country under active sanction: Abyssinia embargo"):
            self.assembly.amendments.create(
                self.ids["italy"], AmendmentCreate(title="X", op="ADD", new_body="Y")
            )

    def test_expired_or_rescinded_sanction_ignored(self):
        now = self.assembly.clock.now
        add_sanction(self.assembly.database, self.ids["italy"], expires_at=now - timedelta(days=1))
        add_sanction(self.assembly.database, self.ids["italy"], rescinded_at=now - timedelta(days=2))
        add_sanction(self.assembly.database, self.ids["italy"], effective_at=now + timedelta(days=1))
        view = self.assembly.amendments.create(
            self.ids["italy"], AmendmentCreate(title="X", op="ADD", new_body="Y")
        )
        assert view.slug == "amendment-1"

    def test_no_country_assigned(self):
        with pytest.raises(ForbiddenError, match="No country assigned"):
            self.assembly.amendments.create(None, AmendmentCreate(title="X", op="ADD", new_body="Y"))

    def test_inactive_country(self):
        retired = add_country(self.assembly.database, "prussia", is_active=False)
        with pytest.raises(ForbiddenError, match="Country is inactive"):
            self.assembly.amendments.create(retired, AmendmentCreate(title="X", op="ADD", new_body="Y"))


class TestAmendmentVoting:

    def setup_method(self):
        self.assembly = Assembly()
        self.ids = self.assembly.seat("france", "italy", "japan")
        add_treaty(self.assembly.database)
        self.slug = self.assembly.amendments.create(
            self.ids["france"], AmendmentCreate(title="Admit Germany", op="ADD", new_body="Germany joins.")
        ).slug

    def _vote_rows(self) -> list[VoteDB]:
        with self.assembly.database.SessionLocal() as session:
            return session.query(VoteDB).all()

    def test_vote_returns_vote_and_tally(self):
        outcome = self.assembly.amendments.cast_vote(self.slug, self.ids["italy"], VoteCast(choice="AYE"))
        assert outcome.vote.choice == VoteChoice.AYE
        assert outcome.tally.aye == 1
        assert outcome.tally.absent == 2

    def test_repeat_vote_is_idempotent(self):
        for _ in range(2):
            self.assembly.amendments.cast_vote(self.slug, self.ids["italy"], VoteCast(choice="AYE"))
        rows = self._vote_rows()
        assert len(rows) == 1
        assert rows[0].choice == "AYE"

    def test_changed_vote_overwrites(self):
        self.assembly.amendments.cast_vote(self.slug, self.ids["italy"], VoteCast(choice="AYE"))
        outcome = self.assembly.amendments.cast_vote(
            self.slug, self.ids["italy"], VoteCast(choice="NAY", comment="On reflection")
        )
        assert (outcome.tally.aye, outcome.tally.nay) == (0, 1)
        assert outcome.vote.comment == "On reflection"
        assert len(self._vote_rows()) == 1

    def test_absent_deletes_the_vote(self):
        self.assembly.amendments.cast_vote(self.slug, self.ids["italy"], VoteCast(choice="AYE"))
        outcome = self.assembly.amendments.cast_vote(self.slug, self.ids["italy"], VoteCast(choice="ABSENT"))
        assert outcome.vote is None
        assert outcome.tally.abstain == 0
        assert outcome.tally.absent == 3
        assert self._vote_rows() == []

    def test_vote_after_window_rejected_before_sweep(self):
        self.assembly.clock.advance(hours=24, seconds=1)
        with pytest.raises(ConflictError, match="Voting period ended"):
            self.assembly.amendments.cast_vote(self.slug, self.ids["italy"], VoteCast(choice="AYE"))
        assert self.assembly.amendments.get_amendment(self.slug).status == AmendmentStatus.OPEN

    def test_vote_on_closed_amendment(self):
        self.assembly.engine.close_amendment(self.slug)
        with pytest.raises(ConflictError, match="Voting is closed"):
            self.assembly.amendments.cast_vote(self.slug, self.ids["italy"], VoteCast(choice="AYE"))

    def test_vote_before_window_opens(self):
        self.assembly.clock.advance(hours=-1)
        with pytest.raises(ConflictError, match="Voting not open yet"):
            self.assembly.amendments.cast_vote(self.slug, self.ids["italy"], VoteCast(choice="AYE"))

    def test_unknown_amendment(self):
        with pytest.raises(NotFoundError, match="Amendment not found"):
            self.assembly.amendments.cast_vote("amendment-42", self.ids["italy"], VoteCast(choice="AYE"))

    def test_sanctioned_country_may_still_vote(self):
        add_sanction(self.assembly.database, self.ids["japan"])
        outcome = self.assembly.amendments.cast_vote(self.slug, self.ids["japan"], VoteCast(choice="NAY"))
        assert outcome.tally.nay == 1


class TestAmendmentApply:

    def setup_method(self):
        self.assembly = Assembly()
        self.ids = self.assembly.seat("france", "italy", "japan")
        self.treaty_id, self.article_ids = add_treaty(self.assembly.database)

    def _pass(self, request: AmendmentCreate) -> str:
        slug = self.assembly.amendments.create(self.ids["france"], request).slug
        for country_id in self.ids.values():
            self.assembly.amendments.cast_vote(slug, country_id, VoteCast(choice="AYE"))
        self.assembly.clock.advance(hours=25)
        return slug

    def test_add_at_end(self):
        slug = self._pass(AmendmentCreate(title="Mandates", op="ADD", new_heading="Mandates", new_body="..."))
        view = self.assembly.amendments.apply(slug, self.ids["france"])
        assert view.applied_at is not None
        assert list_articles(self.assembly.database, self.treaty_id) == [
            (1, "Membership"), (2, "Council"), (3, "Disarmament"), (4, "Mandates"),
        ]

    def test_add_at_order_shifts_later_articles(self):
        slug = self._pass(AmendmentCreate(
            title="Secretariat", op="ADD", new_heading="Secretariat", new_body="...", new_order=2,
        ))
        self.assembly.amendments.apply(slug, self.ids["france"])
        assert list_articles(self.assembly.database, self.treaty_id) == [
            (1, "Membership"), (2, "Secretariat"), (3, "Council"), (4, "Disarmament"),
        ]

    def test_edit_rewrites_target(self):
        slug = self._pass(AmendmentCreate(
            title="Reform council", op="EDIT", target_article_id=self.article_ids[1],
            new_heading="Executive Council", new_body="Nine seats.",
        ))
        self.assembly.amendments.apply(slug, self.ids["france"])
        assert list_articles(self.assembly.database, self.treaty_id)[1] == (2, "Executive Council")

    def test_remove_closes_the_gap(self):
        slug = self._pass(AmendmentCreate(
            title="Drop membership", op="REMOVE", target_article_id=self.article_ids[0],
        ))
        self.assembly.amendments.apply(slug, self.ids["france"])
        assert list_articles(self.assembly.database, self.treaty_id) == [
            (1, "Council"), (2, "Disarmament"),
        ]

    def test_apply_runs_the_sweep_first(self):
        slug = self._pass(AmendmentCreate(title="Mandates", op="ADD", new_heading="Mandates", new_body="..."))
        assert self.assembly.amendments.get_amendment(slug).status == AmendmentStatus.OPEN
        view = self.assembly.amendments.apply(slug, self.ids["france"])
        assert view.status == AmendmentStatus.CLOSED

    def test_apply_twice_conflicts(self):
        slug = self._pass(AmendmentCreate(title="Mandates", op="ADD", new_heading="Mandates", new_body="..."))
        self.assembly.amendments.apply(slug, self.ids["france"])
        with pytest.raises(ConflictError, match="Amendment already applied"):
            self.assembly.amendments.apply(slug, self.ids["france"])
        assert len(list_articles(self.assembly.database, self.treaty_id)) == 4

    def test_failed_amendment_cannot_be_applied(self):
        slug = self.assembly.amendments.create(
            self.ids["france"], AmendmentCreate(title="Mandates", op="ADD", new_heading="Mandates", new_body="...")
        ).slug
        self.assembly.clock.advance(hours=25)
        with pytest.raises(ConflictError, match="Amendment not passed"):
            self.assembly.amendments.apply(slug, self.ids["france"])

    def test_open_amendment_cannot_be_applied(self):
        slug = self.assembly.amendments.create(
            self.ids["france"], AmendmentCreate(title="Mandates", op="ADD", new_heading="Mandates", new_body="...")
        ).slug
        with pytest.raises(ConflictError, match="Amendment not passed"):
            self.assembly.amendments.apply(slug, self.ids["france"])

    def test_missing_target_leaves_treaty_untouched(self):
        slug = self._pass(AmendmentCreate(
            title="Drop membership", op="REMOVE", target_article_id=self.article_ids[0],
        ))
        self.assembly.amendments.apply(
            self._pass(AmendmentCreate(
                title="Drop it first", op="REMOVE", target_article_id=self.article_ids[0],
            )),
            self.ids["france"],
        )
        with pytest.raises(NotFoundError):
            self.assembly.amendments.apply(slug, self.ids["france"])
        view = self.assembly.amendments.get_amendment(slug)
        assert view.applied_at is None
        assert len(list_articles(self.assembly.database, self.treaty_id)) == 2

    def test_add_without_heading_leaves_treaty_untouched(self):
        slug = self._pass(AmendmentCreate(title="Mandates", op="ADD", new_body="..."))
        with pytest.raises(ValidationError, match="Missing content") as excinfo:
            self.assembly.amendments.apply(slug, self.ids["france"])
        assert set(excinfo.value.fields) == {"new_heading"}
        assert self.assembly.amendments.get_amendment(slug).applied_at is None
        assert list_articles(self.assembly.database, self.treaty_id) == [
            (1, "Membership"), (2, "Council"), (3, "Disarmament"),
        ]


class TestAmendmentClose:

    def setup_method(self):
        self.assembly = Assembly()
        self.ids = self.assembly.seat("france", "italy", "japan")
        add_treaty(self.assembly.database)
        self.slug = self.assembly.amendments.create(
            self.ids["france"],
            AmendmentCreate(title="Admit Germany", op="ADD", new_heading="Germany", new_body="Germany joins."),
        ).slug

    def test_member_closes_early(self):
        for country_id in self.ids.values():
            self.assembly.amendments.cast_vote(self.slug, country_id, VoteCast(choice="AYE"))
        record = self.assembly.amendments.close(self.slug, self.ids["italy"])
        assert record.result == "PASSED"
        assert self.assembly.amendments.get_amendment(self.slug).status == AmendmentStatus.CLOSED

    def test_sanctioned_country_may_close(self):
        add_sanction(self.assembly.database, self.ids["japan"])
        record = self.assembly.amendments.close(self.slug, self.ids["japan"])
        assert record.slug == self.slug

    @pytest.mark.parametrize("country_id", [None, "no-such-country"])
    def test_close_requires_a_known_country(self, country_id):
        with pytest.raises(ForbiddenError):
            self.assembly.amendments.close(self.slug, country_id)
        assert self.assembly.amendments.get_amendment(self.slug).status == AmendmentStatus.OPEN

    def test_apply_requires_a_known_country(self):
        self.assembly.clock.advance(hours=25)
        with pytest.raises(ForbiddenError, match="Assigned country not found"):
            self.assembly.amendments.apply(self.slug, "no-such-country")
        view = self.assembly.amendments.get_amendment(self.slug)
        assert view.status == AmendmentStatus.OPEN
        assert view.applied_at is None
