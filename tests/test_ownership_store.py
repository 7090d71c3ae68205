"""Tests for the ownership store, history log and bulk staging area."""

from datetime import datetime, timezone

import pytest

from pixelgrid import bulk_staging, history_log, ownership_store
from pixelgrid.errors import StaleWrite
from pixelgrid.pricing import BidCheck

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _upsert(session, x: int, y: int, price: int, expected: int, owner_id: str = "bob", ref: str = "pi_1"):
    return ownership_store.upsert_cell(
        session,
        x=x,
        y=y,
        color="#00ff00",
        price=price,
        owner_id=owner_id,
        owner_name=owner_id.title(),
        link=None,
        is_protected=False,
        protection_expires_at=None,
        last_updated=NOW,
        settlement_ref=ref,
        expected_prior_price=expected,
    )


class TestUpsertCell:
    def test_creates_absent_cell(self, session_factory) -> None:
        session = session_factory()
        with session.begin():
            prior, cell = _upsert(session, 3, 4, 100, expected=0)
        session.close()

        assert prior is None
        assert cell.price == 100
        session = session_factory()
        assert ownership_store.get_cell(session, 3, 4).owner_id == "bob"
        session.close()

    def test_absent_cell_with_nonzero_expectation_is_stale(self, session_factory) -> None:
        session = session_factory()
        with pytest.raises(StaleWrite):
            with session.begin():
                _upsert(session, 3, 4, 200, expected=100)
        session.close()

        session = session_factory()
        assert ownership_store.get_cell(session, 3, 4) is None
        session.close()

    def test_overwrite_returns_prior_snapshot(self, session_factory, seed) -> None:
        seed(1, 1, 100)
        session = session_factory()
        with session.begin():
            prior, cell = _upsert(session, 1, 1, 200, expected=100)
        session.close()

        assert prior["price"] == 100
        assert prior["owner_id"] == "alice"
        assert prior["settlement_ref"] == "seed_1_1"
        assert cell.price == 200
        assert cell.owner_id == "bob"
        assert cell.settlement_ref == "pi_1"

    def test_price_moved_since_quote_is_stale(self, session_factory, seed) -> None:
        seed(1, 1, 300)
        session = session_factory()
        with pytest.raises(StaleWrite):
            with session.begin():
                _upsert(session, 1, 1, 200, expected=100)
        session.close()

        session = session_factory()
        cell = ownership_store.get_cell(session, 1, 1)
        session.close()
        assert cell.price == 300
        assert cell.owner_id == "alice"

    def test_equal_price_is_stale(self, session_factory, seed) -> None:
        seed(1, 1, 100)
        session = session_factory()
        with pytest.raises(StaleWrite):
            with session.begin():
                _upsert(session, 1, 1, 100, expected=100)
        session.close()

    def test_free_cell_cannot_be_taken_for_free(self, session_factory, seed) -> None:
        seed(2, 2, 0, owner_id="carol")
        session = session_factory()
        with pytest.raises(StaleWrite):
            with session.begin():
                _upsert(session, 2, 2, 0, expected=0)
        session.close()


class TestQueries:
    def test_list_all_in_row_order(self, session_factory, seed) -> None:
        seed(5, 1, 100)
        seed(0, 2, 100)
        seed(2, 1, 100)
        session = session_factory()
        cells = ownership_store.list_all(session)
        session.close()
        assert [(c.x, c.y) for c in cells] == [(2, 1), (5, 1), (0, 2)]

    def test_count_free_cells(self, session_factory, seed) -> None:
        seed(0, 0, 0, owner_id="dave")
        seed(1, 0, 0, owner_id="dave")
        seed(2, 0, 100, owner_id="dave")
        seed(3, 0, 0, owner_id="erin")
        session = session_factory()
        assert ownership_store.count_free_cells(session, "dave") == 2
        assert ownership_store.count_free_cells(session, "nobody") == 0
        session.close()


class TestHistoryLog:
    def test_newest_first_and_ref_lookup(self, session_factory) -> None:
        session = session_factory()
        with session.begin():
            history_log.append(session, x=1, y=1, prior=None, settlement_ref="pi_a", created_at=NOW)
            history_log.append(
                session,
                x=1,
                y=1,
                prior={"color": "#fff", "price": 100, "owner_id": "alice", "settlement_ref": "pi_a"},
                settlement_ref="pi_b",
                created_at=NOW,
            )
        entries = history_log.for_cell(session, 1, 1)
        assert [e.settlement_ref for e in entries] == ["pi_b", "pi_a"]
        assert entries[0].previous_settlement_ref == "pi_a"
        assert entries[1].price is None
        assert history_log.has_ref(session, "pi_b", 1, 1)
        assert not history_log.has_ref(session, "pi_b", 2, 2)
        assert history_log.has_ref(session, "pi_a")
        session.close()


class TestBulkStaging:
    def _checks(self):
        return [
            BidCheck(x=1, y=1, price=100, expected_prior_price=0, wants_protection=False, is_override=False, surcharge=0),
            BidCheck(x=2, y=1, price=300, expected_prior_price=200, wants_protection=True, is_override=False, surcharge=1200),
        ]

    def test_stage_load_delete(self, session_factory) -> None:
        session_id = bulk_staging.stage_session(
            session_factory,
            owner_id="alice",
            owner_name="Alice",
            checks=self._checks(),
            colors=["#111111", "#222222"],
            links=[None, "https://example.com"],
            total_amount=1600,
        )

        bulk = bulk_staging.load_session(session_factory, session_id)
        assert bulk.total_amount == 1600
        assert [(p.x, p.y) for p in bulk.proposals] == [(1, 1), (2, 1)]
        assert bulk.proposals[1].surcharge == 1200
        assert bulk.proposals[1].expected_prior_price == 200
        assert bulk.proposals[1].link == "https://example.com"

        assert bulk_staging.delete_session(session_factory, session_id)
        assert bulk_staging.load_session(session_factory, session_id) is None
        assert not bulk_staging.delete_session(session_factory, session_id)
