"""Tests for filtering, aggregation and the live dashboard view."""

from datetime import date

import pytest

from receipt_desk.models.receipt import Receipt
from receipt_desk.models.user import Role, User
from receipt_desk.queries import (
    LiveReceiptView,
    ReceiptFilter,
    filter_receipts,
    format_calendar_date,
    format_cents,
    group_by_category,
    group_by_month,
    receipts_from_snapshot,
    shorten_label,
    sum_cents,
    summarize,
)
from receipt_desk.services.storage import InMemoryDocumentStore
from receipt_desk.services.storage import collections

from conftest import receipt_doc


def receipt(receipt_id: str, amount: int, day: str, category: str = "c1", name: str = "Travel",
            owner: str = "u1", deleted: bool = False) -> Receipt:
    return Receipt(
        id=receipt_id,
        owner_user_id=owner,
        category_id=category,
        category_name=name,
        amount_cents=amount,
        receipt_date=day,
        deleted_at="2024-05-01T00:00:00+00:00" if deleted else None,
    )


RECEIPTS = [
    receipt("a", 1000, "2024-03-05"),
    receipt("b", 250, "2024-03-31", "c2", "Office", owner="u2"),
    receipt("c", 99, "2024-02-10"),
    receipt("d", 5000, "2024-03-10", deleted=True),
    receipt("e", 10, "not-a-date", "c2", "Office"),
]


class TestFilter:

    def test_default_hides_deleted_and_sorts_newest_first(self):
        result = filter_receipts(RECEIPTS, ReceiptFilter())
        assert [r.id for r in result] == ["b", "a", "c", "e"]

    def test_include_deleted(self):
        result = filter_receipts(RECEIPTS, ReceiptFilter(include_deleted=True))
        assert "d" in [r.id for r in result]

    def test_date_bounds_are_inclusive(self):
        criteria = ReceiptFilter(date_from=date(2024, 3, 5), date_to=date(2024, 3, 31))
        assert [r.id for r in filter_receipts(RECEIPTS, criteria)] == ["b", "a"]

    def test_unparseable_dates_drop_out_when_bounded(self):
        criteria = ReceiptFilter(date_from=date(2000, 1, 1))
        assert "e" not in [r.id for r in filter_receipts(RECEIPTS, criteria)]

    def test_owner_and_category(self):
        assert [r.id for r in filter_receipts(RECEIPTS, ReceiptFilter(owner_user_id="u2"))] == ["b"]
        assert [r.id for r in filter_receipts(RECEIPTS, ReceiptFilter(category_id="c2"))] == [
            "b", "e",
        ]

    def test_equal_dates_keep_input_order(self):
        same_day = [receipt("x", 1, "2024-01-01"), receipt("y", 2, "2024-01-01")]
        assert [r.id for r in filter_receipts(same_day, ReceiptFilter())] == ["x", "y"]


class TestGrouping:

    def test_group_by_category_largest_first(self):
        groups = group_by_category(filter_receipts(RECEIPTS, ReceiptFilter()))
        assert [(g.category_id, g.total_cents) for g in groups] == [("c1", 1099), ("c2", 260)]

    def test_group_limit_and_labels(self):
        many = [receipt(str(i), 100 + i, "2024-01-01", f"c{i}", f"Category number {i:02d}!")
                for i in range(15)]
        groups = group_by_category(many, limit=12, label_width=10)
        assert len(groups) == 12
        assert groups[0].category_id == "c14"
        assert groups[0].label == "Category n…"
        assert groups[0].category_name == "Category number 14!"
        assert len(group_by_category(many, limit=None)) == 15

    def test_top_groups_and_remainder_add_up_to_the_total(self):
        many = [receipt(str(i), 100 + 7 * i, "2024-01-01", f"c{i % 15}", f"Category {i % 15}")
                for i in range(40)]
        filtered = filter_receipts(many, ReceiptFilter())

        top = group_by_category(filtered, limit=12)
        every = group_by_category(filtered, limit=None)

        assert [g.category_id for g in top] == [g.category_id for g in every[:12]]
        remainder = sum(g.total_cents for g in every[12:])
        assert remainder > 0
        assert sum(g.total_cents for g in top) + remainder == sum_cents(filtered)

    @pytest.mark.parametrize("include_deleted,total", [(False, 1000), (True, 6000)])
    def test_combined_filters_match_a_hand_written_predicate(self, include_deleted, total):
        criteria = ReceiptFilter(
            owner_user_id="u1",
            category_id="c1",
            date_from=date(2024, 3, 1),
            date_to=date(2024, 3, 31),
            include_deleted=include_deleted,
        )
        expected = [
            r for r in RECEIPTS
            if r.owner_user_id == "u1"
            and r.category_id == "c1"
            and "2024-03-01" <= r.receipt_date <= "2024-03-31"
            and (include_deleted or r.deleted_at is None)
        ]

        assert sum_cents(filter_receipts(RECEIPTS, criteria)) == sum(
            r.amount_cents for r in expected
        ) == total

    def test_missing_category_is_unknown(self):
        groups = group_by_category([receipt("x", 5, "2024-01-01", "", "")])
        assert groups[0].category_id == "unknown"
        assert groups[0].category_name == "Unknown"

    def test_group_by_month(self):
        months = group_by_month(filter_receipts(RECEIPTS, ReceiptFilter()))
        assert [(m.year_month, m.total_cents) for m in months] == [
            ("2024-02", 99), ("2024-03", 1250),
        ]

    def test_summarize(self):
        summary = summarize(RECEIPTS, ReceiptFilter())
        assert summary.count == 4
        assert summary.total_cents == 1359

    def test_empty_summary(self):
        summary = summarize([], ReceiptFilter())
        assert summary.count == 0
        assert summary.total_cents == 0
        assert summary.by_category == []


class TestFormatting:

    @pytest.mark.parametrize("cents,text", [
        (1234, "12,34 €"),
        (5, "0,05 €"),
        (0, "0,00 €"),
        (-5, "-0,05 €"),
        (100000, "1000,00 €"),
    ])
    def test_format_cents(self, cents, text):
        assert format_cents(cents) == text

    def test_format_cents_other_currency(self):
        assert format_cents(150, "USD") == "1,50 $"
        assert format_cents(150, "SEK") == "1,50 SEK"

    def test_format_calendar_date(self):
        assert format_calendar_date("2024-03-05") == "5.3.2024"
        assert format_calendar_date("nonsense") == "—"

    def test_shorten_label(self):
        assert shorten_label("Short") == "Short"
        assert shorten_label("abcdef", 3) == "abc…"


class TestSnapshots:

    def test_malformed_documents_are_skipped(self):
        receipts = receipts_from_snapshot({
            "good": receipt_doc("u1", 100, "2024-01-01"),
            "bad": {"owner_user_id": "u1", "amount_cents": -4},
        })
        assert [r.id for r in receipts] == ["good"]


class TestLiveReceiptView:

    @pytest.fixture
    def live_store(self):
        return InMemoryDocumentStore(seed={collections.RECEIPTS: {
            "r1": receipt_doc("u1", 1000, "2024-03-05"),
            "r2": receipt_doc("u2", 500, "2024-03-06"),
        }})

    @pytest.mark.asyncio
    async def test_member_sees_own_receipts_only(self, live_store):
        summaries = []
        view = await LiveReceiptView(
            live_store, User(id="u1", status="approved"), ReceiptFilter(), summaries.append
        ).start()

        assert not view.sees_everything
        assert summaries[-1].total_cents == 1000

        await live_store.set(collections.RECEIPTS, "r3", receipt_doc("u2", 7, "2024-03-07"))
        assert summaries[-1].total_cents == 1000

        await live_store.set(collections.RECEIPTS, "r4", receipt_doc("u1", 1, "2024-03-07"))
        assert summaries[-1].total_cents == 1001
        view.close()

    @pytest.mark.asyncio
    async def test_staff_see_everything(self, live_store):
        summaries = []
        staff = User(id="s1", role=Role.STAFF, status="approved")
        view = await LiveReceiptView(live_store, staff, ReceiptFilter(), summaries.append).start()

        assert view.sees_everything
        assert view.latest.count == 2
        view.close()

    @pytest.mark.asyncio
    async def test_unapproved_staff_are_scoped_like_members(self, live_store):
        summaries = []
        staff = User(id="u2", role=Role.STAFF, status="denied")
        await LiveReceiptView(live_store, staff, ReceiptFilter(), summaries.append).start()
        assert summaries[-1].count == 1

    @pytest.mark.asyncio
    async def test_set_criteria_recomputes(self, live_store):
        summaries = []
        staff = User(id="s1", role=Role.OWNER, status="approved")
        view = await LiveReceiptView(live_store, staff, ReceiptFilter(), summaries.append).start()

        summary = view.set_criteria(ReceiptFilter(owner_user_id="u2"))

        assert summary.total_cents == 500
        assert summaries[-1] is summary

    @pytest.mark.asyncio
    async def test_closed_view_stays_quiet(self, live_store):
        summaries = []
        view = await LiveReceiptView(
            live_store, User(id="u1", status="approved"), ReceiptFilter(), summaries.append
        ).start()
        view.close()

        await live_store.set(collections.RECEIPTS, "r5", receipt_doc("u1", 3, "2024-03-08"))

        assert len(summaries) == 1
        assert not view.is_open
