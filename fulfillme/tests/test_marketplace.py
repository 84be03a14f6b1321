import time
import unittest
import uuid

from fulfillme import marketplace
from fulfillme.config import Settings
from fulfillme.db import InMemoryDbClient, NeedRecord, UserRecord
from fulfillme.errors import (
    AlreadyUnlocked,
    Conflict,
    Forbidden,
    InsufficientCredits,
    InvalidPaymentCode,
    NotFound,
    ValidationError,
)
from fulfillme.types import (
    NeedSort,
    NeedStatus,
    OfferStatus,
    Role,
    TransactionStatus,
    TransactionType,
)


def make_user(db, role: Role, credits: int = 0) -> UserRecord:
    suffix = uuid.uuid4().hex[:8]
    return db.create_user(
        UserRecord(
            user_id=uuid.uuid4().hex,
            email=f"{suffix}@fulfillme.co.ke",
            phone=f"07{suffix}",
            password_hash="not-a-real-hash",
            full_name=f"User {suffix}",
            location="Nairobi",
            gender="other",
            role=role,
            credits=credits,
        )
    )


def need_fields(**overrides) -> dict:
    fields = {
        "title": "Plumber needed",
        "description": "Kitchen sink is leaking",
        "budget": 1000,
        "category": "services",
        "location": "Westlands, Nairobi",
        "contact_methods": ["call", "whatsapp"],
    }
    fields.update(overrides)
    return fields


class MarketplaceTestCase(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.settings = Settings(unlock_price=100, payment_code_prefix="MPS")
        self.asker = make_user(self.db, Role.ASKER)
        self.need = marketplace.post_need(
            self.db, self.asker, need_fields(), self.settings
        )


class UnlockTests(MarketplaceTestCase):
    def test_unlock_reveals_contact_and_records_transaction(self):
        fulfiller = make_user(self.db, Role.FULFILLER, credits=1)

        result = marketplace.unlock_need(
            self.db, self.need.need_id, fulfiller, self.settings
        )

        contact = result.contact_dict()
        self.assertEqual(contact["phone"], self.asker.phone)
        self.assertEqual(contact["email"], self.asker.email)
        self.assertEqual(contact["contact_methods"], ["call", "whatsapp"])
        self.assertNotIn("password_hash", contact)
        self.assertNotIn("user_id", contact)
        self.assertEqual(self.db.get_user(fulfiller.user_id).credits, 0)

        txns = self.db.list_transactions(fulfiller.user_id)
        self.assertEqual(len(txns), 1)
        self.assertEqual(txns[0].type, TransactionType.UNLOCK)
        self.assertEqual(txns[0].status, TransactionStatus.COMPLETED)
        self.assertEqual(txns[0].need_id, self.need.need_id)
        self.assertEqual(txns[0].amount, 100)

    def test_second_unlock_is_rejected_without_charge(self):
        fulfiller = make_user(self.db, Role.FULFILLER, credits=3)
        marketplace.unlock_need(self.db, self.need.need_id, fulfiller, self.settings)

        with self.assertRaises(AlreadyUnlocked):
            marketplace.unlock_need(
                self.db, self.need.need_id, fulfiller, self.settings
            )

        self.assertEqual(self.db.get_user(fulfiller.user_id).credits, 2)
        self.assertEqual(len(self.db.list_transactions(fulfiller.user_id)), 1)
        self.assertEqual(
            self.db.get_need(self.need.need_id).unlocked_by, [fulfiller.user_id]
        )

    def test_insufficient_credits_leaves_state_untouched(self):
        fulfiller = make_user(self.db, Role.FULFILLER, credits=0)

        with self.assertRaises(InsufficientCredits):
            marketplace.unlock_need(
                self.db, self.need.need_id, fulfiller, self.settings
            )

        self.assertEqual(self.db.list_transactions(fulfiller.user_id), [])
        self.assertEqual(self.db.get_need(self.need.need_id).unlocked_by, [])

    def test_asker_cannot_unlock(self):
        with self.assertRaises(Forbidden):
            marketplace.unlock_need(
                self.db, self.need.need_id, self.asker, self.settings
            )

    def test_unlock_missing_need(self):
        fulfiller = make_user(self.db, Role.FULFILLER, credits=1)
        with self.assertRaises(NotFound):
            marketplace.unlock_need(self.db, "missing", fulfiller, self.settings)
        self.assertEqual(self.db.get_user(fulfiller.user_id).credits, 1)

    def test_two_fulfillers_unlock_same_need(self):
        first = make_user(self.db, Role.FULFILLER, credits=1)
        second = make_user(self.db, Role.FULFILLER, credits=1)
        marketplace.unlock_need(self.db, self.need.need_id, first, self.settings)
        marketplace.unlock_need(self.db, self.need.need_id, second, self.settings)
        self.assertEqual(
            self.db.get_need(self.need.need_id).unlocked_by,
            [first.user_id, second.user_id],
        )

    def test_get_contact_requires_prior_unlock(self):
        fulfiller = make_user(self.db, Role.FULFILLER, credits=1)
        with self.assertRaises(Forbidden):
            marketplace.get_contact(self.db, self.need.need_id, fulfiller)

        marketplace.unlock_need(self.db, self.need.need_id, fulfiller, self.settings)
        contact = marketplace.get_contact(self.db, self.need.need_id, fulfiller)
        self.assertEqual(contact["phone"], self.asker.phone)
        self.assertEqual(self.db.get_user(fulfiller.user_id).credits, 0)


class CreditTests(MarketplaceTestCase):
    def test_purchase_then_unlock_nets_zero(self):
        fulfiller = make_user(self.db, Role.FULFILLER, credits=2)

        updated, txn = marketplace.add_credits(
            self.db, fulfiller, 100, "MPS1A2B3C4D", self.settings
        )
        self.assertEqual(updated.credits, 3)
        self.assertEqual(txn.type, TransactionType.CREDIT_PURCHASE)
        self.assertEqual(txn.payment_code, "MPS1A2B3C4D")
        self.assertEqual(txn.amount, 100)

        marketplace.unlock_need(self.db, self.need.need_id, fulfiller, self.settings)
        self.assertEqual(self.db.get_user(fulfiller.user_id).credits, 2)

    def test_partial_unit_is_floored(self):
        fulfiller = make_user(self.db, Role.FULFILLER)
        updated, txn = marketplace.add_credits(
            self.db, fulfiller, 250, "mps998877", self.settings
        )
        self.assertEqual(updated.credits, 2)
        self.assertEqual(txn.metadata["credits"], 2)
        self.assertEqual(txn.payment_code, "MPS998877")

    def test_amount_below_unit_price(self):
        fulfiller = make_user(self.db, Role.FULFILLER)
        with self.assertRaises(ValidationError):
            marketplace.add_credits(self.db, fulfiller, 50, "MPS123456", self.settings)

    def test_invalid_payment_codes(self):
        fulfiller = make_user(self.db, Role.FULFILLER)
        for code in ["", "   ", "ABC123456", "MPS", "MPS-12 34"]:
            with self.subTest(code=code):
                with self.assertRaises(InvalidPaymentCode):
                    marketplace.add_credits(
                        self.db, fulfiller, 100, code, self.settings
                    )
        self.assertEqual(self.db.get_user(fulfiller.user_id).credits, 0)

    def test_payment_code_single_use(self):
        fulfiller = make_user(self.db, Role.FULFILLER)
        marketplace.add_credits(self.db, fulfiller, 100, "MPS555", self.settings)
        with self.assertRaises(Conflict):
            marketplace.add_credits(self.db, fulfiller, 100, "MPS555", self.settings)
        self.assertEqual(self.db.get_user(fulfiller.user_id).credits, 1)

    def test_askers_do_not_buy_credits(self):
        with self.assertRaises(Forbidden):
            marketplace.add_credits(
                self.db, self.asker, 100, "MPS123456", self.settings
            )


class RefundTests(MarketplaceTestCase):
    def test_refund_unlock_restores_credit(self):
        fulfiller = make_user(self.db, Role.FULFILLER, credits=1)
        result = marketplace.unlock_need(
            self.db, self.need.need_id, fulfiller, self.settings
        )

        refund = marketplace.refund_transaction(
            self.db, result.transaction.transaction_id
        )

        self.assertEqual(refund.type, TransactionType.REFUND)
        self.assertEqual(refund.status, TransactionStatus.COMPLETED)
        self.assertEqual(self.db.get_user(fulfiller.user_id).credits, 1)
        original = self.db.get_transaction(result.transaction.transaction_id)
        self.assertEqual(original.status, TransactionStatus.REFUNDED)

        with self.assertRaises(ValidationError):
            marketplace.refund_transaction(
                self.db, result.transaction.transaction_id
            )

    def test_refund_spent_purchase_fails(self):
        fulfiller = make_user(self.db, Role.FULFILLER)
        _, purchase = marketplace.add_credits(
            self.db, fulfiller, 100, "MPS777", self.settings
        )
        marketplace.unlock_need(self.db, self.need.need_id, fulfiller, self.settings)

        with self.assertRaises(InsufficientCredits):
            marketplace.refund_transaction(self.db, purchase.transaction_id)
        self.assertEqual(
            self.db.get_transaction(purchase.transaction_id).status,
            TransactionStatus.COMPLETED,
        )

    def test_refund_unknown_transaction(self):
        with self.assertRaises(NotFound):
            marketplace.refund_transaction(self.db, "nope")


class PostNeedTests(MarketplaceTestCase):
    def test_post_need_defaults(self):
        self.assertEqual(self.need.status, NeedStatus.ACTIVE)
        self.assertEqual(self.need.timeframe, "flexible")
        self.assertAlmostEqual(
            self.need.expires_at - self.need.created_at, 30 * 24 * 60 * 60, places=3
        )

    def test_invalid_needs_are_not_stored(self):
        cases = {
            "negative budget": need_fields(budget=-1),
            "unknown category": need_fields(category="weddings"),
            "blank title": need_fields(title="   "),
            "missing location": need_fields(location=None),
            "unknown timeframe": need_fields(timeframe="someday"),
        }
        for label, fields in cases.items():
            with self.subTest(label):
                with self.assertRaises(ValidationError):
                    marketplace.post_need(self.db, self.asker, fields, self.settings)
        self.assertEqual(len(self.db.needs), 1)

    def test_fulfiller_cannot_post(self):
        fulfiller = make_user(self.db, Role.FULFILLER)
        with self.assertRaises(Forbidden):
            marketplace.post_need(self.db, fulfiller, need_fields(), self.settings)


class ListNeedsTests(MarketplaceTestCase):
    def setUp(self):
        super().setUp()
        self.cheap = marketplace.post_need(
            self.db,
            self.asker,
            need_fields(title="Dog walker", budget=200, category="pets", location="Kisumu"),
            self.settings,
        )
        self.urgent = marketplace.post_need(
            self.db,
            self.asker,
            need_fields(title="Lorry hire", budget=5000, category="transport", is_urgent=True),
            self.settings,
        )
        self.db.needs[self.need.need_id].created_at = 100.0
        self.db.needs[self.cheap.need_id].created_at = 200.0
        self.db.needs[self.urgent.need_id].created_at = 50.0

    def _ids(self, **kwargs):
        needs, _ = marketplace.list_active_needs(self.db, **kwargs)
        return [n["need_id"] for n in needs]

    def test_sort_orders(self):
        self.assertEqual(
            self._ids(sort=NeedSort.NEWEST),
            [self.cheap.need_id, self.need.need_id, self.urgent.need_id],
        )
        self.assertEqual(
            self._ids(sort=NeedSort.BUDGET_HIGH),
            [self.urgent.need_id, self.need.need_id, self.cheap.need_id],
        )
        self.assertEqual(
            self._ids(sort=NeedSort.BUDGET_LOW),
            [self.cheap.need_id, self.need.need_id, self.urgent.need_id],
        )
        self.assertEqual(
            self._ids(sort=NeedSort.URGENT),
            [self.urgent.need_id, self.cheap.need_id, self.need.need_id],
        )

    def test_filters(self):
        self.assertEqual(self._ids(category="pets"), [self.cheap.need_id])
        self.assertEqual(self._ids(location="kisu"), [self.cheap.need_id])
        self.assertEqual(
            set(self._ids(min_budget=500, max_budget=1000)), {self.need.need_id}
        )

    def test_pagination(self):
        needs, pagination = marketplace.list_active_needs(self.db, page=2, limit=2)
        self.assertEqual(len(needs), 1)
        self.assertEqual(
            pagination, {"page": 2, "limit": 2, "total": 3, "pages": 2}
        )

    def test_inactive_and_expired_needs_are_hidden(self):
        marketplace.cancel_need(self.db, self.cheap.need_id, self.asker)
        self.db.needs[self.urgent.need_id].expires_at = 1.0
        self.assertEqual(self._ids(), [self.need.need_id])

    def test_no_contact_fields_in_any_listing(self):
        fulfiller = make_user(self.db, Role.FULFILLER, credits=1)
        marketplace.unlock_need(self.db, self.need.need_id, fulfiller, self.settings)
        for sort in NeedSort:
            for filters in [{}, {"category": "services"}, {"location": "nairobi"}]:
                needs, _ = marketplace.list_active_needs(self.db, sort=sort, **filters)
                for need in needs:
                    for key in ("phone", "email", "contact_methods", "unlocked_by", "user_id"):
                        self.assertNotIn(key, need)

    def test_budget_range_must_be_ordered(self):
        with self.assertRaises(ValidationError):
            marketplace.list_active_needs(self.db, min_budget=10, max_budget=5)


class OfferTests(MarketplaceTestCase):
    def test_offer_accept_complete(self):
        fulfiller = make_user(self.db, Role.FULFILLER)
        other = make_user(self.db, Role.FULFILLER)
        offer = marketplace.make_offer(
            self.db, self.need.need_id, fulfiller, 900, "Can come today"
        )
        marketplace.make_offer(self.db, self.need.need_id, other, 950)

        need = marketplace.accept_offer(
            self.db, self.need.need_id, offer.offer_id, self.asker
        )
        self.assertEqual(need.selected_fulfiller, fulfiller.user_id)
        self.assertEqual(
            [o.status for o in need.offers],
            [OfferStatus.ACCEPTED, OfferStatus.REJECTED],
        )

        txn = marketplace.complete_need(self.db, self.need.need_id, self.asker)
        self.assertEqual(txn.type, TransactionType.JOB_COMPLETED)
        self.assertEqual(txn.user_id, fulfiller.user_id)
        self.assertEqual(txn.amount, 900)
        self.assertEqual(self.db.get_user(fulfiller.user_id).completed_jobs, 1)
        self.assertEqual(
            self.db.get_need(self.need.need_id).status, NeedStatus.FULFILLED
        )

    def test_complete_without_accepted_offer(self):
        with self.assertRaises(ValidationError):
            marketplace.complete_need(self.db, self.need.need_id, self.asker)

    def test_only_owner_accepts(self):
        fulfiller = make_user(self.db, Role.FULFILLER)
        other_asker = make_user(self.db, Role.ASKER)
        offer = marketplace.make_offer(self.db, self.need.need_id, fulfiller, 900)
        with self.assertRaises(Forbidden):
            marketplace.accept_offer(
                self.db, self.need.need_id, offer.offer_id, other_asker
            )

    def test_no_offers_on_cancelled_need(self):
        fulfiller = make_user(self.db, Role.FULFILLER)
        marketplace.cancel_need(self.db, self.need.need_id, self.asker)
        with self.assertRaises(ValidationError):
            marketplace.make_offer(self.db, self.need.need_id, fulfiller, 900)


class DashboardTests(MarketplaceTestCase):
    def test_role_specific_stats(self):
        fulfiller = make_user(self.db, Role.FULFILLER, credits=2)
        marketplace.unlock_need(self.db, self.need.need_id, fulfiller, self.settings)
        offer = marketplace.make_offer(self.db, self.need.need_id, fulfiller, 800)
        marketplace.accept_offer(self.db, self.need.need_id, offer.offer_id, self.asker)
        marketplace.complete_need(self.db, self.need.need_id, self.asker)
        marketplace.post_need(self.db, self.asker, need_fields(), self.settings)

        asker_stats = marketplace.dashboard_stats(
            self.db, self.db.get_user(self.asker.user_id)
        )
        self.assertEqual(
            asker_stats,
            {
                "role": "asker",
                "active_needs": 1,
                "completed_needs": 1,
                "unlocks_received": 1,
                "offers_received": 1,
                "total_offers": 2,
            },
        )

        fulfiller_stats = marketplace.dashboard_stats(
            self.db, self.db.get_user(fulfiller.user_id)
        )
        self.assertEqual(
            fulfiller_stats,
            {
                "role": "fulfiller",
                "unlocked_needs": 1,
                "completed_jobs": 1,
                "total_earnings": 800.0,
                "credits": 1,
            },
        )

    def test_expired_needs_not_counted_as_active(self):
        self.db.create_need(
            NeedRecord(
                need_id=uuid.uuid4().hex,
                user_id=self.asker.user_id,
                title="Old request",
                description="Past its expiry",
                budget=500,
                category="services",
                location="Nairobi",
                expires_at=time.time() - 1,
            )
        )
        stats = marketplace.dashboard_stats(self.db, self.asker)
        self.assertEqual(stats["active_needs"], 1)


if __name__ == "__main__":
    unittest.main()
