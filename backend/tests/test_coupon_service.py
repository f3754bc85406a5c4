"""
Coupon ledger service tests.

Covers token lifecycle, wallet crediting, redemption claim/complete/reject
with refunds, and the maintenance jobs. Time-sensitive rows are back-dated.
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from couponledger.extensions import db
from couponledger.models import (
    CouponEvent,
    CouponRedemption,
    CouponToken,
    CouponWallet,
    EventType,
    RedemptionStatus,
    TokenStatus,
)
from couponledger.services import coupon_policy_service, coupon_service, token_generator
from couponledger.services.coupon_policy_service import KEY_REDEMPTION_THRESHOLD
from couponledger.services.coupon_service import (
    CouponErrorCode,
    InvalidRedemptionTransition,
    InvalidTokenTransition,
    RedemptionNotFound,
    RejectionNoteRequired,
    TokenGenerationExhausted,
)
from couponledger.services.phone_normalizer import PhoneValidationError
from couponledger.time_utils import utcnow
from tests.conftest import PHONE, OTHER_PHONE, WHATSAPP_NUMBER, make_redemption, make_token, make_wallet


def _events(event_type):
    return db.session.query(CouponEvent).filter_by(event=event_type.value).all()


def _wallet(phone=PHONE):
    return db.session.get(CouponWallet, phone)


# =============================================================================
# ISSUANCE
# =============================================================================

class TestIssueToken:
    def test_issue_creates_token_and_deep_link(self, db_session):
        issued = coupon_service.issue_token("K1", "massage-42")

        row = db.session.get(CouponToken, issued.token)
        assert row.status == TokenStatus.ISSUED
        assert row.kiosk_id == "K1"
        assert row.issued_for == "massage-42"
        assert row.phone is None
        assert token_generator.is_valid_format(issued.token)

        assert issued.wa_text == f"KUPON {issued.token}"
        assert issued.wa_url == f"https://wa.me/{WHATSAPP_NUMBER}?text=KUPON%20{issued.token}"

    def test_expiry_follows_policy(self, db_session):
        coupon_policy_service.update_setting("token_expiration_hours", 2)

        issued = coupon_service.issue_token("K1")

        assert issued.expires_at - issued.created_at == timedelta(hours=2)

    def test_issue_logs_event(self, db_session):
        issued = coupon_service.issue_token("K1")

        events = _events(EventType.ISSUED)
        assert len(events) == 1
        assert events[0].token == issued.token
        assert events[0].details["kiosk_id"] == "K1"

    def test_collision_retries_with_new_code(self, db_session, monkeypatch):
        make_token(db_session, token="AAAA2222BBBB")
        codes = iter(["AAAA2222BBBB", "CCCC3333DDDD"])
        monkeypatch.setattr(token_generator, "generate", lambda: next(codes))

        issued = coupon_service.issue_token("K1")

        assert issued.token == "CCCC3333DDDD"

    def test_exhausted_after_three_collisions(self, db_session, monkeypatch):
        make_token(db_session, token="AAAA2222BBBB")
        calls = []

        def always_taken():
            calls.append(1)
            return "AAAA2222BBBB"

        monkeypatch.setattr(token_generator, "generate", always_taken)

        with pytest.raises(TokenGenerationExhausted):
            coupon_service.issue_token("K1")

        assert len(calls) == 3
        assert db.session.query(CouponToken).count() == 1

    def test_recent_tokens(self, db_session):
        issued = {coupon_service.issue_token("K1").token for _ in range(3)}

        recent = coupon_service.get_recent_tokens(limit=2)
        assert len(recent) == 2
        assert {t.token for t in recent} <= issued
        assert len(coupon_service.get_recent_tokens()) == 3


# =============================================================================
# CONSUMPTION
# =============================================================================

class TestConsumeToken:
    def test_consume_credits_one_coupon(self, db_session):
        make_token(db_session, token="ABCDEFGH2345")

        result = coupon_service.consume_token(PHONE, "ABCDEFGH2345")

        assert result.ok
        assert result.balance == 1
        assert result.remaining_to_free == 3

        wallet = _wallet()
        assert wallet.coupon_count == 1
        assert wallet.total_earned == 1
        assert wallet.opted_in_marketing is True

        token = db.session.get(CouponToken, "ABCDEFGH2345")
        assert token.status == TokenStatus.USED
        assert token.phone == PHONE
        assert token.used_at is not None

    def test_phone_and_token_are_normalized(self, db_session):
        make_token(db_session, token="ABCDEFGH2345")

        result = coupon_service.consume_token("0555 123 45 67", "  abcdefgh2345 ")

        assert result.ok
        assert _wallet(PHONE).coupon_count == 1

    def test_unknown_token_is_invalid(self, db_session):
        result = coupon_service.consume_token(PHONE, "NOPE2345NOPE")

        assert not result.ok
        assert result.error == CouponErrorCode.INVALID_TOKEN
        assert _wallet() is None

    def test_invalid_phone_raises(self, db_session):
        make_token(db_session, token="ABCDEFGH2345")

        with pytest.raises(PhoneValidationError):
            coupon_service.consume_token("not a phone", "ABCDEFGH2345")

        assert db.session.get(CouponToken, "ABCDEFGH2345").status == TokenStatus.ISSUED

    def test_second_consume_by_same_phone_is_idempotent(self, db_session):
        make_token(db_session, token="ABCDEFGH2345")

        first = coupon_service.consume_token(PHONE, "ABCDEFGH2345")
        second = coupon_service.consume_token(PHONE, "ABCDEFGH2345")

        assert first.ok and second.ok
        assert first.balance == second.balance == 1
        assert second.already_used
        assert _wallet().coupon_count == 1
        assert _wallet().total_earned == 1
        assert len(_events(EventType.COUPON_AWARDED)) == 1

    def test_used_token_from_other_phone_rejected(self, db_session):
        make_token(db_session, token="ABCDEFGH2345")
        coupon_service.consume_token(PHONE, "ABCDEFGH2345")

        result = coupon_service.consume_token(OTHER_PHONE, "ABCDEFGH2345")

        assert not result.ok
        assert result.error == CouponErrorCode.ALREADY_USED
        assert result.balance == 0
        assert _wallet(OTHER_PHONE) is None
        assert _wallet(PHONE).coupon_count == 1

    def test_expired_token_marks_expired_without_credit(self, db_session):
        make_token(db_session, token="ABCDEFGH2345", expires_in=-timedelta(minutes=1))

        result = coupon_service.consume_token(PHONE, "ABCDEFGH2345")

        assert not result.ok
        assert result.error == CouponErrorCode.EXPIRED_TOKEN
        assert db.session.get(CouponToken, "ABCDEFGH2345").status == TokenStatus.EXPIRED
        assert _wallet() is None
        assert len(_events(EventType.TOKEN_EXPIRED)) == 1

    def test_expired_token_stays_expired(self, db_session):
        make_token(db_session, token="ABCDEFGH2345", expires_in=-timedelta(minutes=1))
        coupon_service.consume_token(PHONE, "ABCDEFGH2345")

        result = coupon_service.consume_token(PHONE, "ABCDEFGH2345")

        assert result.error == CouponErrorCode.EXPIRED_TOKEN
        assert len(_events(EventType.TOKEN_EXPIRED)) == 1

    def test_expired_status_before_expiry_is_invalid(self, db_session):
        make_token(db_session, token="ABCDEFGH2345", status=TokenStatus.EXPIRED)

        result = coupon_service.consume_token(PHONE, "ABCDEFGH2345")

        assert result.error == CouponErrorCode.INVALID_TOKEN

    def test_awarded_event_masks_details(self, db_session):
        make_token(db_session, token="ABCDEFGH2345")
        coupon_service.consume_token(PHONE, "ABCDEFGH2345")

        event = _events(EventType.COUPON_AWARDED)[0]
        assert event.phone == PHONE
        assert event.token == "ABCDEFGH2345"
        assert event.details["new_balance"] == 1

    def test_remaining_to_free_floors_at_zero(self, db_session):
        make_wallet(db_session, coupons=6)
        make_token(db_session, token="ABCDEFGH2345")

        result = coupon_service.consume_token(PHONE, "ABCDEFGH2345")

        assert result.balance == 7
        assert result.remaining_to_free == 0

    def test_terminal_token_states_cannot_move(self):
        with pytest.raises(InvalidTokenTransition):
            coupon_service._guard_token_transition(TokenStatus.USED, TokenStatus.EXPIRED)
        with pytest.raises(InvalidTokenTransition):
            coupon_service._guard_token_transition(TokenStatus.EXPIRED, TokenStatus.USED)


# =============================================================================
# WALLETS
# =============================================================================

class TestWallets:
    def test_get_wallet_normalizes(self, db_session):
        make_wallet(db_session, coupons=2)
        assert coupon_service.get_wallet("05551234567").coupon_count == 2
        assert coupon_service.get_wallet(OTHER_PHONE) is None

    def test_summary(self, db_session):
        make_wallet(db_session, coupons=5)
        coupon_policy_service.create_reward_tier(name="Hammam", name_tr="Hamam", coupons_required=8, sort_order=2)

        summary = coupon_service.get_wallet_summary(PHONE)

        assert [t.coupons_required for t in summary.available_rewards] == [4]
        assert summary.remaining_to_next == 3
        assert summary.next_tier.name == "Hammam"
        assert summary.to_dict()["wallet"]["coupon_count"] == 5

    def test_summary_missing_wallet(self, db_session):
        assert coupon_service.get_wallet_summary(PHONE) is None

    def test_opt_out_creates_wallet_without_balance_change(self, db_session):
        wallet = coupon_service.opt_out("5551234567")

        assert wallet.phone == PHONE
        assert wallet.opted_in_marketing is False
        assert wallet.coupon_count == 0
        assert len(_events(EventType.OPTED_OUT)) == 1

    def test_opt_out_keeps_balance(self, db_session):
        make_wallet(db_session, coupons=3)

        coupon_service.opt_out(PHONE)

        assert _wallet().coupon_count == 3
        assert _wallet().opted_in_marketing is False


# =============================================================================
# REDEMPTIONS
# =============================================================================

class TestClaimRedemption:
    def test_insufficient_balance_reports_shortfall(self, db_session):
        make_wallet(db_session, coupons=1)

        result = coupon_service.claim_redemption(PHONE)

        assert not result.ok
        assert result.error == CouponErrorCode.INSUFFICIENT_COUPONS
        assert result.balance == 1
        assert result.needed == 3
        assert result.threshold == 4
        assert _wallet().coupon_count == 1
        assert db.session.query(CouponRedemption).count() == 0
        assert len(_events(EventType.REDEMPTION_BLOCKED)) == 1

    def test_claim_without_wallet_creates_nothing(self, db_session):
        result = coupon_service.claim_redemption(PHONE)

        assert result.needed == 4
        assert _wallet() is None
        assert len(_events(EventType.REDEMPTION_ATTEMPT)) == 1

    def test_claim_deducts_and_creates_pending(self, db_session):
        make_wallet(db_session, coupons=5)

        result = coupon_service.claim_redemption(PHONE)

        assert result.ok and result.is_new
        assert result.balance == 1
        assert result.reward_name == "Ücretsiz Masaj"

        redemption = coupon_service.get_redemption(result.redemption_id)
        assert redemption.status == RedemptionStatus.PENDING
        assert redemption.coupons_used == 4
        assert _wallet().coupon_count == 1
        assert _wallet().total_redeemed == 4

    def test_claim_is_idempotent_while_pending(self, db_session):
        make_wallet(db_session, coupons=8)

        first = coupon_service.claim_redemption(PHONE)
        second = coupon_service.claim_redemption(PHONE)

        assert first.redemption_id == second.redemption_id
        assert second.is_new is False
        assert _wallet().coupon_count == 4
        assert db.session.query(CouponRedemption).count() == 1

    def test_claim_losing_race_to_pending_redemption_undoes_deduction(self, db_session, monkeypatch):
        make_wallet(db_session, coupons=8)
        first = coupon_service.claim_redemption(PHONE)
        real_lookup = coupon_service._pending_redemption
        lookups = []

        # The first check runs before the other claim commits, so it sees nothing
        def lookup_missing_first(phone):
            lookups.append(phone)
            return None if len(lookups) == 1 else real_lookup(phone)

        monkeypatch.setattr(coupon_service, "_pending_redemption", lookup_missing_first)
        second = coupon_service.claim_redemption(PHONE)

        assert second.ok
        assert second.is_new is False
        assert second.redemption_id == first.redemption_id
        assert second.balance == 4
        wallet = _wallet()
        assert wallet.coupon_count == 4
        assert wallet.total_redeemed == 4
        assert db.session.query(CouponRedemption).count() == 1
        assert len(_events(EventType.REDEMPTION_GRANTED)) == 1

    def test_only_one_pending_redemption_per_phone(self, db_session):
        make_redemption(db_session, "r-1")

        with pytest.raises(IntegrityError):
            make_redemption(db_session, "r-2")
        db_session.rollback()

        make_redemption(db_session, "r-3", status=RedemptionStatus.COMPLETED)
        assert db.session.query(CouponRedemption).count() == 2

    def test_claim_specific_tier(self, db_session):
        tier = coupon_policy_service.create_reward_tier(name="Hammam", name_tr="Hamam", coupons_required=8)
        make_wallet(db_session, coupons=9)

        result = coupon_service.claim_redemption(PHONE, tier_id=tier.id)

        assert result.reward_name == "Hamam"
        redemption = coupon_service.get_redemption(result.redemption_id)
        assert redemption.coupons_used == 8
        assert redemption.tier_id == tier.id
        assert _wallet().coupon_count == 1

    def test_unknown_tier_falls_back_to_threshold(self, db_session):
        make_wallet(db_session, coupons=4)

        result = coupon_service.claim_redemption(PHONE, tier_id=999)

        assert result.ok
        redemption = coupon_service.get_redemption(result.redemption_id)
        assert redemption.coupons_used == 4
        assert redemption.tier_id is None


class TestAdminRedemptionActions:
    def _pending(self, db_session, coupons=4):
        make_wallet(db_session, coupons=coupons)
        return coupon_service.claim_redemption(PHONE).redemption_id

    def test_complete(self, db_session):
        redemption_id = self._pending(db_session)

        redemption = coupon_service.complete_redemption(redemption_id, "reception")

        assert redemption.status == RedemptionStatus.COMPLETED
        assert redemption.completed_by == "reception"
        assert redemption.completed_at is not None
        assert _wallet().coupon_count == 0
        assert len(_events(EventType.REDEMPTION_COMPLETED)) == 1

    def test_reject_refunds_exactly(self, db_session):
        redemption_id = self._pending(db_session, coupons=6)
        before = _wallet()
        count_before, redeemed_before = before.coupon_count, before.total_redeemed

        redemption = coupon_service.reject_redemption(redemption_id, "No show", "reception")

        assert redemption.status == RedemptionStatus.REJECTED
        assert redemption.note == "No show"
        assert redemption.rejected_by == "reception"
        wallet = _wallet()
        assert wallet.coupon_count == count_before + 4
        assert wallet.total_redeemed == redeemed_before - 4
        assert wallet.coupon_count == wallet.total_earned - wallet.total_redeemed

    def test_refund_uses_snapshot_not_current_policy(self, db_session):
        redemption_id = self._pending(db_session)
        coupon_policy_service.update_setting(KEY_REDEMPTION_THRESHOLD, 10)

        coupon_service.reject_redemption(redemption_id, "Changed mind", "reception")

        assert _wallet().coupon_count == 4

    def test_reject_requires_note(self, db_session):
        redemption_id = self._pending(db_session)

        with pytest.raises(RejectionNoteRequired):
            coupon_service.reject_redemption(redemption_id, "   ", "reception")

        assert coupon_service.get_redemption(redemption_id).status == RedemptionStatus.PENDING

    def test_unknown_redemption(self, db_session):
        with pytest.raises(RedemptionNotFound):
            coupon_service.complete_redemption("missing", "reception")
        with pytest.raises(RedemptionNotFound):
            coupon_service.reject_redemption("missing", "note", "reception")

    def test_closed_redemptions_cannot_change(self, db_session):
        redemption_id = self._pending(db_session)
        coupon_service.complete_redemption(redemption_id, "reception")

        with pytest.raises(InvalidRedemptionTransition):
            coupon_service.complete_redemption(redemption_id, "reception")
        with pytest.raises(InvalidRedemptionTransition):
            coupon_service.reject_redemption(redemption_id, "too late", "reception")

        assert _wallet().coupon_count == 0

    def test_new_claim_allowed_after_completion(self, db_session):
        redemption_id = self._pending(db_session, coupons=8)
        coupon_service.complete_redemption(redemption_id, "reception")

        result = coupon_service.claim_redemption(PHONE)

        assert result.is_new
        assert result.redemption_id != redemption_id

    def test_list_redemptions_filters_by_status(self, db_session):
        make_redemption(db_session, "r-pending")
        make_redemption(db_session, "r-done", status=RedemptionStatus.COMPLETED)

        assert {r.id for r in coupon_service.list_redemptions()} == {"r-pending", "r-done"}
        assert [r.id for r in coupon_service.list_redemptions(status="pending")] == ["r-pending"]
        assert [r.id for r in coupon_service.list_redemptions(status=RedemptionStatus.COMPLETED)] == ["r-done"]
        assert len(coupon_service.list_redemptions(limit=1)) == 1


# =============================================================================
# MAINTENANCE
# =============================================================================

class TestMaintenance:
    def test_token_retention(self, db_session):
        now = utcnow()
        make_token(db_session, token="ISSUED8DAYSX", expires_in=-timedelta(days=8))
        make_token(db_session, token="ISSUED6DAYSX", expires_in=-timedelta(days=6))
        make_token(db_session, token="EXPIRD8DAYSX", status=TokenStatus.EXPIRED, expires_in=-timedelta(days=8))
        make_token(db_session, token="USED91DAYSXX", status=TokenStatus.USED, phone=PHONE,
                   used_at=now - timedelta(days=91), expires_in=-timedelta(days=90))
        make_token(db_session, token="USED89DAYSXX", status=TokenStatus.USED, phone=PHONE,
                   used_at=now - timedelta(days=89), expires_in=-timedelta(days=88))
        make_token(db_session, token="FRESHTOKENXX")

        deleted = coupon_service.cleanup_expired_tokens()

        assert deleted == 3
        remaining = {t.token for t in db.session.query(CouponToken).all()}
        assert remaining == {"ISSUED6DAYSX", "USED89DAYSXX", "FRESHTOKENXX"}

        events = _events(EventType.TOKENS_CLEANED)
        assert len(events) == 1
        assert events[0].details["total_deleted"] == 3

    def test_cleanup_without_work_logs_nothing(self, db_session):
        make_token(db_session, token="FRESHTOKENXX")

        assert coupon_service.cleanup_expired_tokens() == 0
        assert _events(EventType.TOKENS_CLEANED) == []

    def test_pending_redemption_auto_expiry(self, db_session):
        make_wallet(db_session, coupons=4)
        make_wallet(db_session, phone=OTHER_PHONE, coupons=4)
        old_id = coupon_service.claim_redemption(PHONE).redemption_id
        recent_id = coupon_service.claim_redemption(OTHER_PHONE).redemption_id

        coupon_service.get_redemption(old_id).created_at = utcnow() - timedelta(days=31)
        coupon_service.get_redemption(recent_id).created_at = utcnow() - timedelta(days=29)
        db.session.commit()

        expired = coupon_service.expire_pending_redemptions()

        assert expired == 1
        old = coupon_service.get_redemption(old_id)
        assert old.status == RedemptionStatus.REJECTED
        assert old.note == "Auto-expired after 30 days"
        assert old.rejected_by == "system"
        assert _wallet(PHONE).coupon_count == 4
        assert _wallet(PHONE).total_redeemed == 0

        assert coupon_service.get_redemption(recent_id).status == RedemptionStatus.PENDING
        assert _wallet(OTHER_PHONE).coupon_count == 0

        assert len(_events(EventType.REDEMPTION_EXPIRED)) == 1
        assert _events(EventType.REDEMPTIONS_EXPIRED)[0].details["expired_count"] == 1


# =============================================================================
# LEDGER PROPERTIES
# =============================================================================

def test_balance_never_negative_and_totals_agree(db_session):
    tokens = [f"SEQTOKEN{n:04d}".replace("0", "A").replace("1", "B") for n in range(6)]
    for value in tokens:
        make_token(db_session, token=value)

    for value in tokens[:5]:
        coupon_service.consume_token(PHONE, value)
    first = coupon_service.claim_redemption(PHONE)
    coupon_service.claim_redemption(PHONE)
    coupon_service.reject_redemption(first.redemption_id, "retry", "reception")
    second = coupon_service.claim_redemption(PHONE)
    coupon_service.complete_redemption(second.redemption_id, "reception")
    coupon_service.claim_redemption(PHONE)
    coupon_service.consume_token(PHONE, tokens[5])

    wallet = _wallet()
    assert wallet.coupon_count >= 0
    assert wallet.coupon_count == wallet.total_earned - wallet.total_redeemed
    assert wallet.coupon_count == 2


def test_end_to_end_scenario(db_session):
    tokens = [coupon_service.issue_token("K1").token for _ in range(4)]

    first = coupon_service.consume_token(PHONE, tokens[0])
    assert (first.ok, first.balance, first.remaining_to_free) == (True, 1, 3)

    for value in tokens[1:]:
        result = coupon_service.consume_token(PHONE, value)
    assert (result.balance, result.remaining_to_free) == (4, 0)

    claim = coupon_service.claim_redemption(PHONE)
    assert claim.ok and claim.is_new
    assert _wallet().coupon_count == 0

    again = coupon_service.claim_redemption(PHONE)
    assert again.redemption_id == claim.redemption_id
    assert again.is_new is False
    assert again.balance == 0
