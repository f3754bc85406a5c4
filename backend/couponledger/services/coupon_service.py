"""
Coupon Ledger Service

WHY: Customers earn one coupon per massage by messaging a kiosk-issued code
to the business WhatsApp number, and trade coupons for rewards. Balances are
money-like, so every change must happen exactly once.

DESIGN PRINCIPLES:
- Every mutating operation is one transaction (concurrency.atomic)
- State changes are conditional UPDATEs (WHERE status = <expected>) and
  balance changes are computed in SQL (coupon_count = coupon_count + 1), so
  two requests racing on the same row cannot both win. This holds on SQLite,
  where FOR UPDATE is ignored
- At most one pending redemption per phone, backed by a partial unique index
- Consuming a used token again never credits twice; the consumer gets the
  unchanged balance back
- Claiming while a redemption is pending returns that redemption instead of
  deducting again
- Redemptions snapshot coupons_used at claim time; rejection refunds exactly
  that amount, whoever rejects it (admin or auto-expiry)
- Every outcome is recorded through event_log_service

LIFECYCLES:
- Token:      issued -> used | expired
- Redemption: pending -> completed | rejected

Validation outcomes of consume/claim come back as result objects. Admin
misuse (unknown id, missing note, acting on a closed redemption) raises.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from urllib.parse import quote

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import (
    CouponToken,
    CouponWallet,
    CouponRedemption,
    TokenStatus,
    RedemptionStatus,
    EventType,
)
from couponledger.time_utils import to_utc_z, utcnow
from . import coupon_policy_service, event_log_service, phone_normalizer, token_generator
from .concurrency import atomic, lock_for_update
from .coupon_policy_service import PolicyCache, RewardTierInfo
from .pii_masking import mask_phone


TOKEN_GENERATION_ATTEMPTS = 3

ISSUED_TOKEN_RETENTION = timedelta(days=7)
USED_TOKEN_RETENTION = timedelta(days=90)
PENDING_REDEMPTION_MAX_AGE = timedelta(days=30)
AUTO_EXPIRE_NOTE = "Auto-expired after 30 days"

DEFAULT_REWARD_NAME = "Ücretsiz Masaj"
WHATSAPP_MESSAGE_PREFIX = "KUPON"
SYSTEM_ACTOR = "system"


class CouponError(Exception):
    """Base for coupon ledger failures that indicate a caller or service fault."""


class TokenGenerationExhausted(CouponError):
    pass


class RedemptionNotFound(CouponError):
    pass


class RejectionNoteRequired(CouponError):
    pass


class InvalidRedemptionTransition(CouponError):
    pass


class InvalidTokenTransition(CouponError):
    pass


class CouponErrorCode(str, enum.Enum):
    INVALID_TOKEN = "INVALID_TOKEN"
    EXPIRED_TOKEN = "EXPIRED_TOKEN"
    ALREADY_USED = "ALREADY_USED"
    INSUFFICIENT_COUPONS = "INSUFFICIENT_COUPONS"


# =============================================================================
# STATE MACHINES
# =============================================================================

TOKEN_TRANSITIONS = {
    TokenStatus.ISSUED: {TokenStatus.USED, TokenStatus.EXPIRED},
    TokenStatus.USED: set(),
    TokenStatus.EXPIRED: set(),
}

REDEMPTION_TRANSITIONS = {
    RedemptionStatus.PENDING: {RedemptionStatus.COMPLETED, RedemptionStatus.REJECTED},
    RedemptionStatus.COMPLETED: set(),
    RedemptionStatus.REJECTED: set(),
}


def _guard_token_transition(current: TokenStatus, new_status: TokenStatus) -> None:
    if new_status not in TOKEN_TRANSITIONS[current]:
        raise InvalidTokenTransition(
            f"Token cannot move from {current.value} to {new_status.value}"
        )


def _guard_redemption_transition(current: RedemptionStatus, new_status: RedemptionStatus) -> None:
    if new_status not in REDEMPTION_TRANSITIONS[current]:
        raise InvalidRedemptionTransition(
            f"Redemption cannot move from {current.value} to {new_status.value}"
        )


def _move_token(token_value: str, current: TokenStatus, new_status: TokenStatus, now: datetime, **values) -> bool:
    """
    Flip a token's status in one UPDATE guarded by its current status.

    Returns False when the row was no longer in `current`: another request
    moved it between our read and this write.
    """
    _guard_token_transition(current, new_status)
    result = db.session.execute(
        update(CouponToken)
        .where(CouponToken.token == token_value, CouponToken.status == current)
        .values(status=new_status, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _close_pending_redemption(redemption_id: str, new_status: RedemptionStatus, **values) -> bool:
    """Same guarded UPDATE for redemptions; only pending ones can close."""
    _guard_redemption_transition(RedemptionStatus.PENDING, new_status)
    result = db.session.execute(
        update(CouponRedemption)
        .where(CouponRedemption.id == redemption_id, CouponRedemption.status == RedemptionStatus.PENDING)
        .values(status=new_status, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class IssuedToken:
    token: str
    kiosk_id: str
    issued_for: str | None
    expires_at: datetime
    created_at: datetime
    wa_text: str
    wa_url: str

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "status": TokenStatus.ISSUED.value,
            "kiosk_id": self.kiosk_id,
            "issued_for": self.issued_for,
            "expires_at": to_utc_z(self.expires_at),
            "created_at": to_utc_z(self.created_at),
            "wa_text": self.wa_text,
            "wa_url": self.wa_url,
        }


@dataclass(frozen=True)
class ConsumeResult:
    ok: bool
    balance: int
    remaining_to_free: int
    error: CouponErrorCode | None = None
    already_used: bool = False

    def to_dict(self) -> dict:
        data = {
            "ok": self.ok,
            "balance": self.balance,
            "remaining_to_free": self.remaining_to_free,
        }
        if self.already_used:
            data["already_used"] = True
        if self.error is not None:
            data["error"] = self.error.value
        return data


@dataclass(frozen=True)
class ClaimResult:
    ok: bool
    redemption_id: str | None = None
    reward_name: str | None = None
    balance: int | None = None
    needed: int | None = None
    threshold: int | None = None
    is_new: bool | None = None
    error: CouponErrorCode | None = None

    def to_dict(self) -> dict:
        data = {"ok": self.ok}
        for key in ("redemption_id", "reward_name", "balance", "needed", "threshold", "is_new"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.error is not None:
            data["error"] = self.error.value
        return data


@dataclass(frozen=True)
class WalletSummary:
    wallet: CouponWallet
    available_rewards: list[RewardTierInfo] = field(default_factory=list)
    remaining_to_next: int = 0
    next_tier: RewardTierInfo | None = None

    def to_dict(self) -> dict:
        return {
            "wallet": self.wallet.to_dict(),
            "available_rewards": [t.to_dict() for t in self.available_rewards],
            "remaining_to_next": self.remaining_to_next,
            "next_tier": self.next_tier.to_dict() if self.next_tier else None,
        }


# =============================================================================
# HELPERS
# =============================================================================

def _whatsapp_number() -> str:
    return current_app.config.get("WHATSAPP_NUMBER") or ""


def build_whatsapp_payload(token: str, whatsapp_number: str | None = None) -> tuple[str, str]:
    """Message text and wa.me deep link that pre-fills it."""
    number = whatsapp_number if whatsapp_number is not None else _whatsapp_number()
    text = f"{WHATSAPP_MESSAGE_PREFIX} {token}"
    return text, f"https://wa.me/{number}?text={quote(text)}"


def _remaining_to_free(threshold: int, balance: int) -> int:
    return max(0, threshold - balance)


def _locked_wallet(phone: str) -> CouponWallet | None:
    return lock_for_update(
        db.session.query(CouponWallet).filter(CouponWallet.phone == phone)
    ).first()


def _fresh_wallet(phone: str) -> CouponWallet | None:
    """Reload from the database; SQL-side updates bypass the identity map."""
    return db.session.get(CouponWallet, phone, populate_existing=True)


def _update_wallet(phone: str, *conditions, **values) -> bool:
    result = db.session.execute(
        update(CouponWallet)
        .where(CouponWallet.phone == phone, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _apply_to_wallet(phone: str, now: datetime, **values) -> CouponWallet:
    """
    Apply SQL-side changes to a wallet, creating an empty one first when the
    phone has none yet.

    Values should be column expressions (CouponWallet.coupon_count + 1) so the
    arithmetic happens in the UPDATE, never on a value read earlier.
    """
    if _update_wallet(phone, updated_at=now, **values):
        return _fresh_wallet(phone)

    try:
        with db.session.begin_nested():
            db.session.add(CouponWallet(
                phone=phone,
                coupon_count=0,
                total_earned=0,
                total_redeemed=0,
                opted_in_marketing=True,
                created_at=now,
                updated_at=now,
            ))
    except IntegrityError:
        current_app.logger.info("Wallet %s was created by a concurrent request", mask_phone(phone))

    if not _update_wallet(phone, updated_at=now, **values):
        raise CouponError(f"Wallet {mask_phone(phone)} could not be updated")
    return _fresh_wallet(phone)


def _refund(redemption: CouponRedemption, now: datetime) -> None:
    """Give coupons_used back to the wallet; mirrors the deduction at claim time."""
    _apply_to_wallet(
        redemption.phone,
        now,
        coupon_count=CouponWallet.coupon_count + redemption.coupons_used,
        total_redeemed=CouponWallet.total_redeemed - redemption.coupons_used,
    )


def _close_redemption(redemption_id: str, new_status: RedemptionStatus, **values) -> CouponRedemption:
    """
    Close a pending redemption or explain why it cannot be closed.

    Raises:
        RedemptionNotFound: unknown id
        InvalidRedemptionTransition: redemption is no longer pending
    """
    closed = _close_pending_redemption(redemption_id, new_status, **values)
    redemption = db.session.get(CouponRedemption, redemption_id, populate_existing=True)
    if redemption is None:
        raise RedemptionNotFound(f"Redemption {redemption_id} not found")
    if not closed:
        raise InvalidRedemptionTransition(
            f"Redemption {redemption.id} is {redemption.status.value}; cannot mark it {new_status.value}"
        )
    return redemption


# =============================================================================
# TOKENS
# =============================================================================

def issue_token(
    kiosk_id: str,
    issued_for: str | None = None,
    *,
    cache: PolicyCache | None = None,
) -> IssuedToken:
    """
    Issue a new single-use token for a kiosk.

    Raises:
        TokenGenerationExhausted: no unused code found in 3 attempts
    """
    token_value = None
    for _ in range(TOKEN_GENERATION_ATTEMPTS):
        candidate = token_generator.generate()
        if db.session.get(CouponToken, candidate) is None:
            token_value = candidate
            break

    if token_value is None:
        raise TokenGenerationExhausted(
            f"Failed to generate unique token after {TOKEN_GENERATION_ATTEMPTS} attempts"
        )

    now = utcnow()
    expires_at = now + timedelta(hours=coupon_policy_service.get_token_expiration_hours(cache=cache))

    with atomic():
        db.session.add(CouponToken(
            token=token_value,
            status=TokenStatus.ISSUED,
            issued_for=issued_for,
            kiosk_id=kiosk_id,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        ))
        event_log_service.log_event(
            EventType.ISSUED,
            token=token_value,
            details={
                "kiosk_id": kiosk_id,
                "issued_for": issued_for,
                "expires_at": to_utc_z(expires_at),
            },
        )

    wa_text, wa_url = build_whatsapp_payload(token_value)
    return IssuedToken(
        token=token_value,
        kiosk_id=kiosk_id,
        issued_for=issued_for,
        expires_at=expires_at,
        created_at=now,
        wa_text=wa_text,
        wa_url=wa_url,
    )


def _used_token_result(token_row: CouponToken, phone: str, threshold: int) -> ConsumeResult:
    wallet = _fresh_wallet(phone)
    balance = wallet.coupon_count if wallet else 0
    if token_row.phone == phone:
        return ConsumeResult(
            ok=True,
            balance=balance,
            remaining_to_free=_remaining_to_free(threshold, balance),
            already_used=True,
        )
    return ConsumeResult(
        ok=False,
        balance=balance,
        remaining_to_free=_remaining_to_free(threshold, balance),
        error=CouponErrorCode.ALREADY_USED,
    )


def _rejected_token_result(error: CouponErrorCode, threshold: int) -> ConsumeResult:
    return ConsumeResult(ok=False, balance=0, remaining_to_free=threshold, error=error)


def consume_token(phone: str, token: str, *, cache: PolicyCache | None = None) -> ConsumeResult:
    """
    Turn a token into one coupon on the phone's wallet.

    - Unknown token            -> INVALID_TOKEN
    - Used by the same phone   -> ok, unchanged balance, already_used=True
    - Used by another phone    -> ALREADY_USED, no mutation
    - Past expires_at          -> token marked expired, EXPIRED_TOKEN
    - Otherwise                -> token used, wallet +1, ok

    CONCURRENCY: the issued -> used flip is a single conditional UPDATE. When
    two requests race for one token, exactly one sees rowcount == 1 and
    credits the wallet; the other re-reads the token and answers as if it had
    arrived second.

    Raises:
        PhoneValidationError: phone cannot be normalized
    """
    normalized_phone = phone_normalizer.normalize(phone)
    token_value = token_generator.clean(token)
    threshold = coupon_policy_service.get_redemption_threshold(cache=cache)

    with atomic():
        token_row = lock_for_update(
            db.session.query(CouponToken).filter(CouponToken.token == token_value)
        ).first()

        if token_row is None:
            return _rejected_token_result(CouponErrorCode.INVALID_TOKEN, threshold)

        if token_row.status == TokenStatus.USED:
            return _used_token_result(token_row, normalized_phone, threshold)

        now = utcnow()

        if now > token_row.expires_at:
            if token_row.status == TokenStatus.ISSUED and _move_token(
                token_value, TokenStatus.ISSUED, TokenStatus.EXPIRED, now
            ):
                event_log_service.log_event(
                    EventType.TOKEN_EXPIRED,
                    phone=normalized_phone,
                    token=token_value,
                    details={"expires_at": to_utc_z(token_row.expires_at)},
                )
            return _rejected_token_result(CouponErrorCode.EXPIRED_TOKEN, threshold)

        if token_row.status != TokenStatus.ISSUED:
            return _rejected_token_result(CouponErrorCode.INVALID_TOKEN, threshold)

        if not _move_token(
            token_value, TokenStatus.ISSUED, TokenStatus.USED, now,
            phone=normalized_phone, used_at=now,
        ):
            db.session.refresh(token_row)
            if token_row.status == TokenStatus.USED:
                return _used_token_result(token_row, normalized_phone, threshold)
            return _rejected_token_result(CouponErrorCode.EXPIRED_TOKEN, threshold)

        wallet = _apply_to_wallet(
            normalized_phone,
            now,
            coupon_count=CouponWallet.coupon_count + 1,
            total_earned=CouponWallet.total_earned + 1,
            last_message_at=now,
        )
        new_balance = wallet.coupon_count

        event_log_service.log_event(
            EventType.COUPON_AWARDED,
            phone=normalized_phone,
            token=token_value,
            details={
                "new_balance": new_balance,
                "total_earned": wallet.total_earned,
                "kiosk_id": token_row.kiosk_id,
            },
        )

    return ConsumeResult(
        ok=True,
        balance=new_balance,
        remaining_to_free=_remaining_to_free(threshold, new_balance),
    )


def get_recent_tokens(limit: int = 10) -> list[CouponToken]:
    return (
        db.session.query(CouponToken)
        .order_by(CouponToken.created_at.desc())
        .limit(limit)
        .all()
    )


# =============================================================================
# WALLETS
# =============================================================================

def get_wallet(phone: str) -> CouponWallet | None:
    """Lookup by normalized phone. No side effects."""
    return db.session.get(CouponWallet, phone_normalizer.normalize(phone))


def get_wallet_summary(phone: str, *, cache: PolicyCache | None = None) -> WalletSummary | None:
    """Wallet plus what it can buy now and what it is saving towards."""
    wallet = get_wallet(phone)
    if wallet is None:
        return None
    remaining, next_tier = coupon_policy_service.get_remaining_for_next_reward(wallet.coupon_count, cache=cache)
    return WalletSummary(
        wallet=wallet,
        available_rewards=coupon_policy_service.get_available_rewards(wallet.coupon_count, cache=cache),
        remaining_to_next=remaining,
        next_tier=next_tier,
    )


def opt_out(phone: str) -> CouponWallet:
    """Stop marketing messages. Creates the wallet if needed; balances untouched."""
    normalized_phone = phone_normalizer.normalize(phone)
    now = utcnow()

    with atomic():
        wallet = _apply_to_wallet(normalized_phone, now, opted_in_marketing=False)
        event_log_service.log_event(EventType.OPTED_OUT, phone=normalized_phone)

    return wallet


# =============================================================================
# REDEMPTIONS
# =============================================================================

def _resolve_tier(tier_id: int | None, threshold: int, cache: PolicyCache | None) -> tuple[int, str, int | None]:
    """(coupons_required, reward_name, tier_id) for an active tier, else the default threshold."""
    if tier_id is not None:
        for tier in coupon_policy_service.get_policy(cache=cache).reward_tiers:
            if tier.id == tier_id and tier.is_active:
                return tier.coupons_required, tier.name_tr, tier.id
    return threshold, DEFAULT_REWARD_NAME, None


def _pending_redemption(phone: str) -> CouponRedemption | None:
    return (
        db.session.query(CouponRedemption)
        .filter(
            CouponRedemption.phone == phone,
            CouponRedemption.status == RedemptionStatus.PENDING,
        )
        .order_by(CouponRedemption.created_at.desc())
        .first()
    )


def _existing_claim_result(existing: CouponRedemption, reward_name: str, phone: str) -> ClaimResult:
    wallet = _fresh_wallet(phone)
    return ClaimResult(
        ok=True,
        redemption_id=existing.id,
        reward_name=existing.reward_name or reward_name,
        balance=wallet.coupon_count if wallet else 0,
        is_new=False,
    )


def claim_redemption(
    phone: str,
    tier_id: int | None = None,
    *,
    cache: PolicyCache | None = None,
) -> ClaimResult:
    """
    Exchange coupons for a reward.

    Idempotent: while a redemption is pending for the phone, the same
    redemption id comes back with is_new=False and nothing is deducted.
    Insufficient balance returns INSUFFICIENT_COUPONS with the exact
    shortfall and changes no balances.

    CONCURRENCY: the deduction is UPDATE ... WHERE coupon_count >= required,
    and the new row must pass the one-pending-per-phone unique index. Both run
    in a savepoint, so a claim that loses the race undoes its deduction and
    returns the winner's redemption.
    """
    normalized_phone = phone_normalizer.normalize(phone)
    threshold = coupon_policy_service.get_redemption_threshold(cache=cache)
    coupons_required, reward_name, resolved_tier_id = _resolve_tier(tier_id, threshold, cache)

    with atomic():
        wallet = _locked_wallet(normalized_phone)
        balance = wallet.coupon_count if wallet else 0

        event_log_service.log_event(
            EventType.REDEMPTION_ATTEMPT,
            phone=normalized_phone,
            details={
                "current_balance": balance,
                "requested_tier": tier_id,
                "coupons_required": coupons_required,
            },
        )

        existing = _pending_redemption(normalized_phone)
        if existing is not None:
            return _existing_claim_result(existing, reward_name, normalized_phone)

        now = utcnow()
        redemption = CouponRedemption(
            id=str(uuid.uuid4()),
            phone=normalized_phone,
            coupons_used=coupons_required,
            tier_id=resolved_tier_id,
            reward_name=reward_name,
            status=RedemptionStatus.PENDING,
            created_at=now,
        )

        try:
            with db.session.begin_nested():
                debited = _update_wallet(
                    normalized_phone,
                    CouponWallet.coupon_count >= coupons_required,
                    coupon_count=CouponWallet.coupon_count - coupons_required,
                    total_redeemed=CouponWallet.total_redeemed + coupons_required,
                    last_message_at=now,
                    updated_at=now,
                )
                if debited:
                    db.session.add(redemption)
        except IntegrityError:
            current_app.logger.info(
                "Concurrent claim for %s already holds a pending redemption", mask_phone(normalized_phone)
            )
            debited = False

        if not debited:
            existing = _pending_redemption(normalized_phone)
            if existing is not None:
                return _existing_claim_result(existing, reward_name, normalized_phone)

            wallet = _fresh_wallet(normalized_phone)
            balance = wallet.coupon_count if wallet else 0
            needed = coupons_required - balance
            event_log_service.log_event(
                EventType.REDEMPTION_BLOCKED,
                phone=normalized_phone,
                details={
                    "reason": "insufficient_coupons",
                    "current_balance": balance,
                    "needed": needed,
                    "threshold": coupons_required,
                },
            )
            return ClaimResult(
                ok=False,
                balance=balance,
                needed=needed,
                threshold=coupons_required,
                error=CouponErrorCode.INSUFFICIENT_COUPONS,
            )

        new_balance = _fresh_wallet(normalized_phone).coupon_count

        event_log_service.log_event(
            EventType.REDEMPTION_GRANTED,
            phone=normalized_phone,
            details={
                "redemption_id": redemption.id,
                "coupons_used": coupons_required,
                "reward_name": reward_name,
                "new_balance": new_balance,
            },
        )

    return ClaimResult(
        ok=True,
        redemption_id=redemption.id,
        reward_name=reward_name,
        balance=new_balance,
        is_new=True,
    )


def get_redemption(redemption_id: str) -> CouponRedemption | None:
    return db.session.get(CouponRedemption, redemption_id)


def list_redemptions(
    status: RedemptionStatus | str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[CouponRedemption]:
    query = db.session.query(CouponRedemption)
    if status is not None:
        query = query.filter(CouponRedemption.status == RedemptionStatus(status))
    return (
        query.order_by(CouponRedemption.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def complete_redemption(redemption_id: str, actor: str) -> CouponRedemption:
    """
    Mark a pending redemption fulfilled. Balance was already deducted at claim.

    Raises:
        RedemptionNotFound: unknown id
        InvalidRedemptionTransition: redemption is not pending
    """
    with atomic():
        now = utcnow()
        redemption = _close_redemption(
            redemption_id,
            RedemptionStatus.COMPLETED,
            completed_at=now,
            completed_by=actor,
        )

        event_log_service.log_event(
            EventType.REDEMPTION_COMPLETED,
            phone=redemption.phone,
            details={
                "redemption_id": redemption.id,
                "coupons_used": redemption.coupons_used,
                "completed_by": actor,
            },
        )

    return redemption


def reject_redemption(redemption_id: str, note: str, actor: str) -> CouponRedemption:
    """
    Reject a pending redemption and refund its coupons.

    Two rejections racing on one redemption refund it once: only the request
    whose pending -> rejected UPDATE matched a row gets to refund.

    Raises:
        RejectionNoteRequired: blank note
        RedemptionNotFound: unknown id
        InvalidRedemptionTransition: redemption is not pending
    """
    if not isinstance(note, str) or not note.strip():
        raise RejectionNoteRequired("Rejection note is required")
    note = note.strip()

    with atomic():
        now = utcnow()
        redemption = _close_redemption(
            redemption_id,
            RedemptionStatus.REJECTED,
            rejected_at=now,
            rejected_by=actor,
            note=note,
        )
        _refund(redemption, now)

        event_log_service.log_event(
            EventType.REDEMPTION_REJECTED,
            phone=redemption.phone,
            details={
                "redemption_id": redemption.id,
                "reason": note,
                "refunded_coupons": redemption.coupons_used,
                "rejected_by": actor,
            },
        )

    return redemption


# =============================================================================
# MAINTENANCE (called by the host scheduler)
# =============================================================================

def cleanup_expired_tokens() -> int:
    """
    Delete unused tokens (issued or marked expired) whose expires_at is more
    than 7 days ago, and used tokens used more than 90 days ago. Returns the
    number deleted.
    """
    now = utcnow()
    expired_cutoff = now - ISSUED_TOKEN_RETENTION
    used_cutoff = now - USED_TOKEN_RETENTION

    with atomic():
        deleted_expired = db.session.query(CouponToken).filter(
            CouponToken.status.in_([TokenStatus.ISSUED, TokenStatus.EXPIRED]),
            CouponToken.expires_at < expired_cutoff,
        ).delete(synchronize_session=False)

        deleted_used = db.session.query(CouponToken).filter(
            CouponToken.status == TokenStatus.USED,
            CouponToken.used_at < used_cutoff,
        ).delete(synchronize_session=False)

        total = deleted_expired + deleted_used
        if total > 0:
            event_log_service.log_event(
                EventType.TOKENS_CLEANED,
                details={
                    "deleted_expired": deleted_expired,
                    "deleted_used": deleted_used,
                    "total_deleted": total,
                    "expired_cutoff": to_utc_z(expired_cutoff),
                    "used_cutoff": to_utc_z(used_cutoff),
                },
            )

    return total


def expire_pending_redemptions() -> int:
    """
    Reject pending redemptions older than 30 days and refund them.
    Returns the number expired.
    """
    now = utcnow()
    cutoff = now - PENDING_REDEMPTION_MAX_AGE

    with atomic():
        stale = db.session.query(CouponRedemption).filter(
            CouponRedemption.status == RedemptionStatus.PENDING,
            CouponRedemption.created_at < cutoff,
        ).all()

        expired = 0
        for redemption in stale:
            # Skip rows an admin closed since the SELECT
            if not _close_pending_redemption(
                redemption.id,
                RedemptionStatus.REJECTED,
                rejected_at=now,
                rejected_by=SYSTEM_ACTOR,
                note=AUTO_EXPIRE_NOTE,
            ):
                continue
            _refund(redemption, now)
            expired += 1
            event_log_service.log_event(
                EventType.REDEMPTION_EXPIRED,
                phone=redemption.phone,
                details={
                    "redemption_id": redemption.id,
                    "reason": AUTO_EXPIRE_NOTE,
                    "refunded_coupons": redemption.coupons_used,
                    "created_at": to_utc_z(redemption.created_at),
                },
            )

        if expired:
            event_log_service.log_event(
                EventType.REDEMPTIONS_EXPIRED,
                details={
                    "expired_count": expired,
                    "cutoff": to_utc_z(cutoff),
                },
            )

    return expired
