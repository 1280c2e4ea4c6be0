"""
Unit Tests for the Rewards Service facade

Tests cover:
1. First-contact flow with a referral
2. Payload validation into request variants
3. Admin credential gate and aggregate stats
4. End-to-end scenario from join to resolved withdrawal
"""

import pytest

from rewards.errors import RequestValidationError, UnauthorizedError, UnknownReferrerError
from rewards.models import (
    ClaimReferralRequest,
    OpenAccountRequest,
    ResolveWithdrawalRequest,
    WithdrawalStatus,
    WithdrawRequest,
)
from rewards.service import parse_request

ADMIN = "s3cret-admin"


class TestOpenAccount:
    def test_open_with_referral(self, service):
        service.open_account(OpenAccountRequest(uid="100"))

        response = service.open_account(OpenAccountRequest(uid="200", ref="100"))

        assert response.created is True
        assert response.user.balance == 10
        assert response.referral is not None
        assert response.referral.referrer_id == "100"
        assert response.limits.withdraw_amount == 50
        assert response.limits.daily_limit == 2
        assert service.accounts.get("100").balance == 15

    def test_referral_only_honoured_for_new_accounts(self, service):
        service.open_account(OpenAccountRequest(uid="100"))
        service.open_account(OpenAccountRequest(uid="200"))

        response = service.open_account(OpenAccountRequest(uid="200", ref="100"))

        assert response.created is False
        assert response.referral is None
        assert service.accounts.get("100").balance == 10

    def test_self_link_is_ignored(self, service):
        response = service.open_account(OpenAccountRequest(uid="100", ref="100"))

        assert response.created is True
        assert response.referral is None
        assert response.user.balance == 10

    def test_unknown_referrer_silent_by_default(self, service):
        response = service.open_account(OpenAccountRequest(uid="200", ref="ghost"))

        assert response.created is True
        assert response.referral is None

    def test_unknown_referrer_surfaced_when_configured(self, make_service, delivered):
        """A refused first contact leaves no account and no event behind."""
        service = make_service(surface_unknown_referrer=True)
        service.events.subscribe(delivered.append)

        with pytest.raises(UnknownReferrerError):
            service.open_account(OpenAccountRequest(uid="500", ref="999"))
        service.events.process_pending()

        assert service.accounts.find("500") is None
        assert service.storage.account_ids() == []
        assert delivered == []

    def test_surfaced_referrer_ignored_on_revisit(self, make_service):
        service = make_service(surface_unknown_referrer=True)
        service.open_account(OpenAccountRequest(uid="500"))

        response = service.open_account(OpenAccountRequest(uid="500", ref="999"))

        assert response.created is False
        assert response.referral is None


class TestParseRequest:
    def test_tagged_payloads(self):
        assert isinstance(parse_request({"kind": "withdraw", "uid": "1", "upi": "a@b"}), WithdrawRequest)
        assert isinstance(parse_request({"kind": "claim_referral", "uid": "2", "ref": "1"}), ClaimReferralRequest)
        resolved = parse_request({"kind": "resolve_withdrawal", "request_id": 3, "status": "rejected"})
        assert isinstance(resolved, ResolveWithdrawalRequest)
        assert resolved.status == WithdrawalStatus.REJECTED

    def test_payout_target_stripped_at_the_edge(self):
        request = parse_request({"kind": "withdraw", "uid": "1", "upi": " user@upi\n"})

        assert request.upi == "user@upi"

    @pytest.mark.parametrize("payload", [
        {"uid": "1", "upi": "a@b"},
        {"kind": "teleport", "uid": "1"},
        {"kind": "withdraw", "uid": "1"},
        {"kind": "open", "uid": ""},
        {"kind": "open", "uid": "1; DROP TABLE"},
        {"kind": "resolve_withdrawal", "request_id": 3, "status": "pending"},
        "not a mapping",
    ])
    def test_malformed_payloads_rejected(self, payload):
        with pytest.raises(RequestValidationError):
            parse_request(payload)

    def test_malformed_dispatch_has_no_side_effects(self, service):
        with pytest.raises(RequestValidationError):
            service.dispatch({"kind": "open", "uid": "1", "ref": 12.5})

        assert service.storage.account_ids() == []


class TestAdmin:
    def test_wrong_or_missing_credential(self, service):
        for credential in (None, "", "guess"):
            with pytest.raises(UnauthorizedError):
                service.admin_stats(credential)

    def test_no_configured_secret_denies_everyone(self, make_service):
        service = make_service(admin_secret=None)

        with pytest.raises(UnauthorizedError):
            service.admin_stats(ADMIN)

    def test_stats(self, service):
        service.open_account(OpenAccountRequest(uid="100"))
        service.open_account(OpenAccountRequest(uid="200", ref="100"))
        service.accounts.credit("100", 100)
        service.withdraw(WithdrawRequest(uid="100", upi="user@upi"))

        stats = service.admin_stats(ADMIN)

        assert stats.user_count == 2
        assert stats.total_balance == 10 + 15 + 100 - 50
        assert stats.pending_withdrawals == 1

    def test_resolve_requires_credential(self, service):
        service.open_account(OpenAccountRequest(uid="100"))
        service.accounts.credit("100", 100)
        response = service.withdraw(WithdrawRequest(uid="100", upi="user@upi"))
        decision = ResolveWithdrawalRequest(request_id=response.request_id, status="approved")

        with pytest.raises(UnauthorizedError):
            service.resolve_withdrawal("guess", decision)
        assert service.withdrawals.get_request(response.request_id).status == WithdrawalStatus.PENDING

        resolved = service.resolve_withdrawal(ADMIN, decision)
        assert resolved.withdrawal.status == WithdrawalStatus.APPROVED


class TestScenario:
    def test_join_refer_verify_withdraw_reject(self, make_service, delivered):
        """Walks one referrer from first contact to a rejected withdrawal."""
        service = make_service(require_verified_device=True, join_bonus=10, referral_bonus=20)
        service.events.subscribe(delivered.append)

        service.dispatch({"kind": "open", "uid": "100", "fingerprint": "fp-referrer-phone"})
        for uid, phone in (("201", "fp-friend-one-001"), ("202", "fp-friend-two-002")):
            service.dispatch({"kind": "open", "uid": uid, "ref": "100", "fingerprint": phone})

        challenge = service.devices.register_device("100", "fp-referrer-phone")
        service.dispatch({
            "kind": "verify_device", "uid": "100",
            "fingerprint": "fp-referrer-phone", "code": challenge.code,
        })
        submitted = service.dispatch({"kind": "withdraw", "uid": "100", "upi": "user@upi"})
        resolved = service.dispatch(
            {"kind": "resolve_withdrawal", "request_id": submitted.request_id, "status": "rejected"},
            credential=ADMIN,
        )
        service.events.process_pending()

        referrer = service.accounts.get("100")
        assert referrer.total_referrals == 2
        assert submitted.amount == 50
        assert referrer.balance == 10 + 40 - 50
        assert resolved.withdrawal.status == WithdrawalStatus.REJECTED
        assert [e.type for e in delivered] == [
            "registered",
            "registered",
            "referral_earned",
            "registered",
            "referral_earned",
            "withdrawal_submitted",
            "withdrawal_resolved",
        ]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
