from decimal import Decimal
from unittest.mock import Mock

import pytest
from dependency_injector import providers
from fastapi.testclient import TestClient

from marksapi.config import settings
from marksapi.core.exceptions import ConflictingWithdrawalError, IdentityVerificationError
from marksapi.core.security import get_current_active_user, require_admin
from marksapi.database.session import get_db
from marksapi.main import create_app
from marksapi.models.marks import MarkTransactionStatus
from marksapi.models.user import UserRole
from marksapi.schemas.marks import (
    AdminResolveResponse,
    MarksBalanceResponse,
    MarksIntegrityResponse,
    SurveyHelpAwardResponse,
    WithdrawalResponse,
)
from marksapi.schemas.user import User as UserSchema
from marksapi.utils.timezone_utils import utc_now


@pytest.fixture
def app():
    """테스트 앱 - DB 세션은 Mock"""
    app = create_app()
    app.dependency_overrides[get_db] = lambda: Mock()
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def mock_user():
    return UserSchema(id=1, world_id_nullifier="0xuser", marks=500, role=UserRole.USER)


@pytest.fixture
def mock_admin():
    return UserSchema(id=99, world_id_nullifier="0xadmin", role=UserRole.ADMIN)


@pytest.fixture
def as_user(app, mock_user):
    app.dependency_overrides[get_current_active_user] = lambda: mock_user
    return mock_user


def _override_service(provider, service):
    """컨테이너 서비스 팩토리를 Mock 서비스로 교체"""
    return provider.override(providers.Callable(lambda **_: service))


class TestMarksRoutes:
    def test_get_balance(self, app, client, as_user):
        # Given
        service = Mock()
        service.get_balance.return_value = MarksBalanceResponse(balance=300, max_cap=500)

        with _override_service(app.container.services.marks_service, service):
            # When
            response = client.get("/api/v1/marks/balance")

        # Then
        assert response.status_code == 200
        assert response.json() == {"balance": 300, "max_cap": 500}
        service.get_balance.assert_called_once_with(1)

    def test_balance_requires_token(self, client):
        response = client.get("/api/v1/marks/balance")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTH_001"

    def test_request_withdrawal(self, app, client, as_user):
        # Given
        service = Mock()
        service.process_withdrawal.return_value = WithdrawalResponse(
            withdrawal_id="w-1",
            status=MarkTransactionStatus.COMPLETED,
            marks=500,
            gross_amount=Decimal("5"),
            platform_fee=Decimal("1"),
            net_amount=Decimal("4"),
            tx_ref="0xabc",
            new_balance=0,
            message="Successfully withdrew 4 WLD",
        )
        payload = {
            "marks": 500,
            "wallet_address": "0x" + "ab" * 20,
            "nonce": "nonce-0001",
        }

        with _override_service(app.container.services.withdrawal_service, service):
            # When
            response = client.post("/api/v1/marks/withdrawals", json=payload)

        # Then
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "COMPLETED"
        assert data["tx_ref"] == "0xabc"
        service.process_withdrawal.assert_called_once_with(
            user_id=1,
            marks=500,
            wallet_address=payload["wallet_address"],
            nonce="nonce-0001",
        )

    def test_request_manual_withdrawal(self, app, client, as_user):
        # Given
        service = Mock()
        service.request_manual_withdrawal.return_value = WithdrawalResponse(
            withdrawal_id="w-2",
            status=MarkTransactionStatus.PENDING,
            marks=500,
            gross_amount=Decimal("5"),
            platform_fee=Decimal("1"),
            net_amount=Decimal("4"),
            new_balance=0,
            message="Withdrawal request submitted. It will be processed by an administrator.",
        )
        payload = {
            "marks": 500,
            "wallet_address": "0x" + "ab" * 20,
            "nonce": "nonce-manual",
        }

        with _override_service(app.container.services.withdrawal_service, service):
            # When
            response = client.post("/api/v1/marks/withdrawals/manual", json=payload)

        # Then
        assert response.status_code == 200
        assert response.json()["status"] == "PENDING"
        service.request_manual_withdrawal.assert_called_once_with(
            user_id=1,
            marks=500,
            wallet_address=payload["wallet_address"],
            nonce="nonce-manual",
        )
        service.process_withdrawal.assert_not_called()

    def test_manual_withdrawal_requires_token(self, client):
        response = client.post(
            "/api/v1/marks/withdrawals/manual",
            json={"marks": 500, "wallet_address": "0x" + "ab" * 20, "nonce": "nonce-manual"},
        )

        assert response.status_code == 401

    def test_withdrawal_conflict_rendered(self, app, client, as_user):
        service = Mock()
        service.process_withdrawal.side_effect = ConflictingWithdrawalError()

        with _override_service(app.container.services.withdrawal_service, service):
            response = client.post(
                "/api/v1/marks/withdrawals",
                json={"marks": 500, "wallet_address": "0x" + "ab" * 20, "nonce": "nonce-0002"},
            )

        assert response.status_code == 409
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "WITHDRAWAL_CONFLICT"

    def test_withdrawal_request_validation(self, client, as_user):
        response = client.post(
            "/api/v1/marks/withdrawals",
            json={"marks": 500, "wallet_address": "0x" + "ab" * 20, "nonce": "short"},
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_001"


class TestSurveyHelpRoute:
    URL = "/api/v1/marks/surveys/42/help"
    PAYLOAD = {
        "user_id": 1,
        "boost_marks": 100,
        "goal_count": 10,
        "proof": {"merkle_root": "0x1", "nullifier_hash": "0x2", "proof": "0x3"},
    }

    def test_requires_internal_token(self, client, monkeypatch):
        monkeypatch.setattr(settings, "INTERNAL_AUTH_TOKEN", "internal-secret")

        response = client.post(self.URL, json=self.PAYLOAD, headers={"X-Internal-Token": "wrong"})

        assert response.status_code == 401

    def test_awards_with_internal_token(self, app, client, monkeypatch):
        # Given
        monkeypatch.setattr(settings, "INTERNAL_AUTH_TOKEN", "internal-secret")
        service = Mock()
        service.verify_and_award_survey_help.return_value = SurveyHelpAwardResponse(
            awarded=9, requested=9, commission=4, commission_recorded=True, remainder=6, new_balance=9
        )

        with _override_service(app.container.services.award_service, service):
            # When
            response = client.post(
                self.URL, json=self.PAYLOAD, headers={"X-Internal-Token": "internal-secret"}
            )

        # Then
        assert response.status_code == 200
        assert response.json()["awarded"] == 9
        survey_id, request = service.verify_and_award_survey_help.call_args.args
        assert survey_id == 42
        assert request.user_id == 1

    def test_identity_failure_rendered(self, app, client, monkeypatch):
        monkeypatch.setattr(settings, "INTERNAL_AUTH_TOKEN", "internal-secret")
        service = Mock()
        service.verify_and_award_survey_help.side_effect = IdentityVerificationError()

        with _override_service(app.container.services.award_service, service):
            response = client.post(
                self.URL, json=self.PAYLOAD, headers={"X-Internal-Token": "internal-secret"}
            )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "IDENTITY_001"


class TestAdminRoutes:
    def test_non_admin_forbidden(self, client, as_user):
        response = client.get("/api/v1/admin/withdrawals")

        assert response.status_code == 403

    def test_resolve_withdrawal(self, app, client, mock_admin):
        # Given
        app.dependency_overrides[require_admin] = lambda: mock_admin
        service = Mock()
        service.admin_resolve.return_value = AdminResolveResponse(
            withdrawal_id="w-1",
            status=MarkTransactionStatus.CANCELLED,
            message="Withdrawal rejected and marks refunded",
        )

        with _override_service(app.container.services.withdrawal_service, service):
            # When
            response = client.post(
                "/api/v1/admin/withdrawals/w-1/resolve",
                json={"action": "reject", "reason": "duplicate account"},
            )

        # Then
        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"

    def test_integrity_check(self, app, client, mock_admin):
        app.dependency_overrides[require_admin] = lambda: mock_admin
        service = Mock()
        service.verify_integrity.return_value = MarksIntegrityResponse(
            status="OK",
            user_id=1,
            balance=0,
            completed_total=500,
            reserved_total=-500,
            expected_balance=0,
            verified_at=utc_now(),
        )

        with _override_service(app.container.services.marks_service, service):
            response = client.get("/api/v1/admin/marks/integrity/1")

        assert response.status_code == 200
        assert response.json()["status"] == "OK"
