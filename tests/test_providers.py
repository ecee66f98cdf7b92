import json

import httpx
import pytest

from marksapi.core.exceptions import GatewayError, GatewayUnknownError
from marksapi.providers.identity.world_id import WorldIdVerifier
from marksapi.providers.settlement.treasury import TreasuryGateway
from marksapi.schemas.marks import WorldIdProof
from marksapi.schemas.treasury import GatewayTransferStatus

ADDRESS = "0x" + "ab" * 20


def _gateway(handler):
    client = httpx.Client(
        transport=httpx.MockTransport(handler), base_url="http://treasury.test"
    )
    return TreasuryGateway(
        base_url="http://treasury.test", api_key="secret", timeout=5, client=client
    )


class TestTreasuryTransfer:
    def test_transfer_returns_reference(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["headers"] = request.headers
            captured["body"] = json.loads(request.content)
            captured["path"] = request.url.path
            return httpx.Response(200, json={"status": "pending", "transaction_hash": "0xabc"})

        ref = _gateway(handler).transfer(ADDRESS, 4 * 10**18, idempotency_key="nonce-1")

        assert ref == "0xabc"
        assert captured["path"] == "/transfers"
        assert captured["headers"]["Idempotency-Key"] == "nonce-1"
        assert captured["headers"]["Authorization"] == "Bearer secret"
        assert captured["body"]["to"] == ADDRESS
        assert captured["body"]["amount"] == "4000000000000000000"

    @pytest.mark.parametrize("amount", [0, -1])
    def test_non_positive_amount_rejected_before_io(self, amount):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"transaction_hash": "0xabc"})

        with pytest.raises(GatewayError) as exc_info:
            _gateway(handler).transfer(ADDRESS, amount, idempotency_key="nonce-1")

        assert not isinstance(exc_info.value, GatewayUnknownError)
        assert calls == []

    def test_client_error_is_definitive(self):
        def handler(request):
            return httpx.Response(400, json={"error": "insufficient treasury balance"})

        with pytest.raises(GatewayError) as exc_info:
            _gateway(handler).transfer(ADDRESS, 1, idempotency_key="nonce-1")

        assert not isinstance(exc_info.value, GatewayUnknownError)
        assert exc_info.value.message == "insufficient treasury balance"
        assert exc_info.value.status_code == 400

    def test_explicit_failed_status_is_definitive(self):
        def handler(request):
            return httpx.Response(200, json={"status": "failed", "error": "reverted"})

        with pytest.raises(GatewayError) as exc_info:
            _gateway(handler).transfer(ADDRESS, 1, idempotency_key="nonce-1")

        assert not isinstance(exc_info.value, GatewayUnknownError)

    def test_server_error_is_unknown(self):
        def handler(request):
            return httpx.Response(503, text="unavailable")

        with pytest.raises(GatewayUnknownError):
            _gateway(handler).transfer(ADDRESS, 1, idempotency_key="nonce-1")

    def test_timeout_is_unknown(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(GatewayUnknownError):
            _gateway(handler).transfer(ADDRESS, 1, idempotency_key="nonce-1")

    def test_connection_refused_is_definitive(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(GatewayError) as exc_info:
            _gateway(handler).transfer(ADDRESS, 1, idempotency_key="nonce-1")

        assert not isinstance(exc_info.value, GatewayUnknownError)


class TestTreasuryStatus:
    def test_confirmed(self):
        def handler(request):
            assert request.url.path == "/transfers/nonce-1"
            return httpx.Response(200, json={"status": "confirmed", "transaction_hash": "0xabc"})

        status = _gateway(handler).get_transaction_status("nonce-1")

        assert status.status == GatewayTransferStatus.CONFIRMED
        assert status.transaction_hash == "0xabc"

    def test_not_found(self):
        status = _gateway(lambda request: httpx.Response(404)).get_transaction_status("nonce-1")

        assert status.status == GatewayTransferStatus.NOT_FOUND

    def test_html_body_is_unknown(self):
        def handler(request):
            return httpx.Response(200, text="<html>bad gateway</html>")

        with pytest.raises(GatewayUnknownError) as exc_info:
            _gateway(handler).get_transaction_status("nonce-1")

        assert exc_info.value.message == "Malformed status response"

    def test_list_body_is_unknown(self):
        def handler(request):
            return httpx.Response(200, json=[{"status": "confirmed"}])

        with pytest.raises(GatewayUnknownError):
            _gateway(handler).get_transaction_status("nonce-1")

    def test_unexpected_status_is_unknown(self):
        def handler(request):
            return httpx.Response(200, json={"status": "mined?"})

        with pytest.raises(GatewayUnknownError):
            _gateway(handler).get_transaction_status("nonce-1")


def _verifier(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return WorldIdVerifier(
        app_id="app_test",
        verify_url="https://verify.test/api/v2/verify",
        timeout=5,
        client=client,
    )


PROOF = WorldIdProof(merkle_root="0x1", nullifier_hash="0x2", proof="0x3")


class TestWorldIdVerifier:
    def test_valid_proof(self):
        def handler(request):
            assert request.url.path == "/api/v2/verify/app_test"
            body = json.loads(request.content)
            assert body["action"] == "complete-survey"
            assert body["signal"] == "survey-42"
            return httpx.Response(200, json={"success": True, "nullifier_hash": "0x2"})

        result = _verifier(handler).verify(PROOF, action="complete-survey", signal="survey-42")

        assert result.success is True
        assert result.nullifier_hash == "0x2"

    def test_rejected_proof(self):
        def handler(request):
            return httpx.Response(
                400, json={"code": "invalid_proof", "detail": "Proof is invalid"}
            )

        result = _verifier(handler).verify(PROOF, action="complete-survey")

        assert result.success is False
        assert result.code == "invalid_proof"

    def test_network_error_fails_closed(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = _verifier(handler).verify(PROOF, action="complete-survey")

        assert result.success is False
        assert result.code == "unavailable"
