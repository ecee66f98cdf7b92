import logging
from typing import Optional

import httpx

from marksapi.config import settings
from marksapi.core.exceptions import GatewayError, GatewayUnknownError
from marksapi.schemas.treasury import GatewayTransactionStatus, GatewayTransferStatus

logger = logging.getLogger(__name__)


class TreasuryGateway:
    """
    트레저리 릴레이 어댑터 - World Chain 위 WLD(ERC-20) 송금

    릴레이가 트레저리 키를 보관하고 transfer 트랜잭션을 서명/전송합니다.
    같은 Idempotency-Key 로 재요청하면 릴레이는 기존 송금 결과를 돌려줍니다.

    결과 분류:
    - 성공: 트랜잭션 참조(해시) 반환
    - GatewayError: 확정적 거절 (4xx, status=failed) -> 호출자가 환불
    - GatewayUnknownError: 타임아웃, 전송 후 연결 끊김, 5xx -> 결과 불명, 재확인 필요
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = (base_url or settings.TREASURY_API_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.TREASURY_API_KEY
        self.timeout = timeout or settings.TREASURY_TIMEOUT_SECONDS
        self.chain_id = settings.WORLDCHAIN_CHAIN_ID
        self.token_address = settings.WLD_TOKEN_ADDRESS
        self._client = client

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(base_url=self.base_url, timeout=self.timeout)
        return self._client

    def _headers(self, idempotency_key: Optional[str] = None) -> dict:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def transfer(
        self, to_address: str, amount_minor_units: int, idempotency_key: str
    ) -> str:
        """WLD 송금 요청 - 성공 시 트랜잭션 참조 반환"""
        if amount_minor_units <= 0:
            raise GatewayError(f"Transfer amount must be positive: {amount_minor_units}")

        payload = {
            "chain_id": self.chain_id,
            "token": self.token_address,
            "to": to_address,
            # uint256 은 JSON number 로 표현하면 정밀도가 깨지므로 문자열
            "amount": str(amount_minor_units),
        }

        try:
            response = self._http().post(
                "/transfers", json=payload, headers=self._headers(idempotency_key)
            )
        except httpx.ConnectError as e:
            # 연결 자체가 안 됨 - 요청이 전달되지 않았으므로 확정 실패
            logger.error(f"Treasury relay unreachable: {str(e)}")
            raise GatewayError("Treasury relay unreachable")
        except httpx.TimeoutException:
            logger.warning(f"Treasury transfer timeout (key={idempotency_key})")
            raise GatewayUnknownError("Treasury transfer timeout")
        except httpx.TransportError as e:
            logger.warning(f"Treasury transfer interrupted (key={idempotency_key}): {str(e)}")
            raise GatewayUnknownError("Treasury transfer interrupted")

        if response.status_code >= 500:
            logger.warning(
                f"Treasury relay error {response.status_code} (key={idempotency_key}): {response.text}"
            )
            raise GatewayUnknownError(
                "Treasury relay error", status_code=response.status_code
            )

        if response.status_code >= 400:
            logger.error(
                f"Treasury transfer rejected {response.status_code}: {response.text}"
            )
            raise GatewayError(
                _error_message(response) or "Transfer rejected",
                status_code=response.status_code,
            )

        data = response.json()
        status = data.get("status")
        reference = data.get("transaction_hash") or data.get("reference")

        if status == GatewayTransferStatus.FAILED.value:
            raise GatewayError(data.get("error") or "Transfer failed")

        if not reference:
            # 수락은 됐지만 참조가 없음 - 결과를 확정할 수 없음
            raise GatewayUnknownError("Treasury relay returned no transaction reference")

        logger.info(
            f"Treasury transfer submitted: to={to_address}, amount={amount_minor_units}, ref={reference}"
        )
        return reference

    def get_transaction_status(self, reference: str) -> GatewayTransactionStatus:
        """송금 상태 조회 (reference = 트랜잭션 해시 또는 idempotency key)"""
        try:
            response = self._http().get(
                f"/transfers/{reference}", headers=self._headers()
            )
        except httpx.HTTPError as e:
            logger.warning(f"Treasury status lookup failed for {reference}: {str(e)}")
            raise GatewayUnknownError("Treasury status lookup failed")

        if response.status_code == 404:
            return GatewayTransactionStatus(
                reference=reference, status=GatewayTransferStatus.NOT_FOUND
            )

        if response.status_code != 200:
            logger.warning(
                f"Treasury status lookup error {response.status_code}: {response.text}"
            )
            raise GatewayUnknownError(
                "Treasury status lookup error", status_code=response.status_code
            )

        try:
            data = response.json()
        except ValueError:
            logger.warning(f"Treasury status lookup returned non-JSON body for {reference}")
            raise GatewayUnknownError("Malformed status response")
        if not isinstance(data, dict):
            raise GatewayUnknownError("Malformed status response")

        try:
            status = GatewayTransferStatus(data.get("status"))
        except ValueError:
            raise GatewayUnknownError(f"Unknown transfer status: {data.get('status')}")

        return GatewayTransactionStatus(
            reference=reference,
            status=status,
            transaction_hash=data.get("transaction_hash"),
            error=data.get("error"),
        )


def _error_message(response: httpx.Response) -> Optional[str]:
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, dict):
        return data.get("error") or data.get("detail")
    return None
