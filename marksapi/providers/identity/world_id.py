import logging
from typing import Optional

import httpx

from marksapi.config import settings
from marksapi.schemas.marks import WorldIdProof
from marksapi.schemas.treasury import IdentityVerificationResult

logger = logging.getLogger(__name__)


class WorldIdVerifier:
    """World ID 클라우드 증명 검증 (Developer Portal verify API)"""

    def __init__(
        self,
        app_id: Optional[str] = None,
        verify_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.app_id = app_id or settings.WORLD_ID_APP_ID
        self.verify_url = (verify_url or settings.WORLD_ID_VERIFY_URL).rstrip("/")
        self.timeout = timeout or settings.WORLD_ID_TIMEOUT_SECONDS
        self._client = client

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def verify(
        self,
        proof: WorldIdProof,
        action: Optional[str] = None,
        signal: Optional[str] = None,
    ) -> IdentityVerificationResult:
        """
        증명 검증 - 네트워크 오류도 실패로 반환 (검증 못 한 증명은 통과시키지 않음)
        """
        payload = {
            "merkle_root": proof.merkle_root,
            "nullifier_hash": proof.nullifier_hash,
            "proof": proof.proof,
            "verification_level": proof.verification_level or "orb",
            "action": action or settings.WORLD_ID_ACTION,
        }
        if signal is not None:
            payload["signal"] = signal

        try:
            response = self._http().post(f"{self.verify_url}/{self.app_id}", json=payload)
        except httpx.TimeoutException:
            logger.error("World ID verification timeout")
            return IdentityVerificationResult(
                success=False, code="timeout", detail="Verification service timeout"
            )
        except httpx.HTTPError as e:
            logger.error(f"World ID verification error: {str(e)}")
            return IdentityVerificationResult(
                success=False, code="unavailable", detail="Verification service unavailable"
            )

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code == 200 and data.get("success", True):
            return IdentityVerificationResult(
                success=True,
                nullifier_hash=data.get("nullifier_hash", proof.nullifier_hash),
            )

        logger.warning(
            f"World ID proof rejected ({response.status_code}): {data.get('code')} {data.get('detail')}"
        )
        return IdentityVerificationResult(
            success=False,
            nullifier_hash=proof.nullifier_hash,
            code=data.get("code") or f"http_{response.status_code}",
            detail=data.get("detail"),
        )
