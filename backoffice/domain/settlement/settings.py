"""Settlement settings - tunables injected into the settlement pipeline"""

from dataclasses import dataclass
from typing import Optional

from ...config import (
    ADDRESS_MATCH_MIN_SCORE,
    EXTERNAL_CALL_TIMEOUT_SECONDS,
    JOB_NUMBER_MAX_ATTEMPTS,
    JOB_NUMBER_RETRY_BACKOFF_SECONDS,
    PUBLIC_BASE_URL,
    SETTLEMENT_CREATED_BY_USER_ID,
)


@dataclass(frozen=True)
class SettlementSettings:
    public_base_url: str = "http://localhost:3000"
    created_by_user_id: Optional[str] = None
    address_match_min_score: float = 0.9
    job_number_max_attempts: int = 3
    job_number_retry_backoff: float = 0.1  # seconds, multiplied by the attempt number
    external_call_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "SettlementSettings":
        return cls(
            public_base_url=PUBLIC_BASE_URL,
            created_by_user_id=SETTLEMENT_CREATED_BY_USER_ID,
            address_match_min_score=ADDRESS_MATCH_MIN_SCORE,
            job_number_max_attempts=JOB_NUMBER_MAX_ATTEMPTS,
            job_number_retry_backoff=JOB_NUMBER_RETRY_BACKOFF_SECONDS,
            external_call_timeout=EXTERNAL_CALL_TIMEOUT_SECONDS,
        )

    def proposal_link(self, customer_view_token: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/proposal/view/{customer_view_token}"
