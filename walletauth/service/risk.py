from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from walletauth.logging import get_logger

logger = get_logger(__name__)

AUTOMATION_MARKERS = ("headless", "phantomjs", "selenium", "webdriver", "puppeteer", "playwright")

NEW_DEVICE_SCORE = 15
NEW_IP_SCORE = 15
AUTOMATION_SCORE = 30


@dataclass
class RiskAssessment:
    is_anomalous: bool
    risk_score: int
    reasons: List[str] = field(default_factory=list)


class RiskCheck(Protocol):
    def evaluate(
        self,
        user_id: str,
        ip: Optional[str],
        user_agent: Optional[str],
        device_fingerprint: Optional[str],
    ) -> RiskAssessment: ...


class HeuristicRiskCheck:
    """Score a login against the user's stored device and IP history.

    A user with no history at all is never anomalous on novelty alone. The
    only write is bumping ``last_seen`` on a device that is already known.
    """

    def __init__(self, store, threshold: int = 30) -> None:
        self.store = store
        self.threshold = threshold

    def evaluate(
        self,
        user_id: str,
        ip: Optional[str],
        user_agent: Optional[str],
        device_fingerprint: Optional[str],
    ) -> RiskAssessment:
        devices = self.store.list_devices(user_id)
        score = 0
        reasons: List[str] = []

        known = None
        if device_fingerprint:
            known = next((d for d in devices if d.fingerprint == device_fingerprint), None)
        if devices and device_fingerprint and known is None:
            score += NEW_DEVICE_SCORE
            reasons.append("new_device")

        seen_ips = {addr for d in devices for addr in d.known_ips}
        if seen_ips and ip and ip not in seen_ips:
            score += NEW_IP_SCORE
            reasons.append("new_ip")

        agent = (user_agent or "").lower()
        if any(marker in agent for marker in AUTOMATION_MARKERS):
            score += AUTOMATION_SCORE
            reasons.append("automation_user_agent")

        if known is not None:
            self.store.touch_device(user_id, known.fingerprint)

        assessment = RiskAssessment(
            is_anomalous=score >= self.threshold, risk_score=score, reasons=reasons
        )
        if reasons:
            logger.info(
                "risk_evaluated",
                user_id=user_id,
                risk_score=score,
                reasons=reasons,
                anomalous=assessment.is_anomalous,
            )
        return assessment
