"""Outbound payment rail integration.

Payout execution happens outside the engine. A rail accepts a submission
and either settles it on the spot or reports the outcome later through
``PayoutLifecycleManager.confirm_payout``.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import requests

from settlement.core.config import settings
from settlement.core.errors import TransientExternalError
from settlement.core.timeutils import utcnow
from settlement.models.payout import Payout

logger = logging.getLogger(__name__)


@dataclass
class RailSubmission:
    accepted: bool
    rail_reference: Optional[str] = None
    settled: bool = False  # rail confirmed the transfer synchronously
    error_message: Optional[str] = None


class PaymentRail(Protocol):
    def submit(self, payout: Payout) -> RailSubmission:
        """Raise TransientExternalError for failures worth retrying."""
        ...


class NullPaymentRail:
    """Accepts everything and leaves the payout Processing until confirmed."""

    def submit(self, payout: Payout) -> RailSubmission:
        logger.debug(f"Payment rail not configured, payout {payout.id} awaits manual confirmation")
        return RailSubmission(accepted=True, rail_reference=f"manual-{payout.id}")


class WebhookPaymentRail:
    """Posts payout requests to an HTTP endpoint."""

    def __init__(self, url: str, api_key: Optional[str] = None, timeout: Optional[int] = None):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout or settings.PAYMENT_RAIL_TIMEOUT_SECONDS

    def submit(self, payout: Payout) -> RailSubmission:
        payload = {
            "payout_id": payout.id,
            "seller_id": payout.seller_id,
            "amount": str(payout.amount),
            "currency": payout.currency,
            "batch_id": payout.batch_id,
            "attempt": (payout.retry_count or 0) + 1,
        }
        headers = {
            "Content-Type": "application/json",
            "X-Idempotency-Key": f"payout-{payout.id}-{payout.retry_count or 0}",
            "X-Request-Timestamp": utcnow().isoformat(),
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            resp = requests.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Payment rail unreachable for payout {payout.id}: {e}")
            raise TransientExternalError(f"Payment rail unreachable: {e}", payout_id=payout.id)

        if resp.status_code >= 500 or resp.status_code == 429:
            logger.warning(f"Payment rail returned {resp.status_code} for payout {payout.id}: {resp.text[:200]}")
            raise TransientExternalError(
                f"Payment rail returned {resp.status_code}.", payout_id=payout.id, status_code=resp.status_code,
            )

        if resp.status_code >= 400:
            logger.warning(f"Payment rail rejected payout {payout.id} ({resp.status_code}): {resp.text[:200]}")
            return RailSubmission(accepted=False, error_message=resp.text[:500] or f"HTTP {resp.status_code}")

        try:
            body = resp.json()
        except ValueError:
            body = {}
        logger.info(f"Payment rail accepted payout {payout.id} ({resp.status_code})")
        return RailSubmission(
            accepted=True,
            rail_reference=body.get("reference"),
            settled=str(body.get("status", "")).lower() == "completed",
        )


def get_payment_rail() -> PaymentRail:
    if settings.PAYMENT_RAIL_URL:
        return WebhookPaymentRail(settings.PAYMENT_RAIL_URL, settings.PAYMENT_RAIL_API_KEY)
    return NullPaymentRail()
