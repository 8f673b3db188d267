"""
ACTIVATION DELIVERY

A buyer provisioned by initiate_sale holds only a temporary password. The raw
activation token is handed to an ActivationSender exactly once (OTP/SMS
channel); the registry stores only its hash and never returns it over HTTP.

Senders never raise: a failed delivery is logged and reported as False, and
the buyer can ask for a new token with resend_activation.
"""

from typing import Any, Dict, Optional
import logging

import httpx

logger = logging.getLogger(__name__)


class ActivationSender:
    """Delivers an activation token to a provisioned buyer."""

    async def send(self, user: Dict[str, Any], activation_token: str) -> bool:
        raise NotImplementedError


class UnconfiguredActivationSender(ActivationSender):
    """Used when no delivery channel is configured. Drops the token."""

    async def send(self, user: Dict[str, Any], activation_token: str) -> bool:
        logger.warning(
            f"[ACTIVATION] No delivery channel configured; user:{user['_id']} "
            f"cannot receive an activation code"
        )
        return False


class WebhookActivationSender(ActivationSender):
    """
    POSTs the token to an SMS/OTP gateway.

    Body: {"userId", "phoneNumber", "fullName", "activationToken"}
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def send(self, user: Dict[str, Any], activation_token: str) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.url,
                    json={
                        "userId": user["_id"],
                        "phoneNumber": user.get("phoneNumber"),
                        "fullName": user.get("fullName"),
                        "activationToken": activation_token
                    }
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"[ACTIVATION] Delivery failed for user:{user['_id']}: {type(e).__name__}")
            return False

        logger.info(f"[ACTIVATION] Activation code sent to user:{user['_id']}")
        return True
