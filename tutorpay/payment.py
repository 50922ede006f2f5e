import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Protocol

import aiohttp

from .config import PAYMENT_RAIL_API_KEY, PAYMENT_RAIL_TIMEOUT, PAYMENT_RAIL_URL
from .errors import PaymentRailError

logger = logging.getLogger(__name__)


class TransferRail(Protocol):
    async def create_transfer(
        self, amount: Decimal, currency: str, destination_account: str, idempotency_key: str
    ) -> str:
        ...


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentRail:
    """
    Client for the external payment rail that moves money to teachers.

    Transfers are idempotent on the key supplied by the caller: repeating a
    request with the same key returns the original transfer.
    """

    def __init__(
        self,
        base_url: str = PAYMENT_RAIL_URL,
        api_key: str = PAYMENT_RAIL_API_KEY,
        timeout: float = PAYMENT_RAIL_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def create_transfer(
        self, amount: Decimal, currency: str, destination_account: str, idempotency_key: str
    ) -> str:
        """
        Send money to a teacher's payout account.

        Args:
            amount: Amount in major units (e.g. pounds)
            currency: ISO currency code
            destination_account: Rail account id of the teacher
            idempotency_key: Key that makes retries safe

        Returns:
            str: The rail's transfer id

        Raises:
            PaymentRailError: the rail rejected the transfer or could not be reached
        """
        if not self.base_url:
            raise PaymentRailError("Payment rail is not configured")

        body = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "destination": destination_account,
            "metadata": {"idempotency_key": idempotency_key},
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Idempotency-Key": idempotency_key,
        }

        session = await self._get_session()
        try:
            async with session.post(f"{self.base_url}/transfers", json=body, headers=headers) as response:
                data = await response.json(content_type=None)
                if data is not None and not isinstance(data, dict):
                    logger.error(f"Payment rail sent a non-object response for {idempotency_key}: {data!r}")
                    raise PaymentRailError(
                        f"Unexpected payment rail response (HTTP {response.status})",
                        details={"status": response.status, "idempotency_key": idempotency_key},
                    )
                if response.status >= 400:
                    message = (data or {}).get("error") or f"HTTP {response.status}"
                    logger.error(f"Transfer {idempotency_key} rejected by payment rail: {message}")
                    raise PaymentRailError(
                        f"Transfer rejected: {message}",
                        details={"status": response.status, "idempotency_key": idempotency_key},
                    )
        except (aiohttp.ClientError, ValueError) as e:
            logger.error(f"Payment rail request failed for {idempotency_key}: {e}")
            raise PaymentRailError(f"Payment rail unavailable: {e}")

        transfer_id = (data or {}).get("id")
        if not transfer_id:
            raise PaymentRailError("Payment rail response did not include a transfer id")

        logger.info(f"Created transfer {transfer_id} for {amount} {currency} ({idempotency_key})")
        return transfer_id

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
