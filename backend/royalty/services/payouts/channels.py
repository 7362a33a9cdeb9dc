"""
Payout Channels

Polymorphic channel abstraction, tried in priority order by the
orchestrator: processor connect account -> bank transfer -> crypto wallet
-> manual invoice. Each channel decides from the creator's payout profile
whether it can be used at all; external calls go through a PayoutGateway
so channels can be exercised in isolation.
"""
import logging
from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import requests

from ...errors import ChannelTimeout, PayoutChannelFailure
from ...models.domain import (
    ChannelReceipt,
    PayoutMethod,
    PayoutProfile,
    PayoutRequest,
    PayoutStatus,
)

logger = logging.getLogger(__name__)


# =============================================================================
# GATEWAYS
# =============================================================================

class PayoutGateway(ABC):
    """Transport to an external payout API."""

    @abstractmethod
    def send(self, channel: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Submit a payout.

        Returns the processor's response; must contain `id`, the external
        reference, and may carry `status` ("paid" or "pending").

        Raises:
            ChannelTimeout: no answer in time, outcome unknown
            PayoutChannelFailure: the processor refused or errored
        """


class HttpPayoutGateway(PayoutGateway):
    """JSON-over-HTTP gateway with a per-call timeout."""

    DEFAULT_TIMEOUT = 10.0  # seconds

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/") + "/"
        self.timeout = timeout
        self._session = session or requests.Session()
        if api_key:
            self._session.headers["Authorization"] = f"Bearer {api_key}"
        self._session.headers["Content-Type"] = "application/json"
        self._session.headers["User-Agent"] = "RoyaltyEngine-Payouts/1.0"

    def send(self, channel: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = urljoin(self.base_url, f"payouts/{channel}")
        try:
            response = self._session.post(
                url,
                json=payload,
                headers={"Idempotency-Key": payload["payout_id"]},
                timeout=self.timeout,
            )
        except requests.Timeout:
            raise ChannelTimeout(channel, f"no response within {self.timeout}s")
        except requests.RequestException as e:
            raise PayoutChannelFailure(channel, f"request failed: {e}")

        if response.status_code >= 400:
            raise PayoutChannelFailure(channel, f"HTTP {response.status_code}: {response.text[:200]}")
        try:
            data = response.json()
        except ValueError:
            raise PayoutChannelFailure(channel, "response is not JSON")
        if not isinstance(data, dict) or not data.get("id"):
            raise PayoutChannelFailure(channel, "response carries no payout id")
        return data

    def close(self) -> None:
        self._session.close()


# =============================================================================
# CRYPTO RATES
# =============================================================================

class RateLookup(ABC):
    """USD price of one unit of a crypto asset."""

    @abstractmethod
    def usd_rate(self, asset: str) -> Decimal:
        ...

    @abstractmethod
    def supports(self, asset: str) -> bool:
        ...


class StaticRateLookup(RateLookup):
    DEFAULT_RATES = {
        "ETH": Decimal("1800"),
        "BTC": Decimal("45000"),
        "USDC": Decimal("1"),
    }

    def __init__(self, rates: Optional[Dict[str, Decimal]] = None):
        self.rates = {k.upper(): Decimal(str(v)) for k, v in (rates or self.DEFAULT_RATES).items()}

    def supports(self, asset: str) -> bool:
        return bool(asset) and asset.upper() in self.rates

    def usd_rate(self, asset: str) -> Decimal:
        return self.rates[asset.upper()]


# =============================================================================
# CHANNELS
# =============================================================================

class PayoutChannel(ABC):
    method: PayoutMethod

    @abstractmethod
    def supports(self, profile: PayoutProfile) -> bool:
        ...

    @abstractmethod
    def execute(self, request: PayoutRequest) -> ChannelReceipt:
        ...

    def _payload(self, request: PayoutRequest, **destination) -> Dict[str, Any]:
        return {
            "payout_id": request.payout_id,
            "account_id": request.account_id,
            "amount_cents": request.net_cents,
            "currency": "USD",
            "destination": destination,
        }

    @staticmethod
    def _receipt(response: Dict[str, Any], **details) -> ChannelReceipt:
        status = PayoutStatus.PENDING if response.get("status") == "pending" else PayoutStatus.COMPLETED
        return ChannelReceipt(external_reference=str(response["id"]), status=status, details=details)


class _GatewayChannel(PayoutChannel):
    def __init__(self, gateway: Optional[PayoutGateway]):
        self.gateway = gateway

    def supports(self, profile: PayoutProfile) -> bool:
        return self.gateway is not None and self._has_destination(profile)

    @abstractmethod
    def _has_destination(self, profile: PayoutProfile) -> bool:
        ...


class ConnectChannel(_GatewayChannel):
    """Transfer to the creator's processor connect account."""
    method = PayoutMethod.CONNECT

    def _has_destination(self, profile: PayoutProfile) -> bool:
        return bool(profile.connect_account_id)

    def execute(self, request: PayoutRequest) -> ChannelReceipt:
        response = self.gateway.send(
            self.method.value,
            self._payload(request, connect_account_id=request.profile.connect_account_id),
        )
        return self._receipt(response, connect_account_id=request.profile.connect_account_id)


class BankTransferChannel(_GatewayChannel):
    method = PayoutMethod.BANK

    def _has_destination(self, profile: PayoutProfile) -> bool:
        return bool(profile.bank_iban)

    def execute(self, request: PayoutRequest) -> ChannelReceipt:
        profile = request.profile
        response = self.gateway.send(
            self.method.value,
            self._payload(request, iban=profile.bank_iban, account_name=profile.bank_account_name),
        )
        # Only the last four characters of the IBAN are kept
        return self._receipt(response, iban_last4=profile.bank_iban[-4:])


class CryptoWalletChannel(_GatewayChannel):
    """Net amount converted to the wallet's asset at the looked-up rate."""
    method = PayoutMethod.CRYPTO

    ASSET_PRECISION = Decimal("0.00000001")

    def __init__(self, gateway: Optional[PayoutGateway], rates: RateLookup):
        super().__init__(gateway)
        self.rates = rates

    def _has_destination(self, profile: PayoutProfile) -> bool:
        return bool(profile.crypto_wallet) and self.rates.supports(profile.crypto_asset)

    def execute(self, request: PayoutRequest) -> ChannelReceipt:
        profile = request.profile
        asset = profile.crypto_asset.upper()
        rate = self.rates.usd_rate(asset)
        if rate <= 0:
            raise PayoutChannelFailure(self.method.value, f"no usable {asset} rate")
        asset_amount = (Decimal(request.net_cents) / Decimal(100) / rate).quantize(
            self.ASSET_PRECISION, rounding=ROUND_DOWN
        )
        payload = self._payload(request, wallet=profile.crypto_wallet, asset=asset)
        payload["asset_amount"] = str(asset_amount)
        response = self.gateway.send(self.method.value, payload)
        return self._receipt(
            response,
            wallet=profile.crypto_wallet,
            asset=asset,
            asset_amount=str(asset_amount),
            usd_rate=str(rate),
        )


class ManualInvoiceChannel(PayoutChannel):
    """
    Fallback that always accepts: creates a human-actionable invoice record
    instead of calling out. The payout stays pending until an operator settles it.
    """
    method = PayoutMethod.MANUAL_INVOICE

    def supports(self, profile: PayoutProfile) -> bool:
        return True

    def execute(self, request: PayoutRequest) -> ChannelReceipt:
        invoice_number = f"INV-{request.payout_id.upper()}"
        logger.info(f"Manual invoice {invoice_number} raised for {request.account_id}: {request.net_cents} cents")
        return ChannelReceipt(
            external_reference=invoice_number,
            status=PayoutStatus.PENDING,
            details={"invoice_number": invoice_number, "country": request.profile.country},
        )


def default_channels(
    payment_gateway: Optional[PayoutGateway],
    crypto_gateway: Optional[PayoutGateway],
    rates: Optional[RateLookup] = None,
) -> List[PayoutChannel]:
    """Channels in priority order."""
    return [
        ConnectChannel(payment_gateway),
        BankTransferChannel(payment_gateway),
        CryptoWalletChannel(crypto_gateway, rates or StaticRateLookup()),
        ManualInvoiceChannel(),
    ]
