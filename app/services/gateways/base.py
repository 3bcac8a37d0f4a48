"""
Base Payment Provider Interface

The settlement engine only talks to the provider through this interface:
create a checkout preference, read a payment, refund a payment and verify
webhook signatures. Everything else about the provider is a black box.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
from decimal import Decimal
from datetime import datetime

from app.models.payment import PaymentStatus


@dataclass
class PreferenceItem:
    id: str
    title: str
    quantity: int
    unit_price: Decimal
    currency: str
    description: Optional[str] = None


@dataclass
class PreferenceRequest:
    """Data needed to create a checkout preference"""
    items: List[PreferenceItem]
    external_reference: str
    notification_url: str
    expires_at: datetime
    payer_email: Optional[str] = None
    back_urls: Optional[Dict[str, str]] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class ProviderPreference:
    """Result of creating a preference"""
    id: str
    redirect_url: str
    expires_at: Optional[datetime] = None


@dataclass
class ProviderPayment:
    """Current state of a payment on the provider side"""
    id: str
    status: str
    status_detail: Optional[str] = None
    external_reference: Optional[str] = None
    transaction_amount: Optional[Decimal] = None
    payment_method: Optional[str] = None
    installments: Optional[int] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderRefund:
    refund_id: str
    amount: Optional[Decimal] = None
    status: Optional[str] = None


class PaymentProvider(ABC):
    """
    Abstract base class for payment providers.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., 'mercadopago')"""
        pass

    @property
    def is_configured(self) -> bool:
        return True

    @abstractmethod
    async def create_preference(self, data: PreferenceRequest) -> ProviderPreference:
        """
        Create a checkout preference.

        Raises:
            PaymentProviderError: on transport or API failure
        """
        pass

    @abstractmethod
    async def get_payment(self, payment_id: str) -> Optional[ProviderPayment]:
        """
        Fetch a payment. Returns None when the provider does not know it.

        Raises:
            PaymentProviderError: on transport or API failure
        """
        pass

    async def find_payment_by_reference(self, external_reference: str) -> Optional[ProviderPayment]:
        """
        Latest payment carrying an external reference, used by reconciliation
        when no notification ever arrived. Providers without search return None.
        """
        return None

    @abstractmethod
    async def refund(self, payment_id: str, amount: Optional[Decimal] = None) -> ProviderRefund:
        """
        Refund a payment fully (amount=None) or partially.

        Raises:
            PaymentProviderError: on transport or API failure
        """
        pass

    @abstractmethod
    def verify_webhook(
        self,
        headers: Dict[str, str],
        body: bytes,
        query_params: Optional[Dict[str, str]] = None
    ) -> bool:
        """
        Verify webhook signature.

        Args:
            headers: Request headers (lowercase keys)
            body: Raw request body
            query_params: Notification URL query string

        Returns:
            True if signature is valid
        """
        pass

    def map_status(self, provider_status: Optional[str]) -> Optional[PaymentStatus]:
        """
        Map a provider status to the local PaymentStatus.
        Returns None for statuses that carry no local transition.
        """
        if not provider_status:
            return None
        status_map = {
            'approved': PaymentStatus.APPROVED,
            'pending': PaymentStatus.PENDING,
            'in_process': PaymentStatus.IN_PROCESS,
            'rejected': PaymentStatus.REJECTED,
            'cancelled': PaymentStatus.CANCELLED,
            'refunded': PaymentStatus.REFUNDED,
        }
        return status_map.get(provider_status.lower())
