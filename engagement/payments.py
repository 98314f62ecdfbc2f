import logging
from decimal import Decimal
from typing import Any, Optional

from .errors import AuthorizationError, ValidationError
from .models import Engagement, PaymentResponse, ProofArtifact
from .money import to_amount
from .service import EngagementService
from .state_machine import PAYABLE_STATES
from .uploads import HttpUploader

logger = logging.getLogger(__name__)


class PaymentProofSubmission:
    def __init__(self, service: EngagementService, uploader: Optional[HttpUploader] = None):
        self.service = service
        settings = service.settings
        self.uploader = uploader or HttpUploader(settings.upload_url, timeout=settings.upload_timeout)

    def resolve_engagement(self, client_id: str, provider_id: str, service_id: Optional[str] = None) -> Engagement:
        if service_id:
            engagement = self.service.open_engagement(client_id, service_id)
            if engagement is None or engagement.state not in PAYABLE_STATES:
                raise ValidationError(f"Missing selection: no reserved engagement for service {service_id}")
            if engagement.provider_id != provider_id:
                raise ValidationError(f"Service {service_id} is not offered by {provider_id}")
            return engagement

        candidates = self.service.payable_engagements(client_id, provider_id)
        if not candidates:
            raise ValidationError("Missing selection: no reserved engagement with this provider")
        if len(candidates) > 1:
            raise ValidationError("Several reserved engagements with this provider; specify the service")
        return candidates[0]

    def submit(self, client_id: str, provider_id: str, content: bytes, content_type: str,
               service_id: Optional[str] = None, amount: Any = None, note: Optional[str] = None,
               filename: str = "proof") -> PaymentResponse:
        if client_id == provider_id:
            raise AuthorizationError("Providers cannot pay for their own listing")
        self.service.validate_proof(len(content), content_type)
        engagement = self.resolve_engagement(client_id, provider_id, service_id)

        claimed: Optional[Decimal] = None
        if amount is not None and amount != "":
            claimed = to_amount(amount)
            if claimed is None or not claimed.is_finite() or claimed < 0:
                raise ValidationError(f"Invalid payment amount: {amount!r}")
        else:
            listing = self.service.get_listing(engagement.listing_id)
            if listing.price > 0:
                claimed = listing.price

        folder = f"{self.service.settings.upload_folder}/{client_id}"
        url = self.uploader.upload(content, content_type, folder, filename=filename)
        logger.info("Payment proof for engagement %s stored at %s", engagement.id, url)

        proof = ProofArtifact(url=url, size=len(content), content_type=content_type)
        return self.service.submit_payment(client_id, engagement.id, proof, amount=claimed, note=note)
