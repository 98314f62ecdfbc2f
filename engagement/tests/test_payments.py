"""
Unit Tests for Payment Proof Intake

Tests cover:
1. Upload collaborator (multipart request, error mapping)
2. Engagement inference and amount pre-fill
3. Free-form amount parsing
4. Validation before upload
"""

from decimal import Decimal

import httpx
import pytest

from conftest import CLIENT_ID, LISTING_ID, PROVIDER_ID, UPLOAD_URL
from engagement.errors import AuthorizationError, UploadError, ValidationError
from engagement.money import extract_amount, to_amount
from engagement.payments import PaymentProofSubmission
from engagement.service import LISTINGS, MESSAGES
from engagement.state_machine import EngagementState
from engagement.uploads import HttpUploader

PNG = b"\x89PNG\r\n\x1a\n" + b"0" * 128


def reserve(service, listing_id: str = LISTING_ID):
    engagement = service.select_listing(CLIENT_ID, listing_id).engagement
    return service.accept(PROVIDER_ID, engagement.id).engagement


def failing_uploader(handler) -> HttpUploader:
    return HttpUploader(UPLOAD_URL, client=httpx.Client(transport=httpx.MockTransport(handler)))


class TestHttpUploader:
    """Tests for the upload collaborator client."""

    def test_posts_multipart_file_and_folder(self, uploader, upload_requests):
        """Test the request carries the file and folder fields."""
        url = uploader.upload(PNG, "image/png", "payment-proofs/client-ana", filename="receipt.png")

        assert url == "https://cdn.test/proof-1.png"
        request = upload_requests[0]
        body = request.read()
        assert request.method == "POST"
        assert b'name="folder"' in body
        assert b"payment-proofs/client-ana" in body
        assert b'filename="receipt.png"' in body

    def test_error_status_raises_upload_error(self):
        """Test a 5xx from the upload service becomes UploadError."""
        uploader = failing_uploader(lambda request: httpx.Response(500, text="boom"))

        with pytest.raises(UploadError, match="500"):
            uploader.upload(PNG, "image/png", "payment-proofs/x")

    def test_missing_secure_url(self):
        """Test a response without secure_url is rejected."""
        uploader = failing_uploader(lambda request: httpx.Response(200, json={"url": "http://x"}))

        with pytest.raises(UploadError, match="secure_url"):
            uploader.upload(PNG, "image/png", "payment-proofs/x")

    def test_connection_error(self):
        """Test transport failures become UploadError."""
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(UploadError):
            failing_uploader(refuse).upload(PNG, "image/png", "payment-proofs/x")


class TestMoneyParsing:
    """Tests for amounts typed by people."""

    @pytest.mark.parametrize("text,expected", [
        ("I paid ₱500", Decimal("500")),
        ("sent ₱ 1,000 via GCash", Decimal("1000")),
        ("750 pesos na po", Decimal("750")),
        ("PHP 1,200.50", Decimal("1200.50")),
        ("1,200.50 php", Decimal("1200.50")),
    ])
    def test_extract_amount(self, text, expected):
        """Test peso amounts are found in free text."""
        assert extract_amount(text) == expected

    def test_no_amount_in_text(self):
        """Test text without a currency marker yields nothing."""
        assert extract_amount("paid already, see screenshot") is None
        assert extract_amount(None) is None

    def test_to_amount(self):
        """Test plain numbers, formatted strings and junk."""
        assert to_amount(500) == Decimal("500")
        assert to_amount("1,000") == Decimal("1000")
        assert to_amount("₱1,000") == Decimal("1000")
        assert to_amount("abc") is None
        assert to_amount(True) is None

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), "NaN", "Infinity", "-Infinity", "sNaN",
                                       Decimal("NaN"), Decimal("-Infinity")])
    def test_non_finite_is_not_an_amount(self, value):
        """Test NaN and infinities are treated as missing amounts."""
        assert to_amount(value) is None


class TestProofSubmission:
    """Tests for submitting proof against an inferred engagement."""

    def test_infers_engagement_and_prefills_price(self, payments, service, listing, upload_requests):
        """Test the single reserved engagement is used and the listing price fills the amount."""
        engagement = reserve(service)

        response = payments.submit(CLIENT_ID, PROVIDER_ID, PNG, "image/png")

        assert response.payment_message.engagement_id == engagement.id
        assert response.payment_message.payment_amount == Decimal("500")
        assert response.payment_message.payment_proof == "https://cdn.test/proof-1.png"
        assert service.get_engagement(engagement.id).state == EngagementState.PAYMENT_SUBMITTED
        assert b"payment-proofs/client-ana" in upload_requests[0].read()

    def test_free_form_amount(self, payments, service, listing):
        """Test a typed amount like '₱1,000' is parsed."""
        reserve(service)

        response = payments.submit(CLIENT_ID, PROVIDER_ID, PNG, "image/png", amount="₱1,000")

        assert response.payment_message.payment_amount == Decimal("1000")

    @pytest.mark.parametrize("amount", ["a lot", "NaN", "Infinity", "-500", "₱-500"])
    def test_invalid_amount(self, payments, service, listing, upload_requests, amount):
        """Test an unreadable, non-finite or negative amount fails before upload."""
        reserve(service)

        with pytest.raises(ValidationError, match="Invalid payment amount"):
            payments.submit(CLIENT_ID, PROVIDER_ID, PNG, "image/png", amount=amount)
        assert upload_requests == []

    def test_missing_selection(self, payments, listing, upload_requests):
        """Test proof without any reserved engagement is rejected before upload."""
        with pytest.raises(ValidationError, match="Missing selection"):
            payments.submit(CLIENT_ID, PROVIDER_ID, PNG, "image/png")
        assert upload_requests == []

    def test_several_open_engagements_need_service(self, payments, service, store, listing):
        """Test ambiguity between two reserved listings requires a service id."""
        store.set(LISTINGS, "listing-tutor", {"providerId": PROVIDER_ID, "title": "Math Tutor",
                                              "price": Decimal("300"), "isReserved": False, "active": True})
        reserve(service)
        tutor = reserve(service, "listing-tutor")

        with pytest.raises(ValidationError):
            payments.submit(CLIENT_ID, PROVIDER_ID, PNG, "image/png")

        response = payments.submit(CLIENT_ID, PROVIDER_ID, PNG, "image/png", service_id="listing-tutor")
        assert response.payment_message.engagement_id == tutor.id
        assert response.payment_message.payment_amount == Decimal("300")

    def test_wrong_type_rejected_before_upload(self, payments, service, listing, upload_requests):
        """Test a PDF never reaches the upload service."""
        reserve(service)

        with pytest.raises(ValidationError, match="Invalid file type"):
            payments.submit(CLIENT_ID, PROVIDER_ID, b"%PDF-1.4", "application/pdf")
        assert upload_requests == []

    def test_provider_cannot_pay_self(self, payments, listing):
        """Test the provider can't submit proof to themselves."""
        with pytest.raises(AuthorizationError):
            payments.submit(PROVIDER_ID, PROVIDER_ID, PNG, "image/png")

    def test_upload_failure_writes_nothing(self, service, store, listing):
        """Test an upload failure leaves the engagement reserved."""
        engagement = reserve(service)
        payments = PaymentProofSubmission(service, uploader=failing_uploader(lambda r: httpx.Response(503)))

        with pytest.raises(UploadError):
            payments.submit(CLIENT_ID, PROVIDER_ID, PNG, "image/png")

        assert service.get_engagement(engagement.id).state == EngagementState.RESERVED
        assert store.query(MESSAGES, kind="paymentProof") == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
