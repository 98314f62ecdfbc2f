import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware

from revenue import HeatmapDay, RevenueReconciler, RevenueSummary, calendar_heatmap

from .config import Settings, get_settings
from .errors import (
    AlreadyProcessedError,
    AuthorizationError,
    EngagementError,
    InvalidStateTransitionError,
    ListingUnavailableError,
    NotFoundError,
    StoreUnavailableError,
    UploadError,
    ValidationError,
)
from .models import (
    ConfirmPaymentRequest,
    Conversation,
    EngagementResponse,
    Message,
    Notification,
    PaymentResponse,
    Review,
    ReviewRequest,
    VisibilityRequest,
)
from .payments import PaymentProofSubmission
from .rating import RatingTrigger
from .service import EngagementService
from .store import InMemoryStore, PreconditionFailedError

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (InvalidStateTransitionError, status.HTTP_400_BAD_REQUEST),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AlreadyProcessedError, status.HTTP_409_CONFLICT),
    (ListingUnavailableError, status.HTTP_409_CONFLICT),
    (PreconditionFailedError, status.HTTP_409_CONFLICT),
    (UploadError, status.HTTP_502_BAD_GATEWAY),
    (StoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def http_error(error: EngagementError) -> HTTPException:
    for kind, code in _STATUS_BY_ERROR:
        if isinstance(error, kind):
            return HTTPException(status_code=code, detail=str(error))
    logger.exception("Unmapped engagement error")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


@dataclass
class Services:
    store: InMemoryStore
    engagements: EngagementService
    payments: PaymentProofSubmission
    rating: RatingTrigger
    revenue: RevenueReconciler

    @classmethod
    def build(cls, store: Optional[InMemoryStore] = None, settings: Optional[Settings] = None,
              payments: Optional[PaymentProofSubmission] = None) -> "Services":
        settings = settings or get_settings()
        store = store or InMemoryStore()
        rating = RatingTrigger(store)
        engagements = EngagementService(store, rating=rating, settings=settings)
        return cls(
            store=store,
            engagements=engagements,
            payments=payments or PaymentProofSubmission(engagements),
            rating=rating,
            revenue=RevenueReconciler(settings),
        )


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return x_user_id


def _same_user(actor: str, user_id: str) -> None:
    if actor != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot read another user's data")


def create_app(services: Optional[Services] = None, root_path: str = "",
               settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="Service Engagement API",
        description="Client/provider engagements with payment proof, confirmation and revenue reconciliation",
        version="1.0.0",
        root_path=root_path,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.services = services or Services.build(settings=settings)

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": settings.app_name}

    @app.post("/listings/{listing_id}/select", response_model=EngagementResponse,
              status_code=status.HTTP_201_CREATED, tags=["Engagements"])
    def select_listing(listing_id: str, actor: str = Depends(current_user),
                       services: Services = Depends(get_services)) -> EngagementResponse:
        try:
            return services.engagements.select_listing(actor, listing_id)
        except EngagementError as e:
            raise http_error(e)

    @app.post("/engagements/{engagement_id}/accept", response_model=EngagementResponse, tags=["Engagements"])
    def accept_engagement(engagement_id: str, actor: str = Depends(current_user),
                          services: Services = Depends(get_services)) -> EngagementResponse:
        try:
            return services.engagements.accept(actor, engagement_id)
        except EngagementError as e:
            raise http_error(e)

    @app.post("/engagements/{engagement_id}/decline", response_model=EngagementResponse, tags=["Engagements"])
    def decline_engagement(engagement_id: str, actor: str = Depends(current_user),
                           services: Services = Depends(get_services)) -> EngagementResponse:
        try:
            return services.engagements.decline(actor, engagement_id)
        except EngagementError as e:
            raise http_error(e)

    @app.post("/engagements/{engagement_id}/visibility", response_model=EngagementResponse, tags=["Engagements"])
    def resolve_visibility(engagement_id: str, request: VisibilityRequest, actor: str = Depends(current_user),
                           services: Services = Depends(get_services)) -> EngagementResponse:
        try:
            return services.engagements.resolve_visibility(actor, engagement_id, request.choice)
        except EngagementError as e:
            raise http_error(e)

    @app.post("/payments/proof", response_model=PaymentResponse,
              status_code=status.HTTP_201_CREATED, tags=["Payments"])
    def submit_payment_proof(
        file: UploadFile = File(...),
        provider_id: str = Form(...),
        service_id: Optional[str] = Form(default=None),
        amount: Optional[str] = Form(default=None),
        note: Optional[str] = Form(default=None),
        actor: str = Depends(current_user),
        services: Services = Depends(get_services),
    ) -> PaymentResponse:
        content = file.file.read()
        try:
            return services.payments.submit(
                actor, provider_id, content, file.content_type or "",
                service_id=service_id, amount=amount, note=note, filename=file.filename or "proof",
            )
        except EngagementError as e:
            raise http_error(e)

    @app.post("/messages/{message_id}/confirm", response_model=PaymentResponse, tags=["Payments"])
    def confirm_payment(message_id: str, request: Optional[ConfirmPaymentRequest] = None,
                        actor: str = Depends(current_user),
                        services: Services = Depends(get_services)) -> PaymentResponse:
        amount = request.amount if request else None
        try:
            return services.engagements.confirm_payment(actor, message_id, amount=amount)
        except EngagementError as e:
            raise http_error(e)

    @app.get("/users/{user_id}/conversations", response_model=list[Conversation], tags=["Conversations"])
    def list_conversations(user_id: str, actor: str = Depends(current_user),
                           services: Services = Depends(get_services)) -> list[Conversation]:
        _same_user(actor, user_id)
        try:
            return services.engagements.list_conversations(user_id)
        except EngagementError as e:
            raise http_error(e)

    @app.get("/conversations/{conversation_id}/messages", response_model=list[Message], tags=["Conversations"])
    def list_messages(conversation_id: str, actor: str = Depends(current_user),
                      services: Services = Depends(get_services)) -> list[Message]:
        try:
            messages = services.engagements.list_messages(conversation_id)
        except EngagementError as e:
            raise http_error(e)
        if messages and not any(actor in (m.sender_id, m.receiver_id) for m in messages):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a participant")
        return messages

    @app.get("/users/{user_id}/revenue", response_model=RevenueSummary, tags=["Revenue"])
    def revenue_summary(user_id: str, today: Optional[date] = None, actor: str = Depends(current_user),
                        services: Services = Depends(get_services)) -> RevenueSummary:
        _same_user(actor, user_id)
        try:
            return services.revenue.summarize(services.store, user_id, today=today)
        except EngagementError as e:
            raise http_error(e)

    @app.get("/users/{user_id}/heatmap", response_model=list[HeatmapDay], tags=["Revenue"])
    def revenue_heatmap(user_id: str, year: int, month: int, actor: str = Depends(current_user),
                        services: Services = Depends(get_services)) -> list[HeatmapDay]:
        _same_user(actor, user_id)
        try:
            collected = services.revenue.collect(services.store, user_id)
            candidates = services.revenue.prepare(user_id, collected.candidates)
            return calendar_heatmap(candidates, year, month)
        except EngagementError as e:
            raise http_error(e)

    @app.get("/users/{user_id}/rating-prompt", response_model=Optional[Notification], tags=["Ratings"])
    def rating_prompt(user_id: str, actor: str = Depends(current_user),
                      services: Services = Depends(get_services)) -> Optional[Notification]:
        _same_user(actor, user_id)
        try:
            return services.rating.pending_prompt(user_id)
        except EngagementError as e:
            raise http_error(e)

    @app.post("/notifications/{notification_id}/consume", response_model=Notification, tags=["Ratings"])
    def consume_notification(notification_id: str, actor: str = Depends(current_user),
                             services: Services = Depends(get_services)) -> Notification:
        try:
            return services.rating.consume(actor, notification_id)
        except EngagementError as e:
            raise http_error(e)

    @app.post("/reviews", response_model=Review, status_code=status.HTTP_201_CREATED, tags=["Ratings"])
    def submit_review(request: ReviewRequest, actor: str = Depends(current_user),
                      services: Services = Depends(get_services)) -> Review:
        try:
            return services.rating.submit_review(actor, request.transaction_id, request.rating, request.comment)
        except EngagementError as e:
            raise http_error(e)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
