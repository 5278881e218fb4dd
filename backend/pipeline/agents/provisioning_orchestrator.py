"""
Provisioning Orchestrator
=========================
Turns a verified ``checkout.session.completed`` event into an active card.

Steps, in strict order (a failure aborts the remaining ones):
  1. decode checkout metadata                      -> MetadataError
  2. resolve the purchase intent / pending card    -> ResolutionError
  3. upload every embedded photo and audio item    -> MediaUploadError
  4. swap embedded media for durable references
  5. insert / activate the card                    -> PersistenceError
  6. render the card document (+ PDF for premium)  -> RenderError
  7. send the confirmation email                   -> NotificationError (logged, not raised)
  8. delete the consumed intent, upsert buyer plan -> PersistenceError

Redelivery safety:
- Runs are claimed in the idempotency ledger under ``checkout:<session id>``;
  a completed or in-flight key turns the delivery into a no-op.
- A failed run releases its claim so the provider's retry can continue.
- A slug already owned by another card is final: the run is closed in the
  ledger and answered with 409 so redelivery cannot loop over it.
- An intent that already has a card resumes at step 6, and a card that was
  already emailed is not emailed again.
"""

import asyncio
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from pydantic import BaseModel, ValidationError

from config import Settings
from pipeline.agents.media_uploader import MediaUploader
from pipeline.agents.notification_composer import NotificationComposer
from pipeline.errors import (
    MediaUploadError,
    MetadataError,
    NotificationError,
    PersistenceError,
    ProvisioningError,
    RenderError,
    ResolutionError,
    SlugConflictError,
    UploadError,
)
from schemas.card_models import (
    CardContent,
    CheckoutMetadata,
    FulfillmentFlow,
    MediaCategory,
    MediaItem,
    PaymentEvent,
    ProvisionedCard,
    PurchaseIntent,
    UserPlan,
)
from storage.card_store import ICardStore, SlugTakenError
from storage.idempotency import IIdempotencyStore

CHECKOUT_COMPLETED = "checkout.session.completed"


class ProvisioningOutcome(str, Enum):
    PROVISIONED = "provisioned"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    IN_PROGRESS = "in_progress"


class ProvisioningResult(BaseModel):
    outcome: ProvisioningOutcome
    event_id: str
    event_type: str
    card_id: Optional[str] = None
    custom_url: Optional[str] = None
    media_uploaded: int = 0
    resumed: bool = False
    notification_sent: bool = False


@dataclass
class ResolvedSource:
    flow: FulfillmentFlow
    content: CardContent
    intent: Optional[PurchaseIntent] = None
    card: Optional[ProvisionedCard] = None


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

WebhookHandler = Callable[[PaymentEvent, str], Awaitable[ProvisioningResult]]


class WebhookRouter:
    """Maps provider event types to handlers; unknown types are ignored."""

    def __init__(self):
        self._handlers: Dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    def get(self, event_type: str) -> Optional[WebhookHandler]:
        return self._handlers.get(event_type)

    @property
    def supported_events(self) -> list[str]:
        return list(self._handlers.keys())


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class ProvisioningOrchestrator:
    """
    Example:
        orchestrator = ProvisioningOrchestrator(settings, store, uploader, composer, ledger)
        result = await orchestrator.handle(event)
    """

    def __init__(
        self,
        settings: Settings,
        store: ICardStore,
        uploader: MediaUploader,
        composer: NotificationComposer,
        idempotency: IIdempotencyStore,
    ):
        self.settings = settings
        self.store = store
        self.uploader = uploader
        self.composer = composer
        self.idempotency = idempotency
        self._timeout = settings.EXTERNAL_CALL_TIMEOUT_SECONDS

        self.router = WebhookRouter()
        self._register_handlers()

        self._base_logger = structlog.get_logger()

    def _get_logger(self, event: PaymentEvent):
        return self._base_logger.bind(
            component="provisioning_orchestrator",
            correlation_id=event.id,
            checkout_session_id=event.checkout_session_id,
        )

    def _register_handlers(self):
        @self.router.register(CHECKOUT_COMPLETED)
        async def handle_checkout_completed(event: PaymentEvent, correlation_id: str):
            return await self._on_checkout_completed(event)

    async def handle(self, event: PaymentEvent) -> ProvisioningResult:
        """Entry point for every verified event."""
        handler = self.router.get(event.type)
        if handler is None:
            self._get_logger(event).info("event_ignored", event_type=event.type)
            return ProvisioningResult(
                outcome=ProvisioningOutcome.IGNORED,
                event_id=event.id,
                event_type=event.type,
            )
        return await handler(event, event.id)

    # =========================================================================
    # CHECKOUT COMPLETED
    # =========================================================================

    async def _on_checkout_completed(self, event: PaymentEvent) -> ProvisioningResult:
        log = self._get_logger(event)
        log.info("checkout_completed_received", metadata_keys=sorted(event.metadata))

        # Step 1
        metadata = self._decode_metadata(event, log)
        log = log.bind(flow=metadata.flow.value, reference=metadata.content_reference)

        key = f"checkout:{event.checkout_session_id or event.id}"
        holder_id = str(uuid.uuid4())

        if await self._step(self.idempotency.is_completed(key), PersistenceError, "ledger lookup", log):
            log.info("checkout_already_processed", key=key)
            return self._noop(event, ProvisioningOutcome.DUPLICATE)

        acquired = await self._step(
            self.idempotency.try_acquire(key, holder_id), PersistenceError, "ledger claim", log
        )
        if not acquired:
            if await self._step(self.idempotency.is_completed(key), PersistenceError, "ledger lookup", log):
                log.info("checkout_already_processed", key=key)
                return self._noop(event, ProvisioningOutcome.DUPLICATE)
            log.info("checkout_processing_elsewhere", key=key)
            return self._noop(event, ProvisioningOutcome.IN_PROGRESS)

        try:
            result = await self._fulfill(event, metadata, log)
        except SlugConflictError as e:
            log.error(
                "provisioning_slug_conflict",
                custom_url=e.reference,
                error=str(e),
                action_required="refund or reassign custom_url",
            )
            try:
                await self.idempotency.mark_completed(key, holder_id, "slug_conflict")
            except Exception as ledger_error:
                log.error("ledger_complete_failed", key=key, error=str(ledger_error))
            raise
        except Exception as e:
            log.error(
                "provisioning_failed",
                error=str(e),
                error_type=type(e).__name__,
                http_status=getattr(e, "http_status", 500),
            )
            await self._release(key, holder_id, log)
            raise

        try:
            await self.idempotency.mark_completed(key, holder_id, result.card_id or "")
        except Exception as e:
            # The card is provisioned; a redelivery resumes and skips finished steps.
            log.error("ledger_complete_failed", key=key, error=str(e))

        log.info(
            "provisioning_completed",
            card_id=result.card_id,
            media_uploaded=result.media_uploaded,
            resumed=result.resumed,
            notification_sent=result.notification_sent,
        )
        return result

    async def _fulfill(self, event: PaymentEvent, metadata: CheckoutMetadata, log) -> ProvisioningResult:
        # Step 2
        source = await self._resolve(metadata, log)

        resumed = False
        uploaded = 0
        if source.flow == FulfillmentFlow.EPHEMERAL and source.card is not None:
            card = source.card
            resumed = True
            log.info("resuming_provisioned_card", card_id=card.id)
        else:
            if source.flow == FulfillmentFlow.EPHEMERAL:
                await self._ensure_slug_free(source.intent.custom_url, log)
            # Step 3
            replacements = await self._upload_media(metadata.custom_url, source.content, event.id, log)
            uploaded = len(replacements)
            # Step 4
            final_content = source.content.with_media(replacements)
            # Step 5
            card = await self._persist(source, final_content, log)

        card_url = self.settings.card_url(card.custom_url)

        # Step 6
        documents = await self._step(
            self.composer.render_documents(card, card_url, metadata.plan, correlation_id=event.id),
            RenderError,
            "render",
            log,
        )

        # Step 7
        notification_sent = await self._notify(card, card_url, metadata, documents.pdf, event.id, log)

        # Step 8
        if source.flow == FulfillmentFlow.EPHEMERAL and source.intent is not None:
            await self._step(self.store.delete_intent(source.intent.id), PersistenceError, "intent delete", log)
            log.info("intent_consumed", intent_id=source.intent.id)

        if metadata.user_id:
            await self._step(
                self.store.upsert_user_plan(UserPlan(user_id=metadata.user_id, package_type=metadata.plan)),
                PersistenceError,
                "plan upsert",
                log,
            )
            log.info("user_plan_updated", user_id=metadata.user_id, plan=metadata.plan.value)

        return ProvisioningResult(
            outcome=ProvisioningOutcome.PROVISIONED,
            event_id=event.id,
            event_type=event.type,
            card_id=card.id,
            custom_url=card.custom_url,
            media_uploaded=uploaded,
            resumed=resumed,
            notification_sent=notification_sent,
        )

    # =========================================================================
    # STEPS
    # =========================================================================

    def _decode_metadata(self, event: PaymentEvent, log) -> CheckoutMetadata:
        data: Dict[str, Any] = dict(event.metadata)
        if not data.get("email") and event.customer_email:
            data["email"] = event.customer_email
        try:
            return CheckoutMetadata.model_validate(data)
        except ValidationError as e:
            fields = sorted({".".join(str(p) for p in err["loc"]) or "metadata" for err in e.errors()})
            log.warning("metadata_invalid", fields=fields)
            raise MetadataError(f"Invalid checkout metadata: {', '.join(fields)}") from e

    async def _resolve(self, metadata: CheckoutMetadata, log) -> ResolvedSource:
        if metadata.flow == FulfillmentFlow.EPHEMERAL:
            intent = await self._step(
                self.store.get_intent(metadata.intent_id), ResolutionError, "intent fetch", log
            )
            existing = await self._step(
                self.store.get_card_by_intent(metadata.intent_id), ResolutionError, "card lookup", log
            )
            if intent is None and existing is None:
                log.warning("intent_not_found", intent_id=metadata.intent_id)
                raise ResolutionError(f"Purchase intent not found: {metadata.intent_id}",
                                      reference=metadata.intent_id)
            if intent is not None and intent.plan != metadata.plan:
                log.warning("plan_mismatch", intent_plan=intent.plan.value, paid_plan=metadata.plan.value)
            content = intent.content if intent is not None else existing.content
            return ResolvedSource(flow=metadata.flow, content=content, intent=intent, card=existing)

        card = await self._step(self.store.get_card(metadata.site_id), ResolutionError, "card fetch", log)
        if card is None:
            log.warning("card_not_found", site_id=metadata.site_id)
            raise ResolutionError(f"Card not found: {metadata.site_id}", reference=metadata.site_id)
        if metadata.user_id and card.user_id and card.user_id != metadata.user_id:
            log.warning("card_owner_mismatch", site_id=metadata.site_id)
            raise ResolutionError(f"Card {metadata.site_id} does not belong to the buyer",
                                  reference=metadata.site_id)
        return ResolvedSource(flow=metadata.flow, content=card.content, card=card)

    async def _upload_media(
        self,
        slug: str,
        content: CardContent,
        correlation_id: str,
        log,
    ) -> Dict[tuple[MediaCategory, int], MediaItem]:
        """Upload all embedded items concurrently; any failure aborts the run."""
        items = content.embedded_items()
        if not items:
            return {}

        semaphore = asyncio.Semaphore(self.settings.MAX_CONCURRENT_UPLOADS)

        async def upload_one(category: MediaCategory, index: int, item: MediaItem) -> MediaItem:
            async with semaphore:
                try:
                    async with asyncio.timeout(self._timeout):
                        return await self.uploader.upload(slug, category, index, item, correlation_id)
                except UploadError:
                    raise
                except Exception as e:
                    raise UploadError(
                        f"Upload of {category.value}[{index}] failed: {e or type(e).__name__}",
                        index=index,
                        category=category.value,
                        reference=slug,
                    ) from e

        log.info("media_upload_started", count=len(items))
        outcomes = await asyncio.gather(
            *(upload_one(category, index, item) for category, index, item in items),
            return_exceptions=True,
        )

        replacements: Dict[tuple[MediaCategory, int], MediaItem] = {}
        failures: list[UploadError] = []
        for (category, index, _), outcome in zip(items, outcomes):
            if isinstance(outcome, UploadError):
                failures.append(outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                replacements[(category, index)] = outcome

        if failures:
            log.error(
                "media_upload_failed",
                failed=[f"{f.category}[{f.index}]" for f in failures],
                succeeded=len(replacements),
            )
            raise MediaUploadError(failures[0])

        log.info("media_upload_completed", count=len(replacements))
        return replacements

    async def _persist(self, source: ResolvedSource, content: CardContent, log) -> ProvisionedCard:
        if source.flow == FulfillmentFlow.EPHEMERAL:
            candidate = ProvisionedCard.from_intent(source.intent, content)
            card = await self._step(self._insert_card(candidate), PersistenceError, "card insert", log)
            if card.id != candidate.id:
                log.info("card_already_inserted", card_id=card.id)
        else:
            card = await self._step(
                self.store.activate_card(source.card.id, content), PersistenceError, "card activation", log
            )
        log.info("card_persisted", card_id=card.id, status=card.status.value,
                 photos=len(card.content.photos), musics=len(card.content.musics))
        return card

    async def _ensure_slug_free(self, slug: str, log) -> None:
        available = await self._step(self.store.slug_available(slug), PersistenceError, "slug lookup", log)
        if not available:
            raise SlugConflictError(f"custom_url already in use: {slug}", reference=slug)

    async def _insert_card(self, candidate: ProvisionedCard) -> ProvisionedCard:
        try:
            return await self.store.insert_card(candidate)
        except SlugTakenError as e:
            raise SlugConflictError(str(e), reference=candidate.custom_url) from e

    async def _notify(
        self,
        card: ProvisionedCard,
        card_url: str,
        metadata: CheckoutMetadata,
        pdf: Optional[bytes],
        correlation_id: str,
        log,
    ) -> bool:
        """Post-persistence: failures are logged and never abort the run."""
        if card.notified_at is not None:
            log.info("notification_already_sent", card_id=card.id)
            return False

        try:
            async with asyncio.timeout(self._timeout):
                await self.composer.send_confirmation(
                    email=card.email or metadata.email,
                    card_url=card_url,
                    password=card.password,
                    plan=metadata.plan,
                    slug=card.custom_url,
                    pdf=pdf,
                    expires_at=card.expires_at,
                    correlation_id=correlation_id,
                )
        except (NotificationError, TimeoutError) as e:
            log.error("notification_failed", card_id=card.id, error=str(e) or type(e).__name__)
            return False

        try:
            await self.store.mark_notified(card.id)
        except Exception as e:
            log.warning("mark_notified_failed", card_id=card.id, error=str(e))
        return True

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _step(self, awaitable: Awaitable, error_cls: type[ProvisioningError], what: str, log):
        """Await one external call under the shared timeout, mapping failures to error_cls."""
        try:
            async with asyncio.timeout(self._timeout):
                return await awaitable
        except ProvisioningError:
            raise
        except Exception as e:
            log.error("step_failed", step=what, error=str(e) or type(e).__name__, error_type=type(e).__name__)
            raise error_cls(f"{what} failed: {e or type(e).__name__}") from e

    async def _release(self, key: str, holder_id: str, log) -> None:
        try:
            await self.idempotency.release(key, holder_id)
        except Exception as e:
            log.error("ledger_release_failed", key=key, error=str(e))

    @staticmethod
    def _noop(event: PaymentEvent, outcome: ProvisioningOutcome) -> ProvisioningResult:
        return ProvisioningResult(outcome=outcome, event_id=event.id, event_type=event.type)
