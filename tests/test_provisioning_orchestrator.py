import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import PNG_BYTES, completed_event, data_url
from pipeline.agents.provisioning_orchestrator import ProvisioningOutcome
from pipeline.errors import (
    MediaUploadError,
    MetadataError,
    PersistenceError,
    RenderError,
    ResolutionError,
    SlugConflictError,
)
from schemas.card_models import (
    CardContent,
    CardStatus,
    MediaItem,
    PaymentEvent,
    PlanTier,
    ProvisionedCard,
)
from services.container import ServiceContainer
from services.document_renderer import DocumentRenderer
from services.mail_transport import InMemoryMailTransport, MailTransportError
from storage.blob_store import BlobStoreError, InMemoryBlobStore
from storage.card_store import InMemoryCardStore, SlugTakenError
from storage.idempotency import InMemoryIdempotencyStore

CARD_URL = "https://cards.example.com/joao-maria"


def ephemeral_metadata(intent, **overrides):
    metadata = {
        "intentId": intent.id,
        "plan": intent.plan.value,
        "email": intent.email,
        "customUrl": intent.custom_url,
    }
    if intent.user_id:
        metadata["userId"] = intent.user_id
    metadata.update(overrides)
    return metadata


def text_body(message):
    return message.get_body(preferencelist=("plain",)).get_content()


class FailingOnSecondPhoto(InMemoryBlobStore):
    async def put(self, key, data, content_type):
        if "/photos/1-" in key:
            raise BlobStoreError("connection reset")
        return await super().put(key, data, content_type)


# =============================================================================
# HAPPY PATH
# =============================================================================

@pytest.mark.asyncio
async def test_basic_purchase_end_to_end(container, make_intent):
    intent = make_intent(plan=PlanTier.BASIC)
    await container.store.create_intent(intent)

    result = await container.orchestrator.handle(completed_event(ephemeral_metadata(intent)))

    assert result.outcome == ProvisioningOutcome.PROVISIONED
    assert result.media_uploaded == 3
    assert result.notification_sent is True

    [card] = container.store.cards.values()
    assert card.custom_url == "joao-maria"
    assert card.status == CardStatus.ACTIVE
    assert card.source_intent_id == intent.id
    assert card.password == intent.password
    assert card.expires_at is not None
    assert card.notified_at is not None
    assert all(item.url.startswith("https://blobs.local/joao-maria/photos/") for item in card.content.photos)
    assert card.content.musics[0].url.startswith("https://blobs.local/joao-maria/musics/0-")
    assert not any(item.data for item in card.content.photos + card.content.musics)
    assert card.content.model_extra["title"] == "João & Maria"
    assert card.content.music_link == "https://youtu.be/abc"

    assert len(container.blobs.blobs) == 3
    assert container.store.intents == {}

    [message] = container.mail.outbox
    assert message["To"] == "a@b.com"
    assert CARD_URL in text_body(message)
    assert intent.password in text_body(message)
    assert list(message.iter_attachments()) == []


@pytest.mark.asyncio
async def test_premium_purchase_attaches_pdf_and_never_expires(container, make_intent, pdf_engine):
    intent = make_intent(plan=PlanTier.PREMIUM)
    await container.store.create_intent(intent)

    await container.orchestrator.handle(completed_event(ephemeral_metadata(intent)))

    [card] = container.store.cards.values()
    assert card.expires_at is None
    assert len(pdf_engine.calls) == 1

    [attachment] = list(container.mail.outbox[0].iter_attachments())
    assert attachment.get_filename() == "joao-maria.pdf"
    assert attachment.get_content() == pdf_engine.output


@pytest.mark.asyncio
async def test_buyer_plan_is_recorded(container, make_intent):
    intent = make_intent(plan=PlanTier.PREMIUM, user_id="user-7")
    await container.store.create_intent(intent)

    await container.orchestrator.handle(completed_event(ephemeral_metadata(intent)))

    plan = await container.store.get_user_plan("user-7")
    assert plan.package_type == PlanTier.PREMIUM


@pytest.mark.asyncio
async def test_content_without_media_skips_uploads(container, make_intent):
    intent = make_intent()
    intent = intent.model_copy(update={"content": CardContent(title="Sem fotos")})
    await container.store.create_intent(intent)

    result = await container.orchestrator.handle(completed_event(ephemeral_metadata(intent)))

    assert result.media_uploaded == 0
    assert container.blobs.blobs == {}
    assert len(container.store.cards) == 1


# =============================================================================
# FAILURES
# =============================================================================

@pytest.mark.asyncio
async def test_upload_failure_writes_no_card_and_keeps_intent(settings, payments, pdf_engine, make_intent):
    container = ServiceContainer(
        settings=settings,
        store=InMemoryCardStore(),
        blobs=FailingOnSecondPhoto(),
        idempotency=InMemoryIdempotencyStore(),
        mail=InMemoryMailTransport(),
        payments=payments,
        renderer=DocumentRenderer(pdf_engine),
    )

    intent = make_intent()
    await container.store.create_intent(intent)

    with pytest.raises(MediaUploadError) as exc:
        await container.orchestrator.handle(completed_event(ephemeral_metadata(intent)))

    assert exc.value.index == 1
    assert exc.value.category == "photos"
    assert exc.value.http_status == 500
    assert container.store.cards == {}
    assert intent.id in container.store.intents
    assert container.mail.outbox == []


@pytest.mark.asyncio
async def test_unresolvable_intent_writes_nothing_and_sends_nothing(container, make_intent):
    intent = make_intent()

    with pytest.raises(ResolutionError) as exc:
        await container.orchestrator.handle(completed_event(ephemeral_metadata(intent)))

    assert exc.value.http_status == 500
    assert container.store.write_count == 0
    assert container.blobs.blobs == {}
    assert container.mail.outbox == []


@pytest.mark.asyncio
@pytest.mark.parametrize("broken", [
    {"plan": "gold"},
    {"email": ""},
    {"customUrl": "bad slug/"},
    {"intentId": ""},
    {"siteId": "site-1"},
])
async def test_invalid_metadata_is_rejected(container, make_intent, broken):
    intent = make_intent()
    await container.store.create_intent(intent)
    metadata = ephemeral_metadata(intent, **broken)
    event = PaymentEvent(
        id="evt_bad",
        type="checkout.session.completed",
        checkout_session_id="cs_bad",
        metadata=metadata,
    )

    with pytest.raises(MetadataError) as exc:
        await container.orchestrator.handle(event)

    assert exc.value.http_status == 400
    assert container.store.cards == {}


@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_provisioning(container, make_intent):
    container.mail.send = AsyncMock(side_effect=MailTransportError("535 authentication failed"))
    intent = make_intent()
    await container.store.create_intent(intent)

    result = await container.orchestrator.handle(completed_event(ephemeral_metadata(intent)))

    assert result.outcome == ProvisioningOutcome.PROVISIONED
    assert result.notification_sent is False
    [card] = container.store.cards.values()
    assert card.is_active
    assert card.notified_at is None
    assert container.store.intents == {}


@pytest.mark.asyncio
async def test_compose_failure_does_not_fail_provisioning(container, make_intent, monkeypatch):
    def broken_compose(*args, **kwargs):
        raise KeyError("template variable")

    monkeypatch.setattr(container.composer, "compose_confirmation", broken_compose)
    intent = make_intent()
    await container.store.create_intent(intent)

    result = await container.orchestrator.handle(completed_event(ephemeral_metadata(intent)))

    assert result.outcome == ProvisioningOutcome.PROVISIONED
    assert result.notification_sent is False
    [card] = container.store.cards.values()
    assert card.is_active
    assert container.mail.outbox == []


@pytest.mark.asyncio
async def test_persistence_failure_releases_claim_for_retry(container, make_intent):
    intent = make_intent()
    await container.store.create_intent(intent)
    original_insert = container.store.insert_card
    container.store.insert_card = AsyncMock(side_effect=RuntimeError("deadlock detected"))

    with pytest.raises(PersistenceError):
        await container.orchestrator.handle(completed_event(ephemeral_metadata(intent)))

    container.store.insert_card = original_insert
    result = await container.orchestrator.handle(completed_event(ephemeral_metadata(intent)))

    assert result.outcome == ProvisioningOutcome.PROVISIONED
    assert len(container.store.cards) == 1
    assert len(container.mail.outbox) == 1


@pytest.mark.asyncio
async def test_render_failure_retry_resumes_with_existing_card(container, make_intent):
    intent = make_intent(plan=PlanTier.PREMIUM)
    await container.store.create_intent(intent)
    container.composer.render_documents = AsyncMock(side_effect=RenderError("template exploded"))

    with pytest.raises(RenderError):
        await container.orchestrator.handle(completed_event(ephemeral_metadata(intent)))

    assert len(container.store.cards) == 1
    uploads_after_first_run = len(container.blobs.blobs)
    del container.composer.render_documents

    result = await container.orchestrator.handle(completed_event(ephemeral_metadata(intent)))

    assert result.resumed is True
    assert result.media_uploaded == 0
    assert len(container.blobs.blobs) == uploads_after_first_run
    assert len(container.store.cards) == 1
    assert len(container.mail.outbox) == 1
    assert container.store.intents == {}


# =============================================================================
# REDELIVERY
# =============================================================================

@pytest.mark.asyncio
async def test_duplicate_delivery_is_a_no_op(container, make_intent):
    intent = make_intent()
    await container.store.create_intent(intent)
    event = completed_event(ephemeral_metadata(intent))

    first = await container.orchestrator.handle(event)
    writes = container.store.write_count
    second = await container.orchestrator.handle(event)

    assert first.outcome == ProvisioningOutcome.PROVISIONED
    assert second.outcome == ProvisioningOutcome.DUPLICATE
    assert len(container.store.cards) == 1
    assert len(container.blobs.blobs) == 3
    assert len(container.mail.outbox) == 1
    assert container.store.write_count == writes


@pytest.mark.asyncio
async def test_concurrent_deliveries_provision_once(container, make_intent):
    intent = make_intent()
    await container.store.create_intent(intent)
    event = completed_event(ephemeral_metadata(intent))

    results = await asyncio.gather(
        container.orchestrator.handle(event),
        container.orchestrator.handle(event),
    )

    outcomes = sorted(r.outcome.value for r in results)
    assert outcomes in (["in_progress", "provisioned"], ["duplicate", "provisioned"])
    assert len(container.store.cards) == 1
    assert len(container.mail.outbox) == 1


# =============================================================================
# PRE-CREATED FLOW
# =============================================================================

@pytest.mark.asyncio
async def test_pre_created_card_is_activated(container):
    pending = ProvisionedCard(
        custom_url="joao-maria",
        user_id="user-7",
        plan=PlanTier.BASIC,
        content=CardContent(
            title="Nós",
            photos=[MediaItem(name="a.png", data=data_url("image/png", PNG_BYTES))],
        ),
        email="a@b.com",
    )
    container.store.cards[pending.id] = pending

    result = await container.orchestrator.handle(completed_event({
        "siteId": pending.id,
        "userId": "user-7",
        "plan": "premium",
        "email": "a@b.com",
        "customUrl": "joao-maria",
    }))

    assert result.outcome == ProvisioningOutcome.PROVISIONED
    card = container.store.cards[pending.id]
    assert card.status == CardStatus.ACTIVE
    assert card.activated_at is not None
    assert card.content.photos[0].url.startswith("https://blobs.local/joao-maria/photos/0-")

    plan = await container.store.get_user_plan("user-7")
    assert plan.package_type == PlanTier.PREMIUM
    [attachment] = list(container.mail.outbox[0].iter_attachments())
    assert attachment.get_filename() == "joao-maria.pdf"


@pytest.mark.asyncio
async def test_pre_created_card_of_another_user_is_not_activated(container):
    pending = ProvisionedCard(
        custom_url="joao-maria",
        user_id="owner",
        plan=PlanTier.BASIC,
        content=CardContent(title="Nós"),
    )
    container.store.cards[pending.id] = pending

    with pytest.raises(ResolutionError):
        await container.orchestrator.handle(completed_event({
            "siteId": pending.id,
            "userId": "intruder",
            "plan": "basic",
            "email": "a@b.com",
            "customUrl": "joao-maria",
        }))

    assert container.store.cards[pending.id].status == CardStatus.PENDING
    assert container.mail.outbox == []


# =============================================================================
# OTHER EVENTS
# =============================================================================

@pytest.mark.asyncio
@pytest.mark.parametrize("event_type", ["payment_intent.succeeded", "checkout.session.expired", "charge.refunded"])
async def test_other_event_types_are_ignored(container, event_type):
    event = PaymentEvent(id="evt_other", type=event_type, metadata={"garbage": "yes"})

    result = await container.orchestrator.handle(event)

    assert result.outcome == ProvisioningOutcome.IGNORED
    assert container.store.write_count == 0
    assert container.mail.outbox == []


# =============================================================================
# SLUG CONFLICTS
# =============================================================================

@pytest.mark.asyncio
async def test_second_purchase_of_a_taken_slug_is_final(container, make_intent):
    first = make_intent()
    await container.store.create_intent(first)
    await container.orchestrator.handle(completed_event(ephemeral_metadata(first)))
    blobs_after_first = dict(container.blobs.blobs)

    second = make_intent(user_id="user-9")
    container.store.intents[second.id] = second
    event = completed_event(ephemeral_metadata(second), event_id="evt_2", session_id="cs_test_2")

    with pytest.raises(SlugConflictError) as exc:
        await container.orchestrator.handle(event)

    assert exc.value.http_status == 409
    assert exc.value.retryable is False
    assert len(container.store.cards) == 1
    assert container.blobs.blobs == blobs_after_first
    assert len(container.mail.outbox) == 1
    assert second.id in container.store.intents

    redelivery = await container.orchestrator.handle(event)
    assert redelivery.outcome == ProvisioningOutcome.DUPLICATE
    assert container.blobs.blobs == blobs_after_first


@pytest.mark.asyncio
async def test_slug_taken_at_insert_is_a_conflict(container, make_intent):
    intent = make_intent()
    await container.store.create_intent(intent)
    container.store.slug_available = AsyncMock(return_value=True)
    container.store.insert_card = AsyncMock(side_effect=SlugTakenError("custom_url already in use: joao-maria"))
    event = completed_event(ephemeral_metadata(intent))

    with pytest.raises(SlugConflictError):
        await container.orchestrator.handle(event)

    assert container.mail.outbox == []
    assert (await container.orchestrator.handle(event)).outcome == ProvisioningOutcome.DUPLICATE
    container.store.insert_card.assert_awaited_once()
