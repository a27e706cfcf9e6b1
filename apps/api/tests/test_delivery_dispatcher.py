import json
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy import select

from conftest import seed_units
from giftcard_api.core.errors import (
    ClaimNotDeliverable,
    InvalidStateTransition,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from giftcard_api.core.settings import Settings
from giftcard_api.models.claims import DeliveryAttempt, DeliveryAttemptStatusEnum, DeliveryChannelEnum
from giftcard_api.models.inventory import InventoryUnit, InventoryUnitStatusEnum
from giftcard_api.services.claims import ClaimCoordinator, ClaimRequest
from giftcard_api.services.delivery import (
    DeliveryDispatcher,
    DeliveryOutcome,
    FallbackSMSBackend,
    InMemoryEmailBackend,
    InMemorySMSBackend,
    InfobipSMSBackend,
    TwilioSMSBackend,
    backoff_delay,
    build_sms_backend,
)
from giftcard_api.services.inventory import InventoryStore
from giftcard_api.services.provisioning import ProvisioningAdapter


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


async def _claimed(factory, *, with_stock: bool = True):
    if with_stock:
        await seed_units(factory, 1, prefix="GIFT")
    async with factory() as session:
        coordinator = ClaimCoordinator(session, provisioning=ProvisioningAdapter(session, supplier=None))
        return await coordinator.claim(
            ClaimRequest(
                recipient_id="R1",
                campaign_id="C1",
                condition_number=2,
                brand_id="amazon",
                denomination=Decimal("25.00"),
                owner_client_id="client-a",
            )
        )


async def _attempts(factory, claim_id) -> list[DeliveryAttempt]:
    async with factory() as session:
        stmt = (
            select(DeliveryAttempt)
            .where(DeliveryAttempt.claim_record_id == claim_id)
            .order_by(DeliveryAttempt.attempt_number)
        )
        return list((await session.execute(stmt)).scalars().all())


def _dispatcher(session, *, sms=None, email=None, sleep=None, max_attempts=3) -> DeliveryDispatcher:
    return DeliveryDispatcher(
        session,
        sms_backend=sms,
        email_backend=email,
        max_attempts=max_attempts,
        backoff_base_seconds=2.0,
        backoff_max_seconds=60.0,
        sleep=sleep or RecordingSleep(),
    )


@pytest.mark.asyncio
async def test_transient_failures_stop_at_retry_cap(session_factory, reset_reward_store):
    claim = await _claimed(session_factory)
    sms = InMemorySMSBackend(failures=[TransientDeliveryError("Twilio returned HTTP 503")] * 5)
    sleep = RecordingSleep()

    async with session_factory() as session:
        outcome = await _dispatcher(session, sms=sms, sleep=sleep).deliver(
            claim.claim_id, DeliveryChannelEnum.SMS, "+15550001111"
        )

    assert outcome == DeliveryOutcome.EXHAUSTED
    attempts = await _attempts(session_factory, claim.claim_id)
    assert [attempt.attempt_number for attempt in attempts] == [1, 2, 3]
    assert [attempt.status for attempt in attempts] == [
        DeliveryAttemptStatusEnum.FAILED,
        DeliveryAttemptStatusEnum.FAILED,
        DeliveryAttemptStatusEnum.EXHAUSTED,
    ]
    assert sleep.delays == [2.0, 4.0]
    assert sms.calls == 3

    async with session_factory() as session:
        unit = await session.get(InventoryUnit, claim.inventory_unit_id)
        assert unit.status == InventoryUnitStatusEnum.ASSIGNED

    snapshot = reset_reward_store.snapshot().as_dict()
    assert snapshot["counters"]["deliveries"] == {"exhausted": 1}
    assert snapshot["events"]["last_delivery_exhausted_claim"] == str(claim.claim_id)


@pytest.mark.asyncio
async def test_permanent_failure_short_circuits(session_factory):
    claim = await _claimed(session_factory)
    sms = InMemorySMSBackend(failures=[PermanentDeliveryError("Invalid 'To' phone number", code="21211")])
    sleep = RecordingSleep()

    async with session_factory() as session:
        outcome = await _dispatcher(session, sms=sms, sleep=sleep).deliver(
            claim.claim_id, DeliveryChannelEnum.SMS, "not-a-number"
        )

    assert outcome == DeliveryOutcome.EXHAUSTED
    attempts = await _attempts(session_factory, claim.claim_id)
    assert len(attempts) == 1
    assert attempts[0].status == DeliveryAttemptStatusEnum.EXHAUSTED
    assert attempts[0].error_message == "Invalid 'To' phone number"
    assert sms.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_success_after_retry_marks_unit_delivered(session_factory):
    claim = await _claimed(session_factory)
    sms = InMemorySMSBackend(failures=[TransientDeliveryError("rate limited")])

    async with session_factory() as session:
        outcome = await _dispatcher(session, sms=sms).deliver(claim.claim_id, "sms", "+15550001111")

    assert outcome == DeliveryOutcome.DELIVERED
    attempts = await _attempts(session_factory, claim.claim_id)
    assert [attempt.status for attempt in attempts] == [
        DeliveryAttemptStatusEnum.FAILED,
        DeliveryAttemptStatusEnum.SENT,
    ]
    assert attempts[1].provider == "memory-sms"
    assert attempts[1].provider_message_id.startswith("SM")

    [(recipient, body)] = sms.sent_messages
    assert recipient == "+15550001111"
    assert "$25.00 Amazon" in body
    assert "GIFT-0000" in body

    async with session_factory() as session:
        unit = await session.get(InventoryUnit, claim.inventory_unit_id)
        assert unit.status == InventoryUnitStatusEnum.DELIVERED
        assert unit.delivered_at is not None


@pytest.mark.asyncio
async def test_second_delivery_does_not_resend(session_factory):
    claim = await _claimed(session_factory)
    email = InMemoryEmailBackend()

    async with session_factory() as session:
        first = await _dispatcher(session, email=email).deliver(claim.claim_id, "email", "r@example.com")
    async with session_factory() as session:
        second = await _dispatcher(session, email=email).deliver(claim.claim_id, "email", "r@example.com")

    assert first == second == DeliveryOutcome.DELIVERED
    assert email.calls == 1
    [message] = email.sent_messages
    assert message["Subject"] == "Your $25.00 Amazon gift card"
    assert len(await _attempts(session_factory, claim.claim_id)) == 1


@pytest.mark.asyncio
async def test_redelivery_continues_attempt_numbering(session_factory):
    claim = await _claimed(session_factory)
    sms = InMemorySMSBackend(failures=[TransientDeliveryError("timeout")] * 3)

    async with session_factory() as session:
        assert await _dispatcher(session, sms=sms).deliver(claim.claim_id, "sms", "+1555") == DeliveryOutcome.EXHAUSTED
    async with session_factory() as session:
        assert await _dispatcher(session, sms=sms).deliver(claim.claim_id, "sms", "+1555") == DeliveryOutcome.DELIVERED

    attempts = await _attempts(session_factory, claim.claim_id)
    assert [attempt.attempt_number for attempt in attempts] == [1, 2, 3, 4]
    assert attempts[-1].status == DeliveryAttemptStatusEnum.SENT


@pytest.mark.asyncio
async def test_missing_backend_is_permanent(session_factory):
    claim = await _claimed(session_factory)

    async with session_factory() as session:
        outcome = await _dispatcher(session).deliver(claim.claim_id, "sms", "+15550001111")

    assert outcome == DeliveryOutcome.EXHAUSTED
    [attempt] = await _attempts(session_factory, claim.claim_id)
    assert attempt.error_message == "No SMS backend configured"


@pytest.mark.asyncio
async def test_unclaimed_record_cannot_be_delivered(session_factory):
    claim = await _claimed(session_factory, with_stock=False)

    async with session_factory() as session:
        with pytest.raises(ClaimNotDeliverable):
            await _dispatcher(session, sms=InMemorySMSBackend()).deliver(claim.claim_id, "sms", "+1555")


@pytest.mark.asyncio
async def test_failed_unit_is_not_sent(session_factory):
    claim = await _claimed(session_factory)
    async with session_factory() as session:
        await InventoryStore(session).mark_failed(claim.inventory_unit_id, "voided by operator")
        await session.commit()

    sms = InMemorySMSBackend()
    async with session_factory() as session:
        with pytest.raises(ClaimNotDeliverable) as excinfo:
            await _dispatcher(session, sms=sms).deliver(claim.claim_id, "sms", "+15550001111")

    assert excinfo.value.unit_status == "failed"
    assert sms.calls == 0
    assert await _attempts(session_factory, claim.claim_id) == []


@pytest.mark.asyncio
async def test_sent_attempt_survives_rejected_unit_transition(file_session_factory):
    session_factory = file_session_factory
    claim = await _claimed(session_factory)

    class VoidingSMSBackend(InMemorySMSBackend):
        """Fails the unit mid-send, as an operator acting concurrently would."""

        async def send_sms(self, recipient: str, body_text: str) -> str | None:
            async with session_factory() as other:
                await InventoryStore(other).mark_failed(claim.inventory_unit_id, "voided by operator")
                await other.commit()
            return await super().send_sms(recipient, body_text)

    sms = VoidingSMSBackend()
    async with session_factory() as session:
        with pytest.raises(InvalidStateTransition):
            await _dispatcher(session, sms=sms).deliver(claim.claim_id, "sms", "+15550001111")

    assert len(sms.sent_messages) == 1
    [attempt] = await _attempts(session_factory, claim.claim_id)
    assert attempt.status == DeliveryAttemptStatusEnum.SENT

    async with session_factory() as session:
        again = await _dispatcher(session, sms=sms).deliver(claim.claim_id, "sms", "+15550001111")
    assert again == DeliveryOutcome.DELIVERED
    assert len(sms.sent_messages) == 1


def test_backoff_delay_is_capped():
    assert [backoff_delay(n, base=2.0, maximum=10.0) for n in range(1, 6)] == [2.0, 4.0, 8.0, 10.0, 10.0]


def _twilio(handler) -> tuple[TwilioSMSBackend, httpx.AsyncClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    backend = TwilioSMSBackend(
        account_sid="AC123",
        auth_token="token",
        from_number="+15550009999",
        base_url="https://twilio.test",
        http_client=http_client,
    )
    return backend, http_client


@pytest.mark.asyncio
async def test_twilio_backend_posts_form_and_returns_sid():
    captured: dict[str, httpx.Request] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["request"] = request
        return httpx.Response(201, json={"sid": "SM42", "status": "queued"})

    backend, http_client = _twilio(handler)
    async with http_client:
        message_id = await backend.send_sms("+15550001111", "hello")

    assert message_id == "SM42"
    request = captured["request"]
    assert request.url.path == "/2010-04-01/Accounts/AC123/Messages.json"
    form = parse_qs(request.content.decode())
    assert form == {"To": ["+15550001111"], "From": ["+15550009999"], "Body": ["hello"]}
    assert request.headers["Authorization"].startswith("Basic ")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "expected"),
    [(429, TransientDeliveryError), (503, TransientDeliveryError), (400, PermanentDeliveryError)],
)
async def test_twilio_backend_classifies_errors(status_code, expected):
    backend, http_client = _twilio(
        lambda request: httpx.Response(status_code, json={"code": 21211, "message": "rejected"})
    )
    async with http_client:
        with pytest.raises(expected) as excinfo:
            await backend.send_sms("+15550001111", "hello")

    assert excinfo.value.provider == "twilio"


@pytest.mark.asyncio
async def test_twilio_backend_timeout_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("connect timeout", request=request)

    backend, http_client = _twilio(handler)
    async with http_client:
        with pytest.raises(TransientDeliveryError):
            await backend.send_sms("+15550001111", "hello")


def _infobip(handler) -> tuple[InfobipSMSBackend, httpx.AsyncClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    backend = InfobipSMSBackend(
        api_key="ib-key",
        base_url="https://infobip.test",
        sender_id="Rewards",
        http_client=http_client,
    )
    return backend, http_client


@pytest.mark.asyncio
async def test_infobip_backend_posts_json_and_returns_message_id():
    captured: dict[str, httpx.Request] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["request"] = request
        return httpx.Response(
            200,
            json={"messages": [{"messageId": "IB-1", "status": {"groupName": "PENDING", "name": "PENDING_ACCEPTED"}}]},
        )

    backend, http_client = _infobip(handler)
    async with http_client:
        message_id = await backend.send_sms("+15550001111", "hello")

    assert message_id == "IB-1"
    request = captured["request"]
    assert request.url.path == "/sms/2/text/advanced"
    assert request.headers["Authorization"] == "App ib-key"
    assert json.loads(request.content) == {
        "messages": [{"destinations": [{"to": "15550001111"}], "text": "hello", "from": "Rewards"}]
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "expected"),
    [(429, TransientDeliveryError), (502, TransientDeliveryError), (401, PermanentDeliveryError)],
)
async def test_infobip_backend_classifies_errors(status_code, expected):
    body = {"requestError": {"serviceException": {"messageId": "UNAUTHORIZED", "text": "Invalid login details"}}}
    backend, http_client = _infobip(lambda request: httpx.Response(status_code, json=body))
    async with http_client:
        with pytest.raises(expected) as excinfo:
            await backend.send_sms("+15550001111", "hello")

    assert excinfo.value.provider == "infobip"
    assert str(excinfo.value) == "Invalid login details"


@pytest.mark.asyncio
async def test_infobip_rejected_status_is_permanent():
    backend, http_client = _infobip(
        lambda request: httpx.Response(
            200,
            json={
                "messages": [
                    {
                        "messageId": "IB-2",
                        "status": {"groupName": "REJECTED", "id": 6, "description": "Destination not registered"},
                    }
                ]
            },
        )
    )
    async with http_client:
        with pytest.raises(PermanentDeliveryError, match="Destination not registered"):
            await backend.send_sms("+15550001111", "hello")


class _NamedSMSBackend(InMemorySMSBackend):
    def __init__(self, provider: str, failures=None) -> None:
        super().__init__(failures=failures)
        self.provider = provider


@pytest.mark.asyncio
async def test_fallback_backend_uses_second_provider_when_primary_fails():
    primary = _NamedSMSBackend("infobip", failures=[TransientDeliveryError("Infobip returned HTTP 503")])
    fallback = _NamedSMSBackend("twilio")
    backend = FallbackSMSBackend(primary, fallback)

    message_id = await backend.send_sms("+15550001111", "hello")

    assert message_id.startswith("SM")
    assert primary.calls == 1
    assert fallback.sent_messages == [("+15550001111", "hello")]
    assert backend.provider == "twilio"
    assert backend.fallback_used is True


@pytest.mark.asyncio
async def test_fallback_backend_without_fallback_on_error_reraises():
    primary = _NamedSMSBackend("infobip", failures=[TransientDeliveryError("timeout", provider="infobip")])
    fallback = _NamedSMSBackend("twilio")
    backend = FallbackSMSBackend(primary, fallback, fallback_on_error=False)

    with pytest.raises(TransientDeliveryError) as excinfo:
        await backend.send_sms("+15550001111", "hello")

    assert excinfo.value.provider == "infobip"
    assert fallback.calls == 0


@pytest.mark.asyncio
async def test_fallback_backend_reports_both_failures():
    primary = _NamedSMSBackend("infobip", failures=[PermanentDeliveryError("bad number")])
    fallback = _NamedSMSBackend("twilio", failures=[PermanentDeliveryError("Invalid 'To' phone number", code="21211")])
    backend = FallbackSMSBackend(primary, fallback)

    with pytest.raises(PermanentDeliveryError) as excinfo:
        await backend.send_sms("+15550001111", "hello")

    assert "infobip: bad number" in str(excinfo.value)
    assert "twilio: Invalid 'To' phone number" in str(excinfo.value)
    assert excinfo.value.provider == "twilio"
    assert excinfo.value.code == "21211"


@pytest.mark.asyncio
async def test_dispatcher_records_provider_that_sent(session_factory):
    claim = await _claimed(session_factory)
    sms = FallbackSMSBackend(
        _NamedSMSBackend("infobip", failures=[TransientDeliveryError("Infobip returned HTTP 503")]),
        _NamedSMSBackend("twilio"),
    )

    async with session_factory() as session:
        outcome = await _dispatcher(session, sms=sms).deliver(claim.claim_id, "sms", "+15550001111")

    assert outcome == DeliveryOutcome.DELIVERED
    [attempt] = await _attempts(session_factory, claim.claim_id)
    assert attempt.status == DeliveryAttemptStatusEnum.SENT
    assert attempt.provider == "twilio"


def test_build_sms_backend_wraps_primary_with_fallback():
    config = Settings(
        infobip_api_key="ib-key",
        twilio_account_sid="AC123",
        twilio_auth_token="token",
        twilio_from_number="+15550009999",
    )

    backend = build_sms_backend(config)

    assert isinstance(backend, FallbackSMSBackend)
    assert backend.provider == "infobip"


def test_build_sms_backend_without_fallback_returns_primary_only():
    config = Settings(
        infobip_api_key="ib-key",
        twilio_account_sid="AC123",
        twilio_auth_token="token",
        twilio_from_number="+15550009999",
        sms_enable_fallback=False,
    )

    assert isinstance(build_sms_backend(config), InfobipSMSBackend)


def test_build_sms_backend_uses_fallback_when_primary_unconfigured():
    config = Settings(
        infobip_api_key=None,
        twilio_account_sid="AC123",
        twilio_auth_token="token",
        twilio_from_number="+15550009999",
    )

    assert isinstance(build_sms_backend(config), TwilioSMSBackend)
