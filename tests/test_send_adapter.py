"""
Send adapter tests with a mocked Twilio client.
"""
import time
from unittest.mock import MagicMock

import pytest
from twilio.base.exceptions import TwilioRestException

from invite_dispatch.errors import SendError
from invite_dispatch.models.invitation import ProviderStatus
from invite_dispatch.services.error_classifier import ErrorCategory
from invite_dispatch.services.invitation_service import InvitationService
from invite_dispatch.services.send_adapter import SendAdapter, whatsapp_address
from invite_dispatch.services.template_service import TemplateService

VARIABLES = {"guest_name": "Carla", "event_name": "Ana & Ben"}


def make_adapter(db, client, **kwargs) -> SendAdapter:
    return SendAdapter(client, InvitationService(db), TemplateService(db), **kwargs)


async def send(adapter, channel="whatsapp", template_name="wedding_invite"):
    return await adapter.send(
        to="+5511999990001",
        template_name=template_name,
        variables=VARIABLES,
        guest_id="g1",
        event_id="e1",
        channel=channel,
    )


def test_whatsapp_address_is_idempotent():
    assert whatsapp_address("+14155238886") == "whatsapp:+14155238886"
    assert whatsapp_address("whatsapp:+14155238886") == "whatsapp:+14155238886"


@pytest.mark.asyncio
async def test_whatsapp_send_renders_and_records_submission(db, template):
    client = MagicMock()
    client.messages.create.return_value = MagicMock(sid="SM42")

    sid = await send(make_adapter(db, client))

    assert sid == "SM42"
    client.messages.create.assert_called_once_with(
        from_="whatsapp:+14155238886",
        to="whatsapp:+5511999990001",
        body="Hi Carla, you're invited to Ana & Ben! {{rsvp_link}}",
        status_callback="https://invites.example.com/api/whatsapp/webhook",
    )
    invitation = await InvitationService(db).get_by_event_guest("e1", "g1")
    assert invitation.provider_status == ProviderStatus.SENT.value
    assert invitation.provider_message_id == "SM42"
    assert invitation.rendered_content.startswith("Hi Carla")
    assert invitation.template_variables == VARIABLES


@pytest.mark.asyncio
async def test_sms_send_uses_plain_numbers(db, template):
    client = MagicMock()
    client.messages.create.return_value = MagicMock(sid="SM43")

    await send(make_adapter(db, client), channel="sms")

    kwargs = client.messages.create.call_args.kwargs
    assert kwargs["from_"] == "+14155550000"
    assert kwargs["to"] == "+5511999990001"


@pytest.mark.asyncio
async def test_provider_error_is_classified_and_recorded(db, template):
    client = MagicMock()
    client.messages.create.side_effect = TwilioRestException(
        429, "https://api.twilio.com/Messages.json", msg="Too many requests for +5511999990001", code=63010
    )

    with pytest.raises(SendError) as exc_info:
        await send(make_adapter(db, client))

    error = exc_info.value
    assert error.code == 63010
    assert error.retryable is True
    assert error.classification.category == ErrorCategory.RATE_LIMIT
    assert "+5511999990001" not in str(error)

    invitation = await InvitationService(db).get_by_event_guest("e1", "g1")
    assert invitation.provider_status == ProviderStatus.FAILED.value
    assert invitation.error_code == "63010"
    assert invitation.error_message == str(error)
    assert invitation.failed_at is not None


@pytest.mark.asyncio
async def test_network_error_is_transient(db, template):
    client = MagicMock()
    client.messages.create.side_effect = ConnectionError("connection reset")

    with pytest.raises(SendError) as exc_info:
        await send(make_adapter(db, client))

    assert exc_info.value.classification.category == ErrorCategory.TRANSIENT
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_slow_provider_times_out(db, template):
    client = MagicMock()
    client.messages.create.side_effect = lambda **kwargs: time.sleep(0.5)

    with pytest.raises(SendError) as exc_info:
        await send(make_adapter(db, client, timeout=0.05))

    assert exc_info.value.classification.category == ErrorCategory.TRANSIENT


@pytest.mark.asyncio
async def test_missing_template_is_terminal_and_not_submitted(db, template):
    client = MagicMock()

    with pytest.raises(SendError) as exc_info:
        await send(make_adapter(db, client), template_name="missing")

    assert exc_info.value.classification.category == ErrorCategory.TEMPLATE
    assert exc_info.value.retryable is False
    client.messages.create.assert_not_called()


@pytest.mark.asyncio
async def test_resend_clears_previous_outcome(db, template):
    client = MagicMock()
    client.messages.create.side_effect = TwilioRestException(
        500, "https://api.twilio.com/Messages.json", msg="internal", code=30003
    )
    adapter = make_adapter(db, client)
    with pytest.raises(SendError):
        await send(adapter)

    client.messages.create.side_effect = None
    client.messages.create.return_value = MagicMock(sid="SM44")
    await send(adapter)

    invitation = await InvitationService(db).get_by_event_guest("e1", "g1")
    assert invitation.provider_status == ProviderStatus.SENT.value
    assert invitation.error_code is None
    assert invitation.failed_at is None
