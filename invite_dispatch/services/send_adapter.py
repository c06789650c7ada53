"""
Send adapter: renders a template, submits it to Twilio and records the
attempt on the invitation.

Provider failures come back as SendError carrying the classifier's
verdict. Raw provider text is logged, never returned.
"""
import asyncio

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from invite_dispatch.config import settings
from invite_dispatch.errors import SendError
from invite_dispatch.logging_config import get_logger
from invite_dispatch.services import error_classifier
from invite_dispatch.services.invitation_service import InvitationService
from invite_dispatch.services.template_service import TemplateService, render

WHATSAPP_PREFIX = "whatsapp:"


def create_twilio_client() -> Client:
    return Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)


def whatsapp_address(number: str) -> str:
    """Twilio addresses WhatsApp endpoints as ``whatsapp:+E164``."""
    if number.startswith(WHATSAPP_PREFIX):
        return number
    return f"{WHATSAPP_PREFIX}{number}"


class SendAdapter:
    """One provider submission per ``send`` call."""

    def __init__(
        self,
        client: Client,
        invitations: InvitationService,
        templates: TemplateService,
        whatsapp_from: str | None = None,
        sms_from: str | None = None,
        status_callback: str | None = None,
        timeout: float | None = None,
    ):
        self.client = client
        self.invitations = invitations
        self.templates = templates
        self.whatsapp_from = whatsapp_from or settings.TWILIO_WHATSAPP_NUMBER
        self.sms_from = sms_from or settings.TWILIO_SMS_NUMBER
        self.status_callback = status_callback or settings.TWILIO_STATUS_CALLBACK_URL
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS

    def _addresses(self, to: str, channel: str) -> tuple[str, str]:
        if channel == "whatsapp":
            return whatsapp_address(self.whatsapp_from), whatsapp_address(to)
        return self.sms_from, to

    def _create_message(self, from_: str, to: str, body: str):
        params = {"from_": from_, "to": to, "body": body}
        if self.status_callback:
            params["status_callback"] = self.status_callback
        return self.client.messages.create(**params)

    async def send(
        self,
        *,
        to: str,
        template_name: str,
        variables: dict[str, str],
        guest_id: str,
        event_id: str,
        channel: str = "whatsapp",
    ) -> str:
        """
        Submit one message and return the provider message id.

        The invitation for (event_id, guest_id) is written whether the
        submission succeeds or fails. Raises SendError on failure.
        """
        log = get_logger(guest_id=guest_id, event_id=event_id, channel=channel)

        template = await self.templates.load_template(template_name)
        if template is None:
            log.warning("template_not_found", template_name=template_name)
            raise SendError(error_classifier.TEMPLATE_NOT_FOUND)

        body = render(template.content, variables)
        invitation = await self.invitations.upsert_pending(
            event_id=event_id,
            guest_id=guest_id,
            template_name=template_name,
            variables=variables,
            rendered_content=body,
            to_number=to,
            channel=channel,
        )

        from_, to_address = self._addresses(to, channel)
        try:
            message = await asyncio.wait_for(
                asyncio.to_thread(self._create_message, from_, to_address, body),
                timeout=self.timeout,
            )
        except TwilioRestException as exc:
            classification = error_classifier.classify(exc.code)
            log.warning(
                "provider_send_failed",
                invitation_id=invitation.id,
                status=exc.status,
                **error_classifier.format_for_logging(classification, exc.msg),
            )
            await self.invitations.record_send_failure(
                invitation, classification.code, classification.user_message
            )
            raise SendError(classification, exc.msg) from exc
        except (asyncio.TimeoutError, TwilioException, OSError) as exc:
            classification = error_classifier.NETWORK_ERROR
            log.warning(
                "provider_unreachable",
                invitation_id=invitation.id,
                error=repr(exc),
                **error_classifier.format_for_logging(classification),
            )
            await self.invitations.record_send_failure(
                invitation, classification.code, classification.user_message
            )
            raise SendError(classification, str(exc)) from exc

        await self.invitations.record_submission(invitation, message.sid)
        log.info("provider_send_accepted", invitation_id=invitation.id, provider_message_id=message.sid)
        return message.sid
