"""
Send functions the dispatcher runs, one per payload variant.
"""
from invite_dispatch.errors import SendError
from invite_dispatch.models.job import Job, SmsSendPayload, WhatsAppSendPayload
from invite_dispatch.services.dispatcher import SendResult
from invite_dispatch.services.send_adapter import SendAdapter


class MessageJobHandler:
    """Routes a job to the adapter by the variant of its payload."""

    def __init__(self, adapter: SendAdapter):
        self.adapter = adapter
        self._channels = {
            WhatsAppSendPayload: "whatsapp",
            SmsSendPayload: "sms",
        }

    async def __call__(self, job: Job) -> SendResult:
        channel = self._channels.get(type(job.payload))
        if channel is None:
            raise TypeError(f"No handler for payload {type(job.payload).__name__}")

        payload = job.payload
        try:
            sid = await self.adapter.send(
                to=payload.recipient.phone,
                template_name=payload.template_name,
                variables=payload.variables,
                guest_id=payload.recipient.guest_id,
                event_id=payload.recipient.event_id,
                channel=channel,
            )
        except SendError as exc:
            return SendResult.from_classification(exc.classification)

        return SendResult.ok({"provider_message_id": sid})
