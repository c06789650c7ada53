"""
Provider webhook routes.

Twilio posts message status callbacks here. A bad signature gets 403;
everything else is acknowledged with 200 so Twilio does not redeliver
callbacks we have already logged.
"""
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from invite_dispatch.config import settings
from invite_dispatch.dependencies.dispatch import get_webhook_reconciler
from invite_dispatch.errors import WebhookAuthenticationError, WebhookPayloadError
from invite_dispatch.routes import metrics
from invite_dispatch.sentry_config import capture_exception
from invite_dispatch.services.webhook_reconciler import WebhookReconciler

logger = structlog.get_logger()

router = APIRouter(prefix="/api/whatsapp", tags=["webhooks"])


def signed_url(request: Request) -> str:
    """The URL Twilio signed; behind a proxy this is the public one."""
    return settings.WEBHOOK_PUBLIC_URL or str(request.url)


@router.post("/webhook", response_model=dict)
async def status_callback(
    request: Request,
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
):
    """Receive a Twilio message status callback."""
    raw_body = await request.body()
    signature = request.headers.get("X-Twilio-Signature")

    try:
        ack = await reconciler.handle_status_callback(signature, signed_url(request), raw_body)
    except WebhookAuthenticationError as e:
        logger.warning("webhook_rejected", reason=str(e))
        metrics.track_webhook_callback("unknown", "rejected")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid signature"
        )
    except WebhookPayloadError as e:
        logger.warning("webhook_payload_invalid", reason=str(e))
        metrics.track_webhook_callback("unknown", "invalid")
        return {"status": "ignored"}
    except Exception as e:
        logger.exception("webhook_processing_failed", error=str(e))
        capture_exception()
        return {"status": "error"}

    return {"status": ack.outcome}
