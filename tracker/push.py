# tracker/push.py
import os
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence

from pywebpush import WebPushException, webpush

from .logger import get_logger
from .models import Subscription

logger = get_logger(__name__)

VAPID_PUBLIC_KEY = os.getenv("VAPID_PUBLIC_KEY", "").strip()
VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY", "").strip()
VAPID_SUBJECT = os.getenv("VAPID_SUBJECT", "mailto:admin@example.com").strip()
PUSH_TTL = int(os.getenv("PUSH_TTL", "86400"))
PUSH_TIMEOUT = float(os.getenv("PUSH_TIMEOUT", "10"))
PUSH_MAX_WORKERS = int(os.getenv("PUSH_MAX_WORKERS", "8"))

# Push services answer these for unsubscribed/expired endpoints
EXPIRED_STATUSES = (404, 410)


class PushConfigError(Exception):
    """VAPID keys are missing."""


class PushSender:
    def __init__(
        self,
        private_key: str = VAPID_PRIVATE_KEY,
        subject: str = VAPID_SUBJECT,
        public_key: str = VAPID_PUBLIC_KEY,
    ):
        if not (private_key and public_key):
            raise PushConfigError("VAPID_PUBLIC_KEY and VAPID_PRIVATE_KEY must be set")
        self.private_key = private_key
        self.public_key = public_key
        self.subject = subject

    def send(self, subscription: Subscription, payload: str) -> None:
        webpush(
            subscription_info=subscription.subscription_info(),
            data=payload,
            vapid_private_key=self.private_key,
            # pywebpush adds aud/exp to the claims dict it is given
            vapid_claims={"sub": self.subject},
            ttl=PUSH_TTL,
            timeout=PUSH_TIMEOUT,
        )


def _deliver(sender: PushSender, sub: Subscription, payload: str) -> Optional[str]:
    try:
        sender.send(sub, payload)
        logger.debug("Push delivered to %s", sub.endpoint)
        return None
    except WebPushException as e:
        status = getattr(e.response, "status_code", None)
        if status in EXPIRED_STATUSES:
            logger.warning("Push endpoint expired (%s): %s", status, sub.endpoint)
            return f"Push endpoint expired ({status}): {sub.endpoint}"
        logger.error("Push delivery failed for %s: %s", sub.endpoint, e)
        return f"Push delivery failed for {sub.endpoint}: {e}"
    except Exception as e:
        logger.exception("Push delivery error for %s: %s", sub.endpoint, e)
        return f"Push delivery failed for {sub.endpoint}: {e}"


def fan_out(sender: PushSender, subscriptions: Sequence[Subscription], payload: str) -> List[str]:
    """
    Send payload to every subscription at once and wait for all of them.
    Returns one diagnostic per failed delivery.
    """
    if not subscriptions:
        return []
    workers = max(1, min(PUSH_MAX_WORKERS, len(subscriptions)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(lambda s: _deliver(sender, s, payload), subscriptions))
    return [r for r in results if r]
