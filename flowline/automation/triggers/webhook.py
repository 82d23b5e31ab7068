"""
Flowline Webhook Trigger Handler

Inbound HTTP calls routed to workflows by path and method.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Any, Dict, Optional

import structlog

from flowline.automation.errors import TriggerEvaluationError
from flowline.automation.types import Trigger, WebhookAuthType
from flowline.automation.triggers.manager import BaseTriggerHandler, Stimulus

logger = structlog.get_logger(__name__)


def _normalize_path(path: Optional[str]) -> str:
    return "/" + (path or "").strip("/")


class WebhookTriggerHandler(BaseTriggerHandler):
    """
    Handler for webhook triggers.

    A call matches when its path and method agree with the trigger, every
    required header is present (with the configured value, where one is
    given) and the call authenticates. A call that fails authentication
    is simply not a match; a trigger whose credentials are not configured
    cannot be evaluated at all.

    Credentials by authentication type:
    - basic: ``username``, ``password``
    - bearer: ``token``
    - api_key: ``key``, optional ``header`` (default ``x-api-key``)
    - signature: ``secret``, optional ``header`` (default ``x-signature``)
      and ``algorithm`` (``sha256`` or ``sha1``)
    """

    REQUIRED_CREDENTIALS = {
        WebhookAuthType.BASIC: ("username", "password"),
        WebhookAuthType.BEARER: ("token",),
        WebhookAuthType.API_KEY: ("key",),
        WebhookAuthType.SIGNATURE: ("secret",),
    }

    def validate(self, trigger: Trigger) -> None:
        config = trigger.webhook
        if config is None or not config.path:
            raise TriggerEvaluationError("Webhook trigger has no path", trigger_id=trigger.id)

        missing = [
            name for name in self.REQUIRED_CREDENTIALS.get(config.authentication, ())
            if not config.credentials.get(name)
        ]
        if missing:
            raise TriggerEvaluationError(
                f"Webhook {config.authentication.value} authentication is missing: {', '.join(missing)}",
                trigger_id=trigger.id,
            )

    async def evaluate(
        self,
        workflow_id: str,
        trigger: Trigger,
        stimulus: Stimulus,
    ) -> Optional[Dict[str, Any]]:
        self.validate(trigger)
        config = trigger.webhook

        if _normalize_path(config.path) != _normalize_path(stimulus.path):
            return None
        if config.method.upper() != (stimulus.method or "").upper():
            return None

        headers = {k.lower(): v for k, v in stimulus.headers.items()}
        for name, expected in config.required_headers.items():
            value = headers.get(name.lower())
            if value is None or (expected is not None and value != expected):
                logger.debug("webhook_header_mismatch", trigger_id=trigger.id, header=name)
                return None

        if not self._authenticate(config.authentication, config.credentials, headers, stimulus.body):
            logger.warning(
                "webhook_authentication_failed",
                trigger_id=trigger.id,
                auth=config.authentication.value,
            )
            return None

        return {
            "body": dict(stimulus.payload),
            "headers": headers,
            "path": stimulus.path,
            "method": stimulus.method.upper(),
        }

    def _authenticate(
        self,
        auth: WebhookAuthType,
        credentials: Dict[str, str],
        headers: Dict[str, str],
        body: bytes,
    ) -> bool:
        if auth == WebhookAuthType.NONE:
            return True

        if auth == WebhookAuthType.BASIC:
            header = headers.get("authorization", "")
            if not header.lower().startswith("basic "):
                return False
            try:
                decoded = base64.b64decode(header[6:].strip()).decode("utf-8")
            except (ValueError, UnicodeDecodeError):
                return False
            expected = f"{credentials['username']}:{credentials['password']}"
            return hmac.compare_digest(decoded, expected)

        if auth == WebhookAuthType.BEARER:
            header = headers.get("authorization", "")
            if not header.lower().startswith("bearer "):
                return False
            return hmac.compare_digest(header[7:].strip(), credentials["token"])

        if auth == WebhookAuthType.API_KEY:
            provided = headers.get(credentials.get("header", "x-api-key").lower())
            return provided is not None and hmac.compare_digest(provided, credentials["key"])

        if auth == WebhookAuthType.SIGNATURE:
            signature = headers.get(credentials.get("header", "x-signature").lower())
            if not signature:
                return False
            return self.validate_signature(
                body,
                signature,
                credentials["secret"],
                credentials.get("algorithm", "sha256"),
            )

        return False

    @staticmethod
    def validate_signature(
        payload: bytes,
        signature: str,
        secret: str,
        algorithm: str = "sha256",
    ) -> bool:
        """
        Validate an HMAC signature over the raw request body.

        Accepts both a bare hex digest and the ``sha256=<digest>`` form.
        """
        if algorithm == "sha256":
            digestmod = hashlib.sha256
        elif algorithm == "sha1":
            digestmod = hashlib.sha1
        else:
            return False

        expected = hmac.new(secret.encode(), payload, digestmod).hexdigest()
        if "=" in signature:
            signature = signature.split("=", 1)[1]

        return hmac.compare_digest(expected, signature)
