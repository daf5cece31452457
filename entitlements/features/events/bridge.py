"""
entitlements/features/events/bridge.py

In-process event bridge.

Delivers lifecycle events to subscribed handlers synchronously, in
subscription order. Payloads are validated against the event's model
before any handler runs; each delivery is logged under the event id as
correlation id. Handler failures propagate so the upstream transport can
redeliver (every handler is idempotent).
"""

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from entitlements.core.errors import UnknownEventError, ValidationError
from entitlements.core.logging import correlation_scope
from entitlements.models.events import EVENT_PAYLOADS

logger = logging.getLogger(__name__)

Handler = Callable[[BaseModel], None]


class EventBridge:
    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: Handler) -> None:
        if event_type not in EVENT_PAYLOADS:
            raise UnknownEventError(f"Unknown event type: {event_type}")
        self._handlers[event_type].append(handler)

    def handlers(self, event_type: str) -> List[Handler]:
        return list(self._handlers.get(event_type, ()))

    def publish(
        self,
        event_type: str,
        payload: Union[BaseModel, Mapping[str, Any]],
        event_id: Optional[str] = None,
    ) -> int:
        """
        Validate the payload and run every handler for `event_type`.

        Returns:
            Number of handlers that ran

        Raises:
            UnknownEventError: event type has no payload model
            ValidationError: payload does not match the model
        """
        model = EVENT_PAYLOADS.get(event_type)
        if model is None:
            raise UnknownEventError(f"Unknown event type: {event_type}")

        if isinstance(payload, model):
            event = payload
        else:
            data = payload.model_dump() if isinstance(payload, BaseModel) else dict(payload)
            try:
                event = model.model_validate(data)
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid {event_type} payload: {exc}") from exc

        handlers = self.handlers(event_type)
        with correlation_scope(event_id) as cid:
            account_id = getattr(event, "account_id", None)
            logger.info(
                "delivering %s to %s handler(s)",
                event_type,
                len(handlers),
                extra={"event_type": event_type, "account_id": account_id},
            )
            for handler in handlers:
                try:
                    handler(event)
                except Exception as exc:
                    logger.error(
                        "event handler %s failed: %s",
                        getattr(handler, "__qualname__", repr(handler)),
                        exc,
                        extra={
                            "event_type": event_type,
                            "account_id": account_id,
                            "error_code": getattr(exc, "code", None),
                        },
                    )
                    raise
            logger.debug("event %s delivered", cid, extra={"event_type": event_type})
        return len(handlers)
