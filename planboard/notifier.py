"""
notifier.py - publish change events after a mutation has been committed.

Publishing is best effort: the write already succeeded, so a failed publish
is logged and reported as False, never raised to the request handler.
"""

import logging
from datetime import timedelta

from .events import ChangeEvent, EventKind, channel_for, utcnow
from .persistence import utc_timestamp
from .suppression import SuppressionFilter


logger = logging.getLogger(__name__)


class ChangeNotifier:
    def __init__(self, transport, repository=None, duplicate_window=60.0, suppression=None):
        self.transport = transport
        self.repository = repository
        self.duplicate_window = duplicate_window
        self.suppression = suppression or SuppressionFilter(ttl=duplicate_window)

    @classmethod
    def from_settings(cls, transport, repository, settings):
        return cls(transport, repository,
                   duplicate_window=settings.notification_dedup_window,
                   suppression=SuppressionFilter.from_settings(settings))

    def notify(self, kind, entity_id, payload):
        return self.publish(ChangeEvent.create(kind, entity_id, payload))

    def publish(self, event):
        try:
            if event.kind is EventKind.NOTIFICATION_CREATED:
                data = event.payload
                if self.has_recent_duplicate(data.get("order_id"), data.get("topic"),
                                             data.get("user_id"), before_id=data.get("id")):
                    logger.info("Skipping duplicate notification for order %s: %s",
                                data.get("order_id"), data.get("topic"))
                    return False
                if not self.suppression.should_process(event):
                    return False
            self.transport.publish(channel_for(event.kind), event)
            return True
        except Exception:
            logger.exception("Failed to publish %s for %s", event.kind.value, event.entity_id)
            return False

    def has_recent_duplicate(self, order_id, topic, user_id=None, before_id=None):
        """True when an identical notification was stored within the window.

        `before_id` limits the search to rows created earlier than the one
        being published, so of two racing requests the first one still goes
        out.
        """
        if self.repository is None or order_id is None or not topic:
            return False
        since = utc_timestamp(utcnow() - timedelta(seconds=self.duplicate_window))
        filters = {"order_id": order_id, "topic": topic, "created_at__gte": since}
        if user_id is not None:
            filters["user_id"] = user_id
        if before_id is not None:
            filters["id__lt"] = before_id
        return bool(self.repository.read_many("notifications", filters, limit=1))
