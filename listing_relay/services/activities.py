from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from listing_relay.core.metrics import MetricsCollector
from listing_relay.services.events import EventBus
from listing_relay.services.ports import ActivityStore
from listing_relay.services.records import ACTIVITY_CALL_SUMMARY, EVENT_CRM_ACTIVITY, CrmActivity

logger = logging.getLogger(__name__)


class ActivityService:
    def __init__(
        self,
        *,
        store: ActivityStore,
        bus: EventBus,
        metrics: MetricsCollector,
        lookback: int = 100,
    ) -> None:
        self.store = store
        self.bus = bus
        self.metrics = metrics
        self.lookback = max(1, lookback)

    async def record(
        self,
        activity_type: str,
        *,
        lead_id: str | None = None,
        user_id: str | None = None,
        property_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        emit_webhook: bool = True,
    ) -> CrmActivity:
        activity = await self.store.create_activity(
            CrmActivity(
                activity_id=str(uuid4()),
                type=activity_type,
                metadata=dict(metadata or {}),
                lead_id=lead_id,
                user_id=user_id,
                property_id=property_id,
            )
        )
        self.metrics.incr("crm_activities_total", type=activity_type)
        logger.info("crm activity recorded activity_id=%s type=%s", activity.activity_id, activity_type)
        if emit_webhook:
            await self.bus.emit(EVENT_CRM_ACTIVITY, activity.to_event_payload())
        return activity

    async def find_call_summary(self, call_sid: str) -> CrmActivity | None:
        recent = await self.store.list_recent_activities(activity_type=ACTIVITY_CALL_SUMMARY, limit=self.lookback)
        for activity in recent:
            if activity.metadata.get("callSid") == call_sid:
                return activity
        return None

    async def emit_call_summary(
        self,
        *,
        call_sid: str,
        summary: str,
        score: float | None = None,
        tags: list[str] | None = None,
        lead_id: str | None = None,
        user_id: str | None = None,
        force: bool = False,
    ) -> tuple[CrmActivity, bool]:
        """Record a ``call.summary`` activity once per ``call_sid`` unless ``force`` is set.

        Returns the activity and whether a new one was recorded and emitted.
        """
        if not force:
            existing = await self.find_call_summary(call_sid)
            if existing is not None:
                logger.info(
                    "call summary already recorded call_sid=%s activity_id=%s",
                    call_sid,
                    existing.activity_id,
                )
                return existing, False

        metadata: dict[str, Any] = {"callSid": call_sid, "summary": summary, "tags": list(tags or [])}
        if score is not None:
            metadata["score"] = score
        activity = await self.record(
            ACTIVITY_CALL_SUMMARY,
            lead_id=lead_id,
            user_id=user_id,
            metadata=metadata,
        )
        return activity, True
