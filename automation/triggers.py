"""
Trigger configuration and matching rules.

Pure functions: deciding whether an inbound message or domain event should
start a workflow, and when a time-based workflow fires next. Creating runs is
the job of ``api_server.services.triggers``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field

from automation.conditions import evaluate_conditions
from automation.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)


class TriggerEventType(str, Enum):
    # Message events
    MESSAGE_RECEIVED = "message.received"
    MESSAGE_SENT = "message.sent"

    # Contact events
    CONTACT_CREATED = "contact.created"
    CONTACT_UPDATED = "contact.updated"
    CONTACT_TAG_ADDED = "contact.tag.added"
    CONTACT_TAG_REMOVED = "contact.tag.removed"
    CONTACT_CONSENT_UPDATED = "contact.consent.updated"

    # Campaign events
    CAMPAIGN_SENT = "campaign.sent"
    CAMPAIGN_OPENED = "campaign.opened"
    CAMPAIGN_CLICKED = "campaign.clicked"

    # Engine-originated
    MANUAL = "manual"
    SCHEDULE_DUE = "schedule.due"


class MessageChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"
    PUSH = "push"


class TriggerCondition(BaseModel):
    field: str
    operator: str
    value: Any = None


class TriggerConfig(BaseModel):
    """Trigger filters; which keys apply depends on the workflow's trigger type."""

    model_config = ConfigDict(populate_by_name=True)

    # incoming_message
    channels: Optional[List[str]] = None
    keywords: Optional[List[str]] = None
    match_type: Literal["any", "all", "exact"] = Field("any", alias="matchType")

    # event_based
    event_types: Optional[List[str]] = Field(None, alias="eventTypes")
    conditions: Optional[List[TriggerCondition]] = None

    # time_based
    cron_expression: Optional[str] = Field(None, alias="cronExpression")
    timezone: Optional[str] = None
    start_date: Optional[datetime] = Field(None, alias="startDate")
    end_date: Optional[datetime] = Field(None, alias="endDate")
    segment_id: Optional[str] = Field(None, alias="segmentId")


def parse_trigger_config(raw: Optional[Dict[str, Any]]) -> Optional[TriggerConfig]:
    if raw is None:
        return None
    return TriggerConfig.model_validate(raw)


def match_incoming_message(config: Optional[TriggerConfig], channel: str, content: str) -> bool:
    """
    Channel allow-list, then keywords.

    No config matches every message. Keywords compare case-insensitively:
    ``any`` and ``all`` look for substrings, ``exact`` compares the whole content.
    """
    if config is None:
        return True

    if config.channels and channel not in config.channels:
        return False

    if config.keywords:
        text = (content or "").lower()
        keywords = [k.lower() for k in config.keywords]
        if config.match_type == "exact":
            return any(text == k for k in keywords)
        if config.match_type == "all":
            return all(k in text for k in keywords)
        return any(k in text for k in keywords)

    return True


def match_event(config: Optional[TriggerConfig], event_type: str, payload: Dict[str, Any]) -> bool:
    """
    Event-type allow-list, then every extra condition.

    No config matches nothing. Condition fields are paths inside the event
    payload.
    """
    if config is None:
        return False

    if config.event_types and event_type not in config.event_types:
        return False

    if config.conditions:
        context = {"triggerEvent": {"type": event_type, "payload": payload or {}}}
        conditions = [
            {"field": f"triggerEvent.payload.{c.field}", "operator": c.operator, "value": c.value}
            for c in config.conditions
        ]
        return evaluate_conditions(conditions, context, "all").matched

    return True


def next_trigger_at(config: Optional[TriggerConfig], after: Optional[datetime] = None) -> Optional[datetime]:
    """
    Next firing time (UTC) of a time-based trigger strictly after ``after``.

    The cron expression is evaluated in the configured timezone (UTC by
    default). Returns None when there is no expression or the window has closed.

    Raises:
        ValueError: If the cron expression or timezone is invalid
    """
    if config is None or not config.cron_expression:
        return None

    if not croniter.is_valid(config.cron_expression):
        raise ValueError(f"Invalid cron expression: {config.cron_expression}")

    try:
        tz = ZoneInfo(config.timezone) if config.timezone else ZoneInfo("UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Invalid timezone: {config.timezone}") from e

    base = as_utc(after) if after else utcnow()
    start = as_utc(config.start_date)
    if start is not None and start > base:
        # Fire no earlier than the start date itself
        base = start - timedelta(seconds=1)

    nxt = croniter(config.cron_expression, base.astimezone(tz)).get_next(datetime)
    nxt = as_utc(nxt)

    end = as_utc(config.end_date)
    if end is not None and nxt > end:
        logger.debug("Cron window closed (next %s after end %s)", nxt, end)
        return None
    return nxt
