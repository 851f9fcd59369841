"""Event field mappings between internal events, ExternalEvent, and Google resources.

Defines:
- GOOGLE_METADATA_FIELDS: Google event keys carried through ExternalEvent.metadata
- from_google_event(): Google Calendar v3 event resource -> ExternalEvent
- to_google_event(): ExternalEvent -> Google Calendar v3 event body
- internal_to_external(): CalendarEventRead -> ExternalEvent (push side)
- external_to_internal(): ExternalEvent -> CalendarEventCreate (pull side)
"""

from __future__ import annotations

from typing import Any

from src.calsync.sync.schemas import (
    Attendee,
    CalendarEventCreate,
    CalendarEventRead,
    EventStatus,
    ExternalEvent,
    ReminderOverride,
    Reminders,
)

UNTITLED_EVENT = "Untitled Event"


# ── Google Metadata Fields ─────────────────────────────────────────────────
# Internal metadata key -> Google event resource key. Only the last three are
# writable; htmlLink is provider-assigned.

GOOGLE_METADATA_FIELDS: dict[str, str] = {
    "html_link": "htmlLink",
    "color_id": "colorId",
    "visibility": "visibility",
    "transparency": "transparency",
}

_WRITABLE_METADATA = ("color_id", "visibility", "transparency")


# ── Google <-> ExternalEvent ───────────────────────────────────────────────


def from_google_event(item: dict[str, Any]) -> ExternalEvent:
    """Convert a Google Calendar event resource to an ExternalEvent.

    Cancelled events become deletion markers. Incremental responses send
    cancelled events with little more than an id, so nothing else is read.

    Args:
        item: Event resource dict from events.list / events.insert.

    Returns:
        ExternalEvent in provider-neutral form.
    """
    if item.get("status") == EventStatus.CANCELLED.value:
        return ExternalEvent(
            external_id=item["id"],
            summary=item.get("summary") or UNTITLED_EVENT,
            etag=item.get("etag"),
            updated_at=item.get("updated"),
            deleted=True,
        )

    start = item.get("start") or {}
    end = item.get("end") or {}
    reminders = item.get("reminders")

    return ExternalEvent(
        external_id=item["id"],
        summary=item.get("summary") or UNTITLED_EVENT,
        description=item.get("description"),
        location=item.get("location"),
        start_date=start.get("date"),
        end_date=end.get("date"),
        start_datetime=start.get("dateTime"),
        end_datetime=end.get("dateTime"),
        start_timezone=start.get("timeZone"),
        end_timezone=end.get("timeZone"),
        attendees=[
            Attendee(
                email=a["email"],
                display_name=a.get("displayName"),
                response_status=a.get("responseStatus"),
            )
            for a in item.get("attendees", [])
            if a.get("email")
        ],
        recurrence=item.get("recurrence") or [],
        reminders=(
            Reminders(
                use_default=bool(reminders.get("useDefault", False)),
                overrides=[
                    ReminderOverride(method=r["method"], minutes=r["minutes"])
                    for r in reminders.get("overrides", [])
                ],
            )
            if reminders
            else None
        ),
        etag=item.get("etag"),
        updated_at=item.get("updated"),
        metadata={
            internal: item[google]
            for internal, google in GOOGLE_METADATA_FIELDS.items()
            if item.get(google) is not None
        },
    )


def _google_time(event: ExternalEvent, edge: str) -> dict[str, Any]:
    moment = getattr(event, f"{edge}_datetime")
    if moment is not None:
        body: dict[str, Any] = {"dateTime": moment.isoformat()}
        zone = getattr(event, f"{edge}_timezone")
        if zone:
            body["timeZone"] = zone
        return body
    day = getattr(event, f"{edge}_date")
    if day is not None:
        return {"date": day.isoformat()}
    return {}


def to_google_event(event: ExternalEvent) -> dict[str, Any]:
    """Convert an ExternalEvent to a Google Calendar insert/update body.

    A timed value wins over an all-day date when both are present.
    """
    body: dict[str, Any] = {
        "summary": event.summary,
        "start": _google_time(event, "start"),
        "end": _google_time(event, "end"),
    }
    if event.description is not None:
        body["description"] = event.description
    if event.location is not None:
        body["location"] = event.location
    if event.attendees:
        body["attendees"] = [
            {
                k: v
                for k, v in {
                    "email": a.email,
                    "displayName": a.display_name,
                    "responseStatus": a.response_status,
                }.items()
                if v is not None
            }
            for a in event.attendees
        ]
    if event.recurrence:
        body["recurrence"] = list(event.recurrence)
    if event.reminders is not None:
        body["reminders"] = {"useDefault": event.reminders.use_default}
        if event.reminders.overrides:
            body["reminders"]["overrides"] = [
                {"method": r.method, "minutes": r.minutes}
                for r in event.reminders.overrides
            ]
    for key in _WRITABLE_METADATA:
        value = event.metadata.get(key)
        if value is not None:
            body[GOOGLE_METADATA_FIELDS[key]] = value
    return body


# ── Internal <-> ExternalEvent ─────────────────────────────────────────────


def internal_to_external(event: CalendarEventRead) -> ExternalEvent:
    """Build the provider-neutral payload for pushing an internal event."""
    return ExternalEvent(
        summary=event.title,
        description=event.description,
        location=event.location,
        start_date=event.start_date,
        end_date=event.end_date,
        start_datetime=event.start_datetime,
        end_datetime=event.end_datetime,
        start_timezone=event.start_timezone,
        end_timezone=event.end_timezone,
        attendees=event.attendees,
        recurrence=event.recurrence,
        reminders=event.reminders,
        metadata=event.metadata,
    )


def external_to_internal(event: ExternalEvent) -> CalendarEventCreate:
    """Build an internal event payload from a pulled external event."""
    return CalendarEventCreate(
        title=event.summary or UNTITLED_EVENT,
        description=event.description,
        location=event.location,
        start_date=event.start_date,
        end_date=event.end_date,
        start_datetime=event.start_datetime,
        end_datetime=event.end_datetime,
        start_timezone=event.start_timezone,
        end_timezone=event.end_timezone,
        attendees=event.attendees,
        recurrence=event.recurrence,
        reminders=event.reminders,
        metadata=event.metadata,
    )
