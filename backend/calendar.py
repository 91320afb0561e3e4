"""
Calendar availability collaborator.

Contract: availability(user_id, date, work_start, work_end, slot_duration)
  -> {"date": "YYYY-MM-DD", "slots": [{"start", "end"}], "events": [...]}

The real provider sits behind a REST service that owns OAuth tokens for
the user's third-party calendar; this side only queries it.
"""
from __future__ import annotations

import abc
from datetime import date as date_cls, datetime, timedelta
from typing import Any, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from backend.http_client import is_retryable
from config.settings import CalendarConfig, get_settings
from models.errors import ExecutorError

logger = structlog.get_logger()


class CalendarError(ExecutorError):
    """Availability could not be fetched; recorded in the node output, not raised further."""


def _parse_hhmm(value: str) -> tuple[int, int]:
    try:
        hours, minutes = str(value).split(":", 1)
        hours, minutes = int(hours), int(minutes)
    except (TypeError, ValueError):
        raise CalendarError(f"Invalid working-hours time '{value}', expected HH:MM")
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise CalendarError(f"Invalid working-hours time '{value}', expected HH:MM")
    return hours, minutes


def build_slots(
    day: date_cls,
    work_start: str,
    work_end: str,
    slot_duration: int,
    busy: Optional[list[tuple[datetime, datetime]]] = None,
) -> list[dict[str, str]]:
    """Split the working window into fixed slots, dropping any that overlap a busy range."""
    if slot_duration is None or slot_duration <= 0:
        raise CalendarError(f"Slot duration must be a positive number of minutes, got {slot_duration}")
    sh, sm = _parse_hhmm(work_start)
    eh, em = _parse_hhmm(work_end)
    cursor = datetime(day.year, day.month, day.day, sh, sm)
    end = datetime(day.year, day.month, day.day, eh, em)
    step = timedelta(minutes=slot_duration)
    busy = busy or []
    slots = []
    while cursor + step <= end:
        slot_end = cursor + step
        if not any(b_start < slot_end and cursor < b_end for b_start, b_end in busy):
            slots.append({
                "start": cursor.strftime("%H:%M"),
                "end": slot_end.strftime("%H:%M"),
                "id": cursor.strftime("%H%M"),
                "title": f"{cursor.strftime('%H:%M')} - {slot_end.strftime('%H:%M')}",
            })
        cursor = slot_end
    return slots


def _missing_user(user_id: Optional[str]) -> bool:
    return not user_id or not str(user_id).strip()


class CalendarProvider(abc.ABC):

    @abc.abstractmethod
    async def availability(
        self, user_id: str, day: date_cls,
        work_start: str, work_end: str, slot_duration: int,
    ) -> dict[str, Any]:
        ...

    async def close(self):
        pass


class RESTCalendarProvider(CalendarProvider):
    """Queries `{base_url}/users/{user_id}/events?date=...` and derives free slots locally."""

    def __init__(self, config: Optional[CalendarConfig] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or get_settings().calendar
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_s,
                transport=self._transport,
            )
        return self.client

    @retry(
        retry=retry_if_exception(is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _request(self, method: str, url: str, **kwargs) -> Any:
        client = await self._get_client()
        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
        return response.json()

    async def availability(self, user_id, day, work_start, work_end, slot_duration):
        if _missing_user(user_id):
            raise CalendarError("No calendar user given")
        try:
            raw = await self._request("GET", f"/users/{user_id}/events",
                                      params={"date": day.isoformat()})
        except Exception as e:
            logger.error("calendar_fetch_failed", user_id=user_id, date=day.isoformat(), error=str(e))
            raise CalendarError(str(e)) from e

        events = raw if isinstance(raw, list) else raw.get("events", [])
        busy = []
        for event in events:
            try:
                busy.append((
                    datetime.fromisoformat(event["start"]).replace(tzinfo=None),
                    datetime.fromisoformat(event["end"]).replace(tzinfo=None),
                ))
            except (KeyError, TypeError, ValueError):
                logger.warning("calendar_event_unparseable", user_id=user_id, event=event)
        return {
            "date": day.isoformat(),
            "slots": build_slots(day, work_start, work_end, slot_duration, busy),
            "events": events,
        }

    async def close(self):
        if self.client:
            await self.client.aclose()


class MockCalendarProvider(CalendarProvider):
    """In-process calendar for development and tests; users have no events unless seeded."""

    def __init__(self, events: Optional[dict[str, list[dict[str, Any]]]] = None):
        self._events = events or {}

    def add_event(self, user_id: str, start: str, end: str, title: str = "Busy"):
        self._events.setdefault(user_id, []).append({"start": start, "end": end, "title": title})

    async def availability(self, user_id, day, work_start, work_end, slot_duration):
        if _missing_user(user_id):
            raise CalendarError("No calendar user given")
        events = [
            e for e in self._events.get(user_id, [])
            if e["start"].startswith(day.isoformat())
        ]
        busy = [(datetime.fromisoformat(e["start"]), datetime.fromisoformat(e["end"])) for e in events]
        return {
            "date": day.isoformat(),
            "slots": build_slots(day, work_start, work_end, slot_duration, busy),
            "events": events,
        }


def create_calendar_provider(config: Optional[CalendarConfig] = None) -> CalendarProvider:
    config = config or get_settings().calendar
    if config.provider == "rest" and config.base_url:
        logger.info("calendar_provider_created", provider="rest", base_url=config.base_url)
        return RESTCalendarProvider(config)
    logger.info("calendar_provider_created", provider="mock")
    return MockCalendarProvider()
