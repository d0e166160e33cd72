from __future__ import annotations

import json
import logging
from typing import Any, Callable
from urllib.parse import quote

import requests

from calmirror.errors import (
    AuthenticationError,
    DeltaTokenExpired,
    ProviderRateLimited,
    ProviderRequestError,
    ProviderUnavailable,
    ValidationError,
)
from calmirror.models import (
    ActiveEntry,
    CalendarInfo,
    DeltaEntry,
    DeltaPage,
    LocalEvent,
    ProviderConfig,
    RemoteEvent,
    RemovedEntry,
    parse_iso_datetime,
)

logger = logging.getLogger(__name__)

DELTA_SELECT_FIELDS = (
    "id,subject,body,location,start,end,isAllDay,recurrence,lastModifiedDateTime,createdDateTime"
)
DELTA_EXPIRED_CODES = {"syncstatenotfound", "syncstateinvalid", "resyncrequired"}


def _error_details(response: requests.Response) -> tuple[str, str]:
    try:
        payload = response.json()
    except ValueError:
        return "", response.text[:300]
    error = payload.get("error", {}) if isinstance(payload, dict) else {}
    if not isinstance(error, dict):
        return "", str(error)[:300]
    return str(error.get("code", "") or ""), str(error.get("message", "") or "")[:300]


def _raise_for_status(response: requests.Response) -> None:
    if response.ok:
        return
    status = response.status_code
    code, message = _error_details(response)
    detail = f"HTTP {status} {code}: {message}".strip()
    if status in {401, 403}:
        raise AuthenticationError(detail)
    if status == 410 or code.lower() in DELTA_EXPIRED_CODES:
        raise DeltaTokenExpired(detail)
    if status == 429:
        retry_after = response.headers.get("Retry-After")
        raise ProviderRateLimited(detail, retry_after=int(retry_after) if str(retry_after or "").isdigit() else None)
    if status >= 500:
        raise ProviderUnavailable(detail)
    raise ProviderRequestError(detail, status_code=status)


def parse_delta_entry(item: Any) -> DeltaEntry:
    """Tag one raw delta item. Removed items only ever expose their id."""
    if not isinstance(item, dict):
        # Non-object items fail validation downstream and count as errors.
        return ActiveEntry(provider_id="", payload=item)
    provider_id = str(item.get("id", "") or "").strip()
    removed = item.get("@removed")
    if removed is not None:
        reason = removed.get("reason", "deleted") if isinstance(removed, dict) else "deleted"
        return RemovedEntry(provider_id=provider_id, reason=str(reason or "deleted"))
    return ActiveEntry(provider_id=provider_id, payload=item)


def _parse_time_block(payload: dict[str, Any], key: str) -> tuple[Any, str | None]:
    block = payload.get(key)
    if not isinstance(block, dict) or not block.get("dateTime"):
        raise ValidationError(f"event {payload.get('id')!r} has no {key}.dateTime")
    try:
        parsed = parse_iso_datetime(str(block["dateTime"]))
    except ValueError as exc:
        raise ValidationError(f"event {payload.get('id')!r} has invalid {key}.dateTime: {exc}") from exc
    return parsed, block.get("timeZone")


def remote_event_from_payload(payload: dict[str, Any]) -> RemoteEvent:
    if not isinstance(payload, dict):
        raise ValidationError("event payload must be an object")
    provider_id = str(payload.get("id", "") or "").strip()
    if not provider_id:
        raise ValidationError("event payload has no id")
    start, time_zone = _parse_time_block(payload, "start")
    end, _ = _parse_time_block(payload, "end")
    if end < start:
        raise ValidationError(f"event {provider_id!r} ends before it starts")

    body = payload.get("body") or {}
    location = payload.get("location") or {}
    recurrence = payload.get("recurrence")
    last_modified = payload.get("lastModifiedDateTime")
    try:
        last_modified_at = parse_iso_datetime(last_modified) if last_modified else None
    except ValueError:
        last_modified_at = None
    return RemoteEvent(
        provider_id=provider_id,
        subject=str(payload.get("subject", "") or ""),
        description=(body.get("content") if isinstance(body, dict) else None) or None,
        location=(location.get("displayName") if isinstance(location, dict) else None) or None,
        start=start,
        end=end,
        time_zone=time_zone,
        is_all_day=bool(payload.get("isAllDay", False)),
        is_recurring=bool(recurrence),
        recurrence_pattern=json.dumps(recurrence, sort_keys=True) if recurrence else None,
        etag=payload.get("@odata.etag"),
        last_modified_at=last_modified_at,
    )


def to_provider_payload(event: LocalEvent) -> dict[str, Any]:
    if event.start is None or event.end is None:
        raise ValidationError(f"event {event.id} has no start/end")
    time_zone = event.time_zone or "UTC"
    payload: dict[str, Any] = {
        "subject": event.subject,
        "start": {"dateTime": event.start.isoformat(), "timeZone": time_zone},
        "end": {"dateTime": event.end.isoformat(), "timeZone": time_zone},
        "isAllDay": event.is_all_day,
    }
    if event.description:
        payload["body"] = {"contentType": "text", "content": event.description}
    if event.location:
        payload["location"] = {"displayName": event.location}
    if event.recurrence_pattern:
        try:
            payload["recurrence"] = json.loads(event.recurrence_pattern)
        except ValueError as exc:
            raise ValidationError(f"event {event.id} has invalid recurrence pattern") from exc
    return payload


class GraphClient:
    def __init__(self, config: ProviderConfig, token_getter: Callable[[], str | None]) -> None:
        self.config = config
        self.token_getter = token_getter
        self.session = requests.Session()

    def _headers(self, page_size: int | None = None) -> dict[str, str]:
        token = self.token_getter()
        if not token:
            raise AuthenticationError("no valid upstream credential")
        prefer = ['outlook.timezone="UTC"']
        if page_size:
            prefer.append(f"odata.maxpagesize={int(page_size)}")
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Prefer": ", ".join(prefer),
        }

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.config.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _events_path(self, calendar_id: str | None) -> str:
        if calendar_id:
            return f"me/calendars/{quote(calendar_id, safe='')}/events"
        return "me/events"

    def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        page_size: int | None = None,
    ) -> requests.Response:
        url = self._url(path)
        try:
            response = self.session.request(
                method,
                url,
                headers=self._headers(page_size),
                json=payload,
                params=params,
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise ProviderUnavailable(f"{type(exc).__name__}: {exc}") from exc
        _raise_for_status(response)
        return response

    def fetch_delta(
        self,
        cursor: str | None = None,
        calendar_id: str | None = None,
        page_size: int | None = None,
    ) -> DeltaPage:
        if cursor:
            # Cursors are the provider's opaque nextLink/deltaLink URLs.
            response = self._request("GET", cursor, page_size=page_size)
        else:
            response = self._request(
                "GET",
                f"{self._events_path(calendar_id)}/delta",
                params={"$select": DELTA_SELECT_FIELDS},
                page_size=page_size or self.config.page_size,
            )
        body = response.json()
        if not isinstance(body, dict):
            raise ProviderUnavailable("delta response root must be an object")
        raw_items = body.get("value", []) or []
        entries = [parse_delta_entry(item) for item in raw_items]
        return DeltaPage(
            entries=entries,
            next_page_cursor=body.get("@odata.nextLink"),
            final_delta_cursor=body.get("@odata.deltaLink"),
        )

    def create_event(self, payload: dict[str, Any], calendar_id: str | None = None) -> tuple[str, str | None]:
        response = self._request("POST", self._events_path(calendar_id), payload=payload)
        body = response.json()
        provider_id = str(body.get("id", "") or "")
        if not provider_id:
            raise ProviderRequestError("create response has no id", status_code=response.status_code)
        return provider_id, body.get("@odata.etag")

    def update_event(self, provider_id: str, payload: dict[str, Any]) -> str | None:
        response = self._request("PATCH", f"me/events/{quote(provider_id, safe='')}", payload=payload)
        if not response.content:
            return None
        return response.json().get("@odata.etag")

    def delete_event(self, provider_id: str) -> None:
        try:
            self._request("DELETE", f"me/events/{quote(provider_id, safe='')}")
        except ProviderRequestError as exc:
            # Already gone upstream.
            if exc.status_code != 404:
                raise
            logger.info("Event %s already deleted upstream", provider_id)

    def list_calendars(self) -> list[CalendarInfo]:
        response = self._request("GET", "me/calendars")
        body = response.json()
        calendars: list[CalendarInfo] = []
        for item in body.get("value", []) or []:
            calendar_id = str((item or {}).get("id", "")).strip()
            if not calendar_id:
                continue
            calendars.append(
                CalendarInfo(
                    calendar_id=calendar_id,
                    name=str(item.get("name", "") or calendar_id),
                    is_default=bool(item.get("isDefaultCalendar", False)),
                    can_edit=bool(item.get("canEdit", True)),
                )
            )
        return calendars
