"""Time utility tool."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from chatrelay.tools.base import Tool


class GetCurrentTimeTool(Tool):
    """Returns the current time, in UTC or a named IANA zone."""

    name = "get_current_time"
    description = "Get the current date/time in ISO-8601 format, optionally in an IANA time zone."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "timezone": {"type": "string", "description": "IANA zone such as Asia/Shanghai (default UTC)."},
        },
        "additionalProperties": False,
    }

    async def run(self, **kwargs: Any) -> dict[str, str]:
        zone_name = kwargs.get("timezone") or "UTC"
        now = datetime.now(timezone.utc)
        if zone_name != "UTC":
            try:
                now = now.astimezone(ZoneInfo(zone_name))
            except ZoneInfoNotFoundError as exc:
                raise ValueError(f"Unknown time zone: {zone_name}") from exc
        return {"time": now.isoformat(), "timezone": zone_name, "weekday": now.strftime("%A")}
