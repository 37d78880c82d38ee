"""
Built-in Tools

Default toolkit registered at start-up when enabled in config
(tools.builtin.enabled). Each entry in tools.builtin.include names one of
the capabilities below.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ToolInputError
from .registry import ToolCapability, ToolRegistry

logger = logging.getLogger(__name__)

CHART_TYPES = ("bar", "line", "pie")


async def get_current_time(args: dict[str, Any]) -> dict[str, Any]:
    tz_name = args["timezone"]
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ToolInputError("get_current_time", f"Unknown timezone '{tz_name}'") from e

    now = datetime.now(tz)
    return {"timezone": tz_name, "iso": now.isoformat(), "weekday": now.strftime("%A")}


def _validate_chart_data(data: Any) -> list[dict[str, Any]]:
    if not isinstance(data, list) or not data:
        raise ToolInputError("create_chart", "Chart data cannot be empty")

    points: list[dict[str, Any]] = []
    for point in data:
        if not isinstance(point, dict) or not point.get("x_label"):
            raise ToolInputError("create_chart", "Invalid chart data structure")
        series = point.get("series")
        if not isinstance(series, list) or not series:
            raise ToolInputError("create_chart", "Invalid chart data structure")
        for item in series:
            if (
                not isinstance(item, dict)
                or not item.get("name")
                or not isinstance(item.get("value"), int | float)
                or isinstance(item.get("value"), bool)
            ):
                raise ToolInputError("create_chart", "Invalid series data structure")
        points.append(
            {
                "x_label": str(point["x_label"]),
                "series": [
                    {"name": str(s["name"]), "value": s["value"]} for s in series
                ],
            }
        )
    return points


async def create_chart(args: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
    """Validate a chart spec and stream it back. Rendering happens client-side."""
    title = str(args["title"])
    chart_type = args["chart_type"]
    logger.info("Creating chart: %s (%s)", title, chart_type)

    if chart_type not in CHART_TYPES:
        raise ToolInputError(
            "create_chart",
            f"chart_type must be one of {', '.join(CHART_TYPES)}",
        )

    yield {"status": "loading", "message": f"Preparing chart: {title}", "progress": 0}

    points = _validate_chart_data(args["data"])
    await asyncio.sleep(0)

    yield {
        "status": "processing",
        "message": f"Creating {chart_type} chart visualization...",
        "progress": 50,
    }

    series_names = sorted({s["name"] for p in points for s in p["series"]})
    yield {
        "status": "success",
        "chart_id": str(uuid.uuid4()),
        "title": title,
        "chart_type": chart_type,
        "data": points,
        "x_axis_label": args.get("x_axis_label"),
        "y_axis_label": args.get("y_axis_label"),
        "description": args.get("description"),
        "series": series_names,
        "data_points": len(points),
    }


_CHART_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "title": {"type": "string", "description": "Title for the chart"},
        "chart_type": {"type": "string", "enum": list(CHART_TYPES)},
        "data": {
            "type": "array",
            "description": "Chart data points",
            "items": {
                "type": "object",
                "properties": {
                    "x_label": {"type": "string"},
                    "series": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "name": {"type": "string"},
                                "value": {"type": "number"},
                            },
                            "required": ["name", "value"],
                        },
                    },
                },
                "required": ["x_label", "series"],
            },
        },
        "x_axis_label": {"type": "string"},
        "y_axis_label": {"type": "string"},
        "description": {"type": "string"},
    },
    "required": ["title", "chart_type", "data"],
}

BUILTIN_TOOLS: dict[str, Callable[[], ToolCapability]] = {
    "get_current_time": lambda: ToolCapability(
        name="get_current_time",
        description="Get the current date and time in an IANA timezone.",
        input_schema={
            "type": "object",
            "properties": {
                "timezone": {
                    "type": "string",
                    "description": "IANA timezone name, e.g. 'UTC' or 'Europe/Paris'",
                }
            },
            "required": ["timezone"],
        },
        handler=get_current_time,
    ),
    "create_chart": lambda: ToolCapability(
        name="create_chart",
        description=(
            "Create a bar, line or pie chart. The chart streams to the client "
            "as it is prepared."
        ),
        input_schema=_CHART_SCHEMA,
        progressive=True,
        handler=create_chart,
    ),
}


def register_builtin_tools(registry: ToolRegistry, config: dict[str, Any]) -> int:
    """Register the enabled built-in tools; returns how many were added."""
    if not config.get("enabled", True):
        logger.info("Built-in tools disabled")
        return 0

    include = config.get("include") or list(BUILTIN_TOOLS)
    count = 0
    for name in include:
        factory = BUILTIN_TOOLS.get(name)
        if factory is None:
            logger.warning("Unknown built-in tool '%s' in config, skipping", name)
            continue
        if name in registry:
            logger.warning("Tool name conflict: '%s' already registered", name)
            continue
        registry.register(factory())
        count += 1

    logger.info("Registered %d built-in tools", count)
    return count
