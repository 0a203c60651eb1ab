"""
Stream descriptors for the Agora connector.
Each descriptor names the endpoint, pagination strategy, cursor unit, composite key and field projection of one table.
Missing optional fields in API responses are replaced with the defaults documented next to each column.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from agora_config import DATE_FORMAT
from sync_engine import (
    LISTING_WITH_DETAIL,
    MILLISECONDS,
    PAGED_LISTING,
    SECONDS,
    StreamDescriptor,
)

# Resource types reported by the usage endpoint, with their unit of measure
USAGE_RESOURCE_TYPES = [
    ("audio_minutes", "minutes"),
    ("video_sd_minutes", "minutes"),
    ("video_hd_minutes", "minutes"),
    ("video_hd_plus_minutes", "minutes"),
    ("recording_minutes", "minutes"),
    ("bandwidth_usage", "GB"),
    ("cloud_recording_storage", "GB"),
]
USAGE_METRICS = [resource_type for resource_type, _ in USAGE_RESOURCE_TYPES] + [
    "channel_count",
    "peak_concurrent_users",
]
GLOBAL_REGION = "global"


def epoch_seconds(value: Any, default: Optional[int]) -> Optional[int]:
    """Coerce an epoch-seconds field that may arrive as a number or a numeric string; missing values give `default`."""
    if value in (None, "", 0):
        return default
    return int(float(value)) or default


# ---------------------------------------------------------------------------
# usage: one listing call, every day fans out into one row per region and resource type
# ---------------------------------------------------------------------------


def usage_children(day: Dict[str, Any], detail, context) -> List[Dict[str, Any]]:
    """
    Expand one day of usage into per-resource rows.
    Regional breakdowns come first, followed by the global totals of the day.
    Resource types with no positive value are skipped.
    """
    breakdowns = [(region, metrics or {}) for region, metrics in (day.get("by_region") or {}).items()]
    breakdowns.append((GLOBAL_REGION, day))

    rows = []
    for region, metrics in breakdowns:
        for resource_type, unit in USAGE_RESOURCE_TYPES:
            quantity = metrics.get(resource_type) or 0
            if quantity > 0:
                rows.append(
                    {
                        "region": region,
                        "resource_type": resource_type,
                        "unit": unit,
                        "quantity": quantity,
                        "metrics": metrics,
                    }
                )
    return rows


def usage_date(day: Dict[str, Any], context) -> str:
    # A day reported without a date is attributed to the current UTC day
    return day.get("date") or context.now.strftime(DATE_FORMAT)


def usage_position(row: Dict[str, Any], day: Dict[str, Any], context) -> int:
    # Each day is reported at UTC midnight
    parsed = datetime.strptime(usage_date(day, context), DATE_FORMAT).replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def usage_key_fields(row, day, position_ms, context):
    return [context.app_id, usage_date(day, context), row["resource_type"], row["region"]]


def usage_project(row, day, position_ms, identity, context) -> Dict[str, Any]:
    metrics = row["metrics"]
    record = {
        "usage_id": identity,
        "timestamp": position_ms,
        "date": usage_date(day, context),
        "app_id": context.app_id,
        "project_name": day.get("project_name") or "",
        "resource_type": row["resource_type"],
        "unit": row["unit"],
        "quantity": row["quantity"],
    }
    for metric in USAGE_METRICS:
        record[metric] = metrics.get(metric) or 0
    record["region"] = row["region"]
    return record


USAGE = StreamDescriptor(
    name="usage",
    list_path="/v1/usage",
    list_key="usage",
    strategy=LISTING_WITH_DETAIL,
    primary_key=["usage_id"],
    columns={
        "usage_id": "STRING",
        "timestamp": "LONG",
        "date": "NAIVE_DATE",
        "app_id": "STRING",
        "project_name": "STRING",
        "resource_type": "STRING",
        "unit": "STRING",
        "quantity": "DOUBLE",
        "region": "STRING",
    },
    position=usage_position,
    key_fields=usage_key_fields,
    project=usage_project,
    cursor_unit=MILLISECONDS,
    page_size=None,
    window_params=("start_date", "end_date"),
    children=usage_children,
)


# ---------------------------------------------------------------------------
# call_quality: one listing of calls, then one quality request per call
# ---------------------------------------------------------------------------


def call_end_time(call: Dict[str, Any], context) -> int:
    return epoch_seconds(call.get("end_time"), context.now_seconds)


def call_quality_children(call, quality, context) -> List[Dict[str, Any]]:
    return (quality or {}).get("user_metrics") or []


def call_quality_detail_params(call, context) -> Dict[str, Any]:
    return {"call_id": call.get("call_id"), "app_id": context.app_id}


def call_quality_position(user, call, context) -> int:
    # The latest metric sample of the user, or the end of the call when the API has none
    return epoch_seconds(user.get("latest_metric_time"), None) or call_end_time(call, context)


def call_quality_key_fields(user, call, position_ms, context):
    return [call.get("call_id"), user.get("user_id"), position_ms]


def call_quality_project(user, call, position_ms, identity, context) -> Dict[str, Any]:
    start_time = epoch_seconds(call.get("start_time"), 0)
    end_time = call_end_time(call, context)
    return {
        "quality_id": identity,
        "timestamp": position_ms,
        "channel_id": call.get("channel_id"),
        "call_id": call.get("call_id"),
        "user_id": user.get("user_id"),
        "app_id": context.app_id,
        "start_time": start_time * 1000,
        "end_time": end_time * 1000,
        "duration": end_time - start_time,
        "network_type": user.get("network_type") or "",
        "device_type": user.get("device_type") or "",
        "sdk_version": user.get("sdk_version") or "",
        "os_version": user.get("os_version") or "",
        "region": user.get("region") or "",
        "audio_quality_score": user.get("audio_quality") or 0,
        "video_quality_score": user.get("video_quality") or 0,
        "overall_quality_score": user.get("overall_quality") or 0,
        "latency": user.get("latency") or 0,
        "packet_loss_rate": user.get("packet_loss_rate") or 0,
        "jitter": user.get("jitter") or 0,
        "audio_bitrate": user.get("audio_bitrate") or 0,
        "video_bitrate": user.get("video_bitrate") or 0,
        "audio_packet_loss_rate": user.get("audio_packet_loss_rate") or 0,
        "video_packet_loss_rate": user.get("video_packet_loss_rate") or 0,
        "audio_freeze_count": user.get("audio_freeze_count") or 0,
        "video_freeze_count": user.get("video_freeze_count") or 0,
        "cpu_usage": user.get("cpu_usage") or 0,
        "memory_usage": user.get("memory_usage") or 0,
        "video_resolution": user.get("video_resolution") or "",
        "frame_rate": user.get("frame_rate") or 0,
        "issue_description": user.get("issue_description") or "",
        "has_issues": bool(user.get("has_issues")),
    }


CALL_QUALITY = StreamDescriptor(
    name="call_quality",
    list_path="/v1/call/lists",
    list_key="calls",
    strategy=LISTING_WITH_DETAIL,
    primary_key=["quality_id"],
    columns={
        "quality_id": "STRING",
        "timestamp": "LONG",
        "channel_id": "STRING",
        "call_id": "STRING",
        "user_id": "STRING",
        "app_id": "STRING",
        "start_time": "LONG",
        "end_time": "LONG",
        "duration": "LONG",
        "audio_quality_score": "DOUBLE",
        "video_quality_score": "DOUBLE",
        "overall_quality_score": "DOUBLE",
        "has_issues": "BOOLEAN",
    },
    position=call_quality_position,
    key_fields=call_quality_key_fields,
    project=call_quality_project,
    cursor_unit=SECONDS,
    children=call_quality_children,
    detail_path="/v1/call/quality",
    detail_params=call_quality_detail_params,
    parent_position=call_end_time,
)


# ---------------------------------------------------------------------------
# recordings: one listing call, every recording is a row
# ---------------------------------------------------------------------------


def recording_start_time(recording, parent, context) -> int:
    return epoch_seconds(recording.get("start_time"), context.now_seconds)


def recording_key_fields(recording, parent, position_ms, context):
    return [
        recording.get("resource_id") or "",
        recording.get("channel_id") or "",
        recording_start_time(recording, parent, context),
    ]


def recording_project(recording, parent, position_ms, identity, context) -> Dict[str, Any]:
    start_time = recording_start_time(recording, parent, context)
    end_time = epoch_seconds(recording.get("end_time"), context.now_seconds)
    return {
        "recording_id": identity,
        "timestamp": position_ms,
        "app_id": context.app_id,
        "channel_id": recording.get("channel_id") or "",
        "uid": recording.get("uid") or "",
        "start_time": start_time * 1000,
        "end_time": end_time * 1000,
        "duration": end_time - start_time,
        "recording_type": recording.get("recording_type") or "cloud",
        "status": recording.get("status") or "completed",
        "file_format": recording.get("file_format") or "mp4",
        "file_size": recording.get("file_size") or 0,
        "resolution": recording.get("resolution") or "",
        "storage_path": recording.get("storage_path") or "",
        "resource_id": recording.get("resource_id") or "",
        "region": recording.get("region") or GLOBAL_REGION,
        "error_code": recording.get("error_code") or None,
        "error_message": recording.get("error_message") or None,
        "parameters": recording.get("parameters") or {},
        "mode": recording.get("mode") or "mix",
        "recorded_users": recording.get("recorded_users") or [],
        "storage_config": recording.get("storage_config") or {},
    }


RECORDINGS = StreamDescriptor(
    name="recordings",
    list_path="/v1/recordings/list",
    list_key="recordings",
    strategy=LISTING_WITH_DETAIL,
    primary_key=["recording_id"],
    columns={
        "recording_id": "STRING",
        "timestamp": "LONG",
        "app_id": "STRING",
        "channel_id": "STRING",
        "start_time": "LONG",
        "end_time": "LONG",
        "duration": "LONG",
        "file_size": "LONG",
        "parameters": "JSON",
        "recorded_users": "JSON",
        "storage_config": "JSON",
    },
    position=recording_start_time,
    key_fields=recording_key_fields,
    project=recording_project,
    cursor_unit=SECONDS,
)


# ---------------------------------------------------------------------------
# channels: paged listing
# ---------------------------------------------------------------------------


def channel_create_time(channel, parent, context) -> int:
    return epoch_seconds(channel.get("create_time"), context.now_seconds)


def channel_key_fields(channel, parent, position_ms, context):
    return [
        channel.get("channel_name") or "",
        channel_create_time(channel, parent, context),
        context.app_id,
    ]


def channel_project(channel, parent, position_ms, identity, context) -> Dict[str, Any]:
    create_time = channel_create_time(channel, parent, context)
    end_time = epoch_seconds(channel.get("end_time"), None)
    return {
        # The API identifier wins; the hash only stands in when it is missing
        "channel_id": channel.get("channel_id") or identity,
        "timestamp": position_ms,
        "app_id": context.app_id,
        "channel_name": channel.get("channel_name") or "",
        "create_time": position_ms,
        "end_time": end_time * 1000 if end_time else None,
        "duration": (end_time if end_time else context.now_seconds) - create_time,
        "active_status": end_time is None or end_time > context.now_seconds,
        "peak_users": channel.get("peak_users") or 0,
        "total_users": channel.get("total_users") or 0,
        "audio_minutes": channel.get("audio_minutes") or 0,
        "video_minutes": channel.get("video_minutes") or 0,
        "recording_minutes": channel.get("recording_minutes") or 0,
        "region": channel.get("region") or GLOBAL_REGION,
        "mode": channel.get("mode") or "communication",
        "encryption_enabled": bool(channel.get("encryption_enabled")),
        "has_recordings": bool(channel.get("has_recordings")),
        "quality_score": channel.get("quality_score") or 0,
        "user_join_count": channel.get("user_join_count") or 0,
        "user_leave_count": channel.get("user_leave_count") or 0,
        "error_count": channel.get("error_count") or 0,
        "channel_type": channel.get("channel_type") or "video",
        "tags": channel.get("tags") or [],
        "metadata": channel.get("metadata") or {},
    }


CHANNELS = StreamDescriptor(
    name="channels",
    list_path="/v1/channel/list",
    list_key="channels",
    strategy=PAGED_LISTING,
    primary_key=["channel_id"],
    columns={
        "channel_id": "STRING",
        "timestamp": "LONG",
        "app_id": "STRING",
        "channel_name": "STRING",
        "create_time": "LONG",
        "end_time": "LONG",
        "duration": "LONG",
        "active_status": "BOOLEAN",
        "encryption_enabled": "BOOLEAN",
        "has_recordings": "BOOLEAN",
        "tags": "JSON",
        "metadata": "JSON",
    },
    position=channel_create_time,
    key_fields=channel_key_fields,
    project=channel_project,
    cursor_unit=SECONDS,
)


# ---------------------------------------------------------------------------
# events: paged listing
# ---------------------------------------------------------------------------


def event_time(event, parent, context) -> int:
    return epoch_seconds(event.get("timestamp"), context.now_seconds)


def event_key_fields(event, parent, position_ms, context):
    return [
        event.get("event_type") or "info",
        event.get("channel_id") or "none",
        event.get("user_id") or "none",
        event_time(event, parent, context),
    ]


def event_project(event, parent, position_ms, identity, context) -> Dict[str, Any]:
    return {
        "event_id": event.get("event_id") or identity,
        "timestamp": position_ms,
        "app_id": context.app_id,
        "channel_id": event.get("channel_id") or None,
        "user_id": event.get("user_id") or None,
        "event_type": event.get("event_type") or "info",
        "event_name": event.get("event_name") or "",
        "event_description": event.get("event_description") or "",
        "severity": event.get("severity") or "info",
        "device_type": event.get("device_type") or None,
        "os_version": event.get("os_version") or None,
        "sdk_version": event.get("sdk_version") or None,
        "network_type": event.get("network_type") or None,
        "client_ip": event.get("client_ip") or None,
        "region": event.get("region") or None,
        "error_code": event.get("error_code") or None,
        "error_message": event.get("error_message") or None,
        "duration": event.get("duration") or None,
        "properties": event.get("properties") or {},
        "related_events": event.get("related_events") or [],
        "resolution": event.get("resolution") or None,
    }


EVENTS = StreamDescriptor(
    name="events",
    list_path="/v1/events",
    list_key="events",
    strategy=PAGED_LISTING,
    primary_key=["event_id"],
    columns={
        "event_id": "STRING",
        "timestamp": "LONG",
        "app_id": "STRING",
        "channel_id": "STRING",
        "user_id": "STRING",
        "event_type": "STRING",
        "severity": "STRING",
        "properties": "JSON",
        "related_events": "JSON",
    },
    position=event_time,
    key_fields=event_key_fields,
    project=event_project,
    cursor_unit=SECONDS,
)


STREAMS = {descriptor.name: descriptor for descriptor in [USAGE, CALL_QUALITY, RECORDINGS, CHANNELS, EVENTS]}


def table_definition(descriptor: StreamDescriptor) -> Dict[str, Any]:
    """Fivetran table definition for a stream: table name, primary key and the columns with fixed types."""
    return {
        "table": descriptor.name,
        "primary_key": list(descriptor.primary_key),
        "columns": dict(descriptor.columns),
    }
