"""
Incremental sync engine shared by every Agora stream.

A pass for one stream runs these steps:
1. Resolve the query window from the incoming state (or the configured start date) up to today.
2. Drive the stream's pagination strategy, yielding raw items.
3. Keep only items strictly newer than the incoming checkpoint.
4. Give each kept item a deterministic identity and emit it as a RECORD message.
5. If any kept item moved the cursor forward, emit a single STATE message.

Streams differ only by their StreamDescriptor, see agora_streams.py.
"""

import hashlib
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from agora_config import AgoraConfig, DATE_FORMAT

# Pagination strategies
LISTING_WITH_DETAIL = "listing_with_detail"
PAGED_LISTING = "paged_listing"

# Native units of the remote position fields
SECONDS = "seconds"
MILLISECONDS = "milliseconds"

DEFAULT_CURSOR_FIELD = "timestamp"
DEFAULT_PAGE_SIZE = 100
IDENTITY_LENGTH = 32


@dataclass
class PassContext:
    """Values shared by every projection during one pass. `now` is frozen at the start of the pass."""

    app_id: str
    region: str
    now: datetime

    @property
    def now_seconds(self) -> int:
        return int(self.now.timestamp())


@dataclass(frozen=True)
class StreamDescriptor:
    """
    Everything that distinguishes one stream from another.
    position: returns the item's cursor value in `cursor_unit`, given (child, parent, context).
    key_fields: returns the ordered composite key hashed into the record identity, given (child, parent, position_ms, context).
    project: builds the flat output record, given (child, parent, position_ms, identity, context).
    children: expands a parent (and its detail response, if any) into the items evaluated by the cursor tracker.
              When omitted, the parent itself is the only item.
    parent_position: optional cursor value of a parent, used to skip its detail fetch when it is already replicated.
    """

    name: str
    list_path: str
    list_key: str
    strategy: str
    primary_key: List[str]
    columns: Dict[str, str]
    position: Callable[..., Any]
    key_fields: Callable[..., Sequence[Any]]
    project: Callable[..., Dict[str, Any]]
    cursor_unit: str = SECONDS
    cursor_field: str = DEFAULT_CURSOR_FIELD
    page_size: Optional[int] = DEFAULT_PAGE_SIZE
    window_params: Tuple[str, str] = ("from_date", "to_date")
    children: Optional[Callable[..., Any]] = None
    detail_path: Optional[str] = None
    detail_params: Optional[Callable[..., Dict[str, Any]]] = None
    parent_position: Optional[Callable[..., Any]] = None


def generate_identity(*fields: Any) -> str:
    """
    Derive a stable record identity from an ordered tuple of fields.
    The fields are joined with ':' and hashed with SHA-256; the first 32 hex characters (128 bits) are kept.
    Args:
        fields: the composite key, in order.
    Returns:
        A 32 character hexadecimal string.
    """
    composite_key = ":".join(str(value) for value in fields)
    return hashlib.sha256(composite_key.encode("utf-8")).hexdigest()[:IDENTITY_LENGTH]


def to_millis(value: Any, unit: str) -> int:
    """Convert a position expressed in `unit` to epoch milliseconds."""
    if unit == SECONDS:
        return int(float(value) * 1000)
    if unit == MILLISECONDS:
        return int(float(value))
    raise ValueError(f"Unsupported cursor unit: {unit}")


def read_checkpoint(state: Optional[Dict[str, Any]], cursor_field: str) -> Optional[int]:
    """
    Return the stored cursor in epoch milliseconds.
    Returns None when there is no stored value and raises ValueError when the stored value is unusable.
    """
    if not state or state.get(cursor_field) in (None, ""):
        return None
    value = state[cursor_field]
    if isinstance(value, bool):
        raise ValueError(f"{cursor_field} must be a number, got {value!r}")
    position = int(float(value))
    if position < 0:
        raise ValueError(f"{cursor_field} must not be negative, got {value!r}")
    # Rejects values that cannot be represented as a date
    datetime.fromtimestamp(position / 1000, tz=timezone.utc)
    return position


def resolve_start_date(position_ms: Optional[int], start_date: str) -> str:
    """Window start: the calendar day (UTC) of the stored position, or the configured start date."""
    if not position_ms:
        return start_date
    return datetime.fromtimestamp(position_ms / 1000, tz=timezone.utc).strftime(DATE_FORMAT)


def resolve_window(
    state: Optional[Dict[str, Any]], cursor_field: str, start_date: str, today: date, emitter
) -> Tuple[str, str, int]:
    """
    Compute the query window and the starting boundary of the cursor tracker.
    A malformed stored position is reported and treated as if there were no prior state.
    Returns:
        (from_date, to_date, boundary_ms)
    """
    try:
        position_ms = read_checkpoint(state, cursor_field)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        emitter.warn(
            f"Ignoring malformed checkpoint {cursor_field}={state.get(cursor_field)!r}: {str(e)}. "
            f"Starting from {start_date}"
        )
        position_ms = None

    return resolve_start_date(position_ms, start_date), today.strftime(DATE_FORMAT), position_ms or 0


class CursorTracker:
    """
    Forward-only filter plus running maximum of the positions kept during one pass.
    Items are compared against the boundary the pass started from, so older items that
    follow newer ones in a newest-first page are still kept.
    """

    def __init__(self, boundary: int = 0) -> None:
        self.boundary = boundary
        self.high_water = boundary

    def is_replicated(self, position: int) -> bool:
        return self.boundary > 0 and position <= self.boundary

    def keep(self, position: int) -> bool:
        """Return True when the item should be emitted, and advance the running maximum if so."""
        if self.is_replicated(position):
            return False
        if position > self.high_water:
            self.high_water = position
        return True

    @property
    def advanced(self) -> bool:
        return self.high_water > self.boundary


def _listing_params(descriptor: StreamDescriptor, from_date: str, to_date: str, context: PassContext) -> Dict[str, Any]:
    start_param, end_param = descriptor.window_params
    params = {start_param: from_date, end_param: to_date, "app_id": context.app_id}
    if descriptor.page_size:
        params["limit"] = descriptor.page_size
        params["order"] = "desc"
    if context.region != "global":
        params["region"] = context.region
    return params


def _expand(descriptor: StreamDescriptor, parent: Dict[str, Any], detail: Optional[Dict[str, Any]], context: PassContext):
    if descriptor.children is None:
        return [parent]
    return descriptor.children(parent, detail, context) or []


def iterate_listing_with_detail(
    client, descriptor: StreamDescriptor, params: Dict[str, Any], tracker: CursorTracker, context: PassContext, emitter
) -> Iterator[Tuple[Dict[str, Any], Dict[str, Any]]]:
    """
    Fetch a single listing page, then one detail response per parent when the stream has a detail endpoint.
    Yields (child, parent) pairs. At most 1 + N remote calls are made for N parents.
    """
    response = client.get(descriptor.list_path, params=params)
    parents = (response or {}).get(descriptor.list_key) or []
    if not parents:
        emitter.info(f"No {descriptor.name} found for the specified time period")
        return

    emitter.info(f"Processing {len(parents)} {descriptor.name} listing item(s)")
    for parent in parents:
        if descriptor.parent_position is not None:
            parent_ms = to_millis(descriptor.parent_position(parent, context), descriptor.cursor_unit)
            if tracker.is_replicated(parent_ms):
                continue

        detail = None
        if descriptor.detail_path:
            detail_params = descriptor.detail_params(parent, context) if descriptor.detail_params else {}
            detail = client.get(descriptor.detail_path, params=detail_params) or {}

        for child in _expand(descriptor, parent, detail, context):
            yield child, parent


def iterate_paged_listing(
    client, descriptor: StreamDescriptor, params: Dict[str, Any], tracker: CursorTracker, context: PassContext, emitter
) -> Iterator[Tuple[Dict[str, Any], Dict[str, Any]]]:
    """
    Fetch pages 1, 2, ... until a page is shorter than the page size or empty.
    Yields (item, item) pairs so both strategies feed the same filter loop.
    """
    page = 1
    while True:
        page_params = dict(params, page=page)
        response = client.get(descriptor.list_path, params=page_params)
        items = (response or {}).get(descriptor.list_key) or []

        if not items:
            if page == 1:
                emitter.info(f"No {descriptor.name} found for the specified time period")
            break

        emitter.info(f"Processing page {page} of {descriptor.name}: {len(items)} item(s)")
        for item in items:
            for child in _expand(descriptor, item, None, context):
                yield child, item

        # A short page is the last one
        if len(items) < descriptor.page_size:
            break
        page += 1


STRATEGIES = {
    LISTING_WITH_DETAIL: iterate_listing_with_detail,
    PAGED_LISTING: iterate_paged_listing,
}


def run_pass(
    descriptor: StreamDescriptor,
    client,
    config: AgoraConfig,
    state: Optional[Dict[str, Any]],
    emitter,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Run one incremental pass for a stream.
    Args:
        descriptor: the stream to sync.
        client: object exposing get(path, params) -> dict.
        config: validated connector configuration.
        state: the stream's incoming state, e.g. {"timestamp": 1620003600000}. May be empty.
        emitter: MessageEmitter receiving RECORD, STATE and LOG messages.
        now: clock override, defaults to the current UTC time.
    Returns:
        The stream's new state, or the incoming state unchanged when nothing newer was found.
    Raises:
        Any error raised by the client. An ERROR diagnostic is emitted first and no checkpoint is written.
    """
    state = state or {}
    context = PassContext(
        app_id=config.app_id,
        region=config.region,
        now=now or datetime.now(timezone.utc),
    )

    try:
        emitter.info(f"Starting sync for {descriptor.name} stream")
        from_date, to_date, boundary = resolve_window(
            state, descriptor.cursor_field, config.start_date, context.now.date(), emitter
        )
        emitter.info(f"Fetching {descriptor.name} data from {from_date} to {to_date}")

        tracker = CursorTracker(boundary)
        params = _listing_params(descriptor, from_date, to_date, context)
        record_count = 0

        for child, parent in STRATEGIES[descriptor.strategy](client, descriptor, params, tracker, context, emitter):
            position_ms = to_millis(descriptor.position(child, parent, context), descriptor.cursor_unit)
            if not tracker.keep(position_ms):
                continue
            identity = generate_identity(*descriptor.key_fields(child, parent, position_ms, context))
            emitter.emit_record(descriptor.name, descriptor.project(child, parent, position_ms, identity, context))
            record_count += 1

        if tracker.advanced:
            state = {descriptor.cursor_field: tracker.high_water}
            emitter.emit_state(descriptor.name, state)

        emitter.info(f"Completed sync for {descriptor.name} stream: {record_count} record(s)")
        return state

    except Exception as e:
        emitter.error(f"Error syncing {descriptor.name}: {str(e)}")
        raise
