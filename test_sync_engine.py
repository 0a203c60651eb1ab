"""Tests for the incremental sync engine: window resolution, cursor tracking, identities and both pagination strategies."""

import hashlib
import unittest
from datetime import date, datetime, timezone
from typing import Any, Dict, List

from agora_client import TransportError
from agora_config import AgoraConfig
from message_emitter import ERROR, LOG, RECORD, STATE, WARN, MessageEmitter
from sync_engine import (
    LISTING_WITH_DETAIL,
    MILLISECONDS,
    PAGED_LISTING,
    SECONDS,
    CursorTracker,
    StreamDescriptor,
    generate_identity,
    read_checkpoint,
    resolve_window,
    run_pass,
    to_millis,
)

NOW = datetime(2021, 5, 3, 12, 0, 0, tzinfo=timezone.utc)


class RecordingSink:
    """Keeps every message written by the emitter."""

    def __init__(self):
        self.messages: List[Dict[str, Any]] = []

    def write(self, message):
        self.messages.append(message)

    def of_type(self, message_type):
        return [m for m in self.messages if m["type"] == message_type]

    @property
    def records(self):
        return [m["record"]["data"] for m in self.of_type(RECORD)]

    @property
    def states(self):
        return [m["state"]["data"] for m in self.of_type(STATE)]

    def logs(self, level):
        return [m["message"] for m in self.of_type(LOG) if m["level"] == level]


class FakeClient:
    """
    Answers GET requests from canned routes.
    A route is either a list of responses served in order, or a callable taking the query parameters.
    """

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def get(self, path, params=None):
        self.calls.append((path, dict(params or {})))
        route = self.routes[path]
        if callable(route):
            return route(params or {})
        return route.pop(0)

    def paths(self):
        return [path for path, _ in self.calls]


def make_config(**overrides) -> AgoraConfig:
    values = dict(app_id="app-1", customer_id="customer", customer_secret="secret", start_date="2021-05-01")
    values.update(overrides)
    return AgoraConfig(**values)


def call_descriptor(**overrides) -> StreamDescriptor:
    """A listing-with-detail stream shaped like call quality: calls fan out into per-user metrics."""
    values = dict(
        name="calls",
        list_path="/calls",
        list_key="calls",
        strategy=LISTING_WITH_DETAIL,
        primary_key=["id"],
        columns={"id": "STRING"},
        position=lambda user, call, ctx: user["time"],
        key_fields=lambda user, call, position_ms, ctx: [call["call_id"], user["user_id"], position_ms],
        project=lambda user, call, position_ms, identity, ctx: {
            "id": identity,
            "call_id": call["call_id"],
            "user_id": user["user_id"],
            "timestamp": position_ms,
        },
        children=lambda call, detail, ctx: detail.get("users") or [],
        detail_path="/calls/detail",
        detail_params=lambda call, ctx: {"call_id": call["call_id"]},
        parent_position=lambda call, ctx: call["end_time"],
    )
    values.update(overrides)
    return StreamDescriptor(**values)


def paged_descriptor(**overrides) -> StreamDescriptor:
    values = dict(
        name="items",
        list_path="/items",
        list_key="items",
        strategy=PAGED_LISTING,
        primary_key=["id"],
        columns={"id": "STRING"},
        position=lambda item, parent, ctx: item["time"],
        key_fields=lambda item, parent, position_ms, ctx: [item["name"], item["time"]],
        project=lambda item, parent, position_ms, identity, ctx: {"id": identity, "timestamp": position_ms},
    )
    values.update(overrides)
    return StreamDescriptor(**values)


def detail_route(users_by_call):
    def route(params):
        return {"users": users_by_call[params["call_id"]]}

    return route


class TestGenerateIdentity(unittest.TestCase):
    def test_identity_is_truncated_sha256_of_joined_fields(self):
        expected = hashlib.sha256(b"call1:user1:1620003000000").hexdigest()[:32]
        self.assertEqual(generate_identity("call1", "user1", 1620003000000), expected)

    def test_identity_is_stable_and_32_hex_characters(self):
        first = generate_identity("app-1", "2021-05-01", "audio_minutes", "global")
        second = generate_identity("app-1", "2021-05-01", "audio_minutes", "global")
        self.assertEqual(first, second)
        self.assertEqual(len(first), 32)
        int(first, 16)

    def test_changing_any_field_changes_identity(self):
        base = generate_identity("a", "b", 1)
        self.assertNotEqual(base, generate_identity("a", "b", 2))
        self.assertNotEqual(base, generate_identity("a", "c", 1))
        self.assertNotEqual(base, generate_identity("b", "a", 1))


class TestCheckpointResolution(unittest.TestCase):
    def setUp(self):
        self.sink = RecordingSink()
        self.emitter = MessageEmitter(self.sink)

    def test_to_millis_converts_native_units(self):
        self.assertEqual(to_millis(1620003600, SECONDS), 1620003600000)
        self.assertEqual(to_millis(1620003600123, MILLISECONDS), 1620003600123)
        with self.assertRaises(ValueError):
            to_millis(1, "minutes")

    def test_read_checkpoint(self):
        self.assertIsNone(read_checkpoint({}, "timestamp"))
        self.assertIsNone(read_checkpoint(None, "timestamp"))
        self.assertEqual(read_checkpoint({"timestamp": "1620003600000"}, "timestamp"), 1620003600000)
        for bad in ("yesterday", -5, True):
            with self.assertRaises(ValueError):
                read_checkpoint({"timestamp": bad}, "timestamp")

    def test_window_without_state_starts_at_configured_date(self):
        window = resolve_window({}, "timestamp", "2021-05-01", date(2021, 5, 3), self.emitter)
        self.assertEqual(window, ("2021-05-01", "2021-05-03", 0))

    def test_window_with_state_starts_at_checkpoint_day(self):
        # 2021-05-02T23:30:00Z
        window = resolve_window({"timestamp": 1619998200000}, "timestamp", "2021-01-01", date(2021, 5, 3), self.emitter)
        self.assertEqual(window, ("2021-05-02", "2021-05-03", 1619998200000))

    def test_malformed_state_warns_and_falls_back_to_start_date(self):
        window = resolve_window({"timestamp": "not-a-number"}, "timestamp", "2021-05-01", date(2021, 5, 3), self.emitter)
        self.assertEqual(window, ("2021-05-01", "2021-05-03", 0))
        self.assertEqual(len(self.sink.logs(WARN)), 1)
        self.assertIn("not-a-number", self.sink.logs(WARN)[0])


class TestCursorTracker(unittest.TestCase):
    def test_without_boundary_everything_is_kept(self):
        tracker = CursorTracker()
        self.assertTrue(tracker.keep(0))
        self.assertTrue(tracker.keep(5))
        self.assertEqual(tracker.high_water, 5)

    def test_items_at_or_before_boundary_are_discarded(self):
        tracker = CursorTracker(100)
        kept = [position for position in [150, 100, 90, 120, 101] if tracker.keep(position)]
        self.assertEqual(kept, [150, 120, 101])
        self.assertEqual(tracker.high_water, 150)
        self.assertTrue(tracker.advanced)

    def test_high_water_stays_at_boundary_when_nothing_is_kept(self):
        tracker = CursorTracker(100)
        self.assertFalse(tracker.keep(100))
        self.assertEqual(tracker.high_water, 100)
        self.assertFalse(tracker.advanced)


class TestListingWithDetail(unittest.TestCase):
    def setUp(self):
        self.sink = RecordingSink()
        self.emitter = MessageEmitter(self.sink)
        self.config = make_config()

    def test_two_calls_with_three_users_emit_three_records_and_one_state(self):
        client = FakeClient(
            {
                "/calls": [
                    {
                        "calls": [
                            {"call_id": "call1", "end_time": 1620003600},
                            {"call_id": "call2", "end_time": 1620007200},
                        ]
                    }
                ],
                "/calls/detail": detail_route(
                    {
                        "call1": [{"user_id": "u1", "time": 1620003000}, {"user_id": "u2", "time": 1620003500}],
                        "call2": [{"user_id": "u3", "time": 1620007000}],
                    }
                ),
            }
        )

        state = run_pass(call_descriptor(), client, self.config, {}, self.emitter, now=NOW)

        self.assertEqual([r["user_id"] for r in self.sink.records], ["u1", "u2", "u3"])
        self.assertEqual(self.sink.states, [{"calls": {"timestamp": 1620007000000}}])
        self.assertEqual(state, {"timestamp": 1620007000000})
        self.assertEqual(client.paths(), ["/calls", "/calls/detail", "/calls/detail"])
        self.assertEqual(
            self.sink.records[0]["id"], generate_identity("call1", "u1", 1620003000000)
        )

    def test_listing_params_carry_window_app_and_page_size(self):
        client = FakeClient({"/calls": [{"calls": []}]})
        run_pass(call_descriptor(), client, make_config(region="eu"), {}, self.emitter, now=NOW)
        self.assertEqual(
            client.calls[0][1],
            {
                "from_date": "2021-05-01",
                "to_date": "2021-05-03",
                "app_id": "app-1",
                "limit": 100,
                "order": "desc",
                "region": "eu",
            },
        )

    def test_global_region_is_not_sent(self):
        client = FakeClient({"/calls": [{"calls": []}]})
        run_pass(call_descriptor(), client, self.config, {}, self.emitter, now=NOW)
        self.assertNotIn("region", client.calls[0][1])

    def test_checkpoint_equal_to_every_position_emits_nothing(self):
        checkpoint = 1620003000000
        client = FakeClient(
            {
                "/calls": [{"calls": [{"call_id": "call1", "end_time": 1620003600}]}],
                "/calls/detail": detail_route(
                    {"call1": [{"user_id": "u1", "time": 1620003000}, {"user_id": "u2", "time": 1620003000}]}
                ),
            }
        )
        incoming = {"timestamp": checkpoint}

        state = run_pass(call_descriptor(), client, self.config, incoming, self.emitter, now=NOW)

        self.assertEqual(self.sink.records, [])
        self.assertEqual(self.sink.states, [])
        self.assertEqual(state, {"timestamp": checkpoint})

    def test_replicated_parents_skip_their_detail_fetch(self):
        client = FakeClient(
            {
                "/calls": [
                    {
                        "calls": [
                            {"call_id": "new", "end_time": 1620007200},
                            {"call_id": "old", "end_time": 1620000000},
                        ]
                    }
                ],
                "/calls/detail": detail_route({"new": [{"user_id": "u1", "time": 1620007000}]}),
            }
        )

        run_pass(call_descriptor(), client, self.config, {"timestamp": 1620003600000}, self.emitter, now=NOW)

        self.assertEqual(client.calls[1], ("/calls/detail", {"call_id": "new"}))
        self.assertEqual(len(client.calls), 2)
        self.assertEqual(len(self.sink.records), 1)

    def test_detail_failure_keeps_earlier_records_and_writes_no_state(self):
        def detail(params):
            if params["call_id"] == "call2":
                raise TransportError("GET /calls/detail returned HTTP 500", status_code=500)
            return {"users": [{"user_id": "u1", "time": 1620003000}, {"user_id": "u2", "time": 1620003500}]}

        client = FakeClient(
            {
                "/calls": [
                    {
                        "calls": [
                            {"call_id": "call1", "end_time": 1620003600},
                            {"call_id": "call2", "end_time": 1620007200},
                        ]
                    }
                ],
                "/calls/detail": detail,
            }
        )

        with self.assertRaises(TransportError):
            run_pass(call_descriptor(), client, self.config, {}, self.emitter, now=NOW)

        self.assertEqual([r["user_id"] for r in self.sink.records], ["u1", "u2"])
        self.assertEqual(self.sink.states, [])
        self.assertEqual(len(self.sink.logs(ERROR)), 1)
        self.assertIn("HTTP 500", self.sink.logs(ERROR)[0])

    def test_fan_out_evaluates_every_child_with_one_call_per_parent(self):
        evaluated = []

        def position(user, call, ctx):
            evaluated.append(user["user_id"])
            return user["time"]

        calls = [{"call_id": f"call{i}", "end_time": 1620003600 + i} for i in range(3)]
        users = {
            "call0": [{"user_id": "a", "time": 1620000001}, {"user_id": "b", "time": 1620000002}],
            "call1": [],
            "call2": [{"user_id": "c", "time": 1620000003}, {"user_id": "d", "time": 1620000004}, {"user_id": "e", "time": 1620000005}],
        }
        client = FakeClient({"/calls": [{"calls": calls}], "/calls/detail": detail_route(users)})

        run_pass(call_descriptor(position=position), client, self.config, {}, self.emitter, now=NOW)

        self.assertEqual(evaluated, ["a", "b", "c", "d", "e"])
        self.assertEqual(len(client.calls), 1 + len(calls))

    def test_empty_listing_logs_and_keeps_state(self):
        client = FakeClient({"/calls": [{}]})
        incoming = {"timestamp": 1620003600000}

        state = run_pass(call_descriptor(), client, self.config, incoming, self.emitter, now=NOW)

        self.assertEqual(state, incoming)
        self.assertEqual(self.sink.of_type(RECORD), [])
        self.assertTrue(any("No calls found" in message for message in self.sink.logs("INFO")))


class TestPagedListing(unittest.TestCase):
    def setUp(self):
        self.sink = RecordingSink()
        self.emitter = MessageEmitter(self.sink)
        self.config = make_config()

    @staticmethod
    def page(size, start):
        return {"items": [{"name": f"item{start + i}", "time": 1620000000 + start + i} for i in range(size)]}

    def test_short_page_ends_pagination(self):
        pages = [self.page(100, 0), self.page(100, 100), self.page(100, 200), self.page(7, 300)]
        client = FakeClient({"/items": pages})

        state = run_pass(paged_descriptor(), client, self.config, {}, self.emitter, now=NOW)

        self.assertEqual(len(client.calls), 4)
        self.assertEqual([params["page"] for _, params in client.calls], [1, 2, 3, 4])
        self.assertEqual(len(self.sink.records), 307)
        self.assertEqual(state, {"timestamp": (1620000000 + 306) * 1000})

    def test_empty_first_page_is_a_single_fetch(self):
        client = FakeClient({"/items": [{"items": []}]})

        state = run_pass(paged_descriptor(), client, self.config, {}, self.emitter, now=NOW)

        self.assertEqual(len(client.calls), 1)
        self.assertEqual(state, {})
        self.assertEqual(self.sink.states, [])

    def test_full_page_followed_by_empty_page(self):
        client = FakeClient({"/items": [self.page(100, 0), {"items": []}]})
        run_pass(paged_descriptor(), client, self.config, {}, self.emitter, now=NOW)
        self.assertEqual(len(client.calls), 2)

    def test_forward_only_filter_on_newest_first_page(self):
        items = [{"name": n, "time": t} for n, t in [("a", 30), ("b", 20), ("c", 10), ("d", 25)]]
        client = FakeClient({"/items": [{"items": items}]})

        state = run_pass(
            paged_descriptor(cursor_unit=MILLISECONDS), client, self.config, {"timestamp": 20}, self.emitter, now=NOW
        )

        self.assertEqual([r["timestamp"] for r in self.sink.records], [30, 25])
        self.assertTrue(all(r["timestamp"] > 20 for r in self.sink.records))
        self.assertEqual(state, {"timestamp": 30})

    def test_second_pass_from_returned_state_emits_nothing_new(self):
        pages = [self.page(3, 0)]
        state = run_pass(paged_descriptor(), FakeClient({"/items": pages}), self.config, {}, self.emitter, now=NOW)

        second = RecordingSink()
        run_pass(
            paged_descriptor(), FakeClient({"/items": [self.page(3, 0)]}), self.config, state, MessageEmitter(second), now=NOW
        )

        self.assertEqual(second.of_type(RECORD), [])
        self.assertEqual(second.of_type(STATE), [])


if __name__ == "__main__":
    unittest.main()
