"""Tests for the poll cycle and its reconciliation rules."""

import json
import threading

import pytest

from conftest import FakeDispatcher, FakeInventories, FakePrices, item
from souvenir_notifier.directory import Account
from souvenir_notifier.inventory import (
    InventoryUnavailableError,
    MalformedInventoryError,
    PrivateInventoryError,
)
from souvenir_notifier.poller import Poller, build_payload
from souvenir_notifier.pricing import PRICE_UNAVAILABLE
from souvenir_notifier.classifier import Drop

KATOWICE = "ESL One Katowice 2019 Dust II Souvenir Package"
BERLIN = "StarLadder Berlin 2019 Inferno Souvenir Package"
MATCH_LINE = "It was dropped during the Grand Final match between Astralis and ENCE, in which Astralis won."

ALICE = Account("76561198000000001", "alice", ["tok-a", "tok-b"])
BOB = Account("76561198000000002", "bob", ["tok-c"])


def _stored(store):
    with open(store.path, encoding="utf-8") as f:
        return {k: set(v) for k, v in json.load(f).items()}


class TestBaseline:
    def test_new_account_is_baselined_without_notifications(self, poller, store, inventories, dispatcher, prices):
        inventories.inventories[ALICE.account_id] = [
            item("1", KATOWICE),
            item("2", BERLIN),
            item("3", "AK-47 | Redline (Field-Tested)"),
        ]

        report = poller.run_cycle([ALICE])

        assert dispatcher.calls == []
        assert prices.calls == []
        assert store.get(ALICE.account_id) == {"1", "2"}
        assert report.results[0].baseline is True
        assert report.notifications == 0

    def test_new_account_with_no_matches_is_still_recorded(self, poller, store, inventories, dispatcher):
        inventories.inventories[ALICE.account_id] = [item("9", "Operation Breakout Weapon Case")]

        poller.run_cycle([ALICE])

        assert store.get(ALICE.account_id) == set()
        assert _stored(store) == {ALICE.account_id: set()}

        # A package arriving later is now a real drop.
        inventories.inventories[ALICE.account_id] = [item("9", "Operation Breakout Weapon Case"), item("10", KATOWICE)]
        poller.run_cycle([ALICE])
        assert len(dispatcher.calls) == 2

    def test_many_matches_on_first_poll_never_notify(self, poller, store, inventories, dispatcher):
        inventories.inventories[ALICE.account_id] = [item(str(i), KATOWICE) for i in range(50)]

        poller.run_cycle([ALICE])

        assert dispatcher.calls == []
        assert len(store.get(ALICE.account_id)) == 50


class TestReconciliation:
    def test_example_second_package_notifies_once(self, poller, store, inventories, dispatcher):
        alice = Account(ALICE.account_id, "alice", ["tok-a"])
        inventories.inventories[alice.account_id] = [item("id1", KATOWICE)]
        poller.run_cycle([alice])
        assert store.get(alice.account_id) == {"id1"}
        assert dispatcher.calls == []

        inventories.inventories[alice.account_id] = [item("id1", KATOWICE), item("id2", KATOWICE)]
        poller.run_cycle([alice])

        assert len(dispatcher.calls) == 1
        token, payload = dispatcher.calls[0]
        assert token == "tok-a"
        assert payload["url"].endswith("#730_2_id2")
        assert store.get(alice.account_id) == {"id1", "id2"}

    def test_every_target_gets_every_new_item(self, poller, store, inventories, dispatcher):
        store.save({ALICE.account_id: ["old"]})
        inventories.inventories[ALICE.account_id] = [item("old", BERLIN), item("n1", KATOWICE), item("n2", BERLIN)]

        report = poller.run_cycle([ALICE])

        assert len(dispatcher.calls) == 4
        assert sorted(t for t, _ in dispatcher.calls) == ["tok-a", "tok-a", "tok-b", "tok-b"]
        assert report.results[0].new_ids == ["n1", "n2"]
        assert report.notifications == 4

    def test_unchanged_inventory_is_idempotent(self, poller, inventories, dispatcher, store):
        store.save({ALICE.account_id: []})
        inventories.inventories[ALICE.account_id] = [item("1", KATOWICE)]

        poller.run_cycle([ALICE])
        calls_after_first = len(dispatcher.calls)
        report = poller.run_cycle([ALICE])

        assert calls_after_first == 2
        assert len(dispatcher.calls) == calls_after_first
        assert report.results[0].new_ids == []

    def test_state_is_a_snapshot_not_a_ledger(self, poller, inventories, dispatcher, store):
        store.save({ALICE.account_id: []})
        alice = Account(ALICE.account_id, "alice", ["tok-a"])

        inventories.inventories[alice.account_id] = [item("x", KATOWICE)]
        poller.run_cycle([alice])
        assert len(dispatcher.calls) == 1

        inventories.inventories[alice.account_id] = []
        poller.run_cycle([alice])
        assert len(dispatcher.calls) == 1
        assert store.get(alice.account_id) == set()

        inventories.inventories[alice.account_id] = [item("x", KATOWICE)]
        poller.run_cycle([alice])
        assert len(dispatcher.calls) == 2

    def test_unmatched_names_are_invisible(self, poller, inventories, dispatcher, store):
        store.save({ALICE.account_id: []})
        inventories.inventories[ALICE.account_id] = [
            item("a", "ESL One Katowice 2019 Dust II Souvenir Package (Sealed)"),
            item("b", "ESL One Katowice 2019 Dust II"),
            item("c", "Souvenir Package"),
        ]

        poller.run_cycle([ALICE])

        assert dispatcher.calls == []
        assert store.get(ALICE.account_id) == set()

    def test_duplicate_ids_collapse(self, poller, inventories, dispatcher, store):
        store.save({ALICE.account_id: []})
        alice = Account(ALICE.account_id, "alice", ["tok-a"])
        inventories.inventories[alice.account_id] = [item("d", KATOWICE), item("d", BERLIN)]

        poller.run_cycle([alice])

        assert len(dispatcher.calls) == 1
        assert dispatcher.calls[0][1]["map"] == "Inferno"
        assert store.get(alice.account_id) == {"d"}

    def test_account_without_targets_updates_state(self, poller, inventories, dispatcher, store):
        lonely = Account("765", "lonely", [])
        store.save({"765": []})
        inventories.inventories["765"] = [item("1", KATOWICE)]

        poller.run_cycle([lonely])

        assert dispatcher.calls == []
        assert store.get("765") == {"1"}


class TestFailures:
    @pytest.mark.parametrize(
        "error",
        [
            PrivateInventoryError(ALICE.account_id, "HTTP 403"),
            InventoryUnavailableError(ALICE.account_id, "timed out"),
            MalformedInventoryError(ALICE.account_id, "body is not JSON"),
            RuntimeError("boom"),
        ],
    )
    def test_fetch_failure_skips_only_that_account(self, poller, store, inventories, dispatcher, error):
        store.save({ALICE.account_id: ["1"], BOB.account_id: []})
        inventories.inventories[ALICE.account_id] = error
        inventories.inventories[BOB.account_id] = [item("b1", BERLIN)]

        report = poller.run_cycle([ALICE, BOB])

        assert store.get(ALICE.account_id) == {"1"}
        assert store.get(BOB.account_id) == {"b1"}
        assert [t for t, _ in dispatcher.calls] == ["tok-c"]
        assert report.skipped == [ALICE.account_id]

    def test_fetch_failure_leaves_new_account_unbaselined(self, poller, store, inventories, private_error):
        inventories.inventories[ALICE.account_id] = private_error

        poller.run_cycle([ALICE])

        assert ALICE.account_id not in store

    def test_price_failure_uses_sentinel(self, store, inventories, dispatcher):
        poller = Poller(
            store,
            fetch_inventory=inventories,
            lookup_price=FakePrices(error=RuntimeError("market down")),
            dispatcher=dispatcher,
            max_workers=1,
        )
        alice = Account(ALICE.account_id, "alice", ["tok-a"])
        store.save({alice.account_id: []})
        inventories.inventories[alice.account_id] = [item("1", KATOWICE)]

        poller.run_cycle([alice])

        assert len(dispatcher.calls) == 1
        assert dispatcher.calls[0][1]["price"] == PRICE_UNAVAILABLE

    def test_unavailable_price_still_notifies(self, store, inventories, dispatcher):
        poller = Poller(
            store,
            fetch_inventory=inventories,
            lookup_price=FakePrices(price=PRICE_UNAVAILABLE),
            dispatcher=dispatcher,
            max_workers=1,
        )
        alice = Account(ALICE.account_id, "alice", ["tok-a"])
        store.save({alice.account_id: []})
        inventories.inventories[alice.account_id] = [item("1", KATOWICE)]

        poller.run_cycle([alice])

        assert [p["price"] for _, p in dispatcher.calls] == ["0"]

    def test_failed_recipient_does_not_block_others(self, store, inventories):
        dispatcher = FakeDispatcher(fail_tokens=["tok-a"])
        poller = Poller(store, fetch_inventory=inventories, lookup_price=FakePrices(), dispatcher=dispatcher, max_workers=1)
        store.save({ALICE.account_id: []})
        inventories.inventories[ALICE.account_id] = [item("1", KATOWICE), item("2", BERLIN)]

        report = poller.run_cycle([ALICE])

        assert len(dispatcher.calls) == 4
        assert report.notifications == 2
        assert store.get(ALICE.account_id) == {"1", "2"}

    def test_unreadable_state_file_starts_empty(self, poller, store, inventories, dispatcher):
        store.path.parent.mkdir(parents=True, exist_ok=True)
        store.path.write_text("{not json", encoding="utf-8")
        inventories.inventories[ALICE.account_id] = [item("1", KATOWICE)]

        poller.run_cycle([ALICE])

        assert dispatcher.calls == []
        assert _stored(store) == {ALICE.account_id: {"1"}}


class TestPayload:
    def test_payload_with_match_context(self, poller, store, inventories, dispatcher):
        alice = Account(ALICE.account_id, "alice", ["tok-a"])
        store.save({alice.account_id: []})
        inventories.inventories[alice.account_id] = [item("1", KATOWICE, ["", MATCH_LINE])]

        poller.run_cycle([alice])

        payload = dispatcher.calls[0][1]
        assert payload == {
            "username": "alice",
            "price": "1,23€",
            "event": "ESL One Katowice",
            "year": "2019",
            "map": "Dust II",
            "url": "https://steamcommunity.com/profiles/76561198000000001/inventory#730_2_1",
            "tier": "Grand Final",
            "team1": "Astralis",
            "team2": "ENCE",
        }

    def test_payload_omits_missing_match_context(self):
        drop = Drop(item_id="7", event="PGL Major Stockholm", year=2021, location="Ancient", market_key="k")

        payload = build_payload(ALICE, drop, "2,00€")

        assert "tier" not in payload and "team1" not in payload and "team2" not in payload
        assert payload["year"] == "2021"

    def test_price_looked_up_by_market_key(self, poller, store, inventories, prices):
        store.save({ALICE.account_id: []})
        inventories.inventories[ALICE.account_id] = [item("1", KATOWICE)]

        poller.run_cycle([ALICE])

        assert prices.calls == [KATOWICE]


class TestConcurrency:
    def test_overlapping_cycle_is_skipped(self, poller, inventories):
        poller._cycle_lock.acquire()
        try:
            assert poller.in_flight
            assert poller.run_cycle([ALICE]) is None
            assert inventories.calls == []
        finally:
            poller._cycle_lock.release()
        assert poller.run_cycle([ALICE]) is not None

    def test_parallel_accounts_all_persisted(self, store):
        accounts = [Account(str(i), f"user{i}", [f"tok{i}"]) for i in range(12)]
        inventories = FakeInventories({a.account_id: [item(f"{a.account_id}-1", KATOWICE)] for a in accounts})
        dispatcher = FakeDispatcher()
        poller = Poller(store, fetch_inventory=inventories, lookup_price=FakePrices(), dispatcher=dispatcher, max_workers=4)

        poller.run_cycle(accounts)
        assert _stored(store) == {a.account_id: {f"{a.account_id}-1"} for a in accounts}

        for a in accounts:
            inventories.inventories[a.account_id].append(item(f"{a.account_id}-2", BERLIN))
        report = poller.run_cycle(accounts)

        assert report.notifications == 12
        assert sorted(t for t, _ in dispatcher.calls) == sorted(a.notify_targets[0] for a in accounts)
        assert len(_stored(store)) == 12

    def test_concurrent_run_cycle_calls_do_not_overlap(self, store):
        started = threading.Event()
        release = threading.Event()

        def slow_fetch(account_id):
            started.set()
            release.wait(5)
            return []

        poller = Poller(store, fetch_inventory=slow_fetch, lookup_price=FakePrices(), dispatcher=FakeDispatcher(), max_workers=1)
        results = []
        t = threading.Thread(target=lambda: results.append(poller.run_cycle([ALICE])))
        t.start()
        assert started.wait(5)

        assert poller.run_cycle([ALICE]) is None

        release.set()
        t.join(5)
        assert results and results[0] is not None
