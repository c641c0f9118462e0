"""
ListSync Reconciler — Multi-client Scenarios

Several engines on one MemoryDatabase, the way collaborators share a list:
end-to-end propagation, convergence under shuffled delivery, listeners and
post-commit hooks, and recovery after a transport drop.
"""

import random

import pytest

from engine.kernel.reconciler import ReconciliationEngine
from engine.kernel.store import MemoryRemoteStore
from engine.kernel.types import ItemDraft


async def settle_all(*engines):
    # Two rounds: a confirmation can publish events the other engine then applies
    for _ in range(2):
        for engine in engines:
            await engine.settle()


def snapshot(records):
    return {r.id: (r.text, r.done, r.position, r.version) for r in records}


# ============================================================================
# Two collaborators
# ============================================================================


class TestTwoClients:
    @pytest.mark.asyncio
    async def test_add_toggle_remove_round_trip(self, make_engine):
        alice = make_engine("alice", user_name="Alice")
        bob = make_engine("bob")
        await alice.open()
        await bob.open()

        milk = await (await alice.add(ItemDraft(text="Milk", quantity=2)))
        await settle_all(alice, bob)
        seen = bob.get(milk.id)
        assert seen is not None
        assert seen.text == "Milk"
        assert seen.created_by_name == "Alice"

        await (await bob.toggle_done(milk.id))
        await settle_all(alice, bob)
        assert alice.get(milk.id).done
        assert [r.id for r in alice.view().done_items] == [milk.id]

        await (await alice.remove(milk.id))
        await settle_all(alice, bob)
        assert alice.view().items == ()
        assert bob.view().items == ()

        # Each engine applied the other's events and skipped its own
        assert alice.echoes_suppressed == 2
        assert bob.echoes_suppressed == 1

    @pytest.mark.asyncio
    async def test_concurrent_edits_converge(self, make_engine, seed, db):
        seed("Milk", "Eggs", "Bread")
        alice = make_engine("alice")
        bob = make_engine("bob")
        await alice.open()
        await bob.open()
        milk, eggs, bread = (r.id for r in alice.view().items)

        pending = [
            await alice.update(milk, {"text": "Oat milk"}),
            await bob.toggle_done(eggs),
            await alice.reorder([bread, milk, eggs]),
            await bob.add(ItemDraft(text="Jam")),
        ]
        for mutation in pending:
            await mutation
        await settle_all(alice, bob)

        server = snapshot(db.live_rows(alice.list_id))
        assert snapshot(alice.view().items) == server
        assert snapshot(bob.view().items) == server

    @pytest.mark.asyncio
    async def test_viewer_sees_changes_but_cannot_write(self, make_engine):
        alice = make_engine("alice")
        vic = make_engine("vic")
        await alice.open()
        await vic.open()
        await (await alice.add(ItemDraft(text="Milk")))
        await settle_all(alice, vic)
        assert [r.text for r in vic.view().items] == ["Milk"]


# ============================================================================
# Shuffled delivery
# ============================================================================


class TestShuffledDelivery:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed_value", [1, 7, 42, 1234])
    async def test_any_delivery_order_converges(self, make_engine, db, cfg, seed_value):
        events = []
        recorder = MemoryRemoteStore(db, "vic")
        await recorder.subscribe("list_1", events.append)

        alice = make_engine("alice")
        bob = make_engine("bob")
        await alice.open()
        await bob.open()

        added = await (await alice.add_many([ItemDraft(text=t) for t in ("a", "b", "c", "d")]))
        ids = [r.id for r in added]
        await settle_all(alice, bob)
        await (await bob.update(ids[0], {"text": "A"}))
        await (await alice.toggle_done(ids[1]))
        await (await bob.remove(ids[2]))
        await settle_all(alice, bob)
        await (await alice.reorder([ids[3], ids[1], ids[0]]))
        await (await bob.update(ids[3], {"priority": True}))
        await settle_all(alice, bob)

        shuffled = list(events)
        random.Random(seed_value).shuffle(shuffled)
        observer = ReconciliationEngine("list_1", MemoryRemoteStore(db, "vic"), cfg=cfg)
        for event in shuffled:
            observer.on_remote_change(event)

        server = snapshot(db.live_rows("list_1"))
        assert snapshot(observer.view().items) == server
        assert snapshot(alice.view().items) == server
        assert snapshot(bob.view().items) == server


# ============================================================================
# Listeners and post-commit hooks
# ============================================================================


class TestCallbacks:
    @pytest.mark.asyncio
    async def test_listener_sees_optimistic_state(self, engine):
        views = []
        remove = engine.add_listener(views.append)
        mutation = await engine.add(ItemDraft(text="Milk"))
        assert views[-1].items[0].is_provisional
        await mutation
        assert not views[-1].items[0].is_provisional

        remove()
        count = len(views)
        await (await engine.add(ItemDraft(text="Eggs")))
        assert len(views) == count

    @pytest.mark.asyncio
    async def test_failing_listener_isolated(self, engine):
        def broken(view):
            raise RuntimeError("ui bug")

        engine.add_listener(broken)
        record = await (await engine.add(ItemDraft(text="Milk")))
        assert record.text == "Milk"

    @pytest.mark.asyncio
    async def test_post_commit_hooks_sync_and_async(self, engine):
        seen = []

        def sync_hook(operation, record):
            seen.append(("sync", operation, record.text if record else None))

        async def async_hook(operation, record):
            seen.append(("async", operation, record.text if record else None))

        def broken_hook(operation, record):
            raise RuntimeError("analytics down")

        engine.add_post_commit_hook(broken_hook)
        engine.add_post_commit_hook(sync_hook)
        engine.add_post_commit_hook(async_hook)

        await (await engine.add(ItemDraft(text="Milk")))
        await engine.settle()
        assert ("sync", "add", "Milk") in seen
        assert ("async", "add", "Milk") in seen


# ============================================================================
# Transport drop
# ============================================================================


class TestReconnect:
    @pytest.mark.asyncio
    async def test_missed_changes_recovered_after_resubscribe(self, engine, db, list_id, eventually):
        db.drop_subscriptions(list_id)
        bob = MemoryRemoteStore(db, "bob")
        row = await bob.create_record(list_id, ItemDraft(text="Bread"), position=0, client_token="bob-1")
        await eventually(lambda: engine.get(row.id) is not None)
        assert engine.view().last_error is None
