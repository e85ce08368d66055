"""Tests for the cart sync engine"""
import asyncio
from decimal import Decimal

import pytest

from cartsync.cart.models import CartLine, LineKey
from cartsync.cart.sync import SyncEngine, SyncState
from cartsync.errors import (
    ERROR_CART_LOADING,
    ERROR_LOAD_FAILED,
    ERROR_LOGIN_REQUIRED,
    ERROR_REMOVE_FAILED,
    ERROR_UPDATE_FAILED,
    CartNotReady,
    GatewayUnavailable,
    InvalidDiscount,
    WriteRejected,
)
from cartsync.gateway.base import CartChange
from cartsync.gateway.memory import InMemoryCartGateway
from cartsync.identity import IdentityStream

USER = "user-123"
OTHER_USER = "user-456"


def remote_line(item, quantity, user_id=USER):
    return CartLine.from_catalog(user_id, item, quantity)


class TestLifecycle:
    """Login / logout state machine."""

    @pytest.mark.asyncio
    async def test_starts_logged_out(self, engine):
        assert engine.state is SyncState.LOGGED_OUT
        assert engine.user_id is None

    @pytest.mark.asyncio
    async def test_login_hydrates_from_remote(self, engine, gateway, item_a, item_b):
        """Login loads the remote lines and opens the live stream."""
        await gateway.seed(remote_line(item_a, 2))
        await gateway.seed(remote_line(item_b, 1))
        states = []
        engine.add_state_listener(lambda state, user_id: states.append((state, user_id)))

        await engine.login(USER)

        assert engine.state is SyncState.SYNCED
        assert engine.user_id == USER
        assert [line.item_id for line in engine.store] == ["item-a", "item-b"]
        assert gateway.subscriber_count == 1
        assert states == [(SyncState.HYDRATING, USER), (SyncState.SYNCED, USER)]
        await engine.logout()

    @pytest.mark.asyncio
    async def test_login_ignores_other_users_lines(self, engine, gateway, item_a, item_b):
        await gateway.seed(remote_line(item_a, 2, user_id=OTHER_USER))
        await gateway.seed(remote_line(item_b, 1))

        await engine.login(USER)

        assert [line.item_id for line in engine.store] == ["item-b"]
        await engine.logout()

    @pytest.mark.asyncio
    async def test_login_requires_user_id(self, engine):
        with pytest.raises(ValueError):
            await engine.login("")

    @pytest.mark.asyncio
    async def test_login_same_user_is_noop(self, engine, gateway):
        await engine.login(USER)
        await engine.login(USER)

        assert gateway.fetch_calls == 1
        await engine.logout()

    @pytest.mark.asyncio
    async def test_logout_clears_local_but_not_remote(self, engine, gateway, item_a, item_b):
        await engine.login(USER)
        await engine.set_quantity(item_a, 2)
        await engine.set_quantity(item_b, 1)
        engine.selection.toggle(LineKey(USER, "item-a"))

        await engine.logout()

        assert engine.state is SyncState.LOGGED_OUT
        assert len(engine.store) == 0
        assert engine.selection.selected_keys() == []
        assert gateway.subscriber_count == 0
        assert gateway.document(LineKey(USER, "item-a")).quantity == 2
        assert gateway.document(LineKey(USER, "item-b")).quantity == 1

    @pytest.mark.asyncio
    async def test_relogin_uses_remote_snapshot(self, engine, gateway, item_a, item_b):
        """After sign-out, the next sign-in shows remote state, not the old local cache."""
        await engine.login(USER)
        await engine.set_quantity(item_a, 1)
        await engine.set_quantity(item_b, 1)
        await engine.logout()

        # Another device edits the cart while signed out here
        await gateway.seed(remote_line(item_a, 7))
        await gateway.delete_line(LineKey(USER, "item-b"))

        await engine.login(USER)

        assert engine.quantity_of(LineKey(USER, "item-a")) == 7
        assert LineKey(USER, "item-b") not in engine.store
        await engine.logout()

    @pytest.mark.asyncio
    async def test_switching_user_clears_previous_cart(self, engine, gateway, item_a, item_b):
        await gateway.seed(remote_line(item_b, 3, user_id=OTHER_USER))
        await engine.login(USER)
        await engine.set_quantity(item_a, 1)

        await engine.login(OTHER_USER)

        assert engine.user_id == OTHER_USER
        assert [line.key for line in engine.store] == [LineKey(OTHER_USER, "item-b")]
        assert gateway.subscriber_count == 1
        await engine.logout()


class TestLoadFailures:
    """Load retries and soft failure."""

    @pytest.mark.asyncio
    async def test_load_retries_then_succeeds(self, engine, gateway, item_a):
        await gateway.seed(remote_line(item_a, 2))
        gateway.fail_fetches = 2

        await engine.login(USER)

        assert gateway.fetch_calls == 3
        assert engine.state is SyncState.SYNCED
        assert engine.quantity_of(LineKey(USER, "item-a")) == 2
        await engine.logout()

    @pytest.mark.asyncio
    async def test_load_failure_stays_hydrating(self, engine, gateway, notices):
        """All attempts fail: error surfaced, state stays HYDRATING, no subscription leaks."""
        gateway.fail_fetches = 10

        with pytest.raises(GatewayUnavailable):
            await engine.login(USER)

        assert gateway.fetch_calls == 3
        assert engine.state is SyncState.HYDRATING
        assert gateway.subscriber_count == 0
        assert [notice.message for notice in notices] == [ERROR_LOAD_FAILED]
        assert isinstance(engine.last_error, GatewayUnavailable)

    @pytest.mark.asyncio
    async def test_login_retries_failed_subscribe(self, engine, gateway, item_a):
        """A transient stream failure at sign-in is retried like a failed query."""
        await gateway.seed(remote_line(item_a, 2))
        subscriptions = []
        subscribe = gateway.subscribe

        def flaky_subscribe(user_id):
            subscription = subscribe(user_id)
            subscriptions.append(subscription)
            if len(subscriptions) == 1:
                async def broken_open():
                    raise GatewayUnavailable("stream reset")
                subscription.open = broken_open
            return subscription

        gateway.subscribe = flaky_subscribe

        await engine.login(USER)

        assert engine.state is SyncState.SYNCED
        assert len(subscriptions) == 2
        assert subscriptions[0].closed
        assert gateway.subscriber_count == 1
        assert gateway.fetch_calls == 1
        assert engine.quantity_of(LineKey(USER, "item-a")) == 2
        await engine.logout()

    @pytest.mark.asyncio
    async def test_login_gives_up_when_subscribe_keeps_failing(self, engine, gateway, notices):
        subscribe = gateway.subscribe
        opens = []

        def broken_subscribe(user_id):
            subscription = subscribe(user_id)

            async def broken_open():
                opens.append(user_id)
                raise ConnectionError("stream reset")
            subscription.open = broken_open
            return subscription

        gateway.subscribe = broken_subscribe

        with pytest.raises(GatewayUnavailable):
            await engine.login(USER)

        assert len(opens) == 3
        assert engine.state is SyncState.HYDRATING
        assert gateway.subscriber_count == 0
        assert [notice.message for notice in notices] == [ERROR_LOAD_FAILED]

    @pytest.mark.asyncio
    async def test_refresh_completes_failed_hydration(self, engine, gateway, item_a):
        await gateway.seed(remote_line(item_a, 1))
        gateway.fail_fetches = 3
        with pytest.raises(GatewayUnavailable):
            await engine.login(USER)

        lines = await engine.refresh()

        assert engine.state is SyncState.SYNCED
        assert [line.item_id for line in lines] == ["item-a"]
        await engine.logout()

    @pytest.mark.asyncio
    async def test_writes_rejected_while_hydrating(self, engine, gateway, item_a):
        gateway.fail_fetches = 3
        with pytest.raises(GatewayUnavailable):
            await engine.login(USER)

        with pytest.raises(CartNotReady) as exc_info:
            await engine.set_quantity(item_a, 1)

        assert str(exc_info.value) == ERROR_CART_LOADING

    @pytest.mark.asyncio
    async def test_load_keeps_cache_on_failure(self, engine, gateway, item_a, notices):
        """A failed reload leaves the previously loaded lines in place."""
        await gateway.seed(remote_line(item_a, 2))
        await engine.login(USER)
        gateway.fail_fetches = 3

        with pytest.raises(GatewayUnavailable):
            await engine.load()

        assert engine.quantity_of(LineKey(USER, "item-a")) == 2
        assert engine.state is SyncState.SYNCED
        assert notices[-1].message == ERROR_LOAD_FAILED
        await engine.logout()

    @pytest.mark.asyncio
    async def test_load_other_user_rejected(self, engine):
        await engine.login(USER)

        with pytest.raises(ValueError):
            await engine.load(OTHER_USER)
        await engine.logout()

    @pytest.mark.asyncio
    async def test_load_drops_zero_quantity_lines(self, item_a, item_b):
        class LegacyGateway(InMemoryCartGateway):
            async def fetch_lines(self, user_id):
                return [remote_line(item_a, 0), remote_line(item_b, 2)]

        engine = SyncEngine(LegacyGateway(), retry_min_wait=0, retry_max_wait=0)

        await engine.login(USER)

        assert [line.item_id for line in engine.store] == ["item-b"]
        await engine.logout()

    @pytest.mark.asyncio
    async def test_refresh_logged_out(self, engine):
        with pytest.raises(CartNotReady) as exc_info:
            await engine.refresh()

        assert str(exc_info.value) == ERROR_LOGIN_REQUIRED


class TestWrites:
    """Optimistic writes and rollback."""

    @pytest.mark.asyncio
    async def test_write_requires_login(self, engine, item_a):
        with pytest.raises(CartNotReady) as exc_info:
            await engine.set_quantity(item_a, 1)

        assert str(exc_info.value) == ERROR_LOGIN_REQUIRED

    @pytest.mark.asyncio
    async def test_set_quantity_writes_remote(self, engine, gateway, item_a):
        await engine.login(USER)

        result = await engine.set_quantity(item_a, 3)

        assert result.ok
        assert result.key == LineKey(USER, "item-a")
        stored = gateway.document(result.key)
        assert stored.quantity == 3
        assert stored.name == "Paneer Tikka"
        assert stored.discount_percent == Decimal("20")
        await engine.logout()

    @pytest.mark.asyncio
    async def test_zero_quantity_deletes(self, engine, gateway, item_a):
        await engine.login(USER)
        await engine.set_quantity(item_a, 2)

        result = await engine.set_quantity(item_a, 0)

        assert result.ok
        assert LineKey(USER, "item-a") not in engine.store
        assert gateway.document(LineKey(USER, "item-a")) is None
        await engine.logout()

    @pytest.mark.asyncio
    async def test_optimistic_value_visible_before_write_completes(self, engine, gateway, item_a):
        gateway.write_delay = 5
        await engine.login(USER)

        task = asyncio.create_task(engine.set_quantity(item_a, 4))
        await asyncio.sleep(0)

        assert engine.quantity_of(LineKey(USER, "item-a")) == 4
        assert gateway.document(LineKey(USER, "item-a")) is None
        assert (await task).ok
        await engine.logout()

    @pytest.mark.asyncio
    async def test_failed_update_rolls_back(self, engine, gateway, item_a, notices):
        """Remote rejection restores the last confirmed quantity and notifies."""
        await engine.login(USER)
        await engine.set_quantity(item_a, 1)
        gateway.fail_writes = True

        result = await engine.set_quantity(item_a, 2)

        assert not result.ok
        assert result.reason == ERROR_UPDATE_FAILED
        assert isinstance(result.error, WriteRejected)
        assert engine.quantity_of(LineKey(USER, "item-a")) == 1
        assert notices[-1].message == ERROR_UPDATE_FAILED
        assert notices[-1].key == LineKey(USER, "item-a")
        await engine.logout()

    @pytest.mark.asyncio
    async def test_failed_add_removes_line(self, engine, gateway, item_a):
        await engine.login(USER)
        gateway.fail_writes = True

        result = await engine.set_quantity(item_a, 1)

        assert not result.ok
        assert LineKey(USER, "item-a") not in engine.store
        await engine.logout()

    @pytest.mark.asyncio
    async def test_failed_delete_restores_line(self, engine, gateway, item_a, notices):
        await engine.login(USER)
        await engine.set_quantity(item_a, 1)
        gateway.fail_writes = True

        result = await engine.set_quantity(item_a, 0)

        assert not result.ok
        assert result.reason == ERROR_REMOVE_FAILED
        assert engine.quantity_of(LineKey(USER, "item-a")) == 1
        assert notices[-1].message == ERROR_REMOVE_FAILED
        await engine.logout()

    @pytest.mark.asyncio
    async def test_unexpected_gateway_error_becomes_write_rejected(self, engine, gateway, item_a):
        async def broken(line):
            raise RuntimeError("socket closed")

        await engine.login(USER)
        gateway.upsert_line = broken

        result = await engine.set_quantity(item_a, 1)

        assert not result.ok
        assert isinstance(result.error, WriteRejected)
        assert LineKey(USER, "item-a") not in engine.store
        await engine.logout()

    @pytest.mark.asyncio
    async def test_invalid_discount_rejected_before_any_change(self, engine, gateway, item_a):
        await engine.login(USER)
        item_a.discount_percent = Decimal("150")

        with pytest.raises(InvalidDiscount):
            await engine.set_quantity(item_a, 1)

        assert len(engine.store) == 0
        assert gateway.writes == []
        await engine.logout()

    @pytest.mark.asyncio
    async def test_non_integer_quantity_rejected(self, engine, item_a):
        await engine.login(USER)

        with pytest.raises(ValueError):
            await engine.set_quantity(item_a, 1.5)
        with pytest.raises(ValueError):
            await engine.set_quantity(item_a, True)
        await engine.logout()

    @pytest.mark.asyncio
    async def test_writes_for_one_key_apply_in_order(self, engine, gateway, item_a, settle):
        """Rapid writes for the same key never leave an older value last."""
        gateway.write_delay = 3
        await engine.login(USER)

        results = await asyncio.gather(*(engine.set_quantity(item_a, qty) for qty in (1, 2, 3)))
        await settle()

        assert all(result.ok for result in results)
        # The middle write was queued behind the first and superseded by the third
        assert [result.superseded for result in results] == [False, True, False]
        assert gateway.writes == [("upsert", "item-a", 1), ("upsert", "item-a", 3)]
        assert gateway.document(LineKey(USER, "item-a")).quantity == 3
        assert engine.quantity_of(LineKey(USER, "item-a")) == 3
        await engine.logout()

    @pytest.mark.asyncio
    async def test_stale_failure_does_not_roll_back_newer_intent(self, engine, gateway, item_a):
        gateway.write_delay = 3
        await engine.login(USER)
        gateway.fail_writes = True

        first = asyncio.create_task(engine.set_quantity(item_a, 1))
        await asyncio.sleep(0)
        second = asyncio.create_task(engine.set_quantity(item_a, 2))
        await asyncio.sleep(0)
        # First write is in flight and will fail; the newer intent must survive it
        first_result = await first
        assert not first_result.ok
        assert engine.quantity_of(LineKey(USER, "item-a")) == 2

        gateway.fail_writes = False
        assert (await second).ok
        assert gateway.document(LineKey(USER, "item-a")).quantity == 2
        await engine.logout()

    @pytest.mark.asyncio
    async def test_write_from_before_sign_out_lands_first(self, engine, gateway, item_a, settle):
        """A write still in flight at sign-out is not overtaken by a later write for the same key."""
        gateway.write_delay = 50
        key = LineKey(USER, "item-a")
        await engine.login(USER)

        first = asyncio.create_task(engine.set_quantity(item_a, 2))
        await asyncio.sleep(0)
        await engine.logout()
        await engine.login(USER)
        second = await engine.set_quantity(item_a, 0)
        first_result = await first
        await settle()

        assert first_result.ok
        assert second.ok
        assert gateway.writes == [("upsert", "item-a", 2), ("delete", "item-a", 0)]
        assert gateway.document(key) is None
        assert key not in engine.store
        await engine.logout()

    @pytest.mark.asyncio
    async def test_writes_for_different_keys_are_independent(self, engine, gateway, item_a, item_b):
        gateway.write_delay = 2
        await engine.login(USER)

        await asyncio.gather(engine.set_quantity(item_a, 2), engine.set_quantity(item_b, 5))

        assert gateway.document(LineKey(USER, "item-a")).quantity == 2
        assert gateway.document(LineKey(USER, "item-b")).quantity == 5
        await engine.logout()

    @pytest.mark.asyncio
    async def test_write_finishing_after_logout_does_not_touch_store(self, engine, gateway, item_a):
        gateway.write_delay = 5
        await engine.login(USER)
        gateway.fail_writes = True

        task = asyncio.create_task(engine.set_quantity(item_a, 1))
        await asyncio.sleep(0)
        await engine.logout()
        result = await task

        assert not result.ok
        assert len(engine.store) == 0
        assert engine.state is SyncState.LOGGED_OUT


class TestReconcile:
    """Remote changes override local optimistic values."""

    @pytest.mark.asyncio
    async def test_remote_upsert_overrides_local(self, engine, item_a):
        await engine.login(USER)
        await engine.set_quantity(item_a, 3)

        applied = engine.reconcile(CartChange.upserted(remote_line(item_a, 5)))

        assert applied
        assert engine.quantity_of(LineKey(USER, "item-a")) == 5
        await engine.logout()

    @pytest.mark.asyncio
    async def test_remote_delete_removes_line_and_selection(self, engine, item_a):
        await engine.login(USER)
        await engine.set_quantity(item_a, 1)
        key = LineKey(USER, "item-a")
        engine.selection.toggle(key)

        engine.reconcile(CartChange.deleted(key))

        assert key not in engine.store
        assert key not in engine.selection
        await engine.logout()

    @pytest.mark.asyncio
    async def test_remote_replace(self, engine, item_a, item_b):
        await engine.login(USER)
        await engine.set_quantity(item_a, 1)

        engine.reconcile(CartChange.replaced(USER, [remote_line(item_b, 2)]))

        assert [line.item_id for line in engine.store] == ["item-b"]
        await engine.logout()

    @pytest.mark.asyncio
    async def test_change_for_other_user_dropped(self, engine, item_a):
        await engine.login(USER)

        applied = engine.reconcile(CartChange.upserted(remote_line(item_a, 5, user_id=OTHER_USER)))

        assert not applied
        assert len(engine.store) == 0
        await engine.logout()

    @pytest.mark.asyncio
    async def test_change_while_logged_out_dropped(self, engine, item_a):
        assert not engine.reconcile(CartChange.upserted(remote_line(item_a, 5)))
        assert len(engine.store) == 0

    @pytest.mark.asyncio
    async def test_live_changes_from_other_device(self, engine, gateway, item_a, item_b, settle):
        await engine.login(USER)

        await gateway.seed(remote_line(item_a, 4))
        await gateway.seed(remote_line(item_b, 1))
        await gateway.delete_line(LineKey(USER, "item-b"))
        await settle()

        assert engine.quantity_of(LineKey(USER, "item-a")) == 4
        assert LineKey(USER, "item-b") not in engine.store
        await engine.logout()

    @pytest.mark.asyncio
    async def test_reconciled_value_becomes_rollback_target(self, engine, gateway, item_a, settle):
        await engine.login(USER)
        await engine.set_quantity(item_a, 1)
        await gateway.seed(remote_line(item_a, 6))
        await settle()
        gateway.fail_writes = True

        await engine.set_quantity(item_a, 7)

        assert engine.quantity_of(LineKey(USER, "item-a")) == 6
        await engine.logout()

    @pytest.mark.asyncio
    async def test_no_changes_applied_after_logout(self, engine, gateway, item_a, settle):
        await engine.login(USER)
        await engine.logout()

        await gateway.seed(remote_line(item_a, 2))
        await settle()

        assert len(engine.store) == 0

    @pytest.mark.asyncio
    async def test_stream_failure_resubscribes_and_catches_up(self, item_a, settle):
        """A broken change stream is reopened and the cart reloaded."""

        class FlakyStreamGateway(InMemoryCartGateway):
            def __init__(self):
                super().__init__()
                self.subscribe_calls = 0

            def subscribe(self, user_id):
                self.subscribe_calls += 1
                subscription = super().subscribe(user_id)
                if self.subscribe_calls == 1:
                    async def broken():
                        raise GatewayUnavailable("stream reset")
                    subscription._next_change = broken
                return subscription

        gateway = FlakyStreamGateway()
        engine = SyncEngine(gateway, retry_min_wait=0, retry_max_wait=0)
        await engine.login(USER)
        # Written while the first stream is failing; only the reload can pick it up
        await InMemoryCartGateway.upsert_line(gateway, remote_line(item_a, 2))
        await settle(50)

        assert gateway.subscribe_calls >= 2
        assert engine.quantity_of(LineKey(USER, "item-a")) == 2

        await gateway.upsert_line(remote_line(item_a, 3))
        await settle()
        assert engine.quantity_of(LineKey(USER, "item-a")) == 3
        await engine.logout()


class TestIdentityFollowing:
    """start()/stop() against an identity stream."""

    @pytest.mark.asyncio
    async def test_start_with_signed_in_user(self, engine, gateway, item_a):
        await gateway.seed(remote_line(item_a, 2))
        identity = IdentityStream(USER)

        await engine.start(identity)

        assert engine.state is SyncState.SYNCED
        assert engine.quantity_of(LineKey(USER, "item-a")) == 2
        await engine.stop()
        assert engine.state is SyncState.LOGGED_OUT

    @pytest.mark.asyncio
    async def test_follows_sign_in_and_sign_out(self, engine, gateway, item_a, settle):
        await gateway.seed(remote_line(item_a, 1, user_id=OTHER_USER))
        identity = IdentityStream()
        await engine.start(identity)
        assert engine.state is SyncState.LOGGED_OUT

        identity.sign_in(USER)
        await settle()
        assert engine.state is SyncState.SYNCED
        assert engine.user_id == USER

        identity.sign_out()
        await settle()
        assert engine.state is SyncState.LOGGED_OUT
        assert len(engine.store) == 0

        identity.sign_in(OTHER_USER)
        await settle()
        assert engine.user_id == OTHER_USER
        assert engine.quantity_of(LineKey(OTHER_USER, "item-a")) == 1
        await engine.stop()

    @pytest.mark.asyncio
    async def test_start_survives_initial_load_failure(self, engine, gateway, notices):
        gateway.fail_fetches = 3

        await engine.start(IdentityStream(USER))

        assert engine.state is SyncState.HYDRATING
        assert notices[0].message == ERROR_LOAD_FAILED
        await engine.refresh()
        assert engine.state is SyncState.SYNCED
        await engine.stop()

    @pytest.mark.asyncio
    async def test_identity_stream_collapses_duplicates(self):
        identity = IdentityStream()
        changes = identity.changes()

        identity.sign_in(USER)
        identity.sign_in(USER)
        identity.sign_out()

        assert await changes.__anext__() == USER
        assert await changes.__anext__() is None
        await changes.aclose()
