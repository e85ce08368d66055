"""
Cart sync engine.

Keeps the local CartLineStore consistent with the remote gateway across
sign-in/sign-out:

    LOGGED_OUT --login--> HYDRATING(user) --load ok--> SYNCED(user)
        ^                      |  load failed: stays HYDRATING, refresh() retries
        +------- logout -------+------------------------+

While SYNCED, every quantity change is applied to the store first and then
written remotely. Writes for one key are serialized in issue order; a failed
write rolls the key back to its last confirmed remote value.
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cartsync.cart.models import CartLine, CatalogItem, LineKey, WriteResult
from cartsync.cart.pricing import validate_discount
from cartsync.cart.selection import SelectionManager
from cartsync.cart.store import CartLineStore
from cartsync.config import LOAD_RETRY_ATTEMPTS, RETRY_MAX_WAIT_SECS, RETRY_MIN_WAIT_SECS
from cartsync.errors import (
    ERROR_CART_LOADING,
    ERROR_LOAD_FAILED,
    ERROR_LOGIN_REQUIRED,
    ERROR_REMOVE_FAILED,
    ERROR_UPDATE_FAILED,
    CartError,
    CartNotReady,
    GatewayUnavailable,
    WriteRejected,
)
from cartsync.gateway.base import CartChange, CartSubscription, ChangeKind, RemoteCartGateway
from cartsync.identity import IdentitySource
from cartsync.logging import get_logger, sanitize_id_for_logging

logger = get_logger(__name__)


class SyncState(str, Enum):
    LOGGED_OUT = "logged_out"
    HYDRATING = "hydrating"
    SYNCED = "synced"


@dataclass(frozen=True)
class CartNotice:
    """User-visible, non-fatal failure report."""
    message: str
    error: CartError
    key: Optional[LineKey] = None


@dataclass
class _KeyState:
    """Write bookkeeping for one line key while writes are outstanding."""
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    confirmed: Optional[CartLine] = None  # last value known to be stored remotely
    seq: int = 0  # newest intent issued for this key
    pending: int = 0
    epoch: int = 0  # sign-in session that ``confirmed`` belongs to


FailureListener = Callable[[CartNotice], None]
StateListener = Callable[[SyncState, Optional[str]], None]


class SyncEngine:
    """
    Orchestrates identity transitions and remote writes for one local cart.

    Args:
        gateway: Remote cart document store
        store: Local cache (a fresh one is created if omitted)
        selection: Selection manager bound to ``store`` (created if omitted)
        load_attempts: Tries per load before giving up
        retry_min_wait / retry_max_wait: Exponential backoff bounds in seconds
    """

    def __init__(
        self,
        gateway: RemoteCartGateway,
        store: Optional[CartLineStore] = None,
        selection: Optional[SelectionManager] = None,
        load_attempts: int = LOAD_RETRY_ATTEMPTS,
        retry_min_wait: float = RETRY_MIN_WAIT_SECS,
        retry_max_wait: float = RETRY_MAX_WAIT_SECS,
    ):
        self._gateway = gateway
        self.store = store if store is not None else CartLineStore()
        self.selection = selection if selection is not None else SelectionManager(self.store)
        self._load_attempts = max(1, load_attempts)
        self._retry_min_wait = retry_min_wait
        self._retry_max_wait = retry_max_wait

        self._state = SyncState.LOGGED_OUT
        self._user_id: Optional[str] = None
        # Bumped on every identity transition; async work started under an old epoch is discarded
        self._epoch = 0
        self._keys: Dict[LineKey, _KeyState] = {}
        self._hydrate_lock = asyncio.Lock()
        self._subscription: Optional[CartSubscription] = None
        self._subscription_task: Optional[asyncio.Task] = None
        self._identity_task: Optional[asyncio.Task] = None

        self._failure_listeners: List[FailureListener] = []
        self._state_listeners: List[StateListener] = []
        self.last_error: Optional[CartError] = None

    # ==================== STATE ====================

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    def add_failure_listener(self, listener: FailureListener) -> None:
        self._failure_listeners.append(listener)

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def _set_state(self, state: SyncState) -> None:
        self._state = state
        for listener in self._state_listeners:
            listener(state, self._user_id)

    def _notify_failure(self, notice: CartNotice) -> None:
        self.last_error = notice.error
        for listener in self._failure_listeners:
            listener(notice)

    # ==================== LIFECYCLE ====================

    async def start(self, identity: IdentitySource) -> None:
        """Follow ``identity``: hydrate for its current user, then track sign-in/sign-out."""
        if self._identity_task is not None:
            return
        changes = identity.changes()
        current = identity.current()
        if current:
            try:
                await self.login(current)
            except GatewayUnavailable as e:
                # Already reported to failure listeners; refresh() or the next sign-in retries
                logger.warning(f"Initial cart hydration failed: {e}")
        self._identity_task = asyncio.create_task(self._follow_identity(changes))

    async def stop(self) -> None:
        """Stop following identity, drop the live subscription and the local cart."""
        task, self._identity_task = self._identity_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.logout()

    async def _follow_identity(self, changes) -> None:
        async for user_id in changes:
            try:
                if user_id:
                    await self.login(user_id)
                else:
                    await self.logout()
            except GatewayUnavailable as e:
                logger.warning(f"Cart hydration after sign-in failed: {e}")

    async def login(self, user_id: str) -> None:
        """
        Hydrate the cart for ``user_id``.

        Raises:
            GatewayUnavailable: if every load attempt failed (state stays HYDRATING)
        """
        if not user_id:
            raise ValueError("user_id must be a non-empty string")
        if user_id == self._user_id and self._state is SyncState.SYNCED:
            return
        if user_id != self._user_id:
            if self._state is not SyncState.LOGGED_OUT:
                await self.logout()
            self._epoch += 1
            self._user_id = user_id
            self._set_state(SyncState.HYDRATING)
            logger.info(f"Hydrating cart for {sanitize_id_for_logging(user_id)}")
        await self._hydrate()

    async def logout(self) -> None:
        """Forget the local cart. Remote lines are left untouched."""
        self._epoch += 1
        task, self._subscription_task = self._subscription_task, None
        subscription, self._subscription = self._subscription, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if subscription is not None:
            await subscription.close()

        was_signed_in = self._user_id is not None
        # Writes still in flight keep their lock so a later write for the same key queues behind them
        self._keys = {key: key_state for key, key_state in self._keys.items() if key_state.pending > 0}
        for key_state in self._keys.values():
            key_state.confirmed = None
        self.store.clear()
        self.selection.reset()
        self.last_error = None
        self._user_id = None
        if was_signed_in or self._state is not SyncState.LOGGED_OUT:
            self._set_state(SyncState.LOGGED_OUT)
            logger.info("Cart cleared on sign-out")

    async def _hydrate(self) -> None:
        epoch, user_id = self._epoch, self._user_id
        async with self._hydrate_lock:
            if epoch != self._epoch or self._state is not SyncState.HYDRATING:
                return
            try:
                subscription, lines = await self._subscribe_and_fetch(user_id)
            except GatewayUnavailable as e:
                if epoch == self._epoch:
                    logger.error(f"Cart load failed for {sanitize_id_for_logging(user_id)}: {e}")
                    self._notify_failure(CartNotice(ERROR_LOAD_FAILED, e))
                raise

            if epoch != self._epoch:
                await subscription.close()
                return

            self.store.replace_all(lines)
            self.last_error = None
            self._subscription = subscription
            self._subscription_task = asyncio.create_task(self._follow_changes(epoch, subscription))
            self._subscription_task.add_done_callback(self._on_subscription_done)
            self._set_state(SyncState.SYNCED)
            logger.info(f"Cart synced: {len(lines)} line(s) for {sanitize_id_for_logging(user_id)}")

    # ==================== LOADING ====================

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(f"Cart gateway unavailable (attempt {retry_state.attempt_number}), retrying: {exc}")

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._load_attempts),
            wait=wait_exponential(multiplier=self._retry_min_wait, min=self._retry_min_wait, max=self._retry_max_wait),
            retry=retry_if_exception_type(GatewayUnavailable),
            before_sleep=self._log_retry,
            reraise=True,
        )

    async def _query(self, user_id: str) -> List[CartLine]:
        """One gateway query; only GatewayUnavailable escapes."""
        try:
            lines = await self._gateway.fetch_lines(user_id)
        except GatewayUnavailable:
            raise
        except Exception as e:
            raise GatewayUnavailable(f"Cart service unavailable: {e}") from e
        return [line for line in lines if line.quantity > 0]

    async def _fetch(self, user_id: str) -> List[CartLine]:
        """Query the gateway with backoff."""
        lines: List[CartLine] = []
        async for attempt in self._retrying():
            with attempt:
                lines = await self._query(user_id)
        return lines

    async def _subscribe_and_fetch(self, user_id: str) -> Tuple[CartSubscription, List[CartLine]]:
        """
        Open the change stream, then query, retrying both with backoff.

        The stream is opened first so nothing written in between is missed.
        A failed attempt closes its subscription before the next one.
        """
        subscription: Optional[CartSubscription] = None
        lines: List[CartLine] = []
        async for attempt in self._retrying():
            with attempt:
                subscription = self._gateway.subscribe(user_id)
                try:
                    await subscription.open()
                    lines = await self._query(user_id)
                except GatewayUnavailable:
                    await subscription.close()
                    raise
                except Exception as e:
                    await subscription.close()
                    raise GatewayUnavailable(f"Cart change stream unavailable: {e}") from e
        return subscription, lines

    async def load(self, user_id: Optional[str] = None) -> List[CartLine]:
        """
        Replace the local cache with the remote lines of the signed-in user.

        Fails softly: on GatewayUnavailable the previous cache is kept and the
        error is raised to the caller.
        """
        signed_in = self.require_synced()
        user_id = user_id or signed_in
        if user_id != signed_in:
            raise ValueError("Can only load the cart of the signed-in user")

        epoch = self._epoch
        try:
            lines = await self._fetch(user_id)
        except GatewayUnavailable as e:
            if epoch == self._epoch:
                self._notify_failure(CartNotice(ERROR_LOAD_FAILED, e))
            raise
        if epoch != self._epoch:
            return self.store.all()

        self.store.replace_all(lines)
        # Fresh remote truth becomes the rollback baseline for in-flight keys
        fresh = {line.key: line for line in lines}
        for key, key_state in self._keys.items():
            key_state.confirmed = fresh.get(key)
        self.last_error = None
        return self.store.all()

    async def refresh(self) -> List[CartLine]:
        """Manual re-fetch; finishes a hydration that previously failed."""
        if self._state is SyncState.LOGGED_OUT:
            raise CartNotReady(ERROR_LOGIN_REQUIRED)
        if self._state is SyncState.HYDRATING:
            await self._hydrate()
            return self.store.all()
        return await self.load()

    # ==================== LIVE UPDATES ====================

    async def _follow_changes(self, epoch: int, subscription: Optional[CartSubscription]) -> None:
        """Apply pushed changes until sign-out; re-subscribe with backoff if the stream breaks."""
        async for attempt in AsyncRetrying(
            wait=wait_exponential(multiplier=self._retry_min_wait, min=self._retry_min_wait, max=self._retry_max_wait),
            retry=retry_if_exception_type(GatewayUnavailable),
            before_sleep=self._log_retry,
            reraise=True,
        ):
            with attempt:
                catch_up = False
                if subscription is None or subscription.closed:
                    subscription = self._gateway.subscribe(self._user_id)
                    self._subscription = subscription
                    catch_up = True
                async with subscription:
                    if catch_up:
                        # Changes made while the stream was down never arrive as events
                        await self.load()
                    async for change in subscription:
                        if epoch != self._epoch:
                            return
                        self.reconcile(change)

    def _on_subscription_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Cart change stream stopped: {exc}", exc_info=exc)

    def reconcile(self, change: CartChange) -> bool:
        """
        Apply an authoritative remote change, overriding any optimistic value.

        Returns:
            True if the change was applied, False if it was for another user
            or arrived while not synced
        """
        if self._state is not SyncState.SYNCED or change.user_id != self._user_id:
            logger.debug(f"Dropping cart change for {sanitize_id_for_logging(change.user_id)}")
            return False

        if change.kind is ChangeKind.REPLACE:
            lines = [line for line in change.lines if line.quantity > 0]
            self.store.replace_all(lines)
            fresh = {line.key: line for line in lines}
            for key, key_state in self._keys.items():
                key_state.confirmed = fresh.get(key)
            return True

        line = change.line
        if change.kind is ChangeKind.UPSERT and line is not None and line.quantity > 0:
            self.store.upsert(line)
            confirmed = line
        else:
            self.store.remove(change.key)
            confirmed = None
        key_state = self._keys.get(change.key)
        if key_state is not None:
            key_state.confirmed = confirmed
        return True

    # ==================== WRITES ====================

    def require_synced(self) -> str:
        if self._state is SyncState.LOGGED_OUT:
            raise CartNotReady(ERROR_LOGIN_REQUIRED)
        if self._state is SyncState.HYDRATING:
            raise CartNotReady(ERROR_CART_LOADING)
        return self._user_id

    def quantity_of(self, key: LineKey) -> int:
        line = self.store.get(key)
        return line.quantity if line else 0

    async def set_quantity(self, item: CatalogItem, new_quantity: int) -> WriteResult:
        """
        Set the quantity of ``item`` in the signed-in user's cart.

        The store changes immediately; the remote write follows in per-key
        order. ``new_quantity <= 0`` deletes the line.

        Raises:
            CartNotReady: if no cart is synced
            InvalidDiscount: if the item's discount is outside [0, 100]
            ValueError: if ``new_quantity`` is not an integer or the item has no id
        """
        user_id = self.require_synced()
        if isinstance(new_quantity, bool) or not isinstance(new_quantity, int):
            raise ValueError("quantity must be an integer")
        if not item.item_id:
            raise ValueError("item_id must be a non-empty string")
        validate_discount(item.discount_percent)

        key = LineKey(user_id, item.item_id)
        epoch = self._epoch
        key_state = self._keys.get(key)
        if key_state is None:
            key_state = self._keys[key] = _KeyState(confirmed=self.store.get(key), epoch=epoch)
        elif key_state.epoch != epoch:
            # Left over from before a sign-out: keep its lock, rebase its rollback target
            key_state.confirmed = self.store.get(key)
            key_state.epoch = epoch
        key_state.seq += 1
        key_state.pending += 1
        seq = key_state.seq

        target = CartLine.from_catalog(user_id, item, new_quantity) if new_quantity > 0 else None
        if target is None:
            self.store.remove(key)
        else:
            self.store.upsert(target)

        try:
            async with key_state.lock:
                if seq < key_state.seq:
                    # A newer intent for this key is queued behind us and carries the final value
                    return WriteResult.success(key, superseded=True)
                try:
                    if target is None:
                        await self._gateway.delete_line(key)
                    else:
                        await self._gateway.upsert_line(target)
                except WriteRejected as e:
                    error = e
                except Exception as e:
                    error = WriteRejected(f"Cart write failed: {e}", doc_id=key.doc_id)
                else:
                    if epoch == self._epoch:
                        key_state.confirmed = target
                    return WriteResult.success(key)

                return self._fail_write(key, key_state, seq, epoch, error, removing=target is None)
        finally:
            key_state.pending -= 1
            if key_state.pending == 0 and self._keys.get(key) is key_state:
                del self._keys[key]

    def _fail_write(
        self,
        key: LineKey,
        key_state: _KeyState,
        seq: int,
        epoch: int,
        error: WriteRejected,
        removing: bool,
    ) -> WriteResult:
        logger.warning(f"Cart write for {sanitize_id_for_logging(key.doc_id)} rejected: {error}")
        # Only the newest intent may roll back; older failures are overwritten by it anyway
        if epoch == self._epoch and seq == key_state.seq:
            if key_state.confirmed is None:
                self.store.remove(key)
            else:
                self.store.upsert(key_state.confirmed)
        message = ERROR_REMOVE_FAILED if removing else ERROR_UPDATE_FAILED
        self._notify_failure(CartNotice(message, error, key))
        return WriteResult.failure(key, message, error)
