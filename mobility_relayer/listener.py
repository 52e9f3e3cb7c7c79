"""
Withdrawal event ingestion from Sui.

Polls `WithdrawRequest` events page by page from a persisted cursor,
filters them through a bounded seen-set and validation, and hands them
to the withdrawal state machine in small concurrent batches. The poll
interval widens while the feed is idle and backs off on failures.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

import structlog

from .address import is_valid_btc_address
from .db import RelayerDatabase, utcnow
from .errors import InvalidEventError
from .sui import EventPage, SuiClient, SuiEvent
from .wallet import MAX_WITHDRAWAL_SATS
from .withdrawal import WithdrawalStateMachine

logger = structlog.get_logger()

WITHDRAWAL_CURSOR = "withdrawalEvents"
WITHDRAW_EVENT_NAME = "WithdrawRequest"


@dataclass
class PollState:
    """
    Adaptive poll interval.

    Empty polls widen the interval in stages (more than 10, 20 and 50 in a
    row), a poll with events resets it. Failures double the interval until
    the grace count is exceeded, then back off exponentially from the base.
    """

    base_interval: float = 5.0
    max_interval: float = 30.0
    max_backoff: float = 120.0
    failure_grace: int = 5
    current_interval: float = field(init=False)
    consecutive_empty: int = 0
    consecutive_failures: int = 0

    def __post_init__(self) -> None:
        self.current_interval = self.base_interval

    def record_success(self, event_count: int) -> float:
        self.consecutive_failures = 0

        if event_count > 0:
            self.consecutive_empty = 0
            self.current_interval = self.base_interval
            return self.current_interval

        self.consecutive_empty += 1
        if self.consecutive_empty > 50:
            interval = self.max_interval
        elif self.consecutive_empty > 20:
            interval = self.base_interval * 4
        elif self.consecutive_empty > 10:
            interval = self.base_interval * 2
        else:
            interval = self.base_interval
        self.current_interval = min(interval, self.max_interval)
        return self.current_interval

    def record_failure(self) -> float:
        """
        Delay before the next poll after a failed one.

        Within the grace count the current interval is doubled once; past it
        the delay grows exponentially from the base, never below that doubled
        interval. The current interval is not updated.
        """
        self.consecutive_failures += 1

        interval = self.current_interval * 2
        if self.consecutive_failures > self.failure_grace:
            exponent = self.consecutive_failures - self.failure_grace
            interval = max(interval, self.base_interval * 2**exponent)
        return min(interval, self.max_backoff)


class SeenEventCache:
    """Insertion-ordered set of recent event ids with a capacity cap."""

    def __init__(self, capacity: int = 10_000, retain: int = 1_000):
        if retain > capacity:
            raise ValueError("retain must not exceed capacity")
        self.capacity = capacity
        self.retain = retain
        self._ids: dict[str, None] = {}

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, event_id: str) -> None:
        self._ids.pop(event_id, None)
        self._ids[event_id] = None

        if len(self._ids) > self.capacity:
            keep = list(self._ids)[-self.retain :]
            self._ids = dict.fromkeys(keep)
            logger.debug("seen_events_trimmed", retained=len(self._ids))


@dataclass
class WithdrawRequest:
    """Validated withdrawal request event."""

    event_id: str
    chain_address: str
    bitcoin_address: str
    amount: int
    payload: dict[str, Any]


def _decode_btc_address(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list) and all(isinstance(b, int) and 0 <= b <= 255 for b in value):
        try:
            return bytes(value).decode("utf-8").strip()
        except UnicodeDecodeError:
            raise InvalidEventError("btc_address bytes are not UTF-8") from None
    raise InvalidEventError("btc_address has an unsupported encoding")


def _parse_amount(value: Any) -> int:
    if isinstance(value, bool):
        raise InvalidEventError(f"Unparsable amount: {value!r}")
    try:
        return int(str(value).strip())
    except ValueError:
        raise InvalidEventError(f"Unparsable amount: {value!r}") from None


def parse_withdraw_event(
    event: SuiEvent, network: str, max_amount: int = MAX_WITHDRAWAL_SATS
) -> WithdrawRequest:
    """
    Validate a WithdrawRequest event.

    Raises:
        InvalidEventError: the event can never be delivered
    """
    data = event.parsed_json
    user = data.get("user")
    raw_address = data.get("btc_address")
    raw_amount = data.get("amount")

    if not user or raw_address in (None, "", []) or raw_amount in (None, ""):
        raise InvalidEventError("Missing required fields: user, btc_address or amount")

    bitcoin_address = _decode_btc_address(raw_address)
    if not is_valid_btc_address(bitcoin_address, network):
        raise InvalidEventError(f"Invalid Bitcoin address: {bitcoin_address}")

    amount = _parse_amount(raw_amount)
    if amount <= 0:
        raise InvalidEventError(f"Amount must be positive: {amount}")
    if amount > max_amount:
        raise InvalidEventError(f"Amount {amount} exceeds maximum {max_amount}")

    return WithdrawRequest(
        event_id=event.event_id,
        chain_address=str(user),
        bitcoin_address=bitcoin_address,
        amount=amount,
        payload={
            "eventId": event.event_id,
            "user": str(user),
            "btcAddress": bitcoin_address,
            "amount": str(amount),
            "timestampMs": event.timestamp_ms,
        },
    )


class WithdrawalEventListener:
    """Polls the withdrawal event feed and delivers events."""

    def __init__(
        self,
        sui: SuiClient,
        db: RelayerDatabase,
        state_machine: WithdrawalStateMachine,
        event_type: str,
        bitcoin_network: str = "testnet",
        page_size: int = 50,
        batch_size: int = 10,
        batch_pause: float = 0.5,
        max_amount: int = MAX_WITHDRAWAL_SATS,
        poll_state: Optional[PollState] = None,
        seen: Optional[SeenEventCache] = None,
        cursor_name: str = WITHDRAWAL_CURSOR,
    ):
        self.sui = sui
        self.db = db
        self.state_machine = state_machine
        self.event_type = event_type
        self.bitcoin_network = bitcoin_network
        self.page_size = page_size
        self.batch_size = batch_size
        self.batch_pause = batch_pause
        self.max_amount = max_amount
        self.poll_state = poll_state or PollState()
        self.seen = seen or SeenEventCache()
        self.cursor_name = cursor_name
        self._running = False

    async def load_cursor(self) -> Optional[dict[str, Any]]:
        state = await asyncio.to_thread(self.db.get_cursor, self.cursor_name)
        if state is None or not state.cursor:
            return None
        try:
            return json.loads(state.cursor)
        except ValueError:
            logger.warning("event_cursor_unreadable", cursor=state.cursor)
            return None

    async def reset_cursor(self) -> bool:
        """Forget the persisted cursor; the next poll starts from the oldest event."""
        deleted = await asyncio.to_thread(self.db.delete_cursor, self.cursor_name)
        logger.info("event_cursor_reset", cursor_name=self.cursor_name, deleted=deleted)
        return deleted

    async def fetch_page(self, cursor: Optional[dict[str, Any]]) -> EventPage:
        return await self.sui.query_events(self.event_type, cursor=cursor, limit=self.page_size)

    async def _handle_event(self, event: SuiEvent) -> bool:
        """Deliver one event. Returns False only for failures worth retrying."""
        try:
            request = parse_withdraw_event(event, self.bitcoin_network, self.max_amount)
        except InvalidEventError as e:
            logger.warning("withdraw_event_rejected", event_id=event.event_id, reason=str(e))
            self.seen.add(event.event_id)
            return True

        try:
            await self.state_machine.record_event(
                request.event_id,
                request.chain_address,
                request.bitcoin_address,
                request.amount,
                request.payload,
            )
        except Exception as e:
            logger.error("withdraw_event_failed", event_id=event.event_id, error=str(e))
            return False

        self.seen.add(event.event_id)
        return True

    async def process_events(self, events: list[SuiEvent]) -> bool:
        """
        Deliver events in concurrent batches.

        Returns True if every event was delivered or rejected.
        """
        fresh = [e for e in events if e.event_id not in self.seen]
        all_handled = True

        for start in range(0, len(fresh), self.batch_size):
            batch = fresh[start : start + self.batch_size]
            results = await asyncio.gather(*(self._handle_event(e) for e in batch))
            all_handled = all_handled and all(results)

            if start + self.batch_size < len(fresh):
                await asyncio.sleep(self.batch_pause)

        return all_handled

    async def poll_once(self) -> int:
        """
        Fetch and deliver one page.

        The cursor is saved only after the page is delivered. If any event
        failed, the cursor stays put and the page is fetched again.

        Returns:
            Number of events on the page
        """
        cursor = await self.load_cursor()
        page = await self.fetch_page(cursor)

        if page.events:
            logger.info("withdraw_events_fetched", count=len(page.events), cursor=cursor)

        all_handled = await self.process_events(page.events)
        if not all_handled:
            logger.warning("event_page_incomplete", cursor=cursor, count=len(page.events))
            return len(page.events)

        next_cursor = page.next_cursor or cursor
        await asyncio.to_thread(
            self.db.save_cursor,
            self.cursor_name,
            json.dumps(next_cursor) if next_cursor else None,
        )
        return len(page.events)

    async def run(self) -> None:
        """Run the polling loop."""
        self._running = True
        logger.info(
            "event_listener_starting",
            event_type=self.event_type,
            interval=self.poll_state.current_interval,
        )

        while self._running:
            try:
                count = await self.poll_once()
                delay = self.poll_state.record_success(count)
            except Exception as e:
                delay = self.poll_state.record_failure()
                logger.error(
                    "event_poll_failed",
                    error=str(e),
                    consecutive_failures=self.poll_state.consecutive_failures,
                    retry_in=delay,
                )

            await asyncio.sleep(delay)

    def stop(self) -> None:
        """Stop the polling loop."""
        self._running = False
        logger.info("event_listener_stopping")


@dataclass
class CursorHealth:
    healthy: bool
    age_seconds: Optional[float] = None


class CursorHealthMonitor:
    """Warns when the event cursor has not been refreshed recently."""

    def __init__(
        self,
        db: RelayerDatabase,
        cursor_name: str = WITHDRAWAL_CURSOR,
        stale_after: float = 300.0,
        interval: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.cursor_name = cursor_name
        self.stale_after = stale_after
        self.interval = interval
        self._clock = clock
        self._running = False

    async def check(self) -> CursorHealth:
        state = await asyncio.to_thread(self.db.get_cursor, self.cursor_name)
        if state is None:
            logger.info("event_cursor_not_initialized", cursor_name=self.cursor_name)
            return CursorHealth(healthy=True)

        age = (self._clock() - state.last_updated).total_seconds()
        if age > self.stale_after:
            logger.warning(
                "event_cursor_stale",
                cursor_name=self.cursor_name,
                age_seconds=round(age, 1),
                threshold_seconds=self.stale_after,
            )
            return CursorHealth(healthy=False, age_seconds=age)

        return CursorHealth(healthy=True, age_seconds=age)

    async def run(self) -> None:
        self._running = True
        while self._running:
            await asyncio.sleep(self.interval)
            try:
                await self.check()
            except Exception as e:
                logger.error("cursor_health_check_failed", error=str(e))

    def stop(self) -> None:
        self._running = False
