"""
Priority notification queue with deduplication and adaptive batching.

Items live in sorted sets:
    notifications:critical        every CRITICAL item
    notifications:user:{user_id}  everything else for one user
    notifications:global          overflow once a user queue holds more than 100 items

Score = priority weight + (MAX_TIMESTAMP_MS - scheduled_ms). Tier weights are
spaced by MAX_TIMESTAMP_MS so tiers never interleave, and within a tier the
earliest scheduled item has the highest score. Dequeue reads highest score first.
"""
import math
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple
from loguru import logger

from herald.config import QueueConfig
from herald.constants import (
    ACTIVE_USERS_KEY,
    BATCH_GROUPING_WINDOW_SECONDS,
    BATCH_MAX_SPREAD_SECONDS,
    BATCH_SIZE_DEPTH_HIGH,
    BATCH_SIZE_DEPTH_MEDIUM,
    BATCH_SIZE_FLOOR,
    BATCH_TRIGGER_CHANNEL,
    CRITICAL_QUEUE_KEY,
    DEAD_LETTER_KEY,
    DEDUP_KEY,
    DEDUP_TTL_SECONDS,
    GLOBAL_QUEUE_KEY,
    MAX_TIMESTAMP_MS,
    PRIORITY_WEIGHT_STEP,
    QUEUE_HEALTHY_SIZE,
    QUEUE_LOAD_REFERENCE_DEPTH,
    USER_QUEUE_KEY,
    USER_QUEUE_OVERFLOW_THRESHOLD,
)
from herald.schemas.health import QueueHealth
from herald.schemas.notification import (
    NotificationAction,
    NotificationBatch,
    NotificationData,
    NotificationPayload,
    Priority,
    QueueItem,
)
from herald.services.memory_guard import process_memory_mb
from herald.stores.base import BackingStore
from herald.utils.errors import QueueFullError, StoreUnavailableError
from herald.utils.formatting import pluralize, strip_title_prefix, summarize_titles
from herald.utils.timeutil import Clock, to_ms, utcnow

# Dequeue walks tiers from most to least urgent
TIER_ORDER = (Priority.CRITICAL, Priority.HIGH, Priority.NORMAL, Priority.LOW)

GroupKey = Tuple[str, Optional[str], Priority, int]


def priority_weight(priority: Priority) -> int:
    return priority.rank * PRIORITY_WEIGHT_STEP


def priority_score(priority: Priority, scheduled_for: datetime) -> float:
    """Higher scores dequeue first; tiers never mix."""
    return priority_weight(priority) + (MAX_TIMESTAMP_MS - to_ms(scheduled_for))


def user_queue_key(user_id: str) -> str:
    return USER_QUEUE_KEY.format(user_id=user_id)


def build_batch_payload(notification_type: Optional[str], items: List[QueueItem]) -> NotificationPayload:
    """Aggregate payload for a merged group, worded after the notification type."""
    count = len(items)
    entity_ids = [item.payload.data.entity_id for item in items if item.payload.data.entity_id]

    if notification_type == "TASK_DEADLINE":
        titles = [strip_title_prefix(item.payload.title, "Task Deadline Reminder") for item in items]
        return NotificationPayload(
            title=f"{count} Task Deadlines Approaching",
            body=f"{summarize_titles(titles)} {'is' if count == 1 else 'are'} due soon",
            icon="/icons/task-batch.png",
            tag="task-deadline-batch",
            data=NotificationData(
                type="TASK_DEADLINE_BATCH",
                action_url="/tasks?filter=upcoming&sort=due",
                batch_size=count,
                task_ids=entity_ids,
            ),
            actions=[
                NotificationAction(action="view-all", title="View All Tasks"),
                NotificationAction(action="snooze-all", title="Snooze All"),
            ],
        )

    if notification_type == "HABIT_REMINDER":
        names = [strip_title_prefix(item.payload.title, "Habit Reminder") for item in items]
        return NotificationPayload(
            title=pluralize(count, "Habit Reminder", "Habit Reminders"),
            body=f"Time to complete {summarize_titles(names)}",
            icon="/icons/habit-batch.png",
            tag="habit-reminder-batch",
            data=NotificationData(
                type="HABIT_REMINDER_BATCH",
                action_url="/habits?view=today",
                batch_size=count,
                habit_ids=entity_ids,
            ),
            actions=[
                NotificationAction(action="check-in-all", title="Quick Check-in"),
                NotificationAction(action="view-habits", title="View Habits"),
            ],
        )

    if notification_type == "WEEKLY_REPORT":
        return NotificationPayload(
            title=pluralize(count, "Weekly Report", "Weekly Reports"),
            body=f"{pluralize(count, 'weekly report is', 'weekly reports are')} ready to review",
            icon="/icons/report-batch.png",
            tag="weekly-report-batch",
            data=NotificationData(
                type="WEEKLY_REPORT_BATCH",
                action_url="/reports",
                batch_size=count,
                report_ids=entity_ids,
            ),
        )

    return NotificationPayload(
        title=pluralize(count, "Notification", "Notifications"),
        body=f"You have {count} pending updates",
        icon="/icons/notification-batch.png",
        tag="general-batch",
        data=NotificationData(type="GENERAL_BATCH", action_url="/notifications", batch_size=count),
    )


class NotificationQueue:
    """
    Holds pending notifications in the backing store.

    Args:
        store: Backing store
        config: Queue limits and batch sizing
        clock: Time source
        memory_probe: Returns process memory in MB (feeds adaptive sizing)
        memory_limit_mb: Memory treated as full load when computing trigger thresholds
    """

    def __init__(
        self,
        store: BackingStore,
        config: QueueConfig,
        clock: Clock = utcnow,
        memory_probe: Callable[[], float] = process_memory_mb,
        memory_limit_mb: float = 512.0,
    ):
        self.store = store
        self.config = config
        self._clock = clock
        self.memory_probe = memory_probe
        self.memory_limit_mb = memory_limit_mb

    # ------------------------------------------------------------------ helpers

    @staticmethod
    def _serialize(item: QueueItem) -> str:
        return item.model_dump_json()

    @staticmethod
    def _deserialize(member: str) -> Optional[QueueItem]:
        try:
            return QueueItem.model_validate_json(member)
        except ValueError as e:
            logger.error(f"Discarding unreadable queue entry: {e}")
            return None

    async def _select_queue(self, item: QueueItem) -> str:
        if item.priority == Priority.CRITICAL:
            return CRITICAL_QUEUE_KEY
        user_key = user_queue_key(item.user_id)
        if await self.store.zcard(user_key) > USER_QUEUE_OVERFLOW_THRESHOLD:
            return GLOBAL_QUEUE_KEY
        return user_key

    async def _insert(self, item: QueueItem) -> str:
        """Place an item in its destination queue; returns the queue key."""
        queue_key = await self._select_queue(item)
        size = await self.store.zcard(queue_key)
        if size >= self.config.max_queue_size:
            logger.warning(f"Queue {queue_key} full ({size} items), rejecting {item.id}")
            raise QueueFullError(f"Queue {queue_key} is full ({size} items)")

        await self.store.zadd(queue_key, {self._serialize(item): priority_score(item.priority, item.scheduled_for)})
        if queue_key.startswith(USER_QUEUE_KEY.format(user_id="")):
            await self.store.sadd(ACTIVE_USERS_KEY, item.user_id)
        return queue_key

    # ------------------------------------------------------------------ enqueue

    async def enqueue(self, item: QueueItem) -> str:
        """
        Add an item, collapsing duplicates that share a dedup key.

        Args:
            item: Item to queue

        Returns:
            The item's id, or the id of the existing item for a duplicate

        Raises:
            QueueFullError: Destination queue already holds max_queue_size items
        """
        dedup_key = DEDUP_KEY.format(key=item.dedup_key) if item.dedup_key else None
        # Claim the key before inserting so concurrent duplicates cannot both get in
        while dedup_key and not await self.store.set_if_absent(dedup_key, item.id, ttl_seconds=DEDUP_TTL_SECONDS):
            existing_id = await self.store.get(dedup_key)
            if existing_id:
                # Sliding window: a duplicate keeps the mapping alive
                await self.store.expire(dedup_key, DEDUP_TTL_SECONDS)
                logger.debug(f"Duplicate notification '{item.dedup_key}' collapsed into {existing_id}")
                return existing_id

        try:
            queue_key = await self._insert(item)
        except QueueFullError:
            if dedup_key:
                await self.store.delete(dedup_key)
            raise

        logger.debug(f"Queued {item.id} ({item.priority.value}, {item.type}) in {queue_key}")
        await self._maybe_trigger(item.user_id, queue_key)
        return item.id

    async def requeue(self, item: QueueItem, scheduled_for: datetime) -> str:
        """
        Put a dequeued item back for a later attempt, keeping its id.

        Deduplication is skipped: the item already passed it once.
        """
        rescheduled = item.model_copy(update={"scheduled_for": scheduled_for})
        queue_key = await self._insert(rescheduled)
        logger.debug(f"Re-queued {item.id} in {queue_key} for {scheduled_for.isoformat()} (attempt {item.attempts})")
        return item.id

    async def dead_letter(self, item: QueueItem, reason: str):
        """Park an item that exhausted its delivery attempts."""
        await self.store.zadd(DEAD_LETTER_KEY, {self._serialize(item): to_ms(self._clock())})
        logger.error(f"Notification {item.id} for user {item.user_id} dead-lettered after {item.attempts} attempts: {reason}")

    # ------------------------------------------------------------------ triggers

    async def system_load(self, global_depth: Optional[int] = None) -> float:
        """0.0 (idle) to 1.0+ (saturated), from global depth and process memory."""
        if global_depth is None:
            global_depth = await self.store.zcard(GLOBAL_QUEUE_KEY)
        return max(global_depth / QUEUE_LOAD_REFERENCE_DEPTH, self.memory_probe() / self.memory_limit_mb)

    def trigger_thresholds(self, load: float) -> Tuple[int, float]:
        """(item count, oldest item age in seconds) that fire a batch trigger under ``load``."""
        count = self.config.batch_size
        max_wait = self.config.max_batch_wait_seconds
        if load > 0.8:
            count = max(1, count // 2)
            max_wait = max_wait / 2
        elif load < 0.3:
            count = count * 2
            max_wait = max_wait * 1.5
        return count, max_wait

    async def _maybe_trigger(self, user_id: str, queue_key: str):
        try:
            count_trigger, max_wait = self.trigger_thresholds(await self.system_load())
            size = await self.store.zcard(queue_key)
            oldest_age = await self._oldest_due_age(queue_key)
            if size >= count_trigger or oldest_age >= max_wait:
                await self.store.publish(BATCH_TRIGGER_CHANNEL, user_id)
                logger.debug(
                    f"Batch trigger for user {user_id}: {size} queued (trigger {count_trigger}), "
                    f"oldest {oldest_age:.0f}s (max {max_wait:.0f}s)"
                )
        except StoreUnavailableError as e:
            # The periodic batch loop still picks the item up
            logger.warning(f"Could not evaluate batch trigger for {user_id}: {e}")

    async def _oldest_due_age(self, queue_key: str) -> float:
        """Seconds the longest-waiting due item has been due (0 when nothing is due)."""
        now_ms = to_ms(self._clock())
        oldest = 0.0
        for priority in TIER_ORDER:
            top = priority_weight(priority) + MAX_TIMESTAMP_MS
            head = await self.store.zrevrange_by_score(queue_key, top, top - now_ms, offset=0, count=1, withscores=True)
            if head:
                _, score = head[0]
                scheduled_ms = top - score
                oldest = max(oldest, (now_ms - scheduled_ms) / 1000)
        return oldest

    # ------------------------------------------------------------------ dequeue

    def adaptive_batch_size(self, global_depth: int) -> int:
        """Base size grown under queue depth and shrunk under memory pressure."""
        size = self.config.batch_size
        if global_depth > BATCH_SIZE_DEPTH_HIGH:
            size *= 3
        elif global_depth > BATCH_SIZE_DEPTH_MEDIUM:
            size *= 2

        if self.memory_probe() > self.config.memory_pressure_mb:
            size = max(min(size, BATCH_SIZE_FLOOR), size // 2)
        return size

    async def _due_members(self, queue_key: str, now_ms: int, limit: int) -> List[str]:
        members: List[str] = []
        for priority in TIER_ORDER:
            remaining = limit - len(members)
            if remaining <= 0:
                break
            top = priority_weight(priority) + MAX_TIMESTAMP_MS
            members.extend(await self.store.zrevrange_by_score(
                queue_key, top, top - now_ms, offset=0, count=remaining
            ))
        return members

    async def dequeue_batch(self, user_id: Optional[str] = None) -> Optional[NotificationBatch]:
        """
        Remove due items and group them for delivery.

        Args:
            user_id: Only drain this user's queue; all queues when omitted

        Returns:
            A batch of individual and merged items, or None when nothing is due
        """
        now = self._clock()
        now_ms = to_ms(now)
        global_depth = await self.store.zcard(GLOBAL_QUEUE_KEY)
        batch_size = self.adaptive_batch_size(global_depth)

        if user_id is not None:
            queue_keys = [user_queue_key(user_id)]
        else:
            users = sorted(await self.store.smembers(ACTIVE_USERS_KEY))
            queue_keys = [CRITICAL_QUEUE_KEY, GLOBAL_QUEUE_KEY] + [user_queue_key(u) for u in users]

        per_queue = max(1, math.ceil(batch_size / len(queue_keys)))
        items: List[QueueItem] = []
        for queue_key in queue_keys:
            for member in await self._due_members(queue_key, now_ms, per_queue):
                # Only the caller whose zrem succeeded owns the item
                if await self.store.zrem(queue_key, member) != 1:
                    continue
                item = self._deserialize(member)
                if item is not None:
                    items.append(item)
            await self._forget_if_empty(queue_key)

        if not items:
            return None

        batch = NotificationBatch(items=self._group(items, now_ms))
        logger.debug(f"Dequeued {len(items)} items as {batch.size} deliveries (batch {batch.id}, size limit {batch_size})")
        return batch

    async def _forget_if_empty(self, queue_key: str):
        prefix = USER_QUEUE_KEY.format(user_id="")
        if queue_key.startswith(prefix) and await self.store.zcard(queue_key) == 0:
            await self.store.srem(ACTIVE_USERS_KEY, queue_key[len(prefix):])

    def _group(self, items: List[QueueItem], now_ms: int) -> List[QueueItem]:
        bucket = now_ms // (BATCH_GROUPING_WINDOW_SECONDS * 1000)
        groups: "OrderedDict[GroupKey, List[QueueItem]]" = OrderedDict()
        for item in items:
            groups.setdefault((item.user_id, item.type, item.priority, bucket), []).append(item)

        result: List[QueueItem] = []
        for (user_id, notification_type, priority, _), group in groups.items():
            if self.can_merge(group):
                result.append(self._merge(user_id, notification_type, priority, group))
            else:
                result.extend(group)
        return result

    @staticmethod
    def can_merge(group: List[QueueItem]) -> bool:
        """
        Whether a group may collapse into one synthesized notification.

        Requires at least two items, all batchable, a single non-CRITICAL tier
        and scheduled times spanning at most five minutes.
        """
        if len(group) < 2:
            return False
        if not all(item.batchable for item in group):
            return False
        if len({item.priority for item in group}) != 1 or group[0].priority == Priority.CRITICAL:
            return False
        scheduled = [item.scheduled_for for item in group]
        return (max(scheduled) - min(scheduled)).total_seconds() <= BATCH_MAX_SPREAD_SECONDS

    @staticmethod
    def _merge(user_id: str, notification_type: Optional[str], priority: Priority, group: List[QueueItem]) -> QueueItem:
        merged_ids: List[str] = []
        for item in group:
            merged_ids.extend(item.merged_ids or [item.id])
        return QueueItem(
            user_id=user_id,
            payload=build_batch_payload(notification_type, group),
            priority=priority,
            scheduled_for=min(item.scheduled_for for item in group),
            created_at=min(item.created_at for item in group),
            attempts=max(item.attempts for item in group),
            batchable=False,
            merged_ids=merged_ids,
        )

    # ------------------------------------------------------------------ health

    async def depths(self) -> Dict[str, int]:
        """Item count per queue key."""
        users = await self.store.smembers(ACTIVE_USERS_KEY)
        keys = [CRITICAL_QUEUE_KEY, GLOBAL_QUEUE_KEY] + [user_queue_key(u) for u in sorted(users)]
        return {key: await self.store.zcard(key) for key in keys}

    async def total_depth(self) -> int:
        return sum((await self.depths()).values())

    async def get_health(self) -> QueueHealth:
        depths = await self.depths()
        prefix = USER_QUEUE_KEY.format(user_id="")
        total = sum(depths.values())

        oldest = 0.0
        for key, depth in depths.items():
            if depth:
                oldest = max(oldest, await self._oldest_due_age(key))

        return QueueHealth(
            queue_size=total,
            critical=depths.get(CRITICAL_QUEUE_KEY, 0),
            global_queue=depths.get(GLOBAL_QUEUE_KEY, 0),
            users={key[len(prefix):]: depth for key, depth in depths.items() if key.startswith(prefix) and depth},
            oldest_item_age_seconds=round(oldest, 1),
            backlog=max(0, total - QUEUE_HEALTHY_SIZE),
            dead_letter=await self.store.zcard(DEAD_LETTER_KEY),
        )
