"""
Usage Counter Store

Per-user, per-feature monthly counters. Counters are keyed by usage period
(a UTC calendar month, YYYY-MM), so a new month starts every feature at zero
and earlier periods stay readable as history.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from aws_lambda_powertools import Logger
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError

from ..constants.subscription_tiers import USAGE_HISTORY_PERIODS
from ..models.errors import UsageStoreError
from ..models.subscription import utc_now
from .aws import get_ddb_table

logger = Logger()

Clock = Callable[[], datetime]


def usage_period(moment: datetime) -> str:
    """Usage period for a moment, in YYYY-MM format"""
    return moment.strftime("%Y-%m")


class UsageCounterStore(ABC):
    """
    Monthly usage counters.

    Implementations raise UsageStoreError on any I/O failure and never report
    a made-up count.
    """

    def __init__(self, clock: Clock = utc_now):
        self.clock = clock

    def current_period(self) -> str:
        return usage_period(self.clock())

    @abstractmethod
    def get_count(self, user_id: str, feature_key: str) -> int:
        """Current period count, 0 when the feature was never used"""

    @abstractmethod
    def increment(self, user_id: str, feature_key: str) -> int:
        """Atomically add one and return the new count"""

    @abstractmethod
    def increment_if_below(self, user_id: str, feature_key: str, limit: int) -> Optional[int]:
        """Add one only while the count is below limit. Returns the new count, or None when at the limit."""

    @abstractmethod
    def refund(self, user_id: str, feature_key: str) -> None:
        """Take back one use. A counter already at zero stays at zero."""

    @abstractmethod
    def reset_period(self, user_id: str) -> None:
        """Zero every current period counter for the user"""

    @abstractmethod
    def get_all_counts(self, user_id: str) -> Dict[str, int]:
        """Current period counts by feature key"""

    @abstractmethod
    def get_usage_history(self, user_id: str, feature_key: str) -> List[Dict[str, Any]]:
        """Counts of earlier periods, oldest first"""


class InMemoryUsageCounterStore(UsageCounterStore):
    """Thread-safe counters for a single process"""

    def __init__(self, clock: Clock = utc_now):
        super().__init__(clock)
        self._counts: Dict[tuple, int] = {}
        self._lock = threading.Lock()

    def get_count(self, user_id: str, feature_key: str) -> int:
        with self._lock:
            return self._counts.get((user_id, self.current_period(), feature_key), 0)

    def increment(self, user_id: str, feature_key: str) -> int:
        key = (user_id, self.current_period(), feature_key)
        with self._lock:
            self._counts[key] = self._counts.get(key, 0) + 1
            return self._counts[key]

    def increment_if_below(self, user_id: str, feature_key: str, limit: int) -> Optional[int]:
        key = (user_id, self.current_period(), feature_key)
        with self._lock:
            current = self._counts.get(key, 0)
            if current >= limit:
                return None
            self._counts[key] = current + 1
            return current + 1

    def refund(self, user_id: str, feature_key: str) -> None:
        key = (user_id, self.current_period(), feature_key)
        with self._lock:
            if self._counts.get(key, 0) > 0:
                self._counts[key] -= 1

    def reset_period(self, user_id: str) -> None:
        period = self.current_period()
        with self._lock:
            for key in self._counts:
                if key[0] == user_id and key[1] == period:
                    self._counts[key] = 0
        logger.info(f"Reset usage counters for user {user_id} in period {period}")

    def get_all_counts(self, user_id: str) -> Dict[str, int]:
        period = self.current_period()
        with self._lock:
            return {f: c for (u, p, f), c in self._counts.items() if u == user_id and p == period}

    def get_usage_history(self, user_id: str, feature_key: str) -> List[Dict[str, Any]]:
        period = self.current_period()
        with self._lock:
            history = [
                {"period": p, "count": c}
                for (u, p, f), c in self._counts.items()
                if u == user_id and f == feature_key and p < period
            ]
        history.sort(key=lambda h: h["period"])
        return history[-USAGE_HISTORY_PERIODS:]


class DynamoDBUsageCounterStore(UsageCounterStore):
    """
    Counters stored in the subscriptions table.

    Items use PK=USER#<user_id> and SK=USAGE#<period>#<feature_key>. Increments
    are single ADD updates, and increment_if_below adds a condition so that
    concurrent writers can never push a counter past its limit.
    """

    def __init__(self, table_name: str, table: Any = None, clock: Clock = utc_now):
        super().__init__(clock)
        self.table_name = table_name
        self._table = table

    @property
    def table(self) -> Any:
        if self._table is None:
            self._table = get_ddb_table(self.table_name)
        return self._table

    @staticmethod
    def _key(user_id: str, period: str, feature_key: str) -> Dict[str, str]:
        return {"PK": f"USER#{user_id}", "SK": f"USAGE#{period}#{feature_key}"}

    def _update(self, user_id: str, feature_key: str, condition: Optional[str] = None,
                limit: Optional[int] = None) -> int:
        period = self.current_period()
        kwargs: Dict[str, Any] = {
            "Key": self._key(user_id, period, feature_key),
            "UpdateExpression": "ADD usage_count :one SET feature_key = :fk, #period = :p, updated_at = :ts",
            "ExpressionAttributeNames": {"#period": "usage_period"},
            "ExpressionAttributeValues": {
                ":one": 1,
                ":fk": feature_key,
                ":p": period,
                ":ts": self.clock().isoformat(),
            },
            "ReturnValues": "UPDATED_NEW",
        }
        if condition:
            kwargs["ConditionExpression"] = condition
            kwargs["ExpressionAttributeValues"][":limit"] = limit
        response = self.table.update_item(**kwargs)
        return int(response["Attributes"]["usage_count"])

    def get_count(self, user_id: str, feature_key: str) -> int:
        try:
            response = self.table.get_item(
                Key=self._key(user_id, self.current_period(), feature_key),
                ConsistentRead=True,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error reading {feature_key} usage for user {user_id}: {str(e)}")
            raise UsageStoreError(f"Cannot read usage for {feature_key}") from e
        item = response.get("Item")
        return int(item.get("usage_count", 0)) if item else 0

    def increment(self, user_id: str, feature_key: str) -> int:
        try:
            count = self._update(user_id, feature_key)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error incrementing {feature_key} usage for user {user_id}: {str(e)}")
            raise UsageStoreError(f"Cannot increment usage for {feature_key}") from e
        logger.info(f"Incremented {feature_key} usage for user {user_id} to {count}")
        return count

    def increment_if_below(self, user_id: str, feature_key: str, limit: int) -> Optional[int]:
        if limit <= 0:
            return None
        try:
            count = self._update(
                user_id,
                feature_key,
                condition="attribute_not_exists(usage_count) OR usage_count < :limit",
                limit=limit,
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                logger.warning(f"User {user_id} reached {feature_key} limit of {limit}")
                return None
            logger.error(f"Error incrementing {feature_key} usage for user {user_id}: {str(e)}")
            raise UsageStoreError(f"Cannot increment usage for {feature_key}") from e
        except BotoCoreError as e:
            logger.error(f"Error incrementing {feature_key} usage for user {user_id}: {str(e)}")
            raise UsageStoreError(f"Cannot increment usage for {feature_key}") from e
        logger.info(f"Incremented {feature_key} usage for user {user_id} to {count}/{limit}")
        return count

    def _query(self, user_id: str, prefix: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        kwargs: Dict[str, Any] = {
            "KeyConditionExpression": Key("PK").eq(f"USER#{user_id}") & Key("SK").begins_with(prefix),
            "ConsistentRead": True,
        }
        while True:
            response = self.table.query(**kwargs)
            items.extend(response.get("Items", []))
            if "LastEvaluatedKey" not in response:
                return items
            kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]

    def get_all_counts(self, user_id: str) -> Dict[str, int]:
        try:
            items = self._query(user_id, f"USAGE#{self.current_period()}#")
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error reading usage for user {user_id}: {str(e)}")
            raise UsageStoreError("Cannot read usage counters") from e
        return {item["feature_key"]: int(item.get("usage_count", 0)) for item in items}

    def refund(self, user_id: str, feature_key: str) -> None:
        try:
            self.table.update_item(
                Key=self._key(user_id, self.current_period(), feature_key),
                UpdateExpression="ADD usage_count :minus_one SET updated_at = :ts",
                ConditionExpression="usage_count > :zero",
                ExpressionAttributeValues={":minus_one": -1, ":zero": 0, ":ts": self.clock().isoformat()},
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                logger.warning(f"Nothing to refund for {feature_key} for user {user_id}")
                return
            logger.error(f"Error refunding {feature_key} usage for user {user_id}: {str(e)}")
            raise UsageStoreError(f"Cannot refund usage for {feature_key}") from e
        except BotoCoreError as e:
            logger.error(f"Error refunding {feature_key} usage for user {user_id}: {str(e)}")
            raise UsageStoreError(f"Cannot refund usage for {feature_key}") from e
        logger.info(f"Refunded one {feature_key} use for user {user_id}")

    def reset_period(self, user_id: str) -> None:
        period = self.current_period()
        try:
            for item in self._query(user_id, f"USAGE#{period}#"):
                self.table.update_item(
                    Key={"PK": item["PK"], "SK": item["SK"]},
                    UpdateExpression="SET usage_count = :zero, updated_at = :ts",
                    ExpressionAttributeValues={":zero": 0, ":ts": self.clock().isoformat()},
                )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error resetting usage for user {user_id}: {str(e)}")
            raise UsageStoreError("Cannot reset usage counters") from e
        logger.info(f"Reset usage counters for user {user_id} in period {period}")

    def get_usage_history(self, user_id: str, feature_key: str) -> List[Dict[str, Any]]:
        current = self.current_period()
        try:
            items = self._query(user_id, "USAGE#")
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error reading usage history for user {user_id}: {str(e)}")
            raise UsageStoreError("Cannot read usage history") from e

        history = []
        for item in items:
            _, period, feature = item["SK"].split("#", 2)
            if feature == feature_key and period < current:
                history.append({"period": period, "count": int(item.get("usage_count", 0))})
        history.sort(key=lambda h: h["period"])
        return history[-USAGE_HISTORY_PERIODS:]
