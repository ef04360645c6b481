"""
DynamoDB persistence for subscription status, onboarding state and analytics events.

All live in the subscriptions table under PK=USER#<user_id>, with
SK=SUBSCRIPTION, SK=ONBOARDING and SK=EVENT#... respectively.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from aws_lambda_powertools import Logger
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError

from ..models.analytics import SubscriptionAnalyticsEvent
from ..models.errors import PersistenceError
from ..models.subscription import OnboardingState, SubscriptionStatus
from .aws import get_ddb_table

logger = Logger()

STATUS_FIELDS = {"tier", "is_active", "expiration_date", "platform_subscription_id", "last_updated"}


def _without_none(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


class _DynamoDBRepository:
    sort_key = ""

    def __init__(self, table_name: str, table: Any = None):
        self.table_name = table_name
        self._table = table

    @property
    def table(self) -> Any:
        if self._table is None:
            self._table = get_ddb_table(self.table_name)
        return self._table

    def _key(self, user_id: str) -> Dict[str, str]:
        return {"PK": f"USER#{user_id}", "SK": self.sort_key}

    def _get(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.table.get_item(Key=self._key(user_id), ConsistentRead=True)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error loading {self.sort_key} for user {user_id}: {str(e)}")
            raise PersistenceError(f"Cannot load {self.sort_key.lower()} state") from e
        return response.get("Item")

    def _put(self, user_id: str, data: Dict[str, Any]) -> None:
        item = {**self._key(user_id), "user_id": user_id, **_without_none(data)}
        try:
            self.table.put_item(Item=item)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error saving {self.sort_key} for user {user_id}: {str(e)}")
            raise PersistenceError(f"Cannot save {self.sort_key.lower()} state") from e


class SubscriptionRepository(_DynamoDBRepository):
    """Load and save SubscriptionStatus. Usage counts are stored separately."""

    sort_key = "SUBSCRIPTION"

    def load(self, user_id: str) -> Optional[SubscriptionStatus]:
        item = self._get(user_id)
        if not item:
            return None
        return SubscriptionStatus.model_validate({k: item[k] for k in STATUS_FIELDS if k in item})

    def save(self, user_id: str, status: SubscriptionStatus) -> None:
        self._put(user_id, status.model_dump(mode="json", include=STATUS_FIELDS))
        logger.info(f"Saved {status.tier.value} subscription for user {user_id} (active={status.is_active})")


class OnboardingRepository(_DynamoDBRepository):
    sort_key = "ONBOARDING"

    def load(self, user_id: str) -> OnboardingState:
        item = self._get(user_id)
        if not item:
            return OnboardingState()
        return OnboardingState.model_validate({k: item[k] for k in OnboardingState.model_fields if k in item})

    def save(self, user_id: str, state: OnboardingState) -> None:
        self._put(user_id, state.model_dump(mode="json", exclude={"is_complete"}))


def convert_floats_to_decimal(obj: Any) -> Any:
    """Recursively convert float values to Decimal for DynamoDB compatibility."""
    if isinstance(obj, float):
        return Decimal(str(obj))
    if isinstance(obj, dict):
        return {key: convert_floats_to_decimal(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [convert_floats_to_decimal(item) for item in obj]
    return obj


class EventRepository(_DynamoDBRepository):
    """
    Append-only analytics events.

    Items use SK=EVENT#<iso timestamp>#<event_id>, so a user's events sort by
    time and a date prefix bounds a range query.
    """

    sort_key = "EVENT"

    def record(self, event: SubscriptionAnalyticsEvent) -> None:
        item = {
            "PK": f"USER#{event.user_id}",
            "SK": f"EVENT#{event.timestamp.isoformat()}#{event.event_id}",
            **convert_floats_to_decimal(_without_none(event.model_dump(mode="json"))),
        }
        try:
            self.table.put_item(Item=item)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to record {event.event_type.value} event for user {event.user_id}: {str(e)}")
            raise PersistenceError("Cannot record analytics event") from e

    def list_events(self, user_id: str, start_date: Optional[str] = None) -> List[SubscriptionAnalyticsEvent]:
        """Events for a user, oldest first, optionally from a YYYY-MM-DD date on"""
        if start_date:
            condition = Key("PK").eq(f"USER#{user_id}") & Key("SK").between(f"EVENT#{start_date}", "EVENT#~")
        else:
            condition = Key("PK").eq(f"USER#{user_id}") & Key("SK").begins_with("EVENT#")
        kwargs: Dict[str, Any] = {"KeyConditionExpression": condition}
        items: List[Dict[str, Any]] = []
        try:
            while True:
                response = self.table.query(**kwargs)
                items.extend(response.get("Items", []))
                if "LastEvaluatedKey" not in response:
                    break
                kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to list events for user {user_id}: {str(e)}")
            raise PersistenceError("Cannot load analytics events") from e
        fields = SubscriptionAnalyticsEvent.model_fields
        return [SubscriptionAnalyticsEvent.model_validate({k: v for k, v in item.items() if k in fields}) for item in items]
