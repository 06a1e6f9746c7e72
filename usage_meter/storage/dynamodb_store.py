"""DynamoDB usage counters (external managed store)."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from usage_meter.core import cycles
from usage_meter.core.errors import StorageUnavailable
from .counters import UsageStore, validate_account_id, validate_cost_delta
from .models import UsageCounters

logger = logging.getLogger(__name__)

SORT_KEY = "USAGE"


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class DynamoUsageStore(UsageStore):
    """
    Usage counters stored as one item per account.

    Increments use DynamoDB's atomic ADD; resets are conditional updates
    on the stored boundary timestamp, so a reset that lost the race to a
    concurrent request fails its condition and reports False.
    """

    def __init__(
        self,
        table_name: str = "UsageCounters",
        region_name: Optional[str] = None,
        table: Any = None
    ):
        if table is None:
            dynamodb = boto3.resource('dynamodb', region_name=region_name)
            table = dynamodb.Table(table_name)
        self.table = table

    @staticmethod
    def _key(account_id: str) -> Dict[str, str]:
        return {"PK": f"ACCOUNT#{account_id}", "SK": SORT_KEY}

    @staticmethod
    def _item_to_counters(item: Dict[str, Any]) -> UsageCounters:
        renewal = item.get("cycleRenewalAt")
        return UsageCounters(
            account_id=item["accountId"],
            account_created_at=cycles.from_iso(item["accountCreatedAt"]),
            summaries_today=int(item.get("summariesToday", 0)),
            chat_queries_today=int(item.get("chatQueriesToday", 0)),
            last_daily_reset=cycles.from_iso(item["lastDailyReset"]),
            summaries_this_month=int(item.get("summariesThisMonth", 0)),
            chat_queries_this_month=int(item.get("chatQueriesThisMonth", 0)),
            cost_this_month=Decimal(str(item.get("costThisMonth", 0))),
            last_monthly_reset=cycles.from_iso(item["lastMonthlyReset"]),
            chat_queries_this_cycle=int(item.get("chatQueriesThisCycle", 0)),
            cycle_renewal_at=cycles.from_iso(renewal) if renewal else None,
        )

    def _get_item(self, account_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.table.get_item(Key=self._key(account_id), ConsistentRead=True)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error loading usage counters for {account_id}: {e}")
            raise StorageUnavailable(f"Usage counter load failed: {e}", "load") from e
        return response.get("Item")

    def _update(self, operation: str, account_id: str, **kwargs) -> bool:
        """Run one update_item; False when its condition did not hold."""
        try:
            self.table.update_item(Key=self._key(account_id), **kwargs)
            return True
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            logger.error(f"Error during usage counter {operation} for {account_id}: {e}")
            raise StorageUnavailable(f"Usage counter {operation} failed: {e}", operation) from e
        except BotoCoreError as e:
            logger.error(f"Error during usage counter {operation} for {account_id}: {e}")
            raise StorageUnavailable(f"Usage counter {operation} failed: {e}", operation) from e

    def load(
        self,
        account_id: str,
        now: Optional[datetime] = None,
        created_at: Optional[datetime] = None
    ) -> UsageCounters:
        validate_account_id(account_id)
        item = self._get_item(account_id)
        if item is not None:
            return self._item_to_counters(item)

        fresh = UsageCounters.fresh(account_id, now or cycles.utcnow(), created_at)
        item = {
            **self._key(account_id),
            "accountId": account_id,
            "accountCreatedAt": cycles.to_iso(fresh.account_created_at),
            "summariesToday": 0,
            "chatQueriesToday": 0,
            "lastDailyReset": cycles.to_iso(fresh.last_daily_reset),
            "summariesThisMonth": 0,
            "chatQueriesThisMonth": 0,
            "costThisMonth": Decimal("0"),
            "lastMonthlyReset": cycles.to_iso(fresh.last_monthly_reset),
            "chatQueriesThisCycle": 0,
        }
        try:
            self.table.put_item(Item=item, ConditionExpression="attribute_not_exists(PK)")
            logger.info(f"Created usage counters for {account_id}")
            return fresh
        except ClientError as e:
            if not _is_conditional_failure(e):
                logger.error(f"Error creating usage counters for {account_id}: {e}")
                raise StorageUnavailable(f"Usage counter create failed: {e}", "load") from e
        except BotoCoreError as e:
            raise StorageUnavailable(f"Usage counter create failed: {e}", "load") from e

        # Another request created the item first
        return self._item_to_counters(self._get_item(account_id))

    def apply_daily_reset_if_due(self, account_id: str, now: datetime) -> bool:
        validate_account_id(account_id)
        self.load(account_id, now)
        return self._update(
            "daily reset",
            account_id,
            UpdateExpression="SET summariesToday = :zero, chatQueriesToday = :zero, lastDailyReset = :now",
            ConditionExpression="lastDailyReset < :dayStart",
            ExpressionAttributeValues={
                ":zero": 0,
                ":now": cycles.to_iso(now),
                ":dayStart": cycles.to_iso(cycles.start_of_day(now)),
            },
        )

    def apply_monthly_reset_if_due(self, account_id: str, now: datetime) -> bool:
        validate_account_id(account_id)
        self.load(account_id, now)
        return self._update(
            "monthly reset",
            account_id,
            UpdateExpression="""
                SET summariesThisMonth = :zero,
                    chatQueriesThisMonth = :zero,
                    costThisMonth = :zeroCost,
                    lastMonthlyReset = :now
            """,
            ConditionExpression="lastMonthlyReset < :monthStart",
            ExpressionAttributeValues={
                ":zero": 0,
                ":zeroCost": Decimal("0"),
                ":now": cycles.to_iso(now),
                ":monthStart": cycles.to_iso(cycles.start_of_month(now)),
            },
        )

    def apply_cycle_reset_if_due(self, account_id: str, now: datetime) -> bool:
        validate_account_id(account_id)
        counters = self.load(account_id, now)
        if counters.cycle_renewal_at is None:
            seed = cycles.seed_cycle_renewal(counters.account_created_at)
            self._update(
                "cycle seed",
                account_id,
                UpdateExpression="SET cycleRenewalAt = :seed",
                ConditionExpression="attribute_not_exists(cycleRenewalAt)",
                ExpressionAttributeValues={":seed": cycles.to_iso(seed)},
            )

        return self._update(
            "cycle reset",
            account_id,
            UpdateExpression="SET chatQueriesThisCycle = :zero, cycleRenewalAt = :next",
            ConditionExpression="cycleRenewalAt <= :now",
            ExpressionAttributeValues={
                ":zero": 0,
                ":now": cycles.to_iso(now),
                ":next": cycles.to_iso(cycles.next_cycle_renewal(now)),
            },
        )

    def _increment(self, operation: str, account_id: str, add_clause: str,
                   cost_delta: Decimal, now: Optional[datetime]) -> None:
        stamp = cycles.to_iso(now or cycles.utcnow())
        self._update(
            operation,
            account_id,
            UpdateExpression=f"""
                ADD {add_clause}, costThisMonth :cost
                SET accountId = :accountId,
                    accountCreatedAt = if_not_exists(accountCreatedAt, :now),
                    lastDailyReset = if_not_exists(lastDailyReset, :now),
                    lastMonthlyReset = if_not_exists(lastMonthlyReset, :now)
            """,
            ExpressionAttributeValues={
                ":one": 1,
                ":cost": cost_delta,
                ":accountId": account_id,
                ":now": stamp,
            },
        )

    def increment_summary(self, account_id: str, cost_delta: Decimal,
                          now: Optional[datetime] = None) -> None:
        validate_account_id(account_id)
        self._increment(
            "summary increment",
            account_id,
            "summariesToday :one, summariesThisMonth :one",
            validate_cost_delta(cost_delta),
            now,
        )

    def increment_chat(self, account_id: str, cost_delta: Decimal,
                       now: Optional[datetime] = None) -> None:
        validate_account_id(account_id)
        self._increment(
            "chat increment",
            account_id,
            "chatQueriesToday :one, chatQueriesThisMonth :one, chatQueriesThisCycle :one",
            validate_cost_delta(cost_delta),
            now,
        )
