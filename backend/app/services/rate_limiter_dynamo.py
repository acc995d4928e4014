from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError

from app.core.errors import StorageError
from app.services.rate_limiter import RateLimitResult, build_limiter_key

_COUNTER_UPDATE = (
    "SET window_start = :window_start, #count = if_not_exists(#count, :zero) + :inc, "
    "expires_at = :expires_at"
)
_COUNTER_RESET = "SET window_start = :window_start, #count = :one, expires_at = :expires_at"


@dataclass(frozen=True)
class DynamoRateLimiter:
    """
    Fixed-window limiter for multi-instance deployments that share a DynamoDB table.

    Items are keyed ``pk=<identifier>``, ``sk=route:<route_key>:window:<seconds>``.
    The increment is a conditional ``update_item`` that only applies to the current
    window; a stale window fails the condition and is reset to 1 instead.
    ``expires_at`` doubles as the table's TTL attribute.
    """

    client: BaseClient
    table_name: str
    ttl_buffer_seconds: int = 5

    def check(
        self,
        *,
        identifier: str,
        route_key: str,
        limit: int,
        window_seconds: int,
        now: int | None = None,
    ) -> RateLimitResult:
        now_ts = int(now or time.time())
        limiter_key = build_limiter_key(route_key, window_seconds)

        if limit <= 0 or window_seconds <= 0:
            return RateLimitResult(
                allowed=True,
                retry_after_seconds=0,
                limit=limit,
                remaining=0,
                count=0,
                window_reset_epoch=now_ts + max(window_seconds, 0),
                limiter_key=limiter_key,
                window_seconds=window_seconds,
            )

        window_start = now_ts - (now_ts % window_seconds)
        expires_at = window_start + window_seconds + self.ttl_buffer_seconds

        try:
            attributes = self._increment_window(
                item_key={"pk": {"S": identifier}, "sk": {"S": limiter_key}},
                window_start=window_start,
                expires_at=expires_at,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError() from exc

        count = int(attributes.get("count", {}).get("N", "0"))
        allowed = count <= limit
        retry_after = 0
        if not allowed:
            retry_after = max(1, window_start + window_seconds - now_ts)

        return RateLimitResult(
            allowed=allowed,
            retry_after_seconds=retry_after,
            limit=limit,
            remaining=max(0, limit - count),
            count=count,
            window_reset_epoch=window_start + window_seconds,
            limiter_key=limiter_key,
            window_seconds=window_seconds,
        )

    def _increment_window(self, *, item_key: dict[str, Any], window_start: int, expires_at: int) -> dict[str, Any]:
        for _ in range(3):
            try:
                response = self.client.update_item(
                    TableName=self.table_name,
                    Key=item_key,
                    UpdateExpression=_COUNTER_UPDATE,
                    ConditionExpression="attribute_not_exists(window_start) OR window_start = :window_start",
                    ExpressionAttributeNames={"#count": "count"},
                    ExpressionAttributeValues={
                        ":window_start": {"N": str(window_start)},
                        ":expires_at": {"N": str(expires_at)},
                        ":inc": {"N": "1"},
                        ":zero": {"N": "0"},
                    },
                    ReturnValues="ALL_NEW",
                )
                return response.get("Attributes", {})
            except ClientError as err:
                if not _condition_failed(err):
                    raise

            # Previous window is still stored: restart the count, but never move the window backwards.
            try:
                response = self.client.update_item(
                    TableName=self.table_name,
                    Key=item_key,
                    UpdateExpression=_COUNTER_RESET,
                    ConditionExpression="window_start < :window_start",
                    ExpressionAttributeNames={"#count": "count"},
                    ExpressionAttributeValues={
                        ":window_start": {"N": str(window_start)},
                        ":one": {"N": "1"},
                        ":expires_at": {"N": str(expires_at)},
                    },
                    ReturnValues="ALL_NEW",
                )
                return response.get("Attributes", {})
            except ClientError as err:
                # Another request already reset the window; count against it.
                if not _condition_failed(err):
                    raise

        raise StorageError("Could not record rate limit attempt")


def _condition_failed(err: ClientError) -> bool:
    return err.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"
