from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from listing_relay.core.addresses import DedupKey
from listing_relay.services.records import (
    CrmActivity,
    DeliveryAttempt,
    Job,
    ScrapedRecord,
    UpsertResult,
    WebhookSubscription,
)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


_JOB_COLUMNS = """
  id::text as id,
  source,
  region,
  input_payload,
  status,
  attempt,
  previous_errors,
  error,
  started_at,
  finished_at,
  result_payload,
  created_at,
  updated_at
"""

_DELIVERY_COLUMNS = """
  id::text as id,
  subscription_id::text as subscription_id,
  event_type,
  payload,
  status,
  is_resolved,
  attempts,
  replay_count,
  last_attempt_at,
  last_error,
  last_status_code,
  delivered_at,
  created_at
"""


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def create_job(self, job: Job) -> Job:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into scrape_jobs (id, source, region, input_payload, status, attempt, previous_errors)
                values ($1::uuid, $2, $3, $4::jsonb, $5, $6, $7::jsonb)
                returning {_JOB_COLUMNS}
                """,
                job.job_id,
                job.source,
                job.region,
                json.dumps(job.input_payload),
                job.status,
                job.attempt,
                json.dumps(job.previous_errors),
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("job already exists") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError(str(exc)) from exc
        return self._job_row_to_record(row)

    async def get_job(self, job_id: str) -> Job:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_JOB_COLUMNS} from scrape_jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_record(row)

    async def save_job(self, job: Job) -> Job:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update scrape_jobs
            set
              status = $2,
              attempt = $3,
              previous_errors = $4::jsonb,
              error = $5,
              started_at = $6,
              finished_at = $7,
              result_payload = $8::jsonb,
              updated_at = now()
            where id = $1::uuid
            returning {_JOB_COLUMNS}
            """,
            job.job_id,
            job.status,
            job.attempt,
            json.dumps(job.previous_errors),
            job.error,
            job.started_at,
            job.finished_at,
            json.dumps(job.result_payload) if job.result_payload is not None else None,
        )
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_record(row)

    async def list_jobs(
        self,
        *,
        status: str | None = None,
        source: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from scrape_jobs
            where ($1::text is null or status = $1)
              and ($2::text is null or source = $2)
            order by created_at desc
            limit $3 offset $4
            """,
            status,
            source,
            max(1, min(limit, 500)),
            max(0, offset),
        )
        return [self._job_row_to_record(row) for row in rows]

    async def upsert_record(self, key: DedupKey, *, address: str, payload: dict[str, Any]) -> UpsertResult:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    insert into scraped_records (source, region, normalized_address, address, payload)
                    values ($1, $2, $3, $4, $5::jsonb)
                    on conflict (source, region, normalized_address) do nothing
                    returning id::text as id
                    """,
                    key.source,
                    key.region,
                    key.normalized_address,
                    address,
                    json.dumps(payload),
                )
                if row:
                    return UpsertResult(outcome="created", record_id=row["id"])

                existing = await conn.fetchrow(
                    """
                    update scraped_records
                    set payload = $4::jsonb, last_seen_at = now()
                    where source = $1 and region = $2 and normalized_address = $3
                    returning id::text as id
                    """,
                    key.source,
                    key.region,
                    key.normalized_address,
                    json.dumps(payload),
                )
                if not existing:
                    raise RepositoryConflictError("failed to resolve existing record after conflict")
                return UpsertResult(outcome="updated", record_id=existing["id"])

    async def get_record(self, key: DedupKey) -> ScrapedRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              id::text as id,
              source,
              region,
              normalized_address,
              address,
              payload,
              first_seen_at,
              last_seen_at
            from scraped_records
            where source = $1 and region = $2 and normalized_address = $3
            """,
            key.source,
            key.region,
            key.normalized_address,
        )
        if not row:
            return None
        return ScrapedRecord(
            record_id=row["id"],
            source=row["source"],
            region=row["region"],
            normalized_address=row["normalized_address"],
            address=row["address"],
            payload=self._coerce_json_dict(row["payload"]),
            first_seen_at=row["first_seen_at"],
            last_seen_at=row["last_seen_at"],
        )

    async def find_active_subscriptions(self, event_type: str) -> list[WebhookSubscription]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id, endpoint_url, event_types, is_active, signing_secret
            from webhook_subscriptions
            where is_active = true and $1 = any(event_types)
            order by created_at asc
            """,
            event_type,
        )
        return [self._subscription_row_to_record(row) for row in rows]

    async def get_subscription(self, subscription_id: str) -> WebhookSubscription | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select id::text as id, endpoint_url, event_types, is_active, signing_secret
                from webhook_subscriptions
                where id = $1::uuid
                """,
                subscription_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._subscription_row_to_record(row) if row else None

    async def create_delivery(self, delivery: DeliveryAttempt) -> DeliveryAttempt:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into webhook_deliveries (id, subscription_id, event_type, payload, status, is_resolved)
                values ($1::uuid, $2::uuid, $3, $4::jsonb, $5, $6)
                returning {_DELIVERY_COLUMNS}
                """,
                delivery.delivery_id,
                delivery.subscription_id,
                delivery.event_type,
                json.dumps(delivery.payload),
                delivery.status,
                delivery.is_resolved,
            )
        except (pg_exc.ForeignKeyViolationError, pg_exc.UniqueViolationError) as exc:
            raise RepositoryConflictError(str(exc)) from exc
        return self._delivery_row_to_record(row)

    async def get_delivery(self, delivery_id: str) -> DeliveryAttempt:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_DELIVERY_COLUMNS} from webhook_deliveries where id = $1::uuid",
                delivery_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("delivery not found") from exc
        if not row:
            raise RepositoryNotFoundError("delivery not found")
        return self._delivery_row_to_record(row)

    async def save_delivery(self, delivery: DeliveryAttempt) -> DeliveryAttempt:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update webhook_deliveries
            set
              status = $2,
              is_resolved = $3,
              attempts = $4,
              replay_count = $5,
              last_attempt_at = $6,
              last_error = $7,
              last_status_code = $8,
              delivered_at = $9
            where id = $1::uuid
            returning {_DELIVERY_COLUMNS}
            """,
            delivery.delivery_id,
            delivery.status,
            delivery.is_resolved,
            delivery.attempts,
            delivery.replay_count,
            delivery.last_attempt_at,
            delivery.last_error,
            delivery.last_status_code,
            delivery.delivered_at,
        )
        if not row:
            raise RepositoryNotFoundError("delivery not found")
        return self._delivery_row_to_record(row)

    async def list_deliveries(
        self,
        *,
        subscription_id: str | None = None,
        event_type: str | None = None,
        status: str | None = None,
        is_resolved: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeliveryAttempt]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {_DELIVERY_COLUMNS}
                from webhook_deliveries
                where ($1::uuid is null or subscription_id = $1::uuid)
                  and ($2::text is null or event_type = $2)
                  and ($3::text is null or status = $3)
                  and ($4::boolean is null or is_resolved = $4)
                order by created_at desc
                limit $5 offset $6
                """,
                subscription_id,
                event_type,
                status,
                is_resolved,
                max(1, min(limit, 500)),
                max(0, offset),
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError(str(exc)) from exc
        return [self._delivery_row_to_record(row) for row in rows]

    async def create_activity(self, activity: CrmActivity) -> CrmActivity:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into crm_activities (id, type, lead_id, user_id, property_id, metadata)
            values ($1::uuid, $2, $3, $4, $5, $6::jsonb)
            returning id::text as id, type, lead_id, user_id, property_id, metadata, created_at
            """,
            activity.activity_id,
            activity.type,
            activity.lead_id,
            activity.user_id,
            activity.property_id,
            json.dumps(activity.metadata),
        )
        return self._activity_row_to_record(row)

    async def list_recent_activities(self, *, activity_type: str, limit: int) -> list[CrmActivity]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id, type, lead_id, user_id, property_id, metadata, created_at
            from crm_activities
            where type = $1
            order by created_at desc
            limit $2
            """,
            activity_type,
            max(1, limit),
        )
        return [self._activity_row_to_record(row) for row in rows]

    async def list_activities(
        self,
        *,
        activity_type: str | None = None,
        lead_id: str | None = None,
        user_id: str | None = None,
        property_id: str | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        cursor: str | None = None,
        order: str = "desc",
        limit: int = 50,
    ) -> list[CrmActivity]:
        direction, comparator = ("asc", ">") if order == "asc" else ("desc", "<")
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select id::text as id, type, lead_id, user_id, property_id, metadata, created_at
                from crm_activities
                where ($1::text is null or type = $1)
                  and ($2::text is null or lead_id = $2)
                  and ($3::text is null or user_id = $3)
                  and ($4::text is null or property_id = $4)
                  and ($5::timestamptz is null or created_at >= $5)
                  and ($6::timestamptz is null or created_at <= $6)
                  and (
                    $7::uuid is null
                    or (created_at, id) {comparator} (select created_at, id from crm_activities where id = $7::uuid)
                  )
                order by created_at {direction}, id {direction}
                limit $8
                """,
                activity_type,
                lead_id,
                user_id,
                property_id,
                created_from,
                created_to,
                cursor,
                max(1, limit),
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError(str(exc)) from exc
        return [self._activity_row_to_record(row) for row in rows]

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("LR_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    def _job_row_to_record(self, row: asyncpg.Record) -> Job:
        result_payload = row["result_payload"]
        return Job(
            job_id=row["id"],
            source=row["source"],
            region=row["region"],
            input_payload=self._coerce_json_dict(row["input_payload"]),
            status=row["status"],
            attempt=int(row["attempt"]),
            previous_errors=self._coerce_text_list(self._coerce_json(row["previous_errors"])),
            error=row["error"],
            started_at=self._coerce_datetime(row["started_at"]),
            finished_at=self._coerce_datetime(row["finished_at"]),
            result_payload=self._coerce_json_dict(result_payload) if result_payload is not None else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _delivery_row_to_record(self, row: asyncpg.Record) -> DeliveryAttempt:
        return DeliveryAttempt(
            delivery_id=row["id"],
            subscription_id=row["subscription_id"],
            event_type=row["event_type"],
            payload=self._coerce_json_dict(row["payload"]),
            status=row["status"],
            is_resolved=bool(row["is_resolved"]),
            attempts=int(row["attempts"]),
            replay_count=int(row["replay_count"]),
            last_attempt_at=row["last_attempt_at"],
            last_error=row["last_error"],
            last_status_code=row["last_status_code"],
            delivered_at=row["delivered_at"],
            created_at=row["created_at"],
        )

    def _activity_row_to_record(self, row: asyncpg.Record) -> CrmActivity:
        return CrmActivity(
            activity_id=row["id"],
            type=row["type"],
            lead_id=row["lead_id"],
            user_id=row["user_id"],
            property_id=row["property_id"],
            metadata=self._coerce_json_dict(row["metadata"]),
            created_at=row["created_at"],
        )

    def _subscription_row_to_record(self, row: asyncpg.Record) -> WebhookSubscription:
        return WebhookSubscription(
            subscription_id=row["id"],
            endpoint_url=row["endpoint_url"],
            event_types=set(self._coerce_text_list(list(row["event_types"] or []))),
            is_active=bool(row["is_active"]),
            signing_secret=row["signing_secret"],
        )

    @staticmethod
    def _coerce_json(value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return None
        return value

    @classmethod
    def _coerce_json_dict(cls, value: Any) -> dict[str, Any]:
        value = cls._coerce_json(value)
        if isinstance(value, dict):
            return value
        return {}

    @staticmethod
    def _coerce_text_list(value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, str) and item]

    @staticmethod
    def _coerce_datetime(value: Any) -> datetime | None:
        if value is None:
            return None
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            candidate = value.strip()
            if not candidate:
                return None
            try:
                return datetime.fromisoformat(candidate.replace("Z", "+00:00"))
            except ValueError:
                return None
        return None
