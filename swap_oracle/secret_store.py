"""
Keyed storage for swap secret records.

Two backends implement the same small contract: a local SQLite/SQLAlchemy
table (the default, fine for a single oracle instance) and AWS Secrets
Manager for deployments where the preimages must not sit on the host's
disk. Both translate their native failures into the same two families:
client errors, which are never retried, and transient errors, which are.
"""

import asyncio
import functools
import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy import Column, DateTime, Index, String, Text, delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import Config, config
from .errors import (
    SecretAccessDeniedError,
    SecretExistsError,
    SecretNotFoundError,
    SecretStoreClientError,
    SecretStoreTransientError,
)

logger = structlog.get_logger()
Base = declarative_base()


def _naive_utc(dt: datetime | None = None) -> datetime:
    """SQLite drops tzinfo, so rows hold naive UTC timestamps."""
    dt = dt or datetime.now(timezone.utc)
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


class SecretStore(ABC):
    """Keyed get/set/update contract for swap secret records."""

    @abstractmethod
    async def put(self, swap_id: str, data: dict[str, Any]) -> None:
        """Create a record; SecretExistsError if the id is taken."""

    @abstractmethod
    async def get(self, swap_id: str) -> dict[str, Any]:
        """Fetch a record; SecretNotFoundError if absent or deleted."""

    @abstractmethod
    async def update(self, swap_id: str, data: dict[str, Any]) -> None:
        """Replace an existing record."""

    @abstractmethod
    async def exists(self, swap_id: str) -> bool:
        pass

    @abstractmethod
    async def delete(
        self, swap_id: str, recovery_window_days: int = 7, force: bool = False
    ) -> Optional[datetime]:
        """Schedule deletion (or delete now with ``force``); returns the deletion date."""

    @abstractmethod
    async def restore(self, swap_id: str) -> None:
        """Cancel a scheduled deletion."""

    @abstractmethod
    async def list_swap_ids(self, status: Optional[str] = None) -> list[str]:
        """Ids of live records, optionally only those in ``status``."""

    async def check_health(self) -> bool:
        return True

    async def init(self):
        pass

    async def close(self):
        pass


class SwapSecretRow(Base):
    """
    SQLite table for swap secrets.

    Keeps a few normalized columns for lookups and the full record as a
    JSON blob, so the record schema can evolve without migrations.
    """

    __tablename__ = "swap_secrets"

    swap_id = Column(String, primary_key=True)
    secret_hash = Column(String, nullable=True, index=True)
    status = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False)
    last_updated = Column(DateTime, nullable=False)

    # Soft deletion with a recovery window
    deleted_at = Column(DateTime, nullable=True)
    purge_after = Column(DateTime, nullable=True)

    secret_json = Column(Text, nullable=False)

    __table_args__ = (
        Index("idx_swap_status", "status"),
        Index("idx_purge_after", "purge_after"),
    )


class DatabaseSecretStore(SecretStore):
    """
    SQLAlchemy-backed secret store.

    Uses an async engine so store calls never block the event loop.
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or config.database_url
        self.engine = create_async_engine(
            self.database_url, echo=False, pool_pre_ping=True
        )
        self.async_session = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init(self):
        """Initialize database schema."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Secret store initialized", backend="database")

    async def close(self):
        await self.engine.dispose()

    async def _live_row(self, session: AsyncSession, swap_id: str) -> SwapSecretRow:
        row = await session.get(SwapSecretRow, swap_id)
        if row is None:
            raise SecretNotFoundError(f"No secret for swap {swap_id}")
        if row.deleted_at is not None:
            if row.purge_after is not None and row.purge_after <= _naive_utc():
                await session.delete(row)
                await session.commit()
                logger.info("Purged deleted swap secret", swap_id=swap_id)
            raise SecretNotFoundError(f"Secret for swap {swap_id} is deleted")
        return row

    async def put(self, swap_id: str, data: dict[str, Any]) -> None:
        now = _naive_utc()
        try:
            async with self.async_session() as session:
                session.add(
                    SwapSecretRow(
                        swap_id=swap_id,
                        secret_hash=data.get("hash"),
                        status=data.get("status"),
                        created_at=now,
                        last_updated=now,
                        secret_json=json.dumps(data),
                    )
                )
                await session.commit()
        except IntegrityError:
            raise SecretExistsError(f"Secret for swap {swap_id} already exists") from None
        except SQLAlchemyError as e:
            raise SecretStoreTransientError(str(e)) from e

    async def get(self, swap_id: str) -> dict[str, Any]:
        try:
            async with self.async_session() as session:
                row = await self._live_row(session, swap_id)
                return json.loads(row.secret_json)
        except SQLAlchemyError as e:
            raise SecretStoreTransientError(str(e)) from e

    async def update(self, swap_id: str, data: dict[str, Any]) -> None:
        try:
            async with self.async_session() as session:
                row = await self._live_row(session, swap_id)
                row.status = data.get("status", row.status)
                row.last_updated = _naive_utc()
                row.secret_json = json.dumps(data)
                await session.commit()
        except SQLAlchemyError as e:
            raise SecretStoreTransientError(str(e)) from e

    async def exists(self, swap_id: str) -> bool:
        try:
            await self.get(swap_id)
        except SecretNotFoundError:
            return False
        return True

    async def delete(
        self, swap_id: str, recovery_window_days: int = 7, force: bool = False
    ) -> Optional[datetime]:
        try:
            async with self.async_session() as session:
                if force:
                    result = await session.execute(
                        delete(SwapSecretRow).where(SwapSecretRow.swap_id == swap_id)
                    )
                    await session.commit()
                    if result.rowcount == 0:
                        raise SecretNotFoundError(f"No secret for swap {swap_id}")
                    return datetime.now(timezone.utc)

                row = await self._live_row(session, swap_id)
                now = datetime.now(timezone.utc)
                deletion_date = now + timedelta(days=recovery_window_days)
                row.deleted_at = _naive_utc(now)
                row.purge_after = _naive_utc(deletion_date)
                await session.commit()
                return deletion_date
        except SQLAlchemyError as e:
            raise SecretStoreTransientError(str(e)) from e

    async def restore(self, swap_id: str) -> None:
        try:
            async with self.async_session() as session:
                row = await session.get(SwapSecretRow, swap_id)
                if row is None:
                    raise SecretNotFoundError(f"No secret for swap {swap_id}")
                row.deleted_at = None
                row.purge_after = None
                await session.commit()
        except SQLAlchemyError as e:
            raise SecretStoreTransientError(str(e)) from e

    async def list_swap_ids(self, status: Optional[str] = None) -> list[str]:
        """Live swap ids, optionally filtered by status."""
        query = select(SwapSecretRow.swap_id).where(SwapSecretRow.deleted_at.is_(None))
        if status:
            query = query.where(SwapSecretRow.status == status)
        try:
            async with self.async_session() as session:
                result = await session.execute(query)
                return [row[0] for row in result]
        except SQLAlchemyError as e:
            raise SecretStoreTransientError(str(e)) from e

    async def check_health(self) -> bool:
        try:
            await self.list_swap_ids()
            return True
        except SecretStoreTransientError as e:
            logger.error("Secret store health check failed", error=str(e))
            return False


# Secrets Manager error codes that mean the request itself is wrong
_CLIENT_ERROR_CODES = {
    "ResourceNotFoundException": SecretNotFoundError,
    "ResourceExistsException": SecretExistsError,
    "AccessDeniedException": SecretAccessDeniedError,
    "ValidationException": SecretStoreClientError,
    "InvalidParameterException": SecretStoreClientError,
    "InvalidRequestException": SecretStoreClientError,
}


def classify_aws_error(error: Exception) -> Exception:
    """Map a botocore exception onto the store's error families."""
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "Unknown")
        error_class = _CLIENT_ERROR_CODES.get(code, SecretStoreTransientError)
        return error_class(f"{code}: {error}")
    return SecretStoreTransientError(str(error))


class AWSSecretsManagerStore(SecretStore):
    """
    Secret store on AWS Secrets Manager.

    boto3 is synchronous, so every call runs in the default executor.
    Secrets are named ``<prefix><swap_id>`` and tagged for auditing.
    """

    def __init__(self, settings: Optional[Config] = None, client=None):
        self.settings = settings or config
        self.prefix = self.settings.aws_secrets_prefix
        self.client = client or boto3.client(
            "secretsmanager", region_name=self.settings.aws_region
        )

    def secret_name(self, swap_id: str) -> str:
        return f"{self.prefix}{swap_id}"

    async def _call(self, method: str, **kwargs) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None, functools.partial(getattr(self.client, method), **kwargs)
            )
        except (ClientError, BotoCoreError) as e:
            raise classify_aws_error(e) from e

    async def put(self, swap_id: str, data: dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        secret_value = {**data, "version": "1.0", "storedAt": now}
        result = await self._call(
            "create_secret",
            Name=self.secret_name(swap_id),
            SecretString=json.dumps(secret_value),
            Description=f"Bitcoin HTLC swap preimage for swap {swap_id}",
            Tags=[
                {"Key": "SwapId", "Value": swap_id},
                {"Key": "Service", "Value": "bitcoin-oracle"},
                {"Key": "Environment", "Value": self.settings.bitcoin_network},
                {"Key": "CreatedAt", "Value": now},
            ],
        )
        logger.info(
            "Stored swap secret",
            swap_id=swap_id,
            secret_arn=result.get("ARN"),
            version_id=result.get("VersionId"),
        )

    async def get(self, swap_id: str) -> dict[str, Any]:
        result = await self._call("get_secret_value", SecretId=self.secret_name(swap_id))
        if not result.get("SecretString"):
            raise SecretNotFoundError(f"Secret for swap {swap_id} has no string value")
        return json.loads(result["SecretString"])

    async def update(self, swap_id: str, data: dict[str, Any]) -> None:
        await self._call(
            "put_secret_value",
            SecretId=self.secret_name(swap_id),
            SecretString=json.dumps(data),
        )

    async def exists(self, swap_id: str) -> bool:
        try:
            await self._call("describe_secret", SecretId=self.secret_name(swap_id))
        except SecretNotFoundError:
            return False
        return True

    async def delete(
        self, swap_id: str, recovery_window_days: int = 7, force: bool = False
    ) -> Optional[datetime]:
        kwargs: dict[str, Any] = {"SecretId": self.secret_name(swap_id)}
        if force:
            kwargs["ForceDeleteWithoutRecovery"] = True
        else:
            kwargs["RecoveryWindowInDays"] = recovery_window_days
        result = await self._call("delete_secret", **kwargs)
        return result.get("DeletionDate")

    async def restore(self, swap_id: str) -> None:
        await self._call("restore_secret", SecretId=self.secret_name(swap_id))

    async def list_swap_ids(self, status: Optional[str] = None) -> list[str]:
        """Swap ids under the prefix. Filtering by status reads every secret."""
        kwargs: dict[str, Any] = {
            "Filters": [{"Key": "name", "Values": [self.prefix]}],
            "MaxResults": 100,
        }
        swap_ids = []
        while True:
            result = await self._call("list_secrets", **kwargs)
            for entry in result.get("SecretList", []):
                name = entry.get("Name", "")
                if name.startswith(self.prefix):
                    swap_ids.append(name[len(self.prefix):])
            if not result.get("NextToken"):
                break
            kwargs["NextToken"] = result["NextToken"]

        if not status:
            return swap_ids
        matching = []
        for swap_id in swap_ids:
            if (await self.get(swap_id)).get("status") == status:
                matching.append(swap_id)
        return matching

    async def check_health(self) -> bool:
        try:
            await self._call("list_secrets", MaxResults=1)
            return True
        except (SecretStoreClientError, SecretStoreTransientError) as e:
            logger.error("Secrets Manager health check failed", error=str(e))
            return False


def create_secret_store(settings: Optional[Config] = None) -> SecretStore:
    """Build the backend selected by ``secret_store_backend``."""
    settings = settings or config
    if settings.secret_store_backend == "aws":
        return AWSSecretsManagerStore(settings)
    return DatabaseSecretStore(settings.database_url)
