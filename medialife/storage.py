# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Object Storage Adapter - Paginated listing, head, batch delete and put.

The reconciliation engine only talks to storage through StorageAdapter so
that tests can use an in-memory store; S3StorageAdapter is the aiobotocore
implementation for S3 and S3-compatible stores (R2, MinIO).
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Protocol

import structlog
from botocore.exceptions import ClientError

from medialife.config import STORAGE_BATCH_LIMIT
from medialife.exceptions import StorageOperationError, ValidationError

logger = structlog.get_logger()


@dataclass(frozen=True)
class StoredObject:
    """One listed object."""

    key: str
    size: int
    last_modified: datetime


@dataclass(frozen=True)
class ListPage:
    objects: List[StoredObject]
    next_token: str | None = None


@dataclass(frozen=True)
class DeleteFailure:
    key: str
    code: str
    message: str


@dataclass(frozen=True)
class DeleteBatchResult:
    """Per-key outcome of one DeleteObjects call."""

    deleted: List[str] = field(default_factory=list)
    errors: List[DeleteFailure] = field(default_factory=list)


class StorageAdapter(Protocol):
    """S3-compatible surface the reconciliation engine depends on."""

    async def list_objects(
        self,
        prefix: str,
        continuation_token: str | None = None,
        max_keys: int = STORAGE_BATCH_LIMIT,
    ) -> ListPage: ...

    async def head_object(self, key: str) -> StoredObject | None: ...

    async def delete_objects(self, keys: List[str]) -> DeleteBatchResult: ...

    async def put_object(
        self,
        key: str,
        body: bytes,
        content_type: str | None = None,
    ) -> None: ...


def _check_delete_batch(keys: List[str]) -> None:
    if len(keys) > STORAGE_BATCH_LIMIT:
        raise ValidationError(
            f"DeleteObjects accepts at most {STORAGE_BATCH_LIMIT} keys per call",
            details={"keys": len(keys)},
        )


class S3StorageAdapter:
    """
    StorageAdapter backed by aiobotocore.

    A client is created per call inside ``async with``, the same way the
    rest of the package treats S3 clients as short-lived resources.
    """

    def __init__(
        self,
        session: Any,
        bucket: str,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
    ):
        self.session = session
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url

    def _client(self) -> Any:
        kwargs: dict[str, Any] = {"region_name": self.region}
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url
        return self.session.create_client("s3", **kwargs)

    async def list_objects(
        self,
        prefix: str,
        continuation_token: str | None = None,
        max_keys: int = STORAGE_BATCH_LIMIT,
    ) -> ListPage:
        params: dict[str, Any] = {
            "Bucket": self.bucket,
            "Prefix": prefix,
            "MaxKeys": min(max_keys, STORAGE_BATCH_LIMIT),
        }
        if continuation_token:
            params["ContinuationToken"] = continuation_token

        try:
            async with self._client() as client:
                response = await client.list_objects_v2(**params)
        except ClientError as e:
            raise StorageOperationError(
                f"Failed to list objects under {prefix!r}",
                details={"error": str(e)},
            ) from e

        objects = [
            StoredObject(
                key=item["Key"],
                size=int(item.get("Size", 0)),
                last_modified=item["LastModified"],
            )
            for item in response.get("Contents", [])
        ]
        next_token = (
            response.get("NextContinuationToken") if response.get("IsTruncated") else None
        )
        return ListPage(objects=objects, next_token=next_token)

    async def head_object(self, key: str) -> StoredObject | None:
        try:
            async with self._client() as client:
                response = await client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if status == 404 or e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey"):
                return None
            raise StorageOperationError(
                f"Failed to head object {key!r}",
                details={"error": str(e)},
            ) from e

        return StoredObject(
            key=key,
            size=int(response.get("ContentLength", 0)),
            last_modified=response["LastModified"],
        )

    async def delete_objects(self, keys: List[str]) -> DeleteBatchResult:
        """
        Delete up to 1000 keys in one call.

        Quiet mode is off so the response names every deleted key; keys the
        store reports neither as deleted nor as an error are left for the
        caller to treat as failed.
        """
        _check_delete_batch(keys)
        if not keys:
            return DeleteBatchResult()

        async with self._client() as client:
            response = await client.delete_objects(
                Bucket=self.bucket,
                Delete={
                    "Objects": [{"Key": key} for key in keys],
                    "Quiet": False,
                },
            )

        deleted = [item["Key"] for item in response.get("Deleted", [])]
        errors = [
            DeleteFailure(
                key=item.get("Key", ""),
                code=item.get("Code", "Unknown"),
                message=item.get("Message", "Unknown error"),
            )
            for item in response.get("Errors", [])
        ]
        logger.debug("delete_batch_response", deleted=len(deleted), errors=len(errors))
        return DeleteBatchResult(deleted=deleted, errors=errors)

    async def put_object(
        self,
        key: str,
        body: bytes,
        content_type: str | None = None,
    ) -> None:
        params: dict[str, Any] = {"Bucket": self.bucket, "Key": key, "Body": body}
        if content_type:
            params["ContentType"] = content_type

        async with self._client() as client:
            await client.put_object(**params)
