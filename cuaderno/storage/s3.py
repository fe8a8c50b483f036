"""S3 remote adapter.

Folders are key prefixes marked by a zero-byte ``<prefix>/`` object, and a
file's id is its object key. boto3 is synchronous, so every call runs in a
worker thread.
"""

import asyncio
import logging
from datetime import datetime

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .remote import (
    AuthenticationError,
    RemoteAdapter,
    RemoteError,
    RemoteFileMetadata,
    RemoteHandle,
    RemoteNotFoundError,
)

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
AUTH_ERROR_CODES = {
    "ExpiredToken",
    "ExpiredTokenException",
    "InvalidAccessKeyId",
    "InvalidToken",
    "SignatureDoesNotMatch",
    "AccessDenied",
}


def _translate(error: Exception, what: str) -> RemoteError:
    """Map a botocore failure onto the remote error taxonomy."""
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        if code in NOT_FOUND_CODES:
            return RemoteNotFoundError(f"Not found: {what}")
        if code in AUTH_ERROR_CODES:
            return AuthenticationError(f"S3 rejected credentials ({code}) for {what}")
        return RemoteError(f"S3 error {code} for {what}: {error}")
    return RemoteError(f"S3 request failed for {what}: {error}")


class S3RemoteAdapter(RemoteAdapter):
    """Remote adapter backed by an S3 bucket (or an S3-compatible endpoint)."""

    FOLDER_MARKER_SUFFIX = "/"

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        *,
        region_name: str | None = None,
        endpoint_url: str | None = None,
        aws_access_key_id: str | None = None,
        aws_secret_access_key: str | None = None,
        client=None,
    ):
        self.s3 = client or boto3.client(
            "s3",
            aws_access_key_id=aws_access_key_id,
            aws_secret_access_key=aws_secret_access_key,
            region_name=region_name,
            endpoint_url=endpoint_url,
        )
        self.bucket = bucket
        self.prefix = prefix.strip("/")

    def _make_key(self, name: str, parent_id: str | None) -> str:
        base = parent_id if parent_id else self.prefix
        name = name.strip("/")
        return f"{base}/{name}" if base else name

    def _head(self, key: str) -> dict | None:
        try:
            return self.s3.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code", "") in NOT_FOUND_CODES:
                return None
            raise

    def _find_by_name(self, name: str, parent_id: str | None) -> RemoteHandle | None:
        key = self._make_key(name, parent_id)

        response = self._head(key)
        if response is None:
            # Folders only exist as marker objects
            response = self._head(key + self.FOLDER_MARKER_SUFFIX)
            if response is None:
                return None

        return RemoteHandle(id=key, name=name)

    def _create_folder(self, name: str, parent_id: str | None) -> str:
        key = self._make_key(name, parent_id)
        self.s3.put_object(
            Bucket=self.bucket, Key=key + self.FOLDER_MARKER_SUFFIX, Body=b""
        )
        logger.info(f"Created remote folder: {key}")
        return key

    def _put(self, key: str, content: bytes) -> None:
        self.s3.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=content,
            ContentType="application/octet-stream",
        )

    def _update_file(self, file_id: str, content: bytes) -> None:
        if self._head(file_id) is None:
            raise RemoteNotFoundError(f"File not found: {file_id}")
        self._put(file_id, content)

    def _get_file_content(self, file_id: str) -> bytes:
        response = self.s3.get_object(Bucket=self.bucket, Key=file_id)
        return response["Body"].read()

    def _delete_file(self, file_id: str) -> None:
        marker = file_id + self.FOLDER_MARKER_SUFFIX
        if self._head(marker) is None:
            self.s3.delete_object(Bucket=self.bucket, Key=file_id)
            return

        paginator = self.s3.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=marker):
            keys = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
            if keys:
                self.s3.delete_objects(Bucket=self.bucket, Delete={"Objects": keys})
        logger.info(f"Deleted remote folder: {file_id}")

    def _get_metadata(self, file_id: str) -> RemoteFileMetadata:
        response = self._head(file_id)
        if response is None:
            response = self._head(file_id + self.FOLDER_MARKER_SUFFIX)
        if response is None:
            raise RemoteNotFoundError(f"Not found: {file_id}")

        last_modified = response.get("LastModified")
        return RemoteFileMetadata(
            id=file_id,
            version=response.get("ETag", "").strip('"') or None,
            modified_time=last_modified if isinstance(last_modified, datetime) else None,
            name=file_id.rsplit("/", 1)[-1],
        )

    async def _call(self, what: str, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except RemoteError:
            raise
        except (ClientError, BotoCoreError) as e:
            error = _translate(e, what)
            logger.error(f"{error}")
            raise error from e

    async def find_by_name(
        self, name: str, parent_id: str | None = None
    ) -> RemoteHandle | None:
        return await self._call(name, self._find_by_name, name, parent_id)

    async def create_folder(self, name: str, parent_id: str | None = None) -> str:
        return await self._call(name, self._create_folder, name, parent_id)

    async def create_file(self, name: str, content: bytes, parent_id: str) -> str:
        key = self._make_key(name, parent_id)
        await self._call(key, self._put, key, content)
        logger.debug(f"Created remote file: {key} ({len(content)} bytes)")
        return key

    async def update_file(self, file_id: str, content: bytes) -> None:
        await self._call(file_id, self._update_file, file_id, content)
        logger.debug(f"Updated remote file: {file_id} ({len(content)} bytes)")

    async def get_file_content(self, file_id: str) -> bytes:
        return await self._call(file_id, self._get_file_content, file_id)

    async def delete_file(self, file_id: str) -> None:
        await self._call(file_id, self._delete_file, file_id)

    async def get_metadata(self, file_id: str) -> RemoteFileMetadata:
        return await self._call(file_id, self._get_metadata, file_id)
