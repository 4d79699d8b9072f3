"""S3-compatible object storage backend."""

import tempfile
from typing import BinaryIO, List, Optional

import aioboto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, ConnectTimeoutError, EndpointConnectionError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from .._utils import logger
from ..config import StorageConfig
from .base import BaseStorageBackend, StorageError, StorageInfo, StorageKeyNotFoundError

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
DOWNLOAD_CHUNK_SIZE = 1024 * 1024
# Downloads spill to disk past this size
SPOOL_MAX_SIZE = 8 * 1024 * 1024


def _normalize_key(key: str) -> str:
    return key.lstrip("/").replace("\\", "/")


def _is_not_found(error: ClientError) -> bool:
    return str(error.response.get("Error", {}).get("Code", "")) in NOT_FOUND_CODES


class S3Storage(BaseStorageBackend):
    """Storage backend on top of an S3 bucket via aioboto3."""

    name = "s3"

    def __init__(
        self,
        bucket: str,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        force_path_style: bool = False,
        multipart_chunksize: int = 5 * 1024 * 1024,
        max_concurrency: int = 5,
    ):
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self.session = aioboto3.Session(
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=region,
        )
        self.client_config = BotoConfig(
            s3={"addressing_style": "path" if force_path_style else "auto"}
        )
        self.transfer_config = TransferConfig(
            multipart_threshold=multipart_chunksize,
            multipart_chunksize=multipart_chunksize,
            max_concurrency=max_concurrency,
        )

    @classmethod
    def from_config(cls, config: StorageConfig) -> 'S3Storage':
        return cls(
            bucket=config.s3_bucket,
            region=config.s3_region,
            endpoint_url=config.s3_endpoint,
            access_key_id=config.s3_access_key_id,
            secret_access_key=config.s3_secret_access_key,
            force_path_style=config.s3_force_path_style,
            multipart_chunksize=config.s3_multipart_chunksize,
            max_concurrency=config.s3_max_concurrency,
        )

    def _client(self):
        return self.session.client(
            "s3",
            region_name=self.region,
            endpoint_url=self.endpoint_url,
            config=self.client_config,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((EndpointConnectionError, ConnectTimeoutError)),
        reraise=True,
    )
    async def check_bucket(self) -> None:
        """Verify the bucket is reachable.

        Raises:
            StorageError: If the bucket does not exist or access is denied
        """
        async with self._client() as s3:
            try:
                await s3.head_bucket(Bucket=self.bucket)
            except ClientError as e:
                raise StorageError(f"S3 bucket {self.bucket} is not accessible: {e}") from e
        logger.info(f"Connected to S3 bucket {self.bucket}")

    async def put(self, key: str, reader: BinaryIO) -> None:
        key = _normalize_key(key)
        async with self._client() as s3:
            await s3.upload_fileobj(reader, self.bucket, key, Config=self.transfer_config)
        logger.debug(f"Uploaded s3://{self.bucket}/{key}")

    async def get(self, key: str) -> BinaryIO:
        key = _normalize_key(key)
        buffer = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE)
        try:
            async with self._client() as s3:
                try:
                    response = await s3.get_object(Bucket=self.bucket, Key=key)
                except ClientError as e:
                    if _is_not_found(e):
                        raise StorageKeyNotFoundError(key) from e
                    raise
                async with response["Body"] as stream:
                    while True:
                        chunk = await stream.read(DOWNLOAD_CHUNK_SIZE)
                        if not chunk:
                            break
                        buffer.write(chunk)
        except BaseException:
            buffer.close()
            raise
        buffer.seek(0)
        return buffer

    async def delete(self, key: str) -> None:
        key = _normalize_key(key)
        async with self._client() as s3:
            # DeleteObject succeeds for missing keys
            await s3.delete_object(Bucket=self.bucket, Key=key)

    async def list(self, prefix: str) -> List[str]:
        return [info.key for info in await self.list_with_info(prefix)]

    async def list_with_info(self, prefix: str) -> List[StorageInfo]:
        prefix = _normalize_key(prefix)
        infos = []
        async with self._client() as s3:
            paginator = s3.get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    infos.append(StorageInfo(
                        key=obj["Key"],
                        size=obj.get("Size", 0),
                        last_modified=obj.get("LastModified"),
                    ))
        return infos

    async def exists(self, key: str) -> bool:
        key = _normalize_key(key)
        async with self._client() as s3:
            try:
                await s3.head_object(Bucket=self.bucket, Key=key)
                return True
            except ClientError as e:
                if _is_not_found(e):
                    return False
                raise

    async def copy(self, src_key: str, dst_key: str) -> None:
        src_key = _normalize_key(src_key)
        dst_key = _normalize_key(dst_key)
        async with self._client() as s3:
            try:
                await s3.copy_object(
                    Bucket=self.bucket,
                    Key=dst_key,
                    CopySource={"Bucket": self.bucket, "Key": src_key},
                )
            except ClientError as e:
                if _is_not_found(e):
                    raise StorageKeyNotFoundError(src_key) from e
                raise

    async def get_info(self, key: str) -> StorageInfo:
        key = _normalize_key(key)
        async with self._client() as s3:
            try:
                response = await s3.head_object(Bucket=self.bucket, Key=key)
            except ClientError as e:
                if _is_not_found(e):
                    raise StorageKeyNotFoundError(key) from e
                raise
        return StorageInfo(
            key=key,
            size=response.get("ContentLength", 0),
            last_modified=response.get("LastModified"),
        )
