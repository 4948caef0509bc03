"""
S3 access for CUR exports.

Wraps boto3 behind the two capabilities the pipeline needs:

- list the period prefixes under the report root (paginated)
- get an object, optionally conditioned on "modified since T"

Two clients are kept: a metadata client with a short read timeout for
listings and manifests, and a transfer client with a long read timeout for
report parts. Automatic retries are disabled on both; a failed call surfaces
as TransferFailure and the next scrape retries naturally.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.credentials import RefreshableCredentials
from botocore.exceptions import BotoCoreError, ClientError
from botocore.session import get_session

from .config_loader import get_setting
from .exceptions import TransferFailure
from .utils import as_int, get_logger

NOT_MODIFIED_CODES = ("304", "NotModified")


@dataclass
class RemoteObject:
    """A retrieved object: streaming body plus its modification time."""

    key: str
    body: Any
    last_modified: datetime
    content_length: Optional[int] = None

    def close(self):
        close = getattr(self.body, "close", None)
        if close is not None:
            close()


class S3ReportSource:
    """Read CUR manifests and report parts from an S3 bucket."""

    def __init__(self, config: Dict):
        """Initialize the source from the ``s3`` config section.

        Args:
            config: Configuration dictionary with s3 section
        """
        self.config = config
        self.logger = get_logger("s3_source")

        self.bucket = config["s3"]["bucket"]
        self.report_name = config["s3"]["report_name"]
        self.report_prefix = get_setting(config, "s3.report_prefix", "").rstrip("/")
        self.region = get_setting(config, "s3.region") or "us-east-1"
        self.endpoint = get_setting(config, "s3.endpoint") or None
        self.role_arn = get_setting(config, "s3.role_arn") or None
        self.metadata_timeout = as_int(get_setting(config, "s3.metadata_timeout"), 10)
        self.transfer_timeout = as_int(get_setting(config, "s3.transfer_timeout"), 300)

        self._session = None
        self._metadata_client = None
        self._transfer_client = None

        self.logger.info(
            "Initialized S3 report source",
            bucket=self.bucket,
            report=self.report_name,
            endpoint=self.endpoint,
            chained_role=bool(self.role_arn),
        )

    @property
    def report_root(self) -> str:
        """Prefix that holds one sub-prefix per billing period.

        CUR writes keys under ``<prefix>/<report>/``; an empty report prefix
        yields keys starting with ``/``.
        """
        return f"{self.report_prefix}/{self.report_name}/"

    def manifest_key(self, period: str) -> str:
        return f"{self.report_root}{period}/{self.report_name}-Manifest.json"

    def _assume_role(self) -> Dict[str, str]:
        """Fetch fresh credentials for the chained role.

        Also used by botocore as the refresh callback, so clients keep
        working after the STS session expires.
        """
        sts = boto3.client("sts", region_name=self.region)
        try:
            response = sts.assume_role(RoleArn=self.role_arn, RoleSessionName="aws-cost-exporter")
        except (ClientError, BotoCoreError) as e:
            self.logger.error("Failed to assume role", role_arn=self.role_arn, error=str(e))
            raise TransferFailure(f"Failed to assume role {self.role_arn}: {e}") from e

        credentials = response["Credentials"]
        self.logger.info("Assumed chained role", role_arn=self.role_arn, expiration=str(credentials["Expiration"]))
        return {
            "access_key": credentials["AccessKeyId"],
            "secret_key": credentials["SecretAccessKey"],
            "token": credentials["SessionToken"],
            "expiry_time": credentials["Expiration"].isoformat(),
        }

    @property
    def session(self) -> boto3.Session:
        """Lazy-load the boto3 session; with a chained role its credentials refresh themselves."""
        if self._session is None:
            if self.role_arn:
                credentials = RefreshableCredentials.create_from_metadata(
                    metadata=self._assume_role(),
                    refresh_using=self._assume_role,
                    method="sts-assume-role",
                )
                botocore_session = get_session()
                botocore_session._credentials = credentials
                self._session = boto3.Session(botocore_session=botocore_session, region_name=self.region)
            else:
                self._session = boto3.Session(region_name=self.region)
        return self._session

    def _make_client(self, read_timeout: int):
        boto_config = Config(
            connect_timeout=self.metadata_timeout,
            read_timeout=read_timeout,
            retries={"mode": "standard", "total_max_attempts": 1},
        )
        client = self.session.client(
            "s3",
            region_name=self.region,
            endpoint_url=self.endpoint,
            config=boto_config,
        )
        self.logger.debug("S3 client created", endpoint=self.endpoint, read_timeout=read_timeout)
        return client

    @property
    def metadata_client(self):
        """Lazy-load the short-timeout client."""
        if self._metadata_client is None:
            self._metadata_client = self._make_client(self.metadata_timeout)
        return self._metadata_client

    @property
    def transfer_client(self):
        """Lazy-load the long-timeout client."""
        if self._transfer_client is None:
            self._transfer_client = self._make_client(self.transfer_timeout)
        return self._transfer_client

    def list_prefixes(self, prefix: Optional[str] = None) -> List[str]:
        """List the immediate sub-prefixes of ``prefix`` (default: report root).

        Returns:
            Sub-prefix names relative to ``prefix`` without trailing slash
        """
        prefix = self.report_root if prefix is None else prefix
        paginator = self.metadata_client.get_paginator("list_objects_v2")

        names = []
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix, Delimiter="/"):
                for entry in page.get("CommonPrefixes", []):
                    name = entry["Prefix"]
                    if name.startswith(prefix):
                        name = name[len(prefix):]
                    names.append(name.rstrip("/"))
        except (ClientError, BotoCoreError) as e:
            self.logger.error("Failed to list prefixes", bucket=self.bucket, prefix=prefix, error=str(e))
            raise TransferFailure(f"Failed to list s3://{self.bucket}/{prefix}: {e}") from e

        self.logger.debug("Listed prefixes", bucket=self.bucket, prefix=prefix, count=len(names))
        return names

    def get_object_if_modified(self, key: str, since: Optional[datetime] = None) -> Optional[RemoteObject]:
        """Get an object from the configured bucket unless unchanged since ``since``.

        Returns:
            RemoteObject, or None when the object was not modified
        """
        params = {"Bucket": self.bucket, "Key": key}
        if since is not None:
            params["IfModifiedSince"] = since

        try:
            response = self.metadata_client.get_object(**params)
        except ClientError as e:
            error = e.response.get("Error", {})
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if error.get("Code") in NOT_MODIFIED_CODES or status == 304:
                self.logger.debug("Object not modified", key=key, since=since)
                return None
            self.logger.error("Failed to get object", bucket=self.bucket, key=key, error=str(e))
            raise TransferFailure(f"Failed to get s3://{self.bucket}/{key}: {e}") from e
        except BotoCoreError as e:
            self.logger.error("Failed to get object", bucket=self.bucket, key=key, error=str(e))
            raise TransferFailure(f"Failed to get s3://{self.bucket}/{key}: {e}") from e

        return RemoteObject(
            key=key,
            body=response["Body"],
            last_modified=response["LastModified"],
            content_length=response.get("ContentLength"),
        )

    def open_object(self, bucket: str, key: str) -> RemoteObject:
        """Open a report part for streaming with the long-timeout client."""
        try:
            response = self.transfer_client.get_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            self.logger.error("Failed to open report part", bucket=bucket, key=key, error=str(e))
            raise TransferFailure(f"Failed to get s3://{bucket}/{key}: {e}") from e

        return RemoteObject(
            key=key,
            body=response["Body"],
            last_modified=response.get("LastModified"),
            content_length=response.get("ContentLength"),
        )
