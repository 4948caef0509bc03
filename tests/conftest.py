"""
Shared pytest fixtures for all tests.

Provides an in-memory S3 client, CUR report builders and a configuration
rooted in a temporary directory.
"""

import csv
import gzip
import io
import json
from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError

from aws_cost_exporter.metrics import AggregationDefinition, CostMetrics
from aws_cost_exporter.report_store import ReportStore
from aws_cost_exporter.s3_source import S3ReportSource
from aws_cost_exporter.state import ExporterState, StateStore

BUCKET = "billing-bucket"
REPORT = "cur"

CUR_HEADER = [
    "identity/LineItemId",
    "bill/BillingPeriodStartDate",
    "bill/BillingPeriodEndDate",
    "lineItem/UsageAccountId",
    "lineItem/LineItemType",
    "lineItem/ProductCode",
    "lineItem/UsageType",
    "lineItem/Operation",
    "lineItem/UsageAmount",
    "lineItem/CurrencyCode",
    "lineItem/UnblendedCost",
    "product/ProductName",
    "pricing/unit",
]


def ts(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def cur_row(product="Amazon Elastic Compute Cloud", operation="RunInstances", usage_type="BoxUsage:m5.large",
            amount="24", cost="2.304", account="123456789012", item_type="Usage", unit="Hrs", currency="USD"):
    """One CUR line item keyed by CUR header name."""
    return {
        "identity/LineItemId": "li-1",
        "bill/BillingPeriodStartDate": "2024-01-01T00:00:00Z",
        "bill/BillingPeriodEndDate": "2024-02-01T00:00:00Z",
        "lineItem/UsageAccountId": account,
        "lineItem/LineItemType": item_type,
        "lineItem/ProductCode": "AmazonEC2",
        "lineItem/UsageType": usage_type,
        "lineItem/Operation": operation,
        "lineItem/UsageAmount": amount,
        "lineItem/CurrencyCode": currency,
        "lineItem/UnblendedCost": cost,
        "product/ProductName": product,
        "pricing/unit": unit,
    }


def make_report(rows, header=None, compress=True) -> bytes:
    """Render CUR rows as (gzipped) CSV with the given header order."""
    header = header or CUR_HEADER
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(header)
    for row in rows:
        writer.writerow([row.get(name, "") for name in header])
    data = buffer.getvalue().encode("utf-8")
    return gzip.compress(data) if compress else data


def make_manifest(period, keys, assembly_id="asm-1", bucket=BUCKET, content_type="text/csv",
                  compression="GZIP") -> bytes:
    start, end = period.split("-")[0], period.split("-")[1]
    if len(period) > 17:
        start, end = period[:10].replace("-", ""), period[11:].replace("-", "")
    return json.dumps(
        {
            "assemblyId": assembly_id,
            "account": "123456789012",
            "compression": compression,
            "contentType": content_type,
            "reportName": REPORT,
            "billingPeriod": {"start": f"{start}T000000.000Z", "end": f"{end}T000000.000Z"},
            "bucket": bucket,
            "reportKeys": list(keys),
        }
    ).encode("utf-8")


class FakeS3Client:
    """Minimal in-memory stand-in for a boto3 S3 client."""

    def __init__(self):
        self.objects = {}
        self.get_calls = []
        self.transfers = []
        self.list_calls = 0

    def put(self, key, data, last_modified):
        self.objects[key] = (data, last_modified)

    def get_object(self, Bucket, Key, IfModifiedSince=None):
        self.get_calls.append((Key, IfModifiedSince))
        if Key not in self.objects:
            raise ClientError(
                {"Error": {"Code": "NoSuchKey", "Message": "Not Found"}, "ResponseMetadata": {"HTTPStatusCode": 404}},
                "GetObject",
            )
        data, last_modified = self.objects[Key]
        if IfModifiedSince is not None and last_modified <= IfModifiedSince:
            raise ClientError(
                {"Error": {"Code": "304", "Message": "Not Modified"}, "ResponseMetadata": {"HTTPStatusCode": 304}},
                "GetObject",
            )
        self.transfers.append(Key)
        body = data() if callable(data) else io.BytesIO(data)
        return {"Body": body, "LastModified": last_modified, "ContentLength": 0}

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        return self

    def paginate(self, Bucket, Prefix, Delimiter="/"):
        self.list_calls += 1
        prefixes = sorted(
            {Prefix + key[len(Prefix):].split(Delimiter)[0] + Delimiter
             for key in self.objects
             if key.startswith(Prefix) and Delimiter in key[len(Prefix):]}
        )
        # Two pages to exercise pagination
        half = len(prefixes) // 2
        yield {"CommonPrefixes": [{"Prefix": p} for p in prefixes[:half]]}
        yield {"CommonPrefixes": [{"Prefix": p} for p in prefixes[half:]]}


class FakeBucket:
    """Helper to publish CUR reports into a FakeS3Client."""

    def __init__(self, client: FakeS3Client, report_root: str):
        self.client = client
        self.root = report_root

    def manifest_key(self, period):
        return f"{self.root}{period}/{REPORT}-Manifest.json"

    def publish(self, period, parts, last_modified, assembly_id="asm-1", **manifest_kwargs):
        keys = []
        for idx, data in enumerate(parts):
            key = f"{self.root}{period}/{assembly_id}/{REPORT}-{idx + 1}.csv.gz"
            self.client.put(key, data, last_modified)
            keys.append(key)
        self.client.put(
            self.manifest_key(period),
            make_manifest(period, keys, assembly_id=assembly_id, **manifest_kwargs),
            last_modified,
        )
        return keys


@pytest.fixture
def standard_config(tmp_path):
    """Standard configuration for all tests."""
    queries = tmp_path / "queries"
    queries.mkdir()
    return {
        "s3": {
            "bucket": BUCKET,
            "report_name": REPORT,
            "report_prefix": "",
            "region": "us-east-1",
            "metadata_timeout": 5,
            "transfer_timeout": 60,
        },
        "storage": {
            "repository_path": str(tmp_path / "repository"),
            "state_path": str(tmp_path / "state.json"),
            "queries_path": str(queries),
        },
        "periods": {"retained": 3, "past_due_grace_hours": 0},
        "ingest": {"chunk_size": 2},
        "web": {"serve_stale_on_error": False},
    }


@pytest.fixture
def fake_client():
    return FakeS3Client()


@pytest.fixture
def source(standard_config, fake_client):
    src = S3ReportSource(standard_config)
    src._metadata_client = fake_client
    src._transfer_client = fake_client
    return src


@pytest.fixture
def bucket(fake_client, source):
    return FakeBucket(fake_client, source.report_root)


@pytest.fixture
def store(standard_config):
    return ReportStore(standard_config)


@pytest.fixture
def state_store(standard_config):
    return StateStore(standard_config)


@pytest.fixture
def empty_state():
    return ExporterState()


@pytest.fixture
def cost_definition():
    return AggregationDefinition.from_dict(
        {
            "name": "common",
            "where": [{"column": "cost", "op": ">", "value": 0}],
            "group_by": {"period": "period", "product": "product", "usage_type": "usage_type"},
            "values": {
                "amount": {"column": "usage_amount", "function": "sum"},
                "cost": {"column": "cost", "function": "sum", "help": "Unblended cost"},
            },
        }
    )


@pytest.fixture
def metrics(cost_definition):
    return CostMetrics(definitions=[cost_definition])
