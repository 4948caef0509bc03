"""CUR report manifests and the conditional fetch guard.

Every scrape checks the newest period's manifest with a conditional GET
keyed on the period's watermark. An unchanged manifest costs one metadata
round trip and no body transfer.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .billing_period import BillingPeriod
from .exceptions import UntrustedManifest
from .utils import get_logger

EXPECTED_CONTENT_TYPE = "text/csv"
SUPPORTED_COMPRESSION = ("GZIP", "")

logger = get_logger("manifest")


@dataclass
class ReportManifest:
    """One fetched instance of a period's report."""

    assembly_id: str
    content_type: str
    bucket: str
    report_keys: List[str]
    billing_period_start: str = ""
    billing_period_end: str = ""
    compression: str = ""
    columns: List[Dict] = field(default_factory=list)

    @classmethod
    def from_json(cls, content) -> "ReportManifest":
        """Parse manifest JSON.

        Raises:
            UntrustedManifest: If the document is not a manifest
        """
        if isinstance(content, bytes):
            content = content.decode("utf-8")

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise UntrustedManifest(f"Report manifest is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise UntrustedManifest("Report manifest must be a JSON object")

        billing = data.get("billingPeriod") or {}
        report_keys = data.get("reportKeys") or []
        if not isinstance(report_keys, list):
            raise UntrustedManifest("Report manifest reportKeys must be a list")

        return cls(
            assembly_id=str(data.get("assemblyId") or ""),
            content_type=data.get("contentType") or "",
            bucket=data.get("bucket") or "",
            report_keys=[str(key) for key in report_keys],
            billing_period_start=billing.get("start") or "",
            billing_period_end=billing.get("end") or "",
            compression=data.get("compression") or "",
            columns=data.get("columns") or [],
        )

    @property
    def is_compressed(self) -> bool:
        return self.compression.upper() == "GZIP"

    def validate(self, bucket: str, period: Optional[BillingPeriod] = None):
        """Check that the manifest is safe to ingest.

        Raises:
            UntrustedManifest: On content type, compression, bucket, part
                list or billing period mismatch
        """
        if self.content_type != EXPECTED_CONTENT_TYPE:
            raise UntrustedManifest(f"Report manifest contains unknown content type: {self.content_type}")

        if self.compression.upper() not in SUPPORTED_COMPRESSION:
            raise UntrustedManifest(f"Report manifest uses unsupported compression: {self.compression}")

        if self.bucket != bucket:
            raise UntrustedManifest(f"Report manifest contains unexpected bucket name: {self.bucket}")

        if not self.report_keys:
            raise UntrustedManifest("Report manifest contains no report keys")

        if not self.assembly_id:
            raise UntrustedManifest("Report manifest has no assembly id")

        if period is not None and self.billing_period_start:
            start = self.billing_period_start[:8]
            try:
                manifest_start = datetime.strptime(start, "%Y%m%d").date()
            except ValueError as e:
                raise UntrustedManifest(
                    f"Report manifest has unparsable billing period start: {self.billing_period_start}"
                ) from e
            if manifest_start != period.start:
                raise UntrustedManifest(
                    f"Report manifest billing period {self.billing_period_start} does not match {period}"
                )


def fetch_manifest_if_changed(
    source, period: BillingPeriod, watermark: Optional[datetime]
) -> Tuple[Optional[ReportManifest], Optional[datetime]]:
    """Fetch and validate the period's manifest if it changed since ``watermark``.

    Args:
        source: S3ReportSource (or anything with the same interface)
        period: Billing period to check
        watermark: Last observed modification time, or None if never seen

    Returns:
        (manifest, new_watermark); manifest is None and the watermark is
        returned untouched when the remote object has not changed
    """
    key = source.manifest_key(str(period))
    logger.debug("Checking report manifest", period=str(period), key=key, watermark=watermark)

    obj = source.get_object_if_modified(key, since=watermark)
    if obj is None:
        return None, watermark

    try:
        if watermark is not None and obj.last_modified <= watermark:
            logger.debug("Report manifest not newer than watermark", period=str(period))
            return None, watermark

        manifest = ReportManifest.from_json(obj.body.read())
    finally:
        obj.close()

    manifest.validate(source.bucket, period)

    new_watermark = obj.last_modified if watermark is None else max(watermark, obj.last_modified)
    logger.info(
        "Report manifest changed",
        period=str(period),
        assembly_id=manifest.assembly_id,
        parts=len(manifest.report_keys),
        last_modified=new_watermark.isoformat(),
    )
    return manifest, new_watermark
