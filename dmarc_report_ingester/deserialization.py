import gzip
import time
import zlib
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog
from xsdata.exceptions import ParserError
from xsdata.formats.dataclass.context import XmlContext
from xsdata.formats.dataclass.parsers.config import ParserConfig
from xsdata.formats.dataclass.parsers.xml import XmlParser

from dmarc_report_ingester.dmarc_report import (
    Alignment,
    AuthResult,
    Disposition,
    ParsedReport,
    RecordData,
    ReportData,
)
from dmarc_report_ingester.errors import MalformedReport, UnsupportedFormat
from dmarc_report_ingester.model.dmarc_aggregate_report import Feedback, RecordType
from dmarc_report_ingester.validation import validate_feedback

logger = structlog.get_logger()

GZIP_MAGIC = b"\x1f\x8b"
ZIP_MAGIC = b"PK"

_xml_context = XmlContext()


def decompress(content: bytes) -> bytes:
    if content[:2] == GZIP_MAGIC:
        logger.debug("Decompressing gzipped report.", compressed_size=len(content))
        try:
            return gzip.decompress(content)
        except (OSError, EOFError, zlib.error) as err:
            raise MalformedReport(f"Failed to decompress gzip content: {err}") from err
    if content[:2] == ZIP_MAGIC:
        raise UnsupportedFormat(
            "ZIP attachments are not supported, extract the XML report manually."
        )
    return content


def parse_feedback(xml: bytes) -> Feedback:
    parser = XmlParser(
        context=_xml_context, config=ParserConfig(fail_on_unknown_properties=False)
    )
    try:
        feedback = parser.from_bytes(xml, Feedback)
    except (SyntaxError, ParserError, ValueError, TypeError) as err:
        raise MalformedReport(f"Failed to parse DMARC XML: {err}") from err

    if feedback.report_metadata is None:
        raise MalformedReport("Invalid DMARC XML: missing report_metadata.")
    if feedback.policy_published is None:
        raise MalformedReport("Invalid DMARC XML: missing policy_published.")
    for index, record in enumerate(feedback.record):
        if record.row is None or record.identifiers is None:
            raise MalformedReport(
                f"Invalid DMARC XML: record {index} lacks row or identifiers."
            )
    return feedback


def _from_epoch(timestamp: int) -> datetime:
    return datetime.fromtimestamp(timestamp, timezone.utc)


def _optional_disposition(value: Optional[str]) -> Optional[Disposition]:
    return Disposition(value) if value is not None else None


def _optional_alignment(value: Optional[str]) -> Optional[Alignment]:
    return Alignment(value) if value is not None else None


def _convert_record(record: RecordType) -> RecordData:
    row, identifiers = record.row, record.identifiers
    assert row and row.policy_evaluated and identifiers
    return RecordData(
        source_ip=str(row.source_ip),
        count=int(row.count or 0),
        disposition=Disposition(row.policy_evaluated.disposition),
        dkim=AuthResult(row.policy_evaluated.dkim),
        spf=AuthResult(row.policy_evaluated.spf),
        header_from=str(identifiers.header_from),
    )


def convert_to_parsed_report(feedback: Feedback) -> ParsedReport:
    """Project a validated report onto the flat shape that is persisted."""
    metadata, policy = feedback.report_metadata, feedback.policy_published
    assert metadata and metadata.date_range and policy
    report = ReportData(
        report_id=str(metadata.report_id).strip(),
        org_name=str(metadata.org_name).strip(),
        email=str(metadata.email),
        extra_contact_info=metadata.extra_contact_info,
        domain=str(policy.domain),
        begin=_from_epoch(int(metadata.date_range.begin or 0)),
        end=_from_epoch(int(metadata.date_range.end or 0)),
        policy=Disposition(policy.p),
        subdomain_policy=_optional_disposition(policy.sp),
        percentage=policy.pct,
        adkim=_optional_alignment(policy.adkim),
        aspf=_optional_alignment(policy.aspf),
    )
    return ParsedReport(
        report=report,
        records=tuple(_convert_record(record) for record in feedback.record),
    )


def decode_report(
    content: bytes, *, now: Callable[[], float] = time.time
) -> ParsedReport:
    """Turn raw attachment bytes into a validated, normalized report.

    Raises:
        UnsupportedFormat: The attachment is a ZIP archive.
        MalformedReport: The content is not a structurally complete DMARC
            aggregate report (:class:`EmptyReport` if it has no records).
        ValidationFailed: One of the validation rules does not hold.
    """
    feedback = parse_feedback(decompress(content))
    validate_feedback(feedback, now=now)
    parsed = convert_to_parsed_report(feedback)
    logger.debug(
        "Decoded DMARC report.",
        report_id=parsed.report.report_id,
        domain=parsed.report.domain,
        org_name=parsed.report.org_name,
        num_records=len(parsed.records),
    )
    return parsed
