import ipaddress
import re
import time
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

import structlog

from dmarc_report_ingester.dmarc_report import Alignment, AuthResult, Disposition
from dmarc_report_ingester.errors import EmptyReport, ValidationFailed
from dmarc_report_ingester.model.dmarc_aggregate_report import (
    DateRangeType,
    Feedback,
    PolicyPublishedType,
    RecordType,
    ReportMetadataType,
)

logger = structlog.get_logger()

MAX_DOMAIN_LENGTH = 253
MAX_REPORT_AGE_SECONDS = 365 * 24 * 60 * 60
MAX_REPORT_END_AHEAD_SECONDS = 7 * 24 * 60 * 60
# Largest value the INTEGER column of a record count can hold.
MAX_COUNT = 2**63 - 1

_DOMAIN_LABEL = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")
_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

DISPOSITIONS = frozenset(d.value for d in Disposition)
AUTH_RESULTS = frozenset(r.value for r in AuthResult)
ALIGNMENTS = frozenset(a.value for a in Alignment)


def is_valid_domain(domain: Optional[str]) -> bool:
    if not domain or len(domain) > MAX_DOMAIN_LENGTH:
        return False
    return all(_DOMAIN_LABEL.match(label) for label in domain.split("."))


def is_valid_ip_address(address: Optional[str]) -> bool:
    if not address:
        return False
    try:
        ipaddress.ip_address(address)
    except ValueError:
        return False
    return True


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and _EMAIL.match(email) is not None


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_blank(value: Optional[str]) -> bool:
    return value is None or value.strip() == ""


def validate_org_name(org_name: Optional[str]):
    if _is_blank(org_name):
        raise ValidationFailed("org_name", "organization name is required")


def validate_contact_email(email: Optional[str]):
    if not is_valid_email(email):
        raise ValidationFailed(
            "email", f"valid contact email is required, got {email!r}"
        )


def validate_report_id(report_id: Optional[str]):
    if _is_blank(report_id):
        raise ValidationFailed("report_id", "report ID is required")


def validate_date_range(
    date_range: Optional[DateRangeType], *, now: Callable[[], float] = time.time
):
    if date_range is None or date_range.begin is None or date_range.end is None:
        raise ValidationFailed("date_range", "begin and end are required")
    if not _is_int(date_range.begin) or not _is_int(date_range.end):
        raise ValidationFailed(
            "date_range",
            f"begin and end must be epoch seconds, got "
            f"{date_range.begin!r} and {date_range.end!r}",
        )
    if date_range.begin >= date_range.end:
        raise ValidationFailed(
            "date_range",
            f"begin ({date_range.begin}) must be before end ({date_range.end})",
        )
    try:
        begin = datetime.fromtimestamp(date_range.begin, timezone.utc)
        end = datetime.fromtimestamp(date_range.end, timezone.utc)
    except (ValueError, OverflowError, OSError) as err:
        raise ValidationFailed(
            "date_range",
            f"begin and end must be representable timestamps, got "
            f"{date_range.begin!r} and {date_range.end!r}",
        ) from err

    current_time = now()
    if (
        date_range.begin < current_time - MAX_REPORT_AGE_SECONDS
        or date_range.end > current_time + MAX_REPORT_END_AHEAD_SECONDS
    ):
        logger.warning(
            "Report date range seems unusual.",
            begin=begin.isoformat(),
            end=end.isoformat(),
        )


def validate_report_metadata(
    metadata: ReportMetadataType, *, now: Callable[[], float] = time.time
):
    validate_org_name(metadata.org_name)
    validate_contact_email(metadata.email)
    validate_report_id(metadata.report_id)
    validate_date_range(metadata.date_range, now=now)


def validate_domain(domain: Optional[str], field: str = "domain"):
    if not is_valid_domain(domain):
        raise ValidationFailed(field, f"invalid domain {domain!r}")


def validate_policy_published(policy: PolicyPublishedType):
    validate_domain(policy.domain)
    if policy.p not in DISPOSITIONS:
        raise ValidationFailed(
            "p",
            f"invalid policy {policy.p!r}, must be one of {sorted(DISPOSITIONS)}",
        )
    if policy.sp is not None and policy.sp not in DISPOSITIONS:
        raise ValidationFailed(
            "sp",
            f"invalid subdomain policy {policy.sp!r}, "
            f"must be one of {sorted(DISPOSITIONS)}",
        )
    if policy.pct is not None and not (_is_int(policy.pct) and 0 <= policy.pct <= 100):
        raise ValidationFailed(
            "pct", f"percentage must be between 0 and 100, got {policy.pct!r}"
        )
    for name in ("adkim", "aspf"):
        value = getattr(policy, name)
        if value is not None and value not in ALIGNMENTS:
            raise ValidationFailed(name, f"invalid alignment mode {value!r}")


def validate_record(record: RecordType, index: int = 0):
    row = record.row
    identifiers = record.identifiers
    # Presence of row and identifiers is a structural property checked while
    # decoding.
    assert row is not None and identifiers is not None

    def fail(field: str, message: str):
        raise ValidationFailed(f"record[{index}].{field}", message)

    if not is_valid_ip_address(row.source_ip):
        fail("source_ip", f"invalid source IP {row.source_ip!r}")
    if not _is_int(row.count) or row.count <= 0:
        fail("count", f"count must be a positive integer, got {row.count!r}")
    if row.count > MAX_COUNT:
        fail("count", f"count must not exceed {MAX_COUNT}, got {row.count!r}")

    evaluated = row.policy_evaluated
    if evaluated is None:
        fail("policy_evaluated", "evaluated policy is required")
    if evaluated.disposition not in DISPOSITIONS:
        fail("disposition", f"invalid disposition {evaluated.disposition!r}")
    if evaluated.dkim not in AUTH_RESULTS:
        fail("dkim", f"invalid DKIM result {evaluated.dkim!r}")
    if evaluated.spf not in AUTH_RESULTS:
        fail("spf", f"invalid SPF result {evaluated.spf!r}")

    if not is_valid_domain(identifiers.header_from):
        fail("header_from", f"invalid header from domain {identifiers.header_from!r}")


def validate_records(records: Sequence[RecordType]):
    if len(records) == 0:
        raise EmptyReport()
    for index, record in enumerate(records):
        validate_record(record, index)


def validate_feedback(feedback: Feedback, *, now: Callable[[], float] = time.time):
    """Apply all validation rules to a structurally complete report.

    Raises :class:`ValidationFailed` for the first rule that does not hold and
    :class:`EmptyReport` if the report has no records.
    """
    assert feedback.report_metadata is not None
    assert feedback.policy_published is not None
    validate_report_metadata(feedback.report_metadata, now=now)
    validate_policy_published(feedback.policy_published)
    validate_records(feedback.record)
