"""Dataclass binding for the parts of the DMARC aggregate report schema that
are stored.

Enumerated values (policies, dispositions, results) are bound as plain
strings. They are checked by :mod:`dmarc_report_ingester.validation` so that
an unexpected value is reported as a validation failure of the respective
field instead of a parser error.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, List, Optional

__NAMESPACE__ = "http://dmarc.org/dmarc-xml/0.1"


def element(*, required: bool = False) -> Any:
    """Unqualified child element occurring at most once."""
    metadata = {"type": "Element", "namespace": ""}
    if required:
        metadata["required"] = True
    return field(default=None, metadata=metadata)


def elements() -> Any:
    """Unqualified child element occurring any number of times."""
    return field(default_factory=list, metadata={"type": "Element", "namespace": ""})


@dataclass
class DateRangeType:
    begin: Optional[int] = element(required=True)
    end: Optional[int] = element(required=True)


@dataclass
class ReportMetadataType:
    org_name: Optional[str] = element(required=True)
    email: Optional[str] = element(required=True)
    extra_contact_info: Optional[str] = element()
    report_id: Optional[str] = element(required=True)
    date_range: Optional[DateRangeType] = element(required=True)


@dataclass
class PolicyPublishedType:
    domain: Optional[str] = element(required=True)
    adkim: Optional[str] = element()
    aspf: Optional[str] = element()
    p: Optional[str] = element(required=True)
    sp: Optional[str] = element()
    pct: Optional[int] = element()


@dataclass
class PolicyEvaluatedType:
    disposition: Optional[str] = element(required=True)
    dkim: Optional[str] = element(required=True)
    spf: Optional[str] = element(required=True)


@dataclass
class RowType:
    source_ip: Optional[str] = element(required=True)
    count: Optional[int] = element(required=True)
    policy_evaluated: Optional[PolicyEvaluatedType] = element(required=True)


@dataclass
class IdentifierType:
    envelope_to: Optional[str] = element()
    envelope_from: Optional[str] = element()
    header_from: Optional[str] = element(required=True)


@dataclass
class AuthResultItem:
    """A DKIM or SPF result; only domain and result are bound."""

    domain: Optional[str] = element()
    result: Optional[str] = element()


@dataclass
class AuthResultType:
    dkim: List[AuthResultItem] = elements()
    spf: List[AuthResultItem] = elements()


@dataclass
class RecordType:
    row: Optional[RowType] = element(required=True)
    identifiers: Optional[IdentifierType] = element(required=True)
    auth_results: Optional[AuthResultType] = element()


@dataclass
class Feedback:
    class Meta:
        name = "feedback"
        namespace = "http://dmarc.org/dmarc-xml/0.1"

    version: Optional[Decimal] = element()
    report_metadata: Optional[ReportMetadataType] = element(required=True)
    policy_published: Optional[PolicyPublishedType] = element(required=True)
    record: List[RecordType] = elements()
