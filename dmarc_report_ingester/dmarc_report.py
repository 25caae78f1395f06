from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple


class Disposition(Enum):
    NONE_VALUE = "none"
    QUARANTINE = "quarantine"
    REJECT = "reject"


class AuthResult(Enum):
    PASS_VALUE = "pass"
    FAIL = "fail"


class Alignment(Enum):
    RELAXED = "r"
    STRICT = "s"


@dataclass(frozen=True)
class ReportData:
    report_id: str
    org_name: str
    email: str
    domain: str
    begin: datetime
    end: datetime
    policy: Disposition
    subdomain_policy: Optional[Disposition] = None
    percentage: Optional[int] = None
    adkim: Optional[Alignment] = None
    aspf: Optional[Alignment] = None
    extra_contact_info: Optional[str] = None


@dataclass(frozen=True)
class RecordData:
    source_ip: str
    count: int
    disposition: Disposition
    dkim: AuthResult
    spf: AuthResult
    header_from: str


@dataclass(frozen=True)
class ParsedReport:
    report: ReportData
    records: Tuple[RecordData, ...]

    @property
    def total_messages(self) -> int:
        return sum(record.count for record in self.records)
