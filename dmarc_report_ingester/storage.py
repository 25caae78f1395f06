import enum
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

import structlog
from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
    select,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
    selectinload,
)

from dmarc_report_ingester.dmarc_report import RecordData, ReportData
from dmarc_report_ingester.errors import DuplicateReportId, PersistenceFailure

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ProcessingStatus(enum.Enum):
    STARTED = "started"
    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"


class StoredReport(Base):
    __tablename__ = "reports"

    id: Mapped[int] = mapped_column(primary_key=True)
    report_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    domain: Mapped[str] = mapped_column(String(253), nullable=False, index=True)
    org_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    extra_contact_info: Mapped[Optional[str]] = mapped_column(Text)
    start_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    end_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    policy: Mapped[str] = mapped_column(String(16), nullable=False)
    subdomain_policy: Mapped[Optional[str]] = mapped_column(String(16))
    percentage: Mapped[Optional[int]] = mapped_column(Integer)
    adkim: Mapped[Optional[str]] = mapped_column(String(1))
    aspf: Mapped[Optional[str]] = mapped_column(String(1))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    records: Mapped[List["StoredRecord"]] = relationship(
        back_populates="report",
        cascade="all, delete-orphan",
        order_by="StoredRecord.id",
    )

    def __repr__(self) -> str:
        return f"<StoredReport {self.report_id} domain={self.domain}>"


class StoredRecord(Base):
    __tablename__ = "records"

    id: Mapped[int] = mapped_column(primary_key=True)
    report_pk: Mapped[int] = mapped_column(
        ForeignKey("reports.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source_ip: Mapped[str] = mapped_column(String(45), nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False)
    disposition: Mapped[str] = mapped_column(String(16), nullable=False)
    dkim: Mapped[str] = mapped_column(String(8), nullable=False)
    spf: Mapped[str] = mapped_column(String(8), nullable=False)
    header_from: Mapped[str] = mapped_column(String(253), nullable=False)

    report: Mapped[StoredReport] = relationship(back_populates="records")


class ProcessingLogEntry(Base):
    __tablename__ = "processing_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    message_uid: Mapped[Optional[int]] = mapped_column(Integer)
    attachment_name: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[ProcessingStatus] = mapped_column(
        Enum(
            ProcessingStatus,
            values_callable=lambda statuses: [s.value for s in statuses],
            native_enum=False,
        ),
        nullable=False,
    )
    details: Mapped[Optional[str]] = mapped_column(Text)
    report_pk: Mapped[Optional[int]] = mapped_column(
        ForeignKey("reports.id", ondelete="SET NULL")
    )


class ReportStore:
    """Persistence of DMARC reports and the processing log.

    ``report_id`` is unique among stored reports. A report and its records are
    written in a single transaction, so either all of them or none are
    stored.
    """

    def __init__(self, database_url: str, *, echo: bool = False):
        self.database_url = database_url
        self._engine: AsyncEngine = create_async_engine(database_url, echo=echo)
        self._session_factory = async_sessionmaker(
            self._engine, expire_on_commit=False
        )
        self._log = logger.bind(logger=self.__class__.__name__)

    async def initialize(self):
        url = self._engine.url
        if url.get_backend_name() == "sqlite" and url.database not in (
            None,
            "",
            ":memory:",
        ):
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await self._log.adebug("Database schema ready.")

    async def close(self):
        await self._engine.dispose()

    async def find_report_by_report_id(
        self, report_id: str
    ) -> Optional[StoredReport]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(StoredReport)
                .options(selectinload(StoredReport.records))
                .where(StoredReport.report_id == report_id)
            )
            return result.scalar_one_or_none()

    async def count_reports(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count(StoredReport.id)))
            return int(result.scalar_one())

    async def count_records(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count(StoredRecord.id)))
            return int(result.scalar_one())

    async def create_report_with_records(
        self, report: ReportData, records: Sequence[RecordData]
    ) -> StoredReport:
        """Store a report together with its records.

        Raises:
            DuplicateReportId: A report with the same ``report_id`` exists.
            PersistenceFailure: Any other database error. Nothing is stored.
        """
        stored = StoredReport(
            report_id=report.report_id,
            domain=report.domain,
            org_name=report.org_name,
            email=report.email,
            extra_contact_info=report.extra_contact_info,
            start_date=report.begin,
            end_date=report.end,
            policy=_value(report.policy),
            subdomain_policy=_value(report.subdomain_policy),
            percentage=report.percentage,
            adkim=_value(report.adkim),
            aspf=_value(report.aspf),
            records=[
                StoredRecord(
                    source_ip=record.source_ip,
                    count=record.count,
                    disposition=_value(record.disposition),
                    dkim=_value(record.dkim),
                    spf=_value(record.spf),
                    header_from=record.header_from,
                )
                for record in records
            ],
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(stored)
        except IntegrityError as err:
            if await self.find_report_by_report_id(report.report_id) is not None:
                raise DuplicateReportId(report.report_id) from err
            raise PersistenceFailure(str(err.orig), report.report_id) from err
        except SQLAlchemyError as err:
            raise PersistenceFailure(str(err), report.report_id) from err
        except (OverflowError, ValueError, TypeError) as err:
            # Raised by the driver while binding parameters, outside the DBAPI
            # exception hierarchy.
            raise PersistenceFailure(str(err), report.report_id) from err

        await self._log.adebug(
            "Stored report.",
            report_id=report.report_id,
            num_records=len(stored.records),
        )
        return stored

    # pylint: disable=too-many-arguments
    async def create_processing_log_entry(
        self,
        *,
        status: ProcessingStatus,
        message_uid: Optional[int] = None,
        attachment_name: Optional[str] = None,
        details: Optional[str] = None,
        report: Optional[StoredReport] = None,
    ) -> ProcessingLogEntry:
        entry = ProcessingLogEntry(
            status=status,
            message_uid=message_uid,
            attachment_name=attachment_name,
            details=details,
            report_pk=report.id if report is not None else None,
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(entry)
        except SQLAlchemyError as err:
            raise PersistenceFailure(str(err)) from err
        return entry

    async def list_processing_log_entries(self) -> List[ProcessingLogEntry]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProcessingLogEntry).order_by(ProcessingLogEntry.id)
            )
            return list(result.scalars())


def _value(member: Optional[enum.Enum]) -> Optional[str]:
    return member.value if member is not None else None
