from dmarc_report_ingester.model.dmarc_aggregate_report import (
    AuthResultItem,
    AuthResultType,
    DateRangeType,
    Feedback,
    IdentifierType,
    PolicyEvaluatedType,
    PolicyPublishedType,
    RecordType,
    ReportMetadataType,
    RowType,
)

__all__ = [
    "AuthResultItem",
    "AuthResultType",
    "DateRangeType",
    "Feedback",
    "IdentifierType",
    "PolicyEvaluatedType",
    "PolicyPublishedType",
    "RecordType",
    "ReportMetadataType",
    "RowType",
]
