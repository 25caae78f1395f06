from xsdata.formats.dataclass.context import XmlContext
from xsdata.formats.dataclass.parsers import XmlParser
from xsdata.formats.dataclass.parsers.config import ParserConfig

from dmarc_report_ingester.model.dmarc_aggregate_report import Feedback

from .sample_data import SAMPLE_DATACLASS, SampleRecord, create_sample_xml


def create_parser() -> XmlParser:
    return XmlParser(
        context=XmlContext(), config=ParserConfig(fail_on_unknown_properties=False)
    )


def test_deserialization():
    assert create_parser().from_string(create_sample_xml(), Feedback) == (
        SAMPLE_DATACLASS
    )


def test_keeps_unknown_result_vocabulary_as_string():
    xml = create_sample_xml(records=[SampleRecord(dkim="softfail")])
    feedback = create_parser().from_string(xml, Feedback)
    assert feedback.record[0].row.policy_evaluated.dkim == "softfail"


def test_preserves_record_order():
    xml = create_sample_xml(
        records=[SampleRecord(count=150), SampleRecord(count=5, spf="fail")]
    )
    feedback = create_parser().from_string(xml, Feedback)
    assert [record.row.count for record in feedback.record] == [150, 5]
