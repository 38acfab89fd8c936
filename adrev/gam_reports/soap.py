"""
SOAP envelopes and reply parsing for the Ad Manager ``ReportService``.

Replies are parsed with ``xml.etree.ElementTree`` and looked up by local tag
name, so ``ns1:rval``, ``rval`` and ``{uri}rval`` all match.  When the body is
not well-formed XML the extractors fall back to prefix-tolerant regular
expressions over the raw text.
"""

from __future__ import annotations

import html
import re
import xml.etree.ElementTree as ET
from datetime import date
from typing import Iterable, List, Optional, Sequence
from xml.sax.saxutils import escape

from .errors import ProtocolError

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"

DIMENSIONS: Sequence[str] = (
    "DATE",
    "COUNTRY_NAME",
    "CARRIER_NAME",
    "DEVICE_CATEGORY_NAME",
    "SITE_NAME",
    "BROWSER_NAME",
    "BROWSER_ID",
    "MOBILE_APP_NAME",
    "DEVICE_CATEGORY_ID",
    "OPERATING_SYSTEM_NAME",
    "OPERATING_SYSTEM_VERSION_ID",
    "COUNTRY_CRITERIA_ID",
)

COLUMNS: Sequence[str] = (
    "AD_EXCHANGE_TOTAL_REQUESTS",
    "AD_EXCHANGE_MATCH_RATE",
    "AD_EXCHANGE_LINE_ITEM_LEVEL_IMPRESSIONS",
    "AD_EXCHANGE_LINE_ITEM_LEVEL_CLICKS",
    "AD_EXCHANGE_LINE_ITEM_LEVEL_CTR",
    "AD_EXCHANGE_LINE_ITEM_LEVEL_REVENUE",
    "AD_EXCHANGE_LINE_ITEM_LEVEL_AVERAGE_ECPM",
    "AD_EXCHANGE_TOTAL_REQUEST_ECPM",
    "AD_EXCHANGE_MATCHED_REQUEST_ECPM",
    "AD_EXCHANGE_ACTIVE_VIEW_MEASURABLE_IMPRESSIONS",
    "AD_EXCHANGE_ACTIVE_VIEW_VIEWABLE_IMPRESSIONS",
    "AD_EXCHANGE_ACTIVE_VIEW_VIEWABLE_IMPRESSIONS_RATE",
)

EXPORT_FORMAT = "CSV_DUMP"


def publisher_namespace(api_version: str) -> str:
    return f"https://www.google.com/apis/ads/publisher/{api_version}"


# --------------------------------------------------------------------- #
# Request builders
# --------------------------------------------------------------------- #
def build_envelope(body: str, *, network_code: str, api_version: str, application_name: str) -> str:
    """Wrap an operation body in an envelope carrying the ``RequestHeader``."""
    ns = publisher_namespace(api_version)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f'<soapenv:Envelope xmlns:soapenv="{SOAP_ENV_NS}" '
        'xmlns:xsd="http://www.w3.org/2001/XMLSchema" '
        'xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance">\n'
        "  <soapenv:Header>\n"
        '    <ns1:RequestHeader soapenv:actor="http://schemas.xmlsoap.org/soap/actor/next" '
        f'soapenv:mustUnderstand="0" xmlns:ns1="{ns}">\n'
        f"      <ns1:networkCode>{escape(str(network_code))}</ns1:networkCode>\n"
        f"      <ns1:applicationName>{escape(application_name)}</ns1:applicationName>\n"
        "    </ns1:RequestHeader>\n"
        "  </soapenv:Header>\n"
        "  <soapenv:Body>\n"
        f"    {body}\n"
        "  </soapenv:Body>\n"
        "</soapenv:Envelope>"
    )


def _date_element(tag: str, value: date) -> str:
    return (
        f"<ns1:{tag}>"
        f"<ns1:year>{value.year}</ns1:year>"
        f"<ns1:month>{value.month}</ns1:month>"
        f"<ns1:day>{value.day}</ns1:day>"
        f"</ns1:{tag}>"
    )


def run_report_job_body(
    *,
    api_version: str,
    start_date: date,
    end_date: date,
    dimensions: Iterable[str] = DIMENSIONS,
    columns: Iterable[str] = COLUMNS,
) -> str:
    parts: List[str] = [f'<ns1:runReportJob xmlns:ns1="{publisher_namespace(api_version)}">']
    parts.append("<ns1:reportJob><ns1:reportQuery>")
    parts.extend(f"<ns1:dimensions>{escape(name)}</ns1:dimensions>" for name in dimensions)
    parts.extend(f"<ns1:columns>{escape(name)}</ns1:columns>" for name in columns)
    parts.append(_date_element("startDate", start_date))
    parts.append(_date_element("endDate", end_date))
    parts.append("<ns1:dateRangeType>CUSTOM_DATE</ns1:dateRangeType>")
    parts.append("</ns1:reportQuery></ns1:reportJob>")
    parts.append("</ns1:runReportJob>")
    return "".join(parts)


def report_job_status_body(*, api_version: str, job_id: str) -> str:
    return (
        f'<ns1:getReportJobStatus xmlns:ns1="{publisher_namespace(api_version)}">'
        f"<ns1:reportJobId>{escape(str(job_id))}</ns1:reportJobId>"
        "</ns1:getReportJobStatus>"
    )


def report_download_url_body(*, api_version: str, job_id: str, export_format: str = EXPORT_FORMAT) -> str:
    return (
        f'<ns1:getReportDownloadURL xmlns:ns1="{publisher_namespace(api_version)}">'
        f"<ns1:reportJobId>{escape(str(job_id))}</ns1:reportJobId>"
        f"<ns1:exportFormat>{escape(export_format)}</ns1:exportFormat>"
        "</ns1:getReportDownloadURL>"
    )


# --------------------------------------------------------------------- #
# Reply parsing
# --------------------------------------------------------------------- #
_STATUS_RE = re.compile(r"^\w+$")
_DIGITS_RE = re.compile(r"^\d+$")
_URL_RE = re.compile(r"^https?://", re.IGNORECASE)


def _local_name(tag: str) -> str:
    if "}" in tag:
        tag = tag.rsplit("}", 1)[1]
    if ":" in tag:
        tag = tag.rsplit(":", 1)[1]
    return tag


def _parse(xml_text: str) -> Optional[ET.Element]:
    try:
        return ET.fromstring(xml_text.encode("utf-8") if isinstance(xml_text, str) else xml_text)
    except ET.ParseError:
        return None


def _texts_by_tag(root: ET.Element, tag: str) -> List[str]:
    values = []
    for element in root.iter():
        if isinstance(element.tag, str) and _local_name(element.tag) == tag:
            values.append((element.text or "").strip())
    return values


def _regex_texts(xml_text: str, tag: str) -> List[str]:
    pattern = re.compile(rf"<(?:[^:>\s/]+:)?{tag}(?:\s[^>]*)?>([^<]*)</(?:[^:>\s/]+:)?{tag}>")
    return [match.strip() for match in pattern.findall(xml_text)]


def _candidates(xml_text: str, tags: Sequence[str]) -> List[str]:
    """Text of every element with one of ``tags``, in tag priority order."""
    root = _parse(xml_text)
    found: List[str] = []
    for tag in tags:
        if root is not None:
            found.extend(_texts_by_tag(root, tag))
        else:
            found.extend(_regex_texts(xml_text, tag))
    return found


def extract_fault(xml_text: str) -> Optional[str]:
    """``faultstring`` of a SOAP fault reply, if present."""
    for value in _candidates(xml_text, ("faultstring",)):
        if value:
            return html.unescape(value)
    return None


def extract_job_id(xml_text: str) -> str:
    for value in _candidates(xml_text, ("id", "rval")):
        if _DIGITS_RE.match(value):
            return value
    raise ProtocolError(
        "Failed to extract report job ID from response",
        details={"field": "id", "fault": extract_fault(xml_text), "body_preview": xml_text[:500]},
    )


def extract_status(xml_text: str) -> str:
    for value in _candidates(xml_text, ("reportJobStatus", "rval")):
        if value and _STATUS_RE.match(value):
            return value
    raise ProtocolError(
        "Failed to parse report job status from response",
        details={"field": "reportJobStatus", "fault": extract_fault(xml_text), "body_preview": xml_text[:500]},
    )


def extract_download_url(xml_text: str) -> str:
    for value in _candidates(xml_text, ("url", "downloadUrl", "rval")):
        # ElementTree already decodes entities; the regex fallback does not.
        url = html.unescape(value)
        if _URL_RE.match(url):
            return url
    raise ProtocolError(
        "Failed to extract download URL from response",
        details={"field": "url", "fault": extract_fault(xml_text), "body_preview": xml_text[:500]},
    )
