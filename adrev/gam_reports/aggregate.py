"""
Aggregation of raw report records into warehouse rows.

Every CSV record maps onto one dimensional key (account, date and seven
dimension names).  Records sharing a key are summed; rates are re-derived
from the summed counters or, where the export only gives a rate, averaged
with the counter that weights it (impressions for viewability, ad requests
for match and delivery rate).
"""

from __future__ import annotations

import math
import re
from collections import OrderedDict
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from adrev.common.logging import setup_integrations_logger
from adrev.common.time import date_range

logger = setup_integrations_logger("gam_reports")

UNKNOWN = "Unknown"
_UNSET_VALUES = {"", "(not set)", "(not applicable)", "null"}

DIMENSION_KEY_FIELDS: Tuple[str, ...] = (
    "publisher_id",
    "date",
    "country_name",
    "carrier_name",
    "device_category_name",
    "site_name",
    "browser_name",
    "mobile_app_name",
    "operating_system_name",
)

COUNTER_FIELDS: Tuple[str, ...] = (
    "ad_requests",
    "matched_requests",
    "impressions",
    "clicks",
    "revenue",
    "measurable_impressions",
    "viewable_impressions",
)

DEDUP_SUM_FIELDS: Tuple[str, ...] = (
    "revenue",
    "impressions",
    "clicks",
    "ad_requests",
    "viewable_impressions",
    "measurable_impressions",
    "matched_requests",
)

_INT_PREFIX = re.compile(r"^[+-]?\d+")
_FLOAT_PREFIX = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


# --------------------------------------------------------------------- #
# Field parsing
# --------------------------------------------------------------------- #
def normalize_dimension(value: Any) -> str:
    """Collapse missing and placeholder dimension values to ``Unknown``."""
    if value is None:
        return UNKNOWN
    text = str(value).strip()
    if text.lower() in _UNSET_VALUES:
        return UNKNOWN
    return text


def parse_int_or_zero(value: Any) -> int:
    """Leading integer of ``value`` with thousands separators removed; 0 when absent."""
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    match = _INT_PREFIX.match(str(value).replace(",", "").strip())
    return int(match.group(0)) if match else 0


def parse_float_or_zero(value: Any) -> float:
    """Leading decimal number of ``value`` with thousands separators removed; 0.0 when absent."""
    if value is None:
        return 0.0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = float(value)
    else:
        match = _FLOAT_PREFIX.match(str(value).replace(",", "").strip())
        if not match:
            return 0.0
        parsed = float(match.group(0))
    return parsed if math.isfinite(parsed) else 0.0


def _ratio(numerator: float, denominator: float, scale: float = 1.0) -> float:
    return numerator / denominator * scale if denominator > 0 else 0.0


def _optional_id(value: Any) -> Optional[int]:
    parsed = parse_int_or_zero(value)
    return parsed or None


def dimensional_key(row: Dict[str, Any]) -> Tuple[Any, ...]:
    return tuple(row.get(field) for field in DIMENSION_KEY_FIELDS)


# --------------------------------------------------------------------- #
# Aggregation
# --------------------------------------------------------------------- #
def _empty_row(key: Tuple[Any, ...], record: Dict[str, str], currency_code: Optional[str]) -> Dict[str, Any]:
    row: Dict[str, Any] = dict(zip(DIMENSION_KEY_FIELDS, key))
    row.update(
        {
            "country_criteria_id": _optional_id(record.get("Dimension.COUNTRY_CRITERIA_ID")),
            "device_category_id": _optional_id(record.get("Dimension.DEVICE_CATEGORY_ID")),
            # The export does not carry a usable browser id.
            "browser_id": None,
            "operating_system_version_id": _optional_id(record.get("Dimension.OPERATING_SYSTEM_VERSION_ID")),
            "ad_requests": 0,
            "matched_requests": 0,
            "impressions": 0,
            "clicks": 0,
            "revenue": 0.0,
            "measurable_impressions": 0,
            "viewable_impressions": 0,
            "ctr": 0.0,
            "ecpm": 0.0,
            "ad_request_ecpm": 0.0,
            "mcm_auto_payment_revenue": 0.0,
            "net_revenue": 0.0,
            "viewability": 0.0,
            "match_rate": 0.0,
            "delivery_rate": 0.0,
            "_viewability_weighted": 0.0,
            "_match_rate_weighted": 0.0,
            "_delivery_rate_weighted": 0.0,
        }
    )
    if currency_code:
        row["currency_code"] = currency_code
    return row


def _finalize(row: Dict[str, Any]) -> Dict[str, Any]:
    impressions = row["impressions"]
    ad_requests = row["ad_requests"]
    row["ctr"] = _ratio(row["clicks"], impressions, 100.0)
    row["ecpm"] = _ratio(row["revenue"], impressions, 1000.0)
    row["ad_request_ecpm"] = _ratio(row["revenue"], ad_requests, 1000.0)
    row["net_revenue"] = row["revenue"]
    row["mcm_auto_payment_revenue"] = 0.0
    row["viewability"] = _ratio(row.pop("_viewability_weighted"), impressions)
    row["match_rate"] = _ratio(row.pop("_match_rate_weighted"), ad_requests)
    row["delivery_rate"] = _ratio(row.pop("_delivery_rate_weighted"), ad_requests)
    return row


def aggregate_records(
    records: Iterable[Dict[str, str]],
    account_id: str,
    *,
    currency_code: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    Turn raw CSV records into one dimensional row per key.

    Revenue arrives in micros of the network currency and is converted to
    units.  Records without a usable ``Dimension.DATE`` are skipped.
    """
    grouped: "OrderedDict[Tuple[Any, ...], Dict[str, Any]]" = OrderedDict()
    skipped = 0
    sites = set()

    for record in records:
        day = normalize_dimension(record.get("Dimension.DATE"))
        if day == UNKNOWN:
            skipped += 1
            continue

        ad_requests = max(0, parse_int_or_zero(record.get("Column.AD_EXCHANGE_TOTAL_REQUESTS")))
        match_rate = parse_float_or_zero(record.get("Column.AD_EXCHANGE_MATCH_RATE"))
        matched_requests = int(round(match_rate / 100.0 * ad_requests)) if ad_requests > 0 else 0
        impressions = max(0, parse_int_or_zero(record.get("Column.AD_EXCHANGE_LINE_ITEM_LEVEL_IMPRESSIONS")))
        clicks = max(0, parse_int_or_zero(record.get("Column.AD_EXCHANGE_LINE_ITEM_LEVEL_CLICKS")))
        revenue_micros = max(0.0, parse_float_or_zero(record.get("Column.AD_EXCHANGE_LINE_ITEM_LEVEL_REVENUE")))
        revenue = round(revenue_micros / 1e6, 6)
        measurable = max(0, parse_int_or_zero(record.get("Column.AD_EXCHANGE_ACTIVE_VIEW_MEASURABLE_IMPRESSIONS")))
        viewable = max(0, parse_int_or_zero(record.get("Column.AD_EXCHANGE_ACTIVE_VIEW_VIEWABLE_IMPRESSIONS")))
        viewability = parse_float_or_zero(record.get("Column.AD_EXCHANGE_ACTIVE_VIEW_VIEWABLE_IMPRESSIONS_RATE"))
        delivery_rate = match_rate

        site_name = normalize_dimension(record.get("Dimension.SITE_NAME"))
        sites.add(site_name)
        key = (
            account_id,
            day,
            normalize_dimension(record.get("Dimension.COUNTRY_NAME")),
            normalize_dimension(record.get("Dimension.CARRIER_NAME")),
            normalize_dimension(record.get("Dimension.DEVICE_CATEGORY_NAME")),
            site_name,
            normalize_dimension(record.get("Dimension.BROWSER_NAME")),
            normalize_dimension(record.get("Dimension.MOBILE_APP_NAME")),
            # Only the OS version id is exported, never the name.
            UNKNOWN,
        )

        row = grouped.get(key)
        if row is None:
            row = grouped[key] = _empty_row(key, record, currency_code)

        row["ad_requests"] += ad_requests
        row["matched_requests"] += matched_requests
        row["impressions"] += impressions
        row["clicks"] += clicks
        row["revenue"] += revenue
        row["measurable_impressions"] += measurable
        row["viewable_impressions"] += viewable
        row["_viewability_weighted"] += viewability * impressions
        row["_match_rate_weighted"] += match_rate * ad_requests
        row["_delivery_rate_weighted"] += delivery_rate * ad_requests

    rows = [_finalize(row) for row in grouped.values()]
    if skipped:
        logger.warning("Skipped report records without a date", metrics={"skipped": skipped})
    logger.debug(
        "Aggregated report records",
        metrics={"account_id": account_id, "rows": len(rows), "unique_sites": len(sites)},
    )
    return rows


def deduplicate_dimensional_rows(rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Merge rows sharing the nine-column key; input rows are left untouched.

    Counters are summed, ``ctr``/``ecpm``/``ad_request_ecpm`` are recomputed
    from the sums and the averaged rates are re-weighted.  Rows that did not
    need merging are returned as copies with their values unchanged, so the
    function is idempotent.
    """
    merged: "OrderedDict[Tuple[Any, ...], Dict[str, Any]]" = OrderedDict()
    merge_counts: Dict[Tuple[Any, ...], int] = {}

    for row in rows:
        key = dimensional_key(row)
        existing = merged.get(key)
        if existing is None:
            merged[key] = dict(row)
            merge_counts[key] = 1
            continue

        prev_impressions = existing.get("impressions") or 0
        prev_requests = existing.get("ad_requests") or 0
        row_impressions = row.get("impressions") or 0
        row_requests = row.get("ad_requests") or 0
        weights = {
            "viewability": (prev_impressions, row_impressions),
            "match_rate": (prev_requests, row_requests),
            "delivery_rate": (prev_requests, row_requests),
        }
        for field, (left, right) in weights.items():
            existing[field] = _ratio(
                (existing.get(field) or 0) * left + (row.get(field) or 0) * right,
                left + right,
            )
        for field in DEDUP_SUM_FIELDS:
            existing[field] = (existing.get(field) or 0) + (row.get(field) or 0)
        merge_counts[key] += 1

    result: List[Dict[str, Any]] = []
    duplicates = 0
    for key, row in merged.items():
        if merge_counts[key] > 1:
            duplicates += merge_counts[key] - 1
            row["ctr"] = _ratio(row.get("clicks") or 0, row.get("impressions") or 0, 100.0)
            row["ecpm"] = _ratio(row.get("revenue") or 0, row.get("impressions") or 0, 1000.0)
            row["ad_request_ecpm"] = _ratio(row.get("revenue") or 0, row.get("ad_requests") or 0, 1000.0)
            row["net_revenue"] = row.get("revenue") or 0
        result.append(row)

    if duplicates:
        logger.info(
            "Deduplicated dimensional rows",
            metrics={"input_rows": len(rows), "output_rows": len(result), "removed": duplicates},
        )
    return result


# --------------------------------------------------------------------- #
# Daily rollups
# --------------------------------------------------------------------- #
def _zero_metric(account_id: str, day: str, currency_code: str) -> Dict[str, Any]:
    return {
        "publisher_id": account_id,
        "date": day,
        "ad_requests": 0,
        "matched_requests": 0,
        "match_rate": 0.0,
        "impressions": 0,
        "clicks": 0,
        "ctr": 0.0,
        "revenue": 0.0,
        "ecpm": 0.0,
        "ad_request_ecpm": 0.0,
        "mcm_auto_payment_revenue": 0.0,
        "net_revenue": 0.0,
        "measurable_impressions": 0,
        "viewable_impressions": 0,
        "viewability": 0.0,
        "delivery_rate": 0.0,
        "currency_code": currency_code,
    }


def build_daily_metrics(
    rows: Iterable[Dict[str, Any]],
    account_id: str,
    currency_code: str,
) -> List[Dict[str, Any]]:
    """One rollup per date found in ``rows``, ordered by date."""
    by_date: Dict[str, List[Dict[str, Any]]] = {}
    for row in rows:
        by_date.setdefault(str(row["date"]), []).append(row)

    metrics: List[Dict[str, Any]] = []
    for day in sorted(by_date):
        day_rows = by_date[day]
        metric = _zero_metric(account_id, day, currency_code)
        for field in COUNTER_FIELDS:
            metric[field] = sum(r.get(field) or 0 for r in day_rows)

        impressions = metric["impressions"]
        ad_requests = metric["ad_requests"]
        metric["ctr"] = _ratio(metric["clicks"], impressions, 100.0)
        metric["ecpm"] = _ratio(metric["revenue"], impressions, 1000.0)
        metric["ad_request_ecpm"] = _ratio(metric["revenue"], ad_requests, 1000.0)
        metric["match_rate"] = _ratio(metric["matched_requests"], ad_requests, 100.0)
        metric["net_revenue"] = metric["revenue"]
        metric["viewability"] = _ratio(
            sum((r.get("viewability") or 0) * (r.get("impressions") or 0) for r in day_rows),
            impressions,
        )
        metric["delivery_rate"] = _ratio(
            sum((r.get("delivery_rate") or 0) * (r.get("ad_requests") or 0) for r in day_rows),
            ad_requests,
        )
        metrics.append(metric)
    return metrics


def zero_daily_metrics(
    account_id: str,
    start: date,
    end: date,
    currency_code: str,
) -> List[Dict[str, Any]]:
    """All-zero rollups, one per calendar day of ``start..end`` inclusive."""
    return [_zero_metric(account_id, day.isoformat(), currency_code) for day in date_range(start, end)]
