"""Aggregator: country display names and per-country region groups."""

import logging

from ipq.models import RegionGroup, RegionRecord

logger = logging.getLogger(__name__)

# ISO code → display name used in the region report files.
COUNTRY_NAMES: dict[str, str] = {
    # North America
    "US": "美国",
    "CA": "加拿大",
    "MX": "墨西哥",
    # South America
    "BR": "巴西",
    "AR": "阿根廷",
    "CL": "智利",
    "CO": "哥伦比亚",
    # Europe
    "UK": "英国",
    "GB": "英国",
    "FR": "法国",
    "DE": "德国",
    "IT": "意大利",
    "ES": "西班牙",
    "NL": "荷兰",
    "RU": "俄罗斯",
    "SE": "瑞典",
    "CH": "瑞士",
    # Asia
    "CN": "中国",
    "HK": "中国香港",
    "TW": "中国台湾",
    "MO": "中国澳门",
    "JP": "日本",
    "KR": "韩国",
    "SG": "新加坡",
    "IN": "印度",
    "ID": "印度尼西亚",
    "MY": "马来西亚",
    "TH": "泰国",
    "PH": "菲律宾",
    "VN": "越南",
    # Oceania
    "AU": "澳大利亚",
    "NZ": "新西兰",
    # Africa
    "ZA": "南非",
    "EG": "埃及",
    "NG": "尼日利亚",
    # Fallback
    "Unknown": "未知",
}


def country_name(code: str) -> str:
    """Return the display name for *code*; unmapped codes are returned as-is."""
    return COUNTRY_NAMES.get(code, code)


def group_by_region(records: list[RegionRecord]) -> list[RegionGroup]:
    """Group records by country display name.

    Groups are ordered by display name.  Inside a group, records are sorted
    ascending by delay; equal delays keep their input order.

    Args:
        records: Geolocated records, in pipeline order.

    Returns:
        One ``RegionGroup`` per distinct display name.
    """
    buckets: dict[str, list[RegionRecord]] = {}
    for record in records:
        buckets.setdefault(country_name(record.country_code), []).append(record)

    groups = [
        RegionGroup(
            country_name=name,
            records=tuple(sorted(buckets[name], key=lambda r: r.delay)),
        )
        for name in sorted(buckets)
    ]
    logger.info("Grouped %d address(es) into %d region(s)", len(records), len(groups))
    return groups


def region_distribution(groups: list[RegionGroup]) -> list[tuple[str, int]]:
    """Return ``(country_name, count)`` pairs sorted by count descending."""
    return sorted(
        ((g.country_name, len(g.records)) for g in groups),
        key=lambda item: item[1],
        reverse=True,
    )
