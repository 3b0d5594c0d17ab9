"""
Location and title-keyword filtering for scraped jobs.

Three independent rules, applied in order; a job must pass every enabled one:
    1. Country: remote/worldwide/anywhere always pass, otherwise any alias of
       the country (cities, abbreviations) must appear as a whole word
    2. City: case-insensitive substring of the location
    3. Title keywords: any keyword is a case-insensitive substring of the title

``apply_filters`` works on ScrapedJob lists after scraping and reports
pass/fail counts per rule. ``apply_early_filters`` runs inside scrapers on
lightweight list entries before the detail-fetch phase.
"""

import json
import re
from typing import Callable, Generic, List, Optional, TypeVar

from pydantic import BaseModel

from jobtracker.schemas import EarlyFilterStats, JobFilters, ScrapedJob

COUNTRY_MAPPINGS = {
    "india": [
        "india", "ind", "bangalore", "bengaluru", "mumbai", "delhi", "hyderabad",
        "chennai", "pune", "kolkata", "gurugram", "gurgaon", "noida", "ahmedabad",
        "jaipur", "kochi", "thiruvananthapuram", "sez",
    ],
    "united states": [
        "usa", "us", "u.s.", "united states", "america", "new york", "san francisco",
        "seattle", "los angeles", "chicago", "austin", "boston", "denver",
    ],
    "united kingdom": [
        "uk", "u.k.", "britain", "england", "united kingdom", "london",
        "manchester", "edinburgh", "birmingham",
    ],
    "germany": ["germany", "deutschland", "berlin", "munich", "frankfurt", "hamburg"],
    "canada": ["canada", "toronto", "vancouver", "montreal", "ottawa", "calgary"],
}

LOCATION_WILDCARDS = {"remote", "remote position", "worldwide", "anywhere"}


def matches_preferred_country(location: Optional[str], preferred_country: str) -> bool:
    if not location:
        return False

    location_lower = location.lower().strip()
    if location_lower in LOCATION_WILDCARDS:
        return True

    country_lower = preferred_country.lower().strip()
    variants = COUNTRY_MAPPINGS.get(country_lower, [country_lower])
    return any(
        re.search(rf"\b{re.escape(variant)}\b", location_lower)
        for variant in variants
    )


def matches_preferred_city(location: Optional[str], preferred_city: Optional[str]) -> bool:
    if not preferred_city:
        return True
    if not location:
        return False
    return preferred_city.lower().strip() in location.lower().strip()


def matches_title_keywords(title: Optional[str], keywords: List[str]) -> bool:
    if not keywords:
        return True
    title_lower = (title or "").lower()
    return any(keyword.lower() in title_lower for keyword in keywords)


def parse_title_keywords(value: Optional[str]) -> List[str]:
    """Parse the JSON-array setting into lowercased, non-empty keywords."""
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return []
    if not isinstance(parsed, list):
        return []
    return [v.strip().lower() for v in parsed if isinstance(v, str) and v.strip()]


def matches_filters(title: Optional[str], location: Optional[str], filters: JobFilters) -> bool:
    if filters.country and not matches_preferred_country(location, filters.country):
        return False
    if filters.city and not matches_preferred_city(location, filters.city):
        return False
    if filters.title_keywords and not matches_title_keywords(title, filters.title_keywords):
        return False
    return True


class FilterBreakdown(BaseModel):
    total: int = 0
    passed_country: int = 0
    failed_country: int = 0
    passed_city: int = 0
    failed_city: int = 0
    passed_title: int = 0
    failed_title: int = 0
    final_count: int = 0


class FilterResult(BaseModel):
    filtered: List[ScrapedJob]
    filtered_out: int
    breakdown: FilterBreakdown


def apply_filters(jobs: List[ScrapedJob], filters: Optional[JobFilters]) -> FilterResult:
    total = len(jobs)
    if filters is None or filters.is_empty():
        return FilterResult(
            filtered=list(jobs),
            filtered_out=0,
            breakdown=FilterBreakdown(
                total=total,
                passed_country=total,
                passed_city=total,
                passed_title=total,
                final_count=total,
            ),
        )

    breakdown = FilterBreakdown(total=total)
    filtered = []

    for job in jobs:
        if filters.country:
            if not matches_preferred_country(job.location, filters.country):
                breakdown.failed_country += 1
                continue
        breakdown.passed_country += 1

        if filters.city:
            if not matches_preferred_city(job.location, filters.city):
                breakdown.failed_city += 1
                continue
        breakdown.passed_city += 1

        if filters.title_keywords:
            if not matches_title_keywords(job.title, filters.title_keywords):
                breakdown.failed_title += 1
                continue
        breakdown.passed_title += 1

        filtered.append(job)
        breakdown.final_count += 1

    return FilterResult(filtered=filtered, filtered_out=total - len(filtered), breakdown=breakdown)


T = TypeVar("T")


class EarlyFilterResult(Generic[T]):
    def __init__(self, filtered: List[T], country: int = 0, city: int = 0, title: int = 0):
        self.filtered = filtered
        self.country = country
        self.city = city
        self.title = title

    @property
    def filtered_out(self) -> int:
        return self.country + self.city + self.title

    def to_stats(self) -> Optional[EarlyFilterStats]:
        if self.filtered_out <= 0:
            return None
        return EarlyFilterStats(
            total=self.filtered_out,
            country=self.country,
            city=self.city,
            title=self.title,
        )


def has_early_filters(filters: Optional[JobFilters]) -> bool:
    return filters is not None and not filters.is_empty()


def apply_early_filters(
    items: List[T],
    filters: Optional[JobFilters],
    get_title: Callable[[T], Optional[str]],
    get_location: Callable[[T], Optional[str]],
) -> EarlyFilterResult[T]:
    """Filter raw list entries before any detail request is made."""
    if not has_early_filters(filters):
        return EarlyFilterResult(list(items))

    result = EarlyFilterResult([])
    for item in items:
        location = get_location(item)
        if filters.country and not matches_preferred_country(location, filters.country):
            result.country += 1
            continue
        if filters.city and not matches_preferred_city(location, filters.city):
            result.city += 1
            continue
        if filters.title_keywords and not matches_title_keywords(get_title(item), filters.title_keywords):
            result.title += 1
            continue
        result.filtered.append(item)
    return result
