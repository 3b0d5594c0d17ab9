"""
Runtime settings stored as key/value rows in the ``settings`` table.

Stored values are strings. Reads overlay stored rows on DEFAULT_SETTINGS;
updates are validated as a whole before anything is written, so an invalid
key leaves every setting untouched. Unknown keys are ignored.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from apscheduler.triggers.cron import CronTrigger

from jobtracker.config import get_settings
from jobtracker.schemas import JobFilters, MatcherConfig, SettingsUpdateResult
from jobtracker.services.filters import parse_title_keywords
from jobtracker.services.repository import ScraperRepository

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: Dict[str, str] = {
    "matcher_reasoning_effort": "medium",
    "matcher_bulk_enabled": "true",
    "matcher_batch_size": "2",
    "matcher_max_retries": "3",
    "matcher_concurrency_limit": "3",
    "matcher_serialize_operations": "false",
    "matcher_timeout_ms": "30000",
    "matcher_backoff_base_delay": "2000",
    "matcher_backoff_max_delay": "32000",
    "matcher_circuit_breaker_threshold": "10",
    "matcher_circuit_breaker_reset_timeout": "60000",
    "matcher_auto_match_after_scrape": "true",
    "scheduler_enabled": "true",
    "scheduler_cron": "0 */6 * * *",
    "scraper_filter_country": "India",
    "scraper_filter_city": "",
    "scraper_filter_title_keywords": "[]",
    "scraper_max_parallel_scrapes": "3",
    "global_scrape_frequency": "6",
}

NUMERIC_RANGES: Dict[str, Tuple[int, int]] = {
    "matcher_batch_size": (1, 10),
    "matcher_max_retries": (1, 10),
    "matcher_concurrency_limit": (1, 10),
    "matcher_timeout_ms": (5_000, 120_000),
    "matcher_backoff_base_delay": (500, 10_000),
    "matcher_backoff_max_delay": (5_000, 120_000),
    "matcher_circuit_breaker_threshold": (3, 50),
    "matcher_circuit_breaker_reset_timeout": (10_000, 300_000),
    "scraper_max_parallel_scrapes": (1, 10),
    "global_scrape_frequency": (1, 168),
}

BOOLEAN_KEYS = {
    "matcher_bulk_enabled",
    "matcher_serialize_operations",
    "matcher_auto_match_after_scrape",
    "scheduler_enabled",
}

REASONING_EFFORTS = ("low", "medium", "high")


class SettingsValidationError(ValueError):
    def __init__(self, key: str, message: str):
        super().__init__(message)
        self.key = key


def _parse_boolean(value: Any) -> str:
    return "true" if value is True or value == "true" else "false"


def _parse_number_in_range(key: str, value: Any) -> str:
    low, high = NUMERIC_RANGES[key]
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        parsed = None
    if parsed is None or parsed < low or parsed > high:
        raise SettingsValidationError(key, f"{key} must be a number between {low} and {high}")
    return str(parsed)


def _normalize_title_keywords(value: Any) -> str:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            raise SettingsValidationError(
                "scraper_filter_title_keywords",
                "scraper_filter_title_keywords must be a JSON array of strings",
            )
    if not isinstance(value, list):
        raise SettingsValidationError(
            "scraper_filter_title_keywords",
            "scraper_filter_title_keywords must be an array or JSON array string",
        )
    return json.dumps([item.strip() for item in value if isinstance(item, str) and item.strip()])


def is_valid_cron(expression: str) -> bool:
    try:
        CronTrigger.from_crontab(expression)
    except ValueError:
        return False
    return True


def validate_setting(key: str, value: Any) -> str:
    """
    Validate and normalize one setting value.

    Returns:
        The string to store.

    Raises:
        SettingsValidationError: if the value is out of range or malformed.
    """
    if key in NUMERIC_RANGES:
        return _parse_number_in_range(key, value)
    if key in BOOLEAN_KEYS:
        return _parse_boolean(value)
    if key == "scheduler_cron":
        expression = str(value if value is not None else "").strip()
        if not is_valid_cron(expression):
            raise SettingsValidationError(key, "Invalid cron expression")
        return expression
    if key == "matcher_reasoning_effort":
        if str(value) not in REASONING_EFFORTS:
            raise SettingsValidationError(key, f"{key} must be one of: {', '.join(REASONING_EFFORTS)}")
        return str(value)
    if key == "scraper_filter_title_keywords":
        return _normalize_title_keywords(value)
    return str(value if value is not None else "")


class SettingsService:
    def __init__(self, repository: Optional[ScraperRepository] = None):
        self.repository = repository or ScraperRepository()

    async def get_all_settings(self) -> Dict[str, str]:
        stored = await self.repository.get_all_settings()
        result = dict(DEFAULT_SETTINGS)
        for key, value in stored.items():
            if key in DEFAULT_SETTINGS and value is not None:
                result[key] = value
        return result

    async def get(self, key: str) -> str:
        value = await self.repository.get_setting(key)
        if value is None:
            return DEFAULT_SETTINGS.get(key, "")
        return value

    async def update_settings(self, updates: Dict[str, Any]) -> SettingsUpdateResult:
        parsed: List[Tuple[str, str]] = []
        cron_updated = False
        enabled_changed = False
        new_enabled_value = None

        for key, raw in updates.items():
            if key not in DEFAULT_SETTINGS:
                continue
            value = validate_setting(key, raw)
            parsed.append((key, value))
            if key in ("scheduler_cron", "global_scrape_frequency"):
                cron_updated = True
            if key == "scheduler_enabled":
                enabled_changed = True
                new_enabled_value = value == "true"

        for key, value in parsed:
            await self.repository.set_setting(key, value)

        if parsed:
            logger.info(f"Updated settings: {', '.join(key for key, _ in parsed)}")

        return SettingsUpdateResult(
            updated=dict(parsed),
            cron_updated=cron_updated,
            enabled_changed=enabled_changed,
            new_enabled_value=new_enabled_value,
        )

    async def _get_int(self, key: str) -> int:
        raw = await self.get(key)
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning(f"Setting {key}={raw!r} is not a number, using default")
            return int(DEFAULT_SETTINGS[key])

    async def _get_bool(self, key: str) -> bool:
        return (await self.get(key)) == "true"

    async def get_scraper_filters(self) -> JobFilters:
        country = await self.get("scraper_filter_country")
        city = await self.get("scraper_filter_city")
        keywords = parse_title_keywords(await self.get("scraper_filter_title_keywords"))
        return JobFilters(
            country=country.strip() or None,
            city=city.strip() or None,
            title_keywords=keywords,
        )

    async def get_matcher_config(self) -> MatcherConfig:
        settings = get_settings()
        return MatcherConfig(
            model=settings.matcher_model,
            provider_id=settings.matcher_provider_id or None,
            reasoning_effort=await self.get("matcher_reasoning_effort"),
            bulk_enabled=await self._get_bool("matcher_bulk_enabled"),
            batch_size=await self._get_int("matcher_batch_size"),
            max_retries=await self._get_int("matcher_max_retries"),
            concurrency_limit=await self._get_int("matcher_concurrency_limit"),
            serialize_operations=await self._get_bool("matcher_serialize_operations"),
            timeout_ms=await self._get_int("matcher_timeout_ms"),
            backoff_base_delay=await self._get_int("matcher_backoff_base_delay"),
            backoff_max_delay=await self._get_int("matcher_backoff_max_delay"),
            circuit_breaker_threshold=await self._get_int("matcher_circuit_breaker_threshold"),
            circuit_breaker_reset_timeout=await self._get_int("matcher_circuit_breaker_reset_timeout"),
            auto_match_after_scrape=await self._get_bool("matcher_auto_match_after_scrape"),
        )

    async def get_max_parallel_scrapes(self) -> int:
        value = await self._get_int("scraper_max_parallel_scrapes")
        low, high = NUMERIC_RANGES["scraper_max_parallel_scrapes"]
        return max(low, min(high, value))

    async def is_scheduler_enabled(self) -> bool:
        return await self._get_bool("scheduler_enabled")
