import os
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache


@dataclass(frozen=True)
class Config:
    api_url: str | None
    api_token: str | None
    snapshot_uri: str | None
    env: str
    log_level: str
    poll_interval_s: float
    search_debounce_ms: int
    display_cap: int
    outdated_minutes: int
    excluded_labels: tuple[str, ...]
    canary_size: int
    canary_timeout_s: int
    request_timeout_s: float
    page_size: int

    def outdated_grace(self) -> timedelta:
        return timedelta(minutes=self.outdated_minutes)

    def canary_timeout(self) -> timedelta:
        return timedelta(seconds=self.canary_timeout_s)

    def search_debounce_s(self) -> float:
        return self.search_debounce_ms / 1000.0

    @classmethod
    def from_env(cls) -> "Config":
        missing: list[str] = []

        def require(name: str) -> str:
            value = os.getenv(name)
            if value is None or value == "":
                missing.append(name)
                return ""
            return value

        def optional_int(name: str, default: int, *, minimum: int = 0) -> int:
            raw = os.getenv(name)
            if raw is None or raw.strip() == "":
                return default
            try:
                value = int(raw)
            except ValueError as exc:
                raise ValueError(f"{name} must be an integer") from exc
            if value < minimum:
                raise ValueError(f"{name} must be >= {minimum}")
            return value

        def optional_float(name: str, default: float) -> float:
            raw = os.getenv(name)
            if raw is None or raw.strip() == "":
                return default
            value = _parse_float(raw)
            if value <= 0:
                raise ValueError(f"{name} must be > 0")
            return value

        api_url = _optional_str(os.getenv("FLEETDECK_API_URL"))
        snapshot_uri = _optional_str(os.getenv("FLEETDECK_SNAPSHOT_URI"))
        if api_url is None and snapshot_uri is None:
            missing.append("FLEETDECK_API_URL")
        env = require("ENV")
        log_level = os.getenv("LOG_LEVEL", "INFO").upper()

        poll_interval_s = optional_float("POLL_INTERVAL_S", 5.0)
        search_debounce_ms = optional_int("SEARCH_DEBOUNCE_MS", 300)
        display_cap = optional_int("DISPLAY_CAP", 10, minimum=1)
        outdated_minutes = optional_int("OUTDATED_MINUTES", 30)
        canary_size = optional_int("CANARY_SIZE", 10, minimum=1)
        canary_timeout_s = optional_int("CANARY_TIMEOUT_S", 1800, minimum=1)
        request_timeout_s = optional_float("REQUEST_TIMEOUT_S", 30.0)
        page_size = optional_int("PAGE_SIZE", 100, minimum=1)
        if page_size > 1000:
            raise ValueError("PAGE_SIZE must be <= 1000")
        excluded_labels = _parse_label_list(
            os.getenv("DASHBOARD_EXCLUDED_LABELS", "")
        )

        if missing:
            missing_str = ", ".join(missing)
            raise ValueError(f"Missing required env vars: {missing_str}")
        return cls(
            api_url=api_url.rstrip("/") if api_url else None,
            api_token=_optional_str(os.getenv("FLEETDECK_API_TOKEN")),
            snapshot_uri=snapshot_uri,
            env=env,
            log_level=log_level,
            poll_interval_s=poll_interval_s,
            search_debounce_ms=search_debounce_ms,
            display_cap=display_cap,
            outdated_minutes=outdated_minutes,
            excluded_labels=excluded_labels,
            canary_size=canary_size,
            canary_timeout_s=canary_timeout_s,
            request_timeout_s=request_timeout_s,
            page_size=page_size,
        )


def _optional_str(value: str | None) -> str | None:
    if value is None:
        return None
    text = value.strip()
    return text or None


def _parse_label_list(value: str) -> tuple[str, ...]:
    items: list[str] = []
    for raw in value.split(","):
        cleaned = raw.strip()
        if not cleaned:
            continue
        if "=" not in cleaned:
            raise ValueError(f"Label filter must be key=value: {cleaned}")
        if cleaned not in items:
            items.append(cleaned)
    return tuple(items)


def _parse_float(value: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Invalid float value: {value}") from exc


@lru_cache(maxsize=1)
def get_config() -> Config:
    return Config.from_env()
