from datetime import datetime, timezone


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def resolve_now(now: datetime | None) -> datetime:
    return now if now is not None else utc_now_naive()
