import hashlib
from dataclasses import dataclass

from user_agents import parse

UNKNOWN = "unknown"


@dataclass(frozen=True)
class DeviceInfo:
    device_type: str
    browser: str
    os: str

    @property
    def name(self) -> str:
        return f"{self.browser} on {self.os}"


def generate_device_hash(user_agent: str | None, ip: str | None) -> str:
    data = f"{user_agent or 'unknown'}-{ip or 'unknown'}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:32]


def _family(value: str | None) -> str:
    # ua-parser reports unrecognised agents as "Other"
    if not value or value == "Other":
        return UNKNOWN
    return value[:40]


def parse_user_agent(user_agent: str | None) -> DeviceInfo:
    if not user_agent:
        return DeviceInfo(device_type=UNKNOWN, browser=UNKNOWN, os=UNKNOWN)

    ua = parse(user_agent)
    if ua.is_tablet:
        device_type = "tablet"
    elif ua.is_mobile:
        device_type = "mobile"
    elif ua.is_bot:
        device_type = "bot"
    elif ua.is_pc:
        device_type = "desktop"
    else:
        device_type = UNKNOWN

    return DeviceInfo(
        device_type=device_type,
        browser=_family(ua.browser.family),
        os=_family(ua.os.family),
    )
